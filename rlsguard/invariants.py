"""
RLS Guard - Security Invariants

A fixed battery of independent checks against the live catalog. Each check
is registered with ``@invariant`` and fills in a CheckResult; a check that
raises is recorded as a failure of that check only and the battery carries on.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import psycopg

from rlsguard.catalog import CatalogReader
from rlsguard.errors import DatabaseUnavailableError
from rlsguard.findings import CheckResult
from rlsguard.governance import (
    DEFAULT_PROFILE,
    GovernanceProfile,
    assigns_identity_column,
    builds_object_with,
    guards_identity_column,
    has_advisory_lock,
    has_unbounded_json_agg,
    has_union_check,
    is_admin_gate,
    is_explicit_deny,
    is_identity_scoped,
    is_unconditional_true,
    references_identity,
)
from rlsguard.sqltext import find_select_star

logger = logging.getLogger(__name__)

CheckFn = Callable[[CatalogReader, GovernanceProfile, CheckResult], None]


@dataclass(frozen=True)
class Invariant:
    check_id: str
    title: str
    section: str
    func: CheckFn


INVARIANTS: List[Invariant] = []


def invariant(check_id: str, title: str, section: str) -> Callable[[CheckFn], CheckFn]:
    def decorator(func: CheckFn) -> CheckFn:
        INVARIANTS.append(Invariant(check_id, title, section, func))
        return func

    return decorator


def _select_policies(catalog: CatalogReader, tables: Iterable[str]):
    wanted = set(tables)
    return [p for p in catalog.policies() if p.table in wanted and p.covers_select]


# =============================================================================
# POLICIES
# =============================================================================


@invariant("1", "Identity table SELECT is own-row only", "Policies")
def check_identity_table_select(catalog, profile, result):
    policies = _select_policies(catalog, [profile.identity_table])
    if not policies:
        result.fail(f"no SELECT policy on {profile.identity_table}", profile.identity_table)
        return
    for policy in policies:
        if not references_identity(policy.using):
            result.fail(f"SELECT policy does not test auth.uid(): {policy.using}", policy.key)
    result.ok_message = f"All {len(policies)} SELECT policies enforce auth.uid()"


@invariant("4", "OTP and diagnostic tables are unreadable", "Policies")
def check_restricted_tables(catalog, profile, result):
    tables = {t.table: t for t in catalog.tables()}
    for name in profile.restricted_tables:
        table = tables.get(name)
        if table is not None and not table.rls_enabled:
            result.fail("row level security is disabled", name)
    for policy in _select_policies(catalog, profile.restricted_tables):
        if not (is_explicit_deny(policy.using) or is_admin_gate(policy.using, profile)):
            result.fail(f"readable by clients: USING ({policy.using})", policy.key)
    result.ok_message = f"{', '.join(profile.restricted_tables)} have USING (false) or admin-only SELECT"


@invariant("7", "No unconditional-true policies", "Policies")
def check_no_using_true(catalog, profile, result):
    for policy in catalog.policies():
        if not is_unconditional_true(policy.using):
            continue
        if policy.covers_select:
            result.fail(f"{policy.command} policy is USING (true)", policy.key)
        else:
            result.warn(f"{policy.command} policy is USING (true)", policy.key)
    result.ok_message = "No USING (true) SELECT policies"


@invariant("8", "Tenant-sensitive tables are identity scoped", "Policies")
def check_tenant_tables(catalog, profile, result):
    for policy in _select_policies(catalog, profile.tenant_sensitive_tables):
        if not references_identity(policy.using):
            result.fail(f"broad SELECT policy: {policy.using}", policy.key)
    result.ok_message = (
        f"All SELECT policies on {', '.join(profile.tenant_sensitive_tables)} reference auth.uid()"
    )


# =============================================================================
# FUNCTIONS
# =============================================================================


@invariant("2", "Public directory RPCs exist", "Functions")
def check_directory_rpcs(catalog, profile, result):
    names = catalog.function_names()
    for rpc in profile.directory_rpcs:
        if rpc not in names:
            result.fail("directory RPC is missing", rpc)
    result.ok_message = f"{len(profile.directory_rpcs)} directory RPCs present"


@invariant("3", "Definer functions do not return sensitive columns", "Functions")
def check_sensitive_json(catalog, profile, result):
    for fn in catalog.definer_functions():
        if fn.name in profile.self_access_allowlist:
            continue
        if builds_object_with(fn.body, profile.sensitive_columns):
            result.fail(
                f"builds a JSON object containing {', '.join(profile.sensitive_columns)}",
                fn.key,
            )
    result.ok_message = "No definer function outside the allow-list exposes sensitive columns"


@invariant("5", "Forbidden functions are absent", "Functions")
def check_forbidden_functions(catalog, profile, result):
    for fn in catalog.functions():
        for pattern in profile.forbidden_function_patterns:
            if pattern in fn.name:
                result.fail(f"function matching '{pattern}' must not exist", fn.key)
    result.ok_message = "No forbidden functions"


def _check_serialized_procedures(
    catalog: CatalogReader, names: Sequence[str], result: CheckResult
) -> None:
    by_name: Dict[str, list] = defaultdict(list)
    for fn in catalog.functions():
        by_name[fn.name].append(fn)
    for name in names:
        if name not in by_name:
            result.warn("procedure not found", name)
            continue
        for fn in by_name[name]:
            if not has_advisory_lock(fn.body):
                result.fail("missing pg_advisory_xact_lock", fn.key)
            if not has_union_check(fn.body):
                result.fail("missing UNION duplicate-existence check", fn.key)


@invariant("6", "Identity re-key procedures are serialized", "Functions")
def check_rekey_procedures(catalog, profile, result):
    _check_serialized_procedures(catalog, profile.rekey_procedures, result)
    result.ok_message = "Re-key procedures lock and check duplicates"


@invariant("9", "Definer functions pin search_path", "Functions")
def check_search_path(catalog, profile, result):
    definers = catalog.definer_functions()
    for fn in definers:
        if not fn.has_search_path:
            result.fail("SECURITY DEFINER without SET search_path", fn.key)
        if find_select_star(fn.body):
            result.warn("SELECT * inside SECURITY DEFINER body", fn.key, rule_id="9b")
    result.ok_message = f"All {len(definers)} definer functions pin search_path"


@invariant("12", "Account merge procedures are serialized", "Functions")
def check_merge_procedures(catalog, profile, result):
    _check_serialized_procedures(catalog, profile.merge_procedures, result)
    result.ok_message = "Merge procedures lock and check duplicates"


@invariant("13", "JSON aggregation is bounded", "Functions")
def check_bounded_aggregation(catalog, profile, result):
    for fn in catalog.definer_functions():
        if has_unbounded_json_agg(fn.body):
            result.fail("json(b)_agg without LIMIT", fn.key)
    result.ok_message = "All definer json aggregation is bounded"


# =============================================================================
# TRIGGERS
# =============================================================================


@invariant("10-11", "Identity column is write-once", "Triggers")
def check_identity_column_triggers(catalog, profile, result):
    column = profile.immutable_identity_column
    for trigger in catalog.triggers(profile.identity_table):
        if not assigns_identity_column(trigger.function_body, column):
            continue
        if not guards_identity_column(trigger.function_body, trigger.definition, column):
            result.warn(
                f"{trigger.function_name}() may overwrite {column} on UPDATE",
                f"{profile.identity_table}.{trigger.name}",
            )
    result.ok_message = f"No trigger overwrites {column}"


# =============================================================================
# AUDIT
# =============================================================================


@invariant("14", "Full policy audit", "Audit")
def check_policy_audit(catalog, profile, result):
    policies = catalog.policies()
    for policy in policies:
        if policy.command == "SELECT" and is_unconditional_true(policy.using):
            result.fail("USING (true) SELECT policy", policy.key, rule_id="14a")

    critical = set(profile.critical_tables)
    for policy in policies:
        if not policy.covers_select or is_identity_scoped(policy.using, profile):
            continue
        if policy.table in critical:
            result.fail(f"critical table SELECT not identity scoped: {policy.using}", policy.key, rule_id="14b")
        else:
            result.warn(f"SELECT not identity scoped (review): {policy.using}", policy.key, rule_id="14b")

    by_table: Dict[str, List[str]] = defaultdict(list)
    for policy in policies:
        by_table[policy.table].append(policy.command)
    for table in sorted(by_table):
        commands = ", ".join(sorted(by_table[table]))
        result.info(f"{len(by_table[table])} policies ({commands})", table)
    result.ok_message = f"{len(policies)} policies audited across {len(by_table)} tables"


def run_invariants(
    catalog: CatalogReader,
    profile: GovernanceProfile = DEFAULT_PROFILE,
    only: Optional[Iterable[str]] = None,
) -> List[CheckResult]:
    selected = set(only) if only else None
    results: List[CheckResult] = []
    for inv in sorted(INVARIANTS, key=lambda i: _sort_key(i.check_id)):
        if selected is not None and inv.check_id not in selected:
            continue
        result = CheckResult(inv.check_id, inv.title)
        try:
            inv.func(catalog, profile, result)
        except psycopg.OperationalError as exc:
            raise DatabaseUnavailableError(f"Lost database connection during check {inv.check_id}: {exc}") from exc
        except Exception as exc:
            logger.exception("Invariant %s raised", inv.check_id)
            result.fail(f"check raised {type(exc).__name__}: {exc}")
        results.append(result)
    return results


def _sort_key(check_id: str) -> tuple:
    head = check_id.split("-")[0]
    return (int(head) if head.isdigit() else 999, check_id)
