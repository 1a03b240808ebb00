"""
RLS Guard - Destructive Attack Scenarios

Red-team scenarios that try to cross the tenant boundary as an impersonated
user. Each scenario is expected to fail: zero rows seen, zero rows affected,
or a permission / policy error. A scenario that gets data out, or changes
data, is a security breach.

Mutation scenarios also carry a residue query, run on a privileged pooled
connection before and after the attack, that proves nothing persisted.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors as pg_errors
from psycopg_pool import ConnectionPool, PoolTimeout

from rlsguard.catalog import CatalogReader
from rlsguard.errors import DatabaseUnavailableError
from rlsguard.findings import CheckResult
from rlsguard.governance import DEFAULT_PROFILE, GovernanceProfile, is_unconditional_true
from rlsguard.impersonation import AttackSession, Identity, impersonate

logger = logging.getLogger(__name__)

ATTACKER_ID = "00000000-0000-0000-0000-000000000a01"
VICTIM_ID = "00000000-0000-0000-0000-000000000b02"
ATTACKER_DOMAIN = "test-university-a.edu"
FOREIGN_DOMAIN = "test-university-b.edu"

# Missing objects cannot leak anything
_ABSENT_ERRORS = (pg_errors.UndefinedTable, pg_errors.UndefinedFunction, pg_errors.UndefinedColumn)


@dataclass(frozen=True)
class AttackContext:
    attacker_id: str = ATTACKER_ID
    victim_id: str = VICTIM_ID
    attacker_domain: str = ATTACKER_DOMAIN
    foreign_domain: str = FOREIGN_DOMAIN
    marker: str = field(default_factory=lambda: f"rlsguard-{uuid.uuid4().hex[:12]}")

    @property
    def attacker(self) -> Identity:
        return Identity(self.attacker_id, email=f"student@{self.attacker_domain}")


@dataclass
class AttackOutcome:
    rows: int
    breach: str = ""
    details: Optional[dict] = None


ScenarioFn = Callable[[AttackSession, AttackContext], AttackOutcome]
ResidueFn = Callable[[AttackContext], Tuple[str, Sequence[Any]]]


@dataclass(frozen=True)
class Scenario:
    check_id: str
    title: str
    run: ScenarioFn
    kind: str = "read"  # read | write | insert
    residue: Optional[ResidueFn] = None
    identity: Optional[Callable[[AttackContext], Identity]] = None


def _leaks_column(value: Any, column: str) -> bool:
    if isinstance(value, dict):
        if value.get(column) is not None:
            return True
        return any(_leaks_column(v, column) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_leaks_column(v, column) for v in value)
    return False


# =============================================================================
# SCENARIOS
# =============================================================================


def _read_personal_email(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    rows = session.fetch(
        "SELECT id, personal_email FROM public.profiles WHERE id <> %s LIMIT 5;",
        (ctx.attacker_id,),
    )
    leaked = [row["id"] for row in rows if row.get("personal_email") is not None]
    return AttackOutcome(
        len(leaked),
        f"leaked {len(leaked)} personal_email values",
        {"profile_ids": [str(i) for i in leaked]},
    )


def _read_foreign_profiles(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    rows = session.fetch("SELECT * FROM public.profiles WHERE id <> %s LIMIT 5;", (ctx.attacker_id,))
    return AttackOutcome(len(rows), f"direct SELECT returned {len(rows)} other users' profiles")


def _read_otp_codes(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    rows = session.fetch("SELECT * FROM public.email_verification_codes LIMIT 5;")
    return AttackOutcome(len(rows), f"read {len(rows)} verification codes")


def _directory_rpc_leak(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    rows = session.fetch("SELECT * FROM public.get_profiles_by_domain(%s);", (ctx.foreign_domain,))
    leaked = [row for row in rows if _leaks_column(row, "personal_email")]
    return AttackOutcome(len(leaked), f"get_profiles_by_domain leaked personal_email in {len(leaked)} rows")


def _update_foreign_profile(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    count = session.mutate(
        "UPDATE public.profiles SET full_name = %s WHERE id = %s;",
        (ctx.marker, ctx.victim_id),
    )
    return AttackOutcome(count, f"updated {count} profile rows of another user")


def _insert_forged_connection(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    count = session.mutate(
        """
        INSERT INTO public.connections (requester_id, addressee_id, status)
        VALUES (%s, %s, 'accepted');
        """,
        (ctx.victim_id, ctx.attacker_id),
    )
    return AttackOutcome(count, "inserted an accepted connection on behalf of another user")


def _delete_foreign_posts(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    count = session.mutate("DELETE FROM public.posts WHERE user_id = %s;", (ctx.victim_id,))
    return AttackOutcome(count, f"deleted {count} posts of another user")


def _read_foreign_messages(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    rows = session.fetch(
        """
        SELECT * FROM public.messages
        WHERE sender_id <> %s AND receiver_id <> %s
        LIMIT 5;
        """,
        (ctx.attacker_id, ctx.attacker_id),
    )
    return AttackOutcome(len(rows), f"read {len(rows)} messages between other users")


def _forged_email_claim(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    rows = session.fetch(
        "SELECT id, college_domain FROM public.profiles WHERE college_domain = %s LIMIT 5;",
        (ctx.foreign_domain,),
    )
    return AttackOutcome(len(rows), f"forged email claim read {len(rows)} cross-domain profiles")


def _read_error_log(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    rows = session.fetch("SELECT * FROM public.auth_hook_error_log LIMIT 5;")
    return AttackOutcome(len(rows), f"read {len(rows)} auth hook error log rows")


def _insert_spoofed_notification(session: AttackSession, ctx: AttackContext) -> AttackOutcome:
    count = session.mutate(
        """
        INSERT INTO public.notifications (user_id, type, title, message)
        VALUES (%s, 'system', %s, 'You have been hacked');
        """,
        (ctx.victim_id, ctx.marker),
    )
    return AttackOutcome(count, "inserted a notification for another user")


SCENARIOS: Tuple[Scenario, ...] = (
    Scenario("A1", "Read another user's personal_email", _read_personal_email),
    Scenario("A2", "Read other users' profile rows", _read_foreign_profiles),
    Scenario("A3", "Read email_verification_codes", _read_otp_codes),
    Scenario("A4", "Directory RPC for a foreign domain leaks personal_email", _directory_rpc_leak),
    Scenario(
        "A5",
        "UPDATE another user's profile",
        _update_foreign_profile,
        kind="write",
        residue=lambda ctx: (
            "SELECT count(*) AS n FROM public.profiles WHERE full_name = %s;",
            (ctx.marker,),
        ),
    ),
    Scenario(
        "A6",
        "INSERT a connection impersonating another requester",
        _insert_forged_connection,
        kind="insert",
        residue=lambda ctx: (
            "SELECT count(*) AS n FROM public.connections WHERE requester_id = %s AND addressee_id = %s;",
            (ctx.victim_id, ctx.attacker_id),
        ),
    ),
    Scenario(
        "A7",
        "DELETE another user's posts",
        _delete_foreign_posts,
        kind="write",
        residue=lambda ctx: ("SELECT count(*) AS n FROM public.posts WHERE user_id = %s;", (ctx.victim_id,)),
    ),
    Scenario("A8", "Read messages not involving the caller", _read_foreign_messages),
    Scenario(
        "A9",
        "Forged email claim reads a foreign domain",
        _forged_email_claim,
        identity=lambda ctx: Identity(ctx.attacker_id, email=f"admin@{ctx.foreign_domain}"),
    ),
    Scenario("A10", "Read auth_hook_error_log", _read_error_log),
    Scenario(
        "A11",
        "INSERT a notification for another user",
        _insert_spoofed_notification,
        kind="insert",
        residue=lambda ctx: ("SELECT count(*) AS n FROM public.notifications WHERE title = %s;", (ctx.marker,)),
    ),
)


# =============================================================================
# EXECUTION
# =============================================================================


def _first_line(exc: BaseException) -> str:
    return str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__


def _count_residue(pool: ConnectionPool, scenario: Scenario, ctx: AttackContext) -> Optional[int]:
    if scenario.residue is None:
        return None
    query, params = scenario.residue(ctx)
    try:
        with pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
    except _ABSENT_ERRORS:
        return None
    if row is None:
        return 0
    return int(row["n"] if isinstance(row, dict) else row[0])


def run_scenario(pool: ConnectionPool, scenario: Scenario, ctx: AttackContext) -> CheckResult:
    """
    Execute one attack and classify it.

    Raises DatabaseUnavailableError on timeouts or a lost connection; those
    are tool failures, not security verdicts.
    """
    result = CheckResult(scenario.check_id, scenario.title)
    identity = scenario.identity(ctx) if scenario.identity else ctx.attacker
    try:
        before = _count_residue(pool, scenario, ctx)
        try:
            with impersonate(pool, identity) as session:
                outcome = scenario.run(session, ctx)
        except pg_errors.InsufficientPrivilege as exc:
            result.ok_message = f"blocked: {_first_line(exc)}"
        except _ABSENT_ERRORS as exc:
            result.ok_message = f"safe by absence: {_first_line(exc)}"
        except psycopg.IntegrityError as exc:
            if scenario.kind == "insert":
                result.ok_message = f"rejected: {_first_line(exc)}"
            else:
                result.fail(f"unexpected database error: {_first_line(exc)}")
        else:
            if outcome.rows > 0:
                result.fail(f"SECURITY BREACH: {outcome.breach}")
                result.details = outcome.details
            else:
                result.ok_message = "0 rows"
        after = _count_residue(pool, scenario, ctx)
    except (psycopg.OperationalError, PoolTimeout) as exc:
        raise DatabaseUnavailableError(f"{scenario.check_id} aborted: {_first_line(exc)}") from exc
    except psycopg.Error as exc:
        result.fail(f"unexpected database error: {_first_line(exc)}")
        return result
    except Exception as exc:
        logger.exception("Scenario %s raised", scenario.check_id)
        result.fail(f"scenario raised {type(exc).__name__}: {exc}")
        return result

    if before is not None and after is not None and after != before:
        result.fail(f"side effect persisted after rollback ({before} -> {after} rows)")
    return result


# =============================================================================
# AUDITS
# =============================================================================


AUDIT_USING_TRUE = ("AUDIT-1", "No USING (true) SELECT policies")
AUDIT_CLIENT_GRANTS = ("AUDIT-2", "No dangerous grants to anon or public")


def audit_using_true(catalog: CatalogReader) -> CheckResult:
    result = CheckResult(*AUDIT_USING_TRUE)
    for policy in catalog.policies():
        if policy.command == "SELECT" and is_unconditional_true(policy.using):
            result.fail("USING (true) SELECT policy", policy.key)
    result.ok_message = "none found"
    return result


def audit_client_grants(catalog: CatalogReader, profile: GovernanceProfile = DEFAULT_PROFILE) -> CheckResult:
    result = CheckResult(*AUDIT_CLIENT_GRANTS)
    allowed_anon_reads = set(profile.anon_readable_tables)
    for entry in catalog.table_grants():
        public = entry.grants.get("public", set())
        if public:
            result.fail(f"public has {', '.join(sorted(public))}", entry.table)
        anon = entry.grants.get("anon", set())
        writes = anon - {"SELECT"}
        if writes:
            result.fail(f"anon has {', '.join(sorted(writes))}", entry.table)
        if "SELECT" in anon and not entry.rls_enabled and entry.table not in allowed_anon_reads:
            result.fail("anon can SELECT a table without row level security", entry.table)
    result.ok_message = "client grants are constrained"
    return result


def _run_audit(check: Tuple[str, str], audit: Callable[[], CheckResult]) -> CheckResult:
    """Run one catalog audit; a failing query fails that audit only."""
    try:
        return audit()
    except (psycopg.OperationalError, PoolTimeout):
        raise
    except Exception as exc:
        logger.exception("Audit %s raised", check[0])
        result = CheckResult(*check)
        result.fail(f"audit raised {type(exc).__name__}: {_first_line(exc)}")
        return result


@dataclass
class AttackHarness:
    pool: ConnectionPool
    context: AttackContext = field(default_factory=AttackContext)
    profile: GovernanceProfile = DEFAULT_PROFILE
    scenarios: Sequence[Scenario] = SCENARIOS
    results: List[CheckResult] = field(default_factory=list)

    def run_all(self) -> List[CheckResult]:
        logger.info("Running %d attack scenarios (marker=%s)", len(self.scenarios), self.context.marker)
        for scenario in self.scenarios:
            self.results.append(run_scenario(self.pool, scenario, self.context))
        try:
            with self.pool.connection() as conn:
                catalog = CatalogReader(conn)
                self.results.append(_run_audit(AUDIT_USING_TRUE, lambda: audit_using_true(catalog)))
                self.results.append(
                    _run_audit(AUDIT_CLIENT_GRANTS, lambda: audit_client_grants(catalog, self.profile))
                )
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise DatabaseUnavailableError(f"audit aborted: {_first_line(exc)}") from exc
        return self.results
