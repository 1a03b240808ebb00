"""
tests/helpers.py

In-memory stand-ins for the database surfaces the tools touch:

  FakeCatalog       - same interface as rlsguard.catalog.CatalogReader
  RecordingConnection / RecordingPool
                    - record every statement and transaction boundary so
                      tests can assert that impersonation always rolls back
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from rlsguard.catalog import (
    PolicyDefinition,
    PrivilegedFunction,
    TableGrants,
    TableSecurity,
    TriggerInfo,
)

# =============================================================================
# CATALOG
# =============================================================================


def make_policy(
    table: str,
    name: str,
    command: str = "SELECT",
    using: str | None = "(auth.uid() = id)",
    with_check: str | None = None,
    roles: Sequence[str] = ("authenticated",),
    permissive: bool = True,
) -> PolicyDefinition:
    return PolicyDefinition(
        table=table,
        name=name,
        command=command,
        permissive=permissive,
        roles=tuple(roles),
        using=using,
        with_check=with_check,
    )


def make_function(
    name: str,
    body: str = "BEGIN RETURN; END;",
    signature: str = "",
    config: Sequence[str] = ("search_path=public",),
    security_definer: bool = True,
) -> PrivilegedFunction:
    return PrivilegedFunction(
        name=name,
        signature=signature,
        config=tuple(config),
        body=body,
        security_definer=security_definer,
    )


class FakeCatalog:
    def __init__(
        self,
        policies: Iterable[PolicyDefinition] = (),
        functions: Iterable[PrivilegedFunction] = (),
        tables: Iterable[TableSecurity] = (),
        triggers: Optional[Dict[str, List[TriggerInfo]]] = None,
        grants: Iterable[TableGrants] = (),
    ):
        self._policies = list(policies)
        self._functions = list(functions)
        self._tables = list(tables)
        self._triggers = triggers or {}
        self._grants = list(grants)

    def policies(self) -> List[PolicyDefinition]:
        return list(self._policies)

    def functions(self) -> List[PrivilegedFunction]:
        return list(self._functions)

    def definer_functions(self) -> List[PrivilegedFunction]:
        return [fn for fn in self._functions if fn.security_definer]

    def function_names(self) -> set[str]:
        return {fn.name for fn in self._functions}

    def tables(self) -> List[TableSecurity]:
        return list(self._tables)

    def triggers(self, table: str) -> List[TriggerInfo]:
        return list(self._triggers.get(table, []))

    def table_grants(self) -> List[TableGrants]:
        return list(self._grants)


def healthy_catalog(**overrides) -> FakeCatalog:
    """A catalog that satisfies every invariant with the default profile."""
    lock_and_union = (
        "BEGIN PERFORM pg_advisory_xact_lock(hashtext(p_email));"
        " SELECT 1 FROM profiles WHERE personal_email = p_email"
        " UNION SELECT 1 FROM auth.users WHERE email = p_email; END;"
    )
    values = dict(
        policies=[
            make_policy("profiles", "own profile", using="(auth.uid() = id)"),
            make_policy("profiles", "own update", command="UPDATE", using="(auth.uid() = id)"),
            make_policy(
                "connections",
                "participants",
                using="((requester_id = auth.uid()) OR (addressee_id = auth.uid()))",
            ),
            make_policy(
                "messages",
                "participants",
                using="((sender_id = ( SELECT auth.uid() AS uid)) OR (receiver_id = ( SELECT auth.uid() AS uid)))",
            ),
            make_policy("email_verification_codes", "deny all", command="ALL", using="false"),
            make_policy("auth_hook_error_log", "admins", using="is_platform_admin()"),
        ],
        functions=[
            make_function("get_profile_public", body="SELECT jsonb_build_object('id', p.id) FROM profiles p"),
            make_function("get_profiles_by_domain", body="SELECT id, full_name FROM profiles LIMIT 50"),
            make_function("get_alumni_by_domain", body="SELECT id FROM profiles LIMIT 50"),
            make_function("transition_to_personal_email", body=lock_and_union),
            make_function("merge_transitioned_account", body=lock_and_union),
            make_function(
                "get_profile_safe",
                body="SELECT jsonb_build_object('personal_email', personal_email) FROM profiles WHERE id = auth.uid()",
            ),
        ],
        tables=[
            TableSecurity("profiles", True, True),
            TableSecurity("connections", True, False),
            TableSecurity("messages", True, False),
            TableSecurity("email_verification_codes", True, True),
            TableSecurity("auth_hook_error_log", True, False),
        ],
    )
    values.update(overrides)
    return FakeCatalog(**values)


# =============================================================================
# CONNECTIONS
# =============================================================================

Responder = Callable[[str, Optional[Sequence]], Tuple[List[dict], int]]


def _default_responder(query: str, params: Optional[Sequence]) -> Tuple[List[dict], int]:
    return [], 0


class RecordingCursor:
    def __init__(self, conn: "RecordingConnection"):
        self.conn = conn
        self.description = None
        self.rowcount = -1
        self._rows: List[dict] = []

    def __enter__(self) -> "RecordingCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False

    def execute(self, query, params=None) -> None:
        text = query if isinstance(query, str) else repr(query)
        self.conn.statements.append((text, params))
        rows, rowcount = self.conn.responder(text, params)
        self._rows = list(rows)
        self.rowcount = rowcount
        self.description = [("col",)] if self._rows else None

    def fetchall(self) -> List[dict]:
        return list(self._rows)

    def fetchone(self) -> Optional[dict]:
        return self._rows[0] if self._rows else None


class RecordingConnection:
    def __init__(self, responder: Responder = _default_responder):
        self.responder = responder
        self.statements: List[Tuple[str, Optional[Sequence]]] = []
        self.events: List[str] = []

    def cursor(self) -> RecordingCursor:
        return RecordingCursor(self)

    @contextmanager
    def transaction(self, force_rollback: bool = False):
        self.events.append("begin")
        try:
            yield self
        except BaseException:
            self.events.append("rollback")
            raise
        else:
            self.events.append("rollback" if force_rollback else "commit")


class RecordingPool:
    def __init__(self, conn: RecordingConnection):
        self.conn = conn
        self.checkouts = 0
        self.returns = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        try:
            yield self.conn
        finally:
            self.returns += 1
