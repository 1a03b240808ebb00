"""
RLS Guard - Catalog Loaders

Typed views of the live security surface: row-level-security policies,
functions (security definer or not), table RLS flags, triggers and grants.

CatalogReader runs each catalog query at most once per instance, so a battery
of checks can share one connection without re-reading pg_catalog.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import psycopg

from rlsguard.sqltext import strip_comments

logger = logging.getLogger(__name__)

AUDITED_GRANTEES: Tuple[str, ...] = ("anon", "authenticated", "public")


@dataclass(frozen=True)
class PolicyDefinition:
    table: str
    name: str
    command: str
    permissive: bool
    roles: Tuple[str, ...]
    using: Optional[str]
    with_check: Optional[str]

    @property
    def key(self) -> str:
        return f"{self.table}.{self.name}"

    @property
    def covers_select(self) -> bool:
        return self.command in ("SELECT", "ALL")


@dataclass(frozen=True)
class PrivilegedFunction:
    name: str
    signature: str
    config: Tuple[str, ...]
    body: str
    security_definer: bool = True
    kind: str = "f"

    @property
    def key(self) -> str:
        return f"{self.name}({self.signature})"

    @property
    def has_search_path(self) -> bool:
        return any(entry.lower().startswith("search_path=") for entry in self.config)

    @property
    def stripped_body(self) -> str:
        return strip_comments(self.body or "")

    def references_columns(self, columns: Sequence[str]) -> bool:
        body = self.stripped_body
        return any(re.search(rf"\b{re.escape(col)}\b", body, re.IGNORECASE) for col in columns)


@dataclass(frozen=True)
class TableSecurity:
    table: str
    rls_enabled: bool
    rls_forced: bool


@dataclass(frozen=True)
class TriggerInfo:
    table: str
    name: str
    function_name: str
    function_body: str
    definition: str


@dataclass
class TableGrants:
    table: str
    rls_enabled: bool
    grants: Dict[str, Set[str]] = field(default_factory=dict)


class CatalogReader:
    """Lazy, cached catalog loaders over one connection."""

    def __init__(self, conn: psycopg.Connection, schema: str = "public"):
        self.conn = conn
        self.schema = schema
        self._cache: Dict[Any, Any] = {}

    def _fetch(self, query: str, params: Sequence[Any]) -> List[dict]:
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return list(cur.fetchall())

    def policies(self) -> List[PolicyDefinition]:
        if "policies" not in self._cache:
            rows = self._fetch(
                """
                SELECT tablename,
                       policyname,
                       cmd,
                       permissive,
                       roles,
                       qual,
                       with_check
                FROM pg_policies
                WHERE schemaname = %s
                ORDER BY tablename, policyname;
                """,
                (self.schema,),
            )
            self._cache["policies"] = [
                PolicyDefinition(
                    table=row["tablename"],
                    name=row["policyname"],
                    command=str(row["cmd"] or "ALL").upper(),
                    permissive=str(row["permissive"] or "PERMISSIVE").upper() == "PERMISSIVE",
                    roles=tuple(row["roles"] or ()),
                    using=row["qual"],
                    with_check=row["with_check"],
                )
                for row in rows
            ]
            logger.debug("Loaded %d policies from %s", len(self._cache["policies"]), self.schema)
        return self._cache["policies"]

    def functions(self) -> List[PrivilegedFunction]:
        """Every non-extension function and procedure in the schema."""
        if "functions" not in self._cache:
            rows = self._fetch(
                """
                SELECT p.proname AS name,
                       pg_get_function_identity_arguments(p.oid) AS args,
                       p.proconfig AS config,
                       p.prosrc AS body,
                       p.prosecdef AS security_definer,
                       p.prokind AS kind
                FROM pg_proc p
                JOIN pg_namespace n ON n.oid = p.pronamespace
                WHERE n.nspname = %s
                  AND NOT EXISTS (
                      SELECT 1 FROM pg_depend d
                      WHERE d.objid = p.oid AND d.deptype = 'e'
                  )
                ORDER BY p.proname, args;
                """,
                (self.schema,),
            )
            self._cache["functions"] = [
                PrivilegedFunction(
                    name=row["name"],
                    signature=row["args"] or "",
                    config=tuple(row["config"] or ()),
                    body=row["body"] or "",
                    security_definer=bool(row["security_definer"]),
                    kind=row["kind"] or "f",
                )
                for row in rows
            ]
        return self._cache["functions"]

    def definer_functions(self) -> List[PrivilegedFunction]:
        return [fn for fn in self.functions() if fn.security_definer]

    def function_names(self) -> Set[str]:
        return {fn.name for fn in self.functions()}

    def tables(self) -> List[TableSecurity]:
        if "tables" not in self._cache:
            rows = self._fetch(
                """
                SELECT c.relname AS name,
                       c.relrowsecurity AS rls_enabled,
                       c.relforcerowsecurity AS rls_forced
                FROM pg_class c
                JOIN pg_namespace n ON n.oid = c.relnamespace
                WHERE n.nspname = %s
                  AND c.relkind IN ('r', 'p')
                ORDER BY c.relname;
                """,
                (self.schema,),
            )
            self._cache["tables"] = [
                TableSecurity(
                    table=row["name"],
                    rls_enabled=bool(row["rls_enabled"]),
                    rls_forced=bool(row["rls_forced"]),
                )
                for row in rows
            ]
        return self._cache["tables"]

    def triggers(self, table: str) -> List[TriggerInfo]:
        key = ("triggers", table)
        if key not in self._cache:
            rows = self._fetch(
                """
                SELECT t.tgname AS name,
                       p.proname AS function_name,
                       p.prosrc AS function_body,
                       pg_get_triggerdef(t.oid) AS definition
                FROM pg_trigger t
                JOIN pg_class c ON c.oid = t.tgrelid
                JOIN pg_namespace n ON n.oid = c.relnamespace
                JOIN pg_proc p ON p.oid = t.tgfoid
                WHERE n.nspname = %s
                  AND c.relname = %s
                  AND NOT t.tgisinternal
                  AND t.tgenabled <> 'D'
                ORDER BY t.tgname;
                """,
                (self.schema, table),
            )
            self._cache[key] = [
                TriggerInfo(
                    table=table,
                    name=row["name"],
                    function_name=row["function_name"],
                    function_body=row["function_body"] or "",
                    definition=row["definition"] or "",
                )
                for row in rows
            ]
        return self._cache[key]

    def table_grants(self) -> List[TableGrants]:
        """Grants to client-facing roles, joined with each table's RLS flag."""
        if "grants" not in self._cache:
            by_table = {
                table.table: TableGrants(table.table, table.rls_enabled) for table in self.tables()
            }
            rows = self._fetch(
                """
                SELECT table_name,
                       grantee,
                       privilege_type
                FROM information_schema.table_privileges
                WHERE table_schema = %s
                  AND lower(grantee) = ANY(%s);
                """,
                (self.schema, list(AUDITED_GRANTEES)),
            )
            for row in rows:
                entry = by_table.get(row["table_name"])
                if entry is None:
                    continue
                grantee = row["grantee"].lower()
                entry.grants.setdefault(grantee, set()).add(row["privilege_type"].upper())
            self._cache["grants"] = sorted(by_table.values(), key=lambda g: g.table)
        return self._cache["grants"]
