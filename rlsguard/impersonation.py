"""
RLS Guard - Tenant Impersonation

``impersonate()`` is the only way attacker SQL reaches the database. It checks
out a pooled connection, opens a transaction that is always rolled back, and
applies the attacker's role and JWT claims with transaction-local settings.
When the block exits, by success or by error, nothing the attacker did
survives and the connection goes back to the pool with no identity attached.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import sql
from psycopg_pool import ConnectionPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """JWT claims an attacker presents. ``email`` may be forged."""

    subject: str
    role: str = "authenticated"
    email: Optional[str] = None
    extra_claims: Dict[str, Any] = field(default_factory=dict, hash=False)

    def claims(self) -> Dict[str, Any]:
        claims: Dict[str, Any] = {"sub": self.subject, "role": self.role, "aud": self.role}
        if self.email:
            claims["email"] = self.email
        claims.update(self.extra_claims)
        return claims


class AttackSession:
    """Query surface handed to a scenario while an identity is applied."""

    def __init__(self, conn: psycopg.Connection, identity: Identity):
        self.conn = conn
        self.identity = identity

    def fetch(self, query: str, params: Sequence[Any] = ()) -> List[dict]:
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            if cur.description:
                return list(cur.fetchall())
            return []

    def mutate(self, query: str, params: Sequence[Any] = ()) -> int:
        """Execute a write and return the number of affected rows."""
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return max(cur.rowcount, 0)


def _apply_identity(conn: psycopg.Connection, identity: Identity) -> None:
    with conn.cursor() as cur:
        cur.execute(sql.SQL("SET LOCAL ROLE {}").format(sql.Identifier(identity.role)))
        cur.execute(
            """
            SELECT set_config('request.jwt.claims', %s, true),
                   set_config('request.jwt.claim.sub', %s, true),
                   set_config('request.jwt.claim.role', %s, true);
            """,
            (json.dumps(identity.claims(), sort_keys=True), identity.subject, identity.role),
        )
        if identity.email:
            cur.execute(
                "SELECT set_config('request.jwt.claim.email', %s, true);",
                (identity.email,),
            )


@contextmanager
def impersonate(pool: ConnectionPool, identity: Identity) -> Iterator[AttackSession]:
    """Run the enclosed block as ``identity`` inside a rolled-back transaction."""
    with pool.connection() as conn:
        with conn.transaction(force_rollback=True):
            _apply_identity(conn, identity)
            logger.debug("Impersonating sub=%s role=%s", identity.subject, identity.role)
            yield AttackSession(conn, identity)
