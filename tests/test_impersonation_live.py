"""
Live database checks for impersonation.

Skipped unless SUPABASE_DB_URL points at a disposable Supabase database.
Nothing here writes outside a rolled-back transaction.
"""

from __future__ import annotations

import pytest

from rlsguard.attacks import ATTACKER_ID, AttackContext, AttackHarness
from rlsguard.db import open_pool
from rlsguard.impersonation import Identity, impersonate

pytestmark = [pytest.mark.integration, pytest.mark.security]


def test_identity_is_scoped_to_the_transaction(live_db_url):
    with open_pool(live_db_url) as pool:
        with impersonate(pool, Identity(ATTACKER_ID)) as session:
            (row,) = session.fetch(
                "SELECT current_user AS role, current_setting('request.jwt.claim.sub', true) AS sub;"
            )
            assert row == {"role": "authenticated", "sub": ATTACKER_ID}

        with pool.connection() as conn:
            row = conn.execute(
                "SELECT current_user AS role, current_setting('request.jwt.claim.sub', true) AS sub;"
            ).fetchone()
    assert row["role"] != "authenticated"
    assert not row["sub"]


def test_attacks_are_blocked(live_db_url):
    with open_pool(live_db_url) as pool:
        results = AttackHarness(pool, AttackContext()).run_all()

    breaches = [f"{r.check_id}: {f.message}" for r in results for f in r.findings if f.is_error]
    assert breaches == []
