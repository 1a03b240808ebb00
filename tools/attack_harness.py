#!/usr/bin/env python3
"""
Destructive security tests (Red Team).

Impersonates a tenant and attempts cross-tenant reads, writes and deletes.
Every attempt runs in a transaction that is always rolled back, so the
database is left exactly as it was found.

Usage:
    python -m tools.attack_harness --env dev
    python -m tools.attack_harness --env prod --allow-prod

Attacks:
    A1  Read another user's personal_email
    A2  Read other users' profile rows
    A3  Read email_verification_codes
    A4  Directory RPC for a foreign domain leaks personal_email
    A5  UPDATE another user's profile
    A6  INSERT a connection impersonating another requester
    A7  DELETE another user's posts
    A8  Read messages not involving the caller
    A9  Forged email claim reads a foreign domain
    A10 Read auth_hook_error_log
    A11 INSERT a notification for another user

Audits:
    AUDIT-1  No USING (true) SELECT policies
    AUDIT-2  No dangerous grants to anon or public
"""

from __future__ import annotations

import logging
from typing import List, Sequence

import click

from rlsguard.attacks import (
    ATTACKER_ID,
    FOREIGN_DOMAIN,
    VICTIM_ID,
    AttackContext,
    AttackHarness,
)
from rlsguard.core_config import get_settings
from rlsguard.db import describe_db_url, open_pool, resolve_db_url, resolve_env
from rlsguard.errors import ToolFatalError
from rlsguard.findings import CheckResult
from rlsguard.logging_setup import configure_logging

logger = logging.getLogger(__name__)


def run_attacks(context: AttackContext) -> List[CheckResult]:
    settings = get_settings()
    db_url = resolve_db_url(settings)
    host, dbname, _ = describe_db_url(db_url)
    click.echo(f"🔒 Attacking {settings.supabase_mode} ({host}/{dbname})")
    with open_pool(db_url, settings=settings) as pool:
        return AttackHarness(pool, context).run_all()


def render_results(results: Sequence[CheckResult], verbose: bool = False) -> int:
    click.echo("\n" + "=" * 70)
    click.echo("  DESTRUCTIVE SECURITY TESTS (Red Team)")
    click.echo("=" * 70 + "\n")
    for result in results:
        if result.passed:
            click.echo(f"✅ [PASS] {result.check_id} {result.title}: {result.ok_message}")
        else:
            click.echo(f"❌ [FAIL] {result.check_id} {result.title}")
        for finding in result.findings:
            click.echo(f"      - {finding.location + ': ' if finding.location else ''}{finding.message}")
        if result.details and verbose:
            for key, value in result.details.items():
                click.echo(f"      {key}: {value}")

    passed = sum(1 for r in results if r.passed)
    failed = len(results) - passed
    click.echo("\n" + "=" * 70)
    click.echo(f"  SUMMARY: {passed} passed, {failed} failed")
    click.echo("=" * 70 + "\n")
    if failed:
        click.echo("❌ TENANT ISOLATION BROKEN - Security review required!")
        return 1
    click.echo("✅ All attacks blocked - tenant isolation holds")
    return 0


@click.command()
@click.option(
    "--env",
    "requested_env",
    type=click.Choice(["dev", "prod"]),
    default=None,
    help="Override Supabase environment (defaults to SUPABASE_MODE).",
)
@click.option("--allow-prod", is_flag=True, help="Required to run against production.")
@click.option("--attacker-id", default=ATTACKER_ID, show_default=True, help="Impersonated user id.")
@click.option("--victim-id", default=VICTIM_ID, show_default=True, help="Target user id.")
@click.option("--foreign-domain", default=FOREIGN_DOMAIN, show_default=True, help="Domain the attacker does not belong to.")
@click.option("--verbose", "-v", is_flag=True, help="Show breach details and debug logs.")
def main(
    requested_env: str | None,
    allow_prod: bool,
    attacker_id: str,
    victim_id: str,
    foreign_domain: str,
    verbose: bool,
) -> None:
    configure_logging("attack_harness", verbose)
    try:
        env = resolve_env(requested_env)
        if env == "prod" and not allow_prod:
            click.echo("FATAL: refusing to attack production without --allow-prod", err=True)
            raise SystemExit(1)
        context = AttackContext(attacker_id=attacker_id, victim_id=victim_id, foreign_domain=foreign_domain)
        results = run_attacks(context)
    except ToolFatalError as exc:
        click.echo(f"FATAL: {exc}", err=True)
        raise SystemExit(1)
    raise SystemExit(render_results(results, verbose))


if __name__ == "__main__":
    main()
