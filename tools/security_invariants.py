"""
Security invariant check against a live Supabase database.

Usage:
    python -m tools.security_invariants --env dev
    python -m tools.security_invariants --env prod --only 1 --only 9

Every check runs even when an earlier one fails. Exit code 1 when any check
reports an error-level finding.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

import click

from rlsguard.catalog import CatalogReader
from rlsguard.core_config import get_settings
from rlsguard.db import open_pool, resolve_env
from rlsguard.errors import ToolFatalError
from rlsguard.findings import CheckResult, FindingReport, Severity
from rlsguard.invariants import INVARIANTS, run_invariants
from rlsguard.logging_setup import configure_logging

logger = logging.getLogger(__name__)

STATUS_ICONS = {"pass": "✅", "warn": "⚠️", "fail": "❌"}


def collect_results(only: Sequence[str] = ()) -> List[CheckResult]:
    settings = get_settings()
    with open_pool(settings=settings) as pool:
        with pool.connection() as conn:
            catalog = CatalogReader(conn, schema=settings.SECURITY_SCHEMA)
            return run_invariants(catalog, only=only or None)


def render_results(results: Sequence[CheckResult], verbose: bool = False) -> FindingReport:
    report = FindingReport()
    sections = {inv.check_id: inv.section for inv in INVARIANTS}
    current_section = None
    click.echo("=" * 70)
    click.echo("  SECURITY INVARIANTS")
    click.echo("=" * 70)
    for result in results:
        section = sections.get(result.check_id, "Other")
        if section != current_section:
            click.echo(f"\n-- {section} " + "-" * (66 - len(section)))
            current_section = section
        icon = STATUS_ICONS[result.status]
        click.echo(f"{icon} [{result.check_id}] {result.title}")
        if result.status == "pass" and result.ok_message:
            click.echo(f"      {result.ok_message}")
        for finding in result.findings:
            if finding.severity is Severity.INFO and not verbose:
                continue
            click.echo(f"      - {finding.format()}")
        report.extend(result.findings)

    passed = sum(1 for r in results if r.status == "pass")
    warned = sum(1 for r in results if r.status == "warn")
    failed = sum(1 for r in results if r.status == "fail")
    click.echo("\n" + "=" * 70)
    click.echo(f"  SUMMARY: {passed} passed, {warned} warned, {failed} failed")
    click.echo("=" * 70)
    return report


@click.command()
@click.option(
    "--env",
    "requested_env",
    type=click.Choice(["dev", "prod"]),
    default=None,
    help="Override Supabase environment (defaults to SUPABASE_MODE).",
)
@click.option("--only", multiple=True, help="Run only the given check id (repeatable).")
@click.option("--verbose", "-v", is_flag=True, help="Show informational findings and debug logs.")
def main(requested_env: str | None, only: tuple[str, ...], verbose: bool) -> None:
    configure_logging("security_invariants", verbose)
    try:
        env = resolve_env(requested_env)
        logger.info("Checking security invariants env=%s", env)
        results = collect_results(only)
    except ToolFatalError as exc:
        click.echo(f"FATAL: {exc}", err=True)
        raise SystemExit(1)

    report = render_results(results, verbose)
    raise SystemExit(report.exit_code)


if __name__ == "__main__":
    main()
