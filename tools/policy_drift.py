"""
Policy / security-definer drift detection.

Usage:
    python -m tools.policy_drift --snapshot     # write the baseline
    python -m tools.policy_drift                # compare live state to the baseline

Compare mode exits 1 on critical drift: RLS disabled or un-forced, or a policy
or security definer function removed. Changed definitions are warnings.
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from rlsguard.catalog import CatalogReader
from rlsguard.core_config import get_settings
from rlsguard.db import open_pool, resolve_env
from rlsguard.errors import ToolFatalError
from rlsguard.findings import FindingReport
from rlsguard.logging_setup import configure_logging
from rlsguard.snapshot import (
    SecuritySnapshot,
    build_snapshot,
    diff_snapshots,
    format_drift,
    load_snapshot,
    write_snapshot,
)

logger = logging.getLogger(__name__)


def capture_live_snapshot() -> SecuritySnapshot:
    settings = get_settings()
    with open_pool(settings=settings) as pool:
        with pool.connection() as conn:
            return build_snapshot(CatalogReader(conn, schema=settings.SECURITY_SCHEMA))


def run_baseline(path: Path) -> int:
    snapshot = capture_live_snapshot()
    write_snapshot(snapshot, path)
    summary = snapshot.summary
    click.echo(f"[policy_drift] baseline written to {path}")
    click.echo(
        f"[policy_drift] {summary.total_policies} policies, "
        f"{summary.total_definer_functions} definer functions, "
        f"{summary.rls_enabled_tables}/{summary.total_tables} tables with RLS"
    )
    return 0


def run_compare(path: Path) -> int:
    baseline = load_snapshot(path)
    current = capture_live_snapshot()
    diff = diff_snapshots(baseline, current)
    if diff.is_clean():
        click.echo(f"[policy_drift] ✅ no drift against baseline {baseline.generated_at}")
        return 0

    report = FindingReport(diff.findings())
    click.echo(f"[policy_drift] drift against baseline {baseline.generated_at}:")
    for line in format_drift(diff):
        click.echo(line)
    click.echo(
        f"[policy_drift] {report.error_count} critical, {report.warning_count} changed, "
        f"{report.info_count} informational"
    )
    if report.error_count:
        click.echo("[policy_drift] ❌ critical drift; review before deploying")
    return report.exit_code


@click.command()
@click.option(
    "--env",
    "requested_env",
    type=click.Choice(["dev", "prod"]),
    default=None,
    help="Override Supabase environment (defaults to SUPABASE_MODE).",
)
@click.option("--snapshot", "baseline", is_flag=True, help="Write a new baseline instead of comparing.")
@click.option(
    "--snapshot-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Baseline location (defaults to POLICY_SNAPSHOT_PATH).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(requested_env: str | None, baseline: bool, snapshot_path: Path | None, verbose: bool) -> None:
    configure_logging("policy_drift", verbose)
    try:
        resolve_env(requested_env)
        path = snapshot_path or Path(get_settings().POLICY_SNAPSHOT_PATH)
        code = run_baseline(path) if baseline else run_compare(path)
    except ToolFatalError as exc:
        click.echo(f"FATAL: {exc}", err=True)
        raise SystemExit(1)
    raise SystemExit(code)


if __name__ == "__main__":
    main()
