"""
Reconcile live SECURITY DEFINER functions against the definer registry.

Usage:
    python -m tools.definer_registry              # enforce (CI)
    python -m tools.definer_registry --discover   # print scaffolds for unregistered functions

Enforcement exits 1 on unregistered functions, undeclared sensitive access or
a missing search_path. Discovery always exits 0 and never writes the registry.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List

import click

from rlsguard.catalog import CatalogReader, PrivilegedFunction
from rlsguard.core_config import get_settings
from rlsguard.db import open_pool, resolve_env
from rlsguard.errors import ToolFatalError
from rlsguard.findings import FindingReport, Severity
from rlsguard.logging_setup import configure_logging
from rlsguard.registry import Reconciliation, load_registry, reconcile, scaffold_entry

logger = logging.getLogger(__name__)

ICONS = {Severity.ERROR: "❌", Severity.WARNING: "⚠️", Severity.INFO: "ℹ️"}


def load_definer_functions() -> List[PrivilegedFunction]:
    settings = get_settings()
    with open_pool(settings=settings) as pool:
        with pool.connection() as conn:
            return CatalogReader(conn, schema=settings.SECURITY_SCHEMA).definer_functions()


def print_scaffolds(result: Reconciliation) -> None:
    if not result.unregistered:
        click.echo("[definer_registry] every definer function is registered")
        return
    click.echo(f"[definer_registry] {len(result.unregistered)} unregistered function(s); add to the registry:")
    for fn in result.unregistered:
        click.echo(json.dumps(scaffold_entry(fn), indent=2))
        if not fn.has_search_path:
            click.echo(f"  ⚠️ {fn.name} has no search_path override; fix before registering")


def render_findings(report: FindingReport) -> None:
    for finding in report.findings:
        click.echo(f"  {ICONS[finding.severity]} {finding.rule_id}: {finding.location}: {finding.message}")
    click.echo(
        f"[definer_registry] {report.error_count} error(s), {report.warning_count} warning(s)"
    )


@click.command()
@click.option(
    "--env",
    "requested_env",
    type=click.Choice(["dev", "prod"]),
    default=None,
    help="Override Supabase environment (defaults to SUPABASE_MODE).",
)
@click.option("--discover", is_flag=True, help="Print registry scaffolds instead of failing.")
@click.option(
    "--registry-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Registry location (defaults to DEFINER_REGISTRY_PATH).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(requested_env: str | None, discover: bool, registry_path: Path | None, verbose: bool) -> None:
    configure_logging("definer_registry", verbose)
    try:
        resolve_env(requested_env)
        path = registry_path or Path(get_settings().DEFINER_REGISTRY_PATH)
        registry = load_registry(path, missing_ok=discover)
        functions = load_definer_functions()
    except ToolFatalError as exc:
        click.echo(f"FATAL: {exc}", err=True)
        raise SystemExit(1)

    result = reconcile(functions, registry)
    report = FindingReport(result.findings(discover=discover))
    click.echo(
        f"[definer_registry] {len(functions)} live definer function(s), "
        f"{len(registry.functions)} registered"
    )
    if discover:
        print_scaffolds(result)
    render_findings(report)
    raise SystemExit(0 if discover else report.exit_code)


if __name__ == "__main__":
    main()
