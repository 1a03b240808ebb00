"""
Static security lint for Supabase migration scripts.

Usage:
    python -m tools.lint_migrations                 # every *.sql in supabase/migrations
    python -m tools.lint_migrations --staged        # only files staged in git
    python -m tools.lint_migrations path/to/a.sql   # explicit files

Exit code 1 when any error-level finding is reported.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Sequence

import click

from rlsguard.core_config import get_settings
from rlsguard.errors import MigrationSourceError, ToolFatalError
from rlsguard.findings import FindingReport, Severity
from rlsguard.lint import group_by_location, lint_scripts
from rlsguard.logging_setup import configure_logging
from rlsguard.sqltext import MigrationScript

logger = logging.getLogger(__name__)

ICONS = {Severity.ERROR: "❌", Severity.WARNING: "⚠️", Severity.INFO: "ℹ️"}


def _git(*args: str) -> str:
    try:
        proc = subprocess.run(["git", *args], capture_output=True, text=True, check=False)
    except FileNotFoundError as exc:
        raise MigrationSourceError("git is not installed; cannot read staged files") from exc
    if proc.returncode != 0:
        raise MigrationSourceError(f"git {args[0]} failed: {proc.stderr.strip()}")
    return proc.stdout


def staged_migration_files(directory: Path) -> List[Path]:
    """
    Added/copied/modified/renamed .sql files in the git index under ``directory``.

    git reports index paths relative to the repository root, so they are
    resolved against ``git rev-parse --show-toplevel`` rather than the
    working directory.
    """
    toplevel = Path(_git("rev-parse", "--show-toplevel").strip()).resolve()
    names = _git("diff", "--cached", "--name-only", "--diff-filter=ACMR").splitlines()
    target = directory.resolve()
    staged = []
    for name in (line.strip() for line in names):
        if not name.endswith(".sql"):
            continue
        path = toplevel / name
        if target in path.parents:
            staged.append(path)
    return staged


def all_migration_files(directory: Path) -> List[Path]:
    if not directory.is_dir():
        raise MigrationSourceError(f"Migrations directory not found: {directory}")
    return sorted(p for p in directory.glob("*.sql") if not p.name.startswith("."))


def collect_scripts(directory: Path, files: Sequence[Path], staged: bool) -> List[MigrationScript]:
    if files:
        paths = list(files)
    elif staged:
        paths = staged_migration_files(directory)
    else:
        paths = all_migration_files(directory)

    scripts = []
    for path in paths:
        if not path.is_file():
            logger.warning("Skipping missing file: %s", path)
            continue
        scripts.append(MigrationScript.load(path))
    return scripts


def render_report(report: FindingReport, script_count: int) -> None:
    click.echo(f"[lint_migrations] scanned {script_count} migration(s)")
    for location, findings in group_by_location(report.findings):
        click.echo(location)
        for finding in findings:
            click.echo(f"  {ICONS[finding.severity]} L{finding.line} {finding.rule_id}: {finding.message}")
    if not report.findings:
        click.echo("[lint_migrations] ✅ no findings")
    click.echo(
        f"[lint_migrations] {report.error_count} error(s), {report.warning_count} warning(s)"
    )


@click.command()
@click.argument("files", nargs=-1, type=click.Path(path_type=Path))
@click.option("--staged", is_flag=True, help="Lint only .sql files staged in git.")
@click.option(
    "--migrations-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Migrations directory (defaults to MIGRATIONS_DIR).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(files: tuple[Path, ...], staged: bool, migrations_dir: Path | None, verbose: bool) -> None:
    configure_logging("lint_migrations", verbose)
    try:
        directory = migrations_dir or Path(get_settings().MIGRATIONS_DIR)
        scripts = collect_scripts(directory, files, staged)
    except ToolFatalError as exc:
        click.echo(f"FATAL: {exc}", err=True)
        raise SystemExit(1)

    if staged and not scripts:
        click.echo("[lint_migrations] no staged migrations")
        raise SystemExit(0)

    report = FindingReport(lint_scripts(scripts))
    render_report(report, len(scripts))
    raise SystemExit(report.exit_code)


if __name__ == "__main__":
    main()
