"""
RLS Guard - Policy/Function Snapshot

Freeze the live security surface (policies, security-definer functions, RLS
flags) into a versioned JSON baseline and diff later states against it.

Content is compared by normalized hash, so whitespace, comment and keyword
case edits never register as drift. ``generated_at`` and ``summary`` are
descriptive only and take no part in the diff.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from rlsguard.catalog import CatalogReader
from rlsguard.errors import DocumentError
from rlsguard.findings import Finding, Severity
from rlsguard.sqltext import short_hash

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1


class PolicyEntry(BaseModel):
    cmd: str
    permissive: bool = True
    roles: List[str] = Field(default_factory=list)
    qual_hash: Optional[str] = None
    with_check_hash: Optional[str] = None

    @field_validator("permissive", mode="before")
    @classmethod
    def _coerce_permissive(cls, value: object) -> object:
        # pg_policies reports PERMISSIVE / RESTRICTIVE as text
        if isinstance(value, str):
            return value.strip().upper() != "RESTRICTIVE"
        return value


class FunctionEntry(BaseModel):
    args: str = ""
    config: List[str] = Field(default_factory=list)
    body_hash: str


class TableEntry(BaseModel):
    rls_enabled: bool
    rls_forced: bool = False


class SnapshotSummary(BaseModel):
    total_policies: int = 0
    total_definer_functions: int = 0
    rls_enabled_tables: int = 0
    total_tables: int = 0


class SecuritySnapshot(BaseModel):
    format_version: int = SNAPSHOT_FORMAT_VERSION
    generated_at: str = ""
    summary: SnapshotSummary = Field(default_factory=SnapshotSummary)
    policies: Dict[str, PolicyEntry] = Field(default_factory=dict)
    definer_functions: Dict[str, FunctionEntry] = Field(default_factory=dict)
    rls_tables: Dict[str, TableEntry] = Field(default_factory=dict)


def build_snapshot(reader: CatalogReader, now: datetime | None = None) -> SecuritySnapshot:
    policies = {
        policy.key: PolicyEntry(
            cmd=policy.command,
            permissive=policy.permissive,
            roles=sorted(policy.roles),
            qual_hash=short_hash(policy.using),
            with_check_hash=short_hash(policy.with_check),
        )
        for policy in reader.policies()
    }
    functions = {
        fn.key: FunctionEntry(
            args=fn.signature,
            config=sorted(fn.config),
            body_hash=short_hash(fn.body) or "",
        )
        for fn in reader.definer_functions()
    }
    tables = {
        table.table: TableEntry(rls_enabled=table.rls_enabled, rls_forced=table.rls_forced)
        for table in reader.tables()
    }
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    return SecuritySnapshot(
        generated_at=stamp,
        summary=SnapshotSummary(
            total_policies=len(policies),
            total_definer_functions=len(functions),
            rls_enabled_tables=sum(1 for t in tables.values() if t.rls_enabled),
            total_tables=len(tables),
        ),
        policies=policies,
        definer_functions=functions,
        rls_tables=tables,
    )


def load_snapshot(path: Path) -> SecuritySnapshot:
    if not path.exists():
        raise DocumentError(
            f"Baseline snapshot not found at {path}. Run with --snapshot to create it."
        )
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise DocumentError(f"Baseline snapshot {path} is not valid JSON: {exc}") from exc
    try:
        snapshot = SecuritySnapshot.model_validate(payload)
    except ValidationError as exc:
        raise DocumentError(f"Baseline snapshot {path} is malformed: {exc}") from exc
    if snapshot.format_version > SNAPSHOT_FORMAT_VERSION:
        raise DocumentError(
            f"Baseline snapshot {path} has format_version={snapshot.format_version}; "
            f"this tool reads up to {SNAPSHOT_FORMAT_VERSION}."
        )
    return snapshot


def write_snapshot(snapshot: SecuritySnapshot, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(snapshot.model_dump(mode="json"), indent=2, sort_keys=True)
    path.write_text(payload + "\n", encoding="utf-8")
    logger.info("Wrote security snapshot to %s", path)


@dataclass
class SnapshotDiff:
    policies_added: List[str] = field(default_factory=list)
    policies_removed: List[str] = field(default_factory=list)
    policies_changed: List[Tuple[str, dict, dict]] = field(default_factory=list)
    functions_added: List[str] = field(default_factory=list)
    functions_removed: List[str] = field(default_factory=list)
    functions_changed: List[Tuple[str, dict, dict]] = field(default_factory=list)
    rls_disabled: List[str] = field(default_factory=list)
    rls_force_removed: List[str] = field(default_factory=list)
    tables_added: List[str] = field(default_factory=list)
    tables_removed: List[str] = field(default_factory=list)
    new_tables_without_rls: List[str] = field(default_factory=list)

    def is_clean(self) -> bool:
        return not any(getattr(self, name) for name in self.__dataclass_fields__)

    @property
    def has_critical(self) -> bool:
        return any(f.is_error for f in self.findings())

    def findings(self) -> List[Finding]:
        out: List[Finding] = []
        for table in self.rls_disabled:
            out.append(Finding("rls_disabled", Severity.ERROR, "row level security was disabled", table))
        for table in self.rls_force_removed:
            out.append(
                Finding("rls_force_removed", Severity.ERROR, "FORCE ROW LEVEL SECURITY was removed", table)
            )
        for key in self.policies_removed:
            out.append(Finding("policy_removed", Severity.ERROR, "policy no longer exists", key))
        for key in self.functions_removed:
            out.append(
                Finding("function_removed", Severity.ERROR, "security definer function no longer exists", key)
            )
        for key, before, after in self.policies_changed:
            out.append(
                Finding("policy_changed", Severity.WARNING, "policy definition changed", key, before=before, after=after)
            )
        for key, before, after in self.functions_changed:
            out.append(
                Finding(
                    "function_changed",
                    Severity.WARNING,
                    "function body or config changed",
                    key,
                    before=before,
                    after=after,
                )
            )
        for table in self.new_tables_without_rls:
            out.append(
                Finding("new_table_without_rls", Severity.WARNING, "new table without row level security", table)
            )
        for key in self.policies_added:
            out.append(Finding("policy_added", Severity.INFO, "new policy", key))
        for key in self.functions_added:
            out.append(Finding("function_added", Severity.INFO, "new security definer function", key))
        for table in self.tables_added:
            out.append(Finding("table_added", Severity.INFO, "new table", table))
        for table in self.tables_removed:
            out.append(Finding("table_removed", Severity.INFO, "table no longer exists", table))
        return out


def _changed(baseline: Dict[str, BaseModel], current: Dict[str, BaseModel]) -> List[Tuple[str, dict, dict]]:
    changed = []
    for key in sorted(baseline.keys() & current.keys()):
        before = baseline[key].model_dump()
        after = current[key].model_dump()
        if before != after:
            changed.append((key, before, after))
    return changed


def diff_snapshots(baseline: SecuritySnapshot, current: SecuritySnapshot) -> SnapshotDiff:
    diff = SnapshotDiff(
        policies_added=sorted(current.policies.keys() - baseline.policies.keys()),
        policies_removed=sorted(baseline.policies.keys() - current.policies.keys()),
        policies_changed=_changed(baseline.policies, current.policies),  # type: ignore[arg-type]
        functions_added=sorted(current.definer_functions.keys() - baseline.definer_functions.keys()),
        functions_removed=sorted(baseline.definer_functions.keys() - current.definer_functions.keys()),
        functions_changed=_changed(baseline.definer_functions, current.definer_functions),  # type: ignore[arg-type]
        tables_removed=sorted(baseline.rls_tables.keys() - current.rls_tables.keys()),
    )
    for table in sorted(current.rls_tables.keys() - baseline.rls_tables.keys()):
        if current.rls_tables[table].rls_enabled:
            diff.tables_added.append(table)
        else:
            diff.new_tables_without_rls.append(table)
    for table in sorted(baseline.rls_tables.keys() & current.rls_tables.keys()):
        before = baseline.rls_tables[table]
        after = current.rls_tables[table]
        if before.rls_enabled and not after.rls_enabled:
            diff.rls_disabled.append(table)
        if before.rls_forced and not after.rls_forced:
            diff.rls_force_removed.append(table)
    return diff


def format_drift(diff: SnapshotDiff) -> List[str]:
    lines: List[str] = []
    for finding in diff.findings():
        lines.append(f"- {finding.format()}")
        if finding.before is not None or finding.after is not None:
            lines.append(f"    before: {json.dumps(finding.before, sort_keys=True)}")
            lines.append(f"    after:  {json.dumps(finding.after, sort_keys=True)}")
    return lines
