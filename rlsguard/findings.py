"""
RLS Guard - Findings

A Finding is one security observation. Reports accumulate findings and
derive the CI exit status from them; nothing here ever drops a finding.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return {"error": 2, "warning": 1, "info": 0}[self.value]


@dataclass(frozen=True)
class Finding:
    rule_id: str
    severity: Severity
    message: str
    location: str = ""
    line: Optional[int] = None
    before: Optional[object] = None
    after: Optional[object] = None

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def format(self) -> str:
        where = self.location
        if self.line is not None:
            where = f"{where}:{self.line}" if where else f"line {self.line}"
        prefix = f"[{self.severity.value.upper()}] {self.rule_id}"
        return f"{prefix} {where}: {self.message}" if where else f"{prefix}: {self.message}"


@dataclass
class FindingReport:
    """Ordered collection of findings with severity tallies."""

    findings: List[Finding] = field(default_factory=list)

    def add(self, finding: Finding) -> None:
        self.findings.append(finding)

    def extend(self, findings: Iterable[Finding]) -> None:
        self.findings.extend(findings)

    def by_severity(self, severity: Severity) -> List[Finding]:
        return [f for f in self.findings if f.severity is severity]

    @property
    def error_count(self) -> int:
        return len(self.by_severity(Severity.ERROR))

    @property
    def warning_count(self) -> int:
        return len(self.by_severity(Severity.WARNING))

    @property
    def info_count(self) -> int:
        return len(self.by_severity(Severity.INFO))

    @property
    def exit_code(self) -> int:
        return 1 if self.error_count else 0


@dataclass
class CheckResult:
    """Outcome of one invariant check or attack scenario."""

    check_id: str
    title: str
    findings: List[Finding] = field(default_factory=list)
    ok_message: str = ""
    details: Optional[dict] = None

    def fail(self, message: str, location: str = "", rule_id: str | None = None) -> None:
        self.findings.append(Finding(rule_id or self.check_id, Severity.ERROR, message, location))

    def warn(self, message: str, location: str = "", rule_id: str | None = None) -> None:
        self.findings.append(Finding(rule_id or self.check_id, Severity.WARNING, message, location))

    def info(self, message: str, location: str = "", rule_id: str | None = None) -> None:
        self.findings.append(Finding(rule_id or self.check_id, Severity.INFO, message, location))

    @property
    def status(self) -> str:
        worst = max((f.severity.rank for f in self.findings), default=0)
        if worst == 2:
            return "fail"
        if worst == 1:
            return "warn"
        return "pass"

    @property
    def passed(self) -> bool:
        return self.status != "fail"
