"""
RLS Guard - Migration Lint Rules

Static security rules over migration script text. Pattern rules are regexes
over comment-stripped text; policy and function rules work on parsed
statements and delimiter-matched function blocks so a clause in one function
is never credited to, or blamed on, another.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Set, Tuple

from rlsguard.findings import Finding, Severity
from rlsguard.governance import is_unconditional_true
from rlsguard.sqltext import MigrationScript, line_of


@dataclass(frozen=True)
class PatternRule:
    rule_id: str
    severity: Severity
    pattern: re.Pattern
    message: str


PATTERN_RULES: Tuple[PatternRule, ...] = (
    PatternRule(
        "NO_GRANT_ALL",
        Severity.ERROR,
        re.compile(r"\bGRANT\s+ALL(?:\s+PRIVILEGES)?\s+ON\b", re.IGNORECASE),
        "GRANT ALL is forbidden; grant the specific privileges each role needs",
    ),
    PatternRule(
        "NO_DISABLE_RLS",
        Severity.ERROR,
        re.compile(r"\bDISABLE\s+ROW\s+LEVEL\s+SECURITY\b", re.IGNORECASE),
        "Disabling row level security is forbidden",
    ),
    PatternRule(
        "NO_NO_FORCE_RLS",
        Severity.WARNING,
        re.compile(r"\bNO\s+FORCE\s+ROW\s+LEVEL\s+SECURITY\b", re.IGNORECASE),
        "Removing FORCE ROW LEVEL SECURITY lets the table owner bypass policies",
    ),
    PatternRule(
        "NO_PUBLIC_EXECUTE",
        Severity.ERROR,
        re.compile(
            r"\bGRANT\s+EXECUTE\s+ON\s+(?:ALL\s+)?(?:FUNCTIONS?|PROCEDURES?|ROUTINES?)\b[^;]*?\bTO\s+[^;]*?\b(?:public|anon)\b",
            re.IGNORECASE,
        ),
        "EXECUTE must not be granted to public or anon",
    ),
    PatternRule(
        "NO_RETURN_QUERY_SELECT_STAR",
        Severity.ERROR,
        re.compile(r"\bRETURN\s+QUERY\s+SELECT\s+\*", re.IGNORECASE),
        "RETURN QUERY SELECT * returns every column; enumerate them",
    ),
    PatternRule(
        "NO_FORCE_ROLE",
        Severity.WARNING,
        re.compile(r"\bSET\s+(?:LOCAL\s+|SESSION\s+)?ROLE\b", re.IGNORECASE),
        "SET ROLE in a migration changes the privileges of everything after it",
    ),
)

RULE_ORDER: Tuple[str, ...] = (
    "NO_USING_TRUE",
    "NO_GRANT_ALL",
    "DEFINER_WITHOUT_SEARCH_PATH",
    "NO_SELECT_STAR_IN_DEFINER",
    "NO_RETURN_QUERY_SELECT_STAR",
    "NO_DROP_POLICY_WITHOUT_REPLACEMENT",
    "NO_DISABLE_RLS",
    "NO_NO_FORCE_RLS",
    "NO_PUBLIC_EXECUTE",
    "NO_FORCE_ROLE",
)


def _pattern_findings(script: MigrationScript, stripped: str) -> List[Finding]:
    findings = []
    for rule in PATTERN_RULES:
        for match in rule.pattern.finditer(stripped):
            findings.append(
                Finding(rule.rule_id, rule.severity, rule.message, script.identifier, line_of(stripped, match.start()))
            )
    return findings


def _policy_findings(script: MigrationScript) -> List[Finding]:
    findings = []
    statements = script.policy_statements()

    created_keys: Set[str] = set()
    created_tables: Set[str] = set()
    for stmt in statements:
        if stmt.action == "CREATE":
            created_keys.add(stmt.key)
            created_tables.add(stmt.table)

    for stmt in statements:
        if stmt.action in ("CREATE", "ALTER") and is_unconditional_true(stmt.using):
            if stmt.command in ("SELECT", "ALL"):
                findings.append(
                    Finding(
                        "NO_USING_TRUE",
                        Severity.ERROR,
                        f"{stmt.command} policy {stmt.name} is USING (true): every row is visible",
                        script.identifier,
                        stmt.line,
                    )
                )
            else:
                command = stmt.command or "altered"
                findings.append(
                    Finding(
                        "NO_USING_TRUE",
                        Severity.WARNING,
                        f"{command} policy {stmt.name} is USING (true); confirm it is own-row only",
                        script.identifier,
                        stmt.line,
                    )
                )
        if stmt.action == "DROP" and stmt.key not in created_keys and stmt.table not in created_tables:
            findings.append(
                Finding(
                    "NO_DROP_POLICY_WITHOUT_REPLACEMENT",
                    Severity.WARNING,
                    f"policy {stmt.name} on {stmt.table} is dropped with no replacement in this script",
                    script.identifier,
                    stmt.line,
                )
            )
    return findings


def _function_findings(script: MigrationScript) -> List[Finding]:
    findings = []
    for block in script.function_blocks():
        if not block.security_definer:
            continue
        if not block.has_search_path:
            findings.append(
                Finding(
                    "DEFINER_WITHOUT_SEARCH_PATH",
                    Severity.ERROR,
                    f"SECURITY DEFINER {block.kind.lower()} {block.name} does not SET search_path",
                    script.identifier,
                    block.line,
                )
            )
        star_lines = block.select_star_lines()
        if star_lines:
            findings.append(
                Finding(
                    "NO_SELECT_STAR_IN_DEFINER",
                    Severity.ERROR,
                    f"SECURITY DEFINER {block.kind.lower()} {block.name} projects SELECT *",
                    script.identifier,
                    star_lines[0],
                )
            )
    return findings


def _order(finding: Finding) -> Tuple[int, int, str]:
    rank = RULE_ORDER.index(finding.rule_id) if finding.rule_id in RULE_ORDER else len(RULE_ORDER)
    return (finding.line or 0, rank, finding.message)


def lint_script(script: MigrationScript) -> List[Finding]:
    stripped = script.strip_comments()
    findings = _pattern_findings(script, stripped)
    findings.extend(_policy_findings(script))
    findings.extend(_function_findings(script))
    return sorted(findings, key=_order)


def lint_scripts(scripts: Sequence[MigrationScript]) -> List[Finding]:
    """Lint scripts in the given order; same input, same findings."""
    findings: List[Finding] = []
    for script in scripts:
        findings.extend(lint_script(script))
    return findings


def group_by_location(findings: Iterable[Finding]) -> List[Tuple[str, List[Finding]]]:
    groups: List[Tuple[str, List[Finding]]] = []
    for finding in findings:
        if groups and groups[-1][0] == finding.location:
            groups[-1][1].append(finding)
        else:
            groups.append((finding.location, [finding]))
    return groups
