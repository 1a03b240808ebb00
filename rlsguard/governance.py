"""
RLS Guard - Governance Heuristics

Named objects under governance (identity table, directory RPCs, sensitive
columns, allow-lists) and the predicate heuristics shared by the invariant
checker, the registry reconciler and the attack harness.

The sensitive-data and self-access heuristics are keyword and allow-list
matching. They catch the common mistakes; they are not a proof, and the
lists need periodic human review as the schema grows.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence, Set, Tuple

from rlsguard.sqltext import PUNCT, WORD, significant, strip_comments, tokenize

SELF_ACCESS_ALLOWLIST: Tuple[str, ...] = (
    "get_profile_safe",
    "get_identity_context",
    "get_email_transition_status",
    "get_accepted_invite_context",
    "finalize_auth_email_change",
    "validate_alumni_invite_token",
    "resend_alumni_invite",
    "transition_to_personal_email",
    "merge_transitioned_account",
)


@dataclass(frozen=True)
class GovernanceProfile:
    """What the checks protect. Defaults describe the campus-network schema."""

    identity_table: str = "profiles"
    directory_rpcs: Tuple[str, ...] = (
        "get_profile_public",
        "get_profiles_by_domain",
        "get_alumni_by_domain",
    )
    sensitive_columns: Tuple[str, ...] = ("personal_email",)
    self_access_allowlist: Tuple[str, ...] = SELF_ACCESS_ALLOWLIST
    restricted_tables: Tuple[str, ...] = ("email_verification_codes", "auth_hook_error_log")
    forbidden_function_patterns: Tuple[str, ...] = ("generate_email_verification_code",)
    rekey_procedures: Tuple[str, ...] = ("transition_to_personal_email",)
    merge_procedures: Tuple[str, ...] = ("merge_transitioned_account",)
    tenant_sensitive_tables: Tuple[str, ...] = ("profiles", "connections", "messages")
    critical_tables: Tuple[str, ...] = (
        "profiles",
        "connections",
        "messages",
        "email_verification_codes",
    )
    immutable_identity_column: str = "college_domain"
    admin_functions: Tuple[str, ...] = ("is_platform_admin",)
    anon_readable_tables: Tuple[str, ...] = ()


DEFAULT_PROFILE = GovernanceProfile()

_UID = r"(?:\(\s*select\s+auth\s*\.\s*uid\s*\(\s*\)(?:\s+as\s+\w+)?\s*\)|auth\s*\.\s*uid\s*\(\s*\))"
_IDENTITY_EQUALITY_RE = re.compile(
    rf"{_UID}\s*(?:=|\bin\b)|(?:(?<![!<>])=\s*(?:any\s*\()?|\bin\s*\()\s*{_UID}",
    re.IGNORECASE,
)
_ADVISORY_LOCK_RE = re.compile(r"\bpg_advisory_xact_lock\b", re.IGNORECASE)
_UNION_RE = re.compile(r"\bUNION\b", re.IGNORECASE)
_JSON_AGG_RE = re.compile(r"\bjsonb?_agg\s*\(", re.IGNORECASE)
_LIMIT_RE = re.compile(r"\bLIMIT\b", re.IGNORECASE)
_INSERT_GUARD_RE = re.compile(r"\bTG_OP\s*=\s*'INSERT'", re.IGNORECASE)


def _unwrap(expr: Optional[str]) -> str:
    """Lowercase and peel redundant outer parentheses: ``((true))`` -> ``true``."""
    text = re.sub(r"\s+", " ", strip_comments(expr or "")).strip().lower()
    while text.startswith("(") and text.endswith(")"):
        inner = text[1:-1].strip()
        depth = 0
        balanced = True
        for ch in inner:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth < 0:
                    balanced = False
                    break
        if not balanced or depth != 0:
            break
        text = inner
    return text


def is_unconditional_true(expr: Optional[str]) -> bool:
    return _unwrap(expr) == "true"


def is_explicit_deny(expr: Optional[str]) -> bool:
    return _unwrap(expr) == "false"


def references_identity(expr: Optional[str]) -> bool:
    """The expression compares something against the authenticated caller."""
    return bool(expr) and bool(_IDENTITY_EQUALITY_RE.search(strip_comments(expr or "")))


def is_admin_gate(expr: Optional[str], profile: GovernanceProfile = DEFAULT_PROFILE) -> bool:
    text = strip_comments(expr or "")
    return any(re.search(rf"\b{re.escape(fn)}\s*\(", text, re.IGNORECASE) for fn in profile.admin_functions)


def is_identity_scoped(expr: Optional[str], profile: GovernanceProfile = DEFAULT_PROFILE) -> bool:
    """Identity check, explicit deny, or administrator-capability gate."""
    return references_identity(expr) or is_explicit_deny(expr) or is_admin_gate(expr, profile)


def builds_object_with(body: str, columns: Sequence[str]) -> bool:
    """A ``json(b)_build_object(...)`` call in ``body`` includes one of ``columns``."""
    wanted = {col.lower() for col in columns}
    words = significant(tokenize(strip_comments(body or "")))
    for idx, tok in enumerate(words):
        if tok.kind != WORD or tok.text.lower() not in ("json_build_object", "jsonb_build_object"):
            continue
        depth = 0
        for inner in words[idx + 1 :]:
            if inner.kind == PUNCT and inner.text == "(":
                depth += 1
            elif inner.kind == PUNCT and inner.text == ")":
                depth -= 1
                if depth == 0:
                    break
            elif depth > 0 and inner.text.strip("'\"").lower() in wanted:
                return True
    return False


def has_advisory_lock(body: str) -> bool:
    return bool(_ADVISORY_LOCK_RE.search(strip_comments(body or "")))


def has_union_check(body: str) -> bool:
    return bool(_UNION_RE.search(strip_comments(body or "")))


def has_unbounded_json_agg(body: str) -> bool:
    stripped = strip_comments(body or "")
    return bool(_JSON_AGG_RE.search(stripped)) and not _LIMIT_RE.search(stripped)


def assigns_identity_column(body: str, column: str) -> bool:
    pattern = rf"\bNEW\s*\.\s*{re.escape(column)}\s*:?=(?!=)"
    return bool(re.search(pattern, strip_comments(body or ""), re.IGNORECASE))


_TRIGGER_EVENTS = ("INSERT", "UPDATE", "DELETE", "TRUNCATE")


def trigger_events(definition: str) -> Set[str]:
    """
    Events a trigger fires on, read from its ``pg_get_triggerdef`` text.

    ``CREATE [CONSTRAINT] TRIGGER name {BEFORE|AFTER|INSTEAD OF} event [OR event ...] ON ...``.
    The trigger and function names never count as events.
    """
    words = significant(tokenize(definition or ""))
    start = next((idx for idx, tok in enumerate(words) if tok.is_word("TRIGGER")), None)
    if start is None:
        return set()
    pos = start + 2
    if pos < len(words) and words[pos].is_word("INSTEAD"):
        pos += 1
    events: Set[str] = set()
    expect_event = True
    for tok in words[pos + 1 :]:
        if tok.is_word("ON"):
            break
        if expect_event and tok.is_word(*_TRIGGER_EVENTS):
            events.add(tok.upper)
            expect_event = False
        elif tok.is_word("OR"):
            expect_event = True
    return events


def guards_identity_column(body: str, definition: str, column: str) -> bool:
    """The trigger only sets the column on insert, or only when it was empty."""
    if "UPDATE" not in trigger_events(definition):
        return True
    stripped = strip_comments(body or "")
    if _INSERT_GUARD_RE.search(stripped):
        return True
    return bool(re.search(rf"\bOLD\s*\.\s*{re.escape(column)}\s+IS\s+NULL\b", stripped, re.IGNORECASE))
