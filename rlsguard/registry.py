"""
RLS Guard - Security Definer Registry

Every security-definer function must be declared in a human-maintained JSON
registry: what it is for, whether it reads sensitive data, why definer rights
are needed, and who owns it. The reconciler compares the registry with the
live catalog; it never writes the registry itself.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Sequence

from pydantic import BaseModel, ValidationError

from rlsguard.catalog import PrivilegedFunction
from rlsguard.errors import DocumentError
from rlsguard.findings import Finding, Severity
from rlsguard.governance import DEFAULT_PROFILE, GovernanceProfile

logger = logging.getLogger(__name__)

SCAFFOLD_PURPOSE = "TODO: describe purpose"


class RegistryEntry(BaseModel):
    purpose: str
    pii_access: bool
    justification: str = ""
    owner: str = ""
    added: str = ""


@dataclass
class DefinerRegistry:
    functions: Dict[str, RegistryEntry] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.functions


def load_registry(path: Path, missing_ok: bool = False) -> DefinerRegistry:
    """
    Load the registry document.

    Accepts ``{"functions": {...}}`` or a bare ``{name: entry}`` mapping.
    ``missing_ok`` treats an absent file as an empty registry (discovery).
    """
    if not path.exists():
        if missing_ok:
            logger.info("Registry %s not found; starting from an empty registry", path)
            return DefinerRegistry()
        raise DocumentError(f"Definer registry not found at {path}. Run with --discover to bootstrap it.")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise DocumentError(f"Definer registry {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise DocumentError(f"Definer registry {path} must be a JSON object")

    raw = payload.get("functions", payload)
    if not isinstance(raw, dict):
        raise DocumentError(f"Definer registry {path}: 'functions' must be an object")

    entries: Dict[str, RegistryEntry] = {}
    for name, entry in raw.items():
        if name.startswith("_"):
            continue
        try:
            entries[name] = RegistryEntry.model_validate(entry)
        except ValidationError as exc:
            raise DocumentError(f"Definer registry {path}: invalid entry for {name}: {exc}") from exc
    return DefinerRegistry(entries)


@dataclass
class Reconciliation:
    unregistered: List[PrivilegedFunction] = field(default_factory=list)
    possibly_removed: List[str] = field(default_factory=list)
    undeclared_sensitive_access: List[PrivilegedFunction] = field(default_factory=list)
    missing_search_path: List[PrivilegedFunction] = field(default_factory=list)

    def findings(self, discover: bool = False) -> List[Finding]:
        out: List[Finding] = []
        if not discover:
            for fn in self.unregistered:
                out.append(
                    Finding(
                        "unregistered",
                        Severity.ERROR,
                        "security definer function is not in the registry",
                        fn.name,
                    )
                )
        for name in self.possibly_removed:
            out.append(
                Finding(
                    "possibly_removed",
                    Severity.WARNING,
                    "registered function not found in the database",
                    name,
                )
            )
        for fn in self.undeclared_sensitive_access:
            out.append(
                Finding(
                    "undeclared_sensitive_access",
                    Severity.ERROR,
                    "function reads sensitive columns but is registered with pii_access=false",
                    fn.name,
                )
            )
        for fn in self.missing_search_path:
            out.append(
                Finding(
                    "missing_search_path",
                    Severity.WARNING if discover else Severity.ERROR,
                    "security definer function has no search_path override",
                    fn.name,
                )
            )
        return out


def reconcile(
    functions: Sequence[PrivilegedFunction],
    registry: DefinerRegistry,
    profile: GovernanceProfile = DEFAULT_PROFILE,
) -> Reconciliation:
    result = Reconciliation()
    live_names = set()
    for fn in sorted(functions, key=lambda f: f.key):
        if not fn.security_definer:
            continue
        # Overloads share one registry entry
        first_overload = fn.name not in live_names
        live_names.add(fn.name)
        entry = registry.functions.get(fn.name)
        if entry is None:
            if first_overload:
                result.unregistered.append(fn)
        elif (
            not entry.pii_access
            and fn.name not in profile.self_access_allowlist
            and fn.references_columns(profile.sensitive_columns)
            and fn.name not in {f.name for f in result.undeclared_sensitive_access}
        ):
            result.undeclared_sensitive_access.append(fn)
        if not fn.has_search_path:
            result.missing_search_path.append(fn)
    result.possibly_removed = sorted(set(registry.functions) - live_names)
    return result


def scaffold_entry(
    fn: PrivilegedFunction,
    profile: GovernanceProfile = DEFAULT_PROFILE,
    today: date | None = None,
) -> Dict[str, dict]:
    """A ready-to-paste registry entry for an unregistered function."""
    entry = RegistryEntry(
        purpose=SCAFFOLD_PURPOSE,
        pii_access=fn.references_columns(profile.sensitive_columns),
        justification="TODO: why SECURITY DEFINER is required",
        owner="TODO",
        added=(today or date.today()).isoformat(),
    )
    return {fn.name: entry.model_dump()}
