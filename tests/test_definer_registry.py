from __future__ import annotations

import json
from datetime import date
from pathlib import Path

import pytest
from click.testing import CliRunner

from rlsguard.errors import DocumentError
from rlsguard.findings import Severity
from rlsguard.governance import GovernanceProfile
from rlsguard.registry import DefinerRegistry, RegistryEntry, load_registry, reconcile, scaffold_entry
from tests.helpers import make_function
from tools import definer_registry

pytestmark = pytest.mark.security


def _entry(pii_access: bool = False) -> RegistryEntry:
    return RegistryEntry(purpose="directory lookup", pii_access=pii_access, owner="platform")


def _write(tmp_path, payload) -> Path:
    path = tmp_path / "registry.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


# =============================================================================
# LOADING
# =============================================================================


def test_load_wrapped_and_bare_shapes(tmp_path):
    entry = {"purpose": "lookup", "pii_access": False}
    wrapped = load_registry(_write(tmp_path, {"_comment": "x", "functions": {"get_profile_public": entry}}))
    bare = load_registry(_write(tmp_path, {"_comment": "maintained by hand", "get_profile_public": entry}))

    assert set(wrapped.functions) == {"get_profile_public"}
    assert set(bare.functions) == {"get_profile_public"}
    assert "get_profile_public" in bare


def test_missing_registry(tmp_path):
    with pytest.raises(DocumentError, match="--discover"):
        load_registry(tmp_path / "absent.json")

    assert load_registry(tmp_path / "absent.json", missing_ok=True).functions == {}


@pytest.mark.parametrize(
    "payload,match",
    [
        ("[1, 2]", "JSON object"),
        ('{"functions": []}', "'functions' must be an object"),
        ('{"f": {"purpose": "x"}}', "invalid entry for f"),
        ("{broken", "not valid JSON"),
    ],
)
def test_malformed_registry(tmp_path, payload, match):
    path = tmp_path / "registry.json"
    path.write_text(payload, encoding="utf-8")

    with pytest.raises(DocumentError, match=match):
        load_registry(path)


# =============================================================================
# RECONCILIATION
# =============================================================================


def test_reconcile_categories():
    functions = [
        make_function("get_profile_public", body="SELECT id FROM profiles"),
        make_function("lookup_contact", body="SELECT personal_email FROM profiles"),
        make_function("get_profile_safe", body="SELECT personal_email FROM profiles WHERE id = auth.uid()"),
        make_function("new_rpc", config=()),
        make_function("plain_invoker", security_definer=False),
    ]
    registry = DefinerRegistry(
        {
            "get_profile_public": _entry(),
            "lookup_contact": _entry(),
            "get_profile_safe": _entry(),
            "dropped_rpc": _entry(),
        }
    )

    result = reconcile(functions, registry)

    assert [fn.name for fn in result.unregistered] == ["new_rpc"]
    assert result.possibly_removed == ["dropped_rpc"]
    assert [fn.name for fn in result.undeclared_sensitive_access] == ["lookup_contact"]
    assert [fn.name for fn in result.missing_search_path] == ["new_rpc"]

    enforced = [(f.rule_id, f.severity) for f in result.findings()]
    assert enforced == [
        ("unregistered", Severity.ERROR),
        ("possibly_removed", Severity.WARNING),
        ("undeclared_sensitive_access", Severity.ERROR),
        ("missing_search_path", Severity.ERROR),
    ]
    discovered = [(f.rule_id, f.severity) for f in result.findings(discover=True)]
    assert discovered == [
        ("possibly_removed", Severity.WARNING),
        ("undeclared_sensitive_access", Severity.ERROR),
        ("missing_search_path", Severity.WARNING),
    ]


def test_overloads_share_one_entry():
    functions = [
        make_function("search_users", signature="q text"),
        make_function("search_users", signature="q text, lim integer"),
    ]

    unregistered = reconcile(functions, DefinerRegistry())
    registered = reconcile(functions, DefinerRegistry({"search_users": _entry()}))

    assert len(unregistered.unregistered) == 1
    assert registered.findings() == []


def test_declared_pii_access_is_accepted():
    functions = [make_function("lookup_contact", body="SELECT personal_email FROM profiles")]

    result = reconcile(functions, DefinerRegistry({"lookup_contact": _entry(pii_access=True)}))

    assert result.findings() == []


def test_commented_column_is_not_access():
    functions = [make_function("lookup", body="-- personal_email is never read\nSELECT id FROM profiles")]

    result = reconcile(functions, DefinerRegistry({"lookup": _entry()}))

    assert result.undeclared_sensitive_access == []


def test_sensitive_columns_come_from_the_profile():
    functions = [
        make_function("lookup_phone", body="SELECT phone_number FROM profiles"),
        make_function("lookup_contact", body="SELECT personal_email FROM profiles"),
    ]
    registry = DefinerRegistry({"lookup_phone": _entry(), "lookup_contact": _entry()})
    profile = GovernanceProfile(sensitive_columns=("phone_number",))

    result = reconcile(functions, registry, profile)

    assert [fn.name for fn in result.undeclared_sensitive_access] == ["lookup_phone"]
    assert scaffold_entry(functions[0], profile, today=date(2024, 5, 1))["lookup_phone"]["pii_access"] is True
    assert scaffold_entry(functions[1], profile, today=date(2024, 5, 1))["lookup_contact"]["pii_access"] is False


def test_scaffold_entry():
    fn = make_function("lookup_contact", body="SELECT personal_email FROM profiles")

    scaffold = scaffold_entry(fn, today=date(2024, 5, 1))

    assert scaffold == {
        "lookup_contact": {
            "purpose": "TODO: describe purpose",
            "pii_access": True,
            "justification": "TODO: why SECURITY DEFINER is required",
            "owner": "TODO",
            "added": "2024-05-01",
        }
    }


# =============================================================================
# CLI
# =============================================================================


@pytest.fixture
def live_functions(monkeypatch):
    functions = [
        make_function("get_profile_public"),
        make_function("new_rpc", config=()),
    ]
    monkeypatch.setattr(definer_registry, "load_definer_functions", lambda: functions)
    return functions


def test_cli_enforce_fails_on_unregistered(tmp_path, live_functions):
    path = _write(tmp_path, {"functions": {"get_profile_public": {"purpose": "x", "pii_access": False}}})

    result = CliRunner().invoke(definer_registry.main, ["--registry-path", str(path)])

    assert result.exit_code == 1
    assert "unregistered: new_rpc" in result.output
    assert "2 error(s)" in result.output


def test_cli_discover_prints_scaffolds_and_exits_zero(tmp_path, live_functions):
    path = tmp_path / "absent.json"

    result = CliRunner().invoke(definer_registry.main, ["--discover", "--registry-path", str(path)])

    assert result.exit_code == 0
    assert '"new_rpc"' in result.output
    assert '"get_profile_public"' in result.output
    assert "new_rpc has no search_path override" in result.output
    assert not path.exists()


def test_cli_enforce_missing_registry_is_fatal(tmp_path, live_functions):
    result = CliRunner().invoke(definer_registry.main, ["--registry-path", str(tmp_path / "absent.json")])

    assert result.exit_code == 1
    assert "FATAL" in result.output
