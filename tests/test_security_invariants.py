"""
Tests for the security invariant battery.

Each test starts from a catalog that satisfies every invariant and breaks
exactly one thing, so a failure points at the check that regressed.
"""

from __future__ import annotations

import psycopg
import pytest
from click.testing import CliRunner

from rlsguard.catalog import CatalogReader, TriggerInfo
from rlsguard.errors import DatabaseUnavailableError
from rlsguard.findings import CheckResult, Severity
from rlsguard.invariants import INVARIANTS, run_invariants
from tests.helpers import FakeCatalog, RecordingConnection, healthy_catalog, make_function, make_policy
from tools import security_invariants

pytestmark = pytest.mark.security


def _by_id(catalog):
    return {r.check_id: r for r in run_invariants(catalog)}


def _replace_policy(name: str, table: str, **kwargs):
    policies = [p for p in healthy_catalog().policies() if not (p.table == table and p.name == name)]
    policies.append(make_policy(table, name, **kwargs))
    return policies


def _replace_function(name: str, **kwargs):
    functions = [f for f in healthy_catalog().functions() if f.name != name]
    functions.append(make_function(name, **kwargs))
    return functions


def test_healthy_catalog_passes_every_check():
    results = run_invariants(healthy_catalog())

    assert [r.check_id for r in results] == [
        "1", "2", "3", "4", "5", "6", "7", "8", "9", "10-11", "12", "13", "14",
    ]
    assert {r.status for r in results} == {"pass"}
    assert len(results) == len(INVARIANTS)


def test_only_selects_checks():
    results = run_invariants(healthy_catalog(), only=["9", "1"])

    assert [r.check_id for r in results] == ["1", "9"]


# =============================================================================
# POLICIES
# =============================================================================


def test_identity_table_using_true_fails_several_checks():
    results = _by_id(healthy_catalog(policies=_replace_policy("own profile", "profiles", using="true")))

    assert results["1"].status == "fail"
    assert results["7"].status == "fail"
    assert results["8"].status == "fail"
    assert {f.rule_id for f in results["14"].findings if f.severity is Severity.ERROR} == {"14a", "14b"}


def test_identity_table_without_select_policy_fails():
    policies = [p for p in healthy_catalog().policies() if p.key != "profiles.own profile"]

    result = _by_id(healthy_catalog(policies=policies))["1"]

    assert result.status == "fail"
    assert "no SELECT policy" in result.findings[0].message


def test_authenticated_but_not_scoped_policy_fails():
    results = _by_id(
        healthy_catalog(policies=_replace_policy("own profile", "profiles", using="(auth.uid() IS NOT NULL)"))
    )

    assert results["1"].status == "fail"
    assert results["7"].status == "pass"
    assert results["14"].findings[0].location == "profiles.own profile"


def test_readable_restricted_table_fails():
    policies = _replace_policy(
        "deny all", "email_verification_codes", command="ALL", using="(auth.uid() = user_id)"
    )

    result = _by_id(healthy_catalog(policies=policies))["4"]

    assert result.status == "fail"
    assert result.findings[0].location == "email_verification_codes.deny all"


def test_using_true_on_update_only_warns():
    policies = _replace_policy("own update", "profiles", command="UPDATE", using="(true)")

    results = _by_id(healthy_catalog(policies=policies))

    assert results["7"].status == "warn"
    assert results["14"].status == "pass"


def test_broad_policy_on_non_critical_table_is_review_warning():
    policies = list(healthy_catalog().policies()) + [
        make_policy("posts", "feed", using="(visibility = 'public')")
    ]

    result = _by_id(healthy_catalog(policies=policies))["14"]

    assert result.status == "warn"
    assert [f.rule_id for f in result.findings if f.severity is Severity.WARNING] == ["14b"]


# =============================================================================
# FUNCTIONS
# =============================================================================


def test_missing_directory_rpc_fails():
    functions = [f for f in healthy_catalog().functions() if f.name != "get_alumni_by_domain"]

    result = _by_id(healthy_catalog(functions=functions))["2"]

    assert [f.location for f in result.findings] == ["get_alumni_by_domain"]


def test_sensitive_json_outside_allowlist_fails():
    leaky = "SELECT jsonb_build_object('id', p.id, 'personal_email', p.personal_email) FROM profiles p"

    result = _by_id(healthy_catalog(functions=_replace_function("get_profile_public", body=leaky)))["3"]

    assert result.status == "fail"
    assert result.findings[0].location == "get_profile_public()"


def test_forbidden_function_fails():
    functions = list(healthy_catalog().functions()) + [
        make_function("generate_email_verification_code", security_definer=False)
    ]

    assert _by_id(healthy_catalog(functions=functions))["5"].status == "fail"


def test_rekey_without_lock_fails_and_missing_procedure_warns():
    unlocked = _replace_function(
        "transition_to_personal_email",
        body="SELECT 1 FROM profiles UNION SELECT 1 FROM auth.users",
    )
    result = _by_id(healthy_catalog(functions=unlocked))["6"]
    assert [f.message for f in result.findings] == ["missing pg_advisory_xact_lock"]

    absent = [f for f in healthy_catalog().functions() if f.name != "merge_transitioned_account"]
    result = _by_id(healthy_catalog(functions=absent))["12"]
    assert result.status == "warn"


def test_definer_without_search_path_fails_and_select_star_warns():
    functions = _replace_function("get_profiles_by_domain", config=())
    functions.append(make_function("dump_profiles", body="SELECT * FROM profiles LIMIT 10"))

    result = _by_id(healthy_catalog(functions=functions))["9"]

    assert result.status == "fail"
    assert [(f.rule_id, f.severity, f.location) for f in result.findings] == [
        ("9", Severity.ERROR, "get_profiles_by_domain()"),
        ("9b", Severity.WARNING, "dump_profiles()"),
    ]


def test_unbounded_json_agg_fails():
    functions = _replace_function("get_alumni_by_domain", body="SELECT jsonb_agg(p) FROM profiles p")

    assert _by_id(healthy_catalog(functions=functions))["13"].status == "fail"


# =============================================================================
# TRIGGERS
# =============================================================================


def test_trigger_overwriting_identity_column_warns():
    body = "BEGIN NEW.college_domain := split_part(NEW.email, '@', 2); RETURN NEW; END;"
    triggers = {
        "profiles": [
            TriggerInfo(
                table="profiles",
                name="set_domain",
                function_name="set_college_domain",
                function_body=body,
                definition="CREATE TRIGGER set_domain BEFORE INSERT OR UPDATE ON public.profiles",
            )
        ]
    }

    result = _by_id(healthy_catalog(triggers=triggers))["10-11"]

    assert result.status == "warn"
    assert result.findings[0].location == "profiles.set_domain"


def test_insert_only_trigger_named_after_update_passes():
    body = "BEGIN NEW.college_domain := split_part(NEW.email, '@', 2); RETURN NEW; END;"
    triggers = {
        "profiles": [
            TriggerInfo(
                table="profiles",
                name="update_college_domain",
                function_name="update_college_domain",
                function_body=body,
                definition=(
                    "CREATE TRIGGER update_college_domain BEFORE INSERT ON public.profiles "
                    "FOR EACH ROW EXECUTE FUNCTION update_college_domain()"
                ),
            )
        ]
    }

    result = _by_id(healthy_catalog(triggers=triggers))["10-11"]

    assert result.status == "pass"


def test_catalog_triggers_skip_disabled_triggers():
    rows = [
        {
            "name": "set_domain",
            "function_name": "set_college_domain",
            "function_body": None,
            "definition": "CREATE TRIGGER set_domain BEFORE INSERT ON public.profiles",
        }
    ]
    conn = RecordingConnection(lambda query, params: (rows, len(rows)))

    triggers = CatalogReader(conn).triggers("profiles")

    ((query, params),) = conn.statements
    assert "t.tgenabled <> 'D'" in query
    assert params == ("public", "profiles")
    assert [(t.name, t.function_body) for t in triggers] == [("set_domain", "")]


# =============================================================================
# FAILURE ISOLATION
# =============================================================================


class _BrokenTriggers(FakeCatalog):
    def __init__(self, error: Exception, **kwargs):
        super().__init__(**kwargs)
        self.error = error

    def triggers(self, table):
        raise self.error


def _broken(error: Exception) -> _BrokenTriggers:
    healthy = healthy_catalog()
    return _BrokenTriggers(
        error,
        policies=healthy.policies(),
        functions=healthy.functions(),
        tables=healthy.tables(),
    )


def test_check_that_raises_fails_alone():
    results = _by_id(_broken(ValueError("bad row")))

    assert results["10-11"].status == "fail"
    assert "ValueError" in results["10-11"].findings[0].message
    assert all(r.status == "pass" for cid, r in results.items() if cid != "10-11")


def test_lost_connection_aborts_the_run():
    with pytest.raises(DatabaseUnavailableError):
        run_invariants(_broken(psycopg.OperationalError("server closed the connection")))


# =============================================================================
# CLI
# =============================================================================


def test_cli_exit_codes(monkeypatch):
    failing = CheckResult("7", "No unconditional-true policies")
    failing.fail("SELECT policy is USING (true)", "posts.feed")
    passing = CheckResult("1", "Identity table SELECT is own-row only", ok_message="ok")

    monkeypatch.setattr(security_invariants, "collect_results", lambda only: [passing])
    clean = CliRunner().invoke(security_invariants.main, [])

    monkeypatch.setattr(security_invariants, "collect_results", lambda only: [passing, failing])
    broken = CliRunner().invoke(security_invariants.main, [])

    assert clean.exit_code == 0
    assert "SUMMARY: 1 passed, 0 warned, 0 failed" in clean.output
    assert broken.exit_code == 1
    assert "posts.feed" in broken.output


def test_cli_database_unavailable_is_fatal(monkeypatch):
    def unavailable(only):
        raise DatabaseUnavailableError("Could not connect to db.example.supabase.co/postgres")

    monkeypatch.setattr(security_invariants, "collect_results", unavailable)

    result = CliRunner().invoke(security_invariants.main, [])

    assert result.exit_code == 1
    assert "FATAL: Could not connect" in result.output
