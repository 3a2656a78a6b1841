"""Tests for the forward reconciliation pass and the run report"""
import pytest

from ado_errors import AdoApiError, ConfigurationError, ErrorKind
from conftest import make_table, new_context
from reconcile_engine import run_forward, summarize
from sync_report import render_report
from team_records import NAME_COLUMN, PARENT_COLUMN, TeamRecord


def test_invalid_records_fail_before_any_remote_call(fake):
    table = make_table(TeamRecord(name="Alpha"), TeamRecord(name="Alpha"))
    ctx = new_context(fake)

    with pytest.raises(ConfigurationError):
        run_forward(ctx, table)

    assert ctx.project_id is None
    assert fake.calls == []


def test_connectivity_failure_aborts_run(fake):
    fake.failures[("get_project", None)] = AdoApiError(
        ErrorKind.CONNECTIVITY, "connection refused"
    )
    with pytest.raises(AdoApiError):
        run_forward(new_context(fake), make_table(TeamRecord(name="Alpha")))
    assert fake.calls == []


def test_first_run_builds_structure(fake, hierarchy_records):
    fake.add_user("a@x.com")
    hierarchy_records[1].member_emails = ["a@x.com"]

    results = run_forward(new_context(fake), make_table(*hierarchy_records))

    assert len(results["teams"]["teams_created"]) == 3
    assert [a["path"] for a in results["areas"]["areas_created"]] == [
        "Alpha",
        "Alpha\\Bravo",
        "Alpha\\Bravo\\Charlie",
    ]
    assert results["memberships"]["members_added"] == [{"email": "a@x.com", "team": "Bravo"}]
    assert summarize(results)["errors"] == 0


def test_second_run_is_in_sync(fake, hierarchy_records):
    fake.add_user("a@x.com")
    hierarchy_records[1].member_emails = ["a@x.com"]
    table = make_table(*hierarchy_records)

    run_forward(new_context(fake), table)
    results = run_forward(new_context(fake), table)

    assert summarize(results) == {"changes": 0, "warnings": 0, "errors": 0}
    assert len(fake.called("create_team")) == 3
    assert "Overall Status: IN SYNC" in render_report("SYNC", results)


def test_untracked_optional_columns_are_skipped(fake):
    table = make_table(
        TeamRecord(name="Alpha"), columns=(NAME_COLUMN, PARENT_COLUMN)
    )
    results = run_forward(new_context(fake), table)
    assert "memberships" not in results
    assert "iterations" not in results


def test_report_lists_changes_and_errors():
    results = {
        "teams": {
            "teams_created": [{"name": "Alpha", "id": "t1"}],
            "teams_unchanged": ["Bravo"],
            "errors": ["[TEAM] ✗ CREATE FAILED for Zulu: invalid (HTTP 400): bad"],
        }
    }

    report = render_report("SYNC", results)

    assert "TEAM LEVEL CHANGES" in report
    assert "+ name: Alpha" in report
    assert "Bravo" not in report
    assert "CREATE FAILED for Zulu" in report
    assert "Overall Status: ⚠️  COMPLETED WITH 1 ERROR(S)" in report


def test_summarize_ignores_informational_lists():
    results = {
        "permissions": {
            "groups_created": [{"team": "Alpha", "group": "g"}],
            "allows_applied": [{}, {}],
            "denies_applied": [{}],
            "errors": [],
        },
        "memberships": {"warnings": ["w"], "errors": []},
    }
    assert summarize(results) == {"changes": 1, "warnings": 1, "errors": 0}
