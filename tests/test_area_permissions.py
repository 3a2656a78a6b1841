"""Tests for permission groups, allow/deny plans and security tokens"""
from area_permissions import (
    READER,
    READER_BITS,
    WRITER,
    WRITER_BITS,
    apply_permissions,
    area_token,
    build_allow_plan,
    build_deny_plan,
    group_display_names,
)
from area_sync import ensure_path
from team_hierarchy import TeamIndex, resolve_all_paths, resolve_order


def _plan_inputs(records):
    ordered = resolve_order(records)
    return ordered, resolve_all_paths(ordered, TeamIndex(records))


def test_group_names_use_lowercase_slug():
    names = group_display_names("Platform Team")
    assert names == {
        READER: "perm-item-reader-platform-team",
        WRITER: "perm-item-writer-platform-team",
        "role": "role-external-contributor-platform-team",
    }


def test_permission_bits():
    assert READER_BITS == 16
    assert WRITER_BITS == 32 | 512


def test_allow_plan_covers_own_paths_only(hierarchy_records):
    ordered, paths = _plan_inputs(hierarchy_records)
    plan = build_allow_plan(ordered, paths)
    bravo = {(e.group, e.path) for e in plan if e.team == "Bravo"}
    assert bravo == {(READER, "Alpha\\Bravo"), (WRITER, "Alpha\\Bravo")}


def test_deny_plan_covers_every_descendant_owned_by_others(hierarchy_records):
    ordered, paths = _plan_inputs(hierarchy_records)
    plan = build_deny_plan(ordered, paths)

    denied = {}
    for entry in plan:
        denied.setdefault(entry.team, set()).add(entry.path)

    assert denied["Alpha"] == {"Alpha\\Bravo", "Alpha\\Bravo\\Charlie"}
    assert denied["Bravo"] == {"Alpha\\Bravo\\Charlie"}
    assert "Charlie" not in denied
    assert len(plan) == 3 * 2


def test_deny_plan_skips_paths_shared_with_own(hierarchy_records):
    ordered, paths = _plan_inputs(hierarchy_records)
    paths["Alpha"].append("Alpha\\Bravo")
    plan = build_deny_plan(ordered, paths)
    assert not any(e.team == "Alpha" and e.path == "Alpha\\Bravo" for e in plan)


def test_area_token_joins_identifiers_from_root(ctx, fake):
    ensure_path(ctx, "Alpha\\Bravo")
    assert area_token(ctx, "Alpha\\Bravo") == fake.token_for("Alpha\\Bravo")
    assert area_token(ctx, "Alpha\\Bravo").count("vstfs:///Classification/Node/") == 3


def test_apply_permissions_creates_groups_and_entries(ctx, fake, hierarchy_records):
    ordered, paths = _plan_inputs(hierarchy_records)
    for team_paths in paths.values():
        for path in team_paths:
            ensure_path(ctx, path)

    result = apply_permissions(ctx, ordered, paths)

    assert result["errors"] == []
    assert len(result["groups_created"]) == 9
    assert "perm-item-reader-alpha" in fake.group_names()

    reader = "identity:vssgp.perm-item-reader-alpha"
    writer = "identity:vssgp.perm-item-writer-alpha"
    assert fake.acl[(fake.token_for("Alpha"), reader)] == {"allow": READER_BITS, "deny": 0}
    assert fake.acl[(fake.token_for("Alpha"), writer)] == {"allow": WRITER_BITS, "deny": 0}
    assert fake.acl[(fake.token_for("Alpha\\Bravo\\Charlie"), reader)] == {
        "allow": 0,
        "deny": READER_BITS,
    }

    role = "vssgp.role-external-contributor-alpha"
    assert role in fake.group_members["vssgp.perm-item-reader-alpha"]
    assert role in fake.group_members["vssgp.perm-item-writer-alpha"]


def test_apply_permissions_reuses_existing_groups(ctx, fake, hierarchy_records):
    ordered, paths = _plan_inputs(hierarchy_records)
    for team_paths in paths.values():
        for path in team_paths:
            ensure_path(ctx, path)

    apply_permissions(ctx, ordered, paths)
    second = apply_permissions(ctx, ordered, paths)

    assert second["groups_created"] == []
    assert len(fake.called("create_group")) == 9
