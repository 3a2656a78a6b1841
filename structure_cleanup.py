"""
Reverse reconciliation: tear down what the forward sync built, in
dependency-inverse order, and retire the old name's artefacts after a
team rename.

Teardown order:
1. access-control entries, then the three permission groups per team
2. team memberships
3. team area assignments reset to the area root
4. teams, child before parent; the project's default team is renamed to
   DEFAULT_TEAM_SENTINEL_NAME instead of deleted
5. area nodes, deepest first
6. iteration nodes, deepest first
"""

import logging
from dataclasses import dataclass

from ado_errors import AdoApiError, ErrorKind, Policy
from area_permissions import (
    GROUP_BITS,
    READER,
    WRITER,
    area_token,
    build_deny_plan,
    group_display_names,
)
from reconcile_context import guard_item
from team_hierarchy import (
    PATH_SEPARATOR,
    all_in_use_paths,
    default_path,
    is_in_use,
    path_depth,
    path_prefixes,
    resolve_all_paths,
    resolve_iteration_paths,
    resolve_order,
    validate_records,
)

task_logger = logging.getLogger("airflow.task")

DEFAULT_TEAM_SENTINEL_NAME = "zz-retired-default-team"
DEFAULT_TEAM_SENTINEL_DESCRIPTION = "Default project team, retired by structure cleanup"


@dataclass(frozen=True)
class NodeDeletion:
    path: str
    best_effort: bool = False


def plan_team_deletions(ordered) -> list:
    """Children before parents: the forward order reversed."""
    return list(reversed(ordered))


def plan_node_deletions(paths, known) -> list[NodeDeletion]:
    """Existing nodes deepest-first; their ancestors ride along as best-effort."""
    targets = {p for p in paths if p and p in known}
    ancestors = {
        prefix
        for path in paths
        for prefix in path_prefixes(path)[:-1]
        if prefix in known and prefix not in targets
    }
    plan = [NodeDeletion(p) for p in targets] + [
        NodeDeletion(p, best_effort=True) for p in ancestors
    ]
    return sorted(plan, key=lambda d: (-path_depth(d.path), d.best_effort, d.path))


def rebuild_old_default(new_default, old_name) -> str:
    """Swap only the renamed team's own (last) segment back to its old name."""
    head, _, _ = new_default.rpartition(PATH_SEPARATOR)
    return f"{head}{PATH_SEPARATOR}{old_name}" if head else old_name


def _match_remote(record, remote_by_id, remote_by_name):
    if record.identity and record.identity in remote_by_id:
        return remote_by_id[record.identity]
    return remote_by_name.get(record.name)


def _remove_group_entries(ctx, group, paths):
    """Drop a group's entries from every listed area that still exists."""
    identity = ctx.directory.resolve_identity_descriptor(group["descriptor"])
    removed = []
    for path in paths:
        if not ctx.knows(path, "areas"):
            continue
        ctx.acl.remove_entries(area_token(ctx, path), [identity])
        removed.append(path)
    return removed


def remove_permissions(ctx, ordered, paths_by_team) -> dict:
    entries_removed = []
    groups_deleted = []
    errors = []

    denied_by_team = {}
    for entry in build_deny_plan(ordered, paths_by_team):
        targets = denied_by_team.setdefault(entry.team, [])
        if entry.path not in targets:
            targets.append(entry.path)

    for record in ordered:
        name = record.name
        names = group_display_names(name)
        paths = paths_by_team.get(name, []) + denied_by_team.get(name, [])
        try:
            for role in GROUP_BITS:
                group = ctx.find_group(names[role])
                if group is None:
                    continue
                for path in _remove_group_entries(ctx, group, paths):
                    entries_removed.append({"team": name, "group": role, "path": path})
            for role, display_name in names.items():
                group = ctx.find_group(display_name)
                if group is None:
                    continue
                ctx.directory.delete_group(group["descriptor"])
                ctx.forget_group(display_name)
                groups_deleted.append({"team": name, "group": display_name})
                task_logger.info(f"[PERM:{name}] ✓ DELETE GROUP: {display_name}")
        except AdoApiError as e:
            guard_item(e, f"[PERM:{name}] ✗ PERMISSION CLEANUP FAILED: {e}", errors)

    return {
        "entries_removed": entries_removed,
        "groups_deleted": groups_deleted,
        "errors": errors,
    }


def _clear_members(ctx, team_id, keep_descriptor=None):
    team_descriptor = ctx.directory.get_descriptor(team_id)
    removed = []
    for member in ctx.directory.list_team_members(team_id, include_containers=True):
        descriptor = member.get("descriptor")
        if not descriptor or descriptor == keep_descriptor:
            continue
        ctx.directory.remove_group_member(descriptor, team_descriptor)
        removed.append(member.get("email", descriptor))
    return team_descriptor, removed


def remove_memberships(ctx, matched) -> dict:
    members_removed = []
    errors = []
    for record, remote in matched:
        try:
            _, removed = _clear_members(ctx, remote["id"])
            for email in removed:
                members_removed.append({"email": email, "team": record.name})
                task_logger.info(f"[MEMBER:{record.name}] ✓ REMOVE: {email}")
        except AdoApiError as e:
            guard_item(e, f"[MEMBER:{record.name}] ✗ CLEAR FAILED: {e}", errors)
    return {"members_removed": members_removed, "errors": errors}


def reset_team_areas(ctx, matched) -> dict:
    reset = []
    errors = []
    for record, remote in matched:
        try:
            ctx.tree.set_team_areas(remote["name"], [""])
            reset.append(record.name)
            task_logger.info(f"[AREA:{record.name}] ✓ RESET: area assignment -> root")
        except AdoApiError as e:
            guard_item(e, f"[AREA:{record.name}] ✗ RESET FAILED: {e}", errors)
    return {"areas_reset": reset, "errors": errors}


def delete_teams(ctx, ordered, remote_by_id, remote_by_name) -> dict:
    teams_deleted = []
    errors = []
    default_id = ctx.default_team_id

    for record in plan_team_deletions(ordered):
        remote = _match_remote(record, remote_by_id, remote_by_name)
        if remote is None:
            record.identity = None
            continue
        if remote["id"] == default_id:
            task_logger.info(
                f"[TEAM] Default team '{remote['name']}' cannot be deleted; retiring instead"
            )
            continue
        try:
            if ctx.directory.delete_team(remote["id"]):
                task_logger.info(f"[TEAM] ✓ DELETE: {record.name}")
            else:
                task_logger.info(f"[TEAM] ✓ DELETE: {record.name} already gone (404)")
            record.identity = None
            teams_deleted.append({"name": record.name})
        except AdoApiError as e:
            guard_item(e, f"[TEAM] ✗ DELETE FAILED for {record.name}: {e}", errors)

    return {"teams_deleted": teams_deleted, "errors": errors}


def retire_default_team(ctx, owner_email) -> dict:
    """Rename the default team to the sentinel name with the owner as sole member."""
    errors = []
    actions = []
    default_id = ctx.default_team_id
    if not default_id:
        error_msg = "[TEAM] ✗ Project reports no default team; cannot retire it"
        task_logger.error(error_msg)
        return {"default_team": actions, "errors": [error_msg]}

    try:
        teams = ctx.directory.list_teams()
        for team in teams:
            if team["name"] == DEFAULT_TEAM_SENTINEL_NAME and team["id"] != default_id:
                ctx.directory.delete_team(team["id"])
                actions.append(f"deleted stale '{DEFAULT_TEAM_SENTINEL_NAME}' team")
                task_logger.info(
                    f"[TEAM] ✓ DELETE: stale team holding '{DEFAULT_TEAM_SENTINEL_NAME}'"
                )

        default = next((t for t in teams if t["id"] == default_id), None)
        if default is None or default["name"] != DEFAULT_TEAM_SENTINEL_NAME:
            ctx.directory.update_team(
                default_id, DEFAULT_TEAM_SENTINEL_NAME, DEFAULT_TEAM_SENTINEL_DESCRIPTION
            )
            actions.append(f"renamed to '{DEFAULT_TEAM_SENTINEL_NAME}'")
            task_logger.info(
                f"[TEAM] ✓ RENAME: default team -> '{DEFAULT_TEAM_SENTINEL_NAME}'"
            )

        ctx.tree.set_team_areas(DEFAULT_TEAM_SENTINEL_NAME, [""])
        actions.append("area assignment reset to root")

        owner = ctx.directory.find_user_by_email(owner_email)
        if not owner or not owner.get("descriptor"):
            raise AdoApiError(ErrorKind.NOT_FOUND, f"Owner {owner_email} not found in organization")

        team_descriptor, removed = _clear_members(
            ctx, default_id, keep_descriptor=owner["descriptor"]
        )
        current = {
            m.get("descriptor")
            for m in ctx.directory.list_team_members(default_id, include_containers=True)
        }
        if owner["descriptor"] not in current:
            ctx.directory.add_group_member(owner["descriptor"], team_descriptor)
        actions.append(f"membership replaced by {owner_email}")
        for email in removed:
            task_logger.info(f"[MEMBER:{DEFAULT_TEAM_SENTINEL_NAME}] ✓ REMOVE: {email}")
        task_logger.info(f"[MEMBER:{DEFAULT_TEAM_SENTINEL_NAME}] ✓ OWNER: {owner_email}")
    except AdoApiError as e:
        guard_item(e, f"[TEAM] ✗ DEFAULT TEAM RETIREMENT FAILED: {e}", errors)

    return {"default_team": actions, "errors": errors}


def delete_nodes(ctx, paths, kind) -> dict:
    nodes_deleted = []
    errors = []
    root_id = ctx.root(kind).id
    tag = kind[:-1].upper()

    for deletion in plan_node_deletions(paths, ctx.known_paths[kind]):
        if not ctx.knows(deletion.path, kind):
            continue
        try:
            ctx.tree.delete_node(kind, deletion.path, root_id)
            ctx.forget(deletion.path, kind)
            nodes_deleted.append(deletion.path)
            task_logger.info(f"[{tag}] ✓ DELETE: {deletion.path}")
        except AdoApiError as e:
            if e.policy == Policy.ABORT:
                raise
            if deletion.best_effort:
                continue
            error_msg = f"[{tag}] ✗ DELETE FAILED for '{deletion.path}': {e}"
            task_logger.error(error_msg)
            errors.append(error_msg)

    return {f"{kind}_deleted": nodes_deleted, "errors": errors}


def run_cleanup(ctx, table, owner_email) -> dict:
    """Tear down every team, group, membership and node the records describe."""
    index = validate_records(table.records)
    ordered = resolve_order(table.records)
    paths_by_team = resolve_all_paths(ordered, index)

    ctx.connect()
    ctx.load_snapshot()

    remote_teams = ctx.directory.list_teams()
    remote_by_id = {t["id"]: t for t in remote_teams}
    remote_by_name = {t["name"]: t for t in remote_teams}
    matched = []
    for record in ordered:
        remote = _match_remote(record, remote_by_id, remote_by_name)
        if remote is not None:
            matched.append((record, remote))

    results = {"permissions": remove_permissions(ctx, ordered, paths_by_team)}
    results["memberships"] = remove_memberships(ctx, matched)
    results["team_areas"] = reset_team_areas(ctx, matched)
    results["teams"] = delete_teams(ctx, ordered, remote_by_id, remote_by_name)
    results["default_team"] = retire_default_team(ctx, owner_email)

    area_paths = all_in_use_paths(paths_by_team) | {
        default_path(record.name, index) for record in ordered
    }
    results["areas"] = delete_nodes(ctx, area_paths, "areas")

    iteration_paths = {p for record in ordered for p in resolve_iteration_paths(record)}
    results["iterations"] = delete_nodes(ctx, iteration_paths, "iterations")

    return results


def run_rename_cleanup(ctx, index, paths_by_team) -> dict:
    """Retire the old name's groups, access entries and default area after renames."""
    groups_deleted = []
    areas_deleted = []
    entries_removed = []
    errors = []

    if not ctx.rename_events:
        return {
            "groups_deleted": groups_deleted,
            "areas_deleted": areas_deleted,
            "entries_removed": entries_removed,
            "errors": errors,
        }

    in_use = {p.lower() for p in all_in_use_paths(paths_by_team)}
    live_groups = {
        display_name
        for record in index.records
        for display_name in group_display_names(record.name).values()
    }
    ctx.groups(refresh=True)

    for event in ctx.rename_events:
        label = f"{event.old_name} -> {event.new_name}"
        try:
            new_default = default_path(event.new_name, index)
            old_default = rebuild_old_default(new_default, event.old_name)
            old_names = group_display_names(event.old_name)

            # groups still owned by a current team (a case-only rename, or
            # the old name reused by another row) stay
            if live_groups.isdisjoint(old_names.values()):
                for role in (READER, WRITER):
                    group = ctx.find_group(old_names[role])
                    if group is None:
                        continue
                    for path in _remove_group_entries(ctx, group, [old_default]):
                        entries_removed.append(
                            {"group": old_names[role], "path": path}
                        )
                for display_name in old_names.values():
                    group = ctx.find_group(display_name)
                    if group is None:
                        continue
                    ctx.directory.delete_group(group["descriptor"])
                    ctx.forget_group(display_name)
                    groups_deleted.append({"rename": label, "group": display_name})
                    task_logger.info(f"[RENAME:{label}] ✓ DELETE GROUP: {display_name}")

            if not is_in_use(old_default.lower(), in_use) and ctx.knows(old_default):
                ctx.tree.delete_node("areas", old_default, ctx.root("areas").id)
                ctx.forget(old_default)
                areas_deleted.append({"rename": label, "path": old_default})
                task_logger.info(f"[RENAME:{label}] ✓ DELETE: old default area '{old_default}'")
        except AdoApiError as e:
            guard_item(e, f"[RENAME:{label}] ✗ CLEANUP FAILED: {e}", errors)

    return {
        "groups_deleted": groups_deleted,
        "areas_deleted": areas_deleted,
        "entries_removed": entries_removed,
        "errors": errors,
    }
