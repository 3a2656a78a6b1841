"""
Area permissions: per-team reader/writer groups with allow entries on the
team's own areas, and explicit deny entries on every descendant area owned
by another team.

Azure DevOps propagates an allow on an area node to all nodes below it.
The deny plan places a deny for the parent team's groups on each
descendant node so access stays scoped to exactly the team's own nodes.
"""

import logging
import re
from dataclasses import dataclass

from ado_errors import AdoApiError, Policy
from reconcile_context import guard_item
from team_hierarchy import is_strict_descendant, path_prefixes

task_logger = logging.getLogger("airflow.task")

# CSS namespace permission bits
VIEW_WORK_ITEMS = 16
EDIT_WORK_ITEMS = 32
EDIT_WORK_ITEM_COMMENTS = 512

READER_BITS = VIEW_WORK_ITEMS
WRITER_BITS = EDIT_WORK_ITEMS | EDIT_WORK_ITEM_COMMENTS

READER = "reader"
WRITER = "writer"
ROLE = "role"

GROUP_BITS = {READER: READER_BITS, WRITER: WRITER_BITS}

GROUP_PREFIXES = {
    READER: "perm-item-reader-",
    WRITER: "perm-item-writer-",
    ROLE: "role-external-contributor-",
}

GROUP_DESCRIPTIONS = {
    READER: "View work items in the areas owned by team '{team}'",
    WRITER: "Edit work items and comments in the areas owned by team '{team}'",
    ROLE: "External contributors for team '{team}' (no automatic members)",
}

NODE_TOKEN_PREFIX = "vstfs:///Classification/Node/"


@dataclass(frozen=True)
class PlanEntry:
    team: str
    group: str
    path: str
    bits: int


def team_slug(team_name) -> str:
    return re.sub(r"\s+", "-", team_name.strip().lower())


def group_display_names(team_name) -> dict:
    slug = team_slug(team_name)
    return {role: f"{prefix}{slug}" for role, prefix in GROUP_PREFIXES.items()}


def area_token(ctx, path) -> str:
    """Security token for an area: node identifiers from the root down, colon-joined."""
    identifiers = []
    for prefix in [""] + path_prefixes(path):
        node = ctx.node(prefix, "areas")
        if node is None or not node.identifier:
            ctx.remember(prefix, ctx.tree.get_node_by_path("areas", prefix), "areas")
            node = ctx.node(prefix, "areas")
        identifiers.append(f"{NODE_TOKEN_PREFIX}{node.identifier}")
    return ":".join(identifiers)


def build_allow_plan(ordered, paths_by_team) -> list[PlanEntry]:
    return [
        PlanEntry(record.name, group, path, bits)
        for record in ordered
        for path in paths_by_team.get(record.name, [])
        for group, bits in GROUP_BITS.items()
    ]


def build_deny_plan(ordered, paths_by_team) -> list[PlanEntry]:
    """Deny entries for every path another team owns strictly below one of ours.

    Needs every team's paths up front: a child processed after its parent in
    parent-first order still has to be denied to the parent.
    """
    plan = []
    for record in ordered:
        own = paths_by_team.get(record.name, [])
        targets = []
        for other in ordered:
            if other.name == record.name:
                continue
            for path in paths_by_team.get(other.name, []):
                if path in own or path in targets:
                    continue
                if any(is_strict_descendant(path, mine) for mine in own):
                    targets.append(path)
        for path in targets:
            for group, bits in GROUP_BITS.items():
                plan.append(PlanEntry(record.name, group, path, bits))
    return plan


def _find_or_create_group(ctx, display_name, description):
    group = ctx.find_group(display_name)
    if group is not None:
        return group, False
    try:
        group = ctx.directory.create_group(display_name, description, ctx.scope_descriptor)
    except AdoApiError as e:
        if e.policy != Policy.TOLERATE:
            raise
        group = ctx.groups(refresh=True).get(display_name)
        if group is None:
            raise
        return group, False
    ctx.remember_group(group)
    return group, True


def ensure_permission_groups(ctx, team_name) -> tuple[dict, list[str]]:
    """Reader, writer and role group descriptors for a team; creates what is missing."""
    descriptors = {}
    created = []
    for role, display_name in group_display_names(team_name).items():
        group, was_created = _find_or_create_group(
            ctx, display_name, GROUP_DESCRIPTIONS[role].format(team=team_name)
        )
        descriptors[role] = group["descriptor"]
        if was_created:
            created.append(display_name)
            task_logger.info(f"[PERM:{team_name}] ✓ CREATE GROUP: {display_name}")

    for role in (READER, WRITER):
        ctx.directory.add_group_member(descriptors[ROLE], descriptors[role])
    return descriptors, created


def apply_permissions(ctx, ordered, paths_by_team) -> dict:
    groups_created = []
    allows_applied = []
    denies_applied = []
    errors = []

    deny_by_team = {}
    for entry in build_deny_plan(ordered, paths_by_team):
        deny_by_team.setdefault(entry.team, []).append(entry)

    for record in ordered:
        name = record.name
        paths = paths_by_team.get(name, [])
        try:
            descriptors, created = ensure_permission_groups(ctx, name)
            groups_created.extend({"team": name, "group": g} for g in created)
            identities = {
                group: ctx.directory.resolve_identity_descriptor(descriptors[group])
                for group in GROUP_BITS
            }
        except AdoApiError as e:
            guard_item(e, f"[PERM:{name}] ✗ GROUP SETUP FAILED: {e}", errors)
            continue

        for entry in build_allow_plan([record], {name: paths}):
            try:
                ctx.acl.set_allow(
                    area_token(ctx, entry.path), identities[entry.group], entry.bits
                )
                allows_applied.append(
                    {"team": name, "group": entry.group, "path": entry.path}
                )
            except AdoApiError as e:
                error_msg = (
                    f"[PERM:{name}] ✗ ALLOW FAILED for {entry.group} on '{entry.path}': {e}"
                )
                guard_item(e, error_msg, errors)

        for entry in deny_by_team.get(name, []):
            try:
                ctx.acl.set_deny(
                    area_token(ctx, entry.path), identities[entry.group], entry.bits
                )
                denies_applied.append(
                    {"team": name, "group": entry.group, "path": entry.path}
                )
            except AdoApiError as e:
                error_msg = (
                    f"[PERM:{name}] ✗ DENY FAILED for {entry.group} on '{entry.path}': {e}"
                )
                guard_item(e, error_msg, errors)

        task_logger.info(
            f"[PERM:{name}] ✓ {len(paths)} area(s) allowed, "
            f"{len(deny_by_team.get(name, [])) // len(GROUP_BITS)} descendant area(s) denied"
        )

    return {
        "groups_created": groups_created,
        "allows_applied": allows_applied,
        "denies_applied": denies_applied,
        "errors": errors,
    }
