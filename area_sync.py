"""
Classification tree sync: make every required area/iteration path exist
remotely, prune default areas orphaned by a switch to custom paths, and
point each team at its areas and iterations.
"""

import logging

from ado_errors import AdoApiError, Policy
from reconcile_context import guard_item
from team_hierarchy import (
    PATH_SEPARATOR,
    default_path,
    is_in_use,
    parent_path,
    path_prefixes,
    resolve_iteration_paths,
)

task_logger = logging.getLogger("airflow.task")

TAGS = {"areas": "AREA", "iterations": "ITERATION"}


def _lookup_existing(ctx, path, kind):
    try:
        return ctx.tree.get_node_by_path(kind, path)
    except AdoApiError as e:
        if e.policy == Policy.ABORT:
            raise
        task_logger.warning(
            f"[{TAGS[kind]}] Could not read existing node '{path}': {e}"
        )
        return None


def ensure_path(ctx, path, kind="areas") -> list[str]:
    """Create every missing segment of ``path``. Returns the prefixes created.

    Prefixes already in the context cache are skipped without a remote
    call. A creation rejected because the node already exists counts as
    success and is cached like a fresh creation.
    """
    created = []
    tag = TAGS[kind]
    for prefix in path_prefixes(path):
        if ctx.knows(prefix, kind):
            continue
        name = prefix.rpartition(PATH_SEPARATOR)[2]
        try:
            node = ctx.tree.create_node(kind, parent_path(prefix), name)
            created.append(prefix)
            task_logger.info(f"[{tag}] ✓ CREATE: {prefix}")
        except AdoApiError as e:
            if e.policy != Policy.TOLERATE:
                raise
            task_logger.info(f"[{tag}] ✓ EXISTS: {prefix} (already present remotely)")
            node = _lookup_existing(ctx, prefix, kind)
        ctx.remember(prefix, node, kind)
    return created


def sync_area_paths(ctx, ordered, paths_by_team) -> dict:
    created = []
    errors = []
    for record in ordered:
        for path in paths_by_team.get(record.name, []):
            try:
                for prefix in ensure_path(ctx, path, "areas"):
                    created.append({"path": prefix, "team": record.name})
            except AdoApiError as e:
                error_msg = f"[AREA:{record.name}] ✗ CREATE FAILED for '{path}': {e}"
                guard_item(e, error_msg, errors)
    return {"areas_created": created, "errors": errors}


def prune_orphaned_defaults(ctx, ordered, index, in_use_paths) -> dict:
    """Delete default areas of teams that moved to custom paths.

    A default path is only removed when no resolved path equals it or sits
    below it, and when it exists remotely. Work items are reclassified to
    the area root. A failed deletion is a warning.
    """
    deleted = []
    warnings = []
    root_id = ctx.root("areas").id

    for record in ordered:
        if not record.has_custom_areas:
            continue
        orphan = default_path(record.name, index)
        if is_in_use(orphan, in_use_paths) or not ctx.knows(orphan, "areas"):
            continue
        try:
            ctx.tree.delete_node("areas", orphan, root_id)
            ctx.forget(orphan, "areas")
            deleted.append({"path": orphan, "team": record.name})
            task_logger.info(
                f"[AREA:{record.name}] ✓ DELETE: orphaned default area '{orphan}'"
            )
        except AdoApiError as e:
            if e.policy == Policy.ABORT:
                raise
            warning = (
                f"[AREA:{record.name}] Could not delete orphaned default area "
                f"'{orphan}': {e}"
            )
            task_logger.warning(warning)
            warnings.append(warning)

    return {"areas_deleted": deleted, "warnings": warnings}


def assign_team_areas(ctx, ordered, paths_by_team) -> dict:
    """Point each team's area field at its resolved paths (first is default)."""
    assigned = []
    errors = []
    for record in ordered:
        paths = paths_by_team.get(record.name) or []
        if not record.identity or not paths:
            continue
        desired = [ctx.tree.full_path(p) for p in paths]
        try:
            current = ctx.tree.get_team_areas(record.name)
            current_values = sorted(v.get("value") for v in current.get("values", []))
            if current.get("defaultValue") == desired[0] and current_values == sorted(
                desired
            ):
                continue
            ctx.tree.set_team_areas(record.name, paths)
            assigned.append({"team": record.name, "paths": paths})
            task_logger.info(f"[AREA:{record.name}] ✓ ASSIGN: {', '.join(paths)}")
        except AdoApiError as e:
            error_msg = f"[AREA:{record.name}] ✗ ASSIGN FAILED: {e}"
            guard_item(e, error_msg, errors)
    return {"areas_assigned": assigned, "errors": errors}


def _iteration_identifier(ctx, path):
    node = ctx.node(path, "iterations")
    if node is None or not node.identifier:
        fetched = ctx.tree.get_node_by_path("iterations", path)
        ctx.remember(path, fetched, "iterations")
        node = ctx.node(path, "iterations")
    return node.identifier


def sync_iteration_paths(ctx, ordered) -> dict:
    """Create missing iteration nodes and subscribe teams to them. Never deletes."""
    created = []
    subscribed = []
    errors = []

    for record in ordered:
        paths = resolve_iteration_paths(record)
        if not paths:
            continue
        try:
            for path in paths:
                for prefix in ensure_path(ctx, path, "iterations"):
                    created.append({"path": prefix, "team": record.name})
        except AdoApiError as e:
            error_msg = f"[ITERATION:{record.name}] ✗ CREATE FAILED: {e}"
            guard_item(e, error_msg, errors)
            continue

        if not record.identity:
            continue
        try:
            current = {
                i.get("id") for i in ctx.tree.list_team_iterations(record.name)
            }
            for path in paths:
                identifier = _iteration_identifier(ctx, path)
                if identifier in current:
                    continue
                ctx.tree.add_team_iteration(record.name, identifier)
                current.add(identifier)
                subscribed.append({"team": record.name, "path": path})
                task_logger.info(f"[ITERATION:{record.name}] ✓ SUBSCRIBE: {path}")
        except AdoApiError as e:
            error_msg = f"[ITERATION:{record.name}] ✗ SUBSCRIBE FAILED: {e}"
            guard_item(e, error_msg, errors)

    return {
        "iterations_created": created,
        "iterations_subscribed": subscribed,
        "errors": errors,
    }
