"""
Forward reconciliation: run every stage in dependency order against one
ReconciliationContext.

Order: teams -> areas (create, prune, assign) -> iterations -> members
-> permissions -> rename cleanup. Teams must exist before areas can be
assigned to them; permissions need every team's areas.
"""

import logging

from area_permissions import apply_permissions
from area_sync import (
    assign_team_areas,
    prune_orphaned_defaults,
    sync_area_paths,
    sync_iteration_paths,
)
from structure_cleanup import run_rename_cleanup
from team_hierarchy import (
    all_in_use_paths,
    resolve_all_paths,
    resolve_order,
    validate_records,
)
from team_lifecycle import reconcile_teams
from team_membership import sync_team_members
from team_records import ITERATIONS_COLUMN, MEMBERS_COLUMN

task_logger = logging.getLogger("airflow.task")

# lists that describe state rather than changes made
INFORMATIONAL_KEYS = {
    "teams_unchanged",
    "allows_applied",
    "denies_applied",
    "renames",
    "identities_backfilled",
}
ISSUE_KEYS = {"errors", "warnings"}


def plan_structure(table):
    """Validate records and derive order and paths. Raises ConfigurationError."""
    index = validate_records(table.records)
    ordered = resolve_order(table.records)
    paths_by_team = resolve_all_paths(ordered, index)
    return index, ordered, paths_by_team


def run_forward(ctx, table) -> dict:
    index, ordered, paths_by_team = plan_structure(table)
    in_use = all_in_use_paths(paths_by_team)
    task_logger.info(
        f"Resolved {len(ordered)} team(s) owning {len(in_use)} area path(s)"
    )

    ctx.connect()
    ctx.load_snapshot()

    results = {"teams": reconcile_teams(ctx, ordered)}
    results["areas"] = sync_area_paths(ctx, ordered, paths_by_team)
    results["area_pruning"] = prune_orphaned_defaults(ctx, ordered, index, in_use)
    results["team_areas"] = assign_team_areas(ctx, ordered, paths_by_team)

    if table.tracks(ITERATIONS_COLUMN):
        results["iterations"] = sync_iteration_paths(ctx, ordered)
    else:
        task_logger.info("[ITERATION] No Iterations column; skipping iteration sync")

    if table.tracks(MEMBERS_COLUMN):
        results["memberships"] = sync_team_members(ctx, ordered)
    else:
        task_logger.info("[MEMBER] No Members column; skipping membership sync")

    results["permissions"] = apply_permissions(ctx, ordered, paths_by_team)
    results["renames"] = run_rename_cleanup(ctx, index, paths_by_team)
    return results


def summarize(results) -> dict:
    """Totals across stages: changes made, warnings, errors."""
    changes = 0
    warnings = 0
    errors = 0
    for stage in results.values():
        for key, value in stage.items():
            if not isinstance(value, list):
                continue
            if key == "errors":
                errors += len(value)
            elif key == "warnings":
                warnings += len(value)
            elif key not in INFORMATIONAL_KEYS:
                changes += len(value)
    return {"changes": changes, "warnings": warnings, "errors": errors}
