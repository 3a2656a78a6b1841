"""
Team lifecycle: match desired records to remote teams and decide
create / update / no-op. Renames are recorded on the context so the
rename cleanup pass can retire the old name's groups and default area.
"""

import logging
from dataclasses import dataclass

from ado_errors import AdoApiError
from reconcile_context import RenameEvent, guard_item

task_logger = logging.getLogger("airflow.task")

CREATE = "create"
UPDATE = "update"
NOOP = "noop"


@dataclass
class TeamDecision:
    action: str
    remote: dict | None = None
    rename_from: str | None = None
    description_changed: bool = False


def decide_team_action(record, remote_by_id, remote_by_name, claimed=()) -> TeamDecision:
    """Match by identity first, then by exact name; otherwise create.

    The name fallback never picks a remote team whose id is in ``claimed``
    (held by another record through its identity, e.g. a team renamed away
    from the name this record now uses).
    """
    remote = remote_by_id.get(record.identity) if record.identity else None
    if remote is None:
        remote = remote_by_name.get(record.name)
        if remote is not None and remote["id"] in claimed:
            remote = None
    if remote is None:
        return TeamDecision(CREATE)

    renamed = remote.get("name") != record.name
    description_changed = (remote.get("description") or "") != record.description
    if not renamed and not description_changed:
        return TeamDecision(NOOP, remote=remote)
    return TeamDecision(
        UPDATE,
        remote=remote,
        rename_from=remote.get("name") if renamed else None,
        description_changed=description_changed,
    )


def reconcile_teams(ctx, ordered) -> dict:
    """Create, rename or update teams: updates first, then creations,
    each group in parent-first order.

    Identities returned by the remote side are stored back onto the
    records. Failures are recorded per record; the pass continues.
    """
    teams_created = []
    teams_updated = []
    teams_unchanged = []
    errors = []

    remote_teams = ctx.directory.list_teams()
    remote_by_id = {t["id"]: t for t in remote_teams}
    remote_by_name = {t["name"]: t for t in remote_teams}
    task_logger.info(f"Retrieved {len(remote_teams)} teams from project")

    claimed = {r.identity for r in ordered if r.identity in remote_by_id}
    decisions = [
        (record, decide_team_action(record, remote_by_id, remote_by_name, claimed))
        for record in ordered
    ]
    # renames go first so a name given up by one team is free to create
    decisions.sort(key=lambda pair: pair[1].action == CREATE)

    for record, decision in decisions:
        try:
            if decision.action == CREATE:
                result = ctx.directory.create_team(record.name, record.description)
                record.identity = result.get("id")
                team = {
                    "id": record.identity,
                    "name": record.name,
                    "description": record.description,
                }
                remote_by_id[record.identity] = team
                remote_by_name[record.name] = team
                teams_created.append({"name": record.name, "id": record.identity})
                task_logger.info(f"[TEAM] ✓ CREATE: {record.name}")

            elif decision.action == UPDATE:
                remote = decision.remote
                ctx.directory.update_team(remote["id"], record.name, record.description)
                record.identity = remote["id"]
                changes = []
                if decision.rename_from:
                    ctx.rename_events.append(
                        RenameEvent(decision.rename_from, record.name)
                    )
                    remote_by_name.pop(decision.rename_from, None)
                    changes.append(f"renamed from '{decision.rename_from}'")
                    task_logger.info(
                        f"[TEAM] ✓ RENAME: '{decision.rename_from}' -> '{record.name}'"
                    )
                if decision.description_changed:
                    changes.append("description")
                    if not decision.rename_from:
                        task_logger.info(f"[TEAM] ✓ UPDATE: {record.name} (description)")
                remote.update({"name": record.name, "description": record.description})
                remote_by_name[record.name] = remote
                teams_updated.append(
                    {
                        "name": record.name,
                        "change": ", ".join(changes),
                        "old_name": decision.rename_from,
                    }
                )

            else:
                record.identity = decision.remote["id"]
                teams_unchanged.append(record.name)

        except AdoApiError as e:
            error_msg = f"[TEAM] ✗ {decision.action.upper()} FAILED for {record.name}: {e}"
            guard_item(e, error_msg, errors)

    backfilled = []
    try:
        backfilled = backfill_identities(ctx, ordered)
    except AdoApiError as e:
        guard_item(e, f"[TEAM] ✗ IDENTITY BACK-FILL FAILED: {e}", errors)

    return {
        "teams_created": teams_created,
        "teams_updated": teams_updated,
        "teams_unchanged": teams_unchanged,
        "identities_backfilled": backfilled,
        "renames": [
            {"old_name": e.old_name, "new_name": e.new_name} for e in ctx.rename_events
        ],
        "errors": errors,
    }


def backfill_identities(ctx, records) -> list[str]:
    """Fill missing identities with a fresh name lookup (teams created this pass)."""
    missing = [r for r in records if not r.identity]
    if not missing:
        return []

    by_name = {t["name"]: t for t in ctx.directory.list_teams()}
    backfilled = []
    for record in missing:
        team = by_name.get(record.name)
        if team:
            record.identity = team["id"]
            backfilled.append(record.name)
            task_logger.info(f"[TEAM] Back-filled identity for {record.name}")
        else:
            task_logger.warning(f"[TEAM] No remote team found for {record.name}")
    return backfilled
