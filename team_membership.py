"""
Team membership sync: diff desired emails against the team's current
roster, add first, then remove.
"""

import logging
from dataclasses import dataclass, field

from ado_errors import AdoApiError, Policy
from reconcile_context import guard_item

task_logger = logging.getLogger("airflow.task")


@dataclass
class MembershipDiff:
    to_add: list[str] = field(default_factory=list)
    to_remove: list[dict] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def diff_members(desired_emails, current_members) -> MembershipDiff:
    """Case-insensitive email diff.

    ``current_members`` are ``{"email", "descriptor"}`` dicts; ``to_add``
    keeps the desired spelling, ``to_remove`` keeps the current member dicts.
    """
    desired_by_key = {}
    for email in desired_emails:
        desired_by_key.setdefault(email.lower(), email)
    current_by_key = {
        m["email"].lower(): m for m in current_members if m.get("email")
    }

    return MembershipDiff(
        to_add=[e for k, e in desired_by_key.items() if k not in current_by_key],
        to_remove=[m for k, m in current_by_key.items() if k not in desired_by_key],
    )


def _mirror_to_contributors(ctx, name, email, user_descriptor, warnings):
    contributors = None
    try:
        contributors = ctx.contributors_descriptor()
        if contributors:
            ctx.directory.add_group_member(user_descriptor, contributors)
    except AdoApiError as e:
        if e.policy == Policy.ABORT:
            raise
        warning = f"[MEMBER:{name}] Could not add {email} to Contributors: {e}"
        task_logger.warning(warning)
        warnings.append(warning)
        return
    if not contributors:
        warning = f"[MEMBER:{name}] Contributors group not found; {email} not mirrored"
        task_logger.warning(warning)
        warnings.append(warning)


def sync_team_members(ctx, ordered) -> dict:
    members_added = []
    members_removed = []
    warnings = []
    errors = []

    for record in ordered:
        name = record.name
        if not record.identity:
            continue
        try:
            team_descriptor = ctx.directory.get_descriptor(record.identity)
            current = ctx.directory.list_team_members(record.identity)
        except AdoApiError as e:
            guard_item(e, f"[MEMBER:{name}] ✗ ROSTER LOOKUP FAILED: {e}", errors)
            continue

        diff = diff_members(record.member_emails, current)

        for email in diff.to_add:
            try:
                user = ctx.directory.find_user_by_email(email)
                if not user or not user.get("descriptor"):
                    warning = f"[MEMBER:{name}] SKIP ADD {email}: user not found in organization"
                    task_logger.warning(warning)
                    warnings.append(warning)
                    continue
                ctx.directory.add_group_member(user["descriptor"], team_descriptor)
                members_added.append({"email": email, "team": name})
                task_logger.info(f"[MEMBER:{name}] ✓ ADD: {email}")
            except AdoApiError as e:
                guard_item(e, f"[MEMBER:{name}] ✗ ADD FAILED for {email}: {e}", errors)
                continue
            _mirror_to_contributors(ctx, name, email, user["descriptor"], warnings)

        for member in diff.to_remove:
            email = member["email"]
            try:
                descriptor = member.get("descriptor")
                if not descriptor:
                    user = ctx.directory.find_user_by_email(email)
                    descriptor = (user or {}).get("descriptor")
                if not descriptor:
                    continue
                if ctx.directory.remove_group_member(descriptor, team_descriptor):
                    task_logger.info(f"[MEMBER:{name}] ✓ REMOVE: {email}")
                else:
                    task_logger.info(f"[MEMBER:{name}] ✓ REMOVE: {email} already gone (404)")
                members_removed.append({"email": email, "team": name})
            except AdoApiError as e:
                guard_item(e, f"[MEMBER:{name}] ✗ REMOVE FAILED for {email}: {e}", errors)

    return {
        "members_added": members_added,
        "members_removed": members_removed,
        "warnings": warnings,
        "errors": errors,
    }
