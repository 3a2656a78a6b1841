"""Fixed-width text report for the sync and cleanup DAGs."""

import pendulum

from reconcile_engine import INFORMATIONAL_KEYS, summarize

STAGE_TITLES = {
    "teams": "TEAM LEVEL CHANGES",
    "areas": "AREA PATH CHANGES",
    "area_pruning": "ORPHANED DEFAULT AREAS",
    "team_areas": "TEAM AREA ASSIGNMENTS",
    "iterations": "ITERATION CHANGES",
    "memberships": "TEAM MEMBERSHIP CHANGES",
    "permissions": "AREA PERMISSION CHANGES",
    "renames": "RENAME CLEANUP",
    "default_team": "DEFAULT TEAM",
}

# keys tried in order when describing one entry
_DESCRIBE_KEYS = ("name", "team", "email", "group", "path", "paths", "change", "old_name")


def _describe(item) -> str:
    if not isinstance(item, dict):
        return str(item)
    parts = []
    for key in _DESCRIBE_KEYS:
        value = item.get(key)
        if not value:
            continue
        if isinstance(value, list):
            value = ", ".join(value)
        parts.append(f"{key}: {value}")
    return "; ".join(parts) or str(item)


def _marker(key) -> str:
    if key.endswith(("deleted", "removed")):
        return "-"
    if key.endswith(("updated", "assigned", "reset", "backfilled")):
        return "~"
    return "+"


def render_report(title, results) -> str:
    totals = summarize(results)
    report_lines = [
        "=" * 70,
        title,
        f"Generated: {pendulum.now('UTC').to_datetime_string()} UTC",
        "=" * 70,
        "",
    ]

    for stage, stage_result in results.items():
        sections = []
        for key, items in stage_result.items():
            if not isinstance(items, list) or not items:
                continue
            if key in INFORMATIONAL_KEYS:
                continue
            label = key.replace("_", " ").upper()
            if key == "errors":
                sections.append(f"\n  ⚠️  ERRORS ({len(items)}) — ACTION REQUIRED:")
                sections.extend(f"    ✗ {error}" for error in items)
            elif key == "warnings":
                sections.append(f"\n  WARNINGS ({len(items)}):")
                sections.extend(f"    ! {warning}" for warning in items)
            else:
                sections.append(f"\n  {label} ({len(items)}):")
                sections.extend(f"    {_marker(key)} {_describe(i)}" for i in items)
        if sections:
            report_lines.append(f"{'─' * 70}")
            report_lines.append(STAGE_TITLES.get(stage, stage.upper()))
            report_lines.append(f"{'─' * 70}")
            report_lines.extend(sections)
            report_lines.append("")

    if totals["errors"] > 0:
        overall = f"⚠️  COMPLETED WITH {totals['errors']} ERROR(S)"
    elif totals["changes"] == 0:
        overall = "IN SYNC"
    else:
        overall = "CHANGES MADE"

    report_lines.extend(
        [
            "=" * 70,
            "SUMMARY",
            "=" * 70,
            f"Changes:  {totals['changes']:6}",
            f"Warnings: {totals['warnings']:6}",
            f"Errors:   {totals['errors']:6}",
            "",
            f"Overall Status: {overall}",
            "=" * 70,
        ]
    )
    return "\n".join(report_lines)
