"""
DAG that reconciles an Azure DevOps project's team structure with a CSV.

Reconciles five things: Teams, Area paths, Iteration paths, Team members,
and per-team Area permissions.
Team CSV (desired state) → Azure DevOps project (target, one-way).

Sync order: Teams → Area paths → Iterations → Members → Permissions
→ Rename cleanup.
(Teams first so areas and iterations can be assigned to them.
Permissions last because every team's deny entries depend on the area
paths of all other teams. Rename cleanup runs only when a team was
renamed in this run.)

Teams are matched by Id, then by name. Every remote change is idempotent,
so a failed run can simply be re-run.

### CSV columns
Id, TeamName, ParentTeam, Description, AreaPaths, Members, Iterations
(TeamName and ParentTeam required; lists are semicolon-delimited)

### Required Environment Variables
- ADO_ORGANIZATION, ADO_PROJECT, ADO_PAT
"""

import os
import logging
from pendulum import datetime

from airflow.sdk import Param, dag, task

# Environment variables for Azure DevOps configuration
ADO_ORGANIZATION = os.getenv("ADO_ORGANIZATION")
ADO_PROJECT = os.getenv("ADO_PROJECT")
ADO_PAT = os.getenv("ADO_PAT")

task_logger = logging.getLogger("airflow.task")


@dag(
    start_date=datetime(2025, 1, 1),
    schedule="0 6 * * *",  # Daily at 06:00
    catchup=False,
    doc_md=__doc__,
    default_args={"owner": "Astro", "retries": 2},
    tags=["azure-devops", "sync", "teams", "permissions"],
    params={
        "csv_path": Param(
            "include/team_structure.csv",
            type="string",
            description="Team structure CSV (desired state)",
        ),
        "output_path": Param(
            "",
            type="string",
            description="Where to write the CSV with Ids filled in (blank = overwrite csv_path)",
        ),
    },
)
def sync_ado_team_structure():
    @task
    def validate_config() -> dict:
        """Validate that all required environment variables are set."""
        missing = []

        if not ADO_ORGANIZATION:
            missing.append("ADO_ORGANIZATION")
        if not ADO_PROJECT:
            missing.append("ADO_PROJECT")
        if not ADO_PAT:
            missing.append("ADO_PAT")

        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        task_logger.info("Configuration validated successfully")
        return {
            "organization": ADO_ORGANIZATION,
            "project": ADO_PROJECT,
        }

    @task
    def load_team_records(**context) -> dict:
        """Read and validate the team CSV.

        Fails the run before any remote change when a name is empty or
        duplicated, a ParentTeam does not resolve, or parents form a cycle.
        """
        from reconcile_engine import plan_structure
        from team_records import read_team_csv

        csv_path = context["params"]["csv_path"]
        table = read_team_csv(csv_path)
        _, ordered, paths_by_team = plan_structure(table)

        for record in ordered:
            task_logger.info(
                f"[PLAN] {record.name} -> {', '.join(paths_by_team[record.name])}"
            )
        task_logger.info(f"Loaded {len(table.records)} team record(s) from {csv_path}")
        return table.to_dict()

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    @task
    def reconcile_structure(config: dict, table_data: dict) -> dict:
        """Run every reconciliation stage against one remote snapshot.

        Stages run strictly in sequence inside this task so each one sees
        the writes of the previous one (a team created here is visible to
        the area assignment that follows).
        """
        from ado_client import connect
        from reconcile_context import ReconciliationContext
        from reconcile_engine import run_forward
        from team_records import TeamTable

        table = TeamTable.from_dict(table_data)
        directory, tree, acl = connect(config["organization"], config["project"], ADO_PAT)
        ctx = ReconciliationContext(directory, tree, acl, project=config["project"])

        results = run_forward(ctx, table)
        return {"results": results, "table": table.to_dict()}

    @task
    def write_team_records(outcome: dict, **context) -> str:
        """Write the CSV back with every Id populated."""
        from team_records import TeamTable, write_team_csv

        params = context["params"]
        output_path = params.get("output_path") or params["csv_path"]
        table = TeamTable.from_dict(outcome["table"])
        write_team_csv(output_path, table)

        missing = [r.name for r in table.records if not r.identity]
        if missing:
            task_logger.warning(
                f"{len(missing)} team(s) still have no Id: {', '.join(missing)}"
            )
        task_logger.info(f"Wrote {len(table.records)} team record(s) to {output_path}")
        return output_path

    # =========================================================================
    # SYNC REPORT
    # =========================================================================

    @task
    def generate_sync_report(outcome: dict) -> str:
        """Generate a report of every change, warning and error in this run."""
        from sync_report import render_report

        report = render_report(
            f"AZURE DEVOPS TEAM STRUCTURE SYNC: {ADO_ORGANIZATION}/{ADO_PROJECT}",
            outcome["results"],
        )
        task_logger.info(f"\n{report}")
        return report

    # =========================================================================
    # DAG FLOW
    # =========================================================================

    # Step 1: Validate configuration
    config = validate_config()

    # Step 2: Load and validate the desired structure (fatal on bad input)
    table_data = load_team_records()
    config >> table_data

    # Step 3: Reconcile teams, areas, iterations, members and permissions
    outcome = reconcile_structure(config, table_data)

    # Step 4: Persist Ids so the next run matches teams by identity
    written = write_team_records(outcome)

    # Step 5: Generate report
    report = generate_sync_report(outcome)
    written >> report


sync_ado_team_structure()
