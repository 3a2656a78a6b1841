"""
DAG that tears down the team structure described by a CSV.

Reverses sync_ado_team_structure in dependency-inverse order:
Permissions → Members → Team areas → Teams → Area paths → Iterations.
(Teams are deleted child before parent. The project's default team
cannot be deleted; it is renamed to a sentinel name, its area reset to
the root, and its membership replaced by ADO_OWNER_EMAIL.)

Manual trigger only. Set ``confirm_teardown`` to true to run.

### Required Environment Variables
- ADO_ORGANIZATION, ADO_PROJECT, ADO_PAT, ADO_OWNER_EMAIL
"""

import os
import logging
from pendulum import datetime

from airflow.sdk import Param, dag, task

ADO_ORGANIZATION = os.getenv("ADO_ORGANIZATION")
ADO_PROJECT = os.getenv("ADO_PROJECT")
ADO_PAT = os.getenv("ADO_PAT")
ADO_OWNER_EMAIL = os.getenv("ADO_OWNER_EMAIL")

task_logger = logging.getLogger("airflow.task")


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,
    catchup=False,
    doc_md=__doc__,
    default_args={"owner": "Astro", "retries": 0},
    tags=["azure-devops", "cleanup", "teams"],
    params={
        "csv_path": Param(
            "include/team_structure.csv",
            type="string",
            description="Team structure CSV describing what to tear down",
        ),
        "output_path": Param(
            "",
            type="string",
            description="Where to write the CSV with Ids cleared (blank = overwrite csv_path)",
        ),
        "confirm_teardown": Param(
            False,
            type="boolean",
            description="Must be true: deletes teams, groups and area/iteration nodes",
        ),
    },
)
def cleanup_ado_team_structure():
    @task
    def validate_config(**context) -> dict:
        """Validate environment variables and the teardown confirmation."""
        missing = []

        if not ADO_ORGANIZATION:
            missing.append("ADO_ORGANIZATION")
        if not ADO_PROJECT:
            missing.append("ADO_PROJECT")
        if not ADO_PAT:
            missing.append("ADO_PAT")
        if not ADO_OWNER_EMAIL:
            missing.append("ADO_OWNER_EMAIL")

        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
        if not context["params"].get("confirm_teardown"):
            raise ValueError("Teardown not confirmed: set confirm_teardown to true")

        task_logger.info("Configuration validated successfully")
        return {
            "organization": ADO_ORGANIZATION,
            "project": ADO_PROJECT,
            "owner_email": ADO_OWNER_EMAIL,
        }

    @task
    def load_team_records(**context) -> dict:
        """Read and validate the team CSV."""
        from reconcile_engine import plan_structure
        from team_records import read_team_csv

        csv_path = context["params"]["csv_path"]
        table = read_team_csv(csv_path)
        plan_structure(table)
        task_logger.info(f"Loaded {len(table.records)} team record(s) from {csv_path}")
        return table.to_dict()

    @task
    def teardown_structure(config: dict, table_data: dict) -> dict:
        """Remove permissions, members, teams and nodes, deepest first."""
        from ado_client import connect
        from reconcile_context import ReconciliationContext
        from structure_cleanup import run_cleanup
        from team_records import TeamTable

        table = TeamTable.from_dict(table_data)
        directory, tree, acl = connect(config["organization"], config["project"], ADO_PAT)
        ctx = ReconciliationContext(directory, tree, acl, project=config["project"])

        results = run_cleanup(ctx, table, config["owner_email"])
        return {"results": results, "table": table.to_dict()}

    @task
    def write_team_records(outcome: dict, **context) -> str:
        """Write the CSV back with Ids of deleted teams cleared."""
        from team_records import TeamTable, write_team_csv

        params = context["params"]
        output_path = params.get("output_path") or params["csv_path"]
        write_team_csv(output_path, TeamTable.from_dict(outcome["table"]))
        task_logger.info(f"Wrote team records to {output_path}")
        return output_path

    @task
    def generate_cleanup_report(outcome: dict) -> str:
        from sync_report import render_report

        report = render_report(
            f"AZURE DEVOPS TEAM STRUCTURE CLEANUP: {ADO_ORGANIZATION}/{ADO_PROJECT}",
            outcome["results"],
        )
        task_logger.info(f"\n{report}")
        return report

    config = validate_config()
    table_data = load_team_records()
    config >> table_data

    outcome = teardown_structure(config, table_data)
    written = write_team_records(outcome)
    report = generate_cleanup_report(outcome)
    written >> report


cleanup_ado_team_structure()
