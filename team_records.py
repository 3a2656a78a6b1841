"""
Team records: the desired organisational structure read from CSV.

Columns (order-independent): Id, TeamName, ParentTeam, Description,
AreaPaths, Members, Iterations. TeamName and ParentTeam are mandatory
columns; list columns are semicolon-delimited.
"""

import csv
from dataclasses import dataclass, field

from ado_errors import ConfigurationError

ID_COLUMN = "Id"
NAME_COLUMN = "TeamName"
PARENT_COLUMN = "ParentTeam"
DESCRIPTION_COLUMN = "Description"
AREA_PATHS_COLUMN = "AreaPaths"
MEMBERS_COLUMN = "Members"
ITERATIONS_COLUMN = "Iterations"

REQUIRED_COLUMNS = (NAME_COLUMN, PARENT_COLUMN)
ALL_COLUMNS = (
    ID_COLUMN,
    NAME_COLUMN,
    PARENT_COLUMN,
    DESCRIPTION_COLUMN,
    AREA_PATHS_COLUMN,
    MEMBERS_COLUMN,
    ITERATIONS_COLUMN,
)

LIST_DELIMITER = ";"


def split_list(value) -> list[str]:
    """'a; b;;c' -> ['a', 'b', 'c']"""
    if not value:
        return []
    return [item.strip() for item in value.split(LIST_DELIMITER) if item.strip()]


def unique_emails(emails) -> list[str]:
    """Drop case-insensitive duplicates, keeping first spelling and order."""
    seen = set()
    result = []
    for email in emails:
        key = email.lower()
        if key not in seen:
            seen.add(key)
            result.append(email)
    return result


@dataclass
class TeamRecord:
    name: str
    parent_name: str = ""
    identity: str | None = None
    description: str = ""
    custom_area_specs: list[str] = field(default_factory=list)
    member_emails: list[str] = field(default_factory=list)
    iteration_specs: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "TeamRecord":
        def cell(column):
            return (row.get(column) or "").strip()

        return cls(
            name=cell(NAME_COLUMN),
            parent_name=cell(PARENT_COLUMN),
            identity=cell(ID_COLUMN) or None,
            description=cell(DESCRIPTION_COLUMN),
            custom_area_specs=split_list(cell(AREA_PATHS_COLUMN)),
            member_emails=unique_emails(split_list(cell(MEMBERS_COLUMN))),
            iteration_specs=split_list(cell(ITERATIONS_COLUMN)),
        )

    def to_row(self) -> dict:
        return {
            ID_COLUMN: self.identity or "",
            NAME_COLUMN: self.name,
            PARENT_COLUMN: self.parent_name,
            DESCRIPTION_COLUMN: self.description,
            AREA_PATHS_COLUMN: LIST_DELIMITER.join(self.custom_area_specs),
            MEMBERS_COLUMN: LIST_DELIMITER.join(self.member_emails),
            ITERATIONS_COLUMN: LIST_DELIMITER.join(self.iteration_specs),
        }

    @property
    def has_custom_areas(self) -> bool:
        return bool(self.custom_area_specs)


@dataclass
class TeamTable:
    """Records plus which optional columns the input actually carried.

    Presence is decided once at load time: a file without a Members column
    means "do not manage memberships", not "every team has no members".
    """

    records: list[TeamRecord]
    columns: tuple[str, ...] = ALL_COLUMNS

    def tracks(self, column) -> bool:
        return column in self.columns

    def to_dict(self) -> dict:
        """XCom-friendly form."""
        return {
            "columns": list(self.columns),
            "rows": [record.to_row() for record in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TeamTable":
        return cls(
            records=[TeamRecord.from_row(row) for row in data["rows"]],
            columns=tuple(data["columns"]),
        )


def parse_team_rows(header, rows) -> TeamTable:
    """Validate the header and build records from already-split CSV rows."""
    header = [column.strip() for column in (header or []) if column is not None]
    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        raise ConfigurationError(
            f"CSV is missing required column(s): {', '.join(missing)}"
        )

    unknown = [column for column in header if column and column not in ALL_COLUMNS]
    if unknown:
        raise ConfigurationError(f"CSV has unknown column(s): {', '.join(unknown)}")

    records = []
    for row in rows:
        # skip fully blank lines
        if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
            continue
        records.append(TeamRecord.from_row(row))

    return TeamTable(records=records, columns=tuple(header))


def read_team_csv(csv_path) -> TeamTable:
    with open(csv_path, newline="", encoding="utf-8-sig") as csvfile:
        reader = csv.DictReader(csvfile)
        rows = [{(k or "").strip(): v for k, v in row.items()} for row in reader]
        return parse_team_rows(reader.fieldnames, rows)


def write_team_csv(csv_path, table: TeamTable):
    """Write records back in the input's column order, always including Id."""
    columns = list(table.columns)
    if ID_COLUMN not in columns:
        columns.insert(0, ID_COLUMN)

    with open(csv_path, "w", newline="", encoding="utf-8") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        for record in table.records:
            writer.writerow(record.to_row())
