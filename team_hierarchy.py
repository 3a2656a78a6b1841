"""
Hierarchy resolution for team records.

Turns a flat list of records with parent references into a parent-first
processing order and derives each team's classification (area) paths.

Paths are backslash-delimited and relative to the project's area root:
a root team "Alpha" owns "Alpha", its child "Bravo" owns "Alpha\\Bravo".
"""

from ado_errors import ConfigurationError

PATH_SEPARATOR = "\\"


def normalize_path(spec) -> str:
    """'/Shared/Infra/' -> 'Shared\\Infra'"""
    segments = spec.replace("/", PATH_SEPARATOR).split(PATH_SEPARATOR)
    return PATH_SEPARATOR.join(s.strip() for s in segments if s.strip())


def is_absolute_spec(spec) -> bool:
    return "/" in spec or PATH_SEPARATOR in spec


def path_depth(path) -> int:
    return len(path.split(PATH_SEPARATOR)) if path else 0


def path_prefixes(path) -> list[str]:
    """'A\\B\\C' -> ['A', 'A\\B', 'A\\B\\C']"""
    segments = path.split(PATH_SEPARATOR) if path else []
    return [PATH_SEPARATOR.join(segments[: i + 1]) for i in range(len(segments))]


def parent_path(path) -> str:
    return path.rpartition(PATH_SEPARATOR)[0]


def is_strict_descendant(path, ancestor) -> bool:
    return path.startswith(ancestor + PATH_SEPARATOR)


def is_in_use(path, in_use_paths) -> bool:
    """True when ``path`` is an in-use path or a structural ancestor of one."""
    return any(p == path or is_strict_descendant(p, path) for p in in_use_paths)


class TeamIndex:
    """Name -> record lookup with explicit parent pointers."""

    def __init__(self, records):
        self.records = list(records)
        self.by_name = {record.name: record for record in self.records}

    def get(self, name):
        return self.by_name.get(name)

    def ancestor_chain(self, name) -> list[str]:
        """Names from the root ancestor down to ``name`` (inclusive)."""
        chain = []
        seen = set()
        current = self.by_name.get(name)
        while current is not None:
            if current.name in seen:
                raise ConfigurationError(
                    f"Parent cycle detected involving team '{current.name}'"
                )
            seen.add(current.name)
            chain.append(current.name)
            current = (
                self.by_name.get(current.parent_name) if current.parent_name else None
            )
        chain.reverse()
        return chain


def validate_records(records) -> TeamIndex:
    """Check names and parent references. Raises ConfigurationError on the first problem set."""
    problems = []
    seen = set()

    for position, record in enumerate(records, start=1):
        if not record.name:
            problems.append(f"row {position}: TeamName is empty")
            continue
        if record.name in seen:
            problems.append(f"row {position}: duplicate TeamName '{record.name}'")
        seen.add(record.name)

    for record in records:
        if record.parent_name and record.parent_name not in seen:
            problems.append(
                f"team '{record.name}': ParentTeam '{record.parent_name}' "
                f"does not match any TeamName"
            )
        if record.parent_name and record.parent_name == record.name:
            problems.append(f"team '{record.name}' is its own parent")

    if problems:
        raise ConfigurationError("Invalid team records:\n  " + "\n  ".join(problems))

    index = TeamIndex(records)
    for record in records:
        index.ancestor_chain(record.name)
    return index


def resolve_order(records) -> list:
    """Parent-first order; records are visited in input order.

    Each record's parent is placed before the record itself, and a record
    already reached through another record's ancestor walk is not added
    twice. The result is deterministic for a given input order.
    """
    index = TeamIndex(records)
    ordered = []
    visited = set()
    in_progress = set()

    def visit(record):
        if record.name in visited:
            return
        if record.name in in_progress:
            raise ConfigurationError(
                f"Parent cycle detected involving team '{record.name}'"
            )
        in_progress.add(record.name)
        parent = index.get(record.parent_name) if record.parent_name else None
        if record.parent_name and parent is None:
            raise ConfigurationError(
                f"team '{record.name}': ParentTeam '{record.parent_name}' "
                f"does not match any TeamName"
            )
        if parent is not None:
            visit(parent)
        in_progress.discard(record.name)
        visited.add(record.name)
        ordered.append(record)

    for record in records:
        visit(record)
    return ordered


def default_path(name, index: TeamIndex) -> str:
    """Hierarchy-derived path: the ancestor-name chain, root first."""
    return PATH_SEPARATOR.join(index.ancestor_chain(name))


def resolve_paths(name, index: TeamIndex) -> list[str]:
    """All classification paths a team owns.

    No custom specs: the default path. Otherwise, each spec is absolute
    (contains a separator, taken from the root) or relative (a child of the
    parent's default path, or a root-level node for a root team).
    """
    record = index.get(name)
    if record is None:
        raise ConfigurationError(f"Unknown team '{name}'")
    if not record.custom_area_specs:
        return [default_path(name, index)]

    base = default_path(record.parent_name, index) if record.parent_name else ""
    paths = []
    for spec in record.custom_area_specs:
        normalized = normalize_path(spec)
        if not normalized:
            continue
        if is_absolute_spec(spec) or not base:
            path = normalized
        else:
            path = f"{base}{PATH_SEPARATOR}{normalized}"
        if path not in paths:
            paths.append(path)

    return paths or [default_path(name, index)]


def resolve_all_paths(ordered, index: TeamIndex) -> dict[str, list[str]]:
    return {record.name: resolve_paths(record.name, index) for record in ordered}


def all_in_use_paths(paths_by_team) -> set[str]:
    return {path for paths in paths_by_team.values() for path in paths}


def resolve_iteration_paths(record) -> list[str]:
    """Iteration specs are always taken from the iteration root."""
    paths = []
    for spec in record.iteration_specs:
        normalized = normalize_path(spec)
        if normalized and normalized not in paths:
            paths.append(normalized)
    return paths
