"""
Per-run state shared by every reconciliation stage.

Holds the three collaborators, the remote tree snapshot (loaded once and
extended in memory after each creation), the graph group cache, and the
rename events detected by the team lifecycle stage.
"""

import logging
from dataclasses import dataclass, field

from ado_errors import AdoApiError, Policy
from team_hierarchy import PATH_SEPARATOR

task_logger = logging.getLogger("airflow.task")

KINDS = ("areas", "iterations")

CONTRIBUTORS_GROUP_NAME = "Contributors"


@dataclass
class NodeRef:
    id: int | None
    identifier: str | None


@dataclass
class RenameEvent:
    old_name: str
    new_name: str


def flatten_tree(node, prefix="") -> dict:
    """Nested classification node -> {relative_path: NodeRef}. The root maps to ''."""
    flat = {prefix: NodeRef(node.get("id"), node.get("identifier"))}
    for child in node.get("children") or []:
        name = child.get("name", "")
        child_path = f"{prefix}{PATH_SEPARATOR}{name}" if prefix else name
        flat.update(flatten_tree(child, child_path))
    return flat


@dataclass
class ReconciliationContext:
    directory: object
    tree: object
    acl: object
    project: str = ""
    project_id: str | None = None
    default_team: dict | None = None
    known_paths: dict = field(default_factory=lambda: {kind: {} for kind in KINDS})
    rename_events: list = field(default_factory=list)
    _groups: dict | None = None
    _scope_descriptor: str | None = None

    def connect(self):
        """Startup connectivity check. Any failure here aborts the run."""
        project = self.directory.get_project()
        self.project = project.get("name", self.project)
        self.project_id = project.get("id")
        self.default_team = project.get("defaultTeam")
        task_logger.info(
            f"Connected to project '{self.project}' "
            f"(default team: {(self.default_team or {}).get('name', 'unknown')})"
        )
        return project

    def load_snapshot(self):
        for kind in KINDS:
            root = self.tree.get_tree(kind)
            self.known_paths[kind] = flatten_tree(root)
            task_logger.info(
                f"Loaded {len(self.known_paths[kind]) - 1} existing {kind} node(s)"
            )

    # Remote tree cache --------------------------------------------------

    def knows(self, path, kind="areas") -> bool:
        return path in self.known_paths[kind]

    def node(self, path, kind="areas") -> NodeRef | None:
        return self.known_paths[kind].get(path)

    def root(self, kind="areas") -> NodeRef:
        return self.known_paths[kind].get("") or NodeRef(None, None)

    def remember(self, path, node, kind="areas"):
        node = node or {}
        self.known_paths[kind][path] = NodeRef(node.get("id"), node.get("identifier"))

    def forget(self, path, kind="areas"):
        """Drop a deleted node and everything below it."""
        cache = self.known_paths[kind]
        for known in list(cache):
            if known == path or known.startswith(path + PATH_SEPARATOR):
                del cache[known]

    # Graph groups -------------------------------------------------------

    @property
    def scope_descriptor(self) -> str:
        if self._scope_descriptor is None:
            self._scope_descriptor = self.directory.get_descriptor(self.project_id)
        return self._scope_descriptor

    def groups(self, refresh=False) -> dict:
        """Project-scoped groups by display name, listed once per run."""
        if self._groups is None or refresh:
            groups = self.directory.list_groups(self.scope_descriptor)
            self._groups = {g.get("displayName"): g for g in groups}
        return self._groups

    def find_group(self, display_name) -> dict | None:
        return self.groups().get(display_name)

    def remember_group(self, group):
        self.groups()[group.get("displayName")] = group

    def forget_group(self, display_name):
        self.groups().pop(display_name, None)

    def contributors_descriptor(self) -> str | None:
        group = self.find_group(CONTRIBUTORS_GROUP_NAME)
        return group.get("descriptor") if group else None

    # Default team ------------------------------------------------------

    @property
    def default_team_id(self) -> str | None:
        return (self.default_team or {}).get("id")


def guard_item(error: AdoApiError, error_msg, errors):
    """Apply ERROR_POLICY to a per-item failure.

    ABORT errors propagate so the task fails; everything else is logged and
    recorded against the item so the run moves on.
    """
    if error.policy == Policy.ABORT:
        raise error
    task_logger.error(error_msg)
    errors.append(error_msg)
