"""Pytest configuration and fixtures"""
import pytest

from ado_errors import AdoApiError, ErrorKind
from reconcile_context import ReconciliationContext
from team_hierarchy import PATH_SEPARATOR, parent_path
from team_records import ALL_COLUMNS, TeamRecord, TeamTable

PROJECT = "Proj"
PROJECT_ID = "proj-1"
DEFAULT_TEAM_ID = "team-default"
DEFAULT_TEAM_NAME = "Proj Team"
CONTRIBUTORS_DESCRIPTOR = "vssgp.contributors"


class FakeAzureDevOps:
    """In-memory stand-in for the directory, tree and access-control services.

    One object plays all three roles. Every mutating call is appended to
    ``calls`` as ``(method, *args)``; ``failures`` maps ``(method, key)`` to
    an AdoApiError raised instead of performing the call.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self._next_id = 1
        self.teams = {
            DEFAULT_TEAM_ID: {
                "id": DEFAULT_TEAM_ID,
                "name": DEFAULT_TEAM_NAME,
                "description": "The default project team.",
            }
        }
        self.team_members = {DEFAULT_TEAM_ID: []}
        self.users = {}
        self.groups = {
            CONTRIBUTORS_DESCRIPTOR: {
                "displayName": "Contributors",
                "descriptor": CONTRIBUTORS_DESCRIPTOR,
            }
        }
        self.group_members = {}
        self.nodes = {"areas": {}, "iterations": {}}
        for kind in self.nodes:
            self._add_node(kind, "")
        self.team_areas = {}
        self.team_iterations = {}
        self.acl = {}

    # helpers ------------------------------------------------------------

    def _new_id(self, prefix):
        value = f"{prefix}-{self._next_id}"
        self._next_id += 1
        return value

    def _check(self, method, key):
        error = self.failures.get((method, key))
        if error is not None:
            raise error

    def _add_node(self, kind, path):
        node_id = self._next_id
        self._next_id += 1
        name = path.rpartition(PATH_SEPARATOR)[2] if path else PROJECT
        node = {"id": node_id, "identifier": f"guid-{kind}-{node_id}", "name": name}
        self.nodes[kind][path] = node
        return node

    def add_user(self, email):
        descriptor = f"aad.{email.lower()}"
        self.users[email.lower()] = descriptor
        return descriptor

    def add_team(self, name, description="", members=()):
        team_id = self._new_id("team")
        self.teams[team_id] = {"id": team_id, "name": name, "description": description}
        self.team_members[team_id] = []
        for email in members:
            self._add_team_member(team_id, self.users.get(email.lower()) or self.add_user(email))
        return team_id

    def add_node(self, kind, path):
        """Create a node (and missing ancestors) behind the context's back."""
        parts = path.split(PATH_SEPARATOR)
        for i in range(len(parts)):
            prefix = PATH_SEPARATOR.join(parts[: i + 1])
            if prefix not in self.nodes[kind]:
                self._add_node(kind, prefix)
        return self.nodes[kind][path]

    def _email_for(self, descriptor):
        for email, known in self.users.items():
            if known == descriptor:
                return email
        return descriptor

    def _team_for_descriptor(self, descriptor):
        if descriptor.startswith("desc:"):
            team_id = descriptor[len("desc:"):]
            if team_id in self.teams:
                return team_id
        return None

    def _add_team_member(self, team_id, user_descriptor):
        members = self.team_members[team_id]
        if any(m["descriptor"] == user_descriptor for m in members):
            return
        members.append(
            {
                "email": self._email_for(user_descriptor),
                "descriptor": user_descriptor,
                "id": user_descriptor,
            }
        )

    def add_team_group(self, team_id, display_name):
        """Nest a group in a team (a container member)."""
        descriptor = f"vssgp.{display_name}"
        self.team_members[team_id].append(
            {"email": display_name, "descriptor": descriptor, "id": descriptor, "container": True}
        )
        return descriptor

    def member_emails(self, team_id):
        return sorted(m["email"] for m in self.team_members[team_id])

    def team_by_name(self, name):
        return next((t for t in self.teams.values() if t["name"] == name), None)

    def group_names(self):
        return sorted(g["displayName"] for g in self.groups.values())

    def token_for(self, path):
        prefixes = [""] + [
            PATH_SEPARATOR.join(path.split(PATH_SEPARATOR)[: i + 1])
            for i in range(len(path.split(PATH_SEPARATOR)))
        ]
        return ":".join(
            f"vstfs:///Classification/Node/{self.nodes['areas'][p]['identifier']}"
            for p in prefixes
        )

    def called(self, method):
        return [call for call in self.calls if call[0] == method]

    # directory ----------------------------------------------------------

    def get_project(self):
        self._check("get_project", None)
        return {
            "id": PROJECT_ID,
            "name": PROJECT,
            "defaultTeam": {"id": DEFAULT_TEAM_ID, "name": self.teams[DEFAULT_TEAM_ID]["name"]},
        }

    def list_teams(self):
        return [dict(team) for team in self.teams.values()]

    def create_team(self, name, description):
        self.calls.append(("create_team", name))
        self._check("create_team", name)
        if self.team_by_name(name):
            raise AdoApiError(ErrorKind.ALREADY_EXISTS, f"Team {name} exists", status_code=409)
        team_id = self.add_team(name, description)
        return dict(self.teams[team_id])

    def update_team(self, team_id, name, description):
        self.calls.append(("update_team", team_id, name))
        self._check("update_team", team_id)
        self.teams[team_id].update({"name": name, "description": description})
        return dict(self.teams[team_id])

    def delete_team(self, team_id):
        self.calls.append(("delete_team", team_id))
        self._check("delete_team", team_id)
        if team_id not in self.teams:
            return False
        del self.teams[team_id]
        self.team_members.pop(team_id, None)
        return True

    def list_team_members(self, team_id, include_containers=False):
        return [
            {k: v for k, v in m.items() if k != "container"}
            for m in self.team_members.get(team_id, [])
            if include_containers or not m.get("container")
        ]

    def find_user_by_email(self, email):
        descriptor = self.users.get(email.lower())
        return {"email": email, "descriptor": descriptor} if descriptor else None

    def get_descriptor(self, storage_key):
        return f"desc:{storage_key}"

    def list_groups(self, scope_descriptor):
        return [dict(g) for g in self.groups.values()]

    def create_group(self, display_name, description, scope_descriptor):
        self.calls.append(("create_group", display_name))
        self._check("create_group", display_name)
        if any(g["displayName"] == display_name for g in self.groups.values()):
            raise AdoApiError(ErrorKind.ALREADY_EXISTS, "exists", status_code=409)
        descriptor = f"vssgp.{display_name}"
        self.groups[descriptor] = {"displayName": display_name, "descriptor": descriptor}
        return dict(self.groups[descriptor])

    def delete_group(self, group_descriptor):
        self.calls.append(("delete_group", group_descriptor))
        return self.groups.pop(group_descriptor, None) is not None

    def add_group_member(self, member_descriptor, group_descriptor):
        self.calls.append(("add_group_member", member_descriptor, group_descriptor))
        team_id = self._team_for_descriptor(group_descriptor)
        if team_id:
            self._add_team_member(team_id, member_descriptor)
        else:
            self.group_members.setdefault(group_descriptor, set()).add(member_descriptor)

    def remove_group_member(self, member_descriptor, group_descriptor):
        self.calls.append(("remove_group_member", member_descriptor, group_descriptor))
        team_id = self._team_for_descriptor(group_descriptor)
        if team_id:
            members = self.team_members[team_id]
            before = len(members)
            members[:] = [m for m in members if m["descriptor"] != member_descriptor]
            return len(members) != before
        members = self.group_members.get(group_descriptor, set())
        if member_descriptor not in members:
            return False
        members.discard(member_descriptor)
        return True

    def resolve_identity_descriptor(self, subject_descriptor):
        return f"identity:{subject_descriptor}"

    # classification tree ------------------------------------------------

    def full_path(self, path):
        return f"{PROJECT}\\{path}" if path else PROJECT

    def get_tree(self, kind, depth=50):
        def build(path):
            node = dict(self.nodes[kind][path])
            children = [
                p for p in self.nodes[kind] if p and parent_path(p) == path
            ]
            node["children"] = [build(p) for p in sorted(children)]
            return node

        return build("")

    def get_node_by_path(self, kind, path):
        node = self.nodes[kind].get(path)
        if node is None:
            raise AdoApiError(ErrorKind.NOT_FOUND, f"No node {path}", status_code=404)
        return dict(node)

    def create_node(self, kind, parent, name):
        path = f"{parent}{PATH_SEPARATOR}{name}" if parent else name
        self.calls.append(("create_node", kind, path))
        self._check("create_node", path)
        if parent not in self.nodes[kind]:
            raise AdoApiError(ErrorKind.NOT_FOUND, f"No parent {parent}", status_code=404)
        if path in self.nodes[kind]:
            raise AdoApiError(
                ErrorKind.ALREADY_EXISTS,
                f"{path} exists",
                status_code=409,
                type_key="ClassificationNodeDuplicateNameException",
            )
        return dict(self._add_node(kind, path))

    def delete_node(self, kind, path, reclassify_to_id):
        self.calls.append(("delete_node", kind, path))
        self._check("delete_node", path)
        if path not in self.nodes[kind]:
            return False
        if any(parent_path(p) == path for p in self.nodes[kind] if p):
            raise AdoApiError(
                ErrorKind.HAS_CHILDREN, f"{path} has child nodes", status_code=400
            )
        del self.nodes[kind][path]
        return True

    def get_team_areas(self, team_name):
        current = self.team_areas.get(team_name)
        if current is None:
            return {"defaultValue": PROJECT, "values": [{"value": PROJECT}]}
        return current

    def set_team_areas(self, team_name, paths):
        self.calls.append(("set_team_areas", team_name, list(paths)))
        self._check("set_team_areas", team_name)
        values = [{"value": self.full_path(p), "includeChildren": False} for p in paths]
        self.team_areas[team_name] = {"defaultValue": values[0]["value"], "values": values}

    def list_team_iterations(self, team_name):
        return [{"id": i} for i in self.team_iterations.get(team_name, [])]

    def add_team_iteration(self, team_name, iteration_identifier):
        self.calls.append(("add_team_iteration", team_name, iteration_identifier))
        self.team_iterations.setdefault(team_name, []).append(iteration_identifier)

    # access control -----------------------------------------------------

    def set_allow(self, token, identity_descriptor, bits):
        self.calls.append(("set_allow", token, identity_descriptor, bits))
        entry = self.acl.setdefault((token, identity_descriptor), {"allow": 0, "deny": 0})
        entry["allow"] |= bits

    def set_deny(self, token, identity_descriptor, bits):
        self.calls.append(("set_deny", token, identity_descriptor, bits))
        entry = self.acl.setdefault((token, identity_descriptor), {"allow": 0, "deny": 0})
        entry["deny"] |= bits

    def remove_entries(self, token, identity_descriptors):
        self.calls.append(("remove_entries", token, list(identity_descriptors)))
        removed = False
        for descriptor in identity_descriptors:
            removed = self.acl.pop((token, descriptor), None) is not None or removed
        return removed


def make_table(*records, columns=ALL_COLUMNS) -> TeamTable:
    return TeamTable(records=list(records), columns=tuple(columns))


def new_context(fake) -> ReconciliationContext:
    return ReconciliationContext(fake, fake, fake, project=PROJECT)


@pytest.fixture
def fake() -> FakeAzureDevOps:
    """Fresh in-memory Azure DevOps project"""
    return FakeAzureDevOps()


@pytest.fixture
def ctx(fake) -> ReconciliationContext:
    """Connected context with the remote snapshot loaded"""
    context = new_context(fake)
    context.connect()
    context.load_snapshot()
    return context


@pytest.fixture
def hierarchy_records() -> list:
    """Alpha > Bravo > Charlie, listed child-first"""
    return [
        TeamRecord(name="Charlie", parent_name="Bravo"),
        TeamRecord(name="Bravo", parent_name="Alpha"),
        TeamRecord(name="Alpha"),
    ]
