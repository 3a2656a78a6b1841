"""
Azure DevOps REST collaborators used by the team-structure DAGs.

Three thin services share one authenticated ``requests.Session``:

- DirectoryService: teams, team members, users, graph groups and memberships
- ClassificationTreeService: area/iteration nodes and team settings
- AccessControlService: allow/deny entries in the CSS (area) namespace

Every failure is raised as ``AdoApiError`` so callers can apply
``ERROR_POLICY`` instead of inspecting HTTP details.
"""

import logging
from urllib.parse import quote

import requests

from ado_errors import AdoApiError, ErrorKind, classify_status

ADO_API_VERSION = "7.1"
ADO_GRAPH_API_VERSION = "7.1-preview.1"

# Security namespace for area (classification) nodes
CSS_NAMESPACE_ID = "83e28ad4-2d72-4ceb-97b0-c7726d5502c3"

NODE_KINDS = {"areas": "Areas", "iterations": "Iterations"}

PAGE_SIZE = 100

task_logger = logging.getLogger("airflow.task")


def _error_from_response(response):
    type_key = None
    message = response.text or response.reason or ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        type_key = body.get("typeKey")
        message = body.get("message", message)

    # Azure DevOps answers an invalid PAT with a 203 sign-in page
    if response.status_code == 203:
        return AdoApiError(
            ErrorKind.UNAUTHORIZED,
            "Authentication rejected (sign-in page returned)",
            status_code=203,
        )

    kind = classify_status(response.status_code, type_key, message)
    return AdoApiError(kind, message, status_code=response.status_code, type_key=type_key)


def send_request(session, method, url, json_data=None, params=None):
    """Send a request and return the raw response, raising AdoApiError on failure."""
    try:
        response = session.request(method=method, url=url, json=json_data, params=params)
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise AdoApiError(ErrorKind.CONNECTIVITY, f"{method} {url} failed: {e}") from e
    except requests.exceptions.RequestException as e:
        raise AdoApiError(ErrorKind.SERVER, f"{method} {url} failed: {e}") from e

    if response.status_code == 203 or not response.ok:
        raise _error_from_response(response)
    return response


def make_api_request(session, method, url, json_data=None, params=None):
    """Helper function to make API requests with error handling."""
    response = send_request(session, method, url, json_data=json_data, params=params)
    return response.json() if response.text else {}


def paginate_top_skip(session, url, params=None):
    """Helper to paginate $top/$skip endpoints (teams, team members)."""
    all_items = []
    skip = 0
    params = dict(params or {})

    while True:
        params.update({"$top": PAGE_SIZE, "$skip": skip})
        data = make_api_request(session, "GET", url, params=params)
        items = data.get("value", [])
        all_items.extend(items)

        if len(items) < PAGE_SIZE:
            break
        skip += PAGE_SIZE

    return all_items


def paginate_continuation(session, url, params=None):
    """Helper to paginate graph endpoints driven by x-ms-continuationtoken."""
    all_items = []
    params = dict(params or {})

    while True:
        response = send_request(session, "GET", url, params=params)
        data = response.json() if response.text else {}
        all_items.extend(data.get("value", []))

        token = response.headers.get("x-ms-continuationtoken")
        if not token:
            break
        params["continuationToken"] = token

    return all_items


def _quote_path(path):
    return "/".join(quote(segment, safe="") for segment in path.split("\\") if segment)


class AdoConnection:
    """Authenticated session plus the organization's base URLs."""

    def __init__(self, organization, pat, session=None):
        self.organization = organization
        self.core_url = f"https://dev.azure.com/{organization}"
        self.graph_url = f"https://vssps.dev.azure.com/{organization}"
        self.session = session or requests.Session()
        self.session.auth = ("", pat)
        self.session.headers.update(
            {"Content-Type": "application/json", "Accept": "application/json"}
        )


class DirectoryService:
    """Teams, users, graph groups and memberships."""

    def __init__(self, connection: AdoConnection, project: str):
        self.conn = connection
        self.project = project

    @property
    def _teams_url(self):
        return f"{self.conn.core_url}/_apis/projects/{quote(self.project)}/teams"

    def _graph(self, path):
        return f"{self.conn.graph_url}/_apis/graph/{path}"

    def get_project(self) -> dict:
        url = f"{self.conn.core_url}/_apis/projects/{quote(self.project)}"
        return make_api_request(
            self.conn.session, "GET", url, params={"api-version": ADO_API_VERSION}
        )

    def list_teams(self) -> list[dict]:
        teams = paginate_top_skip(
            self.conn.session, self._teams_url, {"api-version": ADO_API_VERSION}
        )
        return [
            {
                "id": team.get("id"),
                "name": team.get("name", ""),
                "description": team.get("description") or "",
            }
            for team in teams
        ]

    def create_team(self, name, description) -> dict:
        return make_api_request(
            self.conn.session,
            "POST",
            self._teams_url,
            json_data={"name": name, "description": description},
            params={"api-version": ADO_API_VERSION},
        )

    def update_team(self, team_id, name, description) -> dict:
        return make_api_request(
            self.conn.session,
            "PATCH",
            f"{self._teams_url}/{team_id}",
            json_data={"name": name, "description": description},
            params={"api-version": ADO_API_VERSION},
        )

    def delete_team(self, team_id) -> bool:
        """Delete a team. Returns False when it was already gone."""
        try:
            send_request(
                self.conn.session,
                "DELETE",
                f"{self._teams_url}/{team_id}",
                params={"api-version": ADO_API_VERSION},
            )
        except AdoApiError as e:
            if e.kind == ErrorKind.NOT_FOUND:
                return False
            raise
        return True

    def list_team_members(self, team_id, include_containers=False) -> list[dict]:
        """Team members. Nested groups are left out unless ``include_containers``."""
        members = paginate_top_skip(
            self.conn.session,
            f"{self._teams_url}/{team_id}/members",
            {"api-version": ADO_API_VERSION},
        )
        resolved = []
        for member in members:
            identity = member.get("identity", member)
            if identity.get("isContainer") and not include_containers:
                continue
            resolved.append(
                {
                    "email": identity.get("uniqueName") or identity.get("displayName", ""),
                    "descriptor": identity.get("descriptor"),
                    "id": identity.get("id"),
                }
            )
        return resolved

    def find_user_by_email(self, email) -> dict | None:
        data = make_api_request(
            self.conn.session,
            "POST",
            self._graph("subjectquery"),
            json_data={"query": email, "subjectKind": ["User"]},
            params={"api-version": ADO_GRAPH_API_VERSION},
        )
        for user in data.get("value", []):
            candidates = {
                (user.get("mailAddress") or "").lower(),
                (user.get("principalName") or "").lower(),
            }
            if email.lower() in candidates:
                return {"email": email, "descriptor": user.get("descriptor")}
        return None

    def get_descriptor(self, storage_key) -> str:
        """Translate a team or project id into its graph subject descriptor."""
        data = make_api_request(
            self.conn.session,
            "GET",
            self._graph(f"descriptors/{storage_key}"),
            params={"api-version": ADO_GRAPH_API_VERSION},
        )
        return data["value"]

    def list_groups(self, scope_descriptor) -> list[dict]:
        return paginate_continuation(
            self.conn.session,
            self._graph("groups"),
            {"scopeDescriptor": scope_descriptor, "api-version": ADO_GRAPH_API_VERSION},
        )

    def create_group(self, display_name, description, scope_descriptor) -> dict:
        return make_api_request(
            self.conn.session,
            "POST",
            self._graph("groups"),
            json_data={"displayName": display_name, "description": description},
            params={
                "scopeDescriptor": scope_descriptor,
                "api-version": ADO_GRAPH_API_VERSION,
            },
        )

    def delete_group(self, group_descriptor) -> bool:
        try:
            send_request(
                self.conn.session,
                "DELETE",
                self._graph(f"groups/{group_descriptor}"),
                params={"api-version": ADO_GRAPH_API_VERSION},
            )
        except AdoApiError as e:
            if e.kind == ErrorKind.NOT_FOUND:
                return False
            raise
        return True

    def add_group_member(self, member_descriptor, group_descriptor):
        make_api_request(
            self.conn.session,
            "PUT",
            self._graph(f"memberships/{member_descriptor}/{group_descriptor}"),
            params={"api-version": ADO_GRAPH_API_VERSION},
        )

    def remove_group_member(self, member_descriptor, group_descriptor) -> bool:
        try:
            send_request(
                self.conn.session,
                "DELETE",
                self._graph(f"memberships/{member_descriptor}/{group_descriptor}"),
                params={"api-version": ADO_GRAPH_API_VERSION},
            )
        except AdoApiError as e:
            if e.kind == ErrorKind.NOT_FOUND:
                return False
            raise
        return True

    def resolve_identity_descriptor(self, subject_descriptor) -> str:
        """Graph subject descriptor -> identity descriptor used by access control."""
        data = make_api_request(
            self.conn.session,
            "GET",
            f"{self.conn.graph_url}/_apis/identities",
            params={
                "subjectDescriptors": subject_descriptor,
                "api-version": ADO_API_VERSION,
            },
        )
        identities = [i for i in data.get("value", []) if i]
        if not identities:
            raise AdoApiError(
                ErrorKind.NOT_FOUND,
                f"No identity found for subject descriptor {subject_descriptor}",
            )
        return identities[0]["descriptor"]


class ClassificationTreeService:
    """Area/iteration classification nodes and per-team settings."""

    def __init__(self, connection: AdoConnection, project: str):
        self.conn = connection
        self.project = project

    def _node_url(self, kind, path=""):
        base = (
            f"{self.conn.core_url}/{quote(self.project)}/_apis/wit/"
            f"classificationnodes/{NODE_KINDS[kind]}"
        )
        quoted = _quote_path(path)
        return f"{base}/{quoted}" if quoted else base

    def _team_settings_url(self, team_name, suffix):
        return (
            f"{self.conn.core_url}/{quote(self.project)}/{quote(team_name)}"
            f"/_apis/work/teamsettings/{suffix}"
        )

    def full_path(self, path) -> str:
        """Relative classification path -> value stored on work items."""
        return f"{self.project}\\{path}" if path else self.project

    def get_tree(self, kind, depth=50) -> dict:
        return make_api_request(
            self.conn.session,
            "GET",
            self._node_url(kind),
            params={"$depth": depth, "api-version": ADO_API_VERSION},
        )

    def get_node_by_path(self, kind, path) -> dict:
        return make_api_request(
            self.conn.session,
            "GET",
            self._node_url(kind, path),
            params={"api-version": ADO_API_VERSION},
        )

    def create_node(self, kind, parent_path, name) -> dict:
        return make_api_request(
            self.conn.session,
            "POST",
            self._node_url(kind, parent_path),
            json_data={"name": name},
            params={"api-version": ADO_API_VERSION},
        )

    def delete_node(self, kind, path, reclassify_to_id) -> bool:
        """Delete a node, moving its work items to ``reclassify_to_id``."""
        try:
            send_request(
                self.conn.session,
                "DELETE",
                self._node_url(kind, path),
                params={"$reclassifyId": reclassify_to_id, "api-version": ADO_API_VERSION},
            )
        except AdoApiError as e:
            if e.kind == ErrorKind.NOT_FOUND:
                return False
            raise
        return True

    def get_team_areas(self, team_name) -> dict:
        return make_api_request(
            self.conn.session,
            "GET",
            self._team_settings_url(team_name, "teamfieldvalues"),
            params={"api-version": ADO_API_VERSION},
        )

    def set_team_areas(self, team_name, paths):
        """Replace a team's area field values. The first path becomes the default."""
        values = [
            {"value": self.full_path(path), "includeChildren": False} for path in paths
        ]
        make_api_request(
            self.conn.session,
            "PATCH",
            self._team_settings_url(team_name, "teamfieldvalues"),
            json_data={"defaultValue": values[0]["value"], "values": values},
            params={"api-version": ADO_API_VERSION},
        )

    def list_team_iterations(self, team_name) -> list[dict]:
        data = make_api_request(
            self.conn.session,
            "GET",
            self._team_settings_url(team_name, "iterations"),
            params={"api-version": ADO_API_VERSION},
        )
        return data.get("value", [])

    def add_team_iteration(self, team_name, iteration_identifier):
        make_api_request(
            self.conn.session,
            "POST",
            self._team_settings_url(team_name, "iterations"),
            json_data={"id": iteration_identifier},
            params={"api-version": ADO_API_VERSION},
        )


class AccessControlService:
    """Allow/deny entries on classification-node security tokens."""

    def __init__(self, connection: AdoConnection, namespace_id=CSS_NAMESPACE_ID):
        self.conn = connection
        self.namespace_id = namespace_id

    @property
    def _url(self):
        return f"{self.conn.core_url}/_apis/accesscontrolentries/{self.namespace_id}"

    def _set_entry(self, token, identity_descriptor, allow, deny):
        make_api_request(
            self.conn.session,
            "POST",
            self._url,
            json_data={
                "token": token,
                "merge": True,
                "accessControlEntries": [
                    {
                        "descriptor": identity_descriptor,
                        "allow": allow,
                        "deny": deny,
                        "extendedInfo": {},
                    }
                ],
            },
            params={"api-version": ADO_API_VERSION},
        )

    def set_allow(self, token, identity_descriptor, bits):
        self._set_entry(token, identity_descriptor, allow=bits, deny=0)

    def set_deny(self, token, identity_descriptor, bits):
        self._set_entry(token, identity_descriptor, allow=0, deny=bits)

    def remove_entries(self, token, identity_descriptors) -> bool:
        try:
            send_request(
                self.conn.session,
                "DELETE",
                self._url,
                params={
                    "token": token,
                    "descriptors": ",".join(identity_descriptors),
                    "api-version": ADO_API_VERSION,
                },
            )
        except AdoApiError as e:
            if e.kind == ErrorKind.NOT_FOUND:
                return False
            raise
        return True


def connect(organization, project, pat):
    """Build the three collaborators over one shared session."""
    connection = AdoConnection(organization, pat)
    task_logger.info(f"Connecting to Azure DevOps org '{organization}', project '{project}'")
    return (
        DirectoryService(connection, project),
        ClassificationTreeService(connection, project),
        AccessControlService(connection),
    )
