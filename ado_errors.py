"""
Error taxonomy shared by the Azure DevOps team-structure DAGs.

Every remote failure is surfaced as an ``AdoApiError`` carrying an
``ErrorKind``. Call sites never decide ad hoc whether a failure matters;
they look the kind up in ``ERROR_POLICY``:

- ABORT: the whole run stops (connectivity, authentication).
- TOLERATE: treated as success (e.g. node creation conflict).
- SKIP_ITEM: logged against the current team/record, run continues.
"""

from enum import Enum


class ErrorKind(str, Enum):
    CONNECTIVITY = "connectivity"
    UNAUTHORIZED = "unauthorized"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    HAS_CHILDREN = "has_children"
    FORBIDDEN = "forbidden"
    INVALID = "invalid"
    SERVER = "server"


class Policy(str, Enum):
    ABORT = "abort"
    TOLERATE = "tolerate"
    SKIP_ITEM = "skip_item"


ERROR_POLICY = {
    ErrorKind.CONNECTIVITY: Policy.ABORT,
    ErrorKind.UNAUTHORIZED: Policy.ABORT,
    ErrorKind.ALREADY_EXISTS: Policy.TOLERATE,
    ErrorKind.NOT_FOUND: Policy.SKIP_ITEM,
    ErrorKind.HAS_CHILDREN: Policy.SKIP_ITEM,
    ErrorKind.FORBIDDEN: Policy.SKIP_ITEM,
    ErrorKind.INVALID: Policy.SKIP_ITEM,
    ErrorKind.SERVER: Policy.SKIP_ITEM,
}

# typeKey values Azure DevOps returns for "node/team/group already there"
_DUPLICATE_TYPE_KEYS = (
    "ClassificationNodeDuplicateNameException",
    "TeamAlreadyExistsException",
    "GroupAlreadyExistsException",
    "IdentityAlreadyExistsException",
)

# typeKey values for "cannot delete, node still has children"
_HAS_CHILDREN_TYPE_KEYS = (
    "ClassificationNodeInUseException",
    "ClassificationNodeHasChildrenException",
)


class ConfigurationError(ValueError):
    """Invalid input records or hierarchy. Always fatal, raised before any mutation."""


class AdoApiError(Exception):
    """A failed Azure DevOps call, classified into an ``ErrorKind``."""

    def __init__(self, kind, message, status_code=None, type_key=None):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.status_code = status_code
        self.type_key = type_key

    @property
    def policy(self) -> Policy:
        return policy_for(self.kind)

    def __str__(self):
        status = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{self.kind.value}{status}: {self.args[0]}"


def policy_for(kind) -> Policy:
    return ERROR_POLICY[ErrorKind(kind)]


def classify_status(status_code, type_key=None, message="") -> ErrorKind:
    """Map an HTTP status and Azure DevOps ``typeKey`` to an ``ErrorKind``."""
    type_key = type_key or ""
    lowered = (message or "").lower()

    if type_key in _DUPLICATE_TYPE_KEYS or status_code == 409:
        return ErrorKind.ALREADY_EXISTS
    if type_key in _HAS_CHILDREN_TYPE_KEYS or "has child" in lowered:
        return ErrorKind.HAS_CHILDREN
    if status_code == 401:
        return ErrorKind.UNAUTHORIZED
    if status_code == 403:
        return ErrorKind.FORBIDDEN
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code is not None and 400 <= status_code < 500:
        return ErrorKind.INVALID
    return ErrorKind.SERVER
