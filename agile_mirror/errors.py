"""
Engine Error Types
Exception taxonomy shared by the sync, migration and metrics components.
"""


class AgileMirrorError(Exception):
    """Base class for engine failures."""


class Busy(Exception):
    """
    A live lease already covers the resource.

    Not a failure: the caller skips the resource for this cycle.
    """

    def __init__(self, resource_key: str, holder_id: str = None):
        self.resource_key = resource_key
        self.holder_id = holder_id
        message = f"Resource {resource_key} is locked"
        if holder_id:
            message += f" by {holder_id}"
        super().__init__(message)


class JiraAPIError(AgileMirrorError):
    """Custom exception for Jira API errors."""

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.message)


class TransientFetchError(JiraAPIError):
    """Network failure, rate limiting or server error that outlived the retry budget."""


class IncompleteData(AgileMirrorError):
    """Missing dates or fields prevent a specific metric from being computed."""

    def __init__(self, flag: str, message: str = None):
        self.flag = flag
        super().__init__(message or flag)


class MigrationFailure(AgileMirrorError):
    """A migration unit raised during its forward or reverse change."""

    def __init__(self, name: str, operation: str, cause: Exception = None):
        self.name = name
        self.operation = operation
        self.cause = cause
        super().__init__(f"Migration {name} failed during {operation}: {cause}")


class ReconciliationError(AgileMirrorError):
    """One entity could not be written to the mirror."""

    def __init__(self, entity: str, external_id, cause: Exception = None):
        self.entity = entity
        self.external_id = external_id
        self.cause = cause
        super().__init__(f"Failed to reconcile {entity} {external_id}: {cause}")


class SyncCancelled(AgileMirrorError):
    """A sync run was cancelled between units."""
