from typing import Optional


class ServiceError(Exception):
    """General exception class for the service layer."""
    kind = "service_error"


class ValidationError(ServiceError):
    """Malformed input (bad target, unknown subject, malformed date...). Raised before any state changes."""
    kind = "validation_error"


class ConflictError(ServiceError):
    """A uniqueness collision that could not be resolved by upsert."""
    kind = "conflict"


class RemoteUnavailable(ServiceError):
    """The remote store could not be reached or rejected a read/write."""
    kind = "remote_unavailable"


class NotAuthenticated(ServiceError):
    """The operation needs an authenticated session."""
    kind = "not_authenticated"


class MigrationPartialFailure(ServiceError):
    """Guest data could not be transferred in full; the guest copy is kept."""
    kind = "migration_partial_failure"

    def __init__(self, message: str, rows_attempted: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.rows_attempted = rows_attempted
        self.cause = cause


class ImportFailed(ServiceError):
    """An import document could not be read."""
    kind = "import_failed"


class LocalStoreError(ServiceError):
    """The local persisted store could not be read or written."""
    kind = "local_store_error"
