"""
Control plane exceptions.
"""


class FileSimError(Exception):
    """
    Base class, carries the HTTP status and a stable error code.
    """

    status_code = 500
    code = "internal_error"
    retryable = False


class ValidationError(FileSimError):
    status_code = 400
    code = "validation_failed"


class ServerNotControllableError(FileSimError):
    status_code = 400
    code = "not_dynamic"


class NotFoundError(FileSimError):
    status_code = 404
    code = "not_found"


class ConflictError(FileSimError):
    status_code = 409
    code = "conflict"


class InvalidStateError(FileSimError):
    status_code = 409
    code = "invalid_state"


class QuotaExceededError(FileSimError):
    status_code = 429
    code = "quota_exceeded"


class OrchestrationUnavailable(FileSimError):
    status_code = 503
    code = "orchestration_unavailable"
    retryable = True


class CreationFailed(FileSimError):
    status_code = 500
    code = "creation_failed"
