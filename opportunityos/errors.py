from __future__ import annotations


class ErrorType:
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INVALID_RECORD = "invalid_record"
    ILLEGAL_TRANSITION = "illegal_transition"
    COLLABORATOR_FAILURE = "collaborator_failure"
    CONFIGURATION_ERROR = "configuration_error"
    CLIENT_ERROR = "client_error"
    UNAUTHORIZED = "unauthorized"
    SERVER_ERROR = "server_error"


class OpportunityOSError(Exception):
    """Base typed exception for OpportunityOS domain/service errors."""

    error_type = ErrorType.SERVER_ERROR


class NotFoundError(OpportunityOSError):
    error_type = ErrorType.NOT_FOUND


class AlreadyExistsError(OpportunityOSError):
    error_type = ErrorType.ALREADY_EXISTS


class InvalidRecordError(OpportunityOSError):
    error_type = ErrorType.INVALID_RECORD


class IllegalTransitionError(OpportunityOSError):
    error_type = ErrorType.ILLEGAL_TRANSITION

    def __init__(self, opportunity_id: str, current_status: str, requested: str):
        super().__init__(f"{requested!r} is not allowed for opportunity {opportunity_id} in status {current_status!r}")
        self.opportunity_id = opportunity_id
        self.current_status = current_status
        self.requested = requested


class CollaboratorError(OpportunityOSError):
    """An external call (analytics, notifier, spec generator) failed."""

    error_type = ErrorType.COLLABORATOR_FAILURE

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class ConfigurationError(OpportunityOSError):
    error_type = ErrorType.CONFIGURATION_ERROR


class StoreNotInitializedError(OpportunityOSError):
    pass
