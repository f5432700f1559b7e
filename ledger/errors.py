from typing import Optional


class LedgerServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "code": self.code, "error": self.message}


class AuthenticationFailure(LedgerServiceError):
    status_code = 401
    code = "invalid_signature"


class ValidationFailure(LedgerServiceError):
    status_code = 400
    code = "malformed_payload"


class NotFoundFailure(LedgerServiceError):
    status_code = 404
    code = "not_found"


class RoutingConfigurationError(NotFoundFailure):
    """Reward money is owed but the configured recipient is not registered."""

    status_code = 500
    code = "treasury_not_registered"


class StorageFailure(LedgerServiceError):
    status_code = 500
    code = "storage_error"


class InvalidStateTransitionError(LedgerServiceError):
    status_code = 400
    code = "invalid_state_transition"
