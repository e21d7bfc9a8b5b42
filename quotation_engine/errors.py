from typing import Optional


class QuotationEngineError(Exception):
    """Base class for every error the core raises.

    The route layer maps ``status_code`` onto the HTTP response and returns
    ``code`` alongside the message so clients can tell error kinds apart.
    """
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(QuotationEngineError):
    status_code = 400
    code = "validation_error"


class NotAuthorized(QuotationEngineError):
    status_code = 403
    code = "not_authorized"


class NotFound(QuotationEngineError):
    status_code = 404
    code = "not_found"


class InvalidState(QuotationEngineError):
    status_code = 409
    code = "invalid_state"


class AlreadyExists(QuotationEngineError):
    status_code = 409
    code = "already_exists"


class SequenceConflict(QuotationEngineError):
    """Number allocation did not settle within the configured attempts."""
    status_code = 409
    code = "sequence_conflict"
