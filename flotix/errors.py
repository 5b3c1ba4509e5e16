from typing import Optional


class FlotixError(Exception):
    status_code = 500
    reason = "internal-error"

    def __init__(self, detail: str = "", *, reason: Optional[str] = None):
        super().__init__(detail or self.reason)
        self.detail = detail or self.reason
        if reason is not None:
            self.reason = reason


class ConfigError(FlotixError):
    reason = "config-error"


class ValidationError(FlotixError):
    """Missing or malformed request fields."""
    status_code = 400
    reason = "invalid-request"


class NotFoundError(FlotixError):
    """Unknown event, tier, order or ticket code."""
    status_code = 404
    reason = "not-found"


class ConflictError(FlotixError):
    """Business-rule rejection: capacity exhausted, ticket already used."""
    status_code = 409
    reason = "conflict"


class UpstreamError(FlotixError):
    """Payment gateway unreachable or answered with an unexpected shape.
    Callers retry with backoff."""
    status_code = 502
    reason = "upstream-error"


class InternalError(FlotixError):
    """Ledger/store transaction failed and was rolled back."""
    status_code = 500
    reason = "internal-error"
