"""
Error taxonomy for the generation pipeline.

Every failure a caller can see is one of a small, closed set of kinds. Each
error carries a stable `kind` string so a transport layer can map it to a
status code without importing this module's classes.
"""

from typing import Optional


class CopyforgeError(Exception):
    """Base class for every error raised by the pipeline."""
    kind = "generation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class GenerationError(CopyforgeError):
    """Unclassified failure while generating a block."""
    kind = "generation_error"


class ConfigError(CopyforgeError):
    """Setup problem. Fatal, never retried."""
    kind = "config_error"


class UnknownModelError(ConfigError):
    """Model has no entry in the pricing table."""
    kind = "config_error"


class UnknownBlockError(ConfigError):
    """Block type has no parser or prompt template."""
    kind = "unknown_block"


class AuthError(CopyforgeError):
    """Upstream rejected the credentials (HTTP 401)."""
    kind = "auth_error"


class RateLimitError(CopyforgeError):
    """Upstream or internal rate limit hit. Retry later, not immediately."""
    kind = "rate_limit"

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class UpstreamError(CopyforgeError):
    """Upstream failed with an HTTP error after any permitted retry."""
    kind = "upstream_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(CopyforgeError):
    """Transport connection failure."""
    kind = "network_error"


class RequestTimeoutError(CopyforgeError):
    """The request exceeded its time limit. Terminal for the block."""
    kind = "timeout"


class InvalidResponseError(CopyforgeError):
    """Upstream body was not decodable or lacked content/usage."""
    kind = "invalid_response"


class FormatError(CopyforgeError):
    """Generated content did not match the block's expected shape."""
    kind = "format_error"


class PageNotFoundError(CopyforgeError):
    """The requested page does not exist."""
    kind = "not_found"


class BudgetExceeded(CopyforgeError):
    """Month-to-date spend reached the monthly ceiling."""
    kind = "budget_exceeded"

    def __init__(self, current: float, limit: float):
        super().__init__(
            f"Monthly budget limit reached (${current:.2f} of ${limit:.2f}). "
            "Increase the limit or wait until next month."
        )
        self.current = current
        self.limit = limit

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current"] = self.current
        data["limit"] = self.limit
        return data
