"""
Error taxonomy shared by every pipeline stage.

Each failure carries the HTTP status and machine code the API boundary
reports, so stages raise typed errors and the server only translates them.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for all expected pipeline failures."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str = "", code: Optional[str] = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail}


class InputError(ProxyError):
    """Invalid or missing URL, selector schema or query parameter."""
    status_code = 400
    code = "invalid_input"


class AuthError(ProxyError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(ProxyError):
    status_code = 404
    code = "not_found"


class RateLimited(ProxyError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, detail: str = "", retry_after: int = 60):
        super().__init__(detail)
        self.retry_after = retry_after


class UpstreamFailure(ProxyError):
    status_code = 502
    code = "upstream_failure"


class ServiceUnavailable(ProxyError):
    status_code = 503
    code = "service_unavailable"


class InternalFault(ProxyError):
    status_code = 500
    code = "internal_error"


class RegistryError(InternalFault):
    code = "registry_failed"


class RenderError(UpstreamFailure):
    """
    A single render attempt failed.

    Attributes:
        cause: Short cause tag (launch, timeout, navigation, network, ...)
        retryable: Whether another attempt could plausibly succeed
    """
    code = "render_failed"

    def __init__(self, detail: str, cause: str = "navigation", retryable: bool = True):
        super().__init__(detail)
        self.cause = cause
        self.retryable = retryable


class RendererUnavailable(RenderError, ServiceUnavailable):
    """The browser dependency itself is missing or cannot start."""
    status_code = 503
    code = "renderer_unavailable"

    def __init__(self, detail: str):
        super().__init__(detail, cause="launch", retryable=False)
