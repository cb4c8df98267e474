"""Error taxonomy for the JiuTian proxy."""

from typing import Optional


class ProxyError(Exception):
    """Base class for errors surfaced to callers of the proxy."""

    status_code = 500
    # Whether the message is safe to show even when error details are hidden
    public = False

    def __init__(self, message: str, detail: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class InvalidRequestError(ProxyError):
    status_code = 400
    public = True


class CredentialError(ProxyError):
    """The upstream credential could not be produced."""


class InvalidCredentialMaterial(CredentialError):
    """The shared secret is not of the form <identifier>.<signingKey>."""


class SigningFailure(CredentialError):
    """The HMAC signature could not be computed."""


class UnsupportedModelError(ProxyError):
    status_code = 404
    public = True

    def __init__(self, requested: str, supported: str):
        super().__init__(
            f"model '{requested}' not found, use '{supported}'",
            detail=f"this proxy only serves '{supported}'",
        )
        self.requested = requested
        self.supported = supported


class UpstreamConnectError(ProxyError):
    """The upstream provider was unreachable or answered with a non-2xx status."""

    def __init__(self, message: str, detail: Optional[str] = None, upstream_status: Optional[int] = None):
        super().__init__(message, detail=detail)
        self.upstream_status = upstream_status


class FrameParseError(ValueError):
    """A single upstream event frame could not be parsed."""

    def __init__(self, message: str, frame: str = ""):
        super().__init__(message)
        self.frame = frame


class DownstreamWriteError(Exception):
    """The client connection went away while a stream was being written."""
