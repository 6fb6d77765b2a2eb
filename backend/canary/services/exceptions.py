from typing import Optional


class CanaryError(Exception):
    """Base class for canary run errors."""


class PlatformError(CanaryError):
    """Raised when a platform HTTP call fails."""


class PlatformRequestError(PlatformError):
    """Raised when a platform service answers with a non-2xx status."""

    def __init__(self, method: str, url: str, status_code: int, body: str = ""):
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body
        super().__init__(f"{method} {url} returned {status_code}: {body[:500]}")


class PlatformUnavailableError(PlatformError):
    """Raised when a platform service cannot be reached or times out."""


class PlatformResponseError(PlatformError):
    """Raised when a response body cannot be decoded into the expected shape."""


class IdentityError(CanaryError):
    """Raised when no session could be acquired from the identity provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransportError(CanaryError):
    """Raised when an MQTT connect, subscribe or publish is not acknowledged."""


class WorkflowLegError(CanaryError):
    """Raised when a workflow leg cannot continue (deployment, start or deletion failed)."""


class UnexpectedCommandError(CanaryError):
    """Raised when a command delivered to the canary device does not carry the expected payload."""
