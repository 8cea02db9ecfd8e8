"""Custom exception classes for MCP Vector Proxy."""

from typing import Optional


class ProxyBaseError(Exception):
    """Base class for all custom exceptions in MCP Vector Proxy."""

    pass


class ConfigurationError(ProxyBaseError):
    """Raised when loading or validating the configuration fails."""

    pass


class UpstreamError(ProxyBaseError):
    """
    Raised when talking to the upstream aggregator fails,
    or when the upstream session is not available.
    """

    def __init__(self, message: str, orig_exc: Optional[BaseException] = None):
        self.orig_exc = orig_exc

        full_msg = f"Upstream error: {message}"
        if orig_exc:
            full_msg += f" (original error: {type(orig_exc).__name__})"
        super().__init__(full_msg)


class NotReadyError(ProxyBaseError):
    """Raised when an operation needs a connected upstream or a built catalog."""

    pass


class InvalidRequestError(ProxyBaseError):
    """Raised when a downstream caller sends malformed arguments."""

    pass


class SnapshotStoreError(ProxyBaseError):
    """Raised when the persisted catalog snapshot cannot be written."""

    pass
