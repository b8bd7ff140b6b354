from __future__ import annotations


class DepthClientError(Exception):
    """Base class for errors raised by the depth book client."""


class SnapshotError(DepthClientError):
    """REST snapshot could not be fetched or was invalid."""


class CommandError(DepthClientError):
    """The stream rejected a control command."""

    def __init__(self, method: str, request_id, error) -> None:
        super().__init__(f"{method} id={request_id} failed: {error}")
        self.method = method
        self.request_id = request_id
        self.error = error


class RequestExpired(DepthClientError):
    """No confirmation arrived for a control command before its timeout."""
