"""Error taxonomy for the datasource sync engine.

ConfigIncomplete and MissingCredential are terminal: the connection was never
operable, so there is no snapshot fallback. UpstreamError (and its
QueryResolutionError subtype) is recoverable by serving the last snapshot.
"""

from __future__ import annotations


class DatasourceError(Exception):
    """Base class for all datasource errors. `message` is safe to show users."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigIncomplete(DatasourceError):
    """Endpoint, project, or query text missing -- no network call is made."""


class MissingCredential(DatasourceError):
    """A tracker call was requested but no usable credential is stored."""


class InvalidRecordUrl(DatasourceError):
    """A tracker UI URL could not be parsed into organization/project/id."""


class UpstreamError(DatasourceError):
    """Non-2xx response, transport failure, or timeout from the tracker API.

    Args:
        message: Human-readable summary of the failed operation.
        status_code: HTTP status, or None for transport failures/timeouts.
        body: Response body text (may be empty).
    """

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        detail = f"{message} ({status_code})" if status_code is not None else message
        if body:
            detail = f"{detail}. {body}"
        super().__init__(detail.strip())
        self.status_code = status_code
        self.body = body


class QueryResolutionError(UpstreamError):
    """A saved query id did not resolve to query text."""


__all__ = [
    "DatasourceError",
    "ConfigIncomplete",
    "MissingCredential",
    "InvalidRecordUrl",
    "UpstreamError",
    "QueryResolutionError",
]
