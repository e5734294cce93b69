"""Error taxonomy for provider sync.

Connection-level errors end a sync run; everything else is caught at the
item that raised it and recorded on the ``SyncResult``.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all trainsync wearable errors."""


class ProviderConnectionError(SyncError):
    """The provider session could not be established or was lost."""


class RequestTimeoutError(SyncError, TimeoutError):
    """A single provider request exceeded its deadline."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"Request {method} timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class ProtocolError(SyncError):
    """The worker answered a request with an error object."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class ToolError(ProtocolError):
    """A tool call returned an envelope flagged ``isError``."""


class NormalizationError(SyncError, ValueError):
    """A provider payload is missing a mandatory identifier."""

    def __init__(self, entity: str, field: str) -> None:
        super().__init__(f"{entity} payload is missing required field '{field}'")
        self.entity = entity
        self.field = field


class PersistenceError(SyncError):
    """A storage read or write failed."""

    def __init__(
        self, message: str, operation: str | None = None, table: str | None = None
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.table = table
