"""Error taxonomy of the booking ledger and calendar sync engine."""

from typing import Any, List, Optional


class SyncError(Exception):
    """Base class for errors raised by the booking sync service."""


class ProviderError(SyncError):
    """Non-2xx answer from the calendar provider (auth failures and 404s included)."""

    def __init__(self, status_code: int, body: str = "", message: Optional[str] = None) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"Graph API error {status_code}: {body}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class NotConfiguredError(SyncError):
    """Calendar sync was requested but credentials or the webhook URL are missing."""

    def __init__(self, message: str = "Microsoft Graph not configured") -> None:
        super().__init__(message)


class ConflictError(SyncError):
    """A booking would overlap an existing confirmed booking of the same room."""

    def __init__(self, conflicts: Optional[List[Any]] = None, message: str = "Room already booked in this interval") -> None:
        self.conflicts = list(conflicts or [])
        super().__init__(message)


class ValidationError(SyncError):
    """Malformed input handed to the ledger."""


class NotFoundError(SyncError):
    def __init__(self, entity: str, identifier: Any) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")
