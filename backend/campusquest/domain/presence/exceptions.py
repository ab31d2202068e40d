"""Domain-level exceptions for the presence table."""

from __future__ import annotations


class PresenceError(Exception):
    """Base class for presence errors."""

    reason: str = "unknown"

    def __init__(self, connection_id: str, reason: str | None = None) -> None:
        super().__init__(f"{reason or self.reason}:{connection_id}")
        self.connection_id = connection_id
        if reason:
            self.reason = reason


class UnknownConnection(PresenceError):
    reason = "unknown_connection"


class DuplicateConnection(PresenceError):
    reason = "duplicate_connection"
