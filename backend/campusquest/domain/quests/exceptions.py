"""Domain-level exceptions for quest completion."""

from __future__ import annotations

from datetime import datetime


class QuestError(Exception):
    """Base class for quest engine errors."""

    reason: str = "unknown"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason


class ZoneTimeWindowViolation(QuestError):
    """A zone was entered outside of its scheduled completion window."""

    reason = "outside_window"

    def __init__(self, zone_id: str, reason: str, *, window_start: datetime, window_end: datetime) -> None:
        super().__init__(reason)
        self.zone_id = zone_id
        self.window_start = window_start
        self.window_end = window_end

    def to_dict(self) -> dict:
        return {
            "zone_id": self.zone_id,
            "reason": self.reason,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
        }


class DuplicateVisitAttempt(QuestError):
    """The visit already existed; handled as an idempotent success."""

    reason = "duplicate_visit"

    def __init__(self, balance: int | None = None) -> None:
        super().__init__()
        self.balance = balance


class PersistenceFailure(QuestError):
    """The persistence collaborator failed or did not answer in time."""

    reason = "persistence_failure"
