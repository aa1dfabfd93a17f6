"""Outcomes returned by coordinator operations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SyncOutcome(str, Enum):
    OK = "ok"
    NOT_AUTHENTICATED = "not_authenticated"
    TRACK_REQUIRED = "track_required"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_FULL = "session_full"
    SESSION_ENDED = "session_ended"
    ALREADY_IN_SESSION = "already_in_session"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class SessionResult:
    outcome: SyncOutcome
    sync_key: str | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is SyncOutcome.OK


@dataclass(frozen=True)
class BroadcastResult:
    """``applied`` is False for unauthorised no-ops; ``warning`` carries publish failures."""

    applied: bool
    delivered: bool = False
    warning: str | None = None

    @classmethod
    def denied(cls) -> "BroadcastResult":
        return cls(applied=False)
