"""Domain models for synchronized listening sessions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id(prefix: str = "") -> str:
    """Return a random identifier, optionally prefixed (``queue_…``, ``msg_…``)."""

    return f"{prefix}_{uuid4().hex}" if prefix else uuid4().hex


class SyncEventType(str, Enum):
    """Event types carried by the session event channel."""

    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"
    STOP = "stop"
    SONG_CHANGE = "song_change"
    HEARTBEAT = "heartbeat"
    QUEUE_ADD = "queue_add"
    QUEUE_REMOVE = "queue_remove"
    QUEUE_REORDER = "queue_reorder"
    QUEUE_CLEAR = "queue_clear"
    VOTE_CAST = "vote_cast"
    CHAT_MESSAGE = "chat_message"
    REACTION = "reaction"
    HOST_TRANSFER = "host_transfer"
    COHOST_ADD = "cohost_add"
    COHOST_REMOVE = "cohost_remove"
    SESSION_LOCK = "session_lock"
    SESSION_UNLOCK = "session_unlock"
    MEMBER_KICK = "member_kick"
    SESSION_END = "session_end"


TRANSPORT_EVENTS = frozenset(
    {
        SyncEventType.PLAY,
        SyncEventType.PAUSE,
        SyncEventType.SEEK,
        SyncEventType.STOP,
        SyncEventType.SONG_CHANGE,
    }
)

SessionStatus = Literal["active", "ended"]
ParticipantStatus = Literal["connected", "syncing", "disconnected"]
ParticipantRole = Literal["controller", "playback", "listener"]
VotingPolicy = Literal["majority", "host_override", "free"]
ChatMessageType = Literal["text", "reaction", "system"]


class TrackRef(BaseModel):
    """Reference to a playable media item; the catalog owns the rest."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(..., min_length=1)
    title: str = ""
    thumbnail: str | None = None
    channel_title: str | None = Field(default=None, alias="channelTitle")
    duration_seconds: float | None = Field(default=None, ge=0, alias="durationSeconds")


class SyncSession(BaseModel):
    """Authoritative record of one listening party."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    sync_key: str = Field(..., alias="syncKey")
    host_participant_id: str = Field(..., alias="hostParticipantId")
    host_user_id: str | None = Field(default=None, alias="hostUserId")
    cohost_ids: set[str] = Field(default_factory=set, alias="cohostIds")
    current_track: TrackRef | None = Field(default=None, alias="currentTrack")
    start_timestamp: int | None = Field(
        default=None,
        alias="startTimestamp",
        description="Authoritative ms at which playback (re)started from currentPosition.",
    )
    current_position: float = Field(0.0, ge=0, alias="currentPosition")
    is_playing: bool = Field(False, alias="isPlaying")
    status: SessionStatus = "active"
    is_locked: bool = Field(False, alias="isLocked")
    voting_policy: VotingPolicy = Field("free", alias="votingPolicy")
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")

    @model_validator(mode="after")
    def validate_clock_anchor(self) -> "SyncSession":
        if self.is_playing != (self.start_timestamp is not None):
            raise ValueError("startTimestamp must be set exactly when the session is playing")
        return self

    def projected_position(self, now_ms: float) -> float:
        """Position implied by the record at authoritative time ``now_ms``."""

        if not self.is_playing or self.start_timestamp is None:
            return self.current_position
        elapsed = (now_ms - self.start_timestamp) / 1000.0
        return max(0.0, self.current_position + elapsed)


class SyncParticipant(BaseModel):
    """One connected device within a session."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    session_id: str = Field(..., alias="sessionId")
    device_id: str = Field(..., min_length=1, alias="deviceId")
    user_id: str | None = Field(default=None, alias="userId")
    display_name: str = Field("Guest", alias="displayName")
    is_host: bool = Field(False, alias="isHost")
    is_cohost: bool = Field(False, alias="isCohost")
    role: ParticipantRole = "controller"
    latency_ms: float = Field(0.0, ge=0, alias="latencyMs")
    status: ParticipantStatus = "connected"
    joined_at: datetime = Field(default_factory=_utcnow, alias="joinedAt")
    last_heartbeat: datetime = Field(default_factory=_utcnow, alias="lastHeartbeat")


class SyncEvent(BaseModel):
    """Immutable fact broadcast to every participant of a session."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    session_id: str = Field(..., alias="sessionId")
    type: SyncEventType
    timestamp: int = Field(..., description="Authoritative ms at emission.")
    position: float | None = None
    track: TrackRef | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    sender_device_id: str = Field(..., alias="senderDeviceId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class QueueItem(BaseModel):
    """Track proposed for upcoming playback."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: new_id("queue"))
    track: TrackRef
    added_by: str = Field(..., alias="addedBy")
    added_at: int = Field(..., alias="addedAt")
    votes: int = Field(0, ge=0)
    voter_ids: set[str] = Field(default_factory=set, alias="voterIds")


class ChatMessage(BaseModel):
    """Chat line, reaction or system notice."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: new_id("msg"))
    sender_id: str = Field(..., alias="senderId")
    sender_name: str = Field(..., alias="senderName")
    text: str
    timestamp: int
    type: ChatMessageType = "text"


class SessionOptions(BaseModel):
    """Options accepted by ``create_session``."""

    model_config = ConfigDict(populate_by_name=True)

    voting_policy: VotingPolicy = Field("free", alias="votingPolicy")
    is_locked: bool = Field(False, alias="isLocked")
    display_name: str | None = Field(default=None, alias="displayName")


class SyncState(BaseModel):
    """Snapshot handed to state-change listeners."""

    model_config = ConfigDict(populate_by_name=True)

    session: SyncSession | None = None
    participant_id: str | None = Field(default=None, alias="participantId")
    participants: list[SyncParticipant] = Field(default_factory=list)
    queue: list[QueueItem] = Field(default_factory=list)
    chat: list[ChatMessage] = Field(default_factory=list)
    is_host: bool = Field(False, alias="isHost")
    is_cohost: bool = Field(False, alias="isCohost")
    can_control: bool = Field(False, alias="canControl")
    is_connected: bool = Field(False, alias="isConnected")
    is_syncing: bool = Field(False, alias="isSyncing")


ModelT = TypeVar("ModelT", bound=BaseModel)


def apply_update(record: ModelT, fields: dict[str, Any]) -> ModelT:
    """Return a re-validated copy of ``record`` with ``fields`` applied."""

    data = record.model_dump()
    data.update(fields)
    return type(record).model_validate(data)
