"""HTTP payloads of the relay hub."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class EventAck(BaseModel):
    """Acknowledgement response for publish operations."""

    accepted: bool = Field(True, description="Event was recorded and handed to the channel.")
    delivered: int = Field(..., ge=0, description="Count of local websocket receivers the event was sent to.")


class ServerTime(BaseModel):
    """Latency-probe response."""

    model_config = ConfigDict(populate_by_name=True)

    server_time: int = Field(..., alias="serverTime", description="Server clock in epoch milliseconds.")
