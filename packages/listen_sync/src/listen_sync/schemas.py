"""JSON Schema validation for sync events arriving from the wire."""

from __future__ import annotations

from typing import Any

from jsonschema import Draft7Validator

_POSITION = {"type": "number", "minimum": 0}
_ID = {"type": "string", "minLength": 1}

_TRACK = {
    "type": "object",
    "required": ["id"],
    "properties": {
        "id": _ID,
        "title": {"type": "string"},
        "durationSeconds": {"type": ["number", "null"]},
    },
}

_ENVELOPE_PROPERTIES = {
    "id": _ID,
    "sessionId": _ID,
    "type": {"type": "string"},
    "timestamp": {"type": "integer"},
    "senderDeviceId": _ID,
    "payload": {"type": "object"},
}

_ENVELOPE_REQUIRED = ["sessionId", "type", "timestamp", "senderDeviceId"]


def _event_schema(
    *,
    payload_required: list[str] | None = None,
    payload_properties: dict[str, Any] | None = None,
    extra_required: list[str] | None = None,
    extra_properties: dict[str, Any] | None = None,
) -> dict[str, Any]:
    properties = dict(_ENVELOPE_PROPERTIES)
    properties.update(extra_properties or {})
    if payload_required or payload_properties:
        properties["payload"] = {
            "type": "object",
            "required": payload_required or [],
            "properties": payload_properties or {},
        }
    required = list(_ENVELOPE_REQUIRED) + (extra_required or [])
    if payload_required:
        required.append("payload")
    return {"type": "object", "required": required, "properties": properties}


_POSITIONED = _event_schema(extra_required=["position"], extra_properties={"position": _POSITION})

SCHEMAS: dict[str, dict[str, Any]] = {
    "play": _POSITIONED,
    "pause": _POSITIONED,
    "seek": _POSITIONED,
    "stop": _event_schema(),
    "song_change": _event_schema(
        extra_required=["track"],
        extra_properties={"track": _TRACK, "position": _POSITION},
    ),
    "heartbeat": _event_schema(
        payload_required=["participantId"],
        payload_properties={"participantId": _ID, "latencyMs": {"type": "number", "minimum": 0}},
    ),
    "queue_add": _event_schema(
        payload_required=["item"],
        payload_properties={
            "item": {
                "type": "object",
                "required": ["id", "track", "addedBy"],
                "properties": {"id": _ID, "track": _TRACK, "addedBy": _ID},
            }
        },
    ),
    "queue_remove": _event_schema(payload_required=["itemId"], payload_properties={"itemId": _ID}),
    "queue_reorder": _event_schema(
        payload_required=["order"],
        payload_properties={"order": {"type": "array", "items": _ID}},
    ),
    "queue_clear": _event_schema(),
    "vote_cast": _event_schema(
        payload_required=["itemId", "voterId"],
        payload_properties={"itemId": _ID, "voterId": _ID},
    ),
    "chat_message": _event_schema(
        payload_required=["message"],
        payload_properties={"message": {"type": "object", "required": ["id", "senderId", "text"]}},
    ),
    "reaction": _event_schema(
        payload_required=["reaction"],
        payload_properties={"reaction": {"type": "object", "required": ["id", "senderId", "text"]}},
    ),
    "host_transfer": _event_schema(
        payload_required=["newHostParticipantId"],
        payload_properties={"newHostParticipantId": _ID},
    ),
    "cohost_add": _event_schema(payload_required=["participantId"], payload_properties={"participantId": _ID}),
    "cohost_remove": _event_schema(payload_required=["participantId"], payload_properties={"participantId": _ID}),
    "session_lock": _event_schema(),
    "session_unlock": _event_schema(),
    "member_kick": _event_schema(payload_required=["participantId"], payload_properties={"participantId": _ID}),
    "session_end": _event_schema(),
}

GENERIC_SCHEMA = _event_schema()

_VALIDATORS = {name: Draft7Validator(schema) for name, schema in SCHEMAS.items()}
_GENERIC_VALIDATOR = Draft7Validator(GENERIC_SCHEMA)


def validate_event_payload(instance: dict[str, Any]) -> None:
    """Validate a wire event against the schema of its type.

    Raises:
        jsonschema.ValidationError: When the event is malformed.
    """

    validator = _VALIDATORS.get(str(instance.get("type", "")), _GENERIC_VALIDATOR)
    validator.validate(instance)
