"""Fire-and-forget broadcast messages exchanged between clients of a session.

A broadcast is only ever a hint to refetch sooner. ``interpret_broadcast`` is
pure: it maps a message onto a ``BroadcastHint`` and the reconciliation loop
decides what to do with it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class BroadcastEvent(str, Enum):
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    PLAYER_KICKED = "player_kicked"
    TURN_ORDER_CHANGED = "turn_order_changed"
    GAME_STARTED = "game_started"
    LOBBY_ENDED = "lobby_ended"
    THEME_SELECTED = "theme_selected"
    SECRET_ELEMENT_SELECTED = "secret_element_selected"
    ELEMENTS_GENERATED = "elements_generated"
    RECORDING_STARTED = "recording_started"
    RECORDING_STOPPED = "recording_stopped"
    RECORDING_UPLOADED = "recording_uploaded"
    STORY_SUBMITTED = "story_submitted"
    GUESS_SUBMITTED = "guess_submitted"
    CORRECT_ANSWER = "correct_answer"
    TURN_COMPLETED = "turn_completed"
    NEXT_TURN = "next_turn"
    SCORE_UPDATED = "score_updated"
    GAME_COMPLETED = "game_completed"
    REFRESH_GAME_STATE = "refresh_game_state"
    PING = "ping"


# Events that carry no state change: recording progress is cosmetic and
# ping is a keep-alive.
COSMETIC_EVENTS = frozenset(
    {
        BroadcastEvent.RECORDING_STARTED,
        BroadcastEvent.RECORDING_STOPPED,
        BroadcastEvent.PING,
    }
)

LOBBY_CHANNEL_PREFIX = "lobby:"
GAME_CHANNEL_PREFIX = "game:"


def lobby_channel(session_id: str) -> str:
    return f"{LOBBY_CHANNEL_PREFIX}{session_id}"


def game_channel(session_id: str) -> str:
    return f"{GAME_CHANNEL_PREFIX}{session_id}"


def channel_session_id(channel: str) -> str:
    for prefix in (LOBBY_CHANNEL_PREFIX, GAME_CHANNEL_PREFIX):
        if channel.startswith(prefix):
            return channel[len(prefix):]
    return ""


class BroadcastFormatError(ValueError):
    pass


@dataclass(frozen=True)
class BroadcastMessage:
    event: BroadcastEvent
    payload: Dict[str, Any] = field(default_factory=dict)
    sender_id: str = ""
    sender_name: str = ""
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return {
            "event": self.event.value,
            "payload": dict(self.payload),
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "timestamp": self.timestamp,
        }

    @classmethod
    def build(
        cls,
        event: BroadcastEvent | str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        sender_id: str = "",
        sender_name: str = "",
    ) -> "BroadcastMessage":
        return cls.from_dict(
            {
                "event": event.value if isinstance(event, BroadcastEvent) else event,
                "payload": payload or {},
                "sender_id": sender_id,
                "sender_name": sender_name,
                "timestamp": time.time(),
            }
        )

    @classmethod
    def from_dict(cls, data: Any) -> "BroadcastMessage":
        if not isinstance(data, dict):
            raise BroadcastFormatError("Broadcast message must be an object.")
        raw_event = str(data.get("event") or data.get("type") or "").strip()
        try:
            event = BroadcastEvent(raw_event)
        except ValueError as exc:
            raise BroadcastFormatError(f"Unknown broadcast event: {raw_event or '?'}") from exc
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise BroadcastFormatError("Broadcast payload must be an object.")
        try:
            timestamp = float(data.get("timestamp") or 0.0)
        except (TypeError, ValueError) as exc:
            raise BroadcastFormatError("Broadcast timestamp must be a number.") from exc
        return cls(
            event=event,
            payload=payload,
            sender_id=str(data.get("sender_id") or data.get("senderId") or ""),
            sender_name=str(data.get("sender_name") or data.get("senderName") or "")[:100],
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class BroadcastHint:
    refresh: bool = False
    exit_reason: str = ""
    joining_player_id: str = ""
    joining_player_name: str = ""


def interpret_broadcast(message: BroadcastMessage, local_player_id: str) -> BroadcastHint:
    event = message.event
    payload = message.payload

    if event is BroadcastEvent.PLAYER_KICKED:
        kicked_id = str(payload.get("player_id") or payload.get("kickedPlayerId") or "")
        if kicked_id and kicked_id == local_player_id:
            return BroadcastHint(exit_reason="kicked")
        return BroadcastHint(refresh=True)

    if event is BroadcastEvent.PLAYER_JOINED:
        joined_id = str(payload.get("player_id") or message.sender_id or "")
        if joined_id and joined_id != local_player_id:
            return BroadcastHint(
                refresh=True,
                joining_player_id=joined_id,
                joining_player_name=str(payload.get("name") or message.sender_name or ""),
            )
        return BroadcastHint(refresh=True)

    if event in COSMETIC_EVENTS:
        return BroadcastHint()

    return BroadcastHint(refresh=True)
