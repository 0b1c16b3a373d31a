"""Typed snapshot models validated at the client boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from game_errors import SnapshotValidationError

SESSION_STATUSES = ("waiting", "active", "completed", "expired")
TURN_MODES = ("audio", "elements")


def _require_mapping(payload: Any, label: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise SnapshotValidationError(f"{label} must be an object.")
    return payload


def _text(payload: Dict[str, Any], key: str, *, required: bool = False) -> str:
    value = payload.get(key)
    if value is None:
        if required:
            raise SnapshotValidationError(f"Missing field: {key}")
        return ""
    if not isinstance(value, str):
        raise SnapshotValidationError(f"Field {key} must be a string.")
    return value


def _int(payload: Dict[str, Any], key: str, default: int = 0) -> int:
    value = payload.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SnapshotValidationError(f"Field {key} must be a number.")
    return int(value)


@dataclass(frozen=True)
class SessionState:
    id: str
    lobby_code: str
    host_player_id: str
    status: str
    current_round: int = 0
    total_rounds: int = 0
    current_storyteller_id: str = ""
    selected_theme_id: str = ""
    turn_mode: str = "audio"
    winner_player_id: str = ""
    round_started_at: int = 0
    cleanup_at: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "SessionState":
        data = _require_mapping(payload, "session")
        status = _text(data, "status", required=True)
        if status not in SESSION_STATUSES:
            raise SnapshotValidationError(f"Unknown session status: {status}")
        turn_mode = _text(data, "turn_mode") or "audio"
        if turn_mode not in TURN_MODES:
            raise SnapshotValidationError(f"Unknown turn mode: {turn_mode}")
        return cls(
            id=_text(data, "id", required=True),
            lobby_code=_text(data, "lobby_code", required=True),
            host_player_id=_text(data, "host_player_id", required=True),
            status=status,
            current_round=_int(data, "current_round"),
            total_rounds=_int(data, "total_rounds"),
            current_storyteller_id=_text(data, "current_storyteller_id"),
            selected_theme_id=_text(data, "selected_theme_id"),
            turn_mode=turn_mode,
            winner_player_id=_text(data, "winner_player_id"),
            round_started_at=_int(data, "round_started_at"),
            cleanup_at=_int(data, "cleanup_at"),
        )


@dataclass(frozen=True)
class PlayerState:
    player_id: str
    name: str
    turn_order: int
    score: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "PlayerState":
        data = _require_mapping(payload, "player")
        turn_order = _int(data, "turn_order")
        if turn_order < 1:
            raise SnapshotValidationError("turn_order must be a positive integer.")
        return cls(
            player_id=_text(data, "player_id", required=True),
            name=_text(data, "name"),
            turn_order=turn_order,
            score=_int(data, "score"),
        )


@dataclass(frozen=True)
class TurnState:
    id: str
    round_number: int
    storyteller_id: str
    theme_id: str = ""
    turn_mode: str = "audio"
    has_secret: bool = False
    secret: str = ""
    selected_icons: Tuple[str, ...] = ()
    recording_url: str = ""
    clue_submitted_at: int = 0
    completed_at: int = 0
    skipped: bool = False

    @property
    def has_clue(self) -> bool:
        return self.clue_submitted_at > 0

    @property
    def is_completed(self) -> bool:
        return self.completed_at > 0

    @classmethod
    def from_payload(cls, payload: Any) -> "TurnState":
        data = _require_mapping(payload, "current_turn")
        icons = data.get("selected_icons") or []
        if not isinstance(icons, list):
            raise SnapshotValidationError("selected_icons must be a list.")
        secret = _text(data, "secret")
        return cls(
            id=_text(data, "id", required=True),
            round_number=_int(data, "round_number"),
            storyteller_id=_text(data, "storyteller_id", required=True),
            theme_id=_text(data, "theme_id"),
            turn_mode=_text(data, "turn_mode") or "audio",
            has_secret=bool(data.get("has_secret")) or bool(secret),
            secret=secret,
            selected_icons=tuple(
                str(icon.get("id") if isinstance(icon, dict) else icon) for icon in icons
            ),
            recording_url=_text(data, "recording_url"),
            clue_submitted_at=_int(data, "clue_submitted_at"),
            completed_at=_int(data, "completed_at"),
            skipped=bool(data.get("skipped")),
        )


@dataclass(frozen=True)
class GuessState:
    player_id: str
    round_number: int
    guess_text: Optional[str] = None
    is_correct: Optional[bool] = None
    created_at: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "GuessState":
        data = _require_mapping(payload, "guess")
        is_correct = data.get("is_correct")
        return cls(
            player_id=_text(data, "player_id", required=True),
            round_number=_int(data, "round_number"),
            guess_text=data.get("guess_text"),
            is_correct=None if is_correct is None else bool(is_correct),
            created_at=_int(data, "created_at"),
        )


@dataclass(frozen=True)
class GameSnapshot:
    session: SessionState
    players: Tuple[PlayerState, ...] = ()
    current_turn: Optional[TurnState] = None
    guesses: Tuple[GuessState, ...] = ()
    round_results: Optional[Dict[str, Any]] = None
    fetched_at: int = 0
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "GameSnapshot":
        data = _require_mapping(payload, "snapshot")
        players_raw = data.get("players") or []
        guesses_raw = data.get("guesses") or []
        if not isinstance(players_raw, list) or not isinstance(guesses_raw, list):
            raise SnapshotValidationError("players and guesses must be lists.")
        turn_raw = data.get("current_turn")
        round_results = data.get("round_results")
        if round_results is not None and not isinstance(round_results, dict):
            raise SnapshotValidationError("round_results must be an object.")
        known = {"session", "players", "current_turn", "guesses", "round_results", "server_time"}
        return cls(
            session=SessionState.from_payload(data.get("session")),
            players=tuple(PlayerState.from_payload(item) for item in players_raw),
            current_turn=TurnState.from_payload(turn_raw) if turn_raw else None,
            guesses=tuple(GuessState.from_payload(item) for item in guesses_raw),
            round_results=round_results,
            fetched_at=_int(data, "server_time"),
            extras={key: value for key, value in data.items() if key not in known},
        )

    def player(self, player_id: str) -> Optional[PlayerState]:
        for player in self.players:
            if player.player_id == player_id:
                return player
        return None

    def player_ids(self) -> List[str]:
        return [player.player_id for player in self.players]

    def guesses_for_round(self, round_number: int) -> List[GuessState]:
        return [guess for guess in self.guesses if guess.round_number == round_number]
