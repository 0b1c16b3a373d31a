from __future__ import annotations

import json
import logging
import random
import secrets
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable

import scoring
import turn_order
from game_errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from multiplayer_service_core import ChangeBuffer, MultiplayerServiceCore
from theme_catalog import ThemeCatalog

logger = logging.getLogger(__name__)


class PhraseotomyService(MultiplayerServiceCore):
    GAME_NAME = "Phraseotomy"
    MIN_PLAYERS = 4
    MAX_PLAYERS = 12
    MAX_ROUNDS_LIMIT = 30
    TURN_MODE_AUDIO = "audio"
    TURN_MODE_ELEMENTS = "elements"
    TURN_MODES = (TURN_MODE_AUDIO, TURN_MODE_ELEMENTS)
    ROUND_ADVANCE_AUTO = "auto"
    ROUND_ADVANCE_CLIENT = "client"
    DEFAULT_STORY_TIME_SECONDS = 600
    DEFAULT_GUESS_TIME_SECONDS = 420
    DEFAULT_CLEANUP_DELAY_SECONDS = 35
    DEFAULT_ROUND_RESULTS_SECONDS = 5
    GUESS_MAX_LENGTH = 100
    CUSTOM_SECRET_MAX_LENGTH = 60
    RECORDING_URL_MAX_LENGTH = 500
    SESSION_TABLE = "ph_sessions"
    PLAYER_TABLE = "ph_players"

    def __init__(
        self,
        *,
        db_path: str,
        themes: ThemeCatalog | str | Path,
        change_feed=None,
        min_players: int | None = None,
        max_players: int | None = None,
        cleanup_delay_seconds: int | None = None,
        round_advance_mode: str = ROUND_ADVANCE_AUTO,
        round_results_seconds: int | None = None,
        story_time_seconds: int | None = None,
        guess_time_seconds: int | None = None,
        rng: random.Random | None = None,
        cleanup_scheduler: Callable[[float, Callable[[], None]], object] | None = None,
    ):
        super().__init__(db_path=db_path, change_feed=change_feed)
        self.themes = themes if isinstance(themes, ThemeCatalog) else ThemeCatalog.from_path(themes)
        if min_players is not None:
            self.MIN_PLAYERS = int(min_players)
        if max_players is not None:
            self.MAX_PLAYERS = int(max_players)
        self.cleanup_delay_seconds = int(
            self.DEFAULT_CLEANUP_DELAY_SECONDS if cleanup_delay_seconds is None else cleanup_delay_seconds
        )
        mode = (round_advance_mode or self.ROUND_ADVANCE_AUTO).strip().lower()
        self.round_advance_mode = (
            mode if mode in (self.ROUND_ADVANCE_AUTO, self.ROUND_ADVANCE_CLIENT) else self.ROUND_ADVANCE_AUTO
        )
        self.round_results_seconds = int(
            self.DEFAULT_ROUND_RESULTS_SECONDS if round_results_seconds is None else round_results_seconds
        )
        self.story_time_seconds = int(story_time_seconds or self.DEFAULT_STORY_TIME_SECONDS)
        self.guess_time_seconds = int(guess_time_seconds or self.DEFAULT_GUESS_TIME_SECONDS)
        self.rng = rng or random.Random()
        self._cleanup_scheduler = cleanup_scheduler or self._timer_scheduler
        self.ensure_schema()

    # ------------------------
    # Public API helpers
    # ------------------------

    def bootstrap(self) -> dict:
        return {
            "game_name": self.GAME_NAME,
            "min_players": self.MIN_PLAYERS,
            "max_players": self.MAX_PLAYERS,
            "turn_modes": list(self.TURN_MODES),
            "round_advance_mode": self.round_advance_mode,
            "round_results_seconds": self.round_results_seconds,
            "cleanup_delay_seconds": self.cleanup_delay_seconds,
            "story_time_seconds": self.story_time_seconds,
            "guess_time_seconds": self.guess_time_seconds,
            "themes": self.list_themes(),
        }

    def list_themes(self) -> list[dict]:
        return [theme.to_dict() for theme in self.themes.list_themes()]

    def create_session(
        self,
        player_name: str,
        player_id: str | None = None,
        lobby_code: str | None = None,
        total_rounds: int | None = None,
        turn_mode: str | None = None,
        story_time_seconds: int | None = None,
        guess_time_seconds: int | None = None,
    ) -> dict:
        mode = self._normalize_turn_mode(turn_mode)
        rounds = self._normalize_total_rounds(total_rounds)
        story_seconds = self._normalize_seconds(story_time_seconds, self.story_time_seconds)
        guess_seconds = self._normalize_seconds(guess_time_seconds, self.guess_time_seconds)

        def _insert_session(
            conn: sqlite3.Connection,
            session_id: str,
            code: str,
            host_player_id: str,
            now_ts: int,
        ) -> None:
            conn.execute(
                """
                INSERT INTO ph_sessions
                (id, lobby_code, host_player_id, status, current_round, total_rounds,
                 turn_mode, story_time_seconds, guess_time_seconds, created_at, updated_at)
                VALUES (?, ?, ?, 'waiting', 0, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    code,
                    host_player_id,
                    rounds,
                    mode,
                    story_seconds,
                    guess_seconds,
                    now_ts,
                    now_ts,
                ),
            )

        session_id, code, player_id, display_name = self._create_session_identity(
            player_name=player_name,
            player_id=player_id,
            lobby_code=lobby_code,
            insert_session=_insert_session,
        )
        logger.info("Phraseotomy lobby %s created (session %s).", code, session_id)

        return {
            "ok": True,
            "session_id": session_id,
            "lobby_code": code,
            "player_id": player_id,
            "display_name": display_name,
            "turn_order": 1,
            "max_players": self.MAX_PLAYERS,
            "turn_mode": mode,
            "total_rounds": rounds,
        }

    def join_lobby(
        self, lobby_code: str, player_name: str, player_id: str | None = None
    ) -> dict:
        session, player, already_member = self._join_session_identity(
            lobby_code=lobby_code,
            player_name=player_name,
            player_id=player_id,
        )
        if not already_member:
            logger.info(
                "Player %s joined lobby %s at turn order %s.",
                player["player_id"],
                session["lobby_code"],
                player["turn_order"],
            )
        return {
            "ok": True,
            "message": "Already in lobby" if already_member else "Joined lobby",
            "session_id": session["id"],
            "lobby_code": session["lobby_code"],
            "player_id": player["player_id"],
            "display_name": player["name"],
            "turn_order": int(player["turn_order"]),
            "session": self._public_session(session),
        }

    def get_lobby_data(self, session_id: str, player_id: str) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        with self._read() as conn:
            session = self._require_session(conn, session_id)
            snapshot = self._build_snapshot(conn, session, player_id)
            snapshot["audio_files"] = [
                {"round_number": int(row["round_number"]), "recording_url": row["recording_url"]}
                for row in conn.execute(
                    """
                    SELECT round_number, recording_url
                    FROM ph_turns
                    WHERE session_id = ? AND recording_url != '' AND clue_submitted_at > 0
                    ORDER BY round_number ASC
                    """,
                    (session_id,),
                ).fetchall()
            ]
        return snapshot

    def get_game_state(self, session_id: str, player_id: str) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        with self._read() as conn:
            session = self._require_session(conn, session_id)
            snapshot = self._build_snapshot(conn, session, player_id)
        snapshot["themes"] = self.list_themes()
        turn = snapshot["current_turn"]
        snapshot["selected_icons"] = self._resolve_icons(turn["selected_icons"]) if turn else []
        return snapshot

    def start_game(self, session_id: str, player_id: str) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        now_ts = int(time.time())

        with self._write() as (conn, changes):
            session = self._require_session(conn, session_id)
            if session["host_player_id"] != player_id:
                raise AuthorizationError("Only the host can start the game.", "host_only")
            if session["status"] != "waiting":
                raise ConflictError("The game has already started.", "session_not_waiting")

            players = self._list_players(conn, session_id)
            if len(players) < self.MIN_PLAYERS:
                raise ConflictError(
                    f"At least {self.MIN_PLAYERS} players are needed to start.",
                    "not_enough_players",
                )

            ordered_ids = [player["player_id"] for player in turn_order.sort_by_turn_order(players)]
            self._write_turn_orders(conn, changes, session_id, turn_order.renumber(ordered_ids))
            players = self._list_players(conn, session_id)

            total_rounds = int(session["total_rounds"]) or len(players)
            storyteller = turn_order.find_storyteller(players, 1)
            conn.execute(
                """
                UPDATE ph_sessions
                SET status = 'active',
                    current_round = 1,
                    total_rounds = ?,
                    current_storyteller_id = ?,
                    selected_theme_id = '',
                    round_started_at = ?,
                    started_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (total_rounds, storyteller["player_id"], now_ts, now_ts, now_ts, session_id),
            )
            self._insert_turn(conn, changes, session_id, 1, storyteller["player_id"], now_ts)
            self._record_session_change(conn, changes, session_id)

        logger.info(
            "Phraseotomy session %s started with %s players over %s rounds.",
            session_id,
            len(players),
            total_rounds,
        )
        return {
            "ok": True,
            "current_round": 1,
            "total_rounds": total_rounds,
            "storyteller_id": storyteller["player_id"],
            "storyteller_name": storyteller["name"],
        }

    def update_session_theme(self, session_id: str, player_id: str, theme_id: str) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        theme = self._require_theme(theme_id)
        now_ts = int(time.time())

        with self._write() as (conn, changes):
            session = self._require_active_session(conn, session_id)
            self._require_storyteller(session, player_id)
            turn = self._current_turn(conn, session) or self._insert_turn(
                conn,
                changes,
                session_id,
                int(session["current_round"]),
                player_id,
                now_ts,
            )
            if int(turn["completed_at"]):
                raise ConflictError("This turn is already complete.", "turn_completed")
            if turn["secret"]:
                raise ConflictError(
                    "The theme is locked once the secret is generated.", "theme_locked"
                )

            conn.execute(
                "UPDATE ph_turns SET theme_id = ?, updated_at = ? WHERE id = ?",
                (theme.id, now_ts, turn["id"]),
            )
            conn.execute(
                "UPDATE ph_sessions SET selected_theme_id = ?, updated_at = ? WHERE id = ?",
                (theme.id, now_ts, session_id),
            )
            self._record_turn_change(conn, changes, turn["id"])
            self._record_session_change(conn, changes, session_id)

        return {"ok": True, "theme": theme.to_dict()}

    def start_turn(
        self,
        session_id: str,
        player_id: str,
        theme_id: str | None = None,
        turn_mode: str | None = None,
        turn_id: str | None = None,
    ) -> dict:
        """Generate the secret and icons for the storyteller's turn.

        The secret is returned to the caller only. Calling again after the
        secret exists returns the same secret instead of drawing a new one.
        """
        session_id, player_id = self._require_ids(session_id, player_id)
        now_ts = int(time.time())

        with self._write() as (conn, changes):
            session = self._require_active_session(conn, session_id)
            self._require_storyteller(session, player_id)
            turn = self._current_turn(conn, session)
            if turn_id and (not turn or turn["id"] != turn_id):
                raise ConflictError("That turn is no longer current.", "stale_turn")
            if turn and int(turn["completed_at"]):
                raise ConflictError("This turn is already complete.", "turn_completed")

            if turn and turn["secret"]:
                return {
                    "ok": True,
                    "turn": self._public_turn(turn, viewer_id=player_id, reveal=True),
                    "whisp": turn["secret"],
                    "selected_icons": self._resolve_icons(
                        self._json_list(turn["selected_icons"])
                    ),
                }

            theme = self._require_theme(
                theme_id
                or (turn["theme_id"] if turn else "")
                or session["selected_theme_id"]
            )
            mode = self._normalize_turn_mode(turn_mode or session["turn_mode"])
            whisp = self.themes.pick_whisp(theme, self.rng)
            if whisp is None:
                raise ValidationError("That theme has no secret words.", "empty_theme")
            icons = self.themes.pick_icons(theme, self.rng)

            if turn is None:
                turn = self._insert_turn(
                    conn,
                    changes,
                    session_id,
                    int(session["current_round"]),
                    player_id,
                    now_ts,
                )
            conn.execute(
                """
                UPDATE ph_turns
                SET theme_id = ?,
                    turn_mode = ?,
                    secret = ?,
                    secret_element_id = ?,
                    selected_icons = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    theme.id,
                    mode,
                    whisp.name,
                    whisp.id,
                    json.dumps([icon.id for icon in icons]),
                    now_ts,
                    turn["id"],
                ),
            )
            conn.execute(
                """
                UPDATE ph_sessions
                SET selected_theme_id = ?, turn_mode = ?, updated_at = ?
                WHERE id = ?
                """,
                (theme.id, mode, now_ts, session_id),
            )
            turn = self._get_turn(conn, turn["id"])
            self._record_turn_change(conn, changes, turn["id"])
            self._record_session_change(conn, changes, session_id)

        logger.info(
            "Turn %s started in session %s (theme %s, mode %s).",
            turn["round_number"],
            session_id,
            theme.id,
            mode,
        )
        return {
            "ok": True,
            "turn": self._public_turn(turn, viewer_id=player_id, reveal=True),
            "whisp": whisp.name,
            "selected_icons": [icon.to_dict() for icon in icons],
        }

    def save_secret_element(
        self, session_id: str, player_id: str, secret_element_id: str
    ) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        raw_choice = str(secret_element_id or "").strip()
        if not raw_choice:
            raise ValidationError("A secret element is required.", "invalid_secret")

        with self._write() as (conn, changes):
            session = self._require_active_session(conn, session_id)
            self._require_storyteller(session, player_id)
            turn = self._require_open_turn(conn, session)
            if not turn["secret"]:
                raise ConflictError("Start the turn before choosing a secret.", "turn_not_started")
            if int(turn["clue_submitted_at"]):
                raise ConflictError("The clue is already submitted.", "clue_submitted")

            if raw_choice.lower().startswith(scoring.CUSTOM_SECRET_PREFIX):
                secret = scoring.strip_custom_prefix(raw_choice).strip()
                if not secret or len(secret) > self.CUSTOM_SECRET_MAX_LENGTH:
                    raise ValidationError(
                        f"Custom secrets must be 1-{self.CUSTOM_SECRET_MAX_LENGTH} characters.",
                        "invalid_secret",
                    )
                element_id = ""
            else:
                element = self.themes.get_element(raw_choice)
                theme = self.themes.get_theme(turn["theme_id"])
                if element is None or theme is None or element not in theme.elements:
                    raise ValidationError(
                        "That element is not part of this theme.", "invalid_secret"
                    )
                secret, element_id = element.name, element.id

            conn.execute(
                """
                UPDATE ph_turns
                SET secret = ?, secret_element_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (secret, element_id, int(time.time()), turn["id"]),
            )
            self._record_turn_change(conn, changes, turn["id"])

        return {"ok": True, "secret": secret}

    def update_icon_order(self, session_id: str, player_id: str, icon_ids) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        with self._write() as (conn, changes):
            session = self._require_active_session(conn, session_id)
            self._require_storyteller(session, player_id)
            turn = self._require_open_turn(conn, session)
            if int(turn["clue_submitted_at"]):
                raise ConflictError("The clue is already submitted.", "clue_submitted")
            ordered = self._validate_icon_permutation(turn, icon_ids)
            conn.execute(
                "UPDATE ph_turns SET selected_icons = ?, updated_at = ? WHERE id = ?",
                (json.dumps(ordered), int(time.time()), turn["id"]),
            )
            self._record_turn_change(conn, changes, turn["id"])
        return {"ok": True, "selected_icons": ordered}

    def submit_clue(
        self,
        session_id: str,
        player_id: str,
        recording_url: str | None = None,
        icon_ids=None,
    ) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        now_ts = int(time.time())

        with self._write() as (conn, changes):
            session = self._require_active_session(conn, session_id)
            self._require_storyteller(session, player_id)
            turn = self._require_open_turn(conn, session)
            if not turn["secret"]:
                raise ConflictError("Start the turn before submitting a clue.", "turn_not_started")
            if int(turn["clue_submitted_at"]):
                return {"ok": True, "already_submitted": True}

            url = str(recording_url or "").strip()
            icons = self._json_list(turn["selected_icons"])
            if turn["turn_mode"] == self.TURN_MODE_AUDIO:
                if not url or len(url) > self.RECORDING_URL_MAX_LENGTH:
                    raise ValidationError("A recording reference is required.", "missing_recording")
            elif icon_ids is not None:
                icons = self._validate_icon_permutation(turn, icon_ids)
            elif not icons:
                raise ValidationError("An icon sequence is required.", "missing_icons")

            conn.execute(
                """
                UPDATE ph_turns
                SET recording_url = ?, selected_icons = ?, clue_submitted_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (url, json.dumps(icons), now_ts, now_ts, turn["id"]),
            )
            self._touch_session(conn, session_id, now_ts)
            self._record_turn_change(conn, changes, turn["id"])

        logger.info("Clue submitted for round %s in session %s.", turn["round_number"], session_id)
        return {"ok": True, "already_submitted": False, "clue_submitted_at": now_ts}

    def submit_guess(
        self, session_id: str, round_number: int, player_id: str, guess: str
    ) -> dict:
        text = " ".join(str(guess or "").split())
        if not text:
            raise ValidationError("A guess is required.", "invalid_guess")
        if len(text) > self.GUESS_MAX_LENGTH:
            raise ValidationError(
                f"Guesses are limited to {self.GUESS_MAX_LENGTH} characters.", "invalid_guess"
            )
        return self._submit_guess(session_id, round_number, player_id, text, timed_out=False)

    def auto_submit_guess(self, session_id: str, round_number: int, player_id: str) -> dict:
        """Record a timed-out answer for a guesser whose timer expired."""
        return self._submit_guess(
            session_id, round_number, player_id, scoring.TIMEOUT_GUESS_TEXT, timed_out=True
        )

    def advance_round(
        self, session_id: str, from_round: int, player_id: str | None = None
    ) -> dict:
        """Move a resolved round forward. Safe to call from several clients."""
        session_id = self._normalize_session_id(session_id)
        expected_round = self._parse_round(from_round)
        outcome: dict = {}

        with self._write() as (conn, changes):
            session = self._require_session(conn, session_id)
            if player_id:
                self._require_member(conn, session_id, self._normalize_player_id(player_id))
            turn = self._current_turn(conn, session) if session["status"] == "active" else None
            if (
                session["status"] != "active"
                or int(session["current_round"]) != expected_round
                or turn is None
                or not int(turn["completed_at"])
            ):
                return {"ok": True, "advanced": False}
            outcome = self._advance_round(conn, changes, session)

        self._after_advance(session_id, outcome)
        return {"ok": True, "advanced": True, **outcome}

    def skip_turn(
        self,
        session_id: str,
        reason: str = "",
        expected_round: int | None = None,
        player_id: str | None = None,
    ) -> dict:
        """Close the current turn without a resolution and advance the round."""
        session_id = self._normalize_session_id(session_id)
        reason_text = str(reason or "skipped").strip()[:80]
        now_ts = int(time.time())
        outcome: dict = {}

        with self._write() as (conn, changes):
            session = self._require_session(conn, session_id)
            if player_id:
                self._require_member(conn, session_id, self._normalize_player_id(player_id))
            if session["status"] != "active":
                return {"ok": True, "skipped": False, "reason": "session_not_active"}
            if expected_round is not None and int(session["current_round"]) != self._parse_round(
                expected_round
            ):
                return {"ok": True, "skipped": False, "reason": "round_already_advanced"}

            turn = self._current_turn(conn, session)
            if turn is None:
                turn = self._insert_turn(
                    conn,
                    changes,
                    session_id,
                    int(session["current_round"]),
                    session["current_storyteller_id"],
                    now_ts,
                )
            if not int(turn["completed_at"]):
                self._complete_turn(conn, changes, turn["id"], now_ts, skip_reason=reason_text)
            outcome = self._advance_round(conn, changes, session)

        logger.info(
            "Skipped round %s in session %s (%s).",
            session["current_round"],
            session_id,
            reason_text,
        )
        self._after_advance(session_id, outcome)
        return {"ok": True, "skipped": True, **outcome}

    def update_turn_order(self, session_id: str, player_id: str, updates) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        if not isinstance(updates, list) or not all(isinstance(item, dict) for item in updates):
            raise ValidationError("updates must be a list of {player_id, turn_order}.", "invalid_turn_order")

        with self._write() as (conn, changes):
            session = self._require_session(conn, session_id)
            self._require_host_in_lobby(session, player_id, "reorder players")
            players = self._list_players(conn, session_id)
            current = {player["player_id"]: int(player["turn_order"]) for player in players}
            try:
                merged = turn_order.apply_updates(current, updates)
            except ValueError as exc:
                raise ValidationError(str(exc), "invalid_turn_order") from exc
            self._write_turn_orders(conn, changes, session_id, list(merged.items()))

        return {"ok": True, "turn_order": self._turn_order_payload(merged)}

    def reorder_player(
        self, session_id: str, player_id: str, target_player_id: str, new_position: int
    ) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        target_player_id = self._normalize_player_id(target_player_id)
        try:
            position = int(new_position)
        except (TypeError, ValueError) as exc:
            raise ValidationError("new_position must be an integer.", "invalid_turn_order") from exc

        with self._write() as (conn, changes):
            session = self._require_session(conn, session_id)
            self._require_host_in_lobby(session, player_id, "reorder players")
            ordered_ids = [row["player_id"] for row in self._list_players(conn, session_id)]
            try:
                moved = turn_order.move_player(ordered_ids, target_player_id, position)
            except ValueError as exc:
                raise ValidationError(str(exc), "invalid_turn_order") from exc
            assignments = turn_order.renumber(moved)
            self._write_turn_orders(conn, changes, session_id, assignments)

        return {"ok": True, "turn_order": self._turn_order_payload(dict(assignments))}

    def shuffle_turn_order(self, session_id: str, player_id: str) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        with self._write() as (conn, changes):
            session = self._require_session(conn, session_id)
            self._require_host_in_lobby(session, player_id, "shuffle the turn order")
            ordered_ids = [row["player_id"] for row in self._list_players(conn, session_id)]
            assignments = turn_order.shuffle_order(ordered_ids, self.rng)
            self._write_turn_orders(conn, changes, session_id, assignments)

        return {"ok": True, "turn_order": self._turn_order_payload(dict(assignments))}

    def kick_player(self, session_id: str, player_id_to_kick: str, host_id: str) -> dict:
        session_id, host_id = self._require_ids(session_id, host_id)
        target_id = self._normalize_player_id(player_id_to_kick)
        if not target_id:
            raise ValidationError("player_id_to_kick is required.", "invalid_player")

        with self._write() as (conn, changes):
            session = self._require_session(conn, session_id)
            if session["host_player_id"] != host_id:
                raise AuthorizationError("Only the host can kick players.", "host_only")
            if target_id == host_id or target_id == session["host_player_id"]:
                raise AuthorizationError("The host cannot be kicked.", "cannot_kick_host")
            if session["status"] != "waiting":
                raise ConflictError(
                    "Players can only be kicked before the game starts.", "session_not_waiting"
                )
            if not self._get_player(conn, session_id, target_id):
                raise ValidationError("That player is not in this lobby.", "invalid_player")

            # Remaining turn orders keep their gaps; storyteller lookup tolerates them.
            conn.execute(
                "DELETE FROM ph_players WHERE session_id = ? AND player_id = ?",
                (session_id, target_id),
            )
            self._touch_session(conn, session_id, int(time.time()))
            changes.add(
                session_id,
                "players",
                "DELETE",
                {"session_id": session_id, "player_id": target_id},
            )

        logger.info("Player %s kicked from session %s.", target_id, session_id)
        return {"ok": True, "kicked_player_id": target_id}

    def leave_lobby(self, session_id: str, player_id: str) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        now_ts = int(time.time())
        outcome: dict = {}

        with self._write() as (conn, changes):
            session = self._get_session(conn, session_id)
            if not session:
                return {"ok": True, "left": False}
            if session["host_player_id"] == player_id:
                raise AuthorizationError(
                    "The host cannot leave the lobby. End the lobby instead.", "host_cannot_leave"
                )
            if not self._get_player(conn, session_id, player_id):
                return {"ok": True, "left": False}

            conn.execute(
                "DELETE FROM ph_players WHERE session_id = ? AND player_id = ?",
                (session_id, player_id),
            )
            changes.add(
                session_id,
                "players",
                "DELETE",
                {"session_id": session_id, "player_id": player_id},
            )
            self._touch_session(conn, session_id, now_ts)

            if session["status"] == "waiting":
                ordered_ids = [row["player_id"] for row in self._list_players(conn, session_id)]
                self._write_turn_orders(conn, changes, session_id, turn_order.renumber(ordered_ids))
            elif session["status"] == "active":
                turn = self._current_turn(conn, session)
                if session["current_storyteller_id"] == player_id:
                    if turn is None or not int(turn["completed_at"]):
                        if turn is None:
                            turn = self._insert_turn(
                                conn, changes, session_id, int(session["current_round"]), player_id, now_ts
                            )
                        self._complete_turn(
                            conn, changes, turn["id"], now_ts, skip_reason="storyteller_left"
                        )
                        outcome = self._advance_round(conn, changes, session)
                elif turn is not None and not int(turn["completed_at"]):
                    outcome = self._maybe_resolve_round(conn, changes, session, turn, now_ts)

        logger.info("Player %s left session %s.", player_id, session_id)
        self._after_advance(session_id, outcome)
        return {"ok": True, "left": True}

    def end_lobby(self, session_id: str, host_id: str) -> dict:
        session_id, host_id = self._require_ids(session_id, host_id)
        with self._write() as (conn, changes):
            session = self._get_session(conn, session_id)
            if not session:
                return {"ok": True, "ended": True}
            if session["host_player_id"] != host_id:
                raise AuthorizationError("Only the host can end the lobby.", "host_only")
            self._delete_session(conn, changes, session_id)

        logger.info("Phraseotomy session %s ended by host.", session_id)
        self._release_feed(session_id)
        return {"ok": True, "ended": True}

    def cleanup_session(self, session_id: str) -> bool:
        """Delete a finished session. Live sessions are left alone."""
        session_id = self._normalize_session_id(session_id)
        with self._write() as (conn, changes):
            session = self._get_session(conn, session_id)
            if not session or session["status"] not in ("completed", "expired"):
                return False
            self._delete_session(conn, changes, session_id)
        logger.info("Phraseotomy session %s cleaned up after completion.", session_id)
        self._release_feed(session_id)
        return True

    def cleanup_due_sessions(self, now_ts: int | None = None) -> list[str]:
        now_ts = int(time.time()) if now_ts is None else int(now_ts)
        with self._read() as conn:
            due = [
                row["id"]
                for row in conn.execute(
                    """
                    SELECT id FROM ph_sessions
                    WHERE status IN ('completed', 'expired') AND cleanup_at > 0 AND cleanup_at <= ?
                    """,
                    (now_ts,),
                ).fetchall()
            ]
        return [session_id for session_id in due if self.cleanup_session(session_id)]

    def sweep_timeouts(self, now_ts: int | None = None, grace_seconds: int = 30) -> dict:
        """Apply every expired timer: story timeouts, guess timeouts, results delay."""
        now_ts = int(time.time()) if now_ts is None else int(now_ts)
        summary = {"skipped": [], "timed_out_guesses": 0, "advanced": []}

        with self._read() as conn:
            sessions = conn.execute(
                "SELECT * FROM ph_sessions WHERE status = 'active'"
            ).fetchall()
            pending = []
            for session in sessions:
                turn = self._current_turn(conn, session)
                missing = []
                if turn is not None and int(turn["clue_submitted_at"]) and not int(turn["completed_at"]):
                    answered = {
                        row["player_id"]
                        for row in self._round_guesses(conn, session["id"], int(session["current_round"]))
                    }
                    missing = [
                        row["player_id"]
                        for row in self._list_players(conn, session["id"])
                        if row["player_id"] != session["current_storyteller_id"]
                        and row["player_id"] not in answered
                    ]
                pending.append((session, turn, missing))

        for session, turn, missing in pending:
            session_id = session["id"]
            round_number = int(session["current_round"])
            if turn is not None and int(turn["completed_at"]):
                if now_ts >= int(turn["completed_at"]) + self.round_results_seconds + grace_seconds:
                    if self.advance_round(session_id, round_number).get("advanced"):
                        summary["advanced"].append(session_id)
            elif turn is None or not int(turn["clue_submitted_at"]):
                started_at = int(turn["created_at"]) if turn is not None else int(session["round_started_at"])
                if now_ts >= started_at + int(session["story_time_seconds"]) + grace_seconds:
                    result = self.skip_turn(session_id, "story_timeout", expected_round=round_number)
                    if result.get("skipped"):
                        summary["skipped"].append(session_id)
            elif now_ts >= int(turn["clue_submitted_at"]) + int(session["guess_time_seconds"]) + grace_seconds:
                if not missing:
                    result = self.skip_turn(session_id, "guess_timeout", expected_round=round_number)
                    if result.get("skipped"):
                        summary["skipped"].append(session_id)
                for guesser_id in missing:
                    try:
                        self.auto_submit_guess(session_id, round_number, guesser_id)
                        summary["timed_out_guesses"] += 1
                    except (ConflictError, NotFoundError) as exc:
                        logger.info("Timeout guess skipped for %s: %s", guesser_id, exc)
        return summary

    # ------------------------
    # Internal helpers
    # ------------------------

    def ensure_schema(self) -> None:
        with self._read() as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ph_sessions (
                    id TEXT PRIMARY KEY,
                    lobby_code TEXT NOT NULL UNIQUE,
                    host_player_id TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('waiting', 'active', 'completed', 'expired')),
                    current_round INTEGER NOT NULL DEFAULT 0,
                    total_rounds INTEGER NOT NULL DEFAULT 0,
                    current_storyteller_id TEXT NOT NULL DEFAULT '',
                    selected_theme_id TEXT NOT NULL DEFAULT '',
                    turn_mode TEXT NOT NULL DEFAULT 'audio',
                    story_time_seconds INTEGER NOT NULL DEFAULT 600,
                    guess_time_seconds INTEGER NOT NULL DEFAULT 420,
                    winner_player_id TEXT NOT NULL DEFAULT '',
                    round_started_at INTEGER NOT NULL DEFAULT 0,
                    started_at INTEGER NOT NULL DEFAULT 0,
                    ended_at INTEGER NOT NULL DEFAULT 0,
                    cleanup_at INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            self._ensure_column(
                conn,
                "ph_sessions",
                "cleanup_at",
                "ALTER TABLE ph_sessions ADD COLUMN cleanup_at INTEGER NOT NULL DEFAULT 0",
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ph_players (
                    session_id TEXT NOT NULL,
                    player_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    turn_order INTEGER NOT NULL,
                    score INTEGER NOT NULL DEFAULT 0,
                    joined_at INTEGER NOT NULL,
                    PRIMARY KEY (session_id, player_id),
                    FOREIGN KEY (session_id) REFERENCES ph_sessions(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ph_turns (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    round_number INTEGER NOT NULL,
                    storyteller_id TEXT NOT NULL,
                    theme_id TEXT NOT NULL DEFAULT '',
                    turn_mode TEXT NOT NULL DEFAULT 'audio',
                    secret TEXT NOT NULL DEFAULT '',
                    secret_element_id TEXT NOT NULL DEFAULT '',
                    selected_icons TEXT NOT NULL DEFAULT '[]',
                    recording_url TEXT NOT NULL DEFAULT '',
                    clue_submitted_at INTEGER NOT NULL DEFAULT 0,
                    completed_at INTEGER NOT NULL DEFAULT 0,
                    skip_reason TEXT NOT NULL DEFAULT '',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE (session_id, round_number),
                    FOREIGN KEY (session_id) REFERENCES ph_sessions(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ph_guesses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    turn_id TEXT NOT NULL,
                    round_number INTEGER NOT NULL,
                    player_id TEXT NOT NULL,
                    guess_text TEXT NOT NULL,
                    is_correct INTEGER NOT NULL DEFAULT 0,
                    is_timeout INTEGER NOT NULL DEFAULT 0,
                    points_earned INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    UNIQUE (session_id, round_number, player_id),
                    FOREIGN KEY (session_id) REFERENCES ph_sessions(id) ON DELETE CASCADE
                )
                """
            )

            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_ph_players_turn_order ON ph_players(session_id, turn_order)"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_ph_turns_one_active ON ph_turns(session_id) WHERE completed_at = 0"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ph_guesses_round ON ph_guesses(session_id, round_number)"
            )

    @staticmethod
    def _ensure_column(
        conn: sqlite3.Connection, table_name: str, column_name: str, ddl_sql: str
    ) -> None:
        columns = {
            row["name"]
            for row in conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        }
        if column_name in columns:
            return
        conn.execute(ddl_sql)

    def _submit_guess(
        self,
        session_id: str,
        round_number,
        player_id: str,
        text: str,
        *,
        timed_out: bool,
    ) -> dict:
        session_id, player_id = self._require_ids(session_id, player_id)
        round_number = self._parse_round(round_number)
        now_ts = int(time.time())
        outcome: dict = {}

        with self._write() as (conn, changes):
            session = self._require_active_session(conn, session_id)
            if int(session["current_round"]) != round_number:
                raise ConflictError("That round is no longer being played.", "round_mismatch")
            player = self._require_member(conn, session_id, player_id)
            if session["current_storyteller_id"] == player_id:
                raise AuthorizationError("The storyteller cannot guess.", "storyteller_cannot_guess")
            turn = self._current_turn(conn, session)
            if turn is None or not int(turn["clue_submitted_at"]):
                raise ConflictError("Guessing is not open yet.", "guessing_not_open")
            if int(turn["completed_at"]):
                raise ConflictError("This round is already resolved.", "round_resolved")

            existing = conn.execute(
                """
                SELECT id FROM ph_guesses
                WHERE session_id = ? AND round_number = ? AND player_id = ?
                """,
                (session_id, round_number, player_id),
            ).fetchone()
            if existing:
                if timed_out:
                    return {"ok": True, "already_answered": True}
                raise ValidationError(
                    "You already guessed this round.", "duplicate_guess"
                )

            award = scoring.score_guess(text, turn["secret"], timed_out=timed_out)
            try:
                conn.execute(
                    """
                    INSERT INTO ph_guesses
                    (session_id, turn_id, round_number, player_id, guess_text,
                     is_correct, is_timeout, points_earned, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        turn["id"],
                        round_number,
                        player_id,
                        text,
                        int(award.correct),
                        int(timed_out),
                        award.guesser_points,
                        now_ts,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError("You already guessed this round.", "duplicate_guess") from exc
            changes.add(
                session_id,
                "guesses",
                "INSERT",
                {"session_id": session_id, "round_number": round_number, "player_id": player_id},
            )

            self._add_score(conn, changes, session_id, player["player_id"], award.guesser_points)
            self._add_score(
                conn, changes, session_id, session["current_storyteller_id"], award.storyteller_points
            )
            outcome = self._maybe_resolve_round(conn, changes, session, turn, now_ts)

        resolved = bool(outcome.get("resolved"))
        result = {
            "ok": True,
            "correct": award.correct,
            "points_earned": award.guesser_points,
            "all_players_answered": resolved,
        }
        if resolved:
            result["secret_element"] = turn["secret"]
            result.update(
                {key: value for key, value in outcome.items() if key != "resolved"}
            )
        self._after_advance(session_id, outcome)
        return result

    def _maybe_resolve_round(
        self,
        conn: sqlite3.Connection,
        changes: ChangeBuffer,
        session: sqlite3.Row,
        turn: sqlite3.Row,
        now_ts: int,
    ) -> dict:
        """Complete the turn once every non-storyteller player has answered.

        A round with no guessers left is closed as skipped.
        """
        session_id = session["id"]
        guessers = {
            row["player_id"]
            for row in self._list_players(conn, session_id)
            if row["player_id"] != session["current_storyteller_id"]
        }
        answered = {
            row["player_id"]
            for row in self._round_guesses(conn, session_id, int(turn["round_number"]))
        }
        if guessers and not guessers <= answered:
            return {}

        skip_reason = "" if guessers else "no_guessers"
        self._complete_turn(conn, changes, turn["id"], now_ts, skip_reason=skip_reason)
        logger.info("Round %s resolved in session %s.", turn["round_number"], session_id)
        outcome = {"resolved": True}
        if self.round_advance_mode == self.ROUND_ADVANCE_AUTO:
            outcome.update(self._advance_round(conn, changes, session))
        return outcome

    def _advance_round(
        self, conn: sqlite3.Connection, changes: ChangeBuffer, session: sqlite3.Row
    ) -> dict:
        session_id = session["id"]
        now_ts = int(time.time())
        next_round = int(session["current_round"]) + 1
        players = self._list_players(conn, session_id)

        # A lone player cannot be guessed against, so the game ends with them.
        if next_round > int(session["total_rounds"]) or len(players) < 2:
            winner = scoring.pick_winner(players)
            conn.execute(
                """
                UPDATE ph_sessions
                SET status = 'completed',
                    winner_player_id = ?,
                    ended_at = ?,
                    cleanup_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    winner["player_id"] if winner else "",
                    now_ts,
                    now_ts + self.cleanup_delay_seconds,
                    now_ts,
                    session_id,
                ),
            )
            self._record_session_change(conn, changes, session_id)
            logger.info("Phraseotomy session %s completed.", session_id)
            return {
                "game_completed": True,
                "winner": (
                    {
                        "player_id": winner["player_id"],
                        "name": winner["name"],
                        "score": int(winner["score"]),
                    }
                    if winner
                    else None
                ),
                "standings": scoring.standings(players),
            }

        storyteller = turn_order.find_storyteller(players, next_round)
        conn.execute(
            """
            UPDATE ph_sessions
            SET current_round = ?,
                current_storyteller_id = ?,
                selected_theme_id = '',
                round_started_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (next_round, storyteller["player_id"], now_ts, now_ts, session_id),
        )
        self._insert_turn(conn, changes, session_id, next_round, storyteller["player_id"], now_ts)
        self._record_session_change(conn, changes, session_id)
        logger.info(
            "Session %s advanced to round %s (storyteller %s).",
            session_id,
            next_round,
            storyteller["player_id"],
        )
        return {
            "game_completed": False,
            "next_round": {
                "round_number": next_round,
                "storyteller_id": storyteller["player_id"],
                "storyteller_name": storyteller["name"],
            },
        }

    def _after_advance(self, session_id: str, outcome: dict) -> None:
        if outcome.get("game_completed"):
            self._cleanup_scheduler(
                self.cleanup_delay_seconds,
                lambda: self._run_scheduled_cleanup(session_id),
            )

    def _run_scheduled_cleanup(self, session_id: str) -> None:
        try:
            self.cleanup_session(session_id)
        except sqlite3.Error as exc:
            logger.warning("Deferred cleanup failed for session %s: %s", session_id, exc)

    @staticmethod
    def _timer_scheduler(delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(0.0, float(delay_seconds)), callback)
        timer.daemon = True
        timer.start()
        return timer

    def _release_feed(self, session_id: str) -> None:
        if self.change_feed is not None:
            self.change_feed.drop_session(session_id)

    def _delete_session(
        self, conn: sqlite3.Connection, changes: ChangeBuffer, session_id: str
    ) -> None:
        conn.execute("DELETE FROM ph_sessions WHERE id = ?", (session_id,))
        changes.add(session_id, "sessions", "DELETE", {"id": session_id})

    def _insert_turn(
        self,
        conn: sqlite3.Connection,
        changes: ChangeBuffer,
        session_id: str,
        round_number: int,
        storyteller_id: str,
        now_ts: int,
    ) -> sqlite3.Row:
        turn_id = secrets.token_hex(12)
        session = self._get_session(conn, session_id)
        conn.execute(
            """
            INSERT INTO ph_turns
            (id, session_id, round_number, storyteller_id, turn_mode, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (turn_id, session_id, round_number, storyteller_id, session["turn_mode"], now_ts, now_ts),
        )
        turn = self._get_turn(conn, turn_id)
        changes.add(session_id, "turns", "INSERT", self._turn_row_event(turn))
        return turn

    def _complete_turn(
        self,
        conn: sqlite3.Connection,
        changes: ChangeBuffer,
        turn_id: str,
        now_ts: int,
        skip_reason: str = "",
    ) -> None:
        conn.execute(
            """
            UPDATE ph_turns
            SET completed_at = ?, skip_reason = ?, updated_at = ?
            WHERE id = ? AND completed_at = 0
            """,
            (now_ts, skip_reason, now_ts, turn_id),
        )
        self._record_turn_change(conn, changes, turn_id)

    def _add_score(
        self,
        conn: sqlite3.Connection,
        changes: ChangeBuffer,
        session_id: str,
        player_id: str,
        points: int,
    ) -> None:
        if points <= 0 or not player_id:
            return
        conn.execute(
            "UPDATE ph_players SET score = score + ? WHERE session_id = ? AND player_id = ?",
            (int(points), session_id, player_id),
        )
        changes.add(
            session_id,
            "players",
            "UPDATE",
            {"session_id": session_id, "player_id": player_id},
        )

    def _write_turn_orders(
        self,
        conn: sqlite3.Connection,
        changes: ChangeBuffer,
        session_id: str,
        assignments: list[tuple[str, int]],
    ) -> None:
        # Two passes keep the (session_id, turn_order) unique index satisfied.
        for player_id, order in assignments:
            conn.execute(
                "UPDATE ph_players SET turn_order = ? WHERE session_id = ? AND player_id = ?",
                (-int(order), session_id, player_id),
            )
        conn.execute(
            "UPDATE ph_players SET turn_order = -turn_order WHERE session_id = ? AND turn_order < 0",
            (session_id,),
        )
        self._touch_session(conn, session_id, int(time.time()))
        for player_id, order in assignments:
            changes.add(
                session_id,
                "players",
                "UPDATE",
                {"session_id": session_id, "player_id": player_id, "turn_order": int(order)},
            )

    def _record_session_change(
        self, conn: sqlite3.Connection, changes: ChangeBuffer, session_id: str
    ) -> None:
        session = self._get_session(conn, session_id)
        changes.add(
            session_id,
            "sessions",
            "UPDATE",
            {
                "id": session_id,
                "status": session["status"],
                "current_round": int(session["current_round"]),
                "current_storyteller_id": session["current_storyteller_id"],
                "selected_theme_id": session["selected_theme_id"],
            },
        )

    def _record_turn_change(
        self, conn: sqlite3.Connection, changes: ChangeBuffer, turn_id: str
    ) -> None:
        turn = self._get_turn(conn, turn_id)
        changes.add(turn["session_id"], "turns", "UPDATE", self._turn_row_event(turn))

    @staticmethod
    def _turn_row_event(turn: sqlite3.Row) -> dict:
        return {
            "id": turn["id"],
            "session_id": turn["session_id"],
            "round_number": int(turn["round_number"]),
            "storyteller_id": turn["storyteller_id"],
            "theme_id": turn["theme_id"],
            "has_secret": bool(turn["secret"]),
            "clue_submitted_at": int(turn["clue_submitted_at"]),
            "completed_at": int(turn["completed_at"]),
        }

    def _get_turn(self, conn: sqlite3.Connection, turn_id: str) -> sqlite3.Row | None:
        return conn.execute("SELECT * FROM ph_turns WHERE id = ?", (turn_id,)).fetchone()

    def _current_turn(
        self, conn: sqlite3.Connection, session: sqlite3.Row
    ) -> sqlite3.Row | None:
        if int(session["current_round"]) < 1:
            return None
        return conn.execute(
            """
            SELECT * FROM ph_turns
            WHERE session_id = ? AND round_number = ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (session["id"], int(session["current_round"])),
        ).fetchone()

    def _require_open_turn(
        self, conn: sqlite3.Connection, session: sqlite3.Row
    ) -> sqlite3.Row:
        turn = self._current_turn(conn, session)
        if turn is None:
            raise ConflictError("No turn is in progress.", "no_active_turn")
        if int(turn["completed_at"]):
            raise ConflictError("This turn is already complete.", "turn_completed")
        return turn

    def _round_guesses(
        self, conn: sqlite3.Connection, session_id: str, round_number: int
    ) -> list[sqlite3.Row]:
        return conn.execute(
            """
            SELECT g.player_id, g.round_number, g.guess_text, g.is_correct, g.is_timeout,
                   g.points_earned, g.created_at, COALESCE(p.name, '') AS name
            FROM ph_guesses g
            LEFT JOIN ph_players p
                ON p.session_id = g.session_id AND p.player_id = g.player_id
            WHERE g.session_id = ? AND g.round_number = ?
            ORDER BY g.created_at ASC, g.id ASC
            """,
            (session_id, round_number),
        ).fetchall()

    def _require_active_session(
        self, conn: sqlite3.Connection, session_id: str
    ) -> sqlite3.Row:
        session = self._require_session(conn, session_id)
        if session["status"] != "active":
            raise ConflictError("This game is not in progress.", "session_not_active")
        return session

    @staticmethod
    def _require_storyteller(session: sqlite3.Row, player_id: str) -> None:
        if session["current_storyteller_id"] != player_id:
            raise AuthorizationError(
                "Only the current storyteller can do that.", "storyteller_only"
            )

    @staticmethod
    def _require_host_in_lobby(session: sqlite3.Row, player_id: str, action: str) -> None:
        if session["host_player_id"] != player_id:
            raise AuthorizationError(f"Only the host can {action}.", "host_only")
        if session["status"] != "waiting":
            raise ConflictError(
                "Turn order is locked once the game starts.", "session_not_waiting"
            )

    def _require_theme(self, theme_id: str | None):
        theme = self.themes.get_theme(str(theme_id or "").strip())
        if theme is None or theme.is_core:
            raise ValidationError("Choose a valid theme.", "invalid_theme")
        return theme

    def _require_ids(self, session_id: str, player_id: str) -> tuple[str, str]:
        session_id = self._normalize_session_id(session_id)
        player_id = self._normalize_player_id(player_id)
        if not session_id or not player_id:
            raise ValidationError("session_id and player_id are required.", "missing_identity")
        return session_id, player_id

    @staticmethod
    def _parse_round(round_number) -> int:
        try:
            parsed = int(round_number)
        except (TypeError, ValueError) as exc:
            raise ValidationError("round_number must be an integer.", "invalid_round") from exc
        if parsed < 1:
            raise ValidationError("round_number must be positive.", "invalid_round")
        return parsed

    def _validate_icon_permutation(self, turn: sqlite3.Row, icon_ids) -> list[str]:
        current = self._json_list(turn["selected_icons"])
        if not isinstance(icon_ids, list):
            raise ValidationError("icon_ids must be a list.", "invalid_icons")
        ordered = [str(item) for item in icon_ids]
        if sorted(ordered) != sorted(current):
            raise ValidationError(
                "Icon order must use exactly the selected icons.", "invalid_icons"
            )
        return ordered

    def _normalize_turn_mode(self, turn_mode: str | None) -> str:
        mode = str(turn_mode or self.TURN_MODE_AUDIO).strip().lower()
        if mode not in self.TURN_MODES:
            raise ValidationError("turn_mode must be 'audio' or 'elements'.", "invalid_turn_mode")
        return mode

    def _normalize_total_rounds(self, total_rounds) -> int:
        if total_rounds in (None, ""):
            return 0
        try:
            parsed = int(total_rounds)
        except (TypeError, ValueError) as exc:
            raise ValidationError("total_rounds must be an integer.", "invalid_rounds") from exc
        return max(0, min(parsed, self.MAX_ROUNDS_LIMIT))

    @staticmethod
    def _normalize_seconds(value, default: int) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return int(default)
        return parsed if parsed > 0 else int(default)

    @staticmethod
    def _json_list(raw_value: str) -> list[str]:
        try:
            payload = json.loads(raw_value or "[]")
        except (json.JSONDecodeError, TypeError):
            return []
        if not isinstance(payload, list):
            return []
        return [str(item) for item in payload]

    def _resolve_icons(self, icon_ids: list[str]) -> list[dict]:
        icons = []
        for icon_id in icon_ids:
            element = self.themes.get_element(icon_id)
            icons.append(element.to_dict() if element else {"id": icon_id, "name": icon_id, "icon": ""})
        return icons

    @staticmethod
    def _turn_order_payload(assignments: dict) -> list[dict]:
        return [
            {"player_id": player_id, "turn_order": int(order)}
            for player_id, order in sorted(assignments.items(), key=lambda item: int(item[1]))
        ]

    # ------------------------
    # Snapshots
    # ------------------------

    @staticmethod
    def _public_session(session: sqlite3.Row) -> dict:
        return {
            "id": session["id"],
            "lobby_code": session["lobby_code"],
            "host_player_id": session["host_player_id"],
            "status": session["status"],
            "current_round": int(session["current_round"]),
            "total_rounds": int(session["total_rounds"]),
            "current_storyteller_id": session["current_storyteller_id"],
            "selected_theme_id": session["selected_theme_id"],
            "turn_mode": session["turn_mode"],
            "story_time_seconds": int(session["story_time_seconds"]),
            "guess_time_seconds": int(session["guess_time_seconds"]),
            "winner_player_id": session["winner_player_id"],
            "round_started_at": int(session["round_started_at"]),
            "started_at": int(session["started_at"]),
            "ended_at": int(session["ended_at"]),
            "cleanup_at": int(session["cleanup_at"]),
            "created_at": int(session["created_at"]),
            "updated_at": int(session["updated_at"]),
        }

    def _public_turn(self, turn: sqlite3.Row, *, viewer_id: str, reveal: bool) -> dict:
        """Turn as seen by ``viewer_id``; the secret only when ``reveal`` is set."""
        is_storyteller = turn["storyteller_id"] == viewer_id
        clue_visible = is_storyteller or bool(int(turn["clue_submitted_at"])) or reveal
        payload = {
            "id": turn["id"],
            "round_number": int(turn["round_number"]),
            "storyteller_id": turn["storyteller_id"],
            "theme_id": turn["theme_id"],
            "turn_mode": turn["turn_mode"],
            "has_secret": bool(turn["secret"]),
            "selected_icons": self._json_list(turn["selected_icons"]) if clue_visible else [],
            "recording_url": turn["recording_url"] if clue_visible else "",
            "clue_submitted_at": int(turn["clue_submitted_at"]),
            "completed_at": int(turn["completed_at"]),
            "skipped": bool(turn["skip_reason"]),
            "created_at": int(turn["created_at"]),
        }
        if reveal:
            payload["secret"] = turn["secret"]
            payload["secret_element_id"] = turn["secret_element_id"]
        return payload

    def _build_snapshot(
        self, conn: sqlite3.Connection, session: sqlite3.Row, viewer_id: str
    ) -> dict:
        session_id = session["id"]
        players = self._list_players(conn, session_id)
        if viewer_id not in {row["player_id"] for row in players}:
            raise NotFoundError("You are not part of this session.", "not_a_member")

        finished = session["status"] in ("completed", "expired")
        turn = self._current_turn(conn, session)
        current_turn = None
        guesses = []
        if turn is not None:
            turn_done = bool(int(turn["completed_at"]))
            current_turn = self._public_turn(
                turn,
                viewer_id=viewer_id,
                reveal=turn["storyteller_id"] == viewer_id or turn_done or finished,
            )
            for row in self._round_guesses(conn, session_id, int(turn["round_number"])):
                visible = turn_done or finished or row["player_id"] == viewer_id
                guesses.append(
                    {
                        "player_id": row["player_id"],
                        "round_number": int(row["round_number"]),
                        "guess_text": row["guess_text"] if visible else None,
                        "is_correct": bool(row["is_correct"]) if visible else None,
                        "is_timeout": bool(row["is_timeout"]),
                        "created_at": int(row["created_at"]),
                    }
                )

        viewer_has_guessed = any(guess["player_id"] == viewer_id for guess in guesses)
        snapshot = {
            "session": self._public_session(session),
            "players": [
                {
                    "player_id": row["player_id"],
                    "name": row["name"],
                    "turn_order": int(row["turn_order"]),
                    "score": int(row["score"]),
                    "joined_at": int(row["joined_at"]),
                }
                for row in players
            ],
            "current_turn": current_turn,
            "guesses": guesses,
            "round_results": self._round_results(conn, session_id),
            "viewer": {
                "player_id": viewer_id,
                "is_host": session["host_player_id"] == viewer_id,
                "is_storyteller": session["current_storyteller_id"] == viewer_id,
                "has_guessed": viewer_has_guessed,
                "can_start": (
                    session["host_player_id"] == viewer_id
                    and session["status"] == "waiting"
                    and len(players) >= self.MIN_PLAYERS
                ),
            },
            "min_players": self.MIN_PLAYERS,
            "max_players": self.MAX_PLAYERS,
            "server_time": int(time.time()),
        }
        if finished:
            snapshot["standings"] = scoring.standings(players)
        return snapshot

    def _round_results(self, conn: sqlite3.Connection, session_id: str) -> dict | None:
        last_turn = conn.execute(
            """
            SELECT * FROM ph_turns
            WHERE session_id = ? AND completed_at > 0
            ORDER BY round_number DESC
            LIMIT 1
            """,
            (session_id,),
        ).fetchone()
        if last_turn is None:
            return None
        guesses = self._round_guesses(conn, session_id, int(last_turn["round_number"]))
        return {
            "round_number": int(last_turn["round_number"]),
            "storyteller_id": last_turn["storyteller_id"],
            "theme_id": last_turn["theme_id"],
            "secret": last_turn["secret"],
            "skipped": bool(last_turn["skip_reason"]),
            "skip_reason": last_turn["skip_reason"],
            "completed_at": int(last_turn["completed_at"]),
            "guesses": [
                {
                    "player_id": row["player_id"],
                    "name": row["name"],
                    "guess_text": row["guess_text"],
                    "is_correct": bool(row["is_correct"]),
                    "is_timeout": bool(row["is_timeout"]),
                    "points_earned": int(row["points_earned"]),
                }
                for row in guesses
            ],
        }
