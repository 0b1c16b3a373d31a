from __future__ import annotations

import logging
import random
import re
import secrets
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from game_errors import ConflictError, NotFoundError, PhraseotomyError, ValidationError
from turn_order import next_join_order

logger = logging.getLogger(__name__)

LOBBY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
LOBBY_CODE_LENGTH = 6


def is_valid_lobby_code(code: str) -> bool:
    return len(code or "") == LOBBY_CODE_LENGTH and all(
        char in LOBBY_CODE_ALPHABET for char in code
    )


def new_lobby_code(rng: random.Random | None = None) -> str:
    chooser = rng or random
    return "".join(chooser.choice(LOBBY_CODE_ALPHABET) for _ in range(LOBBY_CODE_LENGTH))


class ChangeBuffer(list):
    """Row changes recorded inside a write transaction, published on commit."""

    def add(self, session_id: str, table: str, event_type: str, row: dict) -> None:
        self.append((session_id, table, event_type, dict(row)))


class MultiplayerServiceCore:
    """Shared room/session plumbing for the multiplayer game service."""

    GAME_NAME = ""
    MIN_PLAYERS = 2
    MAX_PLAYERS = 0
    STALE_SESSION_SECONDS = 12 * 60 * 60
    CREATE_SESSION_CODE_ATTEMPTS = 24
    PLAYER_NAME_MAX = 100

    SESSION_TABLE = ""
    PLAYER_TABLE = ""

    def __init__(self, *, db_path: str, change_feed=None):
        self.db_path = str(db_path)
        self.change_feed = change_feed

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write(self) -> Iterator[tuple[sqlite3.Connection, ChangeBuffer]]:
        """Serialized read-modify-write; row changes go out only after commit."""
        changes = ChangeBuffer()
        conn = self._connect()
        try:
            with conn:
                conn.execute("BEGIN IMMEDIATE")
                yield conn, changes
        finally:
            conn.close()
        self._publish_changes(changes)

    def _publish_changes(self, changes: ChangeBuffer) -> None:
        if self.change_feed is None:
            return
        for session_id, table, event_type, row in changes:
            self.change_feed.publish_row_change(session_id, table, event_type, row)

    def _cleanup_stale_sessions(self) -> None:
        cutoff_ts = int(time.time()) - self.STALE_SESSION_SECONDS
        with self._write() as (conn, changes):
            stale = conn.execute(
                f"SELECT id FROM {self.SESSION_TABLE} WHERE updated_at < ?",
                (cutoff_ts,),
            ).fetchall()
            for row in stale:
                conn.execute(
                    f"DELETE FROM {self.SESSION_TABLE} WHERE id = ?", (row["id"],)
                )
                changes.add(row["id"], "sessions", "DELETE", {"id": row["id"]})
        if stale:
            logger.info("Removed %s stale %s session(s).", len(stale), self.GAME_NAME)

    def _create_session_identity(
        self,
        *,
        player_name: str,
        player_id: str | None,
        lobby_code: str | None,
        insert_session: Callable[[sqlite3.Connection, str, str, str, int], None],
    ) -> tuple[str, str, str, str]:
        self._cleanup_stale_sessions()
        display_name = self._sanitize_player_name(player_name)
        host_player_id = self._normalize_player_id(player_id) or self._new_player_id()
        requested_code = self._normalize_code(lobby_code) if lobby_code else ""
        if lobby_code and not is_valid_lobby_code(requested_code):
            raise ValidationError(
                "Lobby codes are 6 characters without 0, 1, I or O.", "invalid_lobby_code"
            )

        session_id = secrets.token_hex(16)
        now_ts = int(time.time())
        code = ""

        with self._write() as (conn, changes):
            attempts = 1 if requested_code else self.CREATE_SESSION_CODE_ATTEMPTS
            for _ in range(attempts):
                code = requested_code or new_lobby_code()
                try:
                    insert_session(conn, session_id, code, host_player_id, now_ts)
                    break
                except sqlite3.IntegrityError:
                    continue
            else:
                if requested_code:
                    raise ConflictError(
                        "That lobby code is already in use. Try another code.",
                        "lobby_code_taken",
                    )
                raise PhraseotomyError(
                    "Unable to create a lobby code right now.", 503, "lobby_code_unavailable"
                )

            conn.execute(
                f"""
                INSERT INTO {self.PLAYER_TABLE}
                (session_id, player_id, name, turn_order, score, joined_at)
                VALUES (?, ?, ?, 1, 0, ?)
                """,
                (session_id, host_player_id, display_name, now_ts),
            )
            changes.add(session_id, "sessions", "INSERT", {"id": session_id, "lobby_code": code})
            changes.add(
                session_id,
                "players",
                "INSERT",
                {"session_id": session_id, "player_id": host_player_id, "turn_order": 1},
            )

        return session_id, code, host_player_id, display_name

    def _join_session_identity(
        self,
        *,
        lobby_code: str,
        player_name: str,
        player_id: str | None,
    ) -> tuple[sqlite3.Row, sqlite3.Row, bool]:
        """Add a player to the lobby, or return the existing membership."""
        self._cleanup_stale_sessions()

        code = self._normalize_code(lobby_code)
        if not is_valid_lobby_code(code):
            raise ValidationError(
                "Lobby codes are 6 characters without 0, 1, I or O.", "invalid_lobby_code"
            )
        display_name = self._sanitize_player_name(player_name)
        requested_player_id = self._normalize_player_id(player_id)
        now_ts = int(time.time())

        with self._write() as (conn, changes):
            session = conn.execute(
                f"SELECT * FROM {self.SESSION_TABLE} WHERE lobby_code = ?", (code,)
            ).fetchone()
            if not session:
                raise NotFoundError("Lobby not found.", "lobby_not_found")
            session_id = session["id"]

            if requested_player_id:
                existing = self._get_player(conn, session_id, requested_player_id)
                if existing:
                    if session["status"] not in ("waiting", "active"):
                        raise ConflictError("This game has ended.", "session_ended")
                    if existing["name"] != display_name:
                        conn.execute(
                            f"""
                            UPDATE {self.PLAYER_TABLE}
                            SET name = ?
                            WHERE session_id = ? AND player_id = ?
                            """,
                            (display_name, session_id, requested_player_id),
                        )
                        changes.add(
                            session_id,
                            "players",
                            "UPDATE",
                            {"session_id": session_id, "player_id": requested_player_id},
                        )
                    self._touch_session(conn, session_id, now_ts)
                    return session, self._get_player(conn, session_id, requested_player_id), True

            if session["status"] != "waiting":
                raise ConflictError(
                    "This game already started. Try another code.", "session_not_waiting"
                )

            current_players = self._list_players(conn, session_id)
            if len(current_players) >= self.MAX_PLAYERS:
                raise ConflictError(
                    f"Lobby is full ({self.MAX_PLAYERS} players max).", "lobby_full"
                )

            new_player_id = requested_player_id or self._new_player_id()
            turn_order = next_join_order(player["turn_order"] for player in current_players)
            try:
                conn.execute(
                    f"""
                    INSERT INTO {self.PLAYER_TABLE}
                    (session_id, player_id, name, turn_order, score, joined_at)
                    VALUES (?, ?, ?, ?, 0, ?)
                    """,
                    (session_id, new_player_id, display_name, turn_order, now_ts),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(
                    "Unable to join with this player identity.", "identity_conflict"
                ) from exc

            self._touch_session(conn, session_id, now_ts)
            changes.add(
                session_id,
                "players",
                "INSERT",
                {"session_id": session_id, "player_id": new_player_id, "turn_order": turn_order},
            )
            return session, self._get_player(conn, session_id, new_player_id), False

    def _touch_session(self, conn: sqlite3.Connection, session_id: str, now_ts: int) -> None:
        conn.execute(
            f"UPDATE {self.SESSION_TABLE} SET updated_at = ? WHERE id = ?",
            (now_ts, session_id),
        )

    def _get_player(
        self, conn: sqlite3.Connection, session_id: str, player_id: str
    ) -> sqlite3.Row | None:
        return conn.execute(
            f"""
            SELECT session_id, player_id, name, turn_order, score, joined_at
            FROM {self.PLAYER_TABLE}
            WHERE session_id = ? AND player_id = ?
            """,
            (session_id, player_id),
        ).fetchone()

    def _list_players(
        self, conn: sqlite3.Connection, session_id: str
    ) -> list[sqlite3.Row]:
        return conn.execute(
            f"""
            SELECT session_id, player_id, name, turn_order, score, joined_at
            FROM {self.PLAYER_TABLE}
            WHERE session_id = ?
            ORDER BY turn_order ASC, joined_at ASC
            """,
            (session_id,),
        ).fetchall()

    def _get_session(
        self, conn: sqlite3.Connection, session_id: str
    ) -> sqlite3.Row | None:
        return conn.execute(
            f"SELECT * FROM {self.SESSION_TABLE} WHERE id = ?", (session_id,)
        ).fetchone()

    def _require_session(
        self, conn: sqlite3.Connection, session_id: str
    ) -> sqlite3.Row:
        session = self._get_session(conn, session_id)
        if not session:
            raise NotFoundError("Session not found.", "session_not_found")
        return session

    def _require_member(
        self, conn: sqlite3.Connection, session_id: str, player_id: str
    ) -> sqlite3.Row:
        player = self._get_player(conn, session_id, player_id)
        if not player:
            raise NotFoundError("You are not part of this session.", "not_a_member")
        return player

    def _sanitize_player_name(self, player_name: str) -> str:
        collapsed = re.sub(r"\s+", " ", str(player_name or "")).strip()
        if not collapsed:
            raise ValidationError("A player name is required.", "invalid_name")
        return collapsed[: self.PLAYER_NAME_MAX]

    @staticmethod
    def _normalize_code(code: str | None) -> str:
        if not code:
            return ""
        return re.sub(r"[^A-Z0-9]", "", str(code).upper())[:LOBBY_CODE_LENGTH]

    @staticmethod
    def _normalize_session_id(session_id: str | None) -> str:
        if not session_id:
            return ""
        return re.sub(r"[^a-f0-9]", "", str(session_id).lower())[:32]

    @staticmethod
    def _normalize_player_id(player_id: str | None) -> str:
        if not player_id:
            return ""
        return re.sub(r"[^A-Za-z0-9_-]", "", str(player_id))[:48]

    @staticmethod
    def _new_player_id() -> str:
        return secrets.token_urlsafe(18).replace("-", "").replace("_", "")[:32]
