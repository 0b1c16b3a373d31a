"""HTTP client for the Phraseotomy procedures, change feed and broadcasts."""

from __future__ import annotations

import logging
import os
import random
from typing import Iterable, List, Optional
from urllib.parse import quote, urljoin

import requests

from game_errors import GameApiError, error_kind_for_status
from multiplayer_service_core import new_lobby_code

logger = logging.getLogger(__name__)

API_PREFIX = "/api/phraseotomy"


class GameApiClient:
    """Thin wrapper over the JSON API. Every failure becomes a ``GameApiError``."""

    CREATE_LOBBY_ATTEMPTS = 5
    REQUEST_TIMEOUT_SECONDS = 10

    def __init__(self, base_url: str, rng: Optional[random.Random] = None):
        self.base_url = str(base_url or "").rstrip("/")
        self.rng = rng or random.Random()

    # Lobby lifecycle

    def bootstrap(self) -> dict:
        return self._get_json(f"{API_PREFIX}/bootstrap")

    def generate_lobby_code(self) -> str:
        return new_lobby_code(self.rng)

    def create_lobby(
        self,
        player_name: str,
        *,
        player_id: Optional[str] = None,
        total_rounds: Optional[int] = None,
        turn_mode: str = "audio",
    ) -> dict:
        """Create a session, retrying with a fresh code when one is taken."""
        last_error = None
        for _ in range(self.CREATE_LOBBY_ATTEMPTS):
            payload = {
                "player_name": player_name,
                "lobby_code": self.generate_lobby_code(),
                "turn_mode": turn_mode,
            }
            if player_id:
                payload["player_id"] = player_id
            if total_rounds:
                payload["total_rounds"] = total_rounds
            try:
                return self._post_json(f"{API_PREFIX}/sessions", payload)
            except GameApiError as exc:
                if exc.code != "lobby_code_taken":
                    raise
                logger.info("Lobby code %s taken; retrying.", payload["lobby_code"])
                last_error = exc
        raise last_error

    def join_lobby(
        self, lobby_code: str, player_name: str, player_id: Optional[str] = None
    ) -> dict:
        payload = {"player_name": player_name}
        if player_id:
            payload["player_id"] = player_id
        return self._post_json(
            f"{API_PREFIX}/lobbies/{quote(str(lobby_code).upper())}/join", payload
        )

    def get_lobby_data(self, session_id: str, player_id: str) -> dict:
        return self._get_json(
            self._session_path(session_id, "lobby"), params={"player_id": player_id}
        )

    def get_game_state(self, session_id: str, player_id: str) -> dict:
        return self._get_json(
            self._session_path(session_id, "state"), params={"player_id": player_id}
        )

    def start_game(self, session_id: str, player_id: str) -> dict:
        return self._call(session_id, "start", player_id)

    def update_session_theme(self, session_id: str, player_id: str, theme_id: str) -> dict:
        return self._call(session_id, "theme", player_id, theme_id=theme_id)

    def start_turn(
        self,
        session_id: str,
        player_id: str,
        theme_id: Optional[str] = None,
        turn_mode: Optional[str] = None,
    ) -> dict:
        return self._call(
            session_id, "turn", player_id, theme_id=theme_id, turn_mode=turn_mode
        )

    def save_secret_element(
        self, session_id: str, player_id: str, secret_element_id: str
    ) -> dict:
        return self._call(
            session_id, "secret", player_id, secret_element_id=secret_element_id
        )

    def update_icon_order(
        self, session_id: str, player_id: str, icon_ids: List[str]
    ) -> dict:
        return self._call(session_id, "icon-order", player_id, icon_ids=list(icon_ids))

    def submit_clue(
        self,
        session_id: str,
        player_id: str,
        *,
        recording_url: Optional[str] = None,
        icon_ids: Optional[List[str]] = None,
    ) -> dict:
        return self._call(
            session_id,
            "clue",
            player_id,
            recording_url=recording_url,
            icon_ids=list(icon_ids) if icon_ids is not None else None,
        )

    def submit_guess(
        self, session_id: str, player_id: str, round_number: int, guess: str
    ) -> dict:
        return self._call(
            session_id, "guess", player_id, round_number=round_number, guess=guess
        )

    def auto_submit_guess(
        self, session_id: str, player_id: str, round_number: int
    ) -> dict:
        return self._call(session_id, "guess/timeout", player_id, round_number=round_number)

    def advance_round(self, session_id: str, player_id: str, from_round: int) -> dict:
        return self._call(session_id, "advance", player_id, from_round=from_round)

    def update_turn_order(self, session_id: str, player_id: str, updates: list) -> dict:
        return self._call(session_id, "turn-order", player_id, updates=updates)

    def reorder_player(
        self, session_id: str, player_id: str, target_player_id: str, new_position: int
    ) -> dict:
        return self._call(
            session_id,
            "reorder",
            player_id,
            target_player_id=target_player_id,
            new_position=new_position,
        )

    def shuffle_turn_order(self, session_id: str, player_id: str) -> dict:
        return self._call(session_id, "shuffle", player_id)

    def kick_player(self, session_id: str, host_id: str, player_id_to_kick: str) -> dict:
        return self._call(session_id, "kick", host_id, player_id_to_kick=player_id_to_kick)

    def leave_lobby(self, session_id: str, player_id: str) -> dict:
        return self._call(session_id, "leave", player_id)

    def end_lobby(self, session_id: str, host_id: str) -> dict:
        return self._call(session_id, "end", host_id)

    def skip_turn(
        self, session_id: str, player_id: str, reason: str = "", expected_round: Optional[int] = None
    ) -> dict:
        return self._call(
            session_id, "skip", player_id, reason=reason, expected_round=expected_round
        )

    # Change feed and broadcasts

    def poll_changes(
        self,
        session_id: str,
        after: Optional[int],
        *,
        tables: Optional[Iterable[str]] = None,
        timeout: float = 0.0,
    ) -> dict:
        params = {"timeout": timeout}
        if after is not None:
            params["after"] = int(after)
        if tables:
            params["tables"] = ",".join(tables)
        return self._get_json(
            self._session_path(session_id, "changes"),
            params=params,
            timeout=self.REQUEST_TIMEOUT_SECONDS + timeout,
        )

    def poll_channel(
        self, channel: str, after: Optional[int], *, timeout: float = 0.0
    ) -> dict:
        params = {"timeout": timeout}
        if after is not None:
            params["after"] = int(after)
        return self._get_json(
            f"{API_PREFIX}/channels/{quote(channel, safe='')}/messages",
            params=params,
            timeout=self.REQUEST_TIMEOUT_SECONDS + timeout,
        )

    def send_broadcast(self, channel: str, message: dict) -> dict:
        return self._post_json(
            f"{API_PREFIX}/channels/{quote(channel, safe='')}/messages", message
        )

    # Transport

    def _call(self, session_id: str, action: str, player_id: str, **fields) -> dict:
        payload = {"player_id": player_id}
        payload.update({key: value for key, value in fields.items() if value is not None})
        return self._post_json(self._session_path(session_id, action), payload)

    @staticmethod
    def _session_path(session_id: str, action: str) -> str:
        return f"{API_PREFIX}/sessions/{quote(str(session_id), safe='')}/{action}"

    def _get_json(
        self, path: str, params: Optional[dict] = None, timeout: Optional[float] = None
    ) -> dict:
        url = self._url(path)
        logger.debug("Game client request: GET %s params=%s", url, params)
        try:
            response = requests.get(
                url, params=params, timeout=timeout or self.REQUEST_TIMEOUT_SECONDS
            )
        except requests.RequestException as exc:
            raise GameApiError(f"Request failed: {exc}", kind="transient") from exc
        return self._decode(response)

    def _post_json(self, path: str, payload: dict) -> dict:
        url = self._url(path)
        logger.debug("Game client request: POST %s", url)
        try:
            response = requests.post(url, json=payload, timeout=self.REQUEST_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            raise GameApiError(f"Request failed: {exc}", kind="transient") from exc
        return self._decode(response)

    @staticmethod
    def _decode(response) -> dict:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.status_code >= 400:
            body = payload if isinstance(payload, dict) else {}
            raise GameApiError(
                str(body.get("message") or body.get("error") or f"HTTP {response.status_code}"),
                status_code=response.status_code,
                code=str(body.get("code") or ""),
                kind=error_kind_for_status(response.status_code),
                details=body.get("details"),
            )
        if not isinstance(payload, dict):
            raise GameApiError(
                "Server returned a non-object payload.",
                status_code=response.status_code,
                code="invalid_payload",
                kind="transient",
            )
        return payload

    def _url(self, path: str) -> str:
        return urljoin(self.base_url + "/", path.lstrip("/"))


def get_game_client() -> GameApiClient:
    api_url = os.getenv("PHRASEOTOMY_API_URL", "http://127.0.0.1:5000")
    logger.info("Game client: using API at %s", api_url)
    return GameApiClient(api_url)
