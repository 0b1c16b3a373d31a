"""Launch the game server, or follow a lobby from the console."""

from __future__ import annotations

import os
import subprocess
import sys
import time
from http.client import HTTPConnection, HTTPSConnection
from urllib.parse import urlsplit

from dotenv import load_dotenv

load_dotenv()


def prompt_mode() -> str:
    while True:
        choice = input("Run which mode? [server/watch]: ").strip().lower()
        if choice in {"server", "watch", "s", "w"}:
            return "server" if choice in {"server", "s"} else "watch"
        print("Please enter 'server' or 'watch'.")


def prompt_value(label: str) -> str:
    while True:
        value = input(f"{label}: ").strip()
        if value:
            return value
        print(f"{label} is required.")


def wait_for_healthcheck(url: str, timeout_seconds: float = 15.0) -> bool:
    parsed = urlsplit(url)
    if parsed.scheme not in {"http", "https"}:
        return False

    host = parsed.hostname
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    path = parsed.path or "/"

    conn_cls = HTTPSConnection if parsed.scheme == "https" else HTTPConnection
    deadline = time.time() + timeout_seconds
    while time.time() < deadline:
        connection = None
        try:
            connection = conn_cls(host, port, timeout=1.0)
            connection.request("GET", path)
            response = connection.getresponse()
            response.read()
            if response.status == 200:
                return True
        except OSError:
            time.sleep(0.25)
        finally:
            if connection is not None:
                connection.close()
    return False


def describe_view(view) -> str:
    if view.exit_reason:
        return f"[{view.status.value}] left session: {view.exit_reason}"
    if view.snapshot is None:
        return f"[{view.status.value}] waiting for first snapshot ({view.last_error or 'no data'})"

    session = view.snapshot.session
    players = ", ".join(
        f"{player.turn_order}. {player.name} ({player.score})" for player in view.snapshot.players
    )
    line = (
        f"[{view.status.value}] {session.lobby_code} {view.phase.value} "
        f"round {session.current_round}/{session.total_rounds} | {players}"
    )
    if view.joining:
        line += " | joining: " + ", ".join(name or player_id for player_id, name in view.joining)
    if view.last_error:
        line += f" | last error: {view.last_error}"
    return line


def run_watch(api_url: str, lobby_code: str, player_name: str) -> int:
    from game_client import GameApiClient
    from game_errors import GameApiError
    from reconciliation import ReconciliationLoop

    client = GameApiClient(api_url)
    if not wait_for_healthcheck(f"{client.base_url}/health", timeout_seconds=5.0):
        print(f"No Phraseotomy server answering at {client.base_url}.")
        return 1

    try:
        settings = client.bootstrap()
        joined = client.join_lobby(lobby_code, player_name)
    except GameApiError as exc:
        print(f"Could not join {lobby_code}: {exc} ({exc.code})")
        return 1

    loop = ReconciliationLoop(
        client,
        joined["session_id"],
        joined["player_id"],
        player_name=joined["display_name"],
        round_advance_mode=settings.get("round_advance_mode", "auto"),
        round_results_seconds=settings.get("round_results_seconds", 5),
        min_players=settings.get("min_players", 4),
    )
    loop.add_listener(lambda view: print(describe_view(view), flush=True))
    loop.start()
    loop.announce_join()

    try:
        while not loop.closed:
            time.sleep(0.5)
    except KeyboardInterrupt:
        print("Leaving lobby...")
        loop.leave()
        loop.stop()
    return 0


def main() -> int:
    mode_env = os.getenv("APP_MODE", "").strip().lower()
    mode = mode_env if mode_env in {"server", "watch"} else prompt_mode()

    if mode == "server":
        print("Starting server (app.py)...")
        return subprocess.call([sys.executable, "app.py"])

    api_url = os.getenv("PHRASEOTOMY_API_URL", "").strip() or "http://127.0.0.1:5000"
    lobby_code = os.getenv("PHRASEOTOMY_LOBBY", "").strip() or prompt_value("Lobby code")
    player_name = os.getenv("PHRASEOTOMY_PLAYER", "").strip() or prompt_value("Your name")
    return run_watch(api_url, lobby_code, player_name)


if __name__ == "__main__":
    raise SystemExit(main())
