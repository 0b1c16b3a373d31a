"""Client-side reconciliation loop.

The loop never trusts an event payload. Row-change events and state-changing
broadcasts only schedule a (debounced) refetch of the authoritative snapshot;
the phase is always re-derived from whatever that fetch returns.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from broadcast_protocol import (
    BroadcastEvent,
    BroadcastFormatError,
    BroadcastMessage,
    game_channel,
    interpret_broadcast,
    lobby_channel,
)
from change_feed import ROW_TABLES
from game_errors import GameApiError, SnapshotValidationError
from game_models import GameSnapshot
from game_phase import Phase, Roles, derive_phase, derive_roles

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], Any]


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    CLOSED = "closed"


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    return min(base * (2 ** max(0, int(attempt))), cap)


def start_daemon_timer(delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(max(0.0, float(delay_seconds)), callback)
    timer.daemon = True
    timer.start()
    return timer


class Subscription:
    """One long-poll subscription with cursor tracking and backoff.

    ``poll(after, timeout)`` returns ``{cursor, events, reset}``. A ``None``
    cursor is the handshake. After a failure the cursor is dropped, so the
    next successful poll is a fresh handshake and ``on_reset`` fires to cover
    whatever was missed while disconnected.
    """

    def __init__(
        self,
        name: str,
        poll: Callable[[Optional[int], float], dict],
        on_event: Callable[[dict], None],
        on_reset: Callable[[], None],
        *,
        max_retries: int = 10,
        base_delay: float = 1.0,
        poll_timeout: float = 25.0,
    ):
        self.name = name
        self._poll = poll
        self._on_event = on_event
        self._on_reset = on_reset
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.poll_timeout = poll_timeout
        self.status = ConnectionStatus.CONNECTING
        self._stopped = False
        self.cursor: Optional[int] = None
        self.attempts = 0
        self.last_error: Optional[GameApiError] = None

    @property
    def closed(self) -> bool:
        return self._stopped

    def close(self) -> None:
        self._stopped = True
        self.status = ConnectionStatus.CLOSED

    def poll_once(self) -> float:
        """Run one poll. Returns how long to wait before the next one."""
        if self.closed:
            return 0.0
        timeout = 0.0 if self.cursor is None else self.poll_timeout
        try:
            result = self._poll(self.cursor, timeout)
        except GameApiError as exc:
            return self._handle_failure(exc)

        if self.closed:
            return 0.0
        recovering = self.attempts > 0
        self.cursor = result.get("cursor")
        self.status = ConnectionStatus.SUBSCRIBED
        self.attempts = 0
        self.last_error = None
        if recovering:
            logger.info("Subscription %s resubscribed.", self.name)
        if recovering or result.get("reset"):
            self._on_reset()
        for event in result.get("events") or []:
            self._on_event(event)
        return 0.0

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set() and not self.closed:
            delay = self.poll_once()
            if delay:
                stop_event.wait(delay)

    def _give_up(self) -> None:
        self._stopped = True
        self.status = ConnectionStatus.ERROR

    def _handle_failure(self, exc: GameApiError) -> float:
        self.last_error = exc
        self.cursor = None
        if not exc.is_transient:
            logger.warning("Subscription %s failed permanently: %s", self.name, exc)
            self._give_up()
            return 0.0
        self.attempts += 1
        if self.attempts > self.max_retries:
            logger.warning(
                "Subscription %s gave up after %s attempts: %s",
                self.name,
                self.max_retries,
                exc,
            )
            self._give_up()
            return 0.0
        self.status = ConnectionStatus.ERROR
        delay = reconnect_delay(self.attempts - 1, self.base_delay)
        logger.warning(
            "Subscription %s dropped (%s); retrying in %.1fs.", self.name, exc, delay
        )
        return delay


@dataclass(frozen=True)
class LocalView:
    snapshot: Optional[GameSnapshot]
    phase: Optional[Phase]
    roles: Optional[Roles]
    status: ConnectionStatus
    joining: Tuple[Tuple[str, str], ...] = ()
    exit_reason: str = ""
    last_error: str = ""
    subscriptions: Dict[str, str] = field(default_factory=dict)


class ReconciliationLoop:
    DEBOUNCE_SECONDS = 0.25
    JOINING_TTL_SECONDS = 10.0

    def __init__(
        self,
        client,
        session_id: str,
        player_id: str,
        *,
        player_name: str = "",
        debounce_seconds: Optional[float] = None,
        round_advance_mode: str = "auto",
        round_results_seconds: float = 5,
        min_players: int = 4,
        timer_factory: Optional[TimerFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        max_retries: int = 10,
        base_delay: float = 1.0,
        poll_timeout: float = 25.0,
    ):
        self.client = client
        self.session_id = session_id
        self.player_id = player_id
        self.player_name = player_name
        self.debounce_seconds = (
            self.DEBOUNCE_SECONDS if debounce_seconds is None else float(debounce_seconds)
        )
        self.round_advance_mode = round_advance_mode
        self.round_results_seconds = float(round_results_seconds)
        self.min_players = min_players
        self._timer_factory = timer_factory or start_daemon_timer
        self._clock = clock

        self.snapshot: Optional[GameSnapshot] = None
        self.phase: Optional[Phase] = None
        self.roles: Optional[Roles] = None
        self.exit_reason = ""
        self.last_error: Optional[Exception] = None
        self.fetch_count = 0

        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._closed = False
        self._listeners: List[Callable[[LocalView], None]] = []
        self._joining: Dict[str, Tuple[str, float]] = {}
        self._in_flight: set = set()
        self._debounce_timer = None
        self._advance_timer = None
        self._scheduled_advance_round = 0
        self._refresh_running = False
        self._refresh_again = False
        self._threads: List[threading.Thread] = []

        self.subscriptions = {
            "changes": Subscription(
                "changes",
                lambda after, timeout: client.poll_changes(
                    session_id, after, tables=ROW_TABLES, timeout=timeout
                ),
                self.handle_row_change,
                self.request_refresh,
                max_retries=max_retries,
                base_delay=base_delay,
                poll_timeout=poll_timeout,
            ),
            "lobby": Subscription(
                "lobby",
                lambda after, timeout: client.poll_channel(
                    lobby_channel(session_id), after, timeout=timeout
                ),
                self.handle_broadcast,
                self.request_refresh,
                max_retries=max_retries,
                base_delay=base_delay,
                poll_timeout=poll_timeout,
            ),
            "game": Subscription(
                "game",
                lambda after, timeout: client.poll_channel(
                    game_channel(session_id), after, timeout=timeout
                ),
                self.handle_broadcast,
                self.request_refresh,
                max_retries=max_retries,
                base_delay=base_delay,
                poll_timeout=poll_timeout,
            ),
        }

    # ------------------------
    # Lifecycle
    # ------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def status(self) -> ConnectionStatus:
        if self._closed:
            return ConnectionStatus.CLOSED
        statuses = [sub.status for sub in self.subscriptions.values()]
        if any(status is ConnectionStatus.ERROR for status in statuses):
            return ConnectionStatus.ERROR
        if all(status is ConnectionStatus.SUBSCRIBED for status in statuses):
            return ConnectionStatus.SUBSCRIBED
        return ConnectionStatus.CONNECTING

    @property
    def joining(self) -> Tuple[Tuple[str, str], ...]:
        now = self._clock()
        with self._lock:
            return tuple(
                (player_id, name)
                for player_id, (name, expires_at) in self._joining.items()
                if expires_at > now
            )

    def add_listener(self, listener: Callable[[LocalView], None]) -> None:
        self._listeners.append(listener)

    def start(self, *, threaded: bool = True) -> None:
        # Handshake before the first fetch so no change falls between them.
        for subscription in self.subscriptions.values():
            subscription.poll_once()
        self.refresh_now()
        if self._closed:
            return
        if not threaded:
            return
        for subscription in self.subscriptions.values():
            thread = threading.Thread(
                target=subscription.run,
                args=(self._stop,),
                name=f"phraseotomy-{subscription.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._close("")

    def view(self) -> LocalView:
        with self._lock:
            return LocalView(
                snapshot=self.snapshot,
                phase=self.phase,
                roles=self.roles,
                status=self.status,
                joining=self.joining,
                exit_reason=self.exit_reason,
                last_error=str(self.last_error) if self.last_error else "",
                subscriptions={name: sub.status.value for name, sub in self.subscriptions.items()},
            )

    # ------------------------
    # Inbound events
    # ------------------------

    def request_refresh(self) -> None:
        """Coalesce bursts of change hints into one snapshot fetch."""
        with self._lock:
            if self._closed or self._debounce_timer is not None:
                return
            self._debounce_timer = self._timer_factory(
                self.debounce_seconds, self._fire_debounced_refresh
            )

    def handle_row_change(self, event: dict) -> None:
        logger.debug(
            "Row change %s on %s for session %s",
            event.get("eventType"),
            event.get("table"),
            self.session_id,
        )
        self.request_refresh()

    def handle_broadcast(self, event: dict) -> None:
        raw = event.get("message", event) if isinstance(event, dict) else event
        try:
            message = BroadcastMessage.from_dict(raw)
        except BroadcastFormatError as exc:
            logger.debug("Ignoring malformed broadcast: %s", exc)
            return

        hint = interpret_broadcast(message, self.player_id)
        if hint.joining_player_id:
            self._mark_joining(hint.joining_player_id, hint.joining_player_name)
        if hint.exit_reason:
            self._close(hint.exit_reason)
            return
        if hint.refresh:
            self.request_refresh()

    def refresh_now(self) -> Optional[GameSnapshot]:
        with self._lock:
            if self._closed:
                return self.snapshot
            if self._refresh_running:
                self._refresh_again = True
                return self.snapshot
            self._refresh_running = True
        try:
            while True:
                self._fetch_snapshot()
                with self._lock:
                    if self._closed or not self._refresh_again:
                        break
                    self._refresh_again = False
        finally:
            with self._lock:
                self._refresh_running = False
        return self.snapshot

    # ------------------------
    # Mutations
    # ------------------------

    def announce_join(self) -> None:
        self._send_hint(
            lobby_channel(self.session_id),
            BroadcastEvent.PLAYER_JOINED,
            {"player_id": self.player_id, "name": self.player_name},
        )

    def start_game(self):
        return self._mutate(
            "start_game",
            lambda: self.client.start_game(self.session_id, self.player_id),
            BroadcastEvent.GAME_STARTED,
            channels=(lobby_channel(self.session_id), game_channel(self.session_id)),
        )

    def select_theme(self, theme_id: str):
        return self._mutate(
            "select_theme",
            lambda: self.client.update_session_theme(self.session_id, self.player_id, theme_id),
            BroadcastEvent.THEME_SELECTED,
            {"theme_id": theme_id},
        )

    def start_turn(self, theme_id: Optional[str] = None, turn_mode: Optional[str] = None):
        return self._mutate(
            "start_turn",
            lambda: self.client.start_turn(self.session_id, self.player_id, theme_id, turn_mode),
            BroadcastEvent.ELEMENTS_GENERATED,
        )

    def submit_clue(self, *, recording_url: Optional[str] = None, icon_ids=None):
        return self._mutate(
            "submit_clue",
            lambda: self.client.submit_clue(
                self.session_id,
                self.player_id,
                recording_url=recording_url,
                icon_ids=icon_ids,
            ),
            BroadcastEvent.STORY_SUBMITTED,
        )

    def submit_guess(self, guess: str):
        round_number = self.snapshot.session.current_round if self.snapshot else 0
        return self._mutate(
            "submit_guess",
            lambda: self.client.submit_guess(
                self.session_id, self.player_id, round_number, guess
            ),
            BroadcastEvent.GUESS_SUBMITTED,
            {"round_number": round_number},
        )

    def advance_round(self, from_round: Optional[int] = None):
        if from_round is None:
            from_round = self.snapshot.session.current_round if self.snapshot else 0
        return self._mutate(
            "advance_round",
            lambda: self.client.advance_round(self.session_id, self.player_id, from_round),
            BroadcastEvent.NEXT_TURN,
            {"from_round": from_round},
        )

    def kick_player(self, target_player_id: str):
        return self._mutate(
            "kick_player",
            lambda: self.client.kick_player(self.session_id, self.player_id, target_player_id),
            BroadcastEvent.PLAYER_KICKED,
            {"player_id": target_player_id},
            channels=(lobby_channel(self.session_id),),
        )

    def shuffle_turn_order(self):
        return self._mutate(
            "turn_order",
            lambda: self.client.shuffle_turn_order(self.session_id, self.player_id),
            BroadcastEvent.TURN_ORDER_CHANGED,
            channels=(lobby_channel(self.session_id),),
        )

    def move_player(self, target_player_id: str, new_position: int):
        return self._mutate(
            "turn_order",
            lambda: self.client.reorder_player(
                self.session_id, self.player_id, target_player_id, new_position
            ),
            BroadcastEvent.TURN_ORDER_CHANGED,
            channels=(lobby_channel(self.session_id),),
        )

    def leave(self):
        result = self._mutate(
            "leave",
            lambda: self.client.leave_lobby(self.session_id, self.player_id),
            BroadcastEvent.PLAYER_LEFT,
            {"player_id": self.player_id},
            channels=(lobby_channel(self.session_id), game_channel(self.session_id)),
            refetch=False,
        )
        if result is not None:
            self._close("left")
        return result

    def end_lobby(self):
        result = self._mutate(
            "end_lobby",
            lambda: self.client.end_lobby(self.session_id, self.player_id),
            BroadcastEvent.LOBBY_ENDED,
            channels=(lobby_channel(self.session_id), game_channel(self.session_id)),
            refetch=False,
        )
        if result is not None:
            self._close("lobby_ended")
        return result

    # ------------------------
    # Internals
    # ------------------------

    def _mutate(
        self,
        guard: str,
        call: Callable[[], dict],
        event: Optional[BroadcastEvent] = None,
        payload: Optional[dict] = None,
        *,
        channels: Optional[Tuple[str, ...]] = None,
        refetch: bool = True,
    ) -> Optional[dict]:
        with self._lock:
            if self._closed:
                return None
            if guard in self._in_flight:
                logger.debug("Ignoring %s: already in flight.", guard)
                return None
            self._in_flight.add(guard)

        result = None
        try:
            result = call()
        except GameApiError as exc:
            logger.info("%s failed: %s (%s)", guard, exc, exc.code)
            self.last_error = exc
            refetch = True
        else:
            self.last_error = None
            if event is not None:
                for channel in channels or (game_channel(self.session_id),):
                    self._send_hint(channel, event, payload or {})
        finally:
            with self._lock:
                self._in_flight.discard(guard)

        if refetch:
            self.refresh_now()
        return result

    def _send_hint(self, channel: str, event: BroadcastEvent, payload: dict) -> None:
        message = BroadcastMessage.build(
            event, payload, sender_id=self.player_id, sender_name=self.player_name
        )
        try:
            self.client.send_broadcast(channel, message.to_dict())
        except GameApiError as exc:
            logger.info("Broadcast %s on %s not delivered: %s", event.value, channel, exc)

    def _fire_debounced_refresh(self) -> None:
        with self._lock:
            self._debounce_timer = None
        self.refresh_now()

    def _fetch_snapshot(self) -> None:
        self.fetch_count += 1
        try:
            payload = self.client.get_game_state(self.session_id, self.player_id)
        except GameApiError as exc:
            if exc.is_terminal:
                # Deleted after completion, or we are no longer a member.
                reason = "removed" if exc.code == "not_a_member" else "session_gone"
                self._close(reason)
                return
            logger.warning("Snapshot fetch failed for %s: %s", self.session_id, exc)
            self.last_error = exc
            self._notify()
            return

        try:
            snapshot = GameSnapshot.from_payload(payload)
        except SnapshotValidationError as exc:
            logger.warning("Discarding malformed snapshot for %s: %s", self.session_id, exc)
            self.last_error = exc
            self._notify()
            return

        with self._lock:
            if self._closed:
                return
            self.snapshot = snapshot
            self.phase = derive_phase(snapshot)
            self.roles = derive_roles(snapshot, self.player_id, min_players=self.min_players)
            present = set(snapshot.player_ids())
            now = self._clock()
            self._joining = {
                player_id: entry
                for player_id, entry in self._joining.items()
                if player_id not in present and entry[1] > now
            }
            self._schedule_advance_if_needed()
        self._notify()

    def _schedule_advance_if_needed(self) -> None:
        if self.round_advance_mode != "client" or self.phase is not Phase.SCORING:
            return
        round_number = self.snapshot.session.current_round
        if round_number == self._scheduled_advance_round:
            return
        self._scheduled_advance_round = round_number
        self._advance_timer = self._timer_factory(
            self.round_results_seconds, lambda: self.advance_round(round_number)
        )

    def _mark_joining(self, player_id: str, name: str) -> None:
        with self._lock:
            if self.snapshot is not None and self.snapshot.player(player_id) is not None:
                return
            self._joining[player_id] = (name, self._clock() + self.JOINING_TTL_SECONDS)
        self._timer_factory(self.JOINING_TTL_SECONDS, self._notify)
        self._notify()

    def _close(self, reason: str) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.exit_reason = reason
            self._stop.set()
            for timer in (self._debounce_timer, self._advance_timer):
                if timer is not None:
                    timer.cancel()
            self._debounce_timer = None
            self._advance_timer = None
            for subscription in self.subscriptions.values():
                subscription.close()
        if reason:
            logger.info("Leaving session %s view: %s", self.session_id, reason)
        self._notify()

    def _notify(self) -> None:
        view = self.view()
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.exception("Reconciliation listener failed")
