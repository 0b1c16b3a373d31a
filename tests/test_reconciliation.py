import pytest

from broadcast_protocol import BroadcastEvent, BroadcastMessage, game_channel, lobby_channel
from change_feed import session_topic
from conftest import build_lobby
from game_errors import GameApiError, PhraseotomyError, error_kind_for_status
from game_phase import Phase
from reconciliation import (
    ConnectionStatus,
    ReconciliationLoop,
    Subscription,
    reconnect_delay,
)

CLUE_URL = "https://cdn.example.com/clues/round.webm"


class ServiceClient:
    """GameApiClient stand-in that calls the service and feed in-process."""

    def __init__(self, service):
        self.service = service
        self.feed = service.change_feed
        self.sent = []

    def _wrap(self, fn):
        try:
            return fn()
        except PhraseotomyError as exc:
            raise GameApiError(
                str(exc),
                status_code=exc.status_code,
                code=exc.code,
                kind=error_kind_for_status(exc.status_code),
            ) from exc

    def get_game_state(self, session_id, player_id):
        return self._wrap(lambda: self.service.get_game_state(session_id, player_id))

    def poll_changes(self, session_id, after, *, tables=None, timeout=0.0):
        return self.feed.poll(session_topic(session_id), after, timeout=0, tables=tables)

    def poll_channel(self, channel, after, *, timeout=0.0):
        return self.feed.poll(channel, after, timeout=0)

    def send_broadcast(self, channel, message):
        self.sent.append((channel, message["event"]))
        return {"ok": True, "seq": self.feed.broadcast(channel, message)}

    def start_game(self, session_id, player_id):
        return self._wrap(lambda: self.service.start_game(session_id, player_id))

    def update_session_theme(self, session_id, player_id, theme_id):
        return self._wrap(
            lambda: self.service.update_session_theme(session_id, player_id, theme_id)
        )

    def start_turn(self, session_id, player_id, theme_id=None, turn_mode=None):
        return self._wrap(
            lambda: self.service.start_turn(session_id, player_id, theme_id, turn_mode)
        )

    def submit_clue(self, session_id, player_id, *, recording_url=None, icon_ids=None):
        return self._wrap(
            lambda: self.service.submit_clue(session_id, player_id, recording_url, icon_ids)
        )

    def submit_guess(self, session_id, player_id, round_number, guess):
        return self._wrap(
            lambda: self.service.submit_guess(session_id, round_number, player_id, guess)
        )

    def advance_round(self, session_id, player_id, from_round):
        return self._wrap(
            lambda: self.service.advance_round(session_id, from_round, player_id=player_id)
        )

    def shuffle_turn_order(self, session_id, player_id):
        return self._wrap(lambda: self.service.shuffle_turn_order(session_id, player_id))

    def reorder_player(self, session_id, player_id, target_player_id, new_position):
        return self._wrap(
            lambda: self.service.reorder_player(
                session_id, player_id, target_player_id, new_position
            )
        )

    def kick_player(self, session_id, host_id, player_id_to_kick):
        return self._wrap(
            lambda: self.service.kick_player(session_id, player_id_to_kick, host_id)
        )

    def leave_lobby(self, session_id, player_id):
        return self._wrap(lambda: self.service.leave_lobby(session_id, player_id))

    def end_lobby(self, session_id, host_id):
        return self._wrap(lambda: self.service.end_lobby(session_id, host_id))


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualTimers:
    def __init__(self):
        self.pending = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.pending.append(timer)
        return timer

    def live(self):
        return [timer for timer in self.pending if not timer.cancelled]

    def fire_all(self):
        while self.pending:
            batch, self.pending = self.pending, []
            for timer in batch:
                if not timer.cancelled:
                    timer.callback()


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def table(service):
    return build_lobby(service)


def _loop(service, session_id, player_id, **kwargs):
    timers = kwargs.pop("timers", None) or ManualTimers()
    loop = ReconciliationLoop(
        kwargs.pop("client", None) or ServiceClient(service),
        session_id,
        player_id,
        timer_factory=timers,
        **kwargs,
    )
    loop.start(threaded=False)
    return loop, timers


def test_reconnect_delay_doubles_up_to_cap():
    assert reconnect_delay(0) == 1.0
    assert reconnect_delay(3) == 8.0
    assert reconnect_delay(10) == 30.0
    assert reconnect_delay(2, base=0.5) == 2.0


def test_start_fetches_and_subscribes(service, table):
    loop, _ = _loop(service, table["session_id"], table["host_id"])

    view = loop.view()
    assert loop.fetch_count == 1
    assert view.phase is Phase.LOBBY
    assert view.roles.is_host and view.roles.can_start
    assert view.status is ConnectionStatus.SUBSCRIBED
    assert view.subscriptions == {"changes": "subscribed", "lobby": "subscribed", "game": "subscribed"}


def test_row_changes_are_debounced_into_one_fetch(service, table):
    session_id = table["session_id"]
    loop, timers = _loop(service, session_id, table["host_id"])

    service.join_lobby(table["lobby_code"], "Eve")
    service.leave_lobby(session_id, table["player_ids"][1])
    loop.subscriptions["changes"].poll_once()

    assert len(timers.live()) == 1
    assert timers.live()[0].delay == ReconciliationLoop.DEBOUNCE_SECONDS
    assert loop.fetch_count == 1

    timers.fire_all()

    assert loop.fetch_count == 2
    assert [player.name for player in loop.snapshot.players] == ["Host", "Cal", "Dee", "Eve"]


def test_broadcast_hint_makes_peers_refetch(service, table):
    session_id = table["session_id"]
    host, _ = _loop(service, session_id, table["host_id"])
    bea, bea_timers = _loop(service, session_id, table["player_ids"][1])

    result = host.start_game()
    assert result["storyteller_id"] == table["host_id"]
    assert host.phase is Phase.SELECTING_THEME
    assert (lobby_channel(session_id), "game_started") in host.client.sent

    bea.subscriptions["game"].poll_once()
    bea_timers.fire_all()

    assert bea.phase is Phase.SELECTING_THEME
    assert bea.roles.is_storyteller is False


def test_guess_uses_round_from_snapshot(service, table):
    session_id, host_id = table["session_id"], table["host_id"]
    service.start_game(session_id, host_id)
    host, _ = _loop(service, session_id, host_id)
    host.select_theme("travel")
    assert host.phase is Phase.GENERATING_SECRET
    assert host.start_turn()["whisp"] == "Passport"
    host.submit_clue(recording_url=CLUE_URL)
    assert host.phase is Phase.GUESSING

    bea, _ = _loop(service, session_id, table["player_ids"][1])
    assert bea.roles.can_guess is True
    outcome = bea.submit_guess("passport")

    assert outcome["correct"] is True
    assert bea.roles.has_guessed is True
    assert bea.roles.can_guess is False


def test_failed_mutation_records_error_and_refetches(service, table):
    bea, _ = _loop(service, table["session_id"], table["player_ids"][1])

    assert bea.start_game() is None
    assert bea.last_error.code == "host_only"
    assert bea.view().last_error
    assert bea.fetch_count == 2
    assert bea.client.sent == []


def test_in_flight_guard_drops_duplicate_mutations(service, table):
    nested = []

    class ReentrantClient(ServiceClient):
        def shuffle_turn_order(self, session_id, player_id):
            nested.append(loop.shuffle_turn_order())
            return super().shuffle_turn_order(session_id, player_id)

    loop, _ = _loop(
        service, table["session_id"], table["host_id"], client=ReentrantClient(service)
    )

    assert loop.shuffle_turn_order()["ok"] is True
    assert nested == [None]


def test_kick_broadcast_closes_the_kicked_view(service, table):
    session_id = table["session_id"]
    cal_id = table["player_ids"][2]
    host, _ = _loop(service, session_id, table["host_id"])
    cal, _ = _loop(service, session_id, cal_id)
    seen = []
    cal.add_listener(seen.append)

    host.kick_player(cal_id)
    cal.subscriptions["lobby"].poll_once()

    assert cal.closed is True
    assert cal.exit_reason == "kicked"
    assert cal.status is ConnectionStatus.CLOSED
    assert seen[-1].exit_reason == "kicked"
    assert len(host.snapshot.players) == 3


def test_refetch_after_removal_exits(service, table):
    session_id = table["session_id"]
    dee, _ = _loop(service, session_id, table["player_ids"][3])

    service.kick_player(session_id, table["player_ids"][3], table["host_id"])
    dee.refresh_now()

    assert dee.exit_reason == "removed"


def test_end_lobby_closes_host_and_peers(service, table):
    session_id = table["session_id"]
    host, _ = _loop(service, session_id, table["host_id"])
    bea, bea_timers = _loop(service, session_id, table["player_ids"][1])
    cal, _ = _loop(service, session_id, table["player_ids"][2])

    host.end_lobby()
    assert host.exit_reason == "lobby_ended"

    # The broadcast only triggers a refetch; the missing session closes the view.
    bea.subscriptions["game"].poll_once()
    assert bea.closed is False
    bea_timers.fire_all()
    assert bea.exit_reason == "session_gone"

    # A peer that missed the broadcast finds out on its next fetch.
    cal.refresh_now()
    assert cal.exit_reason == "session_gone"


def test_lobby_ended_broadcast_from_a_guest_does_not_close_peers(service, table):
    session_id = table["session_id"]
    bea_id = table["player_ids"][1]
    cal, cal_timers = _loop(service, session_id, table["player_ids"][2])

    message = BroadcastMessage.build(BroadcastEvent.LOBBY_ENDED, sender_id=bea_id)
    ServiceClient(service).send_broadcast(game_channel(session_id), message.to_dict())
    cal.subscriptions["game"].poll_once()
    cal_timers.fire_all()

    assert cal.closed is False
    assert cal.exit_reason == ""
    assert cal.fetch_count == 2
    assert cal.phase is Phase.LOBBY
    assert service.get_lobby_data(session_id, bea_id)["session"]["status"] == "waiting"


def test_change_between_fetch_and_subscribe_is_not_lost(service, table):
    joined = []

    class JoinAfterFirstFetch(ServiceClient):
        def get_game_state(self, session_id, player_id):
            payload = super().get_game_state(session_id, player_id)
            if not joined:
                joined.append(service.join_lobby(table["lobby_code"], "Eve"))
            return payload

    loop, timers = _loop(
        service,
        table["session_id"],
        table["host_id"],
        client=JoinAfterFirstFetch(service),
    )
    assert len(loop.snapshot.players) == 4

    for subscription in loop.subscriptions.values():
        subscription.poll_once()
    timers.fire_all()

    assert len(loop.snapshot.players) == 5
    assert loop.snapshot.player(joined[0]["player_id"]) is not None


def test_leave_closes_without_refetch(service, table):
    bea, _ = _loop(service, table["session_id"], table["player_ids"][1])

    assert bea.leave()["left"] is True
    assert bea.exit_reason == "left"
    assert bea.fetch_count == 1


def test_client_mode_schedules_one_advance_per_round(make_service):
    service = make_service(round_advance_mode="client")
    table = build_lobby(service)
    session_id, host_id = table["session_id"], table["host_id"]
    service.start_game(session_id, host_id)
    service.update_session_theme(session_id, host_id, "travel")
    service.start_turn(session_id, host_id)
    service.submit_clue(session_id, host_id, recording_url=CLUE_URL)
    for player_id in table["player_ids"][1:]:
        service.submit_guess(session_id, 1, player_id, "Passport")

    host, host_timers = _loop(
        service, session_id, host_id, round_advance_mode="client", round_results_seconds=5
    )
    bea, bea_timers = _loop(
        service, session_id, table["player_ids"][1], round_advance_mode="client"
    )
    assert host.phase is Phase.SCORING

    host.refresh_now()
    assert [timer.delay for timer in host_timers.live()] == [5]

    host_timers.fire_all()
    assert host.phase is Phase.SELECTING_THEME
    assert host.snapshot.session.current_round == 2

    bea_timers.fire_all()
    assert bea.last_error is None
    assert bea.snapshot.session.current_round == 2
    assert service.get_game_state(session_id, host_id)["session"]["current_round"] == 2


def test_joining_players_expire(service, table):
    clock = FakeClock()
    host, _ = _loop(service, table["session_id"], table["host_id"], clock=clock)

    host.handle_broadcast(
        {
            "message": BroadcastMessage.build(
                BroadcastEvent.PLAYER_JOINED, {"player_id": "newcomer", "name": "Eve"}
            ).to_dict()
        }
    )
    assert host.joining == (("newcomer", "Eve"),)

    clock.now += ReconciliationLoop.JOINING_TTL_SECONDS + 1
    assert host.joining == ()


def test_malformed_and_cosmetic_broadcasts_are_ignored(service, table):
    host, timers = _loop(service, table["session_id"], table["host_id"])

    host.handle_broadcast({"message": {"event": "bogus"}})
    host.handle_broadcast({"message": BroadcastMessage.build(BroadcastEvent.PING).to_dict()})

    assert timers.live() == []
    assert host.closed is False


def test_bad_snapshots_and_transient_errors_keep_last_view(service, table):
    flaky = {"mode": "ok"}

    class FlakyClient(ServiceClient):
        def get_game_state(self, session_id, player_id):
            if flaky["mode"] == "invalid":
                return {"session": {"status": "paused"}}
            if flaky["mode"] == "down":
                raise GameApiError("HTTP 503", status_code=503, kind="transient")
            return super().get_game_state(session_id, player_id)

    host, _ = _loop(
        service, table["session_id"], table["host_id"], client=FlakyClient(service)
    )
    good = host.snapshot

    flaky["mode"] = "invalid"
    host.refresh_now()
    assert host.snapshot is good
    assert "status" in host.view().last_error

    flaky["mode"] = "down"
    host.refresh_now()
    assert host.snapshot is good
    assert host.closed is False
    assert host.last_error.is_transient


def test_listener_errors_do_not_break_the_loop(service, table):
    host, _ = _loop(service, table["session_id"], table["host_id"])

    def broken(view):
        raise RuntimeError("listener bug")

    host.add_listener(broken)
    host.refresh_now()

    assert host.fetch_count == 2


def test_subscription_backs_off_and_resubscribes():
    outcomes = [
        GameApiError("down", kind="transient"),
        GameApiError("down", kind="transient"),
        {"cursor": 5, "events": [{"n": 1}], "reset": False},
    ]
    resets, events = [], []

    def poll(after, timeout):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    sub = Subscription("changes", poll, events.append, lambda: resets.append(True), base_delay=0.5)

    assert sub.poll_once() == 0.5
    assert sub.status is ConnectionStatus.ERROR
    assert sub.poll_once() == 1.0
    assert sub.poll_once() == 0.0

    assert sub.status is ConnectionStatus.SUBSCRIBED
    assert sub.cursor == 5
    assert resets == [True]
    assert events == [{"n": 1}]


def test_subscription_gives_up():
    def unavailable(after, timeout):
        raise GameApiError("down", kind="transient")

    sub = Subscription("lobby", unavailable, lambda event: None, lambda: None, max_retries=2)
    sub.poll_once()
    sub.poll_once()
    sub.poll_once()

    assert sub.closed is True
    assert sub.status is ConnectionStatus.ERROR

    def forbidden(after, timeout):
        raise GameApiError("nope", status_code=400, kind="validation")

    fatal = Subscription("game", forbidden, lambda event: None, lambda: None)
    assert fatal.poll_once() == 0.0
    assert fatal.closed is True
    assert fatal.attempts == 0
