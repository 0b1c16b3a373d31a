import pytest

from game_errors import SnapshotValidationError
from game_models import GameSnapshot
from game_phase import Phase, derive_phase, derive_roles, round_is_resolved


def _payload(status="active", turn=None, guesses=None, players=None):
    return {
        "session": {
            "id": "abc123",
            "lobby_code": "AB3CD9",
            "host_player_id": "p1",
            "status": status,
            "current_round": 1,
            "total_rounds": 4,
            "current_storyteller_id": "p1",
        },
        "players": players
        or [
            {"player_id": "p1", "name": "Host", "turn_order": 1, "score": 0},
            {"player_id": "p2", "name": "Bea", "turn_order": 2, "score": 0},
            {"player_id": "p3", "name": "Cal", "turn_order": 3, "score": 0},
            {"player_id": "p4", "name": "Dee", "turn_order": 4, "score": 0},
        ],
        "current_turn": turn,
        "guesses": guesses or [],
        "server_time": 1_700_000_000,
    }


def _turn(**fields):
    turn = {"id": "t1", "round_number": 1, "storyteller_id": "p1"}
    turn.update(fields)
    return turn


def _phase(payload):
    return derive_phase(GameSnapshot.from_payload(payload))


def test_phase_guards_in_order():
    assert _phase(_payload(status="waiting")) is Phase.LOBBY
    assert _phase(_payload(turn=None)) is Phase.SELECTING_THEME
    assert _phase(_payload(turn=_turn())) is Phase.SELECTING_THEME
    assert _phase(_payload(turn=_turn(theme_id="travel"))) is Phase.GENERATING_SECRET
    assert (
        _phase(_payload(turn=_turn(theme_id="travel", has_secret=True)))
        is Phase.STORYTELLING
    )
    assert (
        _phase(
            _payload(
                turn=_turn(theme_id="travel", has_secret=True, clue_submitted_at=10)
            )
        )
        is Phase.GUESSING
    )
    assert (
        _phase(
            _payload(
                turn=_turn(
                    theme_id="travel",
                    has_secret=True,
                    clue_submitted_at=10,
                    completed_at=20,
                )
            )
        )
        is Phase.SCORING
    )


def test_terminal_status_wins_over_every_other_guard():
    turn = _turn(theme_id="travel", has_secret=True, clue_submitted_at=10)
    assert _phase(_payload(status="completed", turn=turn)) is Phase.COMPLETED
    assert _phase(_payload(status="expired")) is Phase.COMPLETED
    assert Phase.COMPLETED.is_terminal


def test_roles_follow_identity_fields():
    turn = _turn(theme_id="travel", has_secret=True, clue_submitted_at=10)
    snapshot = GameSnapshot.from_payload(
        _payload(
            turn=turn,
            guesses=[{"player_id": "p2", "round_number": 1, "guess_text": None}],
        )
    )

    host = derive_roles(snapshot, "p1")
    assert host.is_host and host.is_storyteller and not host.can_guess

    guessed = derive_roles(snapshot, "p2")
    assert guessed.has_guessed is True
    assert guessed.can_guess is False

    waiting = derive_roles(snapshot, "p3")
    assert waiting.can_guess is True
    assert derive_roles(snapshot, "stranger").is_member is False


def test_round_is_resolved_when_every_guesser_answered():
    turn = _turn(theme_id="travel", has_secret=True, clue_submitted_at=10)
    partial = GameSnapshot.from_payload(
        _payload(turn=turn, guesses=[{"player_id": "p2", "round_number": 1}])
    )
    assert round_is_resolved(partial) is False

    full = GameSnapshot.from_payload(
        _payload(
            turn=turn,
            guesses=[
                {"player_id": pid, "round_number": 1} for pid in ("p2", "p3", "p4")
            ],
        )
    )
    assert round_is_resolved(full) is True


def test_snapshot_validation_rejects_bad_payloads():
    with pytest.raises(SnapshotValidationError):
        GameSnapshot.from_payload(_payload(status="paused"))
    with pytest.raises(SnapshotValidationError):
        GameSnapshot.from_payload(
            _payload(players=[{"player_id": "p1", "name": "Host", "turn_order": 0}])
        )
    with pytest.raises(SnapshotValidationError):
        GameSnapshot.from_payload(["not", "an", "object"])

    snapshot = GameSnapshot.from_payload(dict(_payload(), viewer={"player_id": "p1"}))
    assert snapshot.extras["viewer"] == {"player_id": "p1"}
    assert snapshot.fetched_at == 1_700_000_000
