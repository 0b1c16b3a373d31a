"""Pure phase derivation over a fetched game snapshot.

Every client computes the phase from the same snapshot with the same ordered
guards, so two clients holding the same snapshot always agree.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from game_models import GameSnapshot


class Phase(str, Enum):
    LOBBY = "lobby"
    SELECTING_THEME = "selecting_theme"
    GENERATING_SECRET = "generating_secret"
    STORYTELLING = "storytelling"
    GUESSING = "guessing"
    SCORING = "scoring"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self is Phase.COMPLETED


TERMINAL_STATUSES = frozenset({"completed", "expired"})


def _is_terminal(snapshot: GameSnapshot) -> bool:
    return snapshot.session.status in TERMINAL_STATUSES


def _is_lobby(snapshot: GameSnapshot) -> bool:
    return snapshot.session.status == "waiting"


def _needs_theme(snapshot: GameSnapshot) -> bool:
    turn = snapshot.current_turn
    return turn is None or not turn.theme_id


def _needs_secret(snapshot: GameSnapshot) -> bool:
    return not snapshot.current_turn.has_secret


def _needs_clue(snapshot: GameSnapshot) -> bool:
    return not snapshot.current_turn.has_clue


def _awaiting_guesses(snapshot: GameSnapshot) -> bool:
    return not snapshot.current_turn.is_completed


# Order matters: each guard assumes every guard above it returned False.
PHASE_GUARDS: tuple[tuple[Callable[[GameSnapshot], bool], Phase], ...] = (
    (_is_terminal, Phase.COMPLETED),
    (_is_lobby, Phase.LOBBY),
    (_needs_theme, Phase.SELECTING_THEME),
    (_needs_secret, Phase.GENERATING_SECRET),
    (_needs_clue, Phase.STORYTELLING),
    (_awaiting_guesses, Phase.GUESSING),
)


def derive_phase(snapshot: GameSnapshot) -> Phase:
    for guard, phase in PHASE_GUARDS:
        if guard(snapshot):
            return phase
    return Phase.SCORING


@dataclass(frozen=True)
class Roles:
    is_host: bool
    is_storyteller: bool
    is_member: bool
    has_guessed: bool
    can_start: bool
    can_guess: bool


def derive_roles(
    snapshot: GameSnapshot, player_id: str, *, min_players: int = 4
) -> Roles:
    """Host and storyteller are identity comparisons against session fields."""
    session = snapshot.session
    is_member = snapshot.player(player_id) is not None
    is_host = bool(player_id) and session.host_player_id == player_id
    is_storyteller = bool(player_id) and session.current_storyteller_id == player_id
    has_guessed = any(
        guess.player_id == player_id
        for guess in snapshot.guesses_for_round(session.current_round)
    )
    phase = derive_phase(snapshot)
    return Roles(
        is_host=is_host,
        is_storyteller=is_storyteller,
        is_member=is_member,
        has_guessed=has_guessed,
        can_start=is_host and phase is Phase.LOBBY and len(snapshot.players) >= min_players,
        can_guess=(
            is_member
            and not is_storyteller
            and not has_guessed
            and phase is Phase.GUESSING
        ),
    )


def round_is_resolved(snapshot: GameSnapshot, round_number: Optional[int] = None) -> bool:
    """True when every non-storyteller player has a guess for the round."""
    target = snapshot.session.current_round if round_number is None else round_number
    guessers = {
        player.player_id
        for player in snapshot.players
        if player.player_id != snapshot.session.current_storyteller_id
    }
    answered = {guess.player_id for guess in snapshot.guesses_for_round(target)}
    return bool(guessers) and guessers <= answered
