from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping

POINTS_CORRECT_GUESS = 10
POINTS_STORYTELLER_PER_MISS = 1
TIMEOUT_GUESS_TEXT = "[TIMEOUT]"
CUSTOM_SECRET_PREFIX = "custom:"


@dataclass(frozen=True)
class GuessAward:
    correct: bool
    guesser_points: int
    storyteller_points: int


def strip_custom_prefix(secret: str) -> str:
    text = str(secret or "")
    if text.lower().startswith(CUSTOM_SECRET_PREFIX):
        return text[len(CUSTOM_SECRET_PREFIX):]
    return text


def normalize_guess(text: str) -> str:
    return re.sub(r"\s+", " ", str(text or "")).strip().casefold()


def is_correct_guess(guess: str, secret: str) -> bool:
    expected = normalize_guess(strip_custom_prefix(secret))
    if not expected:
        return False
    return normalize_guess(guess) == expected


def score_guess(guess: str, secret: str, *, timed_out: bool = False) -> GuessAward:
    """Correct guessers earn full points each; misses feed the storyteller."""
    if not timed_out and is_correct_guess(guess, secret):
        return GuessAward(True, POINTS_CORRECT_GUESS, 0)
    return GuessAward(False, 0, POINTS_STORYTELLER_PER_MISS)


def pick_winner(players: Iterable[Mapping]) -> Mapping | None:
    """Highest score wins; ties go to the lowest turn order."""
    best = None
    for player in players:
        if best is None:
            best = player
            continue
        score, best_score = int(player["score"]), int(best["score"])
        if score > best_score or (
            score == best_score and int(player["turn_order"]) < int(best["turn_order"])
        ):
            best = player
    return best


def standings(players: Iterable[Mapping]) -> list[dict]:
    ordered = sorted(
        players, key=lambda player: (-int(player["score"]), int(player["turn_order"]))
    )
    return [
        {
            "rank": index,
            "player_id": player["player_id"],
            "name": player["name"],
            "score": int(player["score"]),
        }
        for index, player in enumerate(ordered, start=1)
    ]
