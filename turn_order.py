"""Turn-order arithmetic shared by the game service and its clients.

Players are passed around as mappings (sqlite rows or plain dicts) exposing
``player_id`` and ``turn_order``.
"""

from __future__ import annotations

import random
from typing import Iterable, Mapping, Sequence


def next_join_order(existing_orders: Iterable[int]) -> int:
    return max([int(order) for order in existing_orders] + [0]) + 1


def is_dense(orders: Iterable[int]) -> bool:
    values = sorted(int(order) for order in orders)
    return values == list(range(1, len(values) + 1))


def sort_by_turn_order(players: Iterable[Mapping]) -> list[Mapping]:
    return sorted(players, key=lambda player: (int(player["turn_order"]), str(player["player_id"])))


def renumber(player_ids: Sequence[str]) -> list[tuple[str, int]]:
    return [(player_id, index) for index, player_id in enumerate(player_ids, start=1)]


def shuffle_order(
    player_ids: Sequence[str], rng: random.Random | None = None
) -> list[tuple[str, int]]:
    """Fisher-Yates shuffle, then dense reassignment starting at 1."""
    rng = rng or random.Random()
    items = list(player_ids)
    for index in range(len(items) - 1, 0, -1):
        swap_index = rng.randint(0, index)
        items[index], items[swap_index] = items[swap_index], items[index]
    return renumber(items)


def move_player(
    ordered_ids: Sequence[str], player_id: str, new_position: int
) -> list[str]:
    """Remove ``player_id`` and reinsert it at the 1-based ``new_position``."""
    items = list(ordered_ids)
    if player_id not in items:
        raise ValueError("Player is not in the turn order.")
    items.remove(player_id)
    position = max(1, min(int(new_position), len(items) + 1))
    items.insert(position - 1, player_id)
    return items


def apply_updates(
    current: Mapping[str, int], updates: Iterable[Mapping]
) -> dict[str, int]:
    """Apply ``[{player_id, turn_order}]`` updates and require a dense result."""
    merged = {str(player_id): int(order) for player_id, order in current.items()}
    for update in updates:
        player_id = str(update.get("player_id") or update.get("playerId") or "")
        if player_id not in merged:
            raise ValueError(f"Unknown player in turn order update: {player_id or '?'}")
        raw_order = update.get("turn_order", update.get("turnOrder"))
        try:
            merged[player_id] = int(raw_order)
        except (TypeError, ValueError) as exc:
            raise ValueError("Turn order values must be integers.") from exc

    if not is_dense(merged.values()):
        raise ValueError("Turn order must be a permutation of 1..N.")
    return merged


def find_storyteller(players: Iterable[Mapping], target_order: int) -> Mapping | None:
    """Player holding ``target_order``; otherwise the next higher turn order.

    Rounds past the highest turn order cycle back through the table, so with
    four seats round 5 maps to order 1 and round 6 to order 2. Gaps appear
    when a player is removed without renumbering. When nobody sits at or above
    the target the lookup wraps to the lowest turn order so a round always has
    a storyteller.
    """
    ordered = sort_by_turn_order(players)
    if not ordered:
        return None
    max_order = max(int(player["turn_order"]) for player in ordered)
    target = int(target_order)
    if max_order > 0 and target > max_order:
        target = ((target - 1) % max_order) + 1
    for player in ordered:
        if int(player["turn_order"]) >= target:
            return player
    return ordered[0]
