"""Game engine: pure rules, no storage.

Every function here takes records and returns new values; nothing is mutated.
The room session turns the results into store commits.
"""

import random
from collections import Counter
from dataclasses import replace
from typing import Optional

from game.errors import InvalidPlayerCount
from game.rules import MIN_PLAYERS, Phase, Role, Winner, is_mafia_aligned
from game.state import (
    CheckResult,
    NightOutcome,
    NightState,
    Player,
    VoteOutcome,
    VoteState,
)

# Phase entered after each transition that does not end the game
_NEXT_PHASE = {
    Phase.LOBBY: Phase.NIGHT,
    Phase.NIGHT: Phase.DAY,
    Phase.DAY: Phase.VOTE,
    Phase.VOTE: Phase.NIGHT,
}


def next_phase(current: Phase) -> Phase:
    """Return the phase that follows current in the cycle."""
    if current not in _NEXT_PHASE:
        raise ValueError(f"No phase follows {current.value}")
    return _NEXT_PHASE[current]


def mafia_count_for(count: int) -> int:
    if count >= 9:
        return 3
    if count >= 6:
        return 2
    return 1


def build_roles(count: int) -> list[Role]:
    """
    Role multiset for count players, unshuffled.
    1/2/3 mafia below 6 / below 9 / from 9, plus a don from 9; one komissar,
    one doctor, citizens for the rest.
    """
    if count < MIN_PLAYERS:
        raise InvalidPlayerCount(count, MIN_PLAYERS)
    roles: list[Role] = [Role.MAFIA] * mafia_count_for(count)
    if count >= 9:
        roles.append(Role.DON)
    roles.append(Role.KOMISSAR)
    roles.append(Role.DOCTOR)
    roles.extend([Role.CITIZEN] * (count - len(roles)))
    return roles


def assign_roles(
    player_ids: list[str],
    rng: Optional[random.Random] = None,
) -> dict[str, Role]:
    """
    Pair players with roles. The player order and the role list are shuffled
    independently, then zipped by index.
    """
    rng = rng or random.Random()
    roles = build_roles(len(player_ids))
    shuffled_players = list(player_ids)
    rng.shuffle(roles)
    rng.shuffle(shuffled_players)
    return dict(zip(shuffled_players, roles))


def mark_dead(players: list[Player], player_id: Optional[str]) -> list[Player]:
    """Return the roster with player_id dead. Already-dead players stay dead."""
    if player_id is None:
        return list(players)
    return [replace(p, is_alive=False) if p.id == player_id else p for p in players]


def count_alive(players: list[Player]) -> tuple[int, int]:
    """Return (alive mafia-aligned, alive town-aligned)."""
    alive = [p for p in players if p.is_alive]
    mafia_alive = sum(1 for p in alive if is_mafia_aligned(p.role))
    return mafia_alive, len(alive) - mafia_alive


def get_winner(players: list[Player]) -> Optional[Winner]:
    """Return the winning faction, or None while the game goes on. Mafia wins ties."""
    mafia_alive, town_alive = count_alive(players)
    if mafia_alive == 0:
        return Winner.TOWN
    if mafia_alive >= town_alive:
        return Winner.MAFIA
    return None


def is_game_over(players: list[Player]) -> bool:
    return get_winner(players) is not None


def resolve_night(
    night: NightState,
    players: list[Player],
    now_ms: int,
) -> NightOutcome:
    """
    Resolve night: komissar check, mafia kill unless the doctor saved that exact
    player, then win check on the post-death roster.
    """
    by_id = {p.id: p for p in players}

    check_result: Optional[CheckResult] = None
    check_by: Optional[str] = None
    if night.check_target_id and night.check_by and night.check_target_id in by_id:
        target = by_id[night.check_target_id]
        check_by = night.check_by
        check_result = CheckResult(
            target_player_id=target.id,
            is_mafia=is_mafia_aligned(target.role),
            checked_at_ms=now_ms,
        )

    killed_id: Optional[str] = None
    if night.kill_target_id and night.kill_target_id != night.save_target_id:
        if night.kill_target_id in by_id:
            killed_id = night.kill_target_id

    winner = get_winner(mark_dead(players, killed_id))
    return NightOutcome(
        killed_player_id=killed_id,
        saved_player_id=night.save_target_id,
        check_by=check_by,
        check_result=check_result,
        winner=winner,
        next_phase=Phase.ENDED if winner else next_phase(Phase.NIGHT),
    )


def tally_votes(votes: dict[str, str], players: list[Player]) -> dict[str, int]:
    """Count votes per target, ignoring votes from or toward anyone not alive."""
    alive_ids = {p.id for p in players if p.is_alive}
    return dict(
        Counter(
            target_id
            for voter_id, target_id in votes.items()
            if voter_id in alive_ids and target_id in alive_ids
        )
    )


def resolve_vote(vote: VoteState, players: list[Player]) -> VoteOutcome:
    """
    Resolve the day vote: a unique top target is eliminated; any tie at the top,
    including no votes at all, eliminates no one.
    """
    tally = tally_votes(vote.votes, players)
    max_votes = max(tally.values()) if tally else 0
    leaders = [tid for tid, c in tally.items() if c == max_votes]
    eliminated_id: Optional[str] = None
    if max_votes > 0 and len(leaders) == 1:
        eliminated_id = leaders[0]

    winner = get_winner(mark_dead(players, eliminated_id))
    return VoteOutcome(
        eliminated_player_id=eliminated_id,
        tally=tally,
        winner=winner,
        next_phase=Phase.ENDED if winner else next_phase(Phase.VOTE),
    )
