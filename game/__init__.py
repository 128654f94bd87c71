"""Game core for the Mafia room session."""

from game.engine import (
    assign_roles,
    build_roles,
    get_winner,
    is_game_over,
    resolve_night,
    resolve_vote,
    tally_votes,
)
from game.errors import (
    ActionAlreadySubmitted,
    ConcurrentResolutionLost,
    InvalidAction,
    InvalidPlayerCount,
    MafiaError,
    NotRoomOwner,
    UnknownEntity,
)
from game.rules import Phase, Role, RoomStatus, Winner
from game.scheduler import PhaseScheduler
from game.session import RoomSession
from game.state import CheckResult, NightState, Player, Room, RoomSettings, VoteState
from game.store import RoomStore

__all__ = [
    "assign_roles",
    "build_roles",
    "get_winner",
    "is_game_over",
    "resolve_night",
    "resolve_vote",
    "tally_votes",
    "ActionAlreadySubmitted",
    "ConcurrentResolutionLost",
    "InvalidAction",
    "InvalidPlayerCount",
    "MafiaError",
    "NotRoomOwner",
    "UnknownEntity",
    "Phase",
    "Role",
    "RoomStatus",
    "Winner",
    "PhaseScheduler",
    "RoomSession",
    "CheckResult",
    "NightState",
    "Player",
    "Room",
    "RoomSettings",
    "VoteState",
    "RoomStore",
]
