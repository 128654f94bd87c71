"""Game rules and constants for the Mafia room session."""

from enum import Enum


class Role(str, Enum):
    """Player roles in the game."""

    UNKNOWN = "unknown"
    CITIZEN = "citizen"
    MAFIA = "mafia"
    DON = "don"
    DOCTOR = "doctor"
    KOMISSAR = "komissar"


class Phase(str, Enum):
    """Current stage of a room's game loop."""

    LOBBY = "lobby"
    NIGHT = "night"
    DAY = "day"
    VOTE = "vote"
    ENDED = "ended"


class RoomStatus(str, Enum):
    """Coarse room lifecycle."""

    LOBBY = "lobby"
    PLAYING = "playing"
    ENDED = "ended"


class Winner(str, Enum):
    """Winning faction."""

    TOWN = "town"
    MAFIA = "mafia"


# Mafia and don share the kill slot and count as one faction
MAFIA_ALIGNED = frozenset({Role.MAFIA, Role.DON})

# Roles that submit a night action
NIGHT_ROLES = (Role.MAFIA, Role.DON, Role.DOCTOR, Role.KOMISSAR)

# Minimum players to start
MIN_PLAYERS = 4

# Phase duration bounds and defaults, seconds
MIN_PHASE_SEC = 10
MAX_PHASE_SEC = 300
DEFAULT_NIGHT_SEC = 60
DEFAULT_DAY_SEC = 60
DEFAULT_VOTE_SEC = 45

DEFAULT_AVATAR = "avatar_1"

ROOM_CODE_MIN = 100000
ROOM_CODE_MAX = 999999


def is_mafia_aligned(role: Role) -> bool:
    return role in MAFIA_ALIGNED


def clamp_duration(seconds: int) -> int:
    """Clamp a phase duration into the allowed range."""
    return max(MIN_PHASE_SEC, min(MAX_PHASE_SEC, int(seconds)))
