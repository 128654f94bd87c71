"""Typed failures returned by room session operations."""


class MafiaError(Exception):
    """Base class for all game errors. Local to the requested operation."""


class InvalidPlayerCount(MafiaError):
    """Fewer than the minimum number of players at game start."""

    def __init__(self, count: int, minimum: int):
        super().__init__(f"At least {minimum} players required, got {count}")
        self.count = count
        self.minimum = minimum


class ActionAlreadySubmitted(MafiaError):
    """The player already submitted a night action or vote this cycle."""

    def __init__(self, player_id: str, kind: str):
        super().__init__(f"Player {player_id} already submitted a {kind} this cycle")
        self.player_id = player_id
        self.kind = kind


class UnknownEntity(MafiaError):
    """A room, room code or player id was not found."""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class ConcurrentResolutionLost(MafiaError):
    """Another caller already advanced this phase instance. Not user-facing."""


class InvalidAction(MafiaError):
    """The action is not allowed in the current room state."""


class NotRoomOwner(InvalidAction):
    """A host-only action was attempted by someone other than the room owner."""

    def __init__(self, player_id: str | None):
        super().__init__(f"Only the room owner can do this (caller: {player_id})")
        self.player_id = player_id
