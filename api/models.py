"""Pydantic request/response models for the API."""

from pydantic import BaseModel, Field, field_validator

from game.rules import NIGHT_ROLES, Phase, Role, RoomStatus, Winner
from game.state import Player, Room

# Validation constants (no magic numbers in validation)
MAX_NICKNAME_LENGTH = 32
MAX_AVATAR_LENGTH = 64
ROOM_CODE_PATTERN = r"^\d{6}$"


class CreateRoomRequest(BaseModel):
    """Body for POST /rooms."""

    nickname: str = Field(..., min_length=1, max_length=MAX_NICKNAME_LENGTH)

    @field_validator("nickname")
    @classmethod
    def nickname_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("nickname must not be blank")
        return v


class JoinRoomRequest(CreateRoomRequest):
    """Body for POST /rooms/{id}/players."""


class RoomCreatedResponse(BaseModel):
    room_id: str
    code: str
    player_id: str


class RoomLookupResponse(BaseModel):
    room_id: str
    code: str
    status: RoomStatus


class ReadyRequest(BaseModel):
    is_ready: bool


class AvatarRequest(BaseModel):
    avatar: str = Field(..., min_length=1, max_length=MAX_AVATAR_LENGTH)


class PresenceRequest(BaseModel):
    is_connected: bool = True


class HostRequest(BaseModel):
    """Body for owner-only actions."""

    player_id: str


class KickRequest(HostRequest):
    target_player_id: str


class SettingsRequest(HostRequest):
    night_sec: int = Field(..., description="Clamped to the allowed phase range")
    day_sec: int
    vote_sec: int


class NightActionRequest(BaseModel):
    """Body for POST /rooms/{id}/night-action."""

    role: Role
    actor_player_id: str
    target_player_id: str

    @field_validator("role")
    @classmethod
    def role_acts_at_night(cls, v: Role) -> Role:
        if v not in NIGHT_ROLES:
            raise ValueError(f"role must be one of {[r.value for r in NIGHT_ROLES]}")
        return v


class VoteRequest(BaseModel):
    voter_player_id: str
    target_player_id: str


class SettingsPublic(BaseModel):
    night_sec: int
    day_sec: int
    vote_sec: int


class CheckResultPublic(BaseModel):
    target_player_id: str
    is_mafia: bool
    checked_at_ms: int


class PlayerPublic(BaseModel):
    """Player as shown to one viewer: role only where the viewer may know it."""

    id: str
    nickname: str
    avatar: str
    is_alive: bool
    is_ready: bool
    is_connected: bool
    is_kicked: bool
    is_owner: bool
    night_submitted: bool
    vote_submitted: bool
    role: Role | None = Field(default=None, description="Own role, dead players, mafia teammates, or everyone once ended")
    last_check_result: CheckResultPublic | None = Field(
        default=None, description="Only on the viewer's own entry"
    )


class RoomStatePublic(BaseModel):
    """Room projection for GET /rooms/{id}."""

    room_id: str
    code: str
    status: RoomStatus
    phase: Phase
    day_number: int
    phase_ends_at_ms: int | None
    owner_player_id: str | None
    settings: SettingsPublic
    winner: Winner | None = None
    viewer_id: str | None = None
    players: list[PlayerPublic]
    last_killed_player_id: str | None = None
    last_eliminated_player_id: str | None = None
    vote_resolved: bool = False
    my_vote_target_id: str | None = None


def _role_visible(viewer: Player | None, player: Player, room: Room) -> bool:
    if room.status == RoomStatus.ENDED or not player.is_alive:
        return True
    if viewer is None:
        return False
    if viewer.id == player.id:
        return True
    return viewer.is_mafia_aligned and player.is_mafia_aligned


def room_to_public(room: Room, players: list[Player], viewer_id: str | None = None) -> RoomStatePublic:
    """Build the projection of room + roster for viewer_id; hides what they may not see."""
    viewer = next((p for p in players if p.id == viewer_id), None)
    players_public = []
    for p in players:
        check = None
        if viewer is not None and p.id == viewer.id and p.private.last_check_result is not None:
            res = p.private.last_check_result
            check = CheckResultPublic(
                target_player_id=res.target_player_id,
                is_mafia=res.is_mafia,
                checked_at_ms=res.checked_at_ms,
            )
        players_public.append(
            PlayerPublic(
                id=p.id,
                nickname=p.nickname,
                avatar=p.avatar,
                is_alive=p.is_alive,
                is_ready=p.is_ready,
                is_connected=p.is_connected,
                is_kicked=p.is_kicked,
                is_owner=p.id == room.owner_player_id,
                night_submitted=p.night_submitted,
                vote_submitted=p.vote_submitted,
                role=p.role if _role_visible(viewer, p, room) else None,
                last_check_result=check,
            )
        )
    return RoomStatePublic(
        room_id=room.id,
        code=room.code,
        status=room.status,
        phase=room.phase,
        day_number=room.day_number,
        phase_ends_at_ms=room.phase_ends_at_ms,
        owner_player_id=room.owner_player_id,
        settings=SettingsPublic(
            night_sec=room.settings.night_sec,
            day_sec=room.settings.day_sec,
            vote_sec=room.settings.vote_sec,
        ),
        winner=room.winner,
        viewer_id=viewer.id if viewer else None,
        players=players_public,
        last_killed_player_id=room.night.last_killed_player_id,
        last_eliminated_player_id=room.vote.eliminated_player_id,
        vote_resolved=room.vote.resolved,
        my_vote_target_id=room.vote.votes.get(viewer.id) if viewer else None,
    )
