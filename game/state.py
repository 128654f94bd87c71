"""Room and player record types."""

from dataclasses import dataclass, field
from typing import Optional

from game.rules import (
    DEFAULT_AVATAR,
    DEFAULT_DAY_SEC,
    DEFAULT_NIGHT_SEC,
    DEFAULT_VOTE_SEC,
    Phase,
    Role,
    RoomStatus,
    Winner,
    clamp_duration,
    is_mafia_aligned,
)


@dataclass(frozen=True)
class RoomSettings:
    """Phase durations in seconds."""

    night_sec: int = DEFAULT_NIGHT_SEC
    day_sec: int = DEFAULT_DAY_SEC
    vote_sec: int = DEFAULT_VOTE_SEC

    @classmethod
    def clamped(cls, night_sec: int, day_sec: int, vote_sec: int) -> "RoomSettings":
        return cls(
            night_sec=clamp_duration(night_sec),
            day_sec=clamp_duration(day_sec),
            vote_sec=clamp_duration(vote_sec),
        )

    def duration_ms(self, phase: Phase) -> int:
        seconds = {
            Phase.NIGHT: self.night_sec,
            Phase.DAY: self.day_sec,
            Phase.VOTE: self.vote_sec,
        }[phase]
        return seconds * 1000


@dataclass(frozen=True)
class NightState:
    """Night scratch for the current cycle, plus the audit of the last resolution."""

    kill_target_id: Optional[str] = None
    kill_by: Optional[str] = None
    save_target_id: Optional[str] = None
    save_by: Optional[str] = None
    check_target_id: Optional[str] = None
    check_by: Optional[str] = None
    submitted_kill: bool = False
    submitted_save: bool = False
    submitted_check: bool = False
    resolved_at_ms: Optional[int] = None
    last_killed_player_id: Optional[str] = None
    last_saved_player_id: Optional[str] = None


@dataclass(frozen=True)
class VoteState:
    """Vote scratch: voter id -> target id."""

    votes: dict[str, str] = field(default_factory=dict)
    resolved: bool = False
    started_at_ms: Optional[int] = None
    resolved_at_ms: Optional[int] = None
    eliminated_player_id: Optional[str] = None


@dataclass(frozen=True)
class CheckResult:
    """Komissar investigation outcome, stored on the komissar's record only."""

    target_player_id: str
    is_mafia: bool
    checked_at_ms: int


@dataclass(frozen=True)
class PlayerPrivate:
    last_check_result: Optional[CheckResult] = None


@dataclass(frozen=True)
class Player:
    """A player in a room."""

    id: str
    room_id: str
    nickname: str
    avatar: str = DEFAULT_AVATAR
    role: Role = Role.UNKNOWN
    is_alive: bool = True
    is_ready: bool = False
    is_connected: bool = True
    is_kicked: bool = False
    night_submitted: bool = False
    vote_submitted: bool = False
    joined_at_ms: int = 0
    last_seen_at_ms: int = 0
    private: PlayerPrivate = field(default_factory=PlayerPrivate)

    @property
    def is_mafia_aligned(self) -> bool:
        return is_mafia_aligned(self.role)


@dataclass(frozen=True)
class Room:
    """One game session."""

    id: str
    code: str
    owner_player_id: Optional[str] = None
    status: RoomStatus = RoomStatus.LOBBY
    phase: Phase = Phase.LOBBY
    day_number: int = 0
    phase_ends_at_ms: Optional[int] = None
    settings: RoomSettings = field(default_factory=RoomSettings)
    winner: Optional[Winner] = None
    night: NightState = field(default_factory=NightState)
    vote: VoteState = field(default_factory=VoteState)
    created_at_ms: int = 0
    started_at_ms: Optional[int] = None
    version: int = 0

    @property
    def phase_token(self) -> "PhaseToken":
        return PhaseToken(phase=self.phase, phase_ends_at_ms=self.phase_ends_at_ms)

    def is_expired(self, now_ms: int) -> bool:
        """True when the current timed phase's deadline has passed."""
        if self.status != RoomStatus.PLAYING or self.phase_ends_at_ms is None:
            return False
        return now_ms >= self.phase_ends_at_ms


@dataclass(frozen=True)
class PhaseToken:
    """Identity of one phase instance; used as the commit precondition."""

    phase: Phase
    phase_ends_at_ms: Optional[int]

    def as_fields(self) -> dict:
        return {"phase": self.phase, "phase_ends_at_ms": self.phase_ends_at_ms}


@dataclass(frozen=True)
class NightOutcome:
    """Result of resolving one night."""

    killed_player_id: Optional[str]
    saved_player_id: Optional[str]
    check_by: Optional[str]
    check_result: Optional[CheckResult]
    winner: Optional[Winner]
    next_phase: Phase


@dataclass(frozen=True)
class VoteOutcome:
    """Result of resolving one vote."""

    eliminated_player_id: Optional[str]
    tally: dict[str, int]
    winner: Optional[Winner]
    next_phase: Phase
