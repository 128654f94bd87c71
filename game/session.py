"""Room session: lobby setup, game loop and phase transitions over the store.

Every mutation is one conditional batch commit. Transitions are guarded by the
phase token (phase + deadline) they were computed from, so two callers racing
to resolve the same phase produce one resolution and one ConcurrentResolutionLost.
"""

import logging
import random
import time
import uuid
from typing import Callable, Optional

from game import engine
from game.errors import (
    ActionAlreadySubmitted,
    ConcurrentResolutionLost,
    InvalidAction,
    InvalidPlayerCount,
    NotRoomOwner,
    UnknownEntity,
)
from game.rules import (
    DEFAULT_AVATAR,
    MIN_PLAYERS,
    NIGHT_ROLES,
    ROOM_CODE_MAX,
    ROOM_CODE_MIN,
    Phase,
    Role,
    RoomStatus,
)
from game.state import (
    NightOutcome,
    NightState,
    PhaseToken,
    Player,
    PlayerPrivate,
    Room,
    RoomSettings,
    VoteOutcome,
    VoteState,
)
from game.store import PreconditionFailed, RoomStore, Subscriber

logger = logging.getLogger(__name__)

Clock = Callable[[], int]

# night_* scratch keys per role; mafia and don share the kill slot
_NIGHT_SLOTS = {
    Role.MAFIA: ("kill_target_id", "kill_by", "submitted_kill"),
    Role.DON: ("kill_target_id", "kill_by", "submitted_kill"),
    Role.DOCTOR: ("save_target_id", "save_by", "submitted_save"),
    Role.KOMISSAR: ("check_target_id", "check_by", "submitted_check"),
}

_CODE_ATTEMPTS = 50
_START_ATTEMPTS = 3
_RESOLVE_ATTEMPTS = 3


class _ScratchChanged(Exception):
    """A submission changed the night/vote scratch while its phase was still current."""

    def __init__(self, token: PhaseToken):
        super().__init__(f"scratch changed during {token.phase.value}")
        self.token = token


def now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return uuid.uuid4().hex


class RoomSession:
    """Operations on rooms held in a RoomStore."""

    def __init__(
        self,
        store: RoomStore,
        clock: Clock = now_ms,
        rng: Optional[random.Random] = None,
        default_settings: Optional[RoomSettings] = None,
    ):
        self.store = store
        self.clock = clock
        self.rng = rng or random.Random()
        self.default_settings = default_settings or RoomSettings()

    # ---------- helpers ----------

    def _require_owner(self, room: Room, player_id: Optional[str]) -> None:
        if player_id is None or room.owner_player_id != player_id:
            raise NotRoomOwner(player_id)

    def _require_lobby(self, room: Room) -> None:
        if room.status != RoomStatus.LOBBY:
            raise InvalidAction("Room is not in the lobby")

    def _require_phase(self, room: Room, phase: Phase) -> None:
        if room.status != RoomStatus.PLAYING or room.phase != phase:
            raise InvalidAction(f"Not allowed outside the {phase.value} phase (phase is {room.phase.value})")

    def _check_token(self, room: Room, expected: Optional[PhaseToken]) -> None:
        if expected is not None and room.phase_token != expected:
            raise ConcurrentResolutionLost(
                f"Room {room.id} already left {expected.phase.value} ending at {expected.phase_ends_at_ms}"
            )

    def _commit_transition(self, room: Room, batch, scratch: Optional[str] = None) -> None:
        try:
            self.store.commit(batch)
        except PreconditionFailed as e:
            if scratch is not None and e.path == scratch:
                raise _ScratchChanged(room.phase_token) from e
            raise ConcurrentResolutionLost(f"Room {room.id}: {e}") from e

    def _resolve_with_retry(self, resolve_once, room_id, requested_by, expected):
        # The token is expected before the scratch, so a scratch conflict means
        # the phase is still current; retry pinned to that same token.
        for _ in range(_RESOLVE_ATTEMPTS):
            try:
                return resolve_once(room_id, requested_by, expected)
            except _ScratchChanged as e:
                logger.debug("Submission landed while resolving room %s, resolving again", room_id)
                expected = e.token
        raise ConcurrentResolutionLost(f"Room {room_id}: submissions kept changing during resolution")

    def _generate_code(self) -> str:
        for _ in range(_CODE_ATTEMPTS):
            code = str(self.rng.randint(ROOM_CODE_MIN, ROOM_CODE_MAX))
            if not self.store.code_in_use(code):
                return code
        raise RuntimeError("Could not find a free room code")

    def _new_player(self, room_id: str, nickname: str) -> Player:
        ts = self.clock()
        return Player(
            id=_new_id(),
            room_id=room_id,
            nickname=nickname,
            avatar=DEFAULT_AVATAR,
            joined_at_ms=ts,
            last_seen_at_ms=ts,
        )

    # ---------- reads ----------

    def get_room(self, room_id: str) -> Room:
        return self.store.get_room(room_id)

    def find_room_by_code(self, code: str) -> Room:
        return self.store.find_room_by_code(code.strip())

    def view(self, room_id: str) -> tuple[Room, list[Player]]:
        """Current room and roster, for rendering."""
        return self.store.snapshot(room_id)

    def subscribe(self, room_id: str, callback: Subscriber) -> Callable[[], None]:
        return self.store.subscribe(room_id, callback)

    # ---------- lobby ----------

    def create_room(self, nickname: str) -> tuple[Room, Player]:
        """Create a room in the lobby; the creator becomes its owner."""
        room_id = _new_id()
        owner = self._new_player(room_id, nickname)
        while True:
            try:
                self.store.create_room(
                    Room(
                        id=room_id,
                        code=self._generate_code(),
                        owner_player_id=owner.id,
                        settings=self.default_settings,
                        created_at_ms=owner.joined_at_ms,
                    ),
                    owner,
                )
                break
            except ValueError:
                # code taken between the check and the insert
                continue
        room = self.store.get_room(room_id)
        logger.info("Room %s created with code %s by %s", room_id, room.code, owner.id)
        return room, self.store.get_player(room_id, owner.id)

    def join_room(self, room_id: str, nickname: str) -> Player:
        room = self.store.get_room(room_id)
        self._require_lobby(room)
        player = self._new_player(room_id, nickname)
        self.store.create_player(player)
        logger.debug("Player %s joined room %s", player.id, room_id)
        return self.store.get_player(room_id, player.id)

    def leave_room(self, room_id: str, player_id: str) -> None:
        """In the lobby a non-owner is removed; otherwise the player goes offline."""
        room = self.store.get_room(room_id)
        self.store.get_player(room_id, player_id)
        batch = self.store.batch()
        if room.status == RoomStatus.LOBBY and player_id != room.owner_player_id:
            batch.expect_room(room_id, status=RoomStatus.LOBBY).delete_player(room_id, player_id)
        else:
            batch.update_player(
                room_id, player_id, {"is_connected": False, "last_seen_at_ms": self.clock()}
            )
        try:
            self.store.commit(batch)
        except PreconditionFailed:
            # game started meanwhile; fall back to going offline
            self.set_connection(room_id, player_id, False)

    def kick_player(self, room_id: str, requested_by: str, target_player_id: str) -> None:
        room = self.store.get_room(room_id)
        self._require_owner(room, requested_by)
        self._require_lobby(room)
        if target_player_id == requested_by:
            raise InvalidAction("The owner cannot kick themselves")
        self.store.get_player(room_id, target_player_id)
        self._commit_lobby(
            room_id,
            self.store.batch().update_player(
                room_id, target_player_id, {"is_kicked": True, "is_connected": False, "is_ready": False}
            ),
        )
        logger.info("Player %s kicked from room %s", target_player_id, room_id)

    def set_ready(self, room_id: str, player_id: str, is_ready: bool) -> Player:
        self._lobby_player_update(room_id, player_id, {"is_ready": bool(is_ready)})
        return self.store.get_player(room_id, player_id)

    def set_avatar(self, room_id: str, player_id: str, avatar: str) -> Player:
        self._lobby_player_update(room_id, player_id, {"avatar": avatar})
        return self.store.get_player(room_id, player_id)

    def set_connection(self, room_id: str, player_id: str, is_connected: bool) -> Player:
        """Presence heartbeat."""
        self.store.get_player(room_id, player_id)
        self.store.commit(
            self.store.batch().update_player(
                room_id,
                player_id,
                {"is_connected": bool(is_connected), "last_seen_at_ms": self.clock()},
            )
        )
        return self.store.get_player(room_id, player_id)

    def update_settings(
        self,
        room_id: str,
        requested_by: str,
        night_sec: int,
        day_sec: int,
        vote_sec: int,
    ) -> RoomSettings:
        room = self.store.get_room(room_id)
        self._require_owner(room, requested_by)
        self._require_lobby(room)
        settings = RoomSettings.clamped(night_sec, day_sec, vote_sec)
        self._commit_lobby(room_id, self.store.batch().update_room(room_id, {"settings": settings}))
        return settings

    def _lobby_player_update(self, room_id: str, player_id: str, updates: dict) -> None:
        room = self.store.get_room(room_id)
        self._require_lobby(room)
        player = self.store.get_player(room_id, player_id)
        if player.is_kicked:
            raise InvalidAction("Player was kicked")
        self._commit_lobby(room_id, self.store.batch().update_player(room_id, player_id, updates))

    def _commit_lobby(self, room_id: str, batch) -> None:
        try:
            self.store.commit(batch.expect_room(room_id, status=RoomStatus.LOBBY))
        except PreconditionFailed as e:
            raise InvalidAction("Room is not in the lobby") from e

    # ---------- game loop ----------

    def start_game(self, room_id: str, requested_by: Optional[str] = None) -> Room:
        """
        Assign roles and enter the first night.
        Needs at least MIN_PLAYERS non-kicked players, all ready.

        The commit only depends on the lobby status, the settings, the roster and
        each participant's ready flag, so presence or avatar writes do not disturb
        it. If the roster or a ready flag moved, the lobby is validated again.
        """
        for attempt in range(_START_ATTEMPTS):
            room, players = self.store.snapshot(room_id)
            if attempt and room.status != RoomStatus.LOBBY:
                raise ConcurrentResolutionLost(f"Room {room_id} was started concurrently")
            if requested_by is not None:
                self._require_owner(room, requested_by)
            self._require_lobby(room)
            participants = [p for p in players if not p.is_kicked]
            if len(participants) < MIN_PLAYERS:
                raise InvalidPlayerCount(len(participants), MIN_PLAYERS)
            not_ready = [p.id for p in participants if not p.is_ready]
            if not_ready:
                raise InvalidAction(f"Not every player is ready: {', '.join(not_ready)}")

            try:
                self.store.commit(self._start_batch(room, players, participants))
            except PreconditionFailed as e:
                if e.path == "status":
                    raise ConcurrentResolutionLost(f"Room {room_id}: {e}") from e
                logger.debug("Lobby of room %s changed during start, checking again: %s", room_id, e)
                continue
            logger.info("Game started in room %s with %d players", room_id, len(participants))
            return self.store.get_room(room_id)
        raise ConcurrentResolutionLost(f"Room {room_id}: lobby kept changing during start")

    def _start_batch(self, room: Room, players: list[Player], participants: list[Player]):
        room_id = room.id
        roles = engine.assign_roles([p.id for p in participants], self.rng)
        ts = self.clock()
        batch = (
            self.store.batch()
            .expect_room(room_id, status=RoomStatus.LOBBY, settings=room.settings)
            .expect_roster(room_id, [p.id for p in players])
        )
        for p in players:
            if p.is_kicked:
                batch.delete_player(room_id, p.id)
                continue
            batch.expect_player(room_id, p.id, is_ready=True, is_kicked=False).update_player(
                room_id,
                p.id,
                {
                    "role": roles[p.id],
                    "is_alive": True,
                    "is_ready": False,
                    "night_submitted": False,
                    "vote_submitted": False,
                    "private": PlayerPrivate(),
                },
            )
        batch.update_room(
            room_id,
            {
                "status": RoomStatus.PLAYING,
                "phase": Phase.NIGHT,
                "day_number": 0,
                "started_at_ms": ts,
                "night": NightState(),
                "vote": VoteState(),
                "winner": None,
                "phase_ends_at_ms": ts + room.settings.duration_ms(Phase.NIGHT),
            },
        )
        return batch

    def submit_night_action(
        self,
        room_id: str,
        role: Role | str,
        actor_player_id: str,
        target_player_id: str,
    ) -> None:
        """Record one night action. Mafia and don overwrite each other's kill target."""
        try:
            role = Role(role)
        except ValueError as e:
            raise InvalidAction(f"Unknown role: {role}") from e
        if role not in NIGHT_ROLES:
            raise InvalidAction(f"Role {role.value} has no night action")

        room, players = self.store.snapshot(room_id)
        self._require_phase(room, Phase.NIGHT)
        by_id = {p.id: p for p in players}
        actor = by_id.get(actor_player_id)
        if actor is None:
            raise UnknownEntity("player", actor_player_id)
        target = by_id.get(target_player_id)
        if target is None:
            raise UnknownEntity("player", target_player_id)
        if not actor.is_alive:
            raise InvalidAction("Dead players cannot act")
        if actor.role != role:
            raise InvalidAction(f"Player does not hold the {role.value} role")
        if not target.is_alive:
            raise InvalidAction("Target is not alive")
        if actor.night_submitted:
            raise ActionAlreadySubmitted(actor_player_id, "night action")

        target_key, by_key, flag_key = _NIGHT_SLOTS[role]
        batch = (
            self.store.batch()
            .expect_player(room_id, actor_player_id, night_submitted=False)
            .expect_room(room_id, status=RoomStatus.PLAYING, **room.phase_token.as_fields())
            .update_player(room_id, actor_player_id, {"night_submitted": True})
            .update_room(
                room_id,
                {
                    f"night.{target_key}": target_player_id,
                    f"night.{by_key}": actor_player_id,
                    f"night.{flag_key}": True,
                },
            )
        )
        try:
            self.store.commit(batch)
        except PreconditionFailed as e:
            if e.path == "night_submitted":
                raise ActionAlreadySubmitted(actor_player_id, "night action") from e
            raise InvalidAction("The night is already over") from e
        logger.debug("Night action in room %s: %s by %s", room_id, role.value, actor_player_id)

    def resolve_night(
        self,
        room_id: str,
        requested_by: Optional[str] = None,
        expected: Optional[PhaseToken] = None,
    ) -> NightOutcome:
        """
        Resolve the current night and commit day (or the end of the game).
        A night action landing mid-resolution makes it start over within the same night.
        """
        return self._resolve_with_retry(self._resolve_night_once, room_id, requested_by, expected)

    def _resolve_night_once(
        self, room_id: str, requested_by: Optional[str], expected: Optional[PhaseToken]
    ) -> NightOutcome:
        room, players = self.store.snapshot(room_id)
        if requested_by is not None:
            self._require_owner(room, requested_by)
        self._check_token(room, expected)
        self._require_phase(room, Phase.NIGHT)

        ts = self.clock()
        outcome = engine.resolve_night(room.night, players, ts)
        audit = NightState(
            resolved_at_ms=ts,
            last_killed_player_id=outcome.killed_player_id,
            last_saved_player_id=outcome.saved_player_id,
        )

        batch = self.store.batch().expect_room(
            room_id,
            status=RoomStatus.PLAYING,
            **room.phase_token.as_fields(),
            night=room.night,
        )
        for p in players:
            updates: dict = {"night_submitted": False}
            if p.id == outcome.killed_player_id:
                updates["is_alive"] = False
            if outcome.check_result is not None and p.id == outcome.check_by:
                updates["private.last_check_result"] = outcome.check_result
            batch.update_player(room_id, p.id, updates)

        if outcome.winner:
            batch.update_room(room_id, self._ended_fields(outcome.winner) | {"night": audit})
        else:
            batch.update_room(
                room_id,
                {
                    "phase": Phase.DAY,
                    "phase_ends_at_ms": ts + room.settings.duration_ms(Phase.DAY),
                    "day_number": room.day_number + 1,
                    "night": audit,
                    "vote": VoteState(),
                },
            )
        self._commit_transition(room, batch, scratch="night")
        logger.info(
            "Night resolved in room %s: killed=%s saved=%s winner=%s",
            room_id,
            outcome.killed_player_id,
            outcome.saved_player_id,
            outcome.winner.value if outcome.winner else None,
        )
        return outcome

    def start_vote(
        self,
        room_id: str,
        requested_by: Optional[str] = None,
        expected: Optional[PhaseToken] = None,
    ) -> Room:
        """Close the day discussion and open the vote."""
        room = self.store.get_room(room_id)
        if requested_by is not None:
            self._require_owner(room, requested_by)
        self._check_token(room, expected)
        self._require_phase(room, Phase.DAY)

        ts = self.clock()
        batch = (
            self.store.batch()
            .expect_room(room_id, status=RoomStatus.PLAYING, **room.phase_token.as_fields())
            .update_room(
                room_id,
                {
                    "phase": Phase.VOTE,
                    "phase_ends_at_ms": ts + room.settings.duration_ms(Phase.VOTE),
                    "vote": VoteState(started_at_ms=ts),
                },
            )
        )
        self._commit_transition(room, batch)
        logger.info("Vote started in room %s (day %d)", room_id, room.day_number)
        return self.store.get_room(room_id)

    def submit_vote(self, room_id: str, voter_player_id: str, target_player_id: str) -> None:
        """Record one vote. Alive voters and targets only, one vote per cycle."""
        room, players = self.store.snapshot(room_id)
        self._require_phase(room, Phase.VOTE)
        by_id = {p.id: p for p in players}
        voter = by_id.get(voter_player_id)
        if voter is None:
            raise UnknownEntity("player", voter_player_id)
        target = by_id.get(target_player_id)
        if target is None:
            raise UnknownEntity("player", target_player_id)
        if not voter.is_alive:
            raise InvalidAction("Dead players cannot vote")
        if not target.is_alive:
            raise InvalidAction("Target is not alive")
        if voter.vote_submitted:
            raise ActionAlreadySubmitted(voter_player_id, "vote")

        batch = (
            self.store.batch()
            .expect_player(room_id, voter_player_id, vote_submitted=False)
            .expect_room(room_id, status=RoomStatus.PLAYING, **room.phase_token.as_fields())
            .update_player(room_id, voter_player_id, {"vote_submitted": True})
            .update_room(room_id, {f"vote.votes.{voter_player_id}": target_player_id})
        )
        try:
            self.store.commit(batch)
        except PreconditionFailed as e:
            if e.path == "vote_submitted":
                raise ActionAlreadySubmitted(voter_player_id, "vote") from e
            raise InvalidAction("The vote is already over") from e
        logger.debug("Vote in room %s: %s -> %s", room_id, voter_player_id, target_player_id)

    def resolve_vote(
        self,
        room_id: str,
        requested_by: Optional[str] = None,
        expected: Optional[PhaseToken] = None,
    ) -> VoteOutcome:
        """Tally the vote and commit the next night (or the end of the game)."""
        return self._resolve_with_retry(self._resolve_vote_once, room_id, requested_by, expected)

    def _resolve_vote_once(
        self, room_id: str, requested_by: Optional[str], expected: Optional[PhaseToken]
    ) -> VoteOutcome:
        room, players = self.store.snapshot(room_id)
        if requested_by is not None:
            self._require_owner(room, requested_by)
        self._check_token(room, expected)
        self._require_phase(room, Phase.VOTE)

        ts = self.clock()
        outcome = engine.resolve_vote(room.vote, players)

        batch = self.store.batch().expect_room(
            room_id,
            status=RoomStatus.PLAYING,
            **room.phase_token.as_fields(),
            vote=room.vote,
        )
        for p in players:
            updates: dict = {"vote_submitted": False}
            if p.id == outcome.eliminated_player_id:
                updates["is_alive"] = False
            batch.update_player(room_id, p.id, updates)

        audit = {
            "vote.resolved": True,
            "vote.resolved_at_ms": ts,
            "vote.eliminated_player_id": outcome.eliminated_player_id,
        }
        if outcome.winner:
            batch.update_room(room_id, self._ended_fields(outcome.winner) | audit)
        else:
            batch.update_room(
                room_id,
                {
                    "phase": Phase.NIGHT,
                    "phase_ends_at_ms": ts + room.settings.duration_ms(Phase.NIGHT),
                    "night": NightState(),
                }
                | audit,
            )
        self._commit_transition(room, batch, scratch="vote")
        logger.info(
            "Vote resolved in room %s: eliminated=%s tally=%s winner=%s",
            room_id,
            outcome.eliminated_player_id,
            outcome.tally,
            outcome.winner.value if outcome.winner else None,
        )
        return outcome

    @staticmethod
    def _ended_fields(winner) -> dict:
        return {
            "status": RoomStatus.ENDED,
            "phase": Phase.ENDED,
            "phase_ends_at_ms": None,
            "winner": winner,
        }
