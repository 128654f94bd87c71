"""Room session tests: lobby, game loop and exactly-once guards."""

import random
from collections import Counter

import pytest

from game.errors import (
    ActionAlreadySubmitted,
    ConcurrentResolutionLost,
    InvalidAction,
    InvalidPlayerCount,
    NotRoomOwner,
    UnknownEntity,
)
from game.rules import MAFIA_ALIGNED, Phase, Role, RoomStatus, Winner
from game.session import RoomSession
from game.state import PlayerPrivate, RoomSettings
from game.store import RoomStore


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class HookClock(FakeClock):
    """Runs hook once, the first time the session reads the time."""

    def __init__(self, hook, now: int = 1_000_000):
        super().__init__(now)
        self.hook = hook

    def __call__(self) -> int:
        hook, self.hook = self.hook, None
        if hook is not None:
            hook()
        return self.now


def _lobby(num_players: int, ready: bool = True, seed: int = 7):
    clock = FakeClock()
    session = RoomSession(RoomStore(), clock=clock, rng=random.Random(seed))
    room, owner = session.create_room("Owner")
    ids = [owner.id]
    for i in range(num_players - 1):
        ids.append(session.join_room(room.id, f"P{i + 2}").id)
    if ready:
        for pid in ids:
            session.set_ready(room.id, pid, True)
    return session, clock, room.id, ids


def _by_role(session: RoomSession, room_id: str) -> dict[Role, list[str]]:
    roles: dict[Role, list[str]] = {}
    for p in session.store.list_players(room_id):
        roles.setdefault(p.role, []).append(p.id)
    return roles


def _started(num_players: int = 5, seed: int = 7):
    session, clock, room_id, ids = _lobby(num_players, seed=seed)
    session.start_game(room_id, requested_by=ids[0])
    return session, clock, room_id, ids, _by_role(session, room_id)


def _alive(session: RoomSession, room_id: str, player_id: str) -> bool:
    return session.store.get_player(room_id, player_id).is_alive


# ---------- lobby ----------


def test_create_room():
    session, _, room_id, ids = _lobby(1, ready=False)
    room = session.get_room(room_id)
    assert room.status == RoomStatus.LOBBY
    assert room.phase == Phase.LOBBY
    assert room.owner_player_id == ids[0]
    assert len(room.code) == 6 and room.code.isdigit()
    assert session.find_room_by_code(room.code).id == room_id
    owner = session.store.get_player(room_id, ids[0])
    assert owner.role == Role.UNKNOWN
    assert owner.avatar == "avatar_1"


def test_room_is_created_with_its_owner():
    seen = []

    class RecordingStore(RoomStore):
        def create_room(self, room, owner=None):
            super().create_room(room, owner)
            seen.append((self.get_room(room.id).owner_player_id, [p.id for p in self.list_players(room.id)]))

    session = RoomSession(RecordingStore(), clock=FakeClock())
    room, owner = session.create_room("Owner")
    assert seen == [(owner.id, [owner.id])]
    assert room.owner_player_id == owner.id


def test_room_codes_do_not_collide():
    session = RoomSession(RoomStore(), rng=random.Random(1))
    codes = {session.create_room(f"o{i}")[0].code for i in range(50)}
    assert len(codes) == 50


def test_find_room_by_unknown_code():
    session, _, _, _ = _lobby(1, ready=False)
    with pytest.raises(UnknownEntity):
        session.find_room_by_code("000001")


def test_join_after_start_rejected():
    session, _, room_id, _, _ = _started()
    with pytest.raises(InvalidAction):
        session.join_room(room_id, "Late")


def test_leave_lobby_removes_player():
    session, _, room_id, ids = _lobby(3, ready=False)
    session.leave_room(room_id, ids[1])
    assert [p.id for p in session.store.list_players(room_id)] == [ids[0], ids[2]]


def test_owner_leaving_only_goes_offline():
    session, _, room_id, ids = _lobby(3, ready=False)
    session.leave_room(room_id, ids[0])
    owner = session.store.get_player(room_id, ids[0])
    assert owner.is_connected is False
    assert session.get_room(room_id).owner_player_id == ids[0]


def test_kick_is_owner_only():
    session, _, room_id, ids = _lobby(4, ready=False)
    with pytest.raises(NotRoomOwner):
        session.kick_player(room_id, ids[1], ids[2])
    with pytest.raises(InvalidAction):
        session.kick_player(room_id, ids[0], ids[0])
    session.kick_player(room_id, ids[0], ids[2])
    kicked = session.store.get_player(room_id, ids[2])
    assert kicked.is_kicked and not kicked.is_connected


def test_kicked_players_do_not_count_or_play():
    session, _, room_id, ids = _lobby(5)
    session.kick_player(room_id, ids[0], ids[4])
    session.start_game(room_id, requested_by=ids[0])
    players = session.store.list_players(room_id)
    assert [p.id for p in players] == ids[:4]
    assert all(p.role != Role.UNKNOWN for p in players)


def test_update_settings_clamps():
    session, _, room_id, ids = _lobby(1, ready=False)
    settings = session.update_settings(room_id, ids[0], night_sec=5, day_sec=1000, vote_sec=30)
    assert settings == RoomSettings(night_sec=10, day_sec=300, vote_sec=30)
    assert session.get_room(room_id).settings == settings
    with pytest.raises(NotRoomOwner):
        session.update_settings(room_id, "someone", 60, 60, 60)


def test_set_avatar_and_presence():
    session, clock, room_id, ids = _lobby(2, ready=False)
    assert session.set_avatar(room_id, ids[1], "avatar_7").avatar == "avatar_7"
    clock.advance(5)
    p = session.set_connection(room_id, ids[1], False)
    assert p.is_connected is False
    assert p.last_seen_at_ms == clock.now


# ---------- start ----------


def test_start_game_requires_four_players():
    session, _, room_id, ids = _lobby(3)
    with pytest.raises(InvalidPlayerCount):
        session.start_game(room_id, requested_by=ids[0])
    assert session.get_room(room_id).status == RoomStatus.LOBBY


def test_start_game_requires_everyone_ready():
    session, _, room_id, ids = _lobby(4, ready=False)
    for pid in ids[:3]:
        session.set_ready(room_id, pid, True)
    with pytest.raises(InvalidAction):
        session.start_game(room_id, requested_by=ids[0])


def test_start_game_owner_only():
    session, _, room_id, ids = _lobby(4)
    with pytest.raises(NotRoomOwner):
        session.start_game(room_id, requested_by=ids[1])


def test_start_game_enters_first_night():
    session, clock, room_id, ids, roles = _started()
    room = session.get_room(room_id)
    assert room.status == RoomStatus.PLAYING
    assert room.phase == Phase.NIGHT
    assert room.day_number == 0
    assert room.phase_ends_at_ms == clock.now + 60_000
    players = session.store.list_players(room_id)
    assert all(p.role != Role.UNKNOWN for p in players)
    assert all(p.is_alive and not p.is_ready for p in players)


def test_start_game_nine_players_role_multiset():
    session, _, room_id, _, roles = _started(9)
    counts = Counter(p.role for p in session.store.list_players(room_id))
    assert counts == {Role.MAFIA: 3, Role.DON: 1, Role.KOMISSAR: 1, Role.DOCTOR: 1, Role.CITIZEN: 3}


def test_second_start_rejected():
    session, _, room_id, ids, _ = _started()
    with pytest.raises(InvalidAction):
        session.start_game(room_id, requested_by=ids[0])


# ---------- night ----------


def test_night_submission_exactly_once():
    session, _, room_id, _, roles = _started()
    mafia = roles[Role.MAFIA][0]
    c1, c2 = roles[Role.CITIZEN]
    session.submit_night_action(room_id, Role.MAFIA, mafia, c1)
    with pytest.raises(ActionAlreadySubmitted):
        session.submit_night_action(room_id, Role.MAFIA, mafia, c2)
    room = session.get_room(room_id)
    assert room.night.kill_target_id == c1
    assert room.night.kill_by == mafia
    assert room.night.submitted_kill is True
    assert session.store.get_player(room_id, mafia).night_submitted is True


def test_night_action_role_must_match():
    session, _, room_id, _, roles = _started()
    citizen = roles[Role.CITIZEN][0]
    doctor = roles[Role.DOCTOR][0]
    with pytest.raises(InvalidAction):
        session.submit_night_action(room_id, Role.CITIZEN, citizen, doctor)
    with pytest.raises(InvalidAction):
        session.submit_night_action(room_id, Role.MAFIA, doctor, citizen)
    with pytest.raises(InvalidAction):
        session.submit_night_action(room_id, "sheriff", doctor, citizen)
    with pytest.raises(UnknownEntity):
        session.submit_night_action(room_id, Role.DOCTOR, doctor, "ghost")


def test_night_action_outside_night_rejected():
    session, _, room_id, ids, roles = _started()
    session.resolve_night(room_id, requested_by=ids[0])
    with pytest.raises(InvalidAction):
        session.submit_night_action(room_id, Role.DOCTOR, roles[Role.DOCTOR][0], roles[Role.CITIZEN][0])


def test_mafia_and_don_share_kill_slot_last_writer_wins():
    session, _, room_id, _, roles = _started(9)
    mafia = roles[Role.MAFIA][0]
    don = roles[Role.DON][0]
    c1, c2 = roles[Role.CITIZEN][:2]
    session.submit_night_action(room_id, Role.MAFIA, mafia, c1)
    session.submit_night_action(room_id, "don", don, c2)
    night = session.get_room(room_id).night
    assert night.kill_target_id == c2
    assert night.kill_by == don


def test_scenario_doctor_saves_mafia_target():
    session, _, room_id, ids, roles = _started()
    target = roles[Role.CITIZEN][0]
    session.submit_night_action(room_id, Role.MAFIA, roles[Role.MAFIA][0], target)
    session.submit_night_action(room_id, Role.DOCTOR, roles[Role.DOCTOR][0], target)
    outcome = session.resolve_night(room_id, requested_by=ids[0])
    room = session.get_room(room_id)
    assert outcome.killed_player_id is None
    assert room.phase == Phase.DAY
    assert room.day_number == 1
    assert room.night.last_killed_player_id is None
    assert room.night.last_saved_player_id == target
    assert _alive(session, room_id, target)


def test_scenario_doctor_saves_someone_else():
    session, clock, room_id, ids, roles = _started()
    target, other = roles[Role.CITIZEN]
    session.submit_night_action(room_id, Role.MAFIA, roles[Role.MAFIA][0], target)
    session.submit_night_action(room_id, Role.DOCTOR, roles[Role.DOCTOR][0], other)
    session.resolve_night(room_id)
    room = session.get_room(room_id)
    assert room.phase == Phase.DAY
    assert room.phase_ends_at_ms == clock.now + 60_000
    assert room.night.last_killed_player_id == target
    assert not _alive(session, room_id, target)


def test_night_resolution_resets_flags_and_scratch():
    session, _, room_id, _, roles = _started()
    doctor = roles[Role.DOCTOR][0]
    session.submit_night_action(room_id, Role.DOCTOR, doctor, doctor)
    session.resolve_night(room_id)
    players = session.store.list_players(room_id)
    assert not any(p.night_submitted for p in players)
    night = session.get_room(room_id).night
    assert night.save_target_id is None and not night.submitted_save


def test_komissar_result_only_on_komissar_record():
    session, _, room_id, _, roles = _started()
    komissar = roles[Role.KOMISSAR][0]
    mafia = roles[Role.MAFIA][0]
    session.submit_night_action(room_id, Role.KOMISSAR, komissar, mafia)
    session.resolve_night(room_id)
    for p in session.store.list_players(room_id):
        if p.id == komissar:
            assert p.private.last_check_result.target_player_id == mafia
            assert p.private.last_check_result.is_mafia is True
        else:
            assert p.private == PlayerPrivate()


def test_game_ends_when_mafia_reaches_parity():
    session, _, room_id, ids, roles = _started(4)
    # 4 players: mafia, doctor, komissar, citizen
    mafia = roles[Role.MAFIA][0]
    citizen = roles[Role.CITIZEN][0]
    doctor = roles[Role.DOCTOR][0]
    komissar = roles[Role.KOMISSAR][0]
    session.submit_night_action(room_id, Role.MAFIA, mafia, citizen)
    session.resolve_night(room_id)
    session.start_vote(room_id)
    session.submit_vote(room_id, mafia, doctor)
    session.submit_vote(room_id, komissar, doctor)
    session.resolve_vote(room_id)
    room = session.get_room(room_id)
    assert room.status == RoomStatus.ENDED
    assert room.phase == Phase.ENDED
    assert room.winner == Winner.MAFIA
    assert room.phase_ends_at_ms is None
    with pytest.raises(InvalidAction):
        session.resolve_night(room_id)


# ---------- vote ----------


def _to_vote(num_players: int = 5):
    session, clock, room_id, ids, roles = _started(num_players)
    session.resolve_night(room_id)
    session.start_vote(room_id)
    return session, clock, room_id, ids, roles


def test_start_vote():
    session, clock, room_id, _, _ = _to_vote()
    room = session.get_room(room_id)
    assert room.phase == Phase.VOTE
    assert room.phase_ends_at_ms == clock.now + 45_000
    assert room.vote.started_at_ms == clock.now
    assert room.vote.votes == {}


def test_vote_exactly_once():
    session, _, room_id, _, roles = _to_vote()
    c1, c2 = roles[Role.CITIZEN]
    session.submit_vote(room_id, c1, c2)
    with pytest.raises(ActionAlreadySubmitted):
        session.submit_vote(room_id, c1, roles[Role.MAFIA][0])
    assert session.get_room(room_id).vote.votes == {c1: c2}


def test_vote_validation():
    session, _, room_id, _, roles = _to_vote()
    c1 = roles[Role.CITIZEN][0]
    with pytest.raises(UnknownEntity):
        session.submit_vote(room_id, c1, "ghost")
    with pytest.raises(UnknownEntity):
        session.submit_vote(room_id, "ghost", c1)


def test_self_vote_is_counted():
    session, _, room_id, _, roles = _to_vote()
    c1 = roles[Role.CITIZEN][0]
    session.submit_vote(room_id, c1, c1)
    assert session.get_room(room_id).vote.votes == {c1: c1}
    assert session.resolve_vote(room_id).eliminated_player_id == c1


def test_scenario_unique_leader_eliminated():
    session, clock, room_id, _, roles = _to_vote()
    mafia = roles[Role.MAFIA][0]
    doctor = roles[Role.DOCTOR][0]
    komissar = roles[Role.KOMISSAR][0]
    c1, c2 = roles[Role.CITIZEN]
    session.submit_vote(room_id, doctor, c1)
    session.submit_vote(room_id, komissar, c1)
    session.submit_vote(room_id, mafia, c2)
    outcome = session.resolve_vote(room_id)
    assert outcome.eliminated_player_id == c1
    room = session.get_room(room_id)
    assert room.phase == Phase.NIGHT
    assert room.phase_ends_at_ms == clock.now + 60_000
    assert room.vote.resolved is True
    assert room.vote.eliminated_player_id == c1
    assert not _alive(session, room_id, c1)
    assert not any(p.vote_submitted for p in session.store.list_players(room_id))


def test_scenario_tie_eliminates_no_one():
    session, _, room_id, _, roles = _to_vote()
    c1, c2 = roles[Role.CITIZEN]
    session.submit_vote(room_id, roles[Role.DOCTOR][0], c1)
    session.submit_vote(room_id, roles[Role.KOMISSAR][0], c2)
    outcome = session.resolve_vote(room_id)
    assert outcome.eliminated_player_id is None
    assert all(p.is_alive for p in session.store.list_players(room_id))


def test_voting_out_last_mafia_ends_game():
    session, _, room_id, _, roles = _to_vote()
    mafia = roles[Role.MAFIA][0]
    for voter in roles[Role.CITIZEN] + roles[Role.DOCTOR]:
        session.submit_vote(room_id, voter, mafia)
    session.resolve_vote(room_id)
    room = session.get_room(room_id)
    assert room.winner == Winner.TOWN
    assert room.status == RoomStatus.ENDED


def test_full_cycle_returns_to_night_with_clean_scratch():
    session, _, room_id, _, roles = _to_vote()
    session.resolve_vote(room_id)
    room = session.get_room(room_id)
    assert room.phase == Phase.NIGHT
    assert room.night.kill_target_id is None
    mafia = roles[Role.MAFIA][0]
    session.submit_night_action(room_id, Role.MAFIA, mafia, roles[Role.CITIZEN][0])
    session.resolve_night(room_id)
    assert session.get_room(room_id).day_number == 2


# ---------- concurrency guards ----------


def test_heartbeat_during_start_does_not_cancel_it():
    session, _, room_id, ids = _lobby(5)
    session.clock = HookClock(lambda: session.set_connection(room_id, ids[2], False))
    session.start_game(room_id, requested_by=ids[0])
    room = session.get_room(room_id)
    assert room.status == RoomStatus.PLAYING
    assert room.phase == Phase.NIGHT
    assert session.store.get_player(room_id, ids[2]).is_connected is False


def test_avatar_change_during_start_does_not_cancel_it():
    session, _, room_id, ids = _lobby(4)
    session.clock = HookClock(lambda: session.set_avatar(room_id, ids[1], "avatar_3"))
    session.start_game(room_id, requested_by=ids[0])
    assert session.get_room(room_id).status == RoomStatus.PLAYING


def test_unready_during_start_rejects_it():
    session, _, room_id, ids = _lobby(5)
    session.clock = HookClock(lambda: session.set_ready(room_id, ids[3], False))
    with pytest.raises(InvalidAction):
        session.start_game(room_id, requested_by=ids[0])
    assert session.get_room(room_id).status == RoomStatus.LOBBY
    assert all(p.role == Role.UNKNOWN for p in session.store.list_players(room_id))


def test_join_during_start_rejects_it():
    session, _, room_id, ids = _lobby(4)
    session.clock = HookClock(lambda: session.join_room(room_id, "Late"))
    with pytest.raises(InvalidAction):
        session.start_game(room_id, requested_by=ids[0])
    assert session.get_room(room_id).status == RoomStatus.LOBBY
    assert len(session.store.list_players(room_id)) == 5


def test_leave_during_start_restarts_with_remaining_players():
    session, _, room_id, ids = _lobby(5)
    session.clock = HookClock(lambda: session.leave_room(room_id, ids[4]))
    session.start_game(room_id, requested_by=ids[0])
    assert session.get_room(room_id).status == RoomStatus.PLAYING
    players = session.store.list_players(room_id)
    assert [p.id for p in players] == ids[:4]
    assert all(p.role != Role.UNKNOWN for p in players)


def test_night_action_during_resolution_is_included():
    session, _, room_id, ids, roles = _started()
    target = roles[Role.CITIZEN][0]
    doctor = roles[Role.DOCTOR][0]
    session.submit_night_action(room_id, Role.MAFIA, roles[Role.MAFIA][0], target)
    session.clock = HookClock(lambda: session.submit_night_action(room_id, Role.DOCTOR, doctor, target))
    outcome = session.resolve_night(room_id, requested_by=ids[0])
    assert outcome.killed_player_id is None
    room = session.get_room(room_id)
    assert room.phase == Phase.DAY
    assert room.day_number == 1
    assert room.night.last_saved_player_id == target
    assert _alive(session, room_id, target)


def test_vote_during_resolution_is_included():
    session, _, room_id, _, roles = _to_vote()
    c1, c2 = roles[Role.CITIZEN]
    doctor = roles[Role.DOCTOR][0]
    session.submit_vote(room_id, c2, c1)
    session.clock = HookClock(lambda: session.submit_vote(room_id, doctor, c1))
    outcome = session.resolve_vote(room_id)
    assert outcome.tally == {c1: 2}
    assert outcome.eliminated_player_id == c1
    assert session.get_room(room_id).phase == Phase.NIGHT


def test_stale_token_is_lost_race():
    session, _, room_id, _, _ = _started()
    token = session.get_room(room_id).phase_token
    session.resolve_night(room_id, expected=token)
    with pytest.raises(ConcurrentResolutionLost):
        session.resolve_night(room_id, expected=token)
    assert session.get_room(room_id).day_number == 1


def test_forced_resolve_owner_only():
    session, _, room_id, ids, _ = _started()
    with pytest.raises(NotRoomOwner):
        session.resolve_night(room_id, requested_by=ids[1])


def test_subscriber_sees_resolution():
    session, _, room_id, _, _ = _started()
    phases = []
    session.subscribe(room_id, lambda room, players: phases.append(room.phase))
    session.resolve_night(room_id)
    assert phases == [Phase.DAY]


def test_mafia_aligned_counts_match_policy():
    for n, expected in [(4, 1), (5, 1), (6, 2), (8, 2), (9, 4), (12, 4)]:
        session, _, room_id, _, _ = _started(n)
        roles = [p.role for p in session.store.list_players(room_id)]
        assert sum(1 for r in roles if r in MAFIA_ALIGNED) == expected
