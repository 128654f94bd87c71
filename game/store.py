"""In-memory room store with atomic conditional batch commits.

Stands in for a document database: rooms, their players, lookup by join code,
batch writes guarded by field preconditions, and change subscriptions.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from game.errors import UnknownEntity
from game.rules import RoomStatus
from game.state import Player, Room

logger = logging.getLogger(__name__)

Subscriber = Callable[[Room, list[Player]], None]


class PreconditionFailed(Exception):
    """A batch expectation did not hold; nothing was written."""

    def __init__(self, target: str, path: str, expected: Any, actual: Any):
        super().__init__(f"{target}.{path}: expected {expected!r}, found {actual!r}")
        self.target = target
        self.path = path
        self.expected = expected
        self.actual = actual


def _get_path(obj: Any, path: str) -> Any:
    for part in path.split("."):
        obj = obj[part] if isinstance(obj, dict) else getattr(obj, part)
    return obj


def _set_path(obj: Any, parts: list[str], value: Any) -> Any:
    """Return a copy of obj with the dotted path set. Dataclasses go through replace()."""
    head, rest = parts[0], parts[1:]
    if isinstance(obj, dict):
        new = dict(obj)
        new[head] = _set_path(obj[head], rest, value) if rest else value
        return new
    current = getattr(obj, head)
    return replace(obj, **{head: _set_path(current, rest, value) if rest else value})


@dataclass
class _Expectation:
    room_id: str
    player_id: Optional[str]
    fields: dict[str, Any]


@dataclass
class WriteBatch:
    """Preconditions plus updates, committed all-or-nothing by RoomStore.commit."""

    expectations: list[_Expectation] = field(default_factory=list)
    room_updates: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    player_updates: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)
    player_deletes: list[tuple[str, str]] = field(default_factory=list)
    # room_id -> exact set of player ids expected in the room
    rosters: dict[str, frozenset[str]] = field(default_factory=dict)

    def expect_room(self, room_id: str, **fields: Any) -> "WriteBatch":
        self.expectations.append(_Expectation(room_id, None, fields))
        return self

    def expect_player(self, room_id: str, player_id: str, **fields: Any) -> "WriteBatch":
        self.expectations.append(_Expectation(room_id, player_id, fields))
        return self

    def expect_roster(self, room_id: str, player_ids) -> "WriteBatch":
        """Expect exactly these players in the room: no joins, leaves or deletes since the read."""
        self.rosters[room_id] = frozenset(player_ids)
        return self

    def update_room(self, room_id: str, updates: dict[str, Any]) -> "WriteBatch":
        self.room_updates.append((room_id, updates))
        return self

    def update_player(self, room_id: str, player_id: str, updates: dict[str, Any]) -> "WriteBatch":
        self.player_updates.append((room_id, player_id, updates))
        return self

    def delete_player(self, room_id: str, player_id: str) -> "WriteBatch":
        self.player_deletes.append((room_id, player_id))
        return self

    def room_ids(self) -> set[str]:
        ids = {e.room_id for e in self.expectations}
        ids.update(self.rosters)
        ids.update(room_id for room_id, _ in self.room_updates)
        ids.update(room_id for room_id, _, _ in self.player_updates)
        ids.update(room_id for room_id, _ in self.player_deletes)
        return ids


class RoomStore:
    """Thread-safe in-memory store. Returned records are copies."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rooms: dict[str, Room] = {}
        # room_id -> player_id -> Player, insertion order is join order
        self._players: dict[str, dict[str, Player]] = {}
        self._codes: dict[str, str] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}

    # ---------- reads ----------

    def get_room(self, room_id: str) -> Room:
        with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                raise UnknownEntity("room", room_id)
            return copy.deepcopy(room)

    def get_player(self, room_id: str, player_id: str) -> Player:
        with self._lock:
            player = self._players.get(room_id, {}).get(player_id)
            if player is None:
                raise UnknownEntity("player", player_id)
            return copy.deepcopy(player)

    def list_players(self, room_id: str) -> list[Player]:
        with self._lock:
            if room_id not in self._rooms:
                raise UnknownEntity("room", room_id)
            return copy.deepcopy(list(self._players[room_id].values()))

    def snapshot(self, room_id: str) -> tuple[Room, list[Player]]:
        """Consistent (room, players) read."""
        with self._lock:
            return self.get_room(room_id), self.list_players(room_id)

    def find_room_by_code(self, code: str) -> Room:
        with self._lock:
            room_id = self._codes.get(code)
            if room_id is None:
                raise UnknownEntity("room code", code)
            return self.get_room(room_id)

    def code_in_use(self, code: str) -> bool:
        with self._lock:
            return code in self._codes

    def list_active_rooms(self) -> list[str]:
        """Ids of rooms with a game in progress."""
        with self._lock:
            return [rid for rid, r in self._rooms.items() if r.status == RoomStatus.PLAYING]

    def list_rooms(self) -> list[str]:
        with self._lock:
            return list(self._rooms.keys())

    # ---------- writes ----------

    def create_room(self, room: Room, owner: Optional[Player] = None) -> None:
        """Insert a room, and its owner's player record in the same step."""
        with self._lock:
            if room.code in self._codes:
                raise ValueError(f"Room code already in use: {room.code}")
            self._rooms[room.id] = room
            self._players[room.id] = {owner.id: owner} if owner is not None else {}
            self._codes[room.code] = room.id
        self._notify({room.id})

    def create_player(self, player: Player) -> None:
        with self._lock:
            if player.room_id not in self._rooms:
                raise UnknownEntity("room", player.room_id)
            self._players[player.room_id][player.id] = player
            self._bump(player.room_id)
        self._notify({player.room_id})

    def batch(self) -> WriteBatch:
        return WriteBatch()

    def commit(self, batch: WriteBatch) -> None:
        """
        Apply every update iff every expectation holds.
        Raises PreconditionFailed (nothing written) or UnknownEntity.
        """
        with self._lock:
            for room_id, expected_ids in batch.rosters.items():
                if room_id not in self._rooms:
                    raise UnknownEntity("room", room_id)
                actual_ids = frozenset(self._players[room_id])
                if actual_ids != expected_ids:
                    raise PreconditionFailed(f"room[{room_id}]", "players", sorted(expected_ids), sorted(actual_ids))
            for exp in batch.expectations:
                record: Any = self._rooms.get(exp.room_id)
                target = f"room[{exp.room_id}]"
                if record is None:
                    raise UnknownEntity("room", exp.room_id)
                if exp.player_id is not None:
                    record = self._players[exp.room_id].get(exp.player_id)
                    target = f"player[{exp.player_id}]"
                    if record is None:
                        raise UnknownEntity("player", exp.player_id)
                for path, expected in exp.fields.items():
                    actual = _get_path(record, path)
                    if actual != expected:
                        raise PreconditionFailed(target, path, expected, actual)

            # Build everything first so a bad path leaves the store untouched
            rooms = dict(self._rooms)
            players = {rid: dict(ps) for rid, ps in self._players.items()}
            for room_id, updates in batch.room_updates:
                if room_id not in rooms:
                    raise UnknownEntity("room", room_id)
                for path, value in updates.items():
                    rooms[room_id] = _set_path(rooms[room_id], path.split("."), value)
            for room_id, player_id, updates in batch.player_updates:
                roster = players.get(room_id)
                if roster is None or player_id not in roster:
                    raise UnknownEntity("player", player_id)
                for path, value in updates.items():
                    roster[player_id] = _set_path(roster[player_id], path.split("."), value)
            for room_id, player_id in batch.player_deletes:
                players.get(room_id, {}).pop(player_id, None)

            self._rooms = rooms
            self._players = players
            touched = batch.room_ids()
            for room_id in touched:
                self._bump(room_id)
        self._notify(touched)

    def _bump(self, room_id: str) -> None:
        room = self._rooms[room_id]
        self._rooms[room_id] = replace(room, version=room.version + 1)

    # ---------- change notification ----------

    def subscribe(self, room_id: str, callback: Subscriber) -> Callable[[], None]:
        """Call callback(room, players) after every committed change to room_id."""
        with self._lock:
            if room_id not in self._rooms:
                raise UnknownEntity("room", room_id)
            self._subscribers.setdefault(room_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(room_id, [])
                if callback in subs:
                    subs.remove(callback)

        return unsubscribe

    def _notify(self, room_ids: set[str]) -> None:
        for room_id in room_ids:
            with self._lock:
                subs = list(self._subscribers.get(room_id, []))
                if not subs:
                    continue
                room, players = self.snapshot(room_id)
            for callback in subs:
                try:
                    callback(copy.deepcopy(room), copy.deepcopy(players))
                except Exception as e:
                    logger.warning("Subscriber for room %s failed: %s", room_id, e)
