"""Phase scheduler: advance rooms whose phase deadline has passed."""

import asyncio
import logging
from typing import Optional

from game.errors import ConcurrentResolutionLost, MafiaError
from game.rules import Phase
from game.session import RoomSession
from game.state import PhaseToken

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 1.0


class PhaseScheduler:
    """
    Drives timed transitions. Any number of schedulers may poll the same rooms:
    each transition is committed against the phase token it observed, so a
    deadline produces one resolution no matter how many callers see it expire.
    """

    def __init__(self, session: RoomSession, poll_interval: float = DEFAULT_POLL_INTERVAL_SEC):
        self.session = session
        self.poll_interval = poll_interval

    def _transition(self, room_id: str, phase: Phase, token: Optional[PhaseToken], requested_by: Optional[str]):
        if phase == Phase.NIGHT:
            return self.session.resolve_night(room_id, requested_by=requested_by, expected=token)
        if phase == Phase.DAY:
            return self.session.start_vote(room_id, requested_by=requested_by, expected=token)
        if phase == Phase.VOTE:
            return self.session.resolve_vote(room_id, requested_by=requested_by, expected=token)
        return None

    def advance_if_expired(self, room_id: str, now_ms: Optional[int] = None) -> bool:
        """
        Run the transition for the current phase if its deadline has passed.
        Returns True if this call committed it; False on no-op or a lost race.
        """
        room = self.session.get_room(room_id)
        now_ms = self.session.clock() if now_ms is None else now_ms
        if not room.is_expired(now_ms):
            return False
        token = room.phase_token
        try:
            result = self._transition(room_id, room.phase, token, requested_by=None)
        except ConcurrentResolutionLost as e:
            logger.debug("Lost advance race: %s", e)
            return False
        return result is not None

    def force_resolve(self, room_id: str, requested_by: str) -> bool:
        """
        Owner-triggered early transition for the current phase, ignoring the deadline.
        Returns False if another caller advanced the phase first.
        """
        room = self.session.get_room(room_id)
        try:
            result = self._transition(room_id, room.phase, room.phase_token, requested_by=requested_by)
        except ConcurrentResolutionLost as e:
            logger.debug("Lost forced resolve race: %s", e)
            return False
        return result is not None

    def tick(self, now_ms: Optional[int] = None) -> int:
        """Check every playing room once. Returns how many rooms advanced."""
        advanced = 0
        for room_id in self.session.store.list_active_rooms():
            try:
                if self.advance_if_expired(room_id, now_ms):
                    advanced += 1
            except MafiaError as e:
                logger.warning("Advance failed for room %s: %s", room_id, e)
        return advanced

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Poll until stop is set: check, act, sleep."""
        stop = stop or asyncio.Event()
        logger.info("Phase poller started (every %.1fs)", self.poll_interval)
        while not stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.warning("Phase poller tick failed: %s", e)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Phase poller stopped")
