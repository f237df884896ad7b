"""Public matchmaking queue.

Strict FIFO pairing: a joining participant is paired with the oldest
waiter, otherwise it waits until its eviction timer fires. Each participant
id owns at most one entry (and therefore at most one eviction timer).
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import config
from models import Participant

logger = logging.getLogger(__name__)

EvictCallback = Callable[[Participant], Awaitable[None]]


@dataclass(eq=False)
class QueueEntry:
    participant: Participant
    enqueued_at: float
    eviction_timer: Optional[asyncio.Task] = field(default=None, repr=False)


@dataclass(frozen=True)
class Matched:
    opponent: Participant


@dataclass(frozen=True)
class Waiting:
    pass


class MatchQueue:
    def __init__(self, wait_seconds: float = config.QUEUE_WAIT_SECONDS,
                 on_evict: Optional[EvictCallback] = None):
        self.wait_seconds = wait_seconds
        self.on_evict = on_evict
        self._entries: List[QueueEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, participant_id: str) -> bool:
        return self._find(participant_id) is not None

    def waiting_ids(self) -> List[str]:
        return [entry.participant.id for entry in self._entries]

    def _find(self, participant_id: str) -> Optional[QueueEntry]:
        for entry in self._entries:
            if entry.participant.id == participant_id:
                return entry
        return None

    def join(self, participant: Participant):
        """Pair with the oldest waiter, or start waiting.

        Returns ``Matched(opponent)`` or ``Waiting()``. The caller creates the
        session on a match.
        """
        self.remove(participant.id)

        if self._entries:
            opponent_entry = self._entries.pop(0)
            _cancel_timer(opponent_entry)
            logger.info("Matched %s with %s (queue size: %d)",
                        participant.id, opponent_entry.participant.id, len(self._entries))
            return Matched(opponent_entry.participant)

        entry = QueueEntry(participant=participant, enqueued_at=time.monotonic())
        entry.eviction_timer = asyncio.create_task(self._evict_after_wait(entry))
        self._entries.append(entry)
        logger.info("Participant %s is now waiting (queue size: %d)", participant.id, len(self._entries))
        return Waiting()

    def remove(self, participant_id: str) -> bool:
        """Drop the participant's entry if present. Safe to call repeatedly."""
        entry = self._find(participant_id)
        if entry is None:
            return False
        _cancel_timer(entry)
        self._entries.remove(entry)
        logger.info("Participant %s removed from queue (queue size: %d)", participant_id, len(self._entries))
        return True

    def clear(self):
        for entry in self._entries:
            _cancel_timer(entry)
        self._entries.clear()

    async def _evict_after_wait(self, entry: QueueEntry):
        try:
            await asyncio.sleep(self.wait_seconds)
        except asyncio.CancelledError:
            return
        # A replaced or matched entry is no longer in the queue
        if entry not in self._entries:
            return
        self._entries.remove(entry)
        entry.eviction_timer = None
        logger.info("No match found for %s after %.0fs", entry.participant.id, self.wait_seconds)
        if self.on_evict:
            try:
                await self.on_evict(entry.participant)
            except Exception:
                logger.exception("Error notifying %s of queue eviction", entry.participant.id)


def _cancel_timer(entry: QueueEntry):
    timer = entry.eviction_timer
    entry.eviction_timer = None
    if timer and timer is not asyncio.current_task():
        timer.cancel()
