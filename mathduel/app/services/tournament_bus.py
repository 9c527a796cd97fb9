"""
Tournament Bus - signal + deadline based wake-ups for the scheduler

The scheduler loop sleeps until whichever comes first: an explicit trigger
(join, game finished, resume), the earliest registered game deadline, or the
regular tick interval. Deadlines only decide *when* to look; what is due is
always re-read from the database.
"""

import asyncio
import heapq
from datetime import datetime
from typing import Dict, List, Optional

from mathduel.app.core.clock import utcnow


class TournamentBus:
    """Simple internal signal bus for tournament coordination"""
    def __init__(self):
        self.signal = asyncio.Event()
        self._deadlines: List[datetime] = []
        self._locks: Dict[int, asyncio.Lock] = {}

    def trigger(self):
        """Trigger the tournament watcher to run immediately"""
        self.signal.set()

    def schedule(self, when: Optional[datetime]):
        """Ask for a wake-up at `when` (countdown end, deadline, AFK window...)."""
        if when is not None:
            heapq.heappush(self._deadlines, when)

    def next_deadline(self, now: Optional[datetime] = None) -> Optional[datetime]:
        now = now or utcnow()
        # Past deadlines are handled by the tick that is about to run
        while self._deadlines and self._deadlines[0] <= now:
            heapq.heappop(self._deadlines)
        return self._deadlines[0] if self._deadlines else None

    def seconds_until_next(self, default: float, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        deadline = self.next_deadline(now)
        if deadline is None:
            return default
        return max(0.0, min(default, (deadline - now).total_seconds()))

    def lock_for(self, tournament_id: int) -> asyncio.Lock:
        """Serializes pairing / phase changes of one tournament in this process."""
        if tournament_id not in self._locks:
            self._locks[tournament_id] = asyncio.Lock()
        return self._locks[tournament_id]

    async def wait_for_signal(self, timeout: float = 30.0):
        """
        Wait for a signal or timeout

        Args:
            timeout: Maximum time to wait before returning (safety fallback)

        Returns:
            bool: True if signal was received, False if timed out
        """
        try:
            await asyncio.wait_for(self.signal.wait(), timeout=timeout)
            self.signal.clear()  # Reset after receiving signal
            return True
        except asyncio.TimeoutError:
            return False


# Global tournament bus instance
tournament_bus = TournamentBus()
