# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import logging
import time
from enum import Enum
from typing import Optional

logger = logging.getLogger("highway.ratelimit")


class ActionType(Enum):
    WEBHOOK_MESSAGE = "webhook_message"
    WEBHOOK_CREATE = "webhook_create"
    DELETE_MESSAGE = "delete_message"


DEFAULT_COOLDOWNS: dict[ActionType, float] = {
    ActionType.WEBHOOK_MESSAGE: 1.0,
    ActionType.WEBHOOK_CREATE: 5.0,
    ActionType.DELETE_MESSAGE: 0.5,
}


class RateLimitManager:
    """
    Fixed per-(action, key) spacing between calls. Different keys never wait
    on each other; calls for the same key queue on that key's lock.
    """

    def __init__(self, cooldowns: Optional[dict[ActionType, float]] = None):
        self.cooldowns = dict(DEFAULT_COOLDOWNS)
        if cooldowns:
            self.cooldowns.update(cooldowns)
        self._locks: dict[tuple[ActionType, str], asyncio.Lock] = {}
        self._last: dict[tuple[ActionType, str], float] = {}

    def _lock_for(self, slot: tuple[ActionType, str]) -> asyncio.Lock:
        lock = self._locks.get(slot)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[slot] = lock
        return lock

    async def acquire(self, action: ActionType, key: object = "global") -> float:
        """
        Wait until ``action`` may run again for ``key``. Returns seconds slept.
        """
        slot = (action, str(key))
        async with self._lock_for(slot):
            cooldown = float(self.cooldowns.get(action, 0.0))
            last = self._last.get(slot)
            now = time.monotonic()
            wait = 0.0
            if last is not None:
                wait = max(0.0, last + cooldown - now)
            if wait > 0:
                logger.debug(
                    "[⏳] %s for %s waiting %.2fs", action.value, key, wait
                )
                await asyncio.sleep(wait)
            self._last[slot] = time.monotonic()
            return wait

    async def acquire_for_channel(self, action: ActionType, channel_id: int) -> float:
        return await self.acquire(action, key=f"channel:{int(channel_id)}")

    def relax(self, action: ActionType, key: object = "global") -> None:
        """Forget the last call so the next acquire for ``key`` runs at once."""
        self._last.pop((action, str(key)), None)
