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
from dataclasses import dataclass
from typing import Optional

import discord

from highway.rate_limiter import ActionType, RateLimitManager

logger = logging.getLogger("highway.webhooks")


class WebhookUnusable(discord.DiscordException):
    """Discord handed back a webhook the bot can't post through."""


@dataclass(frozen=True)
class CachedWebhook:
    id: int
    token: str
    channel_id: int


class WebhookCache:
    """
    One usable webhook per channel, provisioned on first use.

    The first caller for a channel claims it by storing a future before any
    network round trip; concurrent callers for the same channel await that
    future instead of creating a second webhook. Other channels are never
    blocked.
    """

    def __init__(
        self,
        transport,
        *,
        name: str = "message highway",
        ratelimit: Optional[RateLimitManager] = None,
    ):
        self.transport = transport
        self.name = name
        self.ratelimit = ratelimit
        self._entries: dict[int, asyncio.Future] = {}

    def cached(self, channel_id: int) -> Optional[CachedWebhook]:
        fut = self._entries.get(int(channel_id))
        if fut is None or not fut.done() or fut.cancelled() or fut.exception():
            return None
        return fut.result()

    def owns(self, webhook_id: int) -> bool:
        return any(
            wh.id == int(webhook_id)
            for wh in (self.cached(cid) for cid in list(self._entries))
            if wh is not None
        )

    def owned_ids(self) -> set[int]:
        out = set()
        for cid in list(self._entries):
            wh = self.cached(cid)
            if wh is not None:
                out.add(wh.id)
        return out

    async def get_or_create(self, channel_id: int) -> CachedWebhook:
        cid = int(channel_id)
        fut = self._entries.get(cid)
        if fut is not None:
            # shield so a cancelled waiter doesn't cancel the provisioning
            return await asyncio.shield(fut)

        fut = asyncio.get_running_loop().create_future()
        self._entries[cid] = fut
        try:
            webhook = await self._provision(cid)
        except asyncio.CancelledError:
            self._release(cid, fut)
            fut.cancel()
            raise
        except Exception as e:
            self._release(cid, fut)
            fut.set_exception(e)
            # mark retrieved so lone claims don't log "never retrieved"
            fut.exception()
            raise
        fut.set_result(webhook)
        return webhook

    def _release(self, cid: int, fut: asyncio.Future) -> None:
        if self._entries.get(cid) is fut:
            del self._entries[cid]

    async def _provision(self, cid: int) -> CachedWebhook:
        for wh in await self.transport.list_webhooks(cid):
            if self._is_usable(wh):
                logger.debug("Reusing webhook %s in #%s", wh.id, cid)
                return CachedWebhook(id=int(wh.id), token=wh.token, channel_id=cid)

        if self.ratelimit is not None:
            await self.ratelimit.acquire_for_channel(ActionType.WEBHOOK_CREATE, cid)
        wh = await self.transport.create_webhook(cid, self.name)
        if not getattr(wh, "token", None):
            raise WebhookUnusable(f"created webhook {wh.id} in #{cid} has no token")
        return CachedWebhook(id=int(wh.id), token=wh.token, channel_id=cid)

    def _is_usable(self, wh) -> bool:
        if not getattr(wh, "token", None):
            return False
        app_id = getattr(self.transport, "application_id", None)
        wh_app = getattr(wh, "application_id", None)
        if app_id is not None and wh_app is not None:
            return int(wh_app) == int(app_id)
        user_id = getattr(self.transport, "user_id", None)
        wh_user = getattr(wh, "user", None)
        if user_id is not None and wh_user is not None:
            return int(wh_user.id) == int(user_id)
        return True

    async def invalidate_if_missing(self, channel_id: int) -> bool:
        """
        Drop the cached webhook for ``channel_id`` if Discord no longer lists
        it. Returns True when an entry was evicted.
        """
        cid = int(channel_id)
        cached = self.cached(cid)
        if cached is None:
            return False

        live_ids = {int(wh.id) for wh in await self.transport.list_webhooks(cid)}
        if cached.id in live_ids:
            return False

        # a concurrent re-provision may have replaced the entry meanwhile
        if self.cached(cid) == cached:
            del self._entries[cid]
            logger.info(
                "[🗑️] Webhook %s is gone from #%s; will recreate on next use",
                cached.id,
                cid,
            )
            return True
        return False
