# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging

import discord

from highway.cache import CachedMessage, MessageCache
from highway.consent import ComponentAction, InteractionRegistry
from highway.transport import CONSENT_PREFIX
from highway.webhooks import WebhookCache

logger = logging.getLogger("highway.events")


class EventSync:
    """
    Gateway events into cache mutations and consent clicks. py-cord runs
    each listener call in its own task.
    """

    def __init__(
        self,
        cache: MessageCache,
        webhooks: WebhookCache,
        registry: InteractionRegistry,
        transport,
    ):
        self.cache = cache
        self.webhooks = webhooks
        self.registry = registry
        self.transport = transport

    def register(self, bot: discord.Bot) -> None:
        for listener in (
            self.on_message,
            self.on_raw_message_edit,
            self.on_raw_message_delete,
            self.on_raw_bulk_message_delete,
            self.on_webhooks_update,
            self.on_interaction,
        ):
            bot.add_listener(listener, listener.__name__)

    async def on_message(self, message: discord.Message):
        if getattr(message, "guild", None) is None:
            return
        try:
            snap = CachedMessage.from_discord(
                message,
                own_webhook_ids=self.webhooks.owned_ids(),
                application_id=getattr(self.transport, "application_id", None),
            )
        except ValueError as e:
            logger.debug("Not caching message: %s", e)
            return
        self.cache.add(snap)

    async def on_raw_message_edit(self, payload: discord.RawMessageUpdateEvent):
        data = payload.data or {}
        kwargs = {}
        if "content" in data:
            kwargs["text"] = data.get("content") or ""
        if "embeds" in data:
            kwargs["embeds"] = list(data.get("embeds") or [])
        if not kwargs:
            return
        if self.cache.update(payload.message_id, payload.channel_id, **kwargs):
            logger.debug(
                "Updated cached message %s in #%s", payload.message_id, payload.channel_id
            )

    async def on_raw_message_delete(self, payload: discord.RawMessageDeleteEvent):
        self.cache.delete(payload.message_id, payload.channel_id)
        self.registry.end(payload.message_id)

    async def on_raw_bulk_message_delete(
        self, payload: discord.RawBulkMessageDeleteEvent
    ):
        ids = [int(i) for i in payload.message_ids]
        self.cache.delete_bulk(ids, payload.channel_id)
        for mid in ids:
            self.registry.end(mid)

    async def on_webhooks_update(self, channel):
        try:
            await self.webhooks.invalidate_if_missing(channel.id)
        except discord.HTTPException as e:
            logger.warning(
                "[⚠️] Could not re-check webhooks in #%s: %s", channel.id, e
            )

    async def on_interaction(self, interaction: discord.Interaction):
        if interaction.type is not discord.InteractionType.component:
            return
        custom_id = (interaction.data or {}).get("custom_id") or ""
        if not custom_id.startswith(CONSENT_PREFIX):
            return
        message = getattr(interaction, "message", None)
        user = getattr(interaction, "user", None)
        if message is None or user is None:
            logger.debug("Consent click without message/user: %s", interaction.id)
            return

        event = ComponentAction(
            message_id=int(message.id),
            action=custom_id[len(CONSENT_PREFIX):],
            user_id=int(user.id),
        )
        delivered = self.registry.dispatch(event)

        try:
            if interaction.response.is_done():
                return
            if delivered:
                await interaction.response.defer()
            else:
                await interaction.response.send_message(
                    "this vote is already over", ephemeral=True
                )
        except (discord.HTTPException, discord.InteractionResponded) as e:
            logger.debug("Could not acknowledge consent click: %s", e)
