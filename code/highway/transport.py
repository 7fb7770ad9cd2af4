# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import io
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import aiohttp
import discord

from highway.cache import CachedAttachment

logger = logging.getLogger("highway.transport")

CONSENT_PREFIX = "highway:consent:"


@dataclass(frozen=True)
class Destination:
    """Where replicas go. Threads post through their parent's webhook."""

    channel_id: int
    webhook_channel_id: int
    thread_id: Optional[int] = None


class ConsentButtons(discord.ui.View):
    """
    Static buttons for a consent prompt. Clicks are routed by the
    ``on_interaction`` listener, not by callbacks, so no state lives here.
    """

    def __init__(self, actions: Sequence[str]):
        super().__init__(timeout=None)
        styles = {
            "agree": discord.ButtonStyle.success,
            "refuse": discord.ButtonStyle.danger,
        }
        for action in actions:
            self.add_item(
                discord.ui.Button(
                    label=action,
                    custom_id=f"{CONSENT_PREFIX}{action}",
                    style=styles.get(action, discord.ButtonStyle.secondary),
                )
            )

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        # the on_interaction listener answers consent clicks
        return False


class DiscordTransport:
    """
    Every outbound Discord call the engine makes. Callers handle
    ``discord.HTTPException``; nothing here retries beyond py-cord itself.
    """

    def __init__(self, bot: discord.Bot, session: Optional[aiohttp.ClientSession] = None):
        self.bot = bot
        self.session = session
        self._prompt_views: dict[int, ConsentButtons] = {}

    def set_session(self, session: aiohttp.ClientSession | None):
        self.session = session

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    @property
    def application_id(self) -> Optional[int]:
        return getattr(self.bot, "application_id", None)

    @property
    def user_id(self) -> Optional[int]:
        user = getattr(self.bot, "user", None)
        return user.id if user else None

    async def get_channel(self, channel_id: int):
        ch = self.bot.get_channel(int(channel_id))
        if ch is None:
            ch = await self.bot.fetch_channel(int(channel_id))
        return ch

    async def destination(self, channel_id: int) -> Destination:
        ch = await self.get_channel(channel_id)
        if isinstance(ch, discord.Thread):
            return Destination(
                channel_id=ch.id, webhook_channel_id=ch.parent_id, thread_id=ch.id
            )
        return Destination(channel_id=ch.id, webhook_channel_id=ch.id)

    # ------------------------------------------------------------------ webhooks

    async def list_webhooks(self, channel_id: int) -> list[discord.Webhook]:
        ch = await self.get_channel(channel_id)
        return list(await ch.webhooks())

    async def create_webhook(self, channel_id: int, name: str) -> discord.Webhook:
        ch = await self.get_channel(channel_id)
        webhook = await ch.create_webhook(name=name)
        logger.info("[➕] Created webhook '%s' in channel #%s", name, channel_id)
        return webhook

    async def execute_webhook(
        self,
        webhook_id: int,
        token: str,
        *,
        content: str,
        embeds: list[dict],
        files: list[discord.File],
        username: str,
        avatar_url: Optional[str],
        thread_id: Optional[int] = None,
    ) -> int:
        wh = discord.Webhook.partial(webhook_id, token, session=self._ensure_session())
        kwargs = dict(
            content=content or None,
            embeds=[discord.Embed.from_dict(e) for e in embeds],
            files=files,
            username=username[:80] if username else None,
            avatar_url=avatar_url,
            allowed_mentions=discord.AllowedMentions.none(),
            wait=True,
        )
        if thread_id is not None:
            kwargs["thread"] = discord.Object(thread_id)
        sent = await wh.send(**kwargs)
        return sent.id

    async def download(self, attachment: CachedAttachment) -> discord.File:
        async with self._ensure_session().get(attachment.url) as resp:
            resp.raise_for_status()
            raw = await resp.read()
        return discord.File(
            io.BytesIO(raw), filename=attachment.filename, spoiler=attachment.spoiler
        )

    # ------------------------------------------------------------------ messages

    async def history_after(
        self, channel_id: int, message_id: int, limit: int
    ) -> list[discord.Message]:
        ch = await self.get_channel(channel_id)
        return [
            m
            async for m in ch.history(
                after=discord.Object(message_id), limit=limit, oldest_first=True
            )
        ]

    async def delete_message(self, channel_id: int, message_id: int) -> None:
        await self.bot.http.delete_message(int(channel_id), int(message_id))

    async def delete_messages(self, channel_id: int, message_ids: Sequence[int]) -> None:
        await self.bot.http.delete_messages(
            int(channel_id), [int(m) for m in message_ids]
        )

    # ------------------------------------------------------------------ prompts

    async def post_prompt(
        self, channel_id: int, content: str, actions: Sequence[str]
    ) -> int:
        ch = await self.get_channel(channel_id)
        view = ConsentButtons(actions)
        msg = await ch.send(
            content,
            view=view,
            allowed_mentions=discord.AllowedMentions(users=True),
        )
        self._prompt_views[msg.id] = view
        return msg.id

    async def edit_prompt(
        self, channel_id: int, message_id: int, content: str, *, final: bool = False
    ) -> None:
        """Rewrite the prompt text. ``final`` also strips the buttons."""
        ch = await self.get_channel(channel_id)
        fields = {"content": content}
        if final:
            fields["view"] = None
        await ch.get_partial_message(int(message_id)).edit(**fields)

    def release_prompt(self, message_id: int) -> None:
        """Stop the prompt's view so py-cord drops it from its view store."""
        view = self._prompt_views.pop(int(message_id), None)
        if view is not None:
            view.stop()

    async def notify_operator(self, channel_id: int, text: str) -> None:
        if not channel_id:
            return
        try:
            ch = await self.get_channel(channel_id)
            await ch.send(text[:2000])
        except discord.HTTPException:
            logger.warning("[⚠️] Could not deliver operator notification", exc_info=True)
