# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import logging
from typing import Optional

import discord
from discord import Option
from discord.ext import commands

from common import logctx
from common.config import Config
from common.errors import (
    FALLBACK_MESSAGE,
    HighwayError,
    InvalidDestination,
    UpstreamApiError,
)
from highway.cache import CachedMessage
from highway.pipeline import MoveMode, MoveRequest

logger = logging.getLogger("highway")

config = Config(logger=logger)

GUILD_IDS: Optional[list[int]] = [config.TEST_GUILD_ID] if config.TEST_GUILD_ID else None

MOVABLE_CHANNEL_TYPES = [
    discord.ChannelType.text,
    discord.ChannelType.news,
    discord.ChannelType.news_thread,
    discord.ChannelType.public_thread,
    discord.ChannelType.private_thread,
]


class ChannelSelectView(discord.ui.View):
    """One channel select menu, answered by the person who opened it."""

    def __init__(self, author_id: int, timeout: float = 120):
        super().__init__(timeout=timeout)
        self.author_id = int(author_id)
        self.chosen: Optional[int] = None

        select = discord.ui.Select(
            select_type=discord.ComponentType.channel_select,
            channel_types=MOVABLE_CHANNEL_TYPES,
            placeholder="pick a channel",
            min_values=1,
            max_values=1,
        )
        select.callback = self._on_select
        self.add_item(select)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        return interaction.user is not None and interaction.user.id == self.author_id

    async def _on_select(self, interaction: discord.Interaction):
        values = self.children[0].values
        if values:
            self.chosen = int(values[0].id)
        await interaction.response.edit_message(
            content="noted, doing some checks :face_with_monocle:", view=None
        )
        self.stop()


class ChannelSelectPicker:
    def __init__(self, ctx: discord.ApplicationContext, timeout: float = 120):
        self.ctx = ctx
        self.timeout = timeout

    async def choose(self, request: MoveRequest) -> int:
        view = ChannelSelectView(request.initiator_id, timeout=self.timeout)
        await self.ctx.respond(
            "where do you want to move the messages?", view=view, ephemeral=True
        )
        await view.wait()
        if view.chosen is None:
            raise InvalidDestination(0, "you didn't pick a channel in time..")
        return view.chosen


class HighwayCommands(commands.Cog):
    """
    The move commands. Everything past argument handling lives in the
    pipeline; this only builds requests and reports results.
    """

    def __init__(self, bot: discord.Bot):
        self.bot = bot

    @property
    def highway(self):
        return self.bot.highway

    def _trigger(self, message: discord.Message) -> CachedMessage:
        cached = self.highway.cache.get(message.channel.id, message.id)
        if cached is not None:
            return cached
        return CachedMessage.from_discord(
            message,
            own_webhook_ids=self.highway.webhooks.owned_ids(),
            application_id=self.bot.application_id,
        )

    async def _reply(self, ctx: discord.ApplicationContext, text: str) -> None:
        try:
            if not ctx.response.is_done():
                await ctx.respond(text, ephemeral=True)
            else:
                await ctx.edit(content=text, view=None)
        except discord.HTTPException:
            try:
                await ctx.followup.send(text, ephemeral=True)
            except discord.HTTPException:
                logger.warning("[⚠️] Could not deliver reply to %s", ctx.user.id)

    async def _run_move(
        self,
        ctx: discord.ApplicationContext,
        request: MoveRequest,
    ) -> None:
        guild_name = ctx.guild.name if ctx.guild else "Unknown"
        logger.info(
            "[⚡] %s (%s) started a %s move in %s.",
            ctx.user.name,
            ctx.user.id,
            request.mode.value,
            guild_name,
        )

        async def _progress(text: str) -> None:
            await ctx.edit(content=text, view=None)

        picker = ChannelSelectPicker(ctx)
        token = logctx.guild_name.set(guild_name)
        try:
            report = await self.highway.pipeline.run(
                request, progress=_progress, picker=picker
            )
            text = report.summary()
        except HighwayError as e:
            text = e.user_message()
            if isinstance(e, UpstreamApiError):
                logger.error("[⛔] Move failed while %s: %r", e.step, e.original)
                await self.highway.notify_operator(
                    f"move in <#{request.source_channel_id}> failed while "
                    f"{e.step}: `{e.original!r}`"
                )
            else:
                logger.info("[🚫] Move refused: %s", e)
        except Exception as e:
            logger.exception("[⛔] Unexpected error while moving messages")
            await self.highway.notify_operator(
                f"unexpected error in <#{request.source_channel_id}>: `{e!r}`"
            )
            text = FALLBACK_MESSAGE
        finally:
            logctx.guild_name.reset(token)
        await self._reply(ctx, text)

    @commands.message_command(name="move message", guild_ids=GUILD_IDS)
    async def move_message(self, ctx: discord.ApplicationContext, message: discord.Message):
        if ctx.guild is None:
            return await ctx.respond("i only work in servers..", ephemeral=True)
        await self._run_move(
            ctx,
            MoveRequest(
                guild_id=ctx.guild.id,
                source_channel_id=message.channel.id,
                initiator_id=ctx.user.id,
                mode=MoveMode.SINGLE,
                trigger=self._trigger(message),
            ),
        )

    @commands.message_command(name="move this message and below", guild_ids=GUILD_IDS)
    async def move_message_and_below(
        self, ctx: discord.ApplicationContext, message: discord.Message
    ):
        if ctx.guild is None:
            return await ctx.respond("i only work in servers..", ephemeral=True)
        await self._run_move(
            ctx,
            MoveRequest(
                guild_id=ctx.guild.id,
                source_channel_id=message.channel.id,
                initiator_id=ctx.user.id,
                mode=MoveMode.AND_BELOW,
                trigger=self._trigger(message),
            ),
        )

    @commands.slash_command(
        name="move_last_messages",
        description="move the newest messages from this channel to another channel",
        guild_ids=GUILD_IDS,
    )
    async def move_last_messages(
        self,
        ctx: discord.ApplicationContext,
        message_count: int = Option(
            int,
            "how many of the newest messages do you want to move?",
            min_value=1,
            max_value=20,
        ),
        channel: discord.abc.GuildChannel = Option(
            discord.abc.GuildChannel,
            "where do you want to move the messages?",
            channel_types=MOVABLE_CHANNEL_TYPES,
        ),
    ):
        if ctx.guild is None:
            return await ctx.respond("i only work in servers..", ephemeral=True)
        await ctx.defer(ephemeral=True)
        await self._run_move(
            ctx,
            MoveRequest(
                guild_id=ctx.guild.id,
                source_channel_id=ctx.channel_id,
                initiator_id=ctx.user.id,
                mode=MoveMode.LAST,
                count=int(message_count),
                destination_id=channel.id,
            ),
        )

    @commands.Cog.listener()
    async def on_application_command_error(self, ctx, error):
        orig = getattr(error, "original", None)
        err = orig or error
        cmd = ctx.command.name if ctx.command else "<unknown>"
        logger.exception(f"Error in command '{cmd}':", exc_info=err)


def setup(bot: discord.Bot):
    bot.add_cog(HighwayCommands(bot))
