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
from typing import Iterable

import discord

from common.errors import InvalidDestination, PermissionDenied

logger = logging.getLogger("highway.permissions")


class GuildPermissionEvaluator:
    """Resolved channel permissions of the bot or a member, via py-cord."""

    def __init__(self, transport):
        self.transport = transport

    async def _guild_channel(self, channel_id: int):
        ch = await self.transport.get_channel(channel_id)
        if getattr(ch, "guild", None) is None:
            raise InvalidDestination(channel_id, "i only work in server channels..")
        return ch

    @staticmethod
    def _missing(perms: discord.Permissions, required: Iterable[str]) -> list[str]:
        return sorted(p for p in required if not getattr(perms, p, False))

    async def bot_missing(self, channel_id: int, required: Iterable[str]) -> list[str]:
        ch = await self._guild_channel(channel_id)
        me = ch.guild.me
        if me is None:
            raise PermissionDenied(required, channel_id=channel_id)
        return self._missing(ch.permissions_for(me), required)

    async def member_missing(
        self, channel_id: int, user_id: int, required: Iterable[str]
    ) -> list[str]:
        ch = await self._guild_channel(channel_id)
        member = ch.guild.get_member(int(user_id))
        if member is None:
            try:
                member = await ch.guild.fetch_member(int(user_id))
            except discord.NotFound:
                logger.debug("Member %s not in guild %s", user_id, ch.guild.id)
                raise PermissionDenied(required, channel_id=channel_id, requester=True)
        return self._missing(ch.permissions_for(member), required)
