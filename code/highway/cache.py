# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional
import logging

import discord

logger = logging.getLogger("highway.cache")

DEFAULT_WINDOW_SIZE = 20
CDN = "https://cdn.discordapp.com"

# message types that can be posted again through a webhook
_REPLAYABLE_TYPES = {discord.MessageType.default, discord.MessageType.reply}


@dataclass
class CachedAttachment:
    url: str
    filename: str
    size: int = 0
    spoiler: bool = False


@dataclass
class MessageContent:
    """
    Either the text/embeds of a message, or a marker that it holds something
    a webhook can't post again (``unrepresentable`` is the reason).
    """

    text: str = ""
    embeds: list[dict] = field(default_factory=list)
    unrepresentable: Optional[str] = None

    @classmethod
    def rich(cls, reason: str) -> "MessageContent":
        return cls(unrepresentable=reason)

    @property
    def is_valid(self) -> bool:
        return self.unrepresentable is None

    @property
    def is_empty(self) -> bool:
        return self.is_valid and not self.text.strip() and not self.embeds


@dataclass
class CachedMessage:
    id: int
    channel_id: int
    author_id: int
    content: MessageContent
    display_name: str = ""
    avatar_url: Optional[str] = None
    is_from_webhook: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attachments: list[CachedAttachment] = field(default_factory=list)

    @property
    def is_reproducible(self) -> bool:
        """True when there is something to post: text, embeds or files."""
        return self.content.is_valid and (
            not self.content.is_empty or bool(self.attachments)
        )

    @classmethod
    def from_discord(
        cls,
        message,
        *,
        own_webhook_ids: Iterable[int] = (),
        application_id: Optional[int] = None,
    ) -> "CachedMessage":
        """
        Snapshot a py-cord message. Only the fields needed to post it again
        are kept.
        """
        author = getattr(message, "author", None)
        if author is None:
            raise ValueError(f"message {getattr(message, 'id', '?')} has no author")

        webhook_id = getattr(message, "webhook_id", None)
        is_replica = webhook_id is not None and (
            int(webhook_id) in set(own_webhook_ids)
            or (
                application_id is not None
                and getattr(message, "application_id", None) == application_id
            )
        )

        return cls(
            id=int(message.id),
            channel_id=int(message.channel.id),
            author_id=int(author.id),
            content=_content_of(message),
            display_name=_display_name(author),
            avatar_url=author_avatar_url(message),
            is_from_webhook=is_replica,
            created_at=getattr(message, "created_at", None)
            or datetime.now(timezone.utc),
            attachments=[
                CachedAttachment(
                    url=a.url,
                    filename=a.filename,
                    size=int(getattr(a, "size", 0) or 0),
                    spoiler=bool(
                        getattr(a, "is_spoiler", lambda: False)()
                    ),
                )
                for a in (getattr(message, "attachments", None) or [])
            ],
        )


def _content_of(message) -> MessageContent:
    if getattr(message, "components", None):
        return MessageContent.rich("components")
    if getattr(message, "activity", None) or getattr(message, "application", None):
        return MessageContent.rich("activity")
    if getattr(message, "stickers", None):
        return MessageContent.rich("stickers")
    if getattr(message, "poll", None):
        return MessageContent.rich("poll")
    kind = getattr(message, "type", discord.MessageType.default)
    if kind not in _REPLAYABLE_TYPES:
        return MessageContent.rich(f"type:{getattr(kind, 'name', kind)}")

    embeds = []
    for e in getattr(message, "embeds", None) or []:
        embeds.append(e.to_dict() if hasattr(e, "to_dict") else dict(e))
    return MessageContent(text=message.content or "", embeds=embeds)


def _display_name(author) -> str:
    return (
        getattr(author, "nick", None)
        or getattr(author, "global_name", None)
        or getattr(author, "name", None)
        or str(author.id)
    )


def author_avatar_url(message) -> Optional[str]:
    """
    Per-guild member avatar first, then the global user avatar. None means
    the webhook falls back to the platform default.
    """
    author = message.author
    guild = getattr(message, "guild", None)

    member_avatar = getattr(author, "guild_avatar", None)
    if member_avatar is not None and guild is not None:
        key = getattr(member_avatar, "key", member_avatar)
        return f"{CDN}/guilds/{guild.id}/users/{author.id}/avatars/{key}.png"

    avatar = getattr(author, "avatar", None)
    if avatar is not None:
        key = getattr(avatar, "key", avatar)
        return f"{CDN}/avatars/{author.id}/{key}.png"
    return None


class MessageCache:
    """
    Per-channel bounded history of message snapshots, fed by gateway events.

    Every method is synchronous; on the event loop that makes each call atomic
    per channel key, so channels never wait on each other.
    """

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE):
        self.window_size = int(window_size)
        self._windows: dict[int, deque[CachedMessage]] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def has_window(self, channel_id: int) -> bool:
        return int(channel_id) in self._windows

    def add(self, message: CachedMessage) -> None:
        cid = int(message.channel_id)
        window = self._windows.get(cid)
        if window is None:
            window = deque(maxlen=self.window_size)
            self._windows[cid] = window
        elif any(m.id == message.id for m in window):
            # duplicate create from a gateway replay
            logger.debug("Ignoring duplicate create for %s in #%s", message.id, cid)
            return
        window.append(message)

    def update(
        self,
        message_id: int,
        channel_id: int,
        *,
        text: Optional[str] = None,
        embeds: Optional[list[dict]] = None,
    ) -> bool:
        cached = self.get(channel_id, message_id)
        if cached is None or not cached.content.is_valid:
            return False
        if text is not None:
            cached.content.text = text
        if embeds is not None:
            cached.content.embeds = list(embeds)
        return True

    def delete(self, message_id: int, channel_id: int) -> None:
        self.delete_bulk((message_id,), channel_id)

    def delete_bulk(self, message_ids: Iterable[int], channel_id: int) -> None:
        window = self._windows.get(int(channel_id))
        if not window:
            return
        ids = {int(i) for i in message_ids}
        kept = [m for m in window if m.id not in ids]
        if len(kept) != len(window):
            window.clear()
            window.extend(kept)

    def get(self, channel_id: int, message_id: int) -> Optional[CachedMessage]:
        window = self._windows.get(int(channel_id))
        if window is None:
            return None
        for m in window:
            if m.id == int(message_id):
                return m
        return None

    def query(self, channel_id: int, limit: int) -> Optional[list[CachedMessage]]:
        """
        Up to ``limit`` newest-first entries.

        Returns None when the channel has no window at all, and a (possibly
        short or empty) list when it does.
        """
        window = self._windows.get(int(channel_id))
        if window is None:
            return None
        out = []
        for m in reversed(window):
            if len(out) >= max(0, int(limit)):
                break
            out.append(m)
        return out

    def newer_than(
        self, channel_id: int, message_id: int
    ) -> Optional[list[CachedMessage]]:
        """Oldest-first entries that arrived after ``message_id``."""
        window = self._windows.get(int(channel_id))
        if window is None:
            return None
        return [m for m in window if m.id > int(message_id)]
