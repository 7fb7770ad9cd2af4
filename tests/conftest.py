"""Shared fixtures: fake Discord transport and message factories."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from highway.cache import CachedMessage, MessageCache, MessageContent
from highway.consent import ConsentCoordinator, InteractionRegistry
from highway.pipeline import MigrationPipeline
from highway.rate_limiter import ActionType, RateLimitManager
from highway.transport import Destination
from highway.webhooks import WebhookCache

APP_ID = 999
BOT_USER_ID = 998
SOURCE = 100
DEST = 200
PROMPT_ID = 777

# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_cached(
    mid: int,
    author_id: int = 1,
    channel_id: int = SOURCE,
    text: str | None = None,
    **kwargs: Any,
) -> CachedMessage:
    """Build a cached message snapshot with sensible defaults."""
    content = kwargs.pop("content", None) or MessageContent(
        text=f"message {mid}" if text is None else text
    )
    return CachedMessage(
        id=mid,
        channel_id=channel_id,
        author_id=author_id,
        content=content,
        display_name=kwargs.pop("display_name", f"user{author_id}"),
        **kwargs,
    )


def make_discord_message(
    mid: int,
    author_id: int = 1,
    channel_id: int = SOURCE,
    content: str = "hello",
    **overrides: Any,
) -> SimpleNamespace:
    """A stand-in with the attributes py-cord messages expose."""
    author = overrides.pop(
        "author",
        SimpleNamespace(
            id=author_id,
            name=f"user{author_id}",
            nick=None,
            global_name=None,
            avatar=None,
            guild_avatar=None,
        ),
    )
    msg = SimpleNamespace(
        id=mid,
        channel=SimpleNamespace(id=channel_id),
        guild=SimpleNamespace(id=42),
        author=author,
        content=content,
        embeds=[],
        attachments=[],
        components=[],
        stickers=[],
        activity=None,
        application=None,
        application_id=None,
        poll=None,
        type=discord.MessageType.default,
        webhook_id=None,
        created_at=datetime.now(timezone.utc),
    )
    for key, value in overrides.items():
        setattr(msg, key, value)
    return msg


def days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


async def wait_for_subscription(registry: InteractionRegistry, count: int = 1) -> None:
    """Yield to the loop until a consent prompt is listening."""
    for _ in range(200):
        if len(registry) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("consent prompt never subscribed")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeTransport:
    """Records every outbound call; nothing touches the network."""

    application_id = APP_ID
    user_id = BOT_USER_ID

    def __init__(self) -> None:
        self.list_webhooks = AsyncMock(return_value=[])
        self.create_webhook = AsyncMock(
            side_effect=lambda cid, name: SimpleNamespace(
                id=5000 + cid, token=f"token-{cid}", application_id=APP_ID
            )
        )
        self.execute_webhook = AsyncMock(return_value=1)
        self.download = AsyncMock(side_effect=lambda att: f"file:{att.filename}")
        self.history_after = AsyncMock(return_value=[])
        self.delete_message = AsyncMock()
        self.delete_messages = AsyncMock()
        self.destination = AsyncMock(side_effect=lambda cid: Destination(cid, cid))
        self.post_prompt = AsyncMock(return_value=PROMPT_ID)
        self.edit_prompt = AsyncMock()
        self.release_prompt = MagicMock()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def cache() -> MessageCache:
    return MessageCache(window_size=20)


@pytest.fixture()
def registry() -> InteractionRegistry:
    return InteractionRegistry()


@pytest.fixture()
def ratelimit() -> RateLimitManager:
    return RateLimitManager(
        {
            ActionType.WEBHOOK_MESSAGE: 0,
            ActionType.WEBHOOK_CREATE: 0,
            ActionType.DELETE_MESSAGE: 0,
        }
    )


@pytest.fixture()
def webhooks(transport: FakeTransport, ratelimit: RateLimitManager) -> WebhookCache:
    return WebhookCache(transport, name="message highway", ratelimit=ratelimit)


@pytest.fixture()
def permissions() -> SimpleNamespace:
    """Bot has everything; requester can send but has no override."""

    async def member_missing(channel_id, user_id, required):
        return sorted(p for p in required if p == "manage_messages")

    return SimpleNamespace(
        bot_missing=AsyncMock(return_value=[]),
        member_missing=AsyncMock(side_effect=member_missing),
    )


@pytest.fixture()
def picker() -> SimpleNamespace:
    return SimpleNamespace(choose=AsyncMock(return_value=DEST))


@pytest.fixture()
def pipeline(cache, webhooks, transport, registry, permissions, picker, ratelimit):
    return MigrationPipeline(
        cache=cache,
        webhooks=webhooks,
        transport=transport,
        consent=ConsentCoordinator(transport, registry),
        permissions=permissions,
        picker=picker,
        ratelimit=ratelimit,
        max_messages=50,
        max_age_days=14,
    )
