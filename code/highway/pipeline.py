# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

import aiohttp
import discord

from common import logctx
from common.errors import (
    CacheMissError,
    InvalidDestination,
    LimitExceeded,
    PermissionDenied,
    UnrepresentableMessage,
    UpstreamApiError,
)
from highway.cache import CachedMessage, MessageCache
from highway.consent import ConsentCoordinator, ConsentOutcome
from highway.rate_limiter import ActionType, RateLimitManager
from highway.webhooks import WebhookCache

logger = logging.getLogger("highway.pipeline")
logger.addFilter(logctx.MovePrefixFilter())

BOT_SOURCE_PERMISSIONS = frozenset(
    {"view_channel", "read_message_history", "manage_messages"}
)
BOT_DESTINATION_PERMISSIONS = frozenset({"view_channel", "manage_webhooks"})
OVERRIDE_PERMISSION = "manage_messages"

Progress = Callable[[str], Awaitable[None]]


class MoveMode(Enum):
    SINGLE = "single"
    AND_BELOW = "and_below"
    LAST = "last"


class MoveStatus(Enum):
    DONE = "done"
    REFUSED = "refused"
    ABANDONED = "abandoned"
    NOTHING = "nothing"


@dataclass
class MoveRequest:
    guild_id: int
    source_channel_id: int
    initiator_id: int
    mode: MoveMode = MoveMode.SINGLE
    trigger: Optional[CachedMessage] = None
    count: int = 1
    destination_id: Optional[int] = None


@dataclass
class MigrationReport:
    source_channel_id: int
    destination_id: Optional[int] = None
    status: Optional[MoveStatus] = None
    targets: list[int] = field(default_factory=list)
    replicated: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    deleted: list[int] = field(default_factory=list)
    prompt_message_id: Optional[int] = None

    def summary(self) -> str:
        if self.status is MoveStatus.REFUSED:
            return "someone refused, so i didn't move anything"
        if self.status is MoveStatus.ABANDONED:
            return (
                "the vote never finished, so i left everything where it was "
                ":person_shrugging:"
            )
        if self.status is MoveStatus.NOTHING:
            return "there was nothing i could move there"
        text = f"done :incoming_envelope: moved {len(self.replicated)} message(s)"
        if self.skipped:
            text += f", left {len(self.skipped)} that were mine or empty"
        return text


def vehicle_for(count: int) -> str:
    if count == 1:
        return "starting up the bike :motor_scooter:"
    if count <= 10:
        return "starting up the car :red_car:"
    if count <= 20:
        return "starting up the truck :pickup_truck:"
    if count <= 30:
        return "starting up the truck :truck:"
    if count <= 40:
        return "starting up the lorry :articulated_lorry:"
    return "starting up the ship :ship:"


class MigrationPipeline:
    """
    Moves a set of messages: picks the destination, checks permissions,
    collects consent, posts replicas through the destination webhook and
    deletes the originals. Nothing done is undone when a later step fails.
    """

    def __init__(
        self,
        *,
        cache: MessageCache,
        webhooks: WebhookCache,
        transport,
        consent: ConsentCoordinator,
        permissions,
        picker=None,
        ratelimit: Optional[RateLimitManager] = None,
        max_messages: int = 50,
        max_age_days: int = 14,
        max_content_length: int = 2000,
        default_avatar_url: Optional[str] = None,
    ):
        self.cache = cache
        self.webhooks = webhooks
        self.transport = transport
        self.consent = consent
        self.picker = picker
        self.permissions = permissions
        self.ratelimit = ratelimit or RateLimitManager()
        self.max_messages = int(max_messages)
        self.max_age = timedelta(days=int(max_age_days))
        self.max_content_length = int(max_content_length)
        self.default_avatar_url = default_avatar_url

    @contextlib.contextmanager
    def _upstream(self, step: str, report: Optional[MigrationReport] = None):
        try:
            yield
        except (discord.DiscordException, aiohttp.ClientError) as e:
            logger.warning("[⛔] Discord call failed while %s: %s", step, e)
            raise UpstreamApiError(step, e, report) from e

    async def run(
        self,
        request: MoveRequest,
        progress: Optional[Progress] = None,
        picker=None,
    ) -> MigrationReport:
        token = logctx.move_id.set(uuid.uuid4().hex[:6])
        try:
            return await self._run(request, progress, picker or self.picker)
        finally:
            logctx.move_id.reset(token)

    async def _run(
        self, request: MoveRequest, progress: Optional[Progress], picker
    ) -> MigrationReport:
        report = MigrationReport(source_channel_id=request.source_channel_id)

        destination_id = request.destination_id
        if destination_id is None:
            if picker is None:
                raise ValueError("no destination and no channel picker")
            destination_id = await picker.choose(request)
        report.destination_id = int(destination_id)
        if report.destination_id == int(request.source_channel_id):
            raise InvalidDestination(
                report.destination_id, "that's the channel the messages are already in.."
            )

        with self._upstream("looking up the channel"):
            source = await self.transport.destination(request.source_channel_id)
            dest = await self.transport.destination(report.destination_id)
        with self._upstream("checking permissions"):
            has_override = await self._check_permissions(request, source, dest)

        messages = await self._assemble(request)
        report.targets = [m.id for m in messages]
        self._validate([m for m in messages if not self._is_ours(m)])
        movable = []
        for m in messages:
            if self._is_ours(m) or not m.is_reproducible:
                report.skipped.append(m.id)
            else:
                movable.append(m)
        logger.info(
            "[🚚] Moving %s message(s) from #%s to #%s (%s skipped)",
            len(movable),
            request.source_channel_id,
            dest.channel_id,
            len(report.skipped),
        )
        if not movable:
            report.status = MoveStatus.NOTHING
            return report

        with self._upstream("asking for consent", report):
            session = await self.consent.run(
                movable,
                channel_id=request.source_channel_id,
                initiator_id=request.initiator_id,
                has_override=has_override,
                destination_id=dest.channel_id,
            )
        report.prompt_message_id = session.prompt_message_id

        if session.outcome is ConsentOutcome.REFUSED:
            with self._upstream("removing the prompt", report):
                await self.transport.delete_message(
                    request.source_channel_id, session.prompt_message_id
                )
            report.status = MoveStatus.REFUSED
            return report
        if session.outcome is ConsentOutcome.ABANDONED:
            report.status = MoveStatus.ABANDONED
            return report

        if progress is not None:
            with self._upstream("reporting progress", report):
                await progress(vehicle_for(len(movable)))

        await self._replicate(movable, dest, report)
        await self._delete_originals(request.source_channel_id, report)

        if session.prompt_message_id is not None:
            with self._upstream("updating the prompt", report):
                await self.transport.edit_prompt(
                    request.source_channel_id,
                    session.prompt_message_id,
                    "everyone agreed, the messages were moved :incoming_envelope:",
                    final=True,
                )
        report.status = MoveStatus.DONE
        return report

    def _is_ours(self, message: CachedMessage) -> bool:
        """Replicas and the bot's own prompts are never moved."""
        if message.is_from_webhook:
            return True
        bot_id = getattr(self.transport, "user_id", None)
        return bot_id is not None and message.author_id == int(bot_id)

    async def _check_permissions(self, request: MoveRequest, source, dest) -> bool:
        """Raise PermissionDenied before anything changes; return override."""
        # the consent prompt is posted in the source channel
        prompt = "send_messages_in_threads" if source.thread_id else "send_messages"
        missing = await self.permissions.bot_missing(
            request.source_channel_id, BOT_SOURCE_PERMISSIONS | {prompt}
        )
        if missing:
            raise PermissionDenied(missing, channel_id=request.source_channel_id)

        missing = await self.permissions.bot_missing(
            dest.webhook_channel_id, BOT_DESTINATION_PERMISSIONS
        )
        if missing:
            raise PermissionDenied(missing, channel_id=dest.channel_id)

        send = "send_messages_in_threads" if dest.thread_id else "send_messages"
        missing = await self.permissions.member_missing(
            dest.channel_id, request.initiator_id, {send}
        )
        if missing:
            raise PermissionDenied(missing, channel_id=dest.channel_id, requester=True)

        override = await self.permissions.member_missing(
            request.source_channel_id, request.initiator_id, {OVERRIDE_PERMISSION}
        )
        return not override

    async def _assemble(self, request: MoveRequest) -> list[CachedMessage]:
        if request.mode is MoveMode.LAST:
            return self._assemble_last(request)

        trigger = request.trigger
        if trigger is None:
            raise ValueError(f"{request.mode.value} move needs a trigger message")
        if request.mode is MoveMode.SINGLE:
            return [trigger]

        self._check_age(trigger)
        with self._upstream("reading the channel history"):
            after = await self.transport.history_after(
                request.source_channel_id, trigger.id, self.max_messages
            )
        if len(after) + 1 > self.max_messages:
            raise LimitExceeded(LimitExceeded.COUNT, self.max_messages)

        own = self.webhooks.owned_ids()
        app_id = getattr(self.transport, "application_id", None)
        # cached snapshots carry edits seen since the history page was cut
        seen = {
            m.id: m
            for m in self.cache.newer_than(request.source_channel_id, trigger.id) or []
        }
        messages = [trigger]
        for raw in after:
            cached = seen.get(int(raw.id))
            messages.append(
                cached
                or CachedMessage.from_discord(
                    raw, own_webhook_ids=own, application_id=app_id
                )
            )
        return sorted(messages, key=lambda m: m.id)

    def _assemble_last(self, request: MoveRequest) -> list[CachedMessage]:
        limit = min(self.max_messages, self.cache.window_size)
        if request.count > limit:
            raise LimitExceeded(LimitExceeded.COUNT, limit)
        newest = self.cache.query(request.source_channel_id, request.count)
        if newest is None:
            raise CacheMissError(request.source_channel_id)
        for m in newest:
            self._check_age(m)
        return list(reversed(newest))

    def _check_age(self, message: CachedMessage) -> None:
        created = message.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) - created > self.max_age:
            raise LimitExceeded(LimitExceeded.AGE, self.max_age.days)

    def _validate(self, messages: list[CachedMessage]) -> None:
        for m in messages:
            if not m.content.is_valid:
                raise UnrepresentableMessage(m.id, UnrepresentableMessage.RICH)
            if len(m.content.text) > self.max_content_length:
                raise UnrepresentableMessage(m.id, UnrepresentableMessage.TOO_LONG)

    async def _replicate(self, messages, dest, report: MigrationReport) -> None:
        for m in messages:
            await self.ratelimit.acquire_for_channel(
                ActionType.WEBHOOK_MESSAGE, dest.webhook_channel_id
            )
            with self._upstream("preparing the webhook", report):
                webhook = await self.webhooks.get_or_create(dest.webhook_channel_id)
            with self._upstream("copying attachments", report):
                files = [await self.transport.download(a) for a in m.attachments]
            with self._upstream("sending the messages", report):
                await self.transport.execute_webhook(
                    webhook.id,
                    webhook.token,
                    content=m.content.text,
                    embeds=m.content.embeds,
                    files=files,
                    username=m.display_name,
                    avatar_url=m.avatar_url or self.default_avatar_url,
                    thread_id=dest.thread_id,
                )
            report.replicated.append(m.id)
            logger.debug("[➡️] Replicated %s into #%s", m.id, dest.channel_id)

    async def _delete_originals(self, channel_id: int, report: MigrationReport) -> None:
        ids = list(report.replicated)
        if not ids:
            return
        with self._upstream("deleting the originals", report):
            if len(ids) == 1:
                await self.transport.delete_message(channel_id, ids[0])
            else:
                await self.transport.delete_messages(channel_id, ids)
        report.deleted = ids
        logger.info("[🗑️] Deleted %s original(s) in #%s", len(ids), channel_id)
