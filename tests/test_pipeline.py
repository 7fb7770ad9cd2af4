"""End-to-end move scenarios against a fake transport."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import aiohttp
import discord
import pytest

from common.errors import (
    CacheMissError,
    InvalidDestination,
    LimitExceeded,
    PermissionDenied,
    UnrepresentableMessage,
    UpstreamApiError,
)
from highway.cache import CachedAttachment, MessageContent
from highway.consent import AGREE, REFUSE, ComponentAction
from highway.pipeline import MoveMode, MoveRequest, MoveStatus, vehicle_for
from highway.transport import Destination

from conftest import (
    BOT_USER_ID,
    DEST,
    PROMPT_ID,
    SOURCE,
    days_ago,
    make_cached,
    make_discord_message,
    wait_for_subscription,
)


def request(mode=MoveMode.SINGLE, **kwargs):
    kwargs.setdefault("initiator_id", 1)
    return MoveRequest(guild_id=42, source_channel_id=SOURCE, mode=mode, **kwargs)


def click(user_id, action=AGREE):
    return ComponentAction(message_id=PROMPT_ID, action=action, user_id=user_id)


def sent_texts(transport):
    return [c.kwargs["content"] for c in transport.execute_webhook.await_args_list]


class TestMoveLast:
    @pytest.mark.asyncio
    async def test_three_authors_need_two_agreements(self, pipeline, cache, transport, registry):
        for mid, author in ((1, 1), (2, 2), (3, 3)):
            cache.add(make_cached(mid, author_id=author))

        task = asyncio.create_task(
            pipeline.run(request(MoveMode.LAST, count=3, destination_id=DEST))
        )
        await wait_for_subscription(registry)
        registry.dispatch(click(2))
        registry.dispatch(click(3))
        report = await task

        assert report.status is MoveStatus.DONE
        text = transport.post_prompt.await_args.args[1]
        assert "<@2>" in text and "<@3>" in text
        assert sent_texts(transport) == ["message 1", "message 2", "message 3"]
        transport.delete_messages.assert_awaited_once_with(SOURCE, [1, 2, 3])
        # the only single delete would be the prompt, and that is edited instead
        transport.delete_message.assert_not_awaited()
        assert transport.edit_prompt.await_args.kwargs == {"final": True}
        transport.release_prompt.assert_called_once_with(PROMPT_ID)
        assert report.deleted == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_replicas_are_posted_as_the_author(self, pipeline, cache, transport):
        cache.add(make_cached(1, author_id=1, display_name="alice", avatar_url="https://a"))

        await pipeline.run(request(MoveMode.LAST, count=1, destination_id=DEST))

        kwargs = transport.execute_webhook.await_args.kwargs
        assert kwargs["username"] == "alice"
        assert kwargs["avatar_url"] == "https://a"
        assert kwargs["thread_id"] is None
        assert transport.execute_webhook.await_args.args == (5000 + DEST, f"token-{DEST}")

    @pytest.mark.asyncio
    async def test_missing_window_is_a_cache_miss(self, pipeline, transport):
        with pytest.raises(CacheMissError):
            await pipeline.run(request(MoveMode.LAST, count=3, destination_id=DEST))

        transport.execute_webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_count_over_window_is_rejected(self, pipeline, cache):
        cache.add(make_cached(1))

        with pytest.raises(LimitExceeded) as exc:
            await pipeline.run(request(MoveMode.LAST, count=21, destination_id=DEST))

        assert exc.value.kind == LimitExceeded.COUNT

    @pytest.mark.asyncio
    async def test_fewer_cached_than_asked_moves_what_is_there(self, pipeline, cache, transport):
        cache.add(make_cached(1))
        cache.add(make_cached(2))

        report = await pipeline.run(request(MoveMode.LAST, count=5, destination_id=DEST))

        assert report.replicated == [1, 2]

    @pytest.mark.asyncio
    async def test_earlier_prompt_in_the_window_is_skipped(self, pipeline, cache, transport):
        cache.add(
            make_cached(1, author_id=BOT_USER_ID, content=MessageContent.rich("components"))
        )
        cache.add(make_cached(2))

        report = await pipeline.run(request(MoveMode.LAST, count=2, destination_id=DEST))

        assert report.status is MoveStatus.DONE
        assert report.skipped == [1]
        assert report.replicated == [2]
        transport.delete_message.assert_awaited_once_with(SOURCE, 2)


class TestMoveSingle:
    @pytest.mark.asyncio
    async def test_own_message_moves_without_prompt(self, pipeline, transport, picker):
        report = await pipeline.run(request(trigger=make_cached(5, author_id=1)))

        assert report.status is MoveStatus.DONE
        assert report.destination_id == DEST
        picker.choose.assert_awaited_once()
        transport.post_prompt.assert_not_awaited()
        transport.execute_webhook.assert_awaited_once()
        transport.delete_message.assert_awaited_once_with(SOURCE, 5)
        transport.delete_messages.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_attachments_are_reuploaded(self, pipeline, transport):
        trigger = make_cached(
            5, attachments=[CachedAttachment(url="https://cdn/x.png", filename="x.png")]
        )

        await pipeline.run(request(trigger=trigger))

        assert transport.execute_webhook.await_args.kwargs["files"] == ["file:x.png"]

    @pytest.mark.asyncio
    async def test_default_avatar_is_used_when_author_has_none(
        self, pipeline, transport
    ):
        pipeline.default_avatar_url = "https://default"

        await pipeline.run(request(trigger=make_cached(5)))

        assert transport.execute_webhook.await_args.kwargs["avatar_url"] == "https://default"

    @pytest.mark.asyncio
    async def test_refusal_only_deletes_the_prompt(self, pipeline, transport, registry):
        task = asyncio.create_task(pipeline.run(request(trigger=make_cached(5, author_id=2))))
        await wait_for_subscription(registry)
        registry.dispatch(click(2, REFUSE))
        report = await task

        assert report.status is MoveStatus.REFUSED
        transport.execute_webhook.assert_not_awaited()
        transport.delete_messages.assert_not_awaited()
        transport.delete_message.assert_awaited_once_with(SOURCE, PROMPT_ID)

    @pytest.mark.asyncio
    async def test_deleted_prompt_leaves_everything(self, pipeline, transport, registry):
        task = asyncio.create_task(pipeline.run(request(trigger=make_cached(5, author_id=2))))
        await wait_for_subscription(registry)
        registry.end(PROMPT_ID)
        report = await task

        assert report.status is MoveStatus.ABANDONED
        transport.execute_webhook.assert_not_awaited()
        transport.delete_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_moderator_skips_consent(self, pipeline, transport, permissions):
        permissions.member_missing.side_effect = None
        permissions.member_missing.return_value = []

        report = await pipeline.run(request(trigger=make_cached(5, author_id=2)))

        assert report.status is MoveStatus.DONE
        transport.post_prompt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_same_channel_is_rejected(self, pipeline, transport):
        with pytest.raises(InvalidDestination):
            await pipeline.run(request(trigger=make_cached(5), destination_id=SOURCE))

        transport.destination.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_thread_destination_uses_parent_webhook(self, pipeline, transport):
        transport.destination.side_effect = None
        transport.destination.return_value = Destination(300, DEST, thread_id=300)

        await pipeline.run(request(trigger=make_cached(5), destination_id=300))

        transport.list_webhooks.assert_awaited_once_with(DEST)
        assert transport.execute_webhook.await_args.kwargs["thread_id"] == 300

    @pytest.mark.asyncio
    async def test_progress_names_a_vehicle(self, pipeline):
        progress = AsyncMock()

        await pipeline.run(request(trigger=make_cached(5)), progress=progress)

        progress.assert_awaited_once_with(vehicle_for(1))


class TestMoveAndBelow:
    @pytest.mark.asyncio
    async def test_moves_trigger_and_everything_after(self, pipeline, transport, cache):
        cache.add(make_cached(11, text="cached edit"))
        transport.history_after.return_value = [
            make_discord_message(11, content="stale"),
            make_discord_message(12, content="fresh"),
        ]

        report = await pipeline.run(request(MoveMode.AND_BELOW, trigger=make_cached(10)))

        transport.history_after.assert_awaited_once_with(SOURCE, 10, 50)
        assert sent_texts(transport) == ["message 10", "cached edit", "fresh"]
        transport.delete_messages.assert_awaited_once_with(SOURCE, [10, 11, 12])
        assert report.status is MoveStatus.DONE

    @pytest.mark.asyncio
    async def test_too_many_messages(self, pipeline, transport):
        transport.history_after.return_value = [
            make_discord_message(i) for i in range(11, 61)
        ]

        with pytest.raises(LimitExceeded) as exc:
            await pipeline.run(request(MoveMode.AND_BELOW, trigger=make_cached(10)))

        assert exc.value.kind == LimitExceeded.COUNT
        transport.post_prompt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_too_old(self, pipeline, transport):
        with pytest.raises(LimitExceeded) as exc:
            await pipeline.run(
                request(MoveMode.AND_BELOW, trigger=make_cached(10, created_at=days_ago(15)))
            )

        assert exc.value.kind == LimitExceeded.AGE
        transport.history_after.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_own_replicas_are_skipped_and_kept(self, pipeline, transport, webhooks):
        await webhooks.get_or_create(SOURCE)
        transport.history_after.return_value = [
            make_discord_message(11, webhook_id=5000 + SOURCE),
            make_discord_message(12),
        ]

        report = await pipeline.run(request(MoveMode.AND_BELOW, trigger=make_cached(10)))

        assert report.skipped == [11]
        transport.delete_messages.assert_awaited_once_with(SOURCE, [10, 12])


class TestFailures:
    @pytest.mark.asyncio
    async def test_unrepresentable_message_stops_before_side_effects(
        self, pipeline, transport
    ):
        trigger = make_cached(5, content=MessageContent.rich("stickers"))

        with pytest.raises(UnrepresentableMessage) as exc:
            await pipeline.run(request(trigger=trigger))

        assert exc.value.reason == UnrepresentableMessage.RICH
        transport.post_prompt.assert_not_awaited()
        transport.execute_webhook.assert_not_awaited()
        transport.delete_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_message_is_skipped(self, pipeline, transport):
        report = await pipeline.run(request(trigger=make_cached(5, text="")))

        assert report.status is MoveStatus.NOTHING
        assert report.skipped == [5]
        transport.execute_webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_overlong_message(self, pipeline, transport):
        with pytest.raises(UnrepresentableMessage) as exc:
            await pipeline.run(request(trigger=make_cached(5, text="x" * 2001)))

        assert exc.value.reason == UnrepresentableMessage.TOO_LONG
        transport.post_prompt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bot_permissions_are_checked_first(self, pipeline, transport, permissions):
        permissions.bot_missing.return_value = ["manage_webhooks"]

        with pytest.raises(PermissionDenied) as exc:
            await pipeline.run(request(trigger=make_cached(5)))

        assert exc.value.missing == ["manage_webhooks"]
        assert not exc.value.requester
        transport.list_webhooks.assert_not_awaited()
        transport.execute_webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requester_must_be_able_to_send(self, pipeline, transport, permissions):
        permissions.member_missing.side_effect = None
        permissions.member_missing.return_value = ["send_messages"]

        with pytest.raises(PermissionDenied) as exc:
            await pipeline.run(request(trigger=make_cached(5)))

        assert exc.value.requester
        transport.execute_webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_failure_reports_partial_progress(self, pipeline, cache, transport):
        for mid in (1, 2, 3):
            cache.add(make_cached(mid))
        transport.execute_webhook.side_effect = [
            1,
            discord.HTTPException(SimpleNamespace(status=500, reason="Server Error"), "boom"),
        ]

        with pytest.raises(UpstreamApiError) as exc:
            await pipeline.run(request(MoveMode.LAST, count=3, destination_id=DEST))

        assert exc.value.step == "sending the messages"
        assert exc.value.report.replicated == [1]
        assert "1 message(s)" in exc.value.user_message()
        transport.delete_messages.assert_not_awaited()
        transport.delete_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_download_failure_is_upstream(self, pipeline, transport):
        transport.download.side_effect = aiohttp.ClientConnectionError("gone")
        trigger = make_cached(5, attachments=[CachedAttachment(url="u", filename="f")])

        with pytest.raises(UpstreamApiError) as exc:
            await pipeline.run(request(trigger=trigger))

        assert exc.value.step == "copying attachments"


@pytest.mark.parametrize(
    "count, word",
    [(1, "bike"), (5, "car"), (15, "truck"), (25, "truck"), (35, "lorry"), (45, "ship")],
)
def test_vehicle_for(count, word):
    assert word in vehicle_for(count)


class TestSourcePermissions:
    @pytest.mark.asyncio
    async def test_bot_must_be_able_to_post_the_prompt(
        self, pipeline, transport, permissions
    ):
        async def bot_missing(channel_id, required):
            if channel_id == SOURCE and "send_messages" in required:
                return ["send_messages"]
            return []

        permissions.bot_missing.side_effect = bot_missing

        with pytest.raises(PermissionDenied) as exc:
            await pipeline.run(request(trigger=make_cached(5, author_id=2)))

        assert exc.value.missing == ["send_messages"]
        assert exc.value.channel_id == SOURCE
        transport.post_prompt.assert_not_awaited()
        transport.execute_webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_thread_source_needs_thread_send(self, pipeline, transport, permissions):
        transport.destination.side_effect = lambda cid: (
            Destination(SOURCE, 50, thread_id=SOURCE)
            if cid == SOURCE
            else Destination(cid, cid)
        )

        await pipeline.run(request(trigger=make_cached(5)))

        channel_id, required = permissions.bot_missing.await_args_list[0].args
        assert channel_id == SOURCE
        assert "send_messages_in_threads" in required
        assert "send_messages" not in required


@pytest.mark.asyncio
async def test_tokenless_webhook_is_an_upstream_failure(pipeline, transport):
    transport.create_webhook.side_effect = None
    transport.create_webhook.return_value = SimpleNamespace(id=9, token=None)

    with pytest.raises(UpstreamApiError) as exc:
        await pipeline.run(request(trigger=make_cached(5)))

    assert exc.value.step == "preparing the webhook"
    assert exc.value.report.replicated == []
    transport.delete_message.assert_not_awaited()
