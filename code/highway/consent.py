# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Consent sessions: before messages from several people are moved, everyone
whose messages are affected (except whoever started the move) has to agree.

Clicks on the prompt buttons reach a session through
:class:`InteractionRegistry`, which only hands a subscriber the clicks aimed
at its own prompt message.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

logger = logging.getLogger("highway.consent")

AGREE = "agree"
REFUSE = "refuse"
ACTIONS = (AGREE, REFUSE)


@dataclass(frozen=True)
class ComponentAction:
    """A button click on some message."""

    message_id: int
    action: str
    user_id: int


_END = object()


class Subscription:
    def __init__(
        self,
        registry: "InteractionRegistry",
        message_id: int,
        predicate: Optional[Callable[[ComponentAction], bool]] = None,
    ):
        self.registry = registry
        self.message_id = int(message_id)
        self.predicate = predicate
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: ComponentAction) -> bool:
        if event.message_id != self.message_id:
            return False
        return self.predicate is None or bool(self.predicate(event))

    def _push(self, item) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ComponentAction:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self.closed = True
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self.registry.unsubscribe(self)
        self.closed = True


class InteractionRegistry:
    """Subscriptions keyed by target message id."""

    def __init__(self):
        self._subs: dict[int, list[Subscription]] = {}

    def __len__(self) -> int:
        return sum(len(v) for v in self._subs.values())

    def subscribe(
        self,
        message_id: int,
        predicate: Optional[Callable[[ComponentAction], bool]] = None,
    ) -> Subscription:
        sub = Subscription(self, message_id, predicate)
        self._subs.setdefault(sub.message_id, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.message_id)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subs[sub.message_id]

    def dispatch(self, event: ComponentAction) -> bool:
        """Deliver ``event`` to matching subscribers. True if anyone took it."""
        delivered = False
        for sub in list(self._subs.get(int(event.message_id), ())):
            if sub.matches(event):
                sub._push(event)
                delivered = True
        return delivered

    def end(self, message_id: int) -> None:
        """The message is gone: finish every stream that watches it."""
        for sub in self._subs.pop(int(message_id), []):
            sub._push(_END)


class ConsentOutcome(Enum):
    PENDING = "pending"
    BYPASSED = "bypassed"
    APPROVED = "approved"
    REFUSED = "refused"
    ABANDONED = "abandoned"


@dataclass
class ConsentSession:
    target_message_ids: list[int]
    initiator_id: int
    pending_authors: set[int] = field(default_factory=set)
    prompt_message_id: Optional[int] = None
    outcome: ConsentOutcome = ConsentOutcome.PENDING
    agreed: list[int] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.outcome in (ConsentOutcome.BYPASSED, ConsentOutcome.APPROVED)

    @property
    def resolved(self) -> bool:
        return self.outcome is not ConsentOutcome.PENDING

    def apply(self, event: ComponentAction) -> bool:
        """
        Feed one click into the session. Returns True if the state changed.
        Clicks from anyone not currently pending are ignored.
        """
        if self.resolved or event.user_id not in self.pending_authors:
            return False
        if event.action == REFUSE:
            self.outcome = ConsentOutcome.REFUSED
            return True
        if event.action == AGREE:
            self.pending_authors.discard(event.user_id)
            self.agreed.append(event.user_id)
            if not self.pending_authors:
                self.outcome = ConsentOutcome.APPROVED
            return True
        return False


def _mentions(user_ids: Iterable[int]) -> str:
    return ", ".join(f"<@{u}>" for u in sorted(user_ids))


class ConsentCoordinator:
    def __init__(self, transport, registry: InteractionRegistry, *, timeout: Optional[float] = None):
        self.transport = transport
        self.registry = registry
        self.timeout = timeout

    @staticmethod
    def open_session(
        messages, *, initiator_id: int, has_override: bool = False
    ) -> ConsentSession:
        """
        Build the session for a set of messages. With nobody else affected,
        or an initiator allowed to move anything, it is bypassed at once.
        """
        ids = [m.id for m in messages]
        pending = {int(m.author_id) for m in messages} - {int(initiator_id)}
        session = ConsentSession(
            target_message_ids=ids,
            initiator_id=int(initiator_id),
            pending_authors=pending,
        )
        if has_override or not pending:
            session.outcome = ConsentOutcome.BYPASSED
        return session

    def render(self, session: ConsentSession, destination_id: Optional[int] = None) -> str:
        where = f" to <#{destination_id}>" if destination_id else ""
        count = len(session.target_message_ids)
        lines = [
            f"<@{session.initiator_id}> wants to move {count} message(s){where}, "
            "some of them are yours.",
            f"waiting for: {_mentions(session.pending_authors)}",
        ]
        if session.agreed:
            lines.append(f"agreed: {_mentions(session.agreed)}")
        lines.append(
            "everyone listed has to press **agree**, anyone listed can **refuse**."
        )
        return "\n".join(lines)

    async def run(
        self,
        messages,
        *,
        channel_id: int,
        initiator_id: int,
        has_override: bool = False,
        destination_id: Optional[int] = None,
    ) -> ConsentSession:
        session = self.open_session(
            messages, initiator_id=initiator_id, has_override=has_override
        )
        if session.resolved:
            logger.debug("Consent bypassed for %s message(s)", len(messages))
            return session

        session.prompt_message_id = await self.transport.post_prompt(
            channel_id, self.render(session, destination_id), ACTIONS
        )
        sub = self.registry.subscribe(
            session.prompt_message_id, lambda ev: ev.action in ACTIONS
        )
        logger.info(
            "[🗳️] Waiting for %s author(s) to agree on prompt %s",
            len(session.pending_authors),
            session.prompt_message_id,
        )
        try:
            if self.timeout:
                await asyncio.wait_for(
                    self._collect(session, sub, channel_id, destination_id),
                    self.timeout,
                )
            else:
                await self._collect(session, sub, channel_id, destination_id)
        except asyncio.TimeoutError:
            logger.info(
                "[⌛] Consent prompt %s expired after %ss",
                session.prompt_message_id,
                self.timeout,
            )
            await self.transport.edit_prompt(
                channel_id,
                session.prompt_message_id,
                "nobody finished voting in time, nothing was moved",
                final=True,
            )
        finally:
            sub.close()
            self.transport.release_prompt(session.prompt_message_id)

        if not session.resolved:
            session.outcome = ConsentOutcome.ABANDONED
        logger.info(
            "[🗳️] Consent prompt %s resolved: %s",
            session.prompt_message_id,
            session.outcome.value,
        )
        return session

    async def _collect(self, session, sub, channel_id, destination_id) -> None:
        async for event in sub:
            if not session.apply(event):
                logger.debug(
                    "Ignoring %s from %s on prompt %s",
                    event.action,
                    event.user_id,
                    event.message_id,
                )
                continue
            if session.resolved:
                return
            await self.transport.edit_prompt(
                channel_id,
                session.prompt_message_id,
                self.render(session, destination_id),
            )
