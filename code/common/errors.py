# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Exception hierarchy for moving messages between channels."""

from __future__ import annotations

from typing import Iterable, Optional

FALLBACK_MESSAGE = (
    "something went terribly wrong there... i let my developer know, "
    "hopefully it gets fixed soon!"
)


class HighwayError(Exception):
    """Base exception for every error a move can end with."""

    def user_message(self) -> str:
        return FALLBACK_MESSAGE


class PermissionDenied(HighwayError):
    """The bot or the requester lacks a capability in a channel."""

    def __init__(
        self,
        missing: Iterable[str],
        *,
        channel_id: Optional[int] = None,
        requester: bool = False,
    ):
        self.missing = sorted(set(missing))
        self.channel_id = channel_id
        self.requester = requester
        super().__init__(
            f"missing {', '.join(self.missing) or 'permissions'} in channel {channel_id}"
        )

    def user_message(self) -> str:
        names = ", ".join(f"**{m.replace('_', ' ')}**" for m in self.missing)
        where = f" in <#{self.channel_id}>" if self.channel_id else ""
        if self.requester:
            return f"you need {names} permissions{where} for that"
        return f"please beg the mods to give me these permissions{where} first: {names}"


class UnrepresentableMessage(HighwayError):
    """A target message has content that can't be posted again faithfully."""

    TOO_LONG = "too_long"
    RICH = "rich"

    def __init__(self, message_id: int, reason: str = RICH):
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"message {message_id} is unrepresentable ({reason})")

    def user_message(self) -> str:
        if self.reason == self.TOO_LONG:
            return (
                "one of the messages is too long, someone with nitro sent it "
                "but bots dont have nitro sadly"
            )
        return (
            "one of the messages has something i cant recreate, like buttons "
            "or a sticker.. sorry"
        )


class LimitExceeded(HighwayError):
    """The assembled message set is over the count or age ceiling."""

    COUNT = "count"
    AGE = "age"

    def __init__(self, kind: str, limit: int):
        self.kind = kind
        self.limit = limit
        super().__init__(f"{kind} limit of {limit} exceeded")

    def user_message(self) -> str:
        if self.kind == self.AGE:
            return f"i can't work with messages older than {self.limit} days, sorry"
        return f"i can work with up to {self.limit} messages at once, sorry"


class InvalidDestination(HighwayError):
    """The chosen destination can't receive the messages."""

    def __init__(self, channel_id: int, reason: str):
        self.channel_id = channel_id
        self.reason = reason
        super().__init__(f"channel {channel_id}: {reason}")

    def user_message(self) -> str:
        return self.reason


class CacheMissError(HighwayError):
    """No history was observed for a channel since the bot started."""

    def __init__(self, channel_id: int):
        self.channel_id = channel_id
        super().__init__(f"no cached history for channel {channel_id}")

    def user_message(self) -> str:
        return (
            "i haven't seen any messages in this channel since i woke up, "
            "so i don't know what to move.."
        )


class UpstreamApiError(HighwayError):
    """A Discord API call failed part way through a move.

    ``report`` holds whatever was already done; nothing is rolled back.
    """

    def __init__(self, step: str, original: BaseException, report=None):
        self.step = step
        self.original = original
        self.report = report
        super().__init__(f"{step} failed: {original}")

    def user_message(self) -> str:
        done = len(self.report.replicated) if self.report is not None else 0
        if done:
            return (
                f"discord stopped me while {self.step}, {done} message(s) were "
                "already moved and are still there, check both channels"
            )
        return FALLBACK_MESSAGE


def user_message(err: BaseException) -> str:
    """Map any error to the text shown to the person who started the move."""
    if isinstance(err, HighwayError):
        return err.user_message()
    return FALLBACK_MESSAGE
