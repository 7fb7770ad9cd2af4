# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import contextvars
import logging

move_id = contextvars.ContextVar("move_id", default=None)
guild_name = contextvars.ContextVar("guild_name", default=None)


def format_prefix() -> str:
    """
    Build a prefix like:
      - "[<guild>][move <id>]" inside a move invocation, else
      - "[<guild>]" when only the guild is known.
    """
    guild = guild_name.get()
    mid = move_id.get()

    parts = []
    if guild:
        parts.append(f"[{guild}]")
    if mid:
        parts.append(f"[move {mid}]")

    return "".join(parts) + " " if parts else ""


class MovePrefixFilter(logging.Filter):
    """
    Prepend the current guild/move context to every highway log line.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            prefix = format_prefix()
        except Exception:
            prefix = ""

        if prefix and not getattr(record, "_move_prefix_injected", False):
            record.msg = prefix + str(record.msg)
            record._move_prefix_injected = True
        return True
