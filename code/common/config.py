# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v1.4.0"


class Config:
    def __init__(self, logger: Optional[logging.Logger] = None):

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = os.getenv(key)
            if v is None or v.strip() == "":
                v = env_default
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str = "0") -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except Exception:
                try:
                    return float(env_default)
                except Exception:
                    return 0.0

        self.BOT_TOKEN = _str("BOT_TOKEN")
        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").upper()

        # 0 disables the operator channel / guild-scoped command registration
        self.LOG_CHANNEL_ID = _int("LOG_CHANNEL_ID", "0")
        self.TEST_GUILD_ID = _int("TEST_GUILD_ID", "0")

        self.WEBHOOK_NAME = _str("WEBHOOK_NAME", "message highway") or "message highway"
        self.DEFAULT_AVATAR_URL = _str("DEFAULT_AVATAR_URL")

        self.MESSAGE_WINDOW_SIZE = max(1, _int("MESSAGE_WINDOW_SIZE", "20"))
        self.MAX_MOVE_MESSAGES = max(1, _int("MAX_MOVE_MESSAGES", "50"))
        self.MAX_MESSAGE_AGE_DAYS = max(1, _int("MAX_MESSAGE_AGE_DAYS", "14"))
        self.MAX_CONTENT_LENGTH = max(1, _int("MAX_CONTENT_LENGTH", "2000"))
        self.SEND_DELAY_SECONDS = max(0.0, _float("SEND_DELAY_SECONDS", "1.0"))
        self.CONSENT_TIMEOUT_SECONDS = max(0.0, _float("CONSENT_TIMEOUT_SECONDS", "0"))

        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

    @property
    def consent_timeout(self) -> Optional[float]:
        """Deadline for a consent session in seconds, or None to wait forever."""
        return self.CONSENT_TIMEOUT_SECONDS or None

    def validate(self) -> list[str]:
        """
        Return human readable problems that prevent the bot from starting.
        """
        problems = []
        if not (self.BOT_TOKEN or "").strip():
            problems.append("BOT_TOKEN is missing")
        if self.MESSAGE_WINDOW_SIZE > 100:
            problems.append("MESSAGE_WINDOW_SIZE cannot exceed 100")
        if self.MAX_MOVE_MESSAGES > 100:
            problems.append(
                "MAX_MOVE_MESSAGES cannot exceed 100 (bulk delete limit)"
            )
        if self.MAX_MESSAGE_AGE_DAYS > 14:
            problems.append(
                "MAX_MESSAGE_AGE_DAYS cannot exceed 14 (bulk delete limit)"
            )
        for p in problems:
            self.logger.error("[⛔] Config: %s", p)
        return problems
