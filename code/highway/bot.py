# =============================================================================
#  Message Highway
#  Copyright (C) 2025 github.com/message-highway
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import aiohttp
import discord
from discord.errors import LoginFailure
from dotenv import load_dotenv

from common import logctx
from common.config import Config, CURRENT_VERSION
from highway.cache import MessageCache
from highway.consent import ConsentCoordinator, InteractionRegistry
from highway.events import EventSync
from highway.permissions import GuildPermissionEvaluator
from highway.pipeline import MigrationPipeline
from highway.rate_limiter import ActionType, RateLimitManager
from highway.transport import DiscordTransport
from highway.webhooks import WebhookCache

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

LEVEL_NAME = os.getenv("LOG_LEVEL", "INFO").upper()
LEVEL = getattr(logging, LEVEL_NAME, logging.INFO)

formatter = logging.Formatter(
    "%(asctime)s | %(levelname)-5s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger("highway")


def setup_logging(level: int = LEVEL) -> None:
    root = logging.getLogger()
    root.setLevel(level)

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    ch.setLevel(level)
    root.addHandler(ch)

    for lib in (
        "discord",
        "discord.client",
        "discord.gateway",
        "discord.state",
        "discord.http",
    ):
        logging.getLogger(lib).setLevel(logging.WARNING)
    logging.getLogger("discord.client").setLevel(logging.ERROR)

    logger.setLevel(level)


class HighwayBot:
    def __init__(self, config: Config | None = None):
        self.config = config or Config(logger=logger)

        intents = discord.Intents.default()
        intents.message_content = True
        intents.webhooks = True
        intents.members = False
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.bot = discord.Bot(intents=intents, loop=self.loop)
        self.bot.highway = self

        self.session: aiohttp.ClientSession | None = None
        self._shutting_down = False

        self.ratelimit = RateLimitManager(
            {ActionType.WEBHOOK_MESSAGE: self.config.SEND_DELAY_SECONDS}
        )
        self.transport = DiscordTransport(self.bot)
        self.cache = MessageCache(self.config.MESSAGE_WINDOW_SIZE)
        self.webhooks = WebhookCache(
            self.transport, name=self.config.WEBHOOK_NAME, ratelimit=self.ratelimit
        )
        self.registry = InteractionRegistry()
        self.consent = ConsentCoordinator(
            self.transport, self.registry, timeout=self.config.consent_timeout
        )
        self.pipeline = MigrationPipeline(
            cache=self.cache,
            webhooks=self.webhooks,
            transport=self.transport,
            consent=self.consent,
            permissions=GuildPermissionEvaluator(self.transport),
            ratelimit=self.ratelimit,
            max_messages=self.config.MAX_MOVE_MESSAGES,
            max_age_days=self.config.MAX_MESSAGE_AGE_DAYS,
            max_content_length=self.config.MAX_CONTENT_LENGTH,
            default_avatar_url=self.config.DEFAULT_AVATAR_URL,
        )
        self.events = EventSync(self.cache, self.webhooks, self.registry, self.transport)
        self.events.register(self.bot)

        self.bot.add_listener(self.on_ready, "on_ready")
        self.bot.add_listener(self.on_guild_join, "on_guild_join")
        self.bot.load_extension("highway.commands")

        for name in ("highway.consent", "highway.webhooks"):
            logging.getLogger(name).addFilter(logctx.MovePrefixFilter())

    async def on_ready(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.transport.set_session(self.session)
        logger.info(
            "[🤖] Logged in as %s in %s guild(s)",
            self.bot.user.name if self.bot.user else "?",
            len(self.bot.guilds),
        )

    async def on_guild_join(self, guild: discord.Guild):
        logger.info("[👋] Joined guild %s (%s)", guild.name, guild.id)

    async def notify_operator(self, text: str) -> None:
        if not self.config.LOG_CHANNEL_ID:
            return
        await self.transport.notify_operator(self.config.LOG_CHANNEL_ID, text)

    async def _shutdown(self):
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down…")

        try:
            if self.session is not None and not self.session.closed:
                await self.session.close()
        except Exception:
            logger.debug("[shutdown] aiohttp session close failed", exc_info=True)

        try:
            if not self.bot.is_closed():
                await self.bot.close()
        except Exception:
            logger.debug("[shutdown] bot close failed", exc_info=True)

        logger.info("Shutdown complete.")

    def run(self):
        """
        Starts the bot and manages the event loop.
        """
        logger.info("[✨] Starting Message Highway %s", CURRENT_VERSION)
        if self.config.validate():
            sys.exit(1)

        loop = self.loop

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(
                    sig, lambda s=sig: asyncio.create_task(self._shutdown())
                )
            except (NotImplementedError, RuntimeError):
                break

        try:
            loop.run_until_complete(self.bot.start(self.config.BOT_TOKEN))
        except LoginFailure as e:
            logger.error(
                "[⛔] Discord login failed: %s. Check BOT_TOKEN in your config.", e
            )
        finally:
            loop.run_until_complete(self._shutdown())
            pending = asyncio.all_tasks(loop=loop)
            for task in pending:
                task.cancel()
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()


def main():
    setup_logging()
    HighwayBot().run()


if __name__ == "__main__":
    main()
