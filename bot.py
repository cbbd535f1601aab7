__version__ = "1.0.0"


import asyncio
import logging
import os
import sys
import typing

import discord
from aiohttp import ClientSession
from colorama import init

from core import checks
from core.attachments import AttachmentStore
from core.blocklist import BlockList
from core.clients import ApiClient, MongoDBClient
from core.commands import CommandRouter
from core.config import ConfigManager
from core.models import configure_logging, getLogger
from core.queue import SerializationQueue
from core.relay import RelayEngine
from core.thread import ThreadManager

init()

logger = getLogger(__name__)


temp_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "temp")
if not os.path.exists(temp_dir):
    os.mkdir(temp_dir)

if sys.platform == "win32":
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    except AttributeError:
        logger.error("Failed to use WindowsProactorEventLoopPolicy.", exc_info=True)


class RelayBot(discord.Client):
    """
    The relay bot.

    It owns the configuration, the database client, the HTTP session and
    every engine component, and is handed to each of them on construction.
    """

    def __init__(self):
        self.config = ConfigManager(self)
        self.config.populate_cache()

        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = True
        super().__init__(intents=intents)

        self.session = None
        self._api = None
        self._connected = None
        self._started = False

        self.queue = SerializationQueue(timeout=self.config.get_seconds("thread_creation_timeout"))
        self.threads = ThreadManager(self, self.queue)
        self.blocklist = BlockList(self)
        self.attachments = AttachmentStore(self)
        self.relay = RelayEngine(self)
        self.router = CommandRouter(self)

        self.log_file_name = os.path.join(temp_dir, f"{self.token.split('.')[0]}.log")
        self._configure_logging()
        self.startup()

    def startup(self):
        logger.line()
        logger.info("relaymail v%s", __version__)
        logger.line()
        logger.info("discord.py: v%s", discord.__version__)
        logger.line()

    def _configure_logging(self):
        level_text = self.config["log_level"].upper()
        logging_levels = {
            "CRITICAL": logging.CRITICAL,
            "ERROR": logging.ERROR,
            "WARNING": logging.WARNING,
            "INFO": logging.INFO,
            "DEBUG": logging.DEBUG,
        }
        logger.line()

        log_level = logging_levels.get(level_text)
        if log_level is None:
            self.config.remove("log_level")
            log_level = logging.INFO
            logger.warning("Invalid logging level set: %s.", level_text)
            logger.warning("Using default logging level: INFO.")
        else:
            logger.info("Logging level: %s", level_text)

        logger.info("Log file: %s", self.log_file_name)
        configure_logging(self.log_file_name, log_level, self.config["file_log_format"])
        logger.debug("Successfully configured logging.")

    @property
    def api(self) -> ApiClient:
        if self._api is None:
            if self.config["database_type"].lower() == "mongodb":
                self._api = MongoDBClient(self)
            else:
                logger.critical("Invalid database type.")
                raise RuntimeError
        return self._api

    def run(self):
        async def runner():
            async with self:
                self._connected = asyncio.Event()
                self.session = ClientSession()
                try:
                    await self.start(self.token)
                except discord.PrivilegedIntentsRequired:
                    logger.critical(
                        "Privileged intents are not explicitly granted in the discord developers dashboard."
                    )
                except discord.LoginFailure:
                    logger.critical("Invalid token")
                except Exception:
                    logger.critical("Fatal exception", exc_info=True)
                finally:
                    if self.session:
                        await self.session.close()
                    if not self.is_closed():
                        await self.close()

        try:
            asyncio.run(runner(), debug=bool(os.getenv("DEBUG_ASYNCIO")))
        except (KeyboardInterrupt, SystemExit):
            logger.info("Received signal to terminate bot and event loop.")
        finally:
            logger.info("Closing the event loop.")

    @property
    def token(self) -> str:
        token = self.config["token"]
        if token is None:
            logger.critical("TOKEN must be set, set this as bot token found on the Discord Developer Portal.")
            sys.exit(0)
        return token

    @property
    def guild_id(self) -> typing.Optional[int]:
        guild_id = self.config["guild_id"]
        if guild_id is not None:
            try:
                return int(str(guild_id))
            except ValueError:
                self.config.remove("guild_id")
                logger.critical("Invalid GUILD_ID set.")
        else:
            logger.debug("No GUILD_ID set.")
        return None

    @property
    def guild(self) -> typing.Optional[discord.Guild]:
        """
        The guild that the bot is serving
        (the server where users message it from)
        """
        return discord.utils.get(self.guilds, id=self.guild_id)

    @property
    def modmail_guild(self) -> typing.Optional[discord.Guild]:
        """
        The guild that the bot is operating in
        (where the bot is creating threads)
        """
        modmail_guild_id = self.config["modmail_guild_id"]
        if modmail_guild_id is None:
            return self.guild
        try:
            guild = discord.utils.get(self.guilds, id=int(modmail_guild_id))
            if guild is not None:
                return guild
        except ValueError:
            pass
        self.config.remove("modmail_guild_id")
        logger.critical("Invalid MODMAIL_GUILD_ID set.")
        return self.guild

    @property
    def main_category(self) -> typing.Optional[discord.CategoryChannel]:
        if self.modmail_guild is not None:
            category_id = self.config["main_category_id"]
            if category_id is not None:
                try:
                    cat = discord.utils.get(self.modmail_guild.categories, id=int(category_id))
                    if cat is not None:
                        return cat
                except ValueError:
                    pass
                self.config.remove("main_category_id")
                logger.debug("MAIN_CATEGORY_ID was invalid, removed.")
            cat = discord.utils.get(self.modmail_guild.categories, name="Modmail")
            if cat is not None:
                self.config["main_category_id"] = cat.id
                logger.debug(
                    'No main category set explicitly, setting category "Modmail" as the main category.'
                )
                return cat
        return None

    @property
    def log_channel(self) -> typing.Optional[discord.TextChannel]:
        channel_id = self.config["log_channel_id"]
        if channel_id is not None:
            try:
                channel = self.get_channel(int(channel_id))
                if channel is not None:
                    return channel
            except ValueError:
                pass
            logger.debug("LOG_CHANNEL_ID was invalid, removed.")
            self.config.remove("log_channel_id")

        guild = self.modmail_guild
        if guild is None:
            return None
        if guild.system_channel is not None:
            return guild.system_channel
        if guild.text_channels:
            return guild.text_channels[0]
        logger.warning("No log channel set, set one with `LOG_CHANNEL_ID`.")
        return None

    @property
    def prefix(self) -> str:
        return str(self.config["prefix"])

    @property
    def snippet_prefix(self) -> str:
        return self.config["snippet_prefix"] or self.prefix * 2

    @property
    def snippets(self) -> typing.Dict[str, dict]:
        return self.config["snippets"]

    async def wait_for_connected(self) -> None:
        await self.wait_until_ready()
        await self._connected.wait()
        await self.config.wait_until_ready()

    async def get_or_fetch_user(self, id: int) -> discord.User:
        """
        Retrieve a User based on their ID.

        This tries getting the user from the cache and falls back to making
        an API call if they're not found in the cache.
        """
        return self.get_user(id) or await self.fetch_user(id)

    async def get_or_fetch_channel(self, id: int) -> typing.Optional[discord.abc.GuildChannel]:
        channel = self.get_channel(id)
        if channel is not None:
            return channel
        try:
            return await self.fetch_channel(id)
        except (discord.NotFound, discord.Forbidden):
            return None

    async def on_connect(self):
        try:
            await self.api.validate_database_connection()
        except Exception:
            logger.debug("Logging out due to failed database connection.")
            return await self.close()

        logger.debug("Connected to gateway.")
        await self.config.refresh()
        await self.api.setup_indexes()
        self._connected.set()

    async def on_ready(self):
        """Bot startup, sets presence."""

        # Wait until config cache is populated with stuff from db and on_connect ran
        await self.wait_for_connected()

        if self.guild is None:
            logger.error("Logging out due to invalid GUILD_ID.")
            return await self.close()

        if self._started:
            logger.line()
            logger.warning("Bot restarted due to internal discord reloading.")
            logger.line()
            return

        logger.line()
        logger.debug("Client ready.")
        logger.info("Logged in as: %s", self.user)
        logger.info("Bot ID: %s", self.user.id)
        logger.info("Prefix: %s", self.prefix)
        logger.info("Guild Name: %s", self.guild.name)
        logger.info("Guild ID: %s", self.guild.id)
        if self.modmail_guild != self.guild:
            logger.info("Receiving guild ID: %s", self.modmail_guild.id)
        logger.line()

        status = self.config["status"]
        if status:
            await self.change_presence(activity=discord.Game(status))

        other_guilds = [guild for guild in self.guilds if guild not in {self.guild, self.modmail_guild}]
        if any(other_guilds):
            logger.warning(
                "The bot is in more servers other than the main and staff server. "
                "This may cause data compromise (%s).",
                ", ".join(str(guild.name) for guild in other_guilds),
            )
        self._started = True

    async def on_message(self, message):
        await self.wait_for_connected()
        if message.author.bot:
            return

        if isinstance(message.channel, discord.DMChannel):
            await self.relay.process_dm(message)
            return

        if self.user in message.mentions:
            await self.relay.alert_mention(message)

        if checks.is_staff(self, message):
            await self.process_commands(message)

    async def process_commands(self, message):
        await self.router.process(message)

    async def on_raw_message_edit(self, payload: discord.RawMessageUpdateEvent):
        await self.wait_for_connected()
        if payload.guild_id is not None or "content" not in payload.data:
            return

        author_data = payload.data.get("author")
        if author_data is None or author_data.get("bot"):
            return

        before = payload.cached_message.content if payload.cached_message is not None else None
        author = await self.get_or_fetch_user(int(author_data["id"]))
        await self.relay.process_dm_edit(author, before, payload.data["content"])

    async def on_member_join(self, member):
        await self.wait_for_connected()
        await self.relay.greet(member)

    async def on_error(self, event_method, *args, **kwargs):
        logger.error("Ignoring exception in %s.", event_method)
        logger.error("Unexpected exception:", exc_info=sys.exc_info())


def main():
    bot = RelayBot()
    bot.run()


if __name__ == "__main__":
    main()
