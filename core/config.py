import asyncio
import json
import os
import typing
from copy import deepcopy
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv
import isodate

from core.models import InvalidConfigError, getLogger
from core.utils import strtobool

logger = getLogger(__name__)
load_dotenv()


class _Default:
    pass


Default = _Default()


class ConfigManager:

    public_keys = {
        # bot settings
        "prefix": "!",
        "snippet_prefix": None,
        "mention": "@here",
        "main_category_id": None,
        "log_channel_id": None,
        "status": "Message me for help",
        # staff
        "inbox_server_permission": None,
        "use_nicknames": False,
        "always_reply": False,
        "always_reply_anon": False,
        # threads
        "response_message": "Thank you for your message! Our mod team will reply to you here as soon as possible.",
        "greeting_message": None,
        "thread_creation_timeout": isodate.Duration(),
    }

    private_keys = {
        "snippets": {},
    }

    protected_keys = {
        "guild_id": None,
        "modmail_guild_id": None,
        "token": None,
        "connection_uri": None,
        "database_type": "mongodb",
        "log_url": "https://example.com/",
        "attachment_dir": "attachments",
        "log_level": "INFO",
        "file_log_format": "plain",
    }

    time_deltas = {"thread_creation_timeout"}

    booleans = {"use_nicknames", "always_reply", "always_reply_anon"}

    defaults = {**public_keys, **private_keys, **protected_keys}
    all_keys = set(defaults.keys())

    def __init__(self, bot):
        self.bot = bot
        self._cache = {}
        self.ready_event = asyncio.Event()

    def __repr__(self):
        return repr(self._cache)

    def populate_cache(self) -> dict:
        data = deepcopy(self.defaults)

        # populate from env var and .env file
        data.update({k.lower(): v for k, v in os.environ.items() if k.lower() in self.all_keys})
        config_json = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.json")
        if os.path.exists(config_json):
            logger.debug("Loading envs from config.json.")
            with open(config_json, "r", encoding="utf-8") as f:
                # config.json overrides env vars
                try:
                    data.update({k.lower(): v for k, v in json.load(f).items() if k.lower() in self.all_keys})
                except json.JSONDecodeError:
                    logger.critical("Failed to load config.json env values.", exc_info=True)
        self._cache = data
        return self._cache

    async def update(self):
        """Writes the non-default database-backed keys to the database."""
        await self.bot.api.update_config(self.filter_default(self._cache))

    async def refresh(self) -> dict:
        """Refreshes internal cache with data from database"""
        for k, v in (await self.bot.api.get_config()).items():
            k = k.lower()
            if k in self.private_keys or k in self.public_keys:
                self._cache[k] = v
        if not self.ready_event.is_set():
            self.ready_event.set()
            logger.debug("Successfully fetched configurations from database.")
        return self._cache

    async def wait_until_ready(self) -> None:
        await self.ready_event.wait()

    def __setitem__(self, key: str, item: typing.Any) -> None:
        key = key.lower()
        logger.info("Setting %s.", key)
        if key not in self.all_keys:
            raise InvalidConfigError(f'Configuration "{key}" is invalid.')
        self._cache[key] = item

    def __getitem__(self, key: str) -> typing.Any:
        return self.get(key)

    def __delitem__(self, key: str) -> None:
        return self.remove(key)

    def get(self, key: str, convert=True) -> typing.Any:
        key = key.lower()
        if key not in self.all_keys:
            raise InvalidConfigError(f'Configuration "{key}" is invalid.')
        if key not in self._cache:
            self._cache[key] = deepcopy(self.defaults[key])
        value = self._cache[key]

        if not convert:
            return value

        if key in self.time_deltas:
            if not isinstance(value, (isodate.Duration, timedelta)):
                try:
                    value = isodate.parse_duration(value)
                except isodate.ISO8601Error:
                    logger.warning(
                        '%s needs to be an ISO-8601 duration formatted duration, not "%s".', key, value
                    )
                    value = self.remove(key)

        elif key in self.booleans:
            try:
                value = strtobool(value)
            except ValueError:
                value = self.remove(key)

        return value

    def get_seconds(self, key: str) -> typing.Optional[float]:
        """A duration key in seconds, `None` when it is unset or zero."""
        value = self.get(key)
        if isinstance(value, isodate.Duration):
            value = value.totimedelta(start=datetime.now(timezone.utc))
        seconds = value.total_seconds()
        return seconds or None

    def set(self, key: str, item: typing.Any, convert=True) -> None:
        if not convert:
            return self.__setitem__(key, item)

        if key in self.time_deltas:
            try:
                isodate.parse_duration(item)
            except isodate.ISO8601Error:
                raise InvalidConfigError("Unrecognized time, please use ISO-8601 duration format.")
            return self.__setitem__(key, item)

        if key in self.booleans:
            try:
                return self.__setitem__(key, strtobool(item))
            except ValueError:
                raise InvalidConfigError("Must be a yes/no value.")

        return self.__setitem__(key, item)

    def remove(self, key: str) -> typing.Any:
        key = key.lower()
        logger.info("Removing %s.", key)
        if key not in self.all_keys:
            raise InvalidConfigError(f'Configuration "{key}" is invalid.')
        self._cache[key] = deepcopy(self.defaults[key])
        return self._cache[key]

    def items(self) -> typing.Iterable:
        return self._cache.items()

    @classmethod
    def filter_valid(cls, data: typing.Dict[str, typing.Any]) -> typing.Dict[str, typing.Any]:
        return {
            k.lower(): v
            for k, v in data.items()
            if k.lower() in cls.public_keys or k.lower() in cls.private_keys
        }

    @classmethod
    def filter_default(cls, data: typing.Dict[str, typing.Any]) -> typing.Dict[str, typing.Any]:
        filtered = {}
        for k, v in data.items():
            default = cls.defaults.get(k.lower(), Default)
            if default is Default:
                logger.error("Unexpected configuration detected: %s.", k)
                continue
            if v != default:
                filtered[k.lower()] = v
        return cls.filter_valid(filtered)
