import asyncio
import itertools
from datetime import datetime, timezone
from unittest.mock import MagicMock

import discord
import pytest
from aiohttp import ClientResponseError
from pymongo.errors import DuplicateKeyError

from core.attachments import AttachmentStore
from core.blocklist import BlockList
from core.clients import ApiClient
from core.commands import CommandRouter
from core.config import ConfigManager
from core.queue import SerializationQueue
from core.relay import RelayEngine
from core.thread import ThreadManager

_ids = itertools.count(900000000000000000)


def next_id() -> int:
    return next(_ids)


def http_error(cls=discord.HTTPException, status=500, reason="Internal Server Error"):
    return cls(MagicMock(status=status, reason=reason), "error")


class FakeApi(ApiClient):
    """In-memory record store. Every call yields to the event loop like a real round trip."""

    def __init__(self, bot):
        super().__init__(bot, None)
        self.threads = []
        self.blocked = {}
        self.logs = []
        self.config_doc = {}
        self.fail_create_thread = False

    async def setup_indexes(self):
        pass

    async def validate_database_connection(self):
        pass

    async def find_open_thread(self, user_id):
        await asyncio.sleep(0)
        for data in self.threads:
            if data["user_id"] == str(user_id) and data["status"] == "open":
                return dict(data)
        return None

    async def find_open_thread_by_channel(self, channel_id):
        await asyncio.sleep(0)
        for data in self.threads:
            if data["channel_id"] == str(channel_id) and data["status"] == "open":
                return dict(data)
        return None

    async def create_thread(self, data):
        await asyncio.sleep(0)
        if self.fail_create_thread:
            raise ConnectionError("store unavailable")
        if any(t["user_id"] == data["user_id"] and t["status"] == "open" for t in self.threads):
            raise DuplicateKeyError("duplicate open thread")
        self.threads.append(dict(data))
        return data

    async def close_thread(self, channel_id):
        await asyncio.sleep(0)
        for data in self.threads:
            if data["channel_id"] == str(channel_id) and data["status"] == "open":
                data["status"] = "closed"
                return True
        return False

    async def is_blocked(self, user_id):
        await asyncio.sleep(0)
        return str(user_id) in self.blocked

    async def block_user(self, user_id):
        await asyncio.sleep(0)
        self.blocked.setdefault(str(user_id), datetime.now(timezone.utc))

    async def unblock_user(self, user_id):
        await asyncio.sleep(0)
        self.blocked.pop(str(user_id), None)

    async def get_user_logs(self, user_id):
        await asyncio.sleep(0)
        return [
            {k: v for k, v in log.items() if k != "content"} for log in self.logs if log["user_id"] == str(user_id)
        ]

    async def create_log(self, user_id, username, content):
        await asyncio.sleep(0)
        filename = f"log-{len(self.logs)}.txt"
        data = {
            "filename": filename,
            "user_id": str(user_id),
            "username": username,
            "created_at": datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc),
            "content": content,
            "url": self.log_url(filename),
        }
        self.logs.append(data)
        return data

    async def get_log(self, filename):
        return next((log for log in self.logs if log["filename"] == filename), None)

    async def get_config(self):
        return dict(self.config_doc)

    async def update_config(self, data):
        self.config_doc = dict(data)
        return self.config_doc


class FakeRole:
    def __init__(self, name, position=1, hoist=True, default=False):
        self.id = next_id()
        self.name = name
        self.position = position
        self.hoist = hoist
        self._default = default

    def is_default(self):
        return self._default


class FakeUser:
    def __init__(self, id=None, name="user", *, bot=False, roles=(), nick=None, created_at=None):
        self.id = id or next_id()
        self.name = name
        self.discriminator = "0"
        self.bot = bot
        self.roles = list(roles)
        self.nick = nick
        self.guild_permissions = discord.Permissions.none()
        self.mention = f"<@{self.id}>"
        self.created_at = created_at or datetime(2020, 1, 1, tzinfo=timezone.utc)
        self.sent = []
        self.send_error = None

    def __str__(self):
        return self.name

    async def send(self, content=None, **kwargs):
        await asyncio.sleep(0)
        if self.send_error is not None:
            raise self.send_error
        message = FakeMessage(content or "", author=None)
        self.sent.append((content, kwargs))
        return message


class FakeAttachment:
    def __init__(self, filename="a.png", size=2048, content=b"png-bytes"):
        self.id = next_id()
        self.filename = filename
        self.size = size
        self.url = f"https://cdn.example.com/{self.id}/{filename}"
        self.content = content

    async def to_file(self):
        return f"file:{self.filename}"


class FakeMessage:
    def __init__(self, content="", *, author=None, channel=None, attachments=(), guild=None, mentions=()):
        self.id = next_id()
        self.content = content
        self.author = author
        self.channel = channel
        self.guild = guild if guild is not None else getattr(channel, "guild", None)
        self.attachments = list(attachments)
        self.mentions = list(mentions)
        self.created_at = datetime.now(timezone.utc)
        self.edits = []
        self.deleted = False

    @property
    def clean_content(self):
        return self.content

    async def edit(self, *, content=None, **kwargs):
        await asyncio.sleep(0)
        self.content = content
        self.edits.append(content)
        return self

    async def delete(self):
        await asyncio.sleep(0)
        self.deleted = True


class FakeChannel:
    def __init__(self, id=None, name="channel", *, guild=None, author=None, topic=None, category=None):
        self.id = id or next_id()
        self.name = name
        self.guild = guild
        self.topic = topic
        self.category = category
        self.author = author
        self.messages = []
        self.deleted = False
        self.send_error = None
        self.delete_error = None

    @property
    def mention(self):
        return f"<#{self.id}>"

    @property
    def contents(self):
        return [m.content for m in self.messages]

    async def send(self, content=None, **kwargs):
        await asyncio.sleep(0)
        if self.send_error is not None:
            raise self.send_error
        message = FakeMessage(content or "", author=self.author, channel=self)
        message.kwargs = kwargs
        self.messages.append(message)
        return message

    async def delete(self, reason=None):
        await asyncio.sleep(0)
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted = True

    async def history(self, limit=None, oldest_first=False):
        messages = self.messages if oldest_first else list(reversed(self.messages))
        for message in messages[:limit]:
            yield message


class FakeGuild:
    def __init__(self, id=None, name="guild", bot_user=None):
        self.id = id or next_id()
        self.name = name
        self.bot_user = bot_user
        self.members = {}
        self.channels = []
        self.categories = []
        self.system_channel = None
        self.default_role = FakeRole("@everyone", position=0, hoist=False, default=True)
        self.create_error = None
        self.created = []

    @property
    def text_channels(self):
        return list(self.channels)

    def get_member(self, user_id):
        return self.members.get(user_id)

    async def create_text_channel(self, name, *, category=None, overwrites=None, topic=None, reason=None):
        await asyncio.sleep(0)
        if self.create_error is not None:
            raise self.create_error
        channel = FakeChannel(name=name, guild=self, author=self.bot_user, topic=topic, category=category)
        channel.overwrites = overwrites
        self.channels.append(channel)
        self.created.append(channel)
        return channel


class FakeResponse:
    def __init__(self, data, status=200):
        self.data = data
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise ClientResponseError(MagicMock(real_url="https://cdn.example.com"), (), status=self.status)

    async def read(self):
        await asyncio.sleep(0)
        return self.data


class FakeSession:
    def __init__(self):
        self.files = {}
        self.status = 200
        self.error = None

    def get(self, url):
        if self.error is not None:
            raise self.error
        return FakeResponse(self.files.get(url, b"data"), self.status)


class FakeBot:
    """Stands in for `RelayBot`, wiring the real engine components to in-memory fakes."""

    def __init__(self, attachment_dir):
        self.config = ConfigManager(self)
        self.config.populate_cache()
        self.config._cache.update(
            {
                "prefix": "!",
                "snippet_prefix": None,
                "mention": "@here",
                "log_url": "https://logs.example.com/",
                "attachment_dir": str(attachment_dir),
                "use_nicknames": False,
                "always_reply": False,
                "always_reply_anon": False,
                "inbox_server_permission": None,
                "greeting_message": None,
                "snippets": {},
            }
        )

        self.user = FakeUser(name="relaymail", bot=True)
        self.guild = FakeGuild(name="main", bot_user=self.user)
        self.modmail_guild = FakeGuild(name="staff", bot_user=self.user)
        self.main_category = None
        self.log_channel = FakeChannel(name="logs", guild=self.modmail_guild, author=self.user)
        self.users = {}
        self.session = FakeSession()

        self.api = FakeApi(self)
        self.queue = SerializationQueue()
        self.threads = ThreadManager(self, self.queue)
        self.blocklist = BlockList(self)
        self.attachments = AttachmentStore(self)
        self.relay = RelayEngine(self)
        self.router = CommandRouter(self)

    @property
    def loop(self):
        return asyncio.get_running_loop()

    @property
    def prefix(self):
        return str(self.config["prefix"])

    @property
    def snippet_prefix(self):
        return self.config["snippet_prefix"] or self.prefix * 2

    @property
    def snippets(self):
        return self.config["snippets"]

    def add_user(self, name="user", **kwargs) -> FakeUser:
        user = FakeUser(name=name, **kwargs)
        self.users[user.id] = user
        return user

    def add_staff(self, name="mod", **kwargs) -> FakeUser:
        member = FakeUser(name=name, **kwargs)
        self.modmail_guild.members[member.id] = member
        return member

    async def get_or_fetch_user(self, id):
        await asyncio.sleep(0)
        return self.users.get(id)

    async def get_or_fetch_channel(self, id):
        await asyncio.sleep(0)
        for channel in self.modmail_guild.channels + [self.log_channel]:
            if channel.id == id:
                return channel
        return None

    def dm(self, user, content="", attachments=()) -> FakeMessage:
        return FakeMessage(content, author=user, attachments=attachments)

    async def drain(self):
        """Waits for every background task the relay engine spawned."""
        while self.relay.background_tasks:
            await asyncio.gather(*self.relay.background_tasks, return_exceptions=True)


@pytest.fixture
def bot(tmp_path):
    return FakeBot(tmp_path / "attachments")
