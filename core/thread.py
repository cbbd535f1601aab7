import functools
import typing
from datetime import datetime, timezone

import discord

from core.models import ThreadCreationFailed, ThreadStatus, getLogger
from core.queue import SerializationQueue
from core.utils import format_channel_name

logger = getLogger(__name__)


class Thread:
    """Represents a modmail thread: one staff channel paired with one user."""

    def __init__(
        self,
        channel_id: int,
        user_id: int,
        username: str,
        status: ThreadStatus = ThreadStatus.OPEN,
        created_at: datetime = None,
    ):
        self.channel_id = int(channel_id)
        self.user_id = int(user_id)
        self.username = username
        self.status = ThreadStatus(status)
        self.created_at = created_at or datetime.now(timezone.utc)

    def __repr__(self):
        return (
            f'Thread(user="{self.username}", user_id={self.user_id}, '
            f"channel_id={self.channel_id}, status={self.status.value})"
        )

    def __eq__(self, other):
        if isinstance(other, Thread):
            return self.channel_id == other.channel_id
        return NotImplemented

    def __hash__(self):
        return hash(self.channel_id)

    @property
    def is_open(self) -> bool:
        return self.status is ThreadStatus.OPEN

    @classmethod
    def from_document(cls, data: dict) -> "Thread":
        return cls(
            data["channel_id"],
            data["user_id"],
            data["username"],
            data.get("status", ThreadStatus.OPEN),
            data.get("created_at"),
        )

    def to_document(self) -> dict:
        return {
            "channel_id": str(self.channel_id),
            "user_id": str(self.user_id),
            "username": self.username,
            "status": self.status.value,
            "created_at": self.created_at,
        }


class ThreadManager:
    """
    Class that handles finding, creating and closing threads.

    It is the only owner of the user to channel mapping. Lookups always go
    to the store, and creation runs on the serialization queue where the
    lookup is repeated before anything is created.
    """

    def __init__(self, bot, queue: SerializationQueue):
        self.bot = bot
        self.queue = queue

    async def find(self, user_id: int) -> typing.Optional[Thread]:
        """The open thread of a user, if any."""
        data = await self.bot.api.find_open_thread(user_id)
        return Thread.from_document(data) if data else None

    async def find_by_channel(self, channel_id: int) -> typing.Optional[Thread]:
        """The open thread shown in a channel, if any."""
        data = await self.bot.api.find_open_thread_by_channel(channel_id)
        return Thread.from_document(data) if data else None

    async def get_or_create(
        self, recipient: typing.Union[discord.User, discord.Member], message: discord.Message = None
    ) -> typing.Tuple[Thread, bool]:
        """
        Finds the open thread of `recipient` or creates one.

        Parameters
        ----------
        recipient : Union[discord.User, discord.Member]
            The user on the DM side.
        message : discord.Message, optional
            The message that caused the lookup. Its content is attached to
            `ThreadCreationFailed` if the thread cannot be created.

        Returns
        -------
        Tuple[Thread, bool]
            The thread, and whether it was created by this call.

        Raises
        ------
        ThreadCreationFailed
            The channel could not be created or the record could not be saved.
        """
        thread = await self.find(recipient.id)
        if thread is not None:
            return thread, False
        return await self.queue.submit(functools.partial(self._create, recipient, message))

    async def _create(self, recipient, message) -> typing.Tuple[Thread, bool]:
        # something queued before us may have created it already
        thread = await self.find(recipient.id)
        if thread is not None:
            return thread, False

        content = getattr(message, "content", "") or ""
        try:
            channel = await self._create_channel(recipient)
        except discord.HTTPException as e:
            logger.critical("An error occurred while creating a thread channel for %s.", recipient, exc_info=True)
            raise ThreadCreationFailed(recipient, content, e) from e

        thread = Thread(channel.id, recipient.id, str(recipient))
        try:
            await self.bot.api.create_thread(thread.to_document())
        except Exception as e:
            logger.error("Failed to save thread record for %s, removing the channel.", recipient, exc_info=True)
            try:
                await channel.delete(reason="Thread record could not be saved.")
            except discord.HTTPException:
                logger.warning("Failed to remove orphaned thread channel %s.", channel.id)
            raise ThreadCreationFailed(recipient, content, e) from e

        logger.info("Created %r.", thread)
        return thread, True

    async def _create_channel(self, recipient) -> discord.TextChannel:
        guild = self.bot.modmail_guild
        category = self.bot.main_category

        overwrites = {}
        if category is None:
            # keep a channel created outside of the category hidden
            overwrites = {guild.default_role: discord.PermissionOverwrite(read_messages=False)}

        name = format_channel_name(recipient, (c.name for c in guild.text_channels))
        return await guild.create_text_channel(
            name=name,
            category=category,
            overwrites=overwrites,
            topic=f"User ID: {recipient.id}",
            reason="Creating a thread channel.",
        )

    async def close(self, channel_id: int) -> bool:
        """
        Marks the thread shown in `channel_id` as closed.

        Closing is one-way. Closing a channel without an open thread does
        nothing and returns `False`.
        """
        closed = await self.bot.api.close_thread(channel_id)
        if closed:
            logger.info("Closed thread in channel %s.", channel_id)
        else:
            logger.debug("No open thread in channel %s, nothing to close.", channel_id)
        return closed
