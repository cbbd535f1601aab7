import asyncio
import functools
import typing
from datetime import datetime

import discord
from aiohttp import ClientError

from core.attachments import AttachmentRef, format_attachment
from core.models import (
    AttachmentResolutionFailure,
    DeliveryError,
    DeliveryForbidden,
    Direction,
    ThreadCreationFailed,
    getLogger,
)
from core.thread import Thread
from core.time import human_timedelta
from core.utils import disable_link_previews, escape_code_block, get_timestamp, get_top_role, truncate

logger = getLogger(__name__)

PENDING_MARKER = "\n\n*Attachments pending...*"

MARKERS = {Direction.INBOUND: "«", Direction.OUTBOUND: "»"}


def format_relayed(direction: Direction, name: str, text: str, dt: datetime = None) -> str:
    """`[HH:MM] « **name:** text` for inbound messages, `»` for outbound ones."""
    return f"[{get_timestamp(dt)}] {MARKERS[direction]} **{name}:** {text}"


def delivery_notice(error: DeliveryError) -> str:
    if isinstance(error, DeliveryForbidden):
        return "Could not send reply; the user has likely left the server or blocked the bot"
    if error.status is not None:
        return f"Could not send reply; error code {error.status}"
    return f"Could not send reply: {error.detail}"


class RelayEngine:
    """
    Mirrors messages between user DMs and their thread channels.

    Everything that resolves a thread and posts into it for an inbound DM
    runs as one task on the bot's serialization queue, so messages show up
    in the thread in the order they were received and only one thread is
    ever created per user. Attachment downloads, acknowledgment DMs and
    attachment patching run as independent background tasks.

    Parameters
    ----------
    bot : RelayBot
        The bot, giving access to the thread manager, block list,
        attachment store, queue, config and discord client.
    """

    def __init__(self, bot):
        self.bot = bot
        self._background: typing.Set[asyncio.Task] = set()

    @property
    def background_tasks(self) -> typing.Set[asyncio.Task]:
        return set(self._background)

    def _spawn(self, coro) -> asyncio.Task:
        task = self.bot.loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # inbound

    async def process_dm(self, message: discord.Message) -> typing.Optional[discord.Message]:
        """
        Relays a DM into the author's thread, creating the thread if needed.

        Returns the message posted in the thread, or `None` if nothing was
        posted because the author is blocked or the thread could not be created.
        """
        if await self.bot.blocklist.is_blocked(message.author.id):
            logger.debug("Dropping message from blocked user %s.", message.author)
            return None

        pending = None
        if message.attachments:
            pending = asyncio.ensure_future(self.bot.attachments.save_all(message.attachments))

        return await self.bot.queue.submit(functools.partial(self._relay_dm, message, pending))

    async def _relay_dm(self, message, pending: typing.Optional[asyncio.Future]):
        try:
            channel, created = await self._thread_channel(message)
        except ThreadCreationFailed as e:
            self._drop(pending)
            await self._report_creation_failure(e)
            return None

        content = format_relayed(Direction.INBOUND, str(message.author), message.content, message.created_at)
        try:
            if created:
                await self._send_thread_header(channel, message.author)
            posted = await channel.send(content if pending is None else content + PENDING_MARKER)
        except Exception:
            self._drop(pending)
            raise

        if created:
            self._spawn(self._acknowledge(channel, message.author))
        if pending is not None:
            self._spawn(self._patch_attachments(posted, content, pending))
        return posted

    async def _thread_channel(self, message) -> typing.Tuple[discord.TextChannel, bool]:
        thread, created = await self.bot.threads.get_or_create(message.author, message)
        channel = await self.bot.get_or_fetch_channel(thread.channel_id)
        if channel is None and not created:
            # the channel was deleted by hand, the record is stale
            logger.warning("Channel of %r no longer exists, opening a new thread for %s.", thread, message.author)
            await self.bot.threads.close(thread.channel_id)
            thread, created = await self.bot.threads.get_or_create(message.author, message)
            channel = await self.bot.get_or_fetch_channel(thread.channel_id)

        if channel is None:
            raise ThreadCreationFailed(
                message.author, message.content, LookupError(f"Channel {thread.channel_id} not found.")
            )
        return channel, created

    @staticmethod
    def _drop(pending: typing.Optional[asyncio.Future]) -> None:
        if pending is None:
            return
        if not pending.done():
            pending.cancel()
        elif not pending.cancelled():
            pending.exception()

    async def _send_thread_header(self, channel: discord.TextChannel, user) -> None:
        member = self.bot.guild.get_member(user.id) if self.bot.guild is not None else None
        if member is not None:
            nickname = member.nick or member.name
        else:
            nickname = "NOT ON SERVER"
        logs = await self.bot.api.get_user_logs(user.id)
        age = human_timedelta(user.created_at, accuracy=2, suffix=False)

        await channel.send(
            f"ACCOUNT AGE **{age}**, ID **{user.id}**, NICKNAME **{nickname}**, LOGS **{len(logs)}**\n"
            "-------------------------------"
        )
        await channel.send(
            f"{self.bot.config['mention']} New modmail thread ({user.mention})",
            allowed_mentions=discord.AllowedMentions(everyone=True, roles=True),
        )

    async def _acknowledge(self, channel: discord.TextChannel, user) -> None:
        response = self.bot.config["response_message"]
        if not response:
            return
        try:
            await user.send(response)
        except (discord.HTTPException, ClientError, OSError):
            logger.warning("Failed to send the acknowledgment to %s.", user, exc_info=True)
            await channel.send(
                f"There is an issue sending messages to {user} (id {user.id}); consider messaging manually"
            )

    async def _patch_attachments(self, posted: discord.Message, content: str, pending: asyncio.Future) -> None:
        try:
            refs: typing.List[AttachmentRef] = await pending
        except AttachmentResolutionFailure as e:
            logger.warning("Leaving attachment placeholder on %s: %s", posted.id, e)
            return

        content += "".join("\n\n" + format_attachment(ref) for ref in refs)
        try:
            await posted.edit(content=content)
        except discord.HTTPException:
            logger.warning("Failed to patch attachments into message %s.", posted.id, exc_info=True)

    async def _report_creation_failure(self, error: ThreadCreationFailed) -> None:
        user = error.user
        channel = self.bot.log_channel
        if channel is None:
            logger.critical("Could not report the failed thread creation for %s, no log channel.", user)
            return
        await channel.send(
            f"{self.bot.config['mention']} Error creating modmail thread for {user} ({user.id})!\n\n"
            f"Here's what their message contained:\n"
            f"```{truncate(escape_code_block(error.content), 1800)}```",
            allowed_mentions=discord.AllowedMentions(everyone=True, roles=True),
        )

    async def process_dm_edit(self, author, before: typing.Optional[str], after: str) -> bool:
        """
        Posts a before/after diff of an edited DM into the author's thread.

        Returns whether a diff was posted. Edits that only change surrounding
        whitespace are ignored.
        """
        before = before if before is not None else "*Unavailable due to bot restart*"
        if before.strip() == (after or "").strip():
            return False
        if await self.bot.blocklist.is_blocked(author.id):
            return False

        thread = await self.bot.threads.find(author.id)
        if thread is None:
            return False
        channel = await self.bot.get_or_fetch_channel(thread.channel_id)
        if channel is None:
            return False

        diff = f"**The user edited their message:**\n`B:` {before}\n`A:` {after}"
        await channel.send(disable_link_previews(diff))
        return True

    # outbound

    def _display_names(self, author: discord.Member, anonymous: bool) -> typing.Tuple[str, str]:
        role = get_top_role(author)
        role_name = role.name if role is not None else None

        if anonymous:
            mod_name = role_name or "Moderator"
            return mod_name, f"(Anonymous) ({author.name}) {mod_name}"

        name = author.name
        if self.bot.config["use_nicknames"] and getattr(author, "nick", None):
            name = author.nick
        mod_name = f"({role_name}) {name}" if role_name else name
        return mod_name, mod_name

    async def _deliver(self, thread: Thread, content: str, attachments: typing.Sequence = ()) -> discord.Message:
        try:
            user = await self.bot.get_or_fetch_user(thread.user_id)
        except discord.NotFound as e:
            raise DeliveryForbidden(str(e), e.status) from e
        if user is None:
            raise DeliveryForbidden(f"User {thread.user_id} could not be found.")

        try:
            files = [await a.to_file() for a in attachments]
            return await user.send(content, files=files or None)
        except discord.Forbidden as e:
            raise DeliveryForbidden(str(e), e.status) from e
        except discord.HTTPException as e:
            raise DeliveryError(str(e), e.status) from e
        except (ClientError, OSError) as e:
            raise DeliveryError(str(e)) from e

    async def reply(self, message: discord.Message, text: str, anonymous: bool = False) -> bool:
        """
        Sends a staff reply from a thread channel to the thread's user.

        Parameters
        ----------
        message : discord.Message
            The staff message carrying the command. It is deleted afterwards,
            whether the delivery worked or not.
        text : str
            The reply text.
        anonymous : bool
            Whether to hide the staff member's name from the user.

        Returns
        -------
        bool
            Whether the reply was delivered. `False` also when the channel
            is not a thread.
        """
        thread = await self.bot.threads.find_by_channel(message.channel.id)
        if thread is None:
            return False

        try:
            refs = []
            if message.attachments:
                try:
                    refs = await self.bot.attachments.save_all(message.attachments)
                except AttachmentResolutionFailure as e:
                    logger.warning("Reply attachment not saved: %s", e)

            mod_name, log_name = self._display_names(message.author, anonymous)
            try:
                await self._deliver(thread, f"**{mod_name}:** {text}", message.attachments)
            except DeliveryError as e:
                logger.warning("Failed to deliver reply to %s: %s", thread.user_id, e.detail)
                await message.channel.send(delivery_notice(e))
                return False

            echo = format_relayed(Direction.OUTBOUND, log_name, text)
            echo += "".join(f"\n\n**Attachment:** {ref.url}" for ref in refs)
            await message.channel.send(echo)
            return True
        finally:
            try:
                await message.delete()
            except discord.HTTPException:
                logger.warning("Failed to delete command message %s.", message.id)

    # lifecycle

    async def _transcript(self, channel: discord.TextChannel) -> str:
        lines = []
        async for msg in channel.history(limit=10000, oldest_first=True):
            line = f"[{msg.created_at:%Y-%m-%d %H:%M:%S}] {msg.author}: {msg.content}"
            line += "".join(f"\n{a.url}" for a in msg.attachments)
            lines.append(line)
        return "\n".join(lines)

    async def close_thread(self, channel: discord.TextChannel, closer) -> bool:
        """
        Closes the thread shown in `channel`, archives its transcript and
        deletes the channel.

        The record is closed first. A failing archive is reported in the log
        channel and the thread channel is deleted anyway.

        Returns `False` without doing anything when the channel has no open thread.
        """
        thread = await self.bot.threads.find_by_channel(channel.id)
        if thread is None:
            return False
        if not await self.bot.threads.close(channel.id):
            # closed by someone else in the meantime
            return False

        log_channel = self.bot.log_channel
        notice = f"Modmail thread with {thread.username} ({thread.user_id}) was closed by {closer}\n"
        try:
            await channel.send("Saving logs and closing channel...")
            log = await self.bot.api.create_log(thread.user_id, thread.username, await self._transcript(channel))
        except Exception as e:
            logger.error("Failed to archive %r.", thread, exc_info=True)
            notice += f"Failed to save the logs: `{e}`"
        else:
            notice += f"Logs: <{log['url']}>"

        try:
            await channel.delete(reason=f"Thread closed by {closer}.")
        except discord.HTTPException as e:
            logger.error("Failed to delete the channel of %r.", thread, exc_info=True)
            notice += f"\nFailed to delete {channel.mention}: `{e}`"

        if log_channel is not None:
            await log_channel.send(notice)
        return True

    # ambient events

    async def alert_mention(self, message: discord.Message) -> bool:
        """Tells staff that the bot was mentioned outside of the staff server."""
        author = message.author
        if author.bot or author.id == self.bot.user.id:
            return False
        modmail_guild = self.bot.modmail_guild
        if modmail_guild is not None and (
            message.guild == modmail_guild or modmail_guild.get_member(author.id) is not None
        ):
            return False
        if await self.bot.blocklist.is_blocked(author.id):
            return False

        channel = self.bot.log_channel
        if channel is None:
            return False
        await channel.send(
            f"{self.bot.config['mention']} Bot mentioned in {message.channel.mention} by **{author}**: "
            f'"{message.clean_content}"',
            allowed_mentions=discord.AllowedMentions(everyone=True, roles=True),
        )
        return True

    async def greet(self, member: discord.Member) -> None:
        greeting = self.bot.config["greeting_message"]
        if not greeting or member.guild != self.bot.guild:
            return
        try:
            await member.send(greeting)
        except discord.HTTPException:
            logger.info("Could not greet %s, their DMs are likely closed.", member)
