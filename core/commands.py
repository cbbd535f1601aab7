import typing
from dataclasses import dataclass

import discord

from core.models import getLogger
from core.utils import chunk, match_user_id

logger = getLogger(__name__)


class InvalidCommand(Exception):
    """A command was recognised but its arguments are not usable."""


@dataclass(frozen=True)
class Reply:
    text: str
    anonymous: bool = False


@dataclass(frozen=True)
class Close:
    pass


@dataclass(frozen=True)
class Block:
    user_id: typing.Optional[int] = None


@dataclass(frozen=True)
class Unblock:
    user_id: typing.Optional[int] = None


@dataclass(frozen=True)
class Logs:
    user_id: typing.Optional[int] = None


@dataclass(frozen=True)
class Snippet:
    """Creates a snippet, or shows it when `text` is `None`."""

    name: str
    text: typing.Optional[str] = None
    anonymous: bool = False


@dataclass(frozen=True)
class DeleteSnippet:
    name: str


@dataclass(frozen=True)
class EditSnippet:
    name: str
    text: str


@dataclass(frozen=True)
class ListSnippets:
    pass


@dataclass(frozen=True)
class UseSnippet:
    name: str


Command = typing.Union[
    Reply, Close, Block, Unblock, Logs, Snippet, DeleteSnippet, EditSnippet, ListSnippets, UseSnippet
]


def _user_arg(name: str, argument: str) -> typing.Optional[int]:
    if not argument:
        return None
    user_id = match_user_id(argument)
    if user_id is None:
        raise InvalidCommand(f"`{argument}` is not a user mention or ID. Usage: `{name} [user]`")
    return user_id


def _snippet_args(name: str, argument: str, needs_text: bool) -> typing.Tuple[str, typing.Optional[str]]:
    parts = argument.split(None, 1)
    if not parts or (needs_text and len(parts) < 2):
        usage = f"{name} <name> <text>" if needs_text else f"{name} <name>"
        raise InvalidCommand(f"Usage: `{usage}`")
    return parts[0].lower(), (parts[1] if len(parts) > 1 else None)


def _parse_reply(argument, anonymous=False):
    return Reply(argument, anonymous)


def _parse_snippet(argument, anonymous=False):
    name, text = _snippet_args("snippet", argument, needs_text=False)
    return Snippet(name, text, anonymous)


def _parse_edit_snippet(argument):
    name, text = _snippet_args("edit_snippet", argument, needs_text=True)
    return EditSnippet(name, text)


def _parse_delete_snippet(argument):
    name, _ = _snippet_args("delete_snippet", argument, needs_text=False)
    return DeleteSnippet(name)


PARSERS: typing.Dict[str, typing.Callable[[str], Command]] = {
    "reply": _parse_reply,
    "r": _parse_reply,
    "anonreply": lambda arg: _parse_reply(arg, anonymous=True),
    "ar": lambda arg: _parse_reply(arg, anonymous=True),
    "close": lambda arg: Close(),
    "block": lambda arg: Block(_user_arg("block", arg)),
    "unblock": lambda arg: Unblock(_user_arg("unblock", arg)),
    "logs": lambda arg: Logs(_user_arg("logs", arg)),
    "snippet": _parse_snippet,
    "s": _parse_snippet,
    "anonsnippet": lambda arg: _parse_snippet(arg, anonymous=True),
    "as": lambda arg: _parse_snippet(arg, anonymous=True),
    "edit_snippet": _parse_edit_snippet,
    "es": _parse_edit_snippet,
    "delete_snippet": _parse_delete_snippet,
    "ds": _parse_delete_snippet,
    "snippets": lambda arg: ListSnippets(),
}


def parse_command(content: str, prefix: str, snippet_prefix: str = None) -> typing.Optional[Command]:
    """
    Parses a staff message into a command.

    Parameters
    ----------
    content : str
        The raw message content.
    prefix : str
        The command prefix.
    snippet_prefix : str, optional
        The prefix that sends a snippet by name. Checked before `prefix`
        since it usually starts with it.

    Returns
    -------
    Optional[Command]
        `None` when the message is not a command.

    Raises
    ------
    InvalidCommand
        The command is known but its arguments are invalid.
    """
    if snippet_prefix and content.startswith(snippet_prefix):
        name = content[len(snippet_prefix) :].strip().lower()
        return UseSnippet(name) if name else None

    if not prefix or not content.startswith(prefix):
        return None

    parts = content[len(prefix) :].split(None, 1)
    if not parts:
        return None
    name = parts[0].lower()
    argument = parts[1].strip() if len(parts) > 1 else ""

    parser = PARSERS.get(name)
    if parser is None:
        return None
    return parser(argument)


class CommandRouter:
    """Runs parsed staff commands. Every command variant has exactly one handler."""

    def __init__(self, bot):
        self.bot = bot
        self.handlers = {
            Reply: self.reply,
            Close: self.close,
            Block: self.block,
            Unblock: self.unblock,
            Logs: self.logs,
            Snippet: self.snippet,
            DeleteSnippet: self.delete_snippet,
            EditSnippet: self.edit_snippet,
            ListSnippets: self.list_snippets,
            UseSnippet: self.use_snippet,
        }

    async def process(self, message: discord.Message):
        """
        Parses a staff message and runs it.

        With `always_reply` on, plain messages in a thread channel are sent
        to the user as replies. Messages starting with a prefix never are,
        even when they name no known command.
        """
        try:
            command = parse_command(message.content, self.bot.prefix, self.bot.snippet_prefix)
        except InvalidCommand as e:
            await message.channel.send(str(e))
            return None

        if command is None:
            if not self.bot.config["always_reply"]:
                return None
            if message.content.startswith((self.bot.prefix, self.bot.snippet_prefix)):
                return None
            if await self.bot.threads.find_by_channel(message.channel.id) is None:
                return None
            command = Reply(message.content, anonymous=self.bot.config["always_reply_anon"])

        return await self.dispatch(message, command)

    async def dispatch(self, message: discord.Message, command: Command):
        handler = self.handlers[type(command)]
        logger.debug("Dispatching %r from %s.", command, message.author)
        return await handler(message, command)

    async def _thread_user(self, message, user_id: typing.Optional[int]) -> typing.Optional[int]:
        if user_id is not None:
            return user_id
        thread = await self.bot.threads.find_by_channel(message.channel.id)
        return thread.user_id if thread is not None else None

    async def reply(self, message, command: Reply):
        if not command.text and not message.attachments:
            await message.channel.send("Usage: `reply <text>`")
            return False
        return await self.bot.relay.reply(message, command.text, command.anonymous)

    async def close(self, message, command: Close):
        return await self.bot.relay.close_thread(message.channel, message.author)

    async def block(self, message, command: Block):
        user_id = await self._thread_user(message, command.user_id)
        if user_id is None:
            await message.channel.send("Please specify a user to block.")
            return
        await self.bot.blocklist.block(user_id)
        await message.channel.send(f"Blocked <@{user_id}> (id {user_id}) from modmail")

    async def unblock(self, message, command: Unblock):
        user_id = await self._thread_user(message, command.user_id)
        if user_id is None:
            await message.channel.send("Please specify a user to unblock.")
            return
        await self.bot.blocklist.unblock(user_id)
        await message.channel.send(f"Unblocked <@{user_id}> (id {user_id}) from modmail")

    async def logs(self, message, command: Logs):
        user_id = await self._thread_user(message, command.user_id)
        if user_id is None:
            await message.channel.send("Please specify a user.")
            return

        entries = await self.bot.api.get_user_logs(user_id)
        if not entries:
            await message.channel.send(f"No logs found for <@{user_id}>.")
            return

        lines = [f"**Log files for <@{user_id}>:**"]
        lines += [f"`{entry['created_at']:%b %d at %H:%M UTC}`: <{entry['url']}>" for entry in entries]
        for part in chunk(lines, 15):
            await message.channel.send("\n".join(part))

    async def _save_snippets(self, snippets: dict) -> None:
        self.bot.config["snippets"] = snippets
        await self.bot.config.update()

    async def snippet(self, message, command: Snippet):
        snippets = dict(self.bot.snippets)
        if command.text is None:
            if command.name not in snippets:
                await message.channel.send(f'Snippet "{command.name}" doesn\'t exist!')
                return
            snippet = snippets[command.name]
            anonymously = "anonymously " if snippet.get("anonymous") else ""
            await message.channel.send(
                f"`{self.bot.snippet_prefix}{command.name}` replies {anonymously}with:\n{snippet['text']}"
            )
            return

        if command.name in snippets:
            await message.channel.send(
                f'Snippet "{command.name}" already exists! '
                f"To edit it, use `{self.bot.prefix}edit_snippet`."
            )
            return
        snippets[command.name] = {"text": command.text, "anonymous": command.anonymous}
        await self._save_snippets(snippets)
        await message.channel.send(
            f'Snippet "{command.name}" created! '
            f"Use it with `{self.bot.snippet_prefix}{command.name}`."
        )

    async def delete_snippet(self, message, command: DeleteSnippet):
        snippets = dict(self.bot.snippets)
        if command.name not in snippets:
            await message.channel.send(f'Snippet "{command.name}" doesn\'t exist!')
            return
        del snippets[command.name]
        await self._save_snippets(snippets)
        await message.channel.send(f'Snippet "{command.name}" deleted!')

    async def edit_snippet(self, message, command: EditSnippet):
        snippets = dict(self.bot.snippets)
        if command.name not in snippets:
            await message.channel.send(f'Snippet "{command.name}" doesn\'t exist!')
            return
        snippets[command.name] = {**snippets[command.name], "text": command.text}
        await self._save_snippets(snippets)
        await message.channel.send(f'Snippet "{command.name}" edited!')

    async def list_snippets(self, message, command: ListSnippets):
        if not self.bot.snippets:
            await message.channel.send("No snippets have been created yet.")
            return
        names = ", ".join(sorted(self.bot.snippets))
        await message.channel.send(f"Available snippets (prefix {self.bot.snippet_prefix}):\n{names}")

    async def use_snippet(self, message, command: UseSnippet):
        snippet = self.bot.snippets.get(command.name)
        if snippet is None:
            await message.channel.send(f'Snippet "{command.name}" doesn\'t exist!')
            return False
        return await self.bot.relay.reply(message, snippet["text"], snippet.get("anonymous", False))
