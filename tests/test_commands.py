import pytest

from core.commands import (
    Block,
    Close,
    DeleteSnippet,
    EditSnippet,
    InvalidCommand,
    ListSnippets,
    Logs,
    Reply,
    Snippet,
    Unblock,
    UseSnippet,
    parse_command,
)
from tests.conftest import FakeChannel, FakeMessage, FakeRole

USER_ID = 123456789012345678


@pytest.mark.parametrize(
    "content, expected",
    [
        ("!reply hello there", Reply("hello there")),
        ("!r hello", Reply("hello")),
        ("!anonreply hi", Reply("hi", anonymous=True)),
        ("!ar hi", Reply("hi", anonymous=True)),
        ("!R  Spaced   text", Reply("Spaced   text")),
        ("!close", Close()),
        ("!block", Block()),
        (f"!block <@{USER_ID}>", Block(USER_ID)),
        (f"!unblock <@!{USER_ID}>", Unblock(USER_ID)),
        (f"!logs {USER_ID}", Logs(USER_ID)),
        ("!s greet Hello!", Snippet("greet", "Hello!")),
        ("!snippet Greet", Snippet("greet")),
        ("!as greet Hello!", Snippet("greet", "Hello!", anonymous=True)),
        ("!es greet Hi!", EditSnippet("greet", "Hi!")),
        ("!ds greet", DeleteSnippet("greet")),
        ("!snippets", ListSnippets()),
        ("!!greet", UseSnippet("greet")),
    ],
)
def test_parse_command(content, expected):
    assert parse_command(content, "!", "!!") == expected


@pytest.mark.parametrize("content", ["hello", "!", "!unknown stuff", "!!", "?r hi"])
def test_parse_non_commands(content):
    assert parse_command(content, "!", "!!") is None


@pytest.mark.parametrize("content", ["!block someone", "!es greet", "!ds", "!s"])
def test_parse_invalid_arguments(content):
    with pytest.raises(InvalidCommand):
        parse_command(content, "!", "!!")


async def thread_channel(bot, name="user"):
    user = bot.add_user(name)
    await bot.relay.process_dm(bot.dm(user, "hello"))
    await bot.drain()
    thread = await bot.threads.find(user.id)
    return user, await bot.get_or_fetch_channel(thread.channel_id)


def staff_message(bot, channel, content, attachments=()):
    author = bot.add_staff("mod", roles=[FakeRole("Support", position=5)])
    return FakeMessage(content, author=author, channel=channel, attachments=attachments)


async def run(bot, message):
    command = parse_command(message.content, bot.prefix, bot.snippet_prefix)
    return await bot.router.dispatch(message, command)


@pytest.mark.asyncio
async def test_block_and_unblock_default_to_thread_user(bot):
    user, channel = await thread_channel(bot)

    await run(bot, staff_message(bot, channel, "!block"))
    assert await bot.blocklist.is_blocked(user.id)
    assert channel.contents[-1] == f"Blocked <@{user.id}> (id {user.id}) from modmail"

    await run(bot, staff_message(bot, channel, "!unblock"))
    assert not await bot.blocklist.is_blocked(user.id)
    assert channel.contents[-1] == f"Unblocked <@{user.id}> (id {user.id}) from modmail"


@pytest.mark.asyncio
async def test_block_outside_thread_needs_a_user(bot):
    channel = FakeChannel(guild=bot.modmail_guild)

    await run(bot, staff_message(bot, channel, "!block"))
    assert channel.contents == ["Please specify a user to block."]

    await run(bot, staff_message(bot, channel, f"!block {USER_ID}"))
    assert await bot.blocklist.is_blocked(USER_ID)


@pytest.mark.asyncio
async def test_reply_command_relays(bot):
    user, channel = await thread_channel(bot)
    message = staff_message(bot, channel, "!r on it")

    assert await run(bot, message)
    assert user.sent[-1][0] == "**(Support) mod:** on it"
    assert message.deleted


@pytest.mark.asyncio
async def test_empty_reply_shows_usage(bot):
    user, channel = await thread_channel(bot)

    assert await run(bot, staff_message(bot, channel, "!r")) is False
    assert channel.contents[-1] == "Usage: `reply <text>`"
    assert len(user.sent) == 1


@pytest.mark.asyncio
async def test_close_command(bot):
    user, channel = await thread_channel(bot)

    assert await run(bot, staff_message(bot, channel, "!close"))
    assert channel.deleted
    assert await run(bot, staff_message(bot, channel, "!close")) is False


@pytest.mark.asyncio
async def test_logs_are_listed_in_chunks(bot):
    for i in range(20):
        await bot.api.create_log(USER_ID, "someone", f"log {i}")
    channel = FakeChannel(guild=bot.modmail_guild)

    await run(bot, staff_message(bot, channel, f"!logs <@{USER_ID}>"))

    assert len(channel.messages) == 2
    first = channel.contents[0].splitlines()
    assert first[0] == f"**Log files for <@{USER_ID}>:**"
    assert first[1] == "`Jan 02 at 03:04 UTC`: <https://logs.example.com/logs/log-0.txt>"
    assert len(first) == 15
    assert len(channel.contents[1].splitlines()) == 6


@pytest.mark.asyncio
async def test_logs_without_entries(bot):
    channel = FakeChannel(guild=bot.modmail_guild)
    await run(bot, staff_message(bot, channel, f"!logs {USER_ID}"))
    assert channel.contents == [f"No logs found for <@{USER_ID}>."]


@pytest.mark.asyncio
async def test_snippet_lifecycle(bot):
    channel = FakeChannel(guild=bot.modmail_guild)

    await run(bot, staff_message(bot, channel, "!s greet Hello, how can we help?"))
    assert channel.contents[-1] == 'Snippet "greet" created! Use it with `!!greet`.'
    assert bot.api.config_doc["snippets"] == {"greet": {"text": "Hello, how can we help?", "anonymous": False}}

    await run(bot, staff_message(bot, channel, "!s greet again"))
    assert channel.contents[-1].startswith('Snippet "greet" already exists!')

    await run(bot, staff_message(bot, channel, "!s greet"))
    assert channel.contents[-1] == "`!!greet` replies with:\nHello, how can we help?"

    await run(bot, staff_message(bot, channel, "!es greet Hi there"))
    assert channel.contents[-1] == 'Snippet "greet" edited!'
    assert bot.snippets["greet"]["text"] == "Hi there"

    await run(bot, staff_message(bot, channel, "!snippets"))
    assert channel.contents[-1] == "Available snippets (prefix !!):\ngreet"

    await run(bot, staff_message(bot, channel, "!ds greet"))
    assert channel.contents[-1] == 'Snippet "greet" deleted!'
    assert bot.snippets == {}

    await run(bot, staff_message(bot, channel, "!ds greet"))
    assert channel.contents[-1] == 'Snippet "greet" doesn\'t exist!'


@pytest.mark.asyncio
async def test_use_snippet_replies(bot):
    user, channel = await thread_channel(bot)
    await run(bot, staff_message(bot, channel, "!as thanks Thanks for waiting!"))

    await run(bot, staff_message(bot, channel, "!s thanks"))
    assert channel.contents[-1] == "`!!thanks` replies anonymously with:\nThanks for waiting!"

    message = staff_message(bot, channel, "!!thanks")
    assert await run(bot, message)
    assert user.sent[-1][0] == "**Support:** Thanks for waiting!"
    assert message.deleted


@pytest.mark.asyncio
async def test_unknown_snippet(bot):
    _, channel = await thread_channel(bot)
    assert await run(bot, staff_message(bot, channel, "!!missing")) is False
    assert channel.contents[-1] == 'Snippet "missing" doesn\'t exist!'


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["!help", "!clsoe", "!!", "! brb"])
async def test_always_reply_ignores_prefixed_messages(bot, content):
    bot.config["always_reply"] = True
    user, channel = await thread_channel(bot)
    message = staff_message(bot, channel, content)

    assert await bot.router.process(message) is None
    assert len(user.sent) == 1
    assert not message.deleted


@pytest.mark.asyncio
async def test_always_reply_sends_plain_messages(bot):
    bot.config["always_reply"] = True
    user, channel = await thread_channel(bot)

    assert await bot.router.process(staff_message(bot, channel, "we are looking into it"))
    assert user.sent[-1][0] == "**(Support) mod:** we are looking into it"

    outside = FakeChannel(guild=bot.modmail_guild)
    assert await bot.router.process(staff_message(bot, outside, "chatter")) is None
    assert outside.messages == []


@pytest.mark.asyncio
async def test_always_reply_anon_alone_does_not_reply(bot):
    bot.config["always_reply_anon"] = True
    user, channel = await thread_channel(bot)

    assert await bot.router.process(staff_message(bot, channel, "internal note")) is None
    assert len(user.sent) == 1

    bot.config["always_reply"] = True
    assert await bot.router.process(staff_message(bot, channel, "hello"))
    assert user.sent[-1][0] == "**Support:** hello"


@pytest.mark.asyncio
async def test_process_reports_invalid_arguments(bot):
    channel = FakeChannel(guild=bot.modmail_guild)
    assert await bot.router.process(staff_message(bot, channel, "!block someone")) is None
    assert len(channel.messages) == 1
