import re
import string
import typing
from datetime import datetime, timezone

import discord

__all__ = [
    "strtobool",
    "truncate",
    "human_join",
    "chunk",
    "match_user_id",
    "disable_link_previews",
    "escape_code_block",
    "get_timestamp",
    "get_top_role",
    "format_channel_name",
]


MENTION_REGEX = re.compile(r"^<@!?(\d{15,21})>$")
ID_REGEX = re.compile(r"^(\d{15,21})$")
URL_REGEX = re.compile(r"(?<!<)(https?://[^\s>]+)")


def strtobool(val) -> bool:
    if isinstance(val, bool):
        return val
    val = str(val).strip().lower()
    if val in {"y", "yes", "t", "true", "on", "1", "enable"}:
        return True
    if val in {"n", "no", "f", "false", "off", "0", "disable"}:
        return False
    raise ValueError(f"invalid truth value {val!r}")


def truncate(text: str, max: int = 50) -> str:  # pylint: disable=redefined-builtin
    """
    Reduces the string to `max` length, by trimming the message into "...".

    Parameters
    ----------
    text : str
        The text to trim.
    max : int, optional
        The max length of the text.
        Defaults to 50.

    Returns
    -------
    str
        The truncated text.
    """
    text = text.strip()
    return text[: max - 3].strip() + "..." if len(text) > max else text


def human_join(seq: typing.Sequence[str], delim: str = ", ", final: str = "or") -> str:
    """https://github.com/Rapptz/RoboDanny/blob/bf7d4226350dff26df4981dd53134eeb2aceeb87/cogs/utils/formats.py#L21-L32"""
    size = len(seq)
    if size == 0:
        return ""

    if size == 1:
        return seq[0]

    if size == 2:
        return f"{seq[0]} {final} {seq[1]}"

    return delim.join(seq[:-1]) + f" {final} {seq[-1]}"


def chunk(items: typing.Sequence, size: int) -> typing.List[typing.Sequence]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def match_user_id(text: str) -> typing.Optional[int]:
    """
    Matches a user mention (`<@123>` or `<@!123>`) or a bare user ID.

    Parameters
    ----------
    text : str
        The raw command argument.

    Returns
    -------
    Optional[int]
        The user ID if the text is a mention or an ID. Otherwise, `None`.
    """
    text = text.strip()
    match = MENTION_REGEX.match(text) or ID_REGEX.match(text)
    if match is None:
        return None
    return int(match.group(1))


def disable_link_previews(text: str) -> str:
    """Wraps every bare link in <> so the platform does not expand it."""
    return URL_REGEX.sub(r"<\1>", text)


def escape_code_block(text):
    return re.sub(r"```", "`\u200b``", text)


def get_timestamp(dt: datetime = None) -> str:
    dt = dt or datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%H:%M")


def get_top_role(member: discord.Member, hoisted=True):
    roles = getattr(member, "roles", None) or []
    for role in sorted(roles, key=lambda r: r.position, reverse=True):
        if role.is_default():
            continue
        if not hoisted or role.hoist:
            return role
    return None


def format_channel_name(user, existing: typing.Iterable[str] = ()) -> str:
    """Sanitises a username into a unique text channel name."""
    name = "".join(c for c in user.name.lower() if c not in string.punctuation and c.isprintable())
    name = "-".join(name.split()) or "null"
    discriminator = getattr(user, "discriminator", "0")
    if discriminator and discriminator != "0":
        name = f"{name}-{discriminator}"

    existing = set(existing)
    new_name, counter = name, 1
    while new_name in existing:
        new_name = f"{name}_{counter}"
        counter += 1
    return new_name
