import discord

from core.models import getLogger

logger = getLogger(__name__)


def has_staff_permission(bot, member) -> bool:
    """
    Whether `member` holds the configured staff permission.

    `inbox_server_permission` names a discord permission flag such as
    `manage_messages`. When it is unset every member of the modmail
    guild counts as staff.
    """
    permission = bot.config["inbox_server_permission"]
    if not permission:
        return True
    permissions = getattr(member, "guild_permissions", None)
    if permissions is None:
        return False
    if permission not in discord.Permissions.VALID_FLAGS:
        logger.warning("Invalid inbox_server_permission %s, nobody is staff.", permission)
        return False
    return getattr(permissions, permission)


def is_staff(bot, message: discord.Message) -> bool:
    """Logic for checking whether the author of `message` can run staff commands."""
    if message.author.bot:
        return False
    if message.guild is None or message.guild != bot.modmail_guild:
        return False
    return has_staff_permission(bot, message.author)
