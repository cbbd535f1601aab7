import discord

from core.checks import has_staff_permission, is_staff
from tests.conftest import FakeChannel, FakeMessage


def message_from(bot, author, guild):
    return FakeMessage("!r hi", author=author, channel=FakeChannel(guild=guild))


def test_everyone_in_modmail_guild_is_staff_by_default(bot):
    member = bot.add_staff("mod")
    assert is_staff(bot, message_from(bot, member, bot.modmail_guild))


def test_messages_outside_modmail_guild_are_not_staff(bot):
    member = bot.add_staff("mod")
    assert not is_staff(bot, message_from(bot, member, bot.guild))
    assert not is_staff(bot, message_from(bot, member, None))


def test_bots_are_never_staff(bot):
    assert not is_staff(bot, message_from(bot, bot.user, bot.modmail_guild))


def test_configured_permission_is_required(bot):
    bot.config["inbox_server_permission"] = "manage_messages"
    member = bot.add_staff("mod")
    assert not has_staff_permission(bot, member)

    member.guild_permissions = discord.Permissions(manage_messages=True)
    assert has_staff_permission(bot, member)


def test_invalid_permission_name_denies(bot):
    bot.config["inbox_server_permission"] = "be_nice"
    member = bot.add_staff("mod")
    member.guild_permissions = discord.Permissions.all()
    assert not has_staff_permission(bot, member)
