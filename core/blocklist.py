import typing

from core.models import getLogger

logger = getLogger(__name__)


class BlockList:
    """
    Users barred from opening threads.

    The block entries in the store are the only truth, nothing is cached.
    Blocking an already blocked user and unblocking a user that is not
    blocked both succeed without doing anything.
    """

    def __init__(self, bot):
        self.bot = bot

    async def is_blocked(self, user_id: typing.Union[int, str]) -> bool:
        return await self.bot.api.is_blocked(user_id)

    async def block(self, user_id: typing.Union[int, str]) -> None:
        await self.bot.api.block_user(user_id)
        logger.info("Blocked user %s.", user_id)

    async def unblock(self, user_id: typing.Union[int, str]) -> None:
        await self.bot.api.unblock_user(user_id)
        logger.info("Unblocked user %s.", user_id)
