import secrets
import sys
from datetime import datetime, timezone
from typing import List, Optional, Union

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import ConfigurationError, DuplicateKeyError

from core.models import ThreadStatus, getLogger

logger = getLogger(__name__)


class ApiClient:
    """
    This class represents the record store used by the relay.

    Thread records, block entries, logs and the database-backed part of
    the configuration all go through it. Subclasses implement the storage.

    Parameters
    ----------
    bot : RelayBot
        The relay bot.
    db : Any
        The backing database handle.

    Attributes
    ----------
    bot : RelayBot
        The relay bot.
    db : Any
        The backing database handle.
    """

    def __init__(self, bot, db):
        self.bot = bot
        self.db = db

    def log_url(self, filename: str) -> str:
        return f"{self.bot.config['log_url'].strip('/')}/logs/{filename}"

    async def setup_indexes(self):
        return NotImplemented

    async def validate_database_connection(self):
        return NotImplemented

    # threads
    async def find_open_thread(self, user_id: Union[str, int]) -> Optional[dict]:
        return NotImplemented

    async def find_open_thread_by_channel(self, channel_id: Union[str, int]) -> Optional[dict]:
        return NotImplemented

    async def create_thread(self, data: dict) -> dict:
        return NotImplemented

    async def close_thread(self, channel_id: Union[str, int]) -> bool:
        return NotImplemented

    # block list
    async def is_blocked(self, user_id: Union[str, int]) -> bool:
        return NotImplemented

    async def block_user(self, user_id: Union[str, int]) -> None:
        return NotImplemented

    async def unblock_user(self, user_id: Union[str, int]) -> None:
        return NotImplemented

    # logs
    async def get_user_logs(self, user_id: Union[str, int]) -> List[dict]:
        return NotImplemented

    async def create_log(self, user_id: Union[str, int], username: str, content: str) -> dict:
        return NotImplemented

    async def get_log(self, filename: str) -> Optional[dict]:
        return NotImplemented

    # config
    async def get_config(self) -> dict:
        return NotImplemented

    async def update_config(self, data: dict):
        return NotImplemented


class MongoDBClient(ApiClient):
    def __init__(self, bot):
        mongo_uri = bot.config["connection_uri"]
        if mongo_uri is None:
            logger.critical("A Mongo URI is necessary for the bot to function.")
            raise RuntimeError

        try:
            db = AsyncIOMotorClient(mongo_uri).relaymail
        except ConfigurationError as e:
            logger.critical(
                "Your MongoDB CONNECTION_URI might be copied wrong, try re-copying from the source again. "
                "Otherwise noted in the following message:\n%s",
                e,
            )
            sys.exit(0)

        super().__init__(bot, db)

    async def setup_indexes(self):
        await self.db.threads.create_index("channel_id", unique=True)
        # at most one open thread per user, enforced by the store as well
        await self.db.threads.create_index(
            "user_id",
            name="user_id_open_unique",
            unique=True,
            partialFilterExpression={"status": ThreadStatus.OPEN.value},
        )
        await self.db.blocked.create_index("user_id", unique=True)
        await self.db.logs.create_index("user_id")
        await self.db.logs.create_index("filename", unique=True)
        logger.debug("Successfully configured and verified database indexes.")

    async def validate_database_connection(self):
        try:
            await self.db.command("buildinfo")
        except Exception as exc:
            logger.critical("Something went wrong while connecting to the database.")
            message = f"{type(exc).__name__}: {str(exc)}"
            logger.critical(message)

            if "ServerSelectionTimeoutError" in message:
                logger.critical(
                    "This may have been caused by not whitelisting "
                    "IPs correctly. Make sure the bot's host can reach the database."
                )

            if "OperationFailure" in message:
                logger.critical(
                    "This is due to having invalid credentials in your MongoDB CONNECTION_URI. "
                    "Remember you need to substitute `<password>` with your actual password."
                )
            raise
        else:
            logger.debug("Successfully connected to the database.")
        logger.line("debug")

    async def find_open_thread(self, user_id: Union[str, int]) -> Optional[dict]:
        logger.debug("Looking up open thread for user %s.", user_id)
        return await self.db.threads.find_one({"user_id": str(user_id), "status": ThreadStatus.OPEN.value})

    async def find_open_thread_by_channel(self, channel_id: Union[str, int]) -> Optional[dict]:
        return await self.db.threads.find_one(
            {"channel_id": str(channel_id), "status": ThreadStatus.OPEN.value}
        )

    async def create_thread(self, data: dict) -> dict:
        await self.db.threads.insert_one(dict(data))
        logger.debug("Created thread record for user %s, channel %s.", data["user_id"], data["channel_id"])
        return data

    async def close_thread(self, channel_id: Union[str, int]) -> bool:
        result = await self.db.threads.update_one(
            {"channel_id": str(channel_id), "status": ThreadStatus.OPEN.value},
            {"$set": {"status": ThreadStatus.CLOSED.value, "closed_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count == 1

    async def is_blocked(self, user_id: Union[str, int]) -> bool:
        return await self.db.blocked.find_one({"user_id": str(user_id)}) is not None

    async def block_user(self, user_id: Union[str, int]) -> None:
        try:
            await self.db.blocked.update_one(
                {"user_id": str(user_id)},
                {"$setOnInsert": {"user_id": str(user_id), "blocked_at": datetime.now(timezone.utc)}},
                upsert=True,
            )
        except DuplicateKeyError:
            # a concurrent upsert won the race, the entry exists either way
            pass

    async def unblock_user(self, user_id: Union[str, int]) -> None:
        await self.db.blocked.delete_one({"user_id": str(user_id)})

    async def get_user_logs(self, user_id: Union[str, int]) -> List[dict]:
        logger.debug("Retrieving user %s logs.", user_id)
        cursor = self.db.logs.find({"user_id": str(user_id)}, {"content": 0}).sort("created_at", 1)
        return await cursor.to_list(None)

    async def create_log(self, user_id: Union[str, int], username: str, content: str) -> dict:
        now = datetime.now(timezone.utc)
        filename = f"{now:%Y-%m-%d-%H%M%S}__{user_id}__{secrets.token_hex(6)}.txt"
        data = {
            "filename": filename,
            "user_id": str(user_id),
            "username": username,
            "created_at": now,
            "content": content,
            "url": self.log_url(filename),
        }
        await self.db.logs.insert_one(dict(data))
        logger.debug("Created a log entry, filename %s.", filename)
        return data

    async def get_log(self, filename: str) -> Optional[dict]:
        return await self.db.logs.find_one({"filename": filename})

    async def get_config(self) -> dict:
        conf = await self.db.config.find_one({"bot_id": self.bot.user.id})
        if conf is None:
            logger.debug("Creating a new config entry for bot %s.", self.bot.user.id)
            await self.db.config.insert_one({"bot_id": self.bot.user.id})
            return {"bot_id": self.bot.user.id}
        return conf

    async def update_config(self, data: dict):
        toset = self.bot.config.filter_valid(data)
        unset = self.bot.config.filter_valid({k: 1 for k in self.bot.config.all_keys if k not in data})

        update = {}
        if toset:
            update["$set"] = toset
        if unset:
            update["$unset"] = unset
        if update:
            return await self.db.config.find_one_and_update(
                {"bot_id": self.bot.user.id}, update, upsert=True, return_document=ReturnDocument.AFTER
            )
