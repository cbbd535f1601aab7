import asyncio
import functools
import os
import typing

from aiohttp import ClientError

from core.models import AttachmentResolutionFailure, getLogger

logger = getLogger(__name__)


class AttachmentRef(typing.NamedTuple):
    id: int
    filename: str
    size: int
    url: str


def format_attachment(ref: AttachmentRef) -> str:
    """
    Renders a saved attachment as shown in thread channels.

    Parameters
    ----------
    ref : AttachmentRef
        The saved attachment.

    Returns
    -------
    str
        `**Attachment:** name (x.yKB)` followed by the public URL on its own line.
    """
    size = (ref.size or 0) / 1024
    return f"**Attachment:** {ref.filename} ({size:.1f}KB)\n{ref.url}"


class AttachmentStore:
    """Keeps copies of attachments on disk, served publicly under the log URL."""

    def __init__(self, bot):
        self.bot = bot

    @property
    def directory(self) -> str:
        return self.bot.config["attachment_dir"]

    def get_path(self, attachment_id: int) -> str:
        return os.path.join(self.directory, str(attachment_id))

    def get_url(self, attachment_id: int, filename: str) -> str:
        return f"{self.bot.config['log_url'].strip('/')}/attachments/{attachment_id}/{filename}"

    @staticmethod
    def _write(path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)

    async def save(self, attachment) -> AttachmentRef:
        """
        Downloads `attachment` unless a copy already exists.

        Raises
        ------
        AttachmentResolutionFailure
            The download or the write failed.
        """
        path = self.get_path(attachment.id)
        if not os.path.exists(path):
            try:
                async with self.bot.session.get(attachment.url) as resp:
                    resp.raise_for_status()
                    data = await resp.read()
                await asyncio.get_running_loop().run_in_executor(None, functools.partial(self._write, path, data))
            except (ClientError, OSError, asyncio.TimeoutError) as e:
                logger.warning("Failed to save attachment %s: %s.", attachment.id, e)
                raise AttachmentResolutionFailure(attachment.id, e) from e
            logger.debug("Saved attachment %s (%s bytes).", attachment.id, attachment.size)

        return AttachmentRef(
            attachment.id, attachment.filename, attachment.size, self.get_url(attachment.id, attachment.filename)
        )

    async def save_all(self, attachments: typing.Sequence) -> typing.List[AttachmentRef]:
        return list(await asyncio.gather(*(self.save(a) for a in attachments)))
