import json
import logging
import re
import sys
from enum import Enum
from logging import FileHandler, Handler, StreamHandler
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional

from colorama import Fore, Style


class RelayLogger(logging.Logger):
    @staticmethod
    def _debug_(*msgs):
        return f'{Fore.CYAN}{" ".join(msgs)}{Style.RESET_ALL}'

    @staticmethod
    def _info_(*msgs):
        return f'{Fore.LIGHTMAGENTA_EX}{" ".join(msgs)}{Style.RESET_ALL}'

    @staticmethod
    def _error_(*msgs):
        return f'{Fore.RED}{" ".join(msgs)}{Style.RESET_ALL}'

    def debug(self, msg, *args, **kwargs):
        if self.isEnabledFor(logging.DEBUG):
            self._log(logging.DEBUG, self._debug_(msg), args, **kwargs)

    def info(self, msg, *args, **kwargs):
        if self.isEnabledFor(logging.INFO):
            self._log(logging.INFO, self._info_(msg), args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        if self.isEnabledFor(logging.WARNING):
            self._log(logging.WARNING, self._error_(msg), args, **kwargs)

    def error(self, msg, *args, **kwargs):
        if self.isEnabledFor(logging.ERROR):
            self._log(logging.ERROR, self._error_(msg), args, **kwargs)

    def critical(self, msg, *args, **kwargs):
        if self.isEnabledFor(logging.CRITICAL):
            self._log(logging.CRITICAL, self._error_(msg), args, **kwargs)

    def line(self, level="info"):
        level = logging.DEBUG if level == "debug" else logging.INFO
        if self.isEnabledFor(level):
            self._log(level, Fore.BLACK + Style.BRIGHT + "-" * 25 + Style.RESET_ALL, [])


class JsonFormatter(logging.Formatter):
    """
    Formatter that renders each record as a single JSON object.

    Parameters
    ----------
    fmt_dict : Optional[Dict[str, str]]
        {key: LogRecord attribute} pairs. Defaults to {"message": "message"}.
    """

    def __init__(self, fmt_dict: Optional[Dict[str, str]] = None):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")
        self.fmt_dict: Dict[str, str] = fmt_dict if fmt_dict is not None else {"message": "message"}

    def usesTime(self) -> bool:
        return "asctime" in self.fmt_dict.values()

    def format(self, record) -> str:
        record.message = FileFormatter.ansi_escape.sub("", record.getMessage())
        if self.usesTime():
            record.asctime = self.formatTime(record, self.datefmt)

        data = {key: record.__dict__[attr] for key, attr in self.fmt_dict.items()}
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            data["exc_info"] = record.exc_text
        return json.dumps(data, default=str)


class FileFormatter(logging.Formatter):
    ansi_escape = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")

    def format(self, record):
        record.msg = self.ansi_escape.sub("", str(record.msg))
        return super().format(record)


log_stream_formatter = logging.Formatter(
    "%(asctime)s %(name)s[%(lineno)d] - %(levelname)s: %(message)s", datefmt="%m/%d/%y %H:%M:%S"
)

log_file_formatter = FileFormatter(
    "%(asctime)s %(name)s[%(lineno)d] - %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

json_formatter = JsonFormatter(
    {
        "level": "levelname",
        "message": "message",
        "loggerName": "name",
        "timestamp": "asctime",
    }
)


def create_log_handler(
    filename: Optional[str] = None,
    *,
    rotating: bool = False,
    level: int = logging.DEBUG,
    format: str = "plain",
    maxBytes: int = 28000000,
    backupCount: int = 1,
) -> Handler:
    """
    Creates a pre-configured log handler.

    A `StreamHandler` writing to stdout is returned when `filename` is `None`,
    otherwise a `FileHandler` or, with `rotating`, a `RotatingFileHandler`.
    `format` is either "plain" or "json".
    """
    if filename is None and rotating:
        raise ValueError("`filename` must be set to instantiate a `RotatingFileHandler`.")

    if filename is None:
        handler = StreamHandler(stream=sys.stdout)
        formatter = log_stream_formatter
    elif not rotating:
        handler = FileHandler(filename, mode="a+", encoding="utf-8")
        formatter = log_file_formatter
    else:
        handler = RotatingFileHandler(
            filename, mode="a+", encoding="utf-8", maxBytes=maxBytes, backupCount=backupCount
        )
        formatter = log_file_formatter

    if format == "json":
        formatter = json_formatter

    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


logging.setLoggerClass(RelayLogger)
log_level = logging.INFO
loggers = set()

ch = create_log_handler(level=log_level)
ch_debug: Optional[Handler] = None


def getLogger(name=None) -> RelayLogger:
    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    logger.addHandler(ch)
    if ch_debug is not None:
        logger.addHandler(ch_debug)
    loggers.add(logger)
    return logger


def configure_logging(log_file: str, level: int, file_format: str = "plain") -> None:
    """Attach the rotating file handler and apply `level` to every logger handed out so far."""
    global ch_debug, log_level

    log_level = level
    ch_debug = create_log_handler(log_file, rotating=True, format=file_format)
    ch.setLevel(log_level)

    for log in loggers:
        log.setLevel(log_level)
        log.addHandler(ch_debug)

    d_logger = logging.getLogger("discord")
    d_logger.setLevel(max(level, logging.INFO))
    d_logger.addHandler(ch)
    d_logger.addHandler(ch_debug)


class InvalidConfigError(Exception):
    def __init__(self, msg, *args):
        super().__init__(msg, *args)
        self.msg = msg


class ThreadCreationFailed(Exception):
    """
    Raised when a thread channel could not be created for a user.

    Carries the content of the message that triggered the creation so
    staff can be told what the user wrote.
    """

    def __init__(self, user, content: str, original: Exception = None):
        super().__init__(f"Could not create a thread for {user}: {original}")
        self.user = user
        self.content = content
        self.original = original


class DeliveryError(Exception):
    """A reply could not be delivered to the recipient's DMs."""

    def __init__(self, detail: str, status: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status = status


class DeliveryForbidden(DeliveryError):
    """The recipient left every shared server, disabled DMs or blocked the bot."""


class AttachmentResolutionFailure(Exception):
    def __init__(self, attachment_id, reason):
        super().__init__(f"Attachment {attachment_id} could not be saved: {reason}")
        self.attachment_id = attachment_id
        self.reason = reason


class ThreadStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
