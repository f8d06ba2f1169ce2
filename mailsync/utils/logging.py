import logging
import re
import sys
from loguru import logger
from mailsync.config import settings

# Libraries that log through the standard logging module
STDLIB_LOGGERS = ("sqlalchemy", "celery", "imapclient", "aiohttp", "uvicorn")

_SECRET_PATTERN = re.compile(
    r"(?i)(access_token|refresh_token|password|client_secret|clientState|validationToken)"
    r"(['\"]?\s*[:=]\s*['\"]?)([^'\"\s,&}]+)"
)

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def redact(message: str) -> str:
    """Mask credential values that end up in log lines."""
    return _SECRET_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}***", message)


def _redact_record(record):
    record["message"] = redact(record["message"])


class InterceptHandler(logging.Handler):
    """Forward standard-library records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.bind(name=record.name).opt(exception=record.exc_info).log(level, record.getMessage())


def setup_logging():
    """Configure loguru sinks and route stdlib loggers through them."""
    logger.remove()
    logger.configure(extra={"name": "mailsync"}, patcher=_redact_record)

    logger.add(
        sys.stdout,
        format=CONSOLE_FORMAT,
        level=settings.log_level,
        colorize=not settings.log_json,
        serialize=settings.log_json,
        backtrace=True,
        diagnose=settings.debug,
    )

    if settings.log_file:
        logger.add(
            settings.log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} | {message}",
            level=settings.log_level,
            rotation="500 MB",
            retention="10 days",
            compression="zip",
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in STDLIB_LOGGERS:
        logging.getLogger(name).handlers = [InterceptHandler()]
        logging.getLogger(name).propagate = False

    return logger


# Loggers obtained before setup_logging() still need a name to render
logger.configure(extra={"name": "mailsync"}, patcher=_redact_record)


def get_logger(name: str = None):
    """Get a logger bound to a component name."""
    if name:
        return logger.bind(name=name)
    return logger
