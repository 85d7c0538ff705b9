"""
Unified logging for the gateway.

Loguru replaces stdlib logging. Every record carries a `request_id` and a
`conversation_id` extra so one turn can be followed from the HTTP request
through the backend call; both default to "-" outside a request or turn.
"""
import sys
import logging
from pathlib import Path
from loguru import logger

# Defaults for the extras referenced by the formats below.
CONTEXT_DEFAULTS = {"request_id": "-", "conversation_id": "-"}

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[request_id]:.8}</magenta> <magenta>{extra[conversation_id]:.8}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "rid={extra[request_id]} cid={extra[conversation_id]} | {name}:{line} | {message}"
)

UVICORN_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi")


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so loguru reports the real caller.
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logger(log_dir: str = "logs", level: str = "INFO", console: bool = True):
    """
    Configure the global logger.

    :param log_dir: directory for `gateway.log` and `error.log`
    :param level: console log level
    :param console: also log to stderr (the console chat turns this off)
    """
    logger.remove()
    logger.configure(extra=dict(CONTEXT_DEFAULTS))

    Path(log_dir).mkdir(parents=True, exist_ok=True)

    if console:
        logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    logger.add(
        f"{log_dir}/gateway.log",
        rotation="00:00",
        retention="10 days",
        compression="zip",
        enqueue=True,
        level="DEBUG",
        format=FILE_FORMAT,
    )
    logger.add(
        f"{log_dir}/error.log",
        rotation="10 MB",
        retention="30 days",
        level="ERROR",
        format=FILE_FORMAT,
        backtrace=True,
        diagnose=True,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in UVICORN_LOGGERS:
        mod_logger = logging.getLogger(name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.propagate = False

    logger.info("Logging initialized (level {}, files in {})", level, log_dir)
    return logger
