from loguru import logger
import sys
import logging

from .settings import settings


LOG_DIR = settings.LOG_DIR
LOG_DIR.mkdir(parents=True, exist_ok=True)

CONSOLE_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {message}"


class InterceptHandler(logging.Handler):
    """Intercept standard library logging and forward to loguru.

    uvicorn, SQLAlchemy and redis-py all log through the logging module;
    this routes them into the same sinks as the service's own messages.
    """

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        # find caller depth so loguru shows correct origin
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def _add_sinks(level: str):
    # Console sink: human readable, colorized
    logger.add(sys.stdout, level=level, format=CONSOLE_FORMAT, colorize=True)

    # File sink: daily rotation, JSON serialized, asynchronous (enqueue)
    logger.add(
        str(LOG_DIR / "mcph-{time:YYYY-MM-DD}.log"),
        level=level,
        rotation="00:00",
        retention="14 days",
        serialize=True,
        enqueue=True,
        compression="zip",
    )


# Remove default handlers to avoid duplicate logs
logger.remove()
_add_sinks(settings.LOG_LEVEL)


# Intercept standard logging
logging.root.handlers = [InterceptHandler()]
for name in ("uvicorn.access", "uvicorn.error", "fastapi", "sqlalchemy.engine", "redis"):
    l = logging.getLogger(name)
    l.handlers = [InterceptHandler()]
    # INFO on sqlalchemy.engine echoes every statement
    l.setLevel(logging.WARNING if name == "sqlalchemy.engine" else logging.INFO)


def configure(level: str = "INFO"):
    """Reconfigure sinks at a different level.

    Call early in startup; the import-time configuration uses LOG_LEVEL.
    """
    logger.remove()
    _add_sinks(level)
