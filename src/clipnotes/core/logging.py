"""
Logging Setup

One stdout handler shared by the API process and the operator CLI.
Lines read ``time | level | logger | message`` so that request logs and
background embedding jobs interleave readably.
"""

import sys
from logging.config import dictConfig

from clipnotes.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty client libraries stay at WARNING regardless of LOG_LEVEL
QUIET_LOGGERS = ("httpx", "openai", "sqlalchemy.engine")


def setup_logging(level: str | None = None) -> None:
    """
    Configure the ``clipnotes`` and uvicorn loggers.

    Args:
        level: Overrides ``LOG_LEVEL`` (the CLI passes ``--log-level``).
    """
    log_level = (level or settings.LOG_LEVEL).upper()

    def _to_console(logger_level: str) -> dict:
        return {"level": logger_level, "handlers": ["console"], "propagate": False}

    loggers = {
        "clipnotes": _to_console(log_level),
        "uvicorn": _to_console("INFO"),
        "uvicorn.access": _to_console("INFO"),
    }
    loggers.update({name: _to_console("WARNING") for name in QUIET_LOGGERS})

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {"format": LOG_FORMAT, "datefmt": DATE_FORMAT},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "stream": sys.stdout,
                    "formatter": "default",
                },
            },
            "root": {"level": log_level, "handlers": ["console"]},
            "loggers": loggers,
        }
    )
