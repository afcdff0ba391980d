"""Logging for the CLI and the service.

Everything under the `batchmint` logger goes to stdout and, unless LOG_FILE is set to an
empty string, to an append-only file. Chatty client libraries are held at WARNING.
"""

import logging
import logging.config
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s:%(lineno)d %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_FILE = "/tmp/batchmint.log"

QUIET_LOGGERS = ("uvicorn.access", "web3", "httpx", "aiohttp")


def build_logging_config(level: str = "INFO", log_file: str | None = DEFAULT_LOG_FILE) -> dict:
    handlers = {
        "stdout": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
            "stream": sys.stdout,
        },
    }
    if log_file:
        handlers["logfile"] = {
            "class": "logging.FileHandler",
            "formatter": "plain",
            "filename": log_file,
            "mode": "a",
            "delay": True,
        }
    sinks = list(handlers)

    loggers = {"batchmint": {"level": level.upper(), "handlers": sinks, "propagate": False}}
    for name in QUIET_LOGGERS:
        loggers[name] = {"level": "WARNING", "handlers": sinks, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": LOG_FORMAT, "datefmt": LOG_DATEFMT}},
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": sinks},
    }


def setup_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Apply the config. LOG_LEVEL and LOG_FILE fill in whatever isn't passed."""
    level = level or os.getenv("LOG_LEVEL", "INFO")
    if log_file is None:
        log_file = os.getenv("LOG_FILE", DEFAULT_LOG_FILE)
    logging.config.dictConfig(build_logging_config(level, log_file))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
