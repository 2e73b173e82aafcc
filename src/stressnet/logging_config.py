"""Logging for the service and its runs.

Everything under the ``stressnet`` logger goes to stdout and to an
append-only file (``STRESSNET_LOG``) at ``LOG_LEVEL``. HTTP and WebSocket
client libraries are held at WARNING so per-request lines don't bury the
per-transaction ones during a run.
"""

import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("STRESSNET_LOG", "/tmp/stressnet.log")

_quiet = {"level": "WARNING", "handlers": ["console", "file"], "propagate": False}

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "stressnet": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"],
            "propagate": False,
        },
        # one line per request at INFO otherwise
        "uvicorn.access": _quiet,
        "httpx": _quiet,
        "httpcore": _quiet,
        "websockets": _quiet,
    },
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}


def setup_logging():
    """ Apply the logging configuration. """
    logging.config.dictConfig(LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
