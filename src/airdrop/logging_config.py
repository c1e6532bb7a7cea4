import logging
import logging.config
import os
import sys
import time
from pathlib import Path

from airdrop.config import log_path

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# The ledger binding logs every poll and sequence move at DEBUG; keep it apart from LOG_LEVEL.
XRPL_LOG_LEVEL = os.getenv("AIRDROP_XRPL_LOG_LEVEL", LOG_LEVEL).upper()

FORMAT = "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s"


def run_log_file(directory: Path = log_path, started: float | None = None) -> Path:
    """One log file per run, so a resumed run does not interleave with the one it resumes."""
    stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(started))
    return directory / f"airdrop-{stamp}.log"


def logging_config(logfile: Path, level: str = LOG_LEVEL, xrpl_level: str = XRPL_LOG_LEVEL) -> dict:
    handlers = ["console", "file"]
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
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
                "filename": str(logfile),
                "mode": "a",
            },
        },
        "loggers": {
            "airdrop": {"level": level, "handlers": handlers, "propagate": False},
            # Child of 'airdrop', so it shares its handlers.
            "airdrop.xrpl": {"level": xrpl_level},
            "xrpl": {"level": "WARNING", "handlers": handlers, "propagate": False},
            "httpx": {"level": "WARNING", "handlers": handlers, "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": handlers},
    }


def setup_logging(directory: Path = log_path) -> Path:
    """Apply the logging configuration and return the file this run logs to."""
    directory.mkdir(parents=True, exist_ok=True)
    logfile = run_log_file(directory)
    logging.config.dictConfig(logging_config(logfile))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
    return logfile
