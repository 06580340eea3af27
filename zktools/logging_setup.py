"""
Category-tagged logging shared by the library, the CLI and the web bridge.

Every record carries a category in ``extra={"cat": ...}``:
SYS, CMD, PROTO, SYNC.
"""

import logging
from collections import deque
from datetime import datetime
from pathlib import Path

LOGGER_NAME = "zktools"
FORMAT = "%(asctime)s [%(levelname)-5s] [%(cat)-5s] %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"

log = logging.getLogger(LOGGER_NAME)

# Ring buffer for serving logs to the web bridge
log_ring: deque = deque(maxlen=2000)


class CategoryFilter(logging.Filter):
    """Default the category of records logged without one."""
    def filter(self, record):
        if not hasattr(record, "cat"):
            record.cat = "SYS"
        return True


class RingHandler(logging.Handler):
    """Push log records to in-memory ring buffer for frontend consumption."""
    def __init__(self, ring=None, level=logging.NOTSET):
        super().__init__(level)
        self.ring = log_ring if ring is None else ring

    def emit(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3],
            "level": record.levelname,
            "msg": record.getMessage(),
            "cat": getattr(record, 'cat', 'SYS'),
        }
        self.ring.append(entry)


log.addFilter(CategoryFilter())

_installed = set()


def configure_logging(log_dir=None, console_level=logging.INFO, ring=True):
    """Attach file, ring and console handlers, each kind at most once. log_dir=None skips files."""
    log.setLevel(logging.DEBUG)

    if log_dir and "files" not in _installed:
        _installed.add("files")
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        # All logs
        fh_all = logging.FileHandler(log_dir / "all.log", encoding="utf-8")
        fh_all.setLevel(logging.DEBUG)
        fh_all.setFormatter(logging.Formatter(FORMAT, datefmt=DATEFMT))
        log.addHandler(fh_all)

        # Warnings and errors only
        fh_warn = logging.FileHandler(log_dir / "warnings.log", encoding="utf-8")
        fh_warn.setLevel(logging.WARNING)
        fh_warn.setFormatter(logging.Formatter(FORMAT, datefmt=DATEFMT))
        log.addHandler(fh_warn)

    if ring and "ring" not in _installed:
        _installed.add("ring")
        rh = RingHandler()
        rh.setLevel(logging.DEBUG)
        log.addHandler(rh)

    if console_level is not None and "console" not in _installed:
        _installed.add("console")
        ch = logging.StreamHandler()
        ch.setLevel(console_level)
        ch.setFormatter(logging.Formatter("[%(levelname)-5s] %(message)s"))
        log.addHandler(ch)

    return log


def logm(level, msg, cat="SYS"):
    """Log with category."""
    log.log(level, msg, extra={"cat": cat})

def log_info(msg, cat="SYS"):    logm(logging.INFO, msg, cat)
def log_warn(msg, cat="SYS"):    logm(logging.WARNING, msg, cat)
def log_error(msg, cat="SYS"):   logm(logging.ERROR, msg, cat)
def log_debug(msg, cat="SYS"):   logm(logging.DEBUG, msg, cat)
def log_proto(msg):               logm(logging.DEBUG, msg, "PROTO")
def log_cmd(msg):                 logm(logging.INFO, msg, "CMD")
def log_sync(msg):                logm(logging.INFO, msg, "SYNC")
