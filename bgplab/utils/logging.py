# utils/logging.py
import logging
import os
import time
from logging.handlers import WatchedFileHandler

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# message prefix -> file under <base>/log/
PREFIX_FILES = {
    "[FSM]":      "fsm.txt",
    "[RIB]":      "rib.txt",
    "[DECISION]": "decision.txt",
    "[UPDATE]":   "update.txt",
    "[LAB]":      "lab.txt",
}


class NanoFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        ns = time.time_ns()
        sec = ns // 1_000_000_000
        usec = (ns % 1_000_000_000) // 1_000

        t = time.localtime(sec)
        if datefmt:
            base = time.strftime(datefmt, t)
        else:
            base = time.strftime("%Y-%m-%d %H:%M:%S", t)

        return f"{base}.{usec:06d}"


class PrefixFilter(logging.Filter):
    def __init__(self, prefix):
        super().__init__()
        self.prefix = prefix

    def filter(self, record):
        return record.getMessage().startswith(self.prefix)


class ExcludePrefixFilter(logging.Filter):
    def __init__(self, prefixes):
        super().__init__()
        self.prefixes = prefixes

    def filter(self, record):
        msg = record.getMessage()
        return not any(msg.startswith(p) for p in self.prefixes)


def setup_logging(base_dir, level=None, console=False):
    log_dir = os.path.join(base_dir, "log")
    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    formatter = NanoFormatter(
      "%(asctime)s %(levelname)-5s %(message)s",
      datefmt="%Y-%m-%d %H:%M:%S"
    )

    # logrotate friendly, rotation happens outside
    logfile = WatchedFileHandler(os.path.join(log_dir, "log.txt"))
    logfile.setFormatter(formatter)
    logfile.setLevel(level)
    logfile.addFilter(ExcludePrefixFilter(list(PREFIX_FILES)))
    root.addHandler(logfile)

    for prefix, fname in PREFIX_FILES.items():
        h = WatchedFileHandler(os.path.join(log_dir, fname))
        h.setFormatter(formatter)
        h.setLevel(level)
        h.addFilter(PrefixFilter(prefix))
        root.addHandler(h)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)
        root.addHandler(console_handler)

    return log_dir
