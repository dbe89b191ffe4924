import os
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from config import LOG_DIR, LOG_FILE

ROOT_LOGGER = "chain_sync"


def get_logger(name: str) -> logging.Logger:
    """Child of the ``chain_sync`` logger; the rotating file handler lives on the parent."""
    os.makedirs(LOG_DIR, exist_ok=True)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(logging.DEBUG)

    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        handler = RotatingFileHandler(
            os.path.join(LOG_DIR, LOG_FILE),
            maxBytes=5 * 1024 * 1024,   # 5 MB
            backupCount=5               # keep 5 logs
        )
        fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        handler.setFormatter(fmt)
        root.addHandler(handler)

    if name == ROOT_LOGGER:
        return root
    return root.getChild(name)


class RecentLogBuffer(logging.Handler):
    """
    Keeps the last N records in memory so operators can inspect recent
    sync / sweep activity without reading the log file.
    """

    def __init__(self, max_entries: int = 1000, level: int = logging.DEBUG):
        super().__init__(level)
        self._entries: deque = deque(maxlen=max_entries)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "operation": record.name.removeprefix(ROOT_LOGGER + "."),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["error"] = str(record.exc_info[1])
        with self._entries_lock:
            self._entries.append(entry)

    def get_logs(
        self,
        level: Optional[str] = None,
        operation: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        with self._entries_lock:
            logs = list(self._entries)
        if level:
            logs = [e for e in logs if e["level"] == level.lower()]
        if operation:
            logs = [e for e in logs if operation in e["operation"]]
        if limit:
            logs = logs[-limit:]
        return logs

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()


def attach_log_buffer(buffer: RecentLogBuffer) -> RecentLogBuffer:
    root = get_logger(ROOT_LOGGER)
    if buffer not in root.handlers:
        root.addHandler(buffer)
    return buffer


def detach_log_buffer(buffer: RecentLogBuffer) -> None:
    logging.getLogger(ROOT_LOGGER).removeHandler(buffer)
