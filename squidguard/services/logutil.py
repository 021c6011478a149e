from __future__ import annotations

import logging
import sys
import threading
import time
from typing import Dict, Optional, TextIO


_lock = threading.Lock()
_last_log: Dict[str, float] = {}

LOG_FORMAT = "%(asctime)s squidguard[%(process)d] %(levelname)s %(name)s: %(message)s"


def should_log(key: str, *, interval_seconds: float) -> bool:
    now = time.monotonic()
    with _lock:
        last = _last_log.get(key)
        if last is not None and (now - last) < float(interval_seconds):
            return False
        _last_log[key] = now
        return True


def log_warning_throttled(logger, key: str, message: str, *args, interval_seconds: float) -> None:
    """Log a warning at most once per interval per key.

    The redirector answers one request per line for the lifetime of Squid; a
    broken group backend would otherwise produce one diagnostic per request.
    """
    if should_log(key, interval_seconds=interval_seconds):
        logger.warning(message, *args)


def configure_logging(
    *,
    verbose: bool = False,
    debug: bool = False,
    level: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> int:
    """Send diagnostics to stderr, never to the protocol stream.

    Debug implies verbose. An explicit `level` name wins over both flags.
    """
    if level:
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            resolved = logging.WARNING
    elif debug:
        resolved = logging.DEBUG
    elif verbose:
        resolved = logging.INFO
    else:
        resolved = logging.WARNING

    root = logging.getLogger("squidguard")
    for h in list(root.handlers):
        if getattr(h, "_squidguard", False):
            root.removeHandler(h)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._squidguard = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(resolved)
    return resolved
