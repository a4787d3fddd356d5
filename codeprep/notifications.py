from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

NotifyFn = Callable[[str, str], None]

logger = logging.getLogger("codeprep.notify")

_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def log_notify(level: str, message: str) -> None:
    """Default sink: user-facing notices end up in the log."""

    logger.log(_LEVELS.get(level, logging.INFO), "%s", message)


class RateLimitedNotifier:
    """Forwards a notice only if the same key was not sent within ``interval_s``."""

    def __init__(
        self,
        notify: Optional[NotifyFn] = None,
        *,
        interval_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._notify = notify or log_notify
        self._interval_s = interval_s
        self._clock = clock
        self._last_sent: Dict[str, float] = {}

    def __call__(self, level: str, message: str, *, key: Optional[str] = None) -> bool:
        bucket = key or message
        now = self._clock()
        last = self._last_sent.get(bucket)
        if last is not None and now - last < self._interval_s:
            return False
        self._last_sent[bucket] = now
        self._notify(level, message)
        return True

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._last_sent.clear()
        else:
            self._last_sent.pop(key, None)


__all__ = ["NotifyFn", "RateLimitedNotifier", "log_notify"]
