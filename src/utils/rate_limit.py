from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable


log = logging.getLogger(__name__)


def mask_secret(value: str | None) -> str:
    s = (value or "").strip()
    if not s:
        return "****"
    return "****" + s[-4:]


@dataclass
class _KeyState:
    last_call_at: float


_GLOBAL_LOCK = threading.Lock()
# Ordered by last call (oldest first); a key is moved to the end whenever it is seen.
_STATE_BY_KEY: "OrderedDict[str, _KeyState]" = OrderedDict()
_MAX_TRACKED_KEYS = 10_000


def reset_cooldowns() -> None:
    with _GLOBAL_LOCK:
        _STATE_BY_KEY.clear()


def tracked_keys() -> int:
    with _GLOBAL_LOCK:
        return len(_STATE_BY_KEY)


def _prune(now: float, min_interval_s: float) -> None:
    # Entries older than the interval can no longer throttle anything.
    while _STATE_BY_KEY:
        key, st = next(iter(_STATE_BY_KEY.items()))
        if now - st.last_call_at < min_interval_s and len(_STATE_BY_KEY) < _MAX_TRACKED_KEYS:
            break
        del _STATE_BY_KEY[key]


def cooldown_hit(
    *,
    key: str,
    min_interval_s: float,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    In-process, per-credential cooldown using monotonic time.

    Returns True when the previous call with the same key happened less than
    `min_interval_s` ago. Every call, rejected or not, becomes the new reference
    point so a tight polling loop stays throttled. Keys idle for longer than
    `min_interval_s` are forgotten, so the table only holds recently seen keys.
    """
    now = float(clock())
    interval = float(min_interval_s)
    with _GLOBAL_LOCK:
        st = _STATE_BY_KEY.pop(key, None)
        _prune(now, interval)
        _STATE_BY_KEY[key] = _KeyState(last_call_at=now)
    if st is None:
        return False
    delta = now - st.last_call_at
    if 0 <= delta < interval:
        # No secrets in logs; key masked.
        log.debug("Sync cooldown hit: %.3fs since last call (key %s)", delta, mask_secret(key))
        return True
    return False
