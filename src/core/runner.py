from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from src.importers.adapters import ProviderAuthError
from src.utils.time import utcnow


log = logging.getLogger(__name__)

SUCCESS_DELAY_S = 0.35
MAX_ERROR_DELAY_S = 15.0
BASE_ERROR_DELAY_S = 0.5
MAX_CONSECUTIVE_FAILURES = 6


@dataclass(frozen=True)
class RunnerResult:
    status: str  # succeeded|failed|canceled|aborted
    job: Any = None
    chunks: int = 0
    fetched: int = 0
    upserted: int = 0
    error: Optional[str] = None


def error_delay_s(failures: int) -> float:
    return min(MAX_ERROR_DELAY_S, BASE_ERROR_DELAY_S * (2**failures))


def _is_auth_error(exc: BaseException) -> bool:
    if isinstance(exc, ProviderAuthError):
        return True
    return "authorization" in str(exc).lower() or "unauthorized" in str(exc).lower()


class ImportRunner:
    """
    Drives an import job to completion by calling continue repeatedly.

    All progress lives in the job row, so a runner can be stopped at any time
    and a fresh one picks up at the stored cursor.
    """

    def __init__(
        self,
        continue_fn: Callable[[], Any],
        *,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], dt.datetime] = utcnow,
        cancel_event: Optional[threading.Event] = None,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        on_progress: Optional[Callable[[Any], None]] = None,
    ):
        self.continue_fn = continue_fn
        self._sleep = sleep_fn
        self._clock = clock
        self.cancel_event = cancel_event or threading.Event()
        self.max_failures = max(1, int(max_failures))
        self.on_progress = on_progress

    def cancel(self) -> None:
        self.cancel_event.set()

    def _wait(self, seconds: float) -> None:
        if seconds > 0 and not self.cancel_event.is_set():
            self._sleep(seconds)

    def run(self) -> RunnerResult:
        failures = 0
        chunks = 0
        fetched = 0
        upserted = 0
        job: Any = None
        while True:
            if self.cancel_event.is_set():
                return RunnerResult(status="canceled", job=job, chunks=chunks, fetched=fetched, upserted=upserted)
            try:
                result = self.continue_fn()
            except Exception as e:
                failures += 1
                if _is_auth_error(e):
                    log.warning("Import runner stopped on authorization error: %s", e)
                    return RunnerResult(
                        status="aborted", job=job, chunks=chunks, fetched=fetched, upserted=upserted, error=str(e)
                    )
                if failures >= self.max_failures:
                    log.warning("Import runner giving up after %s consecutive failures: %s", failures, e)
                    return RunnerResult(
                        status="aborted", job=job, chunks=chunks, fetched=fetched, upserted=upserted, error=str(e)
                    )
                self._wait(error_delay_s(failures))
                continue

            failures = 0
            job = result.job
            if self.on_progress is not None:
                self.on_progress(result)
            if result.chunk:
                chunks += 1
                fetched += int(result.chunk.get("fetched") or 0)
                upserted += int(result.chunk.get("upserted") or 0)

            status = getattr(job, "status", None)
            if status in {"succeeded", "failed"}:
                error = (getattr(job, "message", None) or {}).get("error") if status == "failed" else None
                return RunnerResult(
                    status=status, job=job, chunks=chunks, fetched=fetched, upserted=upserted, error=error
                )

            if result.status == "rate_limited" and result.retry_at is not None:
                wait = (result.retry_at - self._clock()).total_seconds()
                self._wait(max(SUCCESS_DELAY_S, wait))
            else:
                self._wait(SUCCESS_DELAY_S)
