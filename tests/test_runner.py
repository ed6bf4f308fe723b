from __future__ import annotations

import datetime as dt
from types import SimpleNamespace

from src.core.runner import MAX_ERROR_DELAY_S, SUCCESS_DELAY_S, ImportRunner, error_delay_s
from src.importers.adapters import ProviderAuthError, ProviderError


NOW = dt.datetime(2025, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def _result(status="running", *, result_status="ok", chunk=None, retry_at=None, message=None):
    job = SimpleNamespace(status=status, message=message or {})
    return SimpleNamespace(status=result_status, job=job, chunk=chunk, retry_at=retry_at)


class Script:
    def __init__(self, steps):
        self.steps = list(steps)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step


def test_error_delay_backoff():
    assert error_delay_s(1) == 1.0
    assert error_delay_s(3) == 4.0
    assert error_delay_s(10) == MAX_ERROR_DELAY_S


def test_runs_until_succeeded():
    sleeps: list[float] = []
    script = Script(
        [
            _result(chunk={"fetched": 3, "upserted": 2}),
            _result(chunk={"fetched": 1, "upserted": 1}),
            _result("succeeded", chunk={"fetched": 0, "upserted": 0}),
        ]
    )
    progress = []
    result = ImportRunner(script, sleep_fn=sleeps.append, clock=lambda: NOW, on_progress=progress.append).run()
    assert result.status == "succeeded"
    assert (result.chunks, result.fetched, result.upserted) == (3, 4, 3)
    assert sleeps == [SUCCESS_DELAY_S, SUCCESS_DELAY_S]
    assert len(progress) == 3


def test_waits_until_retry_at_when_rate_limited():
    sleeps: list[float] = []
    script = Script(
        [
            _result(result_status="rate_limited", retry_at=NOW + dt.timedelta(seconds=20)),
            _result(result_status="rate_limited", retry_at=NOW - dt.timedelta(seconds=5)),
            _result("succeeded"),
        ]
    )
    result = ImportRunner(script, sleep_fn=sleeps.append, clock=lambda: NOW).run()
    assert result.status == "succeeded"
    assert sleeps == [20.0, SUCCESS_DELAY_S]


def test_failed_job_reports_error():
    script = Script([_result("failed", message={"error": "Canceled"})])
    result = ImportRunner(script, sleep_fn=lambda s: None).run()
    assert result.status == "failed"
    assert result.error == "Canceled"


def test_transient_errors_back_off_then_recover():
    sleeps: list[float] = []
    script = Script([ProviderError("flaky"), ProviderError("flaky"), _result("succeeded")])
    result = ImportRunner(script, sleep_fn=sleeps.append).run()
    assert result.status == "succeeded"
    assert sleeps == [error_delay_s(1), error_delay_s(2)]


def test_aborts_after_consecutive_failures():
    script = Script([RuntimeError("down")] * 10)
    result = ImportRunner(script, sleep_fn=lambda s: None, max_failures=3).run()
    assert result.status == "aborted"
    assert result.error == "down"
    assert script.calls == 3


def test_aborts_immediately_on_authorization_error():
    script = Script([ProviderAuthError("bad token"), _result("succeeded")])
    result = ImportRunner(script, sleep_fn=lambda s: None).run()
    assert result.status == "aborted"
    assert script.calls == 1


def test_cancel_stops_the_loop():
    runner = None

    def _continue():
        runner.cancel()
        return _result(chunk={"fetched": 1, "upserted": 1})

    runner = ImportRunner(_continue, sleep_fn=lambda s: None)
    result = runner.run()
    assert result.status == "canceled"
    assert result.chunks == 1
