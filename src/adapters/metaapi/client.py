from __future__ import annotations

import datetime as dt
import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Optional

from src.core.net import assert_url_allowed, network_enabled
from src.importers.adapters import ProviderAuthError, ProviderError, RateLimitPauseError
from src.utils.time import ensure_utc, parse_http_date, parse_utc, utcnow


log = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 12
DEFAULT_PAUSE_AFTER_S = 2.0
MIN_DELAY_S = 0.25
MAX_DELAY_S = 15.0


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    content: bytes
    headers: dict[str, str]


class _AllowlistRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        assert_url_allowed(str(newurl))
        return super().redirect_request(req, fp, code, msg, headers, newurl)


Transport = Callable[[str, str, dict[str, str], Optional[bytes], float], HttpResponse]


def _default_transport(url: str, method: str, headers: dict[str, str], body: bytes | None, timeout_s: float) -> HttpResponse:
    if not network_enabled():
        raise ProviderError("Network disabled; set NETWORK_ENABLED=1 to enable MetaApi imports.")
    assert_url_allowed(url)

    opener = urllib.request.build_opener(_AllowlistRedirectHandler())
    req = urllib.request.Request(url, data=body, method=method)
    for k, v in (headers or {}).items():
        if k and v is not None:
            req.add_header(str(k), str(v))
    try:
        with opener.open(req, timeout=timeout_s) as resp:
            status = int(getattr(resp, "status", 200))
            hdrs = {str(k): str(v) for k, v in dict(resp.headers).items()}
            return HttpResponse(status_code=status, content=resp.read(), headers=hdrs)
    except urllib.error.HTTPError as e:
        # 4xx/5xx come back as a response so retry and auth handling stay in one place.
        content = e.read() or b""
        hdrs = {str(k): str(v) for k, v in dict(e.headers or {}).items()}
        return HttpResponse(status_code=int(e.code or 0), content=content, headers=hdrs)


def to_metaapi_time(value: dt.datetime) -> str:
    """MetaApi history paths take `YYYY-MM-DD HH:MM:SS.mmm` in UTC."""
    d = ensure_utc(value)
    return d.strftime("%Y-%m-%d %H:%M:%S.") + f"{d.microsecond // 1000:03d}"


def _safe_json(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace")
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def recommended_retry_time(meta: Any) -> Optional[str]:
    """MetaApi puts `recommendedRetryTime` at the top level or under metadata/error."""
    if not isinstance(meta, dict):
        return None
    candidates = [meta, meta.get("metadata"), meta.get("error")]
    err = meta.get("error")
    if isinstance(err, dict):
        candidates.append(err.get("metadata"))
    for c in candidates:
        if isinstance(c, dict):
            v = c.get("recommendedRetryTime")
            if isinstance(v, str) and v.strip():
                return v.strip()
    return None


def _retry_after_s(headers: dict[str, str], now: dt.datetime) -> Optional[float]:
    raw = None
    for k, v in (headers or {}).items():
        if k.lower() == "retry-after":
            raw = v
            break
    if raw is None or not str(raw).strip():
        return None
    try:
        secs = float(str(raw).strip())
    except ValueError:
        secs = None
    if secs is not None:
        return secs if secs >= 0 else None
    at = parse_http_date(str(raw))
    if at is None:
        return None
    return max(0.0, (at - now).total_seconds())


def compute_retry_delay_s(
    *, attempt: int, headers: dict[str, str], meta: Any, now: dt.datetime
) -> tuple[float, Optional[str]]:
    """
    Backoff for one 429: the body's recommended retry time first, then
    Retry-After, then 0.5s * 2^attempt. Always clamped to [0.25s, 15s].
    """
    rec = recommended_retry_time(meta)
    if rec:
        at = parse_utc(rec)
        if at is not None:
            delay = (at - now).total_seconds() + MIN_DELAY_S
            return min(MAX_DELAY_S, max(MIN_DELAY_S, delay)), rec

    header_delay = _retry_after_s(headers, now)
    if header_delay is not None:
        return min(MAX_DELAY_S, max(MIN_DELAY_S, header_delay)), rec

    return min(MAX_DELAY_S, 0.5 * (2 ** max(0, attempt))), rec


_LOCKS_GUARD = threading.Lock()
_HISTORY_LOCKS: dict[str, threading.Lock] = {}


def _history_lock(account_id: str) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _HISTORY_LOCKS.get(account_id)
        if lock is None:
            lock = threading.Lock()
            _HISTORY_LOCKS[account_id] = lock
        return lock


class MetaApiClient:
    """
    Small REST client for the MetaApi provisioning and history endpoints.

    Rate limits are handled in-process while the wait is short. Longer waits
    surface as RateLimitPauseError so the caller can persist a resume time
    instead of blocking.
    """

    def __init__(
        self,
        *,
        token: str,
        client_url: str,
        provisioning_url: str,
        timeout_s: float = 30.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        pause_after_s: float = DEFAULT_PAUSE_AFTER_S,
        transport: Transport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ):
        self.token = (token or "").strip()
        if not self.token:
            raise ProviderError("Missing METAAPI_TOKEN.")
        self.client_url = (client_url or "").strip().rstrip("/")
        self.provisioning_url = (provisioning_url or "").strip().rstrip("/")
        if not self.client_url or not self.provisioning_url:
            raise ProviderError("MetaApi client and provisioning URLs are required.")
        self.timeout_s = float(timeout_s)
        self.max_retries = max(0, int(max_retries))
        self.pause_after_s = max(MIN_DELAY_S, float(pause_after_s))
        self._transport = transport or _default_transport
        self._sleep = sleep_fn or time.sleep
        self._clock = clock or utcnow

        self.rate_limit_hits = 0

    def _headers(self, *, json_body: bool = False) -> dict[str, str]:
        h = {"auth-token": self.token, "Accept": "application/json"}
        if json_body:
            h["Content-Type"] = "application/json"
        return h

    def _request_with_retry(self, url: str, method: str, body: bytes | None) -> HttpResponse:
        last_meta: Any = None
        for attempt in range(self.max_retries + 1):
            resp = self._transport(url, method, self._headers(json_body=body is not None), body, self.timeout_s)
            if int(resp.status_code or 0) != 429:
                return resp

            self.rate_limit_hits += 1
            meta = _safe_json(resp.content)
            if meta is None and resp.content:
                meta = {"raw": resp.content.decode("utf-8", errors="replace")}
            last_meta = meta
            now = self._clock()
            delay, rec = compute_retry_delay_s(attempt=attempt, headers=resp.headers, meta=meta, now=now)
            if attempt >= self.max_retries or delay > self.pause_after_s:
                raise RateLimitPauseError(
                    retry_at=now + dt.timedelta(seconds=delay),
                    retry_after_s=delay,
                    recommended_retry_time=rec,
                    meta=meta,
                )
            log.info("MetaApi rate limited; retrying in %.2fs (attempt %s)", delay, attempt + 1)
            self._sleep(delay)

        now = self._clock()
        raise RateLimitPauseError(
            retry_at=now + dt.timedelta(seconds=MAX_DELAY_S),
            retry_after_s=MAX_DELAY_S,
            meta=last_meta,
        )

    def _request_json(self, method: str, url: str, payload: dict[str, Any] | None = None) -> Any:
        parsed = urllib.parse.urlparse(url)
        host = (parsed.hostname or "").lower()
        body = json.dumps(payload).encode("utf-8") if payload is not None else None

        resp = self._request_with_retry(url, method.upper(), body)
        status = int(resp.status_code or 0)
        data = _safe_json(resp.content)
        if 200 <= status < 300:
            return data

        message = None
        if isinstance(data, dict):
            message = data.get("message")
            if not message and isinstance(data.get("error"), dict):
                message = data["error"].get("message")
        if not message:
            message = f"MetaApi error (HTTP {status}) host={host}"
        if status in {401, 403}:
            raise ProviderAuthError(str(message))
        raise ProviderError(str(message))

    def _account_path(self, base: str, account_id: str) -> str:
        return f"{base}/users/current/accounts/{urllib.parse.quote(account_id, safe='')}"

    def create_account(
        self,
        *,
        login: str,
        password: str,
        server: str,
        platform: str,
        name: str,
        cloud_type: str,
        magic: int,
    ) -> str:
        data = self._request_json(
            "POST",
            f"{self.provisioning_url}/users/current/accounts",
            {
                "login": login,
                "password": password,
                "name": name,
                "server": server,
                "platform": platform,
                "type": cloud_type,
                "magic": magic,
            },
        )
        account_id = None
        if isinstance(data, dict):
            account_id = data.get("id") or data.get("_id") or data.get("accountId")
        if not account_id:
            raise ProviderError("MetaApi account create returned no id.")
        return str(account_id)

    def deploy_account(self, account_id: str) -> None:
        self._request_json("POST", self._account_path(self.provisioning_url, account_id) + "/deploy")

    def get_account(self, account_id: str) -> dict[str, Any]:
        data = self._request_json("GET", self._account_path(self.provisioning_url, account_id))
        return data if isinstance(data, dict) else {}

    def fetch_deals_by_time_range(self, account_id: str, start: dt.datetime, end: dt.datetime) -> list[dict[str, Any]]:
        """Closed deals in [start, end]. Calls for one account are serialized."""
        url = (
            self._account_path(self.client_url, account_id)
            + "/history-deals/time/"
            + urllib.parse.quote(to_metaapi_time(start), safe="")
            + "/"
            + urllib.parse.quote(to_metaapi_time(end), safe="")
        )
        with _history_lock(account_id.strip()):
            data = self._request_json("GET", url)
        if not isinstance(data, list):
            return []
        return [d for d in data if isinstance(d, dict)]
