from __future__ import annotations

import os
import urllib.parse

from src.importers.adapters import ProviderError


DEFAULT_ALLOWED_HOST_SUFFIXES = ("agiliumtrade.ai",)


def network_enabled() -> bool:
    v = (os.environ.get("NETWORK_ENABLED") or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def _normalize_host(entry: str) -> str:
    s = entry.strip().lower()
    if "://" in s:
        s = urllib.parse.urlparse(s).hostname or ""
    s = s.split("/", 1)[0]
    s = s.split(":", 1)[0]
    return s.strip(".")


def allowed_outbound_hosts() -> set[str]:
    raw = (os.environ.get("ALLOWED_OUTBOUND_HOSTS") or "").strip()
    if raw:
        return {h for h in (_normalize_host(p) for p in raw.split(",")) if h}
    # Safe-by-default allowlist: MetaApi domains only.
    return set(DEFAULT_ALLOWED_HOST_SUFFIXES)


def host_allowed(host: str) -> bool:
    h = (host or "").lower().strip(".")
    if not h:
        return False
    for allowed in allowed_outbound_hosts():
        if h == allowed or h.endswith("." + allowed):
            return True
    return False


def assert_url_allowed(url: str) -> None:
    u = urllib.parse.urlparse(url)
    if (u.scheme or "").lower() != "https":
        raise ProviderError("Blocked network request: only https:// is allowed.")
    host = (u.hostname or "").lower()
    if not host:
        raise ProviderError("Blocked network request: missing hostname.")
    if not host_allowed(host):
        hint = " (ALLOWED_OUTBOUND_HOSTS overrides defaults)" if os.environ.get("ALLOWED_OUTBOUND_HOSTS") else ""
        raise ProviderError(f"Blocked network request: host not allowlisted ({host}){hint}.")
