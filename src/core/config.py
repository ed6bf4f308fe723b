from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Settings:
    database_url: str
    sync_public_url: str
    sync_cooldown_ms: int
    sync_max_batch: int
    free_trade_limit: int
    free_trial_days: int
    import_job_stale_minutes: int
    metaapi_client_url: Optional[str]
    metaapi_provisioning_url: Optional[str]
    metaapi_token: Optional[str]


_DEFAULTS: dict[str, Any] = {
    "database_url": "sqlite:///./data/tradesync.db",
    "sync_public_url": "",
    "sync_cooldown_ms": 800,
    "sync_max_batch": 2000,
    "free_trade_limit": 15,
    "free_trial_days": 14,
    "import_job_stale_minutes": 30,
    "metaapi_client_url": None,
    "metaapi_provisioning_url": None,
    "metaapi_token": None,
}

_INT_FIELDS = {"sync_cooldown_ms", "sync_max_batch", "free_trade_limit", "free_trial_days", "import_job_stale_minutes"}


def _candidate_paths() -> list[Path]:
    paths: list[Path] = []
    explicit = (os.environ.get("TRADESYNC_CONFIG") or "").strip()
    if explicit:
        paths.append(Path(os.path.expanduser(explicit)))
    paths.append(Path("tradesync.yaml"))
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".tradesync" / "config.yaml")
    return paths


def _load_yaml_overlay() -> tuple[dict[str, Any], Optional[str]]:
    for p in _candidate_paths():
        if p.exists():
            data = yaml.safe_load(p.read_text()) or {}
            if not isinstance(data, dict):
                raise ConfigError(f"Config file must contain a mapping: {p}")
            return {str(k).strip().lower(): v for k, v in data.items()}, str(p)
    return {}, None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def load_settings() -> Settings:
    """
    Environment variables win over the YAML overlay, which wins over defaults.
    Keys in YAML use the lowercase field names (e.g. `sync_cooldown_ms`).
    """
    overlay, _path = _load_yaml_overlay()
    values: dict[str, Any] = {}
    for name, default in _DEFAULTS.items():
        raw = os.environ.get(name.upper())
        if raw is None or not raw.strip():
            raw = overlay.get(name, default)
        if name in _INT_FIELDS:
            try:
                values[name] = int(raw)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{name.upper()} must be an integer (got {raw!r}).") from e
        elif name == "database_url":
            values[name] = _clean(raw) or default
        else:
            values[name] = _clean(raw)
    values["sync_public_url"] = (values["sync_public_url"] or "").rstrip("/")
    for url_key in ("metaapi_client_url", "metaapi_provisioning_url"):
        if values[url_key]:
            values[url_key] = str(values[url_key]).rstrip("/")
    return Settings(**values)
