from __future__ import annotations

import datetime as dt

import pytest

from src.core.config import ConfigError, load_settings
from src.core.net import assert_url_allowed, host_allowed, network_enabled
from src.importers.adapters import ProviderError
from src.utils.rate_limit import cooldown_hit, mask_secret, tracked_keys
from src.utils.time import iso_utc, parse_http_date, parse_utc


def test_defaults():
    s = load_settings()
    assert s.sync_cooldown_ms == 800
    assert s.sync_max_batch == 2000
    assert s.free_trade_limit == 15
    assert s.free_trial_days == 14
    assert s.import_job_stale_minutes == 30
    assert s.metaapi_token is None


def test_yaml_overlay_and_env_precedence(tmp_path, monkeypatch):
    cfg = tmp_path / "tradesync.yaml"
    cfg.write_text("free_trade_limit: 50\nsync_public_url: https://x.example/mt/sync/\n")
    monkeypatch.setenv("TRADESYNC_CONFIG", str(cfg))
    s = load_settings()
    assert s.free_trade_limit == 50
    assert s.sync_public_url == "https://x.example/mt/sync"

    monkeypatch.setenv("FREE_TRADE_LIMIT", "7")
    assert load_settings().free_trade_limit == 7


def test_bad_values(tmp_path, monkeypatch):
    monkeypatch.setenv("SYNC_COOLDOWN_MS", "soon")
    with pytest.raises(ConfigError):
        load_settings()

    monkeypatch.delenv("SYNC_COOLDOWN_MS")
    cfg = tmp_path / "list.yaml"
    cfg.write_text("- a\n- b\n")
    monkeypatch.setenv("TRADESYNC_CONFIG", str(cfg))
    with pytest.raises(ConfigError):
        load_settings()


def test_network_gate(monkeypatch):
    monkeypatch.delenv("NETWORK_ENABLED", raising=False)
    assert not network_enabled()
    monkeypatch.setenv("NETWORK_ENABLED", "yes")
    assert network_enabled()


def test_allowlist(monkeypatch):
    monkeypatch.delenv("ALLOWED_OUTBOUND_HOSTS", raising=False)
    assert host_allowed("mt-client-api-v1.london.agiliumtrade.ai")
    assert not host_allowed("agiliumtrade.ai.evil.example")
    assert_url_allowed("https://mt-provisioning-api-v1.agiliumtrade.ai/users")
    with pytest.raises(ProviderError):
        assert_url_allowed("http://mt-client-api-v1.agiliumtrade.ai/")
    with pytest.raises(ProviderError):
        assert_url_allowed("https://example.com/")

    monkeypatch.setenv("ALLOWED_OUTBOUND_HOSTS", "https://example.com/, other.test")
    assert_url_allowed("https://api.example.com/x")
    assert not host_allowed("agiliumtrade.ai")


def test_time_helpers():
    assert parse_utc("2025-01-02T03:04:05Z") == dt.datetime(2025, 1, 2, 3, 4, 5, tzinfo=dt.timezone.utc)
    assert parse_utc("2025-01-02T03:04:05") == dt.datetime(2025, 1, 2, 3, 4, 5, tzinfo=dt.timezone.utc)
    assert parse_utc("nope") is None
    assert iso_utc(dt.datetime(2025, 1, 2, tzinfo=dt.timezone(dt.timedelta(hours=2)))) == "2025-01-01T22:00:00Z"
    assert parse_http_date("Wed, 21 Oct 2015 07:28:00 GMT") == dt.datetime(2015, 10, 21, 7, 28, tzinfo=dt.timezone.utc)
    assert parse_http_date("garbage") is None


def test_cooldown_per_key():
    ticks = iter([0.0, 0.5, 0.6, 2.0, 0.1])
    clock = lambda: next(ticks)  # noqa: E731
    assert not cooldown_hit(key="a", min_interval_s=0.8, clock=clock)
    assert cooldown_hit(key="a", min_interval_s=0.8, clock=clock)
    # Rejected calls still reset the reference point.
    assert cooldown_hit(key="a", min_interval_s=0.8, clock=clock)
    assert not cooldown_hit(key="a", min_interval_s=0.8, clock=clock)
    assert not cooldown_hit(key="b", min_interval_s=0.8, clock=clock)


def test_idle_keys_are_forgotten():
    for i in range(100):
        cooldown_hit(key=f"k{i}", min_interval_s=0.8, clock=lambda: 0.0)
    assert tracked_keys() == 100
    assert not cooldown_hit(key="fresh", min_interval_s=0.8, clock=lambda: 5.0)
    assert tracked_keys() == 1
    # A pruned key starts over rather than being throttled.
    assert not cooldown_hit(key="k0", min_interval_s=0.8, clock=lambda: 5.1)


def test_mask_secret():
    assert mask_secret("abcdef123456") == "****3456"
    assert mask_secret(None) == "****"
