from __future__ import annotations

import datetime as dt

import pytest

import src.app.routes.actions as actions
import src.core.import_jobs as import_jobs
from src.app.auth import issue_access_token
from src.db.models import BrokerConnection, Profile
from src.importers.adapters import HistoryAdapter, ProviderError, RateLimitPauseError
from src.utils.time import utcnow


class FakeProvisioning:
    def __init__(self):
        self.created: list[dict] = []

    def create_account(self, **kwargs):
        self.created.append(kwargs)
        return "acc-1"

    def deploy_account(self, account_id):
        return None

    def get_account(self, account_id):
        return {"state": "DEPLOYED"}


class OneDealPerWindow(HistoryAdapter):
    def __init__(self):
        self.pause_next = False

    def fetch_deals(self, connection, start, end):
        if self.pause_next:
            self.pause_next = False
            raise RateLimitPauseError(retry_at=utcnow() + dt.timedelta(minutes=5), retry_after_s=300)
        return [{"id": f"w-{start.isoformat()}", "time": start}]

    def build_trade_records(self, deals):
        return [
            {
                "ticket": d["id"],
                "symbol": "EURUSD",
                "type": "buy",
                "open_price": 1.1,
                "close_price": 1.2,
                "volume": 1,
                "close_time": d["time"].isoformat(),
            }
            for d in deals
        ]


@pytest.fixture()
def auth(session_factory):
    with session_factory() as s:
        s.add(Profile(user_id="u1", subscription_plan="pro"))
        s.commit()
        token = issue_access_token(s, user_id="u1", label="test")
        other = issue_access_token(s, user_id="u2", label="test")
    return {"Authorization": f"Bearer {token}"}, {"Authorization": f"Bearer {other}"}


@pytest.fixture()
def headers(auth):
    return auth[0]


@pytest.fixture()
def provisioning(monkeypatch):
    fake = FakeProvisioning()
    monkeypatch.setattr(actions, "_metaapi_client", lambda: fake)
    return fake


@pytest.fixture()
def adapter(monkeypatch):
    fake = OneDealPerWindow()
    monkeypatch.setattr(import_jobs, "_adapter_for", lambda connection, settings: fake)
    return fake


def _act(client, headers, **body):
    return client.post("/api/broker/action", json=body, headers=headers)


def _metaapi_connect(client, headers):
    return _act(
        client,
        headers,
        action="connect",
        platform="mt5",
        environment="demo",
        server="Broker-Demo",
        login="5001",
        password="pw",
    )


def test_requires_bearer_token(client):
    r = client.post("/api/broker/action", json={"action": "status"})
    assert r.status_code == 401
    assert r.json() == {"ok": False, "error": "Unauthorized.", "code": "unauthorized"}

    r = client.post("/api/broker/action", json={"action": "status"}, headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


def test_unknown_and_missing_action(client, headers):
    r = _act(client, headers, action="explode")
    assert r.status_code == 400
    assert r.json()["error"] == "Unknown action: explode"
    assert _act(client, headers).status_code == 400


def test_bridge_connect_status_disconnect(client, headers, monkeypatch):
    monkeypatch.setenv("SYNC_PUBLIC_URL", "https://journal.example/mt/sync/")
    r = _act(client, headers, action="connect", platform="mt4", accountLogin=12345)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["syncUrl"] == "https://journal.example/mt/sync"
    assert data["connection"]["broker"] == "mt4"
    assert data["connection"]["account_login"] == "12345"
    assert "credential_hash" not in data["connection"]
    assert data["connectedAt"].endswith("Z")

    r = client.post("/mt/sync", json=[], headers={"X-TJ-Sync-Key": data["syncKey"]})
    assert r.status_code == 200

    status = _act(client, headers, action="status").json()["data"]
    assert status["connected"] is True
    assert status["record"]["id"] == data["connection"]["id"]
    assert status["connections"][0]["trade_count"] == 0

    r = _act(client, headers, action="disconnect")
    assert r.json()["data"] == {"disconnected": True, "count": 1}
    assert _act(client, headers, action="status").json()["data"]["connected"] is False


def test_bridge_conflict_across_users(client, auth):
    mine, theirs = auth
    assert _act(client, mine, action="connect", broker="mt5", accountLogin="1").status_code == 200
    r = _act(client, theirs, action="connect", broker="mt5", accountLogin="1")
    assert r.status_code == 409
    assert r.json()["code"] == "conflict"


def test_metaapi_connect(client, headers, provisioning):
    r = _metaapi_connect(client, headers)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["reused"] is False
    assert data["connection"]["broker"] == "metaapi"
    assert data["connection"]["status"] == "connected"
    assert provisioning.created[0]["password"] == "pw"

    again = _metaapi_connect(client, headers).json()["data"]
    assert again["reused"] is True


def test_metaapi_connect_bad_input(client, headers, provisioning):
    r = _act(client, headers, action="connect", platform="mt5", environment="staging", server="S", login="1", password="pw")
    assert r.status_code == 400
    assert provisioning.created == []


def test_provider_errors_become_502(client, headers, monkeypatch):
    def _boom():
        raise ProviderError("Missing METAAPI_TOKEN.")

    monkeypatch.setattr(actions, "_metaapi_client", _boom)
    r = _metaapi_connect(client, headers)
    assert r.status_code == 502
    assert r.json()["code"] == "server_error"


def test_quick_import_flow(client, headers, provisioning, adapter, session_factory):
    conn_id = _metaapi_connect(client, headers).json()["data"]["connection"]["id"]

    r = _act(client, headers, action="quick_import", connectionId=conn_id, days=25)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["range"]["days"] == 25
    assert data["range"]["windowDays"] == 10
    job = data["job"]
    assert job["status"] == "queued"
    assert job["total"] == 3

    r = _act(client, headers, action="import_continue", jobId=job["id"])
    body = r.json()["data"]
    assert body["status"] == "ok"
    assert body["chunk"] == {"fetched": 3, "upserted": 3}
    assert body["job"]["status"] == "succeeded"

    polled = _act(client, headers, action="import_job", jobId=job["id"]).json()["data"]["job"]
    assert polled["message"]["upsertedTotal"] == 3

    status = _act(client, headers, action="status", connectionId=conn_id).json()["data"]
    assert status["connection_status"] == "imported"
    assert status["trades_imported_total_for_connection"] == 3
    assert status["trades_total_for_user"] == 3

    with session_factory() as s:
        assert s.get(BrokerConnection, conn_id).last_import_at is not None


def test_import_continue_rate_limited(client, headers, provisioning, adapter):
    conn_id = _metaapi_connect(client, headers).json()["data"]["connection"]["id"]
    job_id = _act(client, headers, action="import", connectionId=conn_id, **{"from": "2025-01-01T00:00:00Z", "to": "2025-01-31T00:00:00Z"}).json()["data"]["job"]["id"]

    adapter.pause_next = True
    body = _act(client, headers, action="import_continue", jobId=job_id).json()["data"]
    assert body["status"] == "rate_limited"
    assert body["message"] == "Rate limited, retrying soon"
    assert body["retryAt"].endswith("Z")
    assert body["job"]["status"] == "running"
    assert body["job"]["progress"] == 0


def test_import_cancel_and_ownership(client, auth, provisioning):
    mine, theirs = auth
    conn_id = _metaapi_connect(client, mine).json()["data"]["connection"]["id"]
    job_id = _act(client, mine, action="quick_import", connectionId=conn_id).json()["data"]["job"]["id"]

    r = _act(client, theirs, action="import_job", jobId=job_id)
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"
    assert _act(client, theirs, action="quick_import", connectionId=conn_id).status_code == 404

    job = _act(client, mine, action="import_cancel", jobId=job_id).json()["data"]["job"]
    assert job["status"] == "failed"
    assert job["message"]["error"] == "Canceled"


def test_import_requires_connection_id(client, headers):
    r = _act(client, headers, action="import")
    assert r.status_code == 400
    assert r.json()["error"] == "Missing connectionId."
    r = _act(client, headers, action="import_continue")
    assert r.status_code == 400
    assert r.json()["error"] == "Missing jobId."
