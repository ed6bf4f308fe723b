from __future__ import annotations

import datetime as dt

from src.core.connections import connect_bridge, disconnect
from src.db.audit import audit_trail, log_change


NOW = dt.datetime(2025, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def test_secret_fields_are_masked(session):
    row = log_change(
        session,
        actor="u1",
        action="CONNECT",
        entity="BrokerConnection",
        entity_id="1",
        new={"sync_key": "abcd.efgh1234", "login": "5001", "opened": dt.date(2025, 1, 2)},
    )
    session.commit()
    assert row.new_json == {"sync_key": "****1234", "login": "5001", "opened": "2025-01-02"}
    assert row.old_json is None


def test_trail_is_newest_first(session):
    res = connect_bridge(session, user_id="u1", account_login="12345", now=NOW)
    disconnect(session, user_id="u1", now=NOW)
    session.commit()

    trail = audit_trail(session, entity="BrokerConnection", entity_id=str(res.connection.id))
    assert [e.action for e in trail] == ["DISCONNECT", "CONNECT"]
    assert audit_trail(session, entity="BrokerConnection", entity_id="999") == []
