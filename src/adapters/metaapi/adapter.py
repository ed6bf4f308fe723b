from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from src.adapters.metaapi.client import MetaApiClient
from src.adapters.metaapi.deals import deals_to_records
from src.core.config import Settings, load_settings
from src.importers.adapters import HistoryAdapter, ProviderError


def client_from_settings(settings: Optional[Settings] = None, **kwargs: Any) -> MetaApiClient:
    s = settings or load_settings()
    if not s.metaapi_token:
        raise ProviderError("Missing METAAPI_TOKEN.")
    if not s.metaapi_client_url or not s.metaapi_provisioning_url:
        raise ProviderError("Missing METAAPI_CLIENT_URL or METAAPI_PROVISIONING_URL.")
    return MetaApiClient(
        token=s.metaapi_token,
        client_url=s.metaapi_client_url,
        provisioning_url=s.metaapi_provisioning_url,
        **kwargs,
    )


class MetaApiHistoryAdapter(HistoryAdapter):
    def __init__(self, client: MetaApiClient):
        self.client = client

    def fetch_deals(self, connection: Any, start: dt.datetime, end: dt.datetime) -> list[dict[str, Any]]:
        account_id = (getattr(connection, "metaapi_account_id", None) or "").strip()
        if not account_id:
            raise ProviderError("Connection has no MetaApi account.")
        return self.client.fetch_deals_by_time_range(account_id, start, end)

    def build_trade_records(self, deals: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return deals_to_records(deals)
