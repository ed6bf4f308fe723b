from __future__ import annotations

import datetime as dt
from abc import ABC, abstractmethod
from typing import Any, Optional


class ProviderError(Exception):
    pass


class ProviderAuthError(ProviderError):
    pass


class RateLimitPauseError(ProviderError):
    """
    Upstream asked us to back off for longer than we are willing to block a request.

    The caller is expected to persist `retry_at` and come back after it.
    """

    def __init__(
        self,
        message: str = "Rate limited, retrying soon",
        *,
        retry_at: dt.datetime,
        retry_after_s: float,
        recommended_retry_time: Optional[str] = None,
        meta: Any = None,
    ):
        super().__init__(message)
        self.retry_at = retry_at
        self.retry_after_s = float(retry_after_s)
        self.recommended_retry_time = recommended_retry_time
        self.meta = meta


class HistoryAdapter(ABC):
    """Pull-side broker integration: fetch closed-deal history for one account window."""

    @abstractmethod
    def fetch_deals(self, connection: Any, start: dt.datetime, end: dt.datetime) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def build_trade_records(self, deals: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert raw deals into records the field normalizer understands."""
        raise NotImplementedError
