from __future__ import annotations

import datetime as dt
import json
from typing import Any

from sqlalchemy.types import DateTime as _DateTime
from sqlalchemy.types import Text as _Text
from sqlalchemy.types import TypeDecorator

from src.utils.time import UTC


class UTCDateTime(TypeDecorator):
    """
    Store datetimes as naive UTC and hand back tz-aware UTC datetimes.

    SQLite has no timezone-aware column type; naive inputs are treated as UTC.
    """

    impl = _DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        v = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return v.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class JSONText(TypeDecorator):
    """
    A dict persisted as a JSON string in a TEXT column.

    Import job state lives in the job's `message` column; older rows or manual
    edits may hold plain text, which reads back as `{"statusText": <text>}`.
    """

    impl = _Text
    cache_ok = True

    def process_bind_param(self, value: dict[str, Any] | None, dialect):
        if value is None:
            return None
        return json.dumps(value, sort_keys=True, default=str)

    def process_result_value(self, value: str | None, dialect):
        if value is None or not value.strip():
            return None
        try:
            parsed = json.loads(value)
        except ValueError:
            return {"statusText": value}
        if not isinstance(parsed, dict):
            return {"statusText": value}
        return parsed
