from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _none_if_blank(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return str(v)
    if isinstance(v, str) and v.strip() == "":
        return None
    return v.strip() if isinstance(v, str) else v


class BrokerAction(BaseModel):
    """
    Body of POST /api/broker/action.

    Clients send camelCase keys; snake_case is accepted too.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: Optional[str] = None

    # connect
    broker: Optional[str] = None
    platform: Optional[str] = None
    account_login: Optional[str] = Field(default=None, alias="accountLogin")
    login: Optional[str] = None
    environment: Optional[str] = None
    account_type: Optional[str] = Field(default=None, alias="accountType")
    server: Optional[str] = None
    password: Optional[str] = None
    cloud_type: Optional[str] = Field(default=None, alias="type")

    # imports
    connection_id: Optional[str] = Field(default=None, alias="connectionId")
    start: Optional[str] = Field(default=None, alias="from")
    end: Optional[str] = Field(default=None, alias="to")
    days: Optional[int] = None
    job_id: Optional[str] = Field(default=None, alias="jobId")

    @field_validator(
        "action",
        "broker",
        "platform",
        "account_login",
        "login",
        "environment",
        "account_type",
        "server",
        "password",
        "cloud_type",
        "connection_id",
        "start",
        "end",
        "job_id",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, v):
        return _none_if_blank(v)

    @field_validator("days", mode="before")
    @classmethod
    def _days(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        try:
            return int(float(v))
        except (TypeError, ValueError):
            return None

    @property
    def is_metaapi_connect(self) -> bool:
        return bool(self.server and self.password)
