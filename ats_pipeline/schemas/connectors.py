from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

SyncStatus = Literal["queued", "completed", "in_progress", "error"]


class ConnectionTestOut(BaseModel):
    connector_id: str
    ok: bool
    status: str
    message: str
    raw: str | None = None
    timestamp: datetime


class SyncOut(BaseModel):
    connector_id: str
    ok: bool
    status: SyncStatus
    message: str
    result: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
