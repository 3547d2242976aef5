"""Dead-letter: signature-valid webhook deliveries that could not be processed."""

from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class FailedWebhook(Document):
    event: str = ""
    event_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    raw_body: str | None = None  # kept when the body was not valid JSON
    reason: str = ""
    transient: bool = False
    retries: int = 0
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_webhooks"
        indexes = [[("resolved_at", 1), ("transient", 1)], [("event_id", 1)], [("created_at", -1)]]
