"""
Common — イベントエンベロープ (Event Envelope)

サービス間を流れる事実(Fact)はすべてこの封筒に包まれて配送される。

  routing_key     ドット区切りの事実名 (例: order.created)
  payload         事実の中身 (JSON)
  correlation_id  冪等性キー。再配信されても変わらない
  timestamp       事実が記録された時刻
  source_service  発行元サービス
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

ROUTING_KEY_PATTERN = r"^[a-z][a-z_]*(\.[a-z][a-z_]*)+$"


class Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    routing_key: str = Field(pattern=ROUTING_KEY_PATTERN)
    payload: dict[str, Any]
    correlation_id: str = Field(min_length=1)
    timestamp: datetime
    source_service: str

    @classmethod
    def new(
        cls,
        routing_key: str,
        payload: dict[str, Any],
        source_service: str,
        correlation_id: str | None = None,
    ) -> "Envelope":
        return cls(
            routing_key=routing_key,
            payload=payload,
            correlation_id=correlation_id or str(uuid4()),
            timestamp=datetime.now(timezone.utc),
            source_service=source_service,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Envelope":
        return cls.model_validate_json(raw)
