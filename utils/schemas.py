"""
Pydantic Schemas - Data Validation Models

Defines the Pydantic schemas exchanged between the transport, the handler
and the dead-letter stream:
- PaymentEvent: a delivered payment message
- DeadLetterRecord: a message that exhausted its delivery attempts

Usage:
    from utils.schemas import PaymentEvent

    event = PaymentEvent(id="1700000000000-0", data=b"payload")
"""

from datetime import datetime, timezone
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentEvent(BaseModel):
    """Payment event as delivered by the transport.

    Immutable once received. `id` is the transport's unique identifier and
    stays the same across redeliveries of the same message.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Transport message ID")
    data: bytes = Field(default=b"", description="Opaque payload")
    attributes: dict[str, str] = Field(default_factory=dict, description="Message attributes")
    delivery_attempt: int = Field(default=1, ge=1, description="1 on first delivery")

    @field_validator("attributes", mode="before")
    @classmethod
    def decode_attributes(cls, v: Any) -> Any:
        """Accept the JSON-encoded form stored in stream entries."""
        if v is None or v in (b"", ""):
            return {}
        if isinstance(v, (bytes, str)):
            decoded = orjson.loads(v)
            if not isinstance(decoded, dict):
                raise ValueError("attributes must be a JSON object")
            return {str(k): str(val) for k, val in decoded.items()}
        return v


class DeadLetterRecord(BaseModel):
    """Dead-letter stream entry with error information.

    Contains the original message plus `error_reason`.
    """

    id: str
    data: bytes
    attributes: dict[str, str] = Field(default_factory=dict)
    error_reason: str
    delivery_attempt: int
    source_stream: str
    subscription: str
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_fields(self) -> dict[str, bytes | str]:
        """Flatten into stream entry fields."""
        return {
            "id": self.id,
            "data": self.data,
            "attributes": orjson.dumps(self.attributes),
            "error_reason": self.error_reason,
            "delivery_attempt": str(self.delivery_attempt),
            "source_stream": self.source_stream,
            "subscription": self.subscription,
            "failed_at": self.failed_at.isoformat(),
        }
