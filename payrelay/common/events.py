"""Live event envelope published to dashboard subscribers.

Every state change worth showing on the dashboard is wrapped in the same
`LiveEvent` shape and serialized to JSON text before fan-out.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field


LiveEventType = Literal[
    "transaction:created",
    "transaction:updated",
    "transaction:completed",
    "transaction:failed",
    "callback:received",
    "log:created",
    "retry:queued",
    "retry:completed",
    "retry:failed",
]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LiveEvent(BaseModel):
    """Canonical event shape sent to live subscribers."""

    type: LiveEventType
    payload: dict[str, Any]
    timestamp: str = Field(default_factory=_utc_now_iso)

    def to_text(self) -> str:
        return json.dumps(self.model_dump(), default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return str(value)


def control_frame(frame_type: str, **fields: Any) -> str:
    """Serialize a transport-level frame (`connected`, `ping`) as JSON text."""

    return json.dumps({"type": frame_type, **fields, "timestamp": _utc_now_iso()})
