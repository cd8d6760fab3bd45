"""Persistent error-event log.

Rows are written best-effort: a failure to record an error is logged locally
and never replaces the original outcome.
"""

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from payrelay.common.db import Base
from payrelay.common.events import LiveEvent
from payrelay.common.logging import logger


class ErrorEvent(Base):
    """Operational error captured for later inspection."""

    __tablename__ = "error_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    error_type: Mapped[str] = mapped_column(String(64), index=True)
    error_message: Mapped[str] = mapped_column(Text)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


def record_error_event(
    session_factory,
    error_type: str,
    error_message: str,
    stack_trace: str | None = None,
    request_data: dict[str, Any] | None = None,
    broadcaster=None,
) -> None:
    """Insert an `ErrorEvent` and announce it as `log:created`."""

    logger.error("error_event type=%s message=%s", error_type, error_message)
    try:
        with session_factory() as db:
            row = ErrorEvent(
                error_type=error_type,
                error_message=error_message,
                stack_trace=stack_trace,
                request_data=json.dumps(request_data, default=str) if request_data is not None else None,
                created_at=datetime.now(timezone.utc),
            )
            db.add(row)
            db.commit()
            payload = {
                "id": row.id,
                "level": "error",
                "category": error_type,
                "message": error_message,
                "created_at": row.created_at,
            }
    except Exception as exc:
        logger.warning("error_event_write_failed type=%s error=%s", error_type, exc)
        return
    if broadcaster is not None:
        broadcaster.publish(LiveEvent(type="log:created", payload=payload))
