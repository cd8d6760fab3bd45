"""Retry queue persistence models (pending jobs + dead-letter archive)."""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from payrelay.common.db import Base


JOB_STATUSES = ("pending", "processing", "completed", "failed", "dead_letter")
CREDENTIAL_HEADERS = ("authorization", "proxy-authorization", "cookie", "x-api-key")


def _parse_blob(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    return {k: ("[REDACTED]" if k.lower() in CREDENTIAL_HEADERS else v) for k, v in headers.items()}


class RetryJob(Base):
    """One outbound HTTP call awaiting (re)delivery."""

    __tablename__ = "retry_queue"
    __table_args__ = (Index("ix_retry_queue_status_next_retry_at", "status", "next_retry_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String(64), index=True)
    endpoint: Mapped[str] = mapped_column(String(2048))
    method: Mapped[str] = mapped_column(String(16))
    # Serialized JSON; parsed at the point of use.
    headers: Mapped[str] = mapped_column(Text, default="{}")
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    max_retries: Mapped[int] = mapped_column(Integer)
    current_retry: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def parsed_headers(self) -> dict[str, str]:
        return _parse_blob(self.headers) or {}

    def parsed_payload(self) -> Any:
        return _parse_blob(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "endpoint": self.endpoint,
            "method": self.method,
            "max_retries": self.max_retries,
            "current_retry": self.current_retry,
            "next_retry_at": self.next_retry_at,
            "last_error": self.last_error,
            "status": self.status,
            "correlation_id": self.correlation_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class DeadLetterItem(Base):
    """Terminal copy of a job that exhausted its retries."""

    __tablename__ = "dead_letter_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_job_id: Mapped[int] = mapped_column(Integer, index=True)
    job_type: Mapped[str] = mapped_column(String(64))
    endpoint: Mapped[str] = mapped_column(String(2048))
    method: Mapped[str] = mapped_column(String(16))
    headers: Mapped[str] = mapped_column(Text, default="{}")
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    max_retries: Mapped[int] = mapped_column(Integer)
    final_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    original_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)

    def parsed_headers(self) -> dict[str, str]:
        return _parse_blob(self.headers) or {}

    def parsed_payload(self) -> Any:
        return _parse_blob(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_job_id": self.original_job_id,
            "job_type": self.job_type,
            "endpoint": self.endpoint,
            "method": self.method,
            "headers": redact_headers(self.parsed_headers()),
            "payload": self.parsed_payload(),
            "max_retries": self.max_retries,
            "final_error": self.final_error,
            "correlation_id": self.correlation_id,
            "original_created_at": self.original_created_at,
            "created_at": self.created_at,
        }
