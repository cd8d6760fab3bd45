"""Audit tables for inbound provider callbacks."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from payrelay.common.db import Base


class CallbackAudit(Base):
    """Raw callback body as received; only `processed`/`processing_result` change later."""

    __tablename__ = "callback_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    callback_type: Mapped[str] = mapped_column(String(32), index=True)
    raw_payload: Mapped[str] = mapped_column(Text)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processing_result: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CallbackVerificationLog(Base):
    """One row per webhook verification attempt."""

    __tablename__ = "callback_verification_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    callback_type: Mapped[str] = mapped_column(String(32), index=True)
    ip_address: Mapped[str] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
