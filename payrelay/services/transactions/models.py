from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from payrelay.common.db import Base


TRANSACTION_TYPES = ("STK_PUSH", "C2B", "B2C")
TRANSACTION_STATUSES = ("pending", "completed", "failed", "cancelled")


class Transaction(Base):
    """Provider-facing payment record; status moves pending -> terminal once."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_type: Mapped[str] = mapped_column(String(16), index=True)
    checkout_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    merchant_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    originator_conversation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    account_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_desc: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    raw_request: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_callback: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "transaction_type": self.transaction_type,
            "checkout_request_id": self.checkout_request_id,
            "merchant_request_id": self.merchant_request_id,
            "conversation_id": self.conversation_id,
            "originator_conversation_id": self.originator_conversation_id,
            "transaction_id": self.transaction_id,
            "phone_number": self.phone_number,
            "amount": float(self.amount) if self.amount is not None else None,
            "account_reference": self.account_reference,
            "transaction_desc": self.transaction_desc,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
