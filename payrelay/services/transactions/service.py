"""Transaction creation and read-side queries for the dashboard."""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from payrelay.common.errors import NotFoundError, StorageError
from payrelay.common.events import LiveEvent
from payrelay.common.logging import logger
from payrelay.services.retry_queue.store import as_utc, utc_now
from payrelay.services.transactions.models import TRANSACTION_STATUSES, TRANSACTION_TYPES, Transaction


REDACTED_REQUEST_FIELDS = ("SecurityCredential", "Password")


def _redacted(request_body: dict[str, Any]) -> str:
    return json.dumps({k: ("[REDACTED]" if k in REDACTED_REQUEST_FIELDS else v) for k, v in request_body.items()})


class TransactionService:
    """Creates pending provider transactions and serves dashboard reads.

    Status changes after creation belong to the callback service.
    """

    def __init__(self, session_factory, broadcaster=None, now=utc_now) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.now = now

    @contextmanager
    def _session(self) -> Iterator[Any]:
        try:
            with self.session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            raise StorageError(f"transaction storage failure: {exc}") from exc

    def create(self, **fields: Any) -> Transaction:
        now = self.now()
        with self._session() as db:
            txn = Transaction(created_at=now, updated_at=now, **fields)
            db.add(txn)
            db.commit()
        logger.info(
            "transaction_created id=%s type=%s status=%s",
            txn.id,
            txn.transaction_type,
            txn.status,
        )
        if self.broadcaster is not None:
            self.broadcaster.publish(LiveEvent(type="transaction:created", payload=txn.to_dict()))
        return txn

    def record_stk_push(self, request_body: dict[str, Any], response_body: dict[str, Any]) -> Transaction:
        """Persist a pending STK push once the provider accepted the request."""

        return self.create(
            transaction_type="STK_PUSH",
            checkout_request_id=response_body.get("CheckoutRequestID"),
            merchant_request_id=response_body.get("MerchantRequestID"),
            phone_number=str(request_body.get("PhoneNumber", "")),
            amount=Decimal(str(request_body.get("Amount", 0))),
            account_reference=request_body.get("AccountReference"),
            transaction_desc=request_body.get("TransactionDesc") or "Payment",
            status="pending",
            raw_request=_redacted(request_body),
        )

    def record_b2c(self, request_body: dict[str, Any], response_body: dict[str, Any]) -> Transaction:
        return self.create(
            transaction_type="B2C",
            conversation_id=response_body.get("ConversationID"),
            originator_conversation_id=response_body.get("OriginatorConversationID"),
            phone_number=str(request_body.get("PartyB", "")),
            amount=Decimal(str(request_body.get("Amount", 0))),
            transaction_desc=request_body.get("Remarks"),
            status="pending",
            raw_request=_redacted(request_body),
        )

    def get(self, transaction_id: int) -> Transaction:
        with self._session() as db:
            txn = db.get(Transaction, transaction_id)
        if txn is None:
            raise NotFoundError("Transaction not found")
        return txn

    def list_transactions(
        self,
        page: int = 1,
        limit: int = 20,
        transaction_type: str | None = None,
        status: str | None = None,
        search: str | None = None,
    ) -> tuple[list[Transaction], int]:
        """Filtered page of transactions, newest first."""

        page = max(page, 1)
        conditions = []
        if transaction_type and transaction_type != "all":
            conditions.append(Transaction.transaction_type == transaction_type)
        if status and status != "all":
            conditions.append(Transaction.status == status)
        if search:
            term = f"%{search}%"
            conditions.append(
                or_(
                    Transaction.phone_number.like(term),
                    Transaction.transaction_id.like(term),
                    Transaction.account_reference.like(term),
                )
            )
        with self._session() as db:
            total = db.execute(select(func.count()).select_from(Transaction).where(*conditions)).scalar_one()
            rows = list(
                db.execute(
                    select(Transaction)
                    .where(*conditions)
                    .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                    .limit(limit)
                    .offset((page - 1) * limit)
                ).scalars()
            )
        return rows, total

    def stats(self) -> dict[str, Any]:
        """Dashboard aggregates: totals, breakdowns, last 24 hours and today."""

        now = self.now()
        since = now - timedelta(hours=24)
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        with self._session() as db:
            total_count, total_amount, completed_amount = db.execute(
                select(
                    func.count(Transaction.id),
                    func.coalesce(func.sum(Transaction.amount), 0),
                    func.coalesce(
                        func.sum(case((Transaction.status == "completed", Transaction.amount), else_=0)), 0
                    ),
                )
            ).one()
            by_status = dict(db.execute(select(Transaction.status, func.count()).group_by(Transaction.status)).all())
            by_type = dict(
                db.execute(
                    select(Transaction.transaction_type, func.count()).group_by(Transaction.transaction_type)
                ).all()
            )
            recent = db.execute(
                select(Transaction.created_at, Transaction.amount, Transaction.status).where(
                    Transaction.created_at >= min(since, today_start)
                )
            ).all()

        last_24h = {"count": 0, "amount": 0.0}
        today = {"count": 0, "amount": 0.0, "completed": 0, "failed": 0, "pending": 0}
        hourly: dict[str, dict[str, Any]] = {}
        for created_at, amount, status in recent:
            created_at = as_utc(created_at)
            value = float(amount or 0)
            if created_at >= since:
                last_24h["count"] += 1
                last_24h["amount"] += value
                hour = created_at.strftime("%Y-%m-%d %H:00:00")
                bucket = hourly.setdefault(hour, {"hour": hour, "count": 0, "amount": 0.0})
                bucket["count"] += 1
                bucket["amount"] += value
            if created_at >= today_start:
                today["count"] += 1
                today["amount"] += value
                if status in ("completed", "failed", "pending"):
                    today[status] += 1

        return {
            "overview": {
                "totalTransactions": total_count,
                "totalAmount": float(total_amount),
                "completedAmount": float(completed_amount),
            },
            "byStatus": {status: by_status.get(status, 0) for status in TRANSACTION_STATUSES},
            "byType": {txn_type: by_type.get(txn_type, 0) for txn_type in TRANSACTION_TYPES},
            "last24Hours": last_24h,
            "today": today,
            "hourlyVolume": [hourly[key] for key in sorted(hourly)],
        }
