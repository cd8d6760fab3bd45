"""Callback processing: audit, parse, apply the transaction transition, broadcast.

Every handler returns the acknowledgment body the provider expects. The
provider retries deliveries it does not see acknowledged, so failures are
recorded internally and still acknowledged; only C2B validation carries a
real accept/reject answer.

Transaction status moves out of `pending` through a guarded UPDATE. A
callback that finds the transaction already terminal is a duplicate: it is
audited and counted but emits no terminal event.
"""

import json
import traceback
from typing import Any

from sqlalchemy import or_, select, update

from payrelay.common.error_events import record_error_event
from payrelay.common.errors import PermanentRejectionError
from payrelay.common.events import LiveEvent
from payrelay.common.logging import correlation_id_ctx, logger
from payrelay.common.metrics import duplicate_callbacks_skipped_total
from payrelay.common.state_machine import validate_transaction_transition
from payrelay.services.retry_queue.store import utc_now
from payrelay.services.transactions.models import Transaction
from payrelay.services.webhooks.models import CallbackAudit
from payrelay.services.webhooks.schemas import (
    B2CResultCallback,
    B2CTimeoutCallback,
    C2BConfirmationCallback,
    C2BValidationCallback,
    StkCallback,
    parse_callback,
)
from payrelay.services.webhooks.verification import VerificationResult


STK_CANCELLED_RESULT_CODE = 1032
C2B_REJECTED = "C2B00011"
C2B_INVALID_SOURCE = "C2B00012"

SUCCESS_ACKS = {
    "STK": "Callback received successfully",
    "C2B_CONFIRMATION": "Confirmation received",
    "B2C_RESULT": "Result received",
    "B2C_TIMEOUT": "Timeout received",
}
ERROR_ACKS = {
    "STK": "Callback received",
}


def ack(desc: str, code: int | str = 0) -> dict[str, Any]:
    return {"ResultCode": code, "ResultDesc": desc}


def stk_status(result_code: int) -> str:
    if result_code == 0:
        return "completed"
    if result_code == STK_CANCELLED_RESULT_CODE:
        return "cancelled"
    return "failed"


class CallbackService:
    """Owns every Transaction status change driven by provider callbacks."""

    def __init__(
        self,
        session_factory,
        broadcaster=None,
        min_amount: float = 1,
        max_amount: float = 150_000,
        now=utc_now,
        service_name: str = "payrelay",
    ) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.min_amount = min_amount
        self.max_amount = max_amount
        self.now = now
        self.service_name = service_name
        self._handlers = {
            "STK": self._handle_stk,
            "C2B_VALIDATION": self._handle_c2b_validation,
            "C2B_CONFIRMATION": self._handle_c2b_confirmation,
            "B2C_RESULT": self._handle_b2c_result,
            "B2C_TIMEOUT": self._handle_b2c_timeout,
        }

    def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(LiveEvent(type=event_type, payload=payload))

    def rejection_ack(self, callback_type: str, verification: VerificationResult) -> dict[str, Any]:
        """Response for a callback that failed verification."""

        if callback_type == "C2B_VALIDATION":
            desc = "Rate limited" if verification.rate_limited else "Invalid request source"
            return ack(desc, C2B_INVALID_SOURCE)
        return ack("Rate limited" if verification.rate_limited else "Received")

    def error_ack(self, callback_type: str) -> dict[str, Any]:
        if callback_type == "C2B_VALIDATION":
            return ack("System error", C2B_INVALID_SOURCE)
        return ack(ERROR_ACKS.get(callback_type, "Received"))

    def handle(self, callback_type: str, body: Any, verification: VerificationResult) -> dict[str, Any]:
        """Process one callback; never raises."""

        if not verification.valid:
            return self.rejection_ack(callback_type, verification)

        try:
            self._publish("callback:received", {"callbackType": callback_type, "data": body})
            audit_id = self._record_audit(callback_type, body, verification)
            callback = parse_callback(callback_type, body)
            processing_result, response = self._handlers[callback_type](callback, body)
            self._finish_audit(audit_id, processing_result)
            return response
        except Exception as exc:
            logger.exception("callback_processing_failed callback_type=%s", callback_type)
            record_error_event(
                self.session_factory,
                f"CALLBACK_{callback_type}_ERROR",
                str(exc) or exc.__class__.__name__,
                stack_trace=traceback.format_exc(),
                request_data={"callback_type": callback_type, "body": body},
                broadcaster=self.broadcaster,
            )
            return self.error_ack(callback_type)

    def _record_audit(self, callback_type: str, body: Any, verification: VerificationResult) -> int:
        with self.session_factory() as db:
            row = CallbackAudit(
                callback_type=callback_type,
                raw_payload=json.dumps(body),
                ip_address=verification.client_ip,
                user_agent=verification.user_agent,
                processed=False,
                created_at=self.now(),
            )
            db.add(row)
            db.commit()
            return row.id

    def _finish_audit(self, audit_id: int, processing_result: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(CallbackAudit)
                .where(CallbackAudit.id == audit_id)
                .values(processed=True, processing_result=processing_result)
            )
            db.commit()

    def _transition(self, callback_type: str, match, new_status: str, **values: Any) -> tuple[str, Transaction | None]:
        """Move the matching pending transaction to `new_status` exactly once.

        Returns ("applied" | "duplicate" | "unmatched", transaction).
        """

        validate_transaction_transition("pending", new_status)
        with self.session_factory() as db:
            txn = db.execute(select(Transaction).where(match).order_by(Transaction.id).limit(1)).scalar_one_or_none()
            if txn is None:
                logger.warning("callback_transaction_unmatched callback_type=%s", callback_type)
                return "unmatched", None
            result = db.execute(
                update(Transaction)
                .where(Transaction.id == txn.id, Transaction.status == "pending")
                .values(status=new_status, updated_at=self.now(), **values)
            )
            db.commit()
            db.refresh(txn)
        if result.rowcount != 1:
            logger.info(
                "callback_duplicate_skipped callback_type=%s transaction_id=%s status=%s",
                callback_type,
                txn.id,
                txn.status,
            )
            duplicate_callbacks_skipped_total.labels(service=self.service_name, callback_type=callback_type).inc()
            return "duplicate", txn
        return "applied", txn

    def _announce_terminal(self, txn: Transaction) -> None:
        payload = txn.to_dict()
        self._publish("transaction:updated", payload)
        if txn.status == "completed":
            self._publish("transaction:completed", payload)
        else:
            self._publish("transaction:failed", payload)

    def _handle_stk(self, callback: StkCallback, raw: Any) -> tuple[str, dict[str, Any]]:
        result = callback.result
        correlation_id_ctx.set(result.checkout_request_id)
        status = stk_status(result.result_code)
        receipt = result.metadata().get("MpesaReceiptNumber")
        outcome, txn = self._transition(
            "STK",
            Transaction.checkout_request_id == result.checkout_request_id,
            status,
            result_code=result.result_code,
            result_desc=result.result_desc,
            transaction_id=str(receipt) if receipt is not None else None,
            raw_callback=json.dumps(raw),
        )
        if outcome == "applied":
            self._announce_terminal(txn)
        logger.info(
            "stk_callback_processed checkout_request_id=%s result_code=%s status=%s outcome=%s",
            result.checkout_request_id,
            result.result_code,
            status,
            outcome,
        )
        return (status if outcome == "applied" else outcome), ack(SUCCESS_ACKS["STK"])

    def _check_c2b_amount(self, callback: C2BValidationCallback) -> None:
        amount = callback.trans_amount
        if amount < self.min_amount:
            raise PermanentRejectionError("Amount too low")
        if amount > self.max_amount:
            raise PermanentRejectionError("Amount exceeds limit")

    def _handle_c2b_validation(self, callback: C2BValidationCallback, raw: Any) -> tuple[str, dict[str, Any]]:
        correlation_id_ctx.set(callback.trans_id)
        try:
            self._check_c2b_amount(callback)
        except PermanentRejectionError as exc:
            logger.warning("c2b_validation_rejected trans_id=%s reason=%s", callback.trans_id, exc.message)
            return "rejected", ack(exc.message or "Rejected", C2B_REJECTED)
        logger.info(
            "c2b_validation_accepted trans_id=%s amount=%s msisdn=%s",
            callback.trans_id,
            callback.trans_amount,
            callback.msisdn,
        )
        return "accepted", ack("Accepted")

    def _handle_c2b_confirmation(self, callback: C2BConfirmationCallback, raw: Any) -> tuple[str, dict[str, Any]]:
        correlation_id_ctx.set(callback.trans_id)
        now = self.now()
        with self.session_factory() as db:
            existing = db.execute(
                select(Transaction.id).where(Transaction.transaction_id == callback.trans_id)
            ).scalar_one_or_none()
            if existing is not None:
                logger.info("c2b_confirmation_duplicate trans_id=%s transaction_id=%s", callback.trans_id, existing)
                duplicate_callbacks_skipped_total.labels(
                    service=self.service_name, callback_type="C2B_CONFIRMATION"
                ).inc()
                return "duplicate", ack(SUCCESS_ACKS["C2B_CONFIRMATION"])
            desc = " ".join(part for part in (callback.transaction_type, "from", callback.payer_name) if part)
            txn = Transaction(
                transaction_type="C2B",
                transaction_id=callback.trans_id,
                phone_number=callback.msisdn,
                amount=callback.trans_amount,
                account_reference=callback.bill_ref_number,
                transaction_desc=desc,
                status="completed",
                raw_callback=json.dumps(raw),
                created_at=now,
                updated_at=now,
            )
            db.add(txn)
            db.commit()
        self._publish("transaction:created", txn.to_dict())
        logger.info(
            "c2b_confirmation_processed trans_id=%s amount=%s bill_ref=%s",
            callback.trans_id,
            callback.trans_amount,
            callback.bill_ref_number,
        )
        return "completed", ack(SUCCESS_ACKS["C2B_CONFIRMATION"])

    @staticmethod
    def _conversation_match(conversation_id: str | None, originator_conversation_id: str | None):
        clauses = []
        if conversation_id:
            clauses.append(Transaction.conversation_id == conversation_id)
        if originator_conversation_id:
            clauses.append(Transaction.originator_conversation_id == originator_conversation_id)
        return or_(*clauses) if clauses else None

    def _handle_b2c_result(self, callback: B2CResultCallback, raw: Any) -> tuple[str, dict[str, Any]]:
        result = callback.result
        correlation_id_ctx.set(result.conversation_id or result.originator_conversation_id or "")
        status = "completed" if result.result_code == 0 else "failed"
        match = self._conversation_match(result.conversation_id, result.originator_conversation_id)
        if match is None:
            return "unmatched", ack(SUCCESS_ACKS["B2C_RESULT"])
        receipt = result.transaction_id or result.parameters().get("TransactionReceipt")
        outcome, txn = self._transition(
            "B2C_RESULT",
            match,
            status,
            result_code=result.result_code,
            result_desc=result.result_desc,
            transaction_id=str(receipt) if receipt else None,
            raw_callback=json.dumps(raw),
        )
        if outcome == "applied":
            self._announce_terminal(txn)
        logger.info(
            "b2c_result_processed conversation_id=%s result_code=%s status=%s outcome=%s",
            result.conversation_id,
            result.result_code,
            status,
            outcome,
        )
        return (status if outcome == "applied" else outcome), ack(SUCCESS_ACKS["B2C_RESULT"])

    def _handle_b2c_timeout(self, callback: B2CTimeoutCallback, raw: Any) -> tuple[str, dict[str, Any]]:
        result = callback.result
        match = None
        if result is not None:
            correlation_id_ctx.set(result.conversation_id or result.originator_conversation_id or "")
            match = self._conversation_match(result.conversation_id, result.originator_conversation_id)
        if match is None:
            logger.warning("b2c_timeout_without_conversation_id")
            return "unmatched", ack(SUCCESS_ACKS["B2C_TIMEOUT"])
        outcome, txn = self._transition(
            "B2C_TIMEOUT",
            match,
            "failed",
            result_desc="Transaction timed out",
            raw_callback=json.dumps(raw),
        )
        if outcome == "applied":
            self._announce_terminal(txn)
        logger.warning("b2c_timeout_processed conversation_id=%s outcome=%s", result.conversation_id, outcome)
        return ("timeout" if outcome == "applied" else outcome), ack(SUCCESS_ACKS["B2C_TIMEOUT"])
