"""
Escrow Ledger
=============

Authoritative state machine for Payment rows:

    pending -> processing -> held_escrow -> completed          (release)
                             held_escrow -> partial_refund -> refunded
                             held_escrow -> refunded
    pending/processing -> failed                               (capture denied)
    pending -> cancelled                                       (order abandoned)

Every transition is a single conditional UPDATE on the payment row, so a
release or refund is applied at most once even when admins, webhooks and
the scheduler act on the same payment concurrently. Gateway calls happen
before any local write; a gateway failure leaves the payment untouched.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Contract, ContractEscrowStatus, ContractPaymentStatus, ContractStatus,
    Payment, PaymentRefund, PaymentStatus, PaymentType, WebhookEventLedger,
)
from services.notification_queue import NotificationQueueService
from utils.contract_state_validator import ContractStateValidator
from utils.datetime_helpers import resolve_now
from utils.decimal_precision import MonetaryDecimal, Numeric
from utils.exceptions import (
    AlreadyProcessedError, NotFoundError, PreconditionError, ValidationError,
)
from utils.optimistic_locking import status_guarded_update
from utils.payment_state_validator import PaymentStateValidator

logger = logging.getLogger(__name__)


class ReleaseSource:
    """Who asked for an escrow release"""
    ADMIN = "admin"
    CONTRACT_COMPLETION = "contract_completion"


class WebhookOutcome:
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


ACTIVE_PAYMENT_STATES = {
    PaymentStatus.PENDING.value,
    PaymentStatus.PROCESSING.value,
    PaymentStatus.HELD_ESCROW.value,
    PaymentStatus.PARTIAL_REFUND.value,
}

CAPTURED_STATES = {
    PaymentStatus.HELD_ESCROW.value,
    PaymentStatus.PARTIAL_REFUND.value,
    PaymentStatus.COMPLETED.value,
    PaymentStatus.REFUNDED.value,
}


class EscrowLedgerService:
    """Capture, hold, release and refund of contract payments"""

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def get_payment(session: Session, payment_id: int) -> Payment:
        payment = session.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    @staticmethod
    def get_active_payment(session: Session, contract_id: int) -> Optional[Payment]:
        """Latest payment for a contract that is not failed, cancelled or finished"""
        session.flush()
        return (
            session.query(Payment)
            .filter(
                Payment.contract_id == contract_id,
                Payment.status.in_(ACTIVE_PAYMENT_STATES),
            )
            .order_by(Payment.id.desc())
            .first()
        )

    @staticmethod
    def get_contract_payment(session: Session, contract_id: int) -> Optional[Payment]:
        """Latest payment for a contract in any state"""
        session.flush()
        return (
            session.query(Payment)
            .filter(Payment.contract_id == contract_id)
            .order_by(Payment.id.desc())
            .first()
        )

    # ------------------------------------------------------------------
    # Order creation and capture
    # ------------------------------------------------------------------

    @classmethod
    def create_order(cls, session: Session, contract_id: int, gateway) -> Payment:
        """Open a gateway order for a contract's total price and record a pending payment"""
        contract = session.get(Contract, contract_id)
        if contract is None:
            raise NotFoundError(f"Contract {contract_id} not found")

        if ContractStateValidator.is_terminal_state(contract.status) or contract.status == ContractStatus.DISPUTED.value:
            raise PreconditionError(f"Contract {contract_id} is {contract.status} and cannot be paid")
        if contract.escrow_status != ContractEscrowStatus.PENDING.value:
            raise AlreadyProcessedError(f"Contract {contract_id} is already funded")

        existing = cls.get_active_payment(session, contract_id)
        if existing is not None:
            if existing.status == PaymentStatus.PENDING.value:
                logger.info(f"💳 Reusing pending order {existing.gateway_order_id} for contract {contract_id}")
                return existing
            raise AlreadyProcessedError(f"Contract {contract_id} already has a captured payment")

        currency = Config.PLATFORM_CURRENCY
        order_id = gateway.create_order(
            amount=Decimal(contract.total_price),
            currency=currency,
            description=f"Payment for contract {contract_id}",
            reference_id=f"contract-{contract_id}",
        )

        payment = Payment(
            contract_id=contract_id,
            payer_id=contract.client_id,
            recipient_id=contract.doer_id,
            amount=contract.total_price,
            currency=currency,
            status=PaymentStatus.PENDING.value,
            payment_type=PaymentType.CONTRACT_PAYMENT.value,
            is_escrow=True,
            platform_fee=contract.commission,
            platform_fee_percentage=contract.commission_rate,
            gateway_order_id=order_id,
            refunded_amount=Decimal("0"),
        )
        session.add(payment)
        session.flush()

        logger.info(f"🧾 PAYMENT_CREATED: payment={payment.id} contract={contract_id} amount={payment.amount} {currency}")
        return payment

    @classmethod
    def capture_payment(cls, session: Session, payment_id: int, gateway) -> Payment:
        """
        Capture the gateway order and move the payment into escrow.

        The gateway call runs first. PaymentCaptureError propagates with the
        payment still pending, so the capture can be retried.
        """
        payment = cls.get_payment(session, payment_id)
        if payment.status != PaymentStatus.PENDING.value:
            if payment.status in CAPTURED_STATES or payment.status == PaymentStatus.PROCESSING.value:
                raise AlreadyProcessedError(f"Payment {payment_id} already captured")
            raise PreconditionError(f"Payment {payment_id} is {payment.status} and cannot be captured")
        if not payment.gateway_order_id:
            raise PreconditionError(f"Payment {payment_id} has no gateway order")

        result = gateway.capture_order(payment.gateway_order_id)
        capture_id = result["capture_id"]

        duplicate = session.query(Payment).filter(
            Payment.gateway_capture_id == capture_id, Payment.id != payment_id
        ).first()
        if duplicate is not None:
            raise AlreadyProcessedError(f"Capture {capture_id} already recorded on payment {duplicate.id}")

        target = PaymentStatus.HELD_ESCROW if result["status"] == "COMPLETED" else PaymentStatus.PROCESSING
        if not cls._apply_capture(session, payment, capture_id, target):
            raise AlreadyProcessedError(f"Payment {payment_id} was captured concurrently")
        return payment

    @classmethod
    def _apply_capture(cls, session: Session, payment: Payment, capture_id: str, target: PaymentStatus) -> bool:
        sources = PaymentStateValidator.sources_for(target) & {PaymentStatus.PENDING, PaymentStatus.PROCESSING}
        moved = status_guarded_update(
            session, Payment, payment.id, sources,
            {"status": target, "gateway_capture_id": capture_id},
        )
        if not moved:
            return False

        if target == PaymentStatus.HELD_ESCROW:
            cls._mark_contract_funded(session, payment)
        logger.info(f"🔐 PAYMENT_CAPTURED: payment={payment.id} capture={capture_id} -> {target.value}")
        return True

    @staticmethod
    def _mark_contract_funded(session: Session, payment: Payment):
        contract = session.get(Contract, payment.contract_id) if payment.contract_id else None
        if contract is None:
            return

        if contract.escrow_status == ContractEscrowStatus.PENDING.value:
            contract.escrow_status = ContractEscrowStatus.HELD.value
            contract.payment_status = ContractPaymentStatus.ESCROW.value

        data = {"contract_id": contract.id, "payment_id": payment.id}
        for user_id in (contract.client_id, contract.doer_id):
            NotificationQueueService.enqueue(
                session, user_id, "payment_held", data,
                idempotency_key=f"payment:{payment.id}:held:{user_id}",
            )
        session.flush()

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    @classmethod
    def release_escrow(
        cls,
        session: Session,
        payment_id: int,
        acting_admin_id: Optional[int] = None,
        source: str = ReleaseSource.ADMIN,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Release held funds to the recipient (held_escrow/partial_refund -> completed).

        Admin calls raise AlreadyProcessedError / PreconditionError so the admin
        sees why nothing happened. Calls from contract completion return False.
        """
        payment = cls.get_payment(session, payment_id)
        is_admin = source == ReleaseSource.ADMIN

        if payment.status == PaymentStatus.COMPLETED.value:
            if is_admin:
                raise AlreadyProcessedError(f"Escrow for payment {payment_id} already released")
            logger.info(f"ℹ️ ESCROW_ALREADY_RELEASED: payment={payment_id} (source={source})")
            return False

        if payment.status not in {s.value for s in PaymentStateValidator.RELEASABLE_STATES}:
            message = f"Payment {payment_id} is {payment.status}; only held escrow can be released"
            if is_admin:
                raise PreconditionError(message)
            logger.warning(f"⚠️ ESCROW_RELEASE_SKIPPED: {message} (source={source})")
            return False

        released = status_guarded_update(
            session, Payment, payment_id, PaymentStateValidator.RELEASABLE_STATES,
            {
                "status": PaymentStatus.COMPLETED,
                "escrow_released_at": resolve_now(now),
                "escrow_released_by": acting_admin_id,
            },
        )
        if not released:
            if is_admin:
                raise AlreadyProcessedError(f"Escrow for payment {payment_id} already released")
            return False

        contract = session.get(Contract, payment.contract_id) if payment.contract_id else None
        if contract is not None:
            contract.escrow_status = ContractEscrowStatus.RELEASED.value
            if contract.payment_status in (
                ContractPaymentStatus.ESCROW.value, ContractPaymentStatus.PARTIALLY_REFUNDED.value
            ):
                contract.payment_status = ContractPaymentStatus.PENDING_PAYOUT.value

        if payment.recipient_id:
            NotificationQueueService.enqueue(
                session, payment.recipient_id, "escrow_released",
                {"contract_id": payment.contract_id, "payment_id": payment_id},
                idempotency_key=f"payment:{payment_id}:released",
            )
        session.flush()

        logger.info(
            f"✅ ESCROW_RELEASED: payment={payment_id} contract={payment.contract_id} "
            f"source={source} admin={acting_admin_id}"
        )
        return True

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    @staticmethod
    def _refund_amounts(payment: Payment, amount: Optional[Numeric]) -> Tuple[Decimal, Decimal]:
        """Return (refund_amount, remaining_before_refund)"""
        remaining = MonetaryDecimal.quantize_money(Decimal(payment.amount) - Decimal(payment.refunded_amount or 0))
        if amount is None:
            return remaining, remaining

        refund_amount = MonetaryDecimal.quantize_money(MonetaryDecimal.positive(amount, "refund amount"))
        if refund_amount > remaining:
            raise ValidationError(
                f"Refund amount {refund_amount} exceeds the refundable remainder {remaining}"
            )
        return refund_amount, remaining

    @classmethod
    def refund_payment(
        cls,
        session: Session,
        payment_id: int,
        reason: str,
        acting_admin_id: Optional[int],
        gateway,
        amount: Optional[Numeric] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """
        Refund held funds to the payer, fully or partially.

        Partial refunds accumulate; the one that brings the refunded total up
        to the payment amount moves the payment to refunded.
        """
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")

        payment = cls.get_payment(session, payment_id)
        if payment.status == PaymentStatus.REFUNDED.value:
            raise AlreadyProcessedError(f"Payment {payment_id} already refunded")
        if payment.status not in {s.value for s in PaymentStateValidator.REFUNDABLE_STATES}:
            raise PreconditionError(f"Payment {payment_id} is {payment.status} and cannot be refunded")
        if not payment.gateway_capture_id:
            raise PreconditionError(f"Payment {payment_id} has no capture to refund")

        refund_amount, remaining = cls._refund_amounts(payment, amount)
        full_original = refund_amount == Decimal(payment.amount)

        result = gateway.refund(
            payment.gateway_capture_id,
            amount=None if full_original else refund_amount,
            currency=None if full_original else payment.currency,
        )

        applied = cls._apply_refund(
            session, payment, refund_amount, reason.strip(), result.get("refund_id"), acting_admin_id, now
        )
        if not applied:
            raise AlreadyProcessedError(f"Payment {payment_id} changed while the refund was in flight")
        return payment

    @classmethod
    def _apply_refund(
        cls,
        session: Session,
        payment: Payment,
        refund_amount: Decimal,
        reason: str,
        gateway_refund_id: Optional[str],
        acting_admin_id: Optional[int],
        now: Optional[datetime] = None,
    ) -> bool:
        previous_status = payment.status
        previous_refunded = MonetaryDecimal.quantize_money(payment.refunded_amount or 0)
        new_refunded = previous_refunded + refund_amount
        is_full = new_refunded >= MonetaryDecimal.quantize_money(payment.amount)
        target = PaymentStatus.REFUNDED if is_full else PaymentStatus.PARTIAL_REFUND
        timestamp = resolve_now(now)

        PaymentStateValidator.require_transition(previous_status, target, payment.id)
        moved = status_guarded_update(
            session, Payment, payment.id, previous_status,
            {
                "status": target,
                "refunded_amount": new_refunded,
                "refund_reason": reason,
                "refunded_at": timestamp,
                "refunded_by": acting_admin_id,
            },
            extra_criteria=[Payment.refunded_amount == previous_refunded],
        )
        if not moved:
            return False

        session.add(PaymentRefund(
            payment_id=payment.id,
            amount=refund_amount,
            reason=reason,
            gateway_refund_id=gateway_refund_id,
            refunded_by=acting_admin_id,
            created_at=timestamp,
        ))

        contract = session.get(Contract, payment.contract_id) if payment.contract_id else None
        if contract is not None:
            if is_full:
                contract.escrow_status = ContractEscrowStatus.REFUNDED.value
                contract.payment_status = ContractPaymentStatus.REFUNDED.value
            else:
                contract.payment_status = ContractPaymentStatus.PARTIALLY_REFUNDED.value

        NotificationQueueService.enqueue(
            session, payment.payer_id, "payment_refunded",
            {
                "contract_id": payment.contract_id,
                "amount": str(refund_amount),
                "currency": payment.currency,
            },
            idempotency_key=f"payment:{payment.id}:refund:{new_refunded}",
        )
        session.flush()

        logger.info(
            f"💸 PAYMENT_REFUNDED: payment={payment.id} amount={refund_amount} "
            f"total_refunded={new_refunded} -> {target.value} (admin={acting_admin_id})"
        )
        return True

    # ------------------------------------------------------------------
    # Failure / abandonment
    # ------------------------------------------------------------------

    @classmethod
    def fail_payment(cls, session: Session, payment_id: int, reason: str) -> bool:
        """pending/processing -> failed"""
        cls.get_payment(session, payment_id)
        moved = status_guarded_update(
            session, Payment, payment_id, PaymentStateValidator.sources_for(PaymentStatus.FAILED),
            {"status": PaymentStatus.FAILED, "failure_reason": reason},
        )
        if moved:
            logger.warning(f"❌ PAYMENT_FAILED: payment={payment_id} reason={reason}")
        return moved

    @classmethod
    def cancel_pending_payment(cls, session: Session, payment_id: int) -> bool:
        """pending -> cancelled, for orders that were never captured"""
        cls.get_payment(session, payment_id)
        moved = status_guarded_update(
            session, Payment, payment_id, PaymentStatus.PENDING,
            {"status": PaymentStatus.CANCELLED},
        )
        if moved:
            logger.info(f"🚫 PAYMENT_CANCELLED: payment={payment_id}")
        return moved

    # ------------------------------------------------------------------
    # Gateway webhooks
    # ------------------------------------------------------------------

    @classmethod
    def process_webhook_event(
        cls,
        session: Session,
        event: Dict[str, Any],
        provider: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Apply one gateway webhook event at most once.

        The event id is recorded in webhook_event_ledger in the same
        transaction as its effect. On a concurrent duplicate insert the
        session's transaction is rolled back and DUPLICATE is returned.
        """
        provider = provider or Config.PAYPAL_WEBHOOK_PROVIDER
        event_id = event.get("id")
        event_type = event.get("event_type")
        resource = event.get("resource") or {}
        if not event_id or not event_type:
            raise ValidationError("Webhook event must carry an id and an event_type")

        session.flush()
        existing = session.query(WebhookEventLedger).filter(
            WebhookEventLedger.event_provider == provider,
            WebhookEventLedger.event_id == event_id,
        ).first()
        if existing is not None:
            logger.info(f"🔁 WEBHOOK_DUPLICATE: {provider}:{event_id} ({event_type}) already {existing.status}")
            return WebhookOutcome.DUPLICATE

        ledger_row = WebhookEventLedger(
            event_provider=provider,
            event_id=event_id,
            event_type=event_type,
            reference_id=resource.get("id"),
            payload=event,
            status="processing",
        )
        session.add(ledger_row)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            logger.warning(f"⚠️ WEBHOOK_RACE_CONDITION: concurrent delivery of {provider}:{event_id}")
            return WebhookOutcome.DUPLICATE

        handlers = {
            "PAYMENT.CAPTURE.COMPLETED": cls._on_capture_completed,
            "PAYMENT.CAPTURE.PENDING": cls._on_capture_pending,
            "PAYMENT.CAPTURE.DENIED": cls._on_capture_denied,
            "PAYMENT.CAPTURE.REFUNDED": cls._on_capture_refunded,
        }
        handler = handlers.get(event_type)
        if handler is None:
            outcome = WebhookOutcome.IGNORED
            logger.info(f"ℹ️ WEBHOOK_UNHANDLED: {event_type} ({event_id})")
        else:
            try:
                outcome = handler(session, resource, now)
            except PreconditionError as e:
                outcome = WebhookOutcome.IGNORED
                logger.info(f"ℹ️ WEBHOOK_SKIPPED: {event_type} ({event_id}): {e.message}")

        ledger_row.status = "completed"
        ledger_row.processing_result = outcome
        ledger_row.completed_at = resolve_now(now)
        session.flush()

        logger.info(f"📬 WEBHOOK_PROCESSED: {provider}:{event_id} {event_type} -> {outcome}")
        return outcome

    @staticmethod
    def _find_payment_for_capture(session: Session, resource: Dict[str, Any]) -> Optional[Payment]:
        capture_id = resource.get("id")
        if capture_id:
            payment = session.query(Payment).filter(Payment.gateway_capture_id == capture_id).first()
            if payment is not None:
                return payment

        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        if order_id:
            return session.query(Payment).filter(Payment.gateway_order_id == order_id).first()
        return None

    @classmethod
    def _on_capture_completed(cls, session: Session, resource: Dict[str, Any], now=None) -> str:
        payment = cls._find_payment_for_capture(session, resource)
        if payment is None:
            logger.warning(f"⚠️ WEBHOOK_UNKNOWN_CAPTURE: {resource.get('id')}")
            return WebhookOutcome.IGNORED

        capture_id = resource.get("id")
        if payment.gateway_capture_id == capture_id and payment.status in CAPTURED_STATES:
            return WebhookOutcome.DUPLICATE

        moved = cls._apply_capture(session, payment, capture_id, PaymentStatus.HELD_ESCROW)
        return WebhookOutcome.PROCESSED if moved else WebhookOutcome.IGNORED

    @classmethod
    def _on_capture_pending(cls, session: Session, resource: Dict[str, Any], now=None) -> str:
        payment = cls._find_payment_for_capture(session, resource)
        if payment is None:
            return WebhookOutcome.IGNORED
        moved = cls._apply_capture(session, payment, resource.get("id"), PaymentStatus.PROCESSING)
        return WebhookOutcome.PROCESSED if moved else WebhookOutcome.IGNORED

    @classmethod
    def _on_capture_denied(cls, session: Session, resource: Dict[str, Any], now=None) -> str:
        payment = cls._find_payment_for_capture(session, resource)
        if payment is None:
            return WebhookOutcome.IGNORED
        moved = cls.fail_payment(session, payment.id, reason="Capture denied by gateway")
        return WebhookOutcome.PROCESSED if moved else WebhookOutcome.IGNORED

    @classmethod
    def _on_capture_refunded(cls, session: Session, resource: Dict[str, Any], now=None) -> str:
        refund_id = resource.get("id")
        if refund_id and session.query(PaymentRefund).filter(PaymentRefund.gateway_refund_id == refund_id).first():
            return WebhookOutcome.DUPLICATE

        capture_id = None
        for link in resource.get("links") or []:
            if link.get("rel") == "up":
                capture_id = link.get("href", "").rstrip("/").rsplit("/", 1)[-1]
        if not capture_id:
            return WebhookOutcome.IGNORED

        payment = session.query(Payment).filter(Payment.gateway_capture_id == capture_id).first()
        if payment is None:
            return WebhookOutcome.IGNORED
        if payment.status not in {s.value for s in PaymentStateValidator.REFUNDABLE_STATES}:
            raise PreconditionError(f"Payment {payment.id} is {payment.status}; gateway refund not applied")

        remaining = MonetaryDecimal.quantize_money(Decimal(payment.amount) - Decimal(payment.refunded_amount or 0))
        value = (resource.get("amount") or {}).get("value")
        refund_amount = min(MonetaryDecimal.quantize_money(value), remaining) if value else remaining

        moved = cls._apply_refund(
            session, payment, refund_amount, "Refunded at payment gateway", refund_id, None, now
        )
        return WebhookOutcome.PROCESSED if moved else WebhookOutcome.IGNORED
