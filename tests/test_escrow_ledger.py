"""
Tests for the escrow ledger: capture, release, refunds and webhook idempotency
"""

from decimal import Decimal

import pytest

from models import (
    ContractEscrowStatus, ContractPaymentStatus, NotificationQueue, Payment, PaymentRefund,
    PaymentStatus, WebhookEventLedger,
)
from services.escrow_ledger import EscrowLedgerService, ReleaseSource, WebhookOutcome
from utils.exceptions import (
    AlreadyProcessedError, PaymentCaptureError, PreconditionError, RefundRejectedError, ValidationError,
)

from factories import NOW, accepted_contract, funded_contract, make_gateway


class TestOrderAndCapture:

    def test_create_order_records_pending_payment(self, session, parties, gateway):
        client, doer = parties
        contract = accepted_contract(session, client, doer)

        payment = EscrowLedgerService.create_order(session, contract.id, gateway)

        assert payment.status == PaymentStatus.PENDING.value
        assert payment.amount == Decimal("10800.00")
        assert payment.platform_fee == Decimal("800.00")
        assert payment.platform_fee_percentage == Decimal("8.00")
        assert payment.gateway_order_id == "ORDER-1"
        gateway.create_order.assert_called_once()

    def test_create_order_reuses_pending_payment(self, session, parties, gateway):
        client, doer = parties
        contract = accepted_contract(session, client, doer)

        first = EscrowLedgerService.create_order(session, contract.id, gateway)
        second = EscrowLedgerService.create_order(session, contract.id, gateway)

        assert first.id == second.id
        assert gateway.create_order.call_count == 1

    def test_capture_moves_payment_into_escrow(self, session, parties, gateway):
        client, doer = parties
        contract, payment = funded_contract(session, client, doer, gateway, start=False)

        assert payment.status == PaymentStatus.HELD_ESCROW.value
        assert payment.gateway_capture_id == "CAPTURE-1"
        assert payment.escrow_released_at is None
        assert contract.escrow_status == ContractEscrowStatus.HELD.value
        assert contract.payment_status == ContractPaymentStatus.ESCROW.value
        assert session.query(NotificationQueue).filter_by(template="payment_held").count() == 2

    def test_pending_capture_moves_to_processing(self, session, parties):
        client, doer = parties
        gateway = make_gateway(capture_status="PENDING")
        contract = accepted_contract(session, client, doer)
        payment = EscrowLedgerService.create_order(session, contract.id, gateway)

        EscrowLedgerService.capture_payment(session, payment.id, gateway)

        assert payment.status == PaymentStatus.PROCESSING.value
        assert contract.escrow_status == ContractEscrowStatus.PENDING.value

    def test_capture_failure_leaves_payment_pending(self, session, parties, gateway):
        client, doer = parties
        contract = accepted_contract(session, client, doer)
        payment = EscrowLedgerService.create_order(session, contract.id, gateway)
        gateway.capture_order.side_effect = PaymentCaptureError("INSTRUMENT_DECLINED")

        with pytest.raises(PaymentCaptureError):
            EscrowLedgerService.capture_payment(session, payment.id, gateway)

        session.refresh(payment)
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.gateway_capture_id is None
        assert contract.escrow_status == ContractEscrowStatus.PENDING.value

    def test_second_capture_is_rejected(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway, start=False)

        with pytest.raises(AlreadyProcessedError):
            EscrowLedgerService.capture_payment(session, payment.id, gateway)
        assert gateway.capture_order.call_count == 1


class TestReleaseEscrow:

    def test_admin_release(self, session, parties, gateway):
        client, doer = parties
        contract, payment = funded_contract(session, client, doer, gateway)
        admin = client  # any user id works as the acting admin reference

        assert EscrowLedgerService.release_escrow(session, payment.id, acting_admin_id=admin.id, now=NOW)

        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.escrow_released_at == NOW
        assert payment.escrow_released_by == admin.id
        assert contract.escrow_status == ContractEscrowStatus.RELEASED.value
        assert contract.payment_status == ContractPaymentStatus.PENDING_PAYOUT.value

    def test_admin_release_twice_is_rejected(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)
        EscrowLedgerService.release_escrow(session, payment.id, acting_admin_id=client.id, now=NOW)

        with pytest.raises(AlreadyProcessedError, match="already released"):
            EscrowLedgerService.release_escrow(session, payment.id, acting_admin_id=client.id)

        session.refresh(payment)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.escrow_released_at == NOW
        assert session.query(NotificationQueue).filter_by(template="escrow_released").count() == 1

    def test_system_release_twice_returns_false(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)

        assert EscrowLedgerService.release_escrow(session, payment.id, source=ReleaseSource.CONTRACT_COMPLETION)
        assert not EscrowLedgerService.release_escrow(session, payment.id, source=ReleaseSource.CONTRACT_COMPLETION)

    def test_cannot_release_uncaptured_payment(self, session, parties, gateway):
        client, doer = parties
        contract = accepted_contract(session, client, doer)
        payment = EscrowLedgerService.create_order(session, contract.id, gateway)

        with pytest.raises(PreconditionError):
            EscrowLedgerService.release_escrow(session, payment.id, acting_admin_id=client.id)
        assert payment.status == PaymentStatus.PENDING.value

    def test_stale_release_loses_to_concurrent_release(self, session, session_factory, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)
        payment_id = payment.id
        session.commit()

        other = session_factory()
        try:
            # The other actor loaded the payment while it was still held
            stale = other.get(Payment, payment_id)
            assert stale.status == PaymentStatus.HELD_ESCROW.value

            assert EscrowLedgerService.release_escrow(session, payment_id, source=ReleaseSource.CONTRACT_COMPLETION)
            session.commit()

            with pytest.raises(AlreadyProcessedError):
                EscrowLedgerService.release_escrow(other, payment_id, acting_admin_id=client.id)
        finally:
            other.rollback()
            other.close()


class TestRefunds:

    def test_full_refund(self, session, parties, gateway):
        client, doer = parties
        contract, payment = funded_contract(session, client, doer, gateway)

        EscrowLedgerService.refund_payment(session, payment.id, "Job never started", client.id, gateway, now=NOW)

        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.refunded_amount == Decimal("10800.00")
        assert payment.refund_reason == "Job never started"
        assert payment.refunded_at == NOW
        assert contract.escrow_status == ContractEscrowStatus.REFUNDED.value
        gateway.refund.assert_called_once_with("CAPTURE-1", amount=None, currency=None)

    def test_refund_requires_reason(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)

        with pytest.raises(ValidationError):
            EscrowLedgerService.refund_payment(session, payment.id, "  ", client.id, gateway)
        gateway.refund.assert_not_called()

    def test_partial_refunds_accumulate(self, session, parties, gateway):
        client, doer = parties
        contract, payment = funded_contract(session, client, doer, gateway)

        EscrowLedgerService.refund_payment(session, payment.id, "Half done", client.id, gateway, amount="2800")
        assert payment.status == PaymentStatus.PARTIAL_REFUND.value
        assert payment.refunded_amount == Decimal("2800.00")
        assert contract.payment_status == ContractPaymentStatus.PARTIALLY_REFUNDED.value

        EscrowLedgerService.refund_payment(session, payment.id, "Rest", client.id, gateway, amount="8000")
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.refunded_amount == Decimal("10800.00")
        assert session.query(PaymentRefund).filter_by(payment_id=payment.id).count() == 2

    def test_refund_cannot_exceed_remaining(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)
        EscrowLedgerService.refund_payment(session, payment.id, "Partial", client.id, gateway, amount="10000")

        with pytest.raises(ValidationError):
            EscrowLedgerService.refund_payment(session, payment.id, "Too much", client.id, gateway, amount="801")
        assert payment.refunded_amount == Decimal("10000.00")

    def test_partially_refunded_payment_can_be_released(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)
        EscrowLedgerService.refund_payment(session, payment.id, "Partial", client.id, gateway, amount="800")

        assert EscrowLedgerService.release_escrow(session, payment.id, acting_admin_id=client.id)
        assert payment.status == PaymentStatus.COMPLETED.value

    def test_refund_after_release_is_rejected(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)
        EscrowLedgerService.release_escrow(session, payment.id, acting_admin_id=client.id)

        with pytest.raises(PreconditionError):
            EscrowLedgerService.refund_payment(session, payment.id, "Too late", client.id, gateway)
        gateway.refund.assert_not_called()

    def test_gateway_rejection_changes_nothing(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)
        gateway.refund.side_effect = RefundRejectedError("TRANSACTION_REFUSED")

        with pytest.raises(RefundRejectedError):
            EscrowLedgerService.refund_payment(session, payment.id, "Refund", client.id, gateway)

        assert payment.status == PaymentStatus.HELD_ESCROW.value
        assert payment.refunded_amount == Decimal("0.00")
        assert session.query(PaymentRefund).count() == 0


class TestWebhookEvents:

    @staticmethod
    def capture_event(event_id, capture_id, order_id, event_type="PAYMENT.CAPTURE.COMPLETED"):
        return {
            "id": event_id,
            "event_type": event_type,
            "resource": {
                "id": capture_id,
                "status": "COMPLETED",
                "supplementary_data": {"related_ids": {"order_id": order_id}},
            },
        }

    def test_capture_completed_webhook_holds_escrow(self, session, parties, gateway):
        client, doer = parties
        contract = accepted_contract(session, client, doer)
        payment = EscrowLedgerService.create_order(session, contract.id, gateway)

        outcome = EscrowLedgerService.process_webhook_event(
            session, self.capture_event("WH-1", "CAP-XYZ", payment.gateway_order_id)
        )

        assert outcome == WebhookOutcome.PROCESSED
        assert payment.status == PaymentStatus.HELD_ESCROW.value
        assert payment.gateway_capture_id == "CAP-XYZ"
        assert contract.escrow_status == ContractEscrowStatus.HELD.value

    def test_redelivered_event_is_applied_once(self, session, parties, gateway):
        client, doer = parties
        contract = accepted_contract(session, client, doer)
        payment = EscrowLedgerService.create_order(session, contract.id, gateway)
        event = self.capture_event("WH-1", "CAP-XYZ", payment.gateway_order_id)

        EscrowLedgerService.process_webhook_event(session, event)
        outcome = EscrowLedgerService.process_webhook_event(session, event)

        assert outcome == WebhookOutcome.DUPLICATE
        assert session.query(WebhookEventLedger).count() == 1
        assert session.query(NotificationQueue).filter_by(template="payment_held").count() == 2

    def test_new_event_for_known_capture_is_duplicate(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway, start=False)

        outcome = EscrowLedgerService.process_webhook_event(
            session, self.capture_event("WH-2", payment.gateway_capture_id, payment.gateway_order_id)
        )

        assert outcome == WebhookOutcome.DUPLICATE
        assert payment.status == PaymentStatus.HELD_ESCROW.value

    def test_denied_capture_fails_payment(self, session, parties, gateway):
        client, doer = parties
        contract = accepted_contract(session, client, doer)
        payment = EscrowLedgerService.create_order(session, contract.id, gateway)

        outcome = EscrowLedgerService.process_webhook_event(
            session,
            self.capture_event("WH-3", "CAP-DENIED", payment.gateway_order_id, "PAYMENT.CAPTURE.DENIED"),
        )

        assert outcome == WebhookOutcome.PROCESSED
        assert payment.status == PaymentStatus.FAILED.value

    def test_gateway_refund_webhook(self, session, parties, gateway):
        client, doer = parties
        _, payment = funded_contract(session, client, doer, gateway)
        event = {
            "id": "WH-4",
            "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {
                "id": "REF-EXT-1",
                "amount": {"value": "800.00", "currency_code": "ARS"},
                "links": [{"rel": "up", "href": f"https://api.paypal.com/v2/payments/captures/{payment.gateway_capture_id}"}],
            },
        }

        assert EscrowLedgerService.process_webhook_event(session, event) == WebhookOutcome.PROCESSED
        assert payment.status == PaymentStatus.PARTIAL_REFUND.value
        assert payment.refunded_amount == Decimal("800.00")

    def test_unhandled_event_type_is_recorded_and_ignored(self, session):
        outcome = EscrowLedgerService.process_webhook_event(
            session, {"id": "WH-5", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "O-1"}}
        )

        assert outcome == WebhookOutcome.IGNORED
        row = session.query(WebhookEventLedger).one()
        assert row.status == "completed"
        assert row.processing_result == WebhookOutcome.IGNORED

    def test_event_without_id_is_rejected(self, session):
        with pytest.raises(ValidationError):
            EscrowLedgerService.process_webhook_event(session, {"event_type": "PAYMENT.CAPTURE.COMPLETED"})
