"""
Contract Lifecycle Controller
=============================

    pending -> accepted -> in_progress -> awaiting_confirmation -> completed
    any non-terminal       -> cancelled
    in_progress / awaiting -> disputed -> completed | cancelled

Each command loads the contract, checks the transition guard, and performs
one status-guarded UPDATE. A command that loses a race against another actor
(human confirmation vs. scheduler tick) sees rowcount 0 and does nothing.

Completion side effects, in the same transaction:
- held escrow payment released
- pending BalanceTransaction recorded for the worker's payout
- contract payment_status=pending_payout, escrow_status=released
- notifications queued (delivered later by the outbox processor)
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    Contract, ContractEscrowStatus, ContractPaymentStatus, ContractStatus,
    Job, PaymentStatus, User,
)
from services.allocation_service import worker_payout_amount
from services.balance_ledger import BalanceLedgerService
from services.commission_service import CommissionProfile, calculate_commission
from services.escrow_ledger import EscrowLedgerService, ReleaseSource
from services.notification_queue import NotificationQueueService
from services.referral_service import ReferralService
from utils.contract_state_validator import ContractStateValidator
from utils.datetime_helpers import resolve_now
from utils.decimal_precision import Numeric
from utils.exceptions import (
    AlreadyProcessedError, EscrowCoreError, NotFoundError, PreconditionError, ValidationError,
)
from utils.optimistic_locking import status_guarded_update

logger = logging.getLogger(__name__)

# Escrow states that prove the client's funds were captured at some point.
# Confirmation and completion are only possible from these.
FUNDED_ESCROW_VALUES = (
    ContractEscrowStatus.HELD.value,
    ContractEscrowStatus.RELEASED.value,
    ContractEscrowStatus.REFUNDED.value,
)


class Party:
    CLIENT = "client"
    DOER = "doer"


class ContractEvent:
    CLIENT_CONFIRM = "client_confirm"
    DOER_CONFIRM = "doer_confirm"
    CANCEL = "cancel"
    DISPUTE = "dispute"


class DisputeOutcome:
    RELEASE = "release"
    REFUND = "refund"


class CompletionSource:
    CONFIRMATION = "confirmation"
    AUTO_CONFIRM = "auto_confirm"
    DISPUTE_RESOLUTION = "dispute_resolution"


class ContractLifecycleService:
    """Commands that move a contract through its lifecycle"""

    @staticmethod
    def get_contract(session: Session, contract_id: int) -> Contract:
        contract = session.get(Contract, contract_id)
        if contract is None:
            raise NotFoundError(f"Contract {contract_id} not found")
        return contract

    @staticmethod
    def _party_of(contract: Contract, actor_id: int) -> str:
        if actor_id == contract.client_id:
            return Party.CLIENT
        if actor_id == contract.doer_id:
            return Party.DOER
        raise ValidationError(f"User {actor_id} is not a party to contract {contract.id}")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @classmethod
    def create_contract(
        cls,
        session: Session,
        job_id: int,
        doer_id: int,
        price: Optional[Numeric] = None,
        now: Optional[datetime] = None,
    ) -> Contract:
        """
        Create a contract for one selected worker of a job.

        The price is the worker's frozen allocation when the job has one,
        otherwise ``price`` or the full job budget. The client's commission
        rate is snapshotted here and never recomputed.
        """
        job = session.get(Job, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if doer_id == job.client_id:
            raise ValidationError("A client cannot hire themselves")
        if session.get(User, doer_id) is None:
            raise NotFoundError(f"User {doer_id} not found")

        session.flush()
        open_contract = session.query(Contract).filter(
            Contract.job_id == job_id,
            Contract.doer_id == doer_id,
            Contract.status != ContractStatus.CANCELLED.value,
        ).first()
        if open_contract is not None:
            raise AlreadyProcessedError(f"Worker {doer_id} already has contract {open_contract.id} for job {job_id}")

        allocation = next((a for a in job.allocations if a.worker_id == doer_id), None)
        if allocation is not None:
            base_amount = allocation.allocated_amount
            allocated_amount = allocation.allocated_amount
            percentage = allocation.percentage
        else:
            base_amount = price if price is not None else job.price
            allocated_amount = None
            percentage = None

        client = session.get(User, job.client_id)
        quote = calculate_commission(CommissionProfile.from_user(client), base_amount, now)

        if quote.uses_free_contract:
            consumed = session.execute(
                update(User)
                .where(User.id == client.id, User.free_contracts_remaining > 0)
                .values(free_contracts_remaining=User.free_contracts_remaining - 1)
                .execution_options(synchronize_session=False)
            )
            session.get(User, client.id, populate_existing=True)
            if consumed.rowcount == 0:
                # Another contract took the last free credit
                quote = calculate_commission(CommissionProfile.from_user(client), base_amount, now)

        contract = Contract(
            job_id=job_id,
            client_id=job.client_id,
            doer_id=doer_id,
            price=quote.base_amount,
            commission=quote.commission,
            commission_rate=quote.rate,
            total_price=quote.total_price,
            allocated_amount=allocated_amount,
            percentage_of_budget=percentage,
            status=ContractStatus.PENDING.value,
            escrow_status=ContractEscrowStatus.PENDING.value,
            payment_status=ContractPaymentStatus.PENDING.value,
        )
        session.add(contract)
        session.flush()

        logger.info(
            f"📄 CONTRACT_CREATED: contract={contract.id} job={job_id} doer={doer_id} "
            f"price={contract.price} commission={contract.commission} ({quote.rate}% {quote.rate_source}) "
            f"total={contract.total_price}"
        )
        return contract

    # ------------------------------------------------------------------
    # Pre-completion transitions
    # ------------------------------------------------------------------

    @classmethod
    def accept_terms(cls, session: Session, contract_id: int, party: str) -> Contract:
        """Record one party's acceptance; the second acceptance moves pending -> accepted"""
        contract = cls.get_contract(session, contract_id)
        if contract.status != ContractStatus.PENDING.value:
            raise PreconditionError(f"Contract {contract_id} is {contract.status}; terms can only be accepted while pending")

        if party == Party.CLIENT:
            contract.terms_accepted_by_client = True
        elif party == Party.DOER:
            contract.terms_accepted_by_doer = True
        else:
            raise ValidationError(f"Unknown party: {party}")
        session.flush()

        if contract.terms_accepted_by_client and contract.terms_accepted_by_doer:
            status_guarded_update(
                session, Contract, contract_id, ContractStatus.PENDING,
                {"status": ContractStatus.ACCEPTED},
                extra_criteria=[
                    Contract.terms_accepted_by_client.is_(True),
                    Contract.terms_accepted_by_doer.is_(True),
                ],
            )
            logger.info(f"🤝 CONTRACT_ACCEPTED: contract={contract_id}")
        return contract

    @classmethod
    def start_contract(cls, session: Session, contract_id: int, now: Optional[datetime] = None) -> Contract:
        contract = cls.get_contract(session, contract_id)
        ContractStateValidator.require_transition(contract.status, ContractStatus.IN_PROGRESS, contract_id)

        moved = status_guarded_update(
            session, Contract, contract_id, ContractStatus.ACCEPTED,
            {"status": ContractStatus.IN_PROGRESS, "started_at": resolve_now(now)},
        )
        if not moved:
            raise PreconditionError(f"Contract {contract_id} changed state before it could start")
        logger.info(f"▶️ CONTRACT_STARTED: contract={contract_id}")
        return contract

    @classmethod
    def mark_awaiting_confirmation(cls, session: Session, contract_id: int, now: Optional[datetime] = None) -> bool:
        """
        accepted/in_progress -> awaiting_confirmation; starts the auto-confirm clock.
        Unfunded contracts stay where they are.
        """
        contract = cls.get_contract(session, contract_id)
        moved = status_guarded_update(
            session, Contract, contract_id,
            [ContractStatus.ACCEPTED, ContractStatus.IN_PROGRESS],
            {"status": ContractStatus.AWAITING_CONFIRMATION, "awaiting_confirmation_at": resolve_now(now)},
            extra_criteria=[Contract.escrow_status.in_(FUNDED_ESCROW_VALUES)],
        )
        if moved:
            logger.info(f"⏳ CONTRACT_AWAITING_CONFIRMATION: contract={contract_id}")
        elif contract.escrow_status not in FUNDED_ESCROW_VALUES:
            logger.info(f"ℹ️ CONTRACT_NOT_FUNDED: contract={contract_id} escrow={contract.escrow_status}; confirmation window not opened")
        return moved

    @classmethod
    def confirm(
        cls,
        session: Session,
        contract_id: int,
        party: str,
        now: Optional[datetime] = None,
    ) -> Contract:
        """
        Record a party's confirmation that the work is done.

        The first confirmation of a running contract starts the confirmation
        window; the second one completes the contract.
        """
        now = resolve_now(now)
        contract = cls.get_contract(session, contract_id)

        if party == Party.CLIENT:
            flag, flag_at = "client_confirmed", "client_confirmed_at"
        elif party == Party.DOER:
            flag, flag_at = "doer_confirmed", "doer_confirmed_at"
        else:
            raise ValidationError(f"Unknown party: {party}")

        if getattr(contract, flag):
            raise AlreadyProcessedError(f"Contract {contract_id} already confirmed by {party}")

        confirmable = [ContractStatus.IN_PROGRESS, ContractStatus.AWAITING_CONFIRMATION]
        if ContractStatus(contract.status) not in confirmable:
            raise PreconditionError(f"Contract {contract_id} is {contract.status} and cannot be confirmed")
        if contract.escrow_status not in FUNDED_ESCROW_VALUES:
            raise PreconditionError(
                f"Contract {contract_id} has no escrow hold (escrow {contract.escrow_status}); pay it before confirming"
            )

        recorded = status_guarded_update(
            session, Contract, contract_id, confirmable,
            {flag: True, flag_at: now},
            extra_criteria=[
                getattr(Contract, flag).is_(False),
                Contract.escrow_status.in_(FUNDED_ESCROW_VALUES),
            ],
        )
        if not recorded:
            raise AlreadyProcessedError(f"Contract {contract_id} confirmation by {party} was already recorded")
        logger.info(f"✅ CONTRACT_CONFIRMED: contract={contract_id} by {party}")

        if contract.status == ContractStatus.IN_PROGRESS.value:
            cls.mark_awaiting_confirmation(session, contract_id, now)

        if contract.client_confirmed and contract.doer_confirmed:
            cls.complete_contract(session, contract_id, source=CompletionSource.CONFIRMATION, now=now)
        return contract

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    @classmethod
    def complete_contract(
        cls,
        session: Session,
        contract_id: int,
        source: str = CompletionSource.CONFIRMATION,
        now: Optional[datetime] = None,
        acting_admin_id: Optional[int] = None,
    ) -> bool:
        """
        Move a contract to completed and apply the payout side effects.

        Returns False when another actor completed (or otherwise moved) the
        contract first, or when the contract was never funded; nothing is
        written in that case.

        The contract is relabelled released/pending_payout and the worker's
        payout recorded only when its payment ends up released. A contract
        whose payment was refunded keeps its refund state and pays nothing.
        """
        now = resolve_now(now)
        contract = cls.get_contract(session, contract_id)

        values: Dict[str, Any] = {
            "status": ContractStatus.COMPLETED,
            "completed_at": now,
        }
        criteria = [Contract.escrow_status.in_(FUNDED_ESCROW_VALUES)]

        if source == CompletionSource.CONFIRMATION:
            expected = ContractStatus.AWAITING_CONFIRMATION
            criteria += [Contract.client_confirmed.is_(True), Contract.doer_confirmed.is_(True)]
        elif source == CompletionSource.AUTO_CONFIRM:
            expected = ContractStatus.AWAITING_CONFIRMATION
            deadline = now - timedelta(hours=Config.AUTO_CONFIRM_GRACE_HOURS)
            criteria += [
                Contract.awaiting_confirmation_at.is_not(None),
                Contract.awaiting_confirmation_at <= deadline,
            ]
            values.update(cls._forced_confirmation_values(now), auto_confirmed=True)
        elif source == CompletionSource.DISPUTE_RESOLUTION:
            expected = ContractStatus.DISPUTED
            values.update(cls._forced_confirmation_values(now))
        else:
            raise ValidationError(f"Unknown completion source: {source}")

        completed = status_guarded_update(session, Contract, contract_id, expected, values, extra_criteria=criteria)
        if not completed:
            logger.info(
                f"ℹ️ CONTRACT_COMPLETION_SKIPPED: contract={contract_id} source={source} "
                f"status={contract.status} escrow={contract.escrow_status}"
            )
            return False

        payment = EscrowLedgerService.get_active_payment(session, contract_id)
        if payment is not None and payment.status in (
            PaymentStatus.HELD_ESCROW.value, PaymentStatus.PARTIAL_REFUND.value
        ):
            EscrowLedgerService.release_escrow(
                session, payment.id, acting_admin_id=acting_admin_id,
                source=ReleaseSource.CONTRACT_COMPLETION, now=now,
            )
        else:
            payment = EscrowLedgerService.get_contract_payment(session, contract_id)

        released = payment is not None and payment.status == PaymentStatus.COMPLETED.value
        if released:
            contract.escrow_status = ContractEscrowStatus.RELEASED.value
            contract.payment_status = ContractPaymentStatus.PENDING_PAYOUT.value
            payout = worker_payout_amount(contract, refunded_amount=payment.refunded_amount)
        else:
            payout = Decimal("0.00")
            logger.warning(
                f"⚠️ CONTRACT_COMPLETED_WITHOUT_RELEASE: contract={contract_id} escrow={contract.escrow_status} "
                f"payment={payment.status if payment else None}; no payout recorded"
            )

        is_auto = source == CompletionSource.AUTO_CONFIRM
        if payout > 0:
            BalanceLedgerService.record_pending(
                session,
                contract.doer_id,
                payout,
                related_contract_id=contract_id,
                related_payment_id=payment.id if payment else None,
                description=(
                    f"Payment for contract #{contract_id}" + (" (auto-confirmed)" if is_auto else "")
                ),
                metadata={"source": source},
            )

        cls._queue_completion_notifications(session, contract, payout, is_auto)

        for user_id in (contract.client_id, contract.doer_id):
            ReferralService.process_completed_contract(session, user_id, now)

        session.flush()
        logger.info(f"🏁 CONTRACT_COMPLETED: contract={contract_id} source={source} payout={payout}")
        return True

    @staticmethod
    def _forced_confirmation_values(now: datetime) -> Dict[str, Any]:
        """Set both confirmation flags, keeping any timestamp a party already recorded"""
        return {
            "client_confirmed": True,
            "doer_confirmed": True,
            "client_confirmed_at": func.coalesce(Contract.client_confirmed_at, now),
            "doer_confirmed_at": func.coalesce(Contract.doer_confirmed_at, now),
        }

    @staticmethod
    def _queue_completion_notifications(session: Session, contract: Contract, payout: Decimal, is_auto: bool):
        template = "contract_auto_confirmed" if is_auto else "contract_completed"
        data = {"contract_id": contract.id}
        for user_id in (contract.client_id, contract.doer_id):
            NotificationQueueService.enqueue(
                session, user_id, template, data,
                idempotency_key=f"contract:{contract.id}:completed:{user_id}",
            )
        if payout > 0:
            NotificationQueueService.enqueue(
                session, contract.doer_id, "payment_pending_payout",
                {"contract_id": contract.id, "amount": str(payout), "currency": Config.PLATFORM_CURRENCY},
                idempotency_key=f"contract:{contract.id}:pending_payout",
            )

    # ------------------------------------------------------------------
    # Cancellation and disputes
    # ------------------------------------------------------------------

    @classmethod
    def cancel(
        cls,
        session: Session,
        contract_id: int,
        cancelled_by_id: Optional[int],
        role: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Contract:
        """
        Cancel a contract before completion.

        Escrow hook: an uncaptured order is cancelled; captured funds are
        flagged refund_pending for an admin refund decision. A contract whose
        escrow was already released to the worker cannot be cancelled.
        """
        now = resolve_now(now)
        contract = cls.get_contract(session, contract_id)
        ContractStateValidator.require_transition(contract.status, ContractStatus.CANCELLED, contract_id)
        if contract.escrow_status == ContractEscrowStatus.RELEASED.value:
            raise PreconditionError(
                f"Contract {contract_id} escrow was already released to the worker; it can no longer be cancelled"
            )

        moved = status_guarded_update(
            session, Contract, contract_id, contract.status,
            {
                "status": ContractStatus.CANCELLED,
                "cancelled_at": now,
                "cancelled_by_id": cancelled_by_id,
                "cancelled_by_role": role,
                "cancellation_reason": reason,
            },
            extra_criteria=[Contract.escrow_status != ContractEscrowStatus.RELEASED.value],
        )
        if not moved:
            raise PreconditionError(f"Contract {contract_id} changed state before it could be cancelled")

        cls._handle_cancelled_escrow(session, contract)

        for user_id in (contract.client_id, contract.doer_id):
            NotificationQueueService.enqueue(
                session, user_id, "contract_cancelled", {"contract_id": contract_id, "reason": reason},
                idempotency_key=f"contract:{contract_id}:cancelled:{user_id}",
            )
        session.flush()

        logger.info(f"🚫 CONTRACT_CANCELLED: contract={contract_id} by {role} {cancelled_by_id}")
        return contract

    @staticmethod
    def _handle_cancelled_escrow(session: Session, contract: Contract):
        payment = EscrowLedgerService.get_active_payment(session, contract.id)
        if payment is None:
            return

        if payment.status == PaymentStatus.PENDING.value:
            EscrowLedgerService.cancel_pending_payment(session, payment.id)
            return

        # Captured (or capture in flight): an admin decides the refund
        contract.escrow_status = ContractEscrowStatus.REFUND_PENDING.value
        NotificationQueueService.enqueue(
            session, contract.client_id, "escrow_refund_review",
            {"contract_id": contract.id, "payment_id": payment.id},
            idempotency_key=f"contract:{contract.id}:refund_review",
            priority=1,
        )
        logger.warning(
            f"💰 ESCROW_REFUND_PENDING: contract={contract.id} payment={payment.id} ({payment.status})"
        )

    @classmethod
    def open_dispute(
        cls,
        session: Session,
        contract_id: int,
        disputed_by_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Contract:
        contract = cls.get_contract(session, contract_id)
        ContractStateValidator.require_transition(contract.status, ContractStatus.DISPUTED, contract_id)

        moved = status_guarded_update(
            session, Contract, contract_id, contract.status,
            {
                "status": ContractStatus.DISPUTED,
                "disputed_at": resolve_now(now),
                "disputed_by_id": disputed_by_id,
                "dispute_reason": reason,
            },
        )
        if not moved:
            raise PreconditionError(f"Contract {contract_id} changed state before the dispute was opened")

        for user_id in (contract.client_id, contract.doer_id):
            NotificationQueueService.enqueue(
                session, user_id, "contract_disputed", {"contract_id": contract_id},
                idempotency_key=f"contract:{contract_id}:disputed:{user_id}",
                priority=1,
            )
        session.flush()
        logger.warning(f"⚖️ CONTRACT_DISPUTED: contract={contract_id} by {disputed_by_id}")
        return contract

    @classmethod
    def resolve_dispute(
        cls,
        session: Session,
        contract_id: int,
        outcome: str,
        acting_admin_id: int,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Contract:
        """Admin decision: release to the worker (completed) or refund the client (cancelled)"""
        contract = cls.get_contract(session, contract_id)
        if contract.status != ContractStatus.DISPUTED.value:
            raise PreconditionError(f"Contract {contract_id} is {contract.status}, not disputed")

        if outcome == DisputeOutcome.RELEASE:
            if not cls.complete_contract(
                session, contract_id, source=CompletionSource.DISPUTE_RESOLUTION,
                now=now, acting_admin_id=acting_admin_id,
            ):
                raise PreconditionError(f"Contract {contract_id} changed state during dispute resolution")
        elif outcome == DisputeOutcome.REFUND:
            cls.cancel(session, contract_id, acting_admin_id, "admin", reason=note or "Dispute resolved in favour of client", now=now)
        else:
            raise ValidationError(f"Unknown dispute outcome: {outcome}")

        logger.info(f"⚖️ DISPUTE_RESOLVED: contract={contract_id} outcome={outcome} admin={acting_admin_id}")
        return contract

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    @classmethod
    def advance_contract(
        cls,
        session: Session,
        contract_id: int,
        event: str,
        actor_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Apply a user event to a contract.

        Returns {"success": True, "status": <new status>} or
        {"success": False, "reason": <why it was rejected>}.
        """
        try:
            contract = cls.get_contract(session, contract_id)

            if event in (ContractEvent.CLIENT_CONFIRM, ContractEvent.DOER_CONFIRM):
                party = Party.CLIENT if event == ContractEvent.CLIENT_CONFIRM else Party.DOER
                if cls._party_of(contract, actor_id) != party:
                    raise ValidationError(f"Only the {party} can apply {event}")
                cls.confirm(session, contract_id, party, now)
            elif event == ContractEvent.CANCEL:
                cls.cancel(session, contract_id, actor_id, cls._party_of(contract, actor_id), reason, now)
            elif event == ContractEvent.DISPUTE:
                cls._party_of(contract, actor_id)
                cls.open_dispute(session, contract_id, actor_id, reason, now)
            else:
                raise ValidationError(f"Unknown contract event: {event}")
        except EscrowCoreError as e:
            logger.info(f"⛔ CONTRACT_EVENT_REJECTED: contract={contract_id} event={event} actor={actor_id}: {e.message}")
            return {"success": False, "reason": e.message}

        return {"success": True, "status": contract.status}
