"""
Worker Allocation Splitter
Divides a multi-worker job's budget between its selected workers.

split_allocation() is pure. JobAllocationService persists its result once per
job; afterwards each worker's allocation is the frozen snapshot that
contracts are priced from, and it only changes through an explicit
update_allocations() or remove_worker() call.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from config import Config
from models import (
    Contract, ContractStatus, Job, JobWorkerAllocation, Payment, PaymentStatus,
)
from services.commission_service import commission_at_rate
from services.notification_queue import NotificationQueueService
from utils.datetime_helpers import resolve_now
from utils.decimal_precision import MonetaryDecimal, Numeric
from utils.exceptions import NotFoundError, PreconditionError, ValidationError

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")

# Payment states in which a contract's price is locked to the money already moved
FUNDED_PAYMENT_STATES = {
    PaymentStatus.PROCESSING.value,
    PaymentStatus.HELD_ESCROW.value,
    PaymentStatus.PARTIAL_REFUND.value,
    PaymentStatus.COMPLETED.value,
    PaymentStatus.REFUNDED.value,
}


@dataclass(frozen=True)
class WorkerAllocation:
    worker_id: int
    amount: Decimal
    percentage: Decimal

    def to_dict(self) -> dict:
        return {"workerId": self.worker_id, "amount": self.amount, "percentage": self.percentage}


@dataclass(frozen=True)
class AllocationResult:
    allocations: List[WorkerAllocation] = field(default_factory=list)
    remaining_budget: Decimal = Decimal("0")

    @property
    def allocated_total(self) -> Decimal:
        return sum((a.amount for a in self.allocations), Decimal("0"))

    def to_dict(self) -> dict:
        return {
            "allocations": [a.to_dict() for a in self.allocations],
            "remainingBudget": self.remaining_budget,
        }


def _percentage_of_budget(amount: Decimal, budget: Decimal) -> Decimal:
    if budget <= 0:
        return Decimal("0")
    return MonetaryDecimal.quantize_percent(amount / budget * HUNDRED)


def split_allocation(
    job_budget: Numeric,
    workers: Sequence[int],
    explicit_percentages: Optional[Sequence[Numeric]] = None,
    unit: Optional[Numeric] = None,
) -> AllocationResult:
    """
    Split ``job_budget`` across ``workers``.

    Even split: each worker gets floor(budget / n) in whole ``unit``s and the
    leftover goes to workers[0], so the amounts sum to the budget.
    Explicit split: worker i gets floor(budget * pct[i] / 100); what the
    percentages leave unassigned stays in remaining_budget.

    Raises:
        ValidationError: no workers, duplicate workers, negative or
            over-100 percentages, or a percentage list of the wrong length
    """
    budget = MonetaryDecimal.quantize_money(MonetaryDecimal.positive(job_budget, "job budget"))
    unit = unit if unit is not None else Config.ALLOCATION_UNIT
    workers = list(workers)

    if not workers:
        raise ValidationError("At least one worker is required to split a budget")
    if len(set(workers)) != len(workers):
        raise ValidationError("Each worker can only receive one allocation")

    if explicit_percentages is None:
        share = MonetaryDecimal.floor_to_unit(budget / len(workers), unit)
        amounts = [share] * len(workers)
        amounts[0] += budget - share * len(workers)
    else:
        if len(explicit_percentages) != len(workers):
            raise ValidationError(
                f"Got {len(explicit_percentages)} percentages for {len(workers)} workers"
            )
        percentages = [MonetaryDecimal.to_decimal(p, "percentage") for p in explicit_percentages]
        if any(p < 0 for p in percentages):
            raise ValidationError("Allocation percentages cannot be negative")
        if sum(percentages) > HUNDRED:
            raise ValidationError(f"Allocation percentages add up to {sum(percentages)}%, more than 100%")
        amounts = [MonetaryDecimal.floor_to_unit(budget * p / HUNDRED, unit) for p in percentages]

    remaining = budget - sum(amounts)
    if remaining < 0:
        raise ValidationError("Allocations exceed the job budget")

    return AllocationResult(
        allocations=[
            WorkerAllocation(worker_id=w, amount=a, percentage=_percentage_of_budget(a, budget))
            for w, a in zip(workers, amounts)
        ],
        remaining_budget=remaining,
    )


def worker_payout_amount(contract: Contract, refunded_amount: Optional[Numeric] = None) -> Decimal:
    """
    What the worker is owed on completion: the frozen allocation for
    multi-worker jobs, otherwise the contract price. Any amount already
    refunded to the client is taken off the top.
    """
    base = contract.allocated_amount if contract.allocated_amount is not None else contract.price
    payout = MonetaryDecimal.quantize_money(base)
    if refunded_amount:
        payout -= MonetaryDecimal.quantize_money(refunded_amount)
    return max(payout, Decimal("0.00"))


class JobAllocationService:
    """Persists worker allocations on a Job"""

    @staticmethod
    def _get_job(session: Session, job_id: int) -> Job:
        job = session.get(Job, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    @staticmethod
    def _sync_totals(job: Job):
        total = sum((Decimal(a.allocated_amount) for a in job.allocations), Decimal("0"))
        budget = MonetaryDecimal.quantize_money(job.price)
        if total > budget:
            raise ValidationError(f"Allocated total {total} exceeds the job budget {budget}")
        job.allocated_total = MonetaryDecimal.quantize_money(total)
        job.remaining_budget = budget - job.allocated_total

    @classmethod
    def add_selected_worker(cls, session: Session, job_id: int, worker_id: int) -> Job:
        """Select a worker for a job before its allocations are finalized"""
        job = cls._get_job(session, job_id)
        if job.allocations_finalized_at is not None:
            raise PreconditionError(f"Job {job_id} allocations are already finalized")
        if worker_id == job.client_id:
            raise ValidationError("A client cannot select themselves")

        selected = list(job.selected_worker_ids or [])
        if worker_id in selected:
            return job
        if len(selected) >= job.max_workers:
            raise ValidationError(f"Job {job_id} already has its maximum of {job.max_workers} workers")

        job.selected_worker_ids = selected + [worker_id]
        session.flush()
        logger.info(f"👷 WORKER_SELECTED: job={job_id} worker={worker_id} ({len(selected) + 1}/{job.max_workers})")
        return job

    @classmethod
    def finalize_allocations(
        cls,
        session: Session,
        job_id: int,
        percentages: Optional[Sequence[Numeric]] = None,
        now: Optional[datetime] = None,
    ) -> AllocationResult:
        """Split the budget across the selected workers; runs once per job"""
        job = cls._get_job(session, job_id)
        if job.allocations_finalized_at is not None or job.allocations:
            raise PreconditionError(f"Job {job_id} allocations are already finalized")

        result = split_allocation(job.price, job.selected_worker_ids or [], percentages)
        timestamp = resolve_now(now)
        for position, allocation in enumerate(result.allocations):
            job.allocations.append(JobWorkerAllocation(
                worker_id=allocation.worker_id,
                position=position,
                allocated_amount=allocation.amount,
                percentage=allocation.percentage,
                allocated_at=timestamp,
            ))

        job.allocated_total = result.allocated_total
        job.remaining_budget = result.remaining_budget
        job.allocations_finalized_at = timestamp
        session.flush()

        logger.info(
            f"📊 ALLOCATIONS_FINALIZED: job={job_id} workers={len(result.allocations)} "
            f"allocated={result.allocated_total} remaining={result.remaining_budget}"
        )
        return result

    @classmethod
    def update_allocations(cls, session: Session, job_id: int, amounts: Dict[int, Numeric]) -> Job:
        """Set explicit amounts for some or all selected workers"""
        job = cls._get_job(session, job_id)
        selected = list(job.selected_worker_ids or [])
        budget = MonetaryDecimal.quantize_money(job.price)

        by_worker = {a.worker_id: a for a in job.allocations}
        for worker_id, raw_amount in amounts.items():
            if worker_id not in selected:
                raise ValidationError(f"Worker {worker_id} is not selected for job {job_id}")
            amount = MonetaryDecimal.quantize_money(MonetaryDecimal.to_decimal(raw_amount, "allocation amount"))
            if amount < 0:
                raise ValidationError("Allocation amounts cannot be negative")

            allocation = by_worker.get(worker_id)
            if allocation is None:
                allocation = JobWorkerAllocation(worker_id=worker_id, position=selected.index(worker_id))
                job.allocations.append(allocation)
            allocation.allocated_amount = amount
            allocation.percentage = _percentage_of_budget(amount, budget)

        cls._sync_totals(job)
        if job.allocations_finalized_at is None:
            job.allocations_finalized_at = resolve_now()
        session.flush()

        logger.info(f"📊 ALLOCATIONS_UPDATED: job={job_id} allocated={job.allocated_total} remaining={job.remaining_budget}")
        return job

    @classmethod
    def remove_worker(
        cls,
        session: Session,
        job_id: int,
        worker_id: int,
        redistribute: bool = False,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """
        Remove a worker from a job.

        Their allocation is either split evenly among the remaining workers
        (whose unfunded contracts are re-priced) or returned to the job's
        remaining budget. The removed worker's open contract is cancelled.
        """
        from services.contract_lifecycle import ContractLifecycleService

        job = cls._get_job(session, job_id)
        selected = list(job.selected_worker_ids or [])
        if worker_id not in selected:
            raise NotFoundError(f"Worker {worker_id} is not selected for job {job_id}")

        removed = next((a for a in job.allocations if a.worker_id == worker_id), None)
        freed = MonetaryDecimal.quantize_money(removed.allocated_amount) if removed else Decimal("0.00")
        remaining_workers = [a for a in job.allocations if a.worker_id != worker_id]

        if redistribute and freed > 0 and remaining_workers:
            cls._ensure_repriceable(session, job_id, [a.worker_id for a in remaining_workers])

        open_contract = cls._open_contract(session, job_id, worker_id)
        if open_contract is not None:
            ContractLifecycleService.cancel(
                session, open_contract.id, job.client_id, "client",
                reason=reason or "Worker removed from job", now=now,
            )

        job.selected_worker_ids = [w for w in selected if w != worker_id]
        if removed is not None:
            job.allocations.remove(removed)

        if redistribute and freed > 0 and remaining_workers:
            budget = MonetaryDecimal.quantize_money(job.price)
            extra = split_allocation(freed, [a.worker_id for a in remaining_workers])
            for allocation, share in zip(remaining_workers, extra.allocations):
                allocation.allocated_amount = MonetaryDecimal.quantize_money(allocation.allocated_amount) + share.amount
                allocation.percentage = _percentage_of_budget(allocation.allocated_amount, budget)
                cls._reprice_contract(session, job_id, allocation)
                NotificationQueueService.enqueue(
                    session, allocation.worker_id, "allocation_increased",
                    {"job_id": job_id, "amount": str(allocation.allocated_amount)},
                    idempotency_key=f"job:{job_id}:removed:{worker_id}:increase:{allocation.worker_id}",
                )

        cls._sync_totals(job)
        NotificationQueueService.enqueue(
            session, worker_id, "removed_from_job", {"job_id": job_id, "reason": reason},
            idempotency_key=f"job:{job_id}:removed:{worker_id}",
        )
        session.flush()

        logger.info(
            f"👋 WORKER_REMOVED: job={job_id} worker={worker_id} freed={freed} "
            f"{'redistributed' if redistribute else 'returned to budget'} remaining={job.remaining_budget}"
        )
        return job

    @staticmethod
    def _open_contract(session: Session, job_id: int, worker_id: int) -> Optional[Contract]:
        return session.query(Contract).filter(
            Contract.job_id == job_id,
            Contract.doer_id == worker_id,
            Contract.status.notin_([ContractStatus.COMPLETED.value, ContractStatus.CANCELLED.value]),
        ).first()

    @staticmethod
    def _ensure_repriceable(session: Session, job_id: int, worker_ids: List[int]):
        funded = (
            session.query(Contract.id)
            .join(Payment, Payment.contract_id == Contract.id)
            .filter(
                Contract.job_id == job_id,
                Contract.doer_id.in_(worker_ids),
                Contract.status != ContractStatus.CANCELLED.value,
                Payment.status.in_(FUNDED_PAYMENT_STATES),
            )
            .first()
        )
        if funded is not None:
            raise PreconditionError(
                f"Contract {funded.id} on job {job_id} is already funded; its allocation cannot be increased"
            )

    @classmethod
    def _reprice_contract(cls, session: Session, job_id: int, allocation: JobWorkerAllocation):
        contract = cls._open_contract(session, job_id, allocation.worker_id)
        if contract is None:
            return

        # Commission rate stays the one snapshotted when the contract was created
        price = MonetaryDecimal.quantize_money(allocation.allocated_amount)
        commission = commission_at_rate(price, contract.commission_rate)
        contract.price = price
        contract.allocated_amount = price
        contract.percentage_of_budget = allocation.percentage
        contract.commission = commission
        contract.total_price = price + commission

        for payment in session.query(Payment).filter(
            Payment.contract_id == contract.id, Payment.status == PaymentStatus.PENDING.value
        ):
            # The open order was for the old total; a new one is needed
            payment.status = PaymentStatus.CANCELLED.value

        logger.info(f"💲 CONTRACT_REPRICED: contract={contract.id} price={price} total={contract.total_price}")
