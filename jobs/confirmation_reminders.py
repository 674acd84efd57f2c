"""
Confirmation Reminder Job
Runs every 30 minutes. For contracts whose job end date has passed and that
still miss a confirmation, reminds each silent party once and starts the
auto-confirm window for contracts that were still running.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_, select

from database import managed_session
from models import Contract, Job
from services.contract_lifecycle import ContractLifecycleService
from services.notification_queue import NotificationQueueService
from utils.contract_state_validator import ContractStateValidator
from utils.datetime_helpers import resolve_now
from utils.job_guard import JobRunGuard
from utils.optimistic_locking import status_guarded_update

logger = logging.getLogger(__name__)

reminder_guard = JobRunGuard("confirmation_reminders")

REMINDER_STATUS_VALUES = sorted(s.value for s in ContractStateValidator.REMINDER_STATES)


def find_contracts_needing_reminder(now: datetime) -> List[int]:
    with managed_session() as session:
        return list(session.execute(
            select(Contract.id)
            .join(Job, Job.id == Contract.job_id)
            .where(
                Job.end_date.is_not(None),
                Job.end_date <= now,
                Contract.status.in_(REMINDER_STATUS_VALUES),
                Contract.confirmation_reminder_sent.is_(False),
                or_(Contract.client_confirmed.is_(False), Contract.doer_confirmed.is_(False)),
            )
            .order_by(Contract.id)
        ).scalars().all())


def send_confirmation_reminder(session, contract_id: int, now: datetime) -> bool:
    """Claim the reminder flag, queue reminders for unconfirmed parties and open the confirmation window"""
    contract = ContractLifecycleService.get_contract(session, contract_id)

    claimed = status_guarded_update(
        session, Contract, contract_id, ContractStateValidator.REMINDER_STATES,
        {"confirmation_reminder_sent": True},
        extra_criteria=[Contract.confirmation_reminder_sent.is_(False)],
    )
    if not claimed:
        return False

    parties = []
    if not contract.client_confirmed:
        parties.append(contract.client_id)
    if not contract.doer_confirmed:
        parties.append(contract.doer_id)

    for user_id in parties:
        NotificationQueueService.enqueue(
            session, user_id, "confirmation_reminder", {"contract_id": contract_id},
            idempotency_key=f"contract:{contract_id}:reminder:{user_id}",
            priority=1,
        )

    ContractLifecycleService.mark_awaiting_confirmation(session, contract_id, now)
    logger.info(f"🔔 CONFIRMATION_REMINDER: contract={contract_id} notified={parties}")
    return True


def run_confirmation_reminders(now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Send end-of-job confirmation reminders.

    Returns:
        Dict with counts: checked, reminded, skipped, errors
    """
    stats = {"checked": 0, "reminded": 0, "skipped": 0, "errors": 0}

    with reminder_guard.hold() as acquired:
        if not acquired:
            return stats

        now = resolve_now(now)
        try:
            contract_ids = find_contracts_needing_reminder(now)
        except Exception as e:
            logger.error(f"❌ CONFIRMATION_REMINDERS: failed to load contracts: {e}", exc_info=True)
            stats["errors"] += 1
            return stats

        for contract_id in contract_ids:
            stats["checked"] += 1
            try:
                with managed_session() as session:
                    sent = send_confirmation_reminder(session, contract_id, now)
                stats["reminded" if sent else "skipped"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"❌ CONFIRMATION_REMINDER_FAILED: contract={contract_id}: {e}", exc_info=True)

    if stats["checked"]:
        logger.info(
            f"🔔 Reminder run: {stats['checked']} due, {stats['reminded']} reminded, "
            f"{stats['skipped']} skipped, {stats['errors']} errors"
        )
    return stats
