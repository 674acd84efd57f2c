"""
Auto-Confirmation Job
Runs every 5 minutes. Completes contracts that have been awaiting
confirmation for longer than AUTO_CONFIRM_GRACE_HOURS with at least one
party still silent.

Each contract is completed in its own transaction; a failure is logged and
the batch moves on. Completion itself is status-guarded, so a contract the
parties confirmed between the SELECT and the UPDATE is skipped.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import or_, select

from config import Config
from database import managed_session
from models import Contract, ContractStatus
from services.contract_lifecycle import FUNDED_ESCROW_VALUES, CompletionSource, ContractLifecycleService
from utils.datetime_helpers import resolve_now
from utils.job_guard import JobRunGuard

logger = logging.getLogger(__name__)

auto_confirm_guard = JobRunGuard("auto_confirm_contracts")


def find_due_contracts(now: datetime, limit: Optional[int] = None) -> List[int]:
    deadline = now - timedelta(hours=Config.AUTO_CONFIRM_GRACE_HOURS)
    with managed_session() as session:
        return list(session.execute(
            select(Contract.id)
            .where(
                Contract.status == ContractStatus.AWAITING_CONFIRMATION.value,
                Contract.awaiting_confirmation_at.is_not(None),
                Contract.awaiting_confirmation_at <= deadline,
                Contract.escrow_status.in_(FUNDED_ESCROW_VALUES),
                or_(Contract.client_confirmed.is_(False), Contract.doer_confirmed.is_(False)),
            )
            .order_by(Contract.awaiting_confirmation_at, Contract.id)
            .limit(limit or Config.AUTO_CONFIRM_BATCH_SIZE)
        ).scalars().all())


def run_auto_confirm_contracts(now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Auto-complete overdue contracts.

    Returns:
        Dict with counts: checked, completed, skipped, errors
    """
    stats = {"checked": 0, "completed": 0, "skipped": 0, "errors": 0}

    with auto_confirm_guard.hold() as acquired:
        if not acquired:
            return stats

        now = resolve_now(now)
        try:
            contract_ids = find_due_contracts(now)
        except Exception as e:
            logger.error(f"❌ AUTO_CONFIRM: failed to load due contracts: {e}", exc_info=True)
            stats["errors"] += 1
            return stats

        for contract_id in contract_ids:
            stats["checked"] += 1
            try:
                with managed_session() as session:
                    completed = ContractLifecycleService.complete_contract(
                        session, contract_id, source=CompletionSource.AUTO_CONFIRM, now=now
                    )
                if completed:
                    stats["completed"] += 1
                    logger.info(f"🤖 AUTO_CONFIRMED: contract={contract_id}")
                else:
                    stats["skipped"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"❌ AUTO_CONFIRM_FAILED: contract={contract_id}: {e}", exc_info=True)

    if stats["checked"]:
        logger.info(
            f"🤖 Auto-confirm run: {stats['checked']} due, {stats['completed']} completed, "
            f"{stats['skipped']} skipped, {stats['errors']} errors"
        )
    return stats
