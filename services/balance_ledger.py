"""
Balance Transaction Ledger
==========================

Two-phase crediting of a user's internal balance:

1. record_pending() appends a row with status=pending and
   new_balance == previous_balance. The visible balance is untouched.
2. confirm_and_credit() (admin action, after payout evidence is verified)
   flips the row to completed and applies the amount to User.balance.

This module is the only code that writes User.balance.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import (
    User, BalanceTransaction, BalanceTransactionStatus, BalanceTransactionType
)
from services.notification_queue import NotificationQueueService
from utils.datetime_helpers import resolve_now
from utils.decimal_precision import MonetaryDecimal, Numeric
from utils.exceptions import (
    NotFoundError, PreconditionError, AlreadyProcessedError, ValidationError
)
from utils.optimistic_locking import status_guarded_update

logger = logging.getLogger(__name__)

DEBIT_TYPES = {BalanceTransactionType.WITHDRAWAL.value}


class BalanceLedgerService:
    """Append-only ledger of balance credits and debits"""

    @classmethod
    def record_pending(
        cls,
        session: Session,
        user_id: int,
        amount: Numeric,
        related_contract_id: Optional[int] = None,
        description: Optional[str] = None,
        tx_type: BalanceTransactionType = BalanceTransactionType.PAYMENT,
        related_payment_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BalanceTransaction:
        """Create a pending entry; the user's balance does not change"""
        amount = MonetaryDecimal.quantize_money(MonetaryDecimal.positive(amount, "transaction amount"))

        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        current_balance = MonetaryDecimal.quantize_money(user.balance or 0)
        transaction = BalanceTransaction(
            user_id=user_id,
            type=tx_type.value,
            amount=amount,
            previous_balance=current_balance,
            new_balance=current_balance,
            status=BalanceTransactionStatus.PENDING.value,
            description=description,
            related_model="Contract" if related_contract_id else None,
            related_id=related_contract_id,
            related_contract_id=related_contract_id,
            related_payment_id=related_payment_id,
            tx_metadata=metadata,
        )
        session.add(transaction)
        session.flush()

        logger.info(
            f"📝 BALANCE_PENDING: tx={transaction.id} user={user_id} {tx_type.value} {amount} "
            f"(contract={related_contract_id})"
        )
        return transaction

    @classmethod
    def confirm_and_credit(
        cls,
        session: Session,
        transaction_id: int,
        acting_admin_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> BalanceTransaction:
        """
        Complete a pending entry and apply it to the user's balance.

        Raises:
            AlreadyProcessedError: the entry was already confirmed
            PreconditionError: the entry was reversed, or a debit exceeds the balance
        """
        transaction = session.get(BalanceTransaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Balance transaction {transaction_id} not found")

        if transaction.status == BalanceTransactionStatus.COMPLETED.value:
            raise AlreadyProcessedError(f"Balance transaction {transaction_id} already confirmed")
        if transaction.status != BalanceTransactionStatus.PENDING.value:
            raise PreconditionError(
                f"Balance transaction {transaction_id} is {transaction.status}, only pending entries can be confirmed"
            )

        timestamp = resolve_now(now)
        claimed = status_guarded_update(
            session, BalanceTransaction, transaction_id, BalanceTransactionStatus.PENDING,
            {"status": BalanceTransactionStatus.COMPLETED, "confirmed_at": timestamp, "confirmed_by": acting_admin_id},
        )
        if not claimed:
            raise AlreadyProcessedError(f"Balance transaction {transaction_id} already processed")

        amount = Decimal(transaction.amount)
        is_debit = transaction.type in DEBIT_TYPES
        delta = -amount if is_debit else amount

        criteria = [User.id == transaction.user_id]
        if is_debit:
            criteria.append(User.balance >= amount)
        result = session.execute(
            update(User)
            .where(*criteria)
            .values(balance=User.balance + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Propagates so the caller's transaction rolls back the status flip
            raise PreconditionError(f"Insufficient balance for user {transaction.user_id}")

        new_balance = MonetaryDecimal.quantize_money(
            session.execute(select(User.balance).where(User.id == transaction.user_id)).scalar_one()
        )
        transaction.new_balance = new_balance
        transaction.previous_balance = new_balance - delta
        session.get(User, transaction.user_id, populate_existing=True)

        NotificationQueueService.enqueue(
            session,
            transaction.user_id,
            "payout_credited",
            {"amount": str(amount), "transaction_id": transaction.id},
            idempotency_key=f"balance_tx:{transaction.id}:credited",
        )
        session.flush()

        logger.info(
            f"✅ BALANCE_CREDITED: tx={transaction.id} user={transaction.user_id} "
            f"{transaction.previous_balance} -> {transaction.new_balance} (by admin {acting_admin_id})"
        )
        return transaction

    @classmethod
    def reverse_pending(
        cls,
        session: Session,
        transaction_id: int,
        reason: str,
        now: Optional[datetime] = None,
    ) -> BalanceTransaction:
        """Cancel a pending entry without touching the balance"""
        if not reason or not reason.strip():
            raise ValidationError("A reversal reason is required")

        transaction = session.get(BalanceTransaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Balance transaction {transaction_id} not found")

        reversed_ok = status_guarded_update(
            session, BalanceTransaction, transaction_id, BalanceTransactionStatus.PENDING,
            {"status": BalanceTransactionStatus.REVERSED, "reversed_at": resolve_now(now), "reversal_reason": reason},
        )
        if not reversed_ok:
            raise PreconditionError(
                f"Balance transaction {transaction_id} is {transaction.status}, only pending entries can be reversed"
            )

        logger.info(f"↩️ BALANCE_REVERSED: tx={transaction_id} reason={reason}")
        return transaction
