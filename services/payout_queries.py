"""
Pending payout read model for the admin payments screen.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import BalanceTransaction, BalanceTransactionStatus, Contract, User
from utils.datetime_helpers import ensure_naive_datetime
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


@dataclass
class PendingPayoutFilter:
    user_id: Optional[int] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 50
    offset: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PendingPayoutFilter":
        data = data or {}
        return cls(
            user_id=data.get("user_id"),
            since=ensure_naive_datetime(data.get("since")),
            until=ensure_naive_datetime(data.get("until")),
            limit=int(data.get("limit", 50)),
            offset=int(data.get("offset", 0)),
        )


@dataclass
class PendingPayoutPage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    total_count: int = 0
    total_amount: Decimal = Decimal("0.00")


class PayoutQueryService:

    @classmethod
    def get_pending_payouts(cls, session: Session, filters=None) -> PendingPayoutPage:
        """Pending balance transactions awaiting admin verification, newest first"""
        if not isinstance(filters, PendingPayoutFilter):
            filters = PendingPayoutFilter.from_dict(filters)

        if filters.limit < 1 or filters.limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if filters.offset < 0:
            raise ValidationError("offset cannot be negative")

        criteria = [BalanceTransaction.status == BalanceTransactionStatus.PENDING.value]
        if filters.user_id is not None:
            criteria.append(BalanceTransaction.user_id == filters.user_id)
        if filters.since is not None:
            criteria.append(BalanceTransaction.created_at >= filters.since)
        if filters.until is not None:
            criteria.append(BalanceTransaction.created_at < filters.until)

        count, total = session.execute(
            select(func.count(BalanceTransaction.id), func.coalesce(func.sum(BalanceTransaction.amount), 0))
            .where(*criteria)
        ).one()

        rows = session.execute(
            select(BalanceTransaction, Contract, User)
            .join(User, User.id == BalanceTransaction.user_id)
            .outerjoin(Contract, Contract.id == BalanceTransaction.related_contract_id)
            .where(*criteria)
            .order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        ).all()

        items = []
        for tx, contract, user in rows:
            items.append({
                "transaction_id": tx.id,
                "user_id": tx.user_id,
                "user_name": user.name,
                "amount": MonetaryDecimal.quantize_money(tx.amount),
                "description": tx.description,
                "created_at": tx.created_at,
                "contract_id": contract.id if contract else None,
                "job_id": contract.job_id if contract else None,
                "contract_status": contract.status if contract else None,
                "payment_status": contract.payment_status if contract else None,
            })

        logger.debug(f"Pending payouts query: {len(items)}/{count} rows")
        return PendingPayoutPage(
            items=items,
            total_count=count,
            total_amount=MonetaryDecimal.quantize_money(total),
        )
