"""
Payment (Escrow Ledger) State Transition Validator
==================================================

Payments only move forward. The single backward-looking path is the refund
path out of held escrow. COMPLETED is reachable only through HELD_ESCROW
(or a partial refund of it), never straight from PENDING.
"""

import logging
from typing import Dict, Set, Optional, Tuple, Union

from models import PaymentStatus
from utils.exceptions import StateTransitionError

logger = logging.getLogger(__name__)


class PaymentStateValidator:
    """Validates escrow payment transitions"""

    VALID_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.PROCESSING,
            PaymentStatus.HELD_ESCROW,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.PROCESSING: {
            PaymentStatus.HELD_ESCROW,
            PaymentStatus.FAILED,
        },
        PaymentStatus.HELD_ESCROW: {
            PaymentStatus.COMPLETED,
            PaymentStatus.PARTIAL_REFUND,
            PaymentStatus.REFUNDED,
        },
        # Partial refunds accumulate; the remainder can still be released
        PaymentStatus.PARTIAL_REFUND: {
            PaymentStatus.PARTIAL_REFUND,
            PaymentStatus.REFUNDED,
            PaymentStatus.COMPLETED,
        },
        PaymentStatus.COMPLETED: set(),
        PaymentStatus.REFUNDED: set(),
        PaymentStatus.FAILED: set(),
        PaymentStatus.CANCELLED: set(),
    }

    TERMINAL_STATES: Set[PaymentStatus] = {
        PaymentStatus.COMPLETED,
        PaymentStatus.REFUNDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }

    # Funds captured and still held by the platform
    RELEASABLE_STATES: Set[PaymentStatus] = {
        PaymentStatus.HELD_ESCROW,
        PaymentStatus.PARTIAL_REFUND,
    }
    REFUNDABLE_STATES = RELEASABLE_STATES

    @staticmethod
    def _as_status(status: Union[str, PaymentStatus]) -> PaymentStatus:
        return PaymentStatus(status) if isinstance(status, str) else status

    @classmethod
    def validate_transition(
        cls,
        from_status: Union[str, PaymentStatus],
        to_status: Union[str, PaymentStatus],
        payment_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        from_enum = cls._as_status(from_status)
        to_enum = cls._as_status(to_status)
        payment_ref = f"Payment {payment_id}" if payment_id else "Payment"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_enum, set())
        if to_enum in valid_next_states:
            return True, "Valid state transition"

        if from_enum == to_enum:
            return False, f"{payment_ref} is already {from_enum.value}"

        reason = (
            f"Invalid transition: {from_enum.value} -> {to_enum.value}. "
            f"Valid transitions from {from_enum.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.warning(f"❌ INVALID_PAYMENT_TRANSITION: {payment_ref} {from_enum.value} -> {to_enum.value}")
        return False, reason

    @classmethod
    def require_transition(
        cls,
        from_status: Union[str, PaymentStatus],
        to_status: Union[str, PaymentStatus],
        payment_id: Optional[int] = None,
    ) -> None:
        is_valid, reason = cls.validate_transition(from_status, to_status, payment_id)
        if not is_valid:
            raise StateTransitionError(reason)

    @classmethod
    def is_terminal_state(cls, status: Union[str, PaymentStatus]) -> bool:
        return cls._as_status(status) in cls.TERMINAL_STATES

    @classmethod
    def sources_for(cls, to_status: PaymentStatus) -> Set[PaymentStatus]:
        return {src for src, targets in cls.VALID_TRANSITIONS.items() if to_status in targets}
