"""
Contract State Transition Validator
===================================

Prevents invalid contract status changes such as COMPLETED -> IN_PROGRESS
or CANCELLED -> ACCEPTED. Terminal states never re-enter the lifecycle.
"""

import logging
from typing import Dict, Set, Optional, Tuple, Union

from models import ContractStatus
from utils.exceptions import StateTransitionError

logger = logging.getLogger(__name__)


class ContractStateValidator:
    """Validates contract lifecycle transitions"""

    VALID_TRANSITIONS: Dict[ContractStatus, Set[ContractStatus]] = {
        ContractStatus.PENDING: {
            ContractStatus.ACCEPTED,
            ContractStatus.CANCELLED,
        },
        ContractStatus.ACCEPTED: {
            ContractStatus.IN_PROGRESS,
            ContractStatus.AWAITING_CONFIRMATION,  # end date passed without an explicit start
            ContractStatus.CANCELLED,
        },
        ContractStatus.IN_PROGRESS: {
            ContractStatus.AWAITING_CONFIRMATION,
            ContractStatus.DISPUTED,
            ContractStatus.CANCELLED,
        },
        ContractStatus.AWAITING_CONFIRMATION: {
            ContractStatus.COMPLETED,
            ContractStatus.DISPUTED,
            ContractStatus.CANCELLED,
        },
        # Dispute resolution either releases (completed) or refunds (cancelled)
        ContractStatus.DISPUTED: {
            ContractStatus.COMPLETED,
            ContractStatus.CANCELLED,
        },
        ContractStatus.COMPLETED: set(),
        ContractStatus.CANCELLED: set(),
    }

    TERMINAL_STATES: Set[ContractStatus] = {
        ContractStatus.COMPLETED,
        ContractStatus.CANCELLED,
    }

    # States in which the end-of-job reminder applies
    REMINDER_STATES: Set[ContractStatus] = {
        ContractStatus.ACCEPTED,
        ContractStatus.IN_PROGRESS,
        ContractStatus.AWAITING_CONFIRMATION,
    }

    @staticmethod
    def _as_status(status: Union[str, ContractStatus]) -> ContractStatus:
        return ContractStatus(status) if isinstance(status, str) else status

    @classmethod
    def validate_transition(
        cls,
        from_status: Union[str, ContractStatus],
        to_status: Union[str, ContractStatus],
        contract_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a contract transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        from_enum = cls._as_status(from_status)
        to_enum = cls._as_status(to_status)
        contract_ref = f"Contract {contract_id}" if contract_id else "Contract"

        if from_enum == to_enum:
            return False, f"{contract_ref} is already {from_enum.value}"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_enum, set())
        if to_enum in valid_next_states:
            return True, "Valid state transition"

        reason = (
            f"Invalid transition: {from_enum.value} -> {to_enum.value}. "
            f"Valid transitions from {from_enum.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.warning(f"❌ INVALID_CONTRACT_TRANSITION: {contract_ref} {from_enum.value} -> {to_enum.value}")
        return False, reason

    @classmethod
    def require_transition(
        cls,
        from_status: Union[str, ContractStatus],
        to_status: Union[str, ContractStatus],
        contract_id: Optional[int] = None,
    ) -> None:
        """Raise StateTransitionError when the transition is not allowed"""
        is_valid, reason = cls.validate_transition(from_status, to_status, contract_id)
        if not is_valid:
            raise StateTransitionError(reason)

    @classmethod
    def is_terminal_state(cls, status: Union[str, ContractStatus]) -> bool:
        return cls._as_status(status) in cls.TERMINAL_STATES

    @classmethod
    def sources_for(cls, to_status: ContractStatus) -> Set[ContractStatus]:
        """All states from which ``to_status`` is reachable in one step"""
        return {src for src, targets in cls.VALID_TRANSITIONS.items() if to_status in targets}
