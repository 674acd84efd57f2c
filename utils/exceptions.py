"""
Exception hierarchy for the contract escrow core.

Direct admin/user commands surface these to the caller. Scheduler and webhook
paths catch PreconditionError when it only means another actor got there first.
"""


class EscrowCoreError(Exception):
    """Base class for all escrow core errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(EscrowCoreError):
    """Input rejected before any state change (amounts, percentages, workers)"""
    pass


class NotFoundError(EscrowCoreError):
    """Referenced row does not exist"""
    pass


class PreconditionError(EscrowCoreError):
    """Row is not in the state the operation requires"""
    pass


class AlreadyProcessedError(PreconditionError):
    """Operation was already applied (released, confirmed, refunded)"""
    pass


class StateTransitionError(PreconditionError):
    """Raised when an invalid state transition is attempted"""
    pass


class PaymentGatewayError(EscrowCoreError):
    """Payment gateway call failed; no local state was changed"""
    pass


class PaymentCaptureError(PaymentGatewayError):
    """Gateway could not capture the order"""
    pass


class RefundRejectedError(PaymentGatewayError):
    """Gateway rejected the refund request"""
    pass
