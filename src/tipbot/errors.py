"""Error taxonomy for command processing.

Validation and insufficient-funds errors are handled rejections: the user
gets a reply and the message is acknowledged. Transient external errors roll
the unit back and leave the message unacknowledged so the next cycle retries
it. Internal invariant errors are never suppressed.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional


class TipBotError(Exception):
    """Base class for all tip bot errors."""

    pass


class RejectionReason(str, Enum):
    """Why a command was rejected before touching the ledger."""

    INVALID_TIP_AMOUNT = "invalid_tip_amount"
    INVALID_WITHDRAW_AMOUNT = "invalid_withdraw_amount"
    AMOUNT_LTE_FEE = "amount_lte_fee"
    INVALID_ADDRESS = "invalid_address"
    OWN_DEPOSIT_ADDRESS = "own_deposit_address"


class CommandValidationError(TipBotError):
    """Malformed amount, address or target in a recognised command."""

    def __init__(
        self,
        reason: RejectionReason,
        message: str = "",
        amount: Optional[Decimal] = None,
        fee: Optional[Decimal] = None,
        address: Optional[str] = None,
    ):
        super().__init__(message or reason.value)
        self.reason = reason
        self.amount = amount
        self.fee = fee
        self.address = address


class InsufficientFundsError(TipBotError):
    """Sender balance does not cover the requested amount."""

    def __init__(self, balance: Decimal, amount: Decimal):
        super().__init__(f"Insufficient balance: have {balance}, need {amount}")
        self.balance = balance
        self.amount = amount


class TransientExternalError(TipBotError):
    """Network failure or remote error; the unit is retried next cycle."""

    pass


class RateUnavailableError(TransientExternalError):
    """The LBC/USD rate could not be retrieved or is unusable."""

    pass


class ChainNodeError(TransientExternalError):
    """The lbrycrd node returned an explicit error."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class RedditAPIError(TransientExternalError):
    """Reddit returned an error or an unparseable response."""

    pass


class NotificationFailedError(TransientExternalError):
    """A reply that is part of a ledger unit could not be delivered."""

    pass


class LockTimeoutError(TransientExternalError):
    """A per-user lock could not be acquired within the timeout period."""

    pass


class PendingWithdrawalError(TransientExternalError):
    """An earlier withdrawal attempt for the user is still unresolved."""

    pass


class AmbiguousTransferError(TipBotError):
    """The node did not answer a send in time; the transfer may have happened."""

    def __init__(self, message: str, attempt_key: Optional[str] = None):
        super().__init__(message)
        self.attempt_key = attempt_key


class UnknownDepositAddressError(TipBotError):
    """A chain transaction paid an address no user owns."""

    def __init__(self, address: str):
        super().__init__(f"User with deposit address {address} not found.")
        self.address = address


class InternalInvariantError(TipBotError):
    """A ledger invariant was violated; the unit must abort."""

    pass
