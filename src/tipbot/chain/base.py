"""Chain node interface.

The bot keeps every user's LBC in one wallet account on an lbrycrd node.
Deposits arrive at per-user addresses of that account; withdrawals are sent
from it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass
class ChainTransaction:
    """Wallet transaction as listed by the node."""

    tx_id: str
    address: str
    amount: Decimal
    confirmations: int
    category: Optional[str] = None      # receive / send / generate ...
    comment: Optional[str] = None

    @property
    def is_incoming(self) -> bool:
        if self.category is not None and self.category != "receive":
            return False
        return self.amount > 0


class ChainNode(ABC):
    """Abstract base class for the wallet node."""

    @abstractmethod
    async def new_address(self, account: str) -> str:
        """Generate a new receiving address for the account."""
        raise NotImplementedError()

    @abstractmethod
    async def send(
        self,
        account: str,
        address: str,
        amount: Decimal,
        comment: Optional[str] = None,
    ) -> str:
        """Send amount from the account and return the transaction id.

        Raises ChainNodeError when the node refuses the transfer and
        AmbiguousTransferError when the outcome is unknown.
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_transaction(self, tx_id: str) -> int:
        """Current confirmation count of a wallet transaction."""
        raise NotImplementedError()

    @abstractmethod
    async def list_recent_transactions(
        self, account: str, limit: int = 1000
    ) -> list[ChainTransaction]:
        """Most recent wallet transactions of the account."""
        raise NotImplementedError()

    @property
    @abstractmethod
    def name(self) -> str:
        """Node name."""
        raise NotImplementedError()
