"""Dry-run node for testing (no real transfers)."""

import hashlib
import logging
import secrets
from decimal import Decimal
from typing import Optional

import base58

from tipbot.chain.base import ChainNode, ChainTransaction

logger = logging.getLogger(__name__)

# lbrycrd mainnet pubkey-hash version byte ("b..." addresses)
LBC_ADDRESS_VERSION = 0x55


def make_address(seed: str) -> str:
    """Deterministic base58check LBC address derived from a seed string."""
    payload = hashlib.sha256(seed.encode()).digest()[:20]
    return base58.b58encode_check(bytes([LBC_ADDRESS_VERSION]) + payload).decode()


class DryRunNode(ChainNode):
    """Simulated wallet that remembers what it was asked to do."""

    def __init__(self, confirmations: int = 6):
        self.confirmations = confirmations
        self._address_count = 0
        self._transactions: list[ChainTransaction] = []

    @property
    def name(self) -> str:
        return "dryrun"

    async def new_address(self, account: str) -> str:
        self._address_count += 1
        return make_address(f"{account}:{self._address_count}")

    async def send(
        self,
        account: str,
        address: str,
        amount: Decimal,
        comment: Optional[str] = None,
    ) -> str:
        tx_id = f"sim_{secrets.token_hex(30)}"
        self._transactions.append(
            ChainTransaction(
                tx_id=tx_id,
                address=address,
                amount=-amount,
                confirmations=0,
                category="send",
                comment=comment,
            )
        )
        logger.info(f"[SIMULATED] Sent {amount} LBC from {account} to {address}")
        return tx_id

    async def get_transaction(self, tx_id: str) -> int:
        return self.confirmations

    async def list_recent_transactions(
        self, account: str, limit: int = 1000
    ) -> list[ChainTransaction]:
        return list(self._transactions[-limit:])
