"""Deposit tracking.

DepositTracker watches the wallet account for incoming transactions to
user deposit addresses and follows them until they reach the confirmation
threshold, at which point the owner is credited (once) and a completed
deposit notification is queued. CompletedDepositNotifier drains that queue.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tipbot.chain.base import ChainNode, ChainTransaction
from tipbot.errors import TransientExternalError, UnknownDepositAddressError
from tipbot.ledger.database import get_db
from tipbot.ledger.repository import LedgerRepository
from tipbot.notifications.notifier import Notifier
from tipbot.reddit.base import SendOutcome
from tipbot.utils.locks import user_balance_lock

logger = logging.getLogger(__name__)


@dataclass
class DepositCycleResult:
    seen: int = 0
    recorded: int = 0
    checked: int = 0
    credited: int = 0
    unknown_addresses: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class NotificationCycleResult:
    sent: int = 0
    pending: int = 0


class DepositTracker:
    """Discovers deposits and advances their confirmations."""

    def __init__(
        self,
        node: ChainNode,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        account: str = "tips",
        threshold: int = 3,
        scan_limit: int = 1000,
        lock_timeout: float = 30.0,
    ):
        self.node = node
        self.session_factory = session_factory
        self.account = account
        self.threshold = threshold
        self.scan_limit = scan_limit
        self.lock_timeout = lock_timeout

    async def run(self) -> DepositCycleResult:
        """One full cycle: discovery, then promotion."""
        result = DepositCycleResult()
        await self.discover(result)
        await self.promote(result)
        logger.info(
            f"Deposit cycle: {result.seen} seen, {result.recorded} recorded, "
            f"{result.checked} checked, {result.credited} credited"
        )
        return result

    async def discover(self, result: Optional[DepositCycleResult] = None) -> DepositCycleResult:
        """Record incoming wallet transactions as deposits.

        Entries paying an address no user owns are logged and skipped.
        """
        result = result or DepositCycleResult()
        transactions = await self.node.list_recent_transactions(self.account, self.scan_limit)

        for tx in transactions:
            if not tx.is_incoming:
                continue
            result.seen += 1
            try:
                if await self.record(tx):
                    result.credited += 1
                result.recorded += 1
            except UnknownDepositAddressError as e:
                logger.error(f"{e} (tx {tx.tx_id})")
                result.unknown_addresses.append(tx.address)
            except (TransientExternalError, OperationalError) as e:
                logger.warning(f"Deposit {tx.tx_id} not recorded: {e}")
                result.errors.append(tx.tx_id)

        return result

    async def record(self, tx: ChainTransaction) -> bool:
        """Upsert one incoming transaction. Returns True if it was credited now."""
        async with get_db(self.session_factory) as session:
            owner = await LedgerRepository(session).get_user_by_deposit_address(tx.address)
            if owner is None:
                raise UnknownDepositAddressError(tx.address)
            user_id, username = owner.id, owner.username

        async with user_balance_lock(username, timeout=self.lock_timeout, operation="deposit"):
            async with get_db(self.session_factory) as session:
                _, credited = await LedgerRepository(session).upsert_deposit(
                    user_id=user_id,
                    address=tx.address,
                    tx_hash=tx.tx_id,
                    amount=tx.amount,
                    confirmations=tx.confirmations,
                    threshold=self.threshold,
                )
        return credited

    async def promote(self, result: Optional[DepositCycleResult] = None) -> DepositCycleResult:
        """Re-query confirmations of deposits below the threshold."""
        result = result or DepositCycleResult()

        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            pending = []
            for deposit in await repo.get_pending_deposits(self.threshold):
                owner = await repo.get_user_by_id(deposit.user_id)
                pending.append((deposit.id, deposit.tx_hash, owner.username))

        for deposit_id, tx_hash, username in pending:
            try:
                confirmations = await self.node.get_transaction(tx_hash)
            except TransientExternalError as e:
                logger.warning(f"Could not check confirmations of {tx_hash}: {e}")
                result.errors.append(tx_hash)
                continue

            try:
                async with user_balance_lock(
                    username, timeout=self.lock_timeout, operation="deposit"
                ):
                    async with get_db(self.session_factory) as session:
                        credited = await LedgerRepository(session).update_confirmations(
                            deposit_id, confirmations, self.threshold
                        )
            except (TransientExternalError, OperationalError) as e:
                logger.warning(f"Confirmations of {tx_hash} not updated: {e}")
                result.errors.append(tx_hash)
                continue

            result.checked += 1
            if credited:
                result.credited += 1

        return result


class CompletedDepositNotifier:
    """Sends "Deposit completed!" for every credited deposit in the queue."""

    def __init__(
        self,
        notifier: Notifier,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        retry_delay: float = 2.0,
    ):
        self.notifier = notifier
        self.session_factory = session_factory
        self.retry_delay = retry_delay

    async def run(self) -> NotificationCycleResult:
        """Notify queued deposits. Undelivered entries stay queued."""
        result = NotificationCycleResult()

        async with get_db(self.session_factory) as session:
            entries = [
                (confirmation.id, user.username, Decimal(deposit.amount), Decimal(user.balance))
                for confirmation, deposit, user in await LedgerRepository(
                    session
                ).get_completed_confirmations()
            ]

        for confirmation_id, username, amount, balance in entries:
            try:
                outcome = await self.notifier.notify_deposit_completed(username, amount, balance)
            except TransientExternalError as e:
                logger.warning(f"Deposit notification to {username} failed: {e}")
                outcome = None

            if outcome == SendOutcome.SENT:
                async with get_db(self.session_factory) as session:
                    await LedgerRepository(session).delete_completed_confirmation(confirmation_id)
                result.sent += 1
            else:
                result.pending += 1
                await asyncio.sleep(self.retry_delay)

        if entries:
            logger.info(f"Deposit notifications: {result.sent} sent, {result.pending} pending")
        return result
