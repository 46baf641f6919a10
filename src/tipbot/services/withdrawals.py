"""Withdrawals to external LBC addresses.

Each withdrawal is first written down as a WithdrawalAttempt with a random
key. The key travels to the node as the sendfrom comment, so a send whose
outcome was never observed can later be found in the wallet history instead
of being sent a second time.

Flow for one withdraw command:
1. Reconcile the user's unresolved attempts against the node.
2. Commit a new pending attempt.
3. In one unit: lock user, debit, sendfrom, record Withdrawal + Message,
   mark the attempt completed.
4. Reply with the transaction id.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tipbot.chain.base import ChainNode, ChainTransaction
from tipbot.commands import WithdrawCommand
from tipbot.errors import (
    AmbiguousTransferError,
    CommandValidationError,
    InsufficientFundsError,
    PendingWithdrawalError,
    RejectionReason,
    TransientExternalError,
)
from tipbot.ledger.database import get_db
from tipbot.ledger.models import (
    MessageKind,
    WithdrawalAttempt,
    WithdrawalAttemptStatus,
    as_utc,
    utcnow,
)
from tipbot.ledger.repository import LedgerRepository
from tipbot.notifications.notifier import Notifier
from tipbot.reddit.base import InboundMessage, SendOutcome
from tipbot.utils.locks import user_balance_lock

logger = logging.getLogger(__name__)


class WithdrawalStatus(str, Enum):
    COMPLETED = "completed"
    RECONCILED = "reconciled"        # Completed by an earlier, ambiguous send
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DUPLICATE = "duplicate"


@dataclass
class WithdrawalResult:
    status: WithdrawalStatus
    tx_id: Optional[str] = None
    amount: Optional[Decimal] = None
    balance: Optional[Decimal] = None


@dataclass
class ReconcileResult:
    """Outcome of matching unresolved attempts against the wallet history."""

    completed: list[WithdrawalAttempt] = field(default_factory=list)
    failed: list[WithdrawalAttempt] = field(default_factory=list)
    pending: list[WithdrawalAttempt] = field(default_factory=list)


class WithdrawalEngine:
    """Couples balance debits to irreversible sends."""

    def __init__(
        self,
        node: ChainNode,
        notifier: Notifier,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        account: str = "tips",
        reconcile_grace: int = 600,
        scan_limit: int = 1000,
        lock_timeout: float = 30.0,
    ):
        self.node = node
        self.notifier = notifier
        self.session_factory = session_factory
        self.account = account
        self.reconcile_grace = timedelta(seconds=reconcile_grace)
        self.scan_limit = scan_limit
        self.lock_timeout = lock_timeout

    async def withdraw(self, message: InboundMessage, command: WithdrawCommand) -> WithdrawalResult:
        """Withdraw for the author of a direct message.

        Raises:
            CommandValidationError: destination is the user's own deposit address
            PendingWithdrawalError: an earlier attempt is still unresolved
            AmbiguousTransferError: the send timed out; resolved by reconciliation
            TransientExternalError: node or Reddit failure; nothing applied
        """
        async with user_balance_lock(
            message.author, timeout=self.lock_timeout, operation="withdraw"
        ):
            reconciled = await self.reconcile_user(message.author, message)
            for attempt in reconciled.completed:
                if attempt.message_external_id == message.fullname:
                    logger.info(f"Withdrawal {message.fullname} was already sent: {attempt.tx_id}")
                    await self._reply(message, attempt.address, attempt.amount, attempt.tx_id)
                    return WithdrawalResult(
                        WithdrawalStatus.RECONCILED, tx_id=attempt.tx_id, amount=attempt.amount
                    )
            if reconciled.pending:
                raise PendingWithdrawalError(
                    f"{len(reconciled.pending)} withdrawal(s) of {message.author} still unresolved"
                )

            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                if await repo.message_exists(message.fullname):
                    return WithdrawalResult(WithdrawalStatus.DUPLICATE)

                user = await repo.get_or_create_user(message.author)
                if user.deposit_address and user.deposit_address == command.address:
                    raise CommandValidationError(
                        RejectionReason.OWN_DEPOSIT_ADDRESS,
                        f"{message.author} tried to withdraw to own deposit address",
                        amount=command.amount,
                        address=command.address,
                    )

                balance = await repo.get_balance(user.id)
                if balance < command.amount:
                    insufficient = WithdrawalResult(
                        WithdrawalStatus.INSUFFICIENT_FUNDS, amount=command.amount, balance=balance
                    )
                else:
                    insufficient = None
                    attempt = await repo.create_withdrawal_attempt(
                        user.id, message.fullname, command.address, command.amount
                    )
                    attempt_id, attempt_key = attempt.id, attempt.key

            if insufficient is not None:
                await self.notifier.notify_withdraw_insufficient_funds(
                    message.author, command.amount, insufficient.balance
                )
                return insufficient

            tx_id = await self._send(message, command, attempt_id, attempt_key)

        logger.info(
            f"Withdrawal {message.fullname}: {command.amount} LBC to {command.address} ({tx_id})"
        )
        await self._reply(message, command.address, command.amount, tx_id)
        return WithdrawalResult(WithdrawalStatus.COMPLETED, tx_id=tx_id, amount=command.amount)

    async def _send(
        self,
        message: InboundMessage,
        command: WithdrawCommand,
        attempt_id: int,
        attempt_key: str,
    ) -> str:
        """The debit-and-send unit. Returns the transaction id."""
        tx_id = None
        try:
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                user = await repo.get_user(message.author)
                await repo.lock_users(user.id)
                await repo.debit_balance(user.id, command.amount)

                tx_id = await self.node.send(
                    self.account, command.address, command.amount, comment=attempt_key
                )

                await repo.record_withdrawal(
                    user.id, tx_id, command.address, command.amount, attempt_id=attempt_id
                )
                await repo.record_message(user.id, message)
                await repo.resolve_attempt(
                    attempt_id, WithdrawalAttemptStatus.COMPLETED, tx_id=tx_id
                )
        except AmbiguousTransferError as e:
            await self._mark(attempt_id, WithdrawalAttemptStatus.AMBIGUOUS, str(e))
            e.attempt_key = attempt_key
            raise
        except Exception as e:
            # A failure after sendfrom returned cannot undo the transfer
            status = (
                WithdrawalAttemptStatus.AMBIGUOUS if tx_id else WithdrawalAttemptStatus.FAILED
            )
            await self._mark(attempt_id, status, f"{e.__class__.__name__}: {e}", tx_id=tx_id)
            logger.error(f"Withdrawal {message.fullname} rolled back ({status.value}): {e}")
            raise
        return tx_id

    async def _mark(
        self,
        attempt_id: int,
        status: WithdrawalAttemptStatus,
        error_message: Optional[str],
        tx_id: Optional[str] = None,
    ) -> None:
        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).resolve_attempt(
                attempt_id, status, tx_id=tx_id, error_message=error_message
            )

    async def _reply(
        self, message: InboundMessage, address: str, amount: Decimal, tx_id: str
    ) -> None:
        """Confirmation reply; the withdrawal is committed whatever happens here."""
        try:
            outcome = await self.notifier.reply_withdrawal(message.fullname, address, amount, tx_id)
            if outcome != SendOutcome.SENT:
                logger.error(
                    f"Withdrawal reply to {message.fullname} not delivered: {outcome.value}"
                )
        except TransientExternalError as e:
            logger.error(f"Withdrawal reply to {message.fullname} failed: {e}")

    # Reconciliation
    async def reconcile_user(
        self, username: str, message: Optional[InboundMessage] = None
    ) -> ReconcileResult:
        """Resolve a user's unresolved attempts. Call with the user's lock held."""
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            user = await repo.get_user(username)
            attempts = await repo.get_unresolved_attempts(user.id) if user else []

        if not attempts:
            return ReconcileResult()
        return await self._reconcile(attempts, message)

    async def reconcile_all(self) -> ReconcileResult:
        """Resolve every unresolved attempt; run at startup."""
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            attempts = await repo.get_unresolved_attempts()
            usernames = {}
            for attempt in attempts:
                if attempt.user_id not in usernames:
                    owner = await repo.get_user_by_id(attempt.user_id)
                    usernames[attempt.user_id] = owner.username

        if not attempts:
            return ReconcileResult()

        async with user_balance_lock(
            *usernames.values(), timeout=self.lock_timeout, operation="reconcile"
        ):
            result = await self._reconcile(attempts)

        logger.info(
            f"Withdrawal reconciliation: {len(result.completed)} completed, "
            f"{len(result.failed)} failed, {len(result.pending)} pending"
        )
        return result

    async def _reconcile(
        self,
        attempts: list[WithdrawalAttempt],
        message: Optional[InboundMessage] = None,
    ) -> ReconcileResult:
        transactions = await self.node.list_recent_transactions(self.account, self.scan_limit)
        sent = {tx.comment: tx for tx in transactions if tx.comment and not tx.is_incoming}

        result = ReconcileResult()
        now = utcnow()
        for attempt in attempts:
            tx = sent.get(attempt.key)
            if tx is not None:
                if await self._complete_attempt(attempt, tx, message):
                    result.completed.append(attempt)
                else:
                    result.pending.append(attempt)
            elif now - as_utc(attempt.created_at) > self.reconcile_grace:
                logger.warning(f"Withdrawal attempt {attempt.key} never reached the node")
                await self._mark(
                    attempt.id, WithdrawalAttemptStatus.FAILED, "not found in wallet history"
                )
                attempt.status = WithdrawalAttemptStatus.FAILED.value
                result.failed.append(attempt)
            else:
                result.pending.append(attempt)
        return result

    async def _complete_attempt(
        self,
        attempt: WithdrawalAttempt,
        tx: ChainTransaction,
        message: Optional[InboundMessage] = None,
    ) -> bool:
        """Apply a send found on the node to the ledger.

        Returns False when the balance no longer covers it; the attempt then
        stays unresolved for an operator.
        """
        try:
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                current = await repo.get_attempt(attempt.id)
                if not current.is_unresolved:
                    return current.status == WithdrawalAttemptStatus.COMPLETED.value

                user = (await repo.lock_users(attempt.user_id))[attempt.user_id]
                await repo.debit_balance(user.id, attempt.amount)
                await repo.record_withdrawal(
                    user.id, tx.tx_id, attempt.address, attempt.amount, attempt_id=attempt.id
                )
                if not await repo.message_exists(attempt.message_external_id):
                    if message is None or message.fullname != attempt.message_external_id:
                        message = InboundMessage(
                            kind=MessageKind.DIRECT,
                            fullname=attempt.message_external_id,
                            author=user.username,
                            body=f"withdraw {attempt.amount} {attempt.address}",
                        )
                    await repo.record_message(user.id, message)
                await repo.resolve_attempt(
                    attempt.id, WithdrawalAttemptStatus.COMPLETED, tx_id=tx.tx_id
                )
        except InsufficientFundsError as e:
            logger.error(
                f"Withdrawal attempt {attempt.key} was sent ({tx.tx_id}) but the balance "
                f"no longer covers it: {e}"
            )
            await self._mark(
                attempt.id,
                WithdrawalAttemptStatus.AMBIGUOUS,
                f"sent as {tx.tx_id}; balance short",
                tx_id=tx.tx_id,
            )
            return False

        attempt.status = WithdrawalAttemptStatus.COMPLETED.value
        attempt.tx_id = tx.tx_id
        logger.info(f"Reconciled withdrawal attempt {attempt.key} as {tx.tx_id}")
        return True
