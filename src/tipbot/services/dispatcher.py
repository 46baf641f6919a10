"""Inbox command dispatch.

Every unread message goes through CommandDispatcher.dispatch exactly once
per delivery:

- a message already recorded in the ledger is acknowledged and skipped;
- handled commands, rejections and non-commands are acknowledged;
- transient and unexpected failures leave the message unread for the next cycle;
- internal invariant violations propagate and stop the batch.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tipbot.chain.base import ChainNode
from tipbot.commands import (
    BalanceCommand,
    DepositCommand,
    GildCommand,
    TipCommand,
    WithdrawCommand,
    parse_direct_command,
    parse_mention,
)
from tipbot.errors import (
    AmbiguousTransferError,
    CommandValidationError,
    InsufficientFundsError,
    InternalInvariantError,
    NotificationFailedError,
    TransientExternalError,
)
from tipbot.ledger.database import get_db
from tipbot.ledger.models import MessageKind
from tipbot.ledger.repository import LedgerRepository
from tipbot.notifications.notifier import Notifier
from tipbot.reddit.base import InboundMessage, InboxSource, SendOutcome
from tipbot.services.transfers import TransferEngine, TransferStatus
from tipbot.services.withdrawals import WithdrawalEngine, WithdrawalStatus
from tipbot.utils.locks import user_balance_lock

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    HANDLED = "handled"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"                      # Not a command, self tip, no recipient
    REJECTED = "rejected"                    # Invalid amount or address
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RETRY = "retry"                          # Left unread for the next cycle


@dataclass
class DispatchResult:
    fullname: str
    outcome: DispatchOutcome
    acknowledged: bool = False
    error: Optional[str] = None


TRANSFER_OUTCOMES = {
    TransferStatus.COMPLETED: DispatchOutcome.HANDLED,
    TransferStatus.INSUFFICIENT_FUNDS: DispatchOutcome.INSUFFICIENT_FUNDS,
    TransferStatus.SELF_TRANSFER: DispatchOutcome.IGNORED,
    TransferStatus.NO_RECIPIENT: DispatchOutcome.IGNORED,
    TransferStatus.DUPLICATE: DispatchOutcome.DUPLICATE,
}

WITHDRAWAL_OUTCOMES = {
    WithdrawalStatus.COMPLETED: DispatchOutcome.HANDLED,
    WithdrawalStatus.RECONCILED: DispatchOutcome.HANDLED,
    WithdrawalStatus.INSUFFICIENT_FUNDS: DispatchOutcome.INSUFFICIENT_FUNDS,
    WithdrawalStatus.DUPLICATE: DispatchOutcome.DUPLICATE,
}


class CommandDispatcher:
    """Routes inbound messages to the ledger engines."""

    def __init__(
        self,
        inbox: InboxSource,
        notifier: Notifier,
        transfers: TransferEngine,
        withdrawals: WithdrawalEngine,
        node: ChainNode,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        bot_name: str = "lbryian",
        fee: Decimal = Decimal("0.00002000"),
        account: str = "tips",
        lock_timeout: float = 30.0,
    ):
        self.inbox = inbox
        self.notifier = notifier
        self.transfers = transfers
        self.withdrawals = withdrawals
        self.node = node
        self.session_factory = session_factory
        self.bot_name = bot_name
        self.fee = fee
        self.account = account
        self.lock_timeout = lock_timeout

    async def process_batch(self, limit: int = 100) -> list[DispatchResult]:
        """Fetch unread messages and dispatch them one at a time, oldest first."""
        messages = await self.inbox.fetch_unread(limit)
        results = []
        for message in messages:
            try:
                results.append(await self.dispatch(message))
            except InternalInvariantError:
                logger.exception(f"Ledger invariant violated processing {message.fullname}")
                raise

        if results:
            counts: dict[str, int] = {}
            for result in results:
                counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
            logger.info(f"Processed {len(results)} message(s): {counts}")
        return results

    async def dispatch(self, message: InboundMessage) -> DispatchResult:
        """Process one inbound message.

        Only InternalInvariantError escapes; any other failure leaves the
        message unread for the next cycle.
        """
        try:
            async with get_db(self.session_factory) as session:
                seen = await LedgerRepository(session).message_exists(message.fullname)
            if seen:
                logger.info(f"Message {message.fullname} already processed")
                return await self._acknowledge(message, DispatchOutcome.DUPLICATE)

            if not message.author:
                return await self._acknowledge(message, DispatchOutcome.IGNORED)

            outcome = await self._route(message)
        except InternalInvariantError:
            raise
        except AmbiguousTransferError as e:
            logger.error(f"Transfer outcome unknown for {message.fullname}: {e}")
            return DispatchResult(message.fullname, DispatchOutcome.RETRY, error=str(e))
        except TransientExternalError as e:
            logger.warning(f"Retrying {message.fullname} next cycle: {e}")
            return DispatchResult(message.fullname, DispatchOutcome.RETRY, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error processing {message.fullname}")
            return DispatchResult(
                message.fullname,
                DispatchOutcome.RETRY,
                error=f"{e.__class__.__name__}: {e}",
            )

        return await self._acknowledge(message, outcome)

    async def _acknowledge(
        self, message: InboundMessage, outcome: DispatchOutcome
    ) -> DispatchResult:
        try:
            await self.inbox.acknowledge(message.fullname)
        except TransientExternalError as e:
            logger.error(f"Could not mark {message.fullname} read: {e}")
            return DispatchResult(message.fullname, outcome, acknowledged=False, error=str(e))
        return DispatchResult(message.fullname, outcome, acknowledged=True)

    async def _route(self, message: InboundMessage) -> DispatchOutcome:
        try:
            if message.kind == MessageKind.DIRECT:
                return await self._handle_direct(message)
            return await self._handle_mention(message)
        except CommandValidationError as e:
            logger.info(f"Rejected {message.fullname} from {message.author}: {e}")
            await self.notifier.notify_rejected(message.author, e)
            return DispatchOutcome.REJECTED
        except InsufficientFundsError as e:
            logger.info(f"Rejected {message.fullname} from {message.author}: {e}")
            return DispatchOutcome.INSUFFICIENT_FUNDS

    async def _handle_direct(self, message: InboundMessage) -> DispatchOutcome:
        command = parse_direct_command(message.body, self.fee)
        if command is None:
            return DispatchOutcome.IGNORED

        if isinstance(command, BalanceCommand):
            return await self._balance(message)
        if isinstance(command, DepositCommand):
            return await self._deposit_address(message)
        if isinstance(command, WithdrawCommand):
            result = await self.withdrawals.withdraw(message, command)
            return WITHDRAWAL_OUTCOMES[result.status]
        return DispatchOutcome.IGNORED

    async def _handle_mention(self, message: InboundMessage) -> DispatchOutcome:
        command = parse_mention(message.body, self.bot_name)
        if command is None:
            return DispatchOutcome.IGNORED

        if isinstance(command, GildCommand):
            result = await self.transfers.gild(message)
        elif isinstance(command, TipCommand):
            result = await self.transfers.tip(message, command)
        else:
            return DispatchOutcome.IGNORED
        return TRANSFER_OUTCOMES[result.status]

    async def _balance(self, message: InboundMessage) -> DispatchOutcome:
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            user = await repo.get_or_create_user(message.author)
            balance = await repo.get_balance(user.id)

        self._check_delivered(
            await self.notifier.reply_balance(message.fullname, balance), message
        )
        return DispatchOutcome.HANDLED

    async def _deposit_address(self, message: InboundMessage) -> DispatchOutcome:
        """Reply with the user's deposit address, allocating one on first use."""
        async with user_balance_lock(
            message.author, timeout=self.lock_timeout, operation="deposit_address"
        ):
            async with get_db(self.session_factory) as session:
                repo = LedgerRepository(session)
                user = await repo.get_or_create_user(message.author)
                address = user.deposit_address
                if not address:
                    address = await self.node.new_address(self.account)
                    await repo.set_deposit_address(user.id, address)
                    logger.info(f"Assigned deposit address {address} to {message.author}")

        self._check_delivered(
            await self.notifier.reply_deposit_address(message.fullname, address), message
        )
        return DispatchOutcome.HANDLED

    def _check_delivered(self, outcome: SendOutcome, message: InboundMessage) -> None:
        """A rate-limited reply is retried next cycle; a rejected one is dropped."""
        if outcome == SendOutcome.RATE_LIMITED:
            raise NotificationFailedError(f"Reply to {message.fullname} rate limited")
