"""Tips and gilds between Reddit users.

A tip moves LBC from the author of a mention to the author of the parent
comment. A gild charges the author the configured gild price, credits it to
the gild sink account and awards Reddit gold to the parent comment.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tipbot.commands import Currency, TipCommand
from tipbot.errors import (
    CommandValidationError,
    InsufficientFundsError,
    NotificationFailedError,
    RejectionReason,
    TransientExternalError,
)
from tipbot.ledger.database import get_db
from tipbot.ledger.repository import LedgerRepository
from tipbot.notifications.notifier import Notifier
from tipbot.rates import USD_QUANT, RateConverter, lbc_to_usd, usd_to_lbc
from tipbot.reddit.base import InboundMessage, InboxSource, SendOutcome
from tipbot.utils.locks import user_balance_lock

logger = logging.getLogger(__name__)


class TransferStatus(str, Enum):
    COMPLETED = "completed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SELF_TRANSFER = "self_transfer"
    NO_RECIPIENT = "no_recipient"
    DUPLICATE = "duplicate"


@dataclass
class TransferResult:
    status: TransferStatus
    recipient: Optional[str] = None
    amount: Optional[Decimal] = None
    amount_usd: Optional[Decimal] = None
    balance: Optional[Decimal] = None
    transfer_id: Optional[int] = None

    @property
    def completed(self) -> bool:
        return self.status == TransferStatus.COMPLETED


class TransferEngine:
    """Executes tips and gilds as single ledger units."""

    def __init__(
        self,
        inbox: InboxSource,
        notifier: Notifier,
        rates: RateConverter,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gild_price: Decimal = Decimal("3.99"),
        gild_sink_username: str = "lbryian",
        lock_timeout: float = 30.0,
    ):
        self.inbox = inbox
        self.notifier = notifier
        self.rates = rates
        self.session_factory = session_factory
        self.gild_price = gild_price
        self.gild_sink_username = gild_sink_username
        self.lock_timeout = lock_timeout

    async def _resolve_recipient(self, message: InboundMessage) -> Optional[str]:
        """Author of the comment the mention replies to."""
        if not message.parent_id:
            return None
        return await self.inbox.get_author(message.parent_id)

    async def tip(self, message: InboundMessage, command: TipCommand) -> TransferResult:
        """Tip the parent comment's author.

        Raises:
            CommandValidationError: the amount converts to zero LBC
            TransientExternalError: rate, Reddit or lock failure, or a
                rate-limited confirmation reply; nothing applied

        A reply Reddit rejects outright (locked or archived thread) does not
        undo the tip.
        """
        recipient = await self._resolve_recipient(message)
        if recipient is None:
            logger.info(f"No recipient for tip {message.fullname}")
            return TransferResult(TransferStatus.NO_RECIPIENT)
        if recipient.lower() == message.author.lower():
            logger.info(f"Ignoring self tip by {message.author} ({message.fullname})")
            return TransferResult(TransferStatus.SELF_TRANSFER, recipient=recipient)

        rate = await self.rates.get_rate()
        if command.currency == Currency.USD:
            amount = usd_to_lbc(command.amount, rate)
            amount_usd = command.amount.quantize(USD_QUANT)
        else:
            amount = command.amount
            amount_usd = lbc_to_usd(amount, rate)

        if amount <= 0:
            raise CommandValidationError(
                RejectionReason.INVALID_TIP_AMOUNT,
                f"Tip {command.parsed_amount} is worth no LBC",
            )

        async def confirm() -> None:
            # Single attempt: the unit holds the database write lock
            outcome = await self.notifier.reply_tip(
                message.fullname, recipient, amount, amount_usd, attempts=1
            )
            if outcome == SendOutcome.RATE_LIMITED:
                raise NotificationFailedError(f"Tip reply to {message.fullname}: {outcome.value}")
            if outcome == SendOutcome.INVALID:
                logger.error(f"Tip reply to {message.fullname} not delivered: {outcome.value}")

        result = await self._transfer(
            message,
            recipient,
            credit_to=recipient,
            amount=amount,
            amount_usd=amount_usd,
            parsed_amount=command.parsed_amount,
            is_gild=False,
            before_commit=confirm,
        )

        if result.status == TransferStatus.INSUFFICIENT_FUNDS:
            await self.notifier.notify_tip_insufficient_funds(
                message.author, recipient, amount, amount_usd, result.balance
            )
        elif result.completed:
            logger.info(
                f"Tip {message.fullname}: {message.author} -> {recipient} "
                f"{amount} LBC (${amount_usd})"
            )
        return result

    async def gild(self, message: InboundMessage) -> TransferResult:
        """Gild the parent comment, paid from the author's balance.

        The award is issued inside the ledger unit; a failed award rolls the
        charge back. The confirmation reply goes out after commit.
        """
        recipient = await self._resolve_recipient(message)
        if recipient is None:
            logger.info(f"No recipient for gild {message.fullname}")
            return TransferResult(TransferStatus.NO_RECIPIENT)
        if recipient.lower() == message.author.lower():
            logger.info(f"Ignoring self gild by {message.author} ({message.fullname})")
            return TransferResult(TransferStatus.SELF_TRANSFER, recipient=recipient)

        rate = await self.rates.get_rate()
        amount = usd_to_lbc(self.gild_price, rate)
        amount_usd = self.gild_price.quantize(USD_QUANT)

        async def award() -> None:
            await self.inbox.award(message.parent_id)

        result = await self._transfer(
            message,
            recipient,
            credit_to=self.gild_sink_username,
            amount=amount,
            amount_usd=amount_usd,
            parsed_amount=f"${amount_usd:.2f}",
            is_gild=True,
            before_commit=award,
        )

        if result.status == TransferStatus.INSUFFICIENT_FUNDS:
            await self.notifier.notify_gild_insufficient_funds(
                message.author, recipient, amount, amount_usd, result.balance
            )
        elif result.completed:
            logger.info(
                f"Gild {message.fullname}: {message.author} gilded {recipient} "
                f"for {amount} LBC (${amount_usd})"
            )
            try:
                outcome = await self.notifier.reply_gild(
                    message.fullname, message.author, recipient, amount, amount_usd
                )
                if outcome != SendOutcome.SENT:
                    logger.error(f"Gild reply to {message.fullname} not delivered: {outcome.value}")
            except TransientExternalError as e:
                logger.error(f"Gild reply to {message.fullname} failed: {e}")
        return result

    async def _transfer(
        self,
        message: InboundMessage,
        recipient: str,
        credit_to: str,
        amount: Decimal,
        amount_usd: Decimal,
        parsed_amount: str,
        is_gild: bool,
        before_commit: Callable[[], Awaitable[None]],
    ) -> TransferResult:
        """Debit the author, credit credit_to and record the transfer.

        before_commit runs last inside the unit; if it raises, nothing is
        applied.
        """
        async with user_balance_lock(
            message.author,
            recipient,
            credit_to,
            timeout=self.lock_timeout,
            operation="gild" if is_gild else "tip",
        ):
            try:
                async with get_db(self.session_factory) as session:
                    repo = LedgerRepository(session)
                    if await repo.message_exists(message.fullname):
                        return TransferResult(TransferStatus.DUPLICATE)

                    sender = await repo.get_or_create_user(message.author)
                    target = await repo.get_or_create_user(recipient)
                    beneficiary = (
                        target if credit_to == recipient
                        else await repo.get_or_create_user(credit_to)
                    )
                    await repo.lock_users(sender.id, target.id, beneficiary.id)

                    await repo.debit_balance(sender.id, amount)
                    await repo.credit_balance(beneficiary.id, amount)

                    record = await repo.record_message(sender.id, message)
                    transfer = await repo.record_transfer(
                        message_id=record.id,
                        sender_id=sender.id,
                        recipient_id=target.id,
                        amount=amount,
                        amount_usd=amount_usd,
                        parsed_amount=parsed_amount,
                        is_gild=is_gild,
                    )
                    await before_commit()
            except InsufficientFundsError as e:
                logger.info(f"{message.author} cannot cover {amount} LBC ({message.fullname})")
                return TransferResult(
                    TransferStatus.INSUFFICIENT_FUNDS,
                    recipient=recipient,
                    amount=amount,
                    amount_usd=amount_usd,
                    balance=e.balance,
                )

        return TransferResult(
            TransferStatus.COMPLETED,
            recipient=recipient,
            amount=amount,
            amount_usd=amount_usd,
            transfer_id=transfer.id,
        )
