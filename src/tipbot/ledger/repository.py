"""Repository for ledger operations."""

import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tipbot.errors import InsufficientFundsError, InternalInvariantError
from tipbot.ledger.models import (
    CompletedDepositConfirmation,
    Deposit,
    Message,
    Transfer,
    User,
    Withdrawal,
    WithdrawalAttempt,
    WithdrawalAttemptStatus,
    utcnow,
)

if TYPE_CHECKING:
    from tipbot.reddit.base import InboundMessage

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class LedgerAudit:
    """Expected balance of a user rebuilt from the ledger history."""

    user_id: int
    username: str
    actual: Decimal
    deposits: Decimal
    sent: Decimal
    received: Decimal
    gild_income: Decimal
    withdrawn: Decimal

    @property
    def expected(self) -> Decimal:
        return self.deposits - self.sent + self.received + self.gild_income - self.withdrawn

    @property
    def consistent(self) -> bool:
        return self.expected == self.actual


class LedgerRepository:
    """Repository for all ledger-related database operations.

    Nothing here commits; the caller's unit of work (``get_db``) does.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # User operations
    async def get_user(self, username: str) -> Optional[User]:
        """Get user by username, ignoring case."""
        stmt = select(User).where(func.lower(User.username) == username.lower())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        stmt = select(User).where(User.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_user(self, username: str) -> User:
        """Get existing user or create a new one with a zero balance."""
        user = await self.get_user(username)
        if user is not None:
            return user

        try:
            async with self.session.begin_nested():
                user = User(username=username, balance=ZERO)
                self.session.add(user)
                await self.session.flush()
        except IntegrityError:
            # Another worker created the same user first
            user = await self.get_user(username)
            if user is None:
                raise
        else:
            logger.info(f"Created user {username}")
        return user

    async def lock_users(self, *user_ids: int) -> dict[int, User]:
        """Lock user rows for the rest of the transaction.

        Rows are locked in id order. FOR UPDATE is rendered on PostgreSQL and
        MySQL; SQLite serialises writers itself.
        """
        stmt = (
            select(User)
            .where(User.id.in_(set(user_ids)))
            .order_by(User.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        users = {user.id: user for user in result.scalars().all()}
        missing = set(user_ids) - set(users)
        if missing:
            raise InternalInvariantError(f"Users {sorted(missing)} vanished while locking")
        return users

    async def get_all_users(self, limit: int = 1000, offset: int = 0) -> list[User]:
        stmt = select(User).order_by(User.id).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Balance operations
    async def get_balance(self, user_id: int) -> Decimal:
        """Read the committed-or-pending balance straight from the row."""
        stmt = select(User.balance).where(User.id == user_id)
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        if balance is None:
            raise InternalInvariantError(f"User {user_id} not found")
        return Decimal(balance)

    async def credit_balance(self, user_id: int, amount: Decimal) -> Decimal:
        """Atomically add amount to a user's balance. Returns the new balance."""
        if amount <= 0:
            raise InternalInvariantError(f"Refusing to credit non-positive amount {amount}")

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(balance=func.round(User.balance + amount, 8))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise InternalInvariantError(f"Credit of {amount} to user {user_id} matched no row")
        return await self.get_balance(user_id)

    async def debit_balance(self, user_id: int, amount: Decimal) -> Decimal:
        """Atomically subtract amount from a user's balance.

        Raises InsufficientFundsError before any mutation if the balance does
        not cover the amount. The UPDATE repeats the check in SQL; if it still
        matches nothing the balance changed underneath a held lock, which is
        an invariant violation. Returns the new balance.
        """
        if amount <= 0:
            raise InternalInvariantError(f"Refusing to debit non-positive amount {amount}")

        balance = await self.get_balance(user_id)
        if balance < amount:
            raise InsufficientFundsError(balance, amount)

        stmt = (
            update(User)
            .where(User.id == user_id, func.round(User.balance - amount, 8) >= 0)
            .values(balance=func.round(User.balance - amount, 8))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise InternalInvariantError(
                f"Negative balance guard tripped debiting {amount} from user {user_id}"
            )
        return await self.get_balance(user_id)

    # Deposit address operations
    async def get_user_by_deposit_address(self, address: str) -> Optional[User]:
        """Find user by deposit address."""
        stmt = select(User).where(User.deposit_address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_deposit_address(self, user_id: int, address: str) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(deposit_address=address)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    # Message and transfer operations
    async def message_exists(self, external_id: str) -> bool:
        """Check whether an inbound message was already acted upon."""
        stmt = select(Message.id).where(Message.external_id == external_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def record_message(self, author_id: int, message: "InboundMessage") -> Message:
        """Persist the audit row for an inbound message."""
        record = Message(
            author_id=author_id,
            kind=message.kind.value,
            external_id=message.fullname,
            reddit_id=message.reddit_id,
            parent_external_id=message.parent_id,
            subreddit=message.subreddit,
            body=message.body,
            context=message.context,
            external_created_at=message.created_at,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def record_transfer(
        self,
        message_id: int,
        sender_id: int,
        recipient_id: int,
        amount: Decimal,
        amount_usd: Decimal,
        parsed_amount: str,
        is_gild: bool = False,
    ) -> Transfer:
        transfer = Transfer(
            message_id=message_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            amount=amount,
            amount_usd=amount_usd,
            parsed_amount=parsed_amount,
            is_gild=is_gild,
        )
        self.session.add(transfer)
        await self.session.flush()
        return transfer

    async def count_transfers_for_message(self, external_id: str) -> int:
        stmt = (
            select(func.count(Transfer.id))
            .join(Message, Message.id == Transfer.message_id)
            .where(Message.external_id == external_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # Deposit operations
    async def get_deposit(self, user_id: int, tx_hash: str) -> Optional[Deposit]:
        stmt = select(Deposit).where(Deposit.user_id == user_id, Deposit.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_deposit(
        self,
        user_id: int,
        address: str,
        tx_hash: str,
        amount: Decimal,
        confirmations: int,
        threshold: int,
    ) -> tuple[Deposit, bool]:
        """Insert a deposit or raise its confirmation count.

        Returns the deposit and whether this call credited it.
        """
        deposit = await self.get_deposit(user_id, tx_hash)
        if deposit is None:
            try:
                async with self.session.begin_nested():
                    deposit = Deposit(
                        user_id=user_id,
                        address=address,
                        tx_hash=tx_hash,
                        amount=amount,
                        confirmations=confirmations,
                    )
                    self.session.add(deposit)
                    await self.session.flush()
                logger.info(f"New deposit {tx_hash} of {amount} LBC for user {user_id}")
            except IntegrityError:
                deposit = await self.get_deposit(user_id, tx_hash)
                if deposit is None:
                    raise

        return deposit, await self.update_confirmations(deposit.id, confirmations, threshold)

    async def get_pending_deposits(self, threshold: int) -> list[Deposit]:
        """Deposits still below the confirmation threshold."""
        stmt = select(Deposit).where(Deposit.confirmations < threshold).order_by(Deposit.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_confirmations(
        self, deposit_id: int, confirmations: int, threshold: int
    ) -> bool:
        """Raise a deposit's confirmation count and credit it at the threshold.

        Counts never go down. The owner is credited and a completed-deposit
        confirmation queued exactly once, guarded by credited_at under a row
        lock. Returns True if this call credited the deposit.
        """
        stmt = (
            select(Deposit)
            .where(Deposit.id == deposit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        deposit = result.scalar_one_or_none()
        if deposit is None:
            raise InternalInvariantError(f"Deposit {deposit_id} not found")

        if confirmations > deposit.confirmations:
            deposit.confirmations = confirmations

        credited = False
        if deposit.confirmations >= threshold and deposit.credited_at is None:
            await self.lock_users(deposit.user_id)
            await self.credit_balance(deposit.user_id, deposit.amount)
            deposit.credited_at = utcnow()
            self.session.add(
                CompletedDepositConfirmation(deposit_id=deposit.id, user_id=deposit.user_id)
            )
            credited = True
            logger.info(
                f"Deposit {deposit.tx_hash} confirmed ({deposit.confirmations}); "
                f"credited {deposit.amount} LBC to user {deposit.user_id}"
            )

        await self.session.flush()
        return credited

    async def get_completed_confirmations(
        self,
    ) -> list[tuple[CompletedDepositConfirmation, Deposit, User]]:
        """Queued completed-deposit notifications with their deposit and owner."""
        stmt = (
            select(CompletedDepositConfirmation, Deposit, User)
            .join(Deposit, Deposit.id == CompletedDepositConfirmation.deposit_id)
            .join(User, User.id == CompletedDepositConfirmation.user_id)
            .order_by(CompletedDepositConfirmation.id)
        )
        result = await self.session.execute(stmt)
        return [tuple(row) for row in result.all()]

    async def delete_completed_confirmation(self, confirmation_id: int) -> None:
        stmt = delete(CompletedDepositConfirmation).where(
            CompletedDepositConfirmation.id == confirmation_id
        )
        await self.session.execute(stmt)

    # Withdrawal operations
    async def create_withdrawal_attempt(
        self,
        user_id: int,
        message_external_id: str,
        address: str,
        amount: Decimal,
    ) -> WithdrawalAttempt:
        """Record a withdrawal attempt with a fresh reconciliation key."""
        attempt = WithdrawalAttempt(
            key=f"wd-{secrets.token_hex(16)}",
            user_id=user_id,
            message_external_id=message_external_id,
            address=address,
            amount=amount,
            status=WithdrawalAttemptStatus.PENDING.value,
        )
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def get_unresolved_attempts(
        self, user_id: Optional[int] = None
    ) -> list[WithdrawalAttempt]:
        """Attempts whose send outcome is not yet known."""
        stmt = select(WithdrawalAttempt).where(
            WithdrawalAttempt.status.in_(
                [WithdrawalAttemptStatus.PENDING.value, WithdrawalAttemptStatus.AMBIGUOUS.value]
            )
        )
        if user_id is not None:
            stmt = stmt.where(WithdrawalAttempt.user_id == user_id)
        result = await self.session.execute(stmt.order_by(WithdrawalAttempt.id))
        return list(result.scalars().all())

    async def get_attempt(self, attempt_id: int) -> Optional[WithdrawalAttempt]:
        stmt = select(WithdrawalAttempt).where(WithdrawalAttempt.id == attempt_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def resolve_attempt(
        self,
        attempt_id: int,
        status: WithdrawalAttemptStatus,
        tx_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> WithdrawalAttempt:
        attempt = await self.get_attempt(attempt_id)
        if attempt is None:
            raise InternalInvariantError(f"Withdrawal attempt {attempt_id} not found")

        attempt.status = status.value
        attempt.tx_id = tx_id
        attempt.error_message = error_message
        if status in (WithdrawalAttemptStatus.COMPLETED, WithdrawalAttemptStatus.FAILED):
            attempt.resolved_at = utcnow()
        await self.session.flush()
        return attempt

    async def record_withdrawal(
        self,
        user_id: int,
        tx_id: str,
        address: str,
        amount: Decimal,
        attempt_id: Optional[int] = None,
    ) -> Withdrawal:
        withdrawal = Withdrawal(
            user_id=user_id,
            attempt_id=attempt_id,
            tx_id=tx_id,
            address=address,
            amount=amount,
        )
        self.session.add(withdrawal)
        await self.session.flush()
        return withdrawal

    async def get_user_withdrawals(self, user_id: int) -> list[Withdrawal]:
        stmt = select(Withdrawal).where(Withdrawal.user_id == user_id).order_by(Withdrawal.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Audit
    async def audit_user(self, user_id: int, gild_sink: Optional[str] = None) -> LedgerAudit:
        """Rebuild a user's balance from deposits, transfers and withdrawals.

        Gild payments are credited to the gild sink account rather than to
        the gilded author, so pass the sink username to include them.
        """
        user = await self.get_user_by_id(user_id)
        if user is None:
            raise InternalInvariantError(f"User {user_id} not found")

        async def total(stmt) -> Decimal:
            value = (await self.session.execute(stmt)).scalar_one()
            return Decimal(value or 0).quantize(Decimal("0.00000001"))

        deposits = await total(
            select(func.sum(Deposit.amount)).where(
                Deposit.user_id == user_id, Deposit.credited_at.is_not(None)
            )
        )
        sent = await total(select(func.sum(Transfer.amount)).where(Transfer.sender_id == user_id))
        received = await total(
            select(func.sum(Transfer.amount)).where(
                Transfer.recipient_id == user_id, Transfer.is_gild.is_(False)
            )
        )
        gild_income = ZERO
        if gild_sink and user.username.lower() == gild_sink.lower():
            gild_income = await total(
                select(func.sum(Transfer.amount)).where(Transfer.is_gild.is_(True))
            )
        withdrawn = await total(
            select(func.sum(Withdrawal.amount)).where(Withdrawal.user_id == user_id)
        )

        return LedgerAudit(
            user_id=user.id,
            username=user.username,
            actual=(await self.get_balance(user_id)).quantize(Decimal("0.00000001")),
            deposits=deposits,
            sent=sent,
            received=received,
            gild_income=gild_income,
            withdrawn=withdrawn,
        )
