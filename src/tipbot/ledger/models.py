"""SQLAlchemy models for the ledger."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# LBC has 8 decimal places
Amount = Numeric(20, 8)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class MessageKind(str, Enum):
    """Kind of inbound Reddit message."""

    DIRECT = "direct"      # Private message (t4)
    MENTION = "mention"    # Comment reply or username mention (t1)


class WithdrawalAttemptStatus(str, Enum):
    """Status of a withdrawal attempt."""

    PENDING = "pending"          # Recorded, send not yet answered
    COMPLETED = "completed"      # Node returned a txid, withdrawal recorded
    FAILED = "failed"            # Node refused, or never saw the transfer
    AMBIGUOUS = "ambiguous"      # Send timed out, outcome unknown


class User(Base):
    """Reddit user with an LBC balance."""

    __tablename__ = "users"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"), nullable=False)
    deposit_address: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# Usernames are unique regardless of case
Index("uq_users_username_lower", func.lower(User.username), unique=True)


class Message(Base):
    """Audit row for an inbound message that had a financial effect.

    The external_id (Reddit fullname) is unique; its presence means the
    message was already acted upon.
    """

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    author_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    kind: Mapped[MessageKind] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    reddit_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    parent_external_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    subreddit: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    context: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Transfer(Base):
    """Tip or gild moving LBC from one user to another.

    For gilds the recipient is the gilded author; the LBC itself is credited
    to the gild sink account.
    """

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("messages.id"), nullable=False)
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    recipient_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    parsed_amount: Mapped[str] = mapped_column(String(64), nullable=False)
    is_gild: Mapped[bool] = mapped_column(default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Deposit(Base):
    """Incoming chain transaction to a user's deposit address."""

    __tablename__ = "deposits"
    __table_args__ = (UniqueConstraint("user_id", "tx_hash", name="uq_deposits_user_tx"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    confirmations: Mapped[int] = mapped_column(default=0, nullable=False)
    credited_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


    @property
    def is_credited(self) -> bool:
        return self.credited_at is not None


class CompletedDepositConfirmation(Base):
    """Credited deposit waiting for its "deposit completed" message."""

    __tablename__ = "completed_deposit_confirmations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    deposit_id: Mapped[int] = mapped_column(
        ForeignKey("deposits.id"), unique=True, nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class WithdrawalAttempt(Base):
    """One try at sending LBC off-chain to a user-supplied address.

    Written and committed before the node is called, so an ambiguous send
    can be reconciled against the node later using the key, which is passed
    to the node as the transaction comment.
    """

    __tablename__ = "withdrawal_attempts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    message_external_id: Mapped[str] = mapped_column(String(32), nullable=False)
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    status: Mapped[WithdrawalAttemptStatus] = mapped_column(
        String(20), default=WithdrawalAttemptStatus.PENDING, nullable=False
    )
    tx_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_unresolved(self) -> bool:
        return self.status in (
            WithdrawalAttemptStatus.PENDING,
            WithdrawalAttemptStatus.AMBIGUOUS,
        )


class Withdrawal(Base):
    """Completed transfer off the platform."""

    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    attempt_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("withdrawal_attempts.id"), nullable=True
    )
    tx_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
