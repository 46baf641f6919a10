"""Ledger module for user balances and message/transfer tracking."""

from tipbot.ledger.models import (
    CompletedDepositConfirmation,
    Deposit,
    Message,
    MessageKind,
    Transfer,
    User,
    Withdrawal,
    WithdrawalAttempt,
    WithdrawalAttemptStatus,
)
from tipbot.ledger.database import get_db, init_db
from tipbot.ledger.repository import LedgerAudit, LedgerRepository

__all__ = [
    # Models
    "User",
    "Message",
    "Transfer",
    "Deposit",
    "CompletedDepositConfirmation",
    "Withdrawal",
    "WithdrawalAttempt",
    # Enums
    "MessageKind",
    "WithdrawalAttemptStatus",
    # Database
    "get_db",
    "init_db",
    "LedgerRepository",
    "LedgerAudit",
]
