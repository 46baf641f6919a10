"""Ledger services: command dispatch, transfers, withdrawals and deposits."""

from tipbot.services.deposits import CompletedDepositNotifier, DepositTracker
from tipbot.services.dispatcher import CommandDispatcher, DispatchOutcome, DispatchResult
from tipbot.services.transfers import TransferEngine, TransferResult, TransferStatus
from tipbot.services.withdrawals import WithdrawalEngine, WithdrawalResult, WithdrawalStatus

__all__ = [
    "CommandDispatcher",
    "CompletedDepositNotifier",
    "DepositTracker",
    "DispatchOutcome",
    "DispatchResult",
    "TransferEngine",
    "TransferResult",
    "TransferStatus",
    "WithdrawalEngine",
    "WithdrawalResult",
    "WithdrawalStatus",
]
