#!/usr/bin/env python3
"""Ledger Reconciliation Script.

Resolves withdrawal attempts whose outcome was never observed, then
rebuilds every user's balance from deposits, transfers and withdrawals and
compares it with the stored balance.

Usage:
    python scripts/reconcile.py [--user NAME] [--skip-withdrawals]

Options:
    --user              Only audit one user
    --skip-withdrawals  Do not contact the node; audit only
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

from tipbot.chain.factory import get_chain_node
from tipbot.config import get_settings
from tipbot.errors import TransientExternalError
from tipbot.ledger.database import close_db, get_db, init_db
from tipbot.ledger.repository import LedgerAudit, LedgerRepository
from tipbot.notifications.notifier import Notifier
from tipbot.services.withdrawals import WithdrawalEngine
from tipbot.worker import create_reddit_client

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def reconcile_withdrawals() -> None:
    settings = get_settings()
    notifier = Notifier(create_reddit_client(settings), how_to_use_url=settings.how_to_use_url)
    engine = WithdrawalEngine(
        get_chain_node(settings),
        notifier,
        account=settings.lbrycrd_account,
        reconcile_grace=settings.withdrawal_reconcile_grace,
        scan_limit=settings.transaction_scan_limit,
        lock_timeout=settings.lock_timeout,
    )
    try:
        result = await engine.reconcile_all()
    except TransientExternalError as e:
        logger.error(f"Node unavailable, withdrawals not reconciled: {e}")
        return

    for attempt in result.completed:
        print(
            f"  completed  {attempt.key}  {attempt.amount} LBC -> {attempt.address}  "
            f"{attempt.tx_id}"
        )
    for attempt in result.failed:
        print(f"  failed     {attempt.key}  {attempt.amount} LBC -> {attempt.address}")
    for attempt in result.pending:
        print(f"  unresolved {attempt.key}  {attempt.amount} LBC -> {attempt.address}")


async def audit(username: str = None) -> list[LedgerAudit]:
    settings = get_settings()
    audits = []
    async with get_db() as session:
        repo = LedgerRepository(session)
        if username:
            user = await repo.get_user(username)
            if user is None:
                logger.error(f"User {username} not found")
                return []
            users = [user]
        else:
            users = await repo.get_all_users(limit=100000)

        for user in users:
            audits.append(await repo.audit_user(user.id, gild_sink=settings.gild_sink_username))
    return audits


async def main():
    parser = argparse.ArgumentParser(description="Ledger Reconciliation")
    parser.add_argument("--user", type=str, help="Only audit this user")
    parser.add_argument(
        "--skip-withdrawals", action="store_true", help="Do not reconcile withdrawals"
    )
    args = parser.parse_args()

    await init_db()

    if not args.skip_withdrawals:
        print("\n=== Withdrawal attempts ===")
        await reconcile_withdrawals()

    print("\n=== Balance audit ===")
    audits = await audit(args.user)
    mismatches = [a for a in audits if not a.consistent]
    for a in mismatches:
        print(
            f"  {a.username}: stored {a.actual}, expected {a.expected} "
            f"(deposits {a.deposits}, sent {a.sent}, received {a.received}, "
            f"gilds {a.gild_income}, withdrawn {a.withdrawn})"
        )
    print(f"\n{len(audits)} user(s) audited, {len(mismatches)} mismatch(es)")

    await close_db()
    if mismatches:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
