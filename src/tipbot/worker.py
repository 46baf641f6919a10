"""Worker process: runs the inbox cycle and the deposit cycle.

Usage:
    python -m tipbot.worker [bot|deposits|all] [--once]
"""

import argparse
import asyncio
import logging
import signal
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tipbot.chain.base import ChainNode
from tipbot.chain.factory import get_chain_node
from tipbot.config import Settings, get_settings
from tipbot.errors import TransientExternalError
from tipbot.ledger.database import close_db, init_db
from tipbot.notifications.notifier import Notifier
from tipbot.rates import RateConverter
from tipbot.reddit.base import InboxSource, NotificationSink
from tipbot.reddit.client import RedditClient
from tipbot.reddit.session import RedditSession
from tipbot.services.deposits import CompletedDepositNotifier, DepositTracker
from tipbot.services.dispatcher import CommandDispatcher, DispatchResult
from tipbot.services.transfers import TransferEngine
from tipbot.services.withdrawals import WithdrawalEngine

logger = logging.getLogger(__name__)

MODES = ("bot", "deposits", "all")


def create_reddit_client(settings: Settings) -> RedditClient:
    session = RedditSession(
        client_id=settings.reddit_client_id,
        client_secret=settings.reddit_client_secret,
        username=settings.reddit_username,
        password=settings.reddit_password,
        user_agent=settings.reddit_user_agent,
        max_age=timedelta(minutes=settings.token_max_age_minutes),
        timeout=settings.http_timeout,
    )
    return RedditClient(session, timeout=settings.http_timeout)


class Application:
    """Wires the services together and schedules the cycles."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        inbox: Optional[InboxSource] = None,
        sink: Optional[NotificationSink] = None,
        node: Optional[ChainNode] = None,
        rates: Optional[RateConverter] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.settings = settings or get_settings()
        if inbox is None or sink is None:
            client = create_reddit_client(self.settings)
            inbox = inbox or client
            sink = sink or client
        self.inbox = inbox
        self.node = node or get_chain_node(self.settings)
        self.rates = rates or RateConverter(
            self.settings.rate_url, timeout=self.settings.http_timeout
        )
        self.session_factory = session_factory

        self.notifier = Notifier(
            sink,
            how_to_use_url=self.settings.how_to_use_url,
            max_attempts=self.settings.notification_max_attempts,
            rate_limit_delay=self.settings.rate_limit_delay,
        )
        self.transfers = TransferEngine(
            self.inbox,
            self.notifier,
            self.rates,
            session_factory=session_factory,
            gild_price=self.settings.gild_price,
            gild_sink_username=self.settings.gild_sink_username,
            lock_timeout=self.settings.lock_timeout,
        )
        self.withdrawals = WithdrawalEngine(
            self.node,
            self.notifier,
            session_factory=session_factory,
            account=self.settings.lbrycrd_account,
            reconcile_grace=self.settings.withdrawal_reconcile_grace,
            scan_limit=self.settings.transaction_scan_limit,
            lock_timeout=self.settings.lock_timeout,
        )
        self.dispatcher = CommandDispatcher(
            self.inbox,
            self.notifier,
            self.transfers,
            self.withdrawals,
            self.node,
            session_factory=session_factory,
            bot_name=self.settings.bot_name,
            fee=self.settings.lbrycrd_txfee,
            account=self.settings.lbrycrd_account,
            lock_timeout=self.settings.lock_timeout,
        )
        self.deposits = DepositTracker(
            self.node,
            session_factory=session_factory,
            account=self.settings.lbrycrd_account,
            threshold=self.settings.confirmation_threshold,
            scan_limit=self.settings.transaction_scan_limit,
            lock_timeout=self.settings.lock_timeout,
        )
        self.completed_deposits = CompletedDepositNotifier(
            self.notifier,
            session_factory=session_factory,
            retry_delay=self.settings.notification_retry_delay,
        )
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._shutdown_event = asyncio.Event()

    async def run_bot_cycle(self) -> list[DispatchResult]:
        """Send queued completed-deposit notifications, then process one inbox batch."""
        await self.completed_deposits.run()
        try:
            return await self.dispatcher.process_batch(self.settings.inbox_limit)
        except TransientExternalError as e:
            logger.warning(f"Inbox cycle skipped: {e}")
            return []

    async def run_deposit_cycle(self, notify: bool = True) -> None:
        """Track deposits, then send completed-deposit notifications.

        With notify=False the queue is left to the inbox cycle.
        """
        try:
            await self.deposits.run()
        except TransientExternalError as e:
            logger.warning(f"Deposit tracking skipped: {e}")
        if notify:
            await self.completed_deposits.run()

    async def reconcile(self) -> None:
        """Resolve withdrawals left unresolved by an earlier run."""
        try:
            await self.withdrawals.reconcile_all()
        except TransientExternalError as e:
            logger.warning(f"Withdrawal reconciliation deferred: {e}")

    def schedule(self, mode: str) -> AsyncIOScheduler:
        scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone="UTC",
        )
        if mode in ("bot", "all"):
            scheduler.add_job(
                self.run_bot_cycle,
                trigger=IntervalTrigger(seconds=self.settings.bot_interval),
                id="inbox_cycle",
                name="Process Reddit inbox",
            )
        if mode in ("deposits", "all"):
            scheduler.add_job(
                self.run_deposit_cycle,
                trigger=IntervalTrigger(seconds=self.settings.deposit_interval),
                id="deposit_cycle",
                name="Track deposits",
                kwargs={"notify": mode == "deposits"},
            )
        return scheduler

    async def start(self, mode: str = "all", once: bool = False) -> None:
        logger.info("Starting tip bot...")
        logger.info(f"Settings: {self.settings.get_safe_dict()}")

        await init_db()
        await self.reconcile()

        if once:
            if mode in ("deposits", "all"):
                await self.run_deposit_cycle(notify=mode == "deposits")
            if mode in ("bot", "all"):
                await self.run_bot_cycle()
            await self._cleanup()
            return

        # First inbox run right away; the interval trigger takes over after
        if mode in ("bot", "all"):
            await self.run_bot_cycle()

        self.scheduler = self.schedule(mode)
        self.scheduler.start()
        logger.info(f"Scheduler started ({mode})")

        await self._shutdown_event.wait()
        await self._cleanup()

    async def _cleanup(self) -> None:
        logger.info("Cleaning up...")
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self) -> None:
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LBRY tip bot for Reddit")
    parser.add_argument(
        "mode", nargs="?", default="all", choices=MODES, help="Which cycle(s) to run"
    )
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application(settings)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start(args.mode, once=args.once))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
