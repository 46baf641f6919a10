"""Tests for inbox command dispatch."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from tipbot.chain.dryrun import make_address
from tipbot.errors import AmbiguousTransferError, InternalInvariantError, RateUnavailableError
from tipbot.ledger.database import get_db
from tipbot.ledger.repository import LedgerRepository
from tipbot.reddit.base import SendOutcome
from tipbot.services.dispatcher import CommandDispatcher, DispatchOutcome
from tipbot.services.transfers import TransferEngine
from tipbot.services.withdrawals import WithdrawalEngine

from tests.fakes import balance_of, direct, fund, mention

DESTINATION = make_address("destination")


@pytest.fixture
def dispatcher(reddit, notifier, rates, node, session_factory) -> CommandDispatcher:
    reddit.authors["t1_parent"] = "bob"
    transfers = TransferEngine(reddit, notifier, rates, session_factory=session_factory)
    withdrawals = WithdrawalEngine(node, notifier, session_factory=session_factory)
    return CommandDispatcher(
        reddit,
        notifier,
        transfers,
        withdrawals,
        node,
        session_factory=session_factory,
        bot_name="lbryian",
        fee=Decimal("0.00002000"),
    )


async def recorded(session_factory, fullname: str) -> bool:
    async with get_db(session_factory) as session:
        return await LedgerRepository(session).message_exists(fullname)


class TestDirectMessages:
    """Tests for balance, deposit and withdraw."""

    @pytest.mark.asyncio
    async def test_balance(self, dispatcher, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("1.5"))

        result = await dispatcher.dispatch(direct("t4_1", "alice", "balance"))

        assert result.outcome == DispatchOutcome.HANDLED
        assert result.acknowledged
        assert reddit.acknowledged == ["t4_1"]
        assert "Your balance is **1.50000000 LBC**." in reddit.replies[0][1]

    @pytest.mark.asyncio
    async def test_balance_for_new_user(self, dispatcher, reddit, session_factory):
        await dispatcher.dispatch(direct("t4_1", "newcomer", "balance"))

        assert "**0.00000000 LBC**" in reddit.replies[0][1]
        assert await balance_of(session_factory, "newcomer") == Decimal("0")

    @pytest.mark.asyncio
    async def test_rate_limited_balance_reply_is_retried(self, dispatcher, reddit):
        reddit.reply_outcomes = [SendOutcome.RATE_LIMITED, SendOutcome.RATE_LIMITED]

        result = await dispatcher.dispatch(direct("t4_1", "alice", "balance"))

        assert result.outcome == DispatchOutcome.RETRY
        assert not result.acknowledged
        assert reddit.acknowledged == []

    @pytest.mark.asyncio
    async def test_rejected_balance_reply_is_acknowledged(self, dispatcher, reddit):
        reddit.reply_outcomes = [SendOutcome.INVALID]

        result = await dispatcher.dispatch(direct("t4_1", "alice", "balance"))

        assert result.outcome == DispatchOutcome.HANDLED
        assert result.acknowledged

    @pytest.mark.asyncio
    async def test_deposit_address_is_stable(self, dispatcher, node, reddit):
        """Test that a user keeps the first deposit address allocated."""
        await dispatcher.dispatch(direct("t4_1", "alice", "deposit"))
        await dispatcher.dispatch(direct("t4_2", "Alice", "deposit"))

        assert len(node.addresses) == 1
        address = node.addresses[0]
        assert address in reddit.replies[0][1]
        assert address in reddit.replies[1][1]

    @pytest.mark.asyncio
    async def test_withdraw(self, dispatcher, node, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("10"))

        result = await dispatcher.dispatch(direct("t4_w", "alice", f"withdraw 4 {DESTINATION}"))

        assert result.outcome == DispatchOutcome.HANDLED
        assert result.acknowledged
        assert await balance_of(session_factory, "alice") == Decimal("6")
        assert len(node.sends) == 1

    @pytest.mark.asyncio
    async def test_ambiguous_withdraw_left_unread(self, dispatcher, node, reddit, session_factory):
        """Test that a timed out send is retried next cycle and resolved without resending."""
        await fund(session_factory, "alice", Decimal("10"))
        reddit.unread = [direct("t4_w", "alice", f"withdraw 4 {DESTINATION}")]
        node.send_error = AmbiguousTransferError("sendfrom timed out")
        node.broadcast_before_error = True

        [first] = await dispatcher.process_batch()
        assert first.outcome == DispatchOutcome.RETRY
        assert reddit.acknowledged == []

        node.send_error = None
        [second] = await dispatcher.process_batch()

        assert second.outcome == DispatchOutcome.HANDLED
        assert reddit.acknowledged == ["t4_w"]
        assert len(node.sends) == 1
        assert await balance_of(session_factory, "alice") == Decimal("6")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body, subject",
        [
            (f"withdraw abc {DESTINATION}", "Invalid amount for withdrawal"),
            (f"withdraw 0.00001 {DESTINATION}", "Withdrawal amount less than minimum fee"),
            ("withdraw 1 notanaddress", "Invalid address for withdrawal"),
        ],
    )
    async def test_invalid_withdraw(self, dispatcher, node, reddit, body, subject):
        result = await dispatcher.dispatch(direct("t4_w", "alice", body))

        assert result.outcome == DispatchOutcome.REJECTED
        assert result.acknowledged
        assert reddit.sent[0][:2] == ("alice", subject)
        assert node.sends == []

    @pytest.mark.asyncio
    async def test_withdraw_insufficient_funds(self, dispatcher, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("1"))

        result = await dispatcher.dispatch(direct("t4_w", "alice", f"withdraw 4 {DESTINATION}"))

        assert result.outcome == DispatchOutcome.INSUFFICIENT_FUNDS
        assert result.acknowledged
        assert reddit.sent[0][1] == "Insufficient funds for withdrawal"

    @pytest.mark.asyncio
    async def test_unknown_command_ignored(self, dispatcher, reddit, session_factory):
        result = await dispatcher.dispatch(direct("t4_1", "alice", "hello bot"))

        assert result.outcome == DispatchOutcome.IGNORED
        assert result.acknowledged
        assert reddit.replies == []
        assert not await recorded(session_factory, "t4_1")

    @pytest.mark.asyncio
    async def test_missing_author_ignored(self, dispatcher, reddit):
        result = await dispatcher.dispatch(direct("t4_1", "", "balance"))

        assert result.outcome == DispatchOutcome.IGNORED
        assert reddit.replies == []


class TestMentions:
    """Tests for tips and gilds through the dispatcher."""

    @pytest.mark.asyncio
    async def test_tip(self, dispatcher, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("200"))
        reddit.unread = [mention("t1_tip", "alice", "u/lbryian $5")]

        [result] = await dispatcher.process_batch()

        assert result.outcome == DispatchOutcome.HANDLED
        assert result.acknowledged
        assert await balance_of(session_factory, "bob") == Decimal("125")
        assert await recorded(session_factory, "t1_tip")

    @pytest.mark.asyncio
    async def test_gild(self, dispatcher, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("200"))

        result = await dispatcher.dispatch(mention("t1_gild", "alice", "gild u/lbryian"))

        assert result.outcome == DispatchOutcome.HANDLED
        assert reddit.awarded == ["t1_parent"]

    @pytest.mark.asyncio
    async def test_mention_without_command(self, dispatcher, reddit):
        result = await dispatcher.dispatch(mention("t1_x", "alice", "thanks u/lbryian"))

        assert result.outcome == DispatchOutcome.IGNORED
        assert result.acknowledged

    @pytest.mark.asyncio
    async def test_invalid_tip_amount(self, dispatcher, reddit):
        result = await dispatcher.dispatch(mention("t1_x", "alice", "$1.2.3"))

        assert result.outcome == DispatchOutcome.REJECTED
        assert reddit.sent[0][1] == "Invalid amount for send tip"

    @pytest.mark.asyncio
    async def test_rate_limited_rejection_still_acknowledged(self, dispatcher, reddit):
        reddit.send_outcomes = [SendOutcome.RATE_LIMITED, SendOutcome.RATE_LIMITED]

        result = await dispatcher.dispatch(mention("t1_x", "alice", "$1.2.3"))

        assert result.outcome == DispatchOutcome.REJECTED
        assert result.acknowledged

    @pytest.mark.asyncio
    async def test_failed_rejection_message_is_retried(self, dispatcher, reddit):
        reddit.fail_send = True

        result = await dispatcher.dispatch(mention("t1_x", "alice", "$1.2.3"))

        assert result.outcome == DispatchOutcome.RETRY
        assert not result.acknowledged

    @pytest.mark.asyncio
    async def test_self_tip_acknowledged(self, dispatcher, reddit, session_factory):
        reddit.authors["t1_parent"] = "alice"
        await fund(session_factory, "alice", Decimal("200"))

        result = await dispatcher.dispatch(mention("t1_tip", "alice", "$5"))

        assert result.outcome == DispatchOutcome.IGNORED
        assert result.acknowledged
        assert await balance_of(session_factory, "alice") == Decimal("200")

    @pytest.mark.asyncio
    async def test_tip_insufficient_funds(self, dispatcher, reddit, session_factory):
        """Test that an uncovered tip is answered by private message and marked read."""
        await fund(session_factory, "alice", Decimal("1"))

        result = await dispatcher.dispatch(mention("t1_tip", "alice", "$5"))

        assert result.outcome == DispatchOutcome.INSUFFICIENT_FUNDS
        assert result.acknowledged
        assert reddit.acknowledged == ["t1_tip"]
        recipient, subject, text = reddit.sent[0]
        assert (recipient, subject) == ("alice", "Insufficient funds to send tip")
        assert "You tried to tip u/bob 125.00000000 LBC ($5.00)" in text
        assert await balance_of(session_factory, "alice") == Decimal("1")
        assert not await recorded(session_factory, "t1_tip")

    @pytest.mark.asyncio
    async def test_gild_insufficient_funds(self, dispatcher, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("1"))

        result = await dispatcher.dispatch(mention("t1_gild", "alice", "gild u/lbryian"))

        assert result.outcome == DispatchOutcome.INSUFFICIENT_FUNDS
        assert reddit.acknowledged == ["t1_gild"]
        assert reddit.sent[0][:2] == ("alice", "Insufficient funds")
        assert "gild u/bob" in reddit.sent[0][2]
        assert reddit.awarded == []

    @pytest.mark.asyncio
    async def test_rejected_tip_reply_keeps_tip(self, dispatcher, reddit, session_factory):
        """Test that a tip stands when Reddit refuses the reply (locked thread)."""
        await fund(session_factory, "alice", Decimal("200"))
        reddit.reply_outcomes = [SendOutcome.INVALID]

        result = await dispatcher.dispatch(mention("t1_tip", "alice", "$5"))

        assert result.outcome == DispatchOutcome.HANDLED
        assert reddit.acknowledged == ["t1_tip"]
        assert await balance_of(session_factory, "bob") == Decimal("125")

    @pytest.mark.asyncio
    async def test_rate_limited_tip_reply_is_retried(self, dispatcher, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("200"))
        reddit.reply_outcomes = [SendOutcome.RATE_LIMITED]

        first = await dispatcher.dispatch(mention("t1_tip", "alice", "$5"))

        assert first.outcome == DispatchOutcome.RETRY
        assert reddit.acknowledged == []
        assert await balance_of(session_factory, "alice") == Decimal("200")

        second = await dispatcher.dispatch(mention("t1_tip", "alice", "$5"))

        assert second.outcome == DispatchOutcome.HANDLED
        assert await balance_of(session_factory, "alice") == Decimal("75")

    @pytest.mark.asyncio
    async def test_rate_unavailable_left_unread(self, dispatcher, rates, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("200"))
        rates.get_rate.side_effect = RateUnavailableError("rate service down")

        result = await dispatcher.dispatch(mention("t1_tip", "alice", "$5"))

        assert result.outcome == DispatchOutcome.RETRY
        assert not result.acknowledged
        assert await balance_of(session_factory, "alice") == Decimal("200")


class TestBatch:
    """Tests for redelivery and batch handling."""

    @pytest.mark.asyncio
    async def test_redelivered_message_is_not_applied_twice(
        self, dispatcher, reddit, session_factory
    ):
        """Test that a message whose acknowledgement failed is only acknowledged next time."""
        await fund(session_factory, "alice", Decimal("200"))
        reddit.unread = [mention("t1_tip", "alice", "$5")]
        reddit.fail_acknowledge = True

        [first] = await dispatcher.process_batch()
        assert first.outcome == DispatchOutcome.HANDLED
        assert not first.acknowledged
        assert first.error

        reddit.fail_acknowledge = False
        [second] = await dispatcher.process_batch()

        assert second.outcome == DispatchOutcome.DUPLICATE
        assert second.acknowledged
        assert await balance_of(session_factory, "alice") == Decimal("75")
        assert len(reddit.replies) == 1

    @pytest.mark.asyncio
    async def test_batch_processes_in_order(self, dispatcher, reddit, session_factory):
        await fund(session_factory, "alice", Decimal("200"))
        reddit.unread = [
            direct("t4_1", "alice", "balance"),
            mention("t1_tip", "alice", "$5"),
            direct("t4_2", "alice", "balance"),
        ]

        results = await dispatcher.process_batch()

        assert [r.fullname for r in results] == ["t4_1", "t1_tip", "t4_2"]
        assert "200.00000000" in reddit.replies[0][1]
        assert "75.00000000" in reddit.replies[2][1]

    @pytest.mark.asyncio
    async def test_invariant_violation_stops_batch(self, dispatcher, reddit, monkeypatch):
        reddit.unread = [mention("t1_a", "alice", "$5"), direct("t4_b", "alice", "balance")]
        monkeypatch.setattr(
            dispatcher.transfers, "tip", AsyncMock(side_effect=InternalInvariantError("boom"))
        )

        with pytest.raises(InternalInvariantError):
            await dispatcher.process_batch()

        assert reddit.acknowledged == []
        assert reddit.replies == []

    @pytest.mark.asyncio
    async def test_insufficient_funds_tip_does_not_block_batch(
        self, dispatcher, reddit, session_factory
    ):
        await fund(session_factory, "alice", Decimal("1"))
        reddit.unread = [mention("t1_tip", "alice", "$5"), direct("t4_bal", "carol", "balance")]

        results = await dispatcher.process_batch()

        assert [r.outcome for r in results] == [
            DispatchOutcome.INSUFFICIENT_FUNDS,
            DispatchOutcome.HANDLED,
        ]
        assert reddit.acknowledged == ["t1_tip", "t4_bal"]
        assert reddit.sent[0][0] == "alice"
        assert reddit.replies[0][0] == "t4_bal"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            RuntimeError("unexpected"),
            OperationalError("INSERT INTO messages", {}, Exception("database is locked")),
        ],
    )
    async def test_unexpected_error_leaves_message_for_next_cycle(
        self, dispatcher, reddit, session_factory, monkeypatch, error
    ):
        await fund(session_factory, "alice", Decimal("200"))
        reddit.unread = [mention("t1_a", "alice", "$5"), direct("t4_b", "alice", "balance")]
        monkeypatch.setattr(dispatcher.transfers, "tip", AsyncMock(side_effect=error))

        first, second = await dispatcher.process_batch()

        assert first.outcome == DispatchOutcome.RETRY
        assert not first.acknowledged
        assert first.error.startswith(error.__class__.__name__)
        assert second.outcome == DispatchOutcome.HANDLED
        assert reddit.acknowledged == ["t4_b"]
        assert "200.00000000" in reddit.replies[0][1]
