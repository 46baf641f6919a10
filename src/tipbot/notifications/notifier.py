"""Reddit notification service.

Renders the bot's replies and private messages and delivers them through a
NotificationSink. Rate-limited sends are retried after a delay; the final
outcome is returned to the caller, which decides whether it matters.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from tipbot.errors import CommandValidationError, RejectionReason
from tipbot.reddit.base import NotificationSink, SendOutcome

logger = logging.getLogger(__name__)

FOOTER = "\n\n---\n\n^[How to use]({how_to_use_url})"

TEMPLATES = {
    "onbalance": "Your balance is **{amount} LBC**.",
    "ondeposit": (
        "Send LBC to the address below to fund your tipping balance.\n\n"
        "**{address}**\n\n"
        "Deposits are credited after 3 confirmations."
    ),
    "ondeposit.completed": (
        "Your deposit of **{amount} LBC** has been confirmed.\n\n"
        "Your balance is now **{balance} LBC**."
    ),
    "ongild": "{sender} gilded {recipient} for **{gild_amount}**!",
    "ongild.insufficientfunds": (
        "You tried to gild {recipient} for {amount} LBC ({amount_usd}), "
        "but your balance is only {balance} LBC."
    ),
    "onsendtip": "{recipient} has been tipped **{tip}**!",
    "onsendtip.insufficientfunds": (
        "You tried to tip {recipient} {amount} LBC ({amount_usd}), "
        "but your balance is only {balance} LBC."
    ),
    "onsendtip.invalidamount": (
        "The tip amount you specified is not valid. "
        "Use `$<amount>`, `<amount> usd` or `<amount> lbc`."
    ),
    "onwithdraw": "**{amount} LBC** has been sent to {address}.\n\nTransaction ID: {txid}",
    "onwithdraw.amountltefee": (
        "You tried to withdraw {amount} LBC, which does not cover the "
        "network fee of {fee} LBC."
    ),
    "onwithdraw.insufficientfunds": (
        "You tried to withdraw {amount} LBC, but your balance is only {balance} LBC."
    ),
    "onwithdraw.invalidaddress": "The LBC address you specified is not valid.",
    "onwithdraw.invalidamount": "The withdrawal amount you specified is not valid.",
    "onwithdraw.ownaddress": (
        "You cannot withdraw to your own deposit address {address}."
    ),
}

# Rejection reason -> (template, subject)
REJECTIONS = {
    RejectionReason.INVALID_TIP_AMOUNT: ("onsendtip.invalidamount", "Invalid amount for send tip"),
    RejectionReason.INVALID_WITHDRAW_AMOUNT: (
        "onwithdraw.invalidamount",
        "Invalid amount for withdrawal",
    ),
    RejectionReason.AMOUNT_LTE_FEE: (
        "onwithdraw.amountltefee",
        "Withdrawal amount less than minimum fee",
    ),
    RejectionReason.INVALID_ADDRESS: (
        "onwithdraw.invalidaddress",
        "Invalid address for withdrawal",
    ),
    RejectionReason.OWN_DEPOSIT_ADDRESS: (
        "onwithdraw.ownaddress",
        "Invalid address for withdrawal",
    ),
}


def format_lbc(amount: Decimal) -> str:
    return f"{amount:.8f}"


def format_usd(amount: Decimal) -> str:
    return f"${amount:.2f}"


class Notifier:
    """Sends templated replies and private messages."""

    def __init__(
        self,
        sink: NotificationSink,
        how_to_use_url: str = "",
        max_attempts: int = 2,
        rate_limit_delay: float = 5.0,
    ):
        self.sink = sink
        self.how_to_use_url = how_to_use_url
        self.max_attempts = max(1, max_attempts)
        self.rate_limit_delay = rate_limit_delay

    def render(self, template: str, **substitutions) -> str:
        """Render a named message text with the help footer."""
        if template not in TEMPLATES:
            raise KeyError(f"Message template {template} not found")
        text = TEMPLATES[template] + FOOTER
        return text.format(how_to_use_url=self.how_to_use_url, **substitutions)

    async def _deliver(
        self,
        description: str,
        call: Callable[[], Awaitable[SendOutcome]],
        attempts: Optional[int] = None,
    ) -> SendOutcome:
        """Run a send, retrying while Reddit reports a rate limit.

        TransientExternalError from the sink propagates to the caller.
        """
        attempts = attempts or self.max_attempts
        outcome = SendOutcome.RATE_LIMITED
        for attempt in range(1, attempts + 1):
            outcome = await call()
            if outcome != SendOutcome.RATE_LIMITED:
                break
            logger.warning(f"Rate limited sending {description} (attempt {attempt})")
            if attempt < attempts:
                await asyncio.sleep(self.rate_limit_delay)

        if outcome == SendOutcome.INVALID:
            logger.error(f"Reddit rejected {description}")
        return outcome

    async def reply(
        self,
        fullname: str,
        template: str,
        attempts: Optional[int] = None,
        **substitutions,
    ) -> SendOutcome:
        """Reply to a message or comment using a template.

        attempts overrides max_attempts; pass 1 from inside a ledger unit so
        no rate-limit sleep happens while the unit is open.
        """
        text = self.render(template, **substitutions)
        return await self._deliver(
            f"{template} reply to {fullname}",
            lambda: self.sink.reply(fullname, text),
            attempts,
        )

    async def send(self, to: str, subject: str, template: str, **substitutions) -> SendOutcome:
        """Send a private message using a template."""
        text = self.render(template, **substitutions)
        return await self._deliver(
            f"{template} message to {to}",
            lambda: self.sink.send(to, subject, text),
        )

    # Replies
    async def reply_balance(self, fullname: str, balance: Decimal) -> SendOutcome:
        return await self.reply(fullname, "onbalance", amount=format_lbc(balance))

    async def reply_deposit_address(self, fullname: str, address: str) -> SendOutcome:
        return await self.reply(fullname, "ondeposit", address=address)

    async def reply_tip(
        self,
        fullname: str,
        recipient: str,
        amount: Decimal,
        amount_usd: Decimal,
        attempts: Optional[int] = None,
    ) -> SendOutcome:
        return await self.reply(
            fullname,
            "onsendtip",
            attempts=attempts,
            recipient=f"u/{recipient}",
            tip=f"{format_lbc(amount)} LBC ({format_usd(amount_usd)})",
        )

    async def reply_gild(
        self,
        fullname: str,
        sender: str,
        recipient: str,
        amount: Decimal,
        amount_usd: Decimal,
    ) -> SendOutcome:
        return await self.reply(
            fullname,
            "ongild",
            sender=f"u/{sender}",
            recipient=f"u/{recipient}",
            gild_amount=f"{format_lbc(amount)} LBC ({format_usd(amount_usd)})",
        )

    async def reply_withdrawal(
        self, fullname: str, address: str, amount: Decimal, tx_id: str
    ) -> SendOutcome:
        return await self.reply(
            fullname, "onwithdraw", address=address, amount=format_lbc(amount), txid=tx_id
        )

    # Private messages
    async def notify_rejected(self, author: str, error: CommandValidationError) -> SendOutcome:
        """Tell the author why a command was rejected."""
        template, subject = REJECTIONS[error.reason]
        return await self.send(
            author,
            subject,
            template,
            amount=format_lbc(error.amount) if error.amount is not None else "",
            fee=format_lbc(error.fee) if error.fee is not None else "",
            address=error.address or "",
        )

    async def notify_tip_insufficient_funds(
        self,
        author: str,
        recipient: str,
        amount: Decimal,
        amount_usd: Decimal,
        balance: Decimal,
    ) -> SendOutcome:
        return await self.send(
            author,
            "Insufficient funds to send tip",
            "onsendtip.insufficientfunds",
            recipient=f"u/{recipient}",
            amount=format_lbc(amount),
            amount_usd=format_usd(amount_usd),
            balance=format_lbc(balance),
        )

    async def notify_gild_insufficient_funds(
        self,
        author: str,
        recipient: str,
        amount: Decimal,
        amount_usd: Decimal,
        balance: Decimal,
    ) -> SendOutcome:
        return await self.send(
            author,
            "Insufficient funds",
            "ongild.insufficientfunds",
            recipient=f"u/{recipient}",
            amount=format_lbc(amount),
            amount_usd=format_usd(amount_usd),
            balance=format_lbc(balance),
        )

    async def notify_withdraw_insufficient_funds(
        self, author: str, amount: Decimal, balance: Decimal
    ) -> SendOutcome:
        return await self.send(
            author,
            "Insufficient funds for withdrawal",
            "onwithdraw.insufficientfunds",
            amount=format_lbc(amount),
            balance=format_lbc(balance),
        )

    async def notify_deposit_completed(
        self, username: str, amount: Decimal, balance: Decimal
    ) -> SendOutcome:
        return await self.send(
            username,
            "Deposit completed!",
            "ondeposit.completed",
            amount=format_lbc(amount),
            balance=format_lbc(balance),
        )
