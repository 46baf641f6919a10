"""Command parsing.

Turns the body of an inbound message into a typed command. Nothing here
touches the database or the network.

Direct messages:
    balance
    deposit
    withdraw <amount> <address>

Public mentions:
    gild u/<bot>  |  u/<bot> gild      (also with /u/)
    $<number>     |  <number> usd  |  <number> lbc
"""

import re
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Union

import base58

from tipbot.errors import CommandValidationError, RejectionReason

LBC_QUANT = Decimal("0.00000001")

TIP_PATTERN = re.compile(r"(\$[\d.]+|[\d.]+ (usd|lbc))", re.IGNORECASE)


class Currency(str, Enum):
    USD = "usd"
    LBC = "lbc"


@dataclass(frozen=True)
class BalanceCommand:
    pass


@dataclass(frozen=True)
class DepositCommand:
    pass


@dataclass(frozen=True)
class WithdrawCommand:
    amount: Decimal
    address: str


@dataclass(frozen=True)
class TipCommand:
    amount: Decimal
    currency: Currency
    parsed_amount: str          # matched text, e.g. "$5" or "10 lbc"


@dataclass(frozen=True)
class GildCommand:
    pass


DirectCommand = Union[BalanceCommand, DepositCommand, WithdrawCommand]
MentionCommand = Union[TipCommand, GildCommand]


def gild_pattern(bot_name: str) -> re.Pattern:
    """Gild trigger for the bot account, either word order."""
    name = re.escape(bot_name)
    return re.compile(rf"gild (u|/u)/{name}|(u|/u)/{name} gild", re.IGNORECASE)


def parse_decimal(value: str) -> Optional[Decimal]:
    """Parse a finite decimal, or None."""
    try:
        amount = Decimal(value)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def is_valid_address(address: str) -> bool:
    """Base58 with a valid 4-byte checksum."""
    try:
        decoded = base58.b58decode_check(address)
    except ValueError:
        return False
    return len(decoded) > 0


def parse_withdraw(parts: list[str], fee: Decimal) -> WithdrawCommand:
    amount = parse_decimal(parts[1])
    if amount is None or amount <= 0:
        raise CommandValidationError(
            RejectionReason.INVALID_WITHDRAW_AMOUNT, f"Invalid withdrawal amount: {parts[1]}"
        )

    amount = amount.quantize(LBC_QUANT, rounding=ROUND_DOWN)
    if amount <= fee:
        raise CommandValidationError(
            RejectionReason.AMOUNT_LTE_FEE,
            f"Withdrawal amount {amount} does not exceed the fee {fee}",
            amount=amount,
            fee=fee,
        )

    address = parts[2]
    if not is_valid_address(address):
        raise CommandValidationError(
            RejectionReason.INVALID_ADDRESS, f"Invalid address: {address}", amount=amount
        )

    return WithdrawCommand(amount=amount, address=address)


def parse_direct_command(body: str, fee: Decimal) -> Optional[DirectCommand]:
    """Parse a private message.

    Returns None when the body is not a command the bot knows.

    Raises:
        CommandValidationError: a withdraw command with a bad amount or address
    """
    text = body.strip()
    lowered = text.lower()

    if lowered == "balance":
        return BalanceCommand()
    if lowered == "deposit":
        return DepositCommand()

    parts = text.split()
    if len(parts) == 3 and parts[0].lower() == "withdraw":
        return parse_withdraw(parts, fee)

    return None


def parse_tip(match: re.Match) -> TipCommand:
    text = match.group(0)
    if text.startswith("$"):
        number, currency = text[1:], Currency.USD
    else:
        number, unit = text.split(" ", 1)
        currency = Currency(unit.lower())

    amount = parse_decimal(number)
    if amount is None or amount <= 0:
        raise CommandValidationError(
            RejectionReason.INVALID_TIP_AMOUNT, f"Invalid tip amount: {text}"
        )

    if currency == Currency.LBC:
        amount = amount.quantize(LBC_QUANT, rounding=ROUND_DOWN)
        if amount <= 0:
            raise CommandValidationError(
                RejectionReason.INVALID_TIP_AMOUNT, f"Invalid tip amount: {text}"
            )

    return TipCommand(amount=amount, currency=currency, parsed_amount=text)


def parse_mention(body: str, bot_name: str) -> Optional[MentionCommand]:
    """Parse a public mention.

    A gild trigger wins over a tip amount. Only the first tip amount in the
    body counts. Returns None when neither is present.

    Raises:
        CommandValidationError: the first tip amount is not a positive number
    """
    if gild_pattern(bot_name).search(body):
        return GildCommand()

    match = TIP_PATTERN.search(body)
    if match is None:
        return None
    return parse_tip(match)
