"""LBC/USD exchange rate.

The LBRY API reports the price of one LBC in USD:

    GET https://api.lbry.io/lbc/exchange_rate
    {"success": true, "data": {"lbc_usd": 0.04, ...}}

A rate that is missing, unparseable, zero or negative fails the calling
operation; no conversion is ever done with a stale or invalid rate.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

import httpx

from tipbot.errors import RateUnavailableError

logger = logging.getLogger(__name__)

LBC_QUANT = Decimal("0.00000001")
USD_QUANT = Decimal("0.01")


def usd_to_lbc(amount_usd: Decimal, usd_per_lbc: Decimal) -> Decimal:
    """Convert USD to LBC, rounded to 8 decimal places."""
    return (amount_usd / usd_per_lbc).quantize(LBC_QUANT, rounding=ROUND_HALF_UP)


def lbc_to_usd(amount: Decimal, usd_per_lbc: Decimal) -> Decimal:
    """Convert LBC to USD, rounded to cents."""
    return (amount * usd_per_lbc).quantize(USD_QUANT, rounding=ROUND_HALF_UP)


class RateConverter:
    """Fetches the current LBC/USD rate."""

    def __init__(
        self,
        rate_url: str = "https://api.lbry.io/lbc/exchange_rate",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rate_url = rate_url
        self.timeout = timeout
        self._transport = transport

    async def get_rate(self) -> Decimal:
        """Get the current price of one LBC in USD.

        Raises:
            RateUnavailableError: request failed or the rate is unusable
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.rate_url)
                response.raise_for_status()
                body = response.json(parse_float=Decimal)
        except httpx.HTTPError as e:
            raise RateUnavailableError(f"Rate request failed: {e}") from e
        except ValueError as e:
            raise RateUnavailableError("Rate response is not JSON") from e

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or "lbc_usd" not in data:
            raise RateUnavailableError("Rate response has no lbc_usd field")

        raw = data["lbc_usd"]
        if isinstance(raw, bool):
            raise RateUnavailableError(f"Invalid rate: {raw!r}")
        try:
            rate = Decimal(str(raw))
        except (InvalidOperation, ValueError) as e:
            raise RateUnavailableError(f"Invalid rate: {raw!r}") from e

        if not rate.is_finite() or rate <= 0:
            raise RateUnavailableError(f"Invalid rate: {raw!r}")

        logger.debug(f"LBC/USD rate: {rate}")
        return rate

    async def coins_per_usd(self) -> Decimal:
        """How many LBC one USD buys."""
        rate = await self.get_rate()
        return usd_to_lbc(Decimal("1"), rate)

    async def usd_to_lbc(self, amount_usd: Decimal) -> tuple[Decimal, Decimal]:
        """Convert with a freshly fetched rate. Returns (lbc, rate)."""
        rate = await self.get_rate()
        return usd_to_lbc(amount_usd, rate), rate

    async def lbc_to_usd(self, amount: Decimal) -> tuple[Decimal, Decimal]:
        """Convert with a freshly fetched rate. Returns (usd, rate)."""
        rate = await self.get_rate()
        return lbc_to_usd(amount, rate), rate
