"""lbrycrd JSON-RPC client.

Uses the account-based wallet calls:
- getnewaddress <account>
- sendfrom <account> <address> <amount> <minconf> <comment>
- gettransaction <txid>
- listtransactions <account> <count>
"""

import logging
from decimal import Decimal
from itertools import count
from typing import Any, Optional

import httpx

from tipbot.chain.base import ChainNode, ChainTransaction
from tipbot.errors import AmbiguousTransferError, ChainNodeError

logger = logging.getLogger(__name__)


class LbrycrdNode(ChainNode):
    """lbrycrd wallet reached over JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._transport = transport
        self._ids = count(1)

    @property
    def name(self) -> str:
        return "lbrycrd"

    async def _call(self, method: str, *params: Any) -> Any:
        """Invoke an RPC method and return its result.

        Transport failures are raised as httpx errors for the caller to
        classify; explicit RPC errors become ChainNodeError.
        """
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.rpc_url, json=payload)

        try:
            body = response.json()
        except ValueError as e:
            raise ChainNodeError(
                f"{method}: unparseable response (HTTP {response.status_code})"
            ) from e

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainNodeError(f"{method}: {message}", code=code)
        if response.status_code >= 400:
            raise ChainNodeError(f"{method}: HTTP {response.status_code}")
        return body.get("result")

    async def _query(self, method: str, *params: Any) -> Any:
        """RPC call with no side effects; every failure is transient."""
        try:
            return await self._call(method, *params)
        except httpx.HTTPError as e:
            raise ChainNodeError(f"{method}: {e.__class__.__name__}: {e}") from e

    async def new_address(self, account: str) -> str:
        address = await self._query("getnewaddress", account)
        if not address:
            raise ChainNodeError("getnewaddress returned no address")
        return address

    async def send(
        self,
        account: str,
        address: str,
        amount: Decimal,
        comment: Optional[str] = None,
    ) -> str:
        params: list[Any] = [account, address, float(amount)]
        if comment:
            params += [1, comment]

        try:
            tx_id = await self._call("sendfrom", *params)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # Never reached the node
            raise ChainNodeError(f"sendfrom: could not connect: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"sendfrom {amount} LBC to {address} has unknown outcome: {e}")
            raise AmbiguousTransferError(
                f"sendfrom outcome unknown: {e.__class__.__name__}", attempt_key=comment
            ) from e

        if not tx_id:
            raise AmbiguousTransferError("sendfrom returned no txid", attempt_key=comment)
        logger.info(f"Sent {amount} LBC to {address}: {tx_id}")
        return tx_id

    async def get_transaction(self, tx_id: str) -> int:
        result = await self._query("gettransaction", tx_id)
        try:
            return int(result["confirmations"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChainNodeError(f"gettransaction {tx_id}: no confirmation count") from e

    async def list_recent_transactions(
        self, account: str, limit: int = 1000
    ) -> list[ChainTransaction]:
        result = await self._query("listtransactions", account, limit)
        transactions = []
        for entry in result or []:
            try:
                transactions.append(
                    ChainTransaction(
                        tx_id=entry["txid"],
                        address=entry.get("address", ""),
                        amount=Decimal(str(entry["amount"])),
                        confirmations=int(entry.get("confirmations", 0)),
                        category=entry.get("category"),
                        comment=entry.get("comment"),
                    )
                )
            except (KeyError, TypeError, ValueError, ArithmeticError):
                logger.warning(f"Skipping malformed transaction entry: {entry}")
        return transactions
