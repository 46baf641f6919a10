"""Reddit OAuth API client.

Implements the inbox (unread messages, mark read, author lookup, gilding)
and the notification sink (compose, comment) over httpx.
"""

import logging
from typing import Any, Optional

import httpx

from tipbot.errors import RedditAPIError
from tipbot.reddit.base import InboundMessage, InboxSource, NotificationSink, SendOutcome
from tipbot.reddit.session import RedditSession

logger = logging.getLogger(__name__)

BASE_URL = "https://oauth.reddit.com"


class RedditClient(InboxSource, NotificationSink):
    """Thin async client for the endpoints the bot uses."""

    def __init__(
        self,
        session: RedditSession,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Perform an authenticated request and return the decoded JSON body."""
        token = await self.session.get_token()
        headers = {
            "User-Agent": self.session.user_agent,
            "Authorization": f"Bearer {token}",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", params=params, data=data, headers=headers
                )
        except httpx.HTTPError as e:
            raise RedditAPIError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            self.session.invalidate()
            raise RedditAPIError(f"{method} {path} unauthorized; token dropped")
        if response.status_code >= 400:
            raise RedditAPIError(f"{method} {path} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise RedditAPIError(f"{method} {path} returned unparseable body") from e

    @staticmethod
    def _outcome(body: Any) -> SendOutcome:
        """Classify an api_type=json response."""
        payload = body.get("json", {}) if isinstance(body, dict) else {}
        if payload.get("ratelimit", 0) > 0:
            return SendOutcome.RATE_LIMITED
        errors = payload.get("errors") or []
        if any(err and err[0] == "RATELIMIT" for err in errors):
            return SendOutcome.RATE_LIMITED
        if errors:
            logger.warning(f"Reddit rejected request: {errors}")
            return SendOutcome.INVALID
        return SendOutcome.SENT

    # Inbox
    async def fetch_unread(self, limit: int = 100) -> list[InboundMessage]:
        body = await self._request("GET", "/message/unread", params={"limit": limit})
        try:
            children = body["data"]["children"]
        except (KeyError, TypeError) as e:
            raise RedditAPIError("Unexpected /message/unread response") from e

        messages = []
        for child in children:
            message = InboundMessage.from_listing(child)
            if message is None:
                logger.debug(f"Skipping inbox item of kind {child.get('kind')}")
                continue
            messages.append(message)
        # Listing is newest first
        messages.reverse()
        return messages

    async def acknowledge(self, fullname: str) -> None:
        await self._request("POST", "/api/read_message", data={"id": fullname})

    async def get_author(self, fullname: str) -> Optional[str]:
        body = await self._request("GET", "/api/info", params={"id": fullname})
        try:
            children = body["data"]["children"]
        except (KeyError, TypeError) as e:
            raise RedditAPIError("Unexpected /api/info response") from e
        if not children:
            return None
        author = children[0].get("data", {}).get("author")
        if not author or author == "[deleted]":
            return None
        return author

    async def award(self, fullname: str) -> None:
        body = await self._request("POST", f"/api/v1/gold/gild/{fullname}")
        outcome = self._outcome(body)
        if outcome != SendOutcome.SENT:
            raise RedditAPIError(f"Gilding {fullname} failed: {outcome.value}")

    # Notifications
    async def send(self, recipient: str, subject: str, text: str) -> SendOutcome:
        body = await self._request(
            "POST",
            "/api/compose",
            data={"api_type": "json", "to": recipient, "subject": subject, "text": text},
        )
        return self._outcome(body)

    async def reply(self, fullname: str, text: str) -> SendOutcome:
        body = await self._request(
            "POST",
            "/api/comment",
            data={"api_type": "json", "thing_id": fullname, "text": text},
        )
        return self._outcome(body)
