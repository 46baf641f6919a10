"""Reddit OAuth access session.

Holds the bearer token and when it was acquired. The token is refreshed
with the password grant once it is older than the configured age.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from tipbot.errors import RedditAPIError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://www.reddit.com/api/v1/access_token"


class RedditSession:
    """Refreshable bearer credential for the Reddit API."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        user_agent: str,
        max_age: timedelta = timedelta(minutes=59),
        timeout: float = 30.0,
        token_url: str = TOKEN_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.user_agent = user_agent
        self.max_age = max_age
        self.timeout = timeout
        self.token_url = token_url
        self._transport = transport
        self.access_token: Optional[str] = None
        self.acquired_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True if there is no token or it is older than max_age."""
        if not self.access_token or self.acquired_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - self.acquired_at >= self.max_age

    def invalidate(self) -> None:
        self.access_token = None
        self.acquired_at = None

    async def get_token(self) -> str:
        """Return a valid bearer token, refreshing it if needed."""
        if self.is_expired():
            await self.refresh()
        return self.access_token

    async def refresh(self) -> None:
        """Acquire a new token with the password grant."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.token_url,
                    auth=(self.client_id, self.client_secret),
                    data={
                        "grant_type": "password",
                        "username": self.username,
                        "password": self.password,
                    },
                    headers={"User-Agent": self.user_agent},
                )
        except httpx.HTTPError as e:
            raise RedditAPIError(f"Token request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise RedditAPIError(f"Unparseable token response ({response.status_code})") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token or not str(token).strip():
            raise RedditAPIError(f"No access token in response: {data}")

        self.access_token = str(token)
        self.acquired_at = datetime.now(timezone.utc)
        logger.info(f"Acquired Reddit access token for u/{self.username}")
