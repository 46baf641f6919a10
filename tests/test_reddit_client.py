"""Tests for the Reddit API client and session."""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from tipbot.errors import RedditAPIError
from tipbot.ledger.models import MessageKind
from tipbot.reddit.base import SendOutcome
from tipbot.reddit.client import RedditClient
from tipbot.reddit.session import RedditSession


def make_session(handler=None) -> RedditSession:
    def token_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})

    return RedditSession(
        client_id="id",
        client_secret="secret",
        username="lbryian",
        password="hunter2",
        user_agent="tipbot/test",
        transport=httpx.MockTransport(handler or token_handler),
    )


def make_client(handler, session: RedditSession = None) -> RedditClient:
    return RedditClient(session or make_session(), transport=httpx.MockTransport(handler))


def form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


UNREAD = {
    "kind": "Listing",
    "data": {
        "children": [
            {
                "kind": "t1",
                "data": {
                    "name": "t1_new",
                    "id": "new",
                    "author": "alice",
                    "body": "u/lbryian $5",
                    "parent_id": "t1_parent",
                    "subreddit": "lbry",
                    "context": "/r/lbry/comments/x/y/new/?context=3",
                    "created_utc": 1700000100.0,
                },
            },
            {"kind": "t3", "data": {"name": "t3_post", "id": "post"}},
            {
                "kind": "t4",
                "data": {
                    "name": "t4_old",
                    "id": "old",
                    "author": "bob",
                    "body": "balance",
                    "created_utc": 1700000000.0,
                },
            },
        ]
    },
}


# api_type=json response body -> expected outcome
OUTCOME_CASES = [
    ({"json": {"errors": []}}, SendOutcome.SENT),
    ({"json": {"ratelimit": 12.5, "errors": []}}, SendOutcome.RATE_LIMITED),
    (
        {"json": {"errors": [["RATELIMIT", "try again in 9 minutes", "ratelimit"]]}},
        SendOutcome.RATE_LIMITED,
    ),
    (
        {"json": {"errors": [["USER_DOESNT_EXIST", "that user doesn't exist", "to"]]}},
        SendOutcome.INVALID,
    ),
    ({}, SendOutcome.SENT),
]


class TestRedditSession:
    """Tests for bearer token handling."""

    @pytest.mark.asyncio
    async def test_token_acquired_with_password_grant(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"access_token": "token-1"})

        session = make_session(handler)
        token = await session.get_token()

        assert token == "token-1"
        assert form(seen[0])["grant_type"] == "password"
        assert form(seen[0])["username"] == "lbryian"
        assert seen[0].headers["User-Agent"] == "tipbot/test"
        assert seen[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_token_reused_until_expired(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"token-{len(calls)}"})

        session = make_session(handler)
        assert await session.get_token() == "token-1"
        assert await session.get_token() == "token-1"

        session.acquired_at = datetime.now(timezone.utc) - timedelta(minutes=59)
        assert await session.get_token() == "token-2"

    def test_expiry(self):
        session = make_session()
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert session.is_expired(now)

        session.access_token = "token"
        session.acquired_at = now
        assert not session.is_expired(now + timedelta(minutes=58))
        assert session.is_expired(now + timedelta(minutes=59))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, json={"error": "invalid_grant"}),
            httpx.Response(200, json={"access_token": "  "}),
            httpx.Response(500, text="oops"),
        ],
    )
    async def test_bad_token_response(self, response):
        session = make_session(lambda request: response)

        with pytest.raises(RedditAPIError):
            await session.get_token()
        assert session.access_token is None


class TestInbox:
    """Tests for the inbox endpoints."""

    @pytest.mark.asyncio
    async def test_fetch_unread_oldest_first(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=UNREAD)

        messages = await make_client(handler).fetch_unread(limit=50)

        assert [m.fullname for m in messages] == ["t4_old", "t1_new"]
        old, new = messages
        assert old.kind == MessageKind.DIRECT
        assert old.author == "bob"
        assert new.kind == MessageKind.MENTION
        assert new.parent_id == "t1_parent"
        assert new.reddit_id == "new"
        assert new.created_at == datetime.fromtimestamp(1700000100, tz=timezone.utc)

        request = seen[0]
        assert request.url.path == "/message/unread"
        assert request.url.params["limit"] == "50"
        assert request.headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_acknowledge(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        await make_client(handler).acknowledge("t4_old")

        assert seen[0].url.path == "/api/read_message"
        assert form(seen[0]) == {"id": "t4_old"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "children, expected",
        [
            ([{"kind": "t1", "data": {"author": "bob"}}], "bob"),
            ([{"kind": "t1", "data": {"author": "[deleted]"}}], None),
            ([], None),
        ],
    )
    async def test_get_author(self, children, expected):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["id"] == "t1_parent"
            return httpx.Response(200, json={"data": {"children": children}})

        assert await make_client(handler).get_author("t1_parent") == expected

    @pytest.mark.asyncio
    async def test_award(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        await make_client(handler).award("t1_parent")

        assert seen[0].url.path == "/api/v1/gold/gild/t1_parent"

    @pytest.mark.asyncio
    async def test_award_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            errors = [["INSUFFICIENT_CREDDITS", "not enough creddits", ""]]
            return httpx.Response(200, json={"json": {"errors": errors}})

        with pytest.raises(RedditAPIError):
            await make_client(handler).award("t1_parent")


class TestNotifications:
    """Tests for compose and comment."""

    @pytest.mark.asyncio
    async def test_send(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"json": {"errors": []}})

        outcome = await make_client(handler).send("alice", "Deposit completed!", "hello")

        assert outcome == SendOutcome.SENT
        assert seen[0].url.path == "/api/compose"
        assert form(seen[0]) == {
            "api_type": "json",
            "to": "alice",
            "subject": "Deposit completed!",
            "text": "hello",
        }

    @pytest.mark.asyncio
    async def test_reply(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"json": {"errors": []}})

        assert await make_client(handler).reply("t1_tip", "tipped") == SendOutcome.SENT
        assert form(seen[0])["thing_id"] == "t1_tip"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body, expected", OUTCOME_CASES)
    async def test_outcome_classification(self, body, expected):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=json.dumps(body).encode())

        assert await make_client(handler).send("alice", "subject", "text") == expected


class TestErrors:
    """Tests for transport and HTTP failures."""

    @pytest.mark.asyncio
    async def test_unauthorized_drops_token(self):
        session = make_session()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Unauthorized"})

        with pytest.raises(RedditAPIError):
            await make_client(handler, session).fetch_unread()
        assert session.access_token is None

    @pytest.mark.asyncio
    async def test_server_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="busy")

        with pytest.raises(RedditAPIError):
            await make_client(handler).acknowledge("t4_old")

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RedditAPIError):
            await make_client(handler).reply("t1_tip", "text")

    @pytest.mark.asyncio
    async def test_unexpected_listing(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"kind": "Listing"})

        with pytest.raises(RedditAPIError):
            await make_client(handler).fetch_unread()
