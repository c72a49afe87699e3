"""Unit tests for OAuth2 token management.

Tests cover:
    - Token expiration detection
    - Token fetching and per-service, per-scope caching
    - Retry logic on failures
    - Concurrent token requests sharing one fetch
"""

import asyncio
import hashlib
import time
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import test_utils, web

from genagent.exceptions import ConfigurationError, OAuthError
from genagent.tools.oauth import (
    CachedToken,
    OAuthClientCredentials,
    OAuthTokenManager,
    StaticTokenProvider,
)

# ============================================
# CachedToken Tests
# ============================================


class TestCachedToken:
    """Test the CachedToken dataclass."""

    def test_not_expired_when_new(self):
        """Fresh token should not be expired."""
        token = CachedToken(access_token="abc", expires_at=time.time() + 3600)
        assert not token.is_expired
        assert token.time_remaining > 3500

    def test_expired_when_past(self):
        """Token with past expiration should be expired."""
        token = CachedToken(access_token="abc", expires_at=time.time() - 100)
        assert token.is_expired
        assert token.time_remaining == 0

    def test_expired_within_buffer(self):
        """Buffer is 10% of TTL capped at 300s, so 200s left of 7200s is expired."""
        token = CachedToken(access_token="abc", expires_at=time.time() + 200, expires_in=7200)
        assert token.is_expired

    def test_short_ttl_uses_minimum_buffer(self):
        """A 60s TTL still keeps the 30s minimum buffer (plus jitter)."""
        token = CachedToken(access_token="abc", expires_at=time.time() + 20, expires_in=60)
        assert token.is_expired

    def test_token_id_is_sha256_prefix(self):
        token = CachedToken(access_token="my_secret_token_value", expires_at=time.time() + 3600)
        assert token.token_id == hashlib.sha256(b"my_secret_token_value").hexdigest()[:8]


# ============================================
# OAuthTokenManager Tests
# ============================================


def token_app(statuses=None, expires_in=3600, delay=0.0):
    """Token endpoint answering with queued statuses, then 200."""
    statuses = list(statuses or [])
    requests = []

    async def issue(request):
        form = await request.post()
        requests.append(dict(form))
        if delay:
            await asyncio.sleep(delay)
        if statuses:
            status = statuses.pop(0)
            return web.Response(status=status, text=f"error {status}")
        return web.json_response(
            {"access_token": f"token-{len(requests)}", "expires_in": expires_in}
        )

    app = web.Application()
    app.router.add_post("/token", issue)
    return app, requests


@asynccontextmanager
async def token_server(**kwargs):
    app, requests = token_app(**kwargs)
    async with test_utils.TestServer(app) as server:
        credentials = OAuthClientCredentials(
            token_url=str(server.make_url("/token")),
            client_id="client",
            client_secret="secret",
            scopes=["tools.read"],
        )
        yield credentials, requests


@pytest.fixture
def no_sleep():
    with patch("genagent.tools.oauth.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestOAuthTokenManager:
    """Test the OAuthTokenManager class."""

    @pytest.mark.asyncio
    async def test_unknown_service(self):
        """Should raise ConfigurationError naming the service."""
        with pytest.raises(ConfigurationError) as exc_info:
            await OAuthTokenManager().get_access_token("crm")
        assert exc_info.value.missing_keys == ["crm"]

    @pytest.mark.asyncio
    async def test_fetch_and_cache(self):
        """Second request should be served from the cache."""
        async with token_server() as (credentials, requests):
            manager = OAuthTokenManager({"crm": credentials})

            first = await manager.get_access_token("crm")
            second = await manager.get_access_token("crm")

        assert first == second == "token-1"
        assert len(requests) == 1
        assert requests[0]["grant_type"] == "client_credentials"
        assert requests[0]["client_id"] == "client"
        assert requests[0]["scope"] == "tools.read"

    @pytest.mark.asyncio
    async def test_scopes_cached_separately(self):
        async with token_server() as (credentials, requests):
            manager = OAuthTokenManager({"crm": credentials})

            default = await manager.get_access_token("crm")
            writer = await manager.get_access_token("crm", ["tools.write", "tools.read"])
            again = await manager.get_access_token("crm", ["tools.read", "tools.write"])

        assert default != writer
        assert writer == again
        assert requests[1]["scope"] == "tools.read tools.write"

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_fetch(self):
        """Concurrent callers should wait on one token request."""
        async with token_server(delay=0.05) as (credentials, requests):
            manager = OAuthTokenManager({"crm": credentials})

            tokens = await asyncio.gather(*[manager.get_access_token("crm") for _ in range(5)])

        assert set(tokens) == {"token-1"}
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_retry_on_server_error(self, no_sleep):
        """5xx responses should be retried with backoff."""
        async with token_server(statuses=[503, 502]) as (credentials, requests):
            manager = OAuthTokenManager({"crm": credentials})

            token = await manager.get_access_token("crm")

        assert token == "token-3"
        assert [c.args[0] for c in no_sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_rejected_credentials_not_retried(self, no_sleep):
        async with token_server(statuses=[401]) as (credentials, requests):
            manager = OAuthTokenManager({"crm": credentials})

            with pytest.raises(OAuthError) as exc_info:
                await manager.get_access_token("crm")

        assert len(requests) == 1
        assert exc_info.value.attempts == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, no_sleep):
        async with token_server(statuses=[500, 500]) as (credentials, requests):
            manager = OAuthTokenManager({"crm": credentials}, max_retries=2)

            with pytest.raises(OAuthError) as exc_info:
                await manager.get_access_token("crm")

        assert exc_info.value.service == "crm"
        assert exc_info.value.attempts == 2
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_and_invalidate(self):
        async with token_server() as (credentials, requests):
            manager = OAuthTokenManager({"crm": credentials})

            first = await manager.get_access_token("crm")
            refreshed = await manager.force_refresh("crm")
            manager.invalidate("crm")
            assert manager.token_info("crm") == []
            third = await manager.get_access_token("crm")

        assert (first, refreshed, third) == ("token-1", "token-2", "token-3")

    @pytest.mark.asyncio
    async def test_token_info_hides_token(self):
        async with token_server() as (credentials, _):
            manager = OAuthTokenManager({"crm": credentials})
            token = await manager.get_access_token("crm")

        info = manager.token_info("crm")
        assert info[0]["scopes"] == ["tools.read"]
        assert token not in str(info)


class TestStaticTokenProvider:
    @pytest.mark.asyncio
    async def test_lookup(self):
        provider = StaticTokenProvider({"crm": "abc"})
        assert await provider.get_access_token("crm") == "abc"
        with pytest.raises(OAuthError):
            await provider.get_access_token("billing")
