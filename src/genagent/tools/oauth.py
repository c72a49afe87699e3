"""OAuth2 token management for remote tool servers.

Provides bearer tokens to the MCP client using the client credentials grant.

Features:
    - Per-service token caching with dynamic expiration buffer (10% of TTL, max 5min)
    - Refresh serialized per service using asyncio.Lock
    - Exponential backoff retry on failures (1s, 2s, 4s)
    - Typed OAuthError on failure

Security Notes:
    - Tokens are cached in memory only (never persisted to disk)
    - Token ID in log output uses SHA-256 hash (first 8 chars), never the token
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from ..domain.ports import IOAuthTokenProvider
from ..exceptions import ConfigurationError, OAuthError

logger = logging.getLogger(__name__)


@dataclass
class CachedToken:
    """Container for a cached OAuth2 access token.

    Attributes:
        access_token: The OAuth2 bearer token string.
        expires_at: Unix timestamp when the token expires.
        token_type: Token type, typically "Bearer".
        expires_in: Original TTL in seconds (for dynamic buffer calculation).
    """

    access_token: str
    expires_at: float
    token_type: Optional[str] = "Bearer"
    expires_in: int = 3600

    MAX_BUFFER_SECONDS = 300
    MIN_BUFFER_SECONDS = 30

    @property
    def token_id(self) -> str:
        """Safe identifier for logging (SHA-256 hash, first 8 chars)."""
        return hashlib.sha256(self.access_token.encode()).hexdigest()[:8]

    @property
    def _buffer_seconds(self) -> float:
        """10% of TTL clamped to [MIN, MAX], plus ±10% jitter."""
        base_buffer = self.expires_in * 0.1
        buffer = max(self.MIN_BUFFER_SECONDS, min(base_buffer, self.MAX_BUFFER_SECONDS))
        jitter = buffer * random.uniform(-0.1, 0.1)
        return buffer + jitter

    @property
    def is_expired(self) -> bool:
        """Check if the token has expired (with dynamic safety buffer)."""
        return time.time() >= (self.expires_at - self._buffer_seconds)

    @property
    def time_remaining(self) -> float:
        """Seconds remaining before the token expires (0 if expired)."""
        return max(0, self.expires_at - time.time())


@dataclass
class OAuthClientCredentials:
    """Client credentials for one service.

    Attributes:
        token_url: OAuth2 token endpoint
        client_id: OAuth2 client ID
        client_secret: OAuth2 client secret
        scopes: Default scopes requested when the caller names none
    """

    token_url: str
    client_id: str
    client_secret: str
    scopes: list[str] = field(default_factory=list)


class OAuthTokenManager(IOAuthTokenProvider):
    """Token manager for any number of services, with automatic refresh.

    Example:
        >>> manager = OAuthTokenManager({"crm": OAuthClientCredentials(url, cid, secret)})
        >>> token = await manager.get_access_token("crm")  # Fetches new token
        >>> token = await manager.get_access_token("crm")  # Returns cached token
    """

    def __init__(
        self,
        services: Optional[dict[str, OAuthClientCredentials]] = None,
        request_timeout: float = 30.0,
        max_retries: int = 3,
    ):
        self.services: dict[str, OAuthClientCredentials] = dict(services or {})
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self._cache: dict[tuple[str, tuple[str, ...]], CachedToken] = {}
        self._locks: dict[tuple[str, tuple[str, ...]], asyncio.Lock] = {}

    def register_service(self, service: str, credentials: OAuthClientCredentials) -> None:
        self.services[service] = credentials
        self.invalidate(service)

    def _key(self, service: str, scopes: Optional[list[str]]) -> tuple[str, tuple[str, ...]]:
        credentials = self._credentials(service)
        return service, tuple(sorted(scopes if scopes is not None else credentials.scopes))

    def _credentials(self, service: str) -> OAuthClientCredentials:
        credentials = self.services.get(service)
        if credentials is None:
            raise ConfigurationError(
                f"No OAuth credentials configured for service '{service}'",
                missing_keys=[service],
            )
        return credentials

    async def get_access_token(
        self,
        service: str,
        scopes: Optional[list[str]] = None,
    ) -> str:
        """Get a valid access token, fetching or refreshing as needed.

        Raises:
            ConfigurationError: If the service is unknown
            OAuthError: If the token cannot be obtained after retries
        """
        key = self._key(service, scopes)
        cached = self._cache.get(key)
        if cached and not cached.is_expired:
            return cached.access_token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._cache.get(key)
            if cached and not cached.is_expired:
                return cached.access_token

            token = await self._fetch_token(service, list(key[1]))
            self._cache[key] = token
            return token.access_token

    async def _fetch_token(self, service: str, scopes: list[str]) -> CachedToken:
        """Fetch a new access token using the client credentials grant.

        Raises:
            OAuthError: If the token cannot be fetched after retries
        """
        credentials = self._credentials(service)
        payload = {
            "grant_type": "client_credentials",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
        }
        if scopes:
            payload["scope"] = " ".join(scopes)

        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.post(
                        credentials.token_url,
                        data=payload,
                        headers=headers,
                        timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                    ) as response:
                        if response.status == 200:
                            data = await response.json()

                            access_token = data.get("access_token")
                            if not access_token:
                                raise OAuthError(
                                    "Token response missing access_token",
                                    service=service,
                                    attempts=attempt,
                                    details={"response_keys": list(data.keys())},
                                )

                            expires_in = int(data.get("expires_in", 3600))
                            token = CachedToken(
                                access_token=access_token,
                                expires_at=time.time() + expires_in,
                                token_type=data.get("token_type", "Bearer"),
                                expires_in=expires_in,
                            )
                            logger.info(
                                f"Token fetched for {service} (id={token.token_id}), "
                                f"expires in {expires_in}s"
                            )
                            return token

                        error_text = await response.text()

                        if response.status in (400, 401, 403):
                            raise OAuthError(
                                f"Token request rejected: HTTP {response.status}",
                                service=service,
                                attempts=attempt,
                                details={"response": error_text[:200]},
                            )

                        last_error = OAuthError(
                            f"Token server returned HTTP {response.status}",
                            service=service,
                            attempts=attempt,
                            details={"response": error_text[:200]},
                        )
                        logger.warning(
                            f"Token fetch attempt {attempt}/{self.max_retries} failed: "
                            f"HTTP {response.status}"
                        )

            except OAuthError:
                raise

            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Token fetch attempt {attempt}/{self.max_retries} failed: Timeout")

            except aiohttp.ClientError as e:
                last_error = e
                logger.warning(f"Token fetch attempt {attempt}/{self.max_retries} failed: {e}")

            if attempt < self.max_retries:
                wait_time = 2 ** (attempt - 1)
                logger.debug(f"Waiting {wait_time}s before retry")
                await asyncio.sleep(wait_time)

        raise OAuthError(
            f"Failed to fetch token for {service} after {self.max_retries} attempts",
            service=service,
            attempts=self.max_retries,
            cause=last_error,
        )

    async def force_refresh(self, service: str, scopes: Optional[list[str]] = None) -> str:
        """Force a token refresh, ignoring the cache."""
        key = self._key(service, scopes)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            token = await self._fetch_token(service, list(key[1]))
            self._cache[key] = token
            return token.access_token

    def invalidate(self, service: Optional[str] = None) -> None:
        """Drop cached tokens for one service, or all of them."""
        if service is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k[0] == service]:
            del self._cache[key]

    def token_info(self, service: str) -> list[dict]:
        """Info about cached tokens for debugging (hash ids only)."""
        return [
            {
                "scopes": list(key[1]),
                "token_id": token.token_id,
                "is_expired": token.is_expired,
                "time_remaining_seconds": token.time_remaining,
            }
            for key, token in self._cache.items()
            if key[0] == service
        ]


class StaticTokenProvider(IOAuthTokenProvider):
    """Pre-issued tokens keyed by service name."""

    def __init__(self, tokens: dict[str, str]):
        self.tokens = dict(tokens)

    async def get_access_token(
        self,
        service: str,
        scopes: Optional[list[str]] = None,
    ) -> str:
        token = self.tokens.get(service)
        if not token:
            raise OAuthError(f"No token configured for service '{service}'", service=service)
        return token
