"""Process-wide bearer token cache for the messaging platform."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from .errors import AuthFailed

logger = structlog.get_logger()

Authenticator = Callable[[], Awaitable[tuple[str, float]]]
"""Coroutine function returning ``(token, ttl_seconds)`` or raising :class:`AuthFailed`."""


class CredentialCache:
    """Hands out a valid platform token, refreshing it at most once at a time.

    Refresh protocol:

    1. Read the cached token and expiry without locking; if ``now <
       expires_at`` return it.
    2. Otherwise take the refresh lock and re-check, since another task
       may have refreshed while this one waited.
    3. Only if the token is still invalid, call the authenticator once and
       store ``expires_at = now + ttl - safety_margin``.

    Every token is validated against the clock at the moment it is
    returned.
    """

    def __init__(
        self,
        authenticate: Authenticator,
        *,
        safety_margin: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._authenticate = authenticate
        self._safety_margin = safety_margin
        self._clock = clock
        self._lock = asyncio.Lock()
        self._token: str | None = None
        self._expires_at: float = 0.0
        self._refreshes = 0

    @property
    def refreshes(self) -> int:
        """Number of authentication calls made so far."""
        return self._refreshes

    def _valid_token(self) -> str | None:
        if self._token is not None and self._clock() < self._expires_at:
            return self._token
        return None

    async def get_token(self) -> str:
        token = self._valid_token()
        if token is not None:
            return token

        async with self._lock:
            token = self._valid_token()
            if token is not None:
                return token

            self._refreshes += 1
            token, ttl = await self._authenticate()
            self._token = token
            self._expires_at = self._clock() + ttl - self._safety_margin
            logger.info("platform_token_refreshed", ttl_seconds=ttl)

            token = self._valid_token()
            if token is None:
                raise AuthFailed(
                    f"token ttl {ttl}s does not exceed the {self._safety_margin}s safety margin"
                )
            return token

    def invalidate(self, token: str) -> None:
        """Drop *token* if it is still the cached one.

        Called when the platform rejects a token before its computed
        expiry.  A token that has already been replaced is left alone.
        """
        if self._token == token:
            self._token = None
            self._expires_at = 0.0
            logger.info("platform_token_invalidated")

    def describe(self) -> dict[str, object]:
        remaining = self._expires_at - self._clock() if self._token else 0.0
        return {
            "token_cached": self._token is not None,
            "token_valid_for_seconds": max(round(remaining, 1), 0.0),
            "token_refreshes": self._refreshes,
        }
