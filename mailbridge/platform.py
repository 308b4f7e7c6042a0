"""Async HTTP client for the DingTalk open API."""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from .config import PlatformConfig, RetryConfig
from .errors import AuthFailed, BridgeError, DeliveryFailed, LookupFailed
from .retry import with_retry

logger = structlog.get_logger()

# errcodes DingTalk returns for an invalid or expired access_token
INVALID_TOKEN_CODES = frozenset({40014, 42001})


class PlatformResponse(BaseModel):
    """Envelope shared by every DingTalk API response."""

    errcode: int = Field(default=0, description="0 on success")
    errmsg: str = Field(default="", description="Human-readable error message")


class TokenResponse(PlatformResponse):
    access_token: str = ""
    expires_in: int = 0


class UserLookupResult(BaseModel):
    userid: str = ""


class UserLookupResponse(PlatformResponse):
    result: UserLookupResult = Field(default_factory=UserLookupResult)


class SendResponse(PlatformResponse):
    task_id: int = 0


class PlatformError(Exception):
    """A DingTalk API call returned a non-zero errcode."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"errcode {code}: {message}")
        self.code = code
        self.message = message

    @property
    def token_rejected(self) -> bool:
        return self.code in INVALID_TOKEN_CODES


class DingTalkClient:
    """Thin wrapper over the three DingTalk endpoints the bridge needs.

    Call :meth:`start` before use and :meth:`stop` on shutdown.  Token and
    lookup calls are retried on any transport error; send calls are only
    retried when the connection could not be established, so a notification
    is never posted twice.
    """

    def __init__(
        self,
        config: PlatformConfig,
        retry: RetryConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._retry = retry
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=httpx.Timeout(self._config.timeout_seconds),
            transport=self._transport,
        )
        logger.info("platform_client_started", base_url=self._config.base_url)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("platform_client_stopped")

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def authenticate(self) -> tuple[str, float]:
        """Exchange app key/secret for ``(access_token, ttl_seconds)``."""
        params = {
            "appkey": self._config.app_key,
            "appsecret": self._config.app_secret.get_secret_value(),
        }
        try:
            data = await self._call(
                "GET", "/gettoken", params=params, retryable=(httpx.TransportError,)
            )
            response = self._parse(data, TokenResponse)
        except (httpx.HTTPError, PlatformError) as exc:
            raise AuthFailed(f"authentication failed: {exc}") from exc
        return response.access_token, float(response.expires_in)

    async def get_user_id_by_mobile(self, token: str, mobile: str) -> str:
        try:
            data = await self._call(
                "POST",
                "/topapi/v2/user/getbymobile",
                token=token,
                json={"mobile": mobile},
                retryable=(httpx.TransportError,),
            )
            response = self._parse(data, UserLookupResponse)
        except (httpx.HTTPError, PlatformError) as exc:
            raise LookupFailed(f"user lookup failed: {exc}") from exc
        if not response.result.userid:
            raise LookupFailed("user lookup returned no userid")
        return response.result.userid

    async def send_markdown(self, token: str, user_ids: list[str], title: str, text: str) -> int:
        """Send one markdown work notification; returns the platform task id."""
        body: dict[str, Any] = {
            "agent_id": self._config.agent_id,
            "userid_list": ",".join(user_ids),
            "msg": {
                "msgtype": "markdown",
                "markdown": {"title": title, "text": text},
            },
        }
        try:
            data = await self._call(
                "POST",
                "/topapi/message/corpconversation/asyncsend_v2",
                token=token,
                json=body,
                retryable=(httpx.ConnectError, httpx.ConnectTimeout),
            )
            response = self._parse(data, SendResponse)
        except (httpx.HTTPError, PlatformError) as exc:
            raise DeliveryFailed(f"send failed: {exc}") from exc
        return response.task_id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        path: str,
        *,
        retryable: tuple[type[BaseException], ...],
        token: str | None = None,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if self._client is None:
            raise RuntimeError("Client not started")
        client = self._client

        query = dict(params or {})
        if token is not None:
            query["access_token"] = token

        @with_retry(self._retry, retryable_exceptions=retryable)
        async def _request() -> httpx.Response:
            response = await client.request(method, path, params=query, json=json)
            response.raise_for_status()
            return response

        response = await _request()
        logger.debug("platform_call", path=path, status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise PlatformError(-1, "response body is not JSON") from exc

    @staticmethod
    def _parse(data: dict[str, Any], model: type[PlatformResponse]) -> Any:
        try:
            response = model.model_validate(data)
        except ValidationError as exc:
            raise PlatformError(-1, f"unexpected response shape: {exc.error_count()} errors") from exc
        if response.errcode != 0:
            raise PlatformError(response.errcode, response.errmsg)
        return response


def token_rejected(error: BridgeError) -> bool:
    """True if *error* was caused by the platform rejecting the access token."""
    cause = error.__cause__
    return isinstance(cause, PlatformError) and cause.token_rejected
