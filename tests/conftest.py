"""Shared test fixtures for the mailbridge test suite."""

from __future__ import annotations

from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from unittest.mock import AsyncMock

import pytest

from mailbridge.config import BridgeConfig, PlatformConfig, RetryConfig, SmtpConfig
from mailbridge.credentials import CredentialCache
from mailbridge.platform import DingTalkClient

BASE_URL = "https://dingtalk.test"


@pytest.fixture
def platform_config() -> PlatformConfig:
    return PlatformConfig(
        app_key="test-key",
        app_secret="test-secret",
        agent_id=42,
        base_url=BASE_URL,
        timeout_seconds=5.0,
    )


@pytest.fixture
def smtp_config() -> SmtpConfig:
    return SmtpConfig(listen_addr="127.0.0.1:0", domain="mail.test")


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.05,
        multiplier=2.0,
    )


@pytest.fixture
def contact_mapping() -> dict[str, str]:
    return {
        "alice@example.com": "13800000001",
        "bob@example.com": "13900000002",
    }


@pytest.fixture
def bridge_config(
    platform_config: PlatformConfig,
    smtp_config: SmtpConfig,
    retry_config: RetryConfig,
    contact_mapping: dict[str, str],
) -> BridgeConfig:
    return BridgeConfig(
        dingtalk=platform_config,
        smtp=smtp_config,
        retry=retry_config,
        user_mappings=contact_mapping,
        health_port=0,
    )


@pytest.fixture
def mock_client() -> AsyncMock:
    """A DingTalkClient stand-in with async endpoint methods."""
    client = AsyncMock(spec=DingTalkClient)
    client.authenticate = AsyncMock(return_value=("token-1", 7200.0))
    client.get_user_id_by_mobile = AsyncMock(return_value="user-1")
    client.send_markdown = AsyncMock(return_value=1001)
    return client


@pytest.fixture
def credentials(mock_client: AsyncMock) -> CredentialCache:
    return CredentialCache(mock_client.authenticate)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Build #12 passed",
    from_addr: str = "ci@example.com",
    to_addr: str = "alice@example.com",
    body: str = "All checks passed.",
    charset: str = "utf-8",
    encoding: str | None = None,
) -> bytes:
    """Build a single-part text/plain email as raw bytes.

    *encoding* forces the transfer encoding (``"base64"`` or
    ``"quoted-printable"``); the stdlib default is used otherwise.
    """
    msg = MIMEText(body, "plain", charset)
    if encoding is not None:
        del msg["Content-Transfer-Encoding"]
        msg.set_payload(body.encode(charset))
        if encoding == "base64":
            encoders.encode_base64(msg)
        else:
            encoders.encode_quopri(msg)
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_html_email(*, body_html: str = "<p>Hello</p>", subject: str = "HTML Email") -> bytes:
    msg = MIMEText(body_html, "html", "utf-8")
    msg["Subject"] = subject
    msg["From"] = "ci@example.com"
    msg["To"] = "alice@example.com"
    return msg.as_bytes()


def _build_alternative_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build multipart/mixed{ multipart/alternative{plain, html}, attachments }."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "ci@example.com"
    msg["To"] = "alice@example.com"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain", "utf-8"))
    alt.attach(MIMEText(body_html, "html", "utf-8"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def alternative_eml_bytes() -> bytes:
    return _build_alternative_email(
        attachments=[("report.html", "text/html", b"<p>attached report</p>")],
    )
