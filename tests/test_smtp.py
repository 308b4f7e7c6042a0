"""Tests for mailbridge.smtp."""

from __future__ import annotations

import asyncio
import smtplib
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiosmtpd.smtp import Envelope as SmtpEnvelope, LoginPassword, Session as SmtpSession

from mailbridge.config import SmtpConfig
from mailbridge.errors import NotMapped
from mailbridge.models import DispatchOutcome, SessionState
from mailbridge.smtp import BridgeHandler, SmtpServer, accept_any_credentials
from tests.conftest import _build_plain_email


@pytest.fixture
def pipeline() -> AsyncMock:
    pipeline = AsyncMock()
    pipeline.run = AsyncMock(return_value=DispatchOutcome(succeeded=["u1"], batches=1))
    return pipeline


@pytest.fixture
def handler(pipeline: AsyncMock) -> BridgeHandler:
    return BridgeHandler(pipeline, max_recipients=2)


@pytest_asyncio.fixture
async def smtp_session() -> SmtpSession:
    session = SmtpSession(loop=asyncio.get_running_loop())
    session.peer = ("127.0.0.1", 40000)
    return session


@pytest.fixture
def server() -> MagicMock:
    return MagicMock()


class TestHandlerHooks:
    @pytest.mark.asyncio
    async def test_full_transaction(
        self, handler: BridgeHandler, pipeline: AsyncMock, smtp_session, server
    ):
        envelope = SmtpEnvelope()
        reply = await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])
        assert reply == "250 OK"
        assert (
            await handler.handle_RCPT(server, smtp_session, envelope, "alice@example.com", [])
            == "250 OK"
        )
        envelope.content = envelope.original_content = b"Subject: hi\r\n\r\nbody"

        reply = await handler.handle_DATA(server, smtp_session, envelope)

        assert reply.startswith("250")
        bridge_envelope, raw = pipeline.run.await_args.args
        assert bridge_envelope.sender == "ci@example.com"
        assert bridge_envelope.recipients == ("alice@example.com",)
        assert raw == b"Subject: hi\r\n\r\nbody"
        assert handler.session_for(smtp_session).state == SessionState.COMPLETED
        assert handler.stats.messages_received == 1
        assert handler.stats.recipients_delivered == 1

    @pytest.mark.asyncio
    async def test_recipient_limit(self, handler: BridgeHandler, smtp_session, server):
        envelope = SmtpEnvelope()
        await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])
        for address in ("a@example.com", "b@example.com"):
            await handler.handle_RCPT(server, smtp_session, envelope, address, [])

        reply = await handler.handle_RCPT(server, smtp_session, envelope, "c@example.com", [])

        assert reply.startswith("452")
        assert envelope.rcpt_tos == ["a@example.com", "b@example.com"]

    @pytest.mark.asyncio
    async def test_rcpt_before_mail(self, handler: BridgeHandler, smtp_session, server):
        reply = await handler.handle_RCPT(
            server, smtp_session, SmtpEnvelope(), "alice@example.com", []
        )
        assert reply.startswith("503")

    @pytest.mark.asyncio
    async def test_nested_mail(self, handler: BridgeHandler, smtp_session, server):
        envelope = SmtpEnvelope()
        await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])
        reply = await handler.handle_MAIL(server, smtp_session, envelope, "x@example.com", [])
        assert reply.startswith("503")

    @pytest.mark.asyncio
    async def test_partial_failure_still_accepted(
        self, handler: BridgeHandler, pipeline: AsyncMock, smtp_session, server
    ):
        pipeline.run.return_value = DispatchOutcome(
            succeeded=["u1"], failed={"bob@example.com": NotMapped("no contact key")}
        )
        envelope = SmtpEnvelope()
        await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])
        envelope.original_content = b"body"

        reply = await handler.handle_DATA(server, smtp_session, envelope)

        assert reply.startswith("250")
        assert handler.stats.recipients_failed == 1

    @pytest.mark.asyncio
    async def test_pipeline_crash_is_transient_failure(
        self, handler: BridgeHandler, pipeline: AsyncMock, smtp_session, server
    ):
        pipeline.run.side_effect = RuntimeError("boom")
        envelope = SmtpEnvelope()
        await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])
        envelope.original_content = b"body"

        reply = await handler.handle_DATA(server, smtp_session, envelope)

        assert reply.startswith("451")
        assert handler.stats.messages_failed == 1
        assert handler.inflight == 0

    @pytest.mark.parametrize("recipients", [0, 1])
    @pytest.mark.asyncio
    async def test_fresh_envelope_restarts_transaction(
        self, handler: BridgeHandler, smtp_session, server, recipients: int
    ):
        envelope = SmtpEnvelope()
        await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])
        for _ in range(recipients):
            await handler.handle_RCPT(server, smtp_session, envelope, "alice@example.com", [])

        fresh = SmtpEnvelope()
        reply = await handler.handle_MAIL(server, smtp_session, fresh, "ops@example.com", [])

        assert reply == "250 OK"
        ingestion = handler.session_for(smtp_session)
        assert ingestion.state == SessionState.READY
        assert ingestion.envelope.sender == "ops@example.com"
        assert ingestion.envelope.recipients == ()

    @pytest.mark.asyncio
    async def test_mail_rejected_while_body_processing(
        self, handler: BridgeHandler, pipeline: AsyncMock, smtp_session, server
    ):
        async def hang(envelope, raw):
            await asyncio.sleep(10)

        pipeline.run.side_effect = hang
        envelope = SmtpEnvelope()
        await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])
        envelope.original_content = b"body"
        data_task = asyncio.create_task(handler.handle_DATA(server, smtp_session, envelope))
        await asyncio.sleep(0)

        reply = await handler.handle_MAIL(
            server, smtp_session, SmtpEnvelope(), "ops@example.com", []
        )

        assert reply.startswith("503")
        data_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await data_task

    @pytest.mark.asyncio
    async def test_rset_returns_to_idle(self, handler: BridgeHandler, smtp_session, server):
        envelope = SmtpEnvelope()
        await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])

        assert await handler.handle_RSET(server, smtp_session, envelope) == "250 OK"
        assert handler.session_for(smtp_session).state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_quit_drops_session(self, handler: BridgeHandler, smtp_session, server):
        first = handler.session_for(smtp_session)
        assert await handler.handle_QUIT(server, smtp_session, SmtpEnvelope()) == "221 Bye"
        assert handler.session_for(smtp_session) is not first

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(
        self, handler: BridgeHandler, pipeline: AsyncMock, smtp_session, server
    ):
        async def hang(envelope, raw):
            await asyncio.sleep(10)

        pipeline.run.side_effect = hang
        envelope = SmtpEnvelope()
        await handler.handle_MAIL(server, smtp_session, envelope, "ci@example.com", [])
        envelope.original_content = b"body"
        data_task = asyncio.create_task(handler.handle_DATA(server, smtp_session, envelope))
        await asyncio.sleep(0)

        assert handler.inflight == 1
        assert await handler.drain(0.01) == 1
        with pytest.raises(asyncio.CancelledError):
            await data_task


class TestSmtpServer:
    @pytest.mark.asyncio
    async def test_end_to_end_delivery(self, pipeline: AsyncMock):
        config = SmtpConfig(listen_addr="127.0.0.1:0", domain="mail.test")
        smtp_server = SmtpServer(config, BridgeHandler(pipeline))
        await smtp_server.start()
        port = smtp_server.sockets[0].getsockname()[1]

        def send() -> None:
            with smtplib.SMTP("127.0.0.1", port, timeout=5) as client:
                client.sendmail(
                    "ci@example.com",
                    ["alice@example.com", "bob@example.com"],
                    _build_plain_email(subject="Nightly build"),
                )

        try:
            await asyncio.to_thread(send)
        finally:
            await smtp_server.stop(grace=1.0)

        envelope, raw = pipeline.run.await_args.args
        assert envelope.sender == "ci@example.com"
        assert envelope.recipients == ("alice@example.com", "bob@example.com")
        assert b"Nightly build" in raw

    @pytest.mark.asyncio
    async def test_stop_before_start(self, smtp_config: SmtpConfig, pipeline: AsyncMock):
        await SmtpServer(smtp_config, BridgeHandler(pipeline)).stop()

    @pytest.mark.asyncio
    async def test_mail_after_oversized_data(self, pipeline: AsyncMock):
        config = SmtpConfig(listen_addr="127.0.0.1:0", domain="mail.test", max_message_bytes=100)
        smtp_server = SmtpServer(config, BridgeHandler(pipeline))
        await smtp_server.start()
        port = smtp_server.sockets[0].getsockname()[1]

        def converse() -> tuple[int, int]:
            with smtplib.SMTP("127.0.0.1", port, timeout=5) as client:
                client.ehlo()
                client.mail("ci@example.com")
                client.rcpt("alice@example.com")
                data_code, _ = client.data(b"Subject: big\r\n\r\n" + b"x" * 500)
                mail_code, _ = client.mail("ci@example.com")
                return data_code, mail_code

        try:
            data_code, mail_code = await asyncio.to_thread(converse)
        finally:
            await smtp_server.stop(grace=1.0)

        assert data_code == 552
        assert mail_code == 250
        pipeline.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mail_after_repeated_ehlo(self, smtp_config: SmtpConfig, pipeline: AsyncMock):
        smtp_server = SmtpServer(smtp_config, BridgeHandler(pipeline))
        await smtp_server.start()
        port = smtp_server.sockets[0].getsockname()[1]

        def converse() -> int:
            with smtplib.SMTP("127.0.0.1", port, timeout=5) as client:
                client.ehlo()
                client.mail("ci@example.com")
                client.ehlo()
                code, _ = client.mail("ops@example.com")
                return code

        try:
            assert await asyncio.to_thread(converse) == 250
        finally:
            await smtp_server.stop(grace=1.0)

    @pytest.mark.asyncio
    async def test_login_then_delivery(self, smtp_config: SmtpConfig, pipeline: AsyncMock):
        smtp_server = SmtpServer(smtp_config, BridgeHandler(pipeline))
        await smtp_server.start()
        port = smtp_server.sockets[0].getsockname()[1]

        def send() -> int:
            with smtplib.SMTP("127.0.0.1", port, timeout=5) as client:
                code, _ = client.login("ci-bot", "any-password")
                client.sendmail("ci@example.com", ["alice@example.com"], _build_plain_email())
                return code

        try:
            assert await asyncio.to_thread(send) == 235
        finally:
            await smtp_server.stop(grace=1.0)

        pipeline.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_auth_not_offered_when_disabled(self, pipeline: AsyncMock):
        config = SmtpConfig(listen_addr="127.0.0.1:0", domain="mail.test", allow_insecure_auth=False)
        smtp_server = SmtpServer(config, BridgeHandler(pipeline))
        await smtp_server.start()
        port = smtp_server.sockets[0].getsockname()[1]

        def login() -> None:
            with smtplib.SMTP("127.0.0.1", port, timeout=5) as client:
                client.login("ci-bot", "any-password")

        try:
            with pytest.raises(smtplib.SMTPNotSupportedError):
                await asyncio.to_thread(login)
        finally:
            await smtp_server.stop(grace=1.0)


class TestAcceptAnyCredentials:
    def test_login_password_accepted(self, server):
        auth_data = LoginPassword(b"ci-bot", b"secret")
        assert accept_any_credentials(server, MagicMock(), MagicMock(), "PLAIN", auth_data) is True

    def test_unknown_auth_data_accepted(self, server):
        assert accept_any_credentials(server, MagicMock(), MagicMock(), "XOAUTH2", object()) is True
