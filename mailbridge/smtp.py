"""Inbound SMTP transport built on aiosmtpd.

aiosmtpd owns the wire protocol; :class:`BridgeHandler` maps its command
hooks onto one :class:`IngestionSession` per connection and
:class:`SmtpServer` runs the protocol inside the service's event loop.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Callable
from typing import Any

import structlog
from aiosmtpd.smtp import SMTP, Envelope as SmtpEnvelope, LoginPassword, Session as SmtpSession

from .config import SmtpConfig
from .errors import SessionStateError
from .logging import bind_session, clear_session
from .models import BridgeStats, DispatchOutcome, SessionState
from .pipeline import Pipeline
from .session import IngestionSession

logger = structlog.get_logger()


class BridgeHandler:
    """aiosmtpd handler that feeds SMTP commands into ingestion sessions."""

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        max_recipients: int = 50,
        stats: BridgeStats | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._max_recipients = max_recipients
        self.stats = stats or BridgeStats()
        self._sessions: weakref.WeakKeyDictionary[SmtpSession, IngestionSession] = (
            weakref.WeakKeyDictionary()
        )
        self._inflight: set[asyncio.Task] = set()

    def session_for(self, session: SmtpSession) -> IngestionSession:
        ingestion = self._sessions.get(session)
        if ingestion is None:
            ingestion = IngestionSession(self._pipeline)
            self._sessions[session] = ingestion
        return ingestion

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    # ------------------------------------------------------------------
    # aiosmtpd hooks
    # ------------------------------------------------------------------

    async def handle_MAIL(
        self,
        server: SMTP,
        session: SmtpSession,
        envelope: SmtpEnvelope,
        address: str,
        mail_options: list[str],
    ) -> str:
        ingestion = self.session_for(session)
        # aiosmtpd starts a fresh envelope after a rejected DATA or a repeated
        # EHLO/HELO without calling handle_RSET
        if (
            envelope.mail_from is None
            and not ingestion.busy
            and ingestion.state in (SessionState.READY, SessionState.COLLECTING)
        ):
            logger.debug(
                "session_resynced",
                session_id=ingestion.session_id,
                state=ingestion.state.value,
            )
            ingestion.reset()
        try:
            ingestion.begin_transaction(address)
        except SessionStateError as exc:
            return f"503 {exc}"
        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)
        return "250 OK"

    async def handle_RCPT(
        self,
        server: SMTP,
        session: SmtpSession,
        envelope: SmtpEnvelope,
        address: str,
        rcpt_options: list[str],
    ) -> str:
        if len(envelope.rcpt_tos) >= self._max_recipients:
            return "452 Too many recipients"
        try:
            self.session_for(session).add_recipient(address)
        except SessionStateError as exc:
            return f"503 {exc}"
        envelope.rcpt_tos.append(address)
        envelope.rcpt_options.extend(rcpt_options)
        return "250 OK"

    async def handle_DATA(
        self,
        server: SMTP,
        session: SmtpSession,
        envelope: SmtpEnvelope,
    ) -> str:
        ingestion = self.session_for(session)
        raw = envelope.original_content or envelope.content or b""
        if isinstance(raw, str):
            raw = raw.encode("utf-8", "surrogateescape")

        peer = session.peer[0] if isinstance(session.peer, tuple) else str(session.peer)
        bind_session(ingestion.session_id, peer)
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            outcome = await ingestion.submit_body(raw)
        except SessionStateError as exc:
            return f"503 {exc}"
        except Exception:
            self.stats.messages_failed += 1
            logger.exception("pipeline_failed", sender=envelope.mail_from)
            return "451 Requested action aborted: local error in processing"
        finally:
            if task is not None:
                self._inflight.discard(task)
            clear_session()

        self._record(outcome)
        return "250 Message accepted for delivery"

    async def handle_RSET(
        self,
        server: SMTP,
        session: SmtpSession,
        envelope: SmtpEnvelope,
    ) -> str:
        self.session_for(session).reset()
        return "250 OK"

    async def handle_QUIT(
        self,
        server: SMTP,
        session: SmtpSession,
        envelope: SmtpEnvelope,
    ) -> str:
        ingestion = self._sessions.pop(session, None)
        if ingestion is not None:
            ingestion.reset()
        return "221 Bye"

    # ------------------------------------------------------------------
    # Shutdown support
    # ------------------------------------------------------------------

    async def drain(self, grace: float) -> int:
        """Wait up to *grace* seconds for in-flight DATA pipelines.

        Pipelines still running afterwards are cancelled.  Returns how many
        were cancelled.
        """
        pending = set(self._inflight)
        if not pending:
            return 0
        logger.info("draining_sessions", inflight=len(pending), grace_seconds=grace)
        _, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        return len(still_running)

    def _record(self, outcome: DispatchOutcome) -> None:
        self.stats.record(outcome)
        if outcome.failed:
            logger.warning(
                "message_partially_delivered" if outcome.succeeded else "message_not_delivered",
                **outcome.summary(),
            )


def accept_any_credentials(
    server: SMTP,
    session: SmtpSession,
    envelope: SmtpEnvelope,
    mechanism: str,
    auth_data: Any,
) -> bool:
    """aiosmtpd authenticator that lets every AUTH attempt through.

    The login name is logged at debug level; the password is never read.
    """
    login = auth_data.login if isinstance(auth_data, LoginPassword) else b""
    logger.debug(
        "smtp_auth_accepted",
        mechanism=mechanism,
        login=login.decode("utf-8", "replace"),
    )
    return True


class SmtpServer:
    """Runs aiosmtpd's protocol on the configured address in the current loop."""

    def __init__(
        self,
        config: SmtpConfig,
        handler: BridgeHandler,
        *,
        protocol_factory: Callable[[], SMTP] | None = None,
    ) -> None:
        self._config = config
        self._handler = handler
        self._protocol_factory = protocol_factory or self._make_protocol
        self._server: asyncio.Server | None = None
        self._protocols: weakref.WeakSet[SMTP] = weakref.WeakSet()

    def _make_protocol(self) -> SMTP:
        auth: dict[str, Any] = {}
        if self._config.allow_insecure_auth:
            auth = {"authenticator": accept_any_credentials, "auth_require_tls": False}
        return SMTP(
            self._handler,
            hostname=self._config.domain,
            data_size_limit=self._config.max_message_bytes,
            timeout=self._config.timeout_seconds,
            **auth,
        )

    def _track(self) -> SMTP:
        protocol = self._protocol_factory()
        self._protocols.add(protocol)
        return protocol

    @property
    def sockets(self) -> list:
        return list(self._server.sockets) if self._server is not None else []

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._server = await loop.create_server(
            self._track,
            host=self._config.host,
            port=self._config.port,
        )
        logger.info("smtp_server_listening", addr=self._config.listen_addr, domain=self._config.domain)

    async def stop(self, grace: float = 5.0) -> None:
        """Stop accepting connections, drain in-flight messages, then disconnect."""
        if self._server is None:
            return
        self._server.close()
        cancelled = await self._handler.drain(grace)
        if cancelled:
            logger.warning("sessions_cancelled_on_shutdown", count=cancelled)

        for protocol in list(self._protocols):
            transport = getattr(protocol, "transport", None)
            if transport is not None:
                transport.close()

        await self._server.wait_closed()
        self._server = None
        logger.info("smtp_server_stopped")
