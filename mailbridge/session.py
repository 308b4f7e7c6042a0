"""Mail-transaction state machine, one instance per SMTP connection."""

from __future__ import annotations

import uuid

import structlog

from .errors import SessionStateError
from .models import DispatchOutcome, Envelope, SessionState
from .pipeline import Pipeline

logger = structlog.get_logger()


class IngestionSession:
    """Accumulates the envelope and body of one message, then runs the pipeline.

    Transitions::

        IDLE / COMPLETED --begin_transaction--> READY
        READY / COLLECTING --add_recipient--> COLLECTING
        READY / COLLECTING --submit_body--> COMPLETED
        any --reset--> IDLE

    A completed session accepts a new ``begin_transaction`` directly, since
    one SMTP connection may carry several transactions.
    """

    def __init__(self, pipeline: Pipeline, session_id: str | None = None) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._pipeline = pipeline
        self._state = SessionState.IDLE
        self._sender = ""
        self._recipients: list[str] = []
        self._completed: Envelope | None = None
        self._running = False
        self._generation = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def busy(self) -> bool:
        """True while a submitted body is still running through the pipeline."""
        return self._running

    @property
    def envelope(self) -> Envelope | None:
        """The current envelope, or the last submitted one once completed."""
        if self._state == SessionState.COMPLETED:
            return self._completed
        if self._state == SessionState.IDLE:
            return None
        return Envelope(sender=self._sender, recipients=tuple(self._recipients))

    def _require(self, operation: str, *allowed: SessionState) -> None:
        if self._state not in allowed:
            raise SessionStateError(f"{operation} not allowed in state {self._state.value}")

    def begin_transaction(self, sender: str) -> None:
        self._require("begin_transaction", SessionState.IDLE, SessionState.COMPLETED)
        self._sender = sender
        self._recipients = []
        self._completed = None
        self._state = SessionState.READY
        logger.debug("transaction_started", session_id=self.session_id, sender=sender)

    def add_recipient(self, address: str) -> None:
        self._require("add_recipient", SessionState.READY, SessionState.COLLECTING)
        self._recipients.append(address)
        self._state = SessionState.COLLECTING

    async def submit_body(self, raw: bytes) -> DispatchOutcome:
        """Run decode → resolve → dispatch and complete the transaction.

        The session ends in ``COMPLETED`` even if the pipeline raises.
        """
        if self._running:
            raise SessionStateError("a body is already being processed")
        self._require("submit_body", SessionState.READY, SessionState.COLLECTING)

        envelope = Envelope(sender=self._sender, recipients=tuple(self._recipients))
        generation = self._generation
        self._running = True
        try:
            return await self._pipeline.run(envelope, raw)
        finally:
            self._running = False
            # a reset() issued while the pipeline ran wins
            if generation == self._generation:
                self._completed = envelope
                self._sender = ""
                self._recipients = []
                self._state = SessionState.COMPLETED

    def reset(self) -> None:
        self._generation += 1
        self._sender = ""
        self._recipients = []
        self._completed = None
        self._state = SessionState.IDLE
