"""Decode → resolve → dispatch for one completed mail transaction."""

from __future__ import annotations

import asyncio

import structlog

from .dispatcher import Dispatcher
from .mime import MimeDecoder
from .models import DispatchOutcome, Envelope
from .resolver import IdentityResolver

logger = structlog.get_logger()


class Pipeline:
    """Runs the bridge stages for one message.

    Stateless between runs, so one instance is shared by every session.
    Decoding runs in a worker thread; the platform calls are awaited in
    the session's own task.
    """

    def __init__(
        self,
        decoder: MimeDecoder,
        resolver: IdentityResolver,
        dispatcher: Dispatcher,
    ) -> None:
        self._decoder = decoder
        self._resolver = resolver
        self._dispatcher = dispatcher

    async def run(self, envelope: Envelope, raw: bytes) -> DispatchOutcome:
        decoded = await asyncio.to_thread(self._decoder.decode, raw)
        resolution = await self._resolver.resolve_all(envelope.recipients)

        outcome = await self._dispatcher.send(
            resolution.user_ids,
            decoded.subject,
            decoded.body,
            envelope.sender,
        )
        outcome.merge_failures(resolution.failed)

        logger.info(
            "message_dispatched",
            sender=envelope.sender,
            subject=decoded.subject,
            recipients=len(envelope.recipients),
            decode_degraded=decoded.is_degraded,
            **outcome.summary(),
        )
        return outcome
