"""Signal wiring for the bridge's drain-then-exit shutdown."""

from __future__ import annotations

import asyncio
import signal

import structlog

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Make SIGTERM and SIGINT set *shutdown_event* on the running loop.

    Setting the event starts :class:`~mailbridge.service.BridgeService`'s
    stop sequence: the SMTP listener closes so no new connections are
    accepted, and messages already in DATA get ``shutdown_grace_seconds``
    to finish their pipeline before they are cancelled.  A second signal
    arriving during that drain is logged but does not cut the grace
    period short.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.warning("shutdown_already_in_progress", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _handle, sig)


def remove_signal_handlers() -> None:
    """Give SIGTERM and SIGINT back to their default handling once stopped."""
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)
