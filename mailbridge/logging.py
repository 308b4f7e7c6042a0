"""structlog configuration for the bridge process."""

from __future__ import annotations

import logging
import sys

import structlog

# Third-party loggers that are chatty at INFO (aiosmtpd logs every command).
_NOISY_LOGGERS = ("mail.log", "httpx", "httpcore", "uvicorn.access")


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Route structlog and stdlib logging through one stdout handler.

    Parameters
    ----------
    json:
        Emit JSON lines when *True*; use the console renderer otherwise.
    level:
        Root log level name, case-insensitive.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor
    if json:
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))


def bind_session(session_id: str, peer: str | None = None) -> None:
    """Attach connection identifiers to every log line of the current task."""
    structlog.contextvars.bind_contextvars(session_id=session_id, peer=peer)


def clear_session() -> None:
    structlog.contextvars.unbind_contextvars("session_id", "peer")
