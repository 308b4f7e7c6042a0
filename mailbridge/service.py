"""BridgeService: wires the pipeline together and runs it until shutdown."""

from __future__ import annotations

import asyncio
import dataclasses
import time

import structlog
import uvicorn

from .config import BridgeConfig
from .credentials import CredentialCache
from .dispatcher import Dispatcher
from .health import create_health_app
from .logging import setup_logging
from .mime import MimeDecoder
from .models import BridgeStatus
from .pipeline import Pipeline
from .platform import DingTalkClient
from .resolver import IdentityResolver
from .shutdown import install_signal_handlers, remove_signal_handlers
from .smtp import BridgeHandler, SmtpServer

logger = structlog.get_logger()


class BridgeService:
    """The bridge process.

    ``run()`` starts the following and waits for SIGTERM / SIGINT:

    * the DingTalk HTTP client
    * the SMTP listener
    * the FastAPI health server (unless ``health_port`` is 0)

    On shutdown the SMTP listener stops accepting connections and in-flight
    messages get ``shutdown_grace_seconds`` to finish.
    """

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self.status: BridgeStatus = BridgeStatus.STARTING
        self.start_time: float = time.monotonic()

        platform = config.dingtalk
        self._client = DingTalkClient(platform, config.retry)
        self.credentials = CredentialCache(
            self._client.authenticate,
            safety_margin=platform.token_safety_margin_seconds,
        )
        self.pipeline = Pipeline(
            MimeDecoder(),
            IdentityResolver(config.user_mappings, self._client, self.credentials),
            Dispatcher(
                self._client,
                self.credentials,
                batch_size=platform.batch_size,
                default_title=platform.notification_title,
                include_sender=platform.include_sender,
            ),
        )
        self.handler = BridgeHandler(self.pipeline, max_recipients=config.smtp.max_recipients)
        self._smtp = SmtpServer(config.smtp, self.handler)
        self._shutdown_event = asyncio.Event()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    @property
    def smtp_listening(self) -> bool:
        return bool(self._smtp.sockets)

    def health_details(self) -> dict[str, object]:
        return {
            "smtp_listen_addr": self.config.smtp.listen_addr,
            "inflight_sessions": self.handler.inflight,
            "mapped_addresses": len(self.config.user_mappings),
            **dataclasses.asdict(self.handler.stats),
            **self.credentials.describe(),
        }

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        """Serve the health app until the shutdown event fires."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and run until shutdown."""
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()
        logger.info("bridge_starting", mapped_addresses=len(self.config.user_mappings))

        await self._client.start()
        try:
            await self._smtp.start()
            self.status = BridgeStatus.RUNNING
            try:
                async with asyncio.TaskGroup() as tg:
                    tg.create_task(self._shutdown_event.wait())
                    if self.config.health_port:
                        tg.create_task(self._run_health_server())
            except* Exception:
                self.status = BridgeStatus.DEGRADED
                logger.exception("bridge_task_group_error")
        finally:
            self.status = BridgeStatus.STOPPING
            logger.info("bridge_stopping")
            await self._smtp.stop(self.config.shutdown_grace_seconds)
            await self._client.stop()
            remove_signal_handlers()
            self.status = BridgeStatus.STOPPED
            logger.info("bridge_stopped")
