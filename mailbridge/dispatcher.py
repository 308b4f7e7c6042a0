"""Notification formatting and batched delivery."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime

import structlog

from .credentials import CredentialCache
from .errors import BridgeError
from .models import DispatchOutcome
from .platform import DingTalkClient, token_rejected

logger = structlog.get_logger()

MAX_BATCH_SIZE = 100
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_notification(
    subject: str,
    body: str,
    *,
    now: datetime,
    sender: str | None = None,
) -> str:
    """Render the Markdown notification text.

    Pass *sender* to include a ``From`` line; it is omitted otherwise.
    """
    lines = [f"## {subject}", "", f"**Time:** {now.strftime(TIME_FORMAT)}", ""]
    if sender:
        lines += [f"**From:** {sender}", ""]
    lines += ["---", "", body]
    return "\n".join(lines)


def batched(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class Dispatcher:
    """Sends one notification to many user ids, one platform call per batch.

    A failed batch marks each of its recipients failed; later batches are
    still attempted.  ``batch_size=1`` gives one call per recipient.
    """

    def __init__(
        self,
        client: DingTalkClient,
        credentials: CredentialCache,
        *,
        batch_size: int = MAX_BATCH_SIZE,
        default_title: str = "Mail notification",
        include_sender: bool = False,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self._client = client
        self._credentials = credentials
        self._batch_size = batch_size
        self._default_title = default_title
        self._include_sender = include_sender
        self._clock = clock

    async def send(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        sender: str,
    ) -> DispatchOutcome:
        outcome = DispatchOutcome()
        user_ids = list(dict.fromkeys(recipients))
        if not user_ids:
            return outcome

        title = subject.strip() or self._default_title
        text = format_notification(
            title,
            body,
            now=self._clock(),
            sender=sender if self._include_sender else None,
        )

        for batch in batched(user_ids, self._batch_size):
            outcome.batches += 1
            try:
                task_id = await self._send_batch(batch, title, text)
            except BridgeError as exc:
                logger.warning(
                    "batch_delivery_failed",
                    recipients=len(batch),
                    kind=exc.kind,
                    reason=exc.reason,
                )
                for user_id in batch:
                    outcome.failed[user_id] = exc
                continue

            outcome.succeeded.extend(batch)
            outcome.task_ids.append(task_id)
            logger.info("batch_delivered", recipients=len(batch), task_id=task_id)

        return outcome

    async def _send_batch(self, batch: list[str], title: str, text: str) -> int:
        token = await self._credentials.get_token()
        try:
            return await self._client.send_markdown(token, batch, title, text)
        except BridgeError as exc:
            if token_rejected(exc):
                self._credentials.invalidate(token)
            raise
