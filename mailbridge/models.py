"""Data models passed between the bridge pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .errors import BridgeError, DecodeDegraded


class SessionState(str, Enum):
    """Lifecycle of one mail transaction inside an SMTP connection."""

    IDLE = "idle"
    READY = "ready"
    COLLECTING = "collecting"
    COMPLETED = "completed"


class BridgeStatus(str, Enum):
    """Runtime status of the bridge process."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Envelope:
    """Sender and recipients of one message, as given by the SMTP client."""

    sender: str
    recipients: tuple[str, ...] = ()


@dataclass
class DecodedMessage:
    """Subject and Markdown body extracted from a raw message."""

    subject: str
    body: str
    degraded: list[DecodeDegraded] = field(default_factory=list)

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded)


@dataclass
class ResolutionResult:
    """Per-recipient resolution results, in declaration order."""

    resolved: list[tuple[str, str]] = field(default_factory=list)
    failed: dict[str, BridgeError] = field(default_factory=dict)

    @property
    def user_ids(self) -> list[str]:
        """Resolved platform user ids, first occurrence wins."""
        return list(dict.fromkeys(user_id for _, user_id in self.resolved))


@dataclass
class DispatchOutcome:
    """Where every recipient of one dispatch ended up.

    ``failed`` is keyed by mail address for recipients that never resolved
    and by platform user id for recipients whose send call failed.
    """

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, BridgeError] = field(default_factory=dict)
    batches: int = 0
    task_ids: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    def merge_failures(self, failures: dict[str, BridgeError]) -> None:
        for key, error in failures.items():
            self.failed.setdefault(key, error)

    def summary(self) -> dict[str, Any]:
        return {
            "succeeded": len(self.succeeded),
            "failed": {key: f"{err.kind}: {err.reason}" for key, err in self.failed.items()},
            "batches": self.batches,
        }


@dataclass
class BridgeStats:
    """Process-wide counters surfaced on the health endpoint."""

    messages_received: int = 0
    messages_failed: int = 0
    recipients_delivered: int = 0
    recipients_failed: int = 0

    def record(self, outcome: DispatchOutcome) -> None:
        self.messages_received += 1
        self.recipients_delivered += len(outcome.succeeded)
        self.recipients_failed += len(outcome.failed)


class HealthStatus(BaseModel):
    """Response model for the /health probe endpoint."""

    service: str = Field(default="mailbridge", description="Service name")
    status: BridgeStatus = Field(description="Current bridge status")
    uptime_seconds: float = Field(description="Seconds since the bridge started")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Bridge counters and credential state",
    )
