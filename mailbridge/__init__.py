"""mailbridge: deliver inbound SMTP mail as DingTalk work notifications.

Public API re-exported here for convenience::

    from mailbridge import BridgeService, load_config
"""

from .config import BridgeConfig, PlatformConfig, RetryConfig, SmtpConfig, load_config
from .credentials import CredentialCache
from .dispatcher import Dispatcher, format_notification
from .errors import (
    AuthFailed,
    BridgeError,
    DecodeDegraded,
    DeliveryFailed,
    LookupFailed,
    NotMapped,
    SessionStateError,
)
from .mime import MimeDecoder
from .models import DecodedMessage, DispatchOutcome, Envelope, SessionState
from .pipeline import Pipeline
from .platform import DingTalkClient
from .resolver import IdentityResolver
from .service import BridgeService
from .session import IngestionSession
from .smtp import BridgeHandler, SmtpServer

__all__ = [
    "AuthFailed",
    "BridgeConfig",
    "BridgeError",
    "BridgeHandler",
    "BridgeService",
    "CredentialCache",
    "DecodeDegraded",
    "DecodedMessage",
    "DeliveryFailed",
    "DingTalkClient",
    "DispatchOutcome",
    "Dispatcher",
    "Envelope",
    "IdentityResolver",
    "IngestionSession",
    "LookupFailed",
    "MimeDecoder",
    "NotMapped",
    "Pipeline",
    "PlatformConfig",
    "RetryConfig",
    "SessionState",
    "SessionStateError",
    "SmtpConfig",
    "SmtpServer",
    "load_config",
]
