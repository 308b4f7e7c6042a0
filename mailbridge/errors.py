"""Error kinds raised and recorded by the bridge pipeline.

Only :class:`SessionStateError` signals a programming/protocol error.  The
other kinds are scoped to a single recipient, batch, or decode step and end
up recorded on a :class:`~mailbridge.models.DispatchOutcome` or
:class:`~mailbridge.models.DecodedMessage` rather than escaping the session.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error the bridge records against a recipient."""

    kind: str = "bridge_error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason!r})"


class DecodeDegraded(BridgeError):
    """Decoding fell back to lower-fidelity content.  Never fatal."""

    kind = "decode_degraded"


class NotMapped(BridgeError):
    """The recipient address has no configured contact key."""

    kind = "not_mapped"


class LookupFailed(BridgeError):
    """The platform rejected (or could not answer) an identity lookup."""

    kind = "lookup_failed"


class AuthFailed(BridgeError):
    """The platform rejected authentication or issued an unusable token."""

    kind = "auth_failed"


class DeliveryFailed(BridgeError):
    """The platform rejected a send call for a batch."""

    kind = "delivery_failed"


class SessionStateError(Exception):
    """A session operation was invoked from a state that does not allow it."""
