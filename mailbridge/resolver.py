"""Mail address → DingTalk user id resolution."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

import structlog

from .address import normalize_address
from .credentials import CredentialCache
from .errors import BridgeError, LookupFailed, NotMapped
from .models import ResolutionResult
from .platform import DingTalkClient, token_rejected

logger = structlog.get_logger()


class IdentityResolver:
    """Maps mail addresses to platform user ids.

    *contact_mapping* (normalized address → mobile number) is copied into a
    read-only view at construction and never modified afterwards.
    """

    def __init__(
        self,
        contact_mapping: Mapping[str, str],
        client: DingTalkClient,
        credentials: CredentialCache,
    ) -> None:
        self._mapping = MappingProxyType(dict(contact_mapping))
        self._client = client
        self._credentials = credentials

    async def resolve(self, address: str) -> str:
        """Return the user id for *address*.

        Raises :class:`NotMapped` when the address has no contact key and
        :class:`LookupFailed` (or :class:`AuthFailed`) when the platform
        cannot answer.
        """
        normalized = normalize_address(address)
        mobile = self._mapping.get(normalized)
        if mobile is None:
            raise NotMapped(f"no contact key configured for {normalized or address!r}")

        token = await self._credentials.get_token()
        try:
            return await self._client.get_user_id_by_mobile(token, mobile)
        except LookupFailed as exc:
            if token_rejected(exc):
                self._credentials.invalidate(token)
            raise

    async def resolve_all(self, addresses: Iterable[str]) -> ResolutionResult:
        """Resolve every address in order, collecting failures per address."""
        result = ResolutionResult()
        seen: set[str] = set()

        for address in addresses:
            key = normalize_address(address) or address
            if key in seen:
                continue
            seen.add(key)

            try:
                user_id = await self.resolve(address)
            except BridgeError as exc:
                logger.warning(
                    "recipient_unresolved",
                    address=key,
                    kind=exc.kind,
                    reason=exc.reason,
                )
                result.failed[key] = exc
                continue

            result.resolved.append((key, user_id))

        return result
