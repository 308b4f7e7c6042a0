"""Mail address normalization shared by config loading and resolution."""

from __future__ import annotations

import email.utils


def normalize_address(raw: str) -> str:
    """Reduce ``"Name <addr>"`` (or a bare address) to a lowercase address.

    Surrounding whitespace is trimmed.  Inputs that ``parseaddr`` cannot
    make sense of are returned trimmed and lowercased so that the caller's
    mapping lookup fails cleanly instead of raising.
    """
    value = raw.strip()
    if not value:
        return ""

    _, addr = email.utils.parseaddr(value)
    if not addr:
        start = value.find("<")
        end = value.find(">", start + 1)
        addr = value[start + 1 : end] if start != -1 and end != -1 else value
    return addr.strip().lower()
