"""MIME decoding: raw RFC 822 bytes → subject and Markdown body.

The decoder never raises.  Every stage degrades to the best
content it can salvage and records a :class:`DecodeDegraded` on the result
instead of raising, so a malformed mail still produces a notification.
"""

from __future__ import annotations

import email.errors
import email.header
import email.parser
import email.policy
import re
from email.message import Message

import structlog
from markdownify import markdownify

from .errors import DecodeDegraded
from .models import DecodedMessage

logger = structlog.get_logger()

# unknown-8bit is what the email package reports for raw 8-bit header bytes
NATIVE_CHARSETS = frozenset({"utf-8", "utf8", "us-ascii", "ascii", "unknown-8bit"})

_STRIP_BLOCKS = re.compile(
    r"<(head|style|script)\b[^>]*>.*?</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")
_BASE64_DEFECTS = (
    email.errors.InvalidBase64PaddingDefect,
    email.errors.InvalidBase64CharactersDefect,
    email.errors.InvalidBase64LengthDefect,
)


def decode_text(payload: bytes, charset: str | None) -> tuple[str, DecodeDegraded | None]:
    """Decode *payload* according to its declared *charset*.

    UTF-8, US-ASCII and unlabelled 8-bit header bytes are decoded as
    strict UTF-8 and reported as degraded only when the bytes are invalid.
    Any other charset is decoded best-effort and always reported as
    degraded.
    """
    name = (charset or "us-ascii").strip().lower()

    if name in NATIVE_CHARSETS:
        try:
            return payload.decode("utf-8"), None
        except UnicodeDecodeError:
            return (
                payload.decode("utf-8", errors="replace"),
                DecodeDegraded(f"invalid bytes for declared charset {name}"),
            )

    issue = DecodeDegraded(f"unsupported charset {name}, decoded best-effort")
    try:
        return payload.decode(name, errors="replace"), issue
    except LookupError:
        return payload.decode("utf-8", errors="replace"), issue


def html_to_markdown(html: str) -> tuple[str, DecodeDegraded | None]:
    """Convert an HTML body to Markdown with style content removed.

    ``<head>``, ``<style>`` and ``<script>`` blocks are dropped before
    conversion.  If the converter fails the stripped HTML is returned.
    """
    stripped = _STRIP_BLOCKS.sub("", html)
    try:
        converted = markdownify(stripped, heading_style="ATX", bullets="-")
    except Exception as exc:
        logger.warning("html_conversion_failed", error=str(exc))
        return stripped.strip(), DecodeDegraded(f"html conversion failed: {exc}")
    return _EXCESS_BLANK_LINES.sub("\n\n", converted).strip(), None


def _recover(value: str) -> str:
    """Turn surrogate-escaped 8-bit header text back into printable UTF-8."""
    return value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


class MimeDecoder:
    """Stateless decoder: raw message bytes → :class:`DecodedMessage`.

    Multipart trees are walked with an explicit stack bounded by
    *max_depth* nesting levels and *max_parts* leaf parts.
    """

    def __init__(self, *, max_depth: int = 16, max_parts: int = 256) -> None:
        self._max_depth = max_depth
        self._max_parts = max_parts
        self._parser = email.parser.BytesParser(policy=email.policy.compat32)

    def decode(self, raw: bytes) -> DecodedMessage:
        issues: list[DecodeDegraded] = []
        try:
            msg = self._parser.parsebytes(raw)
            subject = self._decode_subject(msg, issues)
            body = self._decode_body(msg, issues)
        except Exception as exc:
            logger.exception("mime_decode_failed")
            issues.append(DecodeDegraded(f"message could not be parsed: {exc}"))
            return DecodedMessage(
                subject="",
                body=raw.decode("utf-8", errors="replace"),
                degraded=issues,
            )

        for issue in issues:
            logger.warning("mime_decode_degraded", reason=issue.reason)
        return DecodedMessage(subject=subject, body=body, degraded=issues)

    # ------------------------------------------------------------------
    # Subject
    # ------------------------------------------------------------------

    def _decode_subject(self, msg: Message, issues: list[DecodeDegraded]) -> str:
        # compat32 hands back a Header holding unknown-8bit chunks when the
        # raw subject carries 8-bit bytes; decode_header returns those bytes
        raw_value = msg.get("Subject")
        if raw_value is None:
            return ""

        try:
            chunks = email.header.decode_header(raw_value)
        except email.errors.HeaderParseError as exc:
            issues.append(DecodeDegraded(f"subject could not be decoded: {exc}"))
            return " ".join(str(raw_value).split())

        parts: list[str] = []
        for chunk, charset in chunks:
            if isinstance(chunk, str):
                parts.append(chunk)
                continue
            text, issue = decode_text(chunk, charset)
            if issue is not None:
                issues.append(DecodeDegraded(f"subject: {issue.reason}"))
            parts.append(text)

        return " ".join("".join(parts).split())

    # ------------------------------------------------------------------
    # Body
    # ------------------------------------------------------------------

    def _decode_body(self, msg: Message, issues: list[DecodeDegraded]) -> str:
        declared = msg.get("Content-Type")
        if declared is not None and "/" not in str(declared).split(";", 1)[0]:
            issues.append(DecodeDegraded(f"unparsable Content-Type {str(declared)!r}"))
            return self._raw_payload(msg)

        if not msg.is_multipart():
            if msg.get_content_maintype() == "multipart":
                issues.append(DecodeDegraded("multipart message without boundary"))
                return self._raw_payload(msg)
            text = self._decode_leaf(msg, issues)
            if msg.get_content_type() == "text/html":
                return self._convert_html(text, issues)
            return text

        html, plain = self._walk(msg, issues)
        if html.strip():
            converted = self._convert_html(html, issues)
            if converted:
                return converted
        if plain.strip():
            return plain
        issues.append(DecodeDegraded("multipart message without a text part"))
        return ""

    def _walk(self, root: Message, issues: list[DecodeDegraded]) -> tuple[str, str]:
        """Return the first (html, plain) leaves with visible text, unstripped."""
        html = ""
        plain = ""
        leaves = 0
        stack: list[tuple[Message, int]] = [(root, 0)]

        while stack:
            part, depth = stack.pop()

            if part.is_multipart():
                if depth >= self._max_depth:
                    issues.append(
                        DecodeDegraded(f"parts nested deeper than {self._max_depth} skipped")
                    )
                    continue
                children = part.get_payload()
                stack.extend((child, depth + 1) for child in reversed(children))
                continue

            leaves += 1
            if leaves > self._max_parts:
                issues.append(DecodeDegraded(f"parts beyond {self._max_parts} skipped"))
                break

            if "attachment" in str(part.get("Content-Disposition", "")).lower():
                continue

            content_type = part.get_content_type()
            if part.get_content_maintype() == "multipart":
                issues.append(DecodeDegraded("nested multipart without boundary"))
                if not plain.strip():
                    plain = self._raw_payload(part)
            elif content_type == "text/html" and not html.strip():
                html = self._decode_leaf(part, issues)
            elif content_type == "text/plain" and not plain.strip():
                plain = self._decode_leaf(part, issues)

        return html, plain

    def _decode_leaf(self, part: Message, issues: list[DecodeDegraded]) -> str:
        payload = part.get_payload(decode=True)
        if payload is None:
            return ""

        if any(isinstance(defect, _BASE64_DEFECTS) for defect in part.defects):
            issues.append(DecodeDegraded("malformed base64 content"))

        text, issue = decode_text(payload, part.get_content_charset())
        if issue is not None:
            issues.append(issue)
        return text

    def _convert_html(self, html: str, issues: list[DecodeDegraded]) -> str:
        markdown, issue = html_to_markdown(html)
        if issue is not None:
            issues.append(issue)
        return markdown

    @staticmethod
    def _raw_payload(part: Message) -> str:
        payload = part.get_payload()
        if isinstance(payload, list):
            return ""
        return _recover(payload)
