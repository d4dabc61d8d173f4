"""MIME helpers: attachment descriptors, inline cid substitution, raw parsing.

Attachment descriptors are plain records that survive JSON round trips through
the cache. Inline parts carry a data URL in ``href`` so a body can reference
them after ``cid:`` substitution without another fetch.

Usage:
    from mailsync.mime import parse_raw_message, sanitize_attachments

    parsed = parse_raw_message(raw_source)
    attachments = sanitize_attachments(server_payload.get("attachments", []))
"""

from __future__ import annotations

import base64
import html
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from email import policy
from email.header import decode_header, make_header
from email.message import EmailMessage
from email.parser import Parser
from typing import Any

import regex

from mailsync.core.errors import InvalidMessageError
from mailsync.core.logging import get_logger
from mailsync.sanitize import REGEX_TIMEOUT, extract_text_content

logger = get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CID_REFERENCE_PATTERN = regex.compile(r"""cid:([^"'\s)>]+)""", regex.IGNORECASE)


@dataclass
class Attachment:
    """Attachment descriptor as delivered to callbacks and stored in the cache."""

    name: str
    filename: str
    content_type: str = DEFAULT_CONTENT_TYPE
    size: int = 0
    content_id: str | None = None
    href: str | None = None
    disposition: str | None = None
    needs_download: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_inline(self) -> bool:
        return self.disposition == "inline" or bool(self.content_id)


@dataclass
class ParsedMessage:
    """Structured result of parse_raw_message()."""

    body: str
    text_content: str
    attachments: list[Attachment]
    subject: str = ""
    header_message_id: str | None = None


def _first(source: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def _strip_cid(cid: str | None) -> str | None:
    if not cid:
        return None
    return cid.strip().removeprefix("<").removesuffix(">") or None


def generate_attachment_name(attachment: Mapping[str, Any]) -> str:
    """Derive a file name from the content id or content type.

    ``<logo@example.com>`` with ``image/png`` becomes ``logo.png``; without a
    content id the result is ``attachment.<ext>``.
    """
    content_type = str(_first(attachment, "content_type", "contentType", "mimeType", "type") or "")
    ext = content_type.split("/")[1].split(";")[0].strip() if "/" in content_type else ""
    ext = ext or "bin"
    cid = _strip_cid(_first(attachment, "content_id", "contentId", "cid"))
    if cid:
        local_part = cid.split("@")[0]
        if local_part:
            return f"{local_part}.{ext}"
    return f"attachment.{ext}"


def sanitize_attachments(
    items: Iterable[Mapping[str, Any] | Attachment] | None,
) -> list[Attachment]:
    """Normalize attachment records from any source into Attachment objects.

    Accepts both snake_case (cache) and camelCase (server/worker) keys. Entries
    that end up without a name are dropped.
    """
    if not items:
        return []

    result = []
    for item in items:
        if isinstance(item, Attachment):
            item = item.to_dict()
        if not isinstance(item, Mapping):
            continue

        name = _first(item, "name", "filename") or generate_attachment_name(item)
        content = item.get("content")
        href = item.get("href") or (
            content if isinstance(content, str) and content.startswith("data:") else None
        )
        attachment = Attachment(
            name=str(name),
            filename=str(_first(item, "filename", "name") or name),
            content_type=str(
                _first(item, "content_type", "contentType", "mimeType", "type")
                or DEFAULT_CONTENT_TYPE
            ),
            size=int(item.get("size") or 0),
            content_id=_strip_cid(_first(item, "content_id", "contentId", "cid")),
            href=href,
            disposition=_first(item, "disposition", "contentDisposition"),
            needs_download=bool(_first(item, "needs_download", "needsDownload")),
        )
        if attachment.name:
            result.append(attachment)
    return result


def buffer_to_data_url(content: bytes | str, content_type: str | None) -> str:
    """Encode attachment bytes (or an already base64 string) as a data URL."""
    if isinstance(content, str):
        if content.startswith("data:"):
            return content
        encoded = content
    else:
        encoded = base64.b64encode(content).decode("ascii")
    return f"data:{content_type or DEFAULT_CONTENT_TYPE};base64,{encoded}"


def map_server_attachments(items: Iterable[Mapping[str, Any]] | None) -> list[Attachment]:
    """Map attachment records from a message detail response.

    An attachment is inline when its disposition says so or it has a content
    id. Its href is the server URL when present, else a data URL for inline
    parts that ship their content. Anything without an href needs a download.
    """
    mapped = []
    for item in items or []:
        if not isinstance(item, Mapping):
            continue
        content_id = _first(item, "cid", "contentId")
        disposition = str(_first(item, "disposition", "contentDisposition") or "").lower()
        is_inline = disposition == "inline" or bool(content_id)
        url = item.get("url")
        content = item.get("content")
        content_type = _first(item, "contentType", "mimeType", "type")

        href = None
        if url:
            href = url
        elif is_inline and content:
            href = buffer_to_data_url(content, content_type)

        size = item.get("size") or (len(content) if isinstance(content, bytes | str) else 0)
        mapped.append(
            {
                "name": _first(item, "name", "filename"),
                "filename": item.get("filename"),
                "size": size,
                "contentId": content_id,
                "disposition": disposition or None,
                "href": href,
                "contentType": content_type,
                "needsDownload": href is None,
            }
        )
    return sanitize_attachments(mapped)


def apply_inline_attachments(body: str | None, attachments: Iterable[Attachment]) -> str:
    """Replace ``cid:`` references in a body with the matching attachment href."""
    if not body:
        return ""
    by_cid = {
        att.content_id.lower(): att.href
        for att in attachments
        if att.content_id and att.href
    }
    if not by_cid:
        return body

    def _replace(match: regex.Match) -> str:
        href = by_cid.get(_strip_cid(match.group(1)).lower())  # type: ignore[union-attr]
        return html.escape(href, quote=True) if href else match.group(0)

    try:
        return CID_REFERENCE_PATTERN.sub(_replace, body, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("regex_timeout", step="apply_inline_attachments", body_length=len(body))
        return body


def decode_mime_header(value: str | None) -> str:
    """Decode RFC 2047 encoded words (``=?UTF-8?B?...?=``). Undecodable input is returned as-is."""
    if not value:
        return ""
    if "=?" not in value:
        return value
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, ValueError) as e:
        logger.debug("header_decode_failed", error=str(e))
        return value


def _text_to_html(text: str) -> str:
    return "<div>" + html.escape(text).replace("\n", "<br>\n") + "</div>"


def _part_text(part: EmailMessage) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _merge_existing(
    parsed: list[Attachment], existing: Iterable[Mapping[str, Any] | Attachment] | None
) -> list[Attachment]:
    known = sanitize_attachments(existing)
    if not known:
        return parsed
    by_key = {}
    for att in known:
        if att.content_id:
            by_key[("cid", att.content_id.lower())] = att
        by_key[("name", att.filename)] = att

    for att in parsed:
        match = (att.content_id and by_key.get(("cid", att.content_id.lower()))) or by_key.get(
            ("name", att.filename)
        )
        if match and match.href and not att.href:
            att.href = match.href
            att.needs_download = False
    return parsed


def parse_raw_message(
    raw: str,
    existing_attachments: Iterable[Mapping[str, Any] | Attachment] | None = None,
) -> ParsedMessage:
    """Parse an RFC 5322 source into body, text and attachments.

    The HTML part is preferred; a plain-text-only message is escaped into
    HTML. Inline parts get data URL hrefs and their ``cid:`` references in
    the body are substituted.

    Args:
        raw: Full message source including headers
        existing_attachments: Descriptors already known for this message, used
            to fill in hrefs the raw source cannot provide

    Raises:
        InvalidMessageError: If the input has no headers or no readable body
    """
    if not raw or not raw.strip():
        raise InvalidMessageError("Cannot parse an empty message source")

    message = Parser(policy=policy.default).parsestr(raw)
    if not message.keys():
        raise InvalidMessageError("Message source has no RFC 5322 headers")

    html_part = message.get_body(preferencelist=("html",))
    plain_part = message.get_body(preferencelist=("plain",))
    if html_part is None and plain_part is None:
        raise InvalidMessageError("Message source has no text/html or text/plain body")

    plain_text = _part_text(plain_part) if plain_part is not None else ""
    body = _part_text(html_part) if html_part is not None else _text_to_html(plain_text)

    body_parts = {id(html_part), id(plain_part)}
    attachments: list[Attachment] = []
    for part in message.walk():
        if part.is_multipart() or id(part) in body_parts:
            continue
        content = part.get_payload(decode=True) or b""
        content_id = _strip_cid(part.get("Content-ID"))
        disposition = part.get_content_disposition()
        content_type = part.get_content_type()
        is_inline = disposition == "inline" or bool(content_id)
        attachments.append(
            Attachment(
                name=part.get_filename() or "",
                filename=part.get_filename() or "",
                content_type=content_type,
                size=len(content),
                content_id=content_id,
                href=buffer_to_data_url(content, content_type) if is_inline else None,
                disposition=disposition,
                needs_download=not is_inline,
            )
        )

    # Reuse the shared fallback naming for unnamed parts
    attachments = sanitize_attachments(attachments)
    attachments = _merge_existing(attachments, existing_attachments)

    body = apply_inline_attachments(body, attachments)
    text_content = plain_text or extract_text_content(body)

    return ParsedMessage(
        body=body,
        text_content=text_content,
        attachments=attachments,
        subject=decode_mime_header(str(message.get("Subject", ""))),
        header_message_id=_strip_cid(message.get("Message-ID")),
    )
