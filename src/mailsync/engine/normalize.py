"""Map server and worker message records onto the Message shape."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

import regex

from mailsync.db.store import Message, parse_datetime, utcnow
from mailsync.mime import decode_mime_header
from mailsync.sanitize import REGEX_TIMEOUT

NO_SUBJECT = "(No subject)"
PREVIEW_LENGTH = 140

_EMPTY_LABEL = regex.compile(r"^\[\s*\]$")


def coerce_label_list(value: Any) -> list[str]:
    """Labels as a clean list; accepts lists and comma-separated strings.

    Blank entries and the literal ``[]`` some servers send are dropped.
    """
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, list | tuple):
        items = list(value)
    else:
        return []

    labels = []
    for item in items:
        label = str(item if item is not None else "").strip()
        if not label or _EMPTY_LABEL.match(label, timeout=REGEX_TIMEOUT):
            continue
        labels.append(label)
    return labels


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _sender(raw: Mapping[str, Any]) -> str:
    for value in (raw.get("From"), raw.get("from")):
        if isinstance(value, Mapping):
            text = _text(value.get("Display")) or _text(value.get("Email")) or _text(
                value.get("text")
            )
            if text:
                return text
        elif _text(value):
            return _text(value)
    if _text(raw.get("sender")):
        return _text(raw.get("sender"))
    parsed = raw.get("nodemailer")
    if isinstance(parsed, Mapping) and isinstance(parsed.get("from"), Mapping):
        return _text(parsed["from"].get("text"))
    return ""


def _recipients(raw: Mapping[str, Any]) -> list[str]:
    value = raw.get("To") or raw.get("to") or []
    if isinstance(value, Mapping):
        value = value.get("value") or value.get("text") or []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]

    recipients = []
    for item in value if isinstance(value, list) else []:
        if isinstance(item, Mapping):
            address = _text(item.get("address")) or _text(item.get("Email")) or _text(
                item.get("email")
            )
            name = _text(item.get("name")) or _text(item.get("Display"))
            if address or name:
                recipients.append(address or name)
        elif _text(item):
            recipients.append(_text(item))
    return recipients


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _date(raw: Mapping[str, Any]) -> datetime:
    for key in ("Date", "date", "header_date", "internal_date", "received_at"):
        parsed = parse_datetime(raw.get(key))
        if parsed is not None:
            return parsed
    return utcnow()


def _preview(raw: Mapping[str, Any]) -> str:
    plain = raw.get("Plain")
    if isinstance(plain, str) and plain:
        return plain[:PREVIEW_LENGTH]
    for key in ("snippet", "preview", "text"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value[:PREVIEW_LENGTH]
    parsed = raw.get("nodemailer")
    if isinstance(parsed, Mapping) and isinstance(parsed.get("text"), str):
        return parsed["text"][:PREVIEW_LENGTH]
    return ""


def normalize_message(raw: Mapping[str, Any], account: str, folder: str) -> Message | None:
    """Build a Message from a server or worker record.

    Returns:
        The Message, or None when the record carries no identifier
    """
    message_id = _str_or_none(raw.get("Uid") or raw.get("id") or raw.get("uid"))
    if message_id is None:
        return None

    flags = raw.get("flags")
    if isinstance(flags, list):
        flags = [str(flag) for flag in flags]
        is_unread = "\\Seen" not in flags
    else:
        flags = []
        is_unread = bool(raw.get("is_unread", True))
    if raw.get("is_starred") and "\\Flagged" not in flags:
        flags.append("\\Flagged")

    return Message(
        id=message_id,
        account=account,
        folder=str(raw.get("folder_path") or raw.get("folder") or raw.get("path") or folder),
        subject=decode_mime_header(raw.get("Subject") or raw.get("subject")) or NO_SUBJECT,
        sender=_sender(raw),
        recipients=_recipients(raw),
        date=_date(raw),
        flags=flags,
        labels=coerce_label_list(raw.get("labels") or raw.get("Labels")),
        is_unread=is_unread,
        has_attachments=bool(
            raw.get("has_attachment") or raw.get("hasAttachments") or raw.get("has_attachments")
        ),
        uid=_str_or_none(raw.get("Uid") or raw.get("uid")),
        message_id=_str_or_none(
            raw.get("MessageId") or raw.get("message_id") or raw.get("Message-ID")
        ),
        header_message_id=_str_or_none(
            raw.get("header_message_id") or raw.get("headerMessageId")
        ),
        preview=_preview(raw),
    )


def decorate_cached(message: Message) -> Message:
    """Decode encoded-word subjects of records read back from the cache."""
    subject = decode_mime_header(message.subject) or NO_SUBJECT
    if subject == message.subject:
        return message
    return replace(message, subject=subject)
