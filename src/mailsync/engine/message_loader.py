"""Message detail loader: cache first, single-flight fetch, decrypt or parse.

load_detail() resolves one message body and delivers every result through
callbacks. The states run in order and stop at the first success:

1. Resolve the server id (invalid input is reported through on_error)
2. Bail out silently if the composed cancellation token is already cancelled
3. Cache lookup:
   - body without sanitizer counters: re-sanitize, render, write back
   - complete body: render unless debounced; refresh metadata in the
     background when the cached meta lacks the parsed structure
   - encrypted body or raw: run the decrypt pipeline on the cached source
4. Join an in-flight fetch for the same ``account:id`` if there is one
5. Fetch: worker first, then the API (skipped when the worker already
   supplied raw source for a locked PGP message)
6. Decrypt or MIME-parse, sanitize, write the cache
7. On failure render the last good cache entry, then report the error

Cancellation (per-call token or account switch) ends the load with status
``aborted`` and never reaches on_error.

Usage:
    from mailsync.engine.message_loader import DetailCallbacks, MessageLoader

    loader = MessageLoader(session, pipeline)
    await loader.load_detail(message, DetailCallbacks(on_body=print))
"""

from __future__ import annotations

import html
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mailsync.core.cancellation import CancellationToken
from mailsync.core.errors import (
    DatabaseError,
    InvalidMessageError,
    MailSyncError,
    OperationCancelled,
)
from mailsync.core.inflight import InFlightRegistry
from mailsync.core.logging import get_logger
from mailsync.core.result import ErrorKind, capture
from mailsync.db.store import MessageBody, utcnow
from mailsync.engine.decrypt import (
    DEFAULT_LOCKED_MESSAGE,
    PGP_MESSAGE_BEGIN,
    extract_pgp_armor,
    is_pgp_encrypted,
)
from mailsync.mime import (
    Attachment,
    apply_inline_attachments,
    map_server_attachments,
    sanitize_attachments,
)
from mailsync.sanitize import SanitizeResult, extract_text_content, sanitize_html

if TYPE_CHECKING:
    from mailsync.db.store import MailStore, Message
    from mailsync.engine.decrypt import DecryptPipeline
    from mailsync.engine.session import MailSession

logger = get_logger(__name__)

BODY_CANVAS_CLASS = "mailsync-message"

# Key whose presence marks cached meta as carrying the parsed message structure
PARSED_META_KEY = "nodemailer"

# Leading escaped markup marks a body that was HTML-escaped twice
_DOUBLE_ENCODED_PREFIXES = ("&lt;html", "&lt;!doctype", "&lt;body", "&lt;div", "&lt;table")


class DetailStatus(StrEnum):
    """How a load_detail() call ended."""

    INVALID = "invalid"
    ABORTED = "aborted"
    CACHE_RESANITIZED = "cache_resanitized"
    CACHE_HIT = "cache_hit"
    CACHE_HIT_META_REFRESH = "cache_hit_meta_refresh"
    CACHE_DEBOUNCED = "cache_debounced"
    CACHE_AFTER_INFLIGHT = "cache_after_inflight"
    PGP_CACHE_DECRYPTED = "pgp_cache_decrypted"
    PGP_DECRYPTED = "pgp_decrypted"
    PGP_LOCKED = "pgp_locked"
    WORKER_RENDERED = "worker_rendered"
    NETWORK_RENDERED = "network_rendered"
    CACHE_FALLBACK = "cache_fallback"
    ERROR = "error"


@dataclass(frozen=True)
class ImageStatus:
    """Remote image and tracking pixel counters for the rendered body."""

    has_blocked_images: bool
    tracking_pixel_count: int
    blocked_remote_image_count: int

    @classmethod
    def from_sanitized(cls, result: SanitizeResult) -> ImageStatus:
        return cls(
            has_blocked_images=result.has_blocked_images,
            tracking_pixel_count=result.tracking_pixel_count,
            blocked_remote_image_count=result.blocked_remote_image_count,
        )

    @classmethod
    def from_cached(cls, body: MessageBody) -> ImageStatus:
        pixels = body.tracking_pixel_count or 0
        blocked = body.blocked_remote_image_count or 0
        return cls(
            has_blocked_images=pixels > 0 or blocked > 0,
            tracking_pixel_count=pixels,
            blocked_remote_image_count=blocked,
        )


@dataclass
class DetailCallbacks:
    """Result sinks for one load. Every sink is optional."""

    on_body: Callable[[str], None] | None = None
    on_attachments: Callable[[list[Attachment]], None] | None = None
    on_image_status: Callable[[ImageStatus], None] | None = None
    on_pgp_status: Callable[[bool], None] | None = None
    on_meta: Callable[[dict[str, Any]], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    on_loading: Callable[[bool], None] | None = None
    cancel_token: CancellationToken | None = None
    allow_pgp_prompt: bool = True

    def body(self, value: str) -> None:
        if self.on_body:
            self.on_body(value)

    def attachments(self, value: list[Attachment]) -> None:
        if self.on_attachments:
            self.on_attachments(value)

    def image_status(self, value: ImageStatus) -> None:
        if self.on_image_status:
            self.on_image_status(value)

    def pgp_status(self, locked: bool) -> None:
        if self.on_pgp_status:
            self.on_pgp_status(locked)

    def meta(self, value: dict[str, Any] | None) -> None:
        if self.on_meta and value is not None:
            self.on_meta(value)

    def error(self, value: Exception) -> None:
        if self.on_error:
            self.on_error(value)

    def loading(self, value: bool) -> None:
        if self.on_loading:
            self.on_loading(value)


@dataclass
class _Rendered:
    """Processed fetch result, rendered by whichever caller started the fetch."""

    source: str
    html: str = ""
    image_status: ImageStatus | None = None
    attachments: list[Attachment] = field(default_factory=list)
    meta: dict[str, Any] | None = None
    pgp_locked: bool = False
    locked_message: str | None = None


def message_api_id(message: Message) -> str | None:
    """Server-side identifier of a message, or None when it has none."""
    value = (message.id or "").strip() if message is not None else ""
    return value or None


def is_cached_body_complete(cached: MessageBody | None) -> bool:
    """A cached body is complete when present and not encrypted."""
    return bool(cached and cached.body and not is_pgp_encrypted(cached.body))


def is_meta_complete(meta: Any) -> bool:
    return isinstance(meta, dict) and bool(meta.get(PARSED_META_KEY))


def looks_double_encoded(body: str | None) -> bool:
    if not body:
        return False
    return body.lstrip()[:16].lower().startswith(_DOUBLE_ENCODED_PREFIXES)


def wrap_body(content: str) -> str:
    return f'<div class="{BODY_CANVAS_CLASS}">{content}</div>'


def locked_placeholder(message: str | None) -> str:
    text = html.escape(message or DEFAULT_LOCKED_MESSAGE)
    return f'<pre style="white-space:pre-wrap">{text}</pre>'


def _first_text(*values: Any) -> str:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return ""


def _message_payload(message: Message, message_id: str) -> dict[str, Any]:
    return {
        "id": message_id,
        "folder": message.folder,
        "subject": message.subject,
        "from": message.sender,
        "to": list(message.recipients),
        "snippet": message.preview,
        "date": message.date.isoformat() if message.date else None,
        "labels": list(message.labels),
    }


class MessageLoader:
    """Loads, decrypts, sanitizes and caches message bodies."""

    def __init__(self, session: MailSession, decryptor: DecryptPipeline):
        self._session = session
        self._decryptor = decryptor

    @property
    def _store(self) -> MailStore:
        return self._session.store

    def _sanitize(self, content: str) -> SanitizeResult:
        options = self._session.config.sanitize
        return sanitize_html(
            content,
            block_remote_images=options.block_remote_images,
            block_tracking_pixels=options.block_tracking_pixels,
        )

    async def _read_cache(self, account: str, message_id: str) -> MessageBody | None:
        try:
            return await self._store.get_body(account, message_id)
        except DatabaseError as e:
            logger.warning("body_cache_read_failed", message_id=message_id, error=str(e))
            return None

    def _render(
        self,
        callbacks: DetailCallbacks,
        key: str,
        content: str,
        image_status: ImageStatus,
        attachments: list[Attachment],
    ) -> None:
        callbacks.body(wrap_body(content))
        callbacks.image_status(image_status)
        callbacks.attachments(attachments)
        self._session.mark_rendered(key)

    def _render_cached(self, callbacks: DetailCallbacks, key: str, cached: MessageBody) -> None:
        attachments = sanitize_attachments(cached.attachments)
        self._render(
            callbacks,
            key,
            apply_inline_attachments(cached.body, attachments),
            ImageStatus.from_cached(cached),
            attachments,
        )

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def load_detail(
        self, message: Message, callbacks: DetailCallbacks | None = None
    ) -> DetailStatus:
        """Load one message body, delivering results through ``callbacks``.

        Returns:
            The final DetailStatus (for logging and tests; callers may ignore it)
        """
        callbacks = callbacks or DetailCallbacks()
        message_id = message_api_id(message)
        if not message_id:
            callbacks.error(InvalidMessageError("Invalid message ID"))
            return DetailStatus.INVALID

        account = self._session.current_account
        account_token = self._session.account_token
        token = CancellationToken.any_of(callbacks.cancel_token, account_token)
        start_time = time.monotonic()
        try:
            status = await self._load_detail(message, message_id, account, callbacks, token)
        except OperationCancelled as e:
            logger.debug("message_load_aborted", message_id=message_id, reason=e.reason)
            status = DetailStatus.ABORTED
        finally:
            if token is not callbacks.cancel_token and token is not account_token:
                token.release()

        logger.debug(
            "message_load_complete",
            message_id=message_id,
            status=status.value,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
        return status

    async def _load_detail(
        self,
        message: Message,
        message_id: str,
        account: str,
        callbacks: DetailCallbacks,
        token: CancellationToken,
    ) -> DetailStatus:
        token.raise_if_cancelled()
        session = self._session
        key = session.detail_key(account, message_id)

        cached = await self._read_cache(account, message_id)
        token.raise_if_cancelled()

        if cached and looks_double_encoded(cached.body):
            logger.warning("body_cache_corrupted", message_id=message_id)
            try:
                await self._store.delete_body(account, message_id)
            except DatabaseError as e:
                logger.warning("body_cache_delete_failed", message_id=message_id, error=str(e))
            token.raise_if_cancelled()
            cached = None

        if is_cached_body_complete(cached):
            assert cached is not None
            callbacks.pgp_status(False)
            if session.is_debounced(key):
                callbacks.loading(False)
                return DetailStatus.CACHE_DEBOUNCED

            if cached.tracking_pixel_count is None:
                self._resanitize(message, account, key, cached, callbacks)
                return DetailStatus.CACHE_RESANITIZED

            self._render_cached(callbacks, key, cached)
            callbacks.meta(cached.meta or None)
            callbacks.loading(False)
            if is_meta_complete(cached.meta):
                return DetailStatus.CACHE_HIT

            session.spawn(
                self.load_detail_network(
                    message,
                    meta_only=True,
                    callbacks=DetailCallbacks(on_meta=callbacks.on_meta),
                    cancel_token=session.account_token,
                ),
                name="meta_refresh",
            )
            return DetailStatus.CACHE_HIT_META_REFRESH

        if cached is not None:
            pgp_source = self._cached_pgp_source(cached)
            if pgp_source:
                handled = await self._handle_cached_pgp_raw(
                    message, message_id, account, pgp_source, cached.meta, callbacks, token
                )
                if handled is not None:
                    return handled

        existing = session.detail_inflight.get(key)
        if existing is not None:
            joined = await capture(token.guard(InFlightRegistry.join(existing)))
            token.raise_if_cancelled()
            if joined.ok:
                fresh = await self._read_cache(account, message_id)
                token.raise_if_cancelled()
                if is_cached_body_complete(fresh):
                    assert fresh is not None
                    callbacks.pgp_status(False)
                    self._render_cached(callbacks, key, fresh)
                    callbacks.meta(fresh.meta or None)
                    callbacks.loading(False)
                    return DetailStatus.CACHE_AFTER_INFLIGHT
                # Locked or uncached outcomes are rendered from the shared result
                if isinstance(joined.value, _Rendered):
                    status = self._render_outcome(callbacks, key, joined.value)
                    callbacks.loading(False)
                    return status
            logger.debug(
                "inflight_join_fell_through",
                message_id=message_id,
                kind=joined.kind.value if joined.kind else None,
            )

        callbacks.loading(True)
        try:
            return await self._fetch_and_render(message, message_id, account, callbacks, token)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning(
                "message_load_failed",
                message_id=message_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            status = DetailStatus.ERROR
            fallback = await self._read_cache(account, message_id)
            if not token.cancelled and is_cached_body_complete(fallback):
                assert fallback is not None
                self._render_cached(callbacks, key, fallback)
                status = DetailStatus.CACHE_FALLBACK
            callbacks.error(e)
            return status
        finally:
            callbacks.loading(False)

    @staticmethod
    def _cached_pgp_source(cached: MessageBody) -> str | None:
        """Encrypted source held by a cache entry; raw wins over a mis-stored body."""
        if cached.raw and is_pgp_encrypted(cached.raw):
            return cached.raw
        if cached.body and is_pgp_encrypted(cached.body):
            return cached.body
        return None

    def _resanitize(
        self,
        message: Message,
        account: str,
        key: str,
        cached: MessageBody,
        callbacks: DetailCallbacks,
    ) -> None:
        attachments = sanitize_attachments(cached.attachments)
        sanitized = self._sanitize(apply_inline_attachments(cached.body, attachments))
        self._session.spawn(
            self.cache_message_content(
                message,
                account,
                cached.body,
                attachments,
                raw=cached.raw or cached.body,
                text_content=cached.text_content,
                meta=cached.meta,
            ),
            name="resanitize_write",
        )
        callbacks.body(wrap_body(sanitized.html))
        callbacks.image_status(ImageStatus.from_sanitized(sanitized))
        callbacks.attachments(attachments)
        callbacks.meta(cached.meta or None)
        callbacks.loading(False)
        self._session.mark_rendered(key)

    # -------------------------------------------------------------------------
    # Cached PGP source
    # -------------------------------------------------------------------------

    async def _handle_cached_pgp_raw(
        self,
        message: Message,
        message_id: str,
        account: str,
        raw: str,
        meta: dict[str, Any],
        callbacks: DetailCallbacks,
        token: CancellationToken,
    ) -> DetailStatus | None:
        """Decrypt an encrypted cache entry.

        Returns:
            A status when the entry was handled (rendered, debounced or
            reported locked), None to continue with a network fetch
        """
        if not raw or not is_pgp_encrypted(raw):
            return None

        key = self._session.detail_key(account, message_id)
        fresh = await self._read_cache(account, message_id)
        token.raise_if_cancelled()
        if is_cached_body_complete(fresh):
            # A concurrent load decrypted it while we were reading
            assert fresh is not None
            callbacks.pgp_status(False)
            if self._session.is_debounced(key):
                return DetailStatus.CACHE_DEBOUNCED
            self._render_cached(callbacks, key, fresh)
            callbacks.meta(fresh.meta or meta or None)
            return DetailStatus.PGP_CACHE_DECRYPTED

        result = await self._decryptor.try_decrypt(
            extract_pgp_armor(raw),
            account=account,
            message_id=message_id,
            allow_prompt=callbacks.allow_pgp_prompt,
            cancel_token=token,
        )
        token.raise_if_cancelled()

        if result.success:
            callbacks.pgp_status(False)
            attachments = sanitize_attachments(result.attachments)
            sanitized = self._sanitize(result.body)
            self._render(
                callbacks, key, sanitized.html, ImageStatus.from_sanitized(sanitized), attachments
            )
            callbacks.meta(meta or None)
            await self.cache_message_content(
                message,
                account,
                result.body,
                attachments,
                raw=result.raw_body or raw,
                text_content=result.text_content,
                meta=meta,
            )
            return DetailStatus.PGP_CACHE_DECRYPTED

        callbacks.pgp_status(True)
        if callbacks.allow_pgp_prompt:
            callbacks.body(locked_placeholder(result.message))
        return DetailStatus.PGP_LOCKED

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    async def _fetch_and_render(
        self,
        message: Message,
        message_id: str,
        account: str,
        callbacks: DetailCallbacks,
        token: CancellationToken,
    ) -> DetailStatus:
        key = self._session.detail_key(account, message_id)
        task = self._session.detail_inflight.start(
            key,
            lambda: self._fetch_detail(
                message, message_id, account, callbacks.allow_pgp_prompt, token
            ),
        )
        outcome: _Rendered = await token.guard(InFlightRegistry.join(task))
        token.raise_if_cancelled()
        return self._render_outcome(callbacks, key, outcome)

    def _render_outcome(
        self, callbacks: DetailCallbacks, key: str, outcome: _Rendered
    ) -> DetailStatus:
        callbacks.meta(outcome.meta)
        if outcome.pgp_locked:
            callbacks.pgp_status(True)
            if callbacks.allow_pgp_prompt:
                callbacks.body(locked_placeholder(outcome.locked_message))
            return DetailStatus.PGP_LOCKED

        callbacks.pgp_status(False)
        assert outcome.image_status is not None
        self._render(callbacks, key, outcome.html, outcome.image_status, outcome.attachments)
        if outcome.source == "worker":
            return DetailStatus.WORKER_RENDERED
        if outcome.source == "pgp":
            return DetailStatus.PGP_DECRYPTED
        return DetailStatus.NETWORK_RENDERED

    async def _fetch_detail(
        self,
        message: Message,
        message_id: str,
        account: str,
        allow_prompt: bool,
        token: CancellationToken,
    ) -> _Rendered:
        """The shared fetch: worker or API, then decrypt or parse, then cache.

        The cache write completes before this returns so that callers who
        joined the fetch find a complete entry.
        """
        worker_result = await self._session.worker.message_detail(
            account, message.folder, _message_payload(message, message_id), cancel_token=token
        )
        token.raise_if_cancelled()
        answer = worker_result.value if worker_result.ok else None
        if not isinstance(answer, dict):
            answer = {}

        body = answer.get("body")
        if body and not answer.get("pgpLocked") and not is_pgp_encrypted(body):
            attachments = sanitize_attachments(answer.get("attachments"))
            sanitized = self._sanitize(apply_inline_attachments(body, attachments))
            await self.cache_message_content(message, account, body, attachments, raw=body)
            return _Rendered(
                source="worker",
                html=sanitized.html,
                image_status=ImageStatus.from_sanitized(sanitized),
                attachments=attachments,
            )

        if answer.get("pgpLocked") and isinstance(answer.get("raw"), str) and answer["raw"]:
            logger.debug("worker_pgp_locked", message_id=message_id)
            result = answer
        else:
            result = await self._session.api.get_message(
                message_id, folder=message.folder, raw=True, cancel_token=token
            )
            token.raise_if_cancelled()

        return await self._process_detail(message, message_id, account, result, allow_prompt, token)

    async def _process_detail(
        self,
        message: Message,
        message_id: str,
        account: str,
        result: dict[str, Any],
        allow_prompt: bool,
        token: CancellationToken,
    ) -> _Rendered:
        raw = result.get("raw") if isinstance(result.get("raw"), str) else ""
        raw_is_pgp = is_pgp_encrypted(raw)
        extracted = ""
        if raw_is_pgp:
            armor = extract_pgp_armor(raw)
            if PGP_MESSAGE_BEGIN in armor:
                extracted = armor

        parsed_meta = result.get(PARSED_META_KEY)
        if not isinstance(parsed_meta, dict):
            parsed_meta = {}
        server_text = _first_text(
            result.get("Plain"),
            result.get("text"),
            result.get("body"),
            result.get("preview"),
            parsed_meta.get("text"),
            parsed_meta.get("preview"),
        )
        raw_body = (
            _first_text(
                result.get("html"),
                result.get("Html"),
                result.get("textAsHtml"),
                parsed_meta.get("html"),
                parsed_meta.get("textAsHtml"),
            )
            or server_text
            or extracted
            or message.preview
            or ""
        )
        is_pgp = (
            raw_is_pgp
            or bool(extracted)
            or is_pgp_encrypted(raw_body)
            or is_pgp_encrypted(server_text)
        )
        attachments = map_server_attachments(
            parsed_meta.get("attachments") or result.get("attachments") or []
        )

        if is_pgp:
            pgp_input = (
                extracted
                or (raw if raw_is_pgp else "")
                or extract_pgp_armor(raw_body or server_text)
            )
            decrypted = await self._decryptor.try_decrypt(
                pgp_input,
                account=account,
                message_id=message_id,
                allow_prompt=allow_prompt,
                cancel_token=token,
            )
            token.raise_if_cancelled()
            if not decrypted.success:
                # Encrypted content is never cached as plaintext
                return _Rendered(
                    source="pgp", meta=result, pgp_locked=True, locked_message=decrypted.message
                )
            parsed_attachments = sanitize_attachments(decrypted.attachments)
            sanitized = self._sanitize(decrypted.body)
            await self.cache_message_content(
                message,
                account,
                decrypted.body,
                parsed_attachments,
                raw=decrypted.raw_body or pgp_input,
                text_content=decrypted.text_content,
                meta=result,
            )
            return _Rendered(
                source="pgp",
                html=sanitized.html,
                image_status=ImageStatus.from_sanitized(sanitized),
                attachments=parsed_attachments,
                meta=result,
            )

        raw_mime = raw or raw_body
        parsed = await self._session.worker.parse(
            raw_mime, [att.to_dict() for att in attachments], cancel_token=token
        )
        if parsed.kind is ErrorKind.CANCELLED:
            token.raise_if_cancelled()
            raise OperationCancelled(parsed.message)

        if parsed.ok and isinstance(parsed.value, dict):
            parsed_body = parsed.value.get("body") or ""
            parsed_attachments = sanitize_attachments(parsed.value.get("attachments"))
            sanitized = self._sanitize(parsed_body)
            await self.cache_message_content(
                message,
                account,
                parsed_body,
                parsed_attachments,
                raw=raw_mime,
                text_content=parsed.value.get("textContent") or "",
                meta=result,
            )
            return _Rendered(
                source="network",
                html=sanitized.html,
                image_status=ImageStatus.from_sanitized(sanitized),
                attachments=parsed_attachments,
                meta=result,
            )

        logger.debug(
            "mime_parse_fallback",
            message_id=message_id,
            kind=parsed.kind.value if parsed.kind else None,
        )
        inlined = apply_inline_attachments(raw_body, attachments)
        sanitized = self._sanitize(inlined)
        await self.cache_message_content(
            message,
            account,
            inlined,
            attachments,
            raw=raw_body,
            text_content=server_text or extract_text_content(inlined or raw_body),
            meta=result,
        )
        return _Rendered(
            source="network",
            html=sanitized.html,
            image_status=ImageStatus.from_sanitized(sanitized),
            attachments=attachments,
            meta=result,
        )

    # -------------------------------------------------------------------------
    # Network-only load and metadata refresh
    # -------------------------------------------------------------------------

    async def load_detail_network(
        self,
        message: Message,
        *,
        folder: str | None = None,
        meta_only: bool = False,
        callbacks: DetailCallbacks | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        """Fetch a message without raw source and render or refresh metadata.

        With ``meta_only`` only the cached entry's meta is updated; the body
        is not re-rendered. Failures are logged and reported to on_error.
        """
        callbacks = callbacks or DetailCallbacks()
        message_id = message_api_id(message)
        if not message_id:
            return
        account = self._session.current_account
        token = cancel_token or self._session.account_token

        try:
            token.raise_if_cancelled()
            result = await self._session.api.get_message(
                message_id, folder=folder or message.folder, raw=False, cancel_token=token
            )
            token.raise_if_cancelled()
            callbacks.meta(result)

            if meta_only:
                try:
                    await self._store.update_body_meta(account, message_id, result)
                except DatabaseError as e:
                    logger.warning("meta_refresh_write_failed", message_id=message_id, error=str(e))
                return

            parsed_meta = result.get(PARSED_META_KEY)
            if not isinstance(parsed_meta, dict):
                parsed_meta = {}
            server_text = _first_text(
                result.get("Plain"),
                result.get("text"),
                result.get("body"),
                result.get("preview"),
                parsed_meta.get("text"),
                parsed_meta.get("preview"),
            )
            raw_body = (
                _first_text(
                    result.get("html"),
                    result.get("Html"),
                    result.get("textAsHtml"),
                    parsed_meta.get("html"),
                    parsed_meta.get("textAsHtml"),
                )
                or server_text
                or message.preview
                or ""
            )
            attachments = map_server_attachments(
                parsed_meta.get("attachments") or result.get("attachments") or []
            )
            sanitized = self._sanitize(raw_body)
            callbacks.body(wrap_body(sanitized.html))
            callbacks.image_status(ImageStatus.from_sanitized(sanitized))
            callbacks.attachments(attachments)
            await self.cache_message_content(
                message, account, raw_body, attachments, raw=raw_body, meta=result
            )

        except OperationCancelled:
            logger.debug("network_load_aborted", message_id=message_id)
        except MailSyncError as e:
            logger.warning("network_load_failed", message_id=message_id, error=str(e))
            callbacks.error(e)

    # -------------------------------------------------------------------------
    # Cache maintenance
    # -------------------------------------------------------------------------

    async def cache_message_content(
        self,
        message: Message,
        account: str,
        rendered_body: str,
        attachments: list[Attachment] | None = None,
        *,
        raw: str = "",
        text_content: str = "",
        meta: dict[str, Any] | None = None,
    ) -> bool:
        """Sanitize and persist a body. Write failures are logged, not raised.

        Returns:
            True if the entry was written
        """
        message_id = message_api_id(message)
        if not message_id or not rendered_body:
            return False

        sanitized = self._sanitize(rendered_body)
        now = utcnow()
        record = MessageBody(
            id=message_id,
            account=account,
            folder=message.folder,
            body=sanitized.html,
            raw=raw or rendered_body,
            text_content=text_content or extract_text_content(rendered_body),
            attachments=[att.to_dict() for att in attachments or []],
            meta=meta or {},
            tracking_pixel_count=sanitized.tracking_pixel_count,
            blocked_remote_image_count=sanitized.blocked_remote_image_count,
            sanitized_at=now,
            updated_at=now,
        )
        try:
            await self._store.put_body(record)
        except DatabaseError as e:
            logger.warning("cache_write_failed", message_id=message_id, error=str(e))
            return False
        return True

    async def invalidate_pgp_cached_bodies(self, account: str | None = None) -> int:
        """Delete cached bodies whose raw or body is encrypted.

        Run after keys change so the next read decrypts with the new set.

        Returns:
            Number of entries deleted (0 when the store could not be read)
        """
        account = account or self._session.current_account
        try:
            bodies = await self._store.list_bodies(account)
            stale = [
                body.id
                for body in bodies
                if is_pgp_encrypted(body.raw) or is_pgp_encrypted(body.body)
            ]
            deleted = await self._store.bulk_delete_bodies(account, stale)
        except DatabaseError as e:
            logger.warning("pgp_cache_invalidation_failed", account=account, error=str(e))
            return 0
        if deleted:
            logger.info("pgp_cached_bodies_invalidated", account=account, count=deleted)
        return deleted
