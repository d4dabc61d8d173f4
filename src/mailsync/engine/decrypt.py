"""PGP detection and the key-unlock/decrypt pipeline.

The pipeline never decrypts anything itself. It walks the account's keys,
makes sure each one is unlocked in the worker (probing once per key whether
a passphrase is needed, prompting for one when allowed), and then asks the
worker to decrypt the armored text.

Pipeline per call:
1. No armored input: fail
2. No keys configured: show the one-time missing-key notice (when prompting
   is allowed) and fail
3. For each key: reuse a cached or stored passphrase, check whether the key
   needs one, prompt with a timeout if it does, unlock it in the worker
4. Request decryption from the worker

Prompts are serialized across concurrent calls by the session's prompt lock.
A prompt that times out or is cancelled abandons that key only.

Usage:
    from mailsync.engine.decrypt import DecryptPipeline, is_pgp_encrypted

    if is_pgp_encrypted(raw):
        result = await pipeline.try_decrypt(extract_pgp_armor(raw), account="alice")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from mailsync.core.errors import OperationCancelled
from mailsync.core.logging import get_logger
from mailsync.core.result import ErrorKind

if TYPE_CHECKING:
    from mailsync.core.cancellation import CancellationToken
    from mailsync.engine.keyring import Keyring, PgpKey
    from mailsync.engine.session import MailSession

logger = get_logger(__name__)

PGP_MESSAGE_BEGIN = "-----BEGIN PGP MESSAGE-----"
PGP_MESSAGE_END = "-----END PGP MESSAGE-----"
DEFAULT_LOCKED_MESSAGE = "PGP encrypted message. Unable to decrypt with current keys."


def is_pgp_encrypted(content: str | None) -> bool:
    """Inline armor, or a PGP/MIME (multipart/encrypted) source."""
    if not content or not isinstance(content, str):
        return False
    if PGP_MESSAGE_BEGIN in content:
        return True
    return "multipart/encrypted" in content and "application/pgp-encrypted" in content


def extract_pgp_armor(content: str) -> str:
    """Cut the armored block (BEGIN through END line) out of ``content``.

    Content without a complete block is returned unchanged so PGP/MIME
    sources reach the worker whole.
    """
    start = content.find(PGP_MESSAGE_BEGIN)
    if start == -1:
        return content
    end = content.find(PGP_MESSAGE_END, start)
    if end == -1:
        return content
    return content[start : end + len(PGP_MESSAGE_END)]


@dataclass
class DecryptResult:
    """Outcome of try_decrypt()."""

    success: bool
    body: str = ""
    text_content: str = ""
    attachments: list[dict[str, Any]] = field(default_factory=list)
    raw_body: str = ""
    reason: str | None = None
    message: str | None = None
    key_count: int | None = None


@dataclass
class PassphraseAnswer:
    passphrase: str | None = None
    remember: bool = False


class PassphrasePrompt(Protocol):
    """Asks the user for a key passphrase."""

    async def open(self, key_name: str) -> PassphraseAnswer | None:
        """Return the user's answer; raise OperationCancelled if the user cancels."""
        ...


class MissingKeyNotifier(Protocol):
    """Non-blocking "no PGP keys configured" notice."""

    def show(self, account: str, on_dismiss: Callable[[], None]) -> Callable[[], None]:
        """Display the notice and return a function that closes it.

        The notifier calls ``on_dismiss`` when the user dismisses the notice.
        """
        ...


class DecryptPipeline:
    """Unlocks keys in the worker and requests decryption.

    Attributes:
        prompt: Passphrase prompt, or None when no interactive UI is attached
        notifier: Missing-key notifier, or None
    """

    def __init__(
        self,
        session: MailSession,
        keyring: Keyring,
        prompt: PassphrasePrompt | None = None,
        notifier: MissingKeyNotifier | None = None,
    ):
        self._session = session
        self._keyring = keyring
        self.prompt = prompt
        self.notifier = notifier

    @property
    def _prompt_timeout(self) -> float:
        return self._session.config.pgp.prompt_timeout_seconds

    def _show_missing_key_notice(self, account: str) -> None:
        session = self._session
        if account in session.missing_key_shown or account in session.missing_key_dismissed:
            return
        session.missing_key_shown.add(account)
        if self.notifier is None:
            logger.warning("pgp_no_keys_configured", account=account)
            return

        timer: asyncio.TimerHandle | None = None

        def dismiss() -> None:
            if timer is not None:
                timer.cancel()
            session.missing_key_shown.discard(account)
            session.missing_key_dismissed.add(account)

        close = self.notifier.show(account, dismiss)

        def expire() -> None:
            session.missing_key_shown.discard(account)
            close()

        timer = asyncio.get_running_loop().call_later(
            session.config.pgp.notification_timeout_seconds, expire
        )

    async def _prompt_for(self, key: PgpKey) -> str | None:
        assert self.prompt is not None
        try:
            answer = await asyncio.wait_for(
                self.prompt.open(key.name or "PGP key"), self._prompt_timeout
            )
        except TimeoutError:
            logger.debug("passphrase_prompt_timed_out", key_name=key.name)
            return None
        except OperationCancelled:
            logger.debug("passphrase_prompt_cancelled", key_name=key.name)
            return None
        return answer.passphrase if answer else None

    async def _needs_passphrase(self, key: PgpKey) -> bool | None:
        """Check once per key; None means the key was unprotected and is now unlocked."""
        cache = self._session.needs_passphrase
        if key.name in cache:
            return cache[key.name]

        check = await self._session.worker.unlock_key(key.name, key.value, check_only=True)
        if not check.ok:
            cache[key.name] = True
            return True

        answer = check.value or {}
        needs = answer.get("needsPassphrase") is not False
        cache[key.name] = needs
        if answer.get("success") and answer.get("alreadyUnlocked"):
            logger.debug("pgp_key_unprotected", key_name=key.name)
            await self._session.worker.unlock_key(key.name, key.value)
            return None
        return needs

    async def _unlock(
        self, key: PgpKey, account: str, allow_prompt: bool, token: CancellationToken | None
    ) -> None:
        session = self._session
        passphrase = session.passphrases.get(key.name)
        if not passphrase:
            passphrase = await self._keyring.stored_passphrase(account, key.name)
            if passphrase:
                session.passphrases[key.name] = passphrase

        needs = await self._needs_passphrase(key)
        if token is not None:
            token.raise_if_cancelled()
        if needs is None:
            return

        if not passphrase and needs and allow_prompt:
            if self.prompt is None:
                logger.warning("passphrase_prompt_unavailable", key_name=key.name)
            else:
                async with session.prompt_lock:
                    # Another call may have collected it while we waited
                    passphrase = session.passphrases.get(key.name)
                    if not passphrase:
                        passphrase = await self._prompt_for(key)
                        if passphrase:
                            session.passphrases[key.name] = passphrase
                            await self._keyring.save_passphrase(account, key.name, passphrase)
                if token is not None:
                    token.raise_if_cancelled()

        if passphrase:
            unlocked = await session.worker.unlock_key(key.name, key.value, passphrase)
            if unlocked.ok and (unlocked.value or {}).get("success"):
                logger.debug("pgp_key_unlocked", key_name=key.name)
            elif not unlocked.ok:
                logger.warning("pgp_key_unlock_failed", key_name=key.name, error=unlocked.message)

    async def try_decrypt(
        self,
        armored: str,
        *,
        account: str,
        message_id: str | None = None,
        allow_prompt: bool = True,
        cancel_token: CancellationToken | None = None,
    ) -> DecryptResult:
        """Decrypt armored text with the account's keys.

        Args:
            armored: Armored block or full PGP/MIME source
            account: Account whose keys to use
            message_id: Passed to the worker for its own caching
            allow_prompt: Whether passphrase prompts and notices may be shown
            cancel_token: Checked after every suspension point

        Returns:
            DecryptResult; failures carry the worker's reason and message

        Raises:
            OperationCancelled: If cancel_token fires
        """
        if not armored or not isinstance(armored, str):
            return DecryptResult(success=False, reason="empty")

        keys = await self._keyring.keys(account)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if not keys:
            logger.debug("pgp_no_keys", account=account, allow_prompt=allow_prompt)
            if allow_prompt:
                self._show_missing_key_notice(account)
            return DecryptResult(success=False, reason="no_keys", key_count=0)

        for key in keys:
            await self._unlock(key, account, allow_prompt, cancel_token)

        result = await self._session.worker.decrypt(
            armored, message_id or "", account, cancel_token=cancel_token
        )
        if result.kind is ErrorKind.CANCELLED:
            raise OperationCancelled(result.message)
        if not result.ok:
            reason = result.kind.value if result.kind else None
            logger.warning("pgp_decrypt_request_failed", kind=reason, error=result.message)
            return DecryptResult(success=False, reason=reason)

        answer = result.value or {}
        if answer.get("success"):
            logger.debug("pgp_decrypted", message_id=message_id)
            return DecryptResult(
                success=True,
                body=answer.get("body") or "",
                text_content=answer.get("textContent") or "",
                attachments=list(answer.get("attachments") or []),
                raw_body=answer.get("rawBody") or "",
            )

        logger.debug(
            "pgp_decrypt_failed",
            message_id=message_id,
            reason=answer.get("reason"),
            key_count=answer.get("keyCount"),
        )
        return DecryptResult(
            success=False,
            reason=answer.get("reason"),
            message=answer.get("message"),
            key_count=answer.get("keyCount"),
        )
