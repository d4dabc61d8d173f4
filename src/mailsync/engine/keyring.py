"""Per-account PGP key and passphrase storage.

Keys and remembered passphrases live in the store's meta table under
``pgp_keys`` and ``pgp_passphrases``. Every change is pushed to the
background worker so it re-reads its key set.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from mailsync.core.errors import DatabaseError
from mailsync.core.logging import get_logger

if TYPE_CHECKING:
    from mailsync.db.store import MailStore
    from mailsync.remote.worker import WorkerClient

logger = get_logger(__name__)

KEYS_META_KEY = "pgp_keys"
PASSPHRASES_META_KEY = "pgp_passphrases"


@dataclass(frozen=True)
class PgpKey:
    """An armored private key as entered by the user."""

    name: str
    value: str


class Keyring:
    """Reads and writes PGP keys for each account."""

    def __init__(self, store: MailStore, worker: WorkerClient):
        self._store = store
        self._worker = worker

    async def keys(self, account: str) -> list[PgpKey]:
        """Stored keys for ``account``. A read failure counts as no keys."""
        try:
            stored = await self._store.get_meta(account, KEYS_META_KEY, [])
        except DatabaseError as e:
            logger.warning("pgp_keys_read_failed", account=account, error=str(e))
            return []
        if not isinstance(stored, list):
            return []
        return [
            PgpKey(name=str(item.get("name") or ""), value=str(item.get("value") or ""))
            for item in stored
            if isinstance(item, dict) and item.get("value")
        ]

    async def add_key(self, account: str, name: str, value: str) -> None:
        """Add a key, replacing any key stored under the same name."""
        keys = [key for key in await self.keys(account) if key.name != name]
        keys.append(PgpKey(name=name, value=value))
        await self._store.put_meta(account, KEYS_META_KEY, [asdict(key) for key in keys])
        logger.info("pgp_key_added", account=account, key_name=name, key_count=len(keys))
        self._refresh_worker(account, keys)

    async def remove_key(self, account: str, name: str) -> bool:
        """Remove a key and its remembered passphrase.

        Returns:
            True if a key was removed
        """
        existing = await self.keys(account)
        keys = [key for key in existing if key.name != name]
        if len(keys) == len(existing):
            return False
        await self._store.put_meta(account, KEYS_META_KEY, [asdict(key) for key in keys])

        passphrases = await self._passphrases(account)
        if passphrases.pop(name, None) is not None:
            await self._store.put_meta(account, PASSPHRASES_META_KEY, passphrases)

        logger.info("pgp_key_removed", account=account, key_name=name)
        self._refresh_worker(account, keys)
        return True

    async def _passphrases(self, account: str) -> dict[str, str]:
        try:
            stored = await self._store.get_meta(account, PASSPHRASES_META_KEY, {})
        except DatabaseError as e:
            logger.warning("pgp_passphrases_read_failed", account=account, error=str(e))
            return {}
        return stored if isinstance(stored, dict) else {}

    async def stored_passphrase(self, account: str, key_name: str) -> str | None:
        return (await self._passphrases(account)).get(key_name) or None

    async def save_passphrase(self, account: str, key_name: str, passphrase: str) -> bool:
        """Remember a passphrase for ``key_name``.

        Returns:
            False if it could not be persisted (it stays usable for this session)
        """
        passphrases = await self._passphrases(account)
        passphrases[key_name] = passphrase
        try:
            await self._store.put_meta(account, PASSPHRASES_META_KEY, passphrases)
        except DatabaseError as e:
            logger.warning("pgp_passphrase_save_failed", key_name=key_name, error=str(e))
            return False
        logger.debug("pgp_passphrase_saved", key_name=key_name)
        self._refresh_worker(account, await self.keys(account))
        return True

    def _refresh_worker(self, account: str, keys: list[PgpKey]) -> None:
        self._worker.refresh_keys(account, [asdict(key) for key in keys])
