"""Mail synchronization engines.

This package provides the client-side processing engines:
- Session state shared by every engine (account token, in-flight maps, caches)
- Message detail loading with PGP decryption and MIME parsing
- Folder list synchronization with merge and prune
- Background body prefetch
- Optimistic actions backed by the offline mutation queue
- Inbox poller
"""

from mailsync.engine.actions import ActionResult, MailboxActions
from mailsync.engine.decrypt import (
    DecryptPipeline,
    DecryptResult,
    MissingKeyNotifier,
    PassphraseAnswer,
    PassphrasePrompt,
    extract_pgp_armor,
    is_pgp_encrypted,
)
from mailsync.engine.keyring import Keyring, PgpKey
from mailsync.engine.list_sync import (
    ListStatus,
    ListSyncEngine,
    MailboxState,
    SearchIndex,
    build_folder_list,
    sort_messages,
)
from mailsync.engine.merge import (
    get_message_key,
    merge_message_pages,
    merge_missing_from,
    merge_missing_labels,
)
from mailsync.engine.message_loader import (
    DetailCallbacks,
    DetailStatus,
    ImageStatus,
    MessageLoader,
    is_cached_body_complete,
)
from mailsync.engine.mutations import Mutation, MutationQueue, calculate_backoff
from mailsync.engine.normalize import coerce_label_list, normalize_message
from mailsync.engine.poller import InboxPoller
from mailsync.engine.prefetch import PrefetchScheduler, calculate_prefetch_priority
from mailsync.engine.session import MailSession, PageCache

__all__ = [
    # Session
    "MailSession",
    "PageCache",
    # Message detail
    "DetailCallbacks",
    "DetailStatus",
    "ImageStatus",
    "MessageLoader",
    "is_cached_body_complete",
    # PGP
    "DecryptPipeline",
    "DecryptResult",
    "Keyring",
    "MissingKeyNotifier",
    "PassphraseAnswer",
    "PassphrasePrompt",
    "PgpKey",
    "extract_pgp_armor",
    "is_pgp_encrypted",
    # List sync
    "ListStatus",
    "ListSyncEngine",
    "MailboxState",
    "SearchIndex",
    "build_folder_list",
    "sort_messages",
    # Merge and normalize
    "coerce_label_list",
    "get_message_key",
    "merge_message_pages",
    "merge_missing_from",
    "merge_missing_labels",
    "normalize_message",
    # Prefetch
    "PrefetchScheduler",
    "calculate_prefetch_priority",
    # Actions and mutation queue
    "ActionResult",
    "MailboxActions",
    "Mutation",
    "MutationQueue",
    "calculate_backoff",
    # Poller
    "InboxPoller",
]
