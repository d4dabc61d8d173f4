"""Tests for the offline mutation queue."""

import re
from unittest.mock import AsyncMock, call

import pytest

from mailsync.core.errors import MutationQueueError, RemoteAPIError
from mailsync.engine.mutations import (
    QUEUE_META_KEY,
    Mutation,
    MutationQueue,
    calculate_backoff,
    new_mutation_id,
)
from mailsync.engine.session import MailSession

ACCOUNT = "alice@example.com"


class FakeClock:
    """Wall clock the test moves by hand."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(session: MailSession, clock: FakeClock) -> MutationQueue:
    """Queue on an offline session so processing only runs when the test asks."""
    session.online.set(False)
    return MutationQueue(session, clock=clock)


async def _go_online_and_process(session: MailSession, queue: MutationQueue) -> int:
    session.online.set(True)
    return await queue.process()


class TestHelpers:
    """Tests for ids and backoff."""

    def test_mutation_id_format(self) -> None:
        """Test the mut_<ms>_<hex> shape."""
        assert re.fullmatch(r"mut_1700000000000_[0-9a-f]{6}", new_mutation_id(1_700_000_000.0))

    @pytest.mark.parametrize(
        ("retry_count", "low", "high"),
        [(0, 3.0, 3.6), (1, 6.0, 7.2), (3, 24.0, 28.8), (10, 120.0, 144.0)],
    )
    def test_backoff_bounds(self, retry_count: int, low: float, high: float) -> None:
        """Test exponential growth, the cap and the jitter ceiling."""
        delay = calculate_backoff(retry_count)
        assert low <= delay <= high

    def test_from_dict_tolerates_missing_fields(self) -> None:
        """Test that sparse stored entries load with defaults."""
        mutation = Mutation.from_dict({"id": "mut_1", "type": "move"})
        assert mutation.status == "pending"
        assert mutation.retry_count == 0
        assert mutation.payload == {}


class TestQueueMutation:
    """Tests for MutationQueue.queue_mutation()."""

    @pytest.mark.asyncio
    async def test_offline_mutation_persisted(
        self, session: MailSession, queue: MutationQueue, fake_api: AsyncMock
    ) -> None:
        """Test that an offline mutation is stored with the account and not sent."""
        payload = {"messageId": "m1", "targetFolder": "Archive"}
        mutation = await queue.queue_mutation("move", payload)

        assert mutation.payload["account"] == ACCOUNT
        assert queue.queued.get() == 1
        stored = await session.store.get_meta(ACCOUNT, QUEUE_META_KEY)
        assert [item["id"] for item in stored] == [mutation.id]
        fake_api.update_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, queue: MutationQueue) -> None:
        """Test that only known mutation types are accepted."""
        with pytest.raises(MutationQueueError):
            await queue.queue_mutation("archive", {"messageId": "m1"})  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_online_mutation_processed_in_background(
        self, session: MailSession, clock: FakeClock, fake_api: AsyncMock
    ) -> None:
        """Test that queueing while online replays the queue at once."""
        queue = MutationQueue(session, clock=clock)

        await queue.queue_mutation("delete", {"messageId": "m1", "permanent": True})
        await session.drain()

        fake_api.delete_message.assert_awaited_once_with("m1", permanent=True)
        assert await queue.read() == []
        assert queue.queued.get() == 0


class TestProcess:
    """Tests for MutationQueue.process()."""

    @pytest.mark.asyncio
    async def test_replays_in_order(
        self, session: MailSession, queue: MutationQueue, fake_api: AsyncMock
    ) -> None:
        """Test that each mutation type maps to the right API call."""
        await queue.queue_mutation(
            "toggleRead", {"messageId": "m1", "isUnread": False, "flags": ["\\Flagged"]}
        )
        await queue.queue_mutation("toggleStar", {"messageId": "m2", "isStarred": True})
        await queue.queue_mutation("label", {"messageId": "m3", "labels": ["Work"]})

        assert await _go_online_and_process(session, queue) == 3

        assert fake_api.update_message.await_args_list == [
            call("m1", {"flags": ["\\Flagged", "\\Seen"], "folder": None}),
            call("m2", {"flags": [], "folder": None}),
            call("m3", {"labels": ["Work"]}),
        ]
        assert await queue.read() == []

    @pytest.mark.asyncio
    async def test_failure_backs_off(
        self,
        session: MailSession,
        queue: MutationQueue,
        clock: FakeClock,
        fake_api: AsyncMock,
    ) -> None:
        """Test that a failed attempt waits for its retry time."""
        fake_api.update_message.side_effect = RemoteAPIError("offline")
        await queue.queue_mutation("move", {"messageId": "m1", "targetFolder": "Archive"})

        assert await _go_online_and_process(session, queue) == 0
        [pending] = await queue.read()
        assert pending.status == "pending"
        assert pending.retry_count == 1
        assert pending.next_retry_at is not None
        assert pending.next_retry_at >= clock.now + 6.0

        await queue.process()
        assert fake_api.update_message.await_count == 1

        fake_api.update_message.side_effect = None
        clock.now += 10.0
        assert await queue.process() == 1
        assert await queue.read() == []

    @pytest.mark.asyncio
    async def test_permanent_failure_dropped(
        self,
        session: MailSession,
        queue: MutationQueue,
        clock: FakeClock,
        fake_api: AsyncMock,
    ) -> None:
        """Test that an entry is removed after the retry limit."""
        session.config.mutation_queue.max_retries = 2
        fake_api.update_message.side_effect = RemoteAPIError("gone", status_code=404)
        await queue.queue_mutation("label", {"messageId": "m1", "labels": []})

        await _go_online_and_process(session, queue)
        clock.now += 1000.0
        await queue.process()

        assert fake_api.update_message.await_count == 2
        assert await queue.read() == []

    @pytest.mark.asyncio
    async def test_missing_message_id_counts_as_failure(
        self, session: MailSession, queue: MutationQueue, fake_api: AsyncMock
    ) -> None:
        """Test that a malformed entry fails without calling the API."""
        await queue.queue_mutation("move", {"targetFolder": "Archive"})

        assert await _go_online_and_process(session, queue) == 0

        fake_api.update_message.assert_not_called()
        [entry] = await queue.read()
        assert entry.retry_count == 1

    @pytest.mark.asyncio
    async def test_offline_process_is_noop(
        self, queue: MutationQueue, fake_api: AsyncMock
    ) -> None:
        """Test that nothing is sent while offline."""
        await queue.queue_mutation("delete", {"messageId": "m1"})
        assert await queue.process() == 0
        fake_api.delete_message.assert_not_called()
        assert await queue.count() == 1

    @pytest.mark.asyncio
    async def test_clear_completed_keeps_pending(
        self, session: MailSession, queue: MutationQueue
    ) -> None:
        """Test that only pending and processing entries survive."""
        entries = [
            Mutation(id="a", type="move", payload={}, status="pending"),
            Mutation(id="b", type="move", payload={}, status="completed"),
            Mutation(id="c", type="move", payload={}, status="failed", retry_count=5),
        ]
        await session.store.put_meta(
            ACCOUNT, QUEUE_META_KEY, [entry.__dict__ for entry in entries]
        )

        await queue.clear_completed()

        assert [m.id for m in await queue.read()] == ["a"]
