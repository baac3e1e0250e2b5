"""
Tests for the Dispatcher against the in-memory document store.

Retry sleeps are recorded instead of awaited, so exhausting five attempts
takes no real time.
"""

import asyncio
import random

import pytest

from core.models.config import DispatcherConfig
from core.models.records import (
    DocumentPayload,
    FileRecord,
    OperationKind,
    SyncOperation,
    SyncState,
)
from core.remote.memory import InMemoryDocumentStore
from core.sync.deadletter import DeadLetterQueue
from core.sync.dispatcher import Dispatcher, OutcomeStatus
from core.sync.errors import PermanentError, RateLimited, RemoteUnavailable
from core.sync.identity import IdentityStore

PATH = "/tree/guides/start.md"
COPY_PATH = "/tree/guides/start.conflict-bbbbbbbb.md"
HASH = "a" * 64


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def payload(path=PATH, title="Start", text="Hello", content_hash=HASH, collection="Guides"):
    return DocumentPayload(
        title=title,
        text=text,
        collection=collection,
        source_path=path.split("/tree/", 1)[1],
        content_hash=content_hash,
    )


def create_op(path=PATH, **kwargs):
    return SyncOperation(
        kind=OperationKind.CREATE_REMOTE,
        path=path,
        content_hash=HASH,
        collection="Guides",
        payload=payload(path),
        **kwargs,
    )


def conflict_op(record, expected_version, local_wins=True):
    return SyncOperation(
        kind=OperationKind.CREATE_CONFLICT_COPY,
        path=PATH,
        content_hash="b" * 64,
        collection="Guides",
        payload=payload(text="Local edit", content_hash="b" * 64),
        remote_id=record.remote_id,
        expected_version=expected_version,
        conflict_path=COPY_PATH,
        conflict_payload=payload(
            COPY_PATH, title="Start (conflict bbbbbbbb)", text="Remote edit", content_hash="c" * 64
        ),
        local_wins=local_wins,
        manual_review=not local_wins,
        adopt_version=expected_version,
    )


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def identity():
    return IdentityStore()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def dispatcher(store, identity, sleep):
    config = DispatcherConfig(max_attempts=5, burst=50)
    return Dispatcher(
        store, identity, DeadLetterQueue(), config,
        sleep=sleep, rng=random.Random(1),
    )


async def synced(dispatcher, path=PATH):
    """Create a document through the dispatcher and return its record"""
    reservation = await dispatcher.identity.reserve(path)
    outcome = await dispatcher.submit(create_op(path), reservation)
    assert outcome.status == OutcomeStatus.SUCCEEDED
    return outcome.record


class TestCreate:
    """Test remote creation"""

    @pytest.mark.asyncio
    async def test_create_commits_synced_record(self, dispatcher, store, identity):
        reservation = await identity.reserve(PATH)
        outcome = await dispatcher.submit(create_op(), reservation)

        assert outcome.succeeded
        record = identity.lookup(PATH)
        assert record.sync_state == SyncState.SYNCED
        assert record.remote_version == 1
        assert [d.id for d in store.documents_in("Guides")] == [record.remote_id]
        assert store.documents[record.remote_id].metadata["source_path"] == "guides/start.md"
        assert not identity.is_reserved(PATH)

    @pytest.mark.asyncio
    async def test_collection_created_once(self, dispatcher, store):
        await synced(dispatcher, PATH)
        await synced(dispatcher, "/tree/guides/second.md")

        assert store.call_count("create_collection") == 1
        assert store.call_count("list_collections") == 1

    @pytest.mark.asyncio
    async def test_adopts_existing_document(self, dispatcher, store, identity):
        collection = await store.create_collection("Guides")
        existing = await store.create_document(
            collection.id, "Start", "old", {"source_path": "guides/start.md"}
        )
        reservation = await identity.reserve(PATH)
        await identity.commit(reservation, FileRecord(
            path=PATH, content_hash=HASH, collection="Guides", sync_state=SyncState.UNSYNCED,
        ))

        outcome = await dispatcher.submit(create_op(adopt_existing=True), reservation)

        assert outcome.record.remote_id == existing.id
        assert len(store.documents) == 1
        assert store.documents[existing.id].text == "Hello"

    @pytest.mark.asyncio
    async def test_never_adopts_document_owned_by_another_path(self, dispatcher, store, identity):
        # notes.md owns a document that still carries start.md's source path
        collection = await store.create_collection("Guides")
        owned = await store.create_document(
            collection.id, "Start", "Notes body", {"source_path": "guides/start.md"}
        )
        other = "/tree/guides/notes.md"
        reservation = await identity.reserve(other)
        await identity.commit(reservation, FileRecord(
            path=other, content_hash="d" * 64, remote_id=owned.id, remote_version=1,
            collection="Guides", sync_state=SyncState.SYNCED,
        ))
        await identity.release(reservation)

        reservation = await identity.reserve(PATH)
        await identity.commit(reservation, FileRecord(
            path=PATH, content_hash=HASH, collection="Guides", sync_state=SyncState.UNSYNCED,
        ))
        outcome = await dispatcher.submit(create_op(adopt_existing=True), reservation)

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert outcome.record.remote_id != owned.id
        assert store.documents[owned.id].text == "Notes body"
        assert identity.lookup(other).remote_id == owned.id
        assert len(store.documents) == 2


class TestRetries:
    """Test retry, backoff and dead-lettering"""

    @pytest.mark.asyncio
    async def test_rate_limited_exhausts_to_dead_letter(self, dispatcher, store, identity, sleep):
        store.fail_next("create_document", RateLimited(), times=10)
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(create_op(), reservation)

        assert outcome.status == OutcomeStatus.DEAD_LETTERED
        assert outcome.attempts == 5
        entry = outcome.dead_letter
        assert entry.attempt == 5
        assert entry.error_kind == "RateLimited"
        assert entry.operation.attempt == 5
        assert store.call_count("create_document") == 5
        assert len(sleep.delays) == 4
        assert not identity.is_reserved(PATH)
        # Only the intent record exists, nothing was confirmed remotely
        record = identity.lookup(PATH)
        assert record.sync_state == SyncState.UNSYNCED
        assert record.remote_id is None

    @pytest.mark.asyncio
    async def test_retry_after_raises_delay(self, dispatcher, store, identity, sleep):
        store.fail_next("create_document", RateLimited(retry_after=30.0))
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(create_op(), reservation)

        assert outcome.succeeded
        assert sleep.delays == [30.0]

    @pytest.mark.asyncio
    async def test_transient_then_success(self, dispatcher, store, identity):
        store.fail_next("create_document", RemoteUnavailable(status_code=503), times=2)
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(create_op(), reservation)

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert outcome.attempts == 3
        assert dispatcher.metrics.retries == 2

    @pytest.mark.asyncio
    async def test_permanent_error_dead_letters_immediately(self, dispatcher, store, identity, sleep):
        store.fail_next("create_document", PermanentError("bad request", status_code=400))
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(create_op(), reservation)

        assert outcome.status == OutcomeStatus.DEAD_LETTERED
        assert outcome.dead_letter.error_kind == "Permanent"
        assert outcome.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_invalid_document_never_reaches_remote(self, dispatcher, store, identity):
        operation = SyncOperation(
            kind=OperationKind.CREATE_REMOTE, path=PATH, content_hash=HASH,
            collection="Guides", invalid_reason="front matter has no title",
        )
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(operation, reservation)

        assert outcome.status == OutcomeStatus.DEAD_LETTERED
        assert outcome.dead_letter.error_kind == "ValidationFailed"
        assert outcome.dead_letter.attempt == 0
        assert store.calls == []
        assert identity.lookup(PATH).sync_state == SyncState.DEAD


class TestConflictsAndCircuits:
    """Test conflict and breaker outcomes"""

    @pytest.mark.asyncio
    async def test_stale_version_returns_conflict(self, dispatcher, store, identity):
        record = await synced(dispatcher)
        store.edit_remotely(record.remote_id, "edited elsewhere")

        reservation = await identity.reserve(PATH)
        operation = SyncOperation(
            kind=OperationKind.UPDATE_REMOTE, path=PATH, content_hash="b" * 64,
            collection="Guides", payload=payload(content_hash="b" * 64),
            remote_id=record.remote_id, expected_version=record.remote_version,
        )
        outcome = await dispatcher.submit(operation, reservation)

        assert outcome.status == OutcomeStatus.CONFLICT
        # Caller keeps the reservation to re-resolve
        assert identity.is_current(reservation)
        assert identity.lookup(PATH).content_hash == HASH
        assert len(dispatcher.dead_letters) == 0

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, dispatcher, store, identity):
        for _ in range(5):
            dispatcher.breakers["create"].record_failure()
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(create_op(), reservation)

        assert outcome.status == OutcomeStatus.CIRCUIT_OPEN
        assert len(dispatcher.dead_letters) == 0
        assert not identity.is_reserved(PATH)
        assert store.call_count("create_collection") == 0

        health = dispatcher.health()
        assert health["healthy"] is False
        assert health["open_circuits"] == ["create"]

    @pytest.mark.asyncio
    async def test_repeated_unavailability_opens_breaker(self, dispatcher, store, identity):
        store.fail_next("create_document", RemoteUnavailable(), times=10)
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(create_op(), reservation)

        # Collection creation succeeded, then four failures out of five samples
        # trip the breaker before the fifth attempt
        assert outcome.status == OutcomeStatus.CIRCUIT_OPEN
        assert dispatcher.breakers["create"].is_open()
        assert store.call_count("create_document") == 4

    @pytest.mark.asyncio
    async def test_stale_reservation_dropped(self, dispatcher, identity, store):
        reservation = await identity.reserve(PATH)
        await identity.release(reservation)

        outcome = await dispatcher.submit(create_op(), reservation)

        assert outcome.status == OutcomeStatus.STALE
        assert store.calls == []


class TestConflictCopy:
    """Test conflict copies leave no partial state behind"""

    @pytest.mark.asyncio
    async def test_local_wins_updates_original_and_records_copy(self, dispatcher, store, identity):
        record = await synced(dispatcher)
        store.edit_remotely(record.remote_id, "Remote edit")
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(conflict_op(record, expected_version=2), reservation)

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert store.documents[record.remote_id].text == "Local edit"
        copy = identity.lookup(COPY_PATH)
        assert copy.conflict_of == PATH
        assert store.documents[copy.remote_id].text == "Remote edit"
        assert not identity.is_reserved(COPY_PATH)

    @pytest.mark.asyncio
    async def test_exhausted_update_removes_copy(self, dispatcher, store, identity):
        record = await synced(dispatcher)
        store.edit_remotely(record.remote_id, "Remote edit")
        store.fail_next("update_document", RemoteUnavailable(), times=5)
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(conflict_op(record, expected_version=2), reservation)

        assert outcome.status == OutcomeStatus.DEAD_LETTERED
        assert outcome.dead_letter.attempt == 5
        assert [r.path for r in identity.records()] == [PATH]
        assert identity.lookup(PATH).content_hash == HASH
        assert list(store.documents) == [record.remote_id]
        assert store.documents[record.remote_id].text == "Remote edit"
        assert not identity.is_reserved(COPY_PATH)

    @pytest.mark.asyncio
    async def test_version_conflict_removes_copy(self, dispatcher, store, identity):
        record = await synced(dispatcher)
        store.edit_remotely(record.remote_id, "Remote edit")
        reservation = await identity.reserve(PATH)

        # Snapshot version 2 is already stale by the time the update runs
        store.edit_remotely(record.remote_id, "Second remote edit")
        outcome = await dispatcher.submit(conflict_op(record, expected_version=2), reservation)

        assert outcome.status == OutcomeStatus.CONFLICT
        assert identity.lookup(COPY_PATH) is None
        assert list(store.documents) == [record.remote_id]
        assert identity.is_current(reservation)

    @pytest.mark.asyncio
    async def test_remote_wins_marks_original_conflicted(self, dispatcher, store, identity):
        record = await synced(dispatcher)
        store.edit_remotely(record.remote_id, "Remote edit")
        reservation = await identity.reserve(PATH)

        outcome = await dispatcher.submit(
            conflict_op(record, expected_version=2, local_wins=False), reservation
        )

        assert outcome.status == OutcomeStatus.SUCCEEDED
        original = identity.lookup(PATH)
        assert original.sync_state == SyncState.CONFLICTED
        assert original.remote_version == 2
        assert store.documents[record.remote_id].text == "Remote edit"
        assert identity.lookup(COPY_PATH) is not None


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class AdvancingSleep(RecordingSleep):
    """Records delays and moves the fake clock forward by a fixed step"""

    def __init__(self, clock, step):
        super().__init__()
        self.clock = clock
        self.step = step

    async def __call__(self, seconds):
        self.delays.append(seconds)
        self.clock.now += self.step


def leased_dispatcher(store, clock, step, lease_seconds=2.0):
    identity = IdentityStore(lease_seconds=lease_seconds, clock=clock)
    config = DispatcherConfig(max_attempts=5, burst=50)
    return Dispatcher(
        store, identity, DeadLetterQueue(), config,
        sleep=AdvancingSleep(clock, step), rng=random.Random(1), clock=clock,
    )


class TestLeases:
    """Test reservation leases across retry waits"""

    @pytest.mark.asyncio
    async def test_lease_renewed_across_backoff(self, store):
        clock = FakeClock()
        dispatcher = leased_dispatcher(store, clock, step=1.5)
        store.fail_next("create_document", RemoteUnavailable(), times=2)
        reservation = await dispatcher.identity.reserve(PATH)

        outcome = await dispatcher.submit(create_op(), reservation)

        # Two 1.5s waits outlast the 2s lease unless it is renewed
        assert clock.now == 3.0
        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert dispatcher.identity.lookup(PATH).sync_state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_lost_lease_stops_before_next_call(self, store):
        clock = FakeClock()
        dispatcher = leased_dispatcher(store, clock, step=5.0)
        store.fail_next("create_document", RemoteUnavailable())
        reservation = await dispatcher.identity.reserve(PATH)

        outcome = await dispatcher.submit(create_op(), reservation)

        assert outcome.status == OutcomeStatus.STALE
        assert store.call_count("create_document") == 1
        assert store.documents == {}
        assert len(dispatcher.dead_letters) == 0


class TestOtherOperations:
    """Test delete, skip and rename execution"""

    @pytest.mark.asyncio
    async def test_delete_removes_document_and_record(self, dispatcher, store, identity):
        record = await synced(dispatcher)
        reservation = await identity.reserve(PATH)

        operation = SyncOperation(
            kind=OperationKind.DELETE_REMOTE, path=PATH, remote_id=record.remote_id,
        )
        outcome = await dispatcher.submit(operation, reservation)

        assert outcome.succeeded
        assert record.remote_id not in store.documents
        assert identity.lookup(PATH) is None

    @pytest.mark.asyncio
    async def test_skip_adopts_remote_version(self, dispatcher, identity):
        await synced(dispatcher)
        reservation = await identity.reserve(PATH)

        operation = SyncOperation(
            kind=OperationKind.SKIP, path=PATH, adopt_version=4, reason="remote-newer",
        )
        outcome = await dispatcher.submit(operation, reservation)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert identity.lookup(PATH).remote_version == 4

    @pytest.mark.asyncio
    async def test_rename_rekeys_record(self, dispatcher, store, identity):
        record = await synced(dispatcher)
        new_path = "/tree/guides/intro.md"
        reservation = await identity.reserve(new_path)
        from_reservation = await identity.reserve(PATH)

        operation = SyncOperation(
            kind=OperationKind.UPDATE_REMOTE, path=new_path, from_path=PATH,
            content_hash=HASH, collection="Guides",
            payload=payload(new_path, title="Intro", text=None),
            remote_id=record.remote_id, expected_version=record.remote_version,
        )
        outcome = await dispatcher.submit(operation, reservation, from_reservation)

        assert outcome.succeeded
        assert identity.lookup(PATH) is None
        moved = identity.lookup(new_path)
        assert moved.remote_id == record.remote_id
        document = store.documents[record.remote_id]
        assert document.title == "Intro"
        assert document.text == "Hello"
        assert not identity.is_reserved(PATH)


class TestReplay:
    """Test dead-letter replay"""

    @pytest.mark.asyncio
    async def test_replay_resubmits_fresh_operation(self, dispatcher, store, identity):
        store.fail_next("create_document", RateLimited(), times=5)
        reservation = await identity.reserve(PATH)
        failed = await dispatcher.submit(create_op(), reservation)
        entry_id = failed.dead_letter.entry_id

        outcome = await dispatcher.replay(entry_id)

        assert outcome.status == OutcomeStatus.SUCCEEDED
        assert outcome.operation.attempt == 0
        assert outcome.operation.operation_id != failed.operation.operation_id
        assert dispatcher.dead_letters.get(entry_id) is None
        assert identity.lookup(PATH).sync_state == SyncState.SYNCED
        assert not identity.is_reserved(PATH)

    @pytest.mark.asyncio
    async def test_replay_failing_again_replaces_entry(self, dispatcher, store, identity):
        store.fail_next("create_document", RateLimited(), times=10)
        reservation = await identity.reserve(PATH)
        failed = await dispatcher.submit(create_op(), reservation)

        outcome = await dispatcher.replay(failed.dead_letter.entry_id)

        assert outcome.status == OutcomeStatus.DEAD_LETTERED
        entries = dispatcher.dead_letters.entries()
        assert [e.entry_id for e in entries] == [outcome.dead_letter.entry_id]

    @pytest.mark.asyncio
    async def test_replay_keeps_entry_while_circuit_open(self, dispatcher, store, identity):
        store.fail_next("create_document", RateLimited(), times=5)
        reservation = await identity.reserve(PATH)
        failed = await dispatcher.submit(create_op(), reservation)
        for _ in range(10):
            dispatcher.breakers["create"].record_failure()

        outcome = await dispatcher.replay(failed.dead_letter.entry_id)

        assert outcome.status == OutcomeStatus.CIRCUIT_OPEN
        assert dispatcher.dead_letters.get(failed.dead_letter.entry_id) is not None

    @pytest.mark.asyncio
    async def test_cancelled_replay_keeps_entry(self, dispatcher, store, identity):
        store.fail_next("create_document", RateLimited(), times=5)
        reservation = await identity.reserve(PATH)
        failed = await dispatcher.submit(create_op(), reservation)
        store.fail_next("create_document", asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await dispatcher.replay(failed.dead_letter.entry_id)

        assert dispatcher.dead_letters.get(failed.dead_letter.entry_id) is not None
        assert not identity.is_reserved(PATH)

    @pytest.mark.asyncio
    async def test_replay_unknown_entry(self, dispatcher):
        with pytest.raises(KeyError):
            await dispatcher.replay("missing")
