"""
Tests for EventNormalizer coalescing and move correlation.

Most cases use flush() to finalize pending slots immediately; a few let the
(short) debounce and move-window timers run for real.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path

import pytest

from core.models.config import WatchConfig
from core.sync.events import ChangeKind, RawNotification
from core.sync.normalizer import EventNormalizer, merge_kinds


@pytest.fixture
def root():
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir).resolve()
    shutil.rmtree(temp_dir, ignore_errors=True)


class Hashes:
    """Stand-in for the filesystem (current) and identity store (last known)"""

    def __init__(self):
        self.current = {}
        self.known = {}

    def hasher(self, path):
        return self.current.get(path)

    def lookup(self, path):
        return self.known.get(path)


def make_normalizer(root, hashes, debounce=0.05, move_window=0.05):
    config = WatchConfig(debounce_seconds=debounce, move_window_seconds=move_window)
    return EventNormalizer(root, config, hash_lookup=hashes.lookup, hasher=hashes.hasher)


def drain(normalizer):
    events = []
    while not normalizer.events.empty():
        events.append(normalizer.events.get_nowait())
    return events


def note(path, kind, from_path=None):
    return RawNotification(path=path, kind=kind, from_path=from_path)


class TestMergeKinds:
    """Test the pairwise merge table"""

    def test_table(self):
        C, M, D = ChangeKind.CREATE, ChangeKind.MODIFY, ChangeKind.DELETE
        assert merge_kinds(C, D) is None
        assert merge_kinds(C, M) == (C, False)
        assert merge_kinds(M, M) == (M, False)
        assert merge_kinds(M, D) == (D, False)
        assert merge_kinds(D, C) == (M, True)
        assert merge_kinds(D, D) == (D, False)


class TestCoalescing:
    """Test per-path coalescing to the net effect"""

    @pytest.mark.asyncio
    async def test_repeated_modify_collapses(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes)
        path = root / "notes.md"

        for _ in range(5):
            await normalizer.submit(note(path, ChangeKind.MODIFY))
        await normalizer.flush()

        events = drain(normalizer)
        assert [(e.kind, e.path) for e in events] == [(ChangeKind.MODIFY, path)]
        assert normalizer.metrics.coalesced == 4
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_create_then_delete_cancels(self, root):
        normalizer = make_normalizer(root, Hashes())
        path = root / "scratch.md"

        await normalizer.submit(note(path, ChangeKind.CREATE))
        await normalizer.submit(note(path, ChangeKind.DELETE))
        await normalizer.flush()

        assert drain(normalizer) == []
        assert normalizer.metrics.cancelled == 1
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_create_then_modify_stays_create(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes)
        path = root / "new.md"
        hashes.current[path] = "h1"

        await normalizer.submit(note(path, ChangeKind.CREATE))
        await normalizer.submit(note(path, ChangeKind.MODIFY))
        await normalizer.flush()

        assert [e.kind for e in drain(normalizer)] == [ChangeKind.CREATE]
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_modify_then_delete_is_delete(self, root):
        normalizer = make_normalizer(root, Hashes())
        path = root / "gone.md"

        await normalizer.submit(note(path, ChangeKind.MODIFY))
        await normalizer.submit(note(path, ChangeKind.DELETE))
        await normalizer.flush()

        assert [e.kind for e in drain(normalizer)] == [ChangeKind.DELETE]
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_delete_then_create_unchanged_is_dropped(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes)
        path = root / "saved.md"
        hashes.current[path] = hashes.known[path] = "same"

        # Editors that save by delete + recreate
        await normalizer.submit(note(path, ChangeKind.DELETE))
        await normalizer.submit(note(path, ChangeKind.CREATE))
        await normalizer.flush()

        assert drain(normalizer) == []
        assert normalizer.metrics.unchanged_dropped == 1
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_delete_then_create_changed_is_modify(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes)
        path = root / "saved.md"
        hashes.known[path] = "old"
        hashes.current[path] = "new"

        await normalizer.submit(note(path, ChangeKind.DELETE))
        await normalizer.submit(note(path, ChangeKind.CREATE))
        await normalizer.flush()

        assert [e.kind for e in drain(normalizer)] == [ChangeKind.MODIFY]
        await normalizer.stop()


class TestFiltering:
    """Test which paths are accepted"""

    @pytest.mark.asyncio
    async def test_non_markdown_filtered(self, root):
        normalizer = make_normalizer(root, Hashes())
        await normalizer.submit(note(root / "image.png", ChangeKind.CREATE))
        await normalizer.flush()
        assert drain(normalizer) == []
        assert normalizer.metrics.filtered == 1

    @pytest.mark.asyncio
    async def test_excluded_directory_filtered(self, root):
        normalizer = make_normalizer(root, Hashes())
        await normalizer.submit(note(root / ".git" / "notes.md", ChangeKind.MODIFY))
        await normalizer.submit(note(root / "node_modules" / "pkg" / "README.md", ChangeKind.MODIFY))
        await normalizer.flush()
        assert drain(normalizer) == []

    @pytest.mark.asyncio
    async def test_outside_root_filtered(self, root):
        normalizer = make_normalizer(root, Hashes())
        assert not normalizer.accepts(Path("/elsewhere/notes.md"))


class TestMoves:
    """Test move correlation"""

    @pytest.mark.asyncio
    async def test_watchdog_move_emitted_directly(self, root):
        normalizer = make_normalizer(root, Hashes())
        source, target = root / "a.md", root / "b.md"

        await normalizer.submit(note(target, ChangeKind.MOVE, from_path=source))
        await normalizer.flush()

        events = drain(normalizer)
        assert len(events) == 1
        assert events[0].kind == ChangeKind.MOVE
        assert (events[0].from_path, events[0].path) == (source, target)
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_delete_create_same_hash_pairs_into_move(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes)
        source, target = root / "guides" / "a.md", root / "guides" / "b.md"
        hashes.known[source] = "content"
        hashes.current[target] = "content"

        await normalizer.submit(note(source, ChangeKind.DELETE))
        await normalizer.submit(note(target, ChangeKind.CREATE))
        await normalizer.flush()

        events = drain(normalizer)
        assert [(e.kind, e.from_path, e.path) for e in events] == [
            (ChangeKind.MOVE, source, target)
        ]
        assert normalizer.metrics.moves_correlated == 1
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_unpaired_create_is_independent(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes)
        source, target = root / "a.md", root / "b.md"
        hashes.known[source] = "one"
        hashes.current[target] = "two"

        await normalizer.submit(note(source, ChangeKind.DELETE))
        await normalizer.submit(note(target, ChangeKind.CREATE))
        await normalizer.flush()

        kinds = sorted(e.kind.value for e in drain(normalizer))
        assert kinds == ["create", "delete"]
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_move_then_delete_deletes_origin(self, root):
        normalizer = make_normalizer(root, Hashes())
        source, target = root / "a.md", root / "b.md"

        await normalizer.submit(note(target, ChangeKind.MOVE, from_path=source))
        await normalizer.submit(note(target, ChangeKind.DELETE))
        await normalizer.flush()

        events = drain(normalizer)
        assert [(e.kind, e.path) for e in events] == [(ChangeKind.DELETE, source)]
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_chained_moves_keep_origin(self, root):
        normalizer = make_normalizer(root, Hashes())
        a, b, c = root / "a.md", root / "b.md", root / "c.md"

        await normalizer.submit(note(b, ChangeKind.MOVE, from_path=a))
        await normalizer.submit(note(c, ChangeKind.MOVE, from_path=b))
        await normalizer.flush()

        events = drain(normalizer)
        assert [(e.kind, e.from_path, e.path) for e in events] == [(ChangeKind.MOVE, a, c)]
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_create_then_move_is_create_at_target(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes)
        a, b = root / "draft.md", root / "final.md"
        hashes.current[b] = "x"

        await normalizer.submit(note(a, ChangeKind.CREATE))
        await normalizer.submit(note(b, ChangeKind.MOVE, from_path=a))
        await normalizer.flush()

        assert [(e.kind, e.path) for e in drain(normalizer)] == [(ChangeKind.CREATE, b)]
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_move_out_of_tree_is_delete(self, root):
        normalizer = make_normalizer(root, Hashes())
        source = root / "a.md"

        await normalizer.submit(note(root / "a.txt", ChangeKind.MOVE, from_path=source))
        await normalizer.flush()

        assert [(e.kind, e.path) for e in drain(normalizer)] == [(ChangeKind.DELETE, source)]
        await normalizer.stop()


class TestTimers:
    """Test real debounce and move-window timers"""

    @pytest.mark.asyncio
    async def test_debounce_emits_after_quiet_period(self, root):
        normalizer = make_normalizer(root, Hashes(), debounce=0.05)
        path = root / "notes.md"

        await normalizer.submit(note(path, ChangeKind.MODIFY))
        assert normalizer.events.empty()

        event = await asyncio.wait_for(normalizer.events.get(), timeout=2.0)
        assert event.kind == ChangeKind.MODIFY
        assert normalizer.pending_count == 0
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_held_delete_pairs_with_late_create(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes, debounce=0.02, move_window=1.0)
        source, target = root / "a.md", root / "b.md"
        hashes.known[source] = "content"
        hashes.current[target] = "content"

        await normalizer.submit(note(source, ChangeKind.DELETE))
        await asyncio.sleep(0.1)
        # Delete is now held, not emitted
        assert normalizer.events.empty()
        assert normalizer.get_status()["held_deletes"] == 1

        await normalizer.submit(note(target, ChangeKind.CREATE))
        event = await asyncio.wait_for(normalizer.events.get(), timeout=2.0)
        assert (event.kind, event.from_path, event.path) == (ChangeKind.MOVE, source, target)
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_held_delete_released_after_window(self, root):
        hashes = Hashes()
        normalizer = make_normalizer(root, hashes, debounce=0.02, move_window=0.05)
        path = root / "a.md"
        hashes.known[path] = "content"

        await normalizer.submit(note(path, ChangeKind.DELETE))
        event = await asyncio.wait_for(normalizer.events.get(), timeout=2.0)
        assert event.kind == ChangeKind.DELETE
        await normalizer.stop()

    @pytest.mark.asyncio
    async def test_stop_discards_pending(self, root):
        normalizer = make_normalizer(root, Hashes(), debounce=10.0)
        await normalizer.submit(note(root / "a.md", ChangeKind.MODIFY))

        await normalizer.stop()
        assert normalizer.pending_count == 0
        assert normalizer.events.empty()

        # Submissions after stop are ignored
        await normalizer.submit(note(root / "b.md", ChangeKind.MODIFY))
        assert normalizer.pending_count == 0
