"""
Tests for collection mapping and local document reading.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from config.defaults import DEFAULT_COLLECTION_MAPPING
from core.sync.collections import map_collection, resolve_collection
from core.sync.documents import (
    hash_file,
    hash_file_async,
    hash_text,
    iter_markdown_files,
    parse_document,
    read_local_change,
)
from core.models.config import WatchConfig
from core.sync.events import ChangeKind


@pytest.fixture
def root():
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir).resolve()
    shutil.rmtree(temp_dir, ignore_errors=True)


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding='utf-8')
    return path


class TestCollectionMapping:
    """Test directory to collection mapping"""

    @pytest.mark.parametrize("relative,expected", [
        ("guides/start.md", "Guides"),
        ("projects/alpha/plan.md", "Projects"),
        ("technical/api.md", "Technical Documentation"),
        ("personal/todo.md", "Personal Notes"),
        ("research/paper.md", "Research"),
    ])
    def test_default_mapping(self, relative, expected):
        assert map_collection(relative, DEFAULT_COLLECTION_MAPPING, "Inbox") == expected

    def test_root_level_goes_to_default(self):
        assert map_collection("readme.md", DEFAULT_COLLECTION_MAPPING, "Inbox") == "Inbox"

    def test_unmapped_segment_title_cased(self):
        assert map_collection("meeting-notes/q1.md", {}, "Inbox") == "Meeting Notes"
        assert map_collection("team_handbook/x.md", {}, "Inbox") == "Team Handbook"

    def test_case_insensitive_lookup(self):
        assert map_collection("Guides/start.md", {"guides": "Guides"}, "Inbox") == "Guides"

    def test_front_matter_override_wins(self):
        assert resolve_collection("guides/start.md", DEFAULT_COLLECTION_MAPPING, "Inbox",
                                  override="Onboarding") == "Onboarding"
        assert resolve_collection("guides/start.md", DEFAULT_COLLECTION_MAPPING, "Inbox",
                                  override="  ") == "Guides"


class TestParseDocument:
    """Test front matter parsing"""

    def test_title_and_metadata(self):
        raw = "---\ntitle: Start\ntags: [a, b]\nunknown: x\n---\n# Hello\n"
        payload = parse_document(raw, "guides/start.md", "h", DEFAULT_COLLECTION_MAPPING, "Inbox")

        assert payload.title == "Start"
        assert payload.text.strip() == "# Hello"
        assert payload.collection == "Guides"
        assert payload.metadata == {"title": "Start", "tags": ["a", "b"]}

    def test_missing_title_rejected(self):
        with pytest.raises(ValueError, match="no title"):
            parse_document("# Just text\n", "a.md", "h", {}, "Inbox")

    def test_malformed_front_matter_rejected(self):
        with pytest.raises(ValueError, match="malformed"):
            parse_document("---\ntitle: [unclosed\n---\nbody\n", "a.md", "h", {}, "Inbox")

    def test_dates_serialized(self):
        raw = "---\ntitle: Dated\ncreated: 2024-05-01\n---\nbody\n"
        payload = parse_document(raw, "a.md", "h", {}, "Inbox")
        assert payload.metadata["created"] == "2024-05-01"


class TestReadLocalChange:
    """Test snapshots of local paths"""

    def test_valid_file(self, root):
        path = write(root / "guides" / "start.md", "---\ntitle: Start\n---\nHello\n")
        change = read_local_change(path, root, ChangeKind.CREATE, DEFAULT_COLLECTION_MAPPING, "Inbox")

        assert change.exists and change.is_valid
        assert change.relative_path == "guides/start.md"
        assert change.content_hash == hash_file(path)
        assert change.payload.source_path == "guides/start.md"
        assert change.modified_at is not None

    def test_missing_file_is_delete(self, root):
        change = read_local_change(root / "gone.md", root, ChangeKind.MODIFY, {}, "Inbox")
        assert change.kind == ChangeKind.DELETE
        assert not change.exists

    def test_invalid_file_keeps_hash(self, root):
        path = write(root / "notes.md", "no front matter\n")
        change = read_local_change(path, root, ChangeKind.CREATE, {}, "Inbox")
        assert change.exists
        assert not change.is_valid
        assert change.payload is None

    def test_oversized_file_invalid(self, root):
        path = write(root / "big.md", "---\ntitle: Big\n---\n" + "x" * 200)
        change = read_local_change(path, root, ChangeKind.CREATE, {}, "Inbox", max_file_size_bytes=100)
        assert "exceeds" in change.invalid_reason


class TestHashingAndWalking:
    """Test hashing helpers and the tree walk"""

    @pytest.mark.asyncio
    async def test_sync_and_async_hash_agree(self, root):
        path = write(root / "a.md", "content")
        assert hash_file(path) == await hash_file_async(path) == hash_text("content")
        assert hash_file(root / "missing.md") is None
        assert await hash_file_async(root / "missing.md") is None

    def test_walk_prunes_excluded_dirs(self, root):
        write(root / "a.md", "x")
        write(root / "guides" / "b.md", "x")
        write(root / "guides" / "image.png", "x")
        write(root / ".git" / "c.md", "x")
        write(root / ".outline-sync" / "d.md", "x")

        config = WatchConfig()
        found = list(iter_markdown_files(root, config.is_excluded_dir, config.should_watch))
        assert [p.relative_to(root).as_posix() for p in found] == ["a.md", "guides/b.md"]
