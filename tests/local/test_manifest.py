"""
Unit tests for codekb.local.manifest
"""

from __future__ import annotations

import hashlib

import pytest


@pytest.fixture()
def detector(tmp_path):
    from codekb.local.manifest import ChangeDetector, Manifest
    return ChangeDetector(Manifest(str(tmp_path / "index.db")))


class TestManifest:
    def test_hash_round_trip(self, tmp_path):
        from codekb.local.manifest import Manifest
        m = Manifest(str(tmp_path / "index.db"))
        m.set_hash("src/a.ts", "h1")
        m.set_hash("src/a.ts", "h2")
        assert m.get_hash("src/a.ts") == "h2"
        assert m.all_hashes() == {"src/a.ts": "h2"}

    def test_remove_hash(self, tmp_path):
        from codekb.local.manifest import Manifest
        m = Manifest(str(tmp_path / "index.db"))
        m.set_hash("a.py", "h")
        m.remove_hash("a.py")
        m.remove_hash("missing.py")  # should not raise
        assert m.get_hash("a.py") is None

    def test_persists_across_instances(self, tmp_path):
        from codekb.local.manifest import Manifest
        Manifest(str(tmp_path / "index.db")).set_hash("a.py", "h")
        assert Manifest(str(tmp_path / "index.db")).get_hash("a.py") == "h"

    def test_stats_and_clear(self, tmp_path):
        from codekb.local.manifest import Manifest
        from codekb.local.models import FileChange
        m = Manifest(str(tmp_path / "index.db"))
        m.set_hash("a.py", "h")
        m.mark_pending(FileChange("b.py", "added", None, "h2"))
        assert m.stats() == {"file_count": 1, "pending_replacements": 1}
        m.clear()
        assert m.stats() == {"file_count": 0, "pending_replacements": 0}


class TestHashContent:
    def test_sha256_of_utf8(self):
        from codekb.local.manifest import hash_content
        assert hash_content("héllo") == hashlib.sha256("héllo".encode("utf-8")).hexdigest()

    def test_detector_exposes_hash(self):
        from codekb.local.manifest import ChangeDetector, hash_content
        assert ChangeDetector.hash_content("x") == hash_content("x")


class TestDetectChanges:
    def test_new_files_are_added(self, detector):
        changes = detector.detect_changes({"b.ts": "b", "a.ts": "a"})
        assert [(c.path, c.kind) for c in changes] == [("b.ts", "added"), ("a.ts", "added")]
        assert changes[0].old_hash is None
        assert changes[0].content == "b"

    def test_modified_unchanged_deleted(self, detector):
        from codekb.local.manifest import hash_content
        detector.manifest.set_hash("same.ts", hash_content("same"))
        detector.manifest.set_hash("edit.ts", hash_content("old"))
        detector.manifest.set_hash("gone.ts", hash_content("gone"))

        changes = detector.detect_changes({"same.ts": "same", "edit.ts": "new"})

        assert [(c.path, c.kind) for c in changes] == [
            ("edit.ts", "modified"), ("gone.ts", "deleted"),
        ]
        modified, deleted = changes
        assert modified.old_hash == hash_content("old")
        assert modified.new_hash == hash_content("new")
        assert deleted.old_hash == hash_content("gone")
        assert deleted.new_hash is None

    def test_deleted_detection_can_be_disabled(self, detector):
        detector.manifest.set_hash("gone.ts", "h")
        assert detector.detect_changes({}, detect_deleted=False) == []

    def test_removed_paths_limit_deletions(self, detector):
        detector.manifest.set_hash("a.ts", "h")
        detector.manifest.set_hash("b.ts", "h")
        changes = detector.detect_changes({}, removed_paths=["b.ts", "never-indexed.ts"])
        assert [(c.path, c.kind) for c in changes] == [("b.ts", "deleted")]

    def test_hashes_are_not_written_by_detection(self, detector):
        detector.detect_changes({"a.ts": "a"})
        assert detector.manifest.get_hash("a.ts") is None


class TestUpdateHashes:
    def test_added_and_deleted(self, detector):
        changes = detector.detect_changes({"a.ts": "a"})
        detector.update_hashes(changes)
        assert detector.detect_changes({"a.ts": "a"}) == []

        gone = detector.detect_changes({})
        detector.update_hashes(gone)
        assert detector.manifest.all_hashes() == {}


class TestReplacementMarkers:
    def test_begin_and_end(self, detector):
        from codekb.local.models import FileChange
        change = FileChange("a.ts", "modified", "old", "new")
        detector.begin_replace(change)

        (pending,) = detector.stale_replacements()
        assert pending.path == "a.ts"
        assert pending.kind == "modified"
        assert pending.old_hash == "old"
        assert pending.new_hash == "new"

        detector.end_replace("a.ts")
        assert detector.stale_replacements() == []

    def test_marker_is_overwritten(self, detector):
        from codekb.local.models import FileChange
        detector.begin_replace(FileChange("a.ts", "added", None, "h1"))
        detector.begin_replace(FileChange("a.ts", "modified", "h1", "h2"))
        (pending,) = detector.stale_replacements()
        assert pending.kind == "modified"
