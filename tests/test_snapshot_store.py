"""Tests for review-state persistence."""

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from snapshot_store import StoreError, load_snapshot, save_snapshot


def _sample_snapshot():
    return {
        "MediaWiki:Common.js": {"revision": 120, "status": "live", "liveRevision": 120},
        "Gadget-Foo.js": {"revision": 7, "status": "awaiting", "liveRevision": 5},
        "Ünïcode.css": {"revision": 3, "status": "unsubmitted"},
        "Bar.js": {"revision": 9, "status": "rejected"},
    }


class TestSnapshotRoundTrip(unittest.TestCase):
    def test_save_and_load_is_identity(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            snapshot = _sample_snapshot()
            save_snapshot(snapshot, path)
            self.assertEqual(load_snapshot(path), snapshot)

    def test_empty_snapshot_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            save_snapshot({}, path)
            self.assertEqual(load_snapshot(path), {})

    def test_creates_parent_directory(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state" / "cache.json"
            save_snapshot(_sample_snapshot(), path)
            self.assertTrue(path.exists())

    def test_overwrite_leaves_no_temp_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            save_snapshot({"A.js": {"revision": 1, "status": "awaiting"}}, path)
            save_snapshot({"A.js": {"revision": 2, "status": "live"}}, path)
            self.assertEqual(os.listdir(tmpdir), ["cache.json"])
            self.assertEqual(load_snapshot(path)["A.js"]["revision"], 2)


class TestLoadSnapshot(unittest.TestCase):
    def test_missing_file_returns_none(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertIsNone(load_snapshot(Path(tmpdir) / "cache.json"))

    def test_invalid_json_raises(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(StoreError):
                load_snapshot(path)

    def test_non_object_raises(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            path.write_text("[1, 2, 3]", encoding="utf-8")
            with self.assertRaises(StoreError):
                load_snapshot(path)

    def test_invalid_entry_raises(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            path.write_text(json.dumps({"A.js": {"revision": "7", "status": "live"}}), encoding="utf-8")
            with self.assertRaises(StoreError):
                load_snapshot(path)

    def test_unknown_status_raises(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            path.write_text(json.dumps({"A.js": {"revision": 7, "status": "approved"}}), encoding="utf-8")
            with self.assertRaises(StoreError):
                load_snapshot(path)


class TestSaveFailures(unittest.TestCase):
    def test_unserializable_snapshot_keeps_old_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            save_snapshot(_sample_snapshot(), path)
            with self.assertRaises(StoreError):
                save_snapshot({"A.js": {"revision": object(), "status": "live"}}, path)
            self.assertEqual(load_snapshot(path), _sample_snapshot())

    def test_failed_replace_keeps_old_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.json"
            save_snapshot(_sample_snapshot(), path)
            with mock.patch("snapshot_store.os.replace", side_effect=OSError("disk full")):
                with self.assertRaises(StoreError):
                    save_snapshot({}, path)
            self.assertEqual(load_snapshot(path), _sample_snapshot())
            self.assertEqual(os.listdir(tmpdir), ["cache.json"])


if __name__ == "__main__":
    unittest.main()
