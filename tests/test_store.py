# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Unit tests for the blob stores."""

import os
import sys
import tempfile
import unittest
from unittest.mock import patch

from tests import utils
from trustroot.config import TrustRootConfig
from trustroot.exceptions import CacheError
from trustroot.store import (
    DurableStore,
    EphemeralStore,
    commit_stores,
    open_stores,
    write_file_atomic,
)


class TestDurableStore(unittest.TestCase):
    def setUp(self) -> None:
        # pylint: disable-next=consider-using-with
        self.temp_dir = tempfile.TemporaryDirectory()
        self.directory = os.path.join(self.temp_dir.name, "metadata")
        self.store = DurableStore(self.directory)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_creates_directory(self) -> None:
        self.assertTrue(os.path.isdir(self.directory))
        self.assertEqual(self.store.list(), set())

    def test_put_get(self) -> None:
        self.assertIsNone(self.store.get("root.json"))

        self.store.put("root.json", b"v1")
        self.assertEqual(self.store.get("root.json"), b"v1")
        self.store.put("root.json", b"v2")
        self.assertEqual(self.store.get("root.json"), b"v2")
        self.assertEqual(self.store.list(), {"root.json"})

    def test_names_are_encoded(self) -> None:
        self.store.put("a/../b.pem", b"data")
        self.assertEqual(self.store.get("a/../b.pem"), b"data")
        self.assertEqual(self.store.list(), {"a/../b.pem"})
        self.assertEqual(os.listdir(self.directory), ["a%2F..%2Fb.pem"])

    def test_commit(self) -> None:
        self.store.put("timestamp.json", b"old")
        self.store.commit({"snapshot.json": b"new", "timestamp.json": b"new"})

        self.assertEqual(self.store.list(), {"snapshot.json", "timestamp.json"})
        self.assertEqual(self.store.get("timestamp.json"), b"new")
        self.assertEqual(utils.dir_len(self.directory), 2)

    def test_failed_commit_changes_nothing(self) -> None:
        self.store.put("snapshot.json", b"old")
        self.store.put("timestamp.json", b"old")

        real_fsync = os.fsync
        calls = []

        def failing_fsync(fd: int) -> None:
            calls.append(fd)
            if len(calls) == 2:
                raise OSError("disk full")
            real_fsync(fd)

        with patch("os.fsync", side_effect=failing_fsync):
            with self.assertRaises(CacheError):
                self.store.commit(
                    {"snapshot.json": b"new", "timestamp.json": b"new"}
                )

        self.assertEqual(self.store.get("snapshot.json"), b"old")
        self.assertEqual(self.store.get("timestamp.json"), b"old")
        # no temporary files are left behind
        self.assertEqual(
            sorted(os.listdir(self.directory)),
            ["snapshot.json", "timestamp.json"],
        )

    def test_delete_and_prune(self) -> None:
        self.store.commit({"a.pem": b"a", "b.pem": b"b", "c.pem": b"c"})
        self.store.delete("a.pem")
        self.store.delete("missing.pem")
        self.assertEqual(self.store.list(), {"b.pem", "c.pem"})

        self.store.prune({"c.pem", "unknown.pem"})
        self.assertEqual(self.store.list(), {"c.pem"})
        self.assertEqual(os.listdir(self.directory), ["c.pem"])

    def test_staged_entries_are_not_visible(self) -> None:
        self.store.put("timestamp.json", b"old")
        staged = self.store.stage({"timestamp.json": b"new"})
        self.assertEqual(self.store.get("timestamp.json"), b"old")
        self.assertEqual(self.store.list(), {"timestamp.json"})

        staged.discard()
        self.assertEqual(self.store.get("timestamp.json"), b"old")
        self.assertEqual(os.listdir(self.directory), ["timestamp.json"])

        staged = self.store.stage({"timestamp.json": b"new"})
        staged.publish()
        self.assertEqual(self.store.get("timestamp.json"), b"new")
        self.assertEqual(os.listdir(self.directory), ["timestamp.json"])

    def test_temp_files_are_not_listed(self) -> None:
        self.store.put("root.json", b"data")
        with open(os.path.join(self.directory, ".tmp-leftover"), "wb") as f:
            f.write(b"partial")
        self.assertEqual(self.store.list(), {"root.json"})

    def test_closed(self) -> None:
        self.store.put("root.json", b"data")
        self.store.close()
        with self.assertRaises(CacheError):
            self.store.get("root.json")
        with self.assertRaises(CacheError):
            self.store.put("root.json", b"data")

        # content survives close
        self.assertEqual(DurableStore(self.directory).get("root.json"), b"data")

    def test_unusable_directory(self) -> None:
        path = os.path.join(self.temp_dir.name, "file")
        with open(path, "wb") as f:
            f.write(b"not a directory")
        with self.assertRaises(CacheError):
            DurableStore(path)

    def test_write_file_atomic(self) -> None:
        path = os.path.join(self.temp_dir.name, "remote.json")
        write_file_atomic(path, b"{}")
        with open(path, "rb") as f:
            self.assertEqual(f.read(), b"{}")


class TestEphemeralStore(unittest.TestCase):
    def test_put_get(self) -> None:
        store = EphemeralStore()
        self.assertIsNone(store.get("root.json"))
        store.commit({"root.json": b"v1", "timestamp.json": b"v1"})
        store.put("root.json", b"v2")

        self.assertEqual(store.get("root.json"), b"v2")
        self.assertEqual(store.list(), {"root.json", "timestamp.json"})

    def test_delete_and_prune(self) -> None:
        store = EphemeralStore()
        store.commit({"a.pem": b"a", "b.pem": b"b"})
        store.delete("a.pem")
        store.delete("missing.pem")
        self.assertEqual(store.list(), {"b.pem"})
        store.prune(set())
        self.assertEqual(store.list(), set())


class TestCommitStores(unittest.TestCase):
    def setUp(self) -> None:
        # pylint: disable-next=consider-using-with
        self.temp_dir = tempfile.TemporaryDirectory()
        self.targets = DurableStore(os.path.join(self.temp_dir.name, "targets"))
        self.metadata = DurableStore(
            os.path.join(self.temp_dir.name, "metadata")
        )
        self.targets.put("rekor.pub", b"old")
        self.metadata.put("targets.json", b"old")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_commit_stores(self) -> None:
        commit_stores(
            [
                (self.targets, {"rekor.pub": b"new"}),
                (self.metadata, {"targets.json": b"new"}),
            ]
        )
        self.assertEqual(self.targets.get("rekor.pub"), b"new")
        self.assertEqual(self.metadata.get("targets.json"), b"new")

    def test_failed_staging_changes_no_store(self) -> None:
        real_stage = DurableStore._stage

        def failing_stage(store: DurableStore, name: str, data: bytes) -> str:
            if store is self.metadata:
                raise CacheError(f"Failed to write {name}")
            return real_stage(store, name, data)

        with patch.object(
            DurableStore, "_stage", autospec=True, side_effect=failing_stage
        ):
            with self.assertRaises(CacheError):
                commit_stores(
                    [
                        (self.targets, {"rekor.pub": b"new"}),
                        (self.metadata, {"targets.json": b"new"}),
                    ]
                )

        self.assertEqual(self.targets.get("rekor.pub"), b"old")
        self.assertEqual(self.metadata.get("targets.json"), b"old")
        # staged target files were removed
        self.assertEqual(os.listdir(self.targets.directory), ["rekor.pub"])


class TestOpenStores(unittest.TestCase):
    def setUp(self) -> None:
        # pylint: disable-next=consider-using-with
        self.temp_dir = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_durable(self) -> None:
        config = TrustRootConfig(self.temp_dir.name, utils.TEST_MIRROR)
        metadata, targets = open_stores(config)
        self.assertIsInstance(metadata, DurableStore)
        self.assertIsInstance(targets, DurableStore)
        self.assertEqual(
            sorted(os.listdir(self.temp_dir.name)), ["metadata", "targets"]
        )

    def test_ephemeral(self) -> None:
        config = TrustRootConfig(
            self.temp_dir.name, utils.TEST_MIRROR, persistence_enabled=False
        )
        metadata, targets = open_stores(config)
        self.assertIsInstance(metadata, EphemeralStore)
        self.assertIsInstance(targets, EphemeralStore)
        metadata.put("root.json", b"data")
        self.assertEqual(utils.dir_len(self.temp_dir.name), 0)


if __name__ == "__main__":
    utils.configure_test_logging(sys.argv)
    unittest.main()
