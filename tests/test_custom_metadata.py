# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Unit tests for custom metadata decoding and target lookups."""

import sys
import unittest
from typing import Any, Dict, Iterator, Optional, Tuple

from tuf.api.metadata import TargetFile

from tests import utils
from trustroot.custom_metadata import (
    CustomMetadata,
    StatusKind,
    TargetResolver,
    UsageKind,
    decode_custom_metadata,
)
from trustroot.exceptions import NotFoundError


class FakeBundle:
    """Serves targets from a dict of path -> (data, custom)."""

    def __init__(self, targets: Dict[str, Tuple[bytes, Optional[Any]]]):
        self._infos = {}
        self._data = {}
        for path, (data, custom) in targets.items():
            info = TargetFile.from_data(path, data, ["sha256"])
            if custom is not None:
                info.unrecognized_fields["custom"] = custom
            self._infos[path] = info
            self._data[path] = data

    def iter_targets(self) -> Iterator[Tuple[str, TargetFile]]:
        yield from self._infos.items()

    def read_target(self, path: str) -> bytes:
        if path not in self._data:
            raise NotFoundError(path)
        return self._data[path]


class TestDecodeCustomMetadata(unittest.TestCase):
    valid: utils.DataSet = {
        "no custom": (None, None),
        "no sigstore key": ({"other": 1}, CustomMetadata()),
        "usage only": (
            {"sigstore": {"usage": "Rekor"}},
            CustomMetadata(UsageKind.REKOR, StatusKind.UNKNOWN),
        ),
        "status only": (
            {"sigstore": {"status": "Expired"}},
            CustomMetadata(UsageKind.UNKNOWN, StatusKind.EXPIRED),
        ),
        "ctlog": (
            {"sigstore": {"usage": "CTFE", "status": "Active"}},
            CustomMetadata(UsageKind.CTLOG, StatusKind.ACTIVE),
        ),
    }

    @utils.run_sub_tests_with_dataset(valid)
    def test_decode(self, case: tuple) -> None:
        custom, expected = case
        self.assertEqual(decode_custom_metadata(custom), expected)

    invalid: utils.DataSet = {
        "not an object": "Fulcio",
        "sigstore not an object": {"sigstore": ["Fulcio"]},
        "unknown usage": {"sigstore": {"usage": "TSA"}},
        "unknown status": {"sigstore": {"status": "Revoked"}},
        "wrong case": {"sigstore": {"usage": "fulcio"}},
    }

    @utils.run_sub_tests_with_dataset(invalid)
    def test_decode_invalid(self, custom: Any) -> None:
        with self.assertRaises(ValueError):
            decode_custom_metadata(custom)


class TestTargetResolver(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = TargetResolver(
            FakeBundle(  # type: ignore[arg-type]
                {
                    "fulcio.crt.pem": (
                        b"new",
                        {"sigstore": {"usage": "Fulcio", "status": "Active"}},
                    ),
                    "fulcio_v1.crt.pem": (
                        b"old",
                        {"sigstore": {"usage": "Fulcio", "status": "Expired"}},
                    ),
                    "broken.pem": (b"x", {"sigstore": {"usage": "Nope"}}),
                    "artifact.pub": (b"artifact", None),
                    "rekor.pub": (b"rekor", {"sigstore": {}}),
                }
            )
        )

    def test_get_target(self) -> None:
        self.assertEqual(self.resolver.get_target("artifact.pub"), b"artifact")
        with self.assertRaises(NotFoundError):
            self.resolver.get_target("missing.pub")

    def test_matches_any_status(self) -> None:
        entries = self.resolver.get_targets_by_meta(
            UsageKind.FULCIO, ["artifact.pub"]
        )
        self.assertEqual(
            [(e.name, e.content, e.status) for e in entries],
            [
                ("fulcio.crt.pem", b"new", StatusKind.ACTIVE),
                ("fulcio_v1.crt.pem", b"old", StatusKind.EXPIRED),
            ],
        )

    def test_invalid_custom_is_skipped(self) -> None:
        with self.assertLogs("trustroot.custom_metadata", "WARNING") as cm:
            self.resolver.get_targets_by_meta(UsageKind.FULCIO, [])
        self.assertIn("broken.pem", cm.output[0])

    def test_unknown_usage_matches_empty_sigstore(self) -> None:
        entries = self.resolver.get_targets_by_meta(UsageKind.UNKNOWN, [])
        self.assertEqual([e.name for e in entries], ["rekor.pub"])
        self.assertEqual(entries[0].status, StatusKind.UNKNOWN)

    def test_fallback(self) -> None:
        entries = self.resolver.get_targets_by_meta(
            UsageKind.CTLOG, ["artifact.pub", "rekor.pub"]
        )
        self.assertEqual(
            [(e.name, e.usage, e.status) for e in entries],
            [
                ("artifact.pub", UsageKind.UNKNOWN, StatusKind.ACTIVE),
                ("rekor.pub", UsageKind.UNKNOWN, StatusKind.ACTIVE),
            ],
        )

    def test_empty_fallback(self) -> None:
        self.assertEqual(self.resolver.get_targets_by_meta(UsageKind.CTLOG, []), [])

    def test_missing_fallback(self) -> None:
        with self.assertRaises(NotFoundError) as cm:
            self.resolver.get_targets_by_meta(
                UsageKind.CTLOG, ["missing.pub", "artifact.pub"]
            )
        self.assertEqual(str(cm.exception), "file not found: missing.pub")


if __name__ == "__main__":
    utils.configure_test_logging(sys.argv)
    unittest.main()
