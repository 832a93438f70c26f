# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Unit tests for expiration checkers."""

import sys
import unittest
from datetime import datetime, timedelta, timezone

from tuf.api.metadata import Metadata, Root, Timestamp
from tuf.api.serialization.json import JSONSerializer

from tests import utils
from trustroot.expiration import (
    FixedExpiration,
    VersionExpiration,
    WallClockExpiration,
    load_timestamp,
)

NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


def _timestamp(expires: datetime, version: int = 1) -> bytes:
    md = Metadata(Timestamp(version=version, expires=expires))
    return md.to_bytes(JSONSerializer())


class TestExpiration(unittest.TestCase):
    def test_load_timestamp(self) -> None:
        signed = load_timestamp(_timestamp(NOW, version=7))
        assert signed is not None
        self.assertEqual(signed.version, 7)

        self.assertIsNone(load_timestamp(b"not json"))
        root = Metadata(Root(expires=NOW)).to_bytes(JSONSerializer())
        self.assertIsNone(load_timestamp(root))

    def test_wall_clock(self) -> None:
        checker = WallClockExpiration(clock=lambda: NOW)
        self.assertFalse(checker.is_expired(_timestamp(NOW + timedelta(days=1))))
        self.assertTrue(checker.is_expired(_timestamp(NOW - timedelta(days=1))))
        # Expiry is inclusive
        self.assertTrue(checker.is_expired(_timestamp(NOW)))

    def test_wall_clock_default(self) -> None:
        checker = WallClockExpiration()
        future = datetime.now(timezone.utc) + timedelta(days=1)
        self.assertFalse(checker.is_expired(_timestamp(future.replace(microsecond=0))))

    def test_wall_clock_malformed(self) -> None:
        checker = WallClockExpiration(clock=lambda: NOW)
        self.assertTrue(checker.is_expired(b""))
        self.assertTrue(checker.is_expired(b'{"signed": {}}'))

    def test_fixed(self) -> None:
        self.assertTrue(FixedExpiration(True).is_expired(b"ignored"))
        self.assertFalse(FixedExpiration(False).is_expired(b"ignored"))

    def test_version(self) -> None:
        checker = VersionExpiration(2)
        self.assertTrue(checker.is_expired(_timestamp(NOW, version=1)))
        self.assertTrue(checker.is_expired(_timestamp(NOW, version=2)))
        self.assertFalse(checker.is_expired(_timestamp(NOW, version=3)))
        self.assertTrue(checker.is_expired(b"garbage"))


if __name__ == "__main__":
    utils.configure_test_logging(sys.argv)
    unittest.main()
