# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Policies deciding whether a cached timestamp requires a refresh.

An ``ExpirationChecker`` is handed to each client when it is constructed.
Tests use ``FixedExpiration`` and ``VersionExpiration`` to force or prevent
refreshes deterministically.
"""

import abc
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from tuf.api.metadata import Metadata, Timestamp
from tuf.api.serialization import DeserializationError

logger = logging.getLogger(__name__)


class ExpirationChecker(metaclass=abc.ABCMeta):
    """Classifies raw timestamp metadata as expired or fresh."""

    @abc.abstractmethod
    def is_expired(self, timestamp: bytes) -> bool:
        """Return ``True`` if ``timestamp`` must not be trusted as current."""
        raise NotImplementedError  # pragma: no cover


def load_timestamp(data: bytes) -> Optional[Timestamp]:
    """Return the signed part of timestamp metadata, or None if ``data`` is
    not timestamp metadata.

    Signatures are not checked.
    """
    try:
        md = Metadata.from_bytes(data)
    except DeserializationError as e:
        logger.debug("Cached timestamp is not valid metadata: %s", e)
        return None

    if not isinstance(md.signed, Timestamp):
        logger.debug("Cached timestamp has type %s", md.signed.type)
        return None

    return md.signed


class WallClockExpiration(ExpirationChecker):
    """Compares the declared expiry of the timestamp with current time.

    Malformed metadata is considered expired: it is better to refresh than
    to trust data that cannot be read.

    Args:
        clock: Returns the reference time. Defaults to current UTC time.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def is_expired(self, timestamp: bytes) -> bool:
        signed = load_timestamp(timestamp)
        if signed is None:
            return True
        return signed.is_expired(self._clock())


class FixedExpiration(ExpirationChecker):
    """Always gives the same answer."""

    def __init__(self, expired: bool):
        self.expired = expired

    def is_expired(self, timestamp: bytes) -> bool:
        return self.expired


class VersionExpiration(ExpirationChecker):
    """Treats timestamps with version lower or equal to ``version`` as
    expired."""

    def __init__(self, version: int):
        self.version = version

    def is_expired(self, timestamp: bytes) -> bool:
        signed = load_timestamp(timestamp)
        if signed is None:
            return True
        return signed.version <= self.version
