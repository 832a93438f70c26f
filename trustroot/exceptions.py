# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""
Define trustroot exceptions.
All exceptions raised to callers of ``TrustRootClient`` derive from
``TrustRootError`` so that trust failures are never confused with
programming errors.
"""


class TrustRootError(Exception):
    """Base class for all trustroot errors."""


class ConfigError(TrustRootError):
    """No usable root of trust or invalid configuration."""


class NetworkError(TrustRootError):
    """Transport failure after retries were exhausted."""


class VerificationError(TrustRootError):
    """Metadata or target content failed to verify.

    Covers bad signatures, unmet thresholds, rolled back versions, expired
    remote metadata and length or hash mismatches.
    """


class CacheError(TrustRootError):
    """Local cache could not be read or written."""


class NotFoundError(TrustRootError):
    """A requested target is not part of the trusted bundle.

    Args:
        name: Name of the missing target.
    """

    def __init__(self, name: str):
        super().__init__(f"file not found: {name}")
        self.name = name


class ClientClosedError(TrustRootError):
    """The client was used after ``close()``."""
