# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Sigstore custom metadata of targets and lookups based on it.

Targets may carry a ``custom`` document of the form::

    {"sigstore": {"usage": "Fulcio", "status": "Active"}}

``usage`` declares which trust role the target serves, ``status`` whether
the target is currently in use. A target without a ``custom`` document is
treated as ``usage=UNKNOWN``, ``status=ACTIVE``.
"""

import logging
from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, List, Optional, Sequence

from trustroot.bundle import TrustedBundle

logger = logging.getLogger(__name__)


@unique
class UsageKind(Enum):
    """Trust role of a target. Values are the strings used in metadata."""

    UNKNOWN = "Unknown"
    FULCIO = "Fulcio"
    CTLOG = "CTFE"
    REKOR = "Rekor"


@unique
class StatusKind(Enum):
    """Lifecycle state of a target, independent of metadata expiry."""

    UNKNOWN = "Unknown"
    ACTIVE = "Active"
    EXPIRED = "Expired"


@dataclass(frozen=True)
class CustomMetadata:
    usage: UsageKind = UsageKind.UNKNOWN
    status: StatusKind = StatusKind.UNKNOWN


@dataclass(frozen=True)
class TargetEntry:
    """A verified target together with its custom metadata."""

    name: str
    content: bytes
    usage: UsageKind = UsageKind.UNKNOWN
    status: StatusKind = StatusKind.ACTIVE


def decode_custom_metadata(custom: Any) -> Optional[CustomMetadata]:
    """Decode the ``custom`` field of a target.

    Returns None if the target has no custom metadata at all. Missing
    ``usage`` or ``status`` fields decode to ``UNKNOWN``.

    Raises:
        ValueError: ``custom`` is not a valid sigstore document.
    """
    if custom is None:
        return None
    if not isinstance(custom, dict):
        raise ValueError(f"custom metadata must be an object, got {custom!r}")

    sigstore = custom.get("sigstore")
    if sigstore is None:
        return CustomMetadata()
    if not isinstance(sigstore, dict):
        raise ValueError(f"sigstore metadata must be an object: {sigstore!r}")

    # Enum lookup raises ValueError for unrecognised strings
    usage = UsageKind(sigstore.get("usage", UsageKind.UNKNOWN.value))
    status = StatusKind(sigstore.get("status", StatusKind.UNKNOWN.value))
    return CustomMetadata(usage, status)


class TargetResolver:
    """Looks up verified targets by name or by declared usage."""

    def __init__(self, bundle: TrustedBundle):
        self._bundle = bundle

    def get_target(self, name: str) -> bytes:
        """Return verified content of target ``name``.

        Raises:
            NotFoundError: ``name`` is not in the bundle.
        """
        return self._bundle.read_target(name)

    def get_targets_by_meta(
        self, usage: UsageKind, fallback_names: Sequence[str]
    ) -> List[TargetEntry]:
        """Return all targets whose custom metadata declares ``usage``.

        Targets of any status are returned. If no target declares ``usage``,
        the targets named in ``fallback_names`` are returned instead, with
        status ``ACTIVE``.

        Raises:
            NotFoundError: No target declares ``usage`` and a fallback name is
                not in the bundle.
        """
        matched = []
        for name, info in self._bundle.iter_targets():
            try:
                meta = decode_custom_metadata(info.custom)
            except ValueError as e:
                logger.warning(
                    "Custom metadata of target %s is invalid, skipping: %s",
                    name,
                    e,
                )
                continue
            if meta is None or meta.usage is not usage:
                continue
            matched.append(
                TargetEntry(name, self.get_target(name), meta.usage, meta.status)
            )

        if matched:
            return matched

        logger.debug("No target declares usage %s, using fallbacks", usage.name)
        return [
            TargetEntry(name, self.get_target(name), status=StatusKind.ACTIVE)
            for name in fallback_names
        ]
