# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Refresh protocol for the cached bundle.

``BundleUpdater`` decides whether the cached bundle can be served as is or
has to be refreshed through the verification engine:

  * Without a local bundle (no cached timestamp) a full bootstrap runs:
    root metadata is stored, then root, timestamp, snapshot and targets are
    updated from the mirror and the verified bundle is committed.
  * With a local bundle, the cached timestamp is given to the
    ``ExpirationChecker``. A fresh bundle is served without any network
    request. An expired one is refreshed like a bootstrap, using the cached
    metadata as the previous state so that the engine can detect rollbacks.

A failed refresh is never papered over with the previous bundle: the error
propagates and the previous bundle stays untouched in the stores.
"""

import logging
from typing import Callable, Dict

from tuf.api.metadata import Root, Snapshot, Targets, Timestamp

from trustroot.bundle import TrustedBundle
from trustroot.engine import VerificationEngine, VerifiedBundle
from trustroot.exceptions import CacheError, VerificationError
from trustroot.expiration import ExpirationChecker
from trustroot.store import MetadataStore, commit_stores

logger = logging.getLogger(__name__)

ROOT = f"{Root.type}.json"
TIMESTAMP = f"{Timestamp.type}.json"
SNAPSHOT = f"{Snapshot.type}.json"
TARGETS = f"{Targets.type}.json"


class BundleUpdater:
    """Keeps the bundle in the stores current.

    Args:
        metadata: Store for metadata files.
        targets: Store for target files.
        engine: Verification engine performing updates.
        expiration: Decides whether the cached timestamp is current.
        mirror: Base URL of the mirror.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        targets: MetadataStore,
        engine: VerificationEngine,
        expiration: ExpirationChecker,
        mirror: str,
    ):
        self._metadata = metadata
        self._targets = targets
        self._engine = engine
        self._expiration = expiration
        self._mirror = mirror

    def has_local_bundle(self) -> bool:
        return self._metadata.get(TIMESTAMP) is not None

    def is_expired(self) -> bool:
        """Return True if there is no cached timestamp or it is expired."""
        timestamp = self._metadata.get(TIMESTAMP)
        return timestamp is None or self._expiration.is_expired(timestamp)

    def bootstrap(self, root: bytes) -> TrustedBundle:
        """Establish trust in ``root`` and do a full update.

        Any previous bundle is replaced.

        Raises:
            NetworkError, VerificationError, CacheError
        """
        logger.debug("Bootstrapping bundle from %s", self._mirror)
        self._metadata.put(ROOT, root)
        result = self._engine.bootstrap_or_update({ROOT: root}, {}, self._mirror)
        self._commit(result)
        return TrustedBundle(self._metadata, self._targets)

    def update(self, get_root: Callable[[], bytes]) -> TrustedBundle:
        """Return a current bundle, refreshing it only if needed.

        Args:
            get_root: Returns the root to trust when no bundle is cached or
                the bundle must be refreshed.

        Raises:
            ConfigError: No root of trust is available.
            NetworkError, VerificationError, CacheError
        """
        if not self.has_local_bundle():
            logger.debug("No local bundle")
            return self.bootstrap(get_root())

        if not self.is_expired():
            try:
                bundle = TrustedBundle(self._metadata, self._targets)
                logger.debug("Local bundle is current: not refreshing")
                return bundle
            except VerificationError as e:
                logger.warning("Local bundle failed to verify, refreshing: %s", e)
        else:
            logger.debug("Local timestamp expired: refreshing")

        return self.refresh(get_root())

    def refresh(self, root: bytes) -> TrustedBundle:
        """Update the cached bundle from the mirror.

        Raises:
            NetworkError, VerificationError, CacheError
        """
        local = self._read_all(self._metadata)
        local[ROOT] = root
        result = self._engine.bootstrap_or_update(
            local, self._read_all(self._targets), self._mirror
        )
        self._commit(result)
        return TrustedBundle(self._metadata, self._targets)

    def _commit(self, result: VerifiedBundle) -> None:
        """Store target files first, then metadata with root last.

        Entries of both stores are staged before any is published, so a
        write that fails while staging leaves the previous bundle intact.
        Entries that are not part of the new bundle are pruned afterwards.
        """
        order = [TARGETS, SNAPSHOT, TIMESTAMP, ROOT]
        entries = {
            name: data
            for name, data in result.metadata.items()
            if name not in order
        }
        for name in order:
            if name in result.metadata:
                entries[name] = result.metadata[name]

        commit_stores(
            [(self._targets, result.targets), (self._metadata, entries)]
        )
        logger.debug("Committed bundle with %d targets", len(result.targets))

        try:
            self._targets.prune(set(result.targets))
            self._metadata.prune(set(result.metadata))
        except CacheError as e:
            # the committed bundle is complete: stale entries are only unused
            logger.warning("Failed to prune cache: %s", e)

    @staticmethod
    def _read_all(store: MetadataStore) -> Dict[str, bytes]:
        entries = {}
        for name in store.list():
            data = store.get(name)
            if data is not None:
                entries[name] = data
        return entries
