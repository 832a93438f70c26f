# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Key-value storage for metadata and target blobs.

Two implementations share the ``MetadataStore`` interface:

  * ``DurableStore`` keeps every blob as a file in a directory. Writes go to
    a temporary file that is atomically renamed into place, so a reader
    sees either the old or the new content of a name, never a partial one.
  * ``EphemeralStore`` keeps blobs in a dict for the lifetime of the
    process. Selecting it is what "no persistence" means: nothing is ever
    written to the filesystem.

Writes that must land together are done in two phases: ``stage()`` writes
every entry without making it visible, ``StagedEntries.publish()`` makes
them visible. ``commit_stores()`` stages the entries of several stores
before publishing any of them.

A store is owned by a single client. Several processes writing the same
directory at the same time is not supported.
"""

import abc
import contextlib
import logging
import os
import tempfile
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple
from urllib import parse

from trustroot.config import TrustRootConfig
from trustroot.exceptions import CacheError

logger = logging.getLogger(__name__)

_TEMP_PREFIX = ".tmp-"


class StagedEntries(metaclass=abc.ABCMeta):
    """Entries written to a store but not yet visible in it."""

    @abc.abstractmethod
    def publish(self) -> None:
        """Make the staged entries visible, in staging order.

        Raises:
            CacheError: The entries could not be published.
        """
        raise NotImplementedError  # pragma: no cover

    def discard(self) -> None:
        """Drop the staged entries without publishing them."""


class MetadataStore(metaclass=abc.ABCMeta):
    """Defines a named blob store.

    Names are opaque strings such as ``root.json`` or a target path.
    """

    @abc.abstractmethod
    def get(self, name: str) -> Optional[bytes]:
        """Return content stored under ``name`` or ``None``.

        Raises:
            CacheError: The store could not be read.
        """
        raise NotImplementedError  # pragma: no cover

    @abc.abstractmethod
    def put(self, name: str, data: bytes) -> None:
        """Store ``data`` under ``name``, replacing previous content.

        Raises:
            CacheError: The store could not be written.
        """
        raise NotImplementedError  # pragma: no cover

    @abc.abstractmethod
    def delete(self, name: str) -> None:
        """Remove ``name``. Missing names are ignored.

        Raises:
            CacheError: The store could not be written.
        """
        raise NotImplementedError  # pragma: no cover

    @abc.abstractmethod
    def list(self) -> Set[str]:
        """Return names of all committed entries."""
        raise NotImplementedError  # pragma: no cover

    def stage(self, entries: Mapping[str, bytes]) -> StagedEntries:
        """Prepare ``entries`` for publishing.

        Raises:
            CacheError: The entries could not be staged. Nothing is
                published in that case.
        """
        return _BufferedEntries(self, entries)

    def commit(self, entries: Mapping[str, bytes]) -> None:
        """Store all ``entries``. Entries are written in iteration order."""
        self.stage(entries).publish()

    def prune(self, keep: Set[str]) -> None:
        """Delete all entries whose name is not in ``keep``."""
        for name in self.list() - keep:
            logger.debug("Pruning %s", name)
            self.delete(name)

    def close(self) -> None:
        """Release resources held by the store. Content is kept."""


class _BufferedEntries(StagedEntries):
    def __init__(self, store: MetadataStore, entries: Mapping[str, bytes]):
        self._store = store
        self._entries = dict(entries)

    def publish(self) -> None:
        for name, data in self._entries.items():
            self._store.put(name, data)


class EphemeralStore(MetadataStore):
    """In-memory store: nothing outlives the process."""

    def __init__(self) -> None:
        self._entries: Dict[str, bytes] = {}

    def get(self, name: str) -> Optional[bytes]:
        return self._entries.get(name)

    def put(self, name: str, data: bytes) -> None:
        self._entries[name] = bytes(data)

    def delete(self, name: str) -> None:
        self._entries.pop(name, None)

    def list(self) -> Set[str]:
        return set(self._entries)


class _StagedFiles(StagedEntries):
    """Temporary files waiting to be renamed into a ``DurableStore``."""

    def __init__(self, store: "DurableStore", staged: List[Tuple[str, str]]):
        self._store = store
        self._staged = staged

    def publish(self) -> None:
        for i, (temp_file_name, name) in enumerate(self._staged):
            try:
                os.replace(temp_file_name, self._store._path(name))
            except OSError as e:
                for leftover, _ in self._staged[i:]:
                    _remove_quietly(leftover)
                raise CacheError(
                    f"Failed to commit {name} to {self._store.directory}"
                ) from e

        logger.debug(
            "Committed %d entries to %s", len(self._staged), self._store.directory
        )
        self._staged = []

    def discard(self) -> None:
        for temp_file_name, _ in self._staged:
            _remove_quietly(temp_file_name)
        self._staged = []


class DurableStore(MetadataStore):
    """Directory backed store with atomic writes.

    Args:
        directory: Directory to store files in. Created if missing.

    Raises:
        CacheError: Directory could not be created.
    """

    def __init__(self, directory: str):
        self._dir = directory
        self._closed = False
        try:
            os.makedirs(self._dir, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Failed to create cache dir {directory}") from e

    @property
    def directory(self) -> str:
        return self._dir

    def _path(self, name: str) -> str:
        # encode the name to avoid issues with e.g. path separators
        return os.path.join(self._dir, parse.quote(name, ""))

    def _check_open(self) -> None:
        if self._closed:
            raise CacheError(f"Store {self._dir} is closed")

    def get(self, name: str) -> Optional[bytes]:
        self._check_open()
        try:
            with open(self._path(name), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"Failed to read {name} from {self._dir}") from e

    def put(self, name: str, data: bytes) -> None:
        self._check_open()
        temp_file_name = self._stage(name, data)
        try:
            os.replace(temp_file_name, self._path(name))
        except OSError as e:
            _remove_quietly(temp_file_name)
            raise CacheError(f"Failed to write {name} to {self._dir}") from e
        logger.debug("Stored %s in %s", name, self._dir)

    def delete(self, name: str) -> None:
        self._check_open()
        try:
            _remove_quietly(self._path(name))
        except OSError as e:
            raise CacheError(f"Failed to delete {name} from {self._dir}") from e

    def list(self) -> Set[str]:
        self._check_open()
        try:
            filenames = os.listdir(self._dir)
        except OSError as e:
            raise CacheError(f"Failed to list {self._dir}") from e
        return {
            parse.unquote(filename)
            for filename in filenames
            if not filename.startswith(_TEMP_PREFIX)
        }

    def stage(self, entries: Mapping[str, bytes]) -> StagedEntries:
        """Write every entry to a temporary file next to its final location.

        If staging fails, temporary files are removed and no committed entry
        changes.
        """
        self._check_open()
        staged: List[Tuple[str, str]] = []
        try:
            for name, data in entries.items():
                staged.append((self._stage(name, data), name))
        except CacheError:
            for temp_file_name, _ in staged:
                _remove_quietly(temp_file_name)
            raise
        return _StagedFiles(self, staged)

    def close(self) -> None:
        self._closed = True

    def _stage(self, name: str, data: bytes) -> str:
        """Write data to a temporary file next to its final location."""
        temp_file_name: Optional[str] = None
        try:
            with tempfile.NamedTemporaryFile(
                dir=self._dir, prefix=_TEMP_PREFIX, delete=False
            ) as temp_file:
                temp_file_name = temp_file.name
                temp_file.write(data)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            return temp_file_name
        except OSError as e:
            # remove tempfile if we managed to create one
            if temp_file_name is not None:
                _remove_quietly(temp_file_name)
            raise CacheError(f"Failed to write {name} to {self._dir}") from e


def _remove_quietly(path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.remove(path)


def commit_stores(
    batches: Sequence[Tuple[MetadataStore, Mapping[str, bytes]]],
) -> None:
    """Stage the entries of every store, then publish them in order.

    A failure while staging any store leaves all stores unchanged.

    Raises:
        CacheError: Entries could not be staged or published.
    """
    staged: List[StagedEntries] = []
    try:
        for store, entries in batches:
            staged.append(store.stage(entries))
    except CacheError:
        for entries in staged:
            entries.discard()
        raise

    for i, entries in enumerate(staged):
        try:
            entries.publish()
        except CacheError:
            for rest in staged[i + 1 :]:
                rest.discard()
            raise


def write_file_atomic(path: str, data: bytes) -> None:
    """Write a single file outside of a store atomically.

    Raises:
        CacheError: The file could not be written.
    """
    directory, filename = os.path.split(path)
    store = DurableStore(directory)
    try:
        store.put(filename, data)
    finally:
        store.close()


def open_stores(config: TrustRootConfig) -> Tuple[MetadataStore, MetadataStore]:
    """Return (metadata store, target store) for ``config``.

    Durable stores live in ``metadata`` and ``targets`` subdirectories of the
    cache dir. Without persistence both stores are ephemeral and the cache
    dir is not touched.
    """
    if not config.persistence_enabled:
        logger.debug("Persistence disabled: using in-memory stores")
        return EphemeralStore(), EphemeralStore()

    return (
        DurableStore(os.path.join(config.cache_dir, "metadata")),
        DurableStore(os.path.join(config.cache_dir, "targets")),
    )
