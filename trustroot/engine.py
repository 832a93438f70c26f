# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Verification engine used to bootstrap and refresh the bundle.

The engine is the only component that talks to the mirror. ``TufEngine``
delegates all of the TUF client workflow (root rotation, signature
thresholds, rollback and freeze protection, delegations) to
``tuf.ngclient.Updater``. The updater works on a scratch directory seeded
from the caller's bundle so that the caller's stores stay untouched until
the whole update has been verified.

The updater only loads delegated roles while looking up a target path. To
list every target, the engine loads each delegated role itself, verifying
it against its delegator and the snapshot, before asking the updater for
the role's targets.
"""

import abc
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Mapping, Optional, Set, Tuple
from urllib import parse

from tuf.api import exceptions
from tuf.api.metadata import (
    Metadata,
    MetaFile,
    Root,
    Snapshot,
    Targets,
    Timestamp,
)
from tuf.ngclient import FetcherInterface, Updater, UpdaterConfig

from trustroot.exceptions import CacheError, NetworkError, VerificationError

logger = logging.getLogger(__name__)


@dataclass
class VerifiedBundle:
    """Metadata files and target files verified by the engine.

    Attributes:
        metadata: Metadata file name (e.g. "snapshot.json") to content.
        targets: Target path to content.
    """

    metadata: Dict[str, bytes] = field(default_factory=dict)
    targets: Dict[str, bytes] = field(default_factory=dict)


class VerificationEngine(metaclass=abc.ABCMeta):
    """Defines the interface of the trust metadata verification engine."""

    @abc.abstractmethod
    def bootstrap_or_update(
        self,
        metadata: Mapping[str, bytes],
        targets: Mapping[str, bytes],
        mirror: str,
    ) -> VerifiedBundle:
        """Update a local bundle from ``mirror``.

        Args:
            metadata: Local metadata files. Must contain a trusted
                "root.json"; other files are used as the previous state for
                rollback protection.
            targets: Locally cached target files, used to avoid downloads.
            mirror: Base URL of the mirror.

        Raises:
            NetworkError: Mirror could not be reached.
            VerificationError: Remote data failed to verify.
            CacheError: Scratch space could not be used.
        """
        raise NotImplementedError  # pragma: no cover

    @abc.abstractmethod
    def get_meta(self) -> Dict[str, bytes]:
        """Return metadata files of the last verified bundle."""
        raise NotImplementedError  # pragma: no cover


class TufEngine(VerificationEngine):
    """``VerificationEngine`` built on ``tuf.ngclient.Updater``.

    Args:
        fetcher: Fetcher used for all downloads.
        config: ``UpdaterConfig`` for the updater.
    """

    def __init__(
        self,
        fetcher: FetcherInterface,
        config: Optional[UpdaterConfig] = None,
    ):
        self._fetcher = fetcher
        self._config = config or UpdaterConfig()
        self._last_meta: Dict[str, bytes] = {}

    def get_meta(self) -> Dict[str, bytes]:
        return dict(self._last_meta)

    def bootstrap_or_update(
        self,
        metadata: Mapping[str, bytes],
        targets: Mapping[str, bytes],
        mirror: str,
    ) -> VerifiedBundle:
        if "root.json" not in metadata:
            raise VerificationError("No trusted root metadata to start from")

        mirror = mirror.rstrip("/")
        try:
            with tempfile.TemporaryDirectory(prefix="trustroot-") as workdir:
                bundle = self._update(workdir, metadata, targets, mirror)
        except exceptions.DownloadError as e:
            raise NetworkError(f"Failed to update from {mirror}: {e}") from e
        except exceptions.RepositoryError as e:
            raise VerificationError(
                f"Metadata from {mirror} failed to verify: {e}"
            ) from e
        except OSError as e:
            raise CacheError(f"Failed to use scratch directory: {e}") from e

        self._last_meta = dict(bundle.metadata)
        logger.debug(
            "Verified %d metadata and %d target files from %s",
            len(bundle.metadata),
            len(bundle.targets),
            mirror,
        )
        return bundle

    def _update(
        self,
        workdir: str,
        metadata: Mapping[str, bytes],
        targets: Mapping[str, bytes],
        mirror: str,
    ) -> VerifiedBundle:
        metadata_dir = os.path.join(workdir, "metadata")
        targets_dir = os.path.join(workdir, "targets")
        os.mkdir(metadata_dir)
        os.mkdir(targets_dir)

        # The updater reads role files from metadata_dir using URL encoded
        # role names as file names: mirror that here
        for name, data in metadata.items():
            _write(os.path.join(metadata_dir, parse.quote(name, "")), data)
        for path, data in targets.items():
            _write(os.path.join(targets_dir, parse.quote(path, "")), data)

        updater = Updater(
            metadata_dir=metadata_dir,
            metadata_base_url=mirror,
            target_dir=targets_dir,
            target_base_url=f"{mirror}/targets/",
            fetcher=self._fetcher,
            config=self._config,
            bootstrap=metadata["root.json"],
        )
        updater.refresh()

        bundle = VerifiedBundle()
        loaded: Dict[str, Targets] = {}
        for path in self._target_paths(metadata_dir, mirror, loaded):
            targetinfo = updater.get_targetinfo(path)
            if targetinfo is None:
                logger.debug("Target %s is not delegated to its role", path)
                continue
            filepath = os.path.join(targets_dir, parse.quote(path, ""))
            if updater.find_cached_target(targetinfo, filepath) is None:
                logger.debug("Downloading target %s", path)
                updater.download_target(targetinfo, filepath)
            with open(filepath, "rb") as f:
                bundle.targets[path] = f.read()

        # only roles verified in this update: seeded files of roles that are
        # no longer delegated are left behind
        keep = {
            f"{Root.type}.json",
            f"{Timestamp.type}.json",
            f"{Snapshot.type}.json",
        }
        keep.update(f"{role}.json" for role in loaded)
        bundle.metadata = {
            name: data
            for name, data in _read_metadata_dir(metadata_dir).items()
            if name in keep
        }
        return bundle

    def _target_paths(
        self, metadata_dir: str, mirror: str, loaded: Dict[str, Targets]
    ) -> Iterator[str]:
        """Yield target paths of all roles in the delegation tree.

        Every role that is loaded is added to ``loaded``.

        Delegated roles are loaded breadth first, whatever their delegated
        paths are, so that ``Updater.get_targetinfo()`` finds them verified
        in metadata_dir.
        """
        root = Metadata[Root].from_file(os.path.join(metadata_dir, "root.json"))
        snapshot = Metadata[Snapshot].from_file(
            os.path.join(metadata_dir, "snapshot.json")
        )
        to_visit: List[Tuple[str, str]] = [(Targets.type, Root.type)]
        visited: Set[str] = set()

        while to_visit and len(visited) <= self._config.max_delegations:
            role, parent = to_visit.pop(0)
            if role in visited:
                continue
            visited.add(role)

            if role == Targets.type:
                targets = _load_role(metadata_dir, role)
            else:
                targets = self._load_delegated(
                    metadata_dir,
                    mirror,
                    role,
                    loaded[parent],
                    snapshot.signed,
                    root.signed.consistent_snapshot,
                )
            loaded[role] = targets

            yield from targets.targets

            if targets.delegations is None or targets.delegations.roles is None:
                continue
            for delegated in targets.delegations.roles.values():
                to_visit.append((delegated.name, role))

    def _load_delegated(
        self,
        metadata_dir: str,
        mirror: str,
        role: str,
        delegator: Targets,
        snapshot: Snapshot,
        consistent_snapshot: bool,
    ) -> Targets:
        """Return delegated ``role``, downloading it unless a valid copy is
        in metadata_dir. The verified role is written to metadata_dir.

        Raises:
            RepositoryError: The role failed to verify.
            DownloadError: The role could not be downloaded.
        """
        meta = snapshot.meta.get(f"{role}.json")
        if meta is None:
            raise exceptions.RepositoryError(
                f"Snapshot does not contain information for {role}"
            )

        path = os.path.join(metadata_dir, f"{parse.quote(role, '')}.json")
        if os.path.isfile(path):
            with open(path, "rb") as f:
                data = f.read()
            try:
                return _verify_delegated(data, role, delegator, meta)
            except exceptions.RepositoryError as e:
                logger.debug("Local %s is not valid: %s", role, e)

        encoded_name = parse.quote(role, "")
        if consistent_snapshot:
            url = f"{mirror}/{meta.version}.{encoded_name}.json"
        else:
            url = f"{mirror}/{encoded_name}.json"
        data = self._fetcher.download_bytes(
            url, meta.length or self._config.targets_max_length
        )
        targets = _verify_delegated(data, role, delegator, meta)
        _write(path, data)
        logger.debug("Loaded delegated role %s v%d", role, targets.version)
        return targets


def _verify_delegated(
    data: bytes, role: str, delegator: Targets, meta: MetaFile
) -> Targets:
    """Verify delegated targets metadata the way the updater does.

    Raises:
        RepositoryError: Signatures, version, hashes or expiry are invalid.
    """
    meta.verify_length_and_hashes(data)
    md = Metadata.from_bytes(data)
    if not isinstance(md.signed, Targets):
        raise exceptions.RepositoryError(
            f"Expected 'targets', got '{md.signed.type}'"
        )
    try:
        delegator.verify_delegate(role, md.signed_bytes, md.signatures)
    except ValueError as e:
        # unknown role or dangling keyid in the delegator
        raise exceptions.UnsignedMetadataError(
            f"{role} could not be verified: {e}"
        ) from e
    if md.signed.version != meta.version:
        raise exceptions.BadVersionNumberError(
            f"Expected {role} v{meta.version}, got v{md.signed.version}"
        )
    if md.signed.is_expired(datetime.now(timezone.utc)):
        raise exceptions.ExpiredMetadataError(f"New {role} is expired")
    return md.signed


def _load_role(metadata_dir: str, role: str) -> Targets:
    path = os.path.join(metadata_dir, f"{parse.quote(role, '')}.json")
    md = Metadata[Targets].from_file(path)
    return md.signed


def _read_metadata_dir(metadata_dir: str) -> Dict[str, bytes]:
    result = {}
    for filename in os.listdir(metadata_dir):
        path = os.path.join(metadata_dir, filename)
        # skip anything the updater keeps besides role files
        if not filename.endswith(".json") or not os.path.isfile(path):
            continue
        with open(path, "rb") as f:
            result[parse.unquote(filename)] = f.read()
    return result


def _write(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)
