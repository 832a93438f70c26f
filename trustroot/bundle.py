# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Read-only view of a committed metadata bundle.

``TrustedBundle`` loads the cached bundle without network access and checks
that it is internally consistent: every role is signed by its delegator
with the required threshold, snapshot and targets versions (and hashes,
when declared) match what timestamp and snapshot say, and every target file
served matches the length and hashes in the targets metadata.

Expiry is not checked here: whether a cached bundle is current is decided
by the ``ExpirationChecker`` before the bundle is loaded.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Set, Tuple, cast

from tuf.api import exceptions
from tuf.api.metadata import (
    Metadata,
    MetaFile,
    Root,
    Signed,
    Snapshot,
    TargetFile,
    Targets,
    Timestamp,
)

from trustroot.exceptions import CacheError, NotFoundError, VerificationError
from trustroot.store import MetadataStore

logger = logging.getLogger(__name__)

MAX_DELEGATIONS = 32


@dataclass
class MetadataStatus:
    """Version and expiry of one cached metadata file."""

    version: int
    expires: datetime


class TrustedBundle:
    """Verified local bundle.

    Args:
        metadata: Store holding metadata files.
        targets: Store holding target files.

    Raises:
        VerificationError: The cached bundle is missing a top-level role or
            fails to verify.
        CacheError: The stores could not be read.
    """

    def __init__(self, metadata: MetadataStore, targets: MetadataStore):
        self._metadata_store = metadata
        self._target_store = targets
        self._roles: Dict[str, Metadata] = {}

        root = self._load(Root.type, Root)
        self._verify_by(root.signed, Root.type, root)
        self._roles[Root.type] = root

        timestamp = self._load(Timestamp.type, Timestamp)
        self._verify_by(root.signed, Timestamp.type, timestamp)
        self._roles[Timestamp.type] = timestamp

        snapshot = self._load(Snapshot.type, Snapshot)
        self._verify_by(root.signed, Snapshot.type, snapshot)
        self._check_meta(
            timestamp.signed.snapshot_meta, Snapshot.type, snapshot
        )
        self._roles[Snapshot.type] = snapshot

        targets_md = self._load(Targets.type, Targets)
        self._verify_by(root.signed, Targets.type, targets_md)
        self._check_snapshot_meta(Targets.type, targets_md)
        self._roles[Targets.type] = targets_md

        logger.debug(
            "Loaded local bundle: root v%d, timestamp v%d",
            root.signed.version,
            timestamp.signed.version,
        )

    @property
    def root(self) -> Root:
        return cast(Root, self._roles[Root.type].signed)

    @property
    def timestamp(self) -> Timestamp:
        return cast(Timestamp, self._roles[Timestamp.type].signed)

    @property
    def snapshot(self) -> Snapshot:
        return cast(Snapshot, self._roles[Snapshot.type].signed)

    @property
    def targets(self) -> Targets:
        return cast(Targets, self._roles[Targets.type].signed)

    def raw(self, name: str) -> Optional[bytes]:
        """Return raw content of metadata file ``name`` (e.g. "root.json")."""
        return self._metadata_store.get(name)

    def _load(self, role: str, signed_type: type) -> Metadata:
        data = self._metadata_store.get(f"{role}.json")
        if data is None:
            raise VerificationError(f"Local bundle has no {role} metadata")
        try:
            md = Metadata.from_bytes(data)
        except exceptions.RepositoryError as e:
            raise VerificationError(f"Local {role} is invalid: {e}") from e
        if not isinstance(md.signed, signed_type):
            raise VerificationError(
                f"Local {role} has unexpected type {md.signed.type}"
            )
        return md

    def _verify_by(
        self, delegator: Signed, role: str, md: Metadata
    ) -> None:
        try:
            delegator.verify_delegate(role, md.signed_bytes, md.signatures)
        except (exceptions.UnsignedMetadataError, ValueError) as e:
            raise VerificationError(f"Local {role} failed to verify: {e}") from e

    def _check_meta(
        self, meta: Optional[MetaFile], role: str, md: Metadata
    ) -> None:
        if meta is None:
            raise VerificationError(f"Role {role} is not part of the bundle")
        if md.signed.version != meta.version:
            raise VerificationError(
                f"Expected {role} v{meta.version}, got v{md.signed.version}"
            )
        if meta.length is None and meta.hashes is None:
            return
        data = self._metadata_store.get(f"{role}.json")
        try:
            meta.verify_length_and_hashes(data)
        except exceptions.LengthOrHashMismatchError as e:
            raise VerificationError(f"Local {role} does not match: {e}") from e

    def _check_snapshot_meta(self, role: str, md: Metadata) -> None:
        self._check_meta(self.snapshot.meta.get(f"{role}.json"), role, md)

    def _load_delegated(self, role: str, parent: str) -> Optional[Targets]:
        """Return verified delegated targets or None if not cached."""
        if role in self._roles:
            return cast(Targets, self._roles[role].signed)

        if self._metadata_store.get(f"{role}.json") is None:
            logger.debug("Delegated role %s is not cached", role)
            return None

        md = self._load(role, Targets)
        delegator = self._roles[parent].signed
        self._verify_by(delegator, role, md)
        self._check_snapshot_meta(role, md)
        self._roles[role] = md
        return cast(Targets, md.signed)

    def get_targetinfo(self, target_path: str) -> Optional[TargetFile]:
        """Return ``TargetFile`` for ``target_path`` or None.

        Interrogates the cached tree of target delegations in order of
        appearance (which implicitly orders trustworthiness), and returns the
        matching target found in the most trusted role.
        """
        delegations_to_visit = [(Targets.type, Root.type)]
        visited_role_names: Set[str] = set()

        while (
            len(visited_role_names) <= MAX_DELEGATIONS
            and len(delegations_to_visit) > 0
        ):
            role_name, parent_role = delegations_to_visit.pop(-1)

            # Skip any visited current role to prevent cycles.
            if role_name in visited_role_names:
                continue

            targets = self._load_delegated(role_name, parent_role)
            visited_role_names.add(role_name)
            if targets is None:
                continue

            target = targets.targets.get(target_path)
            if target is not None:
                logger.debug("Found target in current role %s", role_name)
                return target

            if targets.delegations is not None:
                child_roles_to_visit = []
                for (
                    child_name,
                    terminating,
                ) in targets.delegations.get_roles_for_target(target_path):
                    child_roles_to_visit.append((child_name, role_name))
                    if terminating:
                        delegations_to_visit = []
                        break
                # Roles are popped from the end of the list
                child_roles_to_visit.reverse()
                delegations_to_visit.extend(child_roles_to_visit)

        return None

    def iter_targets(self) -> Iterator[Tuple[str, TargetFile]]:
        """Yield (path, targetinfo) of all targets in the cached roles.

        A path listed by several roles is yielded once, for the role that
        ``get_targetinfo()`` resolves it to.
        """
        seen: Set[str] = set()
        to_visit: List[Tuple[str, str]] = [(Targets.type, Root.type)]
        visited: Set[str] = set()

        while to_visit and len(visited) <= MAX_DELEGATIONS:
            role, parent = to_visit.pop(0)
            if role in visited:
                continue
            visited.add(role)

            targets = self._load_delegated(role, parent)
            if targets is None:
                continue

            for path in targets.targets:
                if path in seen:
                    continue
                seen.add(path)
                info = self.get_targetinfo(path)
                if info is not None:
                    yield path, info

            if targets.delegations is not None and targets.delegations.roles:
                for name in targets.delegations.roles:
                    to_visit.append((name, role))

    def target_names(self) -> Set[str]:
        return {path for path, _ in self.iter_targets()}

    def read_target(self, target_path: str) -> bytes:
        """Return verified content of ``target_path``.

        Raises:
            NotFoundError: Target is not in the bundle.
            CacheError: Target is in the bundle but its content is not
                cached.
            VerificationError: Cached content does not match metadata.
        """
        info = self.get_targetinfo(target_path)
        if info is None:
            raise NotFoundError(target_path)

        data = self._target_store.get(target_path)
        if data is None:
            raise CacheError(
                f"Target {target_path} is missing from cache; "
                "local cache may be corrupt"
            )
        try:
            info.verify_length_and_hashes(data)
        except exceptions.LengthOrHashMismatchError as e:
            raise VerificationError(
                f"Cached target {target_path} failed to verify: {e}"
            ) from e
        return data

    def metadata_status(self) -> Dict[str, MetadataStatus]:
        return {
            f"{role}.json": MetadataStatus(md.signed.version, md.signed.expires)
            for role, md in self._roles.items()
        }
