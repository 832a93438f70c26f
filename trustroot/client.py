# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Trust root client.

``TrustRootClient`` provides the trust materials (Fulcio certificates,
Rekor and CT log keys...) published as targets of a TUF repository. All
returned content has been verified against the signed metadata.

High-level description:
  * Constructing a client resolves configuration, opens the cache (on disk,
    or in memory when persistence is disabled) and makes sure the bundle is
    current: a missing bundle is bootstrapped from the mirror, an expired
    one is refreshed, a current one is served without network access.
  * ``get_target()`` returns a target by name, ``get_targets_by_meta()``
    returns all targets declaring a usage, falling back to named targets.
  * ``initialize()`` establishes trust in a new root and mirror.

A client does not refresh its bundle after construction: create a new
client to pick up newer data. Applications should not run several clients
that write the same cache directory at the same time.

Example::

    with TrustRootClient.from_env() as client:
        fulcio = client.get_targets_by_meta(UsageKind.FULCIO, ["fulcio.crt.pem"])
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set

from tuf.ngclient import FetcherInterface

from trustroot import locator
from trustroot.bundle import MetadataStatus, TrustedBundle
from trustroot.config import ClientConfig, TrustRootConfig
from trustroot.custom_metadata import TargetEntry, TargetResolver, UsageKind
from trustroot.engine import TufEngine, VerificationEngine
from trustroot.exceptions import ClientClosedError
from trustroot.expiration import ExpirationChecker, WallClockExpiration
from trustroot.fetcher import RemoteFetcher
from trustroot.store import MetadataStore, open_stores
from trustroot.updater import TIMESTAMP, BundleUpdater

logger = logging.getLogger(__name__)


@dataclass
class RootStatus:
    """Diagnostic snapshot of a client."""

    target_names: Set[str]
    bundle_expired: bool
    mirror: str = ""
    cache_dir: str = ""
    persistence_enabled: bool = True
    metadata: Dict[str, MetadataStatus] = field(default_factory=dict)


class TrustRootClient:
    """Creates a client and brings its bundle up to date.

    Args:
        config: Resolved configuration, see ``locator.resolve_config()``.
        fetcher: ``Optional``; ``FetcherInterface`` used for all downloads.
            Default is ``RemoteFetcher``.
        engine: ``Optional``; ``VerificationEngine``. Default is a
            ``TufEngine`` using ``fetcher``.
        expiration: ``Optional``; decides when the cached bundle must be
            refreshed. Default is ``WallClockExpiration``.
        client_config: ``Optional``; network and verification options.
        force_bootstrap: Replace any cached bundle with one bootstrapped
            from the configured root.
        cancel: ``Optional``; when set, downloads of the default fetcher
            fail and construction aborts without committing an update.

    Raises:
        ConfigError: No root of trust is available.
        NetworkError: Mirror could not be reached.
        VerificationError: Metadata failed to verify.
        CacheError: Cache could not be read or written.
    """

    def __init__(
        self,
        config: TrustRootConfig,
        fetcher: Optional[FetcherInterface] = None,
        engine: Optional[VerificationEngine] = None,
        expiration: Optional[ExpirationChecker] = None,
        client_config: Optional[ClientConfig] = None,
        force_bootstrap: bool = False,
        cancel: Optional[threading.Event] = None,
    ):
        self.config = config
        self._client_config = client_config or ClientConfig()
        self._expiration = expiration or WallClockExpiration()
        self._closed = False

        self._own_fetcher: Optional[RemoteFetcher] = None
        if fetcher is None:
            self._own_fetcher = RemoteFetcher(
                config.remote_url,
                socket_timeout=self._client_config.socket_timeout,
                chunk_size=self._client_config.chunk_size,
                max_retries=self._client_config.max_retries,
                backoff_factor=self._client_config.backoff_factor,
                app_user_agent=self._client_config.app_user_agent,
                cancel=cancel,
            )
            fetcher = self._own_fetcher
        if engine is None:
            engine = TufEngine(fetcher, self._client_config.updater)

        self._metadata: Optional[MetadataStore] = None
        self._targets: Optional[MetadataStore] = None
        try:
            locator.prepare_cache_dir(config)
            self._metadata, self._targets = open_stores(config)
            self._updater = BundleUpdater(
                self._metadata,
                self._targets,
                engine,
                self._expiration,
                config.remote_url,
            )
            if force_bootstrap:
                self._bundle = self._updater.bootstrap(
                    locator.select_root(config, self._metadata)
                )
            else:
                self._bundle = self._updater.update(
                    lambda: locator.select_root(config, self._metadata)
                )
        except Exception:
            self.close()
            raise

        self._resolver = TargetResolver(self._bundle)

    @classmethod
    def from_env(
        cls,
        cache_dir: Optional[str] = None,
        no_cache: Optional[bool] = None,
        mirror: Optional[str] = None,
        root: Optional[bytes] = None,
        environ: Optional[Mapping[str, str]] = None,
        **kwargs,
    ) -> "TrustRootClient":
        """Create a client configured from arguments and environment.

        Extra keyword arguments are passed to the constructor.
        """
        config = locator.resolve_config(
            cache_dir=cache_dir,
            no_cache=no_cache,
            mirror=mirror,
            root=root,
            environ=environ,
        )
        return cls(config, **kwargs)

    def _check_open(self) -> None:
        if self._closed:
            raise ClientClosedError("Client is closed")

    @property
    def bundle(self) -> TrustedBundle:
        self._check_open()
        return self._bundle

    def get_target(self, name: str) -> bytes:
        """Return verified content of target ``name``.

        Raises:
            NotFoundError: Target is not in the bundle.
            VerificationError: Cached content does not match metadata.
            CacheError: Cached content is missing.
        """
        self._check_open()
        return self._resolver.get_target(name)

    def get_targets_by_meta(
        self, usage: UsageKind, fallback_names: Sequence[str]
    ) -> List[TargetEntry]:
        """Return targets declaring ``usage``, or else ``fallback_names``.

        See ``TargetResolver.get_targets_by_meta()``.
        """
        self._check_open()
        return self._resolver.get_targets_by_meta(usage, fallback_names)

    def get_root_status(self) -> RootStatus:
        self._check_open()
        assert self._metadata is not None
        timestamp = self._metadata.get(TIMESTAMP)
        return RootStatus(
            target_names=self._bundle.target_names(),
            bundle_expired=(
                timestamp is None or self._expiration.is_expired(timestamp)
            ),
            mirror=self.config.remote_url,
            cache_dir=self.config.cache_dir,
            persistence_enabled=self.config.persistence_enabled,
            metadata=self._bundle.metadata_status(),
        )

    def close(self) -> None:
        """Release cache and network resources. Cached content is kept."""
        if self._closed:
            return
        self._closed = True
        if self._metadata is not None:
            self._metadata.close()
        if self._targets is not None:
            self._targets.close()
        if self._own_fetcher is not None:
            self._own_fetcher.close()

    def __enter__(self) -> "TrustRootClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def new_from_env(**kwargs) -> TrustRootClient:
    """Create a client from the environment, see
    ``TrustRootClient.from_env()``."""
    return TrustRootClient.from_env(**kwargs)


def initialize(
    mirror: str,
    root: Optional[bytes] = None,
    **kwargs,
) -> None:
    """Establish trust in ``mirror``, starting from ``root``.

    Always bootstraps, replacing any cached bundle, and records ``mirror``
    in the cache so that later ``new_from_env()`` calls use it. If ``root``
    is None the cached or embedded root is used.

    Extra keyword arguments are passed to ``TrustRootClient.from_env()``.

    Raises:
        ConfigError, NetworkError, VerificationError, CacheError
    """
    client = TrustRootClient.from_env(
        mirror=mirror, root=root, force_bootstrap=True, **kwargs
    )
    try:
        locator.save_remote(client.config)
    finally:
        client.close()
    logger.debug("Initialized trust root from %s", mirror)
