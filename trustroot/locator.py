# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Resolve where the trust root comes from.

Configuration is read from function arguments first, then from the
environment:

  * ``TUF_ROOT``: cache directory (default ``~/.sigstore/root``)
  * ``SIGSTORE_NO_CACHE``: boolean, disables all writes to the cache dir
  * ``SIGSTORE_TUF_MIRROR``: mirror URL
  * ``SIGSTORE_ROOT_FILE``: file with root metadata to trust initially

When no mirror is configured, the mirror recorded in the cache by
``initialize()`` is used, and finally ``DEFAULT_MIRROR``.
"""

import json
import logging
import os
from importlib import resources
from typing import Mapping, Optional

from trustroot.config import TrustRootConfig
from trustroot.exceptions import CacheError, ConfigError
from trustroot.store import MetadataStore, write_file_atomic

logger = logging.getLogger(__name__)

CACHE_DIR_ENV = "TUF_ROOT"
NO_CACHE_ENV = "SIGSTORE_NO_CACHE"
MIRROR_ENV = "SIGSTORE_TUF_MIRROR"
ROOT_FILE_ENV = "SIGSTORE_ROOT_FILE"

DEFAULT_MIRROR = "https://tuf-repo-cdn.sigstore.dev"
REMOTE_FILE = "remote.json"

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def default_cache_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".sigstore", "root")


def parse_bool(value: str) -> bool:
    """Parse a boolean environment value.

    Raises:
        ConfigError: ``value`` is not a boolean.
    """
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean value {value!r}")


def load_embedded_root() -> Optional[bytes]:
    """Return the root metadata shipped in ``trustroot._embedded``, if any."""
    resource = resources.files("trustroot._embedded").joinpath("root.json")
    if not resource.is_file():
        return None
    return resource.read_bytes()


def load_remote(cache_dir: str) -> Optional[str]:
    """Return the mirror recorded in ``cache_dir`` by ``save_remote()``."""
    path = os.path.join(cache_dir, REMOTE_FILE)
    try:
        with open(path, "rb") as f:
            remote = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable %s: %s", path, e)
        return None

    mirror = remote.get("mirror") if isinstance(remote, dict) else None
    if not isinstance(mirror, str):
        logger.warning("Ignoring %s without mirror", path)
        return None
    return mirror


def save_remote(config: TrustRootConfig) -> None:
    """Record the mirror of ``config`` in its cache dir.

    Does nothing when persistence is disabled.

    Raises:
        CacheError: The file could not be written.
    """
    if not config.persistence_enabled:
        return
    data = json.dumps({"mirror": config.remote_url}).encode("utf-8")
    write_file_atomic(os.path.join(config.cache_dir, REMOTE_FILE), data)


def resolve_config(
    cache_dir: Optional[str] = None,
    no_cache: Optional[bool] = None,
    mirror: Optional[str] = None,
    root: Optional[bytes] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> TrustRootConfig:
    """Return the effective ``TrustRootConfig``.

    Args:
        cache_dir: Cache directory, overrides ``TUF_ROOT``.
        no_cache: Disable persistence, overrides ``SIGSTORE_NO_CACHE``.
        mirror: Mirror URL, overrides ``SIGSTORE_TUF_MIRROR``.
        root: Root metadata to trust, overrides ``SIGSTORE_ROOT_FILE``.
        environ: Environment to read. Defaults to ``os.environ``.

    Raises:
        ConfigError: Environment values are invalid.
    """
    if environ is None:
        environ = os.environ

    if cache_dir is None:
        cache_dir = environ.get(CACHE_DIR_ENV) or default_cache_dir()

    if no_cache is None:
        no_cache = parse_bool(environ.get(NO_CACHE_ENV, "false"))

    if mirror is None:
        mirror = environ.get(MIRROR_ENV)
    if mirror is None and not no_cache:
        mirror = load_remote(cache_dir)
    if mirror is None:
        mirror = DEFAULT_MIRROR

    if root is None and environ.get(ROOT_FILE_ENV):
        root_file = environ[ROOT_FILE_ENV]
        try:
            with open(root_file, "rb") as f:
                root = f.read()
        except OSError as e:
            raise ConfigError(f"Failed to read root from {root_file}") from e

    config = TrustRootConfig(
        cache_dir=cache_dir,
        remote_url=mirror.rstrip("/"),
        root=root,
        embedded_root=load_embedded_root(),
        persistence_enabled=not no_cache,
    )
    logger.debug("Resolved %s", config)
    return config


def prepare_cache_dir(config: TrustRootConfig) -> None:
    """Create the cache dir if persistence is enabled.

    Raises:
        CacheError: Directory could not be created.
    """
    if not config.persistence_enabled:
        return
    try:
        os.makedirs(config.cache_dir, exist_ok=True)
    except OSError as e:
        raise CacheError(f"Failed to create {config.cache_dir}") from e


def select_root(config: TrustRootConfig, metadata: MetadataStore) -> bytes:
    """Return the root metadata to start trust from.

    Order of preference: root supplied by the caller, root cached by a
    previous update, root embedded in the distribution.

    Raises:
        ConfigError: No root is available.
    """
    if config.root is not None:
        logger.debug("Using root supplied by caller")
        return config.root

    cached = metadata.get("root.json")
    if cached is not None:
        logger.debug("Using cached root")
        return cached

    if config.embedded_root is not None:
        logger.debug("Using embedded root")
        return config.embedded_root

    raise ConfigError(
        "No root of trust: supply root metadata or initialize the cache"
    )
