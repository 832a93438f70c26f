# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Configuration options for ``TrustRootClient``."""

from dataclasses import dataclass, field
from typing import Optional

from tuf.ngclient import UpdaterConfig


@dataclass(frozen=True)
class TrustRootConfig:
    """Resolved trust root configuration, fixed for the client lifetime.

    Args:
        cache_dir: Directory holding the cached bundle.
        remote_url: Base URL of the TUF mirror. Metadata is served from the
            base URL, targets from ``<remote_url>/targets/``.
        root: Root metadata explicitly supplied by the caller.
        embedded_root: Root metadata shipped with the distribution, used
            when neither an explicit nor a cached root is available.
        persistence_enabled: If ``False`` nothing is ever written under
            ``cache_dir``.
    """

    cache_dir: str
    remote_url: str
    root: Optional[bytes] = field(default=None, repr=False)
    embedded_root: Optional[bytes] = field(default=None, repr=False)
    persistence_enabled: bool = True

    @property
    def targets_url(self) -> str:
        return f"{self.remote_url}/targets/"


@dataclass
class ClientConfig:
    """Used to store network and verification options.

    Args:
        socket_timeout: Timeout in seconds, used for both initial connection
            delay and the maximum delay between bytes received.
        chunk_size: Chunk size in bytes used when downloading.
        max_retries: Maximum number of retries of a single request on
            connection errors and retryable HTTP status codes.
        backoff_factor: Exponential backoff factor between retries.
        app_user_agent: Application user agent, e.g. "MyApp/1.0.0". This is
            prefixed to the trustroot user agent.
        updater: ``UpdaterConfig`` handed to the verification engine.
    """

    socket_timeout: int = 30
    chunk_size: int = 400000  # bytes
    max_retries: int = 3
    backoff_factor: float = 0.5
    app_user_agent: Optional[str] = None
    updater: UpdaterConfig = field(default_factory=UpdaterConfig)
