# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Sigstore trust root client public API."""

# This value is used in the requests user agent.
__version__ = "0.1.0"

# pylint: disable=wrong-import-position
from trustroot.client import (  # noqa: E402
    RootStatus,
    TrustRootClient,
    initialize,
    new_from_env,
)
from trustroot.config import ClientConfig, TrustRootConfig  # noqa: E402
from trustroot.custom_metadata import (  # noqa: E402
    StatusKind,
    TargetEntry,
    UsageKind,
)
from trustroot.exceptions import (  # noqa: E402
    CacheError,
    ClientClosedError,
    ConfigError,
    NetworkError,
    NotFoundError,
    TrustRootError,
    VerificationError,
)
from trustroot.expiration import (  # noqa: E402
    ExpirationChecker,
    FixedExpiration,
    VersionExpiration,
    WallClockExpiration,
)

__all__ = [
    CacheError.__name__,
    ClientClosedError.__name__,
    ClientConfig.__name__,
    ConfigError.__name__,
    ExpirationChecker.__name__,
    FixedExpiration.__name__,
    NetworkError.__name__,
    NotFoundError.__name__,
    RootStatus.__name__,
    StatusKind.__name__,
    TargetEntry.__name__,
    TrustRootClient.__name__,
    TrustRootConfig.__name__,
    TrustRootError.__name__,
    UsageKind.__name__,
    VerificationError.__name__,
    VersionExpiration.__name__,
    WallClockExpiration.__name__,
    initialize.__name__,
    new_from_env.__name__,
]
