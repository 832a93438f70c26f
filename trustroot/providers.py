# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Identity token providers.

Providers are pluggable sources of OIDC identity tokens (a workload identity
agent, a token file mounted by the platform...). A ``ProviderRegistry`` is
built explicitly from a table of named constructors, so the set of
available providers and their order is visible at the call site.
"""

import abc
import logging
import os
import threading
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_PATH = "/var/run/sigstore/cosign/oidc-token"


class ProviderError(Exception):
    """No identity token could be provided."""


class ProviderInterface(metaclass=abc.ABCMeta):
    """Defines an identity token source."""

    @abc.abstractmethod
    def enabled(self, cancel: Optional[threading.Event] = None) -> bool:
        """Return True if this provider can be used in this environment."""
        raise NotImplementedError  # pragma: no cover

    @abc.abstractmethod
    def provide(
        self, audience: str, cancel: Optional[threading.Event] = None
    ) -> str:
        """Return an identity token for ``audience``.

        Raises:
            ProviderError: Token could not be obtained.
        """
        raise NotImplementedError  # pragma: no cover


class FilesystemProvider(ProviderInterface):
    """Reads a token that the platform mounts as a file."""

    def __init__(self, path: str = DEFAULT_TOKEN_PATH):
        self.path = path

    def enabled(self, cancel: Optional[threading.Event] = None) -> bool:
        # If we can stat the file without error then this is enabled.
        return os.path.isfile(self.path)

    def provide(
        self, audience: str, cancel: Optional[threading.Event] = None
    ) -> str:
        try:
            with open(self.path, encoding="utf-8") as f:
                return f.read().strip()
        except OSError as e:
            raise ProviderError(f"Failed to read token from {self.path}") from e


ProviderFactory = Callable[[], ProviderInterface]

DEFAULT_PROVIDERS: Dict[str, ProviderFactory] = {
    "filesystem": FilesystemProvider,
}


class ProviderRegistry:
    """Named providers, in the order of the table they were built from.

    Args:
        table: Provider name to constructor.
    """

    def __init__(self, table: Mapping[str, ProviderFactory]):
        self._providers: List[Tuple[str, ProviderInterface]] = [
            (name, factory()) for name, factory in table.items()
        ]

    def names(self) -> List[str]:
        return [name for name, _ in self._providers]

    def get(self, name: str) -> ProviderInterface:
        """Return provider ``name``.

        Raises:
            KeyError: No such provider.
        """
        for provider_name, provider in self._providers:
            if provider_name == name:
                return provider
        raise KeyError(name)

    def enabled(
        self, cancel: Optional[threading.Event] = None
    ) -> Iterator[Tuple[str, ProviderInterface]]:
        """Yield (name, provider) of enabled providers."""
        for name, provider in self._providers:
            if provider.enabled(cancel):
                yield name, provider

    def provide(
        self, audience: str, cancel: Optional[threading.Event] = None
    ) -> str:
        """Return a token from the first enabled provider.

        Raises:
            ProviderError: No provider is enabled, or the enabled ones
                failed.
        """
        errors = []
        for name, provider in self.enabled(cancel):
            try:
                token = provider.provide(audience, cancel)
            except ProviderError as e:
                logger.debug("Provider %s failed: %s", name, e)
                errors.append(f"{name}: {e}")
                continue
            logger.debug("Got identity token from provider %s", name)
            return token

        if errors:
            raise ProviderError(
                f"All enabled providers failed: {'; '.join(errors)}"
            )
        raise ProviderError("No identity provider is enabled")


def default_registry() -> ProviderRegistry:
    return ProviderRegistry(DEFAULT_PROVIDERS)
