# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Provides an implementation of ``FetcherInterface`` using the Requests HTTP
library, with bounded retries and cancellation.
"""

import logging
import threading
from typing import Dict, Iterator, Optional, Tuple
from urllib import parse

import requests
from requests.adapters import HTTPAdapter
from tuf.api import exceptions
from tuf.ngclient import FetcherInterface
from urllib3.util.retry import Retry

import trustroot
from trustroot.exceptions import NetworkError

logger = logging.getLogger(__name__)

# Status codes worth retrying: the mirror is a CDN that may be briefly
# overloaded or unavailable.
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class RemoteFetcher(FetcherInterface):
    """Downloads metadata and targets from a mirror.

    The fetcher does no verification: the verification engine checks all
    downloaded content. The engine downloads through the
    ``FetcherInterface`` methods. ``fetch_metadata()`` and ``fetch_target()``
    are a convenience for applications that read unverified files from the
    same mirror, e.g. to inspect a mirror before trusting it.

    Attributes:
        mirror: Base URL of the mirror.
        socket_timeout: Timeout in seconds, used for both initial connection
            delay and the maximum delay between bytes received.
        chunk_size: Chunk size in bytes used when downloading.
        max_retries: Retries per request on connection errors and
            ``RETRY_STATUS_CODES``.
        backoff_factor: Exponential backoff factor between retries.
        cancel: When set, pending and future downloads fail.
    """

    def __init__(
        self,
        mirror: str,
        socket_timeout: int = 30,
        chunk_size: int = 400000,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        app_user_agent: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        # NOTE: We use a separate requests.Session per scheme+hostname
        # combination, in order to reuse connections to the same hostname
        # while avoiding sharing state between different hosts.
        self._sessions: Dict[Tuple[str, str], requests.Session] = {}

        self.mirror = mirror.rstrip("/")
        self.socket_timeout: int = socket_timeout  # seconds
        self.chunk_size: int = chunk_size  # bytes
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.app_user_agent = app_user_agent
        self.cancel = cancel

    def _check_cancelled(self, url: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise exceptions.DownloadError(f"Download of {url} cancelled")

    def _fetch(self, url: str) -> Iterator[bytes]:
        """Fetch the contents of HTTP/HTTPS url from a remote server.

        Raises:
            exceptions.SlowRetrievalError: Timeout occurs while receiving
                data.
            exceptions.DownloadHTTPError: HTTP error code is received.
            exceptions.DownloadError: Download was cancelled.

        Returns:
            Bytes iterator
        """
        self._check_cancelled(url)
        session = self._get_session(url)

        # Defer downloading the response body with stream=True.
        # Always set the timeout: requests interprets it as both connect
        # timeout and maximum gap between received bytes.
        try:
            response = session.get(
                url, stream=True, timeout=self.socket_timeout
            )
        except requests.exceptions.Timeout as e:
            raise exceptions.SlowRetrievalError from e

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            response.close()
            status = e.response.status_code
            raise exceptions.DownloadHTTPError(str(e), status) from e

        return self._chunks(url, response)

    def _chunks(
        self, url: str, response: "requests.Response"
    ) -> Iterator[bytes]:
        """A generator function to be returned by fetch.

        This way the caller of fetch can differentiate between connection
        and actual data download.
        """
        try:
            for chunk in response.iter_content(self.chunk_size):
                self._check_cancelled(url)
                yield chunk
        except (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
        ) as e:
            raise exceptions.SlowRetrievalError from e

        finally:
            response.close()

    def _get_session(self, url: str) -> requests.Session:
        """Return a customized requests.Session per schema+hostname.

        Raises:
            exceptions.DownloadError: When there is a problem parsing the url.
        """
        parsed_url = parse.urlparse(url)

        if not parsed_url.scheme:
            raise exceptions.DownloadError(f"Failed to parse URL {url}")

        session_index = (parsed_url.scheme, parsed_url.hostname or "")
        session = self._sessions.get(session_index)

        if not session:
            session = requests.Session()
            retry = Retry(
                total=self.max_retries,
                backoff_factor=self.backoff_factor,
                status_forcelist=RETRY_STATUS_CODES,
                allowed_methods=frozenset(["GET"]),
                # return the last response so raise_for_status() reports it
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            self._sessions[session_index] = session

            ua = (
                f"trustroot/{trustroot.__version__} "
                f"{session.headers['User-Agent']}"
            )
            if self.app_user_agent is not None:
                ua = f"{self.app_user_agent} {ua}"
            session.headers["User-Agent"] = ua

            logger.debug("Made new session %s", session_index)
        else:
            logger.debug("Reusing session %s", session_index)

        return session

    def fetch_metadata(self, name: str, max_length: int) -> bytes:
        """Download metadata file ``name`` (e.g. "2.root.json") from
        ``mirror`` without verifying it.

        Raises:
            NetworkError: Download failed.
        """
        return self._download(
            f"{self.mirror}/{parse.quote(name)}", max_length
        )

    def fetch_target(self, name: str, max_length: int) -> bytes:
        """Download target file ``name`` from the mirror's targets path
        without verifying it.

        Raises:
            NetworkError: Download failed.
        """
        return self._download(
            f"{self.mirror}/targets/{parse.quote(name)}", max_length
        )

    def _download(self, url: str, max_length: int) -> bytes:
        try:
            return self.download_bytes(url, max_length)
        except exceptions.DownloadError as e:
            raise NetworkError(f"Failed to download {url}: {e}") from e

    def close(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()
