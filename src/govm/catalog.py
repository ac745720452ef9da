"""Remote release listing and archive downloads.

The provider publishes an HTML page linking every release archive. Archive
names follow ``<prefix><X.Y.Z>.<platform>.tar.gz`` and the page lists the
newest release first, so the first match is the latest version.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path

import requests

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int | None], None]

_CHUNK_SIZE = 64 * 1024


class CatalogError(RuntimeError):
    """Raised when the release catalog cannot answer a query."""


class NetworkError(CatalogError):
    """Raised when fetching the listing or an archive fails."""


class NoVersionFoundError(CatalogError):
    """Raised when the listing links no archive for the configured platform."""


class EmptyDownloadError(NetworkError):
    """Raised when a downloaded archive is empty."""


class VersionCatalog:
    """Query the provider's download page."""

    def __init__(
        self,
        *,
        base_url: str,
        prefix: str = "go",
        platform: str = "linux-amd64",
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        """Initialise the catalog for one platform; the listing is fetched lazily."""
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.prefix = prefix
        self.platform = platform
        self.timeout = timeout
        self._session = session or requests.Session()
        self._listing: str | None = None
        self._pattern = re.compile(
            rf"{re.escape(prefix)}(\d+\.\d+\.\d+)\.{re.escape(platform)}\.tar\.gz"
        )

    def filename(self, version: str) -> str:
        """Return the archive filename for *version*."""
        return f"{self.prefix}{version}.{self.platform}.tar.gz"

    def archive_url(self, version: str) -> str:
        """Return the download URL for *version*."""
        return self.base_url + self.filename(version)

    def listing(self) -> str:
        """Return the listing document, fetching it on first use."""
        if self._listing is None:
            LOGGER.debug("Fetching release listing from %s", self.base_url)
            try:
                response = self._session.get(self.base_url, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as exc:
                raise NetworkError(
                    f"Unable to fetch release listing from {self.base_url}: {exc}"
                ) from exc
            self._listing = response.text
        return self._listing

    def latest(self) -> str:
        """Return the newest version linked from the listing."""
        match = self._pattern.search(self.listing())
        if match is None:
            raise NoVersionFoundError(
                f"No {self.platform} archive found in the listing at {self.base_url}."
            )
        return match.group(1)

    def exists(self, version: str) -> bool:
        """Return True when the listing links an archive for *version*."""
        return self.filename(version.strip()) in self.listing()

    def versions(self) -> list[str]:
        """Return every linked version in listing order, without duplicates."""
        seen: dict[str, None] = {}
        for match in self._pattern.finditer(self.listing()):
            seen.setdefault(match.group(1), None)
        return list(seen)

    def download(
        self,
        version: str,
        directory: Path,
        *,
        progress: ProgressCallback | None = None,
    ) -> Path:
        """Download the archive for *version* into *directory* and return its path."""
        url = self.archive_url(version)
        target = directory / self.filename(version)
        LOGGER.debug("Downloading %s to %s", url, target)
        try:
            with self._session.get(url, stream=True, timeout=self.timeout) as response:
                if not 199 < response.status_code < 300:
                    raise NetworkError(
                        f"Can't download {self.filename(version)}: "
                        f"unexpected status code {response.status_code}."
                    )
                total = _content_length(response)
                received = 0
                with target.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if not chunk:
                            continue
                        handle.write(chunk)
                        received += len(chunk)
                        if progress is not None:
                            progress(received, total)
        except requests.RequestException as exc:
            raise NetworkError(f"Download of {url} failed: {exc}") from exc

        verify_download(target)
        return target


def verify_download(path: Path) -> None:
    """Raise :class:`EmptyDownloadError` unless *path* is a non-empty file."""
    try:
        size = path.stat().st_size
    except OSError as exc:
        raise EmptyDownloadError(f"Downloaded file {path} is missing: {exc}") from exc
    if size == 0:
        raise EmptyDownloadError(f"Downloaded file {path} is empty.")


def _content_length(response: requests.Response) -> int | None:
    raw = response.headers.get("Content-Length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


__all__ = [
    "CatalogError",
    "EmptyDownloadError",
    "NetworkError",
    "NoVersionFoundError",
    "ProgressCallback",
    "VersionCatalog",
    "verify_download",
]
