"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import os
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest

PLATFORM = "linux-amd64"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def fake_go_script(version: str, *, platform: str = "linux/amd64") -> str:
    """Return a shell script that mimics ``go version``."""
    return f'#!/bin/sh\necho "go version go{version} {platform}"\n'


def write_toolchain(install_dir: Path, version: str) -> Path:
    """Create a minimal toolchain tree reporting *version*."""
    binary = install_dir / "bin" / "go"
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text(fake_go_script(version), encoding="utf-8")
    binary.chmod(0o755)
    (install_dir / "VERSION").write_text(f"go{version}\n", encoding="utf-8")
    return binary


def _add_file(bundle: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    bundle.addfile(info, io.BytesIO(data))


def _add_dir(bundle: tarfile.TarFile, name: str, mode: int = 0o755) -> None:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    bundle.addfile(info)


def build_toolchain_archive(path: Path, version: str) -> Path:
    """Write a release-shaped tarball (``go/bin/go``, ``go/VERSION``) to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as bundle:
        _add_dir(bundle, "go")
        _add_dir(bundle, "go/bin")
        _add_file(bundle, "go/bin/go", fake_go_script(version).encode("utf-8"), mode=0o755)
        _add_file(bundle, "go/VERSION", f"go{version}\n".encode())
    return path


def archive_bytes(tmp_path: Path, version: str) -> bytes:
    """Return the bytes of a release-shaped tarball for *version*."""
    path = build_toolchain_archive(tmp_path / "fixtures" / f"go{version}.tar.gz", version)
    return path.read_bytes()


def listing_html(*versions: str, platform: str = PLATFORM) -> str:
    """Return a download page linking archives for *versions*, newest first."""
    links = []
    for version in versions:
        name = f"go{version}.{platform}.tar.gz"
        links.append(f'<a class="download" href="/dl/{name}">{name}</a>')
        links.append(f'<a href="/dl/go{version}.windows-amd64.zip">zip</a>')
    return "<html><body>\n" + "\n".join(links) + "\n</body></html>\n"


class FakeCatalog:
    """In-memory stand-in for :class:`govm.catalog.VersionCatalog`."""

    def __init__(self, *published: str, platform: str = PLATFORM) -> None:
        self.published = list(published)
        self.platform = platform
        self.prefix = "go"
        self.base_url = "https://go.dev/dl/"
        self.downloads: list[str] = []

    def latest(self) -> str:
        return self.published[0]

    def exists(self, version: str) -> bool:
        return version in self.published

    def versions(self) -> list[str]:
        return list(self.published)

    def filename(self, version: str) -> str:
        return f"{self.prefix}{version}.{self.platform}.tar.gz"

    def archive_url(self, version: str) -> str:
        return self.base_url + self.filename(version)

    def download(
        self,
        version: str,
        directory: Path,
        *,
        progress: Callable[[int, int | None], None] | None = None,
    ) -> Path:
        self.downloads.append(version)
        archive = build_toolchain_archive(directory / self.filename(version), version)
        if progress is not None:
            size = archive.stat().st_size
            progress(size, size)
        return archive


@pytest.fixture
def toolchain_archive(tmp_path: Path) -> Callable[[str], Path]:
    """Return a factory building release tarballs under ``tmp_path``."""

    def _factory(version: str) -> Path:
        return build_toolchain_archive(
            tmp_path / "archives" / f"go{version}.{PLATFORM}.tar.gz", version
        )

    return _factory
