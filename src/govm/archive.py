"""Streaming extraction of gzip-compressed toolchain tarballs.

Release archives wrap the distribution in a single top-level folder (``go/``).
:func:`extract_tar_gz` can strip that folder so the contents land directly in
the destination. Entries are read sequentially from the stream; nothing is
rolled back on failure, so callers extract into a staging directory and only
move it into place once extraction has completed.
"""
from __future__ import annotations

import gzip
import logging
import os
import posixpath
import tarfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import IO

LOGGER = logging.getLogger(__name__)

_COPY_CHUNK = 1024 * 1024


class ExtractError(RuntimeError):
    """Base class for archive extraction failures."""


class CorruptArchiveError(ExtractError):
    """Raised when gzip or tar framing is malformed or truncated."""


class UnsupportedEntryTypeError(ExtractError):
    """Raised for members that are not directories, regular files or symlinks."""


class SymlinkUnsupportedError(ExtractError):
    """Raised when a symbolic link cannot be created at the destination."""


class UnsafeEntryError(ExtractError):
    """Raised when a member would be written outside the destination."""


@dataclass(slots=True)
class ExtractSummary:
    """Counts of filesystem objects created by an extraction."""

    directories: int = 0
    files: int = 0
    symlinks: int = 0
    bytes_written: int = 0


def extract_tar_gz(
    archive_path: Path,
    destination: Path,
    *,
    strip_prefix: str | None = None,
) -> ExtractSummary:
    """Extract *archive_path* into *destination*.

    When *strip_prefix* is given, a leading ``<strip_prefix>/`` segment is
    removed from every member name that carries it; other names are joined
    unchanged.
    """
    destination.mkdir(parents=True, exist_ok=True)
    dest_real = destination.resolve()
    summary = ExtractSummary()

    try:
        with tarfile.open(archive_path, mode="r|gz") as stream:
            for member in stream:
                relative = _member_path(member.name, strip_prefix)
                target = _safe_target(dest_real, relative, member.name)
                if member.isdir():
                    _make_directory(target, member.mode, member.name)
                    summary.directories += 1
                elif member.isreg():
                    source = stream.extractfile(member)
                    if source is None:  # pragma: no cover - tarfile returns a reader for files
                        raise CorruptArchiveError(f"No data stream for {member.name}.")
                    summary.bytes_written += _write_file(target, source, member)
                    summary.files += 1
                elif member.issym():
                    _make_symlink(target, member.linkname, member.name)
                    summary.symlinks += 1
                else:
                    raise UnsupportedEntryTypeError(
                        f"Unsupported entry type {member.type!r} for {member.name} "
                        f"in {archive_path.name}."
                    )
    except (tarfile.TarError, gzip.BadGzipFile, EOFError, zlib.error) as exc:
        raise CorruptArchiveError(f"Archive {archive_path} is corrupt: {exc}") from exc
    except FileNotFoundError as exc:
        if not archive_path.exists():
            raise CorruptArchiveError(f"Archive {archive_path} does not exist.") from exc
        raise

    LOGGER.debug(
        "Extracted %s into %s (%d dirs, %d files, %d symlinks)",
        archive_path,
        destination,
        summary.directories,
        summary.files,
        summary.symlinks,
    )
    return summary


def _member_path(name: str, strip_prefix: str | None) -> str:
    normalized = name.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if strip_prefix:
        root = strip_prefix.strip("/")
        if normalized.rstrip("/") == root:
            return ""
        if normalized.startswith(f"{root}/"):
            normalized = normalized[len(root) + 1 :]
    return normalized


def _safe_target(dest_real: Path, relative: str, original: str) -> Path:
    if relative.startswith("/") or posixpath.isabs(relative):
        raise UnsafeEntryError(f"Archive entry uses an absolute path: {original!r}.")
    parts = [part for part in relative.split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise UnsafeEntryError(f"Archive entry attempts path traversal: {original!r}.")
    target = dest_real.joinpath(*parts) if parts else dest_real
    parent_real = target.parent.resolve() if parts else dest_real
    if parent_real != dest_real and dest_real not in parent_real.parents:
        raise UnsafeEntryError(f"Archive entry escapes the destination: {original!r}.")
    return target


def _make_directory(target: Path, mode: int, name: str) -> None:
    # An earlier symlink member must not redirect a directory outside the destination.
    if target.is_symlink():
        raise UnsafeEntryError(f"Directory entry {name!r} would follow a symbolic link.")
    target.mkdir(parents=True, exist_ok=True)
    os.chmod(target, mode & 0o7777 or 0o755)


def _write_file(target: Path, source: IO[bytes], member: tarfile.TarInfo) -> int:
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.is_symlink():
        target.unlink()
    written = 0
    with target.open("wb") as handle:
        while True:
            chunk = source.read(_COPY_CHUNK)
            if not chunk:
                break
            handle.write(chunk)
            written += len(chunk)
    if written != member.size:
        raise CorruptArchiveError(
            f"Short read for {member.name}: expected {member.size} bytes, got {written}."
        )
    os.chmod(target, member.mode & 0o7777)
    return written


def _make_symlink(target: Path, link_target: str, name: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.is_symlink() or target.is_file():
        target.unlink()
    try:
        os.symlink(link_target, target)
    except OSError as exc:
        raise SymlinkUnsupportedError(
            f"Unable to create symlink {target} -> {link_target} for {name}: {exc}"
        ) from exc


__all__ = [
    "CorruptArchiveError",
    "ExtractError",
    "ExtractSummary",
    "SymlinkUnsupportedError",
    "UnsafeEntryError",
    "UnsupportedEntryTypeError",
    "extract_tar_gz",
]
