"""On-disk layout of an install root.

An install root holds at most one active tree (``<root>/<active_name>``) and
any number of archived trees named ``<root>/<prefix>-<version>``. Archived
trees double as backups of previously active versions and as the cache
consulted before downloading.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .archive import ExtractSummary, extract_tar_gz

LOGGER = logging.getLogger(__name__)

STAGING_PREFIX = ".govm-stage-"
UNKNOWN_BACKUP_LABEL = "unknown"


class LayoutError(RuntimeError):
    """Raised when the install root cannot be rearranged."""


class RenameFailedError(LayoutError):
    """Raised when a tree cannot be renamed into or out of the active slot."""


@dataclass(frozen=True, slots=True)
class InstallLayout:
    """Paths and tree moves within a single install root."""

    root: Path
    active_name: str = "go"
    prefix: str = "go"

    @property
    def active_path(self) -> Path:
        """Return the active tree location."""
        return self.root / self.active_name

    def archived_path(self, version: str) -> Path:
        """Return the archived tree location for *version*."""
        return self.root / f"{self.prefix}-{version}"

    def backup_path(self, version: str | None) -> Path:
        """Return where the active tree is moved when it reports *version*."""
        return self.archived_path(version or UNKNOWN_BACKUP_LABEL)

    def has_active(self) -> bool:
        """Return True when the active slot holds a non-empty directory."""
        active = self.active_path
        if not active.is_dir():
            return False
        return any(active.iterdir())

    def is_cached(self, version: str) -> bool:
        """Return True when an archived tree for *version* exists."""
        return self.archived_path(version).is_dir()

    def archived_versions(self) -> list[str]:
        """Return the versions of archived trees, oldest first."""
        if not self.root.is_dir():
            return []
        marker = f"{self.prefix}-"
        found: set[str] = set()
        for entry in self.root.iterdir():
            if entry.name == self.active_name or not entry.name.startswith(marker):
                continue
            if entry.is_dir():
                found.add(entry.name[len(marker) :])
        return sort_versions(found)

    def backup_active(self, version: str | None) -> Path:
        """Move the active tree to its backup name and return the new path.

        A previous backup with the same name is deleted first.
        """
        target = self.backup_path(version)
        if target.exists() or target.is_symlink():
            LOGGER.info("Replacing existing backup %s", target)
            try:
                _remove_tree(target)
            except OSError as exc:
                raise RenameFailedError(
                    f"Unable to remove previous backup {target}: {exc}"
                ) from exc
        try:
            self.active_path.rename(target)
        except OSError as exc:
            raise RenameFailedError(
                f"Unable to back up {self.active_path} to {target}: {exc}"
            ) from exc
        LOGGER.debug("Backed up %s to %s", self.active_path, target)
        return target

    def promote(self, source: Path) -> None:
        """Rename *source* into the active slot.

        The slot must be free or hold an empty directory; there is no copy
        fallback when the rename fails.
        """
        self._clear_slot(self.active_path)
        try:
            source.rename(self.active_path)
        except OSError as exc:
            raise RenameFailedError(
                f"Unable to move {source} into {self.active_path}: {exc}"
            ) from exc
        LOGGER.debug("Promoted %s to %s", source, self.active_path)

    def stage_archive(self, archive: Path, *, strip_prefix: str | None) -> Path:
        """Extract *archive* into a fresh staging directory inside the root.

        The staging directory is removed if extraction fails.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=str(self.root)))
        try:
            summary: ExtractSummary = extract_tar_gz(
                archive, staging, strip_prefix=strip_prefix
            )
        except BaseException:
            discard(staging)
            raise
        LOGGER.debug(
            "Staged %s in %s (%d files)", archive.name, staging, summary.files
        )
        return staging

    def place(self, staging: Path, destination: Path) -> None:
        """Rename a staged tree to *destination*, discarding it on failure."""
        try:
            if destination == self.active_path:
                self.promote(staging)
                return
            self._clear_slot(destination)
            try:
                staging.rename(destination)
            except OSError as exc:
                raise RenameFailedError(
                    f"Unable to move {staging} to {destination}: {exc}"
                ) from exc
        except BaseException:
            discard(staging)
            raise

    def _clear_slot(self, path: Path) -> None:
        if not path.exists() and not path.is_symlink():
            return
        if path.is_dir() and not path.is_symlink() and not any(path.iterdir()):
            path.rmdir()
            return
        raise RenameFailedError(f"Refusing to replace non-empty {path}.")


def discard(path: Path) -> None:
    """Remove a scratch or staging path, logging instead of raising on failure."""
    if not path.exists() and not path.is_symlink():
        return
    try:
        _remove_tree(path)
    except OSError as exc:
        LOGGER.warning("Unable to remove %s: %s", path, exc)


def sort_versions(versions: set[str]) -> list[str]:
    """Return versions sorted using packaging where possible."""
    parsed: list[tuple[Version, str]] = []
    invalid: list[str] = []
    for version in versions:
        try:
            parsed.append((Version(version), version))
        except InvalidVersion:
            invalid.append(version)
    parsed.sort()
    invalid.sort()
    return [item for _, item in parsed] + invalid


def _remove_tree(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


__all__ = [
    "InstallLayout",
    "LayoutError",
    "RenameFailedError",
    "STAGING_PREFIX",
    "UNKNOWN_BACKUP_LABEL",
    "discard",
    "sort_versions",
]
