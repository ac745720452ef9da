"""Activate a toolchain version, downloading it first when it is not cached."""
from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .catalog import ProgressCallback, VersionCatalog
from .layout import InstallLayout, RenameFailedError, discard
from .logging import OperationScope
from .probe import (
    UNKNOWN_PLATFORM,
    UNKNOWN_VERSION,
    InvocationError,
    ToolchainVersion,
    VersionProbe,
)

LOGGER = logging.getLogger(__name__)

SCRATCH_PREFIX = "govm-download-"

_RELEASE_PATTERN = re.compile(r"\d+\.\d+\.\d+")


class SwitchError(RuntimeError):
    """Raised when a switch request is invalid."""


@dataclass(frozen=True, slots=True)
class SwitchResult:
    """Outcome of :meth:`SwitchEngine.switch_to`."""

    version: str
    active_path: Path
    previous: ToolchainVersion | None
    backup: Path | None
    downloaded: bool
    changed: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "active_path": str(self.active_path),
            "previous": self.previous.version if self.previous else None,
            "backup": str(self.backup) if self.backup else None,
            "downloaded": self.downloaded,
            "changed": self.changed,
        }


class SwitchEngine:
    """Move archived trees in and out of the active slot."""

    def __init__(
        self,
        *,
        layout: InstallLayout,
        catalog: VersionCatalog,
        probe: VersionProbe,
        temp_dir: Path,
        strip_prefix: str | None = "go",
        progress: ProgressCallback | None = None,
    ) -> None:
        """Initialise the engine for one install root."""
        self.layout = layout
        self.catalog = catalog
        self.probe = probe
        self.temp_dir = temp_dir
        self.strip_prefix = strip_prefix
        self.progress = progress

    def active_version(self) -> ToolchainVersion | None:
        """Return the active tree's version, or None when the slot is empty.

        A tree whose executable cannot be run reports the unknown sentinel.
        """
        if not self.layout.has_active():
            return None
        try:
            return self.probe.current(self.layout.active_path) or _unknown(
                "no executable in active tree"
            )
        except InvocationError as exc:
            LOGGER.warning("Unable to query active toolchain: %s", exc)
            return _unknown(str(exc))

    def fetch(self, version: str, *, scope: OperationScope | None = None) -> Path:
        """Download and extract *version* into a staging directory inside the root."""
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=str(self.temp_dir)))
        try:
            archive = self.catalog.download(version, scratch, progress=self.progress)
            if scope is not None:
                scope.add_step("catalog.download", detail=self.catalog.archive_url(version))
            staging = self.layout.stage_archive(archive, strip_prefix=self.strip_prefix)
            if scope is not None:
                scope.add_step("archive.extract", detail=str(staging))
        finally:
            discard(scratch)
        return staging

    def provision(
        self,
        version: str,
        destination: Path,
        *,
        scope: OperationScope | None = None,
    ) -> Path:
        """Install *version* at *destination* through a staging directory."""
        staging = self.fetch(version, scope=scope)
        self.layout.place(staging, destination)
        if scope is not None:
            scope.add_step("layout.place", detail=str(destination))
        LOGGER.info("Installed %s into %s", version, destination)
        return destination

    def validate(self, version: str) -> str:
        """Return *version* stripped, or raise :class:`SwitchError` unless it is X.Y.Z."""
        requested = version.strip()
        if not requested:
            raise SwitchError("Version identifier must be a non-empty string.")
        if not _RELEASE_PATTERN.fullmatch(requested):
            raise SwitchError(f"Version {requested!r} is not a release number (X.Y.Z).")
        return requested

    def switch_to(self, version: str, *, scope: OperationScope | None = None) -> SwitchResult:
        """Make *version* the active tree."""
        requested = self.validate(version)

        current = self.active_version()
        if current is not None and current.matches(requested):
            return SwitchResult(
                version=requested,
                active_path=self.layout.active_path,
                previous=current,
                backup=None,
                downloaded=False,
                changed=False,
            )

        source = self.layout.archived_path(requested)
        downloaded = False
        if not self.layout.is_cached(requested):
            self.provision(requested, source, scope=scope)
            downloaded = True

        backup: Path | None = None
        if current is not None:
            backup = self.layout.backup_active(current.version if current.known else None)
            if scope is not None:
                scope.add_step("layout.backup", detail=str(backup))

        try:
            self.layout.promote(source)
        except RenameFailedError:
            LOGGER.error(
                "Activation of %s failed; %s and %s were left in place.",
                requested,
                source,
                backup or "the active slot",
            )
            raise
        if scope is not None:
            scope.add_step("layout.promote", detail=str(self.layout.active_path))

        return SwitchResult(
            version=requested,
            active_path=self.layout.active_path,
            previous=current,
            backup=backup,
            downloaded=downloaded,
            changed=True,
        )


def _unknown(raw: str) -> ToolchainVersion:
    return ToolchainVersion(version=UNKNOWN_VERSION, platform=UNKNOWN_PLATFORM, raw=raw)


__all__ = [
    "RenameFailedError",
    "SCRATCH_PREFIX",
    "SwitchEngine",
    "SwitchError",
    "SwitchResult",
]
