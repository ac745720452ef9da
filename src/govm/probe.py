"""Detect the toolchain version installed in a directory."""
from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

UNKNOWN_VERSION = "Unknown version"
UNKNOWN_PLATFORM = "Unknown OS/Arch"


class ProbeError(RuntimeError):
    """Raised when the toolchain in a directory cannot be queried."""


class NotInstalledError(ProbeError):
    """Raised when the toolchain executable is missing or not executable."""


class InvocationError(ProbeError):
    """Raised when running ``<executable> version`` fails."""


@dataclass(frozen=True, slots=True)
class ToolchainVersion:
    """Parsed ``<executable> version`` output."""

    version: str
    platform: str
    raw: str

    @property
    def known(self) -> bool:
        """Return True when the output matched the expected pattern."""
        return self.version != UNKNOWN_VERSION

    def matches(self, version: str | None) -> bool:
        """Return True when *version* equals the parsed version.

        The unknown sentinel never matches anything, including itself.
        """
        if not self.known or not version:
            return False
        return self.version == version.strip()


@dataclass(slots=True)
class VersionProbe:
    """Run the toolchain's version query inside an install directory."""

    executable: str = "go"
    prefix: str = "go"
    timeout: float = 10.0

    def executable_path(self, install_dir: Path) -> Path:
        """Return the expected executable path under *install_dir*."""
        return install_dir / "bin" / self.executable

    def probe(self, install_dir: Path) -> ToolchainVersion:
        """Return the version installed in *install_dir*."""
        binary = self.executable_path(install_dir)
        if not binary.is_file() or not os.access(binary, os.X_OK):
            raise NotInstalledError(f"No executable toolchain found at {binary}.")

        try:
            result = subprocess.run(  # noqa: S603 - binary path is resolved above
                [str(binary), "version"],
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise InvocationError(
                f"'{binary} version' did not finish within {self.timeout:.0f}s."
            ) from exc
        except OSError as exc:
            raise InvocationError(f"Unable to run '{binary} version': {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "unknown error"
            raise InvocationError(
                f"'{binary} version' exited with {result.returncode}: {message}"
            )

        output = (result.stdout or "").strip()
        parsed = self.parse(output)
        LOGGER.debug("Probed %s: %s (%s)", install_dir, parsed.version, parsed.platform)
        return parsed

    def current(self, install_dir: Path) -> ToolchainVersion | None:
        """Return the installed version, or None when nothing is installed."""
        try:
            return self.probe(install_dir)
        except NotInstalledError:
            return None

    def parse(self, output: str) -> ToolchainVersion:
        """Parse version output, returning the unknown sentinel on mismatch."""
        pattern = re.compile(
            rf"{re.escape(self.executable)} version {re.escape(self.prefix)}"
            r"(\d+\.\d+\.\d+) (\S+/\S+)"
        )
        match = pattern.search(output)
        if match is None:
            return ToolchainVersion(version=UNKNOWN_VERSION, platform=UNKNOWN_PLATFORM, raw=output)
        return ToolchainVersion(version=match.group(1), platform=match.group(2), raw=output)


__all__ = [
    "InvocationError",
    "NotInstalledError",
    "ProbeError",
    "ToolchainVersion",
    "UNKNOWN_PLATFORM",
    "UNKNOWN_VERSION",
    "VersionProbe",
]
