"""Process environment variables describing the active toolchain."""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path

from .config import EnvironmentConfig


@dataclass(frozen=True, slots=True)
class VariableStatus:
    """Expected and observed value of one environment variable."""

    name: str
    expected: str
    actual: str | None

    @property
    def correct(self) -> bool:
        """Return True when the observed value points at the expected path."""
        if not self.actual:
            return False
        return os.path.normpath(self.actual) == os.path.normpath(self.expected)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "expected": self.expected,
            "actual": self.actual,
            "correct": self.correct,
        }


@dataclass(frozen=True, slots=True)
class EnvironmentReport:
    """Observed environment relative to an active tree."""

    root: VariableStatus
    workspace: VariableStatus
    bin_dir: Path
    bin_on_path: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": self.root.to_dict(),
            "workspace": self.workspace.to_dict(),
            "bin_dir": str(self.bin_dir),
            "bin_on_path": self.bin_on_path,
        }


def expected_environment(active_path: Path, config: EnvironmentConfig) -> dict[str, str]:
    """Return the variables that should be set for *active_path*."""
    return {
        config.root_var: str(active_path),
        config.workspace_var: str(config.workspace_dir),
    }


def apply_environment(
    active_path: Path,
    config: EnvironmentConfig,
    *,
    environ: MutableMapping[str, str] | None = None,
) -> dict[str, str]:
    """Set the root and workspace variables for the current process.

    Only the running process (and its children) observe the change; shell
    profiles are left alone.
    """
    target = os.environ if environ is None else environ
    values = expected_environment(active_path, config)
    target.update(values)
    return values


def inspect_environment(
    active_path: Path,
    config: EnvironmentConfig,
    *,
    environ: Mapping[str, str] | None = None,
) -> EnvironmentReport:
    """Compare the current environment with what *active_path* needs."""
    source = os.environ if environ is None else environ
    expected = expected_environment(active_path, config)
    bin_dir = active_path / "bin"
    normalized_bin = os.path.normpath(str(bin_dir))
    path_entries = [entry for entry in source.get("PATH", "").split(os.pathsep) if entry]
    return EnvironmentReport(
        root=VariableStatus(
            name=config.root_var,
            expected=expected[config.root_var],
            actual=source.get(config.root_var),
        ),
        workspace=VariableStatus(
            name=config.workspace_var,
            expected=expected[config.workspace_var],
            actual=source.get(config.workspace_var),
        ),
        bin_dir=bin_dir,
        bin_on_path=any(os.path.normpath(entry) == normalized_bin for entry in path_entries),
    )


__all__ = [
    "EnvironmentReport",
    "VariableStatus",
    "apply_environment",
    "expected_environment",
    "inspect_environment",
]
