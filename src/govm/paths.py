"""Install-root selection and writability checks."""
from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path

WRITE_CHECK_NAME = ".govm-write-check"


class PathPolicyError(RuntimeError):
    """Raised when an install root cannot be determined or used."""


class NoHomeDirectoryError(PathPolicyError):
    """Raised when a per-user install is requested without a home directory."""


class EmptySelectorError(PathPolicyError):
    """Raised when a custom install path is blank."""


class UnwritableRootError(PathPolicyError):
    """Raised when the install root rejects the write probe."""


class InstallTarget(str, Enum):
    """Where the toolchain should be installed."""

    SYSTEM = "system"
    USER = "user"
    CUSTOM = "custom"


def resolve_root(
    target: InstallTarget,
    *,
    custom_path: str | os.PathLike[str] | None = None,
    system_root: Path = Path("/usr/local"),
    env: Mapping[str, str] | None = None,
) -> Path:
    """Return the install root for *target*."""
    if target is InstallTarget.SYSTEM:
        return system_root
    if target is InstallTarget.USER:
        home = home_directory(env)
        if home is None:
            raise NoHomeDirectoryError("Unable to determine the current user's home directory.")
        return home
    raw = "" if custom_path is None else os.fspath(custom_path)
    if not raw.strip():
        raise EmptySelectorError("A custom install path must not be empty.")
    return Path(raw).expanduser()


def home_directory(env: Mapping[str, str] | None = None) -> Path | None:
    """Return the home directory from *env* (``HOME``) or the password database."""
    resolved = os.environ if env is None else env
    raw = resolved.get("HOME", "").strip()
    if raw:
        return Path(raw)
    try:
        return Path.home()
    except RuntimeError:
        return None


def is_writable(path: Path) -> bool:
    """Return True when a marker file can be created inside *path*.

    This is a best-effort probe; later writes can still fail.
    """
    marker = path / WRITE_CHECK_NAME
    try:
        with marker.open("w", encoding="utf-8"):
            pass
    except OSError:
        return False
    try:
        marker.unlink()
    except OSError:
        pass
    return True


def ensure_writable(path: Path) -> None:
    """Raise :class:`UnwritableRootError` unless *path* passes the write probe."""
    if not path.is_dir():
        raise UnwritableRootError(f"Install root {path} does not exist or is not a directory.")
    if not is_writable(path):
        raise UnwritableRootError(f"Install root {path} is not writable.")


def classify_root(root: Path, *, system_root: Path, home: Path | None) -> str:
    """Describe *root* as ``global``, ``user`` or ``custom``."""
    if root == system_root:
        return "global"
    if home is not None and root == home:
        return "user"
    return "custom"


__all__ = [
    "EmptySelectorError",
    "InstallTarget",
    "NoHomeDirectoryError",
    "PathPolicyError",
    "UnwritableRootError",
    "WRITE_CHECK_NAME",
    "classify_root",
    "ensure_writable",
    "home_directory",
    "is_writable",
    "resolve_root",
]
