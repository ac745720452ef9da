"""Tests for toolchain version detection."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from conftest import write_toolchain
from govm.probe import (
    UNKNOWN_PLATFORM,
    UNKNOWN_VERSION,
    InvocationError,
    NotInstalledError,
    VersionProbe,
)


def test_probe_reads_version_and_platform(tmp_path: Path) -> None:
    """Well-formed output yields the version and OS/arch."""
    write_toolchain(tmp_path / "go", "1.21.5")

    result = VersionProbe().probe(tmp_path / "go")

    assert result.version == "1.21.5"
    assert result.platform == "linux/amd64"
    assert result.known is True
    assert result.matches("1.21.5")
    assert not result.matches("1.22.0")


def test_parse_unexpected_output_returns_sentinel() -> None:
    """Output that does not match yields the unknown sentinel."""
    result = VersionProbe().parse("go version devel +abc123 Tue Jan 1")

    assert result.version == UNKNOWN_VERSION
    assert result.platform == UNKNOWN_PLATFORM
    assert result.known is False
    assert not result.matches(UNKNOWN_VERSION)
    assert not result.matches("1.22.0")


def test_probe_missing_binary_raises(tmp_path: Path) -> None:
    """No executable means nothing is installed."""
    (tmp_path / "go").mkdir()

    probe = VersionProbe()
    with pytest.raises(NotInstalledError):
        probe.probe(tmp_path / "go")
    assert probe.current(tmp_path / "go") is None


def test_probe_non_executable_binary_raises(tmp_path: Path) -> None:
    """A binary without the execute bit is not considered installed."""
    binary = write_toolchain(tmp_path / "go", "1.21.5")
    binary.chmod(0o644)

    with pytest.raises(NotInstalledError):
        VersionProbe().probe(tmp_path / "go")


def test_probe_failing_binary_raises(tmp_path: Path) -> None:
    """A non-zero exit status is an invocation error."""
    binary = tmp_path / "go" / "bin" / "go"
    binary.parent.mkdir(parents=True)
    binary.write_text("#!/bin/sh\necho broken >&2\nexit 3\n", encoding="utf-8")
    binary.chmod(0o755)

    with pytest.raises(InvocationError, match="broken"):
        VersionProbe().probe(tmp_path / "go")


def test_probe_timeout_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Hung version queries are reported as invocation errors."""
    write_toolchain(tmp_path / "go", "1.21.5")

    def hang(*args: object, **kwargs: object) -> None:
        raise subprocess.TimeoutExpired(cmd="go version", timeout=1)

    monkeypatch.setattr(subprocess, "run", hang)

    with pytest.raises(InvocationError, match="did not finish"):
        VersionProbe(timeout=1).probe(tmp_path / "go")


def test_probe_honours_custom_names(tmp_path: Path) -> None:
    """Executable and prefix are configurable."""
    binary = tmp_path / "tool" / "bin" / "tool"
    binary.parent.mkdir(parents=True)
    binary.write_text('#!/bin/sh\necho "tool version v2.3.4 linux/arm64"\n', encoding="utf-8")
    binary.chmod(0o755)

    result = VersionProbe(executable="tool", prefix="v").probe(tmp_path / "tool")

    assert result.version == "2.3.4"
    assert result.platform == "linux/arm64"
