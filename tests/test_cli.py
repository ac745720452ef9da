"""Tests for the govm CLI."""
from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
import responses
import yaml
from rich.console import Console
from typer.testing import CliRunner

from conftest import archive_bytes, listing_html, write_toolchain
from govm import __version__
from govm.cli import DownloadProgress, app
from govm.locking import LockManager

runner = CliRunner()

BASE_URL = "https://go.dev/dl/"


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> tuple[dict[str, str | None], Path]:
    home = tmp_path / "home"
    home.mkdir(parents=True, exist_ok=True)
    system_root = tmp_path / "system"
    system_root.mkdir(parents=True, exist_ok=True)
    config = {
        "system_root": str(system_root),
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "temp_dir": str(tmp_path / "tmp"),
        "platform": "linux-amd64",
        "download_url": BASE_URL,
        "lock_timeout": 1,
    }
    if config_overrides:
        config.update(config_overrides)

    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")

    # GOROOT and GOPATH are restored by the runner after each invocation.
    env: dict[str, str | None] = {
        "HOME": str(home),
        "GOVM_CONFIG_FILE": str(config_file),
        "GOROOT": None,
        "GOPATH": None,
    }
    return env, system_root


def _mock_release(tmp_path: Path, *versions: str) -> None:
    responses.add(responses.GET, BASE_URL, body=listing_html(*versions))
    for version in versions:
        responses.add(
            responses.GET,
            f"{BASE_URL}go{version}.linux-amd64.tar.gz",
            body=archive_bytes(tmp_path, version),
        )


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_flag(tmp_path: Path) -> None:
    """`--version` prints the package version."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"govm {__version__}" in result.stdout


def test_config_show_renders_table(tmp_path: Path) -> None:
    """`config show` prints the merged configuration in a table."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "system_root" in result.stdout
    assert "lock_timeout" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits JSON with the resolved configuration."""
    env, system_root = _prepare_environment(tmp_path, config_overrides={"active_dir": "golang"})

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["system_root"] == str(system_root)
    assert payload["active_dir"] == "golang"


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Configuration errors map to exit code 2."""
    env, _ = _prepare_environment(tmp_path, config_overrides={"default_target": "nowhere"})

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 2


@responses.activate
def test_install_latest_into_system_root(tmp_path: Path) -> None:
    """`install` fetches the newest release into the active slot."""
    env, system_root = _prepare_environment(tmp_path)
    _mock_release(tmp_path, "1.22.0", "1.21.5")

    result = runner.invoke(app, ["install"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Installed go 1.22.0" in result.stdout
    assert "export GOROOT=" in result.stdout
    assert (system_root / "go" / "bin" / "go").is_file()
    record = _operations(tmp_path)[-1]
    assert record["command"] == "install"
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["lock_wait_ms"] is not None


@responses.activate
def test_install_twice_reports_already_installed(tmp_path: Path) -> None:
    """A second install of the active version is a successful no-op."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.22.0")
    _mock_release(tmp_path, "1.22.0")

    result = runner.invoke(app, ["install", "--version", "1.22.0"], env=env)

    assert result.exit_code == 0
    assert "already installed" in result.stdout


@responses.activate
def test_install_unpublished_version_fails_validation(tmp_path: Path) -> None:
    """Versions absent from the listing exit with code 2."""
    env, system_root = _prepare_environment(tmp_path)
    _mock_release(tmp_path, "1.22.0")

    result = runner.invoke(app, ["install", "--version", "1.99.0"], env=env)

    assert result.exit_code == 2
    assert not (system_root / "go").exists()
    assert _operations(tmp_path)[-1]["result"]["rc"] == 2  # type: ignore[index]


def test_conflicting_target_flags(tmp_path: Path) -> None:
    """`--global` and `--user` cannot be combined."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["install", "--global", "--user"], env=env)

    assert result.exit_code == 2
    assert "mutually exclusive" in result.stdout


@responses.activate
def test_install_missing_custom_root(tmp_path: Path) -> None:
    """A custom root that does not exist is an environment error."""
    env, _ = _prepare_environment(tmp_path)
    _mock_release(tmp_path, "1.22.0")

    result = runner.invoke(
        app, ["install", "--custom-path", str(tmp_path / "missing")], env=env
    )

    assert result.exit_code == 3


@responses.activate
def test_install_network_failure(tmp_path: Path) -> None:
    """Listing failures exit with the provider code."""
    env, _ = _prepare_environment(tmp_path)
    responses.add(responses.GET, BASE_URL, status=503)

    result = runner.invoke(app, ["install"], env=env)

    assert result.exit_code == 4


@responses.activate
def test_install_dry_run_writes_nothing(tmp_path: Path) -> None:
    """`--dry-run` reports the plan only."""
    env, system_root = _prepare_environment(tmp_path)
    _mock_release(tmp_path, "1.22.0")

    result = runner.invoke(app, ["install", "--dry-run"], env=env)

    assert result.exit_code == 0
    assert "Dry run" in result.stdout
    assert list(system_root.iterdir()) == []


@responses.activate
def test_install_user_target(tmp_path: Path) -> None:
    """`--user` installs into the home directory."""
    env, _ = _prepare_environment(tmp_path)
    _mock_release(tmp_path, "1.22.0")

    result = runner.invoke(app, ["install", "--user"], env=env)

    assert result.exit_code == 0, result.stdout
    assert (tmp_path / "home" / "go" / "bin" / "go").is_file()


@responses.activate
def test_install_times_out_on_held_lock(tmp_path: Path) -> None:
    """A held install-root lock produces the environment exit code."""
    env, system_root = _prepare_environment(tmp_path)
    _mock_release(tmp_path, "1.22.0")

    with LockManager(system_root).root_lock():
        result = runner.invoke(app, ["--lock-timeout", "0.1", "install"], env=env)

    assert result.exit_code == 3
    assert not (system_root / "go").exists()


@responses.activate
def test_update_switches_to_latest(tmp_path: Path) -> None:
    """`update` installs the newest release and keeps the old one archived."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.21.5")
    _mock_release(tmp_path, "1.22.0", "1.21.5")

    result = runner.invoke(app, ["update"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Switched to go 1.22.0" in result.stdout
    assert (system_root / "go-1.21.5" / "bin" / "go").is_file()


def test_switch_to_cached_version(tmp_path: Path) -> None:
    """`switch` promotes a cached release without network access."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.21.5")
    write_toolchain(system_root / "go-1.20.0", "1.20.0")

    result = runner.invoke(app, ["switch", "1.20.0"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Switched to go 1.20.0" in result.stdout
    assert (system_root / "go-1.21.5").is_dir()
    assert not (system_root / "go-1.20.0").exists()


def test_switch_to_active_version(tmp_path: Path) -> None:
    """Switching to the active version is a no-op."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.21.5")

    result = runner.invoke(app, ["switch", "1.21.5"], env=env)

    assert result.exit_code == 0
    assert "already active" in result.stdout


def test_status_json_reports_install(tmp_path: Path) -> None:
    """`status --json` describes the active tree and environment."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.21.5")
    env["GOROOT"] = str(system_root / "go")

    result = runner.invoke(app, ["status", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["installed"] is True
    assert payload["version"] == "1.21.5"
    assert payload["platform"] == "linux/amd64"
    assert payload["install_type"] == "global"
    assert payload["writable"] is True
    environment = payload["environment"]
    assert isinstance(environment, dict)
    assert environment["root"]["correct"] is True


def test_status_table_when_not_installed(tmp_path: Path) -> None:
    """`status` still succeeds when nothing is installed."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 0
    assert "Installed" in result.stdout
    assert _operations(tmp_path)[-1]["result"]["status"] == "warning"  # type: ignore[index]


@responses.activate
def test_latest_prints_version(tmp_path: Path) -> None:
    """`latest` prints the newest published release."""
    env, _ = _prepare_environment(tmp_path)
    responses.add(responses.GET, BASE_URL, body=listing_html("1.22.0", "1.21.5"))

    result = runner.invoke(app, ["latest"], env=env)

    assert result.exit_code == 0
    assert result.stdout.strip() == "1.22.0"


@responses.activate
def test_list_remote_json_merges_installed(tmp_path: Path) -> None:
    """`list --remote --json` marks installed and active releases."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.21.5")
    write_toolchain(system_root / "go-1.20.0", "1.20.0")
    responses.add(responses.GET, BASE_URL, body=listing_html("1.22.0", "1.21.5"))

    result = runner.invoke(app, ["list", "--remote", "--json"], env=env)

    assert result.exit_code == 0
    entries = {entry["version"]: entry for entry in _extract_json(result.stdout)["versions"]}  # type: ignore[union-attr]
    assert entries["1.22.0"]["installed"] is False
    assert entries["1.21.5"]["active"] is True
    assert entries["1.20.0"]["installed"] is True
    assert entries["1.20.0"]["source"] == "local"


def test_list_table_without_remote(tmp_path: Path) -> None:
    """`list` shows archived releases."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go-1.20.0", "1.20.0")

    result = runner.invoke(app, ["list"], env=env)

    assert result.exit_code == 0
    assert "1.20.0" in result.stdout


@responses.activate
def test_already_installed_commands_leave_root_untouched(tmp_path: Path) -> None:
    """`install` and `update` of the active release write nothing into the root."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.22.0")
    _mock_release(tmp_path, "1.22.0", "1.21.5")
    before = sorted(path.name for path in system_root.iterdir())

    for args in (["install", "--version", "1.22.0"], ["update"]):
        result = runner.invoke(app, args, env=env)
        assert result.exit_code == 0, result.stdout
        assert "already installed" in result.stdout

    assert sorted(path.name for path in system_root.iterdir()) == before
    assert _operations(tmp_path)[-1]["lock_wait_ms"] is None


@responses.activate
def test_update_on_read_only_root_reports_already_installed(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The write check only runs when the root would change."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.22.0")
    _mock_release(tmp_path, "1.22.0")
    monkeypatch.setattr("govm.paths.is_writable", lambda _path: False)

    result = runner.invoke(app, ["update"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "already installed" in result.stdout


def test_switch_to_active_version_on_read_only_root(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Switching to the active release needs neither write access nor the lock."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go", "1.21.5")
    monkeypatch.setattr("govm.paths.is_writable", lambda _path: False)

    result = runner.invoke(app, ["switch", "1.21.5"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "already active" in result.stdout
    assert not (system_root / ".govm.lock").exists()


def test_switch_rejects_unknown_label(tmp_path: Path) -> None:
    """The backup label for unreadable trees is not a switchable version."""
    env, system_root = _prepare_environment(tmp_path)
    write_toolchain(system_root / "go-unknown", "1.19.0")

    result = runner.invoke(app, ["switch", "unknown"], env=env)

    assert result.exit_code == 2
    assert (system_root / "go-unknown" / "bin" / "go").is_file()


@responses.activate
def test_export_lines_are_not_wrapped(tmp_path: Path) -> None:
    """Long install roots still print one pasteable ``export`` line per variable."""
    env, _ = _prepare_environment(tmp_path)
    _mock_release(tmp_path, "1.22.0")
    root = tmp_path / ("toolchains-" * 12) / "sdk"
    root.mkdir(parents=True)

    result = runner.invoke(app, ["install", "--custom-path", str(root)], env=env)

    assert result.exit_code == 0, result.stdout
    exports = [line.strip() for line in result.stdout.splitlines() if "export" in line]
    assert len(exports) == 2
    assert exports[0].startswith("export GOROOT=")
    assert exports[0].endswith("/sdk/go")
    assert exports[1].startswith("export GOPATH=")


def test_download_progress_tracks_received_bytes() -> None:
    """The progress bar follows ``(received, total)`` callbacks."""
    with DownloadProgress(Console(file=io.StringIO())) as progress:
        progress(512, 2048)
        progress(2048, 2048)

    task = progress.progress.tasks[0]
    assert task.completed == 2048
    assert task.total == 2048
