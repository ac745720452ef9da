"""Configuration loader for govm.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/govm/config.yml`` (or an override path).
3. Environment variables prefixed with ``GOVM_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GOVM_SYSTEM_ROOT=/opt
    export GOVM_ENVIRONMENT__WORKSPACE_DIR=/srv/gopath

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and constructed once per invocation; nothing in govm reads
configuration from module-level state.
"""
from __future__ import annotations

import os
import platform as platform_module
import tempfile
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from .paths import home_directory

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load govm configuration. Install with "
        "`pip install govm` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "GOVM_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_TARGETS = {"system", "user", "custom"}

_OS_ALIASES = {"darwin": "darwin", "linux": "linux", "windows": "windows", "freebsd": "freebsd"}
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv6l": "armv6l",
    "armv7l": "armv6l",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class EnvironmentConfig:
    """Names and values of the variables applied after install or switch."""

    root_var: str = "GOROOT"
    workspace_var: str = "GOPATH"
    workspace_dir: Path = Path("~/go")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root_var": self.root_var,
            "workspace_var": self.workspace_var,
            "workspace_dir": str(self.workspace_dir),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for govm."""

    config_file: Path
    system_root: Path
    default_target: str
    custom_root: Path | None
    active_dir: str
    archive_prefix: str
    executable: str
    download_url: str
    platform: str
    temp_dir: Path
    state_dir: Path
    logs_dir: Path
    lock_timeout: float
    http_timeout: float
    probe_timeout: float
    home: Path | None
    environment: EnvironmentConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "system_root": str(self.system_root),
            "default_target": self.default_target,
            "custom_root": str(self.custom_root) if self.custom_root else None,
            "active_dir": self.active_dir,
            "archive_prefix": self.archive_prefix,
            "executable": self.executable,
            "download_url": self.download_url,
            "platform": self.platform,
            "temp_dir": str(self.temp_dir),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "lock_timeout": self.lock_timeout,
            "http_timeout": self.http_timeout,
            "probe_timeout": self.probe_timeout,
            "environment": self.environment.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/govm/config.yml",
    "system_root": "/usr/local",
    "default_target": "system",
    "custom_root": None,
    "active_dir": "go",
    "archive_prefix": "go",
    "executable": "go",
    "download_url": "https://go.dev/dl/",
    "platform": None,  # derived from the running interpreter when absent
    "temp_dir": None,  # tempfile.gettempdir() when absent
    "state_dir": "~/.local/state/govm",
    "logs_dir": None,  # derived from state_dir when absent
    "lock_timeout": 30.0,
    "http_timeout": 30.0,
    "probe_timeout": 10.0,
    "environment": {
        "root_var": "GOROOT",
        "workspace_var": "GOPATH",
        "workspace_dir": "~/go",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_ENVIRONMENT_KEYS = {"root_var", "workspace_var", "workspace_dir"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)
    home = home_directory(resolved_env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env, home)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged, home)


def default_platform() -> str:
    """Return the ``<os>-<arch>`` suffix used by the download listing."""
    system = platform_module.system().lower()
    machine = platform_module.machine().lower()
    return f"{_OS_ALIASES.get(system, system)}-{_ARCH_ALIASES.get(machine, machine)}"


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
    home: Path | None,
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return _to_path(default_path, home)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for label in ("lock_timeout", "http_timeout", "probe_timeout"):
        value = raw.get(label)
        if value is not None:
            _expect_positive_float(value, label, default=1.0)

    target = raw.get("default_target")
    if target is not None and str(target) not in ALLOWED_TARGETS:
        allowed = ", ".join(sorted(ALLOWED_TARGETS))
        raise ConfigError(f"Unsupported default_target '{target}'. Allowed: {allowed}.")

    for label in ("active_dir", "archive_prefix", "executable"):
        value = raw.get(label)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{label} must be a non-empty string.")
        if "/" in value or value in {".", ".."}:
            raise ConfigError(f"{label} must be a plain directory or file name. Got {value!r}.")

    environment = raw.get("environment")
    if environment is not None:
        environment_map = _as_dict(environment, "environment")
        unknown = set(environment_map.keys()) - ALLOWED_ENVIRONMENT_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown environment configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object], home: Path | None) -> AppConfig:
    config_file = _to_path(raw.get("config_file"), home)
    system_root = _to_path(raw.get("system_root"), home)
    state_dir = _to_path(raw.get("state_dir"), home)

    custom_value = raw.get("custom_root")
    custom_root: Path | None = None
    if isinstance(custom_value, (str, Path)):
        if str(custom_value).strip():
            custom_root = _to_path(custom_value, home)
    elif custom_value is not None:
        raise ConfigError("custom_root must be a string, Path, or null.")

    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value, home) if logs_value else state_dir / "logs"

    temp_value = raw.get("temp_dir")
    temp_dir = _to_path(temp_value, home) if temp_value else Path(tempfile.gettempdir())

    platform_value = raw.get("platform")
    platform_suffix = str(platform_value).strip() if platform_value else default_platform()

    download_url = _expect_str(raw.get("download_url"), "download_url").strip()
    if not download_url:
        raise ConfigError("download_url must be a non-empty string.")
    if not download_url.endswith("/"):
        download_url += "/"

    environment_mapping = _as_dict(raw.get("environment"), "environment")
    default_environment = EnvironmentConfig()
    environment = EnvironmentConfig(
        root_var=str(environment_mapping.get("root_var") or default_environment.root_var),
        workspace_var=str(
            environment_mapping.get("workspace_var") or default_environment.workspace_var
        ),
        workspace_dir=_to_path(
            environment_mapping.get("workspace_dir") or str(default_environment.workspace_dir),
            home,
        ),
    )

    return AppConfig(
        config_file=config_file,
        system_root=system_root,
        default_target=str(raw.get("default_target", "system")),
        custom_root=custom_root,
        active_dir=str(raw.get("active_dir")),
        archive_prefix=str(raw.get("archive_prefix")),
        executable=str(raw.get("executable")),
        download_url=download_url,
        platform=platform_suffix,
        temp_dir=temp_dir,
        state_dir=state_dir,
        logs_dir=logs_dir,
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        http_timeout=_expect_positive_float(raw.get("http_timeout"), "http_timeout", default=30.0),
        probe_timeout=_expect_positive_float(
            raw.get("probe_timeout"), "probe_timeout", default=10.0
        ),
        home=home,
        environment=environment,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object, home: Path | None = None) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, (str, Path)):
        text = str(value)
        if home is not None and text == "~":
            return home
        if home is not None and text.startswith("~/"):
            return home / text[2:]
        return Path(text).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "EnvironmentConfig",
    "default_platform",
    "load_config",
]
