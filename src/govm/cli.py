"""Typer-powered command line interface for ``govm``.

Commands resolve an install root (system, per-user or custom), then hand off
to the installer and switch engine. Every command runs inside a structured
operation scope so its outcome lands in ``operations.jsonl``; mutating
commands additionally hold the install-root lock.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, cast

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from . import __version__
from .archive import ExtractError
from .catalog import CatalogError, ProgressCallback, VersionCatalog
from .config import AppConfig, ConfigError, load_config
from .environment import apply_environment, inspect_environment
from .exit_codes import ExitCode
from .installer import (
    InstallAction,
    InstallerError,
    InstallOrchestrator,
    InstallPlan,
    InstallResult,
)
from .layout import InstallLayout, LayoutError, sort_versions
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .paths import (
    InstallTarget,
    PathPolicyError,
    classify_root,
    ensure_writable,
    is_writable,
    resolve_root,
)
from .probe import ProbeError, VersionProbe
from .switch import SwitchEngine, SwitchError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to govm's YAML config file.",
)

GLOBAL_OPTION = typer.Option(
    False,
    "--global",
    help="Use the system-wide install root (default /usr/local).",
)

USER_OPTION = typer.Option(
    False,
    "--user",
    help="Use the current user's home directory as the install root.",
)

CUSTOM_PATH_OPTION = typer.Option(
    None,
    "--custom-path",
    help="Use this directory as the install root.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report the actions that would be taken without changing files.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)

# Ordered from most to least specific; the first match decides the exit code.
_ERROR_CODES: tuple[tuple[type[BaseException], ExitCode], ...] = (
    (ConfigError, ExitCode.VALIDATION),
    (InstallerError, ExitCode.VALIDATION),
    (SwitchError, ExitCode.VALIDATION),
    (PathPolicyError, ExitCode.ENVIRONMENT),
    (LockError, ExitCode.ENVIRONMENT),
    (CatalogError, ExitCode.PROVIDER),
    (ExtractError, ExitCode.PROVIDER),
    (LayoutError, ExitCode.PROVIDER),
    (ProbeError, ExitCode.PROVIDER),
)
GOVM_ERRORS = tuple(error_type for error_type, _ in _ERROR_CODES)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Go toolchain version manager.

        Installs the latest (or a specific) Go release into an install root,
        keeps previously active releases next to it as ``go-<version>`` and
        switches between them.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    catalog: VersionCatalog
    probe: VersionProbe


@dataclass(slots=True)
class RootContext:
    """Objects bound to one selected install root."""

    target: InstallTarget
    root: Path
    layout: InstallLayout
    locks: LockManager
    switcher: SwitchEngine
    orchestrator: InstallOrchestrator


class DownloadProgress:
    """Rich progress bar fed by archive download callbacks.

    The bar is transient: it disappears once the command finishes and is never
    rendered when the console is not a terminal.
    """

    def __init__(self, target: Console | None = None) -> None:
        self.progress = Progress(
            TextColumn("[bold blue]Downloading"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=target or console,
            transient=True,
        )
        self._task: TaskID | None = None

    def __enter__(self) -> DownloadProgress:
        self.progress.start()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.progress.stop()

    def __call__(self, received: int, total: int | None) -> None:
        if self._task is None:
            self._task = self.progress.add_task("download", total=total)
        self.progress.update(self._task, completed=received, total=total)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    catalog = VersionCatalog(
        base_url=config.download_url,
        prefix=config.archive_prefix,
        platform=config.platform,
        timeout=config.http_timeout,
    )
    probe = VersionProbe(
        executable=config.executable,
        prefix=config.archive_prefix,
        timeout=config.probe_timeout,
    )
    runtime = RuntimeContext(config=config, logger=logger, catalog=catalog, probe=probe)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the govm version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print debug logging to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(verbose=verbose)
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"govm {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    """Map a govm exception onto its exit code and terminate the command."""
    rc = ExitCode.PROVIDER
    for error_type, code in _ERROR_CODES:
        if isinstance(exc, error_type):
            rc = code
            break
    _command_error(op, str(exc), rc=rc, errors=[f"{exc.__class__.__name__}: {exc}"])


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _select_target(
    config: AppConfig,
    *,
    global_: bool,
    user: bool,
    custom_path: str | None,
) -> tuple[InstallTarget, str | None]:
    """Return the install target requested by flags or configuration."""
    if custom_path is not None and (global_ or user):
        raise ValueError("--custom-path cannot be combined with --global or --user.")
    if global_ and user:
        raise ValueError("--global and --user are mutually exclusive.")
    if custom_path is not None:
        return InstallTarget.CUSTOM, custom_path
    if global_:
        return InstallTarget.SYSTEM, None
    if user:
        return InstallTarget.USER, None
    target = InstallTarget(config.default_target)
    custom = str(config.custom_root) if config.custom_root is not None else None
    return target, custom


def _root_context(
    runtime: RuntimeContext,
    op: OperationScope,
    *,
    global_: bool,
    user: bool,
    custom_path: str | None,
    progress: ProgressCallback | None = None,
) -> RootContext:
    config = runtime.config
    try:
        target, custom = _select_target(
            config, global_=global_, user=user, custom_path=custom_path
        )
    except ValueError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    try:
        root = resolve_root(target, custom_path=custom, system_root=config.system_root)
    except PathPolicyError as exc:
        _fail(op, exc)
    op.add_step("paths.resolve", detail={"target": target.value, "root": str(root)})

    layout = InstallLayout(
        root=root, active_name=config.active_dir, prefix=config.archive_prefix
    )
    switcher = SwitchEngine(
        layout=layout,
        catalog=runtime.catalog,
        probe=runtime.probe,
        temp_dir=config.temp_dir,
        strip_prefix=config.archive_prefix,
        progress=progress,
    )
    orchestrator = InstallOrchestrator(
        layout=layout,
        catalog=runtime.catalog,
        switcher=switcher,
        environment=config.environment,
    )
    return RootContext(
        target=target,
        root=root,
        layout=layout,
        locks=LockManager(root, config.lock_timeout),
        switcher=switcher,
        orchestrator=orchestrator,
    )


def _describe_plan(plan: InstallPlan) -> str:
    prefix = plan.active_path.name
    if plan.action is InstallAction.ALREADY_INSTALLED:
        return f"{prefix} {plan.version} is already installed at {plan.active_path}."
    if plan.action is InstallAction.INSTALL_ACTIVE:
        return (
            f"{prefix} {plan.version} would be downloaded and installed "
            f"at {plan.active_path}."
        )
    if plan.action is InstallAction.REINSTALL:
        return (
            f"{prefix} {plan.version} would be reinstalled at {plan.active_path} "
            f"(current tree backed up to {plan.backup_path})."
        )
    if plan.action is InstallAction.SWITCH_CACHED:
        return (
            f"cached {prefix} {plan.version} would become active "
            f"(current tree backed up to {plan.backup_path})."
        )
    return (
        f"{prefix} {plan.version} would be downloaded and made active "
        f"(current tree backed up to {plan.backup_path})."
    )


def _print_environment(values: Mapping[str, str]) -> None:
    console.print("Environment for this process:")
    for name, value in values.items():
        console.print(f"  export {name}={value}", markup=False, highlight=False, soft_wrap=True)


def _report_install(op: OperationScope, result: InstallResult) -> None:
    plan = result.plan
    name = plan.active_path.name
    if not result.changed:
        console.print(
            f"[green]{name} {plan.version} is already installed at {plan.active_path}.[/green]"
        )
        op.success(
            "Toolchain already installed.",
            changed=0,
            context={"plan": plan.to_dict()},
        )
        return

    if result.backup is not None:
        console.print(f"Previous installation moved to {result.backup}.")
    if plan.action in {InstallAction.SWITCH_CACHED, InstallAction.INSTALL_AND_SWITCH}:
        console.print(f"[green]Switched to {name} {plan.version} at {plan.active_path}.[/green]")
    else:
        console.print(f"[green]Installed {name} {plan.version} at {plan.active_path}.[/green]")
    _print_environment(result.environment or {})
    op.success(
        f"Installed {plan.version}.",
        changed=1,
        backups=[str(result.backup)] if result.backup else None,
        context=result.to_dict(),
    )


def _run_install(
    op: OperationScope,
    selection: RootContext,
    *,
    version: str | None,
    force: bool,
    dry_run: bool,
) -> None:
    orchestrator = selection.orchestrator
    try:
        plan = orchestrator.plan(version, force=force)
        if dry_run:
            op.add_step("installer.plan", status="info", detail=plan.to_dict())
            _dry_run_complete(op, _describe_plan(plan), context={"plan": plan.to_dict()})
            return

        if not plan.mutates:
            result = orchestrator.execute(plan, scope=op)
        else:
            ensure_writable(selection.root)
            op.add_step("paths.writable", detail=str(selection.root))
            with selection.locks.root_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                # The root may have changed while waiting for the lock.
                plan = orchestrator.plan(plan.version, force=force)
                result = orchestrator.execute(plan, scope=op)
    except GOVM_ERRORS as exc:
        _fail(op, exc)

    _report_install(op, result)


@app.command()
def install(
    ctx: typer.Context,
    version: str | None = typer.Option(
        None,
        "--version",
        help="Release to install (X.Y.Z). Defaults to the latest release.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Reinstall even when the requested version is already active.",
    ),
    global_: bool = GLOBAL_OPTION,
    user: bool = USER_OPTION,
    custom_path: str | None = CUSTOM_PATH_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Install a Go release into the selected install root."""
    runtime = _get_runtime(ctx)
    args = {
        "version": version,
        "force": force,
        "global": global_,
        "user": user,
        "custom_path": custom_path,
        "dry_run": dry_run,
    }
    with runtime.logger.operation(
        "install",
        args=args,
        target={"kind": "toolchain", "version": version or "latest"},
    ) as op, DownloadProgress() as progress:
        selection = _root_context(
            runtime,
            op,
            global_=global_,
            user=user,
            custom_path=custom_path,
            progress=progress,
        )
        _run_install(op, selection, version=version, force=force, dry_run=dry_run)


@app.command()
def update(
    ctx: typer.Context,
    global_: bool = GLOBAL_OPTION,
    user: bool = USER_OPTION,
    custom_path: str | None = CUSTOM_PATH_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Install the latest release, switching away from the active one."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"global": global_, "user": user, "custom_path": custom_path, "dry_run": dry_run},
        target={"kind": "toolchain", "version": "latest"},
    ) as op, DownloadProgress() as progress:
        selection = _root_context(
            runtime,
            op,
            global_=global_,
            user=user,
            custom_path=custom_path,
            progress=progress,
        )
        _run_install(op, selection, version=None, force=False, dry_run=dry_run)


@app.command()
def switch(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Release to activate (X.Y.Z)."),
    global_: bool = GLOBAL_OPTION,
    user: bool = USER_OPTION,
    custom_path: str | None = CUSTOM_PATH_OPTION,
) -> None:
    """Make VERSION the active release, downloading it when it is not cached."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "switch",
        args={"version": version, "global": global_, "user": user, "custom_path": custom_path},
        target={"kind": "toolchain", "version": version},
    ) as op, DownloadProgress() as progress:
        selection = _root_context(
            runtime,
            op,
            global_=global_,
            user=user,
            custom_path=custom_path,
            progress=progress,
        )
        switcher = selection.switcher
        name = selection.layout.active_name
        try:
            requested = switcher.validate(version)
            current = switcher.active_version()
            if current is not None and current.matches(requested):
                console.print(f"[green]{name} {requested} is already active.[/green]")
                op.success(
                    "Version already active.",
                    changed=0,
                    context={
                        "version": requested,
                        "active_path": str(switcher.layout.active_path),
                    },
                )
                return

            ensure_writable(selection.root)
            op.add_step("paths.writable", detail=str(selection.root))
            with selection.locks.root_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = switcher.switch_to(requested, scope=op)
                applied = apply_environment(
                    selection.layout.active_path, runtime.config.environment
                )
        except GOVM_ERRORS as exc:
            _fail(op, exc)

        if not result.changed:
            console.print(f"[green]{name} {result.version} is already active.[/green]")
            op.success("Version already active.", changed=0, context=result.to_dict())
            return

        if result.backup is not None:
            console.print(f"Previous installation moved to {result.backup}.")
        console.print(
            f"[green]Switched to {name} {result.version} at {result.active_path}.[/green]"
        )
        _print_environment(applied)
        op.success(
            f"Switched to {result.version}.",
            changed=1,
            backups=[str(result.backup)] if result.backup else None,
            context=result.to_dict(),
        )


@app.command()
def latest(ctx: typer.Context) -> None:
    """Print the latest published release for the configured platform."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "latest",
        args={},
        target={"kind": "catalog", "url": runtime.config.download_url},
    ) as op:
        try:
            found = runtime.catalog.latest()
        except CatalogError as exc:
            _fail(op, exc)
        console.print(found)
        op.success("Reported latest version.", changed=0, context={"version": found})


def _collect_status(runtime: RuntimeContext, selection: RootContext) -> dict[str, object]:
    """Gather the install-root health report shown by ``status``."""
    config = runtime.config
    layout = selection.layout
    active = layout.active_path
    payload: dict[str, object] = {
        "root": str(selection.root),
        "target": selection.target.value,
        "install_type": classify_root(
            selection.root, system_root=config.system_root, home=config.home
        ),
        "active_path": str(active),
        "exists": active.is_dir(),
        "installed": False,
        "version": None,
        "platform": None,
        "error": None,
        "writable": selection.root.is_dir() and is_writable(selection.root),
        "archived": layout.archived_versions(),
    }
    if layout.has_active():
        try:
            detected = runtime.probe.current(active)
        except ProbeError as exc:
            payload["error"] = str(exc)
        else:
            if detected is not None:
                payload["installed"] = True
                payload["version"] = detected.version
                payload["platform"] = detected.platform
    payload["environment"] = inspect_environment(active, config.environment).to_dict()
    return payload


def _render_status(payload: Mapping[str, object]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check", style="bold")
    table.add_column("Value")

    def _flag(value: object) -> str:
        return "[green]yes[/green]" if value else "[red]no[/red]"

    environment = cast(Mapping[str, object], payload["environment"])
    root_var = cast(Mapping[str, object], environment["root"])
    workspace_var = cast(Mapping[str, object], environment["workspace"])

    table.add_row("Install root", str(payload["root"]))
    table.add_row("Install type", str(payload["install_type"]))
    table.add_row("Directory exists", _flag(payload["exists"]))
    table.add_row("Installed", _flag(payload["installed"]))
    table.add_row("Version", str(payload["version"] or "-"))
    table.add_row("OS/Arch", str(payload["platform"] or "-"))
    table.add_row("Writable", _flag(payload["writable"]))
    table.add_row(f"{root_var['name']} correct", _flag(root_var["correct"]))
    table.add_row(f"{workspace_var['name']} correct", _flag(workspace_var["correct"]))
    table.add_row("bin on PATH", _flag(environment["bin_on_path"]))
    archived = cast(list[str], payload.get("archived") or [])
    table.add_row("Archived", ", ".join(archived) or "-")
    console.print(table)
    if payload.get("error"):
        console.print(f"[yellow]{payload['error']}[/yellow]")


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    global_: bool = GLOBAL_OPTION,
    user: bool = USER_OPTION,
    custom_path: str | None = CUSTOM_PATH_OPTION,
) -> None:
    """Report the state of the install root and the process environment."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output, "global": global_, "user": user, "custom_path": custom_path},
        target={"kind": "root"},
    ) as op:
        selection = _root_context(
            runtime, op, global_=global_, user=user, custom_path=custom_path
        )
        payload = _collect_status(runtime, selection)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_status(payload)
        if payload["installed"]:
            op.success("Reported install status.", changed=0, context=payload)
        else:
            op.warning(
                "No working toolchain in the install root.",
                warnings=[str(payload.get("error") or "not installed")],
                context=payload,
            )


def _list_entries(
    runtime: RuntimeContext,
    selection: RootContext,
    remote_versions: Sequence[str],
) -> list[dict[str, object]]:
    """Merge active, archived and remote versions into list rows."""
    layout = selection.layout
    active_version: str | None = None
    try:
        detected = runtime.probe.current(layout.active_path) if layout.has_active() else None
    except ProbeError:
        detected = None
    if detected is not None and detected.known:
        active_version = detected.version

    archived = set(layout.archived_versions())
    local = set(archived)
    if active_version:
        local.add(active_version)

    entries: list[dict[str, object]] = []
    for version in sort_versions(local | set(remote_versions)):
        path: Path | None = None
        if version == active_version:
            path = layout.active_path
        elif version in archived:
            path = layout.archived_path(version)
        entries.append(
            {
                "version": version,
                "active": version == active_version,
                "installed": version in local,
                "path": str(path) if path else None,
                "source": "local" if version in local else "remote",
            }
        )
    return entries


@app.command("list")
def list_versions(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    remote: bool = typer.Option(
        False,
        "--remote",
        help="Include releases published for this platform.",
    ),
    global_: bool = GLOBAL_OPTION,
    user: bool = USER_OPTION,
    custom_path: str | None = CUSTOM_PATH_OPTION,
) -> None:
    """List the active and archived releases in the install root."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output, "remote": remote},
        target={"kind": "root"},
    ) as op:
        selection = _root_context(
            runtime, op, global_=global_, user=user, custom_path=custom_path
        )
        remote_versions: list[str] = []
        if remote:
            try:
                remote_versions = runtime.catalog.versions()
            except CatalogError as exc:
                _fail(op, exc)

        entries = _list_entries(runtime, selection, remote_versions)
        if json_output:
            console.print_json(data={"versions": entries})
            op.success("Reported version list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", style="bold")
        table.add_column("Active")
        table.add_column("Installed")
        table.add_column("Source")

        if not entries:
            table.add_row("(none)", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry["version"]),
                    "*" if entry["active"] else "",
                    "yes" if entry["installed"] else "no",
                    str(entry["source"]),
                )

        console.print(table)
        op.success("Reported version list.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
