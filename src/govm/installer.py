"""Install state machine.

The orchestrator derives the state of an install root from the active tree,
chooses one :class:`InstallAction` for the requested version and carries it
out::

    state              requested == active  cached  force  action
    no active tree     -                    -       -      install into active slot
    same version       yes                  -       no     already installed (no writes)
    same version       yes                  -       yes    back up active, reinstall
    different version  no                   yes     -      switch to cached tree
    different version  no                   no      -      install archived tree, switch

An active tree whose version cannot be parsed counts as a different version.
Planning never touches the filesystem, which is what ``--dry-run`` reports.
"""
from __future__ import annotations

import logging
from collections.abc import MutableMapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .catalog import VersionCatalog
from .config import EnvironmentConfig
from .environment import apply_environment
from .layout import InstallLayout, discard
from .logging import OperationScope
from .paths import ensure_writable
from .probe import ToolchainVersion
from .switch import SwitchEngine, SwitchResult

LOGGER = logging.getLogger(__name__)


class InstallerError(RuntimeError):
    """Raised when an install request cannot be satisfied."""


class VersionMismatchError(InstallerError):
    """Raised when the requested version is not published for this platform."""


class InstallState(str, Enum):
    """State of the active slot relative to the requested version."""

    NO_ACTIVE = "no-active"
    ACTIVE_SAME_VERSION = "active-same-version"
    ACTIVE_DIFFERENT_VERSION = "active-different-version"


class InstallAction(str, Enum):
    """What an install request does to the install root."""

    INSTALL_ACTIVE = "install-active"
    ALREADY_INSTALLED = "already-installed"
    REINSTALL = "reinstall"
    SWITCH_CACHED = "switch-cached"
    INSTALL_AND_SWITCH = "install-and-switch"


@dataclass(frozen=True, slots=True)
class InstallPlan:
    """Decision taken for one install request."""

    version: str
    state: InstallState
    action: InstallAction
    active: ToolchainVersion | None
    cached: bool
    force: bool
    root: Path
    active_path: Path
    backup_path: Path | None

    @property
    def mutates(self) -> bool:
        """Return True when carrying out the plan writes to disk."""
        return self.action is not InstallAction.ALREADY_INSTALLED

    @property
    def downloads(self) -> bool:
        """Return True when the plan fetches an archive."""
        return self.action in {
            InstallAction.INSTALL_ACTIVE,
            InstallAction.REINSTALL,
            InstallAction.INSTALL_AND_SWITCH,
        }

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "state": self.state.value,
            "action": self.action.value,
            "active_version": self.active.version if self.active else None,
            "cached": self.cached,
            "force": self.force,
            "root": str(self.root),
            "active_path": str(self.active_path),
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "downloads": self.downloads,
        }


@dataclass(frozen=True, slots=True)
class InstallResult:
    """Outcome of :meth:`InstallOrchestrator.install`."""

    plan: InstallPlan
    backup: Path | None = None
    switch: SwitchResult | None = None
    environment: dict[str, str] | None = None

    @property
    def changed(self) -> bool:
        """Return True when the install root was modified."""
        return self.plan.mutates

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "plan": self.plan.to_dict(),
            "backup": str(self.backup) if self.backup else None,
            "switch": self.switch.to_dict() if self.switch else None,
            "environment": dict(self.environment or {}),
            "changed": self.changed,
        }


class InstallOrchestrator:
    """Install or update the toolchain in one install root."""

    def __init__(
        self,
        *,
        layout: InstallLayout,
        catalog: VersionCatalog,
        switcher: SwitchEngine,
        environment: EnvironmentConfig,
        environ: MutableMapping[str, str] | None = None,
    ) -> None:
        """Initialise the orchestrator; *environ* defaults to ``os.environ``."""
        self.layout = layout
        self.catalog = catalog
        self.switcher = switcher
        self.environment = environment
        self.environ = environ

    def resolve_version(self, version: str | None) -> str:
        """Return the version to install, defaulting to the latest release."""
        if version is None or not version.strip():
            return self.catalog.latest()
        requested = version.strip()
        if not self.catalog.exists(requested):
            raise VersionMismatchError(
                f"Version {requested} is not published for {self.catalog.platform} "
                f"at {self.catalog.base_url}."
            )
        return requested

    def plan(self, version: str | None = None, *, force: bool = False) -> InstallPlan:
        """Decide what installing *version* would do without touching the disk."""
        requested = self.resolve_version(version)
        active = self.switcher.active_version()
        cached = self.layout.is_cached(requested)

        backup_path: Path | None = None
        if active is None:
            state = InstallState.NO_ACTIVE
            action = InstallAction.INSTALL_ACTIVE
        elif active.matches(requested):
            state = InstallState.ACTIVE_SAME_VERSION
            if force:
                action = InstallAction.REINSTALL
                backup_path = self.layout.backup_path(active.version)
            else:
                action = InstallAction.ALREADY_INSTALLED
        else:
            state = InstallState.ACTIVE_DIFFERENT_VERSION
            action = (
                InstallAction.SWITCH_CACHED if cached else InstallAction.INSTALL_AND_SWITCH
            )
            backup_path = self.layout.backup_path(active.version if active.known else None)

        return InstallPlan(
            version=requested,
            state=state,
            action=action,
            active=active,
            cached=cached,
            force=force,
            root=self.layout.root,
            active_path=self.layout.active_path,
            backup_path=backup_path,
        )

    def install(
        self,
        version: str | None = None,
        *,
        force: bool = False,
        scope: OperationScope | None = None,
    ) -> InstallResult:
        """Plan and carry out an install request."""
        return self.execute(self.plan(version, force=force), scope=scope)

    def execute(self, plan: InstallPlan, *, scope: OperationScope | None = None) -> InstallResult:
        """Carry out *plan*."""
        if scope is not None:
            scope.add_step("installer.plan", detail=plan.to_dict())
        if not plan.mutates:
            LOGGER.info("Version %s is already active in %s", plan.version, plan.active_path)
            return InstallResult(plan=plan)

        ensure_writable(self.layout.root)

        backup: Path | None = None
        switch_result: SwitchResult | None = None
        if plan.action is InstallAction.INSTALL_ACTIVE:
            self.switcher.provision(plan.version, self.layout.active_path, scope=scope)
        elif plan.action is InstallAction.REINSTALL:
            staging = self.switcher.fetch(plan.version, scope=scope)
            previous = plan.active.version if plan.active else None
            try:
                backup = self.layout.backup_active(previous)
            except BaseException:
                discard(staging)
                raise
            if scope is not None:
                scope.add_step("layout.backup", detail=str(backup))
            self.layout.place(staging, self.layout.active_path)
        else:
            switch_result = self.switcher.switch_to(plan.version, scope=scope)
            backup = switch_result.backup

        applied = apply_environment(
            self.layout.active_path, self.environment, environ=self.environ
        )
        if scope is not None:
            scope.add_step("environment.apply", detail=applied)
        return InstallResult(
            plan=plan,
            backup=backup,
            switch=switch_result,
            environment=applied,
        )


__all__ = [
    "InstallAction",
    "InstallOrchestrator",
    "InstallPlan",
    "InstallResult",
    "InstallState",
    "InstallerError",
    "VersionMismatchError",
]
