from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import threading
from typing import Any, Callable

from ragdeploy.models import DeploymentTarget, Handle, ResourceKind, ResourceState
from ragdeploy.plans import DeploymentPlan
from ragdeploy.provisioner import Provisioner
from ragdeploy.services.errors import (
    DeploymentCancelled,
    IllegalTransition,
    RagDeployException,
    TeardownPartialFailure,
)
from ragdeploy.services.preflight import PreflightChecker, PreflightReport
from ragdeploy.services.readiness import ProbeFactory, ReadinessProbe, await_ready
from ragdeploy.services.renderer import Manifest, ManifestRenderer

logger = logging.getLogger(__name__)

# Retained kinds that --delete-volumes is allowed to remove; namespaces hold claims.
DATA_KINDS = frozenset({ResourceKind.VOLUME, ResourceKind.NAMESPACE})


class DeploymentState(str, Enum):
    IDLE = "idle"
    PREFLIGHTING = "preflighting"
    PROVISIONING = "provisioning"
    RENDERING = "rendering"
    AWAITING = "awaiting"
    READY = "ready"
    FAILED = "failed"


_FORWARD = (
    DeploymentState.IDLE,
    DeploymentState.PREFLIGHTING,
    DeploymentState.PROVISIONING,
    DeploymentState.RENDERING,
    DeploymentState.AWAITING,
    DeploymentState.READY,
)


def can_transition(current: DeploymentState, new: DeploymentState) -> bool:
    if current in (DeploymentState.FAILED, DeploymentState.READY):
        return False
    if new == DeploymentState.FAILED:
        return True
    return _FORWARD.index(new) == _FORWARD.index(current) + 1


@dataclass
class DeploymentReport:
    target: DeploymentTarget
    state: DeploymentState = DeploymentState.IDLE
    history: list[DeploymentState] = field(default_factory=lambda: [DeploymentState.IDLE])
    handles: list[Handle] = field(default_factory=list)
    manifests: list[Manifest] = field(default_factory=list)
    preflight: PreflightReport | None = None
    error: Exception | None = None
    failed_stage: DeploymentState | None = None
    endpoints: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == DeploymentState.READY

    def transition(self, new: DeploymentState) -> None:
        if not can_transition(self.state, new):
            raise IllegalTransition(f"cannot move from {self.state.value} to {new.value}", stage=self.state.value)
        logger.info("Deployment state: %s -> %s", self.state.value, new.value)
        self.state = new
        self.history.append(new)

    def fail(self, error: Exception) -> None:
        self.error = error
        self.failed_stage = self.state
        self.transition(DeploymentState.FAILED)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "target": self.target.kind.value,
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "resources": [_handle_dict(handle) for handle in self.handles],
            "manifests": [manifest.name for manifest in self.manifests],
        }
        if self.preflight is not None:
            payload["preflight"] = self.preflight.as_dict()
        if self.error is not None:
            payload["failed_stage"] = self.failed_stage.value if self.failed_stage else None
            payload["error"] = str(self.error)
        if self.succeeded and self.endpoints:
            payload["endpoints"] = dict(self.endpoints)
        return payload


@dataclass
class TeardownReport:
    target: DeploymentTarget
    removed: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    error: Exception | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "target": self.target.kind.value,
            "removed": list(self.removed),
            "skipped": dict(self.skipped),
        }
        if self.failures:
            payload["failures"] = dict(self.failures)
        return payload


@dataclass
class StatusReport:
    target: DeploymentTarget
    resources: dict[str, dict[str, Any]] = field(default_factory=dict)
    checks: dict[str, str] = field(default_factory=dict)
    logs: dict[str, str] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        resources_ok = all(entry.get("healthy") for entry in self.resources.values())
        return resources_ok and all(result == "ready" for result in self.checks.values())

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "target": self.target.kind.value,
            "healthy": self.healthy,
            "resources": self.resources,
            "checks": self.checks,
        }
        if self.logs:
            payload["logs"] = self.logs
        return payload


class DeploymentSequencer:
    """Drive a DeploymentPlan through preflight, provisioning, rendering and readiness."""

    def __init__(
        self,
        *,
        preflight: PreflightChecker,
        provisioner: Provisioner,
        renderer: ManifestRenderer,
        probes: ProbeFactory,
        poller: Callable[..., int] = await_ready,
        cancel: threading.Event | None = None,
    ) -> None:
        self._preflight = preflight
        self._provisioner = provisioner
        self._renderer = renderer
        self._probes = probes
        self._poller = poller
        self._cancel = cancel or threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    def _check_cancelled(self, stage: DeploymentState) -> None:
        if self._cancel.is_set():
            raise DeploymentCancelled("Deployment cancelled", stage=stage.value)

    def deploy(self, plan: DeploymentPlan) -> DeploymentReport:
        report = DeploymentReport(target=plan.target, endpoints=dict(plan.endpoints))
        logger.info("Starting deployment to %s", plan.target.kind.value)
        try:
            report.transition(DeploymentState.PREFLIGHTING)
            report.preflight = self._preflight.run(plan.requirements)
            report.preflight.raise_for_fatal()
            self._provisioner.gpu_available = report.preflight.gpu_available
            # service specs are validated before anything is mutated
            self._renderer.validate_all(plan.services)

            report.transition(DeploymentState.PROVISIONING)
            for index, group in enumerate(plan.provision, start=1):
                self._check_cancelled(report.state)
                logger.info(
                    "Provisioning group %s/%s: %s",
                    index,
                    len(plan.provision),
                    ", ".join(resource.key for resource in group),
                )
                self._provisioner.ensure_all(group, on_handle=report.handles.append)

            self._check_cancelled(report.state)
            report.transition(DeploymentState.RENDERING)
            manifests = self._renderer.render_all(plan.services)
            self._provisioner.apply_manifests(plan.target, manifests, work_dir=plan.work_dir)
            report.manifests.extend(manifests)

            report.transition(DeploymentState.AWAITING)
            for check in plan.readiness:
                self._check_cancelled(report.state)
                self._poller(self._probes.build(check), cancel=self._cancel)

            report.transition(DeploymentState.READY)
        except KeyboardInterrupt:
            logger.warning("Deployment interrupted during %s", report.state.value)
            report.fail(DeploymentCancelled("Deployment interrupted", stage=report.state.value))
        except RagDeployException as exc:
            logger.error("Deployment failed during %s: %s", report.state.value, exc)
            report.fail(exc)
        except Exception as exc:
            logger.exception("Deployment failed unexpectedly during %s", report.state.value)
            report.fail(exc)
        if report.succeeded:
            logger.info("Deployment to %s is ready", plan.target.kind.value)
        return report

    def teardown(self, plan: DeploymentPlan, *, delete_volumes: bool = False) -> TeardownReport:
        """Remove what this tool owns; externally owned and retained resources stay."""
        report = TeardownReport(target=plan.target)
        logger.info("Starting teardown of %s (delete_volumes=%s)", plan.target.kind.value, delete_volumes)
        try:
            removed = self._provisioner.remove_manifests(
                plan.target,
                part_of=plan.part_of,
                work_dir=plan.work_dir,
                delete_volumes=delete_volumes,
            )
            if removed:
                report.removed.append("manifests")
        except RagDeployException as exc:
            report.failures["manifests"] = str(exc)

        for resource in reversed(plan.resources()):
            if resource.external:
                report.skipped[resource.key] = "externally owned"
                continue
            if resource.retain and not (delete_volumes and resource.kind in DATA_KINDS):
                report.skipped[resource.key] = "retained"
                continue
            try:
                state = self._provisioner.inspect(resource)
                if not state.exists:
                    report.skipped[resource.key] = "absent"
                    continue
                if not state.managed:
                    report.skipped[resource.key] = "not managed by ragdeploy"
                    continue
                self._provisioner.delete(resource)
                report.removed.append(resource.key)
            except RagDeployException as exc:
                logger.error("Failed to remove %s: %s", resource.key, exc)
                report.failures[resource.key] = str(exc)

        if report.failures:
            report.error = TeardownPartialFailure(
                f"{len(report.failures)} item(s) could not be removed",
                report=report,
                detail="; ".join(f"{key}: {error}" for key, error in report.failures.items()),
            )
        logger.info("Teardown finished: removed=%s skipped=%s failed=%s",
                    len(report.removed), len(report.skipped), len(report.failures))
        return report

    def status(self, plan: DeploymentPlan, *, logs: bool = False) -> StatusReport:
        report = StatusReport(target=plan.target)
        for resource in plan.resources():
            try:
                state = self._provisioner.inspect(resource)
            except RagDeployException as exc:
                report.resources[resource.key] = {"exists": False, "healthy": False, "error": str(exc)}
                continue
            report.resources[resource.key] = _state_dict(state, external=resource.external)

        for check in plan.readiness:
            probe = ReadinessProbe(name=check.name, check=self._probes.check_fn(check), interval=1.0, max_attempts=1)
            try:
                self._poller(probe, cancel=self._cancel)
                report.checks[check.name] = "ready"
            except RagDeployException as exc:
                report.checks[check.name] = exc.detail or exc.message

        if logs:
            for service in plan.services:
                try:
                    report.logs[service.name] = self._provisioner.logs(plan.target, service.name)
                except RagDeployException as exc:
                    report.logs[service.name] = str(exc)
        return report


def _handle_dict(handle: Handle) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "key": handle.key,
        "ownership": handle.ownership.value,
        "action": handle.action.value,
    }
    if handle.detail:
        payload["detail"] = handle.detail
    return payload


def _state_dict(state: ResourceState, *, external: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "exists": state.exists,
        "healthy": state.healthy,
        "managed": state.managed,
        "external": external,
    }
    if state.detail:
        payload["detail"] = state.detail
    return payload
