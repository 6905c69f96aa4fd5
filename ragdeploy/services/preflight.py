from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import shutil
from typing import Callable, Iterable, Mapping

import httpx

from ragdeploy.models import (
    BinaryRequirement,
    CapabilityRequirement,
    CredentialRequirement,
    DaemonRequirement,
    GpuRequirement,
)
from ragdeploy.proc import AdapterCommandError, CommandRunner, run_command
from ragdeploy.services.errors import CredentialRejected, PreflightFailure
from ragdeploy.services.secrets import SecretProvider

logger = logging.getLogger(__name__)

HttpGet = Callable[..., httpx.Response]

GPU_QUERY = ["nvidia-smi", "--query-gpu=name,memory.total", "--format=csv,noheader"]
_REJECTED_STATUSES = (401, 403)


class CapabilityStatus(str, Enum):
    OK = "ok"
    MISSING = "missing"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class CapabilityResult:
    name: str
    status: CapabilityStatus
    reason: str | None = None
    fatal: bool = False
    rejected: bool = False


@dataclass
class PreflightReport:
    results: list[CapabilityResult] = field(default_factory=list)
    gpus: list[str] = field(default_factory=list)

    @property
    def fatal(self) -> list[CapabilityResult]:
        return [result for result in self.results if result.fatal]

    @property
    def gpu_available(self) -> bool:
        return any(result.name == "gpu" and result.status == CapabilityStatus.OK for result in self.results)

    def raise_for_fatal(self) -> None:
        fatal = self.fatal
        if not fatal:
            return
        detail = "; ".join(f"{result.name}: {result.reason}" for result in fatal)
        rejected = [result for result in fatal if result.rejected]
        if rejected:
            raise CredentialRejected(
                "credential was rejected by its endpoint; check the API key",
                resource=rejected[0].name,
                detail=detail,
            )
        names = ", ".join(result.name for result in fatal)
        raise PreflightFailure(f"required capabilities unavailable: {names}", resource=fatal[0].name, detail=detail)

    def as_dict(self) -> dict:
        return {
            "gpus": list(self.gpus),
            "capabilities": [
                {"name": result.name, "status": result.status.value, "reason": result.reason, "fatal": result.fatal}
                for result in self.results
            ],
        }


class PreflightChecker:
    """Verify host capabilities before anything is mutated."""

    def __init__(
        self,
        *,
        which: Callable[[str], str | None] = shutil.which,
        runner: CommandRunner | None = None,
        http_get: HttpGet | None = None,
        secrets: SecretProvider | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._which = which
        self._runner = runner
        self._http_get = http_get or httpx.get
        self._secrets = secrets
        self._timeout = timeout

    def run(self, requirements: Iterable[CapabilityRequirement]) -> PreflightReport:
        report = PreflightReport()
        for requirement in requirements:
            result = self.check(requirement, report=report)
            report.results.append(result)
            if result.status == CapabilityStatus.OK:
                logger.info("Preflight %s: ok", result.name)
            elif result.fatal:
                logger.error("Preflight %s: %s (%s)", result.name, result.status.value, result.reason)
            else:
                logger.info("Preflight %s: %s (%s)", result.name, result.status.value, result.reason)
        return report

    def check(self, requirement: CapabilityRequirement, *, report: PreflightReport | None = None) -> CapabilityResult:
        if isinstance(requirement, BinaryRequirement):
            return self._check_binary(requirement)
        if isinstance(requirement, DaemonRequirement):
            return self._check_daemon(requirement)
        if isinstance(requirement, GpuRequirement):
            return self._check_gpu(requirement, report)
        if isinstance(requirement, CredentialRequirement):
            return self._check_credential(requirement)
        raise TypeError(f"Unsupported capability requirement: {type(requirement).__name__}")

    def _check_binary(self, requirement: BinaryRequirement) -> CapabilityResult:
        if self._which(requirement.binary):
            return CapabilityResult(requirement.name, CapabilityStatus.OK)
        reason = f"{requirement.binary} not found on PATH"
        if requirement.hint:
            reason = f"{reason}; {requirement.hint}"
        return CapabilityResult(requirement.name, CapabilityStatus.MISSING, reason=reason, fatal=True)

    def _check_daemon(self, requirement: DaemonRequirement) -> CapabilityResult:
        try:
            run_command(
                list(requirement.command),
                runner=self._runner,
                error_message=f"{requirement.name} is not reachable",
            )
        except AdapterCommandError as exc:
            return CapabilityResult(
                requirement.name,
                CapabilityStatus.MISSING,
                reason=exc.detail or exc.summary,
                fatal=True,
            )
        return CapabilityResult(requirement.name, CapabilityStatus.OK)

    def _check_gpu(self, requirement: GpuRequirement, report: PreflightReport | None) -> CapabilityResult:
        if not self._which(GPU_QUERY[0]):
            return CapabilityResult(
                requirement.name,
                CapabilityStatus.DEGRADED,
                reason="nvidia-smi not found; the model server runs in CPU mode",
            )
        try:
            result = run_command(GPU_QUERY, runner=self._runner, error_message="GPU query failed")
        except AdapterCommandError as exc:
            return CapabilityResult(
                requirement.name,
                CapabilityStatus.DEGRADED,
                reason=f"{exc.detail or exc.summary}; the model server runs in CPU mode",
            )
        gpus = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not gpus:
            return CapabilityResult(
                requirement.name,
                CapabilityStatus.DEGRADED,
                reason="no GPU reported; the model server runs in CPU mode",
            )
        for gpu in gpus:
            logger.info("Detected GPU: %s", gpu)
        if report is not None:
            report.gpus.extend(gpus)
        return CapabilityResult(requirement.name, CapabilityStatus.OK)

    def _check_credential(self, requirement: CredentialRequirement) -> CapabilityResult:
        secret = self._secrets.get(requirement.secret) if self._secrets is not None else None
        if not secret:
            return CapabilityResult(
                requirement.name,
                CapabilityStatus.MISSING,
                reason=f"secret {requirement.secret!r} is not set",
                fatal=True,
            )
        headers: Mapping[str, str] = {"Authorization": f"Bearer {secret}"}
        try:
            response = self._http_get(requirement.url, headers=headers, timeout=self._timeout)
        except httpx.HTTPError as exc:
            return CapabilityResult(
                requirement.name,
                CapabilityStatus.MISSING,
                reason=f"endpoint {requirement.url} unreachable: {exc}",
                fatal=True,
            )
        if response.status_code in _REJECTED_STATUSES:
            return CapabilityResult(
                requirement.name,
                CapabilityStatus.MISSING,
                reason=f"endpoint {requirement.url} returned HTTP {response.status_code}; the API key is suspect",
                fatal=True,
                rejected=True,
            )
        if not response.is_success:
            return CapabilityResult(
                requirement.name,
                CapabilityStatus.DEGRADED,
                reason=f"endpoint {requirement.url} returned HTTP {response.status_code}",
            )
        return CapabilityResult(requirement.name, CapabilityStatus.OK)
