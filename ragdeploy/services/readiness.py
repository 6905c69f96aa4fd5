from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable

import httpx

from ragdeploy.models import CommandCheck, HttpCheck, NodesReadyCheck, PodsReadyCheck, ReadinessCheck
from ragdeploy.proc import CommandRunner, run_command
from ragdeploy.services.errors import DeploymentCancelled, RagDeployException, ReadinessTimeout
from ragdeploy.services.kube_adapter import KubeAdapter

logger = logging.getLogger(__name__)

HTTP_PROBE_TIMEOUT = 5.0


class ProbeNotReady(Exception):
    """Raised by probe checks to report why a dependency is not ready yet."""


@dataclass(frozen=True)
class ReadinessProbe:
    name: str
    check: Callable[[], bool]
    interval: float
    max_attempts: int
    timeout: float | None = None

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")

    @property
    def wall_timeout(self) -> float:
        return self.timeout if self.timeout is not None else self.interval * self.max_attempts


def await_ready(
    probe: ReadinessProbe,
    *,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Poll ``probe`` until it succeeds; return the number of attempts used.

    Failures of individual checks are retried at a fixed interval; a
    RagDeployException raised by the check ends polling at once. Once the
    attempts or the wall-time budget are used up a ReadinessTimeout carrying
    the last failure is raised. Setting ``cancel`` stops polling with DeploymentCancelled.
    """
    deadline = clock() + probe.wall_timeout
    last_error = "not checked"
    attempt = 0
    logger.info("Waiting for %s to be ready (interval=%ss, attempts=%s)", probe.name, probe.interval, probe.max_attempts)
    while attempt < probe.max_attempts:
        if cancel is not None and cancel.is_set():
            raise DeploymentCancelled("Polling cancelled", resource=probe.name, detail=last_error)
        attempt += 1
        try:
            if probe.check():
                logger.info("%s is ready after %s attempt(s)", probe.name, attempt)
                return attempt
            last_error = "check reported not ready"
        except RagDeployException:
            raise
        # any other probe error counts as not ready
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
        logger.debug("%s not ready (attempt %s/%s): %s", probe.name, attempt, probe.max_attempts, last_error)

        if attempt >= probe.max_attempts:
            break
        remaining = deadline - clock()
        if remaining <= 0:
            break
        delay = min(probe.interval, remaining)
        if sleep is not None:
            sleep(delay)
        elif cancel is not None:
            if cancel.wait(delay):
                raise DeploymentCancelled("Polling cancelled", resource=probe.name, detail=last_error)
        else:
            time.sleep(delay)

    raise ReadinessTimeout(
        f"not ready after {attempt} attempt(s)",
        attempts=attempt,
        resource=probe.name,
        detail=last_error,
    )


class ProbeFactory:
    """Turns declarative readiness checks into executable probes."""

    def __init__(
        self,
        *,
        interval: float,
        max_attempts: int,
        timeout: float | None = None,
        runner: CommandRunner | None = None,
        kube: KubeAdapter | None = None,
        http_get: Callable[[str], httpx.Response] | None = None,
    ) -> None:
        self.interval = interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._runner = runner
        self._kube = kube or KubeAdapter(runner=runner)
        self._http_get = http_get or _default_http_get

    def build(self, check: ReadinessCheck) -> ReadinessProbe:
        return ReadinessProbe(
            name=check.name,
            check=self.check_fn(check),
            interval=self.interval,
            max_attempts=self.max_attempts,
            timeout=self.timeout,
        )

    def check_fn(self, check: ReadinessCheck) -> Callable[[], bool]:
        if isinstance(check, HttpCheck):
            return lambda: self._check_http(check)
        if isinstance(check, CommandCheck):
            return lambda: self._check_command(check)
        if isinstance(check, PodsReadyCheck):
            return lambda: self._check_pods(check)
        if isinstance(check, NodesReadyCheck):
            return lambda: self._check_nodes(check)
        raise TypeError(f"Unsupported readiness check: {type(check).__name__}")

    def _check_http(self, check: HttpCheck) -> bool:
        response = self._http_get(check.url)
        if not response.is_success:
            raise ProbeNotReady(f"GET {check.url} returned HTTP {response.status_code}")
        return True

    def _check_command(self, check: CommandCheck) -> bool:
        result = run_command(
            list(check.command),
            runner=self._runner,
            error_message=f"Readiness command for {check.name} failed",
        )
        if check.expect_output is not None and result.stdout.strip() != check.expect_output:
            raise ProbeNotReady(f"expected output {check.expect_output!r}, got {result.stdout.strip()!r}")
        return True

    def _check_pods(self, check: PodsReadyCheck) -> bool:
        status = self._kube.with_context(check.context).pods_ready(namespace=check.namespace, selector=check.selector)
        if not status.ready:
            raise ProbeNotReady(status.detail)
        return True

    def _check_nodes(self, check: NodesReadyCheck) -> bool:
        status = self._kube.with_context(check.context).nodes_ready()
        if not status.ready:
            raise ProbeNotReady(status.detail)
        return True


def _default_http_get(url: str) -> httpx.Response:
    return httpx.get(url, timeout=HTTP_PROBE_TIMEOUT)
