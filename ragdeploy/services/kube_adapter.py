from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Iterable, Mapping

import yaml

from ragdeploy.proc import (
    AdapterCommandError,
    CommandResult,
    CommandRunner,
    run_command,
    temporary_file,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NamespaceState:
    name: str
    exists: bool
    phase: str | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def terminating(self) -> bool:
        return (self.phase or "").lower() == "terminating"


@dataclass(frozen=True)
class ReadyStatus:
    ready: bool
    detail: str


class KubeAdapter:
    """Adapter for kubectl operations against one kube context."""

    def __init__(self, *, context: str | None = None, runner: CommandRunner | None = None) -> None:
        self.context = context
        self._runner = runner

    def with_context(self, context: str | None) -> "KubeAdapter":
        if context == self.context:
            return self
        return KubeAdapter(context=context, runner=self._runner)

    def _kubectl(self, *args: str) -> list[str]:
        cmd = ["kubectl"]
        if self.context:
            cmd.extend(["--context", self.context])
        cmd.extend(args)
        return cmd

    def _run(self, *args: str, error_message: str) -> CommandResult:
        return run_command(self._kubectl(*args), runner=self._runner, error_message=error_message)

    # Namespaces

    def namespace_state(self, name: str) -> NamespaceState:
        try:
            result = self._run("get", "namespace", name, "-o", "json", error_message=f"Failed to check namespace {name}")
        except AdapterCommandError as exc:
            if exc.not_found:
                logger.debug("Namespace not found: %s", name)
                return NamespaceState(name=name, exists=False)
            raise
        payload = _parse_json(result.stdout, what=f"namespace {name}")
        metadata = payload.get("metadata") or {}
        status = payload.get("status") or {}
        return NamespaceState(
            name=name,
            exists=True,
            phase=status.get("phase"),
            labels=dict(metadata.get("labels") or {}),
        )

    def create_namespace(self, name: str, *, labels: Mapping[str, str] | None = None) -> None:
        """Create the namespace with its labels in one request."""
        logger.info("Creating namespace %s", name)
        document = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name, "labels": dict(labels or {})}}
        with temporary_file(yaml.safe_dump(document, sort_keys=False), suffix=".yaml") as path:
            self._run("create", "-f", str(path), error_message=f"Failed to create namespace {name}")

    def delete_namespace(self, name: str) -> bool:
        logger.info("Deleting namespace %s", name)
        try:
            self._run(
                "delete",
                "namespace",
                name,
                "--ignore-not-found=true",
                "--wait=false",
                error_message=f"Failed to delete namespace {name}",
            )
            return True
        except AdapterCommandError as exc:
            if exc.not_found:
                logger.debug("Namespace was already absent: %s", name)
                return False
            raise

    def label(self, resource: str, name: str, labels: Mapping[str, str]) -> None:
        pairs = [f"{key}={value}" for key, value in sorted(labels.items())]
        self._run(
            "label",
            resource,
            name,
            *pairs,
            "--overwrite",
            error_message=f"Failed to label {resource} {name}",
        )

    # Manifests

    def apply(self, documents: Iterable[Mapping[str, Any]], *, namespace: str) -> CommandResult:
        docs = list(documents)
        logger.info("Applying %s Kubernetes objects in namespace %s", len(docs), namespace)
        content = yaml.safe_dump_all(docs, sort_keys=False)
        with temporary_file(content, suffix=".yaml") as manifest_path:
            return self._run(
                "apply",
                "-n",
                namespace,
                "-f",
                str(manifest_path),
                error_message=f"Failed to apply manifests in namespace {namespace}",
            )

    def delete_by_selector(self, *, namespace: str, kinds: Iterable[str], selector: str) -> CommandResult:
        logger.info("Deleting %s in namespace %s matching %s", ",".join(kinds), namespace, selector)
        return self._run(
            "delete",
            ",".join(kinds),
            "-n",
            namespace,
            "-l",
            selector,
            "--ignore-not-found=true",
            error_message=f"Failed to delete managed objects in namespace {namespace}",
        )

    # Readiness

    def pods_ready(self, *, namespace: str, selector: str) -> ReadyStatus:
        result = self._run(
            "get",
            "pods",
            "-n",
            namespace,
            "-l",
            selector,
            "-o",
            "json",
            error_message=f"Failed to list pods {selector} in namespace {namespace}",
        )
        items = _parse_json(result.stdout, what="pod list").get("items") or []
        if not items:
            return ReadyStatus(ready=False, detail=f"no pods match {selector}")
        waiting = []
        for pod in items:
            name = (pod.get("metadata") or {}).get("name", "?")
            status = pod.get("status") or {}
            if not _condition_true(status.get("conditions"), "Ready"):
                waiting.append(f"{name}: {_pod_reason(status)}")
        if waiting:
            return ReadyStatus(ready=False, detail="; ".join(waiting))
        return ReadyStatus(ready=True, detail=f"{len(items)} pod(s) ready")

    def nodes_ready(self) -> ReadyStatus:
        result = self._run("get", "nodes", "-o", "json", error_message="Failed to list nodes")
        items = _parse_json(result.stdout, what="node list").get("items") or []
        if not items:
            return ReadyStatus(ready=False, detail="no nodes registered")
        not_ready = [
            (node.get("metadata") or {}).get("name", "?")
            for node in items
            if not _condition_true((node.get("status") or {}).get("conditions"), "Ready")
        ]
        if not_ready:
            return ReadyStatus(ready=False, detail=f"nodes not ready: {', '.join(not_ready)}")
        return ReadyStatus(ready=True, detail=f"{len(items)} node(s) ready")

    def nodes_with_label(self, label: str) -> list[str]:
        result = self._run("get", "nodes", "-l", label, "-o", "name", error_message="Failed to list nodes")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def logs(self, *, namespace: str, selector: str, tail: int = 50) -> str:
        result = self._run(
            "logs",
            "-n",
            namespace,
            "-l",
            selector,
            f"--tail={tail}",
            "--all-containers=true",
            error_message=f"Failed to read logs for {selector}",
        )
        return result.stdout


def _parse_json(stdout: str, *, what: str) -> dict[str, Any]:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON from kubectl for {what}") from exc
    return payload if isinstance(payload, dict) else {}


def _condition_true(conditions: Any, condition_type: str) -> bool:
    if not isinstance(conditions, list):
        return False
    return any(
        isinstance(c, dict) and c.get("type") == condition_type and c.get("status") == "True"
        for c in conditions
    )


def _pod_reason(status: Mapping[str, Any]) -> str:
    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting")
        if waiting:
            return waiting.get("reason") or "waiting"
    return status.get("phase") or "unknown"
