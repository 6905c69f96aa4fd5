from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
from typing import Any, Mapping

from ragdeploy.proc import (
    AdapterCommandError,
    CommandResult,
    CommandRunner,
    env_file_content,
    run_command,
    temporary_file,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContainerState:
    name: str
    exists: bool
    running: bool = False
    status: str | None = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VolumeState:
    name: str
    exists: bool
    labels: dict[str, str] = field(default_factory=dict)


class DockerAdapter:
    """Adapter for the docker CLI: containers, volumes, images and compose projects."""

    def __init__(self, *, runner: CommandRunner | None = None) -> None:
        self._runner = runner

    def _run(self, cmd: list[str], *, error_message: str) -> CommandResult:
        return run_command(cmd, runner=self._runner, error_message=error_message)

    # Containers

    def container_state(self, name: str) -> ContainerState:
        try:
            result = self._run(
                ["docker", "container", "inspect", name],
                error_message=f"Failed to inspect container {name}",
            )
        except AdapterCommandError as exc:
            if exc.not_found:
                logger.debug("Container not found: %s", name)
                return ContainerState(name=name, exists=False)
            raise

        payload = _parse_inspect(result.stdout, what=f"container {name}")
        state = payload.get("State") or {}
        config = payload.get("Config") or {}
        return ContainerState(
            name=name,
            exists=True,
            running=bool(state.get("Running")),
            status=state.get("Status"),
            labels=dict(config.get("Labels") or {}),
        )

    def run_container(
        self,
        *,
        name: str,
        image: str,
        ports: Mapping[int, int] | None = None,
        volumes: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
        labels: Mapping[str, str] | None = None,
        gpus: bool = False,
    ) -> CommandResult:
        logger.info("Creating container %s from image %s (gpu=%s)", name, image, gpus)
        cmd = ["docker", "run", "-d", "--name", name]
        if gpus:
            cmd.extend(["--gpus", "all"])
        for key, value in sorted((labels or {}).items()):
            cmd.extend(["--label", f"{key}={value}"])
        for host_port, container_port in sorted((ports or {}).items()):
            cmd.extend(["-p", f"{host_port}:{container_port}"])
        for volume, mount_path in sorted((volumes or {}).items()):
            cmd.extend(["-v", f"{volume}:{mount_path}"])
        for key, value in sorted((env or {}).items()):
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(image)
        return self._run(cmd, error_message=f"Failed to create container {name}")

    def start_container(self, name: str) -> CommandResult:
        logger.info("Starting existing container %s", name)
        return self._run(["docker", "start", name], error_message=f"Failed to start container {name}")

    def remove_container(self, name: str) -> bool:
        """Stop and remove a container; returns False when it was already absent."""
        logger.info("Removing container %s", name)
        try:
            self._run(["docker", "rm", "-f", name], error_message=f"Failed to remove container {name}")
            return True
        except AdapterCommandError as exc:
            if exc.not_found:
                logger.debug("Container already absent: %s", name)
                return False
            raise

    def exec(self, name: str, args: list[str]) -> CommandResult:
        return self._run(
            ["docker", "exec", name, *args],
            error_message=f"Failed to exec {' '.join(args)!r} in container {name}",
        )

    # Volumes

    def volume_state(self, name: str) -> VolumeState:
        try:
            result = self._run(
                ["docker", "volume", "inspect", name],
                error_message=f"Failed to inspect volume {name}",
            )
        except AdapterCommandError as exc:
            if exc.not_found:
                return VolumeState(name=name, exists=False)
            raise
        payload = _parse_inspect(result.stdout, what=f"volume {name}")
        return VolumeState(name=name, exists=True, labels=dict(payload.get("Labels") or {}))

    def create_volume(self, name: str, *, labels: Mapping[str, str] | None = None) -> CommandResult:
        logger.info("Creating volume %s", name)
        cmd = ["docker", "volume", "create"]
        for key, value in sorted((labels or {}).items()):
            cmd.extend(["--label", f"{key}={value}"])
        cmd.append(name)
        return self._run(cmd, error_message=f"Failed to create volume {name}")

    def remove_volume(self, name: str) -> bool:
        logger.info("Removing volume %s", name)
        try:
            self._run(["docker", "volume", "rm", name], error_message=f"Failed to remove volume {name}")
            return True
        except AdapterCommandError as exc:
            if exc.not_found:
                return False
            raise

    # Images

    def image_labels(self, ref: str) -> dict[str, str] | None:
        """Return the image labels, or None when the image is not present locally."""
        try:
            result = self._run(
                ["docker", "image", "inspect", ref],
                error_message=f"Failed to inspect image {ref}",
            )
        except AdapterCommandError as exc:
            if exc.not_found:
                return None
            raise
        payload = _parse_inspect(result.stdout, what=f"image {ref}")
        config = payload.get("Config") or {}
        return dict(config.get("Labels") or {})

    def build_image(
        self,
        ref: str,
        *,
        context: str,
        dockerfile: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> CommandResult:
        logger.info("Building image %s from %s", ref, context)
        cmd = ["docker", "build", "-t", ref]
        if dockerfile:
            cmd.extend(["-f", str(Path(context) / dockerfile)])
        for key, value in sorted((labels or {}).items()):
            cmd.extend(["--label", f"{key}={value}"])
        cmd.append(context)
        return self._run(cmd, error_message=f"Failed to build image {ref}")

    def pull_image(self, ref: str) -> CommandResult:
        logger.info("Pulling image %s", ref)
        return self._run(["docker", "pull", ref], error_message=f"Failed to pull image {ref}")

    def remove_image(self, ref: str) -> bool:
        logger.info("Removing image %s", ref)
        try:
            self._run(["docker", "image", "rm", ref], error_message=f"Failed to remove image {ref}")
            return True
        except AdapterCommandError as exc:
            if exc.not_found:
                return False
            raise

    # Compose

    def compose_up(
        self,
        *,
        project: str,
        compose_file: Path,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        logger.info("Applying compose project %s from %s", project, compose_file)
        base = ["docker", "compose", "-p", project, "-f", str(compose_file)]
        tail = ["up", "-d", "--remove-orphans"]
        with temporary_file(env_file_content(env or {}), suffix=".env") as env_path:
            return self._run(
                [*base, "--env-file", str(env_path), *tail],
                error_message=f"Failed to start compose project {project}",
            )

    def compose_down(self, *, project: str, compose_file: Path | None = None) -> CommandResult:
        logger.info("Removing compose project %s", project)
        cmd = ["docker", "compose", "-p", project]
        if compose_file is not None and compose_file.exists():
            cmd.extend(["-f", str(compose_file)])
        cmd.append("down")
        return self._run(cmd, error_message=f"Failed to remove compose project {project}")

    def compose_logs(self, *, project: str, service: str, tail: int = 50) -> str:
        result = self._run(
            ["docker", "compose", "-p", project, "logs", "--no-color", f"--tail={tail}", service],
            error_message=f"Failed to read logs for {service}",
        )
        return result.output.strip()


def _parse_inspect(stdout: str, *, what: str) -> dict[str, Any]:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON from docker inspect for {what}") from exc
    if isinstance(payload, list):
        payload = payload[0] if payload else {}
    return payload if isinstance(payload, dict) else {}

