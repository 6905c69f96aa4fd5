from __future__ import annotations

import logging
from typing import Any, Mapping

import yaml

from ragdeploy.proc import AdapterCommandError, CommandRunner, run_command, temporary_file
from ragdeploy.services.naming import kind_node_container

logger = logging.getLogger(__name__)


class KindAdapter:
    """Adapter for Kind cluster lifecycle operations."""

    def __init__(self, *, runner: CommandRunner | None = None) -> None:
        self._runner = runner

    def list_clusters(self) -> list[str]:
        result = run_command(["kind", "get", "clusters"], runner=self._runner, error_message="Failed to list Kind clusters")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def cluster_exists(self, name: str) -> bool:
        return name in self.list_clusters()

    def create_cluster(self, name: str, *, config: Mapping[str, Any]) -> None:
        logger.info("Creating Kind cluster %s", name)
        with temporary_file(yaml.safe_dump(dict(config), sort_keys=False), suffix=".yaml") as config_path:
            run_command(
                ["kind", "create", "cluster", "--name", name, "--config", str(config_path)],
                runner=self._runner,
                error_message=f"Failed to create Kind cluster {name}",
            )
        logger.info("Created Kind cluster %s", name)

    def delete_cluster(self, name: str) -> None:
        logger.info("Deleting Kind cluster %s", name)
        run_command(
            ["kind", "delete", "cluster", "--name", name],
            runner=self._runner,
            error_message=f"Failed to delete Kind cluster {name}",
        )

    def load_image(self, cluster: str, image: str) -> None:
        logger.info("Loading image %s into Kind cluster %s", image, cluster)
        run_command(
            ["kind", "load", "docker-image", image, "--name", cluster],
            runner=self._runner,
            error_message=f"Failed to load image {image} into Kind cluster {cluster}",
        )

    def image_loaded(self, cluster: str, image: str) -> bool:
        try:
            run_command(
                ["docker", "exec", kind_node_container(cluster), "crictl", "inspecti", _qualified(image)],
                runner=self._runner,
                error_message=f"Failed to inspect image {image} on Kind node",
            )
            return True
        except AdapterCommandError as exc:
            if exc.not_found or "no such image" in exc.result.output.lower():
                return False
            raise


def _qualified(image: str) -> str:
    """Images loaded into containerd without a registry live under docker.io."""
    first = image.split("/", 1)[0]
    if "/" not in image:
        return f"docker.io/library/{image}"
    if "." in first or ":" in first or first == "localhost":
        return image
    return f"docker.io/{image}"
