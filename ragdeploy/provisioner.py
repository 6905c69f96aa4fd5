from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
from pathlib import Path
import threading
from typing import Callable, Iterable

from ragdeploy.models import (
    ClusterImageResource,
    ClusterResource,
    ContainerResource,
    DeploymentTarget,
    Handle,
    ImageResource,
    ModelResource,
    NamespaceResource,
    Ownership,
    ProvisionAction,
    ResourceKind,
    ResourceSpec,
    ResourceState,
    TargetKind,
    VolumeResource,
)
from ragdeploy.proc import AdapterCommandError, CommandRunner
from ragdeploy.services.docker_adapter import DockerAdapter
from ragdeploy.services.errors import ProvisionFailure, RagDeployException, ReadinessTimeout
from ragdeploy.services.kind_adapter import KindAdapter
from ragdeploy.services.kube_adapter import KubeAdapter
from ragdeploy.services.naming import (
    KUBE_MANAGED_BY_LABEL,
    KUBE_MANAGED_BY_VALUE,
    KUBE_NODE_MANAGED_LABEL,
    MANAGED_LABEL,
    MANAGED_LABEL_VALUE,
    kind_context,
    kind_node_container,
    kube_managed_selector,
    managed_docker_labels,
    managed_kube_labels,
)
from ragdeploy.services.readiness import ProbeNotReady, ReadinessProbe, await_ready
from ragdeploy.services.renderer import Manifest

logger = logging.getLogger(__name__)

# Kubernetes objects removed on teardown; claims only when data is deleted too.
KUBE_APP_KINDS = ("deployment", "service", "secret")
KUBE_DATA_KINDS = ("persistentvolumeclaim",)


class ResourceHandler:
    """Platform operations for one resource kind."""

    def prepare(self, resource: ResourceSpec) -> None:
        return None

    def inspect(self, resource: ResourceSpec) -> ResourceState:
        raise NotImplementedError

    def create(self, resource: ResourceSpec) -> None:
        raise NotImplementedError

    def restart(self, resource: ResourceSpec) -> None:
        raise ProvisionFailure("resource is unhealthy and cannot be restarted", resource=resource.key)

    def delete(self, resource: ResourceSpec) -> bool:
        raise NotImplementedError


class ContainerHandler(ResourceHandler):
    def __init__(self, docker: DockerAdapter, *, gpu_enabled: Callable[[], bool]) -> None:
        self._docker = docker
        self._gpu_enabled = gpu_enabled

    def inspect(self, resource: ContainerResource) -> ResourceState:
        state = self._docker.container_state(resource.name)
        return ResourceState(
            exists=state.exists,
            healthy=state.running,
            managed=state.labels.get(MANAGED_LABEL) == MANAGED_LABEL_VALUE,
            detail=state.status,
        )

    def create(self, resource: ContainerResource) -> None:
        gpus = resource.gpu and self._gpu_enabled()
        if resource.gpu and not gpus:
            logger.info("No GPU available; starting %s in CPU mode", resource.name)
        self._docker.run_container(
            name=resource.name,
            image=resource.image,
            ports=resource.ports,
            volumes=resource.volumes,
            env=resource.env,
            labels=managed_docker_labels(),
            gpus=gpus,
        )

    def restart(self, resource: ContainerResource) -> None:
        self._docker.start_container(resource.name)

    def delete(self, resource: ContainerResource) -> bool:
        return self._docker.remove_container(resource.name)


class VolumeHandler(ResourceHandler):
    def __init__(self, docker: DockerAdapter) -> None:
        self._docker = docker

    def inspect(self, resource: VolumeResource) -> ResourceState:
        state = self._docker.volume_state(resource.name)
        return ResourceState(
            exists=state.exists,
            healthy=state.exists,
            managed=state.labels.get(MANAGED_LABEL) == MANAGED_LABEL_VALUE,
        )

    def create(self, resource: VolumeResource) -> None:
        self._docker.create_volume(resource.name, labels=managed_docker_labels())

    def delete(self, resource: VolumeResource) -> bool:
        return self._docker.remove_volume(resource.name)


class ImageHandler(ResourceHandler):
    def __init__(self, docker: DockerAdapter) -> None:
        self._docker = docker

    def inspect(self, resource: ImageResource) -> ResourceState:
        labels = self._docker.image_labels(resource.name)
        if labels is None:
            return ResourceState(exists=False)
        return ResourceState(
            exists=True,
            healthy=True,
            managed=labels.get(MANAGED_LABEL) == MANAGED_LABEL_VALUE,
        )

    def create(self, resource: ImageResource) -> None:
        if resource.build_context:
            self._docker.build_image(
                resource.name,
                context=resource.build_context,
                dockerfile=resource.dockerfile,
                labels=managed_docker_labels(),
            )
        else:
            self._docker.pull_image(resource.name)

    def delete(self, resource: ImageResource) -> bool:
        return self._docker.remove_image(resource.name)


class ModelHandler(ResourceHandler):
    """Embedding models pulled into a running Ollama container."""

    def __init__(self, docker: DockerAdapter, *, wait_for_server: Callable[[str], None]) -> None:
        self._docker = docker
        self._wait_for_server = wait_for_server

    def prepare(self, resource: ModelResource) -> None:
        self._wait_for_server(resource.container)

    def inspect(self, resource: ModelResource) -> ResourceState:
        container = self._docker.container_state(resource.container)
        if not container.running:
            return ResourceState(exists=False, detail=f"model server {resource.container} is not running")
        present = _model_ref(resource.name) in self.list_models(resource.container)
        return ResourceState(exists=present, healthy=present)

    def list_models(self, container: str) -> set[str]:
        result = self._docker.exec(container, ["ollama", "list"])
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        return {_model_ref(line.split()[0]) for line in lines[1:]}

    def create(self, resource: ModelResource) -> None:
        logger.info("Pulling model %s into %s", resource.name, resource.container)
        self._docker.exec(resource.container, ["ollama", "pull", resource.name])

    def delete(self, resource: ModelResource) -> bool:
        self._docker.exec(resource.container, ["ollama", "rm", resource.name])
        return True


class ClusterHandler(ResourceHandler):
    """Kind clusters; ownership is recorded as a label on the cluster nodes."""

    def __init__(
        self,
        kind: KindAdapter,
        kube: KubeAdapter,
        docker: DockerAdapter,
        *,
        wait_for_api: Callable[[ClusterResource], None],
    ) -> None:
        self._kind = kind
        self._kube = kube
        self._docker = docker
        self._wait_for_api = wait_for_api

    def inspect(self, resource: ClusterResource) -> ResourceState:
        if not self._kind.cluster_exists(resource.name):
            return ResourceState(exists=False)
        node = self._docker.container_state(kind_node_container(resource.name))
        if not node.running:
            return ResourceState(exists=True, healthy=False, detail=f"node container is {node.status or 'stopped'}")
        managed_nodes = self._kube.with_context(kind_context(resource.name)).nodes_with_label(
            f"{KUBE_NODE_MANAGED_LABEL}=true"
        )
        return ResourceState(exists=True, healthy=True, managed=bool(managed_nodes))

    def create(self, resource: ClusterResource) -> None:
        self._kind.create_cluster(resource.name, config=resource.config)
        self._wait_for_api(resource)
        self._kube.with_context(kind_context(resource.name)).label(
            "nodes", "--all", {KUBE_NODE_MANAGED_LABEL: "true"}
        )

    def restart(self, resource: ClusterResource) -> None:
        self._docker.start_container(kind_node_container(resource.name))
        self._wait_for_api(resource)

    def delete(self, resource: ClusterResource) -> bool:
        self._kind.delete_cluster(resource.name)
        return True


class NamespaceHandler(ResourceHandler):
    def __init__(self, kube: KubeAdapter) -> None:
        self._kube = kube

    def inspect(self, resource: NamespaceResource) -> ResourceState:
        state = self._kube.with_context(resource.context).namespace_state(resource.name)
        if not state.exists:
            return ResourceState(exists=False)
        return ResourceState(
            exists=True,
            healthy=not state.terminating,
            managed=state.labels.get(KUBE_MANAGED_BY_LABEL) == KUBE_MANAGED_BY_VALUE,
            detail=state.phase,
        )

    def create(self, resource: NamespaceResource) -> None:
        self._kube.with_context(resource.context).create_namespace(
            resource.name, labels=managed_kube_labels(resource.part_of)
        )

    def restart(self, resource: NamespaceResource) -> None:
        raise ProvisionFailure(
            "namespace is terminating; wait for it to disappear and retry",
            resource=resource.key,
        )

    def delete(self, resource: NamespaceResource) -> bool:
        return self._kube.with_context(resource.context).delete_namespace(resource.name)


class ClusterImageHandler(ResourceHandler):
    def __init__(self, kind: KindAdapter) -> None:
        self._kind = kind

    def inspect(self, resource: ClusterImageResource) -> ResourceState:
        present = self._kind.image_loaded(resource.cluster, resource.name)
        return ResourceState(exists=present, healthy=present)

    def create(self, resource: ClusterImageResource) -> None:
        self._kind.load_image(resource.cluster, resource.name)

    def restart(self, resource: ClusterImageResource) -> None:
        self._kind.load_image(resource.cluster, resource.name)

    def delete(self, resource: ClusterImageResource) -> bool:
        logger.info("Image %s is removed together with cluster %s", resource.name, resource.cluster)
        return False


class Provisioner:
    """Facade over the Docker/Kind/Kubernetes adapters used by the sequencer."""

    def __init__(
        self,
        *,
        docker: DockerAdapter | None = None,
        kube: KubeAdapter | None = None,
        kind: KindAdapter | None = None,
        runner: CommandRunner | None = None,
        ready_interval: float = 2.0,
        ready_attempts: int = 150,
        max_workers: int = 4,
        cancel: threading.Event | None = None,
    ) -> None:
        self.docker = docker or DockerAdapter(runner=runner)
        self.kube = kube or KubeAdapter(runner=runner)
        self.kind = kind or KindAdapter(runner=runner)
        self.gpu_available = False
        self._ready_interval = ready_interval
        self._ready_attempts = ready_attempts
        self._max_workers = max_workers
        self._cancel = cancel
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._handlers: dict[ResourceKind, ResourceHandler] = {
            ResourceKind.CONTAINER: ContainerHandler(self.docker, gpu_enabled=lambda: self.gpu_available),
            ResourceKind.VOLUME: VolumeHandler(self.docker),
            ResourceKind.IMAGE: ImageHandler(self.docker),
            ResourceKind.MODEL: ModelHandler(self.docker, wait_for_server=self._wait_for_model_server),
            ResourceKind.CLUSTER: ClusterHandler(
                self.kind, self.kube, self.docker, wait_for_api=self._wait_for_cluster_api
            ),
            ResourceKind.NAMESPACE: NamespaceHandler(self.kube),
            ResourceKind.CLUSTER_IMAGE: ClusterImageHandler(self.kind),
        }

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _handler(self, resource: ResourceSpec) -> ResourceHandler:
        return self._handlers[resource.kind]

    def ensure(self, resource: ResourceSpec) -> Handle:
        """Bring ``resource`` to present-and-healthy; repeated calls do not mutate again."""
        handler = self._handler(resource)
        with self._lock_for(resource.key):
            logger.debug("Ensuring %s", resource.key)
            try:
                handler.prepare(resource)
                state = handler.inspect(resource)
                if resource.external:
                    return self._verify_external(resource, state)
                if state.exists and state.healthy:
                    logger.info("%s already exists; nothing to do", resource.key)
                    return self._handle(resource, _existing_ownership(state), ProvisionAction.NONE, state.detail)
                if state.exists:
                    logger.info("%s exists but is unhealthy (%s); restarting in place", resource.key, state.detail)
                    handler.restart(resource)
                    return self._handle(resource, _existing_ownership(state), ProvisionAction.RESTARTED, state.detail)
                logger.info("Creating %s", resource.key)
                handler.create(resource)
                return self._handle(resource, Ownership.CREATED, ProvisionAction.CREATED)
            except AdapterCommandError as exc:
                raise ProvisionFailure(exc.summary, resource=resource.key, detail=exc.detail) from exc
            except ValueError as exc:
                raise ProvisionFailure("unexpected platform response", resource=resource.key, detail=str(exc)) from exc

    def ensure_all(
        self,
        group: Iterable[ResourceSpec],
        *,
        on_handle: Callable[[Handle], None] | None = None,
    ) -> list[Handle]:
        """Ensure independent resources concurrently; the first failure is raised after all finish."""
        resources = list(group)
        if not resources:
            return []
        handles: list[Handle] = []
        first_error: BaseException | None = None
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(resources))) as executor:
            futures = [executor.submit(self.ensure, resource) for resource in resources]
            try:
                for resource, future in zip(resources, futures):
                    try:
                        handle = future.result()
                    except RagDeployException as exc:
                        logger.error("Provisioning %s failed: %s", resource.key, exc)
                        if first_error is None:
                            first_error = exc
                        continue
                    handles.append(handle)
                    if on_handle is not None:
                        on_handle(handle)
            except KeyboardInterrupt:
                if self._cancel is not None:
                    self._cancel.set()
                for future in futures:
                    future.cancel()
                raise
        if first_error is not None:
            raise first_error
        return handles

    def inspect(self, resource: ResourceSpec) -> ResourceState:
        try:
            return self._handler(resource).inspect(resource)
        except AdapterCommandError as exc:
            raise ProvisionFailure(exc.summary, resource=resource.key, detail=exc.detail) from exc

    def delete(self, resource: ResourceSpec) -> bool:
        if resource.external:
            raise ProvisionFailure("refusing to delete an externally owned resource", resource=resource.key)
        try:
            return self._handler(resource).delete(resource)
        except AdapterCommandError as exc:
            raise ProvisionFailure(exc.summary, stage="teardown", resource=resource.key, detail=exc.detail) from exc

    # Manifests

    def apply_manifests(self, target: DeploymentTarget, manifests: Iterable[Manifest], *, work_dir: Path) -> None:
        manifests = list(manifests)
        try:
            if target.is_kubernetes:
                kube = self.kube.with_context(target.context)
                for manifest in manifests:
                    kube.apply(manifest.documents, namespace=target.namespace)
                return
            for manifest in manifests:
                compose_file = compose_file_path(work_dir, target.compose_project)
                compose_file.parent.mkdir(parents=True, exist_ok=True)
                compose_file.write_text(manifest.to_yaml(), encoding="utf-8")
                logger.info("Wrote compose file %s", compose_file)
                self.docker.compose_up(
                    project=target.compose_project,
                    compose_file=compose_file,
                    env=manifest.secret_values,
                )
        except AdapterCommandError as exc:
            raise ProvisionFailure(exc.summary, stage="rendering", resource=target.kind.value, detail=exc.detail) from exc

    def remove_manifests(
        self,
        target: DeploymentTarget,
        *,
        part_of: str,
        work_dir: Path,
        delete_volumes: bool = False,
    ) -> bool:
        """Remove applied services; returns False when there was nothing to remove from."""
        try:
            if not target.is_kubernetes:
                self.docker.compose_down(
                    project=target.compose_project,
                    compose_file=compose_file_path(work_dir, target.compose_project),
                )
                return True
            if target.kind == TargetKind.KIND_CLUSTER and target.cluster_name:
                if not self.kind.cluster_exists(target.cluster_name):
                    logger.info("Kind cluster %s is absent; no manifests to remove", target.cluster_name)
                    return False
            kinds = KUBE_APP_KINDS + (KUBE_DATA_KINDS if delete_volumes else ())
            self.kube.with_context(target.context).delete_by_selector(
                namespace=target.namespace,
                kinds=kinds,
                selector=kube_managed_selector(part_of),
            )
            return True
        except AdapterCommandError as exc:
            raise ProvisionFailure(exc.summary, stage="teardown", resource=target.kind.value, detail=exc.detail) from exc

    def logs(self, target: DeploymentTarget, service: str, *, tail: int = 50) -> str:
        try:
            if target.is_kubernetes:
                return self.kube.with_context(target.context).logs(
                    namespace=target.namespace, selector=f"app={service}", tail=tail
                )
            return self.docker.compose_logs(project=target.compose_project, service=service, tail=tail)
        except AdapterCommandError as exc:
            raise ProvisionFailure(exc.summary, stage="status", resource=service, detail=exc.detail) from exc

    # Helpers

    def _verify_external(self, resource: ResourceSpec, state: ResourceState) -> Handle:
        if not state.exists:
            raise ProvisionFailure("externally owned resource is missing", resource=resource.key)
        if not state.healthy:
            raise ProvisionFailure(
                "externally owned resource is not healthy and will not be touched",
                resource=resource.key,
                detail=state.detail,
            )
        logger.info("Reusing externally owned %s", resource.key)
        return self._handle(resource, Ownership.EXTERNAL, ProvisionAction.NONE, state.detail)

    @staticmethod
    def _handle(
        resource: ResourceSpec,
        ownership: Ownership,
        action: ProvisionAction,
        detail: str | None = None,
    ) -> Handle:
        return Handle(
            name=resource.name,
            kind=resource.kind,
            key=resource.key,
            ownership=ownership,
            action=action,
            detail=detail,
        )

    def _wait_for_model_server(self, container: str) -> None:
        probe = ReadinessProbe(
            name=f"model server {container}",
            check=lambda: bool(self.docker.exec(container, ["ollama", "list"])),
            interval=self._ready_interval,
            max_attempts=self._ready_attempts,
        )
        try:
            await_ready(probe, cancel=self._cancel)
        except ReadinessTimeout as exc:
            raise ProvisionFailure(
                "model server did not become ready",
                resource=container,
                detail=exc.detail,
            ) from exc

    def _wait_for_cluster_api(self, resource: ClusterResource) -> None:
        kube = self.kube.with_context(kind_context(resource.name))

        def nodes_ready() -> bool:
            try:
                status = kube.nodes_ready()
            except AdapterCommandError as exc:
                if not exc.retryable:
                    raise ProvisionFailure(exc.summary, resource=resource.key, detail=exc.detail) from exc
                raise ProbeNotReady(exc.detail) from exc
            if not status.ready:
                raise ProbeNotReady(status.detail)
            return True

        probe = ReadinessProbe(
            name=f"Kubernetes API of {resource.name}",
            check=nodes_ready,
            interval=self._ready_interval,
            max_attempts=self._ready_attempts,
        )
        try:
            await_ready(probe, cancel=self._cancel)
        except ReadinessTimeout as exc:
            raise ProvisionFailure(
                "cluster API did not become ready",
                resource=resource.key,
                detail=exc.detail,
            ) from exc


def compose_file_path(work_dir: Path, project: str) -> Path:
    return work_dir / f"{project}.compose.yaml"


def _existing_ownership(state: ResourceState) -> Ownership:
    return Ownership.MANAGED if state.managed else Ownership.REUSED


def _model_ref(name: str) -> str:
    return name if ":" in name else f"{name}:latest"
