"""Per-target wiring of the LightRAG stack into a DeploymentPlan."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Any

from ragdeploy.config import LLM_API_KEY_SECRET, POSTGRES_PASSWORD_SECRET, Settings
from ragdeploy.models import (
    BinaryRequirement,
    CapabilityRequirement,
    ClusterImageResource,
    ClusterResource,
    CommandCheck,
    ContainerResource,
    CredentialRequirement,
    DaemonRequirement,
    DeploymentTarget,
    GpuRequirement,
    HealthCheck,
    HttpCheck,
    ImageResource,
    ModelResource,
    NamespaceResource,
    NodesReadyCheck,
    PodsReadyCheck,
    PortSpec,
    ReadinessCheck,
    ResourceQuantities,
    ResourceRequirements,
    ResourceSpec,
    SecurityContext,
    ServiceSpec,
    TargetKind,
    VolumeMount,
    VolumeResource,
)
from ragdeploy.proc import AdapterCommandError, CommandRunner, run_command
from ragdeploy.services.errors import ConfigurationError
from ragdeploy.services.renderer import render_kind_config

logger = logging.getLogger(__name__)

TARGET_CHOICES = ("local", "hybrid", "kind", "existing")

PART_OF = "lightrag"
POSTGRES_SERVICE = "postgres"
LIGHTRAG_SERVICE = "lightrag"
LIGHTRAG_NODE_PORT = 30080
POSTGRES_NODE_PORT = 30082
POSTGRES_UID = 999
POSTGRES_DATA_PATH = "/var/lib/postgresql/data"
OLLAMA_CONTAINER_PORT = 11434
FALLBACK_HOST_ADDRESS = "host.docker.internal"
EXTENSION_QUERY = "SELECT count(*) FROM pg_extension WHERE extname IN ('age', 'vector')"
EXPECTED_EXTENSIONS = "2"

_ROUTE_SRC_RE = re.compile(r"\bsrc\s+(\S+)")


@dataclass(frozen=True)
class DeploymentPlan:
    target: DeploymentTarget
    requirements: tuple[CapabilityRequirement, ...]
    # groups run in order; resources inside a group are independent
    provision: tuple[tuple[ResourceSpec, ...], ...]
    services: tuple[ServiceSpec, ...]
    readiness: tuple[ReadinessCheck, ...]
    endpoints: dict[str, str] = field(default_factory=dict)
    part_of: str = PART_OF
    work_dir: Path = Path(".ragdeploy")

    def resources(self) -> list[ResourceSpec]:
        return [resource for group in self.provision for resource in group]

    def with_services(self, services: list[ServiceSpec]) -> "DeploymentPlan":
        return DeploymentPlan(
            target=self.target,
            requirements=self.requirements,
            provision=self.provision,
            services=tuple(services),
            readiness=self.readiness,
            endpoints=dict(self.endpoints),
            part_of=self.part_of,
            work_dir=self.work_dir,
        )

    def describe(self) -> dict[str, Any]:
        return {
            "target": self.target.kind.value,
            "requirements": [requirement.name for requirement in self.requirements],
            "provision": [
                [
                    {
                        "key": resource.key,
                        "external": resource.external,
                        "retain": resource.retain,
                    }
                    for resource in group
                ]
                for group in self.provision
            ],
            "services": [service.name for service in self.services],
            "readiness": [check.name for check in self.readiness],
            "endpoints": dict(self.endpoints),
        }


def build_target(name: str, settings: Settings) -> DeploymentTarget:
    if name in ("local", "hybrid"):
        return DeploymentTarget(
            kind=TargetKind.LOCAL_COMPOSE,
            compose_project=settings.compose_project,
            reuse_model_server=name == "hybrid",
        )
    if name == "kind":
        return DeploymentTarget(
            kind=TargetKind.KIND_CLUSTER,
            cluster_name=settings.kind_cluster_name,
            namespace=settings.kube_namespace,
        )
    if name == "existing":
        return DeploymentTarget(
            kind=TargetKind.EXISTING_CLUSTER,
            kube_context=settings.kube_context,
            namespace=settings.kube_namespace,
        )
    raise ConfigurationError(f"Unknown target {name!r}; expected one of {', '.join(TARGET_CHOICES)}")


def detect_host_address(*, runner: CommandRunner | None = None) -> str:
    """Address of this host as seen from containers on the default route."""
    try:
        result = run_command(["ip", "route", "get", "1.1.1.1"], runner=runner, error_message="Failed to read routes")
    except AdapterCommandError as exc:
        logger.info("Could not detect host address (%s); using %s", exc.detail, FALLBACK_HOST_ADDRESS)
        return FALLBACK_HOST_ADDRESS
    match = _ROUTE_SRC_RE.search(result.stdout)
    if not match:
        logger.info("No source address in route output; using %s", FALLBACK_HOST_ADDRESS)
        return FALLBACK_HOST_ADDRESS
    return match.group(1)


def build_plan(
    settings: Settings,
    target_name: str,
    *,
    runner: CommandRunner | None = None,
    host_address: str | None = None,
    require_embedding_host: bool = True,
) -> DeploymentPlan:
    """Wire the stack for ``target_name``.

    Commands that never render the services (teardown, status) pass
    ``require_embedding_host=False`` so an existing-cluster plan can be built
    without EMBEDDING_BINDING_HOST.
    """
    target = build_target(target_name, settings)
    if target.kind == TargetKind.LOCAL_COMPOSE:
        return _compose_plan(settings, target)
    if target.kind == TargetKind.KIND_CLUSTER:
        if settings.embedding_binding_host is None and host_address is None:
            host_address = detect_host_address(runner=runner)
        return _kind_plan(settings, target, host_address=host_address or FALLBACK_HOST_ADDRESS)
    return _existing_plan(settings, target, require_embedding_host=require_embedding_host)


# Targets


def _compose_plan(settings: Settings, target: DeploymentTarget) -> DeploymentPlan:
    project = target.compose_project
    postgres_volume = f"{project}_postgres_data"
    lightrag_volume = f"{project}_lightrag_data"
    postgres_container = f"{project}-postgres"
    ollama = _ollama_container(settings, external=target.reuse_model_server)

    requirements: list[CapabilityRequirement] = [
        BinaryRequirement(name="docker", binary="docker", hint="install Docker Engine"),
        DaemonRequirement(name="docker-daemon", command=("docker", "info")),
    ]
    if not target.reuse_model_server:
        requirements.append(GpuRequirement())
    requirements.append(_credential_requirement(settings))

    postgres = _postgres_service(settings).model_copy(
        update={
            "container_name": postgres_container,
            "ports": [PortSpec(container_port=5432, host_port=settings.postgres_port)],
            "volumes": [VolumeMount(name=postgres_volume, mount_path=POSTGRES_DATA_PATH)],
        }
    )
    embedding_host = settings.embedding_binding_host or f"http://host.docker.internal:{settings.ollama_port}"
    lightrag = _lightrag_service(settings, postgres_host=POSTGRES_SERVICE, embedding_host=embedding_host).model_copy(
        update={
            "container_name": f"{project}-app",
            "ports": [PortSpec(container_port=9621, host_port=settings.lightrag_port)],
            "volumes": [VolumeMount(name=lightrag_volume, mount_path="/app/data")],
            "depends_on": [POSTGRES_SERVICE],
            "extra_hosts": {"host.docker.internal": "host-gateway"},
        }
    )

    psql = ("docker", "exec", postgres_container, "psql", "-U", settings.postgres_user, "-d", settings.postgres_database)
    readiness: list[ReadinessCheck] = [
        HttpCheck(name="ollama", url=f"http://localhost:{settings.ollama_port}/api/version"),
        CommandCheck(
            name="postgres",
            command=(
                "docker", "exec", postgres_container,
                "pg_isready", "-U", settings.postgres_user, "-d", settings.postgres_database,
            ),
        ),
        CommandCheck(name="postgres-extensions", command=(*psql, "-tAc", EXTENSION_QUERY), expect_output=EXPECTED_EXTENSIONS),
        HttpCheck(name="lightrag", url=f"http://localhost:{settings.lightrag_port}/health"),
    ]

    return DeploymentPlan(
        target=target,
        requirements=tuple(requirements),
        provision=(
            (
                ollama,
                VolumeResource(name=postgres_volume),
                VolumeResource(name=lightrag_volume),
                _postgres_image(settings),
            ),
            (ModelResource(name=settings.embedding_model, container=settings.ollama_container),),
        ),
        services=(postgres, lightrag),
        readiness=tuple(readiness),
        endpoints=_endpoints(settings),
        work_dir=settings.work_dir,
    )


def _kind_plan(settings: Settings, target: DeploymentTarget, *, host_address: str) -> DeploymentPlan:
    cluster = target.cluster_name or settings.kind_cluster_name
    context = target.context
    namespace = target.namespace

    requirements: list[CapabilityRequirement] = [
        BinaryRequirement(name="docker", binary="docker", hint="install Docker Engine"),
        BinaryRequirement(name="kind", binary="kind", hint="see https://kind.sigs.k8s.io/docs/user/quick-start/"),
        BinaryRequirement(name="kubectl", binary="kubectl", hint="see https://kubernetes.io/docs/tasks/tools/"),
        DaemonRequirement(name="docker-daemon", command=("docker", "info")),
        GpuRequirement(),
        _credential_requirement(settings),
    ]

    embedding_host = settings.embedding_binding_host or f"http://{host_address}:{settings.ollama_port}"
    services = _kubernetes_services(settings, embedding_host=embedding_host, node_ports=True)
    services[0] = services[0].model_copy(update={"image_pull_policy": "IfNotPresent"})

    kind_config = render_kind_config(
        cluster,
        port_mappings={LIGHTRAG_NODE_PORT: settings.lightrag_port, POSTGRES_NODE_PORT: settings.postgres_port},
    )
    readiness: list[ReadinessCheck] = [
        NodesReadyCheck(name="kind-nodes", context=context),
        HttpCheck(name="ollama", url=f"http://localhost:{settings.ollama_port}/api/version"),
        *_kubernetes_checks(settings, namespace=namespace, context=context),
        HttpCheck(name="lightrag-http", url=f"http://localhost:{settings.lightrag_port}/health"),
    ]

    return DeploymentPlan(
        target=target,
        requirements=tuple(requirements),
        provision=(
            (
                _ollama_container(settings, external=False),
                _postgres_image(settings),
                ClusterResource(name=cluster, config=kind_config),
            ),
            (
                ModelResource(name=settings.embedding_model, container=settings.ollama_container),
                NamespaceResource(name=namespace, context=context, part_of=PART_OF, retain=True),
                ClusterImageResource(name=settings.postgres_image, cluster=cluster),
            ),
        ),
        services=tuple(services),
        readiness=tuple(readiness),
        endpoints=_endpoints(settings),
        work_dir=settings.work_dir,
    )


def _existing_plan(settings: Settings, target: DeploymentTarget, *, require_embedding_host: bool) -> DeploymentPlan:
    embedding_host = settings.embedding_binding_host
    if not embedding_host:
        if require_embedding_host:
            raise ConfigurationError(
                "EMBEDDING_BINDING_HOST must point at a model server reachable from the cluster",
                missing=["EMBEDDING_BINDING_HOST"],
            )
        embedding_host = f"http://{FALLBACK_HOST_ADDRESS}:{settings.ollama_port}"
    cluster_info = ["kubectl"]
    if target.context:
        cluster_info.extend(["--context", target.context])
    cluster_info.append("cluster-info")

    requirements = (
        BinaryRequirement(name="kubectl", binary="kubectl", hint="see https://kubernetes.io/docs/tasks/tools/"),
        DaemonRequirement(name="kubernetes-api", command=tuple(cluster_info)),
        _credential_requirement(settings),
    )
    services = _kubernetes_services(settings, embedding_host=embedding_host, node_ports=False)
    forward = f"kubectl -n {target.namespace} port-forward svc/{LIGHTRAG_SERVICE} {settings.lightrag_port}:9621"
    return DeploymentPlan(
        target=target,
        requirements=requirements,
        provision=((NamespaceResource(name=target.namespace, context=target.context, part_of=PART_OF, retain=True),),),
        services=tuple(services),
        readiness=tuple(_kubernetes_checks(settings, namespace=target.namespace, context=target.context)),
        endpoints={"LightRAG": f"run `{forward}` then open http://localhost:{settings.lightrag_port}"},
        work_dir=settings.work_dir,
    )


# Building blocks


def _credential_requirement(settings: Settings) -> CredentialRequirement:
    return CredentialRequirement(
        name="llm-api-key",
        url=f"{settings.llm_binding_host.rstrip('/')}/models",
        secret=LLM_API_KEY_SECRET,
    )


def _ollama_container(settings: Settings, *, external: bool) -> ContainerResource:
    if external:
        return ContainerResource(name=settings.ollama_container, external=True)
    return ContainerResource(
        name=settings.ollama_container,
        image=settings.ollama_image,
        ports={settings.ollama_port: OLLAMA_CONTAINER_PORT},
        volumes={settings.ollama_volume: "/root/.ollama"},
        env={"OLLAMA_HOST": "0.0.0.0"},
        gpu=True,
    )


def _postgres_image(settings: Settings) -> ImageResource:
    return ImageResource(
        name=settings.postgres_image,
        build_context=settings.postgres_build_context,
        dockerfile=settings.postgres_dockerfile if settings.postgres_build_context else None,
    )


def _postgres_service(settings: Settings) -> ServiceSpec:
    return ServiceSpec(
        name=POSTGRES_SERVICE,
        image=settings.postgres_image,
        env={"POSTGRES_DB": settings.postgres_database, "POSTGRES_USER": settings.postgres_user},
        secret_env={"POSTGRES_PASSWORD": POSTGRES_PASSWORD_SECRET},
        required_env=["POSTGRES_DB", "POSTGRES_USER", "POSTGRES_PASSWORD"],
        readiness=HealthCheck(
            command=["pg_isready", "-U", settings.postgres_user, "-d", settings.postgres_database],
            interval_seconds=10,
            timeout_seconds=5,
            retries=5,
        ),
    )


def _lightrag_service(settings: Settings, *, postgres_host: str, embedding_host: str) -> ServiceSpec:
    env = {
        "HOST": "0.0.0.0",
        "PORT": "9621",
        "LLM_BINDING": settings.llm_binding,
        "LLM_MODEL": settings.llm_model,
        "LLM_BINDING_HOST": settings.llm_binding_host,
        "EMBEDDING_BINDING": settings.embedding_binding,
        "EMBEDDING_MODEL": settings.embedding_model,
        "EMBEDDING_BINDING_HOST": embedding_host,
        "POSTGRES_HOST": postgres_host,
        "POSTGRES_PORT": "5432",
        "POSTGRES_USER": settings.postgres_user,
        "POSTGRES_DATABASE": settings.postgres_database,
        "LIGHTRAG_KV_STORAGE": settings.lightrag_kv_storage,
        "LIGHTRAG_VECTOR_STORAGE": settings.lightrag_vector_storage,
        "LIGHTRAG_GRAPH_STORAGE": settings.lightrag_graph_storage,
        "LIGHTRAG_DOC_STATUS_STORAGE": settings.lightrag_doc_status_storage,
        "LIGHTRAG_SERVER_TYPE": settings.lightrag_server_type,
    }
    secret_env = {"LLM_BINDING_API_KEY": LLM_API_KEY_SECRET, "POSTGRES_PASSWORD": POSTGRES_PASSWORD_SECRET}
    return ServiceSpec(
        name=LIGHTRAG_SERVICE,
        image=settings.lightrag_image,
        env=env,
        secret_env=secret_env,
        required_env=sorted((set(env) - {"HOST", "PORT", "LIGHTRAG_SERVER_TYPE"}) | set(secret_env)),
        readiness=HealthCheck(http_path="/health", port=9621, interval_seconds=10, timeout_seconds=5, retries=30),
    )


def _kubernetes_services(settings: Settings, *, embedding_host: str, node_ports: bool) -> list[ServiceSpec]:
    postgres = _postgres_service(settings).model_copy(
        update={
            "env": {
                "POSTGRES_DB": settings.postgres_database,
                "POSTGRES_USER": settings.postgres_user,
                "PGDATA": f"{POSTGRES_DATA_PATH}/pgdata",
            },
            "ports": [PortSpec(container_port=5432, node_port=POSTGRES_NODE_PORT if node_ports else None)],
            "volumes": [VolumeMount(name="postgres", mount_path=POSTGRES_DATA_PATH, size="10Gi")],
            "resources": ResourceRequirements(
                requests=ResourceQuantities(cpu="250m", memory="512Mi"),
                limits=ResourceQuantities(cpu="500m", memory="1Gi"),
            ),
            "security": SecurityContext(run_as_user=POSTGRES_UID, run_as_group=POSTGRES_UID, fs_group=POSTGRES_UID),
        }
    )
    lightrag = _lightrag_service(settings, postgres_host=POSTGRES_SERVICE, embedding_host=embedding_host).model_copy(
        update={
            "ports": [PortSpec(container_port=9621, node_port=LIGHTRAG_NODE_PORT if node_ports else None)],
            "volumes": [
                VolumeMount(name="lightrag-rag", mount_path="/app/data/rag_storage", size="10Gi"),
                VolumeMount(name="lightrag-inputs", mount_path="/app/data/inputs", size="5Gi"),
            ],
            "resources": ResourceRequirements(
                requests=ResourceQuantities(cpu="500m", memory="1Gi"),
                limits=ResourceQuantities(cpu="2000m", memory="4Gi"),
            ),
            "depends_on": [POSTGRES_SERVICE],
        }
    )
    return [postgres, lightrag]


def _kubernetes_checks(settings: Settings, *, namespace: str, context: str | None) -> list[ReadinessCheck]:
    kubectl = ["kubectl"]
    if context:
        kubectl.extend(["--context", context])
    psql = (
        *kubectl, "exec", "-n", namespace, f"deploy/{POSTGRES_SERVICE}", "--",
        "psql", "-U", settings.postgres_user, "-d", settings.postgres_database, "-tAc", EXTENSION_QUERY,
    )
    return [
        PodsReadyCheck(name="postgres", namespace=namespace, selector=f"app={POSTGRES_SERVICE}", context=context),
        CommandCheck(name="postgres-extensions", command=psql, expect_output=EXPECTED_EXTENSIONS),
        PodsReadyCheck(name="lightrag", namespace=namespace, selector=f"app={LIGHTRAG_SERVICE}", context=context),
    ]


def _endpoints(settings: Settings) -> dict[str, str]:
    return {
        "LightRAG WebUI": f"http://localhost:{settings.lightrag_port}/webui",
        "LightRAG API docs": f"http://localhost:{settings.lightrag_port}/docs",
        "Ollama API": f"http://localhost:{settings.ollama_port}",
        "PostgreSQL": f"localhost:{settings.postgres_port}",
    }
