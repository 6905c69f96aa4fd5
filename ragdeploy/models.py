from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ragdeploy.services.naming import kind_context


class TargetKind(str, Enum):
    LOCAL_COMPOSE = "local-compose"
    KIND_CLUSTER = "kind"
    EXISTING_CLUSTER = "existing"


class DeploymentTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: TargetKind
    compose_project: str = "lightrag"
    cluster_name: Optional[str] = None
    kube_context: Optional[str] = None
    namespace: str = "lightrag"
    reuse_model_server: bool = False

    @property
    def is_kubernetes(self) -> bool:
        return self.kind in (TargetKind.KIND_CLUSTER, TargetKind.EXISTING_CLUSTER)

    @property
    def context(self) -> str | None:
        if self.kube_context:
            return self.kube_context
        if self.kind == TargetKind.KIND_CLUSTER and self.cluster_name:
            return kind_context(self.cluster_name)
        return None


# Service specs (input to the renderer)


class PortSpec(BaseModel):
    container_port: int
    host_port: Optional[int] = None
    node_port: Optional[int] = None
    protocol: Literal["TCP", "UDP"] = "TCP"


class VolumeMount(BaseModel):
    name: str
    mount_path: str
    size: Optional[str] = None
    host_path: Optional[str] = None
    read_only: bool = False


class ResourceQuantities(BaseModel):
    cpu: Optional[str] = None
    memory: Optional[str] = None


class ResourceRequirements(BaseModel):
    requests: ResourceQuantities = Field(default_factory=ResourceQuantities)
    limits: ResourceQuantities = Field(default_factory=ResourceQuantities)


class HealthCheck(BaseModel):
    """Health check rendered into the platform descriptor (compose healthcheck / k8s readinessProbe)."""

    command: Optional[list[str]] = None
    http_path: Optional[str] = None
    port: Optional[int] = None
    interval_seconds: int = 10
    timeout_seconds: int = 5
    retries: int = 5


class SecurityContext(BaseModel):
    run_as_user: Optional[int] = None
    run_as_group: Optional[int] = None
    fs_group: Optional[int] = None


class ServiceSpec(BaseModel):
    name: str
    image: str
    container_name: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)
    # env var name -> secret name resolved through a SecretProvider
    secret_env: dict[str, str] = Field(default_factory=dict)
    required_env: list[str] = Field(default_factory=list)
    ports: list[PortSpec] = Field(default_factory=list)
    volumes: list[VolumeMount] = Field(default_factory=list)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    readiness: Optional[HealthCheck] = None
    depends_on: list[str] = Field(default_factory=list)
    extra_hosts: dict[str, str] = Field(default_factory=dict)
    replicas: int = 1
    security: Optional[SecurityContext] = None
    image_pull_policy: Optional[str] = None
    restart: str = "unless-stopped"


# Provisioned resources


class ResourceKind(str, Enum):
    CONTAINER = "container"
    VOLUME = "volume"
    IMAGE = "image"
    MODEL = "model"
    CLUSTER = "cluster"
    NAMESPACE = "namespace"
    CLUSTER_IMAGE = "cluster-image"


class Ownership(str, Enum):
    CREATED = "created"
    MANAGED = "managed"
    REUSED = "reused"
    EXTERNAL = "external"


class ProvisionAction(str, Enum):
    NONE = "none"
    CREATED = "created"
    RESTARTED = "restarted"


@dataclass(frozen=True)
class ResourceSpec:
    name: str
    external: bool = False
    retain: bool = False

    kind: ClassVar[ResourceKind]

    @property
    def scope(self) -> str:
        return ""

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.scope}/{self.name}"


@dataclass(frozen=True)
class ContainerResource(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.CONTAINER

    image: str = ""
    # host port -> container port
    ports: dict[int, int] = field(default_factory=dict)
    # volume name -> mount path
    volumes: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    gpu: bool = False


@dataclass(frozen=True)
class VolumeResource(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.VOLUME

    retain: bool = True


@dataclass(frozen=True)
class ImageResource(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.IMAGE

    retain: bool = True
    build_context: Optional[str] = None
    dockerfile: Optional[str] = None


@dataclass(frozen=True)
class ModelResource(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.MODEL

    retain: bool = True
    container: str = ""

    @property
    def scope(self) -> str:
        return self.container


@dataclass(frozen=True)
class ClusterResource(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.CLUSTER

    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NamespaceResource(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.NAMESPACE

    context: Optional[str] = None
    part_of: str = "lightrag"

    @property
    def scope(self) -> str:
        return self.context or ""


@dataclass(frozen=True)
class ClusterImageResource(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.CLUSTER_IMAGE

    retain: bool = True
    cluster: str = ""

    @property
    def scope(self) -> str:
        return self.cluster


@dataclass(frozen=True)
class ResourceState:
    exists: bool
    healthy: bool = False
    managed: bool = False
    detail: Optional[str] = None


@dataclass(frozen=True)
class Handle:
    name: str
    kind: ResourceKind
    key: str
    ownership: Ownership
    action: ProvisionAction = ProvisionAction.NONE
    detail: Optional[str] = None


# Preflight requirements


@dataclass(frozen=True)
class CapabilityRequirement:
    name: str


@dataclass(frozen=True)
class BinaryRequirement(CapabilityRequirement):
    binary: str = ""
    hint: Optional[str] = None


@dataclass(frozen=True)
class DaemonRequirement(CapabilityRequirement):
    command: tuple[str, ...] = ()


@dataclass(frozen=True)
class GpuRequirement(CapabilityRequirement):
    name: str = "gpu"


@dataclass(frozen=True)
class CredentialRequirement(CapabilityRequirement):
    url: str = ""
    secret: str = ""


# Readiness checks


@dataclass(frozen=True)
class ReadinessCheck:
    name: str


@dataclass(frozen=True)
class HttpCheck(ReadinessCheck):
    url: str = ""


@dataclass(frozen=True)
class CommandCheck(ReadinessCheck):
    command: tuple[str, ...] = ()
    expect_output: Optional[str] = None


@dataclass(frozen=True)
class PodsReadyCheck(ReadinessCheck):
    namespace: str = ""
    selector: str = ""
    context: Optional[str] = None


@dataclass(frozen=True)
class NodesReadyCheck(ReadinessCheck):
    context: Optional[str] = None
