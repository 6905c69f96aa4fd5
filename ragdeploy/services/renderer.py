from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
import logging
import re
from typing import Any, Iterable, Literal, Mapping

import yaml

from ragdeploy.models import DeploymentTarget, HealthCheck, ServiceSpec, VolumeMount
from ragdeploy.services.errors import RenderValidationFailure
from ragdeploy.services.naming import (
    claim_name_for_volume,
    is_valid_container_name,
    is_valid_dns_label,
    is_valid_env_name,
    managed_docker_labels,
    managed_kube_labels,
    secret_name_for_service,
    slugify_token,
)
from ragdeploy.services.secrets import REDACTED, SecretProvider

logger = logging.getLogger(__name__)

ManifestTarget = Literal["compose", "kubernetes"]

MIN_PORT, MAX_PORT = 1, 65535
MIN_NODE_PORT, MAX_NODE_PORT = 30000, 32767
DEFAULT_CLAIM_SIZE = "1Gi"

_QUANTITY_RE = re.compile(r"^([0-9]+(?:\.[0-9]+)?)([a-zA-Z]*)$")
_QUANTITY_SUFFIXES: dict[str, Decimal] = {
    "": Decimal(1),
    "m": Decimal("0.001"),
    "k": Decimal(10) ** 3,
    "M": Decimal(10) ** 6,
    "G": Decimal(10) ** 9,
    "T": Decimal(10) ** 12,
    "P": Decimal(10) ** 15,
    "E": Decimal(10) ** 18,
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}


def parse_quantity(value: str) -> Decimal:
    """Parse a Kubernetes resource quantity such as ``250m``, ``0.5`` or ``512Mi``."""
    match = _QUANTITY_RE.fullmatch(value.strip())
    if not match or match.group(2) not in _QUANTITY_SUFFIXES:
        raise ValueError(f"invalid quantity {value!r}")
    try:
        number = Decimal(match.group(1))
    except InvalidOperation as exc:
        raise ValueError(f"invalid quantity {value!r}") from exc
    return number * _QUANTITY_SUFFIXES[match.group(2)]


@dataclass(frozen=True)
class Manifest:
    name: str
    target: ManifestTarget
    documents: tuple[dict[str, Any], ...]
    # values injected at apply time; never part of the rendered text for compose
    secret_values: dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    def to_yaml(self) -> str:
        return yaml.safe_dump_all(list(self.documents), sort_keys=False)


class ManifestRenderer:
    """Render validated ServiceSpecs into compose or Kubernetes descriptors."""

    def __init__(
        self,
        target: DeploymentTarget,
        *,
        secrets: SecretProvider | None = None,
        part_of: str = "lightrag",
    ) -> None:
        self.target = target
        self._secrets = secrets
        self._part_of = part_of

    @property
    def manifest_target(self) -> ManifestTarget:
        return "kubernetes" if self.target.is_kubernetes else "compose"

    # Validation

    def validate(self, spec: ServiceSpec) -> None:
        prefix = f"services.{spec.name}"
        if not is_valid_dns_label(spec.name):
            _fail(f"{prefix}.name", "must be a lowercase DNS label")
        if not spec.image.strip():
            _fail(f"{prefix}.image", "must not be empty")
        if spec.container_name is not None and not is_valid_container_name(spec.container_name):
            _fail(f"{prefix}.container_name", f"invalid container name {spec.container_name!r}")
        if spec.replicas < 0:
            _fail(f"{prefix}.replicas", "must not be negative")

        for key in spec.env:
            if not is_valid_env_name(key):
                _fail(f"{prefix}.env.{key}", "invalid environment variable name")
        for key, secret in spec.secret_env.items():
            if not is_valid_env_name(key):
                _fail(f"{prefix}.secret_env.{key}", "invalid environment variable name")
            if key in spec.env:
                _fail(f"{prefix}.secret_env.{key}", "defined in both env and secret_env")
            if not secret.strip():
                _fail(f"{prefix}.secret_env.{key}", "secret name must not be empty")

        for key in spec.required_env:
            if key in spec.secret_env:
                if self._secrets is not None and not (self._secrets.get(spec.secret_env[key]) or "").strip():
                    _fail(f"{prefix}.secret_env.{key}", f"required secret {spec.secret_env[key]!r} is empty")
            elif key not in spec.env:
                _fail(f"{prefix}.env.{key}", "required variable is missing")
            elif not spec.env[key].strip():
                _fail(f"{prefix}.env.{key}", "required variable is empty")

        seen_ports: set[tuple[int, str]] = set()
        for index, port in enumerate(spec.ports):
            field_name = f"{prefix}.ports[{index}]"
            if not MIN_PORT <= port.container_port <= MAX_PORT:
                _fail(f"{field_name}.container_port", f"{port.container_port} is outside {MIN_PORT}-{MAX_PORT}")
            if port.host_port is not None and not MIN_PORT <= port.host_port <= MAX_PORT:
                _fail(f"{field_name}.host_port", f"{port.host_port} is outside {MIN_PORT}-{MAX_PORT}")
            if port.node_port is not None and not MIN_NODE_PORT <= port.node_port <= MAX_NODE_PORT:
                _fail(f"{field_name}.node_port", f"{port.node_port} is outside {MIN_NODE_PORT}-{MAX_NODE_PORT}")
            key = (port.container_port, port.protocol)
            if key in seen_ports:
                _fail(f"{field_name}.container_port", f"duplicate port {port.container_port}/{port.protocol}")
            seen_ports.add(key)

        seen_volumes: set[str] = set()
        for index, volume in enumerate(spec.volumes):
            field_name = f"{prefix}.volumes[{index}]"
            if not is_valid_container_name(volume.name):
                _fail(f"{field_name}.name", f"invalid volume name {volume.name!r}")
            if volume.name in seen_volumes:
                _fail(f"{field_name}.name", f"duplicate volume {volume.name!r}")
            seen_volumes.add(volume.name)
            if not volume.mount_path.startswith("/"):
                _fail(f"{field_name}.mount_path", "must be an absolute path")
            if volume.size is not None:
                _check_quantity(f"{field_name}.size", volume.size)

        if spec.readiness is not None and not (spec.readiness.command or spec.readiness.http_path):
            _fail(f"{prefix}.readiness", "needs a command or an http_path")

        for resource in ("cpu", "memory"):
            request = getattr(spec.resources.requests, resource)
            limit = getattr(spec.resources.limits, resource)
            request_value = _check_quantity(f"{prefix}.resources.requests.{resource}", request) if request else None
            limit_value = _check_quantity(f"{prefix}.resources.limits.{resource}", limit) if limit else None
            if request_value is not None and limit_value is not None and request_value > limit_value:
                _fail(f"{prefix}.resources.requests.{resource}", f"request {request} exceeds limit {limit}")

    def validate_all(self, specs: Iterable[ServiceSpec]) -> list[ServiceSpec]:
        specs = list(specs)
        names: set[str] = set()
        for spec in specs:
            if spec.name in names:
                _fail(f"services.{spec.name}.name", "duplicate service name")
            names.add(spec.name)
        for spec in specs:
            self.validate(spec)
            for index, dependency in enumerate(spec.depends_on):
                if dependency not in names:
                    _fail(f"services.{spec.name}.depends_on[{index}]", f"unknown service {dependency!r}")
        return specs

    # Rendering

    def render(self, spec: ServiceSpec, *, peers: Mapping[str, ServiceSpec] | None = None) -> Manifest:
        self.validate(spec)
        if self.target.is_kubernetes:
            return self._render_kubernetes(spec)
        return self._render_compose_service(spec, peers or {})

    def render_all(self, specs: Iterable[ServiceSpec]) -> list[Manifest]:
        specs = self.validate_all(specs)
        peers = {spec.name: spec for spec in specs}
        manifests = [self.render(spec, peers=peers) for spec in specs]
        if self.target.is_kubernetes:
            return manifests
        return [self.bundle_compose(manifests)]

    def bundle_compose(self, manifests: Iterable[Manifest]) -> Manifest:
        services: dict[str, Any] = {}
        volumes: dict[str, Any] = {}
        secret_values: dict[str, str] = {}
        for manifest in manifests:
            fragment = manifest.documents[0]
            services.update(fragment.get("services") or {})
            volumes.update(fragment.get("volumes") or {})
            for key, value in manifest.secret_values.items():
                if key in secret_values and secret_values[key] != value:
                    _fail(f"services.{manifest.name}.secret_env.{key}", "conflicts with another service's secret")
                secret_values[key] = value
        project: dict[str, Any] = {"name": self.target.compose_project, "services": services}
        if volumes:
            project["volumes"] = {name: volumes[name] for name in sorted(volumes)}
        return Manifest(
            name=self.target.compose_project,
            target="compose",
            documents=(project,),
            secret_values=secret_values,
        )

    def _secret_value(self, secret: str) -> str:
        if self._secrets is None:
            return REDACTED
        return self._secrets.get(secret) or ""

    def _render_compose_service(self, spec: ServiceSpec, peers: Mapping[str, ServiceSpec]) -> Manifest:
        service: dict[str, Any] = {}
        if spec.container_name:
            service["container_name"] = spec.container_name
        service["image"] = spec.image

        environment = {key: _compose_literal(spec.env[key]) for key in spec.env}
        environment.update({key: f"${{{key}}}" for key in spec.secret_env})
        if environment:
            service["environment"] = {key: environment[key] for key in sorted(environment)}

        if spec.ports:
            service["ports"] = [_compose_port(port.container_port, port.host_port, port.protocol) for port in spec.ports]
        if spec.volumes:
            service["volumes"] = [_compose_volume(volume) for volume in spec.volumes]

        if spec.readiness is not None:
            check = spec.readiness
            if check.command:
                test = ["CMD", *(_compose_literal(arg) for arg in check.command)]
            else:
                port = check.port or (spec.ports[0].container_port if spec.ports else 80)
                test = ["CMD-SHELL", f"curl -fsS http://localhost:{port}{check.http_path} || exit 1"]
            service["healthcheck"] = {
                "test": test,
                "interval": f"{check.interval_seconds}s",
                "timeout": f"{check.timeout_seconds}s",
                "retries": check.retries,
            }

        if spec.depends_on:
            service["depends_on"] = {
                dependency: {
                    "condition": "service_healthy"
                    if dependency in peers and peers[dependency].readiness is not None
                    else "service_started"
                }
                for dependency in spec.depends_on
            }
        service["restart"] = spec.restart
        if spec.extra_hosts:
            service["extra_hosts"] = [f"{host}:{address}" for host, address in sorted(spec.extra_hosts.items())]
        service["labels"] = {**managed_docker_labels(), "io.ragdeploy.service": spec.name}

        resources = _compose_resources(spec)
        if resources:
            service["deploy"] = {"resources": resources}

        fragment: dict[str, Any] = {"services": {spec.name: service}}
        named_volumes = sorted(volume.name for volume in spec.volumes if volume.host_path is None)
        if named_volumes:
            fragment["volumes"] = {name: {"external": True, "name": name} for name in named_volumes}

        return Manifest(
            name=spec.name,
            target="compose",
            documents=(fragment,),
            secret_values={key: self._secret_value(secret) for key, secret in spec.secret_env.items()},
        )

    def _render_kubernetes(self, spec: ServiceSpec) -> Manifest:
        namespace = self.target.namespace
        labels = {"app": spec.name, **managed_kube_labels(self._part_of)}
        documents: list[dict[str, Any]] = []

        if spec.secret_env:
            secret_name = secret_name_for_service(spec.name)
            secret_keys = sorted(set(spec.secret_env.values()))
            documents.append(
                {
                    "apiVersion": "v1",
                    "kind": "Secret",
                    "metadata": {"name": secret_name, "namespace": namespace, "labels": labels},
                    "type": "Opaque",
                    "stringData": {key: self._secret_value(key) for key in secret_keys},
                }
            )

        pod_volumes = []
        for volume in spec.volumes:
            volume_name = slugify_token(volume.name)
            if volume.host_path is not None:
                pod_volumes.append({"name": volume_name, "hostPath": {"path": volume.host_path}})
                continue
            claim = claim_name_for_volume(volume.name)
            documents.append(
                {
                    "apiVersion": "v1",
                    "kind": "PersistentVolumeClaim",
                    "metadata": {"name": claim, "namespace": namespace, "labels": labels},
                    "spec": {
                        "accessModes": ["ReadWriteOnce"],
                        "resources": {"requests": {"storage": volume.size or DEFAULT_CLAIM_SIZE}},
                    },
                }
            )
            pod_volumes.append({"name": volume_name, "persistentVolumeClaim": {"claimName": claim}})

        container: dict[str, Any] = {"name": spec.name, "image": spec.image}
        if spec.image_pull_policy:
            container["imagePullPolicy"] = spec.image_pull_policy
        if spec.ports:
            container["ports"] = [
                {"containerPort": port.container_port, "protocol": port.protocol} for port in spec.ports
            ]
        env_entries: list[dict[str, Any]] = [{"name": key, "value": value} for key, value in spec.env.items()]
        env_entries.extend(
            {
                "name": key,
                "valueFrom": {"secretKeyRef": {"name": secret_name_for_service(spec.name), "key": secret}},
            }
            for key, secret in spec.secret_env.items()
        )
        if env_entries:
            container["env"] = sorted(env_entries, key=lambda entry: entry["name"])
        if spec.volumes:
            mounts = []
            for volume in spec.volumes:
                mount: dict[str, Any] = {"name": slugify_token(volume.name), "mountPath": volume.mount_path}
                if volume.read_only:
                    mount["readOnly"] = True
                mounts.append(mount)
            container["volumeMounts"] = mounts
        resources = _kube_resources(spec)
        if resources:
            container["resources"] = resources
        if spec.readiness is not None:
            default_port = spec.ports[0].container_port if spec.ports else 80
            container["readinessProbe"] = _kube_probe(spec.readiness, default_port=default_port)

        pod_spec: dict[str, Any] = {}
        if spec.security is not None:
            security = {
                "runAsUser": spec.security.run_as_user,
                "runAsGroup": spec.security.run_as_group,
                "fsGroup": spec.security.fs_group,
            }
            pod_spec["securityContext"] = {key: value for key, value in security.items() if value is not None}
        pod_spec["containers"] = [container]
        if pod_volumes:
            pod_spec["volumes"] = pod_volumes

        documents.append(
            {
                "apiVersion": "apps/v1",
                "kind": "Deployment",
                "metadata": {"name": spec.name, "namespace": namespace, "labels": labels},
                "spec": {
                    "replicas": spec.replicas,
                    "selector": {"matchLabels": {"app": spec.name}},
                    "template": {"metadata": {"labels": labels}, "spec": pod_spec},
                },
            }
        )

        if spec.ports:
            ports = []
            for port in spec.ports:
                entry: dict[str, Any] = {
                    "name": f"{port.protocol.lower()}-{port.container_port}",
                    "port": port.container_port,
                    "targetPort": port.container_port,
                    "protocol": port.protocol,
                }
                if port.node_port is not None:
                    entry["nodePort"] = port.node_port
                ports.append(entry)
            node_port = any(port.node_port is not None for port in spec.ports)
            documents.append(
                {
                    "apiVersion": "v1",
                    "kind": "Service",
                    "metadata": {"name": spec.name, "namespace": namespace, "labels": labels},
                    "spec": {
                        "type": "NodePort" if node_port else "ClusterIP",
                        "selector": {"app": spec.name},
                        "ports": ports,
                    },
                }
            )

        return Manifest(name=spec.name, target="kubernetes", documents=tuple(documents))


def render_kind_config(cluster_name: str, *, port_mappings: Mapping[int, int]) -> dict[str, Any]:
    """Kind cluster config mapping node ports (keys) onto host ports (values)."""
    node: dict[str, Any] = {"role": "control-plane"}
    if port_mappings:
        node["extraPortMappings"] = [
            {"containerPort": container_port, "hostPort": host_port, "protocol": "TCP"}
            for container_port, host_port in sorted(port_mappings.items())
        ]
    return {
        "kind": "Cluster",
        "apiVersion": "kind.x-k8s.io/v1alpha4",
        "name": cluster_name,
        "nodes": [node],
    }


def _fail(field_name: str, message: str) -> None:
    logger.debug("Render validation failed for %s: %s", field_name, message)
    raise RenderValidationFailure(message, field=field_name)


def _check_quantity(field_name: str, value: str) -> Decimal:
    try:
        return parse_quantity(value)
    except ValueError as exc:
        raise RenderValidationFailure(str(exc), field=field_name) from exc


def _compose_port(container_port: int, host_port: int | None, protocol: str) -> str:
    text = f"{host_port}:{container_port}" if host_port is not None else str(container_port)
    return f"{text}/udp" if protocol == "UDP" else text


def _compose_literal(value: str) -> str:
    # compose interpolates $VAR everywhere in the file; $$ is a literal dollar
    return value.replace("$", "$$")


def _compose_volume(volume: VolumeMount) -> str:
    source = volume.host_path or volume.name
    text = f"{source}:{volume.mount_path}"
    return f"{text}:ro" if volume.read_only else text


def _compose_resources(spec: ServiceSpec) -> dict[str, Any]:
    resources: dict[str, Any] = {}
    for section, quantities in (("limits", spec.resources.limits), ("reservations", spec.resources.requests)):
        values: dict[str, Any] = {}
        if quantities.cpu:
            values["cpus"] = _decimal_text(parse_quantity(quantities.cpu))
        if quantities.memory:
            values["memory"] = str(int(parse_quantity(quantities.memory)))
        if values:
            resources[section] = values
    return resources


def _kube_resources(spec: ServiceSpec) -> dict[str, Any]:
    resources: dict[str, Any] = {}
    for section, quantities in (("requests", spec.resources.requests), ("limits", spec.resources.limits)):
        values = {key: value for key, value in (("cpu", quantities.cpu), ("memory", quantities.memory)) if value}
        if values:
            resources[section] = values
    return resources


def _kube_probe(check: HealthCheck, *, default_port: int) -> dict[str, Any]:
    probe: dict[str, Any]
    if check.command:
        probe = {"exec": {"command": list(check.command)}}
    else:
        port = check.port or default_port
        probe = {"httpGet": {"path": check.http_path, "port": port}}
    probe.update(
        {
            "periodSeconds": check.interval_seconds,
            "timeoutSeconds": check.timeout_seconds,
            "failureThreshold": check.retries,
        }
    )
    return probe


def _decimal_text(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    return text
