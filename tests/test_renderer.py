from __future__ import annotations

from decimal import Decimal

import pytest
import yaml

from ragdeploy.models import (
    DeploymentTarget,
    HealthCheck,
    PortSpec,
    ResourceQuantities,
    ResourceRequirements,
    SecurityContext,
    ServiceSpec,
    TargetKind,
    VolumeMount,
)
from ragdeploy.plans import build_plan
from ragdeploy.services.errors import RenderValidationFailure
from ragdeploy.services.renderer import ManifestRenderer, parse_quantity, render_kind_config
from ragdeploy.services.secrets import REDACTED, SettingsSecretProvider, StaticSecretProvider

COMPOSE = DeploymentTarget(kind=TargetKind.LOCAL_COMPOSE, compose_project="lightrag")
KIND = DeploymentTarget(kind=TargetKind.KIND_CLUSTER, cluster_name="lightrag-cluster", namespace="rag")

SECRETS = StaticSecretProvider({"db-password": "s3cret", "api-key": "sk-1"})


def _app(**overrides) -> ServiceSpec:
    spec = {
        "name": "app",
        "image": "example/app:1",
        "env": {"B_VAR": "b", "A_VAR": "a", "DB_HOST": "db"},
        "secret_env": {"DB_PASSWORD": "db-password"},
        "required_env": ["DB_HOST", "DB_PASSWORD"],
        "ports": [PortSpec(container_port=8080, host_port=8080, node_port=30080)],
        "volumes": [VolumeMount(name="app-data", mount_path="/data", size="5Gi")],
        "resources": ResourceRequirements(
            requests=ResourceQuantities(cpu="250m", memory="512Mi"),
            limits=ResourceQuantities(cpu="1", memory="1Gi"),
        ),
        "readiness": HealthCheck(http_path="/health", port=8080),
    }
    spec.update(overrides)
    return ServiceSpec(**spec)


def _db(**overrides) -> ServiceSpec:
    spec = {
        "name": "db",
        "image": "example/db:1",
        "secret_env": {"POSTGRES_PASSWORD": "db-password"},
        "readiness": HealthCheck(command=["pg_isready"]),
        "security": SecurityContext(run_as_user=999, run_as_group=999, fs_group=999),
    }
    spec.update(overrides)
    return ServiceSpec(**spec)


# Validation


@pytest.mark.parametrize(
    ("spec", "field"),
    [
        (_app(env={"A_VAR": "a"}), "services.app.env.DB_HOST"),
        (_app(env={"DB_HOST": "  "}), "services.app.env.DB_HOST"),
        (_app(name="App_1"), "services.App_1.name"),
        (_app(image=" "), "services.app.image"),
        (_app(env={"DB_HOST": "db", "1BAD": "x"}), "services.app.env.1BAD"),
        (_app(env={"DB_HOST": "db", "DB_PASSWORD": "plain"}), "services.app.secret_env.DB_PASSWORD"),
        (_app(ports=[PortSpec(container_port=70000)]), "services.app.ports[0].container_port"),
        (_app(ports=[PortSpec(container_port=80, node_port=8080)]), "services.app.ports[0].node_port"),
        (_app(ports=[PortSpec(container_port=80), PortSpec(container_port=80)]), "services.app.ports[1].container_port"),
        (_app(volumes=[VolumeMount(name="d", mount_path="data")]), "services.app.volumes[0].mount_path"),
        (_app(volumes=[VolumeMount(name="d", mount_path="/d", size="lots")]), "services.app.volumes[0].size"),
        (
            _app(resources=ResourceRequirements(requests=ResourceQuantities(memory="2Gi"), limits=ResourceQuantities(memory="1Gi"))),
            "services.app.resources.requests.memory",
        ),
        (_app(readiness=HealthCheck()), "services.app.readiness"),
    ],
)
def test_validation_names_the_offending_field(spec: ServiceSpec, field: str) -> None:
    renderer = ManifestRenderer(COMPOSE, secrets=SECRETS)
    with pytest.raises(RenderValidationFailure) as exc_info:
        renderer.validate(spec)
    assert exc_info.value.field == field
    assert exc_info.value.exit_code == 12
    assert field in str(exc_info.value)


def test_empty_required_secret_is_rejected_when_provider_present() -> None:
    renderer = ManifestRenderer(COMPOSE, secrets=StaticSecretProvider({"db-password": ""}))
    with pytest.raises(RenderValidationFailure) as exc_info:
        renderer.validate(_app())
    assert exc_info.value.field == "services.app.secret_env.DB_PASSWORD"


def test_secrets_are_not_checked_without_provider() -> None:
    ManifestRenderer(COMPOSE).validate(_app())


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(RenderValidationFailure) as exc_info:
        ManifestRenderer(COMPOSE, secrets=SECRETS).render_all([_app(depends_on=["cache"])])
    assert exc_info.value.field == "services.app.depends_on[0]"


def test_duplicate_service_names_are_rejected() -> None:
    with pytest.raises(RenderValidationFailure):
        ManifestRenderer(COMPOSE, secrets=SECRETS).validate_all([_db(), _db()])


# Compose


def test_compose_bundle_is_deterministic_and_interpolates_secrets() -> None:
    renderer = ManifestRenderer(COMPOSE, secrets=SECRETS)
    first = renderer.render_all([_db(), _app(depends_on=["db"])])
    second = renderer.render_all([_db(), _app(depends_on=["db"])])
    assert len(first) == 1
    assert first[0].to_yaml() == second[0].to_yaml()

    project = first[0].documents[0]
    app = project["services"]["app"]
    assert list(app["environment"]) == ["A_VAR", "B_VAR", "DB_HOST", "DB_PASSWORD"]
    assert app["environment"]["DB_PASSWORD"] == "${DB_PASSWORD}"
    assert app["depends_on"] == {"db": {"condition": "service_healthy"}}
    assert app["labels"]["io.ragdeploy.managed"] == "true"
    assert app["deploy"]["resources"]["limits"] == {"cpus": "1", "memory": str(2**30)}
    assert app["deploy"]["resources"]["reservations"]["cpus"] == "0.25"
    assert project["volumes"] == {"app-data": {"external": True, "name": "app-data"}}
    assert "s3cret" not in first[0].to_yaml()
    assert first[0].secret_values == {"POSTGRES_PASSWORD": "s3cret", "DB_PASSWORD": "s3cret"}


def test_compose_env_order_does_not_change_output() -> None:
    renderer = ManifestRenderer(COMPOSE, secrets=SECRETS)
    one = renderer.render(_app(env={"DB_HOST": "db", "A_VAR": "a"}))
    two = renderer.render(_app(env={"A_VAR": "a", "DB_HOST": "db"}))
    assert one.to_yaml() == two.to_yaml()


def test_compose_healthcheck_from_command() -> None:
    manifest = ManifestRenderer(COMPOSE, secrets=SECRETS).render(_db())
    healthcheck = manifest.documents[0]["services"]["db"]["healthcheck"]
    assert healthcheck == {"test": ["CMD", "pg_isready"], "interval": "10s", "timeout": "5s", "retries": 5}


def test_compose_env_dollars_are_kept_literal() -> None:
    spec = _app(env={"DB_HOST": "db", "GREETING": "costs $5 or ${PRICE}"})
    app = ManifestRenderer(COMPOSE, secrets=SECRETS).render(spec).documents[0]["services"]["app"]
    assert app["environment"]["GREETING"] == "costs $$5 or $${PRICE}"
    assert app["environment"]["DB_PASSWORD"] == "${DB_PASSWORD}"


def test_compose_dry_run_secrets_are_redacted() -> None:
    manifest = ManifestRenderer(COMPOSE).render(_app())
    assert manifest.secret_values == {"DB_PASSWORD": REDACTED}


# Kubernetes


def test_kubernetes_manifest_objects() -> None:
    manifest = ManifestRenderer(KIND, secrets=SECRETS).render(_app())
    kinds = [doc["kind"] for doc in manifest.documents]
    assert kinds == ["Secret", "PersistentVolumeClaim", "Deployment", "Service"]

    secret, claim, deployment, service = manifest.documents
    assert secret["metadata"] == {
        "name": "app-secrets",
        "namespace": "rag",
        "labels": {"app": "app", "app.kubernetes.io/managed-by": "ragdeploy", "app.kubernetes.io/part-of": "lightrag"},
    }
    assert secret["stringData"] == {"db-password": "s3cret"}
    assert claim["metadata"]["name"] == "app-data-pvc"
    assert claim["spec"]["resources"]["requests"]["storage"] == "5Gi"

    container = deployment["spec"]["template"]["spec"]["containers"][0]
    names = [entry["name"] for entry in container["env"]]
    assert names == sorted(names)
    password = next(entry for entry in container["env"] if entry["name"] == "DB_PASSWORD")
    assert password == {"name": "DB_PASSWORD", "valueFrom": {"secretKeyRef": {"name": "app-secrets", "key": "db-password"}}}
    assert container["readinessProbe"]["httpGet"] == {"path": "/health", "port": 8080}
    assert container["resources"] == {
        "requests": {"cpu": "250m", "memory": "512Mi"},
        "limits": {"cpu": "1", "memory": "1Gi"},
    }
    assert deployment["spec"]["template"]["spec"]["volumes"] == [
        {"name": "app-data", "persistentVolumeClaim": {"claimName": "app-data-pvc"}}
    ]
    assert service["spec"]["type"] == "NodePort"
    assert service["spec"]["ports"][0]["nodePort"] == 30080


def test_kubernetes_security_context_and_cluster_ip() -> None:
    manifest = ManifestRenderer(KIND, secrets=SECRETS).render(_db(ports=[PortSpec(container_port=5432)]))
    deployment = next(doc for doc in manifest.documents if doc["kind"] == "Deployment")
    assert deployment["spec"]["template"]["spec"]["securityContext"] == {
        "runAsUser": 999,
        "runAsGroup": 999,
        "fsGroup": 999,
    }
    service = next(doc for doc in manifest.documents if doc["kind"] == "Service")
    assert service["spec"]["type"] == "ClusterIP"


def test_kubernetes_probe_falls_back_to_first_port() -> None:
    spec = _app(readiness=HealthCheck(http_path="/ready"))
    documents = ManifestRenderer(KIND, secrets=SECRETS).render(spec).documents
    deployment = next(doc for doc in documents if doc["kind"] == "Deployment")
    probe = deployment["spec"]["template"]["spec"]["containers"][0]["readinessProbe"]
    assert probe["httpGet"] == {"path": "/ready", "port": 8080}


def test_kubernetes_dry_run_redacts_secret_data() -> None:
    manifest = ManifestRenderer(KIND).render(_app())
    assert manifest.documents[0]["stringData"] == {"db-password": REDACTED}


def test_render_all_returns_one_manifest_per_service_on_kubernetes() -> None:
    manifests = ManifestRenderer(KIND, secrets=SECRETS).render_all([_db(), _app(depends_on=["db"])])
    assert [manifest.name for manifest in manifests] == ["db", "app"]
    assert all(manifest.target == "kubernetes" for manifest in manifests)


# Helpers and the real plans


@pytest.mark.parametrize(
    ("value", "expected"),
    [("250m", Decimal("0.25")), ("2", Decimal(2)), ("1Gi", Decimal(2**30)), ("1.5k", Decimal(1500))],
)
def test_parse_quantity(value: str, expected: Decimal) -> None:
    assert parse_quantity(value) == expected


@pytest.mark.parametrize("value", ["", "1X", "-1", "abc"])
def test_parse_quantity_rejects_garbage(value: str) -> None:
    with pytest.raises(ValueError):
        parse_quantity(value)


def test_kind_config_port_mappings() -> None:
    config = render_kind_config("lightrag-cluster", port_mappings={30082: 5432, 30080: 9621})
    assert config["name"] == "lightrag-cluster"
    assert config["nodes"][0]["extraPortMappings"] == [
        {"containerPort": 30080, "hostPort": 9621, "protocol": "TCP"},
        {"containerPort": 30082, "hostPort": 5432, "protocol": "TCP"},
    ]


@pytest.mark.parametrize("target", ["local", "hybrid", "kind"])
def test_plan_services_render_cleanly(settings, target: str) -> None:
    plan = build_plan(settings, target, host_address="10.0.0.5")
    renderer = ManifestRenderer(plan.target, secrets=SettingsSecretProvider(settings))
    manifests = renderer.render_all(plan.services)
    text = "".join(manifest.to_yaml() for manifest in manifests)
    assert list(yaml.safe_load_all(text))
    if plan.target.is_kubernetes:
        assert "sk-test-key" in text
    else:
        assert "sk-test-key" not in text
        assert manifests[0].secret_values["LLM_BINDING_API_KEY"] == "sk-test-key"
