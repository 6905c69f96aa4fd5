from __future__ import annotations

import pytest

from ragdeploy.models import (
    ClusterResource,
    ContainerResource,
    DaemonRequirement,
    GpuRequirement,
    ModelResource,
    NamespaceResource,
    ResourceKind,
    TargetKind,
)
from ragdeploy.plans import FALLBACK_HOST_ADDRESS, build_plan, detect_host_address
from ragdeploy.services.errors import ConfigurationError
from tests.provisioner_utils import ScriptedRunner, fail, ok


def _kinds(group) -> list[ResourceKind]:
    return [resource.kind for resource in group]


def test_local_plan_groups_models_after_their_server(settings) -> None:
    plan = build_plan(settings, "local")
    assert plan.target.kind == TargetKind.LOCAL_COMPOSE
    first, second = plan.provision
    assert _kinds(first) == [ResourceKind.CONTAINER, ResourceKind.VOLUME, ResourceKind.VOLUME, ResourceKind.IMAGE]
    assert [resource.name for resource in first[1:3]] == ["lightrag_postgres_data", "lightrag_lightrag_data"]
    assert second == (ModelResource(name="bge-m3:latest", container="ollama-gpu"),)
    assert any(isinstance(req, GpuRequirement) for req in plan.requirements)
    assert [check.name for check in plan.readiness] == ["ollama", "postgres", "postgres-extensions", "lightrag"]
    assert [service.name for service in plan.services] == ["postgres", "lightrag"]


def test_hybrid_plan_reuses_the_running_model_server(settings) -> None:
    plan = build_plan(settings, "hybrid")
    ollama = plan.provision[0][0]
    assert isinstance(ollama, ContainerResource)
    assert ollama.external is True
    assert not any(isinstance(req, GpuRequirement) for req in plan.requirements)


def test_lightrag_points_at_host_model_server_in_compose(settings) -> None:
    plan = build_plan(settings, "local")
    lightrag = plan.services[1]
    assert lightrag.env["EMBEDDING_BINDING_HOST"] == "http://host.docker.internal:11434"
    assert lightrag.extra_hosts == {"host.docker.internal": "host-gateway"}
    assert lightrag.depends_on == ["postgres"]
    assert lightrag.secret_env["LLM_BINDING_API_KEY"] == "llm-api-key"


def test_kind_plan(settings) -> None:
    plan = build_plan(settings, "kind", host_address="192.168.1.20")
    first, second = plan.provision
    assert _kinds(first) == [ResourceKind.CONTAINER, ResourceKind.IMAGE, ResourceKind.CLUSTER]
    assert _kinds(second) == [ResourceKind.MODEL, ResourceKind.NAMESPACE, ResourceKind.CLUSTER_IMAGE]

    cluster = first[2]
    assert isinstance(cluster, ClusterResource)
    assert cluster.config["nodes"][0]["extraPortMappings"] == [
        {"containerPort": 30080, "hostPort": 9621, "protocol": "TCP"},
        {"containerPort": 30082, "hostPort": 5432, "protocol": "TCP"},
    ]
    namespace = second[1]
    assert isinstance(namespace, NamespaceResource)
    assert (namespace.context, namespace.retain) == ("kind-lightrag-cluster", True)

    postgres, lightrag = plan.services
    assert postgres.image_pull_policy == "IfNotPresent"
    assert postgres.env["PGDATA"] == "/var/lib/postgresql/data/pgdata"
    assert postgres.security.fs_group == 999
    assert lightrag.env["EMBEDDING_BINDING_HOST"] == "http://192.168.1.20:11434"
    assert [volume.size for volume in lightrag.volumes] == ["10Gi", "5Gi"]
    assert plan.readiness[0].name == "kind-nodes"
    assert plan.readiness[-1].name == "lightrag-http"


def test_kind_plan_detects_host_address(settings) -> None:
    runner = ScriptedRunner().add(["ip", "route"], ok("1.1.1.1 via 10.0.0.1 dev eth0 src 10.0.0.7 uid 0\n    cache\n"))
    plan = build_plan(settings, "kind", runner=runner)
    assert plan.services[1].env["EMBEDDING_BINDING_HOST"] == "http://10.0.0.7:11434"


def test_configured_embedding_host_wins(settings) -> None:
    configured = settings.model_copy(update={"embedding_binding_host": "http://gpu-box:11434"})
    runner = ScriptedRunner()
    plan = build_plan(configured, "kind", runner=runner)
    assert plan.services[1].env["EMBEDDING_BINDING_HOST"] == "http://gpu-box:11434"
    assert runner.calls == []


@pytest.mark.parametrize("response", [fail("ip: command not found", returncode=127), ok("unreachable\n")])
def test_detect_host_address_falls_back(response) -> None:
    runner = ScriptedRunner().add(["ip"], response)
    assert detect_host_address(runner=runner) == FALLBACK_HOST_ADDRESS


def test_existing_plan_requires_a_reachable_model_server(settings) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        build_plan(settings, "existing")
    assert exc_info.value.missing == ["EMBEDDING_BINDING_HOST"]


def test_existing_plan_for_teardown_does_not_need_the_model_server(settings) -> None:
    plan = build_plan(settings, "existing", require_embedding_host=False)
    assert plan.provision == ((NamespaceResource(name="lightrag", context=None, part_of="lightrag", retain=True),),)
    assert plan.services[1].env["EMBEDDING_BINDING_HOST"] == "http://host.docker.internal:11434"


def test_existing_plan(settings) -> None:
    configured = settings.model_copy(update={"embedding_binding_host": "http://ollama.ai.svc:11434", "kube_context": "prod"})
    plan = build_plan(configured, "existing")
    assert plan.target.kind == TargetKind.EXISTING_CLUSTER
    assert plan.provision == ((NamespaceResource(name="lightrag", context="prod", part_of="lightrag", retain=True),),)
    daemon = next(req for req in plan.requirements if isinstance(req, DaemonRequirement))
    assert daemon.command == ("kubectl", "--context", "prod", "cluster-info")
    assert all(port.node_port is None for service in plan.services for port in service.ports)
    assert "port-forward" in plan.endpoints["LightRAG"]


def test_unknown_target(settings) -> None:
    with pytest.raises(ConfigurationError):
        build_plan(settings, "swarm")


def test_describe_lists_resources(settings) -> None:
    described = build_plan(settings, "hybrid").describe()
    assert described["target"] == "local-compose"
    assert described["provision"][0][0] == {"key": "container:/ollama-gpu", "external": True, "retain": False}
