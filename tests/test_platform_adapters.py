from __future__ import annotations

import json
from pathlib import Path
import subprocess

import pytest
import yaml

from ragdeploy.proc import AdapterCommandError
from ragdeploy.services.docker_adapter import DockerAdapter
from ragdeploy.services.kind_adapter import KindAdapter
from ragdeploy.services.kube_adapter import KubeAdapter
from tests.provisioner_utils import ScriptedRunner, fail, ok, result


def test_docker_container_state_not_found_returns_absent() -> None:
    runner = ScriptedRunner().add(["docker", "container", "inspect"], fail("Error: No such container: ollama-gpu"))
    state = DockerAdapter(runner=runner).container_state("ollama-gpu")
    assert state.exists is False
    assert state.running is False


def test_docker_container_state_reads_labels_and_status() -> None:
    payload = [{"State": {"Running": False, "Status": "exited"}, "Config": {"Labels": {"io.ragdeploy.managed": "true"}}}]
    runner = ScriptedRunner().add(["docker", "container", "inspect"], ok(json.dumps(payload)))
    state = DockerAdapter(runner=runner).container_state("ollama-gpu")
    assert state.exists is True
    assert state.running is False
    assert state.status == "exited"
    assert state.labels == {"io.ragdeploy.managed": "true"}


def test_docker_inspect_daemon_errors_bubble_up() -> None:
    runner = ScriptedRunner().add(["docker"], fail("Cannot connect to the Docker daemon. Is the docker daemon running?"))
    with pytest.raises(AdapterCommandError) as exc_info:
        DockerAdapter(runner=runner).container_state("ollama-gpu")
    assert exc_info.value.retryable is True


def test_docker_run_container_builds_command() -> None:
    runner = ScriptedRunner().add(["docker", "run"], ok("abc123\n"))
    DockerAdapter(runner=runner).run_container(
        name="ollama-gpu",
        image="ollama/ollama:latest",
        ports={11434: 11434},
        volumes={"ollama-data": "/root/.ollama"},
        env={"OLLAMA_HOST": "0.0.0.0"},
        labels={"io.ragdeploy.managed": "true"},
        gpus=True,
    )
    assert runner.calls == [
        [
            "docker", "run", "-d", "--name", "ollama-gpu",
            "--gpus", "all",
            "--label", "io.ragdeploy.managed=true",
            "-p", "11434:11434",
            "-v", "ollama-data:/root/.ollama",
            "-e", "OLLAMA_HOST=0.0.0.0",
            "ollama/ollama:latest",
        ]
    ]


def test_docker_remove_container_is_idempotent() -> None:
    runner = ScriptedRunner().add(["docker", "rm"], fail("Error: No such container: pg"))
    assert DockerAdapter(runner=runner).remove_container("pg") is False


def test_image_labels_absent_image_returns_none() -> None:
    runner = ScriptedRunner().add(["docker", "image", "inspect"], fail("Error: No such image: pg:latest"))
    assert DockerAdapter(runner=runner).image_labels("pg:latest") is None


def test_compose_up_passes_secrets_through_private_env_file(tmp_path) -> None:
    seen: dict[str, str] = {}

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        env_path = Path(cmd[cmd.index("--env-file") + 1])
        seen["path"] = str(env_path)
        seen["content"] = env_path.read_text()
        return result(args=cmd)

    compose_file = tmp_path / "lightrag.compose.yaml"
    compose_file.write_text("services: {}\n")
    DockerAdapter(runner=runner).compose_up(
        project="lightrag",
        compose_file=compose_file,
        env={"POSTGRES_PASSWORD": "pg-secret", "LLM_BINDING_API_KEY": "sk"},
    )
    assert seen["content"] == "LLM_BINDING_API_KEY='sk'\nPOSTGRES_PASSWORD='pg-secret'\n"
    assert not Path(seen["path"]).exists()


def test_kube_namespace_state_terminating() -> None:
    payload = {"metadata": {"labels": {"app.kubernetes.io/managed-by": "ragdeploy"}}, "status": {"phase": "Terminating"}}
    runner = ScriptedRunner().add(["kubectl", "--context", "kind-x", "get", "namespace"], ok(json.dumps(payload)))
    state = KubeAdapter(context="kind-x", runner=runner).namespace_state("lightrag")
    assert state.exists is True
    assert state.terminating is True
    assert state.labels["app.kubernetes.io/managed-by"] == "ragdeploy"


def test_kube_namespace_state_not_found() -> None:
    runner = ScriptedRunner().add(
        ["kubectl", "get", "namespace"], fail('Error from server (NotFound): namespaces "lightrag" not found')
    )
    assert KubeAdapter(runner=runner).namespace_state("lightrag").exists is False


def test_kube_create_namespace_carries_labels_in_one_call() -> None:
    seen: list[dict] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        seen.append(yaml.safe_load(Path(cmd[-1]).read_text()))
        return result(args=cmd)

    KubeAdapter(context="kind-rag", runner=runner).create_namespace("lightrag", labels={"b": "2", "a": "1"})

    assert seen == [
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "lightrag", "labels": {"b": "2", "a": "1"}}}
    ]


def test_kube_create_namespace_failure_leaves_no_unlabelled_namespace() -> None:
    runner = ScriptedRunner().add(["kubectl"], fail("error: unable to recognize: no matches for kind"))
    with pytest.raises(AdapterCommandError):
        KubeAdapter(runner=runner).create_namespace("lightrag", labels={"a": "1"})
    assert [cmd[:2] for cmd in runner.calls] == [["kubectl", "create"]]


def test_kube_apply_writes_all_documents() -> None:
    seen: list[dict] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        seen.extend(yaml.safe_load_all(Path(cmd[cmd.index("-f") + 1]).read_text()))
        return result(args=cmd)

    docs = [{"kind": "Secret", "metadata": {"name": "a"}}, {"kind": "Deployment", "metadata": {"name": "b"}}]
    KubeAdapter(runner=runner).apply(docs, namespace="lightrag")
    assert seen == docs


def test_kube_pods_ready_reports_waiting_reason() -> None:
    pods = {
        "items": [
            {
                "metadata": {"name": "postgres-1"},
                "status": {
                    "phase": "Pending",
                    "conditions": [{"type": "Ready", "status": "False"}],
                    "containerStatuses": [{"state": {"waiting": {"reason": "ImagePullBackOff"}}}],
                },
            }
        ]
    }
    runner = ScriptedRunner().add(["kubectl", "get", "pods"], ok(json.dumps(pods)))
    status = KubeAdapter(runner=runner).pods_ready(namespace="lightrag", selector="app=postgres")
    assert status.ready is False
    assert "ImagePullBackOff" in status.detail


def test_kube_pods_ready_with_no_pods() -> None:
    runner = ScriptedRunner().add(["kubectl", "get", "pods"], ok(json.dumps({"items": []})))
    status = KubeAdapter(runner=runner).pods_ready(namespace="lightrag", selector="app=postgres")
    assert status.ready is False


def test_kube_nodes_ready() -> None:
    nodes = {"items": [{"metadata": {"name": "n1"}, "status": {"conditions": [{"type": "Ready", "status": "True"}]}}]}
    runner = ScriptedRunner().add(["kubectl", "get", "nodes"], ok(json.dumps(nodes)))
    assert KubeAdapter(runner=runner).nodes_ready().ready is True


def test_kind_create_cluster_uses_config_file() -> None:
    seen: dict = {}

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        seen.update(yaml.safe_load(Path(cmd[cmd.index("--config") + 1]).read_text()))
        return result(args=cmd)

    KindAdapter(runner=runner).create_cluster("lightrag-cluster", config={"kind": "Cluster", "name": "lightrag-cluster"})
    assert seen == {"kind": "Cluster", "name": "lightrag-cluster"}


def test_kind_cluster_exists() -> None:
    runner = ScriptedRunner().add(["kind", "get", "clusters"], ok("other\nlightrag-cluster\n"))
    assert KindAdapter(runner=runner).cluster_exists("lightrag-cluster") is True
    assert KindAdapter(runner=runner).cluster_exists("missing") is False


def test_kind_image_loaded_checks_qualified_name() -> None:
    runner = ScriptedRunner().add(["docker", "exec"], fail("FATA[0000] no such image \"docker.io/library/pg:latest\" present"))
    assert KindAdapter(runner=runner).image_loaded("lightrag-cluster", "pg:latest") is False
    assert runner.calls[0] == [
        "docker", "exec", "lightrag-cluster-control-plane", "crictl", "inspecti", "docker.io/library/pg:latest",
    ]
