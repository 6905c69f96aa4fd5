from __future__ import annotations

from typing import Any

import pytest
import yaml

import ragdeploy.cli as cli
from ragdeploy.services.errors import ProvisionFailure, ReadinessTimeout
from ragdeploy.services.preflight import CapabilityResult, CapabilityStatus
from ragdeploy.services.readiness import ProbeFactory
from ragdeploy.services.renderer import ManifestRenderer
from ragdeploy.services.secrets import SettingsSecretProvider
from ragdeploy.services.sequencer import DeploymentSequencer
from tests.provisioner_utils import FakePoller, FakePreflight, FakeProvisioner


def _stdout(result) -> str:
    return getattr(result, "stdout", result.output)


def _stderr(result) -> str:
    return getattr(result, "stderr", result.output)


def _parse_yaml_stdout(result) -> Any:
    return yaml.safe_load(_stdout(result))


@pytest.fixture
def fake_stack(monkeypatch):
    stack = {"preflight": FakePreflight(), "provisioner": FakeProvisioner(), "poller": FakePoller()}

    def build(settings, plan) -> DeploymentSequencer:
        return DeploymentSequencer(
            preflight=stack["preflight"],
            provisioner=stack["provisioner"],
            renderer=ManifestRenderer(plan.target, secrets=SettingsSecretProvider(settings)),
            probes=ProbeFactory(interval=1, max_attempts=1),
            poller=stack["poller"],
        )

    monkeypatch.setattr(cli, "build_sequencer", build)
    return stack


def test_dry_run_prints_plan_without_secrets(cli_runner):
    runner, app = cli_runner
    result = runner.invoke(app, ["deploy", "--target", "local", "--dry-run"])
    assert result.exit_code == 0, _stderr(result)

    output = _parse_yaml_stdout(result)
    assert output["plan"]["target"] == "local-compose"
    services = output["manifests"][0]["documents"][0]["services"]
    assert services["lightrag"]["environment"]["LLM_BINDING_API_KEY"] == "${LLM_BINDING_API_KEY}"
    assert "sk-test-key" not in _stdout(result)
    assert "pg-secret" not in _stdout(result)


def test_dry_run_for_kind_includes_cluster_config(cli_runner, monkeypatch):
    runner, app = cli_runner
    monkeypatch.setenv("EMBEDDING_BINDING_HOST", "http://10.0.0.5:11434")
    result = runner.invoke(app, ["deploy", "-t", "kind", "--dry-run"])
    assert result.exit_code == 0, _stderr(result)

    output = _parse_yaml_stdout(result)
    assert "lightrag-cluster" in output["clusters"]
    secret = output["manifests"][0]["documents"][0]
    assert secret["kind"] == "Secret"
    assert set(secret["stringData"].values()) == {"<redacted>"}
    assert "sk-test-key" not in _stdout(result)


def test_dry_run_does_not_need_secrets(cli_runner, monkeypatch):
    runner, app = cli_runner
    monkeypatch.delenv("LLM_BINDING_API_KEY")
    monkeypatch.delenv("POSTGRES_PASSWORD")
    result = runner.invoke(app, ["deploy", "--dry-run"])
    assert result.exit_code == 0, _stderr(result)


def test_missing_secrets_without_a_terminal_exit_3(cli_runner, monkeypatch, fake_stack):
    runner, app = cli_runner
    monkeypatch.delenv("LLM_BINDING_API_KEY")
    result = runner.invoke(app, ["deploy"])
    assert result.exit_code == 3
    assert "LLM_BINDING_API_KEY" in _stderr(result)
    assert fake_stack["provisioner"].calls == []


def test_secrets_from_env_file(cli_runner, monkeypatch, tmp_path, fake_stack):
    runner, app = cli_runner
    monkeypatch.delenv("LLM_BINDING_API_KEY")
    monkeypatch.delenv("POSTGRES_PASSWORD")
    env_file = tmp_path / "deploy.env"
    env_file.write_text("LLM_BINDING_API_KEY=sk-from-file\nPOSTGRES_PASSWORD=pg-from-file\n")
    result = runner.invoke(app, ["deploy", "--env-file", str(env_file)])
    assert result.exit_code == 0, _stderr(result)


def test_missing_env_file_exit_3(cli_runner, tmp_path):
    runner, app = cli_runner
    result = runner.invoke(app, ["deploy", "--env-file", str(tmp_path / "nope.env")])
    assert result.exit_code == 3


def test_deploy_success(cli_runner, fake_stack):
    runner, app = cli_runner
    result = runner.invoke(app, ["deploy", "--target", "hybrid"])
    assert result.exit_code == 0, _stderr(result)

    report = _parse_yaml_stdout(result)
    assert report["state"] == "ready"
    assert report["resources"][0] == {"key": "container:/ollama-gpu", "ownership": "external", "action": "none"}
    assert report["endpoints"]["LightRAG WebUI"] == "http://localhost:9621/webui"


def test_deploy_preflight_failure_exit_10(cli_runner, fake_stack):
    runner, app = cli_runner
    fake_stack["preflight"].results = [
        CapabilityResult("docker", CapabilityStatus.MISSING, reason="docker not found on PATH", fatal=True)
    ]
    result = runner.invoke(app, ["deploy"])
    assert result.exit_code == 10
    assert _parse_yaml_stdout(result)["failed_stage"] == "preflighting"
    assert "docker" in _stderr(result)


def test_deploy_readiness_timeout_exit_13(cli_runner, fake_stack):
    runner, app = cli_runner
    fake_stack["poller"].failures["lightrag"] = ReadinessTimeout(
        "dependency did not become ready", attempts=150, resource="lightrag", detail="HTTP 502"
    )
    result = runner.invoke(app, ["deploy"])
    assert result.exit_code == 13
    assert "HTTP 502" in _stderr(result)


def test_invalid_values_file_exit_3(cli_runner, tmp_path, fake_stack):
    runner, app = cli_runner
    values = tmp_path / "values.yaml"
    values.write_text("services:\n  redis:\n    replicas: 1\n")
    result = runner.invoke(app, ["deploy", "--values", str(values)])
    assert result.exit_code == 3
    assert "redis" in _stderr(result)


def test_values_file_changes_rendered_services(cli_runner, tmp_path):
    runner, app = cli_runner
    values = tmp_path / "values.yaml"
    values.write_text("services:\n  lightrag:\n    env:\n      LLM_MODEL: deepseek-reasoner\n")
    result = runner.invoke(app, ["deploy", "--dry-run", "--values", str(values)])
    assert result.exit_code == 0, _stderr(result)
    services = _parse_yaml_stdout(result)["manifests"][0]["documents"][0]["services"]
    assert services["lightrag"]["environment"]["LLM_MODEL"] == "deepseek-reasoner"


def test_unknown_target_is_a_usage_error(cli_runner):
    runner, app = cli_runner
    result = runner.invoke(app, ["deploy", "--target", "swarm"])
    assert result.exit_code == 2


def test_existing_target_requires_embedding_host(cli_runner):
    runner, app = cli_runner
    result = runner.invoke(app, ["deploy", "--target", "existing", "--dry-run"])
    assert result.exit_code == 3
    assert "EMBEDDING_BINDING_HOST" in _stderr(result)


def test_teardown_partial_failure_exit_14(cli_runner, fake_stack):
    runner, app = cli_runner
    fake_stack["provisioner"].fail_on_delete["container:/ollama-gpu"] = ProvisionFailure(
        "container is in use", resource="ollama-gpu"
    )
    result = runner.invoke(app, ["teardown", "--delete-volumes", "--yes"])
    assert result.exit_code == 14
    report = _parse_yaml_stdout(result)
    assert list(report["failures"]) == ["container:/ollama-gpu"]
    assert "volume:/lightrag_postgres_data" in report["removed"]


def test_teardown_without_secrets(cli_runner, monkeypatch, fake_stack):
    runner, app = cli_runner
    monkeypatch.delenv("LLM_BINDING_API_KEY")
    monkeypatch.delenv("POSTGRES_PASSWORD")
    result = runner.invoke(app, ["teardown", "--target", "hybrid"])
    assert result.exit_code == 0, _stderr(result)
    assert _parse_yaml_stdout(result)["skipped"]["container:/ollama-gpu"] == "externally owned"


def test_teardown_volume_deletion_needs_confirmation(cli_runner, fake_stack):
    runner, app = cli_runner
    result = runner.invoke(app, ["teardown", "--delete-volumes"], input="n\n")
    assert result.exit_code == 1
    assert fake_stack["provisioner"].calls == []


def test_status_healthy(cli_runner, fake_stack):
    runner, app = cli_runner
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0, _stderr(result)
    assert _parse_yaml_stdout(result)["healthy"] is True


def test_status_unhealthy_exit_13(cli_runner, fake_stack):
    runner, app = cli_runner
    fake_stack["poller"].failures["postgres"] = ReadinessTimeout(
        "not ready", attempts=1, resource="postgres", detail="no response"
    )
    result = runner.invoke(app, ["status", "--logs"])
    assert result.exit_code == 13
    report = _parse_yaml_stdout(result)
    assert report["checks"]["postgres"] == "no response"
    assert report["logs"]["lightrag"] == "lightrag log line"


def test_teardown_existing_cluster_without_embedding_host(cli_runner, fake_stack):
    runner, app = cli_runner
    result = runner.invoke(app, ["teardown", "--target", "existing"])
    assert result.exit_code == 0, _stderr(result)
    report = _parse_yaml_stdout(result)
    assert report["target"] == "existing"
    assert report["skipped"]["namespace:/lightrag"] == "retained"
    assert ("remove_manifests", {"part_of": "lightrag", "delete_volumes": False}) in fake_stack["provisioner"].calls


def test_status_existing_cluster_without_embedding_host(cli_runner, fake_stack):
    runner, app = cli_runner
    result = runner.invoke(app, ["status", "-t", "existing"])
    assert result.exit_code == 0, _stderr(result)
    assert _parse_yaml_stdout(result)["healthy"] is True
    assert fake_stack["poller"].names == ["postgres", "postgres-extensions", "lightrag"]
