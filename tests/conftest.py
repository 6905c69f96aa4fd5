from __future__ import annotations

import pytest
from typer.testing import CliRunner

from ragdeploy.config import Settings

_ENV_VARS = (
    "LLM_BINDING_API_KEY",
    "POSTGRES_PASSWORD",
    "EMBEDDING_BINDING_HOST",
    "KUBE_NAMESPACE",
    "NAMESPACE",
    "KUBE_CONTEXT",
    "RAGDEPLOY_READY_INTERVAL",
    "RAGDEPLOY_READY_TIMEOUT",
    "RAGDEPLOY_WORK_DIR",
    "RAGDEPLOY_LOG_LEVEL",
    "RAGDEPLOY_LOG_FORMAT",
    "POSTGRES_BUILD_CONTEXT",
    "EMBEDDING_MODEL",
    "OLLAMA_CONTAINER",
    "COMPOSE_PROJECT",
    "KIND_CLUSTER_NAME",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    # no stray .env or exported secrets leak into a test
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        llm_binding_api_key="sk-test-key",
        postgres_password="pg-secret",
        work_dir=tmp_path / "work",
    )


@pytest.fixture()
def cli_runner(monkeypatch):
    monkeypatch.setenv("LLM_BINDING_API_KEY", "sk-test-key")
    monkeypatch.setenv("POSTGRES_PASSWORD", "pg-secret")

    import ragdeploy.cli as cli

    return CliRunner(), cli.app
