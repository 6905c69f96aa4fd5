"""Configuration loaded once per invocation from the environment and a ``.env`` file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import AliasChoices, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ragdeploy.services.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Secret names used by service specs; resolved by SettingsSecretProvider.
LLM_API_KEY_SECRET = "llm-api-key"
POSTGRES_PASSWORD_SECRET = "postgres-password"

REQUIRED_SECRETS = {
    "llm_binding_api_key": "LLM_BINDING_API_KEY",
    "postgres_password": "POSTGRES_PASSWORD",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # LLM (OpenAI-compatible binding, DeepSeek by default)
    llm_binding: str = "openai"
    llm_model: str = "deepseek-chat"
    llm_binding_host: str = "https://api.deepseek.com/v1"
    llm_binding_api_key: SecretStr

    # Embeddings (Ollama)
    embedding_binding: str = "ollama"
    embedding_model: str = "bge-m3:latest"
    embedding_binding_host: Optional[str] = None
    ollama_container: str = "ollama-gpu"
    ollama_image: str = "ollama/ollama:latest"
    ollama_port: int = 11434
    ollama_volume: str = "ollama-data"

    # PostgreSQL (AGE + pgvector)
    postgres_image: str = "lightrag-postgres-age-vector:latest"
    postgres_build_context: Optional[str] = None
    postgres_dockerfile: Optional[str] = "Dockerfile.postgres-age-vector"
    postgres_user: str = "postgres"
    postgres_password: SecretStr
    postgres_database: str = "lightrag"
    postgres_port: int = 5432

    # LightRAG
    lightrag_image: str = "ghcr.io/hkuds/lightrag:latest"
    lightrag_port: int = 9621
    lightrag_server_type: Literal["gunicorn", "production", "dev", "development"] = "gunicorn"
    lightrag_kv_storage: str = "PGKVStorage"
    lightrag_vector_storage: str = "PGVectorStorage"
    lightrag_graph_storage: str = "PGGraphStorage"
    lightrag_doc_status_storage: str = "PGDocStatusStorage"

    # Platform naming
    compose_project: str = "lightrag"
    kind_cluster_name: str = "lightrag-cluster"
    kube_namespace: str = Field(default="lightrag", validation_alias=AliasChoices("KUBE_NAMESPACE", "NAMESPACE"))
    kube_context: Optional[str] = None
    work_dir: Path = Field(default=Path(".ragdeploy"), validation_alias="RAGDEPLOY_WORK_DIR")

    # Readiness polling, shared by every dependency
    ready_interval_seconds: float = Field(default=2.0, gt=0, validation_alias="RAGDEPLOY_READY_INTERVAL")
    ready_timeout_seconds: float = Field(default=300.0, gt=0, validation_alias="RAGDEPLOY_READY_TIMEOUT")
    credential_timeout_seconds: float = Field(default=10.0, gt=0, validation_alias="RAGDEPLOY_CREDENTIAL_TIMEOUT")

    @property
    def ready_max_attempts(self) -> int:
        attempts = int(self.ready_timeout_seconds // self.ready_interval_seconds)
        return max(attempts, 1)


def load_settings(
    *,
    env_file: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Build settings once; missing secrets raise ConfigurationError naming the env vars."""
    kwargs: dict[str, Any] = dict(overrides or {})
    if env_file is not None:
        if not env_file.exists():
            raise ConfigurationError(f"Env file not found: {env_file}")
        kwargs["_env_file"] = env_file
    try:
        settings = Settings(**kwargs)
    except ValidationError as exc:
        missing = [
            REQUIRED_SECRETS.get(str(error["loc"][0]), str(error["loc"][0]).upper())
            for error in exc.errors()
            if error["type"] == "missing" and error["loc"]
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}",
                missing=missing,
            ) from exc
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    empty = [
        env_name
        for field_name, env_name in REQUIRED_SECRETS.items()
        if not getattr(settings, field_name).get_secret_value().strip()
    ]
    if empty:
        raise ConfigurationError(f"Required secrets are empty: {', '.join(empty)}", missing=empty)
    logger.debug("Loaded settings (env_file=%s)", env_file or ".env")
    return settings
