from __future__ import annotations

from typing import Mapping, Protocol

from pydantic import SecretStr

from ragdeploy.config import LLM_API_KEY_SECRET, POSTGRES_PASSWORD_SECRET, Settings

REDACTED = "<redacted>"


class SecretProvider(Protocol):
    def get(self, name: str) -> str | None:
        """Return the secret value, or None when the provider does not know it."""
        ...


class StaticSecretProvider:
    def __init__(self, values: Mapping[str, str | SecretStr]) -> None:
        self._values = dict(values)

    def get(self, name: str) -> str | None:
        value = self._values.get(name)
        if isinstance(value, SecretStr):
            return value.get_secret_value()
        return value


class SettingsSecretProvider(StaticSecretProvider):
    def __init__(self, settings: Settings) -> None:
        super().__init__(
            {
                LLM_API_KEY_SECRET: settings.llm_binding_api_key,
                POSTGRES_PASSWORD_SECRET: settings.postgres_password,
            }
        )
