from __future__ import annotations

from copy import deepcopy
import logging
from pathlib import Path
from typing import Any, Iterable

from jsonschema import ValidationError
from jsonschema import validate as jsonschema_validate
from pydantic import ValidationError as ModelValidationError
import yaml

from ragdeploy.models import ServiceSpec
from ragdeploy.services.errors import ConfigurationError

logger = logging.getLogger(__name__)

_QUANTITY = {"type": ["string", "null"]}

OVERRIDES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "services": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "image": {"type": "string", "minLength": 1},
                    "env": {"type": "object", "additionalProperties": {"type": "string"}},
                    "replicas": {"type": "integer", "minimum": 0},
                    "image_pull_policy": {"enum": ["Always", "IfNotPresent", "Never", None]},
                    "restart": {"type": "string"},
                    "extra_hosts": {"type": "object", "additionalProperties": {"type": "string"}},
                    "resources": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            section: {
                                "type": "object",
                                "additionalProperties": False,
                                "properties": {"cpu": _QUANTITY, "memory": _QUANTITY},
                            }
                            for section in ("requests", "limits")
                        },
                    },
                },
            },
        },
    },
}


def deep_merge(base: Any, override: Any) -> Any:
    """Deep-merge two JSON-like values, recursively merging object keys."""
    if isinstance(base, dict) and isinstance(override, dict):
        merged: dict[str, Any] = {k: deepcopy(v) for k, v in base.items()}
        for key, value in override.items():
            if key in merged:
                merged[key] = deep_merge(merged[key], value)
            else:
                merged[key] = deepcopy(value)
        return merged
    return deepcopy(override)


def validate_overrides(values: Any) -> dict[str, Any]:
    if values is None:
        return {}
    if not isinstance(values, dict):
        raise ConfigurationError("Values file must contain a mapping")
    try:
        jsonschema_validate(instance=values, schema=OVERRIDES_SCHEMA)
    except ValidationError as exc:
        location = ".".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ConfigurationError(f"Values file is invalid at {location}: {exc.message}") from exc
    return values


def load_overrides(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Values file not found: {path}")
    try:
        values = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Values file {path} is not valid YAML: {exc}") from exc
    logger.debug("Loaded value overrides from %s", path)
    return validate_overrides(values)


def apply_overrides(specs: Iterable[ServiceSpec], overrides: dict[str, Any] | None) -> list[ServiceSpec]:
    """Return service specs with per-service overrides merged in; input specs are unchanged."""
    specs = list(specs)
    services = validate_overrides(overrides).get("services") or {}
    known = {spec.name for spec in specs}
    unknown = sorted(set(services) - known)
    if unknown:
        raise ConfigurationError(f"Values file names unknown services: {', '.join(unknown)}")

    result = []
    for spec in specs:
        delta = services.get(spec.name)
        if not delta:
            result.append(spec)
            continue
        logger.info("Applying value overrides to service %s: %s", spec.name, ", ".join(sorted(delta)))
        merged = deep_merge(spec.model_dump(), delta)
        try:
            result.append(ServiceSpec.model_validate(merged))
        except ModelValidationError as exc:
            raise ConfigurationError(f"Overrides for service {spec.name} are invalid: {exc}") from exc
    return result
