from __future__ import annotations

import re

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_HYPHEN_RUN_RE = re.compile(r"-+")

MAX_DNS_LABEL_LEN = 63

# Ownership markers written on every object this tool creates.
MANAGED_LABEL = "io.ragdeploy.managed"
MANAGED_LABEL_VALUE = "true"
KUBE_MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
KUBE_MANAGED_BY_VALUE = "ragdeploy"
KUBE_PART_OF_LABEL = "app.kubernetes.io/part-of"
KUBE_NODE_MANAGED_LABEL = "ragdeploy.io/managed"


def slugify_token(value: str) -> str:
    lowered = value.lower()
    replaced = _NON_ALNUM_RE.sub("-", lowered)
    collapsed = _HYPHEN_RUN_RE.sub("-", replaced)
    return collapsed.strip("-")


def is_valid_dns_label(value: str) -> bool:
    return bool(DNS_LABEL_RE.fullmatch(value))


def is_valid_container_name(value: str) -> bool:
    return bool(CONTAINER_NAME_RE.fullmatch(value))


def is_valid_env_name(value: str) -> bool:
    return bool(ENV_NAME_RE.fullmatch(value))


def kind_context(cluster_name: str) -> str:
    return f"kind-{cluster_name}"


def kind_node_container(cluster_name: str) -> str:
    return f"{cluster_name}-control-plane"


def secret_name_for_service(service_name: str) -> str:
    if not is_valid_dns_label(service_name):
        raise ValueError("service name is not a valid DNS label")
    return f"{service_name}-secrets"


def claim_name_for_volume(volume_name: str) -> str:
    slug = slugify_token(volume_name)
    if not slug.endswith("pvc"):
        slug = f"{slug}-pvc"
    if len(slug) > MAX_DNS_LABEL_LEN or not is_valid_dns_label(slug):
        raise ValueError("volume name does not produce a valid claim name")
    return slug


def managed_docker_labels() -> dict[str, str]:
    return {MANAGED_LABEL: MANAGED_LABEL_VALUE}


def managed_kube_labels(part_of: str) -> dict[str, str]:
    return {
        KUBE_MANAGED_BY_LABEL: KUBE_MANAGED_BY_VALUE,
        KUBE_PART_OF_LABEL: part_of,
    }


def kube_managed_selector(part_of: str) -> str:
    return ",".join(f"{key}={value}" for key, value in managed_kube_labels(part_of).items())
