from __future__ import annotations

from enum import Enum
import logging
from pathlib import Path
import sys
import threading
from typing import Any, NoReturn

import typer
import yaml

from ragdeploy.config import REQUIRED_SECRETS, Settings, load_settings
from ragdeploy.logging_config import configure_logging
from ragdeploy.models import ClusterResource
from ragdeploy.plans import FALLBACK_HOST_ADDRESS, DeploymentPlan, build_plan
from ragdeploy.provisioner import Provisioner
from ragdeploy.services.errors import ConfigurationError, RagDeployException, ReadinessTimeout
from ragdeploy.services.overrides import apply_overrides, load_overrides
from ragdeploy.services.preflight import PreflightChecker
from ragdeploy.services.readiness import ProbeFactory
from ragdeploy.services.renderer import ManifestRenderer
from ragdeploy.services.secrets import REDACTED, SettingsSecretProvider
from ragdeploy.services.sequencer import DeploymentSequencer

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="Deploy LightRAG with PostgreSQL (AGE + pgvector) and Ollama", pretty_exceptions_show_locals=False)


class TargetName(str, Enum):
    local = "local"
    hybrid = "hybrid"
    kind = "kind"
    existing = "existing"


TARGET_OPTION = typer.Option(TargetName.local, "--target", "-t", help="Where to deploy.")
ENV_FILE_OPTION = typer.Option(None, "--env-file", help="Read configuration from this file instead of ./.env.")
LOG_LEVEL_OPTION = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR.")


def _exit_for_domain_error(exc: Exception) -> NoReturn:
    logger.warning("CLI command failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    if isinstance(exc, ConfigurationError) and exc.missing:
        typer.echo(f"Missing: {', '.join(exc.missing)}", err=True)
    code = exc.exit_code if isinstance(exc, RagDeployException) else 1
    raise typer.Exit(code=code)


def _echo_yaml_entity(entity: Any) -> None:
    typer.echo(yaml.safe_dump(entity, sort_keys=False), nl=False)


def _interactive() -> bool:
    return sys.stdin.isatty()


def _load_settings(env_file: Path | None, *, secrets_required: bool) -> Settings:
    """Load settings; missing secrets are prompted for, or stubbed when not needed."""
    try:
        return load_settings(env_file=env_file)
    except ConfigurationError as exc:
        fields = {env_name: field_name for field_name, env_name in REQUIRED_SECRETS.items()}
        if not exc.missing or any(name not in fields for name in exc.missing):
            raise
        if not secrets_required:
            logger.debug("Secrets not needed for this command; using placeholders")
            return load_settings(env_file=env_file, overrides={fields[name]: REDACTED for name in exc.missing})
        if not _interactive():
            raise
        overrides = {fields[name]: typer.prompt(f"Enter {name}", hide_input=True) for name in exc.missing}
        return load_settings(env_file=env_file, overrides=overrides)


def _load_plan(
    settings: Settings,
    target: TargetName,
    values_file: Path | None,
    *,
    for_deploy: bool = True,
) -> DeploymentPlan:
    if for_deploy:
        plan = build_plan(settings, target.value)
    else:
        # nothing is rendered, so host detection and the embedding host are not needed
        plan = build_plan(
            settings, target.value, host_address=FALLBACK_HOST_ADDRESS, require_embedding_host=False
        )
    if values_file is not None:
        plan = plan.with_services(apply_overrides(plan.services, load_overrides(values_file)))
    return plan


def build_sequencer(settings: Settings, plan: DeploymentPlan) -> DeploymentSequencer:
    cancel = threading.Event()
    secrets = SettingsSecretProvider(settings)
    provisioner = Provisioner(
        ready_interval=settings.ready_interval_seconds,
        ready_attempts=settings.ready_max_attempts,
        cancel=cancel,
    )
    probes = ProbeFactory(
        interval=settings.ready_interval_seconds,
        max_attempts=settings.ready_max_attempts,
        timeout=settings.ready_timeout_seconds,
        kube=provisioner.kube,
    )
    return DeploymentSequencer(
        preflight=PreflightChecker(secrets=secrets, timeout=settings.credential_timeout_seconds),
        provisioner=provisioner,
        renderer=ManifestRenderer(plan.target, secrets=secrets, part_of=plan.part_of),
        probes=probes,
        cancel=cancel,
    )


def _dry_run_output(plan: DeploymentPlan) -> dict[str, Any]:
    renderer = ManifestRenderer(plan.target, part_of=plan.part_of)
    manifests = renderer.render_all(plan.services)
    output: dict[str, Any] = {"plan": plan.describe()}
    clusters = {resource.name: resource.config for resource in plan.resources() if isinstance(resource, ClusterResource)}
    if clusters:
        output["clusters"] = clusters
    output["manifests"] = [
        {"name": manifest.name, "target": manifest.target, "documents": list(manifest.documents)}
        for manifest in manifests
    ]
    return output


@app.command("deploy")
def deploy(
    target: TargetName = TARGET_OPTION,
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan and rendered manifests; change nothing."),
    env_file: Path | None = ENV_FILE_OPTION,
    values_file: Path | None = typer.Option(None, "--values", help="YAML file with per-service overrides."),
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    configure_logging(level=log_level)
    try:
        settings = _load_settings(env_file, secrets_required=not dry_run)
        plan = _load_plan(settings, target, values_file)
        if dry_run:
            _echo_yaml_entity(_dry_run_output(plan))
            return
    except RagDeployException as e:
        _exit_for_domain_error(e)

    report = build_sequencer(settings, plan).deploy(plan)
    _echo_yaml_entity(report.as_dict())
    if report.error is not None:
        _exit_for_domain_error(report.error)


@app.command("teardown")
def teardown(
    target: TargetName = TARGET_OPTION,
    delete_volumes: bool = typer.Option(
        False, "--delete-volumes", help="Also delete data volumes and claims created by this tool."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    env_file: Path | None = ENV_FILE_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    configure_logging(level=log_level)
    try:
        settings = _load_settings(env_file, secrets_required=False)
        plan = _load_plan(settings, target, None, for_deploy=False)
    except RagDeployException as e:
        _exit_for_domain_error(e)

    if delete_volumes and not yes:
        typer.confirm("Delete data volumes created by ragdeploy? Stored documents and indexes are lost", abort=True)

    report = build_sequencer(settings, plan).teardown(plan, delete_volumes=delete_volumes)
    _echo_yaml_entity(report.as_dict())
    if report.error is not None:
        _exit_for_domain_error(report.error)


@app.command("status")
def status(
    target: TargetName = TARGET_OPTION,
    logs: bool = typer.Option(False, "--logs", help="Include recent service logs."),
    env_file: Path | None = ENV_FILE_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    configure_logging(level=log_level)
    try:
        settings = _load_settings(env_file, secrets_required=False)
        plan = _load_plan(settings, target, None, for_deploy=False)
    except RagDeployException as e:
        _exit_for_domain_error(e)

    report = build_sequencer(settings, plan).status(plan, logs=logs)
    _echo_yaml_entity(report.as_dict())
    if not report.healthy:
        typer.echo("Error: deployment is not ready", err=True)
        raise typer.Exit(code=ReadinessTimeout.exit_code)


if __name__ == "__main__":
    app()
