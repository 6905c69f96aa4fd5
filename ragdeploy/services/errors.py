from __future__ import annotations

from typing import Any, ClassVar


class RagDeployException(Exception):
    exit_code: ClassVar[int] = 1
    default_stage: ClassVar[str] = "deploy"

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        resource: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.resource = resource
        self.detail = detail
        super().__init__(message)

    def __str__(self) -> str:
        text = f"[{self.stage}]"
        if self.resource:
            text = f"{text} {self.resource}:"
        text = f"{text} {self.message}"
        if self.detail:
            text = f"{text} (last error: {self.detail})"
        return text


class ConfigurationError(RagDeployException):
    exit_code = 3
    default_stage = "configuration"

    def __init__(self, message: str, *, missing: list[str] | None = None, **kwargs: Any) -> None:
        self.missing = list(missing or [])
        super().__init__(message, **kwargs)


class PreflightFailure(RagDeployException):
    exit_code = 10
    default_stage = "preflighting"


class CredentialRejected(PreflightFailure):
    """The credential reached its endpoint and was refused."""


class ProvisionFailure(RagDeployException):
    exit_code = 11
    default_stage = "provisioning"


class RenderValidationFailure(RagDeployException):
    exit_code = 12
    default_stage = "rendering"

    def __init__(self, message: str, *, field: str, **kwargs: Any) -> None:
        self.field = field
        kwargs.setdefault("resource", field)
        super().__init__(message, **kwargs)


class ReadinessTimeout(RagDeployException):
    exit_code = 13
    default_stage = "awaiting"

    def __init__(self, message: str, *, attempts: int, **kwargs: Any) -> None:
        self.attempts = attempts
        super().__init__(message, **kwargs)


class TeardownPartialFailure(RagDeployException):
    exit_code = 14
    default_stage = "teardown"

    def __init__(self, message: str, *, report: Any = None, **kwargs: Any) -> None:
        self.report = report
        super().__init__(message, **kwargs)


class DeploymentCancelled(RagDeployException):
    exit_code = 130


class IllegalTransition(RagDeployException):
    pass
