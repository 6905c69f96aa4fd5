"""Subprocess seam shared by the docker, kind and kubectl adapters."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import shlex
import subprocess
from tempfile import NamedTemporaryFile
from typing import Callable, Iterator, Literal, Mapping

ErrorCategory = Literal["retryable", "fatal"]
CommandRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]

logger = logging.getLogger(__name__)

# Shell convention for "binary not on PATH"; never treated as a missing object.
COMMAND_NOT_FOUND = 127
MAX_DETAIL_CHARS = 400

# Transient platform conditions worth retrying (daemon restarts, API server hiccups).
_TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection refused",
    "was refused",
    "connection reset",
    "tls handshake timeout",
    "context deadline exceeded",
    "unable to connect",
    "currently unable to handle the request",
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "too many requests",
    "rate limit",
)

# How docker, kind and kubectl report an object that does not exist.
_ABSENT_MARKERS = (
    "not found",
    "no such container",
    "no such volume",
    "no such image",
    "no such object",
)


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """Both streams; CLIs disagree on which one carries the error text."""
        return f"{self.stderr}\n{self.stdout}"

    @property
    def rendered_command(self) -> str:
        return shlex.join(self.command)


class AdapterCommandError(RuntimeError):
    """A platform CLI exited non-zero."""

    def __init__(self, *, message: str, result: CommandResult, category: ErrorCategory) -> None:
        self.summary = message
        self.result = result
        self.category = category
        super().__init__(f"{message}: {self.detail or '<no output>'} [{category}, exit {result.returncode}: {result.rendered_command}]")

    @property
    def retryable(self) -> bool:
        return self.category == "retryable"

    @property
    def not_found(self) -> bool:
        if self.result.returncode == COMMAND_NOT_FOUND:
            return False
        return _mentions(self.result.output, _ABSENT_MARKERS)

    @property
    def detail(self) -> str:
        text = (self.result.stderr or self.result.stdout).strip()
        if len(text) <= MAX_DETAIL_CHARS:
            return text
        return text[: MAX_DETAIL_CHARS - 3] + "..."


def _mentions(text: str, markers: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


def classify_error(*, returncode: int, stderr: str, stdout: str) -> ErrorCategory:
    # negative codes mean the process was killed by a signal
    if returncode < 0 or _mentions(f"{stderr}\n{stdout}", _TRANSIENT_MARKERS):
        return "retryable"
    return "fatal"


def default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(command, capture_output=True, text=True, check=False)
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(
            args=command,
            returncode=COMMAND_NOT_FOUND,
            stdout="",
            stderr=f"{command[0]}: command not found ({exc.strerror})",
        )


def run_command(
    command: list[str],
    *,
    runner: CommandRunner | None = None,
    error_message: str,
) -> CommandResult:
    """Run ``command`` and return its output; a non-zero exit raises AdapterCommandError."""
    logger.debug("$ %s", shlex.join(command))
    completed = (runner or default_runner)(command)
    result = CommandResult(
        command=command,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    if result.returncode == 0:
        return result
    category = classify_error(returncode=result.returncode, stderr=result.stderr, stdout=result.stdout)
    raise AdapterCommandError(message=error_message, result=result, category=category)


@contextmanager
def temporary_file(content: str, *, suffix: str) -> Iterator[Path]:
    """Write ``content`` to a private (0600) temporary file that is removed on exit."""
    handle = NamedTemporaryFile(mode="w", encoding="utf-8", suffix=suffix, delete=False)
    path = Path(handle.name)
    try:
        os.chmod(path, 0o600)
        with handle:
            handle.write(content)
        logger.debug("Wrote temporary file %s", path)
        yield path
    finally:
        handle.close()
        path.unlink(missing_ok=True)


def env_file_content(values: Mapping[str, str]) -> str:
    """Render sorted ``KEY=value`` lines for ``docker compose --env-file``; values are taken literally."""
    return "".join(f"{key}={_env_file_value(values[key])}\n" for key in sorted(values))


def _env_file_value(value: str) -> str:
    # compose expands nothing inside single quotes, but they cannot hold a quote or newline
    if "'" not in value and "\n" not in value:
        return f"'{value}'"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("\n", "\\n")
    return f'"{escaped}"'
