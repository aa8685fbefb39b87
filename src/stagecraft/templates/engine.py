"""
Declarative infrastructure template engine.

The orchestrator hands a template a flat context map and consumes the
structured outputs the template reports back. ``CdkTemplateEngine`` drives
the AWS CDK CLI; tests substitute an in-memory engine.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

import structlog

from stagecraft.config.settings import Settings, get_settings
from stagecraft.core.errors import ConfigurationError, ConvergencePending, FatalStepError
from stagecraft.provisioning.base import CredentialContext

logger = structlog.get_logger()

STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class StackTemplate:
    """A template directory under ``iac_dir`` and the stack it produces."""

    directory: str
    stack_name: str
    context_namespace: str

    def context_args(self, context: Mapping[str, Any]) -> list[str]:
        args: list[str] = []
        for key, value in sorted(context.items()):
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                value = ",".join(str(v) for v in value)
            args.extend(["-c", f"{self.context_namespace}:{key}={value}"])
        return args


class TemplateEngine(Protocol):
    def deploy(
        self,
        template: StackTemplate,
        credentials: CredentialContext,
        context: Mapping[str, Any],
    ) -> dict[str, str]:
        """Create or update the stack; return its outputs."""
        ...

    def destroy(self, template: StackTemplate, credentials: CredentialContext) -> None:
        ...


class CdkTemplateEngine:
    """Runs ``cdk deploy`` / ``cdk destroy`` in a template directory."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._settings = settings or get_settings()
        self._run_process = run
        self._command_path = shutil.which(self._settings.template_command)

    @property
    def is_available(self) -> bool:
        return self._command_path is not None

    def _template_dir(self, template: StackTemplate) -> Path:
        path = self._settings.iac_dir / template.directory
        if not path.is_dir():
            raise ConfigurationError(
                f"Template directory not found: {path}",
                {"stack": template.stack_name},
            )
        return path

    def _run(self, args: list[str], cwd: Path, operation: str) -> subprocess.CompletedProcess:
        if not self.is_available:
            raise ConfigurationError(
                f"'{self._settings.template_command}' not found on PATH. "
                "Install Node.js and the AWS CDK."
            )
        cmd = [self._command_path, "cdk", *args]
        logger.info("template_command", operation=operation, cwd=str(cwd))
        try:
            result = self._run_process(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self._settings.template_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ConvergencePending(
                f"cdk {operation} did not finish within {self._settings.template_timeout}s",
                {"operation": operation},
            ) from exc
        except subprocess.SubprocessError as exc:
            raise FatalStepError(f"cdk {operation} failed to start: {exc}") from exc

        if result.returncode != 0:
            tail = "\n".join((result.stderr or "").strip().splitlines()[-STDERR_TAIL_LINES:])
            raise FatalStepError(
                f"cdk {operation} exited with status {result.returncode}",
                {"stderr": tail},
            )
        return result

    def deploy(
        self,
        template: StackTemplate,
        credentials: CredentialContext,
        context: Mapping[str, Any],
    ) -> dict[str, str]:
        cwd = self._template_dir(template)
        with tempfile.TemporaryDirectory(prefix="stagecraft-") as tmp:
            outputs_file = Path(tmp) / "outputs.json"
            self._run(
                [
                    "deploy",
                    template.stack_name,
                    "--require-approval",
                    "never",
                    "--profile",
                    credentials.profile,
                    "--outputs-file",
                    str(outputs_file),
                    *template.context_args(context),
                ],
                cwd,
                "deploy",
            )
            outputs = read_stack_outputs(outputs_file, template.stack_name)
        logger.info("stack_deployed", stack=template.stack_name, outputs=sorted(outputs))
        return outputs

    def destroy(self, template: StackTemplate, credentials: CredentialContext) -> None:
        cwd = self._template_dir(template)
        self._run(
            ["destroy", template.stack_name, "--force", "--profile", credentials.profile],
            cwd,
            "destroy",
        )
        logger.info("stack_destroyed", stack=template.stack_name)


def read_stack_outputs(path: Path, stack_name: str) -> dict[str, str]:
    """Parse a CDK ``--outputs-file`` and return one stack's outputs."""
    if not path.exists():
        raise FatalStepError(f"Template engine produced no outputs file for {stack_name}")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise FatalStepError(f"Invalid outputs file for {stack_name}: {exc}") from exc
    stack_outputs = data.get(stack_name)
    if not isinstance(stack_outputs, dict):
        raise FatalStepError(
            f"Outputs file has no entry for stack {stack_name}",
            {"stacks": sorted(data) if isinstance(data, dict) else []},
        )
    return {str(k): str(v) for k, v in stack_outputs.items()}
