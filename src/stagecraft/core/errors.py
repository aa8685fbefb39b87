"""
Unified error handling for Stagecraft.

Every failure the orchestrator can surface is classified so the operator
gets a remediation action keyed to the classification, not just a stack
trace.

Exit Codes:
- 0: Success (including "already complete" no-ops)
- 1: Fatal step failure
- 2: Prerequisite not met
- 3: Convergence pending (re-run later to re-validate)
- 4: Conflict detected (operator confirmation required)
- 5: Resource still in use (rollback must be retried)
- 10: Configuration / credential error
- 11: Provider error (transient retries exhausted)
- 12: Artifact validation error
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum, StrEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    FATAL = 1
    PREREQUISITE_NOT_MET = 2
    CONVERGENCE_PENDING = 3
    CONFLICT_DETECTED = 4
    RESOURCE_IN_USE = 5
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    VALIDATION_ERROR = 12
    INTERRUPTED = 130
    UNKNOWN_ERROR = 127


class ErrorClass(StrEnum):
    """Failure classification used to pick a remediation action."""

    PREREQUISITE_NOT_MET = "prerequisite_not_met"
    CONFLICT_DETECTED = "conflict_detected"
    TRANSIENT = "transient"
    CONVERGENCE_PENDING = "convergence_pending"
    RESOURCE_IN_USE = "resource_in_use"
    CONFIGURATION = "configuration"
    CREDENTIALS = "credentials"
    FATAL = "fatal"


REMEDIATION: dict[ErrorClass, str] = {
    ErrorClass.PREREQUISITE_NOT_MET: (
        "Complete the prerequisite stage first, then re-run this command."
    ),
    ErrorClass.CONFLICT_DETECTED: (
        "Resolve the conflicting resources manually or choose a different prefix, "
        "then re-run (pass --yes to accept the existing resources)."
    ),
    ErrorClass.TRANSIENT: "The provider was throttled or timed out. Re-run the same command.",
    ErrorClass.CONVERGENCE_PENDING: (
        "The resource is still converging (DNS/propagation). Wait a few minutes and "
        "re-run the same command to re-validate."
    ),
    ErrorClass.RESOURCE_IN_USE: (
        "A dependent change is still propagating. Wait for it to finish and re-run the rollback."
    ),
    ErrorClass.CONFIGURATION: "Fix the reported parameter or configuration value and re-run.",
    ErrorClass.CREDENTIALS: (
        "Refresh the credentials for the reported profile (e.g. 'aws sso login') and re-run."
    ),
    ErrorClass.FATAL: (
        "Fix the reported cause and re-run the same command; completed steps are skipped. "
        "Invoke rollback to remove the partial deployment instead."
    ),
}


def remediation_for(error_class: ErrorClass) -> str:
    """Return the operator-facing remediation hint for a classification."""
    return REMEDIATION.get(error_class, REMEDIATION[ErrorClass.FATAL])


class StagecraftError(Exception):
    """Base exception for Stagecraft errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    error_class: ErrorClass = ErrorClass.FATAL
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def remediation(self) -> str:
        return remediation_for(self.error_class)


class FatalStepError(StagecraftError):
    """Raised when a step fails for a reason with no dedicated classification."""

    exit_code = ExitCode.FATAL


class ConfigurationError(StagecraftError):
    """Raised for invalid parameters or configuration."""

    exit_code = ExitCode.CONFIG_ERROR
    error_class = ErrorClass.CONFIGURATION


class CredentialError(StagecraftError):
    """Raised when a credential context cannot be authenticated."""

    exit_code = ExitCode.CONFIG_ERROR
    error_class = ErrorClass.CREDENTIALS


class PrerequisiteNotMet(StagecraftError):
    """Raised when a dependency stage is absent, not ready, or missing a field."""

    exit_code = ExitCode.PREREQUISITE_NOT_MET
    error_class = ErrorClass.PREREQUISITE_NOT_MET


class ArtifactNotFound(PrerequisiteNotMet):
    """Raised when a required artifact document does not exist."""


class ArtifactValidationError(StagecraftError):
    """Raised when an artifact document fails to parse or validate."""

    exit_code = ExitCode.VALIDATION_ERROR


class ConflictDetected(StagecraftError):
    """Raised when existing resources collide with names the stage will create."""

    exit_code = ExitCode.CONFLICT_DETECTED
    error_class = ErrorClass.CONFLICT_DETECTED


class TransientProviderError(StagecraftError):
    """Raised for throttling or timeouts on a single provider call."""

    exit_code = ExitCode.PROVIDER_ERROR
    error_class = ErrorClass.TRANSIENT


class ProviderError(StagecraftError):
    """Raised when the provider rejects a call permanently."""

    exit_code = ExitCode.PROVIDER_ERROR


class ResourceNotFound(ProviderError):
    """Raised when the provider reports the resource does not exist."""


class ConvergencePending(StagecraftError):
    """Raised when an external resource has not converged yet."""

    exit_code = ExitCode.CONVERGENCE_PENDING
    error_class = ErrorClass.CONVERGENCE_PENDING


class ResourceStillInUse(StagecraftError):
    """Raised when a delete is refused because the resource is still referenced."""

    exit_code = ExitCode.RESOURCE_IN_USE
    error_class = ErrorClass.RESOURCE_IN_USE


class RollbackError(StagecraftError):
    """Raised when a stage rollback cannot reach a consistent terminal state."""

    exit_code = ExitCode.FATAL


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI entry points that provides unified error handling.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - StagecraftError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except StagecraftError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        error_class=str(e.error_class),
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                _print_error(e)
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                _print_interrupted()
                return ExitCode.INTERRUPTED
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: StagecraftError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg


def _print_error(error: StagecraftError) -> None:
    from stagecraft.cli.ux import error as print_error
    from stagecraft.cli.ux import info

    print_error(format_error_message(error))
    info(error.remediation)


def _print_interrupted() -> None:
    from stagecraft.cli.ux import warning

    warning(
        "Interrupted. Saved artifacts are intact; re-run the same command to resume "
        "from the last completed step."
    )
