"""Core modules for Stagecraft - centralized definitions and utilities."""

from stagecraft.core.errors import (
    ArtifactNotFound,
    ArtifactValidationError,
    ConfigurationError,
    ConflictDetected,
    ConvergencePending,
    CredentialError,
    ErrorClass,
    ExitCode,
    FatalStepError,
    PrerequisiteNotMet,
    ProviderError,
    ResourceNotFound,
    ResourceStillInUse,
    RollbackError,
    StagecraftError,
    TransientProviderError,
    format_error_message,
    main_with_error_handling,
    remediation_for,
)

__all__ = [
    "ExitCode",
    "ErrorClass",
    "StagecraftError",
    "ArtifactNotFound",
    "ArtifactValidationError",
    "ConfigurationError",
    "ConflictDetected",
    "ConvergencePending",
    "CredentialError",
    "FatalStepError",
    "PrerequisiteNotMet",
    "ProviderError",
    "ResourceNotFound",
    "ResourceStillInUse",
    "RollbackError",
    "TransientProviderError",
    "main_with_error_handling",
    "format_error_message",
    "remediation_for",
]
