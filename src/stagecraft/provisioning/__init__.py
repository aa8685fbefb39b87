"""Provisioning API: contract, AWS adapter and endpoint checks."""

from stagecraft.provisioning.base import (
    CertificateDescription,
    CertificateStatus,
    CredentialContext,
    CredentialRole,
    CredentialSet,
    DistributionChange,
    DistributionDescription,
    DistributionStatus,
    ExistingResource,
    HostedZone,
    InvalidationStatus,
    ProvisioningAPI,
    ResourceKind,
    ValidationRecord,
)

__all__ = [
    "CertificateDescription",
    "CertificateStatus",
    "CredentialContext",
    "CredentialRole",
    "CredentialSet",
    "DistributionChange",
    "DistributionDescription",
    "DistributionStatus",
    "ExistingResource",
    "HostedZone",
    "InvalidationStatus",
    "ProvisioningAPI",
    "ResourceKind",
    "ValidationRecord",
]
