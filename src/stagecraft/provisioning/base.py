"""
Provisioning API contract.

The orchestrator never talks to the cloud directly; it goes through an
object satisfying :class:`ProvisioningAPI`. Every operation takes the
credential context it runs in as its first argument so infra-account and
target-account calls can never be swapped by ambient state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable


class CredentialRole(StrEnum):
    """Which account a credential context authenticates against."""

    INFRA = "infra"
    TARGET = "target"


@dataclass(frozen=True)
class CredentialContext:
    """A named credential profile bound to one account role."""

    profile: str
    role: CredentialRole
    region: str | None = None
    account_id: str | None = None

    def with_account(self, account_id: str) -> CredentialContext:
        return replace(self, account_id=account_id)

    def in_region(self, region: str) -> CredentialContext:
        return replace(self, region=region)

    def __str__(self) -> str:
        return f"{self.role}:{self.profile}"


@dataclass(frozen=True)
class CredentialSet:
    """The two credential contexts a stage operates with."""

    infra: CredentialContext
    target: CredentialContext


class ResourceKind(StrEnum):
    """Resource kinds the orchestrator inspects or manages."""

    DISTRIBUTION = "distribution"
    BUCKET = "bucket"
    CERTIFICATE = "certificate"
    FUNCTION = "function"
    ROLE = "role"
    LOG_GROUP = "log_group"


class CertificateStatus(StrEnum):
    PENDING_VALIDATION = "PENDING_VALIDATION"
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"
    VALIDATION_TIMED_OUT = "VALIDATION_TIMED_OUT"
    REVOKED = "REVOKED"


CERTIFICATE_FAILED_STATES = frozenset(
    {
        CertificateStatus.FAILED,
        CertificateStatus.VALIDATION_TIMED_OUT,
        CertificateStatus.REVOKED,
        CertificateStatus.EXPIRED,
        CertificateStatus.INACTIVE,
    }
)


class DistributionStatus(StrEnum):
    IN_PROGRESS = "InProgress"
    DEPLOYED = "Deployed"


class InvalidationStatus(StrEnum):
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


# Path routed to the function origin once the API is wired in.
API_PATH_PATTERN = "/api/*"


@dataclass(frozen=True)
class ExistingResource:
    """A resource found in the target environment."""

    kind: ResourceKind
    identifier: str
    name: str
    arn: str | None = None
    status: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationRecord:
    """DNS challenge record proving control of a domain."""

    domain: str
    name: str
    type: str
    value: str


@dataclass(frozen=True)
class HostedZone:
    domain: str
    zone_id: str
    zone_name: str


@dataclass(frozen=True)
class CertificateDescription:
    arn: str
    status: CertificateStatus
    domains: tuple[str, ...] = ()
    validation_records: tuple[ValidationRecord, ...] = ()
    in_use_by: tuple[str, ...] = ()


@dataclass(frozen=True)
class DistributionDescription:
    identifier: str
    status: DistributionStatus
    domain_name: str
    enabled: bool = True
    certificate_arn: str | None = None
    aliases: tuple[str, ...] = ()
    viewer_protocol_policy: str = "allow-all"
    api_origin_domain: str | None = None
    path_patterns: tuple[str, ...] = ()


@dataclass(frozen=True)
class DistributionChange:
    """Partial update of a distribution's routing configuration.

    ``None`` leaves a field untouched. ``api_origin_domain`` adds (or
    repoints) the function origin and its ``/api/*`` behavior;
    ``remove_api_route`` takes both out again.
    """

    aliases: tuple[str, ...] | None = None
    certificate_arn: str | None = None
    use_default_certificate: bool = False
    viewer_protocol_policy: str | None = None
    enabled: bool | None = None
    api_origin_domain: str | None = None
    remove_api_route: bool = False


@runtime_checkable
class ProvisioningAPI(Protocol):
    """Create/update/describe/delete operations keyed by credential context."""

    def authenticate(self, credentials: CredentialContext) -> str:
        """Return the account id the context authenticates as."""
        ...

    def region_exists(self, credentials: CredentialContext, region: str) -> bool:
        ...

    def vpc_exists(self, credentials: CredentialContext, vpc_id: str, region: str) -> bool:
        ...

    def list_resources(
        self, credentials: CredentialContext, kind: ResourceKind
    ) -> list[ExistingResource]:
        ...

    def describe_certificate(
        self, credentials: CredentialContext, certificate_arn: str
    ) -> CertificateDescription:
        ...

    def delete_certificate(self, credentials: CredentialContext, certificate_arn: str) -> None:
        ...

    def find_hosted_zone(self, credentials: CredentialContext, domain: str) -> HostedZone | None:
        ...

    def upsert_validation_record(
        self, credentials: CredentialContext, zone_id: str, record: ValidationRecord
    ) -> str:
        ...

    def describe_distribution(
        self, credentials: CredentialContext, distribution_id: str
    ) -> DistributionDescription:
        ...

    def update_distribution(
        self, credentials: CredentialContext, distribution_id: str, change: DistributionChange
    ) -> None:
        ...

    def create_invalidation(
        self, credentials: CredentialContext, distribution_id: str, paths: Sequence[str]
    ) -> str:
        """Start an edge-cache invalidation; return its id."""
        ...

    def invalidation_status(
        self, credentials: CredentialContext, distribution_id: str, invalidation_id: str
    ) -> InvalidationStatus:
        ...

    def upload_object(
        self,
        credentials: CredentialContext,
        bucket: str,
        key: str,
        body: bytes,
        content_type: str,
        cache_control: str | None = None,
    ) -> None:
        ...

    def empty_bucket(self, credentials: CredentialContext, bucket: str) -> int:
        ...

    def stack_exists(self, credentials: CredentialContext, stack_name: str) -> bool:
        """True while a template stack exists and is not fully deleted."""
        ...

    def invoke_function(
        self, credentials: CredentialContext, function_name: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        ...

    def function_quotas(self, credentials: CredentialContext) -> dict[str, Any]:
        ...
