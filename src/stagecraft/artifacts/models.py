"""
Typed artifact documents.

Documents are camelCase JSON on disk and snake_case in Python. Unknown
fields are kept so documents written by newer versions survive a round
trip.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PREFIX_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
VPC_PATTERN = re.compile(r"^vpc-[0-9a-f]{8,17}$")
REGION_PATTERN = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d$")
LABEL = r"[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?"
DOMAIN_PATTERN = re.compile(rf"^{LABEL}(\.{LABEL})+$")


class ArtifactModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class StageEnvironment(ArtifactModel):
    """Fields every stage forwards so later stages can reach both accounts."""

    infrastructure_profile: str
    target_profile: str
    distribution_prefix: str
    target_region: str
    target_vpc_id: str
    infrastructure_account_id: str | None = None
    target_account_id: str | None = None


class DiscoveryBase(ArtifactModel):
    infrastructure_account_id: str
    target_account_id: str
    conflicts_reviewed: bool = False
    acknowledged_conflicts: list[str] = Field(default_factory=list)


class StageOutputs(StageEnvironment):
    deployment_timestamp: str | None = None
    validation_status: str | None = None


# --- Stage A: static distribution -----------------------------------------


class CloudFrontInputs(ArtifactModel):
    infrastructure_profile: str
    target_profile: str
    distribution_prefix: str
    target_region: str
    target_vpc_id: str

    @field_validator("infrastructure_profile", "target_profile")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("distribution_prefix")
    @classmethod
    def _kebab_case(cls, value: str) -> str:
        if not PREFIX_PATTERN.match(value):
            raise ValueError("must be kebab-case (lowercase letters, digits and single hyphens)")
        return value

    @field_validator("target_region")
    @classmethod
    def _region(cls, value: str) -> str:
        if not REGION_PATTERN.match(value):
            raise ValueError("is not a valid region name (e.g. us-east-1)")
        return value

    @field_validator("target_vpc_id")
    @classmethod
    def _vpc(cls, value: str) -> str:
        if not VPC_PATTERN.match(value):
            raise ValueError("must look like vpc-0123456789abcdef0")
        return value


class CloudFrontDiscovery(DiscoveryBase):
    """Only the shared account and conflict facts."""


class CloudFrontOutputs(StageOutputs):
    distribution_id: str
    distribution_domain_name: str
    distribution_url: str
    bucket_name: str
    bucket_arn: str | None = None
    ready_for_stage_b: bool = False


# --- Stage B: certificate ---------------------------------------------------


class SslInputs(StageEnvironment):
    domains: list[str]
    distribution_id: str
    distribution_domain_name: str | None = None
    distribution_url: str | None = None
    bucket_name: str | None = None

    @field_validator("domains")
    @classmethod
    def _domains(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one domain is required")
        cleaned: list[str] = []
        for domain in value:
            domain = domain.strip().lower().rstrip(".")
            if not DOMAIN_PATTERN.match(domain) or ".." in domain:
                raise ValueError(f"'{domain}' is not a valid domain name")
            if domain not in cleaned:
                cleaned.append(domain)
        return cleaned


class HostedZoneEntry(ArtifactModel):
    domain: str
    zone_id: str
    zone_name: str


class SslDiscovery(DiscoveryBase):
    certificate_region: str = "us-east-1"
    hosted_zones: list[HostedZoneEntry] = Field(default_factory=list)
    existing_certificates: list[str] = Field(default_factory=list)

    def zone_for(self, domain: str) -> HostedZoneEntry | None:
        for zone in self.hosted_zones:
            if zone.domain == domain:
                return zone
        return None


class SslOutputs(StageOutputs):
    certificate_arn: str
    certificate_status: str
    domains: list[str]
    custom_domain_urls: list[str] = Field(default_factory=list)
    distribution_id: str
    distribution_domain_name: str | None = None
    distribution_url: str | None = None
    bucket_name: str | None = None
    ready_for_stage_c: bool = False


# --- Stage C: function --------------------------------------------------------


class FunctionInputs(StageEnvironment):
    distribution_id: str
    bucket_name: str
    certificate_arn: str
    domains: list[str] = Field(default_factory=list)


class FunctionDiscovery(DiscoveryBase):
    lambda_quotas: dict[str, Any] = Field(default_factory=dict)


class FunctionOutputs(StageOutputs):
    lambda_function_arn: str
    lambda_function_name: str
    function_url: str
    log_group_name: str
    distribution_id: str
    bucket_name: str
    certificate_arn: str
    ready_for_stage_d: bool = False


# --- Stage D: single-page app -------------------------------------------------


class ReactInputs(StageEnvironment):
    distribution_id: str
    distribution_domain_name: str
    distribution_url: str
    bucket_name: str
    certificate_arn: str
    domains: list[str]
    primary_domain: str
    lambda_function_name: str
    lambda_function_arn: str
    function_url: str


class ReactDiscovery(DiscoveryBase):
    bundle_path: str
    bundle_files: int


class ReactOutputs(StageOutputs):
    distribution_id: str
    distribution_domain_name: str
    distribution_url: str
    bucket_name: str
    certificate_arn: str
    domains: list[str]
    primary_domain: str
    lambda_function_name: str
    lambda_function_arn: str
    function_url: str
    deployment_role_arn: str | None = None
    react_log_group_name: str | None = None
    invalidation_id: str
    application_urls: list[str] = Field(default_factory=list)
    ready_for_stage_e: bool = False


# --- Stage E: app with API route ------------------------------------------------


class ReactApiInputs(StageEnvironment):
    distribution_id: str
    distribution_url: str
    bucket_name: str
    domains: list[str]
    primary_domain: str
    lambda_function_name: str
    function_url: str

    @property
    def function_host(self) -> str:
        host = self.function_url.split("://", 1)[-1]
        return host.split("/", 1)[0]


class ReactApiDiscovery(ReactDiscovery):
    existing_api_origin: str | None = None
    existing_path_patterns: list[str] = Field(default_factory=list)


class ReactApiOutputs(StageOutputs):
    distribution_id: str
    distribution_url: str
    bucket_name: str
    domains: list[str]
    primary_domain: str
    lambda_function_name: str
    function_url: str
    api_origin_domain: str
    api_path_pattern: str
    api_urls: list[str] = Field(default_factory=list)
    invalidation_id: str
    ready_for_stage_f: bool = False
