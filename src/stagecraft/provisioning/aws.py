"""
AWS implementation of the provisioning API.

One boto3 session per credential profile; every call goes through
``_call`` which classifies botocore failures and retries the transient
ones with exponential backoff.
"""

from __future__ import annotations

import copy
import json
import uuid
from typing import Any, Callable, Mapping, Sequence, TypeVar

import boto3
import structlog
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ProfileNotFound,
    ReadTimeoutError,
)
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from stagecraft.config.settings import Settings, get_settings
from stagecraft.core.errors import (
    CredentialError,
    ProviderError,
    ResourceNotFound,
    ResourceStillInUse,
    StagecraftError,
    TransientProviderError,
)
from stagecraft.provisioning.base import (
    API_PATH_PATTERN,
    CertificateDescription,
    CertificateStatus,
    CredentialContext,
    DistributionChange,
    DistributionDescription,
    DistributionStatus,
    ExistingResource,
    HostedZone,
    InvalidationStatus,
    ResourceKind,
    ValidationRecord,
)

logger = structlog.get_logger()

T = TypeVar("T")

TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "PriorRequestNotComplete",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalError",
        "InternalFailure",
        "RequestTimeout",
        "RequestTimeoutException",
        # CloudFront ETag race: re-read the config and try again
        "PreconditionFailed",
    }
)

IN_USE_CODES = frozenset({"ResourceInUseException", "DistributionNotDisabled", "DeleteConflict"})

NOT_FOUND_CODES = frozenset(
    {
        "ResourceNotFoundException",
        "NoSuchDistribution",
        "NoSuchBucket",
        "NoSuchEntity",
        "NoSuchHostedZone",
        "InvalidVpcID.NotFound",
    }
)

CREDENTIAL_CODES = frozenset(
    {"ExpiredToken", "ExpiredTokenException", "InvalidClientTokenId", "UnrecognizedClientException"}
)

DEFAULT_VIEWER_CERTIFICATE: dict[str, Any] = {
    "CloudFrontDefaultCertificate": True,
    "MinimumProtocolVersion": "TLSv1",
}

API_ORIGIN_ID = "lambda-api-origin"
# Managed policies: CachingDisabled and CORS-S3Origin
API_CACHE_POLICY_ID = "4135ea2d-6df8-44a3-9df3-4b5a84be39ad"
API_ORIGIN_REQUEST_POLICY_ID = "88a5eaf4-2fd4-4709-b370-b4c650ea3fcf"
API_METHODS = ["GET", "HEAD", "OPTIONS", "PUT", "POST", "PATCH", "DELETE"]

STACK_GONE_STATUSES = frozenset({"DELETE_COMPLETE"})


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def classify_error(operation: str, exc: Exception) -> StagecraftError:
    """Map a botocore failure onto the orchestrator's error taxonomy."""
    if isinstance(exc, (ProfileNotFound, NoCredentialsError)):
        return CredentialError(str(exc), {"operation": operation})
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientProviderError(str(exc), {"operation": operation})
    if isinstance(exc, ClientError):
        code = error_code(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        details = {"operation": operation, "code": code}
        if code in TRANSIENT_CODES or status >= 500:
            return TransientProviderError(str(exc), details)
        if code in IN_USE_CODES:
            return ResourceStillInUse(str(exc), details)
        if code in NOT_FOUND_CODES:
            return ResourceNotFound(str(exc), details)
        if code in CREDENTIAL_CODES:
            return CredentialError(str(exc), details)
        return ProviderError(str(exc), details)
    # Any other BotoCoreError (SSO token expired, bad config, ...)
    if "token" in type(exc).__name__.lower() or "sso" in type(exc).__name__.lower():
        return CredentialError(str(exc), {"operation": operation})
    return ProviderError(str(exc), {"operation": operation})


class AwsProvisioningAPI:
    """Provisioning API backed by boto3."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: Callable[..., Any] = boto3.Session,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._sessions: dict[str, Any] = {}

    def _client(self, credentials: CredentialContext, service: str, region: str | None = None):
        session = self._sessions.get(credentials.profile)
        if session is None:
            try:
                session = self._session_factory(profile_name=credentials.profile)
            except (ProfileNotFound, BotoCoreError) as exc:
                raise CredentialError(
                    f"Cannot open profile '{credentials.profile}': {exc}",
                    {"role": str(credentials.role)},
                ) from exc
            self._sessions[credentials.profile] = session
        return session.client(service, region_name=region or credentials.region)

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        retrying = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self._settings.provider_max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.provider_backoff_multiplier,
                max=self._settings.provider_backoff_max,
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                try:
                    return fn()
                except (ClientError, BotoCoreError) as exc:
                    classified = classify_error(operation, exc)
                    if isinstance(classified, TransientProviderError):
                        logger.warning(
                            "provider_transient_error",
                            operation=operation,
                            attempt=attempt.retry_state.attempt_number,
                            error=str(exc),
                        )
                    raise classified from exc
        raise AssertionError("unreachable")  # pragma: no cover

    # --- identity / environment --------------------------------------

    def authenticate(self, credentials: CredentialContext) -> str:
        try:
            identity = self._call(
                "sts.get_caller_identity",
                lambda: self._client(credentials, "sts").get_caller_identity(),
            )
        except StagecraftError as exc:
            if isinstance(exc, CredentialError):
                raise
            raise CredentialError(
                f"Authentication failed for {credentials}: {exc.message}", exc.details
            ) from exc
        account_id = identity["Account"]
        logger.debug("authenticated", context=str(credentials), account_id=account_id)
        return account_id

    def region_exists(self, credentials: CredentialContext, region: str) -> bool:
        try:
            response = self._call(
                "ec2.describe_regions",
                lambda: self._client(credentials, "ec2", region).describe_regions(
                    RegionNames=[region]
                ),
            )
        except ProviderError as exc:
            if exc.details.get("code") in {"InvalidParameterValue", "AuthFailure"}:
                return False
            raise
        return bool(response.get("Regions"))

    def vpc_exists(self, credentials: CredentialContext, vpc_id: str, region: str) -> bool:
        try:
            response = self._call(
                "ec2.describe_vpcs",
                lambda: self._client(credentials, "ec2", region).describe_vpcs(VpcIds=[vpc_id]),
            )
        except ResourceNotFound:
            return False
        return bool(response.get("Vpcs"))

    # --- discovery ----------------------------------------------------

    def list_resources(
        self, credentials: CredentialContext, kind: ResourceKind
    ) -> list[ExistingResource]:
        lister = {
            ResourceKind.DISTRIBUTION: self._list_distributions,
            ResourceKind.BUCKET: self._list_buckets,
            ResourceKind.CERTIFICATE: self._list_certificates,
            ResourceKind.FUNCTION: self._list_functions,
            ResourceKind.ROLE: self._list_roles,
            ResourceKind.LOG_GROUP: self._list_log_groups,
        }[kind]
        return self._call(f"list.{kind}", lambda: lister(credentials))

    def _paginate(self, client, operation: str, key_path: tuple[str, ...], **kwargs):
        for page in client.get_paginator(operation).paginate(**kwargs):
            node: Any = page
            for key in key_path:
                node = node.get(key, {}) if isinstance(node, dict) else {}
            yield from node or []

    def _list_distributions(self, credentials: CredentialContext) -> list[ExistingResource]:
        client = self._client(credentials, "cloudfront", "us-east-1")
        return [
            ExistingResource(
                kind=ResourceKind.DISTRIBUTION,
                identifier=item["Id"],
                name=item.get("Comment", ""),
                arn=item.get("ARN"),
                status=item.get("Status"),
                attributes={
                    "domainName": item.get("DomainName"),
                    "certificateArn": item.get("ViewerCertificate", {}).get("ACMCertificateArn"),
                    "aliases": item.get("Aliases", {}).get("Items", []),
                },
            )
            for item in self._paginate(client, "list_distributions", ("DistributionList", "Items"))
        ]

    def _list_buckets(self, credentials: CredentialContext) -> list[ExistingResource]:
        response = self._client(credentials, "s3").list_buckets()
        return [
            ExistingResource(
                kind=ResourceKind.BUCKET,
                identifier=bucket["Name"],
                name=bucket["Name"],
                arn=f"arn:aws:s3:::{bucket['Name']}",
            )
            for bucket in response.get("Buckets", [])
        ]

    def _list_certificates(self, credentials: CredentialContext) -> list[ExistingResource]:
        client = self._client(credentials, "acm", self._settings.certificate_region)
        return [
            ExistingResource(
                kind=ResourceKind.CERTIFICATE,
                identifier=cert["CertificateArn"],
                name=cert.get("DomainName", ""),
                arn=cert["CertificateArn"],
                status=cert.get("Status"),
                attributes={"inUse": cert.get("InUse", False)},
            )
            for cert in self._paginate(client, "list_certificates", ("CertificateSummaryList",))
        ]

    def _list_functions(self, credentials: CredentialContext) -> list[ExistingResource]:
        client = self._client(credentials, "lambda")
        return [
            ExistingResource(
                kind=ResourceKind.FUNCTION,
                identifier=fn["FunctionName"],
                name=fn["FunctionName"],
                arn=fn.get("FunctionArn"),
            )
            for fn in self._paginate(client, "list_functions", ("Functions",))
        ]

    def _list_roles(self, credentials: CredentialContext) -> list[ExistingResource]:
        client = self._client(credentials, "iam")
        return [
            ExistingResource(
                kind=ResourceKind.ROLE,
                identifier=role["RoleName"],
                name=role["RoleName"],
                arn=role.get("Arn"),
            )
            for role in self._paginate(client, "list_roles", ("Roles",))
        ]

    def _list_log_groups(self, credentials: CredentialContext) -> list[ExistingResource]:
        client = self._client(credentials, "logs")
        return [
            ExistingResource(
                kind=ResourceKind.LOG_GROUP,
                identifier=group["logGroupName"],
                name=group["logGroupName"],
                arn=group.get("arn"),
            )
            for group in self._paginate(client, "describe_log_groups", ("logGroups",))
        ]

    # --- certificates / DNS ---------------------------------------------

    def describe_certificate(
        self, credentials: CredentialContext, certificate_arn: str
    ) -> CertificateDescription:
        client = self._client(credentials, "acm", self._settings.certificate_region)
        response = self._call(
            "acm.describe_certificate",
            lambda: client.describe_certificate(CertificateArn=certificate_arn),
        )
        cert = response["Certificate"]
        records = tuple(
            ValidationRecord(
                domain=option["DomainName"],
                name=option["ResourceRecord"]["Name"],
                type=option["ResourceRecord"]["Type"],
                value=option["ResourceRecord"]["Value"],
            )
            for option in cert.get("DomainValidationOptions", [])
            if option.get("ResourceRecord")
        )
        return CertificateDescription(
            arn=certificate_arn,
            status=CertificateStatus(cert["Status"]),
            domains=tuple(cert.get("SubjectAlternativeNames", [cert.get("DomainName", "")])),
            validation_records=records,
            in_use_by=tuple(cert.get("InUseBy", [])),
        )

    def delete_certificate(self, credentials: CredentialContext, certificate_arn: str) -> None:
        client = self._client(credentials, "acm", self._settings.certificate_region)
        self._call(
            "acm.delete_certificate",
            lambda: client.delete_certificate(CertificateArn=certificate_arn),
        )
        logger.info("certificate_deleted", certificate_arn=certificate_arn)

    def find_hosted_zone(self, credentials: CredentialContext, domain: str) -> HostedZone | None:
        client = self._client(credentials, "route53")

        def _zones() -> list[dict[str, Any]]:
            return list(self._paginate(client, "list_hosted_zones", ("HostedZones",)))

        candidate = domain.rstrip(".").lower()
        best: HostedZone | None = None
        for zone in self._call("route53.list_hosted_zones", _zones):
            if zone.get("Config", {}).get("PrivateZone"):
                continue
            zone_name = zone["Name"].rstrip(".").lower()
            if candidate == zone_name or candidate.endswith(f".{zone_name}"):
                if best is None or len(zone_name) > len(best.zone_name):
                    best = HostedZone(
                        domain=domain,
                        zone_id=zone["Id"].split("/")[-1],
                        zone_name=zone_name,
                    )
        return best

    def upsert_validation_record(
        self, credentials: CredentialContext, zone_id: str, record: ValidationRecord
    ) -> str:
        client = self._client(credentials, "route53")
        response = self._call(
            "route53.change_resource_record_sets",
            lambda: client.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={
                    "Comment": f"Certificate validation for {record.domain}",
                    "Changes": [
                        {
                            "Action": "UPSERT",
                            "ResourceRecordSet": {
                                "Name": record.name,
                                "Type": record.type,
                                "TTL": 300,
                                "ResourceRecords": [{"Value": record.value}],
                            },
                        }
                    ],
                },
            ),
        )
        return response["ChangeInfo"]["Id"]

    # --- distributions -----------------------------------------------

    def describe_distribution(
        self, credentials: CredentialContext, distribution_id: str
    ) -> DistributionDescription:
        client = self._client(credentials, "cloudfront", "us-east-1")
        response = self._call(
            "cloudfront.get_distribution", lambda: client.get_distribution(Id=distribution_id)
        )
        distribution = response["Distribution"]
        config = distribution["DistributionConfig"]
        origin = next(
            (o for o in config.get("Origins", {}).get("Items", []) if o["Id"] == API_ORIGIN_ID),
            None,
        )
        return DistributionDescription(
            identifier=distribution["Id"],
            status=DistributionStatus(distribution["Status"]),
            domain_name=distribution["DomainName"],
            enabled=config.get("Enabled", True),
            certificate_arn=config.get("ViewerCertificate", {}).get("ACMCertificateArn"),
            aliases=tuple(config.get("Aliases", {}).get("Items", [])),
            viewer_protocol_policy=config.get("DefaultCacheBehavior", {}).get(
                "ViewerProtocolPolicy", "allow-all"
            ),
            api_origin_domain=origin["DomainName"] if origin else None,
            path_patterns=tuple(
                behavior["PathPattern"]
                for behavior in config.get("CacheBehaviors", {}).get("Items", [])
            ),
        )

    def update_distribution(
        self, credentials: CredentialContext, distribution_id: str, change: DistributionChange
    ) -> None:
        client = self._client(credentials, "cloudfront", "us-east-1")

        # Re-read inside the retried call so a PreconditionFailed picks up the new ETag.
        def _update() -> None:
            current = client.get_distribution_config(Id=distribution_id)
            config = apply_distribution_change(current["DistributionConfig"], change)
            client.update_distribution(
                Id=distribution_id, IfMatch=current["ETag"], DistributionConfig=config
            )

        self._call("cloudfront.update_distribution", _update)
        logger.info("distribution_updated", distribution_id=distribution_id)

    def create_invalidation(
        self, credentials: CredentialContext, distribution_id: str, paths: Sequence[str]
    ) -> str:
        client = self._client(credentials, "cloudfront", "us-east-1")
        # One reference per request; a retried call must not start a second invalidation.
        reference = f"stagecraft-{uuid.uuid4().hex}"
        response = self._call(
            "cloudfront.create_invalidation",
            lambda: client.create_invalidation(
                DistributionId=distribution_id,
                InvalidationBatch={
                    "Paths": {"Quantity": len(paths), "Items": list(paths)},
                    "CallerReference": reference,
                },
            ),
        )
        invalidation_id = response["Invalidation"]["Id"]
        logger.info(
            "invalidation_created",
            distribution_id=distribution_id,
            invalidation_id=invalidation_id,
            paths=list(paths),
        )
        return invalidation_id

    def invalidation_status(
        self, credentials: CredentialContext, distribution_id: str, invalidation_id: str
    ) -> InvalidationStatus:
        client = self._client(credentials, "cloudfront", "us-east-1")
        response = self._call(
            "cloudfront.get_invalidation",
            lambda: client.get_invalidation(DistributionId=distribution_id, Id=invalidation_id),
        )
        return InvalidationStatus(response["Invalidation"]["Status"])

    # --- content / functions ---------------------------------------------

    def upload_object(
        self,
        credentials: CredentialContext,
        bucket: str,
        key: str,
        body: bytes,
        content_type: str,
        cache_control: str | None = None,
    ) -> None:
        client = self._client(credentials, "s3")
        extra = {"CacheControl": cache_control} if cache_control else {}
        self._call(
            "s3.put_object",
            lambda: client.put_object(
                Bucket=bucket, Key=key, Body=body, ContentType=content_type, **extra
            ),
        )

    def empty_bucket(self, credentials: CredentialContext, bucket: str) -> int:
        client = self._client(credentials, "s3")

        def _empty() -> int:
            deleted = 0
            for page in client.get_paginator("list_objects_v2").paginate(Bucket=bucket):
                keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if keys:
                    client.delete_objects(Bucket=bucket, Delete={"Objects": keys, "Quiet": True})
                    deleted += len(keys)
            return deleted

        try:
            return self._call("s3.empty_bucket", _empty)
        except ResourceNotFound:
            return 0

    def stack_exists(self, credentials: CredentialContext, stack_name: str) -> bool:
        client = self._client(credentials, "cloudformation")
        try:
            response = self._call(
                "cloudformation.describe_stacks",
                lambda: client.describe_stacks(StackName=stack_name),
            )
        except ProviderError as exc:
            # CloudFormation reports a missing stack as a generic ValidationError
            if exc.details.get("code") == "ValidationError" and "does not exist" in exc.message:
                return False
            raise
        stacks = response.get("Stacks", [])
        return any(stack.get("StackStatus") not in STACK_GONE_STATUSES for stack in stacks)

    def invoke_function(
        self, credentials: CredentialContext, function_name: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        client = self._client(credentials, "lambda")
        response = self._call(
            "lambda.invoke",
            lambda: client.invoke(
                FunctionName=function_name, Payload=json.dumps(dict(payload)).encode()
            ),
        )
        raw = response["Payload"].read()
        body = json.loads(raw) if raw else {}
        if response.get("FunctionError"):
            raise ProviderError(
                f"Function {function_name} returned an error",
                {"function_error": response["FunctionError"], "payload": body},
            )
        return body if isinstance(body, dict) else {"result": body}

    def function_quotas(self, credentials: CredentialContext) -> dict[str, Any]:
        client = self._client(credentials, "lambda")
        response = self._call("lambda.get_account_settings", client.get_account_settings)
        limits = response.get("AccountLimit", {})
        return {
            "concurrentExecutions": limits.get("ConcurrentExecutions"),
            "unreservedConcurrentExecutions": limits.get("UnreservedConcurrentExecutions"),
            "codeSizeUnzipped": limits.get("CodeSizeUnzipped"),
        }


def apply_distribution_change(config: dict[str, Any], change: DistributionChange) -> dict[str, Any]:
    """Return a copy of a CloudFront DistributionConfig with ``change`` applied."""
    updated = copy.deepcopy(config)
    if change.aliases is not None:
        updated["Aliases"] = {"Quantity": len(change.aliases), "Items": list(change.aliases)}
    if change.use_default_certificate:
        updated["ViewerCertificate"] = dict(DEFAULT_VIEWER_CERTIFICATE)
    elif change.certificate_arn:
        updated["ViewerCertificate"] = {
            "ACMCertificateArn": change.certificate_arn,
            "SSLSupportMethod": "sni-only",
            "MinimumProtocolVersion": "TLSv1.2_2021",
        }
    if change.viewer_protocol_policy is not None:
        updated.setdefault("DefaultCacheBehavior", {})[
            "ViewerProtocolPolicy"
        ] = change.viewer_protocol_policy
    if change.enabled is not None:
        updated["Enabled"] = change.enabled
    if change.api_origin_domain or change.remove_api_route:
        origins = [o for o in _items(updated, "Origins") if o["Id"] != API_ORIGIN_ID]
        behaviors = [
            b for b in _items(updated, "CacheBehaviors") if b["PathPattern"] != API_PATH_PATTERN
        ]
        if change.api_origin_domain:
            origins.append(api_origin(change.api_origin_domain))
            # Ordered behaviors: the API route must win over any broader pattern
            behaviors.insert(0, api_cache_behavior())
        updated["Origins"] = _quantified(origins)
        updated["CacheBehaviors"] = _quantified(behaviors)
    return updated


def _items(config: dict[str, Any], key: str) -> list[dict[str, Any]]:
    return list(config.get(key, {}).get("Items") or [])


def _quantified(items: list[dict[str, Any]]) -> dict[str, Any]:
    if not items:
        return {"Quantity": 0}
    return {"Quantity": len(items), "Items": items}


def api_origin(domain: str) -> dict[str, Any]:
    """Custom origin for a function URL host."""
    return {
        "Id": API_ORIGIN_ID,
        "DomainName": domain,
        "OriginPath": "",
        "CustomHeaders": {"Quantity": 0},
        "CustomOriginConfig": {
            "HTTPPort": 80,
            "HTTPSPort": 443,
            "OriginProtocolPolicy": "https-only",
            "OriginSslProtocols": {"Quantity": 1, "Items": ["TLSv1.2"]},
            "OriginReadTimeout": 30,
            "OriginKeepaliveTimeout": 5,
        },
        "ConnectionAttempts": 3,
        "ConnectionTimeout": 10,
    }


def api_cache_behavior() -> dict[str, Any]:
    return {
        "PathPattern": API_PATH_PATTERN,
        "TargetOriginId": API_ORIGIN_ID,
        "ViewerProtocolPolicy": "redirect-to-https",
        "AllowedMethods": {
            "Quantity": len(API_METHODS),
            "Items": list(API_METHODS),
            "CachedMethods": {"Quantity": 2, "Items": ["GET", "HEAD"]},
        },
        "CachePolicyId": API_CACHE_POLICY_ID,
        "OriginRequestPolicyId": API_ORIGIN_REQUEST_POLICY_ID,
        "Compress": True,
        "SmoothStreaming": False,
        "FieldLevelEncryptionId": "",
        "TrustedSigners": {"Enabled": False, "Quantity": 0},
        "TrustedKeyGroups": {"Enabled": False, "Quantity": 0},
        "LambdaFunctionAssociations": {"Quantity": 0},
        "FunctionAssociations": {"Quantity": 0},
    }
