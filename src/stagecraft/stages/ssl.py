"""
Stage B: TLS certificate for the distribution.

Issues a certificate in the target account, proves domain control with DNS
records written to hosted zones in the infrastructure account, then attaches
the certificate and the custom domains to the stage A distribution.

Validation records are left in place on rollback.
"""

from __future__ import annotations

import structlog

from stagecraft.artifacts.models import HostedZoneEntry, SslDiscovery, SslInputs, SslOutputs
from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import (
    ConfigurationError,
    ConvergencePending,
    FatalStepError,
    ResourceStillInUse,
)
from stagecraft.provisioning.base import (
    CERTIFICATE_FAILED_STATES,
    CertificateDescription,
    CertificateStatus,
    CredentialContext,
    CredentialSet,
    DistributionChange,
    DistributionStatus,
    ResourceKind,
    ValidationRecord,
)
from stagecraft.stages.base import (
    ConflictScope,
    RollbackAction,
    RollbackActionKind,
    Stage,
    StageContext,
    Step,
    forwarded_credentials,
    has_facts,
    is_valid,
    parse_model,
    require_outputs,
)
from stagecraft.templates.engine import StackTemplate

logger = structlog.get_logger()

TEMPLATE = StackTemplate(
    directory="b-ssl",
    stack_name="StageBSslCertificateStack",
    context_namespace="stage-b-ssl",
)

STACK_OUTPUTS = {"CertificateArnOutput": "certificateArn"}

FORWARDED_FROM_A = (
    "distributionId",
    "distributionDomainName",
    "distributionUrl",
    "bucketName",
    "infrastructureProfile",
    "targetProfile",
    "distributionPrefix",
    "targetRegion",
    "targetVpcId",
)

HTTPS_POLICY = "redirect-to-https"


def _certificate_context(ctx: StageContext) -> CredentialContext:
    return ctx.credentials.target.in_region(ctx.settings.certificate_region)


def _requested_domains(ctx: StageContext) -> list[str] | None:
    domains = ctx.params.get("domains")
    if not domains:
        return None
    if isinstance(domains, str):
        domains = domains.split(",")
    return [d.strip() for d in domains if d and d.strip()]


def _inputs_complete(ctx: StageContext) -> bool:
    if not is_valid(ctx, ArtifactKind.INPUTS, SslInputs):
        return False
    requested = _requested_domains(ctx)
    if requested is None:
        return True
    saved = ctx.load(ArtifactKind.INPUTS)
    normalized = list(dict.fromkeys(d.lower().rstrip(".") for d in requested))
    return saved["domains"] == normalized


def _gather_inputs(ctx: StageContext) -> None:
    saved = ctx.get(ArtifactKind.INPUTS) or {}
    domains = _requested_domains(ctx) or saved.get("domains")
    if not domains:
        raise ConfigurationError("Stage B needs at least one domain (--domains example.com)")

    forwarded = ctx.prerequisites.get("a", {})
    inputs: SslInputs = parse_model(
        SslInputs, {**saved, **forwarded, "domains": domains}, "stage B inputs"
    )

    previous = saved.get("domains")
    if previous and previous != inputs.domains and ctx.facts("certificate"):
        raise ConfigurationError(
            f"A certificate was already requested for {', '.join(previous)}; "
            "roll back stage B before changing the domains",
            {"domains": inputs.domains},
        )
    ctx.save(ArtifactKind.INPUTS, inputs)


def _discover(ctx: StageContext) -> None:
    inputs: SslInputs = ctx.load_model(ArtifactKind.INPUTS, SslInputs)
    infra = ctx.credentials.infra

    zones: list[HostedZoneEntry] = []
    for domain in inputs.domains:
        zone = ctx.api.find_hosted_zone(infra, domain)
        if zone is None:
            raise ConfigurationError(
                f"No public hosted zone for {domain} in the infrastructure account",
                {"profile": infra.profile},
            )
        zones.append(
            HostedZoneEntry(domain=domain, zone_id=zone.zone_id, zone_name=zone.zone_name)
        )
        logger.debug("hosted_zone_found", domain=domain, zone=zone.zone_name)

    existing = [
        resource.arn or resource.identifier
        for resource in ctx.api.list_resources(ctx.credentials.target, ResourceKind.CERTIFICATE)
        if resource.name in inputs.domains
    ]

    previous = ctx.get(ArtifactKind.DISCOVERY) or {}
    discovery = SslDiscovery.model_validate(
        {
            **previous,
            "infrastructureAccountId": infra.account_id,
            "targetAccountId": ctx.credentials.target.account_id,
            "certificateRegion": ctx.settings.certificate_region,
            "hostedZones": [zone.to_document() for zone in zones],
            "existingCertificates": existing,
        }
    )
    ctx.save(ArtifactKind.DISCOVERY, discovery)


def _conflict_scope(ctx: StageContext) -> ConflictScope:
    inputs = ctx.load(ArtifactKind.INPUTS)
    return ConflictScope(names=tuple(inputs["domains"]), kinds=(ResourceKind.CERTIFICATE,))


def _request_certificate(ctx: StageContext) -> None:
    inputs: SslInputs = ctx.load_model(ArtifactKind.INPUTS, SslInputs)
    target = _certificate_context(ctx)
    outputs = ctx.templates.deploy(
        TEMPLATE,
        target,
        {
            "domains": inputs.domains,
            "distributionId": inputs.distribution_id,
            "distributionPrefix": inputs.distribution_prefix,
            "targetAccountId": target.account_id,
        },
    )
    facts = require_outputs(outputs, STACK_OUTPUTS, TEMPLATE.stack_name)
    ctx.record("certificate", **facts)


def _certificate_arn(ctx: StageContext) -> str | None:
    return ctx.facts("certificate").get("certificateArn") or ctx.store.field(
        "b", ArtifactKind.OUTPUTS, "certificateArn"
    )


def _validation_records(ctx: StageContext, arn: str) -> tuple[ValidationRecord, ...]:
    target = _certificate_context(ctx)
    records: tuple[ValidationRecord, ...] = ()

    def describe() -> bool:
        nonlocal records
        records = ctx.api.describe_certificate(target, arn).validation_records
        return bool(records)

    probe = ctx.prober.wait_for(
        describe,
        {True},
        interval=ctx.settings.certificate_poll_interval,
        max_attempts=ctx.settings.certificate_max_attempts,
        label=f"validation records for {arn}",
    )
    if not probe.succeeded:
        raise ConvergencePending(f"Certificate {arn} has not published its validation records yet")
    return records


def _write_validation_records(ctx: StageContext) -> None:
    arn = ctx.facts("certificate")["certificateArn"]
    discovery: SslDiscovery = ctx.load_model(ArtifactKind.DISCOVERY, SslDiscovery)
    infra = ctx.credentials.infra

    written: dict[str, dict[str, str]] = {}
    for record in _validation_records(ctx, arn):
        if record.name in written:
            continue
        zone = discovery.zone_for(record.domain)
        if zone is None:
            raise FatalStepError(
                f"No hosted zone recorded for {record.domain}; re-run discovery",
                {"domain": record.domain},
            )
        ctx.api.upsert_validation_record(infra, zone.zone_id, record)
        written[record.name] = {
            "domain": record.domain,
            "name": record.name,
            "type": record.type,
            "value": record.value,
            "zoneId": zone.zone_id,
        }
        logger.info("validation_record_upserted", domain=record.domain, zone=zone.zone_name)

    target = _certificate_context(ctx)
    probe = ctx.prober.wait_for(
        lambda: ctx.api.describe_certificate(target, arn).status,
        {CertificateStatus.ISSUED},
        CERTIFICATE_FAILED_STATES,
        interval=ctx.settings.certificate_poll_interval,
        max_attempts=ctx.settings.certificate_max_attempts,
        label=f"certificate {arn}",
    )
    if probe.failed:
        raise FatalStepError(
            f"Certificate {arn} entered {probe.status}; request a new certificate",
            {"status": str(probe.status)},
        )
    status = probe.status if probe.succeeded else CertificateStatus.PENDING_VALIDATION
    if probe.timed_out:
        logger.warning("certificate_not_issued_yet", certificate_arn=arn, status=str(probe.status))

    ctx.record(
        "dns",
        validationRecords=list(written.values()),
        certificateStatus=str(status),
    )


def _require_issued(ctx: StageContext, arn: str) -> CertificateDescription:
    certificate = ctx.api.describe_certificate(_certificate_context(ctx), arn)
    if certificate.status in CERTIFICATE_FAILED_STATES:
        raise FatalStepError(
            f"Certificate {arn} is {certificate.status}; "
            "request a new certificate or roll back stage B",
            {"status": str(certificate.status)},
        )
    if certificate.status != CertificateStatus.ISSUED:
        raise ConvergencePending(
            f"Certificate {arn} is {certificate.status}; DNS validation has not completed",
            {"status": str(certificate.status)},
        )
    return certificate


def _attach_certificate(ctx: StageContext) -> None:
    inputs: SslInputs = ctx.load_model(ArtifactKind.INPUTS, SslInputs)
    arn = ctx.facts("certificate")["certificateArn"]

    _require_issued(ctx, arn)

    target = ctx.credentials.target
    ctx.api.update_distribution(
        target,
        inputs.distribution_id,
        DistributionChange(
            aliases=tuple(inputs.domains),
            certificate_arn=arn,
            viewer_protocol_policy=HTTPS_POLICY,
        ),
    )
    probe = ctx.prober.wait_for(
        lambda: ctx.api.describe_distribution(target, inputs.distribution_id).status,
        {DistributionStatus.DEPLOYED},
        interval=ctx.settings.distribution_poll_interval,
        max_attempts=ctx.settings.distribution_max_attempts,
        label=f"distribution {inputs.distribution_id}",
    )
    if probe.timed_out:
        logger.warning("distribution_still_propagating", distribution_id=inputs.distribution_id)
    ctx.record(
        "attach",
        attached=True,
        distributionStatus=str(probe.status),
        certificateArn=arn,
    )


def _validate(ctx: StageContext) -> None:
    inputs: SslInputs = ctx.load_model(ArtifactKind.INPUTS, SslInputs)
    arn = ctx.facts("certificate")["certificateArn"]

    certificate = _require_issued(ctx, arn)

    distribution = ctx.api.describe_distribution(ctx.credentials.target, inputs.distribution_id)
    if distribution.certificate_arn != arn or set(distribution.aliases) != set(inputs.domains):
        raise ConvergencePending(
            f"Distribution {inputs.distribution_id} does not serve the certificate yet",
            {"aliases": list(distribution.aliases)},
        )

    url = inputs.distribution_url or f"https://{distribution.domain_name}"
    url = url.replace("http://", "https://", 1)
    check = ctx.checker.check(url)
    if not check.ok:
        raise ConvergencePending(f"{url} is not reachable over HTTPS yet: {check.detail}")

    custom = {}
    for domain in inputs.domains:
        result = ctx.checker.check(f"https://{domain}")
        custom[domain] = result.status_code if result.ok else result.detail
        if not result.ok:
            logger.warning("custom_domain_unreachable", domain=domain, detail=result.detail)

    ctx.record(
        "validation",
        certificateStatus=str(certificate.status),
        httpStatus=check.status_code,
        customDomains=custom,
    )


def _build_outputs(ctx: StageContext) -> SslOutputs:
    inputs = ctx.load(ArtifactKind.INPUTS)
    discovery = ctx.load(ArtifactKind.DISCOVERY)
    return SslOutputs.model_validate(
        {
            **inputs,
            "infrastructureAccountId": discovery["infrastructureAccountId"],
            "targetAccountId": discovery["targetAccountId"],
            "certificateArn": ctx.facts("certificate")["certificateArn"],
            "certificateStatus": ctx.facts("validation")["certificateStatus"],
            "customDomainUrls": [f"https://{domain}" for domain in inputs["domains"]],
        }
    )


def _resolve_credentials(ctx: StageContext) -> CredentialSet:
    return forwarded_credentials(ctx, "a")


def _distribution_id(ctx: StageContext) -> str | None:
    inputs = ctx.get(ArtifactKind.INPUTS) or {}
    return inputs.get("distributionId") or ctx.store.field(
        "a", ArtifactKind.OUTPUTS, "distributionId"
    )


def _detach_certificate(ctx: StageContext) -> None:
    target = ctx.credentials.target
    distribution_id = _distribution_id(ctx)
    current = ctx.api.describe_distribution(target, distribution_id)
    if not current.aliases and current.certificate_arn is None:
        logger.info("distribution_already_reverted", distribution_id=distribution_id)
        return
    ctx.api.update_distribution(
        target,
        distribution_id,
        DistributionChange(
            aliases=(), use_default_certificate=True, viewer_protocol_policy="allow-all"
        ),
    )


def _distribution_status(ctx: StageContext) -> DistributionStatus:
    return ctx.api.describe_distribution(ctx.credentials.target, _distribution_id(ctx)).status


def _delete_certificate(ctx: StageContext) -> None:
    arn = _certificate_arn(ctx)
    target = _certificate_context(ctx)
    certificate = ctx.api.describe_certificate(target, arn)
    if certificate.in_use_by:
        raise ResourceStillInUse(
            f"Certificate {arn} is still referenced",
            {"in_use_by": list(certificate.in_use_by)},
        )
    ctx.api.delete_certificate(target, arn)


def _destroy_stack(ctx: StageContext) -> None:
    ctx.templates.destroy(TEMPLATE, _certificate_context(ctx))


def _rollback_plan(ctx: StageContext) -> list[RollbackAction]:
    return [
        RollbackAction(
            kind=RollbackActionKind.DETACH,
            description="revert distribution to the default certificate",
            run=_detach_certificate,
            resource_kind=ResourceKind.CERTIFICATE,
            needed=lambda c: _distribution_id(c) is not None and _certificate_arn(c) is not None,
            settled=_distribution_status,
            settled_states=frozenset({DistributionStatus.DEPLOYED}),
        ),
        RollbackAction(
            kind=RollbackActionKind.DELETE,
            description="delete certificate",
            run=_delete_certificate,
            resource_kind=ResourceKind.CERTIFICATE,
            needed=lambda c: _certificate_arn(c) is not None,
        ),
        RollbackAction(
            kind=RollbackActionKind.TEARDOWN,
            description=f"destroy stack {TEMPLATE.stack_name}",
            run=_destroy_stack,
            needed=lambda c: c.api.stack_exists(_certificate_context(c), TEMPLATE.stack_name),
        ),
    ]


def _retained_records(ctx: StageContext) -> list[str]:
    records = ctx.facts("dns").get("validationRecords") or []
    return [f"{record['type']} {record['name']} (zone {record['zoneId']})" for record in records]


def _live_status(ctx: StageContext) -> dict[str, str]:
    arn = _certificate_arn(ctx)
    if not arn:
        return {}
    target = _resolve_credentials(ctx).target
    certificate = ctx.api.describe_certificate(
        target.in_region(ctx.settings.certificate_region), arn
    )
    status = {"certificate": f"{arn} {certificate.status}"}
    distribution_id = _distribution_id(ctx)
    if distribution_id:
        distribution = ctx.api.describe_distribution(target, distribution_id)
        status["aliases"] = ", ".join(distribution.aliases) or "(none)"
        status["attached"] = str(distribution.certificate_arn == arn).lower()
    return status


STAGE = Stage(
    letter="b",
    name="ssl",
    title="TLS certificate and custom domains",
    steps=(
        Step("inputs", "Validate domains and stage A outputs", _inputs_complete, _gather_inputs),
        Step(
            "discovery",
            "Locate hosted zones and existing certificates",
            lambda ctx: is_valid(ctx, ArtifactKind.DISCOVERY, SslDiscovery),
            _discover,
        ),
        Step(
            "certificate",
            "Request the certificate",
            has_facts("certificate", *STACK_OUTPUTS.values()),
            _request_certificate,
            creates_resources=True,
        ),
        Step(
            "dns",
            "Write validation records and wait for issuance",
            has_facts("dns", "certificateStatus"),
            _write_validation_records,
        ),
        Step(
            "attach",
            "Attach certificate and domains to the distribution",
            has_facts("attach", "attached"),
            _attach_certificate,
            creates_resources=True,
        ),
        Step(
            "validation",
            "Check the certificate and HTTPS endpoints",
            has_facts("validation", "certificateStatus"),
            _validate,
        ),
    ),
    resolve_credentials=_resolve_credentials,
    build_outputs=_build_outputs,
    rollback_plan=_rollback_plan,
    prerequisites={"a": FORWARDED_FROM_A},
    conflict_scope=_conflict_scope,
    live_status=_live_status,
    retained_on_rollback=_retained_records,
    fallback="a",
)
