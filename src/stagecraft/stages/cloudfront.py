"""
Stage A: static content distribution.

Creates a storage bucket fronted by a content distribution, uploads the
sample page, invalidates cached copies at the edge and checks that the
distribution serves it. Creation and rollback are both refused while any
distribution in the target account is still propagating.
"""

from __future__ import annotations

import structlog

from stagecraft.artifacts.models import CloudFrontDiscovery, CloudFrontInputs, CloudFrontOutputs
from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import ConfigurationError, ConvergencePending
from stagecraft.provisioning.base import (
    CredentialSet,
    DistributionChange,
    DistributionStatus,
    ResourceKind,
)
from stagecraft.stages.base import (
    ConflictScope,
    RollbackAction,
    RollbackActionKind,
    Stage,
    StageContext,
    Step,
    credentials_from,
    has_facts,
    is_valid,
    parse_model,
    require_outputs,
)
from stagecraft.stages.content import invalidate, upload_bundle, wait_for_invalidation
from stagecraft.templates.engine import StackTemplate

logger = structlog.get_logger()

TEMPLATE = StackTemplate(
    directory="a-cloudfront",
    stack_name="StageACloudFrontStack",
    context_namespace="stage-a-cloudfront",
)

STACK_OUTPUTS = {
    "DistributionId": "distributionId",
    "DistributionDomainName": "distributionDomainName",
    "DistributionUrl": "distributionUrl",
    "BucketName": "bucketName",
}


def _params_match(ctx: StageContext) -> bool:
    saved = ctx.get(ArtifactKind.INPUTS) or {}
    return all(saved.get(key) == value for key, value in ctx.params.items() if value)


def _inputs_complete(ctx: StageContext) -> bool:
    return is_valid(ctx, ArtifactKind.INPUTS, CloudFrontInputs) and _params_match(ctx)


def _gather_inputs(ctx: StageContext) -> None:
    saved = ctx.get(ArtifactKind.INPUTS) or {}
    merged = {**saved, **{key: value for key, value in ctx.params.items() if value}}
    inputs: CloudFrontInputs = parse_model(CloudFrontInputs, merged, "stage A inputs")

    previous_prefix = saved.get("distributionPrefix")
    changed = previous_prefix and previous_prefix != inputs.distribution_prefix
    if changed and ctx.facts("infrastructure"):
        raise ConfigurationError(
            f"Stage A was already deployed with prefix '{previous_prefix}'; "
            "roll it back before changing the prefix",
            {"prefix": inputs.distribution_prefix},
        )

    target = ctx.credentials.target
    if not ctx.api.region_exists(target, inputs.target_region):
        raise ConfigurationError(
            f"Region {inputs.target_region} is not available to profile {target.profile}"
        )
    if not ctx.api.vpc_exists(target, inputs.target_vpc_id, inputs.target_region):
        raise ConfigurationError(
            f"VPC {inputs.target_vpc_id} not found in {inputs.target_region}",
            {"profile": target.profile},
        )
    ctx.save(ArtifactKind.INPUTS, inputs)


def _discover(ctx: StageContext) -> None:
    existing = ctx.get(ArtifactKind.DISCOVERY) or {}
    discovery = CloudFrontDiscovery.model_validate(
        {
            **existing,
            "infrastructureAccountId": ctx.credentials.infra.account_id,
            "targetAccountId": ctx.credentials.target.account_id,
        }
    )
    ctx.save(ArtifactKind.DISCOVERY, discovery)


def _no_distribution_in_progress(ctx: StageContext) -> None:
    busy = [
        resource.identifier
        for resource in ctx.api.list_resources(ctx.credentials.target, ResourceKind.DISTRIBUTION)
        if resource.status == DistributionStatus.IN_PROGRESS
    ]
    if busy:
        raise ConvergencePending(
            f"{len(busy)} distribution(s) in the target account are still InProgress",
            {"distributions": busy},
        )


def _conflict_scope(ctx: StageContext) -> ConflictScope:
    inputs = ctx.load(ArtifactKind.INPUTS)
    return ConflictScope(
        names=(inputs["distributionPrefix"],),
        kinds=(ResourceKind.DISTRIBUTION, ResourceKind.BUCKET),
    )


def _deploy_infrastructure(ctx: StageContext) -> None:
    inputs: CloudFrontInputs = ctx.load_model(ArtifactKind.INPUTS, CloudFrontInputs)
    target = ctx.credentials.target
    outputs = ctx.templates.deploy(
        TEMPLATE,
        target,
        {
            "distributionPrefix": inputs.distribution_prefix,
            "targetRegion": inputs.target_region,
            "targetProfile": inputs.target_profile,
            "targetAccountId": target.account_id,
            "targetVpcId": inputs.target_vpc_id,
        },
    )
    facts = require_outputs(outputs, STACK_OUTPUTS, TEMPLATE.stack_name)
    if outputs.get("BucketArn"):
        facts["bucketArn"] = outputs["BucketArn"]
    ctx.record("infrastructure", **facts)


def _upload_content(ctx: StageContext) -> None:
    source = ctx.settings.content_dir / ctx.settings.content_app
    facts = ctx.facts("infrastructure")
    bucket = facts["bucketName"]
    uploaded = upload_bundle(ctx, source, bucket)
    invalidation_id = invalidate(ctx, facts["distributionId"])
    ctx.record("content", uploaded=uploaded, bucket=bucket, invalidationId=invalidation_id)


def _validate(ctx: StageContext) -> None:
    facts = ctx.facts("infrastructure")
    target = ctx.credentials.target
    distribution_id = facts["distributionId"]

    probe = ctx.prober.wait_for(
        lambda: ctx.api.describe_distribution(target, distribution_id).status,
        {DistributionStatus.DEPLOYED},
        interval=ctx.settings.distribution_poll_interval,
        max_attempts=ctx.settings.distribution_max_attempts,
        label=f"distribution {distribution_id}",
    )
    if not probe.succeeded:
        raise ConvergencePending(
            f"Distribution {distribution_id} is still {probe.status}",
            {"attempts": probe.attempts},
        )

    content = ctx.facts("content")
    if content.get("invalidationId"):
        wait_for_invalidation(ctx, distribution_id, content["invalidationId"])

    check = ctx.checker.check(facts["distributionUrl"], expect_text=ctx.settings.content_marker)
    if not check.ok:
        raise ConvergencePending(
            f"{check.url} is not serving the expected content yet: {check.detail}"
        )
    ctx.record(
        "validation",
        distributionStatus=str(probe.status),
        httpStatus=check.status_code,
    )


def _build_outputs(ctx: StageContext) -> CloudFrontOutputs:
    inputs = ctx.load(ArtifactKind.INPUTS)
    discovery = ctx.load(ArtifactKind.DISCOVERY)
    facts = ctx.facts("infrastructure")
    return CloudFrontOutputs.model_validate(
        {
            **inputs,
            "infrastructureAccountId": discovery["infrastructureAccountId"],
            "targetAccountId": discovery["targetAccountId"],
            **facts,
        }
    )


def _resolve_credentials(ctx: StageContext) -> CredentialSet:
    declared = credentials_from(ctx.params) or credentials_from(ctx.get(ArtifactKind.INPUTS))
    if declared is None:
        raise ConfigurationError(
            "Stage A needs both --infraprofile and --targetprofile on its first run"
        )
    return declared


def _distribution_id(ctx: StageContext) -> str | None:
    return ctx.facts("infrastructure").get("distributionId") or ctx.store.field(
        "a", ArtifactKind.OUTPUTS, "distributionId"
    )


def _bucket_name(ctx: StageContext) -> str | None:
    return ctx.facts("infrastructure").get("bucketName") or ctx.store.field(
        "a", ArtifactKind.OUTPUTS, "bucketName"
    )


def _disable_distribution(ctx: StageContext) -> None:
    ctx.api.update_distribution(
        ctx.credentials.target, _distribution_id(ctx), DistributionChange(enabled=False)
    )


def _distribution_status(ctx: StageContext) -> DistributionStatus:
    return ctx.api.describe_distribution(ctx.credentials.target, _distribution_id(ctx)).status


def _empty_bucket(ctx: StageContext) -> None:
    removed = ctx.api.empty_bucket(ctx.credentials.target, _bucket_name(ctx))
    logger.info("bucket_emptied", bucket=_bucket_name(ctx), objects=removed)


def _destroy_stack(ctx: StageContext) -> None:
    ctx.templates.destroy(TEMPLATE, ctx.credentials.target)


def _rollback_plan(ctx: StageContext) -> list[RollbackAction]:
    return [
        RollbackAction(
            kind=RollbackActionKind.DETACH,
            description="disable distribution",
            run=_disable_distribution,
            resource_kind=ResourceKind.DISTRIBUTION,
            needed=lambda c: _distribution_id(c) is not None,
            settled=_distribution_status,
            settled_states=frozenset({DistributionStatus.DEPLOYED}),
        ),
        RollbackAction(
            kind=RollbackActionKind.DELETE,
            description="delete bucket contents",
            run=_empty_bucket,
            resource_kind=ResourceKind.BUCKET,
            needed=lambda c: _bucket_name(c) is not None,
        ),
        RollbackAction(
            kind=RollbackActionKind.TEARDOWN,
            description=f"destroy stack {TEMPLATE.stack_name}",
            run=_destroy_stack,
            needed=lambda c: c.api.stack_exists(c.credentials.target, TEMPLATE.stack_name),
        ),
    ]


def _live_status(ctx: StageContext) -> dict[str, str]:
    distribution_id = _distribution_id(ctx)
    if not distribution_id:
        return {}
    target = _resolve_credentials(ctx).target
    description = ctx.api.describe_distribution(target, distribution_id)
    return {
        "distribution": f"{distribution_id} {description.status}",
        "enabled": str(description.enabled).lower(),
    }


STAGE = Stage(
    letter="a",
    name="cloudfront",
    title="Static content distribution",
    steps=(
        Step(
            "inputs",
            "Validate parameters and target environment",
            _inputs_complete,
            _gather_inputs,
        ),
        Step(
            "discovery",
            "Record account identifiers",
            lambda ctx: is_valid(ctx, ArtifactKind.DISCOVERY, CloudFrontDiscovery),
            _discover,
        ),
        Step(
            "infrastructure",
            "Deploy bucket and distribution",
            has_facts("infrastructure", *STACK_OUTPUTS.values()),
            _deploy_infrastructure,
            creates_resources=True,
        ),
        Step(
            "content",
            "Upload sample content and invalidate the edge cache",
            has_facts("content", "uploaded"),
            _upload_content,
        ),
        Step(
            "validation",
            "Wait for propagation and fetch the page",
            has_facts("validation", "distributionStatus"),
            _validate,
        ),
    ),
    resolve_credentials=_resolve_credentials,
    build_outputs=_build_outputs,
    rollback_plan=_rollback_plan,
    conflict_scope=_conflict_scope,
    preflight=_no_distribution_in_progress,
    live_status=_live_status,
)
