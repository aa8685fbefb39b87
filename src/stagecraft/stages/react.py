"""
Stage D: single-page application on the existing distribution.

Deploys the supporting stack (deployment role, log group), uploads the
prebuilt app bundle with per-file cache headers in place of the stage A
sample page, then invalidates the edge cache. Rollback empties the bucket,
tears the stack down and puts the stage A sample page back. In-flight
invalidations cannot be cancelled and are left to finish.
"""

from __future__ import annotations

import structlog

from stagecraft.artifacts.models import ReactDiscovery, ReactInputs, ReactOutputs
from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import ConvergencePending
from stagecraft.provisioning.base import CredentialSet, ResourceKind
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
from stagecraft.stages.content import (
    bundle_files,
    built_bundle,
    invalidate,
    spa_cache_policy,
    upload_bundle,
    wait_for_invalidation,
)
from stagecraft.templates.engine import StackTemplate

logger = structlog.get_logger()

TEMPLATE = StackTemplate(
    directory="d-react",
    stack_name="StageDReactStack",
    context_namespace="stage-d-react",
)

STACK_OUTPUTS = {
    "ReactDeploymentRoleArn": "deploymentRoleArn",
    "ReactLogGroupName": "reactLogGroupName",
}

# Mount point every bundled index.html carries
APP_MARKER = 'id="root"'

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
FORWARDED_FROM_B = ("certificateArn", "domains")
FORWARDED_FROM_C = ("lambdaFunctionName", "lambdaFunctionArn", "functionUrl")


def _gather_inputs(ctx: StageContext) -> None:
    forwarded = {
        **ctx.prerequisites.get("a", {}),
        **ctx.prerequisites.get("b", {}),
        **ctx.prerequisites.get("c", {}),
    }
    domains = forwarded.get("domains") or []
    forwarded["primaryDomain"] = domains[0] if domains else None
    inputs = parse_model(ReactInputs, forwarded, "stage D inputs")
    ctx.save(ArtifactKind.INPUTS, inputs)


def _discover(ctx: StageContext) -> None:
    source = built_bundle(ctx.settings, ctx.settings.react_app)
    files = bundle_files(source)
    previous = ctx.get(ArtifactKind.DISCOVERY) or {}
    discovery = ReactDiscovery.model_validate(
        {
            **previous,
            "infrastructureAccountId": ctx.credentials.infra.account_id,
            "targetAccountId": ctx.credentials.target.account_id,
            "bundlePath": str(source),
            "bundleFiles": len(files),
        }
    )
    ctx.save(ArtifactKind.DISCOVERY, discovery)


def _conflict_scope(ctx: StageContext) -> ConflictScope:
    inputs = ctx.load(ArtifactKind.INPUTS)
    return ConflictScope(
        names=(f"{inputs['distributionPrefix']}-react",),
        kinds=(ResourceKind.ROLE, ResourceKind.LOG_GROUP),
    )


def _deploy_infrastructure(ctx: StageContext) -> None:
    inputs: ReactInputs = ctx.load_model(ArtifactKind.INPUTS, ReactInputs)
    credentials = ctx.credentials
    outputs = ctx.templates.deploy(
        TEMPLATE,
        credentials.target,
        {
            "distributionPrefix": inputs.distribution_prefix,
            "targetRegion": inputs.target_region,
            "targetProfile": inputs.target_profile,
            "infrastructureProfile": inputs.infrastructure_profile,
            "targetAccountId": credentials.target.account_id,
            "infrastructureAccountId": credentials.infra.account_id,
            "targetVpcId": inputs.target_vpc_id,
            "distributionId": inputs.distribution_id,
            "bucketName": inputs.bucket_name,
            "primaryDomain": inputs.primary_domain,
        },
    )
    ctx.record("infrastructure", **require_outputs(outputs, STACK_OUTPUTS, TEMPLATE.stack_name))


def _upload_content(ctx: StageContext) -> None:
    inputs: ReactInputs = ctx.load_model(ArtifactKind.INPUTS, ReactInputs)
    source = built_bundle(ctx.settings, ctx.settings.react_app)
    uploaded = upload_bundle(ctx, source, inputs.bucket_name, spa_cache_policy)
    invalidation_id = invalidate(ctx, inputs.distribution_id)
    ctx.record("content", uploaded=uploaded, invalidationId=invalidation_id)


def _validate(ctx: StageContext) -> None:
    inputs: ReactInputs = ctx.load_model(ArtifactKind.INPUTS, ReactInputs)
    wait_for_invalidation(ctx, inputs.distribution_id, ctx.facts("content")["invalidationId"])

    check = ctx.checker.check(inputs.distribution_url, expect_text=APP_MARKER)
    if not check.ok:
        raise ConvergencePending(f"{check.url} is not serving the app yet: {check.detail}")

    primary = ctx.checker.check(f"https://{inputs.primary_domain}", expect_text=APP_MARKER)
    if not primary.ok:
        logger.warning("custom_domain_unreachable", domain=inputs.primary_domain)
    ctx.record(
        "validation",
        httpStatus=check.status_code,
        primaryDomain=primary.status_code if primary.ok else primary.detail,
    )


def _build_outputs(ctx: StageContext) -> ReactOutputs:
    inputs = ctx.load(ArtifactKind.INPUTS)
    discovery = ctx.load(ArtifactKind.DISCOVERY)
    return ReactOutputs.model_validate(
        {
            **inputs,
            "infrastructureAccountId": discovery["infrastructureAccountId"],
            "targetAccountId": discovery["targetAccountId"],
            **ctx.facts("infrastructure"),
            "invalidationId": ctx.facts("content")["invalidationId"],
            "applicationUrls": [inputs["distributionUrl"], f"https://{inputs['primaryDomain']}"],
        }
    )


def _resolve_credentials(ctx: StageContext) -> CredentialSet:
    return forwarded_credentials(ctx, "c", "b", "a")


def _bucket_name(ctx: StageContext) -> str | None:
    inputs = ctx.get(ArtifactKind.INPUTS) or {}
    return inputs.get("bucketName")


def _empty_bucket(ctx: StageContext) -> None:
    bucket = _bucket_name(ctx)
    removed = ctx.api.empty_bucket(ctx.credentials.target, bucket)
    logger.info("bucket_emptied", bucket=bucket, objects=removed)


def _destroy_stack(ctx: StageContext) -> None:
    ctx.templates.destroy(TEMPLATE, ctx.credentials.target)


def _restore_sample_page(ctx: StageContext) -> None:
    inputs = ctx.load(ArtifactKind.INPUTS)
    source = ctx.settings.content_dir / ctx.settings.content_app
    upload_bundle(ctx, source, inputs["bucketName"])
    invalidation_id = invalidate(ctx, inputs["distributionId"])
    logger.info("sample_page_restored", invalidation_id=invalidation_id)


def _rollback_plan(ctx: StageContext) -> list[RollbackAction]:
    return [
        RollbackAction(
            kind=RollbackActionKind.DELETE,
            description="delete app content",
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
        RollbackAction(
            kind=RollbackActionKind.RESTORE,
            description="restore the stage A sample page",
            run=_restore_sample_page,
            needed=lambda c: _bucket_name(c) is not None,
        ),
    ]


def _live_status(ctx: StageContext) -> dict[str, str]:
    inputs = ctx.get(ArtifactKind.INPUTS) or {}
    invalidation_id = ctx.facts("content").get("invalidationId") or ctx.store.field(
        "d", ArtifactKind.OUTPUTS, "invalidationId"
    )
    if not invalidation_id or not inputs.get("distributionId"):
        return {}
    target = _resolve_credentials(ctx).target
    status = ctx.api.invalidation_status(target, inputs["distributionId"], invalidation_id)
    return {"invalidation": f"{invalidation_id} {status}"}


STAGE = Stage(
    letter="d",
    name="react",
    title="Single-page application",
    steps=(
        Step(
            "inputs",
            "Collect stage A, B and C outputs",
            lambda ctx: is_valid(ctx, ArtifactKind.INPUTS, ReactInputs),
            _gather_inputs,
        ),
        Step(
            "discovery",
            "Record account identifiers and locate the app bundle",
            lambda ctx: is_valid(ctx, ArtifactKind.DISCOVERY, ReactDiscovery),
            _discover,
        ),
        Step(
            "infrastructure",
            "Deploy the deployment role and log group",
            has_facts("infrastructure", *STACK_OUTPUTS.values()),
            _deploy_infrastructure,
            creates_resources=True,
        ),
        Step(
            "content",
            "Upload the app bundle and invalidate the edge cache",
            has_facts("content", "invalidationId"),
            _upload_content,
        ),
        Step(
            "validation",
            "Wait for the invalidation and fetch the app",
            has_facts("validation", "httpStatus"),
            _validate,
        ),
    ),
    resolve_credentials=_resolve_credentials,
    build_outputs=_build_outputs,
    rollback_plan=_rollback_plan,
    prerequisites={"a": FORWARDED_FROM_A, "b": FORWARDED_FROM_B, "c": FORWARDED_FROM_C},
    conflict_scope=_conflict_scope,
    live_status=_live_status,
    fallback="c",
)
