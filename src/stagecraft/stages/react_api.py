"""
Stage E: route ``/api/*`` on the distribution to the stage C function.

Adds the function URL host as a second origin with an uncached ``/api/*``
behavior, publishes the API-backed app bundle and invalidates the edge
cache. Rollback removes the route and republishes the stage D app.
"""

from __future__ import annotations

import structlog

from stagecraft.artifacts.models import ReactApiDiscovery, ReactApiInputs, ReactApiOutputs
from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import ConfigurationError, ConvergencePending
from stagecraft.provisioning.base import (
    API_PATH_PATTERN,
    CredentialSet,
    DistributionChange,
    DistributionDescription,
    DistributionStatus,
    ResourceKind,
)
from stagecraft.stages.base import (
    RollbackAction,
    RollbackActionKind,
    Stage,
    StageContext,
    Step,
    forwarded_credentials,
    has_facts,
    is_valid,
    parse_model,
)
from stagecraft.stages.content import (
    bundle_files,
    built_bundle,
    invalidate,
    spa_cache_policy,
    upload_bundle,
    wait_for_invalidation,
)

logger = structlog.get_logger()

APP_MARKER = 'id="root"'

FORWARDED_FROM_A = (
    "distributionId",
    "distributionUrl",
    "bucketName",
    "infrastructureProfile",
    "targetProfile",
    "distributionPrefix",
    "targetRegion",
    "targetVpcId",
)
FORWARDED_FROM_B = ("domains",)
FORWARDED_FROM_C = ("lambdaFunctionName", "functionUrl")
FORWARDED_FROM_D = ("primaryDomain",)


def _api_url(base: str) -> str:
    return f"{base.rstrip('/')}/api/"


def _gather_inputs(ctx: StageContext) -> None:
    forwarded: dict = {}
    for stage in ("a", "b", "c", "d"):
        forwarded.update(ctx.prerequisites.get(stage, {}))
    inputs = parse_model(ReactApiInputs, forwarded, "stage E inputs")
    ctx.save(ArtifactKind.INPUTS, inputs)


def _discover(ctx: StageContext) -> None:
    inputs: ReactApiInputs = ctx.load_model(ArtifactKind.INPUTS, ReactApiInputs)
    source = built_bundle(ctx.settings, ctx.settings.api_app)
    distribution = ctx.api.describe_distribution(ctx.credentials.target, inputs.distribution_id)
    if distribution.api_origin_domain not in (None, inputs.function_host):
        logger.warning(
            "api_route_points_elsewhere",
            distribution_id=inputs.distribution_id,
            origin=distribution.api_origin_domain,
        )

    previous = ctx.get(ArtifactKind.DISCOVERY) or {}
    discovery = ReactApiDiscovery.model_validate(
        {
            **previous,
            "infrastructureAccountId": ctx.credentials.infra.account_id,
            "targetAccountId": ctx.credentials.target.account_id,
            "bundlePath": str(source),
            "bundleFiles": len(bundle_files(source)),
            "existingApiOrigin": distribution.api_origin_domain,
            "existingPathPatterns": list(distribution.path_patterns),
        }
    )
    ctx.save(ArtifactKind.DISCOVERY, discovery)


def _routed(distribution: DistributionDescription, host: str) -> bool:
    return API_PATH_PATTERN in distribution.path_patterns and distribution.api_origin_domain == host


def _add_api_route(ctx: StageContext) -> None:
    inputs: ReactApiInputs = ctx.load_model(ArtifactKind.INPUTS, ReactApiInputs)
    target = ctx.credentials.target
    host = inputs.function_host
    if not host:
        raise ConfigurationError(f"Cannot derive a host from function URL {inputs.function_url}")

    ctx.api.update_distribution(
        target, inputs.distribution_id, DistributionChange(api_origin_domain=host)
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
        "route",
        routed=True,
        apiOriginDomain=host,
        pathPattern=API_PATH_PATTERN,
        distributionStatus=str(probe.status),
    )


def _upload_content(ctx: StageContext) -> None:
    inputs: ReactApiInputs = ctx.load_model(ArtifactKind.INPUTS, ReactApiInputs)
    source = built_bundle(ctx.settings, ctx.settings.api_app)
    uploaded = upload_bundle(ctx, source, inputs.bucket_name, spa_cache_policy)
    invalidation_id = invalidate(ctx, inputs.distribution_id)
    ctx.record("content", uploaded=uploaded, invalidationId=invalidation_id)


def _validate(ctx: StageContext) -> None:
    inputs: ReactApiInputs = ctx.load_model(ArtifactKind.INPUTS, ReactApiInputs)
    distribution = ctx.api.describe_distribution(ctx.credentials.target, inputs.distribution_id)
    if not _routed(distribution, inputs.function_host):
        raise ConvergencePending(
            f"Distribution {inputs.distribution_id} does not route {API_PATH_PATTERN} "
            "to the function yet",
            {"paths": list(distribution.path_patterns)},
        )
    if distribution.status != DistributionStatus.DEPLOYED:
        raise ConvergencePending(f"Distribution {inputs.distribution_id} is {distribution.status}")
    wait_for_invalidation(ctx, inputs.distribution_id, ctx.facts("content")["invalidationId"])

    check = ctx.checker.check(inputs.distribution_url, expect_text=APP_MARKER)
    if not check.ok:
        raise ConvergencePending(f"{check.url} is not serving the app yet: {check.detail}")

    # An IAM-auth function URL answers 403 through the edge; the route itself is verified above.
    api = {}
    for base in (inputs.distribution_url, f"https://{inputs.primary_domain}"):
        result = ctx.checker.check(_api_url(base), expect_text=ctx.settings.api_marker)
        api[result.url] = result.status_code if result.ok else result.detail
        if not result.ok:
            logger.warning("api_endpoint_unhealthy", url=result.url, detail=result.detail)

    ctx.record("validation", httpStatus=check.status_code, apiEndpoints=api)


def _build_outputs(ctx: StageContext) -> ReactApiOutputs:
    inputs = ctx.load(ArtifactKind.INPUTS)
    discovery = ctx.load(ArtifactKind.DISCOVERY)
    route = ctx.facts("route")
    return ReactApiOutputs.model_validate(
        {
            **inputs,
            "infrastructureAccountId": discovery["infrastructureAccountId"],
            "targetAccountId": discovery["targetAccountId"],
            "apiOriginDomain": route["apiOriginDomain"],
            "apiPathPattern": route["pathPattern"],
            "apiUrls": [
                _api_url(inputs["distributionUrl"]),
                _api_url(f"https://{inputs['primaryDomain']}"),
            ],
            "invalidationId": ctx.facts("content")["invalidationId"],
        }
    )


def _resolve_credentials(ctx: StageContext) -> CredentialSet:
    return forwarded_credentials(ctx, "d", "c", "b", "a")


def _distribution_id(ctx: StageContext) -> str | None:
    inputs = ctx.get(ArtifactKind.INPUTS) or {}
    return inputs.get("distributionId") or ctx.store.field(
        "a", ArtifactKind.OUTPUTS, "distributionId"
    )


def _remove_api_route(ctx: StageContext) -> None:
    target = ctx.credentials.target
    distribution_id = _distribution_id(ctx)
    current = ctx.api.describe_distribution(target, distribution_id)
    if API_PATH_PATTERN not in current.path_patterns and current.api_origin_domain is None:
        logger.info("api_route_already_removed", distribution_id=distribution_id)
        return
    ctx.api.update_distribution(target, distribution_id, DistributionChange(remove_api_route=True))


def _distribution_status(ctx: StageContext) -> DistributionStatus:
    return ctx.api.describe_distribution(ctx.credentials.target, _distribution_id(ctx)).status


def _react_bundle_available(ctx: StageContext) -> bool:
    inputs = ctx.get(ArtifactKind.INPUTS) or {}
    source = ctx.settings.content_dir / ctx.settings.react_app / ctx.settings.app_build_dir
    return bool(inputs.get("bucketName")) and (source / "index.html").is_file()


def _restore_react_app(ctx: StageContext) -> None:
    inputs = ctx.load(ArtifactKind.INPUTS)
    source = built_bundle(ctx.settings, ctx.settings.react_app)
    upload_bundle(ctx, source, inputs["bucketName"], spa_cache_policy)
    invalidation_id = invalidate(ctx, inputs["distributionId"])
    logger.info("react_app_restored", invalidation_id=invalidation_id)


def _rollback_plan(ctx: StageContext) -> list[RollbackAction]:
    return [
        RollbackAction(
            kind=RollbackActionKind.DETACH,
            description=f"remove the {API_PATH_PATTERN} route",
            run=_remove_api_route,
            resource_kind=ResourceKind.DISTRIBUTION,
            needed=lambda c: _distribution_id(c) is not None,
            settled=_distribution_status,
            settled_states=frozenset({DistributionStatus.DEPLOYED}),
        ),
        RollbackAction(
            kind=RollbackActionKind.RESTORE,
            description="restore the stage D app",
            run=_restore_react_app,
            needed=_react_bundle_available,
        ),
    ]


def _live_status(ctx: StageContext) -> dict[str, str]:
    distribution_id = _distribution_id(ctx)
    if not distribution_id or not ctx.get(ArtifactKind.INPUTS):
        return {}
    target = _resolve_credentials(ctx).target
    distribution = ctx.api.describe_distribution(target, distribution_id)
    return {
        "route": ", ".join(distribution.path_patterns) or "(none)",
        "api origin": distribution.api_origin_domain or "(none)",
    }


STAGE = Stage(
    letter="e",
    name="react-api",
    title="Single-page application with API route",
    steps=(
        Step(
            "inputs",
            "Collect stage A to D outputs",
            lambda ctx: is_valid(ctx, ArtifactKind.INPUTS, ReactApiInputs),
            _gather_inputs,
        ),
        Step(
            "discovery",
            "Inspect the distribution and locate the app bundle",
            lambda ctx: is_valid(ctx, ArtifactKind.DISCOVERY, ReactApiDiscovery),
            _discover,
        ),
        Step(
            "route",
            f"Route {API_PATH_PATTERN} to the function URL",
            has_facts("route", "routed"),
            _add_api_route,
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
            "Check the route, the invalidation and the endpoints",
            has_facts("validation", "httpStatus"),
            _validate,
        ),
    ),
    resolve_credentials=_resolve_credentials,
    build_outputs=_build_outputs,
    rollback_plan=_rollback_plan,
    prerequisites={
        "a": FORWARDED_FROM_A,
        "b": FORWARDED_FROM_B,
        "c": FORWARDED_FROM_C,
        "d": FORWARDED_FROM_D,
    },
    live_status=_live_status,
    fallback="d",
)
