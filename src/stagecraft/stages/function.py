"""Stage C: serverless API function behind a function URL."""

from __future__ import annotations

import structlog

from stagecraft.artifacts.models import FunctionDiscovery, FunctionInputs, FunctionOutputs
from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import ConvergencePending, FatalStepError
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
from stagecraft.templates.engine import StackTemplate

logger = structlog.get_logger()

TEMPLATE = StackTemplate(
    directory="c-lambda",
    stack_name="StageCLambdaStack",
    context_namespace="stage-c-lambda",
)

STACK_OUTPUTS = {
    "LambdaFunctionArn": "lambdaFunctionArn",
    "LambdaFunctionName": "lambdaFunctionName",
    "FunctionUrl": "functionUrl",
    "LogGroupName": "logGroupName",
}

# The function URL uses IAM auth, so an unsigned request answering 403 proves it is live.
FUNCTION_URL_STATUSES = (200, 403)

FORWARDED_FROM_A = (
    "distributionId",
    "bucketName",
    "infrastructureProfile",
    "targetProfile",
    "distributionPrefix",
    "targetRegion",
    "targetVpcId",
)
FORWARDED_FROM_B = ("certificateArn", "domains")


def _gather_inputs(ctx: StageContext) -> None:
    forwarded = {**ctx.prerequisites.get("a", {}), **ctx.prerequisites.get("b", {})}
    inputs = parse_model(FunctionInputs, forwarded, "stage C inputs")
    ctx.save(ArtifactKind.INPUTS, inputs)


def _discover(ctx: StageContext) -> None:
    target = ctx.credentials.target
    quotas = ctx.api.function_quotas(target)
    logger.debug("function_quotas", **{k: v for k, v in quotas.items() if v is not None})
    previous = ctx.get(ArtifactKind.DISCOVERY) or {}
    discovery = FunctionDiscovery.model_validate(
        {
            **previous,
            "infrastructureAccountId": ctx.credentials.infra.account_id,
            "targetAccountId": target.account_id,
            "lambdaQuotas": quotas,
        }
    )
    ctx.save(ArtifactKind.DISCOVERY, discovery)


def _conflict_scope(ctx: StageContext) -> ConflictScope:
    inputs = ctx.load(ArtifactKind.INPUTS)
    return ConflictScope(
        names=(inputs["distributionPrefix"],),
        kinds=(ResourceKind.FUNCTION, ResourceKind.ROLE, ResourceKind.LOG_GROUP),
    )


def _deploy_infrastructure(ctx: StageContext) -> None:
    inputs: FunctionInputs = ctx.load_model(ArtifactKind.INPUTS, FunctionInputs)
    target = ctx.credentials.target
    outputs = ctx.templates.deploy(
        TEMPLATE,
        target,
        {
            "distributionPrefix": inputs.distribution_prefix,
            "targetRegion": inputs.target_region,
            "targetAccountId": target.account_id,
            "targetVpcId": inputs.target_vpc_id,
            "distributionId": inputs.distribution_id,
            "bucketName": inputs.bucket_name,
            "certificateArn": inputs.certificate_arn,
        },
    )
    ctx.record("infrastructure", **require_outputs(outputs, STACK_OUTPUTS, TEMPLATE.stack_name))


def _validate(ctx: StageContext) -> None:
    facts = ctx.facts("infrastructure")
    name = facts["lambdaFunctionName"]

    response = ctx.api.invoke_function(ctx.credentials.target, name, {})
    status_code = response.get("statusCode")
    if status_code != 200:
        raise FatalStepError(
            f"Function {name} answered with statusCode {status_code}",
            {"response": response},
        )

    check = ctx.checker.check(facts["functionUrl"], accept_status=FUNCTION_URL_STATUSES)
    if not check.ok:
        raise ConvergencePending(f"Function URL is not reachable yet: {check.detail}")
    ctx.record("validation", invokeStatus=status_code, urlStatus=check.status_code)


def _build_outputs(ctx: StageContext) -> FunctionOutputs:
    inputs = ctx.load(ArtifactKind.INPUTS)
    discovery = ctx.load(ArtifactKind.DISCOVERY)
    return FunctionOutputs.model_validate(
        {
            **inputs,
            "infrastructureAccountId": discovery["infrastructureAccountId"],
            "targetAccountId": discovery["targetAccountId"],
            **ctx.facts("infrastructure"),
        }
    )


def _resolve_credentials(ctx: StageContext) -> CredentialSet:
    return forwarded_credentials(ctx, "b", "a")


def _destroy_stack(ctx: StageContext) -> None:
    ctx.templates.destroy(TEMPLATE, ctx.credentials.target)


def _rollback_plan(ctx: StageContext) -> list[RollbackAction]:
    return [
        RollbackAction(
            kind=RollbackActionKind.TEARDOWN,
            description=f"destroy stack {TEMPLATE.stack_name}",
            run=_destroy_stack,
            needed=lambda c: c.api.stack_exists(c.credentials.target, TEMPLATE.stack_name),
        ),
    ]


def _live_status(ctx: StageContext) -> dict[str, str]:
    facts = ctx.facts("infrastructure")
    if not facts.get("functionUrl"):
        return {}
    check = ctx.checker.check(facts["functionUrl"], accept_status=FUNCTION_URL_STATUSES)
    return {
        "function": facts.get("lambdaFunctionName", ""),
        "url": f"{check.url} {check.status_code or check.detail}",
    }


STAGE = Stage(
    letter="c",
    name="function",
    title="Serverless API function",
    steps=(
        Step(
            "inputs",
            "Collect stage A and B outputs",
            lambda ctx: is_valid(ctx, ArtifactKind.INPUTS, FunctionInputs),
            _gather_inputs,
        ),
        Step(
            "discovery",
            "Record account identifiers and function quotas",
            lambda ctx: is_valid(ctx, ArtifactKind.DISCOVERY, FunctionDiscovery),
            _discover,
        ),
        Step(
            "infrastructure",
            "Deploy function, role, log group and function URL",
            has_facts("infrastructure", *STACK_OUTPUTS.values()),
            _deploy_infrastructure,
            creates_resources=True,
        ),
        Step(
            "validation",
            "Invoke the function and probe its URL",
            has_facts("validation", "invokeStatus"),
            _validate,
        ),
    ),
    resolve_credentials=_resolve_credentials,
    build_outputs=_build_outputs,
    rollback_plan=_rollback_plan,
    prerequisites={"a": FORWARDED_FROM_A, "b": FORWARDED_FROM_B},
    conflict_scope=_conflict_scope,
    live_status=_live_status,
    fallback="b",
)
