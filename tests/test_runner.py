"""Tests for the stage runner using a small synthetic stage."""

import re

import pytest
from fakes import STAGE_A_PARAMS

from stagecraft.artifacts.models import ArtifactModel
from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import (
    ConfigurationError,
    ConvergencePending,
    ErrorClass,
    ExitCode,
    FatalStepError,
)
from stagecraft.orchestration.conflicts import ConflictDetector
from stagecraft.orchestration.runner import StageRunner, StepState
from stagecraft.provisioning.base import ExistingResource, ResourceKind
from stagecraft.stages.base import (
    ConflictScope,
    Stage,
    Step,
    credentials_from,
    has_facts,
)


class DemoOutputs(ArtifactModel):
    distribution_prefix: str


class DemoStage:
    """Three-step stage whose actions record a fact and can be told to fail once."""

    def __init__(self, letter="a", **overrides):
        self.executed = []
        self.failures = {}
        steps = tuple(
            Step(
                name=name,
                description=f"{name} step",
                is_complete=has_facts(name, "done"),
                action=self._action(name),
                creates_resources=name == "second",
            )
            for name in ("first", "second", "third")
        )
        options = dict(
            letter=letter,
            name="demo",
            title="Demo stage",
            steps=steps,
            resolve_credentials=lambda ctx: credentials_from(ctx.params),
            build_outputs=lambda ctx: DemoOutputs(distribution_prefix="hello-spa"),
            rollback_plan=lambda ctx: [],
            conflict_scope=lambda ctx: ConflictScope(("hello-spa",), (ResourceKind.BUCKET,)),
        )
        options.update(overrides)
        self.stage = Stage(**options)

    def _action(self, name):
        def action(ctx):
            if name in self.failures:
                raise self.failures.pop(name)
            self.executed.append(name)
            ctx.record(name, done=True)

        return action


@pytest.fixture
def demo():
    return DemoStage()


@pytest.fixture
def runner(fake_api):
    return StageRunner(ConflictDetector(fake_api))


def states(result):
    return [(report.name, report.state) for report in result.steps]


class TestFullRun:
    """A clean run through every step."""

    def test_runs_steps_in_order_and_writes_outputs(self, demo, runner, make_context, store):
        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert result.success
        assert result.exit_code is ExitCode.SUCCESS
        assert demo.executed == ["first", "second", "third"]
        assert all(state is StepState.COMPLETED for _, state in states(result))

        outputs = store.load("a", ArtifactKind.OUTPUTS)
        assert outputs["readyForStageB"] is True
        assert outputs["validationStatus"] == "passed"
        assert outputs["distributionPrefix"] == "hello-spa"
        assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$", outputs["deploymentTimestamp"])
        assert result.outputs_path == store.path("a", ArtifactKind.OUTPUTS)

    def test_second_run_is_a_no_op(self, demo, runner, make_context, fake_api):
        runner.run(make_context(demo.stage, STAGE_A_PARAMS))
        fake_api.calls.clear()

        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert result.already_complete
        assert result.exit_code is ExitCode.SUCCESS
        assert fake_api.calls == []
        assert demo.executed == ["first", "second", "third"]
        assert {state for _, state in states(result)} == {StepState.ALREADY_COMPLETE}


class TestFailures:
    """The first failing step halts the stage."""

    def test_fatal_error_halts_without_outputs(self, demo, runner, make_context, store):
        demo.failures["second"] = FatalStepError("template rejected")

        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert states(result) == [
            ("first", StepState.COMPLETED),
            ("second", StepState.FAILED),
            ("third", StepState.NOT_RUN),
        ]
        assert result.failure.step == "second"
        assert result.failure.error_class is ErrorClass.FATAL
        assert result.exit_code is ExitCode.FATAL
        assert result.failure.remediation
        assert not store.exists("a", ArtifactKind.OUTPUTS)

    def test_unexpected_exception_is_classified_fatal(self, demo, runner, make_context):
        demo.failures["first"] = RuntimeError("boom")

        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert result.failure.message == "RuntimeError: boom"
        assert result.exit_code is ExitCode.FATAL

    def test_convergence_pending_reports_pending(self, demo, runner, make_context):
        demo.failures["third"] = ConvergencePending("certificate not issued yet")

        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert states(result)[-1] == ("third", StepState.PENDING)
        assert result.exit_code is ExitCode.CONVERGENCE_PENDING

    def test_resume_runs_only_remaining_steps(self, demo, runner, make_context, store):
        demo.failures["second"] = FatalStepError("first attempt")
        runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert result.success
        assert demo.executed == ["first", "second", "third"]
        assert states(result)[0] == ("first", StepState.ALREADY_COMPLETE)
        assert store.load("a", ArtifactKind.OUTPUTS)["readyForStageB"] is True

    def test_unknown_profile_fails_on_credentials(self, demo, runner, make_context):
        params = {**STAGE_A_PARAMS, "targetProfile": "nobody"}

        result = runner.run(make_context(demo.stage, params))

        assert result.failure.error_class is ErrorClass.CREDENTIALS
        assert result.exit_code is ExitCode.CONFIG_ERROR
        assert demo.executed == []


class TestPrerequisites:
    """Stages refuse to start without ready prerequisites."""

    def test_missing_prerequisite_blocks_every_step(self, runner, make_context, fake_api):
        demo = DemoStage(letter="b", prerequisites={"a": ("distributionId",)})

        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert result.failure.step == "prerequisites"
        assert result.exit_code is ExitCode.PREREQUISITE_NOT_MET
        assert {state for _, state in states(result)} == {StepState.NOT_RUN}
        assert fake_api.calls == []

    def test_resolved_prerequisites_reach_the_context(self, runner, make_context, deployed_a):
        demo = DemoStage(letter="b", prerequisites={"a": ("distributionId",)})
        ctx = make_context(demo.stage, STAGE_A_PARAMS)

        runner.run(ctx)

        assert ctx.prerequisites == {"a": {"distributionId": deployed_a["distributionId"]}}


class TestConflictGate:
    """Confirmation before the first creating step."""

    @pytest.fixture(autouse=True)
    def existing_bucket(self, fake_api):
        fake_api.resources[ResourceKind.BUCKET] = [
            ExistingResource(ResourceKind.BUCKET, "hello-spa-content", "hello-spa-content")
        ]

    def test_declined_conflict_halts_before_creating(self, demo, runner, make_context):
        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert result.exit_code is ExitCode.CONFLICT_DETECTED
        assert result.failure.step == "second"
        assert demo.executed == ["first"]

    def test_accepted_conflict_is_recorded(self, demo, runner, make_context, store, fake_api):
        questions = []

        def confirm(question):
            questions.append(question)
            return True

        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS, confirm=confirm))

        assert result.success
        assert "hello-spa-content" in questions[0]
        discovery = store.load("a", ArtifactKind.DISCOVERY)
        assert discovery["conflictsReviewed"] is True
        assert discovery["acknowledgedConflicts"] == ["bucket hello-spa-content"]

    def test_reviewed_conflicts_are_not_rescanned(self, demo, runner, make_context, fake_api):
        demo.failures["second"] = FatalStepError("after the gate")
        runner.run(make_context(demo.stage, STAGE_A_PARAMS, confirm=lambda q: True))
        fake_api.calls.clear()

        runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert "list_resources" not in fake_api.call_names()

    def test_preflight_runs_before_the_scan(self, runner, make_context, fake_api):
        def preflight(ctx):
            raise ConfigurationError("distribution is still deploying")

        demo = DemoStage(preflight=preflight)

        result = runner.run(make_context(demo.stage, STAGE_A_PARAMS))

        assert result.exit_code is ExitCode.CONFIG_ERROR
        assert "list_resources" not in fake_api.call_names()


class TestStatus:
    """Read-only status reporting."""

    def test_reports_step_predicates(self, demo, runner, make_context, fake_api):
        demo.failures["second"] = FatalStepError("stop")
        runner.run(make_context(demo.stage, STAGE_A_PARAMS))
        fake_api.calls.clear()

        report = runner.status(make_context(demo.stage, STAGE_A_PARAMS))

        assert [step.state for step in report.steps] == [
            StepState.ALREADY_COMPLETE,
            StepState.NOT_RUN,
            StepState.NOT_RUN,
        ]
        assert report.ready is False
        assert report.readiness_flag == "readyForStageB"
        assert fake_api.calls == []
