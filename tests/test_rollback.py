"""Tests for dependency-ordered rollback."""

from dataclasses import replace

import pytest
from fakes import BUCKET, CERTIFICATE_ARN, DISTRIBUTION_ID, FUNCTION_HOST, STAGE_A_PARAMS

from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import (
    ConvergencePending,
    ExitCode,
    ResourceStillInUse,
    RollbackError,
)
from stagecraft.orchestration.conflicts import ConflictDetector
from stagecraft.orchestration.resolver import DependencyResolver
from stagecraft.orchestration.rollback import RollbackCoordinator, RollbackMode, validate_plan
from stagecraft.orchestration.runner import StageRunner
from stagecraft.provisioning.base import (
    API_PATH_PATTERN,
    DistributionStatus,
    ExistingResource,
    ResourceKind,
)
from stagecraft.stages.base import RollbackAction, RollbackActionKind


@pytest.fixture
def deployed_stack(factory):
    """Stages A and B deployed through the runner."""
    runner = StageRunner(ConflictDetector(factory.api))
    assert runner.run(factory("a", STAGE_A_PARAMS)).success
    assert runner.run(factory("b", {"domains": ["example.com"]})).success
    factory.api.calls.clear()
    return factory


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def coordinator(factory, sleeps):
    return RollbackCoordinator(factory, sleep=sleeps.append)


def call_index(api, name):
    return api.call_names().index(name)


class TestValidatePlan:
    """Plans must detach before deleting."""

    @staticmethod
    def action(kind, resource_kind=ResourceKind.CERTIFICATE):
        return RollbackAction(
            kind=kind, description=str(kind), run=lambda ctx: None, resource_kind=resource_kind
        )

    def test_detach_then_delete_is_accepted(self):
        validate_plan(
            [self.action(RollbackActionKind.DETACH), self.action(RollbackActionKind.DELETE)]
        )

    def test_delete_before_detach_is_rejected(self):
        with pytest.raises(RollbackError, match="before detaching"):
            validate_plan(
                [self.action(RollbackActionKind.DELETE), self.action(RollbackActionKind.DETACH)]
            )

    def test_unrelated_kinds_do_not_conflict(self):
        validate_plan(
            [
                self.action(RollbackActionKind.DELETE, ResourceKind.BUCKET),
                self.action(RollbackActionKind.DETACH, ResourceKind.DISTRIBUTION),
            ]
        )


class TestStageBRollback:
    """Certificate rollback ordering and retries."""

    def test_detaches_before_deleting(self, deployed_stack, coordinator, store):
        api = deployed_stack.api

        result = coordinator.rollback("b")

        assert call_index(api, "update_distribution") < call_index(api, "delete_certificate")
        distribution = api.distributions[DISTRIBUTION_ID]
        assert distribution.certificate_arn is None
        assert distribution.aliases == ()
        assert distribution.viewer_protocol_policy == "allow-all"
        assert CERTIFICATE_ARN not in api.certificates
        assert deployed_stack.templates.destroyed[0][0] == "StageBSslCertificateStack"
        assert result.completed == [
            "revert distribution to the default certificate",
            "delete certificate",
            "destroy stack StageBSslCertificateStack",
        ]
        assert not store.stage_dir("b").exists()
        assert store.exists("a", ArtifactKind.OUTPUTS)

    def test_validation_records_are_retained(self, deployed_stack, coordinator):
        result = coordinator.rollback("b")

        assert result.retained == ["CNAME _x1.example.com. (zone Z0EXAMPLE)"]
        assert "delete_validation_record" not in deployed_stack.api.call_names()

    def test_in_use_delete_is_retried(self, deployed_stack, coordinator, sleeps):
        deployed_stack.api.in_use_override[CERTIFICATE_ARN] = [
            (DISTRIBUTION_ID,),
            (DISTRIBUTION_ID,),
        ]

        result = coordinator.rollback("b")

        assert "delete certificate" in result.completed
        assert len(sleeps) == 2
        assert CERTIFICATE_ARN not in deployed_stack.api.certificates

    def test_in_use_exhausts_retries(self, deployed_stack, coordinator, store):
        deployed_stack.api.in_use_override[CERTIFICATE_ARN] = [(DISTRIBUTION_ID,)] * 3

        with pytest.raises(ResourceStillInUse, match="after 3 attempts"):
            coordinator.rollback("b")

        assert store.exists("b", ArtifactKind.OUTPUTS)
        assert deployed_stack.templates.destroyed == []

    def test_already_deleted_certificate_is_skipped_quietly(self, deployed_stack, coordinator):
        del deployed_stack.api.certificates[CERTIFICATE_ARN]

        result = coordinator.rollback("b")

        assert "delete certificate" in result.completed
        assert deployed_stack.templates.destroyed

    def test_second_rollback_is_a_no_op(self, deployed_stack, coordinator):
        coordinator.rollback("b")
        deployed_stack.api.calls.clear()

        result = coordinator.rollback("b")

        assert result.completed == []
        assert len(result.skipped) == 3
        assert deployed_stack.api.mutations == []

    def test_unsettled_detach_is_reported(self, deployed_stack, coordinator, monkeypatch):
        api = deployed_stack.api
        original = api.update_distribution

        def update_and_stay_in_progress(credentials, distribution_id, change):
            original(credentials, distribution_id, change)
            current = api.distributions[distribution_id]
            api.distributions[distribution_id] = replace(
                current, status=DistributionStatus.IN_PROGRESS
            )

        monkeypatch.setattr(api, "update_distribution", update_and_stay_in_progress)

        result = coordinator.rollback("b")

        assert result.unsettled == ["revert distribution to the default certificate"]


class TestFallback:
    """Falling back to a full rollback of the earlier stage."""

    @pytest.fixture(autouse=True)
    def stuck_certificate(self, deployed_stack):
        deployed_stack.api.in_use_override[CERTIFICATE_ARN] = [(DISTRIBUTION_ID,)] * 3

    def test_fallback_requires_confirmation(self, deployed_stack, coordinator, store):
        with pytest.raises(ResourceStillInUse):
            coordinator.rollback("b", fallback=True)

        assert store.exists("a", ArtifactKind.OUTPUTS)

    def test_confirmed_fallback_rolls_back_stage_a(self, deployed_stack, coordinator, store):
        questions = []

        def confirm(question):
            questions.append(question)
            return True

        deployed_stack.confirm = confirm

        result = coordinator.rollback("b", fallback=True)

        assert result.fallback_stage == "a"
        assert "stage A" in questions[0]
        assert not store.stage_dir("a").exists()
        assert not store.stage_dir("b").exists()
        assert "StageACloudFrontStack" in [name for name, _ in deployed_stack.templates.destroyed]
        assert deployed_stack.api.distributions[DISTRIBUTION_ID].enabled is False
        assert not any(bucket == BUCKET for bucket, _ in deployed_stack.api.objects)


class TestModes:
    """Partial rollback modes."""

    def test_data_only_makes_no_provider_calls(self, deployed_stack, coordinator, store):
        result = coordinator.rollback("b", RollbackMode.DATA_ONLY)

        assert deployed_stack.api.calls == []
        assert "outputs" in result.removed_artifacts
        assert not store.exists("b", ArtifactKind.OUTPUTS)

    def test_resources_only_marks_stage_not_ready(self, deployed_stack, coordinator, store):
        result = coordinator.rollback("b", RollbackMode.RESOURCES_ONLY)

        assert len(result.completed) == 3
        assert result.removed_artifacts == ["progress"]
        outputs = store.load("b", ArtifactKind.OUTPUTS)
        assert outputs["readyForStageC"] is False
        assert outputs["validationStatus"] == "rolled-back"
        assert store.exists("b", ArtifactKind.INPUTS)
        assert store.exists("b", ArtifactKind.DISCOVERY)
        assert not store.exists("b", ArtifactKind.PROGRESS)
        assert not DependencyResolver(store).is_ready("b")

    def test_next_stage_refused_after_resources_only(self, deployed_stack, coordinator):
        coordinator.rollback("b", RollbackMode.RESOURCES_ONLY)

        result = StageRunner(ConflictDetector(deployed_stack.api)).run(deployed_stack("c"))

        assert result.exit_code is ExitCode.PREREQUISITE_NOT_MET
        assert "readyForStageC" in result.failure.message

    def test_redeploy_after_resources_only_recreates(self, deployed_stack, coordinator, store):
        api = deployed_stack.api
        certificate = api.certificates[CERTIFICATE_ARN]
        coordinator.rollback("b", RollbackMode.RESOURCES_ONLY)
        api.certificates[CERTIFICATE_ARN] = certificate

        result = StageRunner(ConflictDetector(api)).run(deployed_stack("b"))

        assert result.success, result.failure
        assert not result.already_complete
        stacks = [name for name, _, _ in deployed_stack.templates.deployed]
        assert stacks.count("StageBSslCertificateStack") == 2
        assert store.load("b", ArtifactKind.OUTPUTS)["readyForStageC"] is True
        assert api.distributions[DISTRIBUTION_ID].certificate_arn == CERTIFICATE_ARN

    def test_full_rollback_after_resources_only_skips_the_gone_stack(
        self, deployed_stack, coordinator, store
    ):
        coordinator.rollback("b", RollbackMode.RESOURCES_ONLY)
        deployed_stack.api.calls.clear()

        result = coordinator.rollback("b")

        assert "destroy stack StageBSslCertificateStack" in result.skipped
        assert len(deployed_stack.templates.destroyed) == 1
        assert not store.stage_dir("b").exists()

    def test_stage_c_tears_down_its_stack(self, factory, coordinator, store, deployed_b):
        runner = StageRunner(ConflictDetector(factory.api))
        assert runner.run(factory("c")).success

        result = coordinator.rollback("c")

        assert result.completed == ["destroy stack StageCLambdaStack"]
        assert not store.stage_dir("c").exists()
        assert store.exists("b", ArtifactKind.OUTPUTS)


class TestStageARollback:
    """Stage A refuses to touch distributions while one is propagating."""

    def test_in_progress_distribution_blocks_rollback(self, deployed_stack, coordinator, store):
        api = deployed_stack.api
        api.resources[ResourceKind.DISTRIBUTION] = [
            ExistingResource(
                ResourceKind.DISTRIBUTION, "E9OTHER", "someone else", status="InProgress"
            )
        ]

        with pytest.raises(ConvergencePending, match="InProgress"):
            coordinator.rollback("a")

        assert "update_distribution" not in api.call_names()
        assert deployed_stack.templates.destroyed == []
        assert store.exists("a", ArtifactKind.OUTPUTS)

    def test_rollback_proceeds_once_deployed(self, deployed_stack, coordinator, store):
        coordinator.rollback("b")
        deployed_stack.api.resources[ResourceKind.DISTRIBUTION] = [
            ExistingResource(
                ResourceKind.DISTRIBUTION, "E9OTHER", "someone else", status="Deployed"
            )
        ]

        result = coordinator.rollback("a")

        assert "destroy stack StageACloudFrontStack" in result.completed
        assert not store.stage_dir("a").exists()


@pytest.fixture
def deployed_react(factory, deployed_c):
    """Stage D deployed through the runner on top of recorded A to C outputs."""
    runner = StageRunner(ConflictDetector(factory.api))
    assert runner.run(factory("d")).success
    factory.api.calls.clear()
    return factory


@pytest.fixture
def deployed_api_route(factory, deployed_d):
    """Stage E deployed through the runner on top of recorded A to D outputs."""
    runner = StageRunner(ConflictDetector(factory.api))
    assert runner.run(factory("e")).success
    factory.api.calls.clear()
    return factory


class TestStageDRollback:
    """App removal puts the sample page back."""

    def test_replaces_app_with_sample_page(self, deployed_react, coordinator, store):
        api = deployed_react.api

        result = coordinator.rollback("d")

        assert result.completed == [
            "delete app content",
            "destroy stack StageDReactStack",
            "restore the stage A sample page",
        ]
        assert call_index(api, "empty_bucket") < call_index(api, "upload_object")
        assert sorted(key for bucket, key in api.objects if bucket == BUCKET) == [
            "index.html",
            "styles.css",
        ]
        assert b"CloudFront Distribution is Working!" in api.objects[(BUCKET, "index.html")]
        assert api.call_names()[-1] == "create_invalidation"
        assert "StageDReactStack" not in api.stacks
        assert not store.stage_dir("d").exists()
        assert store.exists("c", ArtifactKind.OUTPUTS)

    def test_second_rollback_is_a_no_op(self, deployed_react, coordinator):
        coordinator.rollback("d")
        deployed_react.api.calls.clear()

        result = coordinator.rollback("d")

        assert result.completed == []
        assert len(result.skipped) == 3
        assert deployed_react.api.mutations == []


class TestStageERollback:
    """Route removal puts the stage D app back."""

    def test_removes_route_and_restores_app(self, deployed_api_route, coordinator, store):
        api = deployed_api_route.api

        assert api.distributions[DISTRIBUTION_ID].api_origin_domain == FUNCTION_HOST

        result = coordinator.rollback("e")

        assert result.completed == [
            f"remove the {API_PATH_PATTERN} route",
            "restore the stage D app",
        ]
        distribution = api.distributions[DISTRIBUTION_ID]
        assert distribution.path_patterns == ()
        assert distribution.api_origin_domain is None
        assert call_index(api, "update_distribution") < call_index(api, "upload_object")
        assert b"data-api" not in api.objects[(BUCKET, "index.html")]
        assert api.call_names()[-1] == "create_invalidation"
        assert not store.stage_dir("e").exists()
        assert store.exists("d", ArtifactKind.OUTPUTS)

    def test_restore_skipped_without_a_built_app(
        self, deployed_api_route, coordinator, settings
    ):
        (settings.content_dir / "hello-world-react" / "dist" / "index.html").unlink()

        result = coordinator.rollback("e")

        assert result.skipped == ["restore the stage D app"]
        assert "upload_object" not in deployed_api_route.api.call_names()

    def test_already_removed_route_is_not_updated(self, deployed_api_route, coordinator):
        api = deployed_api_route.api
        api.distributions[DISTRIBUTION_ID] = replace(
            api.distributions[DISTRIBUTION_ID], api_origin_domain=None, path_patterns=()
        )

        coordinator.rollback("e")

        assert "update_distribution" not in api.call_names()
