"""Tests for prerequisite resolution between stages."""

import pytest
from fakes import DISTRIBUTION_ID, stage_a_outputs

from stagecraft.artifacts.store import ArtifactKind
from stagecraft.core.errors import ExitCode, PrerequisiteNotMet
from stagecraft.orchestration.resolver import (
    DependencyResolver,
    next_stage_letter,
    readiness_flag,
)


class TestReadinessFlag:
    def test_flag_names_the_next_stage(self):
        assert readiness_flag("b") == "readyForStageB"
        assert next_stage_letter("a") == "b"
        assert next_stage_letter("C") == "d"


class TestRequire:
    """Gating on a prerequisite's outputs document."""

    def test_returns_requested_fields(self, store):
        store.save("a", ArtifactKind.OUTPUTS, stage_a_outputs())

        resolved = DependencyResolver(store).require("a", ["distributionId", "bucketName"])

        assert resolved["distributionId"] == DISTRIBUTION_ID
        assert set(resolved) == {"distributionId", "bucketName"}

    def test_absent_outputs(self, store):
        with pytest.raises(PrerequisiteNotMet, match="has not been deployed") as exc_info:
            DependencyResolver(store).require("a", ["distributionId"])

        assert exc_info.value.exit_code is ExitCode.PREREQUISITE_NOT_MET

    @pytest.mark.parametrize("flag", [False, None, "true"])
    def test_flag_must_be_exactly_true(self, store, flag):
        store.save("a", ArtifactKind.OUTPUTS, stage_a_outputs(readyForStageB=flag))

        with pytest.raises(PrerequisiteNotMet, match="readyForStageB is not true"):
            DependencyResolver(store).require("a", ["distributionId"])

    def test_missing_field_is_named(self, store):
        outputs = stage_a_outputs()
        del outputs["distributionId"]
        outputs["bucketName"] = ""
        store.save("a", ArtifactKind.OUTPUTS, outputs)

        with pytest.raises(PrerequisiteNotMet) as exc_info:
            DependencyResolver(store).require("a", ["distributionId", "bucketName", "targetRegion"])

        assert exc_info.value.details["missing"] == ["distributionId", "bucketName"]
        assert "distributionId, bucketName" in exc_info.value.message

    def test_require_all_stops_at_first_unmet(self, store):
        store.save("a", ArtifactKind.OUTPUTS, stage_a_outputs())

        with pytest.raises(PrerequisiteNotMet) as exc_info:
            DependencyResolver(store).require_all({"a": ("distributionId",), "b": ("domains",)})

        assert exc_info.value.details["stage"] == "b"

    def test_is_ready(self, store):
        resolver = DependencyResolver(store)
        assert resolver.is_ready("a") is False

        store.save("a", ArtifactKind.OUTPUTS, stage_a_outputs())
        assert resolver.is_ready("a") is True
