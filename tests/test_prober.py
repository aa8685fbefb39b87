"""Tests for the bounded resource prober."""

import pytest

from stagecraft.orchestration.prober import ProbeOutcome, ResourceProber


class Sequence:
    """Describe function returning scripted statuses and counting calls."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.statuses[min(self.calls, len(self.statuses)) - 1]


class TestWaitFor:
    """Termination guarantees of wait_for."""

    @pytest.mark.parametrize("k", [0, 1, 4])
    def test_returns_after_k_plus_one_calls(self, k):
        describe = Sequence(*(["PENDING"] * k), "ISSUED", "NEVER_SEEN")
        sleeps = []

        result = ResourceProber(sleep=sleeps.append).wait_for(
            describe, {"ISSUED"}, {"FAILED"}, interval=30, max_attempts=10
        )

        assert result.outcome is ProbeOutcome.SUCCEEDED
        assert result.status == "ISSUED"
        assert result.attempts == k + 1
        assert describe.calls == k + 1
        assert sleeps == [30] * k

    def test_terminal_failure_stops_polling(self):
        describe = Sequence("PENDING", "FAILED", "ISSUED")

        result = ResourceProber(sleep=lambda s: None).wait_for(
            describe, {"ISSUED"}, {"FAILED"}, interval=1, max_attempts=10
        )

        assert result.failed
        assert result.status == "FAILED"
        assert describe.calls == 2

    def test_times_out_after_max_attempts(self):
        describe = Sequence("InProgress")
        sleeps = []

        result = ResourceProber(sleep=sleeps.append).wait_for(
            describe, {"Deployed"}, interval=5, max_attempts=7
        )

        assert result.timed_out
        assert not result.succeeded
        assert result.status == "InProgress"
        assert describe.calls == 7
        # no sleep after the final attempt
        assert len(sleeps) == 6

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            ResourceProber().wait_for(lambda: "x", {"y"}, interval=0, max_attempts=0)

    def test_describe_errors_propagate(self):
        def describe():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            ResourceProber(sleep=lambda s: None).wait_for(
                describe, {"ok"}, interval=0, max_attempts=3
            )
