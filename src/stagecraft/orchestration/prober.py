"""
Resource Prober: bounded polling of an eventually-consistent resource.

``wait_for`` never raises on timeout. It reports ``TIMED_OUT`` and lets
the caller decide whether that is fatal or whether to continue and let a
later validation step re-check.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Collection, Generic, TypeVar

import structlog

logger = structlog.get_logger()

S = TypeVar("S")


class ProbeOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ProbeResult(Generic[S]):
    outcome: ProbeOutcome
    status: S | None
    attempts: int

    @property
    def succeeded(self) -> bool:
        return self.outcome is ProbeOutcome.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.outcome is ProbeOutcome.FAILED

    @property
    def timed_out(self) -> bool:
        return self.outcome is ProbeOutcome.TIMED_OUT


class ResourceProber:
    """Polls ``describe`` on a fixed interval until a terminal status."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def wait_for(
        self,
        describe: Callable[[], S],
        terminal_ok: Collection[S],
        terminal_fail: Collection[S] = (),
        *,
        interval: float,
        max_attempts: int,
        label: str = "resource",
    ) -> ProbeResult[S]:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        status: S | None = None
        for attempt in range(1, max_attempts + 1):
            status = describe()
            if status in terminal_ok:
                logger.info("probe_succeeded", resource=label, status=str(status), attempts=attempt)
                return ProbeResult(ProbeOutcome.SUCCEEDED, status, attempt)
            if status in terminal_fail:
                logger.warning("probe_failed", resource=label, status=str(status), attempts=attempt)
                return ProbeResult(ProbeOutcome.FAILED, status, attempt)

            logger.debug(
                "probe_waiting",
                resource=label,
                status=str(status),
                attempt=attempt,
                max_attempts=max_attempts,
            )
            if attempt < max_attempts:
                self._sleep(interval)

        logger.warning("probe_timed_out", resource=label, status=str(status), attempts=max_attempts)
        return ProbeResult(ProbeOutcome.TIMED_OUT, status, max_attempts)
