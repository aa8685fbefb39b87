"""
HTTP reachability checks used by validation steps.

A distribution or function URL that answers with a retryable status is
still propagating, so those are retried before the check is reported.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Collection

import httpx
import structlog
from circuitbreaker import CircuitBreakerError, circuit
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger()

DEFAULT_USER_AGENT = "stagecraft-endpoint-check/0.3.0"


class RetryableCheckError(Exception):
    """Endpoint answered in a way that may change on the next attempt."""


def is_retryable_status(status_code: int) -> bool:
    return status_code in (403, 404, 408, 429, 500, 502, 503, 504)


@dataclass(frozen=True)
class EndpointCheck:
    url: str
    ok: bool
    status_code: int | None = None
    detail: str = ""


class EndpointChecker:
    """Performs GET checks against public endpoints."""

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._user_agent = user_agent

    def check(
        self,
        url: str,
        *,
        expect_text: str | None = None,
        accept_status: Collection[int] = (200,),
    ) -> EndpointCheck:
        """Return the outcome of fetching ``url``; never raises for HTTP failures."""
        accepted = frozenset(accept_status)
        try:
            response = self._get(url, accepted)
        except RetryableCheckError as exc:
            return EndpointCheck(url=url, ok=False, detail=str(exc))
        except CircuitBreakerError as exc:
            return EndpointCheck(url=url, ok=False, detail=f"circuit open: {exc}")
        except httpx.HTTPError as exc:
            logger.warning("endpoint_check_failed", url=url, error=str(exc))
            return EndpointCheck(url=url, ok=False, detail=str(exc))

        if response.status_code not in accepted:
            return EndpointCheck(
                url=url,
                ok=False,
                status_code=response.status_code,
                detail=f"unexpected HTTP {response.status_code}",
            )
        if expect_text and expect_text not in response.text:
            return EndpointCheck(
                url=url,
                ok=False,
                status_code=response.status_code,
                detail=f"response did not contain {expect_text!r}",
            )
        return EndpointCheck(url=url, ok=True, status_code=response.status_code)

    @circuit(failure_threshold=5, recovery_timeout=60, expected_exception=RetryableCheckError)
    @retry(
        retry=retry_if_exception_type(RetryableCheckError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2, min=1, max=30),
        reraise=True,
    )
    def _get(self, url: str, accepted: frozenset[int]) -> httpx.Response:
        try:
            with httpx.Client(
                timeout=self._timeout,
                transport=self._transport,
                headers={"User-Agent": self._user_agent},
                follow_redirects=True,
            ) as client:
                response = client.get(url)
        except (httpx.TimeoutException, httpx.ConnectError) as exc:
            logger.info("endpoint_not_ready", url=url, error=str(exc))
            raise RetryableCheckError(str(exc)) from exc

        if response.status_code not in accepted and is_retryable_status(response.status_code):
            logger.info("endpoint_not_ready", url=url, status=response.status_code)
            raise RetryableCheckError(f"HTTP {response.status_code} from {url}")
        return response
