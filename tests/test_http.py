"""Tests for endpoint reachability checks."""

import httpx
import respx

from stagecraft.provisioning.http import EndpointChecker, is_retryable_status

URL = "https://d111111abcdef8.cloudfront.net/"
MARKER = "CloudFront Distribution is Working!"


class TestEndpointChecker:
    """GET checks with optional content match."""

    @respx.mock
    def test_ok_with_expected_text(self):
        respx.get(URL).mock(return_value=httpx.Response(200, text=f"<h1>{MARKER}</h1>"))

        check = EndpointChecker(timeout=1).check(URL, expect_text=MARKER)

        assert check.ok
        assert check.status_code == 200

    @respx.mock
    def test_missing_text(self):
        respx.get(URL).mock(return_value=httpx.Response(200, text="<h1>Default page</h1>"))

        check = EndpointChecker(timeout=1).check(URL, expect_text=MARKER)

        assert not check.ok
        assert "did not contain" in check.detail

    @respx.mock
    def test_unexpected_status_is_reported(self):
        route = respx.get(URL).mock(return_value=httpx.Response(418))

        check = EndpointChecker(timeout=1).check(URL)

        assert not check.ok
        assert check.status_code == 418
        assert check.detail == "unexpected HTTP 418"
        assert route.call_count == 1

    @respx.mock
    def test_accepted_forbidden_status(self):
        respx.get(URL).mock(return_value=httpx.Response(403))

        check = EndpointChecker(timeout=1).check(URL, accept_status=(200, 403))

        assert check.ok
        assert check.status_code == 403

    @respx.mock
    def test_sends_user_agent(self):
        route = respx.get(URL).mock(return_value=httpx.Response(200))

        EndpointChecker(timeout=1, user_agent="probe/1").check(URL)

        assert route.calls.last.request.headers["User-Agent"] == "probe/1"


class TestRetryableStatus:
    def test_propagation_statuses_are_retryable(self):
        assert all(is_retryable_status(code) for code in (403, 404, 502, 503))

    def test_client_errors_are_not(self):
        assert not is_retryable_status(400)
        assert not is_retryable_status(418)
