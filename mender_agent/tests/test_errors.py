"""Tests for provider error classification."""

import pytest

from mender_agent.agent.errors import (
    FatalProviderError,
    GenerationError,
    TestVerificationError,
    check_and_raise_fatal_error,
)


class HTTPError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class TestCheckAndRaiseFatalError:

    @pytest.mark.parametrize("message", [
        "429 Too Many Requests",
        "You have reached your usage limit",
        "Quota exceeded for model",
        "RESOURCE_EXHAUSTED",
        "Rate limit reached",
    ])
    def test_rate_limit_messages(self, message):
        with pytest.raises(FatalProviderError, match="Rate Limit Exceeded"):
            check_and_raise_fatal_error(RuntimeError(message))

    def test_rate_limit_status_code(self):
        with pytest.raises(FatalProviderError):
            check_and_raise_fatal_error(HTTPError("slow down", 429))

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_errors(self, status):
        with pytest.raises(FatalProviderError, match=f"Authentication Error \\({status}\\)"):
            check_and_raise_fatal_error(HTTPError("denied", status))

    def test_status_on_response(self):
        error = RuntimeError("bad key")
        error.response = HTTPError("", 401)
        with pytest.raises(FatalProviderError):
            check_and_raise_fatal_error(error)

    def test_fatal_error_is_reraised(self):
        original = FatalProviderError("quota")
        with pytest.raises(FatalProviderError) as exc_info:
            check_and_raise_fatal_error(original)
        assert exc_info.value is original

    def test_ordinary_errors_pass_through(self):
        check_and_raise_fatal_error(RuntimeError("connection reset"))
        check_and_raise_fatal_error(HTTPError("server error", 500))

    def test_engine_errors_quoting_output_are_not_fatal(self):
        check_and_raise_fatal_error(TestVerificationError("expected 429 to be 200"))
        check_and_raise_fatal_error(GenerationError("quota field missing in fixture"))
