"""Exception types raised by the healing engine."""

from typing import Any


class MenderError(Exception):
    """Base class for all engine errors."""


class GenerationError(MenderError):
    """The AI provider returned no usable output."""


class AgenticResponseError(GenerationError):
    """The agent reply was not a valid request_files / generate_test action."""


class TestVerificationError(MenderError):
    """The generated test still fails after the last attempt."""
    __test__ = False


class FatalProviderError(MenderError):
    """Provider-level condition (quota, auth) that must stop all work."""


class FileAccessError(MenderError):
    """A project file could not be read or written."""


class TestGenerationError(MenderError):
    """A source file could not be given a working test."""
    __test__ = False


RATE_LIMIT_MARKERS = ("429", "usage limit", "quota", "resource_exhausted", "rate limit")


def _status_code(error: Any) -> int | None:
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return int(value)
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return int(value) if isinstance(value, int) else None


def check_and_raise_fatal_error(error: BaseException) -> None:
    """
    Raise FatalProviderError if `error` is a provider-fatal condition.

    Rate limits, exhausted quotas and authentication failures are fatal.
    Anything else is left for the caller to handle.
    """
    if isinstance(error, FatalProviderError):
        raise error
    if isinstance(error, MenderError):
        # our own errors may quote test output, which is not provider state
        return

    message = str(error)
    lowered = message.lower()
    status_code = _status_code(error)

    if status_code == 429 or any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        raise FatalProviderError(f"AI Provider Rate Limit Exceeded: {message}") from error

    if status_code in (401, 403):
        raise FatalProviderError(
            f"AI Provider Authentication Error ({status_code}): {message}"
        ) from error
