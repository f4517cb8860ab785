import pytest

from casework.services.legacy_api import (
    LegacyApiError,
    LegacyAuthError,
    LegacyNotFoundError,
    LegacyRateLimitError,
    LegacyServerError,
    LegacyTimeoutError,
    error_for_status,
)


@pytest.mark.parametrize(
    "status_code,expected,transient",
    [
        (401, LegacyAuthError, False),
        (404, LegacyNotFoundError, False),
        (429, LegacyRateLimitError, True),
        (502, LegacyServerError, True),
        (422, LegacyApiError, False),
    ],
)
def test_error_for_status(status_code, expected, transient):
    error = error_for_status(status_code, "boom")

    assert type(error) is expected
    assert error.status_code == status_code
    assert error.is_transient is transient


def test_rate_limit_carries_retry_after():
    error = error_for_status(429, "slow down", retry_after=12.5)

    assert error.retry_after == 12.5


def test_timeouts_are_transient():
    assert LegacyTimeoutError().is_transient is True
    assert LegacyTimeoutError().status_code is None
