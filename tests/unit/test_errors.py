"""Tests for the error taxonomy and Result."""

from radiochat.errors import (
    GENERIC_FAILURE,
    BannedError,
    ClientError,
    RateLimitError,
    Result,
    StoreUnavailable,
    ValidationError,
)


def test_client_errors_keep_reason_and_message():
    error = ValidationError("body_too_long", "Message must be at most 500 characters")
    assert isinstance(error, ClientError)
    assert error.to_dict() == {
        "error": "body_too_long",
        "message": "Message must be at most 500 characters",
    }


def test_store_unavailable_hides_detail():
    error = StoreUnavailable(message="connection refused on 10.0.0.5:5432")
    assert error.reason == "store_unavailable"
    assert error.public_message == GENERIC_FAILURE
    assert "10.0.0.5" not in str(error.to_dict())


def test_rate_limit_error_carries_retry_after():
    error = RateLimitError("rate_limited", "slow down", retry_after=42)
    assert error.to_dict()["retry_after"] == 42


def test_result_success_and_failure():
    ok = Result.success("value")
    assert ok.ok and ok.value == "value" and ok.error is None
    assert not ok.is_client_error

    banned = Result.failure(BannedError("ip_banned"))
    assert not banned.ok
    assert banned.is_client_error

    infra = Result.failure(StoreUnavailable())
    assert not infra.ok
    assert not infra.is_client_error
