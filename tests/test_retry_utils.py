"""Unit tests for regclean/retry_utils.py"""

from unittest.mock import MagicMock, patch

import pytest

from regclean.retry_utils import RetryableErrorType, compute_delay, is_retryable_error, retry_with_backoff


class _HTTPError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class _Flagged(Exception):
    def __init__(self, retryable):
        super().__init__("flagged")
        self.retryable = retryable


class TestIsRetryableError:
    """Tests for is_retryable_error"""

    def test_explicit_flag_wins(self):
        assert is_retryable_error(_Flagged(True))[0] is True
        assert is_retryable_error(_Flagged(False)) == (False, RetryableErrorType.PERMANENT)

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_retryable_status(self, status):
        assert is_retryable_error(_HTTPError(status)) == (True, RetryableErrorType.TEMPORARY)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 405])
    def test_permanent_status(self, status):
        assert is_retryable_error(_HTTPError(status))[0] is False

    def test_status_from_response(self):
        error = Exception("bad")
        error.response = MagicMock(status_code=503)
        assert is_retryable_error(error)[0] is True

    def test_network_message(self):
        assert is_retryable_error(Exception("Connection reset by peer")) == (True, RetryableErrorType.NETWORK)

    def test_unknown_defaults_to_permanent(self):
        assert is_retryable_error(ValueError("bad value"))[0] is False


class TestComputeDelay:
    """Tests for compute_delay"""

    def test_exponential_growth_capped(self):
        assert compute_delay(0, 1.0, 10.0, 2.0, False) == 1.0
        assert compute_delay(2, 1.0, 10.0, 2.0, False) == 4.0
        assert compute_delay(5, 1.0, 10.0, 2.0, False) == 10.0

    def test_jitter_within_ten_percent(self):
        for _ in range(50):
            assert 0.9 <= compute_delay(0, 1.0, 10.0, 2.0, True) <= 1.1


class TestRetryWithBackoff:
    """Tests for retry_with_backoff"""

    def test_retries_then_succeeds(self):
        func = MagicMock(side_effect=[_HTTPError(503), _HTTPError(503), "ok"])
        func.__name__ = "func"

        with patch("regclean.retry_utils.time.sleep") as mock_sleep:
            assert retry_with_backoff(max_retries=3, jitter=False)(func)() == "ok"

        assert func.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    def test_permanent_error_not_retried(self):
        func = MagicMock(side_effect=_HTTPError(404))
        func.__name__ = "func"

        with patch("regclean.retry_utils.time.sleep") as mock_sleep:
            with pytest.raises(_HTTPError):
                retry_with_backoff(max_retries=3)(func)()

        assert func.call_count == 1
        mock_sleep.assert_not_called()

    def test_gives_up_after_max_retries(self):
        func = MagicMock(side_effect=_HTTPError(500))
        func.__name__ = "func"

        with patch("regclean.retry_utils.time.sleep"):
            with pytest.raises(_HTTPError):
                retry_with_backoff(max_retries=2)(func)()

        assert func.call_count == 3

    def test_restricted_error_types(self):
        """Test that only the listed error types are retried"""
        func = MagicMock(side_effect=Exception("connection refused"))
        func.__name__ = "func"

        with patch("regclean.retry_utils.time.sleep"):
            with pytest.raises(Exception):
                retry_with_backoff(max_retries=3, retryable_errors=[RetryableErrorType.TEMPORARY])(func)()

        assert func.call_count == 1
