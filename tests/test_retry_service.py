"""
Retry policy tests: backoff progression, retryable exception filtering
and the oracle-specific policy
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from services.retry_service import (
    EXPONENTIAL,
    LINEAR,
    RetryService,
    call_oracle_with_retry,
    compute_delay,
)
from utils.exceptions import NotFoundError, OracleUnavailableError
from utils.logging_setup import NOISY_LOGGERS, configure_logging


class TestBackoff:

    def test_linear_progression(self):
        assert [compute_delay(n, 2.0, LINEAR) for n in (1, 2, 3)] == [2.0, 4.0, 6.0]

    def test_exponential_progression_is_capped(self):
        assert [compute_delay(n, 1.0, EXPONENTIAL, max_delay=5.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            compute_delay(1, 1.0, "fibonacci")


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func = AsyncMock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])

        with patch("services.retry_service.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await RetryService.retry_async(func, max_attempts=3, initial_delay=1.0, backoff=LINEAR)

        assert result == "ok"
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_last_error_is_reraised(self):
        func = AsyncMock(side_effect=ConnectionError("still down"))

        with pytest.raises(ConnectionError, match="still down"):
            await RetryService.retry_async(func, max_attempts=2, initial_delay=0)
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_unlisted_exception_is_not_retried(self):
        func = AsyncMock(side_effect=KeyError("bug"))

        with pytest.raises(KeyError):
            await RetryService.retry_async(func, max_attempts=5, initial_delay=0, exceptions=(ConnectionError,))
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_attempt_count(self):
        with pytest.raises(ValueError):
            await RetryService.retry_async(AsyncMock(), max_attempts=0)


class TestOraclePolicy:

    @pytest.mark.asyncio
    async def test_unavailable_is_retried(self):
        func = AsyncMock(side_effect=[OracleUnavailableError("timeout"), {"ok": True}])

        result = await call_oracle_with_retry(func, "fetch", max_attempts=3, initial_delay=0)

        assert result == {"ok": True}
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_not_found_is_final(self):
        func = AsyncMock(side_effect=NotFoundError("missing"))

        with pytest.raises(NotFoundError):
            await call_oracle_with_retry(func, "fetch", max_attempts=3, initial_delay=0)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self):
        func = AsyncMock(side_effect=OracleUnavailableError("HTTP 502"))

        with pytest.raises(OracleUnavailableError):
            await call_oracle_with_retry(func, "fetch", max_attempts=2, initial_delay=0)
        assert func.await_count == 2


class TestLoggingSetup:

    def test_configure_logging_is_idempotent(self):
        root = logging.getLogger()
        configure_logging("debug")
        configure_logging("info")

        handlers = [h for h in root.handlers if getattr(h, "_treasury_handler", False)]
        assert len(handlers) == 1
        assert root.level == logging.INFO
        assert all(logging.getLogger(name).level == logging.WARNING for name in NOISY_LOGGERS)

        for handler in handlers:
            root.removeHandler(handler)
