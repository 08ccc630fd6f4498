"""Provider retry backoff."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from kb_learning.core import MalformedOutputError, TransientProviderError
from kb_learning.learning.domain import LearningPolicy, RetryPolicy


class TestDelay:

    def test_exponential_growth_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0.5)
        assert policy.delay_for(10, rand=lambda: 1.0) == 30.0

    @pytest.mark.parametrize("rand_value, expected", [(0.0, 2.0), (0.5, 4.0), (1.0, 6.0)])
    def test_jitter_bounds(self, rand_value, expected):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0.5)
        assert policy.delay_for(3, rand=lambda: rand_value) == pytest.approx(expected)

    def test_policy_settings_map_to_retry_policy(self):
        policy = LearningPolicy().merged_with({"retry": {"max_attempts": 5, "base_delay_seconds": 2}})
        assert policy.retry_policy.max_attempts == 5
        assert policy.retry_policy.base_delay == 2


class TestExecute:

    @pytest.mark.asyncio
    async def test_retries_transient_errors_then_succeeds(self):
        operation = AsyncMock(side_effect=[TransientProviderError("timeout"), "ok"])
        sleep = AsyncMock()
        on_retry = MagicMock()

        result = await RetryPolicy(jitter=0.0).execute(operation, sleep=sleep, on_retry=on_retry)

        assert result == "ok"
        assert operation.await_count == 2
        sleep.assert_awaited_once_with(1.0)
        attempt, error, delay = on_retry.call_args.args
        assert (attempt, delay) == (1, 1.0)
        assert isinstance(error, TransientProviderError)

    @pytest.mark.asyncio
    async def test_last_error_propagates_after_max_attempts(self):
        operation = AsyncMock(side_effect=TransientProviderError("provider down"))
        sleep = AsyncMock()

        with pytest.raises(TransientProviderError):
            await RetryPolicy(max_attempts=3, jitter=0.0).execute(operation, sleep=sleep)

        assert operation.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        operation = AsyncMock(side_effect=MalformedOutputError("not json"))
        sleep = AsyncMock()

        with pytest.raises(MalformedOutputError):
            await RetryPolicy().execute(operation, sleep=sleep)

        assert operation.await_count == 1
        sleep.assert_not_awaited()
