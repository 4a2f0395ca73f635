"""
Tests for the render retry policy.

Tests:
- Success after transient failures, within the backoff bounds
- Exhaustion re-raises the last error unchanged
- Permanent and foreign errors are not retried
"""

import asyncio

import pytest

from sloth_proxy.errors import RenderError, RendererUnavailable
from sloth_proxy.retry import RetryPolicy, is_retryable


class FlakyCall:
    """Fails with the queued errors, then returns html."""

    def __init__(self, errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self, url):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return f"<html>{url}</html>"


def recording_policy(retries=2, min_delay=0.5, max_delay=1.5):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RetryPolicy(retries=retries, min_delay=min_delay, max_delay=max_delay, sleep=fake_sleep), sleeps


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_succeeds_on_third_attempt(self):
        policy, sleeps = recording_policy()
        call = FlakyCall([
            RenderError("net::ERR_CONNECTION_RESET", cause="network"),
            RenderError("Timeout 25000ms exceeded", cause="timeout"),
        ])

        html = asyncio.run(policy.call(call, "https://example.com"))

        assert html == "<html>https://example.com</html>"
        assert call.calls == 3
        assert len(sleeps) == 2
        assert all(0.5 <= s <= 1.5 for s in sleeps)
        assert 1.0 <= sum(sleeps) <= 3.0

    def test_backoff_grows_and_is_clamped(self):
        policy, sleeps = recording_policy(retries=4, min_delay=0.5, max_delay=1.5)
        call = FlakyCall([RenderError("flaky", cause="network") for _ in range(4)])

        asyncio.run(policy.call(call, "https://example.com"))

        assert sleeps == [0.5, 1.0, 1.5, 1.5]

    def test_exhaustion_reraises_last_error_unchanged(self):
        policy, sleeps = recording_policy()
        errors = [RenderError(f"attempt {i}", cause="network") for i in range(3)]
        call = FlakyCall(errors)
        last = errors[-1]

        with pytest.raises(RenderError) as exc:
            asyncio.run(policy.call(call, "https://example.com"))

        assert exc.value is last
        assert call.calls == 3
        assert len(sleeps) == 2

    def test_permanent_error_is_not_retried(self):
        policy, sleeps = recording_policy()
        call = FlakyCall([RenderError("net::ERR_NAME_NOT_RESOLVED", cause="dns", retryable=False)])

        with pytest.raises(RenderError):
            asyncio.run(policy.call(call, "https://nope.invalid"))

        assert call.calls == 1
        assert sleeps == []

    def test_renderer_unavailable_is_not_retried(self):
        policy, _ = recording_policy()
        call = FlakyCall([RendererUnavailable("Chromium is not installed")])

        with pytest.raises(RendererUnavailable):
            asyncio.run(policy.call(call, "https://example.com"))

        assert call.calls == 1

    def test_non_render_errors_propagate_immediately(self):
        policy, _ = recording_policy()
        call = FlakyCall([ValueError("bug")])

        with pytest.raises(ValueError):
            asyncio.run(policy.call(call, "https://example.com"))

        assert call.calls == 1

    def test_zero_retries_means_single_attempt(self):
        policy, _ = recording_policy(retries=0)
        call = FlakyCall([RenderError("flaky")])

        with pytest.raises(RenderError):
            asyncio.run(policy.call(call, "https://example.com"))

        assert call.calls == 1
        assert policy.attempts == 1


class TestIsRetryable:
    def test_classification(self):
        assert is_retryable(RenderError("x", cause="timeout"))
        assert not is_retryable(RenderError("x", cause="dns", retryable=False))
        assert not is_retryable(RendererUnavailable("missing"))
        assert not is_retryable(RuntimeError("x"))
