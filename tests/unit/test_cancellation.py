"""
Unit tests for cancellation tokens.
"""

import asyncio

import pytest

from agentroute.cancellation import CancellationToken, CancelledException


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initial_state(self):
        token = CancellationToken()
        assert not token.is_cancelled
        token.check()

    def test_cancel(self):
        token = CancellationToken()
        token.cancel()
        assert token.is_cancelled
        with pytest.raises(CancelledException):
            token.check()

    def test_callbacks_run_once(self):
        token = CancellationToken()
        calls = []
        token.on_cancel(lambda: calls.append("a"))

        token.cancel()
        token.cancel()

        assert calls == ["a"]

    def test_callback_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.on_cancel(lambda: calls.append("late"))
        assert calls == ["late"]

    @pytest.mark.asyncio
    async def test_wait_for_cancellation_timeout(self):
        token = CancellationToken()
        assert await token.wait_for_cancellation(timeout=0.01) is False

    @pytest.mark.asyncio
    async def test_wait_for_cancellation(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        assert await token.wait_for_cancellation(timeout=1.0) is True


class TestRun:
    """Tests for running work under a token."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            await asyncio.sleep(0)
            return 42

        assert await CancellationToken().run(work()) == 42

    @pytest.mark.asyncio
    async def test_cancel_stops_work(self):
        token = CancellationToken()
        finished = []

        async def work():
            await asyncio.sleep(10)
            finished.append(True)

        task = asyncio.ensure_future(token.run(work()))
        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(CancelledException):
            await task
        assert finished == []

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CancelledException):
            await token.run(asyncio.sleep(1))

    @pytest.mark.asyncio
    async def test_error_propagates(self):
        async def work():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await CancellationToken().run(work())

    @pytest.mark.asyncio
    async def test_outer_cancellation_cancels_work(self):
        token = CancellationToken()
        started = asyncio.Event()
        cancelled = []

        async def work():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        task = asyncio.ensure_future(token.run(work()))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.01)
        assert cancelled == [True]

    @pytest.mark.asyncio
    async def test_tokens_are_independent(self):
        """Cancelling one token leaves another's work running."""
        first, second = CancellationToken(), CancellationToken()

        async def work(value):
            await asyncio.sleep(0.02)
            return value

        a = asyncio.ensure_future(first.run(work("a")))
        b = asyncio.ensure_future(second.run(work("b")))
        first.cancel()

        with pytest.raises(CancelledException):
            await a
        assert await b == "b"
