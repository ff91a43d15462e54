"""Tests for the delivery dispatcher."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import FakeTelegramClient, make_entry

from telelog.relay import Dispatcher, DispatcherState, RetryState, SendResult
from telelog.relay.composer import format_line

TRANSPORT_ERROR = SendResult(error="ConnectError")


def make_dispatcher(client: FakeTelegramClient, **kwargs) -> Dispatcher:
    kwargs.setdefault("flush_seconds", 60.0)
    kwargs.setdefault("send_interval", 0)
    return Dispatcher(client, **kwargs)


class TestRetryState:
    def test_doubles_and_resets(self):
        rs = RetryState()
        rs.record_failure()
        rs.record_failure()
        assert rs.counter == 4
        rs.record_success()
        assert rs.counter == 1

    def test_delay(self):
        rs = RetryState()
        assert rs.delay(5) == 10
        rs.record_failure()
        assert rs.delay(5) == 20

    def test_delay_ceiling(self):
        rs = RetryState(max_backoff_seconds=30)
        for _ in range(10):
            rs.record_failure()
        assert rs.delay(5) == 30


class TestAccept:
    @pytest.mark.asyncio
    async def test_critical_entry_flushes_immediately(self, fake_client):
        """A priority 1 entry is sent without waiting for flush_seconds."""
        d = make_dispatcher(fake_client)
        await d.accept(make_entry("kernel panic", priority=1))
        await asyncio.sleep(0.05)

        assert len(fake_client.sent) == 1
        assert "kernel panic" in fake_client.sent[0]
        await d.close()

    @pytest.mark.asyncio
    async def test_one_timer_per_batch(self, fake_client):
        """Three routine entries share one scheduled flush."""
        d = make_dispatcher(fake_client, flush_seconds=0.05)
        for i in range(3):
            await d.accept(make_entry(f"routine {i}", priority=6))

        assert len(d._tasks) == 1
        assert fake_client.sent == []
        assert d.state is DispatcherState.ACCUMULATING

        await asyncio.sleep(0.2)
        assert len(fake_client.sent) == 1
        for i in range(3):
            assert f"routine {i}" in fake_client.sent[0]
        assert d.state is DispatcherState.IDLE
        await d.close()

    @pytest.mark.asyncio
    async def test_new_batch_after_flush_gets_new_timer(self, fake_client):
        d = make_dispatcher(fake_client, flush_seconds=0.02)
        await d.accept(make_entry("first"))
        await asyncio.sleep(0.1)
        await d.accept(make_entry("second"))
        await asyncio.sleep(0.1)

        assert len(fake_client.sent) == 2
        await d.close()

    @pytest.mark.asyncio
    async def test_idle_initially(self, fake_client):
        d = make_dispatcher(fake_client)
        assert d.state is DispatcherState.IDLE
        assert d.buffered == 0


class TestFlush:
    @pytest.mark.asyncio
    async def test_empty_flush_is_noop(self, fake_client):
        d = make_dispatcher(fake_client)
        await d.flush()
        assert fake_client.sent == []
        assert d.retry.counter == 1

    @pytest.mark.asyncio
    async def test_arrival_order_preserved(self, fake_client):
        d = make_dispatcher(fake_client)
        entries = [make_entry(f"entry {i:02d}", priority=5) for i in range(30)]
        for e in entries:
            await d.accept(e)
        await d.flush()

        text = "".join(fake_client.sent)
        positions = [text.index(format_line(e)) for e in entries]
        assert positions == sorted(positions)
        assert d.buffered == 0
        await d.close()

    @pytest.mark.asyncio
    async def test_rate_limited_block_is_retained(self):
        """A 429 with retry_after=30 pauses sending and keeps the block."""
        client = FakeTelegramClient([SendResult(status=429, retry_after=30)])
        d = make_dispatcher(client)
        d._pause = AsyncMock()

        await d.accept(make_entry("throttled"))
        await d.flush()

        d._pause.assert_awaited_once_with(30)
        assert len(d.pending) == 1
        assert "throttled" in d.pending[0].text
        assert d.retry.counter == 2
        assert d._retry_wake.is_set()
        await d.close()

    @pytest.mark.asyncio
    async def test_pending_sent_before_new_entries(self):
        client = FakeTelegramClient([TRANSPORT_ERROR])
        d = make_dispatcher(client)

        await d.accept(make_entry("older"))
        await d.flush()
        assert len(d.pending) == 1

        await d.accept(make_entry("newer"))
        await d.flush()

        # Both fit one block, so they go out merged in one call
        assert len(client.sent) == 2
        assert client.sent[1].index("older") < client.sent[1].index("newer")
        assert d.pending == []
        assert d.retry.counter == 1
        await d.close()

    @pytest.mark.asyncio
    async def test_flush_with_only_pending_blocks_runs(self):
        client = FakeTelegramClient([TRANSPORT_ERROR])
        d = make_dispatcher(client)
        await d.accept(make_entry("retry me"))
        await d.flush()

        await d.flush()
        assert len(client.sent) == 2
        assert "retry me" in client.sent[1]
        assert d.pending == []
        await d.close()

    @pytest.mark.asyncio
    async def test_rejected_block_dropped_after_max_attempts(self):
        client = FakeTelegramClient([SendResult(status=400, error="Bad Request")] * 2)
        d = make_dispatcher(client, max_attempts=2)

        await d.accept(make_entry("malformed"))
        await d.flush()
        assert len(d.pending) == 1
        assert d.pending[0].failures == 1

        await d.flush()
        assert d.pending == []
        assert d.retry.counter == 4
        await d.close()

    @pytest.mark.asyncio
    async def test_rejected_block_kept_forever_when_unlimited(self):
        client = FakeTelegramClient([SendResult(status=500)] * 5)
        d = make_dispatcher(client, max_attempts=0)
        await d.accept(make_entry("stubborn"))
        for _ in range(5):
            await d.flush()
        assert len(d.pending) == 1
        assert d.pending[0].failures == 5
        await d.close()

    @pytest.mark.asyncio
    async def test_rejected_block_does_not_drag_new_entries_down(self):
        """Entries flushed after a rejected block get their own attempts."""
        client = FakeTelegramClient([SendResult(status=400)] * 3)
        d = make_dispatcher(client, max_attempts=2)

        await d.accept(make_entry("poison"))
        await d.flush()
        await d.accept(make_entry("innocent"))
        await d.flush()

        # poison hit its second rejection, innocent only its first
        assert len(client.sent) == 3
        assert [b.failures for b in d.pending] == [1]
        assert "innocent" in d.pending[0].text
        assert "poison" not in d.pending[0].text
        await d.close()

    @pytest.mark.asyncio
    async def test_pending_cap_drops_oldest(self):
        client = FakeTelegramClient([TRANSPORT_ERROR] * 3)
        d = make_dispatcher(client, max_pending_blocks=1)
        for name in ("first", "second", "third"):
            await d.accept(make_entry(name + " " + "x" * 3000))
        await d.flush()

        assert len(client.sent) == 3
        assert len(d.pending) == 1
        assert "third" in d.pending[0].text
        await d.close()

    @pytest.mark.asyncio
    async def test_send_interval_holds_lock(self, fake_client):
        d = make_dispatcher(fake_client, send_interval=1.5)
        d._pause = AsyncMock()
        await d.accept(make_entry("a"))
        await d.flush()
        d._pause.assert_awaited_once_with(1.5)
        await d.close()


class TestSendLock:
    @pytest.mark.asyncio
    async def test_one_call_in_flight(self):
        in_flight = 0
        peak = 0

        class SlowClient(FakeTelegramClient):
            async def send_message(self, text):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return await super().send_message(text)

        client = SlowClient()
        d = make_dispatcher(client)
        await d.accept(make_entry("from flush"))
        await asyncio.gather(d.flush(), d.send_message("a"), d.send_message("b"))

        assert peak == 1
        assert len(client.sent) == 3
        await d.close()

    @pytest.mark.asyncio
    async def test_rate_limit_pause_blocks_other_senders(self):
        events = []

        class RecordingClient(FakeTelegramClient):
            async def send_message(self, text):
                events.append("send")
                return await super().send_message(text)

        async def pause(seconds):
            events.append("pause-start")
            await asyncio.sleep(0.05)
            events.append("pause-end")

        client = RecordingClient([SendResult(status=429, retry_after=30)])
        d = make_dispatcher(client)
        d._pause = pause
        await d.accept(make_entry("limited"))

        await asyncio.gather(d.flush(), d.send_message("other"))

        assert events == ["send", "pause-start", "pause-end", "send"]
        await d.close()


class TestRetryLoop:
    @pytest.mark.asyncio
    async def test_failed_flush_is_retried(self):
        client = FakeTelegramClient([TRANSPORT_ERROR])
        d = make_dispatcher(client, flush_seconds=0.01)
        d.start()

        await d.accept(make_entry("eventually", priority=0))
        await asyncio.sleep(0.3)

        assert len(client.sent) == 2
        assert d.pending == []
        assert d.retry.counter == 1
        await d.close()

    @pytest.mark.asyncio
    async def test_close_stops_retry_loop(self, fake_client):
        d = make_dispatcher(fake_client)
        d.start()
        await d.close()
        assert d._retry_task is None


class TestHealth:
    @pytest.mark.asyncio
    async def test_unhealthy_after_repeated_failures(self):
        client = FakeTelegramClient([TRANSPORT_ERROR] * 3)
        d = make_dispatcher(client)
        await d.accept(make_entry("down"))

        for _ in range(2):
            await d.flush()
            assert d.healthy()
        await d.flush()
        assert not d.healthy()

        await d.flush()
        assert d.healthy()
        await d.close()
