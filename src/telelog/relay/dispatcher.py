"""Buffered delivery of accepted entries to Telegram.

The dispatcher owns the entry buffer, the blocks that failed delivery and the
backoff counter. Entries are buffered on accept and flushed either
immediately (critical priority) or ``flush_seconds`` after the first entry
of a batch. Failed blocks are retried, oldest first, by a background retry
loop with exponential backoff.

Locks, always taken in this order when nested:
    flush lock   serializes flushes; guards pending blocks and retry state
    buffer lock  guards the entry buffer; accept() only ever takes this one
    send lock    at most one Bot API call in flight, held through
                 rate-limit pauses so every sender waits them out
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from enum import Enum
from typing import Any

import structlog

from telelog.metrics import (
    BLOCKS,
    BUFFERED_ENTRIES,
    ENTRIES,
    FLUSH_DURATION,
    PENDING_BLOCKS,
    RETRY_FACTOR,
)

from .composer import Block, compose, merge
from .entry import Entry
from .telegram import SendResult, TelegramClient

log = structlog.get_logger()

# Backoff multiplier reached after three failed flushes in a row
UNHEALTHY_RETRY_FACTOR = 8


class DispatcherState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


class RetryState:
    """Backoff multiplier: doubled on a failed flush, reset on a clean one."""

    def __init__(self, max_backoff_seconds: float = 0):
        self.counter = 1
        self.max_backoff_seconds = max_backoff_seconds

    def record_failure(self) -> None:
        self.counter *= 2

    def record_success(self) -> None:
        self.counter = 1

    def delay(self, flush_seconds: float) -> float:
        """Seconds to wait before the next retry flush."""
        delay = self.counter * 2 * flush_seconds
        if self.max_backoff_seconds:
            return min(delay, self.max_backoff_seconds)
        return delay


class Dispatcher:
    """Accept/flush/retry state machine around a TelegramClient."""

    def __init__(
        self,
        client: TelegramClient,
        flush_seconds: float = 5.0,
        send_interval: float = 1.0,
        max_attempts: int = 5,
        max_pending_blocks: int = 0,
        max_backoff_seconds: float = 0,
    ):
        """Initialize the dispatcher.

        Args:
            client: Bot API client used for every send
            flush_seconds: Delay between the first buffered entry and its flush
            send_interval: Seconds the send lock stays held after each call
            max_attempts: Non-429 rejections before a block is dropped (0 = never)
            max_pending_blocks: Cap on retained failed blocks, oldest dropped (0 = no cap)
            max_backoff_seconds: Ceiling on the retry delay (0 = no ceiling)
        """
        self.client = client
        self.flush_seconds = flush_seconds
        self.send_interval = send_interval
        self.max_attempts = max_attempts
        self.max_pending_blocks = max_pending_blocks
        self.retry = RetryState(max_backoff_seconds)

        self._buffer: list[Entry] = []
        self._pending: list[Block] = []
        self._timer_pending = False

        self._flush_lock = asyncio.Lock()
        self._buffer_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._retry_wake = asyncio.Event()

        self._tasks: set[asyncio.Task] = set()
        self._retry_task: asyncio.Task | None = None

    @property
    def pending(self) -> list[Block]:
        """Blocks waiting to be retried, oldest first."""
        return list(self._pending)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def healthy(self) -> bool:
        """False once deliveries have failed several flushes in a row."""
        return self.retry.counter < UNHEALTHY_RETRY_FACTOR

    @property
    def state(self) -> DispatcherState:
        if self._flush_lock.locked():
            return DispatcherState.FLUSHING
        if self._buffer or self._timer_pending:
            return DispatcherState.ACCUMULATING
        return DispatcherState.IDLE

    def start(self) -> None:
        """Start the background retry loop."""
        if self._retry_task is None:
            self._retry_task = asyncio.create_task(self._retry_loop(), name="telelog-retry")

    async def close(self) -> None:
        """Cancel the retry loop and any scheduled flushes."""
        tasks = [t for t in (self._retry_task, *self._tasks) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_task = None
        self._tasks.clear()

    async def accept(self, entry: Entry) -> None:
        """Buffer an accepted entry and schedule its flush."""
        async with self._buffer_lock:
            self._buffer.append(entry)
            first = len(self._buffer) == 1
            BUFFERED_ENTRIES.set(len(self._buffer))
        ENTRIES.labels(outcome="accepted").inc()

        if entry.is_critical:
            log.debug("Critical entry, flushing now", priority=entry.priority)
            self._spawn(self.flush())
        elif first:
            self._timer_pending = True
            self._spawn(self._flush_later())

    async def flush(self) -> None:
        """Send buffered entries and retained blocks.

        Retained blocks go first. Blocks that fail are kept for the next
        flush and the retry loop is woken.
        """
        async with self._flush_lock:
            async with self._buffer_lock:
                entries, self._buffer = self._buffer, []
                BUFFERED_ENTRIES.set(0)

            blocks = merge(self._pending, compose(entries))
            self._pending = []
            if not blocks:
                log.debug("Flush ran with nothing to send")
                return

            log.info("Flushing", entries=len(entries), blocks=len(blocks))
            retained: list[Block] = []
            failed = False
            with FLUSH_DURATION.time():
                for block in blocks:
                    result = await self._send_block(block)
                    if result.ok:
                        BLOCKS.labels(outcome="sent").inc()
                        continue
                    failed = True
                    if self._should_retain(block, result):
                        retained.append(block)

            self._pending = self._cap_pending(retained)
            PENDING_BLOCKS.set(len(self._pending))

            if failed:
                self.retry.record_failure()
                self._retry_wake.set()
                log.warning(
                    "Flush incomplete",
                    pending=len(self._pending),
                    retry_factor=self.retry.counter,
                )
            else:
                self.retry.record_success()
            RETRY_FACTOR.set(self.retry.counter)

    async def send_message(self, text: str) -> SendResult:
        """Send one ad-hoc message, honouring the send lock."""
        return await self._send_block(Block(text))

    async def _send_block(self, block: Block) -> SendResult:
        async with self._send_lock:
            result = await self.client.send_message(block.text)
            if result.rate_limited:
                pause = result.retry_after if result.retry_after is not None else self.send_interval
                log.warning("Rate limited by Telegram, pausing all sends", seconds=pause)
                await self._pause(pause)
            elif self.send_interval:
                await self._pause(self.send_interval)
        return result

    async def _pause(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def _should_retain(self, block: Block, result: SendResult) -> bool:
        if result.status is None:
            BLOCKS.labels(outcome="transport_error").inc()
            log.warning("Block delivery failed, will retry", error=result.error)
            return True

        if result.rate_limited:
            BLOCKS.labels(outcome="rate_limited").inc()
            return True

        BLOCKS.labels(outcome="rejected").inc()
        block.failures += 1
        if self.max_attempts and block.failures >= self.max_attempts:
            BLOCKS.labels(outcome="dropped").inc()
            log.error(
                "Dropping block after repeated rejections",
                status=result.status,
                attempts=block.failures,
                length=len(block),
            )
            return False
        log.warning(
            "Block rejected, will retry",
            status=result.status,
            attempts=block.failures,
        )
        return True

    def _cap_pending(self, blocks: list[Block]) -> list[Block]:
        if not self.max_pending_blocks or len(blocks) <= self.max_pending_blocks:
            return blocks
        excess = len(blocks) - self.max_pending_blocks
        BLOCKS.labels(outcome="dropped").inc(excess)
        log.warning("Too many undelivered blocks, dropping oldest", dropped=excess)
        return blocks[excess:]

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.flush_seconds)
        self._timer_pending = False
        await self.flush()

    async def _retry_loop(self) -> None:
        while True:
            await self._retry_wake.wait()
            self._retry_wake.clear()
            delay = self.retry.delay(self.flush_seconds)
            log.info("Retry scheduled", delay=delay, pending=len(self._pending))
            await asyncio.sleep(delay)
            await self.flush()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background flush failed", exc_info=exc)
