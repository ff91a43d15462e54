"""Tail the systemd journal and normalize records into entries."""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator, Mapping
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

import structlog

from .entry import Entry
from .rules import NativeMatchSpec

log = structlog.get_logger()

DEFAULT_PRIORITY = 6
WAIT_TIMEOUT = 1.0

# C0 controls (minus tab and newline), DEL and C1 controls
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")

_CORE_FIELDS = frozenset({"PRIORITY", "SYSLOG_IDENTIFIER", "MESSAGE"})


def clean_text(value: Any) -> str:
    """Decode a journal value and strip control characters."""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return _CONTROL_CHARS.sub("", str(value)).strip()


def _parse_priority(value: Any) -> int:
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return min(max(priority, 0), 7)


def _parse_timestamp(record: Mapping[str, Any]) -> datetime:
    for key in ("_SOURCE_REALTIME_TIMESTAMP", "__REALTIME_TIMESTAMP"):
        value = record.get(key)
        if value is None:
            continue
        if isinstance(value, datetime):
            return value.astimezone()
        try:
            micros = int(value)
        except (TypeError, ValueError):
            continue
        return datetime.fromtimestamp(micros / 1_000_000, tz=timezone.utc).astimezone()
    return datetime.now().astimezone()


def entry_from_record(record: Mapping[str, Any]) -> Entry:
    """Build an Entry from a raw journal record."""
    identifier = record.get("SYSLOG_IDENTIFIER") or record.get("_COMM") or "unknown"
    message = record.get("MESSAGE")

    extra = {}
    for key, value in record.items():
        key = key.upper()
        if key in _CORE_FIELDS:
            continue
        if isinstance(value, (str, bytes, int)):
            extra[key] = clean_text(value)

    return Entry(
        priority=_parse_priority(record.get("PRIORITY")),
        timestamp=_parse_timestamp(record),
        identifier=clean_text(identifier),
        message=clean_text(message) if message is not None else "unknown",
        fields=MappingProxyType(extra),
    )


class JournalSource:
    """Follow new journal entries from the tail (or a saved cursor)."""

    def __init__(self, reader: Any = None, cursor: str | None = None):
        """Initialize the source.

        Args:
            reader: A ``systemd.journal.Reader``; opened on demand if omitted
            cursor: Resume after this journal cursor instead of the tail
        """
        self._reader = reader
        self.cursor = cursor
        self._closed = False
        self._wait: asyncio.Future | None = None

    @property
    def reader(self) -> Any:
        if self._reader is None:
            # Only needed on hosts that actually run the relay
            from systemd import journal

            self._reader = journal.Reader()
        return self._reader

    def open(self, native: NativeMatchSpec | None = None) -> None:
        """Position the cursor and install native matches."""
        reader = self.reader
        if native:
            native.apply(reader)

        if self.cursor:
            reader.seek_cursor(self.cursor)
            # seek_cursor lands on the saved entry itself; skip it
            reader.get_next()
            log.info("Resuming journal", cursor=self.cursor)
        else:
            reader.seek_tail()
            reader.get_previous()
            log.info("Tailing journal")

    async def close(self) -> None:
        """Stop iterating and close the reader once no wait is in flight."""
        self._closed = True
        if self._wait is not None and not self._wait.done():
            # The worker thread still holds the reader until wait() returns
            await asyncio.gather(self._wait, return_exceptions=True)
        if self._reader is not None:
            self._reader.close()

    def _drain(self) -> list[dict]:
        records = []
        while True:
            record = self.reader.get_next()
            if not record:
                return records
            records.append(record)

    async def entries(self) -> AsyncIterator[Entry]:
        """Yield entries as they are appended to the journal."""
        while not self._closed:
            # Reader.wait blocks, so it runs off the event loop. Shielded so
            # a cancelled ingest leaves the wait for close() to collect.
            self._wait = asyncio.ensure_future(asyncio.to_thread(self.reader.wait, WAIT_TIMEOUT))
            await asyncio.shield(self._wait)
            for record in self._drain():
                cursor = record.get("__CURSOR")
                if cursor:
                    self.cursor = cursor
                yield entry_from_record(record)

    def __aiter__(self) -> AsyncIterator[Entry]:
        return self.entries()
