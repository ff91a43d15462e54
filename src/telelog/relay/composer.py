"""Turn accepted entries into size-bounded HTML message blocks."""

import html
from collections.abc import Iterable
from dataclasses import dataclass

from .entry import TIMESTAMP_FORMAT, Entry, severity_marker

# Telegram rejects message text longer than this, counted in UTF-16 code units
MAX_BLOCK_SIZE = 4096

OPEN_TAG = "<code>\n"
CLOSE_TAG = "</code>"

# Merging two blocks removes one close tag and one open tag, so two blocks
# whose combined length is under this bound still fit MAX_BLOCK_SIZE
MERGE_BOUND = MAX_BLOCK_SIZE + len(OPEN_TAG) + len(CLOSE_TAG) - 2

ELLIPSIS = "…"


def text_length(text: str) -> int:
    """Length as Telegram counts it: astral characters take two units."""
    return len(text.encode("utf-16-le")) // 2


@dataclass
class Block:
    """One message worth of formatted lines."""

    text: str
    failures: int = 0  # non-429 rejections so far

    def __len__(self) -> int:
        return text_length(self.text)


def format_line(entry: Entry) -> str:
    """Format one entry as a single block line (newline-terminated)."""
    return (
        f"{severity_marker(entry.priority)}"
        f"[{entry.timestamp.strftime(TIMESTAMP_FORMAT)}] "
        f"{html.escape(entry.identifier)}: {html.escape(entry.message)}\n"
    )


def _fit_line(line: str, room: int) -> str:
    """Truncate a line that cannot fit even an empty block."""
    if text_length(line) <= room:
        return line
    budget = room - text_length(ELLIPSIS) - 1
    cut = line[:budget]
    while (excess := text_length(cut) - budget) > 0:
        cut = cut[:-excess]
    # Never leave half an entity such as "&am" before the ellipsis
    amp = cut.rfind("&")
    if amp != -1 and ";" not in cut[amp:]:
        cut = cut[:amp]
    return cut + ELLIPSIS + "\n"


def compose(entries: Iterable[Entry], max_size: int = MAX_BLOCK_SIZE) -> list[Block]:
    """Format entries into blocks no longer than ``max_size``.

    Lines keep arrival order and are never split across blocks.
    """
    room = max_size - len(OPEN_TAG) - len(CLOSE_TAG)
    blocks: list[Block] = []
    lines: list[str] = []
    size = 0

    for entry in entries:
        line = _fit_line(format_line(entry), room)
        length = text_length(line)
        if lines and size + length > room:
            blocks.append(Block(OPEN_TAG + "".join(lines) + CLOSE_TAG))
            lines, size = [], 0
        lines.append(line)
        size += length

    if lines:
        blocks.append(Block(OPEN_TAG + "".join(lines) + CLOSE_TAG))
    return blocks


def merge(pending: Iterable[Block], new: Iterable[Block], bound: int = MERGE_BOUND) -> list[Block]:
    """Concatenate adjacent small blocks, pending blocks first.

    Two neighbours are joined when their combined length is under ``bound``
    and neither has been rejected yet. A rejected block keeps its own text
    so its failure count never spreads to entries that have not been tried.
    Order is preserved and only adjacent blocks are ever joined.
    """
    merged: list[Block] = []
    for block in [*pending, *new]:
        if (
            merged
            and not merged[-1].failures
            and not block.failures
            and len(merged[-1]) + len(block) < bound
        ):
            merged[-1] = Block(_strip_close(merged[-1].text) + _strip_open(block.text) + CLOSE_TAG)
        else:
            merged.append(Block(block.text, block.failures))
    return merged


def _strip_close(text: str) -> str:
    return text.removesuffix(CLOSE_TAG)


def _strip_open(text: str) -> str:
    return text.removeprefix(OPEN_TAG).removesuffix(CLOSE_TAG)
