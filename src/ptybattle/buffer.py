"""Bounded output buffer for captured terminal output."""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass

DEFAULT_MAX_ENTRIES = 1_000
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MiB

# CSI sequences that colour text or move/erase the cursor.
ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*[mGKJH]")


def strip_ansi(text: str) -> str:
    return ANSI_PATTERN.sub("", text)


@dataclass(frozen=True, slots=True)
class BufferStats:
    count: int
    bytes: int
    capacity_count: int
    capacity_bytes: int

    @property
    def usage(self) -> float:
        return self.bytes / self.capacity_bytes if self.capacity_bytes else 0.0


class OutputBuffer:
    """FIFO of raw output chunks bounded by entry count and total bytes.

    Oldest chunks are evicted first. A single chunk larger than the byte
    ceiling is cut to half the ceiling before it is stored, so one huge
    write cannot starve every later one. The reported byte total always
    equals the summed length of the retained chunks.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        if max_entries <= 0 or max_bytes <= 0:
            msg = "Buffer ceilings must be positive"
            raise ValueError(msg)
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._entries: deque[bytes] = deque()
        self._bytes = 0
        self._evicted = 0

    def append(self, chunk: bytes | str) -> None:
        if not chunk:
            return
        data = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)

        if len(data) > self._max_bytes:
            data = data[: self._max_bytes // 2]

        while self._entries and (
            self._bytes + len(data) > self._max_bytes
            or len(self._entries) >= self._max_entries
        ):
            self._evict_oldest()

        self._entries.append(data)
        self._bytes += len(data)

    def _evict_oldest(self) -> None:
        removed = self._entries.popleft()
        self._bytes -= len(removed)
        self._evicted += 1

    def to_bytes(self) -> bytes:
        return b"".join(self._entries)

    def to_string(self) -> str:
        return self.to_bytes().decode("utf-8", errors="replace")

    def __str__(self) -> str:
        return self.to_string()

    def __len__(self) -> int:
        return len(self._entries)

    def clean_text(self) -> str:
        """Buffered text with ANSI colour and cursor sequences removed."""
        return strip_ansi(self.to_string())

    def includes(self, pattern: str) -> bool:
        return pattern in self.to_string()

    def test(self, pattern: re.Pattern[str] | str) -> bool:
        return re.search(pattern, self.to_string()) is not None

    def includes_clean(self, pattern: str) -> bool:
        return pattern in self.clean_text()

    def test_clean(self, pattern: re.Pattern[str] | str) -> bool:
        return re.search(pattern, self.clean_text()) is not None

    def tail(self, n: int) -> str:
        if n <= 0:
            return ""
        return self.to_string()[-n:]

    def last_lines(self, n: int) -> list[str]:
        if n <= 0:
            return []
        return self.to_string().split("\n")[-n:]

    def snapshot(self) -> list[bytes]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()
        self._bytes = 0

    @property
    def evicted(self) -> int:
        """Number of chunks dropped to honour the ceilings."""
        return self._evicted

    @property
    def total_bytes(self) -> int:
        return self._bytes

    def stats(self) -> BufferStats:
        return BufferStats(
            count=len(self._entries),
            bytes=self._bytes,
            capacity_count=self._max_entries,
            capacity_bytes=self._max_bytes,
        )
