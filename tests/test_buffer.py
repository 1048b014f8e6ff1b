from __future__ import annotations

import random

import pytest

from ptybattle.buffer import OutputBuffer, strip_ansi


def test_buffer_keeps_entries_in_order() -> None:
    buffer = OutputBuffer()
    buffer.append(b"hello ")
    buffer.append("world")

    assert buffer.to_string() == "hello world"
    assert buffer.includes("lo wo")
    assert buffer.test(r"h\w+o")
    assert not buffer.includes("goodbye")


def test_bounds_hold_after_every_append() -> None:
    rng = random.Random(1234)
    buffer = OutputBuffer(max_entries=8, max_bytes=64)
    for _ in range(500):
        buffer.append(b"x" * rng.randint(1, 100))
        stats = buffer.stats()
        assert stats.count <= 8
        assert stats.bytes <= 64
        assert stats.bytes == sum(len(chunk) for chunk in buffer.snapshot())


def test_eviction_is_fifo() -> None:
    buffer = OutputBuffer(max_entries=3, max_bytes=1024)
    for index in range(6):
        buffer.append(f"chunk{index};".encode())

    assert buffer.snapshot() == [b"chunk3;", b"chunk4;", b"chunk5;"]
    assert buffer.evicted == 3


def test_byte_ceiling_evicts_oldest_until_chunk_fits() -> None:
    buffer = OutputBuffer(max_entries=100, max_bytes=10)
    buffer.append(b"aaaa")
    buffer.append(b"bbbb")
    buffer.append(b"cccc")

    assert buffer.snapshot() == [b"bbbb", b"cccc"]
    assert buffer.total_bytes == 8


def test_oversized_chunk_is_truncated_to_half_ceiling() -> None:
    buffer = OutputBuffer(max_entries=10, max_bytes=100)
    buffer.append(b"keep")
    buffer.append(b"z" * 500)

    stats = buffer.stats()
    assert buffer.snapshot()[-1] == b"z" * 50
    assert stats.bytes <= 100
    assert stats.bytes == buffer.total_bytes


def test_clean_text_strips_color_and_cursor_codes() -> None:
    buffer = OutputBuffer()
    buffer.append("\x1b[31mHel\x1b[0mlo\x1b[2J\x1b[H Battle\x1b[K")

    assert buffer.clean_text() == "Hello Battle"
    assert buffer.includes_clean("Hello Battle")
    assert not buffer.includes("Hello Battle")
    assert buffer.test_clean(r"Hello\s+Battle")


def test_strip_ansi_leaves_plain_text_alone() -> None:
    assert strip_ansi("plain text") == "plain text"


def test_tail_and_last_lines() -> None:
    buffer = OutputBuffer()
    buffer.append("one\ntwo\nthree")

    assert buffer.tail(5) == "three"
    assert buffer.tail(0) == ""
    assert buffer.last_lines(2) == ["two", "three"]


def test_clear_resets_counts() -> None:
    buffer = OutputBuffer()
    buffer.append(b"data")
    buffer.clear()

    stats = buffer.stats()
    assert stats.count == 0
    assert stats.bytes == 0
    assert buffer.to_string() == ""
    assert stats.capacity_count == 1000
    assert stats.capacity_bytes == 10 * 1024 * 1024
    assert stats.usage == 0.0


def test_invalid_utf8_is_replaced() -> None:
    buffer = OutputBuffer()
    buffer.append(b"ok\xff")

    assert buffer.to_string() == "ok�"


def test_rejects_non_positive_ceilings() -> None:
    with pytest.raises(ValueError):
        OutputBuffer(max_entries=0)
