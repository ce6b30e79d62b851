"""Unit tests for ResumeBuffer."""

from terminal_tabs.resume_buffer import ResumeBuffer


def test_offsets_advance_by_bytes():
    buffer = ResumeBuffer(max_bytes=100)
    assert buffer.append(b"abc") == 3
    assert buffer.append("é".encode()) == 5
    assert buffer.append(b"") == 5
    assert len(buffer) == 5


def test_evicts_whole_chunks():
    buffer = ResumeBuffer(max_bytes=10)
    buffer.append(b"aaaa")
    buffer.append(b"bbbb")
    buffer.append(b"cccc")

    assert buffer.since() == b"bbbbcccc"
    assert buffer.start_offset == 4
    assert buffer.offset == 12


def test_oversized_chunk_is_kept_alone():
    buffer = ResumeBuffer(max_bytes=4)
    buffer.append(b"ab")
    buffer.append(b"0123456789")

    assert buffer.since() == b"0123456789"


def test_since_watermark():
    buffer = ResumeBuffer(max_bytes=100)
    buffer.append(b"hello ")
    buffer.append(b"world")

    assert buffer.since(0) == b"hello world"
    assert buffer.since(3) == b"lo world"
    assert buffer.since(6) == b"world"
    assert buffer.since(11) == b""
    assert buffer.since(50) == b""


def test_watermark_inside_character_skips_to_next():
    buffer = ResumeBuffer(max_bytes=100)
    buffer.append("h€llo".encode("utf-8"))  # "€" is bytes 1..3

    assert buffer.since(1) == "€llo".encode("utf-8")
    assert buffer.since(2) == b"llo"
    assert buffer.since(3) == b"llo"
    assert buffer.since(4) == b"llo"


def test_stale_watermark_gets_everything_held():
    buffer = ResumeBuffer(max_bytes=4)
    buffer.append(b"aaaa")
    buffer.append(b"bbbb")

    assert buffer.since(1) == b"bbbb"


def test_clear_keeps_offset():
    buffer = ResumeBuffer()
    buffer.append(b"abc")
    buffer.clear()

    assert buffer.since() == b""
    assert buffer.offset == 3
    assert buffer.start_offset == 3
