"""Tests for SSE framing and incremental decoding."""

import pytest

from library_recommend.sse import SSEDecoder, format_event, parse_event_block


class TestFormatEvent:
    """Tests for format_event."""

    def test_frame_shape(self):
        assert format_event("token", {"delta": "Hi"}) == 'event: token\ndata: {"delta": "Hi"}\n\n'

    def test_non_ascii_kept(self):
        assert "Café" in format_event("token", {"delta": "Café"})

    def test_newlines_in_values_stay_on_one_line(self):
        """Should escape newlines inside JSON so each event has one data line."""
        frame = format_event("token", {"delta": "line one\nline two"})
        assert frame.count("\n") == 3

    def test_unserializable_payload_raises(self):
        with pytest.raises(TypeError):
            format_event("metadata", {"when": object()})


class TestParseEventBlock:
    """Tests for parse_event_block."""

    def test_multi_line_data_joined(self):
        """Should join multiple data lines with newlines."""
        event = parse_event_block("event: note\ndata: first\ndata: second")
        assert event.event == "note"
        assert event.data == "first\nsecond"

    def test_comments_ignored(self):
        event = parse_event_block(": keep-alive\nevent: status\ndata:{}")
        assert event.event == "status"
        assert event.json() == {}


class TestSSEDecoder:
    """Tests for SSEDecoder."""

    def test_whole_events(self):
        decoder = SSEDecoder()
        stream = format_event("status", {"status": "connected"}) + format_event("done", {"status": "completed"})
        events = decoder.feed(stream.encode())
        assert [e.event for e in events] == ["status", "done"]
        assert events[1].json() == {"status": "completed"}

    def test_event_split_across_chunks(self):
        """A block is only complete at its blank line."""
        decoder = SSEDecoder()
        frame = format_event("token", {"delta": "Hello"}).encode()

        assert decoder.feed(frame[:7]) == []
        assert decoder.feed(frame[7:-1]) == []
        events = decoder.feed(frame[-1:])

        assert len(events) == 1
        assert events[0].json() == {"delta": "Hello"}

    def test_multibyte_character_split(self):
        """Should decode a character split across two chunks."""
        decoder = SSEDecoder()
        frame = format_event("token", {"delta": "naïve ☕"}).encode("utf-8")
        split = frame.index("☕".encode()) + 1

        events = decoder.feed(frame[:split]) + decoder.feed(frame[split:])

        assert events[0].json() == {"delta": "naïve ☕"}

    def test_crlf_line_endings(self):
        """Should accept CRLF line endings."""
        decoder = SSEDecoder()
        events = decoder.feed(b"event: token\r")
        events += decoder.feed(b'\ndata: {"delta": "x"}\r\n\r\n')
        assert len(events) == 1
        assert events[0].event == "token"
        assert events[0].json() == {"delta": "x"}

    def test_flush_emits_trailing_block(self):
        """Should emit an unterminated final event on flush."""
        decoder = SSEDecoder()
        assert decoder.feed(b'event: done\ndata: {"status": "completed"}') == []
        events = decoder.flush()
        assert events[0].event == "done"
        assert decoder.flush() == []

    def test_blank_blocks_skipped(self):
        decoder = SSEDecoder()
        assert decoder.feed(b"\n\n: ping\n\n") == []
