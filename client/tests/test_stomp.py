"""Tests for the STOMP frame codec."""
import pytest

from chatsync.connection.stomp import (
    Frame,
    connect_frame,
    decode_frame,
    encode_frame,
    negotiate_heartbeat,
    parse_heartbeat,
    send_frame,
    split_frames,
    subscribe_frame,
)
from chatsync.errors import ProtocolError


class TestEncode:
    """Tests for encode_frame."""

    def test_send_frame_wire_format(self):
        frame = send_frame("/app/chat.sendMessage", '{"content":"hi"}')
        wire = encode_frame(frame)
        assert wire.startswith("SEND\n")
        assert "destination:/app/chat.sendMessage\n" in wire
        assert "content-type:application/json\n" in wire
        assert "content-length:16\n" in wire
        assert wire.endswith('\n\n{"content":"hi"}\x00')

    def test_content_length_counts_bytes(self):
        frame = send_frame("/app/x", '"héllo"')
        assert frame.headers["content-length"] == "8"

    def test_header_values_escaped(self):
        wire = encode_frame(Frame("SEND", {"destination": "/a:b\nc"}))
        assert "destination:/a\\cb\\nc" in wire

    def test_connect_headers_not_escaped(self):
        frame = connect_frame("chat.example", {"Authorization": "Bearer a:b"}, (4000, 4000))
        wire = encode_frame(frame)
        assert "Authorization:Bearer a:b" in wire
        assert "heart-beat:4000,4000" in wire
        assert "accept-version:1.2" in wire

    def test_subscribe_frame(self):
        frame = subscribe_frame("sub-0", "/topic/public")
        assert frame.headers == {"id": "sub-0", "destination": "/topic/public", "ack": "auto"}


class TestDecode:
    """Tests for decode_frame and split_frames."""

    def test_decode_message(self):
        frame = decode_frame(
            "MESSAGE\nsubscription:sub-0\ndestination:/topic/public\n\n{\"a\":1}\x00"
        )
        assert frame.command == "MESSAGE"
        assert frame.destination == "/topic/public"
        assert frame.headers["subscription"] == "sub-0"
        assert frame.body == '{"a":1}'

    def test_decode_unescapes_headers(self):
        frame = decode_frame("MESSAGE\ndestination:/a\\cb\n\n\x00")
        assert frame.destination == "/a:b"

    def test_first_duplicate_header_wins(self):
        frame = decode_frame("MESSAGE\nfoo:first\nfoo:second\n\n\x00")
        assert frame.headers["foo"] == "first"

    def test_content_length_truncates_body(self):
        frame = decode_frame("MESSAGE\ncontent-length:3\n\nabcdef\x00")
        assert frame.body == "abc"

    def test_crlf_line_endings(self):
        frame = decode_frame("CONNECTED\r\nversion:1.2\r\n\r\n\x00")
        assert frame.command == "CONNECTED"
        assert frame.headers["version"] == "1.2"

    def test_unknown_command(self):
        with pytest.raises(ProtocolError, match="Unknown STOMP command"):
            decode_frame("HELLO\n\n\x00")

    def test_malformed_header(self):
        with pytest.raises(ProtocolError, match="Malformed"):
            decode_frame("MESSAGE\nno-colon-here\n\n\x00")

    def test_invalid_escape(self):
        with pytest.raises(ProtocolError, match="escape"):
            decode_frame("MESSAGE\ndestination:\\t\n\n\x00")

    def test_split_heartbeat_only(self):
        frames, heartbeats = split_frames("\n")
        assert frames == []
        assert heartbeats == 1

    def test_split_multiple_frames(self):
        data = "MESSAGE\nsubscription:a\n\nx\x00\nMESSAGE\nsubscription:b\n\ny\x00"
        frames, _ = split_frames(data)
        assert [f.headers["subscription"] for f in frames] == ["a", "b"]
        assert [f.body for f in frames] == ["x", "y"]


class TestHeartbeatNegotiation:
    """Tests for heart-beat header parsing and negotiation."""

    def test_parse(self):
        assert parse_heartbeat("4000,10000") == (4000, 10000)
        assert parse_heartbeat(None) == (0, 0)

    def test_parse_malformed(self):
        with pytest.raises(ProtocolError):
            parse_heartbeat("fast")

    def test_negotiate_takes_larger_period(self):
        assert negotiate_heartbeat((4000, 4000), (10000, 2000)) == (4000, 10000)

    def test_zero_disables_direction(self):
        assert negotiate_heartbeat((4000, 4000), (0, 0)) == (0, 0)
        assert negotiate_heartbeat((0, 4000), (5000, 5000)) == (0, 5000)
