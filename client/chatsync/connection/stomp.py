"""STOMP 1.2 frame codec.

A frame is a command line, header lines, a blank line and a body
terminated by a NUL byte:

    SEND
    destination:/app/chat.sendMessage
    content-type:application/json

    {"content": "hi"}^@

A bare end-of-line on the wire is a heart-beat, not a frame. Header
values are escaped per STOMP 1.2 (backslash, colon, CR, LF) except on
CONNECT/CONNECTED frames, which carry them verbatim.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from chatsync.errors import ProtocolError

NULL = "\x00"
EOL = "\n"
HEARTBEAT = EOL

CLIENT_COMMANDS = {
    "CONNECT", "STOMP", "SEND", "SUBSCRIBE", "UNSUBSCRIBE",
    "ACK", "NACK", "BEGIN", "COMMIT", "ABORT", "DISCONNECT",
}
SERVER_COMMANDS = {"CONNECTED", "MESSAGE", "RECEIPT", "ERROR"}

# Frames whose headers are never escaped
_RAW_HEADER_COMMANDS = {"CONNECT", "CONNECTED"}

_ESCAPES = [("\\", "\\\\"), ("\r", "\\r"), ("\n", "\\n"), (":", "\\c")]
_UNESCAPES = {"\\\\": "\\", "\\r": "\r", "\\n": "\n", "\\c": ":"}


@dataclass
class Frame:
    """A single STOMP frame.

    Attributes:
        command: Frame command (CONNECT, SEND, MESSAGE, ...).
        headers: Header map; on duplicates the first occurrence wins.
        body: Text body (empty for most control frames).
    """
    command: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def destination(self) -> str:
        return self.headers.get("destination", "")


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def _unescape(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        if value[i] == "\\":
            pair = value[i:i + 2]
            if pair not in _UNESCAPES:
                raise ProtocolError(f"Invalid header escape {pair!r}")
            out.append(_UNESCAPES[pair])
            i += 2
        else:
            out.append(value[i])
            i += 1
    return "".join(out)


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to its wire text (including the NUL terminator)."""
    raw = frame.command in _RAW_HEADER_COMMANDS
    lines = [frame.command]
    for key, value in frame.headers.items():
        value = str(value)
        if raw:
            lines.append(f"{key}:{value}")
        else:
            lines.append(f"{_escape(key)}:{_escape(value)}")
    return EOL.join(lines) + EOL + EOL + frame.body + NULL


def decode_frame(text: str) -> Frame:
    """Parse one frame (NUL terminator optional).

    Raises:
        ProtocolError: If the command is unknown or a header line is malformed.
    """
    if text.endswith(NULL):
        text = text[:-1]
    # Leading EOLs are heart-beats that shared the message
    text = text.lstrip("\r\n")
    head, sep, body = text.partition(EOL + EOL)
    if not sep:
        head, sep, body = text.partition("\r\n\r\n")
    head_lines = [line.rstrip("\r") for line in head.split(EOL)]
    command = head_lines[0].strip()
    if command not in CLIENT_COMMANDS and command not in SERVER_COMMANDS:
        raise ProtocolError(f"Unknown STOMP command {command!r}")

    raw = command in _RAW_HEADER_COMMANDS
    headers: Dict[str, str] = {}
    for line in head_lines[1:]:
        if not line:
            continue
        key, colon, value = line.partition(":")
        if not colon:
            raise ProtocolError(f"Malformed STOMP header line {line!r}")
        if not raw:
            key, value = _unescape(key), _unescape(value)
        headers.setdefault(key, value)

    length = headers.get("content-length")
    if length is not None and length.isdigit():
        body = body.encode("utf-8")[: int(length)].decode("utf-8", errors="replace")
    return Frame(command=command, headers=headers, body=body)


def split_frames(data: str) -> Tuple[List[Frame], int]:
    """Split a websocket message into frames.

    Returns:
        Tuple of (frames, heartbeats) where heartbeats counts bare EOLs.
    """
    frames: List[Frame] = []
    heartbeats = 0
    for chunk in data.split(NULL):
        stripped = chunk.strip("\r\n")
        if not stripped:
            heartbeats += chunk.count(EOL)
            continue
        frames.append(decode_frame(chunk))
    return frames, heartbeats


def parse_heartbeat(value: Optional[str]) -> Tuple[int, int]:
    """Parse a ``heart-beat`` header into (outgoing_ms, incoming_ms)."""
    if not value:
        return 0, 0
    try:
        cx, cy = value.split(",")
        return int(cx), int(cy)
    except ValueError:
        raise ProtocolError(f"Malformed heart-beat header {value!r}")


def negotiate_heartbeat(client: Tuple[int, int], server: Tuple[int, int]) -> Tuple[int, int]:
    """Combine client and server heart-beat settings.

    Args:
        client: (cx, cy) the client offered in CONNECT.
        server: (sx, sy) the server answered in CONNECTED.

    Returns:
        (send_every_ms, expect_every_ms); 0 disables that direction.
    """
    cx, cy = client
    sx, sy = server
    send_every = 0 if cx == 0 or sy == 0 else max(cx, sy)
    expect_every = 0 if cy == 0 or sx == 0 else max(cy, sx)
    return send_every, expect_every


def connect_frame(host: str, headers: Dict[str, str], heartbeat: Tuple[int, int]) -> Frame:
    frame_headers = {
        "accept-version": "1.2",
        "host": host,
        "heart-beat": f"{heartbeat[0]},{heartbeat[1]}",
    }
    frame_headers.update(headers)
    return Frame("CONNECT", frame_headers)


def subscribe_frame(sub_id: str, destination: str) -> Frame:
    return Frame("SUBSCRIBE", {"id": sub_id, "destination": destination, "ack": "auto"})


def unsubscribe_frame(sub_id: str) -> Frame:
    return Frame("UNSUBSCRIBE", {"id": sub_id})


def send_frame(destination: str, body: str) -> Frame:
    return Frame(
        "SEND",
        {
            "destination": destination,
            "content-type": "application/json",
            "content-length": str(len(body.encode("utf-8"))),
        },
        body,
    )


def disconnect_frame() -> Frame:
    return Frame("DISCONNECT", {})
