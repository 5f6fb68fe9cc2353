"""Length-prefixed framing over a byte stream.

A frame is a one-byte type telling how many little-endian length bytes
follow (1 to 4), then the length, then the payload.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Protocol

MAX_FRAME_PAYLOAD = 0xFFFFFFFF


class MsgType(IntEnum):
    """Frame type byte: the number of length bytes that follow it."""

    TYPE_LEN1 = 1
    TYPE_LEN2 = 2
    TYPE_LEN3 = 3
    TYPE_LEN4 = 4


class ReadingState(IntEnum):
    """Where the receiver is in the current frame.

    Values from 250 upwards are fatal; the connection should be dropped.
    """

    HEAD = 0
    LEN1 = 1
    LEN2 = 2
    LEN3 = 3
    LEN4 = 4
    BODY = 5
    READY = 6
    UNKNOWN_TYPE = 253
    OVER_SIZE = 254
    OVER_FLOW = 255


_FATAL_THRESHOLD = 250

_LENGTH_STATES = {
    ReadingState.LEN1: 1,
    ReadingState.LEN2: 2,
    ReadingState.LEN3: 3,
    ReadingState.LEN4: 4,
}


class _ByteStream(Protocol):
    def available(self) -> int: ...

    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> int: ...


def encode_frame(payload: bytes) -> bytes:
    """Return the framed form of ``payload``."""
    payload = bytes(payload)
    size = len(payload)
    if size > MAX_FRAME_PAYLOAD:
        raise ValueError(f"payload of {size} bytes is too large to frame")
    if size < 256:
        kind, width = MsgType.TYPE_LEN1, 1
    elif size < 65536:
        kind, width = MsgType.TYPE_LEN2, 2
    else:
        kind, width = MsgType.TYPE_LEN4, 4
    return bytes([kind]) + size.to_bytes(width, "little") + payload


class CongPacket:
    """Incremental frame reader and writer bound to one stream.

    Call :meth:`run` whenever data may have arrived; once :attr:`ready`
    is true the frame body is in :attr:`payload`. Call :meth:`clear`
    before reading the next frame.
    """

    def __init__(self, stream: _ByteStream, buffer_size: int) -> None:
        if buffer_size < 0:
            raise ValueError("buffer_size must not be negative")
        self._stream = stream
        self.buffer_size = buffer_size
        self._buffer = bytearray()
        self.payload_length = 0
        self.state = ReadingState.HEAD
        self._ready = False

    @property
    def ready(self) -> bool:
        """True once a whole frame body has been received."""
        return self._ready

    @property
    def failed(self) -> bool:
        """True when the reader hit an error that should end the connection."""
        return self.state >= _FATAL_THRESHOLD

    @property
    def payload(self) -> bytes:
        """The frame body received so far."""
        return bytes(self._buffer)

    def run(self) -> None:
        """Advance the reader with whatever bytes the stream has."""
        if self.state == ReadingState.HEAD:
            self._fill_head()
        elif self.state in _LENGTH_STATES:
            self._fill_len(_LENGTH_STATES[self.state])
        elif self.state == ReadingState.BODY:
            self._fill_body()

    def _fill_head(self) -> None:
        if self._stream.available() <= 0:
            return
        head = self._stream.read(1)[0]
        try:
            kind = MsgType(head)
        except ValueError:
            self.state = ReadingState.UNKNOWN_TYPE
            return
        self.state = ReadingState(int(kind))
        self._fill_len(int(kind))

    def _fill_len(self, width: int) -> None:
        if self._stream.available() < width:
            return
        self.payload_length = int.from_bytes(self._stream.read(width), "little")
        if self.payload_length > self.buffer_size or self.payload_length == 0:
            self.state = ReadingState.OVER_SIZE
            return
        self.state = ReadingState.BODY
        self._fill_body()

    def _fill_body(self) -> None:
        available = self._stream.available()
        if available == 0:
            return
        need = min(self.payload_length - len(self._buffer), available)
        self._buffer += self._stream.read(need)
        if len(self._buffer) == self.payload_length:
            self.state = ReadingState.READY
            self._ready = True
        elif len(self._buffer) > self.payload_length:
            self.state = ReadingState.OVER_FLOW

    def send(self, payload: bytes) -> None:
        """Frame ``payload`` and write it to the stream."""
        self._stream.write(encode_frame(payload))

    def drop(self) -> None:
        """Discard everything waiting on the stream."""
        while (pending := self._stream.available()) > 0:
            self._stream.read(pending)

    def clear(self) -> None:
        """Forget the current frame and wait for a new one."""
        self._ready = False
        self.state = ReadingState.HEAD
        self._buffer = bytearray()
        self.payload_length = 0