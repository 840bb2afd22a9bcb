"""Petwant serial framing - recovering frames from the UART byte stream.

Frame layout::

    +----------+-----------+------+--------+-------------------+
    | 0xFF     | 0xFF/0xFC | Type | Length | Payload           |
    | 1 byte   | 1 byte    | u8   | u8     | ``Length`` bytes  |
    +----------+-----------+------+--------+-------------------+

There is no checksum and no terminator: a frame ends when ``Length`` payload
bytes have been read. The decoder therefore never fails; it only emits
buffers that are complete according to their own length byte, and semantic
validation is left to :mod:`petwant_feeder.protocol`.

Example:
    decoder = FrameDecoder()
    for frame in decoder.feed(chunk):
        message = decode_message(frame)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

PREAMBLE_FIRST = 0xFF
PREAMBLE_SECOND = (0xFF, 0xFC)
HEADER_SIZE = 4  # preamble (2) + type + length


class DecoderState(Enum):
    """Position of the decoder inside the current frame."""

    SEEK_FIRST_PREAMBLE = auto()
    SEEK_SECOND_PREAMBLE = auto()
    READ_TYPE = auto()
    READ_LENGTH = auto()
    READ_PAYLOAD = auto()


@dataclass(frozen=True)
class RawFrame:
    """One complete frame as it appeared on the wire."""

    preamble: bytes
    type: int
    length: int
    payload: bytes

    def __post_init__(self) -> None:
        if len(self.payload) != self.length:
            raise ValueError(
                f"Payload has {len(self.payload)} bytes, length byte says {self.length}"
            )

    @classmethod
    def from_bytes(cls, data: bytes) -> "RawFrame":
        """Build a frame from a complete wire buffer.

        Raises:
            ValueError: If the buffer is truncated, has trailing bytes or
                does not start with a valid preamble
        """
        if len(data) < HEADER_SIZE:
            raise ValueError(f"Frame too short: {len(data)} bytes")
        if data[0] != PREAMBLE_FIRST or data[1] not in PREAMBLE_SECOND:
            raise ValueError(f"Invalid preamble: {bytes(data[:2]).hex()}")
        length = data[3]
        if len(data) != HEADER_SIZE + length:
            raise ValueError(
                f"Frame length mismatch: expected {HEADER_SIZE + length} bytes, got {len(data)}"
            )
        return cls(
            preamble=bytes(data[:2]),
            type=data[2],
            length=length,
            payload=bytes(data[HEADER_SIZE:]),
        )

    def to_bytes(self) -> bytes:
        """Return the frame exactly as received."""
        return self.preamble + bytes([self.type, self.length]) + self.payload

    def __repr__(self) -> str:
        return (
            f"RawFrame(type=0x{self.type:02X}, length={self.length}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


class FrameDecoder:
    """Incremental frame decoder for the device UART stream.

    Bytes may arrive split at any boundary; state is kept between calls to
    :meth:`feed`. One decoder belongs to one connection.
    """

    def __init__(self) -> None:
        self._state = DecoderState.SEEK_FIRST_PREAMBLE
        self._buffer = bytearray()
        self._length = 0
        self._read = 0

    @property
    def state(self) -> DecoderState:
        return self._state

    @property
    def pending(self) -> bytes:
        """Bytes of the frame currently being assembled."""
        return bytes(self._buffer)

    def reset(self) -> None:
        self._state = DecoderState.SEEK_FIRST_PREAMBLE
        self._buffer.clear()
        self._length = 0
        self._read = 0

    def feed(self, data: bytes) -> list[RawFrame]:
        """Consume a chunk and return the frames it completed, in order."""
        frames: list[RawFrame] = []
        for byte in data:
            frame = self._push(byte)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> None:
        """Handle end of stream.

        A frame still being assembled can never complete: it is dropped and
        the decoder is reset.
        """
        if self._buffer:
            logger.warning(
                "Dropping truncated frame at end of stream: %s",
                self._buffer.hex(" "),
            )
        self.reset()

    def _push(self, byte: int) -> RawFrame | None:
        state = self._state

        if state is DecoderState.SEEK_FIRST_PREAMBLE:
            if byte == PREAMBLE_FIRST:
                self._buffer = bytearray((byte,))
                self._state = DecoderState.SEEK_SECOND_PREAMBLE
            return None

        if state is DecoderState.SEEK_SECOND_PREAMBLE:
            if byte in PREAMBLE_SECOND:
                self._buffer.append(byte)
                self._state = DecoderState.READ_TYPE
            else:
                # The rejected byte is not retried as a first preamble byte
                logger.debug("Bad second preamble byte 0x%02X, resyncing", byte)
                self.reset()
            return None

        self._buffer.append(byte)

        if state is DecoderState.READ_TYPE:
            self._state = DecoderState.READ_LENGTH
            return None

        if state is DecoderState.READ_LENGTH:
            self._length = byte
            self._read = 0
            self._state = DecoderState.READ_PAYLOAD
            if self._length == 0:
                return self._complete()
            return None

        self._read += 1
        if self._read == self._length:
            return self._complete()
        return None

    def _complete(self) -> RawFrame:
        frame = RawFrame.from_bytes(bytes(self._buffer))
        logger.debug("Frame: %s", frame)
        self.reset()
        return frame


def iter_frames(chunks: Iterable[bytes]) -> Iterator[RawFrame]:
    """Lazily decode frames from an iterable of byte chunks.

    A fresh decoder is used per call; an incomplete trailing frame is
    dropped when the chunks run out.
    """
    decoder = FrameDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    decoder.flush()
