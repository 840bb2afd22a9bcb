"""Petwant Protocol - Message encoding and decoding.

This module contains the reverse-engineered protocol spoken by the Petwant
pet feeder main board over its UART (115200 8N1).

Protocol overview:
- Frames start with the preamble 0xFF 0xFF (the device sometimes sends 0xFF 0xFC)
- Byte 2 is the message type, byte 3 the payload length
- No checksum; see petwant_feeder.framing for stream recovery
- Multi-valued types are told apart by their length and, for single byte
  payloads, by a discriminator byte

Message types (device -> host):
- OK (0x01, len 1, 0x01): Last schedule entry command was accepted
- SCHEDULE (0x02, len 10): One stored schedule entry, sent four times in reply
  to a schedule request
- WARNING (0x05, len 1, 0x02): Food container is empty
- DATETIME (0x06, len 1, 0xAA): Ping, must be answered with PING_RESPONSE
- DATETIME (0x06, len 1, 0x01): Clock was set
- DATETIME (0x06, len 6): Current device clock (UTC)
- FEEDING (0x07, len 10): Echo of the schedule entry a feeding was started with
- FEEDING_STARTED (0x0C, len 1): Scheduled feeding started (entry index << 4 | sound)
- MOTOR_STATUS (0xF0, len 1): Feeding finished, motor revolutions done

Message types (host -> device):
- SCHEDULE_ENTRY_SET (0x01, len 10): Store schedule entry or feed now
- SCHEDULE (0x02, len 1, 0x00): Schedule request
- DATETIME (0x06, len 6): Set device clock (UTC)
- PING_RESPONSE (0x09, len 1, 0x00): Answer to ping
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from .framing import HEADER_SIZE, RawFrame

# =============================================================================
# Protocol Constants
# =============================================================================

# Outgoing frames always use the 0xFF 0xFF preamble
PREAMBLE = b"\xff\xff"

# The device counts years from 1960
YEAR_OFFSET = 1960
MAX_YEAR = YEAR_OFFSET + 0xFF

# One portion is 10 grams on the wire
GRAMS_PER_PORTION = 10

SCHEDULE_ENTRY_LENGTH = 10
DATETIME_LENGTH = 6


class MessageType(IntEnum):
    """Message types (byte 2 in all frames)."""

    OK = 0x01                   # Device -> host, length 1
    SCHEDULE_ENTRY_SET = 0x01   # Host -> device, length 10
    SCHEDULE = 0x02             # Request (host) / entry (device)
    WARNING = 0x05              # No food warning
    DATETIME = 0x06             # Ping, clock set ack, clock value
    FEEDING = 0x07              # Feeding echo (schedule entry layout)
    PING_RESPONSE = 0x09
    FEEDING_STARTED = 0x0C
    MOTOR_STATUS = 0xF0


class Discriminator:
    """Payload bytes distinguishing single-byte messages of the same type."""

    OK = 0x01
    WARNING_NO_FOOD = 0x02
    PING = 0xAA
    DATETIME_SET = 0x01


class EntryState(IntEnum):
    """Schedule entry state (payload byte 7)."""

    NOW = 0x01          # Execute now, use with entry index 0 and current time
    DISABLED = 0x10
    ENABLED = 0x11


class EntryIndex:
    """Schedule entry slots. Slot 0 is never stored."""

    DONT_SAVE = 0
    FIRST = 1
    LAST = 4


class SoundIndex:
    """Sound played when feeding starts."""

    FIRST = 0
    LAST = 9
    NO_SOUND = 10


class ScheduleEntryOffset:
    """Field offsets in schedule entry payloads (10 bytes)."""

    HOURS = 3
    MINUTES = 4
    GRAMS = 5
    STATE = 7
    ENTRY_INDEX = 8
    SOUND_INDEX = 9


# =============================================================================
# Errors
# =============================================================================


class PetwantError(Exception):
    """Base class for all errors raised by this library."""


class InvalidParameterError(PetwantError, ValueError):
    """Raised when a message field or command argument is out of range."""


class UnknownMessageError(PetwantError):
    """Raised when a frame does not map to any known message.

    The offending frame is kept in ``frame`` for diagnostics.
    """

    def __init__(self, message: str, frame: RawFrame | bytes) -> None:
        super().__init__(message)
        self.frame = frame

    def __str__(self) -> str:
        raw = self.frame.to_bytes() if isinstance(self.frame, RawFrame) else bytes(self.frame)
        return f"{self.args[0]}: {raw.hex(' ')}"


def _check_int(name: str, value: object, low: int, high: int) -> None:
    """Raise InvalidParameterError unless value is an int in [low, high]."""
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise InvalidParameterError(
            f"Parameter '{name}' is incorrect, it must be from {low} to {high}, got {value!r}"
        )


def _header(message_type: int, length: int) -> bytes:
    return PREAMBLE + bytes([message_type, length])


# =============================================================================
# Messages
# =============================================================================


@dataclass(frozen=True)
class Ping:
    """Keep-alive from the device."""

    def __str__(self) -> str:
        return "Ping"


@dataclass(frozen=True)
class PingResponse:
    """Answer to Ping."""

    def encode(self) -> bytes:
        """Build the ping response frame: ffff090100"""
        return _header(MessageType.PING_RESPONSE, 1) + b"\x00"

    def __str__(self) -> str:
        return "Ping response"


@dataclass(frozen=True)
class DateTime:
    """Device clock value, always UTC.

    Accepts any timezone-aware datetime; it is converted to UTC and
    truncated to whole seconds.
    """

    utc: dt.datetime

    def __post_init__(self) -> None:
        value = self.utc
        if not isinstance(value, dt.datetime):
            raise InvalidParameterError(
                "Parameter 'utc' is incorrect, it must be a datetime"
            )
        if value.tzinfo is None or value.utcoffset() is None:
            raise InvalidParameterError(
                "Parameter 'utc' is incorrect, it must be timezone-aware"
            )
        value = value.astimezone(dt.timezone.utc).replace(microsecond=0)
        _check_int("year", value.year, YEAR_OFFSET, MAX_YEAR)
        object.__setattr__(self, "utc", value)

    def encode(self) -> bytes:
        """Build the set clock frame: ffff0606 YY MM DD hh mm ss"""
        value = self.utc
        return _header(MessageType.DATETIME, DATETIME_LENGTH) + bytes([
            value.year - YEAR_OFFSET,
            value.month,
            value.day,
            value.hour,
            value.minute,
            value.second,
        ])

    @classmethod
    def decode(cls, payload: bytes) -> "DateTime":
        """Decode the 6 byte clock payload.

        Raises:
            InvalidParameterError: If the payload has the wrong size or is not
                a valid calendar date
        """
        if len(payload) != DATETIME_LENGTH:
            raise InvalidParameterError(
                f"DateTime payload must have {DATETIME_LENGTH} bytes, got {len(payload)}"
            )
        try:
            value = dt.datetime(
                YEAR_OFFSET + payload[0],
                payload[1],
                payload[2],
                payload[3],
                payload[4],
                payload[5],
                tzinfo=dt.timezone.utc,
            )
        except ValueError as e:
            raise InvalidParameterError(f"Invalid device date/time: {e}") from e
        return cls(value)

    def __str__(self) -> str:
        return f"UTC DateTime: {self.utc.isoformat()}"


@dataclass(frozen=True)
class DateTimeSet:
    """Device accepted a clock update."""

    def __str__(self) -> str:
        return "DateTime was successfully set"


@dataclass(frozen=True)
class ScheduleRequest:
    """Ask the device for its four schedule entries."""

    def encode(self) -> bytes:
        """Build the schedule request frame: ffff020100"""
        return _header(MessageType.SCHEDULE, 1) + b"\x00"

    def __str__(self) -> str:
        return "Schedule request"


@dataclass(frozen=True)
class ScheduleEntry:
    """A stored feeding time, or a feed-now command.

    The device stores portions as grams (portions x 10); this class always
    holds whole portions.

    Attributes:
        hours: UTC hour (0-23)
        minutes: Minute (0-59)
        portions: Number of portions (0-10)
        entry_state: EntryState.ENABLED, DISABLED or NOW
        entry_index: Slot 1-4, or 0 for feed-now
        sound_index: Sound 0-9, or 10 for no sound
    """

    hours: int
    minutes: int
    portions: int = 1
    entry_state: int = EntryState.NOW
    entry_index: int = EntryIndex.DONT_SAVE
    sound_index: int = SoundIndex.NO_SOUND

    def __post_init__(self) -> None:
        _check_int("hours", self.hours, 0, 23)
        _check_int("minutes", self.minutes, 0, 59)
        _check_int("portions", self.portions, 0, 10)
        if isinstance(self.entry_state, bool) or not isinstance(self.entry_state, int):
            state = None
        else:
            state = next((s for s in EntryState if s == self.entry_state), None)
        if state is None:
            raise InvalidParameterError(
                f"Parameter 'entry_state' is incorrect, it must be 16, 17 or 1, "
                f"got {self.entry_state!r}"
            )
        _check_int("entry_index", self.entry_index, EntryIndex.DONT_SAVE, EntryIndex.LAST)
        _check_int("sound_index", self.sound_index, SoundIndex.FIRST, SoundIndex.NO_SOUND)
        object.__setattr__(self, "entry_state", state)

    @property
    def enabled(self) -> bool:
        return self.entry_state == EntryState.ENABLED

    def encode(self) -> bytes:
        """Build the schedule entry set frame: ffff010a 000000 hh mm gg 00 st ei si"""
        payload = bytearray(SCHEDULE_ENTRY_LENGTH)
        payload[ScheduleEntryOffset.HOURS] = self.hours
        payload[ScheduleEntryOffset.MINUTES] = self.minutes
        payload[ScheduleEntryOffset.GRAMS] = self.portions * GRAMS_PER_PORTION
        payload[ScheduleEntryOffset.STATE] = self.entry_state
        payload[ScheduleEntryOffset.ENTRY_INDEX] = self.entry_index
        payload[ScheduleEntryOffset.SOUND_INDEX] = self.sound_index
        return _header(MessageType.SCHEDULE_ENTRY_SET, SCHEDULE_ENTRY_LENGTH) + bytes(payload)

    @classmethod
    def decode(cls, payload: bytes) -> "ScheduleEntry":
        """Decode a 10 byte schedule entry payload (types 0x02 and 0x07).

        Raises:
            InvalidParameterError: If the payload size or any field is invalid
        """
        if len(payload) != SCHEDULE_ENTRY_LENGTH:
            raise InvalidParameterError(
                f"Schedule entry payload must have {SCHEDULE_ENTRY_LENGTH} bytes, "
                f"got {len(payload)}"
            )
        grams = payload[ScheduleEntryOffset.GRAMS]
        if grams % GRAMS_PER_PORTION:
            raise InvalidParameterError(
                f"Feed amount of {grams} g is not a whole number of portions"
            )
        return cls(
            hours=payload[ScheduleEntryOffset.HOURS],
            minutes=payload[ScheduleEntryOffset.MINUTES],
            portions=grams // GRAMS_PER_PORTION,
            entry_state=payload[ScheduleEntryOffset.STATE],
            entry_index=payload[ScheduleEntryOffset.ENTRY_INDEX],
            sound_index=payload[ScheduleEntryOffset.SOUND_INDEX],
        )

    def __str__(self) -> str:
        return (
            f"EntryIndex:{self.entry_index} Hours:{self.hours} Minutes:{self.minutes} "
            f"Portions:{self.portions} EntryState:{int(self.entry_state)} "
            f"SoundIndex:{self.sound_index}"
        )


@dataclass(frozen=True)
class Ok:
    """Command was accepted."""

    def __str__(self) -> str:
        return "Command was accepted"


@dataclass(frozen=True)
class WarningNoFood:
    """Food container is empty."""

    def __str__(self) -> str:
        return "Warning! No food!"


@dataclass(frozen=True)
class MotorStatus:
    """Feeding finished after ``revolutions_done`` motor turns (0-10)."""

    revolutions_done: int

    def __post_init__(self) -> None:
        _check_int("revolutions_done", self.revolutions_done, 0, 10)

    def __str__(self) -> str:
        return f"Motor revolutions done: {self.revolutions_done}"


@dataclass(frozen=True)
class ScheduledFeedingStarted:
    """A stored schedule entry started feeding.

    entry_index is 1-4 (0 = feed-now), sound_index is 0-9 (10 = no sound).
    """

    entry_index: int
    sound_index: int = SoundIndex.NO_SOUND

    def __post_init__(self) -> None:
        _check_int("entry_index", self.entry_index, EntryIndex.DONT_SAVE, EntryIndex.LAST)
        _check_int("sound_index", self.sound_index, SoundIndex.FIRST, SoundIndex.NO_SOUND)

    @classmethod
    def decode(cls, payload: bytes) -> "ScheduledFeedingStarted":
        # 0x30 -> entry 3, sound 0; 0x2A -> entry 2, sound 10
        if len(payload) != 1:
            raise InvalidParameterError(
                f"Feeding started payload must have 1 byte, got {len(payload)}"
            )
        return cls(entry_index=payload[0] >> 4, sound_index=payload[0] & 0x0F)

    def __str__(self) -> str:
        return (
            f"Scheduled feeding started for schedule entry index: {self.entry_index} "
            f"with sound index: {self.sound_index}"
        )


# Everything decode_message() can return
InboundMessage = Union[
    Ok,
    ScheduleEntry,
    Ping,
    DateTimeSet,
    DateTime,
    WarningNoFood,
    MotorStatus,
    ScheduledFeedingStarted,
]

# Everything the host may send
OutboundMessage = Union[PingResponse, DateTime, ScheduleRequest, ScheduleEntry]


# =============================================================================
# Decoding
# =============================================================================


def _decode_single_byte(frame: RawFrame) -> InboundMessage:
    value = frame.payload[0]
    message_type = frame.type

    if message_type == MessageType.OK and value == Discriminator.OK:
        return Ok()
    if message_type == MessageType.WARNING and value == Discriminator.WARNING_NO_FOOD:
        return WarningNoFood()
    if message_type == MessageType.DATETIME:
        if value == Discriminator.PING:
            return Ping()
        if value == Discriminator.DATETIME_SET:
            return DateTimeSet()
    if message_type == MessageType.MOTOR_STATUS:
        return MotorStatus(value)
    if message_type == MessageType.FEEDING_STARTED:
        return ScheduledFeedingStarted.decode(frame.payload)

    raise UnknownMessageError(f"Unknown message data for type {message_type}", frame)


# (type, length) pairs with a dedicated decoder; single byte payloads are
# handled by _decode_single_byte
_KNOWN_TYPES = {
    MessageType.OK,
    MessageType.SCHEDULE,
    MessageType.WARNING,
    MessageType.DATETIME,
    MessageType.FEEDING,
    MessageType.FEEDING_STARTED,
    MessageType.MOTOR_STATUS,
}

_SINGLE_BYTE_TYPES = {
    MessageType.OK,
    MessageType.WARNING,
    MessageType.DATETIME,
    MessageType.FEEDING_STARTED,
    MessageType.MOTOR_STATUS,
}


def decode_message(frame: RawFrame | bytes) -> InboundMessage:
    """Decode one frame into a typed message.

    Args:
        frame: A RawFrame from FrameDecoder, or the complete frame bytes

    Returns:
        One of the InboundMessage variants

    Raises:
        UnknownMessageError: If the frame is malformed, its (type, length,
            payload) combination is not known, or its fields are out of range
    """
    if not isinstance(frame, RawFrame):
        data = bytes(frame)
        if len(data) < HEADER_SIZE + 1:
            raise UnknownMessageError(
                "Frame must have length at least of 5 bytes", data
            )
        try:
            frame = RawFrame.from_bytes(data)
        except ValueError as e:
            raise UnknownMessageError(f"Malformed frame ({e})", data) from e

    message_type = frame.type
    length = frame.length

    if message_type not in _KNOWN_TYPES:
        raise UnknownMessageError("Unknown message type", frame)

    try:
        if length == 1 and message_type in _SINGLE_BYTE_TYPES:
            return _decode_single_byte(frame)
        if length == SCHEDULE_ENTRY_LENGTH and message_type in (
            MessageType.SCHEDULE,
            MessageType.FEEDING,
        ):
            return ScheduleEntry.decode(frame.payload)
        if length == DATETIME_LENGTH and message_type == MessageType.DATETIME:
            return DateTime.decode(frame.payload)
    except InvalidParameterError as e:
        raise UnknownMessageError(
            f"Invalid field in message type {message_type} ({e})", frame
        ) from e

    raise UnknownMessageError(f"Unknown message length for type {message_type}", frame)


def encode_message(message: OutboundMessage) -> bytes:
    """Encode an outbound message to wire bytes.

    Raises:
        InvalidParameterError: If the message kind is inbound-only
    """
    if not isinstance(message, (PingResponse, DateTime, ScheduleRequest, ScheduleEntry)):
        raise InvalidParameterError(
            f"{type(message).__name__} cannot be sent to the device"
        )
    return message.encode()
