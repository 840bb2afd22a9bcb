"""Petwant Feeder - Unofficial library for Petwant automatic pet feeders.

This library talks to the main board of a Petwant feeder over the Raspberry
Pi UART and drives the feeder's two LEDs and push button over GPIO. It keeps
the device clock in sync, answers keep-alive pings and exposes schedule and
manual feeding commands.

Disclaimer: This project is not affiliated with, endorsed by, or connected to
Petwant or any related companies. All trademarks are the property of their
respective owners.

Basic Usage:
    from petwant_feeder.connect import connect_device

    async with connect_device("/dev/serial0", gpio, on_event=print) as feeder:
        for entry in await feeder.get_schedule(timeout=5):
            print(entry)
        await feeder.set_schedule_entry(7, 30, portions=2, entry_index=1)
        await feeder.feed_manually(portions=1)

Offline decoding:
    from petwant_feeder import decode_message, iter_frames

    for frame in iter_frames(chunks):
        print(decode_message(frame))
"""

from __future__ import annotations

from .client import (
    DeviceEvent,
    DeviceFaultError,
    EventType,
    GpioSetupError,
    NotConnectedError,
    PetwantClient,
)
from .framing import FrameDecoder, RawFrame, iter_frames
from .gpio import Direction, Edge, GpioDriver
from .protocol import (
    # Constants
    EntryIndex,
    EntryState,
    MessageType,
    SoundIndex,
    # Errors
    InvalidParameterError,
    PetwantError,
    UnknownMessageError,
    # Messages
    DateTime,
    DateTimeSet,
    MotorStatus,
    Ok,
    Ping,
    PingResponse,
    ScheduledFeedingStarted,
    ScheduleEntry,
    ScheduleRequest,
    WarningNoFood,
    # Functions
    decode_message,
    encode_message,
)

__version__ = "0.1.0"
