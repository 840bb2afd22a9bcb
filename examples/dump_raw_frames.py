#!/usr/bin/env python3
"""Dump raw frames received from the feeder.

This diagnostic script shows every frame on the UART with its decoded
message, useful for debugging protocol issues or unknown messages. Nothing
is sent to the device, so pings stay unanswered.

Usage:
    python dump_raw_frames.py <SERIAL_PORT>
    # or
    PETWANT_SERIAL_PORT=/dev/ttyUSB0 python dump_raw_frames.py
"""

import asyncio
import logging
import os
import sys

from petwant_feeder import FrameDecoder, UnknownMessageError, decode_message
from petwant_feeder.connect import DEFAULT_PORT, PySerialTransport


def on_data(decoder: FrameDecoder, data: bytes) -> None:
    for frame in decoder.feed(data):
        try:
            message = decode_message(frame)
        except UnknownMessageError as e:
            message = f"?? {e.args[0]}"
        print(f"{frame.to_bytes().hex(' '):<44} {message}")


async def main(port: str) -> None:
    decoder = FrameDecoder()
    transport = PySerialTransport(port)
    await transport.open(lambda data: on_data(decoder, data))
    print(f"Dumping frames from {port}, Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        await transport.close()
        decoder.flush()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    port = sys.argv[1] if len(sys.argv) > 1 else os.environ.get("PETWANT_SERIAL_PORT", DEFAULT_PORT)
    try:
        asyncio.run(main(port))
    except KeyboardInterrupt:
        pass
