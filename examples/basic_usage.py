#!/usr/bin/env python3
"""Basic usage example for petwant-feeder.

This example shows how to:
1. List serial ports
2. Connect and print device events
3. Read the stored feeding schedule
4. Change the schedule and feed (commented out)

Requirements:
    pip install petwant-feeder

Usage:
    python basic_usage.py [SERIAL_PORT]

The port defaults to $PETWANT_SERIAL_PORT, then /dev/serial0.
"""

import asyncio
import logging
import os
import sys

from petwant_feeder import DeviceEvent, EventType
from petwant_feeder.connect import DEFAULT_PORT, connect_device, list_serial_ports


def on_event(event: DeviceEvent) -> None:
    if event.type is EventType.SCHEDULE_ENTRY:
        return  # printed below
    print(f"event: {event.type} {event.data if event.data is not None else ''}")


async def main(port: str) -> None:
    print("Serial ports:")
    for device, description in list_serial_ports():
        print(f"  {device} - {description}")

    print(f"\nConnecting to {port}...")
    async with connect_device(port, on_event=on_event) as feeder:
        print("\n--- Schedule ---")
        for entry in await feeder.get_schedule(timeout=10):
            state = "enabled" if entry.enabled else "disabled"
            print(
                f"  #{entry.entry_index}: {entry.hours:02d}:{entry.minutes:02d} UTC, "
                f"{entry.portions} portion(s), sound {entry.sound_index}, {state}"
            )

        # Example: change the schedule (commented out for safety)
        # await feeder.set_schedule_entry(7, 30, portions=2, entry_index=1)
        # await feeder.feed_manually(portions=1)

        print("\nListening for device events, Ctrl+C to stop")
        await asyncio.Event().wait()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    port = sys.argv[1] if len(sys.argv) > 1 else os.environ.get("PETWANT_SERIAL_PORT", DEFAULT_PORT)
    try:
        asyncio.run(main(port))
    except KeyboardInterrupt:
        pass
