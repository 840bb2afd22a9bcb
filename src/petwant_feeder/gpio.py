"""GPIO interface used by the feeder session.

The feeder's Raspberry Pi header carries two LEDs and one push button. Pin
drivers are provided by the caller; anything implementing :class:`GpioDriver`
works (a thin wrapper over RPi.GPIO, gpiozero, libgpiod, or a test fake).

Levels are electrical: the LEDs are lit when their pin is LOW and the button
reads LOW while pressed. :class:`petwant_feeder.client.PetwantClient` hides
this inversion.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Protocol

# Physical (board) pin numbers on the feeder's header
POWER_LED_PIN = 16
LINK_LED_PIN = 18
BUTTON_PIN = 22


class Direction(Enum):
    IN = "in"
    OUT = "out"


class Edge(Enum):
    NONE = "none"
    RISING = "rising"
    FALLING = "falling"
    BOTH = "both"


ChangeCallback = Callable[[int, bool], None]


class GpioDriver(Protocol):
    """Pin driver operations needed by the session.

    Any method may raise; the session treats such errors as hardware faults.
    """

    async def setup(self, pin: int, direction: Direction, edge: Edge = Edge.NONE) -> None: ...

    async def read(self, pin: int) -> bool: ...

    async def write(self, pin: int, value: bool) -> None: ...

    def add_change_listener(self, callback: ChangeCallback) -> None:
        """Register ``callback(pin, value)`` for edges on input pins."""
        ...

    async def cleanup(self) -> None: ...
