"""Serial connection helpers for the Petwant feeder.

The feeder main board talks 115200 8N1 on the Raspberry Pi UART. This module
provides the transport PetwantClient reads from and writes to, backed by
pyserial, plus context managers that open and close everything in order.

Example:
    from petwant_feeder.connect import connect_device

    async with connect_device("/dev/serial0", gpio) as feeder:
        await feeder.feed_manually()
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Protocol

import serial
import serial.tools.list_ports

from .client import PetwantClient

if TYPE_CHECKING:
    from .gpio import GpioDriver

logger = logging.getLogger(__name__)

DEFAULT_PORT = "/dev/serial0"
DEFAULT_BAUDRATE = 115200

# Idle poll period of the read loop
POLL_INTERVAL = 0.01

DataCallback = Callable[[bytes], None]
ErrorCallback = Callable[[Exception], None]


class SerialTransport(Protocol):
    """Byte transport between PetwantClient and the feeder UART."""

    async def open(self, on_data: DataCallback, on_error: ErrorCallback) -> None:
        """Open the port and deliver received chunks to ``on_data``.

        ``on_error`` is called once if reading fails; no data follows it.
        """
        ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class PySerialTransport:
    """SerialTransport over a pyserial port.

    Reads are polled from a background task using ``in_waiting`` so the
    event loop is never blocked on the UART.

    Args:
        port: Serial device path, or a pyserial URL such as "socket://host:port"
        baudrate: Line speed
    """

    def __init__(self, port: str = DEFAULT_PORT, baudrate: int = DEFAULT_BAUDRATE) -> None:
        self.port = port
        self.baudrate = baudrate
        self._serial: serial.SerialBase | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._on_data: DataCallback | None = None
        self._on_error: ErrorCallback | None = None

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self, on_data: DataCallback, on_error: ErrorCallback | None = None) -> None:
        """Open the port and start the read loop.

        Args:
            on_data: Called with every chunk read
            on_error: Called with the exception when a read fails

        Raises:
            serial.SerialException: If the port cannot be opened
        """
        if self.is_open:
            raise RuntimeError(f"{self.port} is already open")
        self._serial = serial.serial_for_url(self.port, baudrate=self.baudrate, timeout=0)
        self._on_data = on_data
        self._on_error = on_error
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop())
        logger.info("Opened %s at %d baud", self.port, self.baudrate)

    async def write(self, data: bytes) -> None:
        """Write bytes to the port.

        Raises:
            serial.SerialException: If the port is closed or the write fails
        """
        if self._serial is None:
            raise serial.SerialException(f"{self.port} is not open")
        await asyncio.to_thread(self._write_blocking, self._serial, data)

    @staticmethod
    def _write_blocking(port: serial.SerialBase, data: bytes) -> None:
        port.write(data)
        port.flush()

    async def close(self) -> None:
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        if self._serial is not None:
            self._serial.close()
            self._serial = None
            logger.info("Closed %s", self.port)
        self._on_data = None
        self._on_error = None

    async def _read_loop(self) -> None:
        logger.debug("Read loop started on %s", self.port)
        try:
            while self._serial is not None:
                try:
                    waiting = self._serial.in_waiting
                    data = self._serial.read(waiting) if waiting else b""
                except serial.SerialException as e:
                    logger.error("Read from %s failed: %s", self.port, e)
                    if self._on_error is not None:
                        self._on_error(e)
                    break

                if not data:
                    await asyncio.sleep(POLL_INTERVAL)
                    continue

                logger.debug("RX %s", data.hex(" "))
                if self._on_data is not None:
                    try:
                        self._on_data(data)
                    except Exception:
                        logger.exception("Data callback failed")
        finally:
            logger.debug("Read loop stopped on %s", self.port)


@asynccontextmanager
async def connect_serial(
    port: str = DEFAULT_PORT,
    baudrate: int = DEFAULT_BAUDRATE,
) -> AsyncIterator[PySerialTransport]:
    """Provide a serial transport that is closed on exit.

    The port itself is opened by PetwantClient.connect().

    Args:
        port: Serial device path (e.g., "/dev/serial0", "/dev/ttyUSB0")
        baudrate: Line speed

    Yields:
        PySerialTransport

    Example:
        async with connect_serial("/dev/ttyUSB0") as transport:
            feeder = PetwantClient(transport)
            await feeder.connect()
    """
    transport = PySerialTransport(port, baudrate)
    try:
        yield transport
    finally:
        await transport.close()


@asynccontextmanager
async def connect_device(
    port: str = DEFAULT_PORT,
    gpio: "GpioDriver | None" = None,
    *,
    baudrate: int = DEFAULT_BAUDRATE,
    **client_kwargs: Any,
) -> AsyncIterator[PetwantClient]:
    """Connect to the feeder and yield a ready client.

    The UART is connected and, when a GPIO driver is given, the pins are
    set up. Everything is released on exit.

    Args:
        port: Serial device path
        gpio: Pin driver, or None to skip LEDs and button
        baudrate: Line speed
        **client_kwargs: Passed on to PetwantClient (on_event, pins, ...)

    Yields:
        Connected PetwantClient

    Example:
        async with connect_device("/dev/serial0", on_event=print) as feeder:
            entries = await feeder.get_schedule(timeout=5)
    """
    async with connect_serial(port, baudrate) as transport:
        client = PetwantClient(transport, gpio, **client_kwargs)
        try:
            await client.connect()
            if gpio is not None:
                await client.setup_gpio()
            yield client
        finally:
            await client.close()


def list_serial_ports() -> list[tuple[str, str]]:
    """List serial ports present on this machine.

    Returns:
        List of (device, description) tuples
    """
    return [(port.device, port.description) for port in serial.tools.list_ports.comports()]
