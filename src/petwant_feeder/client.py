"""Petwant Client - Primary interface for controlling the feeder.

This module provides PetwantClient, which sits between the feeder's UART and
GPIO pins and the application. It decodes device messages, keeps the device
clock in sync, turns button edges into press events, blinks the LEDs, and
runs the schedule and feeding command exchanges.

Example:
    async with connect_serial("/dev/serial0") as transport:
        feeder = PetwantClient(transport, gpio, on_event=print)
        await feeder.connect()
        await feeder.setup_gpio()
        schedule = await feeder.get_schedule()
        await feeder.feed_manually(portions=2)
"""

from __future__ import annotations

import asyncio
import datetime as dt
import functools
import logging
import time
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine, assert_never

from .framing import FrameDecoder, RawFrame
from .gpio import BUTTON_PIN, LINK_LED_PIN, POWER_LED_PIN, Direction, Edge
from .protocol import (
    DateTime,
    DateTimeSet,
    EntryIndex,
    EntryState,
    InboundMessage,
    InvalidParameterError,
    MotorStatus,
    Ok,
    PetwantError,
    Ping,
    PingResponse,
    ScheduledFeedingStarted,
    ScheduleEntry,
    ScheduleRequest,
    SoundIndex,
    UnknownMessageError,
    WarningNoFood,
    decode_message,
)

if TYPE_CHECKING:
    from .connect import SerialTransport
    from .gpio import GpioDriver

logger = logging.getLogger(__name__)

# Clock fix is sent when the device is further off than this
MAX_TIME_DRIFT_SECONDS = 10.0

# LED blink half-period
BLINK_INTERVAL = 0.5

# Button policy (milliseconds)
BUTTON_DEBOUNCE_MS = 100
BUTTON_LONG_PRESS_MS = 3000

# Entries returned by the device for a schedule request
SCHEDULE_SIZE = 4


class EventType(StrEnum):
    """Events delivered to the on_event callback."""

    BUTTON_DOWN = "buttondown"                          # no data
    BUTTON_UP = "buttonup"                              # no data
    BUTTON_LONG_PRESS = "buttonlongpress"               # int: ms held
    DATETIME_UTC = "datetimeutc"                        # datetime reported by device
    CLOCK_SYNCHRONIZED = "clocksynchronized"            # no data
    SCHEDULED_FEEDING_STARTED = "scheduledfeedingstarted"  # ScheduledFeedingStarted
    FEEDING_COMPLETE = "feedingcomplete"                # int: motor revolutions
    WARNING_NO_FOOD = "warningnofood"                   # no data
    UNKNOWN_MESSAGE = "unknownmessage"                  # RawFrame (or bytes)
    COMMAND_ACCEPTED = "commandaccepted"                # no data
    SCHEDULE_ENTRY = "scheduleentry"                    # ScheduleEntry


@dataclass(frozen=True)
class DeviceEvent:
    """One event from the feeder."""

    type: EventType
    data: Any = None


EventCallback = Callable[[DeviceEvent], None]


class GpioSetupError(PetwantError):
    """Raised when GPIO is used before setup_gpio() completed."""

    def __init__(self, message: str = "GPIO setup is not completed, use setup_gpio() first") -> None:
        super().__init__(message)


class NotConnectedError(PetwantError):
    """Raised when a command is issued before connect()."""

    def __init__(self, message: str = "UART is not connected, use connect() first") -> None:
        super().__init__(message)


class DeviceFaultError(PetwantError):
    """Raised after a GPIO or serial failure left the session unusable.

    The underlying error is available as ``__cause__``. Close the client and
    set it up again.
    """


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _check_bool(name: str, value: object) -> None:
    if not isinstance(value, bool):
        raise InvalidParameterError(
            f"Parameter '{name}' is incorrect, it must be type of a bool"
        )


class PetwantClient:
    """Client for controlling a Petwant pet feeder.

    This is the primary interface for the feeder. It wraps an open serial
    transport and an optional GPIO driver; the caller owns both.

    All state lives on the event loop thread: data_received() and
    handle_gpio_change() must be called from the loop that runs the
    commands.

    Args:
        transport: Serial transport (see petwant_feeder.connect)
        gpio: Pin driver for LEDs and button, or None for UART only
        on_event: Callback receiving every DeviceEvent
        power_led_pin: Power LED pin number
        link_led_pin: Link LED pin number
        button_pin: Button pin number
        max_time_drift: Seconds of device clock drift tolerated before a fix is sent
        blink_interval: Seconds between LED toggles while blinking
        monotonic_ms: Millisecond clock used for button timing
        utcnow: Returns the current aware UTC datetime

    Example:
        feeder = PetwantClient(transport, gpio, on_event=handle_event)
        await feeder.connect()
        await feeder.set_schedule_entry(16, 0, portions=2, entry_index=2)
    """

    def __init__(
        self,
        transport: "SerialTransport",
        gpio: "GpioDriver | None" = None,
        *,
        on_event: EventCallback | None = None,
        power_led_pin: int = POWER_LED_PIN,
        link_led_pin: int = LINK_LED_PIN,
        button_pin: int = BUTTON_PIN,
        max_time_drift: float = MAX_TIME_DRIFT_SECONDS,
        blink_interval: float = BLINK_INTERVAL,
        monotonic_ms: Callable[[], float] = _monotonic_ms,
        utcnow: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._transport = transport
        self._gpio = gpio
        self._on_event = on_event
        self._power_led_pin = power_led_pin
        self._link_led_pin = link_led_pin
        self._button_pin = button_pin
        self._max_time_drift = max_time_drift
        self._blink_interval = blink_interval
        self._monotonic_ms = monotonic_ms
        self._utcnow = utcnow

        self._decoder = FrameDecoder()
        self._connected = False
        self._gpio_setup_completed = False

        self._button_pressed_at: float | None = None

        self._power_led_blinking = False
        self._link_led_blinking = False
        self._blink_task: asyncio.Task[None] | None = None

        self._command_lock = asyncio.Lock()
        self._pending_ack: asyncio.Future[None] | None = None
        self._schedule_entries: list[ScheduleEntry] | None = None
        self._schedule_future: asyncio.Future[list[ScheduleEntry]] | None = None

        self._background: set[asyncio.Task[None]] = set()
        self._fault: BaseException | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def gpio_setup_completed(self) -> bool:
        return self._gpio_setup_completed

    @property
    def faulted(self) -> bool:
        return self._fault is not None

    def set_event_callback(self, callback: EventCallback | None) -> None:
        """Replace the callback receiving device events."""
        self._on_event = callback

    async def connect(self) -> None:
        """Open the serial transport and start decoding device messages.

        Does nothing if already connected.
        """
        if self._connected:
            return
        self._check_fault()
        await self._transport.open(self.data_received, self.connection_lost)
        self._decoder.reset()
        self._connected = True
        logger.info("Connected to feeder")

    async def setup_gpio(self) -> None:
        """Configure LED and button pins and subscribe to button edges.

        Does nothing if already set up.

        Raises:
            GpioSetupError: If the client was created without a GPIO driver
        """
        if self._gpio_setup_completed:
            return
        if self._gpio is None:
            raise GpioSetupError("No GPIO driver configured")
        self._check_fault()

        await self._gpio.setup(self._power_led_pin, Direction.OUT)
        await self._gpio.setup(self._link_led_pin, Direction.OUT)
        await self._gpio.setup(self._button_pin, Direction.IN, Edge.BOTH)
        self._gpio.add_change_listener(self.handle_gpio_change)
        self._gpio_setup_completed = True
        logger.info(
            "GPIO ready (power LED %d, link LED %d, button %d)",
            self._power_led_pin,
            self._link_led_pin,
            self._button_pin,
        )

    async def close(self) -> None:
        """Stop blinking, fail pending commands and release UART and GPIO."""
        self._power_led_blinking = False
        self._link_led_blinking = False
        self._stop_blink_timer()

        for task in list(self._background):
            task.cancel()
        self._fail_pending(NotConnectedError("Connection closed"))

        if self._connected:
            self._connected = False
            self._decoder.flush()
            await self._transport.close()
            logger.info("Disconnected from feeder")

        if self._gpio_setup_completed and self._gpio is not None:
            self._gpio_setup_completed = False
            await self._gpio.cleanup()

        # A closed session can be connected and set up again
        self._fault = None
        self._button_pressed_at = None

    # -------------------------------------------------------------------------
    # Input from collaborators
    # -------------------------------------------------------------------------

    def data_received(self, data: bytes) -> None:
        """Feed bytes read from the UART. Called by the serial transport."""
        for frame in self._decoder.feed(data):
            self._handle_frame(frame)

    def connection_lost(self, exc: Exception) -> None:
        """Handle a failed UART read. Called by the serial transport.

        Nothing more will be received: a partly received frame is dropped
        and the session is faulted, failing any command still waiting for
        the device.
        """
        self._decoder.flush()
        self._set_fault(exc, "serial read")

    def handle_gpio_change(self, channel: int, value: bool) -> None:
        """Handle a level change reported by the GPIO driver.

        Only the button pin is of interest. The button is active low.
        """
        if channel != self._button_pin:
            return

        now = self._monotonic_ms()
        pressed_at = self._button_pressed_at

        if not value:
            if pressed_at is not None and now - pressed_at < BUTTON_DEBOUNCE_MS:
                logger.debug("Button bounce ignored (%.0f ms)", now - pressed_at)
                return
            self._button_pressed_at = now
            self._emit(EventType.BUTTON_DOWN)
        elif pressed_at is not None and now - pressed_at >= BUTTON_LONG_PRESS_MS:
            self._emit(EventType.BUTTON_LONG_PRESS, int(now - pressed_at))
        else:
            self._emit(EventType.BUTTON_UP)

    # -------------------------------------------------------------------------
    # Device messages
    # -------------------------------------------------------------------------

    def _handle_frame(self, frame: RawFrame) -> None:
        try:
            message = decode_message(frame)
        except UnknownMessageError as e:
            logger.warning("Unknown message: %s", e)
            self._emit(EventType.UNKNOWN_MESSAGE, e.frame)
            return

        logger.debug("Received: %s", message)
        self._handle_message(message)

    def _handle_message(self, message: InboundMessage) -> None:
        match message:
            case Ping():
                self._spawn(self._transport.write(PingResponse().encode()), "ping response")
            case DateTime():
                self._emit(EventType.DATETIME_UTC, message.utc)
                self._check_clock(message.utc)
            case DateTimeSet():
                logger.info("Device clock synchronized")
                self._emit(EventType.CLOCK_SYNCHRONIZED)
            case ScheduleEntry():
                self._collect_schedule_entry(message)
                self._emit(EventType.SCHEDULE_ENTRY, message)
            case ScheduledFeedingStarted():
                self._emit(EventType.SCHEDULED_FEEDING_STARTED, message)
            case MotorStatus():
                self._emit(EventType.FEEDING_COMPLETE, message.revolutions_done)
            case Ok():
                if self._pending_ack is not None and not self._pending_ack.done():
                    self._pending_ack.set_result(None)
                else:
                    logger.debug("Ok received with no command pending")
                self._emit(EventType.COMMAND_ACCEPTED)
            case WarningNoFood():
                self._emit(EventType.WARNING_NO_FOOD)
            case _:
                assert_never(message)

    def _check_clock(self, device_utc: dt.datetime) -> None:
        now = self._utcnow()
        drift = abs((now - device_utc).total_seconds())
        if drift <= self._max_time_drift:
            return
        logger.info("Device clock is %.0f s off, sending %s", drift, now.isoformat())
        self._spawn(self._transport.write(DateTime(now).encode()), "clock fix")

    def _collect_schedule_entry(self, entry: ScheduleEntry) -> None:
        if self._schedule_entries is None or self._schedule_future is None:
            return
        self._schedule_entries.append(entry)
        if len(self._schedule_entries) == SCHEDULE_SIZE and not self._schedule_future.done():
            self._schedule_future.set_result(list(self._schedule_entries))

    def _emit(self, event_type: EventType, data: Any = None) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(DeviceEvent(event_type, data))
        except Exception:
            logger.exception("Event callback failed for %s", event_type)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def set_schedule_entry(
        self,
        hours: int,
        minutes: int,
        portions: int,
        entry_index: int,
        sound_index: int = SoundIndex.NO_SOUND,
        enabled: bool = True,
        timeout: float | None = None,
    ) -> None:
        """Store one schedule entry on the device.

        Args:
            hours: UTC hour (0-23)
            minutes: Minute (0-59)
            portions: Portions to feed (0-10)
            entry_index: Schedule slot (1-4)
            sound_index: Sound to play (0-9), 10 for none
            enabled: Whether the entry is active
            timeout: Seconds to wait for the device to accept, None to wait forever

        Raises:
            NotConnectedError: If connect() was not called
            InvalidParameterError: If any argument is out of range
            TimeoutError: If timeout elapsed before the device accepted
        """
        self._check_connected()
        _check_bool("enabled", enabled)
        entry = ScheduleEntry(
            hours,
            minutes,
            portions,
            EntryState.ENABLED if enabled else EntryState.DISABLED,
            entry_index,
            sound_index,
        )
        await self._set_schedule_entry(entry, timeout)

    async def clear_schedule(self, timeout: float | None = None) -> None:
        """Disable all four schedule entries, one after another.

        Each slot is written as 00:00, 0 portions, disabled, no sound.
        The timeout applies to each of the four exchanges.
        """
        self._check_connected()
        entry = ScheduleEntry(
            0, 0, 0, EntryState.DISABLED, EntryIndex.FIRST, SoundIndex.NO_SOUND
        )
        for index in range(EntryIndex.FIRST, EntryIndex.LAST + 1):
            await self._set_schedule_entry(replace(entry, entry_index=index), timeout)

    async def feed_manually(self, portions: int = 1, timeout: float | None = None) -> None:
        """Dispense food now.

        Args:
            portions: Portions to feed (0-10)
            timeout: Seconds to wait for the device to accept, None to wait forever
        """
        self._check_connected()
        now = self._utcnow().astimezone(dt.timezone.utc)
        entry = ScheduleEntry(
            now.hour,
            now.minute,
            portions,
            EntryState.NOW,
            EntryIndex.DONT_SAVE,
            SoundIndex.NO_SOUND,
        )
        await self._set_schedule_entry(entry, timeout)

    async def get_schedule(self, timeout: float | None = None) -> list[ScheduleEntry]:
        """Read the four stored schedule entries.

        The device answers a schedule request with four entry messages;
        they are returned in arrival order. Other messages arriving in
        between are handled normally.

        Args:
            timeout: Seconds to wait for all four entries, None to wait forever

        Returns:
            List of four ScheduleEntry objects

        Raises:
            NotConnectedError: If connect() was not called
            TimeoutError: If timeout elapsed before four entries arrived
        """
        self._check_connected()
        async with self._command_lock:
            self._schedule_entries = []
            self._schedule_future = asyncio.get_running_loop().create_future()
            try:
                await self._send(ScheduleRequest().encode())
                return await self._wait(self._schedule_future, timeout)
            finally:
                self._schedule_entries = None
                self._schedule_future = None

    async def _set_schedule_entry(self, entry: ScheduleEntry, timeout: float | None) -> None:
        async with self._command_lock:
            self._pending_ack = asyncio.get_running_loop().create_future()
            try:
                await self._send(entry.encode())
                await self._wait(self._pending_ack, timeout)
            finally:
                self._pending_ack = None
        logger.debug("Schedule entry accepted: %s", entry)

    async def _send(self, data: bytes) -> None:
        self._check_connected()
        logger.debug("Sending: %s", data.hex(" "))
        await self._transport.write(data)

    async def _wait(self, future: Awaitable[Any], timeout: float | None) -> Any:
        if timeout is None:
            return await future
        return await asyncio.wait_for(future, timeout=timeout)

    # -------------------------------------------------------------------------
    # LEDs and button
    # -------------------------------------------------------------------------

    async def get_power_led_state(self) -> bool:
        """Return True if the power LED is lit."""
        return await self._read_led(self._power_led_pin)

    async def set_power_led_state(self, state: bool) -> None:
        """Switch the power LED on (True) or off (False)."""
        await self._write_led(self._power_led_pin, state)

    async def get_link_led_state(self) -> bool:
        """Return True if the link LED is lit."""
        return await self._read_led(self._link_led_pin)

    async def set_link_led_state(self, state: bool) -> None:
        """Switch the link LED on (True) or off (False)."""
        await self._write_led(self._link_led_pin, state)

    async def get_button_state(self) -> bool:
        """Return True while the button is held down."""
        self._check_gpio()
        return not await self._gpio.read(self._button_pin)

    async def _read_led(self, pin: int) -> bool:
        self._check_gpio()
        return not await self._gpio.read(pin)

    async def _write_led(self, pin: int, state: bool) -> None:
        _check_bool("state", state)
        self._check_gpio()
        await self._gpio.write(pin, not state)

    @property
    def power_led_blinking(self) -> bool:
        return self._power_led_blinking

    @power_led_blinking.setter
    def power_led_blinking(self, value: bool) -> None:
        _check_bool("value", value)
        if value:
            self._check_gpio()
        self._power_led_blinking = value
        self._update_blink_timer()

    @property
    def link_led_blinking(self) -> bool:
        return self._link_led_blinking

    @link_led_blinking.setter
    def link_led_blinking(self, value: bool) -> None:
        _check_bool("value", value)
        if value:
            self._check_gpio()
        self._link_led_blinking = value
        self._update_blink_timer()

    def _update_blink_timer(self) -> None:
        if self._power_led_blinking or self._link_led_blinking:
            if self._blink_task is None:
                self._blink_task = asyncio.get_running_loop().create_task(self._blink_loop())
                self._blink_task.add_done_callback(self._on_blink_done)
        else:
            self._stop_blink_timer()

    def _stop_blink_timer(self) -> None:
        if self._blink_task is not None:
            self._blink_task.cancel()
            self._blink_task = None

    async def _blink_loop(self) -> None:
        while True:
            await asyncio.sleep(self._blink_interval)
            await self._blink_tick()

    async def _blink_tick(self) -> None:
        if self._power_led_blinking:
            await self.set_power_led_state(not await self.get_power_led_state())
        if self._link_led_blinking:
            await self.set_link_led_state(not await self.get_link_led_state())

    def _on_blink_done(self, task: asyncio.Task[None]) -> None:
        if self._blink_task is task:
            self._blink_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._set_fault(exc, "LED blink")

    # -------------------------------------------------------------------------
    # Faults
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], operation: str) -> None:
        """Run a fire-and-forget write; a failure faults the session."""
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(functools.partial(self._on_background_done, operation))

    def _on_background_done(self, operation: str, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._set_fault(exc, operation)

    def _set_fault(self, exc: BaseException, operation: str) -> None:
        logger.error("Hardware fault during %s", operation, exc_info=exc)
        if self._fault is None:
            self._fault = exc
        self._power_led_blinking = False
        self._link_led_blinking = False
        self._stop_blink_timer()
        error = DeviceFaultError(f"Hardware fault during {operation}: {exc}")
        error.__cause__ = exc
        self._fail_pending(error)

    def _fail_pending(self, error: BaseException) -> None:
        for future in (self._pending_ack, self._schedule_future):
            if future is not None and not future.done():
                future.set_exception(error)

    def _check_fault(self) -> None:
        if self._fault is not None:
            raise DeviceFaultError(
                "Session stopped after a hardware fault, close and reconnect"
            ) from self._fault

    def _check_connected(self) -> None:
        self._check_fault()
        if not self._connected:
            raise NotConnectedError()

    def _check_gpio(self) -> None:
        self._check_fault()
        if not self._gpio_setup_completed or self._gpio is None:
            raise GpioSetupError()
