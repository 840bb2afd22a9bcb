"""Tests for the pyserial transport and connection helpers.

pyserial's ``loop://`` handler echoes every written byte back, which stands
in for the feeder: what the client sends is what it receives.
"""

import asyncio
from types import SimpleNamespace

import pytest
import serial

from petwant_feeder.client import DeviceFaultError, EventType, PetwantClient
from petwant_feeder.connect import (
    PySerialTransport,
    connect_device,
    connect_serial,
    list_serial_ports,
)


class _UnpluggedPort:
    """Stands in for a port whose device went away."""

    is_open = True

    @property
    def in_waiting(self):
        raise serial.SerialException("device disconnected")

    def close(self):
        pass


def _unplug(transport: PySerialTransport) -> None:
    transport._serial.close()
    transport._serial = _UnpluggedPort()


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class TestPySerialTransport:
    """Tests for PySerialTransport over a loopback port."""

    @pytest.mark.asyncio
    async def test_write_is_read_back(self):
        received = bytearray()
        transport = PySerialTransport("loop://")
        await transport.open(received.extend)
        try:
            assert transport.is_open
            await transport.write(bytes.fromhex("ffff050102"))
            await _wait_for(lambda: len(received) == 5)
        finally:
            await transport.close()

        assert bytes(received) == bytes.fromhex("ffff050102")
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_open_twice(self):
        transport = PySerialTransport("loop://")
        await transport.open(lambda data: None)
        try:
            with pytest.raises(RuntimeError, match="already open"):
                await transport.open(lambda data: None)
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_write_when_closed(self):
        with pytest.raises(serial.SerialException):
            await PySerialTransport("loop://").write(b"\x00")

    @pytest.mark.asyncio
    async def test_callback_error_keeps_reading(self):
        """Test a failing callback is logged and reading continues."""
        chunks = []

        def on_data(data):
            chunks.append(data)
            if len(chunks) == 1:
                raise RuntimeError("boom")

        transport = PySerialTransport("loop://")
        await transport.open(on_data)
        try:
            await transport.write(b"\x01")
            await _wait_for(lambda: len(chunks) == 1)
            await transport.write(b"\x02")
            await _wait_for(lambda: len(chunks) == 2)
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_read_failure_reported(self):
        errors = []
        transport = PySerialTransport("loop://")
        await transport.open(lambda data: None, errors.append)
        try:
            _unplug(transport)
            await _wait_for(lambda: errors)
        finally:
            await transport.close()
        assert isinstance(errors[0], serial.SerialException)


class TestConnectHelpers:
    """Tests for the async context managers."""

    @pytest.mark.asyncio
    async def test_connect_serial_over_loopback(self):
        """Test a warning frame travels through transport, decoder and client."""
        events = []
        async with connect_serial("loop://") as transport:
            client = PetwantClient(transport, on_event=events.append)
            await client.connect()
            assert transport.is_open
            await transport.write(bytes.fromhex("ffff050102"))
            await _wait_for(lambda: events)
        assert not transport.is_open
        assert [event.type for event in events] == [EventType.WARNING_NO_FOOD]

    @pytest.mark.asyncio
    async def test_connect_device(self):
        async with connect_device("loop://") as feeder:
            assert feeder.connected
            assert not feeder.gpio_setup_completed
        assert not feeder.connected


def test_list_serial_ports(monkeypatch):
    import serial.tools.list_ports

    ports = [SimpleNamespace(device="/dev/ttyAMA0", description="PL011")]
    monkeypatch.setattr(serial.tools.list_ports, "comports", lambda: ports)
    assert list_serial_ports() == [("/dev/ttyAMA0", "PL011")]


class TestReadFailure:
    """Tests for losing the port while the client waits for the device."""

    @pytest.mark.asyncio
    async def test_pending_command_fails_when_port_breaks(self):
        events = []
        async with connect_serial("loop://") as transport:
            client = PetwantClient(transport, on_event=events.append)
            await client.connect()
            task = asyncio.create_task(client.get_schedule())

            # The loopback echoes the request back as an unknown message
            await _wait_for(lambda: events)
            _unplug(transport)

            with pytest.raises(DeviceFaultError) as exc_info:
                await asyncio.wait_for(task, timeout=1)
            assert isinstance(exc_info.value.__cause__, serial.SerialException)
            assert client.faulted
            await client.close()
