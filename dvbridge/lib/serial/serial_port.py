"""
Serial Port Handles
pyserial device with blocking I/O pushed onto the default executor
"""

import asyncio
import logging
from typing import Optional

import serial

from dvbridge.lib.errors import SerialLinkError

logger = logging.getLogger(__name__)

SUPPORTED_BAUD_RATES = (115200, 250000, 500000, 1000000, 2000000)
DEFAULT_BAUD_RATE = 2000000


class PortWriter:
    """Writer handle; only valid until released"""

    def __init__(self, port: 'SerialPort'):
        self._port: Optional[SerialPort] = port

    async def write(self, data: bytes):
        port = self._port
        if port is None or port.serial is None:
            raise SerialLinkError("serial port is not writable")
        await asyncio.get_running_loop().run_in_executor(None, port.serial.write, data)

    def release(self):
        self._port = None


class PortReader:
    """Reader handle. read() returns b'' once cancelled or closed."""

    def __init__(self, port: 'SerialPort'):
        self._port: Optional[SerialPort] = port
        self._cancelled = False

    def _read_blocking(self) -> bytes:
        device = self._port.serial if self._port else None
        if device is None:
            return b''
        return device.read(max(1, device.in_waiting))

    async def read(self) -> bytes:
        loop = asyncio.get_running_loop()
        while not self._cancelled and self._port is not None:
            data = await loop.run_in_executor(None, self._read_blocking)
            if data:
                return data
        return b''

    async def cancel(self):
        self._cancelled = True
        port = self._port
        if port is not None and port.serial is not None:
            port.serial.cancel_read()

    def release(self):
        self._port = None


class SerialPort:
    """Byte-stream device backed by pyserial"""

    def __init__(self, port: str, read_timeout: float = 0.1, write_timeout: float = 0.5):
        self.port = port
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.serial: Optional[serial.Serial] = None

    async def open(self, baudrate: int):
        """Open the device. Raises SerialLinkError."""
        try:
            self.serial = await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: serial.Serial(
                    port=self.port,
                    baudrate=baudrate,
                    timeout=self.read_timeout,
                    write_timeout=self.write_timeout
                )
            )
            logger.info(f"Opened serial port: {self.port} @ {baudrate}")
        except serial.SerialException as e:
            raise SerialLinkError(f"failed to open {self.port}: {e}") from e

    def get_writer(self) -> PortWriter:
        if self.serial is None or not self.serial.writable():
            raise SerialLinkError("serial port is not writable")
        return PortWriter(self)

    def get_reader(self) -> PortReader:
        if self.serial is None or not self.serial.readable():
            raise SerialLinkError("serial port is not readable")
        return PortReader(self)

    async def close(self):
        device, self.serial = self.serial, None
        if device is not None and device.is_open:
            device.close()
            logger.info("Closed serial port")
