"""
Shared fixtures: an in-memory SLCAN adapter and a scripted gamepad source
"""

import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from dvbridge.lib.errors import SerialLinkError
from dvbridge.lib.models.config import BridgeConfig
from dvbridge.lib.models.context import SharedContext


def slcan_adapter(command: str) -> Optional[bytes]:
    """Replies like a typical SLCAN adapter: version string, bare CR otherwise"""
    if command == "V":
        return b"V1013\r"
    if command == "A" or command.startswith(("t", "T")):
        return None
    return b"\r"


class FakeWriter:
    def __init__(self, port: 'FakeSerialPort'):
        self.port = port
        self.released = False

    async def write(self, data: bytes):
        if self.port.write_error is not None:
            raise self.port.write_error
        self.port.written.append(data)
        if self.port.responder is not None:
            reply = self.port.responder(data.decode().rstrip("\r"))
            if reply:
                self.port.feed(reply)

    def release(self):
        self.released = True


class FakeReader:
    def __init__(self, port: 'FakeSerialPort'):
        self.port = port
        self.cancelled = False
        self.released = False

    async def read(self) -> bytes:
        item = await self.port.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def cancel(self):
        self.cancelled = True
        self.port.incoming.put_nowait(b"")

    def release(self):
        self.released = True


class FakeSerialPort:
    """Port double; bytes written are answered through responder"""

    def __init__(self, responder: Optional[Callable[[str], Optional[bytes]]] = slcan_adapter):
        self.responder = responder
        self.opened_with: Optional[int] = None
        self.open_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.closed = False
        self.written: List[bytes] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.writer: Optional[FakeWriter] = None
        self.reader: Optional[FakeReader] = None

    async def open(self, baudrate: int):
        if self.open_error is not None:
            raise SerialLinkError(f"failed to open: {self.open_error}")
        self.opened_with = baudrate

    def get_writer(self) -> FakeWriter:
        self.writer = FakeWriter(self)
        return self.writer

    def get_reader(self) -> FakeReader:
        self.reader = FakeReader(self)
        return self.reader

    async def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error

    def feed(self, data: bytes):
        self.incoming.put_nowait(data)

    def fail_read(self, error: Exception):
        self.incoming.put_nowait(error)

    @property
    def lines(self) -> List[str]:
        text = b"".join(self.written).decode()
        return [line for line in text.split("\r") if line]


class ScriptedGamepadSource:
    """Returns whatever pads the test assigned"""

    def __init__(self):
        self.pads: Dict = {}
        self.closed = False

    def poll(self):
        return dict(self.pads)

    def close(self):
        self.closed = True


async def settle(cycles: int = 5):
    """Let queued tasks and callbacks run"""
    for _ in range(cycles):
        await asyncio.sleep(0)


@pytest.fixture
def ctx():
    return SharedContext()


@pytest.fixture
def fake_port():
    return FakeSerialPort()


@pytest.fixture
def config():
    return BridgeConfig()
