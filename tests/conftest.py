"""Shared test doubles.

FakeTransport stands in for a socket: the test pushes inbound messages (or
exceptions) into its inbox and inspects what was sent.
"""

import asyncio
from typing import List, Optional

import pytest
from esp_audio_stream.errors import TransportError
from esp_audio_stream.transports import Transport


class FakeTransport(Transport):
    def __init__(
        self,
        open_error: Optional[Exception] = None,
        open_delay: float = 0.0,
        send_error: Optional[Exception] = None,
    ):
        self.open_error = open_error
        self.open_delay = open_delay
        self.send_error = send_error
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[bytes] = []
        self.commands: List[str] = []
        self.opened = False
        self.closed = False

    def push(self, *messages):
        """Queue inbound messages; an exception instance is raised by receive()."""
        for message in messages:
            self.inbox.put_nowait(message)

    def drop(self, error: Optional[Exception] = None):
        self.inbox.put_nowait(error or TransportError("link dropped"))

    async def open(self):
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    async def receive(self):
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return [item]

    async def send(self, data):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(bytes(data))

    async def send_command(self, command):
        if self.send_error is not None:
            raise self.send_error
        self.commands.append(command)

    async def close(self):
        self.closed = True


class FakeTransportFactory:
    """Hands out scripted transports in order, then healthy ones."""

    def __init__(self):
        self.scripted: List[FakeTransport] = []
        self.created: List[FakeTransport] = []
        self.default_error: Optional[Exception] = None

    def add(self, **kwargs) -> FakeTransport:
        transport = FakeTransport(**kwargs)
        self.scripted.append(transport)
        return transport

    def always_fail(self, error: Exception):
        self.default_error = error

    def __call__(self, config) -> FakeTransport:
        if self.scripted:
            transport = self.scripted.pop(0)
        else:
            transport = FakeTransport(open_error=self.default_error)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


async def wait_until(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def until():
    """Poll a predicate on the running loop until it holds."""
    return wait_until
