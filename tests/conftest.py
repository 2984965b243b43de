"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from sipcall.sip.client import SipClient
from sipcall.sip.message import SipMessage, parse_message

CLIENT_ADDR = ("10.0.0.5", 5062)
REGISTRAR = ("10.0.0.1", 5060)


class FakeTransport(asyncio.DatagramTransport):
    """Captures sendto() calls for test assertions."""

    def __init__(self, sockname: tuple[str, int] = CLIENT_ADDR) -> None:
        super().__init__()
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.closed = False
        self._sockname = sockname

    def sendto(self, data: Any, addr: Any = None) -> None:
        if addr is not None:
            self.sent.append((bytes(data), addr))

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        if name == "sockname":
            return self._sockname
        return default

    def messages(self) -> list[SipMessage]:
        return [parse_message(data) for data, _ in self.sent]

    def last(self) -> SipMessage:
        return parse_message(self.sent[-1][0])


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest_asyncio.fixture
async def client(transport: FakeTransport) -> Any:
    """SipClient wired to a FakeTransport, with no RTP socket bound."""
    c = SipClient(
        server=REGISTRAR[0],
        username="alice",
        password="secret",
        domain="example.com",
        port=REGISTRAR[1],
        local_ip=CLIENT_ADDR[0],
        t1=0.01,
        t2=0.04,
        register_timeout=1.0,
        call_setup_timeout=1.0,
    )
    c.connection_made(transport)
    yield c
    c.close()


async def wait_for_sent(
    transport: FakeTransport, count: int, timeout: float = 1.0
) -> None:
    """Yield to the loop until ``count`` datagrams have been sent."""
    deadline = asyncio.get_running_loop().time() + timeout
    while len(transport.sent) < count:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(
                f"expected {count} datagrams, got {len(transport.sent)}"
            )
        await asyncio.sleep(0.001)
