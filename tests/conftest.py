"""Shared fixtures: a fake clock and an in-memory ICMP transport."""

import struct

import pytest

from icmp_packet import ICMP_ECHO_REPLY, checksum

PEER = "192.0.2.7"


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_reply(
    request: bytes,
    icmp_type: int = ICMP_ECHO_REPLY,
    identifier: int | None = None,
    ihl: int = 5,
) -> bytes:
    """Wrap *request* in an IPv4 header and turn it into a reply."""
    icmp = bytearray(request)
    icmp[0] = icmp_type
    if identifier is not None:
        struct.pack_into("!H", icmp, 4, identifier)
    struct.pack_into("!H", icmp, 2, 0)
    struct.pack_into("!H", icmp, 2, checksum(icmp))

    ip_header = bytearray(ihl * 4)
    ip_header[0] = 0x40 | ihl
    return bytes(ip_header) + bytes(icmp)


class FakeTransport:
    """Answers every request after *rtt* seconds unless *respond* is off.

    ``receive`` advances the clock by the time it would have blocked.
    """

    def __init__(self, clock: FakeClock, rtt: float = 0.0, respond: bool = True) -> None:
        self.clock = clock
        self.rtt = rtt
        self.respond = respond
        self.sent: list[tuple[bytes, str]] = []
        self.pending: list[tuple[float, bytes]] = []
        self.fail_sends = 0
        self.closed = False

    def inject(self, datagram: bytes, delay: float = 0.0) -> None:
        self.pending.append((self.clock.now + delay, datagram))
        self.pending.sort(key=lambda item: item[0])

    def send(self, packet: bytes, address: str) -> int:
        if self.fail_sends:
            self.fail_sends -= 1
            raise OSError("Network is unreachable")
        self.sent.append((packet, address))
        if self.respond:
            self.inject(make_reply(packet), self.rtt)
        return len(packet)

    def receive(self, buffer: bytearray, timeout: float) -> tuple[int, str] | None:
        if self.pending and self.pending[0][0] <= self.clock.now + timeout:
            due, datagram = self.pending.pop(0)
            self.clock.now = max(self.clock.now, due)
            buffer[:len(datagram)] = datagram
            return len(datagram), PEER
        self.clock.advance(timeout)
        return None

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reply_factory():
    return make_reply


@pytest.fixture
def transport_factory(clock):
    def factory(**kwargs) -> FakeTransport:
        return FakeTransport(clock, **kwargs)
    return factory
