#!/usr/bin/env python3
"""
my_ping.py - ICMP echo client using raw sockets.

Sends one ICMP Echo Request per second to the destination, matches the
Echo Replies that come back against this process's identifier, and prints
round-trip times followed by packet-loss statistics.

Usage:
    sudo python my_ping.py [-v] <host> [datalen] [npackets]

Requires root/administrator privileges to use raw sockets.
"""

import argparse
import enum
import os
import select
import socket
import sys
import time
from typing import Callable

from icmp_packet import (
    ICMP_HEADER_SIZE,
    MAX_PACKET,
    TIMESTAMP_SIZE,
    EchoReply,
    PacketTooLarge,
    Rejected,
    SendHistory,
    build_echo_request,
    parse_echo_reply,
)
from ping_stats import Statistics, print_report

DEFAULT_DATALEN = 56
SEND_INTERVAL = 1.0    # Seconds between requests
RECV_TIMEOUT = 1.0     # Longest single wait on the socket
DEFAULT_GRACE = 10     # Final wait (s) when nothing has been received


class PingError(Exception):
    """Base class for fatal setup errors."""


class ResolutionFailure(PingError):
    """The target host could not be resolved to an IPv4 address."""


class TransportError(PingError):
    """The raw socket could not be opened."""


class SessionState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


def resolve_host(host: str) -> tuple[str, str]:
    """Resolve *host* to an IPv4 address.

    Dotted-quad literals are used as given; anything else goes through
    the resolver and the canonical name is used for display.

    Args:
        host: Hostname or IPv4 address string.

    Returns:
        A tuple ``(address, display_name)``.

    Raises:
        ResolutionFailure: If the name cannot be resolved.
    """
    try:
        socket.inet_pton(socket.AF_INET, host)
        return host, host
    except OSError:
        pass

    try:
        name, _aliases, addresses = socket.gethostbyname_ex(host)
    except (socket.gaierror, socket.herror, UnicodeError) as exc:
        raise ResolutionFailure(f"cannot resolve {host}: {exc}") from exc
    if not addresses:
        raise ResolutionFailure(f"cannot resolve {host}: no IPv4 address")
    return addresses[0], name


class EchoSession:
    """Settings of one ping run.

    Args:
        hostname:   Name shown in the output.
        address:    Destination IPv4 address.
        datalen:    Payload bytes per request.
        npackets:   Stop after this many replies; 0 means no limit.
        verbose:    Report ignored packets and socket errors on stderr.
        identifier: ICMP identifier; defaults to the low 16 bits of the PID.

    Raises:
        PacketTooLarge: If ``datalen`` plus the ICMP header does not fit in
            :data:`~icmp_packet.MAX_PACKET`.
    """

    def __init__(
        self,
        hostname: str,
        address: str,
        datalen: int = DEFAULT_DATALEN,
        npackets: int = 0,
        verbose: bool = False,
        identifier: int | None = None,
    ) -> None:
        if datalen < 0:
            raise ValueError(f"invalid data length: {datalen}")
        if npackets < 0:
            raise ValueError(f"invalid packet count: {npackets}")

        self.packsize = datalen + ICMP_HEADER_SIZE
        if self.packsize > MAX_PACKET:
            raise PacketTooLarge(
                f"packet size {self.packsize} exceeds {MAX_PACKET} bytes"
            )

        self.hostname = hostname
        self.address = address
        self.datalen = datalen
        self.npackets = npackets
        self.verbose = verbose
        self.timing = datalen >= TIMESTAMP_SIZE
        if identifier is None:
            identifier = os.getpid()
        self.identifier = identifier & 0xFFFF

    @classmethod
    def for_host(
        cls,
        host: str,
        datalen: int = DEFAULT_DATALEN,
        npackets: int = 0,
        verbose: bool = False,
    ) -> "EchoSession":
        """Resolve *host* and build a session for it."""
        address, name = resolve_host(host)
        return cls(name, address, datalen, npackets, verbose)


class RawSocketTransport:
    """Raw ICMP socket used to send requests and read replies.

    Use :meth:`open` to create one. :class:`PingEngine` closes it when the
    session ends.
    """

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    @classmethod
    def open(cls, timeout: float = RECV_TIMEOUT) -> "RawSocketTransport":
        """Create a raw ICMP socket.

        Raises:
            TransportError: If the socket cannot be created.
        """
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
        except PermissionError as exc:
            raise TransportError(
                "raw socket requires root privileges. Try running with sudo."
            ) from exc
        except OSError as exc:
            raise TransportError(f"cannot open raw socket: {exc}") from exc
        sock.settimeout(timeout)
        return cls(sock)

    def send(self, packet: bytes, address: str) -> int:
        return self._sock.sendto(packet, (address, 0))

    def receive(self, buffer: bytearray, timeout: float) -> tuple[int, str] | None:
        """Wait up to *timeout* seconds for one datagram.

        Args:
            buffer:  Buffer the datagram is read into.
            timeout: Seconds to wait.

        Returns:
            ``(nbytes, source_address)``, or ``None`` on timeout.
        """
        ready = select.select([self._sock], [], [], timeout)
        if not ready[0]:
            return None
        try:
            nbytes, addr = self._sock.recvfrom_into(buffer)
        except socket.timeout:
            return None
        return nbytes, addr[0]

    def close(self) -> None:
        self._sock.close()


class PingEngine:
    """Send/receive loop of one ping session.

    A single thread alternates between the send deadline and a bounded
    wait on the transport. Once the packet limit has been transmitted the
    engine stops sending and waits a grace period for stragglers.

    Args:
        session:      Session settings.
        transport:    Object with ``send(packet, address)``,
                      ``receive(buffer, timeout)`` and ``close()``. The
                      engine takes ownership and closes it when
                      :meth:`run` returns or raises.
        clock:        Wall-clock source, ``time.time`` by default.
        interval:     Seconds between requests.
        recv_timeout: Longest single wait on the transport.
    """

    def __init__(
        self,
        session: EchoSession,
        transport,
        clock: Callable[[], float] = time.time,
        interval: float = SEND_INTERVAL,
        recv_timeout: float = RECV_TIMEOUT,
    ) -> None:
        self.session = session
        self.transport = transport
        self.stats = Statistics()
        self.history = SendHistory()
        self.state = SessionState.IDLE
        self.interval = interval
        self.recv_timeout = recv_timeout
        self._clock = clock
        self._deadline = 0.0
        self._recv_buffer = bytearray(MAX_PACKET)

    def run(self) -> Statistics:
        """Ping until the reply limit is met or the grace period ends.

        The transport is closed on every exit path, including an interrupt,
        which skips the report.

        Returns:
            The final statistics, after the report has been printed.
        """
        session = self.session
        try:
            print(f"PING {session.hostname} ({session.address}): "
                  f"{session.datalen} data bytes")

            self.state = SessionState.RUNNING
            self.send_ping()
            self._deadline = self._clock() + self.interval

            while self.state is not SessionState.TERMINATED:
                self.step()
        finally:
            self.transport.close()

        print_report(session.hostname, self.stats, session.timing)
        return self.stats

    def step(self) -> None:
        """Run one iteration: fire a due deadline, then wait for a packet."""
        now = self._clock()
        if now >= self._deadline:
            self._on_deadline(now)
            if self.state is SessionState.TERMINATED:
                return

        timeout = min(self.recv_timeout, max(0.0, self._deadline - now))
        self.receive_ping(timeout)

        npackets = self.session.npackets
        if npackets and self.stats.received >= npackets:
            self.state = SessionState.TERMINATED

    def grace_period(self) -> int:
        """Seconds to wait for outstanding replies after the last request."""
        if not self.stats.received:
            return DEFAULT_GRACE
        return max(1, 2 * self.stats.max_time // 1000)

    def _on_deadline(self, now: float) -> None:
        if self.state is SessionState.DRAINING:
            self.state = SessionState.TERMINATED
            return

        npackets = self.session.npackets
        if not npackets or self.stats.transmitted < npackets:
            self.send_ping()
            self._deadline = now + self.interval
        else:
            self.state = SessionState.DRAINING
            self._deadline = now + self.grace_period()

    def send_ping(self) -> None:
        """Build and send the next request; failures are skipped."""
        session = self.session
        sequence = self.stats.transmitted & 0xFFFF
        packet = build_echo_request(
            session.identifier,
            sequence,
            session.datalen,
            session.timing,
            self._clock(),
        )

        try:
            self.transport.send(packet, session.address)
        except OSError as exc:
            if session.verbose:
                print(f"Failed to send ping packet: {exc}", file=sys.stderr)
            return

        self.history.record(sequence, packet)
        self.stats.record_transmitted()

    def receive_ping(self, timeout: float) -> None:
        """Read at most one packet and account for it if it is ours."""
        verbose = self.session.verbose
        try:
            result = self.transport.receive(self._recv_buffer, timeout)
        except OSError as exc:
            if verbose:
                print(f"Error receiving packet: {exc}", file=sys.stderr)
            return
        if result is None:
            return

        nbytes, source = result
        parsed = parse_echo_reply(
            self._recv_buffer,
            nbytes,
            self.session.identifier,
            self.history,
            self.session.timing,
            self._clock(),
        )
        if parsed is None:
            return  # Another process's reply
        if isinstance(parsed, Rejected):
            if verbose:
                print(parsed.describe(source), file=sys.stderr)
            return

        self._record_reply(parsed, source)

    def _record_reply(self, reply: EchoReply, source: str) -> None:
        line = f"{reply.length} bytes from {source}: icmp_seq={reply.sequence}"
        if reply.triptime is not None:
            line += f" time={reply.triptime} ms"

        # received never exceeds transmitted
        reply.duplicate = (
            self.history.mark_answered(reply.sequence)
            or self.stats.received >= self.stats.transmitted
        )
        if reply.duplicate:
            self.stats.record_duplicate()
            if self.session.verbose:
                print(f"duplicate reply: {line}", file=sys.stderr)
            return

        self.stats.record_reply(reply.triptime)
        print(line)


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return number


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="my_ping",
        description="Ping: send ICMP ECHO_REQUEST packets to a network host.",
    )
    parser.add_argument(
        "-v",
        dest="verbose",
        action="store_true",
        default=False,
        help="Verbose output: report ignored packets and socket errors.",
    )
    parser.add_argument(
        "host",
        help="Hostname or IPv4 address of the target host.",
    )
    parser.add_argument(
        "datalen",
        nargs="?",
        type=_non_negative_int,
        default=DEFAULT_DATALEN,
        help="Size of the data portion (default: %(default)s).",
    )
    parser.add_argument(
        "npackets",
        nargs="?",
        type=_non_negative_int,
        default=0,
        help="Number of replies to wait for (default: unlimited).",
    )
    return parser.parse_args(argv)


def ping(host: str, datalen: int = DEFAULT_DATALEN, npackets: int = 0,
         verbose: bool = False) -> int:
    """Run a ping session against *host* and return the exit code."""
    try:
        session = EchoSession.for_host(host, datalen, npackets, verbose)
        transport = RawSocketTransport.open(RECV_TIMEOUT)
    except (PingError, ValueError) as exc:
        print(f"my_ping: {exc}", file=sys.stderr)
        return 1

    PingEngine(session, transport).run()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for my_ping."""
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        return 0 if not exc.code else 1

    try:
        return ping(
            host=args.host,
            datalen=args.datalen,
            npackets=args.npackets,
            verbose=args.verbose,
        )
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
