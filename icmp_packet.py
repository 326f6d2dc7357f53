"""
icmp_packet.py - ICMP Echo Request/Reply encoding and decoding.

Builds Echo Request packets with an embedded send timestamp and validates
the raw IP datagrams read back from a raw ICMP socket.

ICMP Echo layout (RFC 792)::

     0               8               16                              31
    +---------------+---------------+-------------------------------+
    |     Type      |     Code      |           Checksum            |
    +---------------+---------------+-------------------------------+
    |           Identifier          |        Sequence Number        |
    +-------------------------------+-------------------------------+
    |  timestamp (seconds, microseconds), then filler bytes ...     |
    +---------------------------------------------------------------+
"""

import enum
import struct
from dataclasses import dataclass

ICMP_ECHO_REPLY = 0
ICMP_ECHO_REQUEST = 8

ICMP_HEADER = struct.Struct("!BBHHH")
ICMP_HEADER_SIZE = ICMP_HEADER.size      # 8 bytes
TIMESTAMP = struct.Struct("!qq")         # seconds, microseconds
TIMESTAMP_SIZE = TIMESTAMP.size          # 16 bytes, same as a 64-bit timeval
MAX_PACKET = 4096
HISTORY_SIZE = 128

ICMP_TYPE_NAMES = {
    0: "Echo Reply",
    3: "Destination Unreachable",
    4: "Source Quench",
    5: "Redirect",
    8: "Echo Request",
    11: "Time Exceeded",
    12: "Parameter Problem",
}


class PacketTooLarge(ValueError):
    """Raised when ``datalen`` plus the ICMP header exceeds :data:`MAX_PACKET`."""


def checksum(data: bytes) -> int:
    """Compute the Internet checksum (RFC 1071) over *data*.

    16-bit words are summed in network byte order, an odd trailing byte is
    padded with zero, carries are folded back in, and the sum is
    complemented. The checksum field inside *data* must be zero when
    building a packet; over a packet with a valid checksum the result is 0.

    Args:
        data: Raw bytes to checksum. May be empty or of odd length.

    Returns:
        16-bit checksum as an integer.
    """
    if len(data) % 2 != 0:
        data = bytes(data) + b'\x00'

    total = 0
    for i in range(0, len(data), 2):
        total += (data[i] << 8) + data[i + 1]

    # Fold carries into 16 bits
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)

    return ~total & 0xFFFF


def verify_checksum(data: bytes) -> bool:
    """Return ``True`` if *data* carries a valid Internet checksum."""
    return checksum(data) == 0


def encode_timestamp(now: float) -> bytes:
    """Pack a wall-clock time as ``(seconds, microseconds)``."""
    seconds, micros = divmod(int(round(now * 1_000_000)), 1_000_000)
    return TIMESTAMP.pack(seconds, micros)


def triptime_ms(sent: bytes, now: float) -> int:
    """Return whole milliseconds elapsed between a packed timestamp and *now*.

    Args:
        sent: 16 bytes produced by :func:`encode_timestamp`.
        now:  Receive time in seconds since the epoch.

    Returns:
        Round-trip time in milliseconds, truncated.
    """
    sent_sec, sent_usec = TIMESTAMP.unpack_from(sent)
    recv_sec, recv_usec = TIMESTAMP.unpack(encode_timestamp(now))

    usec = recv_usec - sent_usec
    sec = recv_sec - sent_sec
    if usec < 0:
        sec -= 1
        usec += 1_000_000
    return sec * 1000 + usec // 1000


def build_echo_request(
    identifier: int,
    sequence: int,
    datalen: int,
    timing: bool,
    now: float,
) -> bytes:
    """Build one ICMP Echo Request packet.

    Args:
        identifier: Session identifier (16 bits).
        sequence:   Sequence number (16 bits).
        datalen:    Number of payload bytes after the 8-byte header.
        timing:     Embed *now* at the start of the payload when ``True``
                    and the payload is large enough.
        now:        Send time in seconds since the epoch.

    Returns:
        The ``datalen + 8`` byte packet with its checksum filled in.

    Raises:
        PacketTooLarge: Guard only; sessions validate the size once when
            they are created, so this does not fire in normal operation.
    """
    packsize = datalen + ICMP_HEADER_SIZE
    if packsize > MAX_PACKET:
        raise PacketTooLarge(f"packet size {packsize} exceeds {MAX_PACKET} bytes")

    packet = bytearray(packsize)
    ICMP_HEADER.pack_into(packet, 0, ICMP_ECHO_REQUEST, 0, 0, identifier, sequence)

    fill_from = ICMP_HEADER_SIZE
    if timing and datalen >= TIMESTAMP_SIZE:
        packet[ICMP_HEADER_SIZE:ICMP_HEADER_SIZE + TIMESTAMP_SIZE] = encode_timestamp(now)
        fill_from += TIMESTAMP_SIZE

    for i in range(fill_from, packsize):
        packet[i] = i & 0xFF

    struct.pack_into("!H", packet, 2, checksum(packet))
    return bytes(packet)


def request_timestamp(packet: bytes) -> bytes:
    """Return the timestamp region of a request built with timing enabled."""
    return packet[ICMP_HEADER_SIZE:ICMP_HEADER_SIZE + TIMESTAMP_SIZE]


class SendHistory:
    """Ring of recently sent requests, keyed by sequence number.

    Each slot remembers which sequence it holds, so a late reply whose slot
    was reused does not pick up another request's timestamp.
    """

    def __init__(self, size: int = HISTORY_SIZE) -> None:
        self._slots: list[tuple[int, bytes, bool] | None] = [None] * size
        self.count = 0

    def record(self, sequence: int, packet: bytes) -> None:
        self._slots[sequence % len(self._slots)] = (sequence, packet, False)
        self.count += 1

    def was_sent(self, sequence: int) -> bool:
        """Return ``True`` if *sequence* is one of the sequences sent so far.

        Sequences are the send count modulo 2**16, so a sequence that has
        left the ring still counts when it lies within the last ``count``
        sequence numbers.
        """
        if self.lookup(sequence) is not None:
            return True
        return (self.count - 1 - sequence) & 0xFFFF < self.count

    def lookup(self, sequence: int) -> bytes | None:
        slot = self._slots[sequence % len(self._slots)]
        if slot is None or slot[0] != sequence:
            return None
        return slot[1]

    def mark_answered(self, sequence: int) -> bool:
        """Flag *sequence* as answered.

        Returns:
            ``True`` if it had already been answered (a duplicate reply).
        """
        index = sequence % len(self._slots)
        slot = self._slots[index]
        if slot is None or slot[0] != sequence:
            return False
        seen = slot[2]
        self._slots[index] = (sequence, slot[1], True)
        return seen


class RejectReason(enum.Enum):
    TOO_SHORT = "too short"
    WRONG_TYPE = "wrong type"
    NOT_SENT = "not sent"


@dataclass
class Rejected:
    """An inbound packet that is not an Echo Reply worth looking at."""

    reason: RejectReason
    length: int
    icmp_type: int | None = None
    icmp_code: int | None = None
    sequence: int | None = None

    def describe(self, source: str) -> str:
        if self.reason is RejectReason.TOO_SHORT:
            return f"packet too short ({self.length} bytes) from {source}"
        if self.reason is RejectReason.NOT_SENT:
            return (
                f"{self.length} bytes from {source}: "
                f"icmp_seq={self.sequence} was never sent"
            )
        name = ICMP_TYPE_NAMES.get(self.icmp_type, "Unknown ICMP Type")
        return (
            f"{self.length} bytes from {source}: "
            f"icmp_type={self.icmp_type} ({name}) icmp_code={self.icmp_code}"
        )


@dataclass
class EchoReply:
    """An Echo Reply addressed to this session."""

    icmp_type: int
    icmp_code: int
    identifier: int
    sequence: int
    length: int
    triptime: int | None = None
    duplicate: bool = False


def parse_echo_reply(
    buffer: bytes,
    length: int,
    identifier: int,
    history: SendHistory,
    timing: bool,
    now: float,
) -> EchoReply | Rejected | None:
    """Validate a datagram read from a raw ICMP socket.

    The buffer starts with the IPv4 header, whose length is the low nibble
    of the first byte in 4-byte units.

    Args:
        buffer:     Receive buffer; only the first *length* bytes are used.
        length:     Number of bytes actually received.
        identifier: This session's identifier.
        history:    Requests sent so far, used for the send timestamp.
        timing:     Compute a round-trip time when ``True``.
        now:        Receive time in seconds since the epoch.

    Returns:
        An :class:`EchoReply` for replies to requests we sent, a
        :class:`Rejected` for short or non-reply packets and for replies to
        sequences never sent, or ``None`` for replies that belong to
        another process.
    """
    if length < 1:
        return Rejected(RejectReason.TOO_SHORT, length)

    ip_header_len = (buffer[0] & 0x0F) * 4
    if length < ip_header_len + ICMP_HEADER_SIZE:
        return Rejected(RejectReason.TOO_SHORT, length)

    icmp_type, icmp_code, _, packet_id, sequence = ICMP_HEADER.unpack_from(
        buffer, ip_header_len
    )
    if icmp_type != ICMP_ECHO_REPLY:
        return Rejected(RejectReason.WRONG_TYPE, length, icmp_type, icmp_code)

    if packet_id != identifier:
        return None

    if not history.was_sent(sequence):
        return Rejected(
            RejectReason.NOT_SENT, length, icmp_type, icmp_code, sequence
        )

    reply = EchoReply(icmp_type, icmp_code, packet_id, sequence, length)
    if timing:
        # No time for a request that has left the ring.
        sent = history.lookup(sequence)
        if sent is not None and len(sent) >= ICMP_HEADER_SIZE + TIMESTAMP_SIZE:
            reply.triptime = triptime_ms(request_timestamp(sent), now)
    return reply
