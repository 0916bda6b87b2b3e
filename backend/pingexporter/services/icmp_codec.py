"""
ICMP echo codec.
Builds echo requests and parses replies (and the ICMP errors that quote them)
for IPv4 and IPv6, independent of any socket.
"""
import struct
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple, Optional

from pingexporter.errors import MalformedPacket

# ICMP header: type, code, checksum, identifier, sequence
ICMP_HEADER_FORMAT = "!BBHHH"
ICMP_HEADER_SIZE = struct.calcsize(ICMP_HEADER_FORMAT)

ICMPV4_ECHO_REPLY = 0
ICMPV4_DEST_UNREACH = 3
ICMPV4_ECHO_REQUEST = 8
ICMPV4_TIME_EXCEEDED = 11

ICMPV6_DEST_UNREACH = 1
ICMPV6_TIME_EXCEEDED = 3
ICMPV6_ECHO_REQUEST = 128
ICMPV6_ECHO_REPLY = 129

IPV6_HEADER_SIZE = 40
IPPROTO_ICMP = 1
IPPROTO_ICMPV6 = 58


class PingIdentity(NamedTuple):
    identifier: int
    sequence: int


class ReplyKind(str, Enum):
    ECHO_REPLY = "echo_reply"
    ECHO_REQUEST = "echo_request"
    DESTINATION_UNREACHABLE = "destination_unreachable"
    TIME_EXCEEDED = "time_exceeded"
    OTHER = "other"


@dataclass(frozen=True)
class DecodedReply:
    identity: Optional[PingIdentity]
    kind: ReplyKind
    type: int
    code: int

    @property
    def is_answer(self) -> bool:
        """Whether this message can resolve a waiting probe."""
        return self.kind == ReplyKind.ECHO_REPLY or self.is_error

    @property
    def is_error(self) -> bool:
        return self.kind in (ReplyKind.DESTINATION_UNREACHABLE, ReplyKind.TIME_EXCEEDED)


ECHO_REQUEST_TYPES = {4: ICMPV4_ECHO_REQUEST, 6: ICMPV6_ECHO_REQUEST}

REPLY_KINDS = {
    4: {
        ICMPV4_ECHO_REPLY: ReplyKind.ECHO_REPLY,
        ICMPV4_ECHO_REQUEST: ReplyKind.ECHO_REQUEST,
        ICMPV4_DEST_UNREACH: ReplyKind.DESTINATION_UNREACHABLE,
        ICMPV4_TIME_EXCEEDED: ReplyKind.TIME_EXCEEDED,
    },
    6: {
        ICMPV6_ECHO_REPLY: ReplyKind.ECHO_REPLY,
        ICMPV6_ECHO_REQUEST: ReplyKind.ECHO_REQUEST,
        ICMPV6_DEST_UNREACH: ReplyKind.DESTINATION_UNREACHABLE,
        ICMPV6_TIME_EXCEEDED: ReplyKind.TIME_EXCEEDED,
    },
}


def _check_family(family: int) -> None:
    if family not in ECHO_REQUEST_TYPES:
        raise ValueError(f"unsupported IP family: {family}")


def checksum(data: bytes) -> int:
    """RFC 1071 one's-complement sum of 16-bit words."""
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def encode_message(icmp_type: int, code: int, identity: PingIdentity,
                   payload: bytes, family: int) -> bytes:
    """Build an ICMP echo-style message. IPv6 checksums are left to the kernel."""
    _check_family(family)
    header = struct.pack(ICMP_HEADER_FORMAT, icmp_type, code, 0,
                         identity.identifier & 0xFFFF, identity.sequence & 0xFFFF)
    if family == 6:
        return header + payload
    csum = checksum(header + payload)
    return header[:2] + struct.pack("!H", csum) + header[4:] + payload


def encode_echo_request(identity: PingIdentity, payload: bytes, family: int) -> bytes:
    _check_family(family)
    return encode_message(ECHO_REQUEST_TYPES[family], 0, identity, payload, family)


def _strip_ipv4_header(data: bytes) -> bytes:
    if len(data) < 20:
        raise MalformedPacket(f"truncated IPv4 header ({len(data)} bytes)")
    version, ihl = data[0] >> 4, (data[0] & 0x0F) * 4
    if version != 4 or ihl < 20 or len(data) < ihl:
        raise MalformedPacket(f"bad IPv4 header (version={version}, ihl={ihl})")
    return data[ihl:]


def _quoted_identity(inner: bytes, family: int) -> Optional[PingIdentity]:
    """Identity of the echo request quoted inside an ICMP error, if it was one."""
    if family == 4:
        if len(inner) < 20:
            return None
        ihl = (inner[0] & 0x0F) * 4
        if inner[9] != IPPROTO_ICMP or len(inner) < ihl + ICMP_HEADER_SIZE:
            return None
        icmp = inner[ihl:]
    else:
        if len(inner) < IPV6_HEADER_SIZE + ICMP_HEADER_SIZE or inner[6] != IPPROTO_ICMPV6:
            return None
        icmp = inner[IPV6_HEADER_SIZE:]
    icmp_type, _, _, ident, seq = struct.unpack(ICMP_HEADER_FORMAT, icmp[:ICMP_HEADER_SIZE])
    if icmp_type != ECHO_REQUEST_TYPES[family]:
        return None
    return PingIdentity(ident, seq)


def decode_reply(data: bytes, family: int, has_ip_header: bool = False) -> DecodedReply:
    """
    Decode one datagram read from an ICMP socket.

    has_ip_header is set for raw IPv4 sockets, which deliver the IP header and
    whose replies get their checksum verified here. Datagram sockets (and raw
    IPv6 sockets) hand over the bare ICMP message with a kernel-checked
    checksum.
    """
    _check_family(family)
    icmp = _strip_ipv4_header(data) if has_ip_header and family == 4 else data
    if len(icmp) < ICMP_HEADER_SIZE:
        raise MalformedPacket(f"truncated ICMP message ({len(icmp)} bytes)")

    icmp_type, code, _, ident, seq = struct.unpack(ICMP_HEADER_FORMAT, icmp[:ICMP_HEADER_SIZE])
    kind = REPLY_KINDS[family].get(icmp_type, ReplyKind.OTHER)

    if kind in (ReplyKind.ECHO_REPLY, ReplyKind.ECHO_REQUEST):
        identity = PingIdentity(ident, seq)
    elif kind == ReplyKind.OTHER:
        identity = None
    else:
        # errors carry 4 unused bytes, then the offending packet's headers
        identity = _quoted_identity(icmp[ICMP_HEADER_SIZE:], family)
        if identity is None:
            kind = ReplyKind.OTHER

    if has_ip_header and family == 4 and checksum(icmp) != 0:
        raise MalformedPacket(
            f"bad ICMP checksum (type={icmp_type})",
            identity=identity if kind != ReplyKind.ECHO_REQUEST else None,
        )

    return DecodedReply(identity=identity, kind=kind, type=icmp_type, code=code)
