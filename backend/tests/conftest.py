# tests/conftest.py
import errno
import socket
import struct

import pytest

from pingexporter.schemas.target import ResolvedTarget, SocketKind
from pingexporter.services import netns as netns_module
from pingexporter.services.icmp_codec import (
    ICMPV4_ECHO_REPLY, ICMPV6_ECHO_REPLY, PingIdentity, encode_message,
)

FAKE_IDENTIFIER = 4242


class FakeIcmpSocket:
    """
    Stands in for an ICMP socket. Sends are recorded (and optionally answered
    by a responder); received datagrams come from a real socketpair so the
    event loop reader fires exactly as it would for a kernel socket.
    """

    def __init__(self, family, kind, proto, netns=None):
        self.family = family
        self.kind = kind
        self.proto = proto
        self.netns = netns
        self.sent = []
        self.sockopts = []
        self.bound = None
        self.blocking = True
        self.closed = False
        self.fail_send = None
        self.responder = None
        self._rx, self._feed = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
        self._rx.setblocking(False)

    def setblocking(self, flag):
        self.blocking = flag

    def setsockopt(self, level, option, value):
        self.sockopts.append((level, option, value))

    def bind(self, address):
        self.bound = address

    def getsockname(self):
        if self.bound is None:
            return ("0.0.0.0", 0)
        return (self.bound[0], FAKE_IDENTIFIER)

    def fileno(self):
        return self._rx.fileno()

    def sendto(self, data, address):
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append((data, address))
        if self.responder is not None:
            reply = self.responder(data, address)
            if reply is not None:
                self.deliver(reply)
        return len(data)

    def recvfrom(self, bufsize):
        return self._rx.recv(bufsize), ("192.0.2.1", 0)

    def deliver(self, data: bytes):
        self._feed.send(data)

    def close(self):
        if not self.closed:
            self.closed = True
            self._rx.close()
            self._feed.close()


def echo_responder(data: bytes, address) -> bytes:
    """Answer an echo request the way the peer would (bare ICMP, datagram socket)."""
    icmp_type, _, _, ident, seq = struct.unpack("!BBHHH", data[:8])
    family = 6 if icmp_type == 128 else 4
    reply_type = ICMPV6_ECHO_REPLY if family == 6 else ICMPV4_ECHO_REPLY
    return encode_message(reply_type, 0, PingIdentity(ident, seq), data[8:], family)


def ipv4_header(payload_len: int, proto: int = 1, src: str = "192.0.2.1", dst: str = "192.0.2.2") -> bytes:
    return struct.pack(
        "!BBHHHBBH4s4s", 0x45, 0, 20 + payload_len, 0, 0, 64, proto, 0,
        socket.inet_aton(src), socket.inet_aton(dst),
    )


def ipv6_header(payload_len: int, next_header: int = 58) -> bytes:
    return (struct.pack("!IHBB", 6 << 28, payload_len, next_header, 64)
            + socket.inet_pton(socket.AF_INET6, "2001:db8::1")
            + socket.inet_pton(socket.AF_INET6, "2001:db8::2"))


class FakeNetns:
    """Replacement for pyroute2.netns tracking which namespace is current."""

    def __init__(self, existing=()):
        self.existing = set(existing)
        self.current = "root"
        self._stack = []
        self.entered = []

    def pushns(self):
        self._stack.append(self.current)

    def setns(self, name, flags=0):
        if name not in self.existing:
            raise OSError(errno.ENOENT, "netns not found", name)
        self.current = name
        self.entered.append(name)

    def popns(self):
        self.current = self._stack.pop()


@pytest.fixture
def fake_netns(monkeypatch):
    fake = FakeNetns(existing={"blue", "red"})
    monkeypatch.setattr(netns_module, "netns", fake)
    return fake


@pytest.fixture
def socket_factory(fake_netns):
    created = []

    def factory(family, kind, proto):
        sock = FakeIcmpSocket(family, kind, proto, netns=fake_netns.current)
        sock.responder = factory.responder
        created.append(sock)
        return sock

    factory.created = created
    factory.responder = echo_responder
    yield factory
    for sock in created:
        sock.close()


@pytest.fixture
def make_target():
    def _make(address="192.0.2.10", index=0, **overrides):
        fields = dict(
            index=index,
            address=address,
            interval=1.0,
            timeout=1.0,
            socket_kind=SocketKind.DGRAM,
        )
        fields.update(overrides)
        return ResolvedTarget(**fields)
    return _make
