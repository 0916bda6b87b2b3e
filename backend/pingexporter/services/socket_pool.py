"""
Namespace-Scoped ICMP Socket Pool

One non-blocking ICMP socket per (netns, interface, socket kind, IP family),
created lazily and shared by every probe session with the same key.

Receive path:
  loop.add_reader(fd)  →  _on_readable() drains the socket  →  dispatch()
                                                                  ↓
                                   decode, look up the waiting inbox by identity,
                                   resolve its future (or discard the reply)

Sessions register their inbox with expect() before they send, so a reply can
never arrive ahead of the session that is waiting for it.
"""
import asyncio
import errno
import ipaddress
import logging
import random
import socket
from dataclasses import dataclass
from typing import Optional, Dict, Tuple, Callable, Union

from pingexporter.config import settings
from pingexporter.errors import MalformedPacket, SendError, SocketAcquisitionError
from pingexporter.schemas.target import ResolvedTarget, SocketKind
from pingexporter.services import netns
from pingexporter.services.icmp_codec import PingIdentity, decode_reply

logger = logging.getLogger(__name__)

SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)
IPV6_UNICAST_HOPS = getattr(socket, "IPV6_UNICAST_HOPS", 16)

# setsockopt value that restores the route's default TTL / hop limit
KERNEL_DEFAULT_TTL = -1


@dataclass(frozen=True)
class SocketKey:
    netns: Optional[str]
    interface: Optional[str]
    kind: SocketKind
    family: int

    @classmethod
    def for_target(cls, target: ResolvedTarget) -> "SocketKey":
        return cls(
            netns=target.netns,
            interface=target.interface,
            kind=target.socket_kind,
            family=target.family,
        )

    def __str__(self) -> str:
        return (f"{self.kind.value}/IPv{self.family} "
                f"netns={self.netns or '-'} interface={self.interface or '-'}")


@dataclass
class _Inbox:
    future: asyncio.Future
    malformed: bool = False


class SocketHandle:
    """An open ICMP socket plus the demultiplexer for its single receive path."""

    def __init__(self, key: SocketKey, sock, recv_buffer_size: int = settings.RECV_BUFFER_SIZE):
        self.key = key
        self.sock = sock
        self.has_ip_header = key.kind == SocketKind.RAW and key.family == 4
        self.discarded = 0
        self._recv_buffer_size = recv_buffer_size
        self._pending: Dict[PingIdentity, _Inbox] = {}
        self._ttl_applied = KERNEL_DEFAULT_TTL
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        if key.kind == SocketKind.DGRAM:
            # Linux rewrites the identifier of datagram echo requests to the bound "port"
            self.identifier = sock.getsockname()[1] & 0xFFFF
        else:
            self.identifier = random.getrandbits(16)
        self._sequence = random.getrandbits(16)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def allocate_identity(self) -> PingIdentity:
        for _ in range(0x10000):
            self._sequence = (self._sequence + 1) & 0xFFFF
            identity = PingIdentity(self.identifier, self._sequence)
            if identity not in self._pending:
                return identity
        raise SendError(f"no free ICMP sequence number on {self.key}")

    def expect(self, identity: PingIdentity) -> asyncio.Future:
        """Register a single-slot inbox; resolves to (DecodedReply, receive time)."""
        loop = asyncio.get_running_loop()
        self._attach(loop)
        future = loop.create_future()
        self._pending[identity] = _Inbox(future)
        return future

    def forget(self, identity: PingIdentity) -> bool:
        """Drop the inbox; returns whether a malformed reply for it was seen."""
        inbox = self._pending.pop(identity, None)
        return bool(inbox and inbox.malformed)

    def send(self, packet: bytes, address, ttl: Optional[int] = None) -> None:
        try:
            self._apply_ttl(ttl)
            self.sock.sendto(packet, (str(address), 0))
        except OSError as e:
            raise SendError(f"sendto {address} via {self.key} failed: {e}") from e

    def _apply_ttl(self, ttl: Optional[int]) -> None:
        # TTL is per send: sessions sharing this socket may want different values
        value = KERNEL_DEFAULT_TTL if ttl is None else ttl
        if value == self._ttl_applied:
            return
        if self.key.family == 4:
            self.sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, value)
        else:
            self.sock.setsockopt(socket.IPPROTO_IPV6, IPV6_UNICAST_HOPS, value)
        self._ttl_applied = value

    # ── receive path ─────────────────────────────────────────────────────────

    def _attach(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._loop is loop:
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.remove_reader(self.sock.fileno())
        loop.add_reader(self.sock.fileno(), self._on_readable)
        self._loop = loop

    def _on_readable(self) -> None:
        while True:
            try:
                data, _addr = self.sock.recvfrom(self._recv_buffer_size)
            except (BlockingIOError, InterruptedError):
                return
            except OSError as e:
                logger.warning(f"recv on {self.key} failed: {e}")
                return
            self.dispatch(data, self._loop.time())

    def dispatch(self, data: bytes, received_at: float) -> bool:
        """Hand one datagram to the inbox waiting for its identity."""
        try:
            reply = decode_reply(data, self.key.family, self.has_ip_header)
        except MalformedPacket as e:
            logger.debug(f"Discarding malformed packet on {self.key}: {e}")
            inbox = self._pending.get(e.identity) if e.identity else None
            if inbox is not None:
                inbox.malformed = True
            return False

        if not reply.is_answer:
            # raw sockets see all ICMP traffic of the namespace, our own requests included
            return False

        inbox = self._pending.get(reply.identity)
        if inbox is None or inbox.future.done():
            self.discarded += 1
            logger.debug(
                "No session waiting for %s (type=%d) on %s, discarded",
                tuple(reply.identity), reply.type, self.key,
            )
            return False
        inbox.future.set_result((reply, received_at))
        return True

    def close(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.remove_reader(self.sock.fileno())
        self._loop = None
        for inbox in self._pending.values():
            if not inbox.future.done():
                inbox.future.cancel()
        self._pending.clear()
        self.sock.close()


def _bind_address(interface: str) -> Optional[Tuple[Union[ipaddress.IPv4Address, ipaddress.IPv6Address], int]]:
    """
    Parse "ip", "ip:port" or "[v6addr]:port" into (address, port).
    Anything else is an interface name.
    """
    try:
        return ipaddress.ip_address(interface), 0
    except ValueError:
        pass
    host, sep, port = interface.rpartition(":")
    if not sep or not port.isdigit() or int(port) > 0xFFFF:
        return None
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        return ipaddress.ip_address(host), int(port)
    except ValueError:
        return None


def _describe(key: SocketKey, exc: OSError) -> str:
    if exc.errno == errno.ENOENT and key.netns:
        return f"network namespace {key.netns!r} not found"
    if exc.errno in (errno.EPERM, errno.EACCES):
        if key.kind == SocketKind.RAW:
            return f"permission denied ({exc.strerror}); raw sockets need CAP_NET_RAW"
        return f"permission denied ({exc.strerror}); check net.ipv4.ping_group_range"
    if exc.errno == errno.ENODEV:
        return f"interface {key.interface!r} not found"
    if exc.errno == errno.EADDRNOTAVAIL:
        return f"address {key.interface!r} is not assigned to any interface"
    return str(exc)


class SocketPool:
    """
    Process-wide cache of SocketHandles. Holds no per-target state, so any
    number of sessions may share it.
    """

    def __init__(self, socket_factory: Callable = socket.socket,
                 recv_buffer_size: int = settings.RECV_BUFFER_SIZE):
        self._socket_factory = socket_factory
        self._recv_buffer_size = recv_buffer_size
        self._handles: Dict[SocketKey, SocketHandle] = {}
        self.opened = 0

    def __len__(self) -> int:
        return len(self._handles)

    def acquire(self, key: SocketKey) -> SocketHandle:
        handle = self._handles.get(key)
        if handle is not None:
            return handle

        try:
            if key.netns:
                with netns.entered(key.netns):
                    sock = self._open(key)
            else:
                sock = self._open(key)
        except OSError as e:
            raise SocketAcquisitionError(key, _describe(key, e)) from e

        self.opened += 1
        handle = SocketHandle(key, sock, self._recv_buffer_size)
        self._handles[key] = handle
        logger.info(f"Opened ICMP socket {key} (identifier {handle.identifier})")
        return handle

    def _open(self, key: SocketKey):
        family = socket.AF_INET if key.family == 4 else socket.AF_INET6
        proto = socket.IPPROTO_ICMP if key.family == 4 else socket.IPPROTO_ICMPV6
        kind = socket.SOCK_DGRAM if key.kind == SocketKind.DGRAM else socket.SOCK_RAW

        sock = self._socket_factory(family, kind, proto)
        try:
            sock.setblocking(False)
            local: Optional[Tuple[str, int]] = None
            if key.interface:
                bind_to = _bind_address(key.interface)
                if bind_to is None:
                    sock.setsockopt(socket.SOL_SOCKET, SO_BINDTODEVICE, key.interface.encode())
                elif bind_to[0].version != key.family:
                    raise SocketAcquisitionError(
                        key, f"bind address {bind_to[0]} is not an IPv{key.family} address")
                else:
                    local = (str(bind_to[0]), bind_to[1])
            if local is None and key.kind == SocketKind.DGRAM:
                # binding port 0 makes the kernel pick this socket's echo identifier
                local = ("0.0.0.0", 0) if key.family == 4 else ("::", 0)
            if local is not None:
                sock.bind(local)
        except Exception:
            sock.close()
            raise
        return sock

    def close(self) -> None:
        for handle in self._handles.values():
            try:
                handle.close()
            except OSError as e:
                logger.warning(f"Error closing socket {handle.key}: {e}")
        self._handles.clear()
