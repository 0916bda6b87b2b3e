"""
Error taxonomy.

ConfigError is fatal and only raised before probing starts. Everything else is
scoped to a single target (acquisition) or a single probe (send, malformed).
"""
from typing import Optional


class PingExporterError(Exception):
    pass


class ConfigError(PingExporterError):
    """Malformed config file, flag value or target entry."""


class SocketAcquisitionError(PingExporterError):
    """A socket for a SocketKey could not be created (netns, permission, interface)."""

    def __init__(self, key, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"cannot open ICMP socket for {key}: {reason}")


class SendError(PingExporterError):
    """Transient failure sending an echo request."""


class MalformedPacket(PingExporterError):
    """A received datagram could not be decoded as ICMP."""

    def __init__(self, message: str, identity: Optional[tuple] = None):
        self.identity = identity
        super().__init__(message)
