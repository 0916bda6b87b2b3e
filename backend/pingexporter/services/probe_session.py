"""
Probe Session
One per resolved target: owns the target's socket handle and runs one
send / await reply / record cycle per scheduled run, each in its own task.
"""
import asyncio
import logging
from enum import Enum
from typing import Optional, Set

from pingexporter.config import settings
from pingexporter.errors import SendError, SocketAcquisitionError
from pingexporter.schemas.target import ResolvedTarget
from pingexporter.services.icmp_codec import encode_echo_request
from pingexporter.services.metrics import MetricsAggregator
from pingexporter.services.probe_outcome import ProbeOutcome
from pingexporter.services.socket_pool import SocketHandle, SocketKey, SocketPool

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPED = "stopped"


def make_payload(size: int) -> bytes:
    return bytes(i & 0xFF for i in range(size))


class ProbeSession:
    def __init__(self, target: ResolvedTarget, pool: SocketPool, aggregator: MetricsAggregator,
                 payload_size: int = settings.PAYLOAD_SIZE):
        self.target = target
        self.pool = pool
        self.aggregator = aggregator
        self.state = SessionState.INITIALIZING
        self.error: Optional[str] = None
        self.handle: Optional[SocketHandle] = None
        self._payload = make_payload(payload_size)
        self._inflight: Set[asyncio.Task] = set()

    def initialize(self) -> bool:
        """Acquire the socket. A failure degrades the session for good."""
        key = SocketKey.for_target(self.target)
        try:
            self.handle = self.pool.acquire(key)
        except SocketAcquisitionError as e:
            self.state = SessionState.DEGRADED
            self.error = e.reason
            logger.error(f"Target {self.target.label}: {e}; session degraded until restart")
            return False
        self.state = SessionState.RUNNING
        return True

    def stop(self) -> None:
        self.state = SessionState.STOPPED
        for task in list(self._inflight):
            task.cancel()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def launch(self) -> None:
        """
        Scheduler entry point. Starts one probe as its own task and returns at
        once, so a probe still waiting for its reply never holds back the next
        send. Overlapping probes of one target get distinct identities.
        """
        if self.state != SessionState.RUNNING:
            return
        task = asyncio.create_task(self.probe_once())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def probe_once(self) -> Optional[ProbeOutcome]:
        """Send one echo request and record exactly one outcome for it."""
        if self.state != SessionState.RUNNING:
            return None

        handle = self.handle
        loop = asyncio.get_running_loop()
        identity = handle.allocate_identity()
        packet = encode_echo_request(identity, self._payload, self.target.family)
        waiter = handle.expect(identity)
        sent_at = loop.time()
        try:
            handle.send(packet, self.target.address, self.target.ttl)
        except SendError as e:
            handle.forget(identity)
            outcome = ProbeOutcome.send_error()
            logger.warning(f"Target {self.target.label}: {e}")
        else:
            try:
                reply, received_at = await asyncio.wait_for(waiter, self.target.timeout)
            except asyncio.CancelledError:
                handle.forget(identity)
                raise
            except asyncio.TimeoutError:
                saw_malformed = handle.forget(identity)
                outcome = ProbeOutcome.malformed_reply() if saw_malformed else ProbeOutcome.timeout()
                logger.debug(f"Target {self.target.label}: seq {identity.sequence} {outcome.kind.value}")
            else:
                handle.forget(identity)
                if reply.is_error:
                    outcome = ProbeOutcome.unreachable()
                    logger.debug(
                        f"Target {self.target.label}: seq {identity.sequence} "
                        f"{reply.kind.value} (code {reply.code})"
                    )
                else:
                    outcome = ProbeOutcome.success(received_at - sent_at)

        self.aggregator.record_outcome(self.target, outcome)
        return outcome
