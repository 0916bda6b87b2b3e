"""
Probe Dispatcher
Starts one ProbeSession per resolved target and drives each on its own
APScheduler interval job. Sessions never wait on each other; the only shared
point is the socket demultiplexer.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from pingexporter.schemas.target import ResolvedTarget
from pingexporter.services.metrics import MetricsAggregator
from pingexporter.services.probe_session import ProbeSession, SessionState
from pingexporter.services.socket_pool import SocketPool

logger = logging.getLogger(__name__)


class ProbeDispatcher:
    def __init__(self, targets: List[ResolvedTarget], pool: SocketPool,
                 aggregator: MetricsAggregator,
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.targets = list(targets)
        self.pool = pool
        self.aggregator = aggregator
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.sessions: List[ProbeSession] = []

    @property
    def degraded(self) -> List[ProbeSession]:
        return [s for s in self.sessions if s.state == SessionState.DEGRADED]

    def start(self) -> None:
        """Must be called from within the running event loop."""
        now = datetime.now(timezone.utc)
        for target in self.targets:
            self.aggregator.register(target)
            session = ProbeSession(target, self.pool, self.aggregator)
            self.sessions.append(session)
            if not session.initialize():
                continue
            # launch() only starts the probe task, so runs never overlap and the
            # send cadence holds even when timeout exceeds interval
            self.scheduler.add_job(
                session.launch,
                "interval",
                seconds=target.interval,
                id=f"probe-{target.index}",
                name=f"probe {target.label}",
                max_instances=1,
                coalesce=True,
                next_run_time=now,
            )
            logger.info(
                f"Probing {target.label} every {target.interval:g}s "
                f"(timeout {target.timeout:g}s, {target.socket_kind.value})"
            )

        self.scheduler.start()
        running = len(self.sessions) - len(self.degraded)
        logger.info(f"Dispatcher started: {running} session(s) running, "
                    f"{len(self.degraded)} degraded, {len(self.pool)} socket(s)")
        for session in self.degraded:
            logger.warning(f"Target {session.target.label} degraded: {session.error}")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        for session in self.sessions:
            session.stop()
        logger.info("Dispatcher stopped")
