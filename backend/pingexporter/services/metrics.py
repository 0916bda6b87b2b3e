"""
Metrics Aggregator
Per-target ping counters and their Prometheus text exposition.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import UntypedMetricFamily
from prometheus_client.registry import Collector

from pingexporter.schemas.target import ResolvedTarget
from pingexporter.services.probe_outcome import OutcomeKind, ProbeOutcome

logger = logging.getLogger(__name__)

LABELS = ["target", "netns", "id"]


@dataclass
class TargetMetrics:
    """Counters for one target. Only its own session writes them."""
    total: int = 0
    successful: int = 0
    wait_sum_seconds: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, outcome: ProbeOutcome) -> None:
        with self._lock:
            self.total += 1
            if outcome.kind == OutcomeKind.SUCCESS:
                self.successful += 1
                self.wait_sum_seconds += outcome.rtt

    def read(self) -> Tuple[int, int, float]:
        with self._lock:
            return self.total, self.successful, self.wait_sum_seconds


class MetricsAggregator:
    def __init__(self):
        self._targets: Dict[int, Tuple[ResolvedTarget, TargetMetrics]] = {}
        self.registry = CollectorRegistry(auto_describe=True)
        self.registry.register(PingCollector(self))

    def register(self, target: ResolvedTarget) -> TargetMetrics:
        """Make the target visible (with zero counters) before its first probe."""
        entry = self._targets.get(target.index)
        if entry is None:
            entry = (target, TargetMetrics())
            self._targets[target.index] = entry
        return entry[1]

    def record_outcome(self, target: ResolvedTarget, outcome: ProbeOutcome) -> None:
        self.register(target).record(outcome)

    def get(self, target: ResolvedTarget) -> TargetMetrics:
        return self._targets[target.index][1]

    def snapshot(self) -> List[Tuple[ResolvedTarget, Tuple[int, int, float]]]:
        # list() first: register() may add entries while a scrape iterates
        return [(target, metrics.read()) for target, metrics in list(self._targets.values())]

    def render(self) -> str:
        return generate_latest(self.registry).decode("utf-8")


class PingCollector(Collector):
    """Exposes the aggregator as total_pings / successful_pings / successful_ping_wait_sum."""

    def __init__(self, aggregator: MetricsAggregator):
        self.aggregator = aggregator

    def collect(self) -> Iterator[UntypedMetricFamily]:
        total = UntypedMetricFamily("total_pings", "Echo requests sent", labels=LABELS)
        successful = UntypedMetricFamily("successful_pings", "Echo replies received in time", labels=LABELS)
        wait_sum = UntypedMetricFamily(
            "successful_ping_wait_sum", "Sum of successful round-trip times in seconds", labels=LABELS)
        for target, (n_total, n_ok, rtt_sum) in self.aggregator.snapshot():
            labels = [str(target.address), target.netns or "", str(target.index)]
            total.add_metric(labels, n_total)
            successful.add_metric(labels, n_ok)
            wait_sum.add_metric(labels, rtt_sum)
        yield total
        yield successful
        yield wait_sum
