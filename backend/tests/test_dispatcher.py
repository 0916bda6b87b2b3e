# tests/test_dispatcher.py
import asyncio
import logging
import struct

import pytest

from pingexporter.schemas.config_file import ConfigFile
from pingexporter.services.dispatcher import ProbeDispatcher
from pingexporter.services.icmp_codec import ICMPV4_ECHO_REPLY, PingIdentity, encode_message
from pingexporter.services.metrics import MetricsAggregator
from pingexporter.services.probe_session import SessionState
from pingexporter.services.socket_pool import SocketPool
from pingexporter.services.target_resolver import resolve_targets


@pytest.fixture
async def run_dispatcher(socket_factory):
    started = []

    def _run(targets):
        pool = SocketPool(socket_factory=socket_factory)
        aggregator = MetricsAggregator()
        dispatcher = ProbeDispatcher(targets, pool, aggregator)
        dispatcher.start()
        started.append((dispatcher, pool))
        return dispatcher, aggregator

    yield _run
    for dispatcher, pool in started:
        dispatcher.shutdown()
        pool.close()
    # let cancelled probe tasks finish before the loop goes away
    await asyncio.sleep(0)


async def test_first_probe_runs_immediately_for_every_target(run_dispatcher):
    config = ConfigFile.model_validate({
        "targets": ["8.8.8.8", {"target": "8.8.4.4", "netns": None, "interval": 5, "timeout": 1}],
    })
    targets = resolve_targets(config, {"interval": 5.0, "timeout": 10.0})
    assert [(t.interval, t.timeout) for t in targets] == [(5.0, 10.0), (5.0, 1.0)]
    dispatcher, aggregator = run_dispatcher(targets)

    await asyncio.sleep(0.3)

    assert [s.state for s in dispatcher.sessions] == [SessionState.RUNNING] * 2
    for target in targets:
        total, successful, _ = aggregator.get(target).read()
        assert total >= 1
        assert successful <= total
    # both default-scoped targets share one socket
    assert dispatcher.pool.opened == 1


async def test_unanswered_target_keeps_counting(run_dispatcher, socket_factory, make_target):
    socket_factory.responder = None
    target = make_target("192.0.2.50", interval=0.1, timeout=0.05)
    _, aggregator = run_dispatcher([target])

    await asyncio.sleep(0.6)

    total, successful, wait_sum = aggregator.get(target).read()
    assert total >= 2
    assert successful == 0
    assert wait_sum == 0.0


async def test_degraded_target_does_not_stop_the_others(run_dispatcher, make_target, caplog):
    caplog.set_level(logging.INFO)
    healthy = make_target("192.0.2.1", index=0, interval=0.1)
    missing = make_target("192.0.2.2", index=1, netns="ghost", interval=0.1)
    dispatcher, aggregator = run_dispatcher([healthy, missing])

    await asyncio.sleep(0.35)

    assert [s.state for s in dispatcher.degraded] == [SessionState.DEGRADED]
    assert dispatcher.degraded[0].target == missing
    assert aggregator.get(missing).read() == (0, 0, 0.0)
    assert aggregator.get(healthy).read()[1] >= 2
    assert "1 degraded" in caplog.text
    # the degraded target still has zero-valued counters on the metrics page
    assert 'total_pings{target="192.0.2.2",netns="ghost",id="1"} 0.0' in aggregator.render()


async def test_shutdown_stops_sessions_and_scheduler(run_dispatcher, make_target):
    dispatcher, aggregator = run_dispatcher([make_target(interval=0.05)])
    await asyncio.sleep(0.1)
    dispatcher.shutdown()
    frozen = aggregator.get(dispatcher.targets[0]).read()[0]

    await asyncio.sleep(0.2)

    assert not dispatcher.scheduler.running
    assert dispatcher.sessions[0].state == SessionState.STOPPED
    assert aggregator.get(dispatcher.targets[0]).read()[0] == frozen


def reply_to_earlier_send(lag):
    """Answer each send with the reply to the request sent `lag` sends before it."""
    sent = []

    def responder(data, address):
        sent.append(PingIdentity(*struct.unpack("!HH", data[4:8])))
        if len(sent) <= lag:
            return None
        return encode_message(ICMPV4_ECHO_REPLY, 0, sent[-1 - lag], b"", 4)
    return responder


async def test_cadence_holds_when_timeout_exceeds_interval(run_dispatcher, socket_factory, make_target, caplog):
    caplog.set_level(logging.WARNING)
    socket_factory.responder = None
    target = make_target("192.0.2.60", interval=0.1, timeout=0.3)
    dispatcher, aggregator = run_dispatcher([target])

    await asyncio.sleep(1.05)

    sends = len(socket_factory.created[0].sent)
    assert sends >= 8
    total, successful, _ = aggregator.get(target).read()
    assert total >= 5
    assert successful == 0
    assert dispatcher.sessions[0].inflight_count >= 2
    assert "maximum number of running instances" not in caplog.text


async def test_reply_after_timeout_is_credited_to_no_probe(run_dispatcher, socket_factory, make_target):
    # the reply for send k arrives with send k+4, after k already timed out
    socket_factory.responder = reply_to_earlier_send(4)
    target = make_target("192.0.2.61", interval=0.1, timeout=0.25)
    dispatcher, aggregator = run_dispatcher([target])

    await asyncio.sleep(0.85)

    total, successful, wait_sum = aggregator.get(target).read()
    assert total >= 4
    assert successful == 0
    assert wait_sum == 0.0
    assert dispatcher.sessions[0].handle.discarded >= 3


async def test_overlapping_probes_are_credited_to_their_own_sequence(run_dispatcher, socket_factory, make_target):
    # the reply for send k arrives with send k+1, while k is still waiting
    socket_factory.responder = reply_to_earlier_send(1)
    target = make_target("192.0.2.62", interval=0.1, timeout=0.25)
    dispatcher, aggregator = run_dispatcher([target])

    await asyncio.sleep(0.75)

    total, successful, wait_sum = aggregator.get(target).read()
    assert successful >= 4
    assert successful <= total
    # each rtt spans one interval, not the near-zero gap since the newer send
    assert wait_sum / successful > 0.05
    assert dispatcher.sessions[0].handle.discarded == 0


async def test_shutdown_with_probes_in_flight_logs_no_errors(run_dispatcher, socket_factory, make_target, caplog):
    caplog.set_level(logging.INFO)
    socket_factory.responder = None
    target = make_target("192.0.2.63", interval=0.1, timeout=5.0)
    dispatcher, aggregator = run_dispatcher([target])
    await asyncio.sleep(0.35)
    session = dispatcher.sessions[0]
    assert session.inflight_count >= 2

    dispatcher.shutdown()
    dispatcher.pool.close()
    await asyncio.sleep(0.05)

    assert session.inflight_count == 0
    assert aggregator.get(target).read() == (0, 0, 0.0)
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
