"""
Orchestrator tests over real worker processes backed by the fake database.
"""

from __future__ import annotations

import asyncio
import logging
import signal

import pytest
from fake_db import DEFAULT_QUERIES, Slot, Ticket

from dbagent.config import Settings
from dbagent.domain.models import EOF, FailureReason, QueryFailure, RowShape
from dbagent.orchestrator import DBAgent, RouteTable
from dbagent.pool import PoolEmptyError

DSN = "fake://db"


def _agent(settings: Settings, command, routes, **overrides) -> DBAgent:
    options = {"dsn": DSN, "count": 3, "settings": settings, "worker_command": command}
    options.update(overrides)
    return DBAgent(DEFAULT_QUERIES, routes, **options)


async def _wait_until(predicate, timeout: float = 10.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


def test_route_table_register_and_resolve() -> None:
    def handler(payload, correlation_id):
        return None

    routes = RouteTable({"a": handler})
    routes.register("b", handler)

    assert "a" in routes and "b" in routes
    assert routes.resolve("b") is handler
    assert routes.unregister("a") is handler
    assert routes.resolve("a") is None
    assert len(routes) == 1


def test_query_before_start_raises(test_settings: Settings, fake_worker_command) -> None:
    agent = _agent(test_settings, fake_worker_command, {})

    with pytest.raises(PoolEmptyError):
        agent.query("one", "r")


@pytest.mark.asyncio
async def test_start_spawns_requested_worker_count(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {"r": recorder}) as agent:
        workers = agent.workers()

        assert len(workers) == 3
        assert len({handle.pid for handle in workers}) == 3
        assert all(handle.alive for handle in workers)
        assert all((handle.rss_bytes() or 0) > 0 for handle in workers)


@pytest.mark.asyncio
async def test_single_row_query_delivers_row_then_eof(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {"r": recorder}) as agent:
        agent.query("one", "r", correlation_id="first")
        await recorder.wait_for_eof()

    assert recorder.calls == [([1], "first"), (EOF, "first")]


@pytest.mark.asyncio
async def test_write_with_empty_result_delivers_eof_only(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {"r": recorder}) as agent:
        agent.query("delete_t", "r", 9)
        await recorder.wait_for_eof()

    assert recorder.calls == [(EOF, None)]


@pytest.mark.slow
@pytest.mark.asyncio
async def test_unknown_query_never_calls_handler(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {"r": recorder}) as agent:
        agent.query("does_not_exist", "r")
        await asyncio.sleep(1.0)

    assert recorder.calls == []


@pytest.mark.asyncio
async def test_back_to_back_requests_go_to_different_workers(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {"r": recorder}, count=2) as agent:
        first = agent.query("one", "r", correlation_id="a")
        second = agent.query("delete_t", "r", 1, correlation_id="b")
        await recorder.wait_for_eof(2)

    assert first is not second
    by_request = {
        key: [payload for payload, cid in recorder.calls if cid == key] for key in ("a", "b")
    }
    assert by_request == {"a": [[1], EOF], "b": [EOF]}


@pytest.mark.asyncio
async def test_rotation_wraps_after_every_worker_was_used(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {"r": recorder}) as agent:
        handles = [agent.query("one", "r", correlation_id=i) for i in range(4)]
        await recorder.wait_for_eof(4)

    assert len({h.handle_id for h in handles[:3]}) == 3
    assert handles[3] is handles[0]


@pytest.mark.asyncio
async def test_multi_row_stream_keeps_order_and_embedded_line_breaks(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {"r": recorder}, count=1) as agent:
        agent.query("users", "r", row_shape=RowShape.NAMED)
        await recorder.wait_for_eof()

    assert recorder.payloads == [
        {"id": 1, "name": "ada"},
        {"id": 2, "name": "grace"},
        {"id": 3, "name": "line\r\nbreak"},
        EOF,
    ]


@pytest.mark.asyncio
async def test_unregistered_route_is_dropped(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {"r": recorder}, count=1) as agent:
        agent.query("one", "nowhere", correlation_id="lost")
        agent.query("one", "r", correlation_id="kept")
        await recorder.wait_for_eof()

    assert recorder.calls == [([1], "kept"), (EOF, "kept")]


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_the_reader(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    def explode(payload, correlation_id):
        raise RuntimeError("handler bug")

    routes = {"bad": explode, "r": recorder}
    async with _agent(test_settings, fake_worker_command, routes, count=1) as agent:
        agent.query("users", "bad")
        agent.query("one", "r")
        await recorder.wait_for_eof()

    assert recorder.payloads == [[1], EOF]


@pytest.mark.asyncio
async def test_routes_registered_after_start_receive_responses(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    async with _agent(test_settings, fake_worker_command, {}, count=1) as agent:
        agent.register("late", recorder)
        agent.query("one", "late")
        await recorder.wait_for_eof()

    assert recorder.payloads == [[1], EOF]


@pytest.mark.asyncio
async def test_reported_failures_reach_the_handler(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    settings = test_settings.model_copy(update={"agent_report_failures": True})
    async with _agent(settings, fake_worker_command, {"r": recorder}, count=1) as agent:
        agent.query("broken", "r", correlation_id=5)
        await recorder.wait_for_eof()

    (failure, cid), (eof, _) = recorder.calls
    assert isinstance(failure, QueryFailure)
    assert failure.reason is FailureReason.EXECUTION_FAILED
    assert cid == 5
    assert eof == EOF


@pytest.mark.asyncio
async def test_worker_that_fails_startup_leaves_the_pool(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    agent = _agent(test_settings, fake_worker_command, {"r": recorder}, dsn="fake://refuse", count=2)
    await agent.start()
    try:
        await _wait_until(lambda: len(agent.pool) == 0)
        with pytest.raises(PoolEmptyError):
            agent.query("one", "r")
    finally:
        await agent.stop()


@pytest.mark.asyncio
async def test_missing_worker_executable_is_skipped(
    test_settings: Settings, recorder, tmp_path
) -> None:
    command = [str(tmp_path / "no-such-worker")]
    agent = _agent(test_settings, command, {"r": recorder})

    await agent.start()
    try:
        assert len(agent.pool) == 0
    finally:
        await agent.stop()


@pytest.mark.asyncio
async def test_stop_terminates_every_worker_and_empties_pool(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    agent = _agent(test_settings, fake_worker_command, {"r": recorder})
    await agent.start()
    handles = agent.workers()

    await agent.stop()

    assert len(agent.pool) == 0
    assert all(not handle.alive for handle in handles)
    assert agent._tasks == []


@pytest.mark.asyncio
async def test_stop_twice_is_harmless(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    agent = _agent(test_settings, fake_worker_command, {"r": recorder}, count=1)
    await agent.start()

    await agent.stop()
    await agent.stop()

    assert len(agent.pool) == 0


@pytest.mark.slow
@pytest.mark.asyncio
async def test_stop_escalates_to_sigkill_for_workers_ignoring_sigterm(
    test_settings: Settings, stubborn_worker_command, recorder
) -> None:
    settings = test_settings.model_copy(update={"agent_throttle_delay_seconds": 30.0})
    agent = _agent(settings, stubborn_worker_command, {"r": recorder}, count=1)
    await agent.start()
    handle = agent.query("users", "r", throttle=True)
    await _wait_until(lambda: len(recorder.calls) >= 1)

    await agent.stop(grace_seconds=0.5)

    assert handle.returncode == -signal.SIGKILL
    assert recorder.eof_count() == 0


@pytest.mark.asyncio
async def test_worker_stderr_is_relayed_to_the_log(
    test_settings: Settings, fake_worker_command, recorder, caplog
) -> None:
    caplog.set_level(logging.INFO, logger="dbagent.orchestrator")
    async with _agent(test_settings, fake_worker_command, {"r": recorder}, count=1, debug=True) as agent:
        pid = agent.workers()[0].pid
        agent.query("one", "r")
        await recorder.wait_for_eof()
        await _wait_until(lambda: "[WORKER READY]" in caplog.text)

    assert f"[WORKER {pid}]" in caplog.text


@pytest.mark.asyncio
async def test_structured_correlation_ids_come_back_unchanged(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    ticket, slot = Ticket(user=7, seq=1), Slot(batch="b", index=2)
    async with _agent(test_settings, fake_worker_command, {"r": recorder}, count=1) as agent:
        agent.query("one", "r", correlation_id=ticket)
        agent.query("delete_t", "r", 3, correlation_id=slot)
        await recorder.wait_for_eof(2)

    assert recorder.calls == [([1], ticket), (EOF, ticket), (EOF, slot)]
    assert type(recorder.calls[0][1]) is Ticket
    assert type(recorder.calls[2][1]) is Slot


@pytest.mark.parametrize("count", [0, -1])
def test_worker_count_below_one_is_rejected(
    test_settings: Settings, fake_worker_command, count: int
) -> None:
    with pytest.raises(ValueError, match="at least 1"):
        _agent(test_settings, fake_worker_command, {}, count=count)


@pytest.mark.slow
@pytest.mark.asyncio
async def test_busy_worker_drains_on_sigterm(
    test_settings: Settings, fake_worker_command, recorder
) -> None:
    settings = test_settings.model_copy(update={"agent_throttle_delay_seconds": 30.0})
    agent = _agent(settings, fake_worker_command, {"r": recorder}, count=1)
    await agent.start()
    handle = agent.query("users", "r", throttle=True)
    await _wait_until(lambda: len(recorder.calls) >= 1)

    await agent.stop(grace_seconds=3.0)

    assert handle.returncode == 0
    assert recorder.eof_count() == 0
