"""Tests for command dispatch: allow-list, retained filter, global cooldown."""

import asyncio
import threading

from register_table import CommandDefinition
from services.command_dispatcher import CommandDispatcher, CooldownGate, DispatchStatus

COMMANDS = [
    CommandDefinition(identifier="start_engine", coil=0),
    CommandDefinition(identifier="stop_engine", coil=1),
    CommandDefinition(identifier="mb_close", coil=4, enabled=False),
]


class RecordingWriter:
    def __init__(self, fail=False):
        self.fail = fail
        self.writes = []

    async def write_coil(self, address, value):
        self.writes.append((address, value))
        if self.fail:
            raise ConnectionError("FC05 timeout")


def _dispatcher(writer, cooldown=5.0):
    return CommandDispatcher(writer, COMMANDS, cooldown=cooldown, clock=lambda: 0.0)


class TestDispatch:
    def test_accepted_writes_once(self):
        writer = RecordingWriter()
        result = asyncio.run(_dispatcher(writer).dispatch("start_engine", now=100.0))
        assert result.accepted
        assert result.coil == 0
        assert writer.writes == [(0, True)]

    def test_second_command_within_cooldown_skipped(self):
        writer = RecordingWriter()
        d = _dispatcher(writer, cooldown=5.0)

        async def run():
            first = await d.dispatch("start_engine", now=100.0)
            second = await d.dispatch("stop_engine", now=100.1)
            return first, second

        first, second = asyncio.run(run())
        assert first.accepted
        assert second.status == DispatchStatus.COOLDOWN
        assert 4.8 < second.retry_after <= 4.9 + 1e-9
        assert writer.writes == [(0, True)]

    def test_after_cooldown_accepted_again(self):
        writer = RecordingWriter()
        d = _dispatcher(writer, cooldown=5.0)

        async def run():
            await d.dispatch("start_engine", now=100.0)
            return await d.dispatch("stop_engine", now=105.0)

        assert asyncio.run(run()).accepted
        assert writer.writes == [(0, True), (1, True)]

    def test_retained_never_dispatches(self):
        writer = RecordingWriter()
        d = _dispatcher(writer)
        result = asyncio.run(d.dispatch("start_engine", retained=True, now=100.0))
        assert result.status == DispatchStatus.RETAINED
        assert writer.writes == []
        # a retained message does not consume the cooldown
        assert asyncio.run(d.dispatch("start_engine", now=100.0)).accepted

    def test_retained_rejected_inside_cooldown_too(self):
        writer = RecordingWriter()
        d = _dispatcher(writer)

        async def run():
            await d.dispatch("start_engine", now=100.0)
            return await d.dispatch("stop_engine", retained=True, now=200.0)

        assert asyncio.run(run()).status == DispatchStatus.RETAINED
        assert writer.writes == [(0, True)]

    def test_unknown_and_disabled(self):
        writer = RecordingWriter()
        d = _dispatcher(writer)
        assert asyncio.run(d.dispatch("launch_rocket")).status == DispatchStatus.UNKNOWN
        assert asyncio.run(d.dispatch("mb_close")).status == DispatchStatus.DISABLED
        assert writer.writes == []

    def test_write_failure_not_retried(self):
        writer = RecordingWriter(fail=True)
        d = _dispatcher(writer)
        result = asyncio.run(d.dispatch("start_engine", now=100.0))
        assert result.status == DispatchStatus.WRITE_FAILED
        assert "FC05 timeout" in result.message
        assert writer.writes == [(0, True)]
        # cooldown stays consumed after a failed write
        assert asyncio.run(d.dispatch("start_engine", now=101.0)).status == DispatchStatus.COOLDOWN

    def test_enabled_identifiers(self):
        assert _dispatcher(RecordingWriter()).enabled_identifiers == ["start_engine", "stop_engine"]


class TestCooldownGate:
    def test_first_acquire_always_succeeds(self):
        gate = CooldownGate(5.0, clock=lambda: 0.0)
        assert gate.try_acquire() == (True, 0.0)

    def test_concurrent_acquire_only_one_wins(self):
        gate = CooldownGate(60.0, clock=lambda: 1000.0)
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(gate.try_acquire()[0])

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
