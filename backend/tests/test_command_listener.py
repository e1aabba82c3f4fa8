"""Tests for command channel parsing and queued dispatch."""

import asyncio
import json

from services.command_dispatcher import CommandDispatcher, DispatchStatus
from services.command_listener import CommandListener, parse_command_message

PREFIX = "deif:gc1f2"


class TestParseCommandMessage:
    def test_plain_payload(self):
        assert parse_command_message("deif:gc1f2:cmd:start_engine", "go", PREFIX) == ("start_engine", False)

    def test_bytes(self):
        assert parse_command_message(b"deif:gc1f2:cmd:alarm_ack", b"", PREFIX) == ("alarm_ack", False)

    def test_retained_flag(self):
        payload = json.dumps({"retained": True})
        assert parse_command_message("deif:gc1f2:cmd:gb_open", payload, PREFIX) == ("gb_open", True)

    def test_json_without_flag(self):
        assert parse_command_message("deif:gc1f2:cmd:gb_open", "{}", PREFIX) == ("gb_open", False)

    def test_json_non_object(self):
        assert parse_command_message("deif:gc1f2:cmd:gb_open", "[1, 2]", PREFIX) == ("gb_open", False)

    def test_other_channel(self):
        assert parse_command_message("deif:gc1f2:state", "{}", PREFIX) is None
        assert parse_command_message("other:cmd:start_engine", "", PREFIX) is None

    def test_empty_identifier(self):
        assert parse_command_message("deif:gc1f2:cmd:", "", PREFIX) is None


class TestCommandListener:
    def test_pattern(self, fake_redis, reader, table):
        dispatcher = CommandDispatcher(reader, table.commands, cooldown=5.0)
        listener = CommandListener(fake_redis, dispatcher, prefix=PREFIX)
        assert listener.pattern == "deif:gc1f2:cmd:*"

    def test_worker_dispatches_in_order(self, fake_redis, reader, table):
        clock = iter([0.0, 10.0, 20.0])
        dispatcher = CommandDispatcher(
            reader, table.commands, cooldown=5.0, clock=lambda: next(clock),
        )
        listener = CommandListener(fake_redis, dispatcher, prefix=PREFIX)

        async def run():
            worker = asyncio.create_task(listener._worker())
            listener.queue.put_nowait(("start_engine", False))
            listener.queue.put_nowait(("stop_engine", True))
            listener.queue.put_nowait(("alarm_ack", False))
            await asyncio.wait_for(listener.queue.join(), timeout=1.0)
            worker.cancel()

        asyncio.run(run())
        start = table.command_map["start_engine"].coil
        ack = table.command_map["alarm_ack"].coil
        assert reader.writes == [(start, True), (ack, True)]

    def test_handle_returns_result(self, fake_redis, reader, table):
        dispatcher = CommandDispatcher(reader, table.commands, cooldown=5.0)
        listener = CommandListener(fake_redis, dispatcher, prefix=PREFIX)
        result = asyncio.run(listener.handle("mb_close", False))
        assert result.status == DispatchStatus.DISABLED
        assert reader.writes == []


class TestSubscribeLoop:
    def _listener(self, fake_redis, reader, table):
        dispatcher = CommandDispatcher(reader, table.commands, cooldown=5.0)
        return CommandListener(fake_redis, dispatcher, prefix=PREFIX)

    def test_message_reaches_coil(self, fake_redis, reader, table):
        listener = self._listener(fake_redis, reader, table)

        async def run():
            task = asyncio.create_task(listener.start())
            await asyncio.sleep(0.01)
            fake_redis.last_pubsub.messages.put_nowait({
                "type": "pmessage",
                "pattern": listener.pattern.encode(),
                "channel": b"deif:gc1f2:cmd:start_engine",
                "data": b"",
            })
            await asyncio.sleep(0.01)
            await listener.stop()
            await asyncio.wait([task], timeout=1.0)

        asyncio.run(run())
        assert reader.writes == [(table.command_map["start_engine"].coil, True)]

    def test_stop_unblocks_idle_listen(self, fake_redis, reader, table):
        listener = self._listener(fake_redis, reader, table)

        async def run():
            task = asyncio.create_task(listener.start())
            await asyncio.sleep(0.01)
            assert fake_redis.last_pubsub.patterns == ["deif:gc1f2:cmd:*"]
            await listener.stop()
            done, _ = await asyncio.wait([task], timeout=1.0)
            return task, done

        task, done = asyncio.run(run())
        assert task in done
        assert task.cancelled()
        assert fake_redis.last_pubsub.closed
        assert fake_redis.last_pubsub.patterns == []
