"""Shared fixtures: bundled register table, in-memory reader and Redis fakes."""

import asyncio

import pytest

from register_table import load_register_table
from services.decoder import RegisterBlock
from services.modbus_poller import BaseReader


class FakeReader(BaseReader):
    """Serves words from dicts; records coil writes; can be told to fail."""

    def __init__(self, table, words=None):
        super().__init__(slave_id=1, timeout=0.1)
        self.table = table
        self.words = dict(words or {})
        self.fail_reads = False
        self.fail_writes = False
        self.writes = []
        self.disconnects = 0

    @property
    def label(self):
        return "FAKE"

    async def connect(self):
        pass

    async def disconnect(self):
        self.disconnects += 1

    async def _read_block_unlocked(self, address, count):
        if self.fail_reads:
            raise ConnectionError("FC04 timeout: fake")
        return [self.words.get(address + i, 0) for i in range(count)]

    async def _write_coil_unlocked(self, address, value):
        if self.fail_writes:
            raise ConnectionError("FC05 timeout: fake")
        self.writes.append((address, value))


class FakePubSub:
    """Pattern subscription fed from an asyncio.Queue; listen() blocks when empty."""

    def __init__(self):
        self.messages = asyncio.Queue()
        self.patterns = []
        self.closed = False

    async def psubscribe(self, pattern):
        self.patterns.append(pattern)

    async def punsubscribe(self, pattern):
        self.patterns.remove(pattern)

    async def close(self):
        self.closed = True

    async def listen(self):
        while True:
            yield await self.messages.get()


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.last_pubsub = None
        self.ttl = {}
        self.hashes = {}
        self.published = []

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttl[key] = ex

    async def get(self, key):
        return self.store.get(key)

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def hset(self, key, mapping=None):
        self.hashes.setdefault(key, {}).update(mapping or {})

    def pubsub(self):
        self.last_pubsub = FakePubSub()
        return self.last_pubsub

    async def close(self):
        pass

    def channel_messages(self, channel):
        return [m for c, m in self.published if c == channel]


@pytest.fixture(scope="session")
def table():
    return load_register_table()


@pytest.fixture
def reader(table):
    return FakeReader(table)


@pytest.fixture
def fake_redis():
    return FakeRedis()


def measurement_block(table, values=None):
    """Zeroed measurement block with selected registers set."""
    mb = table.measurement_block
    words = [0] * mb.count
    for addr, word in (values or {}).items():
        words[addr - mb.start] = word
    return RegisterBlock(mb.start, words)


def bitfield_block(table, bits=()):
    """Zeroed bitfield block with the given (register, bit) pairs set."""
    bb = table.bitfield_block
    words = [0] * bb.count
    for reg, bit in bits:
        words[reg - bb.start] |= 1 << bit
    return RegisterBlock(bb.start, words)
