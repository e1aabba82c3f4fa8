"""
Modbus Poller: periodic read of the DEIF GC-1F/2 register table.

SerialReader — Modbus RTU over RS-485 (pymodbus AsyncModbusSerialClient), FC04/FC05
DemoReader   — simulated controller, see services/demo_reader.py

One poll = measurement block (500..576) + bitfield block (1000..1019), read
under one reader lock, decoded into a state snapshot and published to Redis.
A failed read publishes nothing and leaves run-cycle / alarm state untouched.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time as _time
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from pymodbus.client import AsyncModbusSerialClient
from redis.asyncio import Redis
from redis.exceptions import RedisError

from config import settings
from register_table import RegisterTable
from services.alarm_transitions import AlarmTransitionLogger, AlarmTransitions
from services.bitfield import classify_alarms, classify_status
from services.decoder import RegisterBlock
from services.operating_mode import synthesize_mode
from services.run_cycle import RunCycleTracker
from services.state_aggregator import build_snapshot

logger = logging.getLogger("gateway.poller")


# ---------------------------------------------------------------------------
# Base Reader
# ---------------------------------------------------------------------------

class BaseReader(ABC):
    LOCK_TIMEOUT = 10.0  # max seconds to wait for lock from command writes

    def __init__(self, *, slave_id: int, timeout: float):
        self.slave_id = slave_id
        self.timeout = timeout
        # Serialises poll reads vs command writes on the shared bus
        self._lock = asyncio.Lock()

    @property
    @abstractmethod
    def label(self) -> str: ...

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def _read_block_unlocked(self, address: int, count: int) -> list[int]:
        """Internal: FC04 read without acquiring the lock."""
        ...

    @abstractmethod
    async def _write_coil_unlocked(self, address: int, value: bool) -> None:
        """Internal: FC05 write without acquiring the lock."""
        ...

    async def _acquire(self, op: str) -> None:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.LOCK_TIMEOUT)
        except asyncio.TimeoutError:
            raise ConnectionError(f"{self.label}: lock timeout on {op}")

    async def read_block(self, address: int, count: int) -> list[int]:
        """FC04 — Read Input Registers."""
        await self._acquire("FC04")
        try:
            return await self._read_block_unlocked(address, count)
        finally:
            self._lock.release()

    async def read_blocks(self, requests: list[tuple[int, int]]) -> list[list[int]]:
        """Read multiple register ranges under one lock acquisition."""
        await self._acquire("batch read")
        try:
            results = []
            for address, count in requests:
                results.append(await self._read_block_unlocked(address, count))
            return results
        finally:
            self._lock.release()

    async def write_coil(self, address: int, value: bool) -> None:
        """FC05 — Write Single Coil."""
        await self._acquire("FC05")
        try:
            await self._write_coil_unlocked(address, value)
        finally:
            self._lock.release()


# ---------------------------------------------------------------------------
# Serial Reader — Modbus RTU (pymodbus)
# ---------------------------------------------------------------------------

class SerialReader(BaseReader):
    """Modbus RTU via pymodbus AsyncModbusSerialClient."""

    def __init__(
        self,
        *,
        port: str,
        baudrate: int,
        parity: str,
        stopbits: int,
        bytesize: int,
        slave_id: int,
        timeout: float,
    ):
        super().__init__(slave_id=slave_id, timeout=timeout)
        self.port = port
        self.baudrate = baudrate
        self.parity = parity
        self.stopbits = stopbits
        self.bytesize = bytesize
        self._client: AsyncModbusSerialClient | None = None

    @property
    def label(self) -> str:
        return f"RTU {self.port} slave={self.slave_id}"

    async def connect(self) -> None:
        self._client = AsyncModbusSerialClient(
            port=self.port,
            baudrate=self.baudrate,
            parity=self.parity,
            stopbits=self.stopbits,
            bytesize=self.bytesize,
            timeout=self.timeout,
        )
        connected = await self._client.connect()
        if not connected:
            raise ConnectionError(f"cannot open serial port {self.port}")
        logger.info(
            "RTU connected: %s %d %d%s%d slave=%s timeout=%.1fs",
            self.port, self.baudrate, self.bytesize, self.parity, self.stopbits,
            self.slave_id, self.timeout,
        )

    async def disconnect(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    async def _ensure_connected(self) -> AsyncModbusSerialClient:
        if not self._client or not self._client.connected:
            await self.connect()
        return self._client

    async def _read_block_unlocked(self, address: int, count: int) -> list[int]:
        client = await self._ensure_connected()
        try:
            resp = await asyncio.wait_for(
                client.read_input_registers(address=address, count=count, slave=self.slave_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectionError(f"FC04 timeout: addr={address} count={count}")
        except Exception as exc:
            raise ConnectionError(f"FC04 failed: addr={address} count={count}: {exc}") from exc

        if resp.isError():
            raise ConnectionError(f"FC04 error: addr={address} count={count}: {resp}")
        regs = list(resp.registers)
        if len(regs) < count:
            raise ConnectionError(
                f"FC04 short response: addr={address} wanted={count} got={len(regs)}"
            )
        return regs[:count]

    async def _write_coil_unlocked(self, address: int, value: bool) -> None:
        client = await self._ensure_connected()
        try:
            resp = await asyncio.wait_for(
                client.write_coil(address=address, value=value, slave=self.slave_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectionError(f"FC05 timeout: addr={address}")
        except Exception as exc:
            raise ConnectionError(f"FC05 failed: addr={address}: {exc}") from exc

        if resp.isError():
            raise ConnectionError(f"FC05 error: {resp}")
        logger.info("FC05 OK: %s addr=%d value=%s", self.label, address, value)


def make_reader(table: RegisterTable) -> BaseReader:
    if settings.DEMO_MODE:
        from services.demo_reader import DemoReader
        return DemoReader(table, slave_id=settings.SLAVE_ID)
    return SerialReader(
        port=settings.SERIAL_PORT,
        baudrate=settings.BAUDRATE,
        parity=settings.PARITY,
        stopbits=settings.STOPBITS,
        bytesize=settings.BYTESIZE,
        slave_id=settings.SLAVE_ID,
        timeout=settings.MODBUS_TIMEOUT,
    )


# ---------------------------------------------------------------------------
# ModbusPoller — main polling orchestrator
# ---------------------------------------------------------------------------

class ModbusPoller:
    """Background poller: reads the register table, decodes, publishes to Redis."""

    def __init__(
        self,
        redis: Redis,
        reader: BaseReader,
        table: RegisterTable,
        *,
        interval: float | None = None,
        prefix: str | None = None,
        retain: bool | None = None,
        device: dict | None = None,
    ):
        self.redis = redis
        self.reader = reader
        self.table = table
        self.interval = settings.POLL_INTERVAL if interval is None else interval
        self.prefix = prefix or settings.topic_prefix
        self.retain = settings.RETAIN if retain is None else retain
        self.device = device or {
            "id": settings.device_id,
            "name": settings.device_name,
            "manufacturer": table.device.manufacturer,
            "model": table.device.model,
        }
        self.run_cycle = RunCycleTracker()
        self.alarm_transitions = AlarmTransitionLogger()
        self.last_snapshot: dict | None = None
        self.polls_ok = 0
        self.polls_failed = 0
        self._poll_lock = asyncio.Lock()
        self._running = False

    @property
    def state_key(self) -> str:
        return f"{self.prefix}:state"

    @property
    def events_channel(self) -> str:
        return f"{self.prefix}:events"

    async def start(self) -> None:
        self._running = True
        logger.info(
            "ModbusPoller starting: %s table=%s interval=%.1fs",
            self.reader.label, self.table.version, self.interval,
        )
        await self._publish_device()

        if self.interval <= 0:
            await self.poll_once()
            logger.info("POLL_INTERVAL <= 0: single poll done, poller idle")
            self._running = False
            return

        next_tick = _time.monotonic()
        while self._running:
            await self.poll_once()
            next_tick += self.interval
            now = _time.monotonic()
            if next_tick <= now:
                # Overran one or more periods: drop them instead of stacking polls
                missed = int((now - next_tick) // self.interval) + 1
                next_tick += missed * self.interval
                logger.debug("Poll overran, skipped %d tick(s)", missed)
            await asyncio.sleep(next_tick - now)

    async def stop(self) -> None:
        logger.info("ModbusPoller stopping...")
        self._running = False
        try:
            await self.reader.disconnect()
        except Exception as exc:
            logger.debug("Disconnect error: %s", exc)

    async def poll_once(self) -> dict | None:
        """Run one poll cycle. Returns the published snapshot, or None."""
        if self._poll_lock.locked():
            logger.warning("Previous poll still in flight, skipping this tick")
            return None

        async with self._poll_lock:
            mb, bb = self.table.measurement_block, self.table.bitfield_block
            try:
                meas_words, bit_words = await self.reader.read_blocks(
                    [(mb.start, mb.count), (bb.start, bb.count)]
                )
            except (ConnectionError, asyncio.TimeoutError) as exc:
                await self._poll_failed(exc)
                return None
            except Exception as exc:
                logger.error("Unexpected poll error (%s): %s", self.reader.label, exc, exc_info=True)
                await self._poll_failed(exc)
                return None

            snapshot, transitions = self.process_blocks(
                RegisterBlock(mb.start, meas_words),
                RegisterBlock(bb.start, bit_words),
            )
            self.polls_ok += 1
            self.last_snapshot = snapshot
            await self._publish(snapshot, transitions)
            return snapshot

    def process_blocks(
        self,
        measurement_block: RegisterBlock,
        bitfield_block: RegisterBlock,
        now: datetime | None = None,
    ) -> tuple[dict, AlarmTransitions]:
        """Decode one successful read and advance run-cycle / alarm state."""
        now = now or datetime.now(timezone.utc)

        alarms = classify_alarms(bitfield_block, self.table)
        status = classify_status(bitfield_block, self.table)
        operating_mode = synthesize_mode(status, self.table)

        running_key = self.table.role_key("engine_running")
        self.run_cycle.observe(status.get(running_key) if running_key else None, now)
        transitions = self.alarm_transitions.update(alarms)

        snapshot = build_snapshot(
            table=self.table,
            measurement_block=measurement_block,
            bitfield_block=bitfield_block,
            alarms=alarms,
            status=status,
            operating_mode=operating_mode,
            run_cycle=self.run_cycle.as_dict(),
            device=self.device,
            now=now,
        )
        return snapshot, transitions

    async def _poll_failed(self, exc: BaseException) -> None:
        self.polls_failed += 1
        logger.warning("Poll failed (%s): %s", self.reader.label, exc)
        try:
            await self.reader.disconnect()
        except Exception as dexc:
            logger.debug("Disconnect error: %s", dexc)

    async def _publish_device(self) -> None:
        try:
            await self.redis.hset(f"{self.prefix}:device", mapping=self.device)
        except (RedisError, OSError) as exc:
            logger.error("Device metadata publish failed: %s", exc)

    async def _publish(self, snapshot: dict, transitions: AlarmTransitions) -> None:
        json_str = json.dumps(snapshot, default=str)
        try:
            if self.retain:
                await self.redis.set(self.state_key, json_str)
            else:
                await self.redis.set(self.state_key, json_str, ex=settings.STATE_TTL)
            await self.redis.publish(self.state_key, json_str)

            if transitions:
                await self.redis.publish(self.events_channel, json.dumps({
                    "timestamp": snapshot["timestamp"],
                    "activated": [a.as_dict() for a in transitions.activated],
                    "cleared": [{"register": r, "bit": b} for r, b in transitions.cleared],
                }))
        except (RedisError, OSError) as exc:
            logger.error("Publish failed: %s", exc)
            return
        logger.debug("Published state (%s)", snapshot["status"]["operating_mode"])
