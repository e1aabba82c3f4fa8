"""
Demo Reader — emulates a DEIF GC-1F/2 register table.

Produces the same measurement and bitfield blocks as the real controller so
the rest of the gateway cannot tell the difference. The engine runs in
cycles (mains failure -> AMF start -> load takeover -> mains back -> stop)
and reacts to start/stop/alarm_ack coil writes.
"""

from __future__ import annotations

import logging
import math
import random

from register_table import MeasurementField, RegisterTable
from services.modbus_poller import BaseReader

logger = logging.getLogger("gateway.demo_reader")

CYCLE_TICKS = 60          # full mains-fail / run / recover cycle
OUTAGE_TICKS = (10, 40)   # mains failed between these ticks


def _encode(field: MeasurementField, value) -> dict[int, int]:
    """Inverse of decode_field: value -> {register: word}."""
    if field.kind == "u32":
        value = int(value) & 0xFFFFFFFF
        return {field.register: value >> 16, field.register + 1: value & 0xFFFF}
    if field.kind == "scaled":
        return {field.register: int(round(value * field.divisor)) & 0xFFFF}
    if field.kind == "version":
        return {field.register: int(value.replace(".", ""))}
    return {field.register: int(value) & 0xFFFF}


class DemoReader(BaseReader):
    """Simulated controller. Same interface as SerialReader."""

    def __init__(self, table: RegisterTable, *, slave_id: int = 1):
        super().__init__(slave_id=slave_id, timeout=1.0)
        self.table = table
        self._tick = 0
        self._forced_running: bool | None = None
        self._energy_kwh = 125_400
        self._run_seconds = 0
        self._start_attempts = 212
        self._alarm_bits: set[tuple[int, int]] = set()
        self._coils = {c.coil: c.identifier for c in table.commands}

    @property
    def label(self) -> str:
        return f"DEMO slave={self.slave_id}"

    async def connect(self) -> None:
        logger.info("DemoReader connected")

    async def disconnect(self) -> None:
        pass

    # ------------------------------------------------------------------

    def _engine_running(self, mains_failed: bool) -> bool:
        if self._forced_running is not None:
            return self._forced_running
        return mains_failed

    def _field(self, words: dict[int, int], section: dict[str, MeasurementField], name: str, value) -> None:
        field = section.get(name)
        if field is not None:
            words.update(_encode(field, value))

    def _measurements(self, running: bool, mains_failed: bool) -> dict[int, int]:
        t = self._tick
        noise = lambda amp=1.0: random.uniform(-amp, amp)
        words: dict[int, int] = {}

        if self.table.app_version is not None:
            words.update(_encode(self.table.app_version, "2.2.20"))

        gen = self.table.measurements.get("gen", {})
        gen_v = 230 + noise(2) if running else 0
        load_kw = 48 + 12 * math.sin(t * 0.2) + noise(2) if running else 0
        for phase in ("l1n", "l2n", "l3n"):
            self._field(words, gen, f"voltage_{phase}_v", round(gen_v))
        for phase in ("l1", "l2", "l3"):
            self._field(words, gen, f"current_{phase}_a", round(load_kw * 1000 / (3 * 230)) if running else 0)
        self._field(words, gen, "frequency_hz", 50.0 + noise(0.1) if running else 0)
        self._field(words, gen, "pgen_kw", round(load_kw))
        self._field(words, gen, "qgen_kvar", round(load_kw * 0.3) if running else 0)
        self._field(words, gen, "sgen_kva", round(load_kw * 1.05))
        self._field(words, gen, "cos_phi", 0.95 if running else 0)

        mains = self.table.measurements.get("mains", {})
        mains_v = 0 if mains_failed else 231 + noise(3)
        for phase in ("l1n", "l2n", "l3n"):
            self._field(words, mains, f"voltage_{phase}_v", round(mains_v))
        self._field(words, mains, "frequency_hz", 0 if mains_failed else 50.0 + noise(0.05))

        engine = self.table.measurements.get("engine", {})
        self._field(words, engine, "energy_kwh", self._energy_kwh)
        self._field(words, engine, "run_hours", 1843 + self._run_seconds // 3600)
        self._field(words, engine, "usupply_v", 27.6 if running else 24.8)
        self._field(words, engine, "rpm", 1500 + round(noise(5)) if running else 0)

        self._field(words, self.table.counters, "gen_breaker_ops", 431 + t // CYCLE_TICKS)
        self._field(words, self.table.counters, "mains_breaker_ops", 433 + t // CYCLE_TICKS)
        self._field(words, self.table.counters, "start_attempts", self._start_attempts)

        active = len(self._alarm_bits)
        self._field(words, self.table.alarm_counters, "count", active)
        self._field(words, self.table.alarm_counters, "unacknowledged", active)
        self._field(words, self.table.alarm_counters, "ack_active", 0)
        return words

    def _bitfields(self, running: bool, mains_failed: bool) -> dict[int, int]:
        words: dict[int, int] = {}

        def set_bit(key: str | None) -> None:
            if key:
                reg, bit = (int(p) for p in key.split("_"))
                words[reg] = words.get(reg, 0) | (1 << bit)

        for reg, bit in self._alarm_bits:
            words[reg] = words.get(reg, 0) | (1 << bit)

        role = self.table.role_key
        set_bit(role("mode_auto"))
        set_bit(role("mode_amf"))
        if mains_failed:
            if (1018, 0) in self.table.status_map:  # Mains failure
                set_bit("1018_0")
            set_bit(role("mode_amf_active"))
        if running:
            set_bit(role("engine_running"))
            if mains_failed:
                set_bit(role("mode_load_takeover"))
        return words

    def _advance(self, running: bool) -> None:
        self._tick += 1
        if running:
            self._run_seconds += 5
            self._energy_kwh += 1
        # Occasional V-belt warning while running, clears on its own
        if running and random.random() < 0.02:
            self._alarm_bits.add((1013, 13))
        elif random.random() < 0.05:
            self._alarm_bits.discard((1013, 13))

    # ------------------------------------------------------------------

    async def _read_block_unlocked(self, address: int, count: int) -> list[int]:
        phase = self._tick % CYCLE_TICKS
        mains_failed = OUTAGE_TICKS[0] <= phase < OUTAGE_TICKS[1]
        running = self._engine_running(mains_failed)

        if address == self.table.measurement_block.start:
            words = self._measurements(running, mains_failed)
        elif address == self.table.bitfield_block.start:
            words = self._bitfields(running, mains_failed)
            self._advance(running)
        else:
            words = {}
        return [words.get(address + i, 0) & 0xFFFF for i in range(count)]

    async def _write_coil_unlocked(self, address: int, value: bool) -> None:
        identifier = self._coils.get(address)
        logger.info("DEMO FC05: addr=%d value=%s (%s)", address, value, identifier or "unmapped")
        if not value:
            return
        if identifier == "start_engine":
            self._forced_running = True
            self._start_attempts += 1
        elif identifier == "stop_engine":
            self._forced_running = False
        elif identifier == "alarm_ack":
            self._alarm_bits.clear()
