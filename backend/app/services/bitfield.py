"""Bitfield classifier — splits the alarm/status register block.

Alarms and status flags share one polled block (1000..1019 on the GC-1F/2)
but are decoded strictly from their own allow-lists: a register that only
carries operational state (breaker positions, mode bits) never produces an
alarm, and bits with no definition are ignored even when set.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from register_table import RegisterTable
from services.decoder import RegisterBlock, to_hex16

NO_ACTIVE_ALARMS = "No active alarms"


@dataclass(frozen=True)
class ActiveAlarm:
    register: int
    bit: int
    code: str
    text: str

    @property
    def key(self) -> tuple[int, int]:
        return (self.register, self.bit)

    def as_dict(self) -> dict:
        return asdict(self)


def classify_alarms(block: RegisterBlock, table: RegisterTable) -> list[ActiveAlarm]:
    """Active alarms in ascending (register, bit) order."""
    active: list[ActiveAlarm] = []
    alarm_map = table.alarm_map

    for reg in table.alarm_registers:
        value = block.get(reg)
        if not value:
            continue
        for bit in range(16):
            if not value & (1 << bit):
                continue
            defn = alarm_map.get((reg, bit))
            if defn is not None:
                active.append(ActiveAlarm(reg, bit, defn.code, defn.text))
    return active


def classify_status(block: RegisterBlock, table: RegisterTable) -> dict[str, bool]:
    """One "<register>_<bit>" entry per defined status bit, set or not.

    A status register outside the polled block yields no entries.
    """
    status: dict[str, bool] = {}
    status_map = table.status_map

    for reg in table.status_registers:
        value = block.get(reg)
        if value is None:
            continue
        for bit in range(16):
            defn = status_map.get((reg, bit))
            if defn is not None:
                status[defn.status_key] = bool(value & (1 << bit))
    return status


def format_active_alarms(alarms: list[ActiveAlarm]) -> str:
    if not alarms:
        return NO_ACTIVE_ALARMS
    return "\n".join(f"{a.code} {a.text}" for a in alarms)


def bitfield_hex(block: RegisterBlock) -> dict[str, str]:
    """Raw hex of every register in the block, allow-listed or not."""
    return {str(addr): to_hex16(word) for addr, word in block.items()}
