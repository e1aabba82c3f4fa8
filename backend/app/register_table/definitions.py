"""Register table models — measurement map, alarm/status bit tables, commands.

The table is loaded once at startup from a versioned JSON artifact
(gc1f2.json by default) and validated here. Any inconsistency is a
RegisterTableError: the gateway refuses to start rather than guessing.

Keys:
  alarms / status   (register, bit) -> {code, text}
  status_roles      role name -> "<register>_<bit>" status key
  commands          identifier -> coil offset
"""
from __future__ import annotations

import json
import logging
from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger("gateway.register_table")

DEFAULT_TABLE_PATH = Path(__file__).with_name("gc1f2.json")

# Status bits with a fixed meaning for the mode synthesizer / run-cycle tracker
STATUS_ROLES = (
    "engine_running",
    "mode_off",
    "mode_manual",
    "mode_test",
    "mode_auto",
    "mode_amf",
    "mode_load_takeover",
    "mode_amf_active",
)


class RegisterTableError(ValueError):
    """Register table is unreadable or internally inconsistent."""


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class BlockRange(_Frozen):
    start: int = Field(ge=0, le=0xFFFF)
    count: int = Field(ge=1, le=125)  # FC04 limit per request

    @property
    def end(self) -> int:
        return self.start + self.count

    def covers(self, address: int) -> bool:
        return self.start <= address < self.end


class MeasurementField(_Frozen):
    """How one value is decoded from the measurement block.

    u32 takes `register` as the high word and `register + 1` as the low word.
    scaled divides by `divisor` and rounds to `decimals`; `signed` applies
    two's complement to the raw word first.
    `negate` flips the sign of the decoded number (signed energy counter).
    """

    register: int = Field(ge=0, le=0xFFFF)
    kind: Literal["u16", "s16", "u32", "scaled", "version", "hex"] = "u16"
    divisor: float = 1.0
    decimals: int = Field(default=0, ge=0, le=6)
    signed: bool = False
    negate: bool = False

    @model_validator(mode="after")
    def _check_options(self) -> MeasurementField:
        if self.divisor == 0:
            raise ValueError(f"register {self.register}: divisor must be non-zero")
        if self.negate and self.kind in ("version", "hex"):
            raise ValueError(f"register {self.register}: {self.kind} value cannot be negated")
        return self

    @property
    def registers(self) -> tuple[int, ...]:
        if self.kind == "u32":
            return (self.register, self.register + 1)
        return (self.register,)


class BitDefinition(_Frozen):
    register: int = Field(ge=0, le=0xFFFF)
    bit: int = Field(ge=0, le=15)
    code: str = "no code"
    text: str

    @property
    def key(self) -> tuple[int, int]:
        return (self.register, self.bit)

    @property
    def status_key(self) -> str:
        return f"{self.register}_{self.bit}"


class CommandDefinition(_Frozen):
    identifier: str = Field(min_length=1, pattern=r"^[a-z0-9_]+$")
    coil: int = Field(ge=0, le=0xFFFF)
    enabled: bool = True
    description: str = ""


class DeviceInfo(_Frozen):
    manufacturer: str
    model: str


class RegisterTable(_Frozen):
    version: str
    device: DeviceInfo
    measurement_block: BlockRange
    bitfield_block: BlockRange
    app_version: MeasurementField | None = None
    measurements: dict[str, dict[str, MeasurementField]] = {}
    counters: dict[str, MeasurementField] = {}
    alarm_counters: dict[str, MeasurementField] = {}
    alarms: tuple[BitDefinition, ...] = ()
    status: tuple[BitDefinition, ...] = ()
    status_roles: dict[str, str] = {}
    commands: tuple[CommandDefinition, ...] = ()

    @model_validator(mode="after")
    def _check_layout(self) -> RegisterTable:
        fields: list[tuple[str, MeasurementField]] = []
        if self.app_version is not None:
            fields.append(("app_version", self.app_version))
        for group, group_fields in self.measurements.items():
            fields.extend((f"{group}.{name}", f) for name, f in group_fields.items())
        fields.extend((f"counters.{name}", f) for name, f in self.counters.items())
        fields.extend((f"alarms.{name}", f) for name, f in self.alarm_counters.items())

        for name, field in fields:
            for reg in field.registers:
                if not self.measurement_block.covers(reg):
                    raise ValueError(
                        f"{name}: register {reg} outside measurement block "
                        f"{self.measurement_block.start}..{self.measurement_block.end - 1}"
                    )

        alarm_keys = _unique_keys(self.alarms, "alarm", self.bitfield_block)
        status_keys = _unique_keys(self.status, "status", self.bitfield_block)

        overlap = sorted(alarm_keys & status_keys)
        if overlap:
            claimed = ", ".join(f"{r}:{b}" for r, b in overlap)
            raise ValueError(f"bits claimed by both alarm and status tables: {claimed}")

        defined_status = {d.status_key for d in self.status}
        for role, key in self.status_roles.items():
            if role not in STATUS_ROLES:
                raise ValueError(f"unknown status role {role!r}")
            if key not in defined_status:
                raise ValueError(f"status role {role!r} points at undefined status bit {key}")

        seen: set[str] = set()
        for cmd in self.commands:
            if cmd.identifier in seen:
                raise ValueError(f"duplicate command identifier {cmd.identifier!r}")
            seen.add(cmd.identifier)
        return self

    # -- lookups (computed once; the model is frozen) ----------------------

    @cached_property
    def alarm_map(self) -> dict[tuple[int, int], BitDefinition]:
        return {d.key: d for d in self.alarms}

    @cached_property
    def status_map(self) -> dict[tuple[int, int], BitDefinition]:
        return {d.key: d for d in self.status}

    @cached_property
    def alarm_registers(self) -> tuple[int, ...]:
        """Alarm allow-list: registers with at least one alarm definition."""
        return tuple(sorted({d.register for d in self.alarms}))

    @cached_property
    def status_registers(self) -> tuple[int, ...]:
        """Status allow-list."""
        return tuple(sorted({d.register for d in self.status}))

    @cached_property
    def command_map(self) -> dict[str, CommandDefinition]:
        return {c.identifier: c for c in self.commands}

    def role_key(self, role: str) -> str | None:
        return self.status_roles.get(role)


def _unique_keys(
    definitions: tuple[BitDefinition, ...], kind: str, block: BlockRange,
) -> set[tuple[int, int]]:
    keys: set[tuple[int, int]] = set()
    for d in definitions:
        if not block.covers(d.register):
            raise ValueError(
                f"{kind} {d.register}:{d.bit} outside bitfield block "
                f"{block.start}..{block.end - 1}"
            )
        if d.key in keys:
            raise ValueError(f"duplicate {kind} definition {d.register}:{d.bit}")
        keys.add(d.key)
    return keys


def parse_register_table(data: dict) -> RegisterTable:
    try:
        return RegisterTable.model_validate(data)
    except ValidationError as exc:
        raise RegisterTableError(f"invalid register table: {exc}") from exc


def load_register_table(path: str | Path | None = None) -> RegisterTable:
    """Load and validate the register table; raises RegisterTableError."""
    table_path = Path(path) if path else DEFAULT_TABLE_PATH
    try:
        data = json.loads(table_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise RegisterTableError(f"cannot read register table {table_path}: {exc}") from exc

    table = parse_register_table(data)
    logger.info(
        "Register table %s loaded from %s: %d alarm bits, %d status bits, %d commands",
        table.version, table_path, len(table.alarms), len(table.status), len(table.commands),
    )
    return table
