"""State snapshot builder — one consolidated JSON document per poll.

Layout (schema_version 1):
  device, app_version, table_version, schema_version
  measurements.{gen,mains,engine}
  counters
  alarms.{count, unacknowledged, ack_active, bitfield, active, active_text}
  status.{"<reg>_<bit>": bool, ..., operating_mode}
  run_cycle.{running, last_start, last_stop, last_duration_s}
  timestamp
"""
from __future__ import annotations

from datetime import datetime, timezone

from register_table import RegisterTable
from services.bitfield import ActiveAlarm, bitfield_hex, format_active_alarms
from services.decoder import RegisterBlock, decode_field, decode_fields

SCHEMA_VERSION = 1


def build_snapshot(
    *,
    table: RegisterTable,
    measurement_block: RegisterBlock,
    bitfield_block: RegisterBlock,
    alarms: list[ActiveAlarm],
    status: dict[str, bool],
    operating_mode: str,
    run_cycle: dict,
    device: dict,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.now(timezone.utc)

    app_version = (
        decode_field(measurement_block, table.app_version) if table.app_version else None
    )

    alarm_section: dict = decode_fields(measurement_block, table.alarm_counters)
    alarm_section["bitfield"] = bitfield_hex(bitfield_block)
    alarm_section["active"] = [a.as_dict() for a in alarms]
    alarm_section["active_text"] = format_active_alarms(alarms)

    return {
        "schema_version": SCHEMA_VERSION,
        "table_version": table.version,
        "device": device,
        "app_version": app_version,
        "measurements": {
            group: decode_fields(measurement_block, fields)
            for group, fields in table.measurements.items()
        },
        "counters": decode_fields(measurement_block, table.counters),
        "alarms": alarm_section,
        "status": {**status, "operating_mode": operating_mode},
        "run_cycle": dict(run_cycle),
        "timestamp": now.isoformat(),
    }
