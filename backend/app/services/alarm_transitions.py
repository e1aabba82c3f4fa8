"""Alarm transition logger — diff of active alarm keys between polls.

Diagnostics only: the published snapshot always carries the full active
list, this just reports what appeared and what cleared since last poll.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from services.bitfield import ActiveAlarm

logger = logging.getLogger("gateway.alarm_transitions")


@dataclass
class AlarmTransitions:
    activated: list[ActiveAlarm] = field(default_factory=list)
    cleared: list[tuple[int, int]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.activated or self.cleared)


class AlarmTransitionLogger:

    def __init__(self) -> None:
        self.previous_keys: set[tuple[int, int]] = set()

    def update(self, active: list[ActiveAlarm]) -> AlarmTransitions:
        current = {a.key: a for a in active}
        current_keys = set(current)

        result = AlarmTransitions(
            activated=[current[k] for k in sorted(current_keys - self.previous_keys)],
            cleared=sorted(self.previous_keys - current_keys),
        )
        self.previous_keys = current_keys

        for alarm in result.activated:
            logger.info(
                "ALARM ON: %d:%d code=%s %s", alarm.register, alarm.bit, alarm.code, alarm.text,
            )
        for reg, bit in result.cleared:
            logger.info("ALARM OFF: %d:%d", reg, bit)
        return result
