"""Run-cycle tracker — edge detection on the "engine running" status bit.

The first sample only initialises the state: a gateway restarted while the
engine runs must not report a fresh start. After that, a False->True edge
records the start time and a True->False edge records the stop time and the
run duration in whole seconds (never negative, clock steps happen).
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone

from services.decoder import round_half_up

logger = logging.getLogger("gateway.run_cycle")


class RunState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    STOPPED = "stopped"
    RUNNING = "running"


class RunCycleTracker:

    def __init__(self) -> None:
        self.state = RunState.UNINITIALIZED
        self.last_engine_running: bool | None = None
        self.last_start: datetime | None = None
        self.last_stop: datetime | None = None
        self.last_duration_s: int | None = None

    def observe(self, engine_running: bool | None, now: datetime | None = None) -> str | None:
        """Feed one poll sample. Returns "start", "stop" or None."""
        if engine_running is None:
            return None
        running = bool(engine_running)

        if self.last_engine_running is None:
            self.last_engine_running = running
            self.state = RunState.RUNNING if running else RunState.STOPPED
            logger.info("Run-cycle initialised: engine %s", self.state.value)
            return None

        if running == self.last_engine_running:
            return None

        now = now or datetime.now(timezone.utc)
        self.last_engine_running = running

        if running:
            self.last_start = now
            self.state = RunState.RUNNING
            logger.info("Engine START at %s", now.isoformat())
            return "start"

        self.last_stop = now
        self.state = RunState.STOPPED
        if self.last_start is not None:
            elapsed = (now - self.last_start).total_seconds()
            self.last_duration_s = max(0, int(round_half_up(elapsed)))
        logger.info(
            "Engine STOP at %s (duration=%ss)", now.isoformat(), self.last_duration_s,
        )
        return "stop"

    def as_dict(self) -> dict:
        return {
            "running": self.state == RunState.RUNNING if self.last_engine_running is not None else None,
            "last_start": self.last_start.isoformat() if self.last_start else None,
            "last_stop": self.last_stop.isoformat() if self.last_stop else None,
            "last_duration_s": self.last_duration_s,
        }
