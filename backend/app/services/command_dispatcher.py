"""Command dispatcher — inbound command id -> one FC05 coil write.

Guards, in order:
  1. identifier must be a known, enabled command
  2. retained / replayed deliveries are dropped (a retained message would
     re-fire on every bus reconnect)
  3. one global cooldown shared by ALL commands: a blunt limit on physical
     actions (breaker toggling etc.), not a per-command rate limiter

An accepted command writes exactly once. A failed write is logged and not
retried; the cooldown stays consumed.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from register_table import CommandDefinition

logger = logging.getLogger("gateway.commands")


class CoilWriter(Protocol):
    async def write_coil(self, address: int, value: bool) -> None: ...


class DispatchStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    UNKNOWN = "unknown"
    DISABLED = "disabled"
    RETAINED = "retained"
    COOLDOWN = "cooldown"
    WRITE_FAILED = "write_failed"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    identifier: str
    coil: int | None = None
    message: str = ""
    retry_after: float = 0.0

    @property
    def accepted(self) -> bool:
        return self.status == DispatchStatus.ACCEPTED


class CooldownGate:
    """Single shared timestamp; check-and-set under a lock."""

    def __init__(self, cooldown: float, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self.last_dispatch: float | None = None

    def try_acquire(self, now: float | None = None) -> tuple[bool, float]:
        """Returns (acquired, seconds_remaining)."""
        with self._lock:
            if now is None:
                now = self._clock()
            if self.last_dispatch is not None:
                elapsed = now - self.last_dispatch
                if elapsed < self.cooldown:
                    return False, self.cooldown - elapsed
            self.last_dispatch = now
            return True, 0.0


class CommandDispatcher:

    def __init__(
        self,
        writer: CoilWriter,
        commands: Iterable[CommandDefinition],
        *,
        cooldown: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.writer = writer
        self.commands = {c.identifier: c for c in commands}
        self.gate = CooldownGate(cooldown, clock)

    @property
    def enabled_identifiers(self) -> list[str]:
        return sorted(i for i, c in self.commands.items() if c.enabled)

    async def dispatch(
        self, identifier: str, *, retained: bool = False, now: float | None = None,
    ) -> DispatchResult:
        cmd = self.commands.get(identifier)
        if cmd is None:
            logger.warning("Command rejected: unknown identifier %r", identifier)
            return DispatchResult(DispatchStatus.UNKNOWN, identifier, message="unknown command")
        if not cmd.enabled:
            logger.warning("Command rejected: %s is disabled", identifier)
            return DispatchResult(DispatchStatus.DISABLED, identifier, cmd.coil, "command disabled")

        if retained:
            logger.info("Command ignored: %s arrived as retained/replayed message", identifier)
            return DispatchResult(DispatchStatus.RETAINED, identifier, cmd.coil, "retained message ignored")

        acquired, remaining = self.gate.try_acquire(now)
        if not acquired:
            logger.info(
                "Command skipped: %s within cooldown (%.1fs remaining)", identifier, remaining,
            )
            return DispatchResult(
                DispatchStatus.COOLDOWN, identifier, cmd.coil,
                f"cooldown active, retry in {remaining:.1f}s", retry_after=remaining,
            )

        try:
            await self.writer.write_coil(cmd.coil, True)
        except Exception as exc:
            logger.error(
                "Command %s failed: coil=%d: %s (not retried)", identifier, cmd.coil, exc,
            )
            return DispatchResult(DispatchStatus.WRITE_FAILED, identifier, cmd.coil, str(exc))

        logger.info("Command %s sent: FC05 coil=%d ON", identifier, cmd.coil)
        return DispatchResult(DispatchStatus.ACCEPTED, identifier, cmd.coil, "sent")
