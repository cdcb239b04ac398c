"""Background telemetry polling that yields the link to configuration work."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from . import parsers
from .commands import MSPCommand
from .msp import MSPError

log = logging.getLogger(__name__)


@dataclass
class CommandRate:
    cmd: int
    hz: float


@dataclass
class Scheduler:
    commands: List[CommandRate]
    last_run: Dict[int, float] = field(default_factory=dict)

    def due(self, now: float | None = None) -> List[int]:
        if now is None:
            now = time.monotonic()
        due_cmds: List[int] = []
        for rate in self.commands:
            period = 1.0 / rate.hz if rate.hz > 0 else 0
            last = self.last_run.get(rate.cmd)
            if last is None or period == 0 or now - last >= period:
                due_cmds.append(rate.cmd)
                self.last_run[rate.cmd] = now
        return due_cmds


DEFAULT_RATES = {
    "status_hz": 2.0,
    "attitude_hz": 5.0,
}

COMMAND_RATE_MAP = {
    "status_hz": MSPCommand.MSP_STATUS,
    "attitude_hz": MSPCommand.MSP_ATTITUDE,
}

_PARSERS = {
    MSPCommand.MSP_STATUS: ("status", parsers.parse_status),
    MSPCommand.MSP_ATTITUDE: ("attitude", parsers.parse_attitude),
}


def build_scheduler(rates: Dict[str, float] | None = None) -> Scheduler:
    rates = rates or {}
    commands: List[CommandRate] = []
    for key, default_hz in DEFAULT_RATES.items():
        hz = float(rates.get(key, default_hz))
        if hz <= 0:
            continue
        commands.append(CommandRate(cmd=COMMAND_RATE_MAP[key], hz=hz))
    return Scheduler(commands=commands)


class TelemetryPoller:
    """Implements the telemetry start/stop contract for one connection.

    Ticks are skipped while the config lock is held or the CLI owns the link.
    """

    def __init__(
        self,
        connection,
        rates: Dict[str, float] | None = None,
        *,
        tick: float = 0.05,
        on_sample: Optional[Callable[[str, Dict[str, object]], None]] = None,
    ) -> None:
        self.connection = connection
        self.scheduler = build_scheduler(rates)
        self.tick = tick
        self.on_sample = on_sample
        self.latest: Dict[str, Dict[str, object]] = {}
        self.errors = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running or not self.scheduler.commands:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        log.debug("telemetry started")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            log.debug("telemetry stopped")

    def _paused(self) -> bool:
        conn = self.connection
        return not conn.is_open or conn.cli.active or conn.config_lock.locked

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick)
            if self._paused():
                continue
            for cmd in self.scheduler.due():
                if self._paused():
                    break
                try:
                    payload = await self.connection.request(cmd)
                    name, parser = _PARSERS[cmd]
                    sample = parser(payload)
                except MSPError as exc:
                    self.errors += 1
                    log.debug("telemetry %s failed: %s", cmd, exc)
                    continue
                self.latest[name] = sample
                if self.on_sample is not None:
                    self.on_sample(name, sample)
