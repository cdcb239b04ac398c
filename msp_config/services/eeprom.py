"""Persisting settings and rebooting the flight controller."""

from __future__ import annotations

import logging

from ..core.commands import MSPCommand
from ..core.connection import MSPConnection
from ..core.msp import MSPTimeoutError, TransportClosedError
from ..core.parsers import CLI_MIXER_NAMES
from ..core.strategies import Outcome, StrategyResult, run_strategies
from .common import require_open

log = logging.getLogger(__name__)

REBOOT_TIMEOUT = 0.5


async def save_eeprom(conn: MSPConnection) -> bool:
    """Persist settings with ``EEPROM_WRITE``, or ``save`` when in CLI mode.

    A queued legacy mixer preset can only be applied from the CLI, so it
    forces the CLI path as well.
    """

    require_open(conn)
    context = conn.context
    if conn.cli.active or context.pending_mixer_type is not None:
        context.send_log("info", "In CLI mode, will use CLI save")
        return await save_eeprom_via_cli(conn)

    async def _binary() -> StrategyResult:
        context.send_log("info", "Saving to EEPROM...")
        try:
            await conn.request(MSPCommand.MSP_EEPROM_WRITE, timeout=conn.profile.eeprom_timeout)
        except MSPTimeoutError as exc:
            return StrategyResult(Outcome.FATAL, error=exc)
        context.send_log("info", "Settings saved to EEPROM")
        return StrategyResult(Outcome.OK, value=True)

    async def _cli() -> bool:
        return await save_eeprom_via_cli(conn)

    def _warn(result: StrategyResult) -> None:
        context.send_log("warning", "MSP EEPROM_WRITE not supported, trying CLI...")

    async with conn.config_lock:
        result = await run_strategies([("msp", _binary), ("cli", _cli)], on_retry=_warn)
    if not result.ok:
        context.send_log("error", "EEPROM save failed", str(result.error))
    return result.unwrap()


async def save_eeprom_via_cli(conn: MSPConnection) -> bool:
    """Send ``save`` from the CLI, applying any queued mixer first."""

    require_open(conn)
    context = conn.context
    context.send_log("info", "CLI fallback", "Saving via CLI (board will reboot)")
    async with conn.config_lock:
        if context.pending_mixer_type is not None:
            mixer = context.pending_mixer_type
            name = CLI_MIXER_NAMES.get(mixer, f"MIXER_{mixer}")
            context.send_log("info", f"CLI: Setting mixer {name}")
            transcript = await conn.cli.run([f"mixer {name}"], keep_open=True)
            if transcript.transport_closed:
                raise TransportClosedError("transport closed before save")
            context.pending_mixer_type = None
        transcript = await conn.cli.save()
    if transcript.transport_closed:
        log.info("link dropped after save, board is rebooting")
    return True


async def reboot(conn: MSPConnection) -> bool:
    """Ask the board to reboot; a missing reply or a dropped link is expected."""

    require_open(conn)
    try:
        await conn.request(MSPCommand.MSP_REBOOT, timeout=REBOOT_TIMEOUT)
    except (MSPTimeoutError, TransportClosedError) as exc:
        log.info("reboot: %s", exc)
    conn.context.send_log("info", "Reboot requested")
    return True
