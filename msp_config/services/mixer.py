"""Mixer preset and platform type."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..core.commands import MSP2Command, MSPCommand
from ..core.connection import MSPConnection
from ..core.msp import (
    MSPTimeoutError,
    MSPVersion,
    NotSupportedError,
    PayloadFormatError,
    VerificationMismatchError,
)
from ..core.parsers import (
    CLI_MIXER_NAMES,
    InavMixerConfig,
    MixerConfig,
    PlatformType,
    build_inav_mixer,
    build_mixer_config,
    cli_mixer_for,
    inav_config_from_legacy,
    mixer_name,
    parse_inav_mixer,
    parse_mixer_config,
    platform_name,
)
from ..core.strategies import Outcome, StrategyResult, run_strategies
from .common import require_open, run_cli, write_with_fallback

log = logging.getLogger(__name__)

VEHICLE_NAMES = {
    PlatformType.MULTIROTOR: "Multirotor",
    PlatformType.AIRPLANE: "Airplane",
    PlatformType.HELICOPTER: "Helicopter",
    PlatformType.TRICOPTER: "Tricopter",
    PlatformType.ROVER: "Rover",
    PlatformType.BOAT: "Boat",
}


async def _read_inav_mixer(conn: MSPConnection) -> InavMixerConfig:
    if conn.context.unsupported.is_unsupported(MSP2Command.INAV_MIXER):
        raise NotSupportedError("INAV_MIXER marked unsupported")
    payload = await conn.request(
        MSP2Command.INAV_MIXER,
        timeout=conn.profile.config_timeout,
        version=MSPVersion.V2,
    )
    try:
        return parse_inav_mixer(payload)
    except PayloadFormatError:
        conn.context.unsupported.mark_unsupported(MSP2Command.INAV_MIXER)
        raise


async def _read_legacy_mixer(conn: MSPConnection, timeout: float) -> InavMixerConfig:
    payload = await conn.request(MSPCommand.MSP_MIXER_CONFIG, timeout=timeout)
    return inav_config_from_legacy(parse_mixer_config(payload))


async def get_inav_mixer_config(conn: MSPConnection) -> Optional[InavMixerConfig]:
    """Read the platform configuration, trying MSP2 first and then legacy MSP."""

    require_open(conn)
    firmware = conn.context.firmware
    if firmware.is_inav:
        strategies = [
            ("msp2", lambda: _read_inav_mixer(conn)),
            ("msp", lambda: _read_legacy_mixer(conn, conn.profile.config_timeout)),
        ]
    else:
        strategies = [("msp", lambda: _read_legacy_mixer(conn, conn.profile.request_timeout))]
    async with conn.config_lock:
        result = await run_strategies(strategies)
    if not result.ok:
        log.debug("mixer config unavailable: %s", result.error)
        return None
    config: InavMixerConfig = result.value
    suffix = " (legacy)" if result.strategy == "msp" and firmware.is_inav else ""
    conn.context.send_log(
        "info",
        f"Platform: {config.platform_name}{suffix}",
        f"Mixer: {config.applied_mixer_preset}, Servos: {config.number_of_servos}",
    )
    return config


async def get_mixer_config(conn: MSPConnection) -> Optional[MixerConfig]:
    require_open(conn)
    if conn.cli.active:
        return None
    async with conn.config_lock:
        try:
            payload = await conn.request(MSPCommand.MSP_MIXER_CONFIG, timeout=conn.profile.config_timeout)
            return parse_mixer_config(payload)
        except (MSPTimeoutError, NotSupportedError, PayloadFormatError) as exc:
            log.warning("mixer config read failed: %s", exc)
            return None


async def set_mixer_config(conn: MSPConnection, mixer: int) -> bool:
    """Select a mixer preset; takes effect after save and reboot."""

    require_open(conn)
    conn.context.send_log("info", f"Setting mixer to: {mixer_name(mixer)} ({mixer})")

    async def _binary() -> bool:
        await conn.request(
            MSPCommand.MSP_SET_MIXER_CONFIG,
            build_mixer_config(mixer),
            timeout=conn.profile.config_timeout,
        )
        return True

    async def _cli() -> bool:
        name = CLI_MIXER_NAMES.get(mixer, mixer_name(mixer))
        await run_cli(conn, [f"mixer {name}"], keep_open=True)
        return True

    return await write_with_fallback(conn, "SET_MIXER_CONFIG", _binary, _cli)


async def set_platform_type(conn: MSPConnection, platform: int, mixer_type: Optional[int] = None) -> bool:
    """Change the iNav platform type with read-modify-write-verify over MSP2.

    Legacy iNav only queues *mixer_type* for the next save. When MSP2 fails
    or the firmware ignores the write, ``set platform_type`` and ``mixer``
    are sent through the CLI followed by ``save``; the board then reboots.
    """

    require_open(conn)
    context = conn.context
    name = platform_name(platform)

    if context.firmware.is_legacy_inav() and mixer_type is not None:
        context.pending_mixer_type = mixer_type
        context.send_log("info", "Legacy iNav", "Mixer will be set when saving")
        return True

    async def _binary() -> StrategyResult:
        context.send_log("info", f"Setting platform to: {name}")
        current = await _read_inav_mixer(conn)
        current.platform_type = platform
        await conn.request(
            MSP2Command.INAV_SET_MIXER,
            build_inav_mixer(current),
            timeout=conn.profile.config_timeout,
            version=MSPVersion.V2,
        )
        await asyncio.sleep(conn.profile.verify_delay)
        try:
            verified = await _read_inav_mixer(conn)
        except MSPTimeoutError as exc:
            log.warning("could not verify platform change: %s", exc)
            return StrategyResult(Outcome.OK, value=True)
        if verified.platform_type != platform:
            context.send_log(
                "warning",
                "MSP2 write did not change platform",
                f"Expected {name}, got {verified.platform_name}",
            )
            error = VerificationMismatchError(f"platform is {verified.platform_name}, expected {name}")
            return StrategyResult(Outcome.RETRYABLE, error=error)
        context.send_log("info", f"Platform verified: {name}", "Save to EEPROM and reboot required")
        return StrategyResult(Outcome.OK, value=True)

    applied_via_cli = False

    async def _cli() -> bool:
        nonlocal applied_via_cli
        applied_via_cli = True
        return await _set_platform_via_cli(conn, platform, mixer_type)

    result = await write_with_fallback(conn, "INAV_SET_MIXER", _binary, _cli)
    if mixer_type is not None and not applied_via_cli:
        context.pending_mixer_type = mixer_type
        context.send_log(
            "info",
            f"Mixer {cli_mixer_for(platform, mixer_type)} queued",
            "Will be applied when saving",
        )
    return result


async def _set_platform_via_cli(conn: MSPConnection, platform: int, mixer_type: Optional[int]) -> bool:
    try:
        name = PlatformType(platform).name
    except ValueError:
        name = PlatformType.AIRPLANE.name
    mixer = cli_mixer_for(platform, mixer_type)
    conn.context.send_log("info", f"CLI: Setting mixer {mixer}", f"Platform: {name}")
    await run_cli(conn, [f"set platform_type = {name}", f"mixer {mixer}"], keep_open=True)
    transcript = await conn.cli.save()
    conn.context.pending_mixer_type = None
    conn.context.send_log(
        "info",
        "CLI commands sent",
        "Board rebooting, reconnect to verify" if transcript.transport_closed else "Reconnect to verify",
    )
    return True


async def get_vehicle_type(conn: MSPConnection) -> Optional[str]:
    if conn.context.firmware.is_inav:
        config = await get_inav_mixer_config(conn)
        if config is None:
            return None
        return VEHICLE_NAMES.get(config.platform_type, "Unknown")
    mixer = await get_mixer_config(conn)
    if mixer is None:
        return None
    return "Multirotor" if mixer.is_multirotor else "Fixed-wing"
