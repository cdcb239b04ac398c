"""Motor (mmix) and servo (smix) mixer rules."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from ..core.commands import MSP2Command
from ..core.connection import MSPConnection
from ..core.msp import MSPVersion
from ..core.parsers import (
    MotorMixerRule,
    ServoMixerRule,
    build_motor_mixer_rule,
    build_servo_mixer_rule,
    motor_mixer_cli,
    parse_mmix_listing,
    parse_motor_mixer,
    parse_servo_mixer,
    parse_smix_listing,
    servo_mixer_cli,
)
from .common import read_command, require_open, run_cli, write_with_fallback
from .mixer import get_inav_mixer_config

log = logging.getLogger(__name__)

SERVO_RULE_TIMEOUT = 0.5


async def get_motor_mixer(conn: MSPConnection) -> Optional[List[MotorMixerRule]]:
    """Read the motor mixer, trimmed to the motor count the firmware reports."""

    require_open(conn)
    if conn.cli.active:
        return None
    mixer = await get_inav_mixer_config(conn)
    expected = mixer.number_of_motors if mixer is not None else 0
    if expected <= 0:
        conn.context.send_log("info", "Motor mixer: 0 motors configured")
        return []
    rules = await read_command(
        conn,
        MSP2Command.COMMON_MOTOR_MIXER,
        parse_motor_mixer,
        version=MSPVersion.V2,
    )
    if rules is None:
        return []
    rules = rules[:expected]
    conn.context.send_log("info", "Motor mixer loaded via MSP", f"{len(rules)} motors (expected {expected})")
    return rules


async def set_motor_mixer(conn: MSPConnection, rules: Sequence[MotorMixerRule]) -> bool:
    require_open(conn)
    if not rules:
        conn.context.send_log("info", "Motor mixer: no rules to set")
        return True

    async def _binary() -> bool:
        for index, rule in enumerate(rules):
            await conn.request(
                MSP2Command.COMMON_SET_MOTOR_MIXER,
                build_motor_mixer_rule(index, rule),
                timeout=conn.profile.request_timeout,
                version=MSPVersion.V2,
            )
            log.debug("motor %d set: %s", index, rule)
        conn.context.send_log("info", "Motor mixer rules set via MSP", f"{len(rules)} motors")
        return True

    async def _cli() -> bool:
        return await set_motor_mixer_via_cli(conn, rules)

    return await write_with_fallback(conn, "COMMON_SET_MOTOR_MIXER", _binary, _cli)


async def set_motor_mixer_via_cli(conn: MSPConnection, rules: Sequence[MotorMixerRule]) -> bool:
    lines = ["mmix reset"] + [motor_mixer_cli(index, rule) for index, rule in enumerate(rules)]
    await run_cli(conn, lines)
    conn.context.send_log("info", "Motor mixer rules set via CLI", f"{len(rules)} rules")
    return True


async def read_mmix_via_cli(conn: MSPConnection) -> Optional[List[Tuple[int, MotorMixerRule]]]:
    transcript = await run_cli(conn, ["mmix"], capture=True)
    rules = parse_mmix_listing(transcript.output)
    conn.context.send_log("info", "CLI mmix read", f"{len(rules)} rules found")
    return rules or None


async def get_servo_mixer(conn: MSPConnection) -> Optional[List[ServoMixerRule]]:
    require_open(conn)
    if conn.cli.active:
        return None
    return await read_command(
        conn,
        MSP2Command.INAV_SERVO_MIXER,
        parse_servo_mixer,
        version=MSPVersion.V2,
    )


async def set_servo_mixer(conn: MSPConnection, rules: Sequence[ServoMixerRule]) -> bool:
    """Write servo mixer rules; the CLI path leaves the session open for ``save``."""

    require_open(conn)
    if conn.cli.active:
        return await set_servo_mixer_via_cli(conn, rules)

    async def _binary() -> bool:
        for index, rule in enumerate(rules):
            await conn.request(
                MSP2Command.INAV_SET_SERVO_MIXER,
                build_servo_mixer_rule(index, rule),
                timeout=SERVO_RULE_TIMEOUT,
                version=MSPVersion.V2,
            )
        conn.context.send_log("info", "Servo mixer rules set via MSP", f"{len(rules)} rules")
        return True

    async def _cli() -> bool:
        return await set_servo_mixer_via_cli(conn, rules)

    return await write_with_fallback(conn, "INAV_SET_SERVO_MIXER", _binary, _cli)


async def set_servo_mixer_via_cli(conn: MSPConnection, rules: Sequence[ServoMixerRule]) -> bool:
    lines = ["smix reset"] + [servo_mixer_cli(index, rule) for index, rule in enumerate(rules)]
    await run_cli(conn, lines, keep_open=True)
    conn.context.send_log("info", "Servo mixer rules set via CLI", f"{len(rules)} rules")
    return True


async def read_smix_via_cli(conn: MSPConnection) -> Optional[List[Tuple[int, ServoMixerRule]]]:
    transcript = await run_cli(conn, ["smix"], capture=True)
    rules = parse_smix_listing(transcript.output)
    conn.context.send_log("info", "CLI smix read", f"{len(rules)} rules found")
    return rules or None
