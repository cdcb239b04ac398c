"""Firmware identification and status."""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from ..core.commands import MSP2Command, MSPCommand
from ..core.config import ProfileError, resolve_profile
from ..core.connection import MSPConnection
from ..core.context import FirmwareInfo
from ..core.msp import MSPTimeoutError, MSPVersion, NotSupportedError, PayloadFormatError
from ..core import parsers
from .common import read_command, require_open

log = logging.getLogger(__name__)


def profile_for_firmware(info: FirmwareInfo) -> str:
    if info.is_legacy_inav():
        return "legacy_inav"
    if info.is_inav:
        return "inav"
    return "betaflight"


async def identify(
    conn: MSPConnection,
    profiles: Optional[Mapping[str, Mapping[str, object]]] = None,
) -> FirmwareInfo:
    """Query API version, variant, version and board, and record them.

    Individual failures only leave the matching field empty. When *profiles*
    is given the timing profile for the detected firmware family is applied.
    """

    require_open(conn)
    info = conn.context.firmware
    reasons = []
    for command, attr, parser in (
        (MSPCommand.MSP_API_VERSION, "api_version", parsers.parse_api_version),
        (MSPCommand.MSP_FC_VARIANT, "variant", parsers.parse_fc_variant),
        (MSPCommand.MSP_FC_VERSION, "version", parsers.parse_fc_version),
        (MSPCommand.MSP_BOARD_INFO, "board_id", parsers.parse_board_info),
        (MSPCommand.MSP_BUILD_INFO, "build_info", parsers.parse_build_info),
    ):
        try:
            payload = await conn.request(command)
            setattr(info, attr, parser(payload))
        except (MSPTimeoutError, NotSupportedError, PayloadFormatError) as exc:
            reasons.append(f"{attr}: {exc}")

    try:
        payload = await conn.request(MSPCommand.MSP_NAME)
        info.name = payload.decode("ascii", errors="ignore").strip("\x00") or None
    except (MSPTimeoutError, NotSupportedError):
        # craft name is optional; older firmware does not answer it
        pass

    if reasons:
        log.warning("identify incomplete: %s", "; ".join(reasons))
    conn.context.send_log(
        "info",
        f"Connected to {info.variant or 'unknown'} {info.version or ''}".strip(),
        f"API {info.api_version}, board {info.board_id}",
    )

    if profiles is not None:
        name = profile_for_firmware(info)
        try:
            conn.apply_profile(resolve_profile(name, profiles))
        except ProfileError as exc:
            log.warning("keeping profile %s: %s", conn.profile.name, exc)
    return info


async def get_status(conn: MSPConnection) -> Optional[Dict[str, object]]:
    if conn.context.firmware.is_inav:
        return await read_command(
            conn,
            MSP2Command.INAV_STATUS,
            parsers.parse_inav_status,
            version=MSPVersion.V2,
        )
    return await read_command(conn, MSPCommand.MSP_STATUS, parsers.parse_status)
