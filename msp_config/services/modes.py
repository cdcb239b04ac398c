"""Flight-mode ranges and box metadata."""

from __future__ import annotations

import logging
from typing import List, Optional

from ..core.commands import MSPCommand
from ..core.connection import MSPConnection
from ..core.parsers import (
    ModeRange,
    active_mode_ranges,
    build_set_mode_range,
    mode_range_cli,
    parse_box_ids,
    parse_box_names,
    parse_mode_ranges,
)
from .common import read_command, require_open, run_cli, write_with_fallback

log = logging.getLogger(__name__)

BOX_TIMEOUT = 2.0


async def get_mode_ranges(conn: MSPConnection) -> Optional[List[ModeRange]]:
    """Return the active mode ranges, or ``None`` when they cannot be read."""

    ranges = await read_command(
        conn,
        MSPCommand.MSP_MODE_RANGES,
        parse_mode_ranges,
        timeout=conn.profile.mode_ranges_timeout,
    )
    if ranges is None:
        return None
    return active_mode_ranges(ranges)


async def get_box_names(conn: MSPConnection) -> Optional[List[str]]:
    return await read_command(conn, MSPCommand.MSP_BOXNAMES, parse_box_names, timeout=BOX_TIMEOUT)


async def get_box_ids(conn: MSPConnection) -> Optional[List[int]]:
    return await read_command(conn, MSPCommand.MSP_BOXIDS, parse_box_ids, timeout=BOX_TIMEOUT)


async def set_mode_range(conn: MSPConnection, mode: ModeRange) -> bool:
    """Write one mode range slot, falling back to the ``aux`` CLI command."""

    require_open(conn)
    if conn.cli.active:
        return await set_mode_range_via_cli(conn, mode)

    async def _binary() -> bool:
        if mode.is_active:
            conn.context.send_log(
                "info",
                f"Setting mode {mode.index}: boxId={mode.box_id} aux={mode.aux_channel} "
                f"range={mode.range_start}-{mode.range_end}",
            )
        await conn.request(
            MSPCommand.MSP_SET_MODE_RANGE,
            build_set_mode_range(mode),
            timeout=conn.profile.config_timeout,
        )
        return True

    async def _cli() -> bool:
        return await set_mode_range_via_cli(conn, mode)

    return await write_with_fallback(conn, "SET_MODE_RANGE", _binary, _cli)


async def set_mode_range_via_cli(conn: MSPConnection, mode: ModeRange) -> bool:
    """Send ``aux`` for *mode*; the session stays open until the next save."""

    await run_cli(conn, [mode_range_cli(mode)], keep_open=True)
    conn.context.send_log("info", f"Mode {mode.index} set via CLI", "Save to apply")
    return True
