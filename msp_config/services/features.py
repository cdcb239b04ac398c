"""Feature bitmask read/write."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from ..core.commands import MSPCommand
from ..core.connection import MSPConnection
from ..core.msp import VerificationMismatchError
from ..core.parsers import (
    build_feature_config,
    feature_cli_lines,
    parse_feature_config,
)
from ..core.parsers import feature_names as _feature_names
from .common import read_command, require_open, run_cli, write_with_fallback

log = logging.getLogger(__name__)


async def get_features(conn: MSPConnection) -> Optional[int]:
    config = await read_command(conn, MSPCommand.MSP_FEATURE_CONFIG, parse_feature_config)
    if config is None:
        return None
    log.debug("features 0x%08x (%s)", config.features, ", ".join(config.names))
    return config.features


def feature_names(mask: int) -> List[str]:
    return _feature_names(mask)


async def set_features(conn: MSPConnection, features: int) -> bool:
    """Write *features*, read them back and insist they match.

    Raises :class:`VerificationMismatchError` when the firmware stored a
    different mask, for example because a feature is not compiled in.
    """

    require_open(conn)
    features &= 0xFFFFFFFF
    if conn.cli.active:
        return await set_features_via_cli(conn, features)

    async def _binary() -> bool:
        await conn.request(
            MSPCommand.MSP_SET_FEATURE_CONFIG,
            build_feature_config(features),
            timeout=conn.profile.request_timeout,
        )
        await asyncio.sleep(conn.profile.verify_delay)
        payload = await conn.request(MSPCommand.MSP_FEATURE_CONFIG, timeout=conn.profile.request_timeout)
        stored = parse_feature_config(payload).features
        if stored != features:
            raise VerificationMismatchError(
                f"features: wrote 0x{features:08x} but read back 0x{stored:08x}"
            )
        return True

    async def _cli() -> bool:
        return await set_features_via_cli(conn, features)

    return await write_with_fallback(conn, "SET_FEATURE_CONFIG", _binary, _cli)


async def set_features_via_cli(conn: MSPConnection, features: int, current: Optional[int] = None) -> bool:
    """Apply *features* with ``feature`` lines; not verified, takes effect on save."""

    lines = feature_cli_lines(features, current)
    if not lines:
        return True
    await run_cli(conn, lines, keep_open=True)
    conn.context.send_log("info", "Features set via CLI", f"{len(lines)} changes, save to apply")
    return True
