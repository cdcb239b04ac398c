"""Read and write paths shared by the configuration services."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from ..core.cli_bridge import CliTranscript
from ..core.commands import command_name
from ..core.connection import MSPConnection
from ..core.msp import (
    CliModeActiveError,
    MSPTimeoutError,
    MSPVersion,
    NotSupportedError,
    PayloadFormatError,
    TransportClosedError,
)
from ..core.strategies import StrategyResult, run_strategies

log = logging.getLogger(__name__)

T = TypeVar("T")


def require_open(conn: MSPConnection) -> None:
    if not conn.is_open:
        raise TransportClosedError("not connected")


async def read_command(
    conn: MSPConnection,
    command: int,
    parser: Callable[[bytes], T],
    *,
    timeout: Optional[float] = None,
    version: Optional[MSPVersion] = None,
) -> Optional[T]:
    """Request *command* under the config lock and parse the reply.

    Returns ``None`` when the value is unknown. Only an explicit rejection or
    an undecodable payload marks the command unsupported; timeouts and CLI
    blocks are transient.
    """

    require_open(conn)
    tracker = conn.context.unsupported
    if tracker.is_unsupported(command):
        log.debug("skipping %s: marked unsupported", command_name(command))
        return None
    async with conn.config_lock:
        try:
            payload = await conn.request(command, timeout=timeout, version=version)
            value = parser(payload)
        except PayloadFormatError as exc:
            log.warning("%s reply could not be decoded: %s", command_name(command), exc)
            tracker.mark_unsupported(command)
            return None
        except NotSupportedError:
            return None
        except (MSPTimeoutError, CliModeActiveError) as exc:
            log.debug("%s read failed: %s", command_name(command), exc)
            return None
    tracker.clear_unsupported(command)
    return value


async def write_with_fallback(
    conn: MSPConnection,
    label: str,
    binary: Callable[[], Awaitable[T]],
    cli: Callable[[], Awaitable[T]],
) -> T:
    """Run *binary* and fall back to *cli* on a timeout, rejection or CLI block."""

    require_open(conn)

    def _warn(result: StrategyResult) -> None:
        conn.context.send_log("warning", f"MSP {label} failed ({result.error}), trying CLI...")

    async with conn.config_lock:
        result = await run_strategies([("msp", binary), ("cli", cli)], on_retry=_warn)
    if not result.ok:
        conn.context.send_log("error", f"{label} failed", str(result.error))
    return result.unwrap()


async def run_cli(
    conn: MSPConnection,
    lines: Iterable[str],
    *,
    keep_open: bool = False,
    capture: bool = False,
) -> CliTranscript:
    """Run *lines* through the CLI bridge, raising if the link went away."""

    require_open(conn)
    async with conn.config_lock:
        transcript = await conn.cli.run(lines, keep_open=keep_open, capture=capture)
    if transcript.transport_closed:
        raise TransportClosedError("transport closed during CLI session")
    return transcript
