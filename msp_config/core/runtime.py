"""Opening connections to real or simulated flight controllers."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import serial

from ..io.ports import is_simulated
from ..io.recorder import MSPRecorder
from ..io.simulator import SimulatedFC, SimulatedTransport
from ..io.transport import SerialTransport, UdpTransport
from .config import Profile
from .connection import MSPConnection
from .context import LogSink
from .msp import TransportClosedError
from .telemetry import TelemetryPoller

log = logging.getLogger(__name__)

DEFAULT_BAUD = 115200
UDP_PREFIX = "udp://"


def friendly_serial_error(exc: Exception) -> str:
    message = str(exc)
    if isinstance(exc, PermissionError) or "Permission" in message:
        return "Permission denied (add the user to the dialout group)"
    if "FileNotFoundError" in message or "No such file" in message:
        return "Port not available"
    if "Device or resource busy" in message or "Resource busy" in message:
        return "Port busy (ModemManager?)"
    if isinstance(exc, serial.SerialTimeoutException):
        return "Timed out talking to the port"
    return message or "Unknown error"


def create_transport(port: str, baudrate: int = DEFAULT_BAUD, *, fc: Optional[SimulatedFC] = None):
    if is_simulated(port):
        return SimulatedTransport(fc, url=port)
    if port.startswith(UDP_PREFIX):
        return UdpTransport(port)
    # pyserial handles device paths as well as socket:// (TCP) URLs
    return SerialTransport(port, baudrate)


async def open_connection(
    port: str,
    *,
    baudrate: int = DEFAULT_BAUD,
    profile: Optional[Profile] = None,
    record_path: Optional[str] = None,
    log_sink: Optional[LogSink] = None,
    telemetry_rates: Optional[Dict[str, float]] = None,
    fc: Optional[SimulatedFC] = None,
) -> MSPConnection:
    """Open *port* and return a connection with telemetry attached but idle.

    Serial errors are reported as :class:`TransportClosedError` carrying a
    readable reason.
    """

    try:
        transport = create_transport(port, baudrate, fc=fc)
        await transport.open()
    except (serial.SerialException, OSError, ValueError) as exc:
        raise TransportClosedError(friendly_serial_error(exc)) from exc
    recorder = MSPRecorder(record_path) if record_path else None
    conn = MSPConnection(transport, profile, port=port, recorder=recorder, log_sink=log_sink)
    conn.attach_telemetry(TelemetryPoller(conn, telemetry_rates))
    conn.context.send_log("info", f"Connected to {port}")
    return conn
