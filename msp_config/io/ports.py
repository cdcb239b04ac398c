"""Serial port discovery utilities."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Sequence

import serial.tools.list_ports

SIM_PREFIX = "sim://"
SIMULATED_PORT = SIM_PREFIX + "fc"

# STM32 VCP plus the USB-UART bridges found on flight controllers
WHITELIST_DEFAULT_VID: set[int] = {0x0483, 0x10C4, 0x1A86, 0x0403}
WHITELIST_DEFAULT_PID: set[int] = {0x5740, 0xEA60, 0x7523, 0x6001, 0x6015}


@dataclass
class PortFilterConfig:
    """Configuration used when filtering serial ports."""

    enforce_whitelist: bool = True
    whitelist_vid: set[int] = field(default_factory=lambda: set(WHITELIST_DEFAULT_VID))
    whitelist_pid: set[int] = field(default_factory=lambda: set(WHITELIST_DEFAULT_PID))
    allowed_prefixes: Sequence[str] = ("/dev/ttyACM", "/dev/ttyUSB", "/dev/cu.usbmodem", "COM")
    include_simulated: bool = False

    def allow(self, vid: int | None, pid: int | None) -> bool:
        if not self.enforce_whitelist:
            return True
        if vid is None or pid is None:
            # unknown VID/PID is rejected while the whitelist is enforced
            return False
        return vid in self.whitelist_vid and pid in self.whitelist_pid


@dataclass
class PortDescriptor:
    """Metadata describing an available serial interface."""

    device: str
    description: str
    hwid: str
    vid: int | None = None
    pid: int | None = None
    manufacturer: str | None = None
    product: str | None = None
    serial_number: str | None = None
    simulated: bool = False

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def is_simulated(device: str) -> bool:
    return device.startswith(SIM_PREFIX)


def _is_candidate(device: str, prefixes: Sequence[str]) -> bool:
    return any(device.startswith(prefix) for prefix in prefixes)


def list_ports(config: PortFilterConfig | None = None) -> List[PortDescriptor]:
    """Discover serial ports that look like flight controllers.

    With ``include_simulated`` the built-in simulated controller is listed too.
    """

    config = config or PortFilterConfig()
    ports: List[PortDescriptor] = []
    for entry in serial.tools.list_ports.comports():
        device = entry.device or ""
        if not device or not _is_candidate(device, config.allowed_prefixes):
            # skips system ports such as /dev/ttyS*
            continue
        vid = getattr(entry, "vid", None)
        pid = getattr(entry, "pid", None)
        if not config.allow(vid, pid):
            continue
        ports.append(
            PortDescriptor(
                device=device,
                description=entry.description or "",
                hwid=entry.hwid or "",
                vid=vid,
                pid=pid,
                manufacturer=getattr(entry, "manufacturer", None),
                product=getattr(entry, "product", None),
                serial_number=getattr(entry, "serial_number", None),
            )
        )
    if config.include_simulated:
        ports.append(
            PortDescriptor(
                device=SIMULATED_PORT,
                description="Simulated flight controller",
                hwid="SIM",
                simulated=True,
            )
        )
    ports.sort(key=lambda p: p.device)
    return ports


def list_port_strings(config: PortFilterConfig | None = None) -> List[str]:
    return [p.device for p in list_ports(config)]
