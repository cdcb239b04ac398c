from __future__ import annotations

from types import SimpleNamespace

import pytest

from msp_config.core.runtime import create_transport, friendly_serial_error
from msp_config.io.ports import PortFilterConfig, is_simulated, list_port_strings, list_ports
from msp_config.io.simulator import SimulatedTransport
from msp_config.io.transport import SerialTransport, UdpTransport, parse_udp_url


def _make_port(device: str, vid: int | None = None, pid: int | None = None):
    return SimpleNamespace(
        device=device,
        description=f"Port {device}",
        hwid="USB VID:PID",
        vid=vid,
        pid=pid,
        manufacturer="Vendor",
        product="Product",
        serial_number="1234",
    )


@pytest.fixture(autouse=True)
def fake_ports(monkeypatch):
    found = {"ports": []}
    monkeypatch.setattr("serial.tools.list_ports.comports", lambda: found["ports"])
    return found


def test_filters_out_system_ports(fake_ports):
    fake_ports["ports"] = [
        _make_port("/dev/ttyS0", vid=0x0483, pid=0x5740),
        _make_port("/dev/ttyACM0", vid=0x0483, pid=0x5740),
    ]
    assert list_port_strings() == ["/dev/ttyACM0"]


def test_requires_whitelisted_vid_pid(fake_ports):
    fake_ports["ports"] = [
        _make_port("/dev/ttyACM1", vid=0x1111, pid=0x2222),
        _make_port("/dev/ttyUSB0", vid=0x10C4, pid=0xEA60),
        _make_port("/dev/ttyUSB1", vid=None, pid=None),
    ]
    assert list_port_strings() == ["/dev/ttyUSB0"]


def test_can_disable_whitelist(fake_ports):
    fake_ports["ports"] = [
        _make_port("/dev/ttyUSB1", vid=0x1111, pid=0x2222),
        _make_port("/dev/ttyACM2", vid=None, pid=None),
    ]
    config = PortFilterConfig(enforce_whitelist=False)
    assert list_port_strings(config) == ["/dev/ttyACM2", "/dev/ttyUSB1"]


def test_includes_simulated_when_requested(fake_ports):
    fake_ports["ports"] = [_make_port("/dev/ttyACM3", vid=0x0483, pid=0x5740)]
    ports = list_ports(PortFilterConfig(include_simulated=True))
    assert [p.device for p in ports] == ["/dev/ttyACM3", "sim://fc"]
    assert ports[1].simulated is True
    assert ports[0].to_dict()["manufacturer"] == "Vendor"


def test_transport_selection():
    assert is_simulated("sim://fc")
    assert isinstance(create_transport("sim://fc"), SimulatedTransport)
    assert isinstance(create_transport("/dev/ttyACM0", 57600), SerialTransport)
    assert isinstance(create_transport("socket://127.0.0.1:5760"), SerialTransport)
    udp = create_transport("udp://127.0.0.1:5761")
    assert isinstance(udp, UdpTransport)
    assert (udp.host, udp.port) == ("127.0.0.1", 5761)
    assert parse_udp_url("udp://:5762") == ("", 5762)
    with pytest.raises(ValueError):
        parse_udp_url("udp://127.0.0.1")


def test_friendly_serial_errors():
    assert friendly_serial_error(PermissionError(13, "Permission denied")).startswith("Permission denied")
    assert friendly_serial_error(OSError("[Errno 2] No such file or directory")) == "Port not available"
    assert friendly_serial_error(OSError("Device or resource busy")) == "Port busy (ModemManager?)"
