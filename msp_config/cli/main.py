"""Command line interface for msp-config."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from ..core.config import ProfileError, load_profiles, resolve_profile
from ..core.connection import MSPConnection
from ..core.msp import (
    CliModeActiveError,
    MSPError,
    MSPTimeoutError,
    NotSupportedError,
    TransportClosedError,
    VerificationMismatchError,
)
from ..core.parsers import (
    FeatureConfig,
    ModeRange,
    PlatformType,
    build_box_mapping,
    feature_bit,
)
from ..core.runtime import DEFAULT_BAUD, open_connection
from ..io.json_writer import EventLogWriter
from ..io.ports import SIMULATED_PORT, PortFilterConfig, list_port_strings, list_ports
from ..services import eeprom, features, info, mixer, modes, motor_mixer

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_NOT_CONNECTED = 3
EXIT_MISMATCH = 4
EXIT_UNAVAILABLE = 5

_EXIT_CODES = [
    (TransportClosedError, EXIT_NOT_CONNECTED),
    (VerificationMismatchError, EXIT_MISMATCH),
    (CliModeActiveError, EXIT_UNAVAILABLE),
    (MSPTimeoutError, EXIT_UNAVAILABLE),
    (NotSupportedError, EXIT_UNAVAILABLE),
]


def exit_code_for(exc: MSPError) -> int:
    for exc_type, code in _EXIT_CODES:
        if isinstance(exc, exc_type):
            return code
    return EXIT_FAILED


def _int(value: str) -> int:
    return int(value, 0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="msp-config", description="Configure MSP flight controllers (Betaflight / iNav)"
    )
    parser.add_argument("--port", help="Serial port, socket:// or udp:// URL (default: first detected)")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD, help="Baud rate")
    parser.add_argument("--simulate", action="store_true", help="Use the simulated flight controller")
    parser.add_argument("--record", help="Path to MSP record file (.msp.zst)")
    parser.add_argument("--profile", help="Timing profile (default: chosen from the firmware)")
    parser.add_argument("--config", help="Alternative profile configuration file")
    parser.add_argument("--jsonl", help="Append user-facing events to this JSON lines file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    ports = sub.add_parser("ports", help="List candidate serial ports")
    ports.add_argument(
        "--disable-whitelist",
        action="store_true",
        help="Allow all ports regardless of VID/PID",
    )
    ports.add_argument("--include-sim", action="store_true", help="Include the sim:// port")

    sub.add_parser("info", help="Identify the firmware and show status")
    sub.add_parser("modes", help="Show active mode ranges and boxes")

    set_mode = sub.add_parser("set-mode", help="Write one mode range slot")
    set_mode.add_argument("index", type=int)
    set_mode.add_argument("box_id", type=int)
    set_mode.add_argument("aux_channel", type=int)
    set_mode.add_argument("range_start", type=int, help="PWM, e.g. 1300")
    set_mode.add_argument("range_end", type=int, help="PWM, e.g. 1700")
    set_mode.add_argument("--save", action="store_true", help="Save to EEPROM afterwards")

    sub.add_parser("features", help="Show the feature bitmask")
    set_features = sub.add_parser("set-features", help="Write the feature bitmask")
    group = set_features.add_mutually_exclusive_group(required=True)
    group.add_argument("--mask", type=_int, help="Bitmask, e.g. 0x20")
    group.add_argument("--names", help="Comma separated feature names, e.g. GPS,OSD")
    set_features.add_argument("--save", action="store_true", help="Save to EEPROM afterwards")

    sub.add_parser("mixer", help="Show platform and mixer configuration")
    set_platform = sub.add_parser("set-platform", help="Change the platform type")
    set_platform.add_argument("platform", help="Platform name or number, e.g. AIRPLANE")
    set_platform.add_argument("--mixer", type=int, dest="mixer_type", help="Mixer preset to apply")
    set_platform.add_argument("--save", action="store_true", help="Save to EEPROM afterwards")

    motor = sub.add_parser("motor-mixer", help="Show motor mixer rules")
    motor.add_argument("--cli", action="store_true", help="Read through the CLI `mmix` listing")
    servo = sub.add_parser("servo-mixer", help="Show servo mixer rules")
    servo.add_argument("--cli", action="store_true", help="Read through the CLI `smix` listing")

    sub.add_parser("save", help="Save settings to EEPROM")
    return parser


def _platform(value: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        pass
    try:
        return PlatformType[value.upper()]
    except KeyError:
        raise ValueError(f"unknown platform '{value}'") from None


async def _cmd_info(conn: MSPConnection, args: argparse.Namespace) -> Dict:
    data = conn.context.firmware.to_dict()
    data["profile"] = conn.profile.name
    data["status"] = await info.get_status(conn)
    return data


async def _cmd_modes(conn: MSPConnection, args: argparse.Namespace) -> Dict:
    ranges = await modes.get_mode_ranges(conn)
    names = await modes.get_box_names(conn) or []
    ids = await modes.get_box_ids(conn) or []
    return {
        "ranges": None if ranges is None else [mode.to_dict() for mode in ranges],
        "boxes": build_box_mapping(names, ids),
    }


async def _maybe_save(conn: MSPConnection, args: argparse.Namespace) -> bool:
    if getattr(args, "save", False):
        return await eeprom.save_eeprom(conn)
    return False


async def _cmd_set_mode(conn: MSPConnection, args: argparse.Namespace) -> Dict:
    mode = ModeRange(args.index, args.box_id, args.aux_channel, args.range_start, args.range_end)
    ok = await modes.set_mode_range(conn, mode)
    return {"ok": ok, "mode": mode.to_dict(), "saved": await _maybe_save(conn, args)}


async def _cmd_features(conn: MSPConnection, args: argparse.Namespace) -> Optional[Dict]:
    mask = await features.get_features(conn)
    return None if mask is None else FeatureConfig(mask).to_dict()


async def _cmd_set_features(conn: MSPConnection, args: argparse.Namespace) -> Dict:
    if args.mask is not None:
        mask = args.mask
    else:
        mask = 0
        for name in filter(None, (part.strip() for part in args.names.split(","))):
            mask |= 1 << feature_bit(name)
    ok = await features.set_features(conn, mask)
    return {"ok": ok, **FeatureConfig(mask).to_dict(), "saved": await _maybe_save(conn, args)}


async def _cmd_mixer(conn: MSPConnection, args: argparse.Namespace) -> Dict:
    config = await mixer.get_inav_mixer_config(conn)
    return {
        "config": None if config is None else config.to_dict(),
        "vehicle": await mixer.get_vehicle_type(conn),
    }


async def _cmd_set_platform(conn: MSPConnection, args: argparse.Namespace) -> Dict:
    platform = _platform(args.platform)
    ok = await mixer.set_platform_type(conn, platform, args.mixer_type)
    saved = await _maybe_save(conn, args) if conn.is_open else False
    return {"ok": ok, "platform": platform, "saved": saved}


async def _cmd_motor_mixer(conn: MSPConnection, args: argparse.Namespace):
    if args.cli:
        rows = await motor_mixer.read_mmix_via_cli(conn) or []
        return [{"index": index, **rule.to_dict()} for index, rule in rows]
    rules = await motor_mixer.get_motor_mixer(conn)
    return None if rules is None else [rule.to_dict() for rule in rules]


async def _cmd_servo_mixer(conn: MSPConnection, args: argparse.Namespace):
    if args.cli:
        rows = await motor_mixer.read_smix_via_cli(conn) or []
        return [{"index": index, **rule.to_dict()} for index, rule in rows]
    rules = await motor_mixer.get_servo_mixer(conn)
    return None if rules is None else [rule.to_dict() for rule in rules]


async def _cmd_save(conn: MSPConnection, args: argparse.Namespace) -> Dict:
    return {"saved": await eeprom.save_eeprom(conn)}


COMMANDS: Dict[str, Callable[[MSPConnection, argparse.Namespace], Awaitable[object]]] = {
    "info": _cmd_info,
    "modes": _cmd_modes,
    "set-mode": _cmd_set_mode,
    "features": _cmd_features,
    "set-features": _cmd_set_features,
    "mixer": _cmd_mixer,
    "set-platform": _cmd_set_platform,
    "motor-mixer": _cmd_motor_mixer,
    "servo-mixer": _cmd_servo_mixer,
    "save": _cmd_save,
}


def _print(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def _list_ports(args: argparse.Namespace) -> int:
    config = PortFilterConfig(
        enforce_whitelist=not args.disable_whitelist,
        include_simulated=args.include_sim or args.simulate,
    )
    _print([port.to_dict() for port in list_ports(config)])
    return EXIT_OK


async def run_cli(args: argparse.Namespace) -> int:
    if args.command == "ports":
        return _list_ports(args)

    try:
        profiles = load_profiles(Path(args.config) if args.config else None)
        profile_name = args.profile or ("sim" if args.simulate else None)
        profile = resolve_profile(profile_name, profiles) if profile_name else None
    except ProfileError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    port = SIMULATED_PORT if args.simulate else args.port
    if not port:
        candidates = list_port_strings()
        if not candidates:
            print("error: no flight controller found, pass --port", file=sys.stderr)
            return EXIT_NOT_CONNECTED
        port = candidates[0]

    sink = EventLogWriter(args.jsonl) if args.jsonl else None
    conn: Optional[MSPConnection] = None
    try:
        conn = await open_connection(
            port,
            baudrate=args.baud,
            profile=profile,
            record_path=args.record,
            log_sink=sink,
        )
        # an explicit profile is never replaced by the detected one
        await info.identify(conn, None if profile is not None else profiles)
        _print(await COMMANDS[args.command](conn, args))
    except (MSPError, ValueError, KeyError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        if isinstance(exc, MSPError):
            return exit_code_for(exc)
        return EXIT_USAGE
    finally:
        if conn is not None:
            await conn.close()
        if sink is not None:
            sink.close()
    return EXIT_OK


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run_cli(args))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
