"""In-memory flight controller speaking MSP v1/v2 and the text CLI.

Used by ``sim://`` ports and the test-suite. Replies are always delivered
in request order, optionally after a per-command delay, and the knobs on
:class:`SimulatedFC` reproduce the awkward firmware behaviours the
configuration services have to cope with.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..core.commands import MSP2Command, MSPCommand
from ..core.msp import Direction, FrameDecoder, MSPFrame, encode_frame
from ..core.parsers import (
    FEATURE_FLAGS,
    MIXER_TYPES,
    MOTOR_MIXER_OFFSET,
    MOTOR_MIXER_SCALE,
    InavMixerConfig,
    PlatformType,
    ServoMixerRule,
)
from .transport import BaseTransport

log = logging.getLogger(__name__)

MODE_RANGE_SLOTS = 20
MOTOR_SLOTS = 12
CLI_BANNER = "\r\nEntering CLI Mode, type 'exit' to return, or 'help'\r\n"
CLI_PROMPT = "\r\n# "

QUAD_X = [
    (1.0, -1.0, 1.0, -1.0),
    (1.0, -1.0, -1.0, 1.0),
    (1.0, 1.0, 1.0, 1.0),
    (1.0, 1.0, -1.0, -1.0),
]


def _motor_raw(value: float) -> int:
    return int(round((value + MOTOR_MIXER_OFFSET) * MOTOR_MIXER_SCALE))


@dataclass
class SimulatedFC:
    """Configuration state and behaviour knobs of the simulated board."""

    variant: str = "INAV"
    version: Tuple[int, int, int] = (7, 1, 0)
    api_version: Tuple[int, int, int] = (0, 2, 5)
    board_id: str = "SITL"
    craft_name: str = "SIMFC"
    features: int = (1 << 4) | (1 << 22)
    mixer: int = 3
    inav_mixer: InavMixerConfig = field(
        default_factory=lambda: InavMixerConfig(
            platform_type=PlatformType.MULTIROTOR,
            applied_mixer_preset=3,
            number_of_motors=4,
        )
    )
    mode_ranges: List[List[int]] = field(
        default_factory=lambda: [[0, 0, 32, 48]] + [[0, 0, 0, 0] for _ in range(MODE_RANGE_SLOTS - 1)]
    )
    box_names: List[str] = field(default_factory=lambda: ["ARM", "ANGLE", "HORIZON", "NAV ALTHOLD"])
    box_ids: List[int] = field(default_factory=lambda: [0, 1, 2, 3])
    motor_rules: List[Optional[Tuple[float, float, float, float]]] = field(
        default_factory=lambda: list(QUAD_X) + [None] * (MOTOR_SLOTS - len(QUAD_X))
    )
    servo_rules: List[ServoMixerRule] = field(default_factory=list)
    cycle_time: int = 1000
    attitude: Tuple[int, int, int] = (0, 0, 0)

    # behaviour knobs
    latency: float = 0.001
    delays: Dict[int, float] = field(default_factory=dict)
    unsupported: Set[int] = field(default_factory=set)
    silent: Set[int] = field(default_factory=set)
    rejected_feature_bits: int = 0
    ignore_platform_writes: bool = False
    prompt_echo: bool = True
    close_after_cli_lines: Optional[int] = None
    reboot_on_save: bool = True

    # observations
    cli_lines: List[str] = field(default_factory=list)
    saved: int = 0

    @property
    def active_motors(self) -> int:
        return sum(1 for rule in self.motor_rules if rule is not None)

    # -- binary handlers ---------------------------------------------------

    def handle(self, command: int, payload: bytes) -> Optional[bytes]:
        """Return the reply payload, or ``None`` to answer with an error frame."""

        handler = self._handlers().get(command)
        if handler is None:
            return None
        return handler(payload)

    def _handlers(self) -> Dict[int, Callable[[bytes], Optional[bytes]]]:
        return {
            MSPCommand.MSP_API_VERSION: lambda _: bytes(self.api_version),
            MSPCommand.MSP_FC_VARIANT: lambda _: self.variant.encode("ascii")[:4],
            MSPCommand.MSP_FC_VERSION: lambda _: bytes(self.version),
            MSPCommand.MSP_BOARD_INFO: lambda _: self.board_id.encode("ascii")[:4].ljust(4, b"\x00"),
            MSPCommand.MSP_BUILD_INFO: lambda _: b"Oct 19 202612:00:00abcdef1",
            MSPCommand.MSP_NAME: lambda _: self.craft_name.encode("ascii"),
            MSPCommand.MSP_MODE_RANGES: self._mode_ranges,
            MSPCommand.MSP_SET_MODE_RANGE: self._set_mode_range,
            MSPCommand.MSP_FEATURE_CONFIG: lambda _: struct.pack("<I", self.features),
            MSPCommand.MSP_SET_FEATURE_CONFIG: self._set_features,
            MSPCommand.MSP_MIXER_CONFIG: lambda _: bytes([self.mixer, 0]),
            MSPCommand.MSP_SET_MIXER_CONFIG: self._set_mixer,
            MSPCommand.MSP_STATUS: self._status,
            MSPCommand.MSP_ATTITUDE: lambda _: struct.pack("<hhh", *self.attitude),
            MSPCommand.MSP_BOXNAMES: lambda _: ("".join(f"{n};" for n in self.box_names)).encode("ascii"),
            MSPCommand.MSP_BOXIDS: lambda _: bytes(self.box_ids),
            MSPCommand.MSP_EEPROM_WRITE: self._eeprom_write,
            MSPCommand.MSP_REBOOT: lambda _: b"",
            MSP2Command.INAV_STATUS: self._inav_status,
            MSP2Command.INAV_MIXER: self._inav_mixer_payload,
            MSP2Command.INAV_SET_MIXER: self._set_inav_mixer,
            MSP2Command.COMMON_MOTOR_MIXER: self._motor_mixer,
            MSP2Command.COMMON_SET_MOTOR_MIXER: self._set_motor_rule,
            MSP2Command.INAV_SERVO_MIXER: self._servo_mixer,
            MSP2Command.INAV_SET_SERVO_MIXER: self._set_servo_rule,
        }

    def _mode_ranges(self, _: bytes) -> bytes:
        return bytes(value & 0xFF for slot in self.mode_ranges for value in slot)

    def _set_mode_range(self, payload: bytes) -> Optional[bytes]:
        if len(payload) < 5 or payload[0] >= len(self.mode_ranges):
            return None
        self.mode_ranges[payload[0]] = list(payload[1:5])
        return b""

    def _set_features(self, payload: bytes) -> Optional[bytes]:
        if len(payload) < 4:
            return None
        (mask,) = struct.unpack_from("<I", payload)
        self.features = mask & ~self.rejected_feature_bits
        return b""

    def _set_mixer(self, payload: bytes) -> Optional[bytes]:
        if not payload:
            return None
        self.mixer = payload[0]
        return b""

    def _status(self, _: bytes) -> bytes:
        return struct.pack("<HHHIBHBI", self.cycle_time, 0, 0x23, 0, 0, 12, 3, 0)

    def _inav_status(self, _: bytes) -> bytes:
        return struct.pack("<HHHHBII", self.cycle_time, 0, 0x23, 12, 0, 0, 0)

    def _eeprom_write(self, _: bytes) -> bytes:
        self.saved += 1
        return b""

    def _inav_mixer_payload(self, _: bytes) -> bytes:
        cfg = self.inav_mixer
        return struct.pack(
            "<bBBbbhbb",
            cfg.yaw_motor_direction,
            cfg.yaw_jump_prevention_limit,
            cfg.motor_stop_on_low,
            cfg.platform_type,
            cfg.has_flaps,
            cfg.applied_mixer_preset,
            self.active_motors,
            len(self.servo_rules),
        )

    def _set_inav_mixer(self, payload: bytes) -> Optional[bytes]:
        if len(payload) < 8:
            return None
        if self.ignore_platform_writes:
            return b""
        values = struct.unpack_from("<bBBbbh", payload)
        cfg = self.inav_mixer
        (
            cfg.yaw_motor_direction,
            cfg.yaw_jump_prevention_limit,
            cfg.motor_stop_on_low,
            cfg.platform_type,
            cfg.has_flaps,
            cfg.applied_mixer_preset,
        ) = values
        return b""

    def _motor_mixer(self, _: bytes) -> bytes:
        out = bytearray()
        for rule in self.motor_rules:
            if rule is None:
                out += struct.pack("<4H", 0, 0, 0, 0)
            else:
                out += struct.pack("<4H", *(_motor_raw(value) for value in rule))
        return bytes(out)

    def _set_motor_rule(self, payload: bytes) -> Optional[bytes]:
        if len(payload) < 9 or payload[0] >= MOTOR_SLOTS:
            return None
        index, *raw = struct.unpack_from("<B4H", payload)
        self.motor_rules[index] = tuple(value / MOTOR_MIXER_SCALE - MOTOR_MIXER_OFFSET for value in raw)
        return b""

    def _servo_mixer(self, _: bytes) -> bytes:
        return b"".join(
            struct.pack("<BBhBb", r.target_channel, r.input_source, r.rate, r.speed, r.box)
            for r in self.servo_rules
        )

    def _set_servo_rule(self, payload: bytes) -> Optional[bytes]:
        if len(payload) < 7:
            return None
        index = payload[0]
        target, source, rate, speed, box = struct.unpack_from("<BBhBb", payload, 1)
        rule = ServoMixerRule(target, source, rate, speed, box=box)
        self._store_servo(index, rule)
        return b""

    def _store_servo(self, index: int, rule: ServoMixerRule) -> None:
        if index < len(self.servo_rules):
            self.servo_rules[index] = rule
        elif index == len(self.servo_rules):
            self.servo_rules.append(rule)

    # -- CLI ---------------------------------------------------------------

    def cli_command(self, line: str) -> str:
        """Apply one CLI *line* and return the text the board prints."""

        words = line.split()
        if not words:
            return ""
        name, args = words[0], words[1:]
        handler = {
            "aux": self._cli_aux,
            "feature": self._cli_feature,
            "set": self._cli_set,
            "mixer": self._cli_mixer,
            "mmix": self._cli_mmix,
            "smix": self._cli_smix,
        }.get(name)
        if handler is None:
            return "Unknown command, try 'help'\r\n"
        try:
            return handler(args)
        except (ValueError, IndexError, KeyError):
            return "Parse error\r\n"

    def _cli_aux(self, args: List[str]) -> str:
        index, box, aux, start, end = (int(value) for value in args[:5])
        self.mode_ranges[index] = [box, aux, start, end]
        return ""

    def _cli_feature(self, args: List[str]) -> str:
        if not args:
            return "Enabled: " + " ".join(
                flag for bit, flag in sorted(FEATURE_FLAGS.items()) if self.features & (1 << bit)
            ) + "\r\n"
        wanted = args[0].upper()
        enable = not wanted.startswith("-")
        wanted = wanted.lstrip("-")
        for bit, flag in FEATURE_FLAGS.items():
            if flag == wanted:
                if enable:
                    self.features |= (1 << bit) & ~self.rejected_feature_bits
                    return f"Enabled {flag}\r\n"
                self.features &= ~(1 << bit)
                return f"Disabled {flag}\r\n"
        return "Invalid name\r\n"

    def _cli_set(self, args: List[str]) -> str:
        text = " ".join(args)
        key, _, value = text.partition("=")
        key, value = key.strip(), value.strip()
        if key == "platform_type":
            if not self.ignore_platform_writes:
                self.inav_mixer.platform_type = PlatformType[value.upper()]
            return f"platform_type set to {value.upper()}\r\n"
        return "Invalid name\r\n"

    def _cli_mixer(self, args: List[str]) -> str:
        if not args:
            return f"Mixer: {MIXER_TYPES.get(self.mixer, ('UNKNOWN',))[0]}\r\n"
        wanted = args[0].upper()
        for mixer, (label, _) in MIXER_TYPES.items():
            if label == wanted:
                self.mixer = mixer
                self.inav_mixer.applied_mixer_preset = mixer
                return f"Mixer set to {label}\r\n"
        return "Invalid name\r\n"

    def _cli_mmix(self, args: List[str]) -> str:
        if not args:
            rows = [
                f"mmix {index} " + " ".join(f"{value:.3f}" for value in rule)
                for index, rule in enumerate(self.motor_rules)
                if rule is not None
            ]
            return "".join(row + "\r\n" for row in rows)
        if args[0] == "reset":
            self.motor_rules = [None] * MOTOR_SLOTS
            return ""
        index = int(args[0])
        self.motor_rules[index] = tuple(float(value) for value in args[1:5])
        return ""

    def _cli_smix(self, args: List[str]) -> str:
        if not args:
            return "".join(
                f"smix {index} {r.target_channel} {r.input_source} {r.rate} {r.speed} {r.min} {r.max} {r.box}\r\n"
                for index, r in enumerate(self.servo_rules)
            )
        if args[0] == "reset":
            self.servo_rules = []
            return ""
        index, target, source, rate = (int(value) for value in args[:4])
        self._store_servo(index, ServoMixerRule(target, source, rate))
        return ""


class SimulatedTransport(BaseTransport):
    """Transport wired to a :class:`SimulatedFC` instead of a serial port."""

    def __init__(self, fc: Optional[SimulatedFC] = None, url: str = "sim://fc") -> None:
        super().__init__()
        self.fc = fc or SimulatedFC()
        self.url = url
        self.written = bytearray()
        self.writes: List[bytes] = []
        self.requests: List[MSPFrame] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.cli_mode = False
        self._open = False
        self._decoder = FrameDecoder()
        self._cli_buffer = ""
        self._cli_count = 0
        self._last_at = 0.0
        self._handles: List[asyncio.TimerHandle] = []

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._open = True
        self.cli_mode = False
        self._cli_buffer = ""
        self._decoder.reset()
        log.info("opened %s", self.url)

    async def close(self) -> None:
        if self._open:
            self.drop()
            log.info("closed %s", self.url)

    def drop(self) -> None:
        """Lose the link as an unplugged or rebooting board would."""

        if not self._open:
            return
        self._open = False
        self.cli_mode = False
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        self.in_flight = 0
        self._notify_closed()

    async def write(self, data: bytes) -> None:
        if not self._open:
            raise ConnectionError("simulated port is closed")
        data = bytes(data)
        self.written += data
        self.writes.append(data)
        if self.cli_mode:
            self._feed_cli(data.decode("ascii", errors="replace"))
        elif data.startswith(b"$"):
            for frame in self._decoder.feed(data):
                self._on_request(frame)
        elif data.strip().endswith(b"#"):
            self._enter_cli()

    # -- binary ------------------------------------------------------------

    def _on_request(self, frame: MSPFrame) -> None:
        if frame.direction != Direction.REQUEST:
            return
        self.requests.append(frame)
        command = frame.command
        if command in self.fc.silent:
            return
        payload = None if command in self.fc.unsupported else self.fc.handle(command, frame.payload)
        direction = Direction.ERROR if payload is None else Direction.REPLY
        reply = encode_frame(command, payload or b"", frame.version, direction=direction)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self._schedule(reply, self.fc.delays.get(command, self.fc.latency), reply=True)
        if command == MSPCommand.MSP_REBOOT:
            self._schedule_drop()

    def _schedule(self, data: bytes, delay: float, reply: bool = False) -> None:
        loop = asyncio.get_running_loop()
        # replies never overtake each other
        now = loop.time()
        at = max(now + delay, self._last_at + 1e-6)
        self._last_at = at
        self._handles = [handle for handle in self._handles if handle.when() >= now]
        self._handles.append(loop.call_at(at, self._deliver, data, reply))

    def _schedule_drop(self) -> None:
        loop = asyncio.get_running_loop()
        at = max(loop.time(), self._last_at) + 0.01
        self._handles.append(loop.call_at(at, self.drop))

    def _deliver(self, data: bytes, reply: bool) -> None:
        if not self._open:
            return
        if reply:
            self.in_flight = max(0, self.in_flight - 1)
        self._dispatch(data)

    # -- CLI ---------------------------------------------------------------

    def _enter_cli(self) -> None:
        self.cli_mode = True
        self._cli_buffer = ""
        if self.fc.prompt_echo:
            self._schedule((CLI_BANNER + CLI_PROMPT).encode("ascii"), self.fc.latency)

    def _feed_cli(self, text: str) -> None:
        self._cli_buffer += text
        while "\n" in self._cli_buffer:
            raw, self._cli_buffer = self._cli_buffer.split("\n", 1)
            line = raw.strip().lstrip("#").strip()
            if line:
                self._on_cli_line(line)
                if not self._open:
                    return

    def _on_cli_line(self, line: str) -> None:
        fc = self.fc
        fc.cli_lines.append(line)
        self._cli_count += 1
        if fc.close_after_cli_lines is not None and self._cli_count >= fc.close_after_cli_lines:
            self.drop()
            return
        if line == "exit":
            self.cli_mode = False
            self._schedule(b"\r\nLeaving CLI mode\r\n", fc.latency)
            return
        if line == "save":
            fc.saved += 1
            self.cli_mode = False
            self._schedule(b"\r\nSaving\r\nRebooting\r\n", fc.latency)
            if fc.reboot_on_save:
                self._schedule_drop()
            return
        output = fc.cli_command(line)
        prompt = CLI_PROMPT if fc.prompt_echo else "\r\n"
        self._schedule((line + "\r\n" + output + prompt).encode("ascii", errors="replace"), fc.latency)
