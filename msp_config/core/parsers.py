"""Payload (de)serializers for configuration commands and CLI listings."""

from __future__ import annotations

import enum
import re
import struct
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .msp import PayloadFormatError, hexlify, le_u16, le_u32

PWM_MIN = 900
PWM_STEP = 25
MAX_MODE_STEP = 0xFF

MOTOR_MIXER_OFFSET = 2.0
MOTOR_MIXER_SCALE = 1000
MAX_MOTORS = 12


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise PayloadFormatError(f"{what} payload too short: {len(data)} < {size} bytes")


# ---------------------------------------------------------------------------
# Mode ranges


def pwm_to_step(pwm: int) -> int:
    """Convert a PWM value in microseconds to a 25 us wire step (one byte)."""

    step = int(round((pwm - PWM_MIN) / PWM_STEP))
    return max(0, min(MAX_MODE_STEP, step))


def step_to_pwm(step: int) -> int:
    return PWM_MIN + step * PWM_STEP


@dataclass
class ModeRange:
    index: int
    box_id: int
    aux_channel: int
    range_start: int
    range_end: int

    @property
    def is_active(self) -> bool:
        return self.range_start < self.range_end

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def parse_mode_ranges(data: bytes) -> List[ModeRange]:
    """Decode ``MSP_MODE_RANGES``: 4 bytes per slot, trailing partial slot ignored."""

    ranges: List[ModeRange] = []
    for index in range(len(data) // 4):
        box_id, aux, start, end = data[index * 4 : index * 4 + 4]
        ranges.append(ModeRange(index, box_id, aux, step_to_pwm(start), step_to_pwm(end)))
    return ranges


def active_mode_ranges(ranges: Sequence[ModeRange]) -> List[ModeRange]:
    return [mode for mode in ranges if mode.is_active]


def build_set_mode_range(mode: ModeRange, mode_logic: int = 0, linked_to: int = 0) -> bytes:
    return bytes(
        [
            mode.index & 0xFF,
            mode.box_id & 0xFF,
            mode.aux_channel & 0xFF,
            pwm_to_step(mode.range_start),
            pwm_to_step(mode.range_end),
            mode_logic & 0xFF,
            linked_to & 0xFF,
        ]
    )


def mode_range_cli(mode: ModeRange) -> str:
    return (
        f"aux {mode.index} {mode.box_id} {mode.aux_channel} "
        f"{pwm_to_step(mode.range_start)} {pwm_to_step(mode.range_end)} 0"
    )


def parse_box_names(data: bytes) -> List[str]:
    """Split the ``;`` separated ``MSP_BOXNAMES`` payload, skipping NUL bytes."""

    text = bytes(b for b in data if b != 0).decode("ascii", errors="replace")
    return [name for name in text.split(";") if name]


def parse_box_ids(data: bytes) -> List[int]:
    return list(data)


def build_box_mapping(names: Sequence[str], ids: Sequence[int]) -> List[Dict[str, object]]:
    return [
        {"slot": slot, "permanent_id": box_id, "name": name}
        for slot, (name, box_id) in enumerate(zip(names, ids))
    ]


# ---------------------------------------------------------------------------
# Features

FEATURE_FLAGS: Dict[int, str] = {
    0: "RX_PPM",
    2: "INFLIGHT_ACC_CAL",
    3: "RX_SERIAL",
    4: "MOTOR_STOP",
    5: "SERVO_TILT",
    6: "SOFTSERIAL",
    7: "GPS",
    9: "SONAR",
    10: "TELEMETRY",
    12: "3D",
    13: "RX_PARALLEL_PWM",
    14: "RX_MSP",
    15: "RSSI_ADC",
    16: "LED_STRIP",
    17: "DISPLAY",
    18: "OSD",
    20: "CHANNEL_FORWARDING",
    21: "TRANSPONDER",
    22: "AIRMODE",
    25: "RX_SPI",
    27: "ESC_SENSOR",
    28: "ANTI_GRAVITY",
    29: "DYNAMIC_FILTER",
}


@dataclass
class FeatureConfig:
    features: int

    @property
    def names(self) -> List[str]:
        return feature_names(self.features)

    def to_dict(self) -> Dict[str, object]:
        return {"features": self.features, "hex": f"0x{self.features:08x}", "names": self.names}


def parse_feature_config(data: bytes) -> FeatureConfig:
    _require(data, 4, "FEATURE_CONFIG")
    return FeatureConfig(le_u32(data[0:4]))


def build_feature_config(features: int) -> bytes:
    return struct.pack("<I", features & 0xFFFFFFFF)


def feature_names(mask: int) -> List[str]:
    return [name for bit, name in sorted(FEATURE_FLAGS.items()) if mask & (1 << bit)]


def feature_bit(name: str) -> int:
    wanted = name.upper()
    for bit, flag in FEATURE_FLAGS.items():
        if flag == wanted:
            return bit
    raise KeyError(name)


def feature_cli_lines(target: int, current: Optional[int] = None) -> List[str]:
    """Return ``feature NAME`` / ``feature -NAME`` lines turning *current* into *target*.

    Without a known *current* mask every named flag is set explicitly.
    """

    lines: List[str] = []
    for bit, name in sorted(FEATURE_FLAGS.items()):
        mask = 1 << bit
        wanted = bool(target & mask)
        if current is not None and wanted == bool(current & mask):
            continue
        lines.append(f"feature {name}" if wanted else f"feature -{name}")
    return lines


# ---------------------------------------------------------------------------
# Mixer / platform


class PlatformType(enum.IntEnum):
    MULTIROTOR = 0
    AIRPLANE = 1
    HELICOPTER = 2
    TRICOPTER = 3
    ROVER = 4
    BOAT = 5


MIXER_TYPES: Dict[int, Tuple[str, bool]] = {
    0: ("TRI", True),
    1: ("QUADP", True),
    2: ("QUADP", True),
    3: ("QUADX", True),
    4: ("BICOPTER", True),
    5: ("GIMBAL", False),
    6: ("Y6", True),
    7: ("HEX6", True),
    8: ("FLYING_WING", False),
    9: ("Y4", True),
    10: ("HEX6X", True),
    11: ("OCTOX8", True),
    12: ("OCTOFLATP", True),
    13: ("OCTOFLATX", True),
    14: ("AIRPLANE", False),
    15: ("HELI_120_CCPM", False),
    16: ("HELI_90_DEG", False),
    17: ("VTAIL4", True),
    18: ("HEX6H", True),
    20: ("DUALCOPTER", True),
    21: ("SINGLECOPTER", True),
    22: ("ATAIL4", True),
    23: ("CUSTOM", False),
    24: ("CUSTOM_AIRPLANE", False),
    25: ("CUSTOM_TRI", True),
}

# names the CLI ``mixer`` command accepts for the presets the app can queue
CLI_MIXER_NAMES: Dict[int, str] = {
    0: "TRI",
    3: "QUADX",
    5: "GIMBAL",
    8: "FLYING_WING",
    14: "AIRPLANE",
    24: "CUSTOM_AIRPLANE",
}

PLATFORM_DEFAULT_MIXER: Dict[int, str] = {
    PlatformType.MULTIROTOR: "QUADX",
    PlatformType.AIRPLANE: "AIRPLANE",
    PlatformType.HELICOPTER: "CUSTOM",
    PlatformType.TRICOPTER: "TRI",
    PlatformType.ROVER: "QUADX",
    PlatformType.BOAT: "QUADX",
}


def mixer_name(mixer: int) -> str:
    entry = MIXER_TYPES.get(mixer)
    return entry[0] if entry else f"UNKNOWN({mixer})"


def is_multirotor_mixer(mixer: int) -> bool:
    entry = MIXER_TYPES.get(mixer)
    return bool(entry and entry[1])


def platform_name(platform: int) -> str:
    try:
        return PlatformType(platform).name
    except ValueError:
        return f"UNKNOWN({platform})"


def cli_mixer_for(platform: int, mixer: Optional[int] = None) -> str:
    """Return the ``mixer`` CLI argument for a platform change."""

    if mixer is not None and mixer in CLI_MIXER_NAMES:
        return CLI_MIXER_NAMES[mixer]
    return PLATFORM_DEFAULT_MIXER.get(platform, "AIRPLANE")


@dataclass
class MixerConfig:
    mixer: int
    reversed_motors: Optional[bool] = None

    @property
    def is_multirotor(self) -> bool:
        return is_multirotor_mixer(self.mixer)

    @property
    def name(self) -> str:
        return mixer_name(self.mixer)

    def to_dict(self) -> Dict[str, object]:
        return {
            "mixer": self.mixer,
            "name": self.name,
            "is_multirotor": self.is_multirotor,
            "reversed_motors": self.reversed_motors,
        }


def parse_mixer_config(data: bytes) -> MixerConfig:
    _require(data, 1, "MIXER_CONFIG")
    reversed_motors = data[1] == 1 if len(data) >= 2 else None
    return MixerConfig(data[0], reversed_motors)


def build_mixer_config(mixer: int) -> bytes:
    return bytes([mixer & 0xFF])


@dataclass
class InavMixerConfig:
    yaw_motor_direction: int = 1
    yaw_jump_prevention_limit: int = 200
    motor_stop_on_low: int = 0
    platform_type: int = PlatformType.MULTIROTOR
    has_flaps: int = 0
    applied_mixer_preset: int = 0
    number_of_motors: int = 0
    number_of_servos: int = 0

    @property
    def platform_name(self) -> str:
        return platform_name(self.platform_type)

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["platform_name"] = self.platform_name
        return data


_INAV_MIXER = struct.Struct("<bBBbbhbb")
_INAV_SET_MIXER = struct.Struct("<bBBbbhBB")


def parse_inav_mixer(data: bytes) -> InavMixerConfig:
    _require(data, _INAV_MIXER.size, "INAV_MIXER")
    return InavMixerConfig(*_INAV_MIXER.unpack_from(data))


def build_inav_mixer(config: InavMixerConfig) -> bytes:
    return _INAV_SET_MIXER.pack(
        config.yaw_motor_direction,
        config.yaw_jump_prevention_limit,
        config.motor_stop_on_low,
        config.platform_type,
        config.has_flaps,
        config.applied_mixer_preset,
        0,
        0,
    )


def inav_config_from_legacy(mixer: MixerConfig) -> InavMixerConfig:
    """Synthesize an iNav-style view from a legacy ``MSP_MIXER_CONFIG`` reply."""

    platform = PlatformType.MULTIROTOR if mixer.is_multirotor else PlatformType.AIRPLANE
    return InavMixerConfig(platform_type=platform, applied_mixer_preset=mixer.mixer)


# ---------------------------------------------------------------------------
# Motor and servo mixer rules


@dataclass
class MotorMixerRule:
    throttle: float
    roll: float
    pitch: float
    yaw: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def _motor_raw(value: float) -> int:
    return int(round((value + MOTOR_MIXER_OFFSET) * MOTOR_MIXER_SCALE))


def _motor_value(raw: int) -> float:
    return round(raw / MOTOR_MIXER_SCALE - MOTOR_MIXER_OFFSET, 3)


def parse_motor_mixer(data: bytes) -> List[MotorMixerRule]:
    """Decode ``MSP2_COMMON_MOTOR_MIXER``, dropping slots that are not real motors."""

    rules: List[MotorMixerRule] = []
    offset = 0
    while len(data) - offset >= 8 and len(rules) < MAX_MOTORS:
        raw = struct.unpack_from("<4H", data, offset)
        offset += 8
        throttle, roll, pitch, yaw = (_motor_value(value) for value in raw)
        if not 0 < throttle <= MOTOR_MIXER_OFFSET:
            continue
        if max(abs(roll), abs(pitch), abs(yaw)) > MOTOR_MIXER_OFFSET:
            continue
        rules.append(MotorMixerRule(throttle, roll, pitch, yaw))
    return rules


def build_motor_mixer_rule(index: int, rule: MotorMixerRule) -> bytes:
    return struct.pack(
        "<B4H",
        index & 0xFF,
        _motor_raw(rule.throttle),
        _motor_raw(rule.roll),
        _motor_raw(rule.pitch),
        _motor_raw(rule.yaw),
    )


def motor_mixer_cli(index: int, rule: MotorMixerRule) -> str:
    return f"mmix {index} {rule.throttle:.3f} {rule.roll:.3f} {rule.pitch:.3f} {rule.yaw:.3f}"


@dataclass
class ServoMixerRule:
    target_channel: int
    input_source: int
    rate: int
    speed: int = 0
    min: int = 0
    max: int = 100
    box: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


_SERVO_RULE = struct.Struct("<BBhBb")


def parse_servo_mixer(data: bytes) -> List[ServoMixerRule]:
    rules: List[ServoMixerRule] = []
    for offset in range(0, len(data) - _SERVO_RULE.size + 1, _SERVO_RULE.size):
        target, source, rate, speed, box = _SERVO_RULE.unpack_from(data, offset)
        rules.append(ServoMixerRule(target, source, rate, speed, 0, 0, box))
    return rules


def build_servo_mixer_rule(index: int, rule: ServoMixerRule) -> bytes:
    return bytes([index & 0xFF]) + _SERVO_RULE.pack(
        rule.target_channel & 0xFF,
        rule.input_source & 0xFF,
        rule.rate,
        rule.speed & 0xFF,
        rule.box,
    )


def servo_mixer_cli(index: int, rule: ServoMixerRule) -> str:
    return f"smix {index} {rule.target_channel} {rule.input_source} {rule.rate} 0 0 100 0"


_MMIX_RE = re.compile(r"mmix\s+(\d+)\s+([\d.-]+)\s+([\d.-]+)\s+([\d.-]+)\s+([\d.-]+)")
_SMIX_RE = re.compile(r"smix\s+(\d+)\s+(\d+)\s+(\d+)\s+(-?\d+)")


def parse_mmix_listing(text: str) -> List[Tuple[int, MotorMixerRule]]:
    """Extract ``mmix`` rows from CLI output; other lines are ignored."""

    rules: List[Tuple[int, MotorMixerRule]] = []
    for line in re.split(r"[\r\n]+", text):
        match = _MMIX_RE.search(line)
        if not match:
            continue
        try:
            values = [float(group) for group in match.groups()[1:]]
        except ValueError:
            continue
        rules.append((int(match.group(1)), MotorMixerRule(*values)))
    return rules


def parse_smix_listing(text: str) -> List[Tuple[int, ServoMixerRule]]:
    rules: List[Tuple[int, ServoMixerRule]] = []
    for line in re.split(r"[\r\n]+", text):
        match = _SMIX_RE.search(line)
        if not match:
            continue
        index, target, source, rate = (int(group) for group in match.groups())
        rules.append((index, ServoMixerRule(target, source, rate)))
    return rules


# ---------------------------------------------------------------------------
# Identification and status


def parse_api_version(data: bytes) -> str:
    _require(data, 3, "API_VERSION")
    protocol, major, minor = data[0], data[1], data[2]
    return f"{major}.{minor}.{protocol}"


def parse_fc_variant(data: bytes) -> str:
    _require(data, 4, "FC_VARIANT")
    return data[:4].decode("ascii", errors="ignore")


def parse_fc_version(data: bytes) -> str:
    _require(data, 3, "FC_VERSION")
    return f"{data[0]}.{data[1]}.{data[2]}"


def parse_board_info(data: bytes) -> str:
    _require(data, 4, "BOARD_INFO")
    return data[:4].decode("ascii", errors="ignore")


def parse_build_info(data: bytes) -> Optional[str]:
    if len(data) < 19:
        return None
    build_date = data[0:11].decode("ascii", errors="ignore")
    build_time = data[11:19].decode("ascii", errors="ignore")
    git_short = data[19:26].decode("ascii", errors="ignore") if len(data) >= 26 else ""
    return f"{build_date} {build_time} {git_short}".strip()


def parse_status(data: bytes) -> Dict[str, object]:
    """Decode ``MSP_STATUS``."""

    _require(data, 10, "STATUS")
    out: Dict[str, object] = {
        "raw": hexlify(data),
        "cycle_time_us": le_u16(data[0:2]),
        "i2c_errors": le_u16(data[2:4]),
        "active_sensors": le_u16(data[4:6]),
        "flight_mode_flags": le_u32(data[6:10]),
        "arming_flags": 0,
    }
    if len(data) >= 11:
        out["pid_profile"] = data[10]
    if len(data) >= 13:
        out["system_load"] = le_u16(data[11:13])
    if len(data) >= 18:
        out["arming_flags"] = le_u32(data[14:18])
    return out


def parse_inav_status(data: bytes) -> Dict[str, object]:
    """Decode ``MSP2_INAV_STATUS``."""

    _require(data, 13, "INAV_STATUS")
    out: Dict[str, object] = {
        "raw": hexlify(data),
        "cycle_time_us": le_u16(data[0:2]),
        "i2c_errors": le_u16(data[2:4]),
        "active_sensors": le_u16(data[4:6]),
        "system_load": le_u16(data[6:8]),
        "pid_profile": data[8] & 0x0F,
        "arming_flags": le_u32(data[9:13]),
        "flight_mode_flags": 0,
    }
    if len(data) >= 17:
        out["flight_mode_flags"] = le_u32(data[13:17])
    return out


def parse_attitude(data: bytes) -> Dict[str, object]:
    _require(data, 6, "ATTITUDE")
    roll, pitch, yaw = struct.unpack_from("<hhh", data)
    return {"roll_deg": round(roll / 10.0, 1), "pitch_deg": round(pitch / 10.0, 1), "yaw_deg": float(yaw)}
