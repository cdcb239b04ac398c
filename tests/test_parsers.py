from __future__ import annotations

import struct
from pathlib import Path

import pytest

from msp_config.core import parsers
from msp_config.core.config import ProfileError, load_profiles, resolve_profile
from msp_config.core.msp import PayloadFormatError


def test_pwm_step_conversion():
    assert parsers.pwm_to_step(1300) == 16
    assert parsers.pwm_to_step(1700) == 32
    assert parsers.pwm_to_step(2500) == 64
    assert parsers.pwm_to_step(800) == 0
    assert parsers.step_to_pwm(32) == 1700


def test_mode_ranges_keep_only_active_slots():
    payload = bytes([0, 0, 16, 32, 1, 1, 32, 32, 2, 2, 0, 0, 9])
    ranges = parsers.parse_mode_ranges(payload)
    assert len(ranges) == 3
    active = parsers.active_mode_ranges(ranges)
    assert [(m.index, m.range_start, m.range_end) for m in active] == [(0, 1300, 1700)]


def test_set_mode_range_payload_and_cli_line():
    mode = parsers.ModeRange(0, 0, 0, 1700, 2500)
    assert parsers.build_set_mode_range(mode) == bytes([0, 0, 0, 32, 64, 0, 0])
    assert parsers.mode_range_cli(mode) == "aux 0 0 0 32 64 0"


def test_box_names_and_ids():
    names = parsers.parse_box_names(b"ARM;ANGLE;HORIZON;\x00")
    ids = parsers.parse_box_ids(bytes([0, 1, 2]))
    assert names == ["ARM", "ANGLE", "HORIZON"]
    mapping = parsers.build_box_mapping(names, ids)
    assert mapping[2] == {"slot": 2, "permanent_id": 2, "name": "HORIZON"}


def test_feature_config():
    config = parsers.parse_feature_config(b"\x20\x00\x00\x00")
    assert config.features == 0x20
    assert config.names == ["SERVO_TILT"]
    assert parsers.build_feature_config(0x20) == b"\x20\x00\x00\x00"
    with pytest.raises(PayloadFormatError):
        parsers.parse_feature_config(b"\x20")


def test_feature_cli_lines_only_emit_changes():
    gps = 1 << parsers.feature_bit("gps")
    osd = 1 << parsers.feature_bit("OSD")
    lines = parsers.feature_cli_lines(gps, current=osd)
    assert lines == ["feature GPS", "feature -OSD"]
    full = parsers.feature_cli_lines(gps)
    assert len(full) == len(parsers.FEATURE_FLAGS)
    assert "feature GPS" in full and "feature -OSD" in full


def test_inav_mixer_roundtrip_ignores_counts():
    config = parsers.InavMixerConfig(
        platform_type=parsers.PlatformType.AIRPLANE,
        applied_mixer_preset=14,
        number_of_motors=1,
        number_of_servos=4,
    )
    payload = parsers.build_inav_mixer(config)
    parsed = parsers.parse_inav_mixer(payload)
    assert parsed.platform_type == parsers.PlatformType.AIRPLANE
    assert parsed.applied_mixer_preset == 14
    assert parsed.yaw_jump_prevention_limit == 200
    assert parsed.number_of_motors == 0
    assert parsed.platform_name == "AIRPLANE"


def test_legacy_mixer_view():
    mixer = parsers.parse_mixer_config(bytes([8, 1]))
    assert mixer.name == "FLYING_WING"
    assert mixer.reversed_motors is True
    view = parsers.inav_config_from_legacy(mixer)
    assert view.platform_type == parsers.PlatformType.AIRPLANE
    assert view.applied_mixer_preset == 8


def test_cli_mixer_for_platform():
    assert parsers.cli_mixer_for(parsers.PlatformType.AIRPLANE) == "AIRPLANE"
    assert parsers.cli_mixer_for(parsers.PlatformType.AIRPLANE, 8) == "FLYING_WING"
    assert parsers.cli_mixer_for(parsers.PlatformType.MULTIROTOR, 99) == "QUADX"


def test_motor_mixer_drops_empty_and_out_of_range_slots():
    def raw(*values):
        return struct.pack("<4H", *(int(round((v + 2) * 1000)) for v in values))

    payload = raw(1, -1, 1, -1) + struct.pack("<4H", 0, 0, 0, 0) + raw(1, 1, -1, -1)
    payload += struct.pack("<4H", 2500, 6000, 2000, 2000)
    rules = parsers.parse_motor_mixer(payload)
    assert [r.to_dict() for r in rules] == [
        {"throttle": 1.0, "roll": -1.0, "pitch": 1.0, "yaw": -1.0},
        {"throttle": 1.0, "roll": 1.0, "pitch": -1.0, "yaw": -1.0},
    ]


def test_motor_mixer_rule_payload_and_cli():
    rule = parsers.MotorMixerRule(1.0, -0.5, 0.25, 0.0)
    assert parsers.build_motor_mixer_rule(3, rule) == struct.pack("<B4H", 3, 3000, 1500, 2250, 2000)
    assert parsers.motor_mixer_cli(3, rule) == "mmix 3 1.000 -0.500 0.250 0.000"


def test_servo_mixer_payloads():
    rule = parsers.ServoMixerRule(target_channel=2, input_source=0, rate=-100)
    assert parsers.build_servo_mixer_rule(1, rule) == bytes([1]) + struct.pack("<BBhBb", 2, 0, -100, 0, 0)
    parsed = parsers.parse_servo_mixer(struct.pack("<BBhBb", 3, 1, 50, 10, 0))
    assert parsed == [parsers.ServoMixerRule(3, 1, 50, 10, 0, 0, 0)]
    assert parsers.servo_mixer_cli(0, rule) == "smix 0 2 0 -100 0 0 100 0"


def test_mmix_listing_parsing():
    text = "mmix\r\nmmix 0 1.000 -1.000 1.000 -1.000\r\nmmix 1  1.000 -1.000 -1.000 1.000\r\n\r\n# "
    rules = parsers.parse_mmix_listing(text)
    assert [index for index, _ in rules] == [0, 1]
    assert rules[1][1] == parsers.MotorMixerRule(1.0, -1.0, -1.0, 1.0)


def test_smix_listing_parsing():
    text = "# smix\r\nsmix 0 3 0 100 0 0 100 0\r\nsmix 1 4 1 -50 0 0 100 0\r\n"
    rules = parsers.parse_smix_listing(text)
    assert rules == [
        (0, parsers.ServoMixerRule(3, 0, 100)),
        (1, parsers.ServoMixerRule(4, 1, -50)),
    ]


def test_identity_parsers():
    assert parsers.parse_api_version(bytes([0, 1, 46])) == "1.46.0"
    assert parsers.parse_fc_variant(b"INAV") == "INAV"
    assert parsers.parse_fc_version(bytes([7, 1, 0])) == "7.1.0"
    assert parsers.parse_board_info(b"SITL\x00\x00") == "SITL"
    assert parsers.parse_build_info(b"short") is None
    with pytest.raises(PayloadFormatError):
        parsers.parse_api_version(b"\x00")


def test_status_layouts():
    bf = struct.pack("<HHHIBHBI", 1000, 0, 0x23, 1, 0, 12, 3, 0x40)
    status = parsers.parse_status(bf)
    assert status["cycle_time_us"] == 1000
    assert status["arming_flags"] == 0x40
    assert status["raw"] == bf.hex()

    inav = struct.pack("<HHHHBII", 500, 1, 0x23, 12, 0x21, 0x80, 0x02)
    status = parsers.parse_inav_status(inav)
    assert status["cycle_time_us"] == 500
    assert status["pid_profile"] == 1
    assert status["arming_flags"] == 0x80
    assert status["flight_mode_flags"] == 0x02


def test_attitude_units():
    attitude = parsers.parse_attitude(struct.pack("<hhh", -3, 8, 120))
    assert attitude == {"roll_deg": -0.3, "pitch_deg": 0.8, "yaw_deg": 120.0}


def test_load_profiles_and_resolve():
    profiles = load_profiles()
    assert {"betaflight", "inav", "legacy_inav", "sim"} <= set(profiles)
    profile = resolve_profile("inav", profiles)
    assert profile.mode_ranges_timeout == pytest.approx(2.0)
    assert profile.cli.line_delay == pytest.approx(0.3)
    with pytest.raises(ProfileError):
        resolve_profile("nope", profiles)


def test_profile_rejects_missing_and_unknown_keys(tmp_path: Path):
    config = tmp_path / "config.yaml"
    config.write_text("profiles:\n  broken:\n    request_timeout: 1.0\n", encoding="utf-8")
    with pytest.raises(ProfileError):
        resolve_profile("broken", load_profiles(config))

    config.write_text(
        "profiles:\n"
        "  odd:\n"
        "    request_timeout: 1.0\n"
        "    mode_ranges_timeout: 1.0\n"
        "    config_timeout: 1.0\n"
        "    eeprom_timeout: 1.0\n"
        "    cli:\n"
        "      warp: 1\n",
        encoding="utf-8",
    )
    with pytest.raises(ProfileError):
        resolve_profile("odd", load_profiles(config))


def test_profile_overrides():
    profile = resolve_profile("betaflight", load_profiles())
    changed = profile.with_overrides(request_timeout=0.25, verify_delay=None)
    assert changed.request_timeout == 0.25
    assert changed.verify_delay == profile.verify_delay
