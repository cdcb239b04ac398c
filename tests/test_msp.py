from __future__ import annotations

import pytest

from msp_config.core import msp
from msp_config.core.commands import MSP2Command, MSPCommand, command_name


def test_encode_v1_layout():
    encoded = msp.encode_frame(42, b"abc", msp.MSPVersion.V1)
    expected_checksum = 3 ^ 42 ^ ord("a") ^ ord("b") ^ ord("c")
    assert encoded == b"$M<\x03*abc" + bytes([expected_checksum])


def test_crc8_dvb_s2_check_value():
    assert msp.crc8_dvb_s2(b"123456789") == 0xBC


def test_encode_v2_request_without_payload():
    encoded = msp.encode_frame(MSP2Command.COMMON_MOTOR_MIXER)
    assert encoded == b"$X<\x00\x05\x10\x00\x00\x9d"


def test_pick_version():
    assert msp.pick_version(MSPCommand.MSP_STATUS) is msp.MSPVersion.V1
    assert msp.pick_version(MSP2Command.INAV_MIXER) is msp.MSPVersion.V2
    assert msp.pick_version(1, b"x" * 300) is msp.MSPVersion.V2


def test_payload_too_large_for_v1():
    with pytest.raises(msp.PayloadTooLargeError):
        msp.encode_frame(1, b"x" * 256, msp.MSPVersion.V1)


def test_v1_command_must_fit_a_byte():
    with pytest.raises(ValueError):
        msp.encode_frame(0x1005, b"", msp.MSPVersion.V1)


def test_decode_reply_frames():
    v1 = msp.encode_frame(101, b"\x01\x02", direction=msp.Direction.REPLY)
    v2 = msp.encode_frame(0x2010, b"\x09" * 9, direction=msp.Direction.REPLY)

    result = msp.decode(v1)
    assert result.status is msp.DecodeStatus.FRAME
    assert result.frame == msp.MSPFrame(101, b"\x01\x02", msp.MSPVersion.V1, msp.Direction.REPLY)
    assert result.consumed == len(v1)

    result = msp.decode(v2)
    assert result.frame.command == 0x2010
    assert result.frame.version is msp.MSPVersion.V2
    assert result.frame.payload == b"\x09" * 9


def test_error_direction_is_decoded():
    frame = msp.decode(msp.encode_frame(34, b"", direction=msp.Direction.ERROR)).frame
    assert frame.direction is msp.Direction.ERROR


def test_decoder_accepts_any_chunking():
    data = msp.encode_frame(1, b"\x00\x02\x05", direction=msp.Direction.REPLY) + msp.encode_frame(
        0x1005, b"\xaa" * 16, direction=msp.Direction.REPLY
    )
    decoder = msp.FrameDecoder()
    frames = []
    for byte in data:
        frames.extend(decoder.feed(bytes([byte])))
    assert [f.command for f in frames] == [1, 0x1005]
    assert frames[0].payload == b"\x00\x02\x05"
    assert decoder.buffered == 0


def test_decoder_skips_noise_and_resyncs_after_bad_checksum():
    bad = bytearray(msp.encode_frame(36, b"\x01\x02\x03\x04", direction=msp.Direction.REPLY))
    bad[-1] ^= 0xFF
    good = msp.encode_frame(36, b"\x20\x00\x00\x00", direction=msp.Direction.REPLY)
    decoder = msp.FrameDecoder()

    frames = decoder.feed(b"noise\r\n" + bytes(bad) + good)

    assert [f.payload for f in frames] == [b"\x20\x00\x00\x00"]
    assert decoder.stats.checksum_errors == 1
    assert decoder.stats.frames == 1


@pytest.mark.parametrize(
    "version, command, payload, flag",
    [
        (msp.MSPVersion.V1, 0, b"", 0),
        (msp.MSPVersion.V1, 0xFF, bytes(range(255)), 0),
        (msp.MSPVersion.V2, 0, b"\x01", 0),
        (msp.MSPVersion.V2, 0xFFFF, b"", 0x01),
        (msp.MSPVersion.V2, 0x1005, bytes(i & 0xFF for i in range(msp.MSP_V2_MAX_PAYLOAD)), 0),
    ],
    ids=["v1-empty", "v1-max", "v2-cmd0", "v2-max-cmd", "v2-max-payload"],
)
def test_frames_at_the_limits_survive_encode_and_decode(version, command, payload, flag):
    data = msp.encode_frame(command, payload, version, direction=msp.Direction.REPLY, flag=flag)

    result = msp.decode(data)
    assert result.status is msp.DecodeStatus.FRAME
    assert result.consumed == len(data)
    frame = result.frame
    assert (frame.command, frame.version, frame.direction) == (command, version, msp.Direction.REPLY)
    assert frame.payload == payload
    if version is msp.MSPVersion.V2:
        assert frame.flag == flag

    decoder = msp.FrameDecoder()
    middle = len(data) // 2
    assert decoder.feed(data[:middle]) == []
    frames = decoder.feed(data[middle:])
    assert len(frames) == 1 and frames[0].payload == payload
    assert decoder.buffered == 0


def test_decoder_resyncs_after_length_byte_shrinks():
    bad = bytearray(msp.encode_frame(36, b"\x01\x02\x03\x04", direction=msp.Direction.REPLY))
    bad[3] = 2
    good = msp.encode_frame(36, b"\x20\x00\x00\x00", direction=msp.Direction.REPLY)
    decoder = msp.FrameDecoder()

    frames = decoder.feed(bytes(bad) + good)

    assert [f.payload for f in frames] == [b"\x20\x00\x00\x00"]
    assert decoder.stats.checksum_errors == 1


def test_decoder_resyncs_after_length_byte_grows():
    # the inflated length swallows the frames behind it until enough bytes
    # arrive for the checksum to fail
    bad = bytearray(msp.encode_frame(36, b"\x01\x02\x03\x04", direction=msp.Direction.REPLY))
    bad[3] = 0x40
    good = msp.encode_frame(36, b"\x20\x00\x00\x00", direction=msp.Direction.REPLY)
    decoder = msp.FrameDecoder()

    assert decoder.feed(bytes(bad) + good * 3) == []
    frames = decoder.feed(good * 5)

    assert len(frames) == 8
    assert all(f.payload == b"\x20\x00\x00\x00" for f in frames)
    assert decoder.stats.checksum_errors == 1
    assert decoder.buffered == 0


def test_incomplete_frame_waits_for_more_bytes():
    data = msp.encode_frame(108, b"\x01\x00\x02\x00\x03\x00", direction=msp.Direction.REPLY)
    decoder = msp.FrameDecoder()
    assert decoder.feed(data[:6]) == []
    assert decoder.buffered == 6
    assert len(decoder.feed(data[6:])) == 1


def test_little_endian_helpers():
    assert msp.le_u16(b"\xe8\x03") == 1000
    assert msp.le_i16(b"\xff\xff") == -1
    assert msp.le_u32(b"\x20\x00\x00\x00") == 0x20
    assert msp.hexlify(b"\x01\xab") == "01ab"


def test_command_name():
    assert command_name(MSPCommand.MSP_MODE_RANGES) == "MSP_MODE_RANGES"
    assert command_name(0x2011) == "INAV_SET_MIXER"
    assert command_name(9999) == "9999"
