"""MSP errors and the v1/v2 frame codec."""

from __future__ import annotations

import binascii
import enum
import struct
from dataclasses import dataclass
from typing import Iterable, List, Optional

MSP_V1_START = b"$M"
MSP_V2_START = b"$X"
DIR_TO_FC = ord("<")
DIR_FROM_FC = ord(">")
DIR_ERROR = ord("!")

MSP_V1_MAX_PAYLOAD = 0xFF
MSP_V2_MAX_PAYLOAD = 0xFFFF

_V1_HEADER_LEN = 5  # $ M dir len cmd
_V2_HEADER_LEN = 8  # $ X dir flag cmd_lo cmd_hi len_lo len_hi


class MSPError(Exception):
    """Base class for MSP related errors."""


class MSPChecksumError(MSPError):
    """Raised when a frame fails checksum validation."""


class MSPTimeoutError(MSPError):
    """Raised when a response cannot be read within the timeout."""


class TransportClosedError(MSPError):
    """Raised when the transport is not open or closes mid-request."""


class NotSupportedError(MSPError):
    """Raised when the firmware explicitly rejects a command."""


class CliModeActiveError(MSPError):
    """Raised when a binary request is refused because the CLI owns the link."""


class VerificationMismatchError(MSPError):
    """Raised when a value read back after a write differs from what was written."""


class PayloadTooLargeError(MSPError, ValueError):
    """Raised when a payload does not fit the frame's length field."""


class PayloadFormatError(MSPError, ValueError):
    """Raised when a reply payload cannot be decoded."""


class MSPVersion(enum.IntEnum):
    V1 = 1
    V2 = 2


class Direction(enum.IntEnum):
    REQUEST = DIR_TO_FC
    REPLY = DIR_FROM_FC
    ERROR = DIR_ERROR


@dataclass(frozen=True)
class MSPFrame:
    """Representation of a single MSP v1 or v2 frame."""

    command: int
    payload: bytes = b""
    version: MSPVersion = MSPVersion.V1
    direction: Direction = Direction.REQUEST
    flag: int = 0

    def to_bytes(self) -> bytes:
        return encode_frame(
            self.command,
            self.payload,
            version=self.version,
            direction=self.direction,
            flag=self.flag,
        )

    def to_dict(self) -> dict:
        return {
            "version": int(self.version),
            "direction": chr(self.direction),
            "cmd": self.command,
            "payload_hex": self.payload.hex(),
        }


def xor_checksum(size: int, command: int, payload: Iterable[int]) -> int:
    checksum = size ^ command
    for byte in payload:
        checksum ^= byte
    return checksum & 0xFF


def crc8_dvb_s2(data: Iterable[int], crc: int = 0) -> int:
    """Return the CRC8-DVB-S2 (polynomial 0xD5) of *data*."""

    for byte in data:
        crc ^= byte & 0xFF
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ 0xD5) & 0xFF
            else:
                crc = (crc << 1) & 0xFF
    return crc


def pick_version(command: int, payload: bytes = b"") -> MSPVersion:
    """Return the smallest frame version able to carry *command* and *payload*."""

    if command > 0xFF or len(payload) > MSP_V1_MAX_PAYLOAD:
        return MSPVersion.V2
    return MSPVersion.V1


def encode_frame(
    command: int,
    payload: bytes = b"",
    version: Optional[MSPVersion] = None,
    *,
    direction: Direction = Direction.REQUEST,
    flag: int = 0,
) -> bytes:
    """Encode *command* and *payload* as a complete MSP frame."""

    payload = bytes(payload)
    if version is None:
        version = pick_version(command, payload)
    if version == MSPVersion.V1:
        if not 0 <= command <= 0xFF:
            raise ValueError("command must fit in uint8 for MSP v1")
        if len(payload) > MSP_V1_MAX_PAYLOAD:
            raise PayloadTooLargeError(
                f"payload too large for MSP v1: {len(payload)} > {MSP_V1_MAX_PAYLOAD}"
            )
        size = len(payload)
        return (
            MSP_V1_START
            + bytes([direction, size, command])
            + payload
            + bytes([xor_checksum(size, command, payload)])
        )
    if not 0 <= command <= 0xFFFF:
        raise ValueError("command must fit in uint16 for MSP v2")
    if len(payload) > MSP_V2_MAX_PAYLOAD:
        raise PayloadTooLargeError(
            f"payload too large for MSP v2: {len(payload)} > {MSP_V2_MAX_PAYLOAD}"
        )
    header = struct.pack("<BHH", flag & 0xFF, command, len(payload))
    return (
        MSP_V2_START
        + bytes([direction])
        + header
        + payload
        + bytes([crc8_dvb_s2(header + payload)])
    )


class DecodeStatus(enum.Enum):
    FRAME = "frame"
    INCOMPLETE = "incomplete"
    CHECKSUM_MISMATCH = "checksum_mismatch"


@dataclass(frozen=True)
class DecodeResult:
    status: DecodeStatus
    frame: Optional[MSPFrame] = None
    consumed: int = 0


_INCOMPLETE = DecodeResult(DecodeStatus.INCOMPLETE)


def _find_start(buffer: bytes, begin: int = 0) -> int:
    """Return the offset of the next plausible frame start, or -1."""

    idx = buffer.find(b"$", begin)
    while idx != -1:
        if idx + 1 >= len(buffer):
            return idx
        if buffer[idx + 1] in (MSP_V1_START[1], MSP_V2_START[1]):
            if idx + 2 >= len(buffer) or buffer[idx + 2] in (DIR_TO_FC, DIR_FROM_FC, DIR_ERROR):
                return idx
        idx = buffer.find(b"$", idx + 1)
    return -1


def decode(buffer: bytes) -> DecodeResult:
    """Decode the frame at the start of *buffer*.

    Leading bytes before the first start marker are skipped and counted in
    ``consumed``. A checksum failure consumes only up to the failed frame's
    ``$`` so that callers rescan from the following byte.
    """

    buffer = bytes(buffer)
    start = _find_start(buffer)
    if start == -1:
        return DecodeResult(DecodeStatus.INCOMPLETE, consumed=len(buffer))
    if len(buffer) - start < 3:
        return DecodeResult(DecodeStatus.INCOMPLETE, consumed=start)
    direction = Direction(buffer[start + 2])
    if buffer[start + 1] == MSP_V1_START[1]:
        if len(buffer) - start < _V1_HEADER_LEN:
            return DecodeResult(DecodeStatus.INCOMPLETE, consumed=start)
        size = buffer[start + 3]
        command = buffer[start + 4]
        end = start + _V1_HEADER_LEN + size
        if len(buffer) <= end:
            return DecodeResult(DecodeStatus.INCOMPLETE, consumed=start)
        payload = buffer[start + _V1_HEADER_LEN : end]
        if buffer[end] != xor_checksum(size, command, payload):
            return DecodeResult(DecodeStatus.CHECKSUM_MISMATCH, consumed=start + 1)
        frame = MSPFrame(command, payload, MSPVersion.V1, direction)
        return DecodeResult(DecodeStatus.FRAME, frame, end + 1)

    if len(buffer) - start < _V2_HEADER_LEN:
        return DecodeResult(DecodeStatus.INCOMPLETE, consumed=start)
    flag, command, size = struct.unpack_from("<BHH", buffer, start + 3)
    end = start + _V2_HEADER_LEN + size
    if len(buffer) <= end:
        return DecodeResult(DecodeStatus.INCOMPLETE, consumed=start)
    if buffer[end] != crc8_dvb_s2(buffer[start + 3 : end]):
        return DecodeResult(DecodeStatus.CHECKSUM_MISMATCH, consumed=start + 1)
    payload = buffer[start + _V2_HEADER_LEN : end]
    frame = MSPFrame(command, payload, MSPVersion.V2, direction, flag)
    return DecodeResult(DecodeStatus.FRAME, frame, end + 1)


@dataclass
class DecoderStats:
    frames: int = 0
    checksum_errors: int = 0
    bytes_received: int = 0


class FrameDecoder:
    """Streaming decoder accepting arbitrary chunk boundaries."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.stats = DecoderStats()

    def feed(self, chunk: bytes) -> List[MSPFrame]:
        self.stats.bytes_received += len(chunk)
        self._buffer.extend(chunk)
        frames: List[MSPFrame] = []
        while self._buffer:
            result = decode(self._buffer)
            del self._buffer[: result.consumed]
            if result.status is DecodeStatus.FRAME:
                self.stats.frames += 1
                frames.append(result.frame)
            elif result.status is DecodeStatus.CHECKSUM_MISMATCH:
                self.stats.checksum_errors += 1
            else:
                break
        return frames

    def reset(self) -> None:
        self._buffer.clear()

    @property
    def buffered(self) -> int:
        return len(self._buffer)


def hexlify(data: bytes) -> str:
    """Return a lowercase hexadecimal representation of *data*."""

    return binascii.hexlify(data).decode("ascii")


def le_u16(data: bytes) -> int:
    return struct.unpack("<H", data)[0]


def le_i16(data: bytes) -> int:
    return struct.unpack("<h", data)[0]


def le_u32(data: bytes) -> int:
    return struct.unpack("<I", data)[0]


def le_i32(data: bytes) -> int:
    return struct.unpack("<i", data)[0]
