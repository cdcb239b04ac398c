"""MSP frame recorder writing zstd compressed logs."""

from __future__ import annotations

import io
import json
import os
import time
from dataclasses import dataclass
from typing import Iterator, List

import zstandard as zstd


@dataclass
class RecorderEvent:
    ts: float
    port: str
    direction: str
    cmd: int
    version: int
    payload: bytes

    def to_json(self) -> str:
        return json.dumps(
            {
                "ts": self.ts,
                "port": self.port,
                "dir": self.direction,
                "cmd": self.cmd,
                "v": self.version,
                "len": len(self.payload),
                "payload_hex": self.payload.hex(),
            },
            separators=(",", ":"),
        )


class MSPRecorder:
    def __init__(self, path: str) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.path = path
        self.count = 0
        self._fp = open(path, "wb")
        self._compressor = zstd.ZstdCompressor(level=3)
        self._writer = self._compressor.stream_writer(self._fp)
        self._closed = False

    def record(self, event: RecorderEvent) -> None:
        if self._closed:
            return
        line = event.to_json().encode("utf-8") + b"\n"
        self._writer.write(line)
        self.count += 1

    def record_frame(self, port: str, direction: str, frame) -> None:
        self.record(
            RecorderEvent(
                ts=time.time(),
                port=port,
                direction=direction,
                cmd=int(frame.command),
                version=int(frame.version),
                payload=bytes(frame.payload),
            )
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.flush(zstd.FLUSH_FRAME)
        self._writer.close()
        if not self._fp.closed:
            self._fp.close()

    def __enter__(self) -> "MSPRecorder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def read_recording(path: str) -> List[dict]:
    """Decode a recording written by :class:`MSPRecorder`."""

    return list(iter_recording(path))


def iter_recording(path: str) -> Iterator[dict]:
    with open(path, "rb") as fp:
        reader = zstd.ZstdDecompressor().stream_reader(fp)
        for line in io.TextIOWrapper(reader, encoding="utf-8"):
            line = line.strip()
            if line:
                yield json.loads(line)
