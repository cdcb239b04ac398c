"""Per-connection state shared by the engine, the CLI bridge and the services."""

from __future__ import annotations

import enum
import itertools
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Protocol, Tuple

from .config import Profile
from .unsupported import UnsupportedCommandTracker

log = logging.getLogger(__name__)

LOG_HISTORY_SIZE = 200

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class TelemetryControl(Protocol):
    def start(self) -> None:  # pragma: no cover - protocol signature
        ...

    def stop(self) -> None:  # pragma: no cover - protocol signature
        ...


class NullTelemetry:
    """Telemetry control used when nothing is polling the link."""

    def __init__(self) -> None:
        self.running = False

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False


class CliState(enum.Enum):
    BINARY = "binary"
    ENTERING = "entering"
    PROMPT_CONFIRMED = "prompt_confirmed"
    SENDING = "sending"
    EXITING = "exiting"


@dataclass
class CliSessionState:
    active: bool = False
    state: CliState = CliState.BINARY
    entered_at: Optional[float] = None
    prompt_seen: bool = False
    keep_open: bool = False

    def reset(self) -> None:
        self.active = False
        self.state = CliState.BINARY
        self.entered_at = None
        self.prompt_seen = False
        self.keep_open = False


_VERSION_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")


@dataclass
class FirmwareInfo:
    api_version: Optional[str] = None
    variant: Optional[str] = None
    version: Optional[str] = None
    board_id: Optional[str] = None
    build_info: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_inav(self) -> bool:
        return self.variant == "INAV"

    @property
    def version_tuple(self) -> Optional[Tuple[int, int, int]]:
        if not self.version:
            return None
        match = _VERSION_RE.search(self.version)
        if not match:
            return None
        major, minor, patch = (int(part) for part in match.groups())
        return major, minor, patch

    def is_legacy_inav(self) -> bool:
        """Return ``True`` for iNav older than 2.3, which lacks MSP2 mixer commands."""

        version = self.version_tuple
        return self.is_inav and version is not None and version < (2, 3, 0)

    def to_dict(self) -> Dict[str, object]:
        return {
            "api_version": self.api_version,
            "fc_variant": self.variant,
            "fc_version": self.version,
            "board_id": self.board_id,
            "build_info": self.build_info,
            "name": self.name,
            "is_inav": self.is_inav,
            "legacy_inav": self.is_legacy_inav(),
        }


@dataclass
class LogEntry:
    id: int
    timestamp: float
    level: str
    message: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
            "detail": self.detail,
        }


LogSink = Callable[[LogEntry], None]


@dataclass
class ConnectionContext:
    """Everything scoped to one open link.

    Nothing in here is global: a reconnect builds a fresh context, so the
    unsupported memo and CLI flags of one flight controller never leak into
    the next.
    """

    transport: object
    profile: Profile
    firmware: FirmwareInfo = field(default_factory=FirmwareInfo)
    unsupported: UnsupportedCommandTracker = field(default_factory=UnsupportedCommandTracker)
    cli_session: CliSessionState = field(default_factory=CliSessionState)
    telemetry: TelemetryControl = field(default_factory=NullTelemetry)
    recorder: Optional[object] = None
    port: str = ""
    log_sink: Optional[LogSink] = None
    history: Deque[LogEntry] = field(default_factory=lambda: deque(maxlen=LOG_HISTORY_SIZE))
    pending_mixer_type: Optional[int] = None
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1), repr=False)

    def send_log(self, level: str, message: str, detail: Optional[str] = None) -> LogEntry:
        """Log a user-facing event and hand it to the sink and history."""

        entry = LogEntry(next(self._ids), time.time(), level, message, detail)
        if detail:
            log.log(_LEVELS.get(level, logging.INFO), "%s (%s)", message, detail)
        else:
            log.log(_LEVELS.get(level, logging.INFO), "%s", message)
        self.history.append(entry)
        if self.log_sink is not None:
            try:
                self.log_sink(entry)
            except Exception:
                log.exception("log sink failed")
        return entry

    def recent_log(self, limit: Optional[int] = None) -> List[LogEntry]:
        entries = list(self.history)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def record(self, direction: str, frame) -> None:
        if self.recorder is None:
            return
        self.recorder.record_frame(self.port, direction, frame)

    def reset(self) -> None:
        """Drop state that only holds for the link that just went away."""

        self.unsupported.clear()
        self.cli_session.reset()
        self.pending_mixer_type = None
