"""JSON lines writer for the user-facing event log."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import IO, Optional

from ..core.context import LogEntry


class EventLogWriter:
    """Log sink appending one JSON object per :class:`LogEntry`."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fp: Optional[IO[str]] = self.path.open("a", encoding="utf-8")
        self._fix_permissions(self.path)
        self.count = 0

    def __call__(self, entry: LogEntry) -> None:
        if self._fp is None:
            return
        self._fp.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
        self._fp.flush()
        self.count += 1

    def close(self) -> None:
        fp, self._fp = self._fp, None
        if fp is not None:
            fp.close()

    def __enter__(self) -> "EventLogWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @staticmethod
    def _fix_permissions(path: Path) -> None:
        # files written under sudo stay readable by the invoking user
        sudo_uid = os.environ.get("SUDO_UID")
        sudo_gid = os.environ.get("SUDO_GID")
        if sudo_uid and sudo_gid:
            os.chown(path, int(sudo_uid), int(sudo_gid))
        path.chmod(0o664)
