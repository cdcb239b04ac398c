"""Per-connection memo of commands the connected firmware does not implement."""

from __future__ import annotations

import logging
from typing import Iterator, Set

from .commands import command_name

log = logging.getLogger(__name__)


class UnsupportedCommandTracker:
    """Set of command ids known to fail on the current firmware.

    Entries are added on explicit rejection and dropped as soon as the command
    succeeds again, so a reconnect to different firmware heals itself.
    """

    def __init__(self) -> None:
        self._commands: Set[int] = set()

    def is_unsupported(self, command: int) -> bool:
        return int(command) in self._commands

    def mark_unsupported(self, command: int) -> None:
        command = int(command)
        if command not in self._commands:
            log.info("marking %s as unsupported", command_name(command))
            self._commands.add(command)

    def clear_unsupported(self, command: int) -> None:
        command = int(command)
        if command in self._commands:
            log.info("%s succeeded, clearing unsupported mark", command_name(command))
            self._commands.discard(command)

    def clear(self) -> None:
        self._commands.clear()

    def __contains__(self, command: object) -> bool:
        return isinstance(command, int) and command in self._commands

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._commands))

    def __len__(self) -> int:
        return len(self._commands)
