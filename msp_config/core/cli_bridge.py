"""Text CLI fallback for operations the binary protocol cannot complete.

The bridge owns the link while it is active: telemetry is stopped before the
first byte goes out, the engine refuses binary requests, and every line is
spaced by the profile's ``line_delay`` because the firmware CLI is line
buffered and drops input sent too quickly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .client import CLI_BLOCK_MESSAGE, MSPClient
from .context import CliState, ConnectionContext
from .msp import CliModeActiveError, TransportClosedError

log = logging.getLogger(__name__)

PROMPT_TRIGGER = "#"
PROMPT_RETRY = "\r\n#"
PROMPT_MARKERS = ("CLI", "# ")
_ECHO_WINDOW = 256


@dataclass
class CliTranscript:
    lines_sent: List[str] = field(default_factory=list)
    output: str = ""
    prompt_seen: bool = False
    transport_closed: bool = False
    kept_open: bool = False

    @property
    def completed(self) -> bool:
        return not self.transport_closed

    def lines(self) -> List[str]:
        return [line.strip() for line in self.output.splitlines() if line.strip()]


class CliBridge:
    def __init__(self, context: ConnectionContext, client: MSPClient) -> None:
        self.context = context
        self.client = client
        self._subscription = None
        self._echo = ""
        self._capture: Optional[List[str]] = None
        self._prompt = asyncio.Event()
        self._closed = asyncio.Event()

    @property
    def state(self) -> CliState:
        return self.context.cli_session.state

    @property
    def active(self) -> bool:
        return self.context.cli_session.active

    async def enter(self) -> bool:
        """Switch the link to CLI mode and return whether a prompt was seen."""

        session = self.context.cli_session
        if session.active:
            return session.prompt_seen
        if not self.context.transport.is_open:
            raise TransportClosedError("transport is not open")
        timings = self.context.profile.cli

        self.context.telemetry.stop()
        session.active = True
        session.state = CliState.ENTERING
        session.entered_at = time.time()
        session.prompt_seen = False
        self.client.fail_pending(CliModeActiveError(CLI_BLOCK_MESSAGE))
        self._closed.clear()
        self._prompt.clear()
        self._echo = ""
        if self._subscription is None:
            self._subscription = self.context.transport.subscribe(self._on_data)
        self.context.send_log("info", "CLI mode", "Entering CLI")

        await self._write(PROMPT_TRIGGER)
        seen = await self._wait_for_prompt(timings.prompt_wait)
        if not seen:
            await self._write(PROMPT_RETRY)
            seen = await self._wait_for_prompt(timings.prompt_retry_wait)
        if not seen:
            log.warning("no CLI prompt seen, continuing anyway")
        await self._pause(timings.enter_settle)
        session.prompt_seen = seen
        session.state = CliState.PROMPT_CONFIRMED
        return seen

    async def _send(self, lines: Iterable[str], transcript: CliTranscript, capture: bool) -> None:
        timings = self.context.profile.cli
        self.context.cli_session.state = CliState.SENDING
        self._capture = []
        try:
            for idx, line in enumerate(lines):
                if idx:
                    await self._pause(timings.line_delay)
                await self._write(line + "\n")
                transcript.lines_sent.append(line)
                log.debug("cli> %s", line)
            await self._pause(timings.capture_wait if capture else timings.line_delay)
        finally:
            transcript.output = "".join(self._capture or [])
            self._capture = None

    async def exit(self) -> None:
        session = self.context.cli_session
        if not session.active:
            return
        session.state = CliState.EXITING
        await self._write("exit\n")
        await self._pause(self.context.profile.cli.exit_delay)
        self._finish()
        self.context.telemetry.start()
        self.context.send_log("info", "CLI mode", "Exited CLI")

    async def run(
        self,
        lines: Iterable[str],
        *,
        keep_open: bool = False,
        capture: bool = False,
    ) -> CliTranscript:
        """Enter CLI mode, send *lines* and leave again unless *keep_open*.

        A transport close at any step aborts to binary mode without raising;
        the transcript reports it through ``transport_closed``.
        """

        transcript = CliTranscript()
        # a session held open for a pending save stays open
        keep_open = keep_open or self.context.cli_session.keep_open
        try:
            transcript.prompt_seen = await self.enter()
            await self._send(lines, transcript, capture)
            if keep_open:
                self.context.cli_session.keep_open = True
                transcript.kept_open = True
            else:
                await self.exit()
        except TransportClosedError as exc:
            log.warning("transport closed during CLI session: %s", exc)
            self.reset()
            transcript.transport_closed = True
        return transcript

    async def save(self) -> CliTranscript:
        """Send ``save``; the board reboots so the session ends without ``exit``."""

        transcript = CliTranscript()
        try:
            transcript.prompt_seen = await self.enter()
            self.context.cli_session.state = CliState.SENDING
            await self._write("save\n")
            transcript.lines_sent.append("save")
            self.context.send_log("info", "CLI save", "Board will reboot")
            await self._pause(self.context.profile.cli.save_delay)
        except TransportClosedError:
            transcript.transport_closed = True
        finally:
            self._finish()
        return transcript

    def reset(self) -> None:
        """Return to binary mode immediately, abandoning any CLI step."""

        self._closed.set()
        self._finish()

    def _finish(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self.context.cli_session.reset()
        self.client.decoder.reset()

    async def _write(self, text: str) -> None:
        if self._closed.is_set() or not self.context.transport.is_open:
            raise TransportClosedError("transport closed during CLI session")
        try:
            await self.context.transport.write(text.encode("ascii"))
        except OSError as exc:
            raise TransportClosedError(f"CLI write failed: {exc}") from exc

    async def _pause(self, delay: float) -> None:
        if delay > 0:
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        if self._closed.is_set() or not self.context.transport.is_open:
            raise TransportClosedError("transport closed during CLI session")

    async def _wait_for_prompt(self, window: float) -> bool:
        if self._prompt.is_set():
            return True
        try:
            await asyncio.wait_for(self._prompt.wait(), timeout=window)
        except asyncio.TimeoutError:
            return False
        return True

    def _on_data(self, chunk: bytes) -> None:
        text = chunk.decode("ascii", errors="replace")
        self._echo = (self._echo + text)[-_ECHO_WINDOW:]
        if any(marker in self._echo for marker in PROMPT_MARKERS):
            self._prompt.set()
        if self._capture is not None:
            self._capture.append(text)
