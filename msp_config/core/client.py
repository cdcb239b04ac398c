"""Asynchronous MSP request/response engine."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from .commands import command_name
from .context import ConnectionContext
from .msp import (
    CliModeActiveError,
    Direction,
    FrameDecoder,
    MSPFrame,
    MSPTimeoutError,
    MSPVersion,
    NotSupportedError,
    TransportClosedError,
    encode_frame,
    pick_version,
)

log = logging.getLogger(__name__)

CLI_BLOCK_MESSAGE = "MSP blocked - CLI mode active"
# how long a reply to a timed-out request is still expected on the wire
STALE_REPLY_WINDOW = 1.0


@dataclass
class PendingRequest:
    command: int
    payload: bytes
    deadline: float
    future: asyncio.Future
    inert: bool = False
    # a reply discarded as late while this request waited; it was ours if
    # nothing else arrives before the deadline
    held: Optional[bytes] = None

    @property
    def settled(self) -> bool:
        return self.inert or self.future.done()

    def resolve(self, payload: bytes) -> bool:
        if self.settled:
            return False
        self.future.set_result(payload)
        return True

    def fail(self, exc: BaseException) -> bool:
        if self.settled:
            return False
        self.future.set_exception(exc)
        return True


@dataclass
class EngineStats:
    requests: int = 0
    timeouts: int = 0
    rejected: int = 0
    discarded: int = 0
    max_outstanding: int = 0
    outstanding: int = field(default=0, repr=False)


class MSPClient:
    """Correlates MSP requests with replies, one request in flight at a time."""

    def __init__(self, context: ConnectionContext) -> None:
        self.context = context
        self.decoder = FrameDecoder()
        self.stats = EngineStats()
        self._queue = asyncio.Lock()
        self._pending: Optional[PendingRequest] = None
        self._stale: Dict[int, float] = {}
        self._subscription = context.transport.subscribe(self._on_data)

    @property
    def pending(self) -> Optional[PendingRequest]:
        return self._pending

    def _check_ready(self) -> None:
        if not self.context.transport.is_open:
            raise TransportClosedError("transport is not open")
        if self.context.cli_session.active:
            raise CliModeActiveError(CLI_BLOCK_MESSAGE)

    async def request(
        self,
        command: int,
        payload: bytes = b"",
        *,
        timeout: Optional[float] = None,
        version: Optional[MSPVersion] = None,
    ) -> bytes:
        """Send *command* and return the reply payload.

        Raises :class:`TransportClosedError` or :class:`CliModeActiveError`
        without touching the wire, :class:`MSPTimeoutError` when the deadline
        passes and :class:`NotSupportedError` on an error-direction reply.
        """

        self._check_ready()
        payload = bytes(payload)
        if version is None:
            version = pick_version(command, payload)
        frame = encode_frame(command, payload, version)
        if timeout is None:
            timeout = self.context.profile.request_timeout
        async with self._queue:
            # state may have changed while queued behind another request
            self._check_ready()
            loop = asyncio.get_running_loop()
            pending = PendingRequest(command, payload, loop.time() + timeout, loop.create_future())
            self._pending = pending
            self.stats.requests += 1
            self.stats.outstanding += 1
            self.stats.max_outstanding = max(self.stats.max_outstanding, self.stats.outstanding)
            try:
                log.debug("-> %s len=%d", command_name(command), len(payload))
                self.context.record("out", MSPFrame(command, payload, version))
                try:
                    await self.context.transport.write(frame)
                except OSError as exc:
                    raise TransportClosedError(f"write failed: {exc}") from exc
                remaining = max(0.0, pending.deadline - loop.time())
                try:
                    return await asyncio.wait_for(pending.future, timeout=remaining)
                except asyncio.TimeoutError:
                    pending.inert = True
                    if pending.held is not None:
                        # the abandoned reply never came; the one we set aside was ours
                        log.debug("%s: using reply held back as late", command_name(command))
                        self.stats.discarded -= 1
                        self.context.unsupported.clear_unsupported(command)
                        return pending.held
                    self.stats.timeouts += 1
                    self._expect_stale(command, timeout)
                    log.debug("%s timed out after %.2fs", command_name(command), timeout)
                    raise MSPTimeoutError(f"MSP command {int(command)} timed out") from None
            finally:
                pending.inert = True
                self.stats.outstanding -= 1
                if self._pending is pending:
                    self._pending = None

    def fail_pending(self, exc: BaseException) -> None:
        """Resolve the outstanding request, if any, with *exc*."""

        pending = self._pending
        if pending is not None and pending.fail(exc):
            log.debug("failed pending %s: %s", command_name(pending.command), exc)
        self.decoder.reset()
        self._stale.clear()

    def _on_data(self, chunk: bytes) -> None:
        if self.context.cli_session.active:
            # text traffic belongs to the CLI bridge
            self.decoder.reset()
            return
        for frame in self.decoder.feed(chunk):
            self._handle_frame(frame)

    def _handle_frame(self, frame: MSPFrame) -> None:
        if frame.direction is Direction.REQUEST:
            return
        self.context.record("in", frame)
        pending = self._pending
        if self._consume_stale(frame.command):
            self.stats.discarded += 1
            log.debug("discarding late reply for %s", command_name(frame.command))
            if (
                pending is not None
                and not pending.settled
                and pending.command == frame.command
                and frame.direction is Direction.REPLY
            ):
                pending.held = frame.payload
            return
        if pending is None or pending.settled or pending.command != frame.command:
            self.stats.discarded += 1
            log.debug("discarding unmatched reply for %s", command_name(frame.command))
            return
        if frame.direction is Direction.ERROR:
            self.stats.rejected += 1
            self.context.unsupported.mark_unsupported(frame.command)
            pending.fail(NotSupportedError(f"MSP command {frame.command} not supported"))
            return
        self.context.unsupported.clear_unsupported(frame.command)
        pending.resolve(frame.payload)

    def _expect_stale(self, command: int, timeout: float) -> None:
        # at most one late reply is expected per command; a second timeout
        # while the first is unanswered means the board dropped a reply
        command = int(command)
        now = time.monotonic()
        if self._stale.get(command, 0.0) > now:
            return
        self._stale[command] = now + max(timeout, STALE_REPLY_WINDOW)

    def _consume_stale(self, command: int) -> bool:
        # the firmware answers in order: a reply to any other command means
        # the replies abandoned before it are not coming
        for other in [key for key in self._stale if key != command]:
            del self._stale[other]
        expiry = self._stale.pop(command, None)
        return expiry is not None and expiry > time.monotonic()

    def close(self) -> None:
        self._subscription.cancel()
        self.fail_pending(TransportClosedError("client closed"))
