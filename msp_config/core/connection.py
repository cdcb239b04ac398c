"""Composition root tying one transport to its engine, lock and CLI bridge."""

from __future__ import annotations

import logging
from typing import Optional

from .cli_bridge import CliBridge
from .client import MSPClient
from .config import Profile
from .context import ConnectionContext, LogSink, TelemetryControl
from .lock import ConfigLock
from .msp import MSPVersion, TransportClosedError

log = logging.getLogger(__name__)


class MSPConnection:
    def __init__(
        self,
        transport,
        profile: Optional[Profile] = None,
        *,
        port: str = "",
        recorder=None,
        log_sink: Optional[LogSink] = None,
    ) -> None:
        profile = profile or Profile(name="default")
        self.transport = transport
        self.context = ConnectionContext(
            transport=transport,
            profile=profile,
            recorder=recorder,
            port=port,
            log_sink=log_sink,
        )
        self.client = MSPClient(self.context)
        self.config_lock = ConfigLock(profile.lock_settle)
        self.cli = CliBridge(self.context, self.client)
        self._close_subscription = transport.subscribe_close(self._on_transport_closed)

    @property
    def profile(self) -> Profile:
        return self.context.profile

    @property
    def is_open(self) -> bool:
        return bool(self.transport.is_open)

    def apply_profile(self, profile: Profile) -> None:
        log.info("using timing profile %s", profile.name)
        self.context.profile = profile
        self.config_lock.settle = profile.lock_settle

    def attach_telemetry(self, telemetry: TelemetryControl) -> None:
        self.context.telemetry = telemetry

    async def request(
        self,
        command: int,
        payload: bytes = b"",
        *,
        timeout: Optional[float] = None,
        version: Optional[MSPVersion] = None,
    ) -> bytes:
        return await self.client.request(command, payload, timeout=timeout, version=version)

    def _on_transport_closed(self) -> None:
        exc = TransportClosedError("transport closed")
        self.context.telemetry.stop()
        self.client.fail_pending(exc)
        self.cli.reset()
        self.config_lock.force_release(exc)
        self.context.reset()
        self.context.send_log("warning", "Connection closed")

    async def close(self) -> None:
        self.context.telemetry.stop()
        close = getattr(self.transport, "close", None)
        if close is not None and self.transport.is_open:
            await close()
        else:
            self._on_transport_closed()
        self._close_subscription.cancel()
        self.client.close()
        if self.context.recorder is not None:
            self.context.recorder.close()
