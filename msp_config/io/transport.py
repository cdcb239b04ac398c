"""Byte-stream transports consumed by the MSP engine."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, List, Optional, Protocol, Tuple
from urllib.parse import urlsplit

import serial

log = logging.getLogger(__name__)

DataCallback = Callable[[bytes], None]
CloseCallback = Callable[[], None]


class Subscription:
    """Cancellation handle returned by :meth:`Transport.subscribe`."""

    def __init__(self, registry: List, callback: Callable) -> None:
        self._registry = registry
        self._callback = callback
        self._registry.append(callback)

    @property
    def active(self) -> bool:
        return any(cb is self._callback for cb in self._registry)

    def cancel(self) -> None:
        for idx, cb in enumerate(self._registry):
            if cb is self._callback:
                del self._registry[idx]
                return

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()


class Transport(Protocol):
    """Protocol describing what the engine needs from a byte stream."""

    @property
    def is_open(self) -> bool:  # pragma: no cover - protocol signature
        ...

    async def write(self, data: bytes) -> None:  # pragma: no cover - protocol signature
        ...

    def subscribe(self, callback: DataCallback) -> Subscription:  # pragma: no cover
        ...

    def subscribe_close(self, callback: CloseCallback) -> Subscription:  # pragma: no cover
        ...


class BaseTransport:
    """Listener bookkeeping shared by the concrete transports."""

    def __init__(self) -> None:
        self._data_listeners: List[DataCallback] = []
        self._close_listeners: List[CloseCallback] = []

    def subscribe(self, callback: DataCallback) -> Subscription:
        return Subscription(self._data_listeners, callback)

    def subscribe_close(self, callback: CloseCallback) -> Subscription:
        return Subscription(self._close_listeners, callback)

    def _dispatch(self, chunk: bytes) -> None:
        for callback in list(self._data_listeners):
            try:
                callback(chunk)
            except Exception:
                log.exception("data listener failed")

    def _notify_closed(self) -> None:
        for callback in list(self._close_listeners):
            try:
                callback()
            except Exception:
                log.exception("close listener failed")


class SerialTransport(BaseTransport):
    """pyserial-backed transport for serial ports and ``socket://`` URLs.

    A reader thread pulls bytes off the port and hands them to the event loop
    with ``call_soon_threadsafe``; listeners therefore always run on the loop.
    """

    def __init__(
        self,
        url: str,
        baudrate: int = 115200,
        *,
        read_timeout: float = 0.05,
        write_timeout: float = 1.0,
    ) -> None:
        super().__init__()
        self.url = url
        self.baudrate = baudrate
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout
        self._serial: Optional[serial.SerialBase] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._closed_notified = False

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self) -> None:
        if self.is_open:
            return
        self._loop = asyncio.get_running_loop()
        self._serial = await self._loop.run_in_executor(None, self._open_port)
        self._stop.clear()
        self._closed_notified = False
        self._reader = threading.Thread(target=self._reader_loop, name="MSPSerialReader", daemon=True)
        self._reader.start()
        log.info("opened %s at %s baud", self.url, self.baudrate)

    def _open_port(self) -> serial.SerialBase:
        ser = serial.serial_for_url(
            self.url,
            baudrate=self.baudrate,
            timeout=self._read_timeout,
            write_timeout=self._write_timeout,
        )
        self.wake_port(ser)
        try:
            ser.reset_input_buffer()
        except (serial.SerialException, OSError, AttributeError):
            pass
        return ser

    @staticmethod
    def wake_port(port: serial.SerialBase) -> None:
        """Toggle DTR/RTS lines to wake USB VCP devices."""

        try:
            port.dtr = False
            port.rts = False
            time.sleep(0.05)
            port.dtr = True
            port.rts = True
            time.sleep(0.05)
        except (serial.SerialException, OSError, AttributeError, NotImplementedError):
            # socket:// and loop:// handlers do not expose modem lines
            pass

    async def write(self, data: bytes) -> None:
        ser = self._serial
        if ser is None or not ser.is_open:
            raise serial.SerialException("port is not open")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_blocking, ser, bytes(data))
        except (serial.SerialException, OSError):
            self._handle_lost()
            raise

    @staticmethod
    def _write_blocking(ser: serial.SerialBase, data: bytes) -> None:
        ser.write(data)
        ser.flush()

    def _reader_loop(self) -> None:
        ser = self._serial
        loop = self._loop
        if ser is None or loop is None:
            return
        while not self._stop.is_set():
            try:
                chunk = ser.read(ser.in_waiting or 1)
            except (serial.SerialException, OSError, TypeError, AttributeError):
                if not self._stop.is_set():
                    log.warning("reader for %s stopped: port lost", self.url)
                    loop.call_soon_threadsafe(self._handle_lost)
                return
            if chunk:
                loop.call_soon_threadsafe(self._dispatch, chunk)

    def _handle_lost(self) -> None:
        ser, self._serial = self._serial, None
        self._stop.set()
        if ser is not None:
            try:
                ser.close()
            except (serial.SerialException, OSError):
                pass
        if not self._closed_notified:
            self._closed_notified = True
            self._notify_closed()

    async def close(self) -> None:
        self._stop.set()
        reader = self._reader
        if reader is not None and reader.is_alive():
            await asyncio.get_running_loop().run_in_executor(None, reader.join, 1.0)
        self._reader = None
        self._handle_lost()
        log.info("closed %s", self.url)


def parse_udp_url(url: str) -> Tuple[str, int]:
    """Split ``udp://host:port`` into host and port; the host may be empty."""

    parts = urlsplit(url)
    if parts.scheme != "udp" or parts.port is None:
        raise ValueError(f"expected udp://host:port, got {url!r}")
    return parts.hostname or "", parts.port


class _DatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: "UdpTransport") -> None:
        self._owner = owner

    def datagram_received(self, data: bytes, addr) -> None:
        self._owner._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        # ICMP errors; the engine's timeouts deal with the missing replies
        log.warning("UDP error on %s: %s", self._owner.url, exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._owner._handle_lost()


class UdpTransport(BaseTransport):
    """MSP over UDP datagrams, for SITL builds and Wi-Fi bridges.

    ``udp://host:port`` sends to that peer. With an empty host
    (``udp://:5762``) the transport listens on the port and answers whoever
    sent the first datagram.
    """

    def __init__(self, url: str) -> None:
        super().__init__()
        self.url = url
        self.host, self.port = parse_udp_url(url)
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._peer: Optional[Tuple[str, int]] = None
        self._closed_notified = False

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[:2]

    async def open(self) -> None:
        if self.is_open:
            return
        loop = asyncio.get_running_loop()
        if self.host:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramProtocol(self), remote_addr=(self.host, self.port)
            )
        else:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramProtocol(self), local_addr=("0.0.0.0", self.port)
            )
        self._transport = transport
        self._closed_notified = False
        log.info("opened %s", self.url)

    async def write(self, data: bytes) -> None:
        transport = self._transport
        if transport is None or transport.is_closing():
            raise OSError("UDP endpoint is not open")
        if self.host:
            transport.sendto(bytes(data))
        elif self._peer is None:
            raise OSError("no UDP peer has sent a datagram yet")
        else:
            transport.sendto(bytes(data), self._peer)

    def _on_datagram(self, data: bytes, addr) -> None:
        if not self.host and self._peer is None:
            self._peer = addr[:2]
            log.info("UDP peer %s:%s on %s", addr[0], addr[1], self.url)
        self._dispatch(data)

    def _handle_lost(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
        if not self._closed_notified:
            self._closed_notified = True
            self._notify_closed()

    async def close(self) -> None:
        self._handle_lost()
        log.info("closed %s", self.url)
