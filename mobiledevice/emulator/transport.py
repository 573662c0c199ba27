"""Loopback transport serving emulated devices over socket pairs."""

import itertools
import logging
import queue
import socket
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from ..callbacks import Disposable, registry
from ..connection import Connection
from ..constants import LOCKDOWN_PORT, EventType
from ..errors import MobileDeviceError, MobileDeviceErrorKind
from ..models import DeviceEvent, DeviceInfo
from ..transport import Transport
from .device import EmulatedDevice
from .handlers import LockdownHandler, ServiceHandler

logger = logging.getLogger(__name__)

FIRST_SERVICE_PORT = 49152
SYSTEM_BUID = "00000000-0000-0000-0000-00000000B01D"


class LoopbackTransport(Transport):
    """In-process stand-in for usbmuxd.

    Every ``connect()`` returns one end of a ``socket.socketpair()``; the
    other end is served by a handler thread. Lockdown listens on its usual
    port; a started service is reachable once on the port lockdown handed
    out for it.
    """

    def __init__(self, *devices: EmulatedDevice):
        self._devices: dict[int, EmulatedDevice] = {}
        self._services: dict[tuple[int, int], type[ServiceHandler]] = {}
        self._pair_records: dict[str, dict[str, Any]] = {}
        self._handlers: list[ServiceHandler] = []
        self._subscribers: dict[int, queue.Queue] = {}
        self._ports = itertools.count(FIRST_SERVICE_PORT)
        self._lock = threading.Lock()
        for device in devices:
            self.attach(device)

    # ------------------------------------------------------------------
    # Devices and events
    # ------------------------------------------------------------------

    def _notify(self, event: DeviceEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for events in subscribers:
            events.put(event)

    def attach(self, device: EmulatedDevice) -> None:
        with self._lock:
            self._devices[device.device_id] = device
        logger.info("Emulated device %s attached", device.udid)
        self._notify(DeviceEvent(EventType.ADD, device.udid, device.connection_type, device.device_id))

    def detach(self, udid: str) -> None:
        with self._lock:
            device = next((d for d in self._devices.values() if d.udid == udid), None)
            if device is None:
                return
            del self._devices[device.device_id]
        self._notify(DeviceEvent(EventType.REMOVE, device.udid, device.connection_type, device.device_id))

    def device(self, udid: str) -> EmulatedDevice | None:
        with self._lock:
            return next((d for d in self._devices.values() if d.udid == udid), None)

    def list_devices(self) -> list[DeviceInfo]:
        with self._lock:
            return [device.info for device in self._devices.values()]

    def subscribe(self, callback: Callable[[DeviceEvent], None]) -> Disposable:
        """Deliver events on a listener thread, starting with the attached devices."""
        token = registry.register(callback)
        events: queue.Queue = queue.Queue()
        with self._lock:
            for device in self._devices.values():
                events.put(DeviceEvent(EventType.ADD, device.udid, device.connection_type, device.device_id))
            self._subscribers[token] = events

        def listen() -> None:
            while True:
                event = events.get()
                if event is None or not registry.invoke(token, event):
                    return

        def close() -> None:
            with self._lock:
                self._subscribers.pop(token, None)
            events.put(None)

        threading.Thread(target=listen, name="loopback-listener", daemon=True).start()
        return registry.disposable(token, close)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def publish(self, device: EmulatedDevice, handler: type[ServiceHandler]) -> int:
        """Reserve a port on which ``handler`` accepts one connection."""
        with self._lock:
            port = next(self._ports)
            self._services[(device.device_id, port)] = handler
        return port

    def connect(self, device_id: int, port: int) -> socket.socket:
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                raise MobileDeviceError(MobileDeviceErrorKind.NO_DEVICE, f"Device {device_id} not attached")
            if port == LOCKDOWN_PORT:
                handler_class: type[ServiceHandler] | None = LockdownHandler
            else:
                handler_class = self._services.pop((device_id, port), None)
        if handler_class is None:
            raise MobileDeviceError(MobileDeviceErrorKind.UNKNOWN, f"Port {port} refused the connection")

        host_end, device_end = socket.socketpair()
        handler = handler_class(Connection(device_end, port=port), device, self)
        with self._lock:
            self._handlers = [h for h in self._handlers if h.is_alive()]
            self._handlers.append(handler)
        handler.start()
        logger.debug("Loopback connection to %s port %d", device.udid, port)
        return host_end

    # ------------------------------------------------------------------
    # Pair records
    # ------------------------------------------------------------------

    def read_pair_record(self, udid: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._pair_records.get(udid)
        return dict(record) if record is not None else None

    def save_pair_record(self, udid: str, device_id: int, record: dict[str, Any]) -> None:
        with self._lock:
            self._pair_records[udid] = dict(record)
            device = self._devices.get(device_id)
        if device is not None:
            self._notify(DeviceEvent(EventType.PAIRED, udid, device.connection_type, device_id))

    def read_buid(self) -> str:
        return SYSTEM_BUID

    def close(self) -> None:
        """Stop every handler thread and listener."""
        with self._lock:
            handlers, self._handlers = self._handlers, []
            subscribers, self._subscribers = self._subscribers, {}
        for handler in handlers:
            handler.stop()
        for events in subscribers.values():
            events.put(None)
        for handler in handlers:
            if handler is not threading.current_thread():
                handler.join(timeout=1.0)


@contextmanager
def run_emulated_device(device: EmulatedDevice | None = None, paired: bool = True) -> Iterator[LoopbackTransport]:
    """Context manager serving an emulated device through a loopback transport.

    Args:
        device: Device to serve; a default ``ABC123`` device if omitted
        paired: Pre-trust a host record so lockdown handshakes succeed
            without a pair record factory

    Yields:
        The transport, to pass to ``Device``
    """
    device = device or EmulatedDevice()
    transport = LoopbackTransport(device)
    if paired:
        host_id = f"HOST-{device.udid}"
        device.trust(host_id)
        record = {"HostID": host_id, "SystemBUID": SYSTEM_BUID, "EscrowBag": device.escrow_bag}
        transport.save_pair_record(device.udid, device.device_id, record)
    try:
        yield transport
    finally:
        transport.close()
