"""Device discovery and raw port connections."""

import logging
import os
import plistlib
import socket
import struct
import sys
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from .callbacks import Disposable, registry
from .constants import (
    USBMUX_MESSAGE_PLIST,
    USBMUX_PROTOCOL_VERSION,
    USBMUXD_ENV_VAR,
    USBMUXD_SOCKET_PATH,
    USBMUXD_TCP_ADDRESS,
    ConnectionType,
    EventType,
)
from .errors import MobileDeviceError, MobileDeviceErrorKind
from .models import DeviceEvent, DeviceInfo

logger = logging.getLogger(__name__)

USBMUX_HEADER = struct.Struct("<IIII")  # length, version, message, tag

# usbmuxd result codes
_RESULT_OK = 0
_RESULT_BAD_DEVICE = 2
_RESULT_CONNECTION_REFUSED = 3


class Transport(ABC):
    """Base interface for the multiplexer that reaches devices."""

    @abstractmethod
    def list_devices(self) -> list[DeviceInfo]:
        """Currently attached devices."""
        pass

    @abstractmethod
    def subscribe(self, callback: Callable[[DeviceEvent], None]) -> Disposable:
        """Deliver add/remove/paired events until the token is disposed."""
        pass

    @abstractmethod
    def connect(self, device_id: int, port: int) -> socket.socket:
        """Open a raw byte stream to ``port`` on the device.

        Raises:
            MobileDeviceError: ``NO_DEVICE`` if the device is gone
        """
        pass

    @abstractmethod
    def read_pair_record(self, udid: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    def save_pair_record(self, udid: str, device_id: int, record: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def read_buid(self) -> str:
        pass


def usbmuxd_address() -> tuple[int, Any]:
    """Socket family and address of usbmuxd.

    ``USBMUXD_SOCKET_ADDRESS`` may hold ``unix:/path`` or ``host:port``.
    """
    override = os.environ.get(USBMUXD_ENV_VAR)
    if override:
        if override.startswith("unix:"):
            return socket.AF_UNIX, override[len("unix:") :]
        host, _, port = override.rpartition(":")
        return socket.AF_INET, (host or "127.0.0.1", int(port))
    if sys.platform == "win32":
        return socket.AF_INET, USBMUXD_TCP_ADDRESS
    return socket.AF_UNIX, USBMUXD_SOCKET_PATH


class UsbmuxTransport(Transport):
    """Client of the usbmuxd plist protocol."""

    def __init__(self, address: tuple[int, Any] | None = None, prog_name: str = "mobiledevice"):
        """Initialize transport.

        Args:
            address: ``(family, address)``; defaults to ``usbmuxd_address()``
            prog_name: Name reported to usbmuxd
        """
        self.address = address or usbmuxd_address()
        self.prog_name = prog_name
        self._tag = 0
        self._lock = threading.Lock()
        self._known: dict[int, DeviceInfo] = {}

    def _open(self) -> socket.socket:
        family, address = self.address
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.connect(address)
        except OSError as exc:
            sock.close()
            raise MobileDeviceError(MobileDeviceErrorKind.NO_DEVICE, f"usbmuxd unreachable: {exc}") from exc
        return sock

    def _send(self, sock: socket.socket, message: dict[str, Any]) -> int:
        with self._lock:
            self._tag += 1
            tag = self._tag
        message = {"ClientVersionString": "mobiledevice", "ProgName": self.prog_name, **message}
        payload = plistlib.dumps(message, fmt=plistlib.FMT_XML)
        header = USBMUX_HEADER.pack(
            USBMUX_HEADER.size + len(payload), USBMUX_PROTOCOL_VERSION, USBMUX_MESSAGE_PLIST, tag
        )
        sock.sendall(header + payload)
        return tag

    @staticmethod
    def _receive(sock: socket.socket) -> dict[str, Any]:
        header = _recv_exact(sock, USBMUX_HEADER.size)
        length, _version, message, _tag = USBMUX_HEADER.unpack(header)
        payload = _recv_exact(sock, length - USBMUX_HEADER.size)
        if message != USBMUX_MESSAGE_PLIST:
            raise MobileDeviceError(MobileDeviceErrorKind.UNKNOWN, f"Unexpected usbmux message type {message}")
        return plistlib.loads(payload)

    def _request(self, message: dict[str, Any]) -> dict[str, Any]:
        sock = self._open()
        try:
            self._send(sock, message)
            return self._receive(sock)
        except OSError as exc:
            raise MobileDeviceError(MobileDeviceErrorKind.DISCONNECTED, str(exc)) from exc
        finally:
            sock.close()

    @staticmethod
    def _device_info(entry: dict[str, Any]) -> DeviceInfo:
        properties = entry.get("Properties", {})
        kind = ConnectionType.NETWORK if properties.get("ConnectionType") == "Network" else ConnectionType.USBMUXD
        return DeviceInfo(
            udid=properties.get("SerialNumber", ""),
            connection_type=kind,
            device_id=entry.get("DeviceID", properties.get("DeviceID", 0)),
            properties=properties,
        )

    def list_devices(self) -> list[DeviceInfo]:
        response = self._request({"MessageType": "ListDevices"})
        devices = [self._device_info(entry) for entry in response.get("DeviceList", [])]
        self._known.update({device.device_id: device for device in devices})
        return devices

    def subscribe(self, callback: Callable[[DeviceEvent], None]) -> Disposable:
        sock = self._open()
        self._send(sock, {"MessageType": "Listen"})
        response = self._receive(sock)
        if response.get("Number", _RESULT_OK) != _RESULT_OK:
            sock.close()
            raise MobileDeviceError(MobileDeviceErrorKind.UNKNOWN, f"Listen refused: {response.get('Number')}")

        token = registry.register(callback)
        thread = threading.Thread(target=self._listen, args=(sock, token), name="usbmux-listener", daemon=True)
        thread.start()

        def close() -> None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            finally:
                sock.close()

        return registry.disposable(token, close)

    def _listen(self, sock: socket.socket, token: int) -> None:
        try:
            while registry.is_registered(token):
                message = self._receive(sock)
                event = self._event(message)
                if event is not None:
                    registry.invoke(token, event)
        except (OSError, ValueError, MobileDeviceError) as exc:
            logger.debug("usbmux listener stopped: %s", exc)
        except Exception:
            logger.exception("Device event callback failed")

    def _event(self, message: dict[str, Any]) -> DeviceEvent | None:
        kind = message.get("MessageType")
        if kind == "Attached":
            device = self._device_info(message)
            self._known[device.device_id] = device
            return DeviceEvent(EventType.ADD, device.udid, device.connection_type, device.device_id)
        device_id = message.get("DeviceID", 0)
        device = self._known.get(device_id)
        if device is None:
            return None
        if kind == "Detached":
            del self._known[device_id]
            return DeviceEvent(EventType.REMOVE, device.udid, device.connection_type, device_id)
        if kind == "Paired":
            return DeviceEvent(EventType.PAIRED, device.udid, device.connection_type, device_id)
        return None

    def connect(self, device_id: int, port: int) -> socket.socket:
        sock = self._open()
        try:
            self._send(sock, {"MessageType": "Connect", "DeviceID": device_id, "PortNumber": socket.htons(port)})
            response = self._receive(sock)
        except OSError as exc:
            sock.close()
            raise MobileDeviceError(MobileDeviceErrorKind.DISCONNECTED, str(exc)) from exc
        result = response.get("Number", _RESULT_OK)
        if result != _RESULT_OK:
            sock.close()
            if result == _RESULT_BAD_DEVICE:
                raise MobileDeviceError(MobileDeviceErrorKind.NO_DEVICE, f"Device {device_id} not attached")
            if result == _RESULT_CONNECTION_REFUSED:
                raise MobileDeviceError(MobileDeviceErrorKind.UNKNOWN, f"Port {port} refused the connection")
            raise MobileDeviceError(MobileDeviceErrorKind.UNKNOWN, f"Connect failed with result {result}")
        logger.debug("Connected to device %d port %d", device_id, port)
        return sock

    def read_pair_record(self, udid: str) -> dict[str, Any] | None:
        response = self._request({"MessageType": "ReadPairRecord", "PairRecordID": udid})
        data = response.get("PairRecordData")
        if data is None:
            return None
        return plistlib.loads(data)

    def save_pair_record(self, udid: str, device_id: int, record: dict[str, Any]) -> None:
        response = self._request(
            {
                "MessageType": "SavePairRecord",
                "PairRecordID": udid,
                "PairRecordData": plistlib.dumps(record),
                "DeviceID": device_id,
            }
        )
        if response.get("Number", _RESULT_OK) != _RESULT_OK:
            raise MobileDeviceError(MobileDeviceErrorKind.UNKNOWN, f"SavePairRecord failed: {response.get('Number')}")

    def read_buid(self) -> str:
        return self._request({"MessageType": "ReadBUID"})["BUID"]


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ConnectionError("Unexpected EOF from usbmuxd")
        buf.extend(chunk)
    return bytes(buf)


# ----------------------------------------------------------------------------
# Device manager
# ----------------------------------------------------------------------------

_default_transport: Transport | None = None


def get_default_transport() -> Transport:
    global _default_transport
    if _default_transport is None:
        _default_transport = UsbmuxTransport()
    return _default_transport


def set_default_transport(transport: Transport | None) -> None:
    """Replace the transport used when none is passed explicitly."""
    global _default_transport
    _default_transport = transport


class DeviceManager:
    """Entry point to the device list."""

    debug = False

    def __init__(self, transport: Transport | None = None):
        self.transport = transport or get_default_transport()
        self._subscriptions: list[Disposable] = []
        self._lock = threading.Lock()

    @classmethod
    def set_debug(cls, enabled: bool) -> None:
        """Toggle wire-level logging for the whole package."""
        cls.debug = enabled
        logging.getLogger("mobiledevice").setLevel(logging.DEBUG if enabled else logging.WARNING)

    def list_devices(self) -> list[str]:
        """UDIDs of devices attached over USB."""
        return [
            device.udid for device in self.transport.list_devices() if device.connection_type == ConnectionType.USBMUXD
        ]

    def list_devices_extended(self) -> list[DeviceInfo]:
        return self.transport.list_devices()

    def subscribe_events(self, callback: Callable[[DeviceEvent], None]) -> Disposable:
        """Register a callback for add/remove/paired events.

        The callback runs on a library thread.
        """
        subscription = self.transport.subscribe(callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe_events(self) -> None:
        """Dispose every subscription made through this manager."""
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.dispose()
