"""Device handle."""

import itertools
import logging
import threading
from typing import Any

from .connection import Connection
from .constants import ConnectionType, LookupOptions
from .errors import MobileDeviceError, MobileDeviceErrorKind
from .models import DeviceInfo
from .security import SessionSecurity, TLSSessionSecurity
from .transport import Transport, get_default_transport

logger = logging.getLogger(__name__)

_handles = itertools.count(1)


def _select(candidates: list[DeviceInfo], options: LookupOptions) -> DeviceInfo | None:
    usb = [device for device in candidates if device.connection_type == ConnectionType.USBMUXD]
    network = [device for device in candidates if device.connection_type == ConnectionType.NETWORK]
    if not options & (LookupOptions.USBMUX | LookupOptions.NETWORK):
        options |= LookupOptions.USBMUX | LookupOptions.NETWORK
    if not options & LookupOptions.NETWORK:
        network = []
    if not options & LookupOptions.USBMUX:
        usb = []
    ordered = network + usb if options & LookupOptions.PREFER_NETWORK else usb + network
    return ordered[0] if ordered else None


class Device:
    """A reachable device identified by its udid.

    Once ``free()`` has been called every operation raises
    ``MobileDeviceError(DEALLOCATED_DEVICE)``.
    """

    def __init__(
        self,
        udid: str,
        options: LookupOptions = LookupOptions.USBMUX,
        transport: Transport | None = None,
        security: SessionSecurity | None = None,
    ):
        """Initialize device.

        Args:
            udid: Unique device id
            options: Lookup scope (USB, network, or prefer network)
            transport: Transport collaborator; defaults to usbmuxd
            security: Session security collaborator; defaults to TLS

        Raises:
            MobileDeviceError: ``NO_DEVICE`` if no matching device is attached
        """
        self.transport = transport or get_default_transport()
        self.security = security or TLSSessionSecurity()
        candidates = [device for device in self.transport.list_devices() if device.udid == udid]
        info = _select(candidates, LookupOptions(options))
        if info is None:
            raise MobileDeviceError(MobileDeviceErrorKind.NO_DEVICE, f"Device {udid} not found")
        self._info = info
        self._handle: int | None = next(_handles)
        self._lock = threading.Lock()
        self.pair_record: dict[str, Any] | None = None
        logger.info("Device %s attached via %s", udid, info.connection_type.name)

    def _check(self) -> int:
        if self._handle is None:
            raise MobileDeviceError(MobileDeviceErrorKind.DEALLOCATED_DEVICE)
        return self._handle

    @property
    def handle(self) -> int:
        """Stable numeric handle of this device."""
        return self._check()

    @property
    def udid(self) -> str:
        self._check()
        return self._info.udid

    @property
    def connection_type(self) -> ConnectionType:
        self._check()
        return self._info.connection_type

    @property
    def device_id(self) -> int:
        self._check()
        return self._info.device_id

    @property
    def is_freed(self) -> bool:
        return self._handle is None

    def connect(self, port: int) -> Connection:
        """Open a connection to a device port."""
        self._check()
        sock = self.transport.connect(self._info.device_id, port)
        return Connection(sock, security=self.security, pair_record=self.pair_record, port=port)

    def free(self) -> None:
        with self._lock:
            self._handle = None

    def __enter__(self) -> "Device":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.free()

    def __repr__(self) -> str:
        state = "freed" if self._handle is None else f"handle={self._handle}"
        return f"Device({self._info.udid!r}, {state})"
