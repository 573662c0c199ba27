"""Shared lifecycle of every service client."""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, ClassVar

from ..connection import Connection
from ..constants import DEFAULT_LABEL, DEFAULT_RECEIVE_TIMEOUT
from ..device import Device
from ..errors import FormatError, MobileDeviceError, MobileDeviceErrorKind, MobileDeviceException
from ..lockdown import LockdownClient, ServiceDescriptor
from ..plist import PlistFormat, Value

logger = logging.getLogger(__name__)


class ServiceClient:
    """A client bound to one started on-device service.

    Built from a device and a single-use descriptor, which is released once
    construction finishes or fails. ``free()`` is idempotent; afterwards
    every operation raises the taxonomy's deallocated kind without touching
    the device.
    """

    service_name: ClassVar[str]
    error_class: ClassVar[type[MobileDeviceException]]
    deallocated_kind: ClassVar[str] = "DEALLOCATED_CLIENT"
    timeout_kind: ClassVar[str | None] = None
    plist_kind: ClassVar[str | None] = "PLIST_ERROR"

    def __init__(self, device: Device, descriptor: ServiceDescriptor):
        """Initialize client.

        Args:
            device: Device the service runs on
            descriptor: Descriptor returned by ``LockdownClient.start_service``
        """
        try:
            descriptor.consume()
            with self._translate():
                connection = device.connect(descriptor.port)
                if descriptor.ssl_enabled:
                    connection.pair_record = device.pair_record
                    connection.enable_security()
        finally:
            descriptor.free()
        self._attach(device, connection)
        logger.debug("%s client on port %d", self.service_name, descriptor.port)

    def _attach(self, device: Device, connection: Connection) -> None:
        self.device = device
        self._connection: Connection | None = connection
        self._lock = threading.RLock()
        self.timeout = DEFAULT_RECEIVE_TIMEOUT

    @classmethod
    def from_connection(cls, device: Device, connection: Connection) -> Any:
        """Client speaking over an already open connection."""
        client = cls.__new__(cls)
        client._attach(device, connection)
        return client

    @classmethod
    @contextmanager
    def start(cls, device: Device, label: str = DEFAULT_LABEL, **kwargs: Any) -> Iterator[Any]:
        """Start the service through a fresh lockdown session and yield a client.

        The client is freed when the block exits.
        """
        with LockdownClient(device, label=label) as lockdown:
            descriptor = lockdown.start_service(cls.service_name)
            client = cls(device, descriptor, **kwargs)
        try:
            yield client
        finally:
            client.free()

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _error(self, kind: str, detail: str | None = None) -> MobileDeviceException:
        return self.error_class(self.error_class.kinds[kind], detail)

    def _check(self) -> Connection:
        connection = getattr(self, "_connection", None)
        if connection is None:
            raise self._error(self.deallocated_kind, f"{self.__class__.__name__} was freed")
        return connection

    @contextmanager
    def _translate(self) -> Iterator[None]:
        """Map transport and codec failures into this client's taxonomy."""
        try:
            yield
        except MobileDeviceError as exc:
            if exc.kind == MobileDeviceErrorKind.TIMEOUT and self.timeout_kind is not None:
                raise self._error(self.timeout_kind, exc.detail) from exc
            raise self.error_class.from_transport(exc) from exc
        except FormatError as exc:
            if self.plist_kind is None:
                raise self._error("UNKNOWN", str(exc)) from exc
            raise self._error(self.plist_kind, str(exc)) from exc
        except OSError as exc:
            raise self.error_class.from_transport(exc) from exc

    @property
    def connection(self) -> Connection:
        return self._check()

    @property
    def is_freed(self) -> bool:
        return getattr(self, "_connection", None) is None

    # ------------------------------------------------------------------
    # Plist helpers
    # ------------------------------------------------------------------

    def send_plist(self, message: Value | dict[str, Any], fmt: PlistFormat = PlistFormat.XML) -> None:
        connection = self._check()
        with self._translate():
            connection.send_plist(message if isinstance(message, Value) else Value.from_python(message), fmt)

    def receive_plist(self, timeout: float | None = None, block: bool = False) -> Value:
        """Receive one message.

        Args:
            timeout: Seconds to wait; defaults to the client timeout
            block: Wait until a message arrives or the connection closes
        """
        connection = self._check()
        if timeout is None and not block:
            timeout = self.timeout
        with self._translate():
            return connection.receive_plist(timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def free(self) -> None:
        """Close the service connection. Safe to call more than once."""
        connection = getattr(self, "_connection", None)
        self._connection = None
        if connection is not None:
            connection.disconnect()

    def __enter__(self) -> Any:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.free()
