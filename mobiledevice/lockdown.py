"""Lockdown session client.

Turns a raw connection to port 62078 into an authenticated control channel:
query the daemon type, validate (or create) the pairing, start a session and
switch on session security when the device asks for it. While ready, the
client reads and writes device preferences and starts named services.

The device drops an idle session after about ten seconds, so a client should
not be kept across long idle gaps.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import IntEnum
from typing import Any

from .connection import Connection
from .constants import (
    DEFAULT_LABEL,
    DEFAULT_RECEIVE_TIMEOUT,
    LOCKDOWN_PORT,
    LOCKDOWN_PROTOCOL_VERSION,
    LOCKDOWN_SERVICE_TYPE,
    ServiceIdentifier,
)
from .device import Device
from .errors import (
    FormatError,
    LockdownError,
    LockdownErrorKind,
    MobileDeviceError,
    MobileDeviceErrorKind,
)
from .plist import Value

logger = logging.getLogger(__name__)

# (device_public_key, udid) -> pair record with HostID, SystemBUID, certificates and HostPrivateKey
PairRecordFactory = Callable[[bytes, str], dict[str, Any]]

_PAIR_RECORD_PUBLIC_KEYS = ("DeviceCertificate", "HostCertificate", "HostID", "RootCertificate", "SystemBUID")


class LockdownState(IntEnum):
    UNSTARTED = 0
    HANDSHAKING = 1
    READY = 2
    CLOSED = 3


class ServiceDescriptor:
    """Port and security requirement of a started service.

    A descriptor builds exactly one service client: ``consume()`` succeeds
    once, and ``free()`` releases it whether or not it was consumed.
    """

    def __init__(self, identifier: str, port: int, ssl_enabled: bool = False, escrow_bag_attached: bool = False):
        self.identifier = identifier
        self.port = port
        self.ssl_enabled = ssl_enabled
        self.escrow_bag_attached = escrow_bag_attached
        self._consumed = False
        self._freed = False

    def consume(self) -> "ServiceDescriptor":
        """Claim the descriptor for one client.

        Raises:
            LockdownError: ``DEALLOCATED`` if already consumed or freed
        """
        if self._consumed or self._freed:
            raise LockdownError(LockdownErrorKind.DEALLOCATED, f"Descriptor for {self.identifier} already used")
        self._consumed = True
        return self

    def free(self) -> None:
        self._freed = True

    @property
    def is_freed(self) -> bool:
        return self._freed

    def __repr__(self) -> str:
        return f"ServiceDescriptor({self.identifier!r}, port={self.port}, ssl={self.ssl_enabled})"


class LockdownClient:
    """Authenticated control channel to the lockdown daemon."""

    def __init__(
        self,
        device: Device,
        handshake: bool = True,
        label: str = DEFAULT_LABEL,
        pair_record_factory: PairRecordFactory | None = None,
        timeout: float = DEFAULT_RECEIVE_TIMEOUT,
    ):
        """Initialize the client and run the handshake.

        Args:
            device: Device to talk to
            handshake: Whether to pair and start a session; without it only
                session-less requests are available
            label: Label sent with every request
            pair_record_factory: Builds a new pair record when the device is
                not paired with this host yet
            timeout: Seconds to wait for each response

        Raises:
            LockdownError: The most specific failure of the handshake
        """
        self.device = device
        self.label = label
        self.timeout = timeout
        self.pair_record_factory = pair_record_factory
        self.session_id: str | None = None
        self.pair_record: dict[str, Any] | None = None
        self._state = LockdownState.UNSTARTED
        self._lock = threading.Lock()
        self._connection: Connection | None = None

        try:
            self._connection = device.connect(LOCKDOWN_PORT)
        except MobileDeviceError as exc:
            self._state = LockdownState.CLOSED
            raise LockdownError.from_transport(exc) from exc

        self._state = LockdownState.HANDSHAKING
        try:
            self.query_type()
            if handshake:
                self._handshake()
        except BaseException:
            self._abort()
            raise
        self._state = LockdownState.READY
        logger.info("Lockdown ready for %s (session %s)", device.udid, self.session_id)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    @property
    def state(self) -> LockdownState:
        return self._state

    def _check(self) -> Connection:
        if self._state == LockdownState.CLOSED or self._connection is None:
            raise LockdownError(LockdownErrorKind.DEALLOCATED, "Lockdown client closed")
        return self._connection

    def _abort(self) -> None:
        self._state = LockdownState.CLOSED
        if self._connection is not None:
            self._connection.disconnect()

    def _request(self, request: str, fields: dict[str, Any] | None = None) -> Value:
        connection = self._check()
        message: dict[str, Any] = {"Label": self.label, "Request": request}
        if fields:
            message.update(fields)

        logger.debug("lockdown > %s", request)
        with self._lock:
            try:
                connection.send_plist(Value.from_python(message))
                response = connection.receive_plist(self.timeout)
            except MobileDeviceError as exc:
                if exc.kind == MobileDeviceErrorKind.TIMEOUT:
                    raise LockdownError(LockdownErrorKind.RECEIVE_TIMEOUT, f"{request}: {exc.detail}") from exc
                raise LockdownError.from_transport(exc) from exc
            except FormatError as exc:
                raise LockdownError(LockdownErrorKind.PLIST_ERROR, str(exc)) from exc

        error = response["Error"]
        if error is not None:
            logger.debug("lockdown < %s failed: %s", request, error.string)
            raise LockdownError.from_name(error.string or "", request)
        if response["Request"] is None or response["Request"].string != request:
            raise LockdownError(LockdownErrorKind.INVALID_RESPONSE, f"Expected reply to {request}")
        result = response["Result"]
        if result is not None and result.string == "Failure":
            raise LockdownError(LockdownErrorKind.UNKNOWN, f"{request} failed")
        return response

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def query_type(self) -> str:
        """Type string of the daemon listening on the lockdown port."""
        response = self._request("QueryType")
        kind = response["Type"].string if response["Type"] is not None else None
        if kind != LOCKDOWN_SERVICE_TYPE:
            logger.warning("Unexpected lockdown type %r", kind)
        return kind or ""

    def _load_pair_record(self) -> dict[str, Any] | None:
        if self.device.pair_record is not None:
            return self.device.pair_record
        try:
            return self.device.transport.read_pair_record(self.device.udid)
        except MobileDeviceError as exc:
            logger.debug("No pair record for %s: %s", self.device.udid, exc)
            return None

    def validate_pair(self, record: dict[str, Any]) -> bool:
        """Whether the device accepts ``record``.

        Returns:
            False when the device reports ``InvalidHostID``
        """
        try:
            self._request(
                "ValidatePair",
                {
                    "PairRecord": {key: record[key] for key in _PAIR_RECORD_PUBLIC_KEYS if key in record},
                    "ProtocolVersion": LOCKDOWN_PROTOCOL_VERSION,
                },
            )
        except LockdownError as exc:
            if exc.kind == LockdownErrorKind.INVALID_HOST_ID:
                return False
            raise
        return True

    def pair(self) -> dict[str, Any]:
        """Pair with the device using ``pair_record_factory``.

        Returns:
            The new pair record, also saved through the transport

        Raises:
            LockdownError: ``MISSING_PAIR_RECORD`` without a factory, or the
                device's refusal (``PasswordProtected``, ``UserDeniedPairing``, ...)
        """
        if self.pair_record_factory is None:
            raise LockdownError(LockdownErrorKind.MISSING_PAIR_RECORD, f"Device {self.device.udid} is not paired")
        public_key = self.get_value(None, "DevicePublicKey")
        if public_key is None or public_key.data is None:
            raise LockdownError(LockdownErrorKind.PAIRING_FAILED, "Device did not report a public key")

        record = dict(self.pair_record_factory(public_key.data, self.device.udid))
        response = self._request(
            "Pair",
            {
                "PairRecord": {key: record[key] for key in _PAIR_RECORD_PUBLIC_KEYS if key in record},
                "ProtocolVersion": LOCKDOWN_PROTOCOL_VERSION,
                "PairingOptions": {"ExtendedPairingErrors": True},
            },
        )
        escrow_bag = response["EscrowBag"]
        if escrow_bag is not None and escrow_bag.data is not None:
            record["EscrowBag"] = escrow_bag.data
        try:
            self.device.transport.save_pair_record(self.device.udid, self.device.device_id, record)
        except MobileDeviceError as exc:
            raise LockdownError(LockdownErrorKind.SAVE_PAIR_RECORD_FAILED, str(exc)) from exc
        logger.info("Paired with %s", self.device.udid)
        return record

    def _handshake(self) -> None:
        record = self._load_pair_record()
        if record is not None and not self.validate_pair(record):
            if self.pair_record_factory is None:
                raise LockdownError(
                    LockdownErrorKind.INVALID_HOST_ID, f"Device {self.device.udid} rejected the pair record"
                )
            record = None
        if record is None:
            record = self.pair()
        self.pair_record = record
        self.device.pair_record = record
        self.start_session()

    def start_session(self) -> str:
        if self.pair_record is None:
            raise LockdownError(LockdownErrorKind.MISSING_PAIR_RECORD)
        response = self._request(
            "StartSession",
            {"HostID": self.pair_record.get("HostID"), "SystemBUID": self.pair_record.get("SystemBUID")},
        )
        session = response["SessionID"]
        if session is None or session.string is None:
            raise LockdownError(LockdownErrorKind.MISSING_SESSION_ID)
        self.session_id = session.string

        enable_ssl = response["EnableSessionSSL"]
        if enable_ssl is not None and enable_ssl.bool:
            connection = self._check()
            connection.pair_record = self.pair_record
            try:
                connection.enable_security()
            except MobileDeviceError as exc:
                raise LockdownError(LockdownErrorKind.SSL_ERROR, str(exc)) from exc
        return self.session_id

    def stop_session(self) -> None:
        if self.session_id is None:
            return
        session_id, self.session_id = self.session_id, None
        self._request("StopSession", {"SessionID": session_id})
        connection = self._check()
        if connection.ssl_enabled:
            connection.disable_security()

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    @staticmethod
    def _scope(domain: str | None, key: str | None) -> dict[str, Any]:
        fields = {}
        if domain:
            fields["Domain"] = domain
        if key:
            fields["Key"] = key
        return fields

    def get_value(self, domain: str | None = None, key: str | None = None) -> Value | None:
        """Read a preference value; with no key, the whole domain."""
        response = self._request("GetValue", self._scope(domain, key))
        return response["Value"]

    def set_value(self, domain: str | None, key: str, value: Any) -> None:
        self._request("SetValue", {**self._scope(domain, key), "Value": value})

    def remove_value(self, domain: str | None, key: str) -> None:
        self._request("RemoveValue", self._scope(domain, key))

    def _string_value(self, key: str, domain: str | None = None) -> str | None:
        value = self.get_value(domain, key)
        return value.string if value is not None else None

    def get_name(self) -> str | None:
        return self._string_value("DeviceName")

    def get_device_udid(self) -> str | None:
        return self._string_value("UniqueDeviceID")

    @property
    def device_name(self) -> str | None:
        return self.get_name()

    @property
    def device_class(self) -> str | None:
        return self._string_value("DeviceClass")

    @property
    def product_type(self) -> str | None:
        return self._string_value("ProductType")

    @property
    def product_version(self) -> str | None:
        return self._string_value("ProductVersion")

    @property
    def build_version(self) -> str | None:
        return self._string_value("BuildVersion")

    @property
    def unique_device_id(self) -> str | None:
        return self.get_device_udid()

    @property
    def wifi_address(self) -> str | None:
        return self._string_value("WiFiAddress")

    @property
    def battery_level(self) -> int | None:
        value = self.get_value("com.apple.mobile.battery", "BatteryCurrentCapacity")
        return value.uint if value is not None else None

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def start_service(self, identifier: str | ServiceIdentifier, use_escrow_bag: bool = False) -> ServiceDescriptor:
        """Ask the device to launch a named service.

        Args:
            identifier: Service name, e.g. ``com.apple.afc``
            use_escrow_bag: Attach the escrow bag from the pair record

        Returns:
            Descriptor to build one service client from

        Raises:
            LockdownError: ``INVALID_CONFIGURATION`` when the escrow bag is
                requested but missing, or the device's refusal
        """
        name = identifier.value if isinstance(identifier, ServiceIdentifier) else identifier
        self._check()
        fields: dict[str, Any] = {"Service": name}
        if use_escrow_bag:
            if not self.pair_record or "EscrowBag" not in self.pair_record:
                raise LockdownError(LockdownErrorKind.INVALID_CONFIGURATION, "Pair record has no escrow bag")
            fields["EscrowBag"] = self.pair_record["EscrowBag"]

        response = self._request("StartService", fields)
        port = response["Port"]
        if port is None or port.uint is None:
            raise LockdownError(LockdownErrorKind.NOT_START_SERVICE, name)
        ssl_flag = response["EnableServiceSSL"]
        descriptor = ServiceDescriptor(
            name,
            port.uint,
            ssl_enabled=bool(ssl_flag is not None and ssl_flag.bool),
            escrow_bag_attached=use_escrow_bag,
        )
        logger.info("Started %s on port %d", name, descriptor.port)
        return descriptor

    @contextmanager
    def service(self, identifier: str | ServiceIdentifier, use_escrow_bag: bool = False) -> Iterator[ServiceDescriptor]:
        """Start a service and free its descriptor on exit."""
        descriptor = self.start_service(identifier, use_escrow_bag)
        try:
            yield descriptor
        finally:
            descriptor.free()

    def create_afc_client(self):
        from .services.afc import AfcClient

        with self.service(ServiceIdentifier.AFC) as descriptor:
            return AfcClient(self.device, descriptor)

    def create_installation_proxy_client(self):
        from .services.installation_proxy import InstallationProxyClient

        with self.service(ServiceIdentifier.INSTALLATION_PROXY) as descriptor:
            return InstallationProxyClient(self.device, descriptor)

    def create_syslog_relay_client(self):
        from .services.syslog_relay import SyslogRelayClient

        with self.service(ServiceIdentifier.SYSLOG_RELAY) as descriptor:
            return SyslogRelayClient(self.device, descriptor)

    def create_screenshot_client(self):
        from .services.screenshot import ScreenshotClient

        with self.service(ServiceIdentifier.SCREENSHOT) as descriptor:
            return ScreenshotClient(self.device, descriptor)

    def create_springboard_client(self):
        from .services.springboard import SpringboardClient

        with self.service(ServiceIdentifier.SPRINGBOARD) as descriptor:
            return SpringboardClient(self.device, descriptor)

    def create_house_arrest_client(self):
        from .services.house_arrest import HouseArrestClient

        with self.service(ServiceIdentifier.HOUSE_ARREST) as descriptor:
            return HouseArrestClient(self.device, descriptor)

    def create_file_relay_client(self):
        from .services.file_relay import FileRelayClient

        with self.service(ServiceIdentifier.FILE_RELAY) as descriptor:
            return FileRelayClient(self.device, descriptor)

    def create_debug_server_client(self):
        from .services.debug_server import DebugServerClient

        with self.service(ServiceIdentifier.DEBUGSERVER) as descriptor:
            return DebugServerClient(self.device, descriptor)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop the session and close the connection. Safe to call twice."""
        if self._state == LockdownState.CLOSED:
            return
        try:
            self.stop_session()
        except LockdownError as exc:
            logger.debug("StopSession failed: %s", exc)
        finally:
            self._abort()

    def __enter__(self) -> "LockdownClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
