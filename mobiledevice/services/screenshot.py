"""Screenshot service, spoken over the device-link message layer."""

import logging
from typing import Any

from ..constants import DEVICE_LINK_VERSION_MAJOR, DEVICE_LINK_VERSION_MINOR, ServiceIdentifier
from ..device import Device
from ..errors import ScreenshotError, ScreenshotErrorKind
from ..lockdown import ServiceDescriptor
from ..plist import PlistFormat, PlistType, Value
from .base import ServiceClient

logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------------
# Device-link messages
# ----------------------------------------------------------------------------

DL_VERSION_EXCHANGE = "DLMessageVersionExchange"
DL_VERSIONS_OK = "DLVersionsOk"
DL_DEVICE_READY = "DLMessageDeviceReady"
DL_PROCESS_MESSAGE = "DLMessageProcessMessage"
DL_DISCONNECT = "DLMessageDisconnect"
DL_EMPTY_PARAMETER = "___EmptyParameterString___"


def _message_name(message: Value) -> str | None:
    if message.type != PlistType.ARRAY:
        return None
    first = message[0]
    return first.string if first is not None else None


class ScreenshotClient(ServiceClient):
    """Takes screenshots (TIFF on older devices, PNG on newer ones)."""

    service_name = ServiceIdentifier.SCREENSHOT.value
    error_class = ScreenshotError
    deallocated_kind = "DEALLOCATED_SERVICE"
    timeout_kind = "RECEIVE_TIMEOUT"

    def __init__(self, device: Device, descriptor: ServiceDescriptor):
        super().__init__(device, descriptor)
        try:
            self._version_exchange()
        except BaseException:
            super().free()
            raise

    def _send(self, *items: Any) -> None:
        self.send_plist(Value.array(items), PlistFormat.BINARY)

    def _version_exchange(self) -> None:
        """Agree on the device-link protocol version.

        Raises:
            ScreenshotError: ``BAD_VERSION`` when the device speaks another major
        """
        message = self.receive_plist()
        if _message_name(message) != DL_VERSION_EXCHANGE or message[1] is None:
            raise ScreenshotError(ScreenshotErrorKind.PLIST_ERROR, "Expected a version exchange")
        major = message[1].uint
        minor = message[2].uint if message[2] is not None else 0
        if major != DEVICE_LINK_VERSION_MAJOR:
            raise ScreenshotError(
                ScreenshotErrorKind.BAD_VERSION, f"Device link {major}.{minor}, expected {DEVICE_LINK_VERSION_MAJOR}"
            )
        self._send(DL_VERSION_EXCHANGE, DL_VERSIONS_OK, Value.from_uint(DEVICE_LINK_VERSION_MAJOR))
        ready = self.receive_plist()
        if _message_name(ready) != DL_DEVICE_READY:
            raise ScreenshotError(ScreenshotErrorKind.PLIST_ERROR, "Device did not report ready")
        logger.debug("Device link %d.%d ready (client minor %d)", major, minor, DEVICE_LINK_VERSION_MINOR)

    def take_screenshot(self) -> bytes:
        """Image data of the current screen."""
        self._send(DL_PROCESS_MESSAGE, {"MessageType": "ScreenShotRequest"})
        reply = self.receive_plist()
        body = reply[1] if _message_name(reply) == DL_PROCESS_MESSAGE else None
        kind = body["MessageType"] if body is not None else None
        if kind is None or kind.string != "ScreenShotReply":
            raise ScreenshotError(ScreenshotErrorKind.PLIST_ERROR, "Unexpected screenshot reply")
        data = body["ScreenShotData"]
        if data is None or data.data is None:
            raise ScreenshotError(ScreenshotErrorKind.PLIST_ERROR, "Reply carries no image")
        logger.debug("Screenshot received: %d bytes", len(data.data))
        return data.data

    def free(self) -> None:
        if not self.is_freed:
            try:
                self._send(DL_DISCONNECT, DL_EMPTY_PARAMETER)
            except ScreenshotError as exc:
                logger.debug("Device link disconnect not sent: %s", exc)
        super().free()
