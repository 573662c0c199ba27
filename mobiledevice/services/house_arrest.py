"""House arrest client: vends an app's container over an AFC channel."""

import logging
from typing import Any

from ..constants import ServiceIdentifier
from ..device import Device
from ..errors import HouseArrestError, HouseArrestErrorKind
from ..plist import PlistType, Value
from .base import ServiceClient

logger = logging.getLogger(__name__)


class HouseArrestClient(ServiceClient):
    """Requests access to an app's sandbox.

    After a successful vend the connection speaks AFC; pass the client to
    ``AfcClient.from_house_arrest`` to use it. Further house_arrest requests
    on a vended channel fail with ``INVALID_MODE``.
    """

    service_name = ServiceIdentifier.HOUSE_ARREST.value
    error_class = HouseArrestError

    def _attach(self, device: Device, connection: Any) -> None:
        super()._attach(device, connection)
        self.vended = False

    def send_request(self, request: Value | dict[str, Any]) -> None:
        if not isinstance(request, Value):
            request = Value.from_python(request)
        if request.type != PlistType.DICT:
            raise HouseArrestError(HouseArrestErrorKind.INVALID_ARG, "Request must be a dictionary")
        self._check()
        if self.vended:
            raise HouseArrestError(HouseArrestErrorKind.INVALID_MODE, "Channel already vended to AFC")
        self.send_plist(request)

    def send_command(self, command: str, app_id: str) -> None:
        """Send ``VendContainer`` or ``VendDocuments`` for ``app_id``."""
        logger.debug("house_arrest > %s %s", command, app_id)
        self.send_request({"Command": command, "Identifier": app_id})

    def get_result(self) -> Value:
        """Result dictionary of the last request.

        A ``Status: Complete`` result switches the channel to AFC.
        """
        self._check()
        if self.vended:
            raise HouseArrestError(HouseArrestErrorKind.INVALID_MODE, "Channel already vended to AFC")
        result = self.receive_plist()
        status = result["Status"]
        if status is not None and status.string == "Complete":
            self.vended = True
        return result

    def _vend(self, command: str, app_id: str) -> Value:
        self.send_command(command, app_id)
        result = self.get_result()
        error = result["Error"]
        if error is not None:
            raise HouseArrestError(HouseArrestErrorKind.UNKNOWN, f"{command} {app_id}: {error.string}")
        if not self.vended:
            raise HouseArrestError(HouseArrestErrorKind.PLIST_ERROR, f"{command} {app_id}: no status in result")
        return result

    def vend_container(self, app_id: str) -> Value:
        return self._vend("VendContainer", app_id)

    def vend_documents(self, app_id: str) -> Value:
        """Vend only the app's Documents folder."""
        return self._vend("VendDocuments", app_id)
