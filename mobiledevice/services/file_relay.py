"""File relay client: requests diagnostic archives from the device."""

import logging
from collections.abc import Iterable

from ..connection import Connection
from ..constants import FileRelaySource, ServiceIdentifier
from ..errors import FileRelayError, FileRelayErrorKind
from .base import ServiceClient

logger = logging.getLogger(__name__)


class FileRelayClient(ServiceClient):
    """Single-shot requests for gzipped cpio archives of device sources.

    The device acknowledges a request, then streams the archive as raw
    bytes over the same connection until it closes it.
    """

    service_name = ServiceIdentifier.FILE_RELAY.value
    error_class = FileRelayError

    def request_sources(self, sources: Iterable[FileRelaySource | str], timeout: float | None = None) -> Connection:
        """Ask for ``sources`` and return the connection carrying the archive.

        Args:
            sources: Source names such as ``AppleSupport`` or ``Network``
            timeout: Seconds to wait for the acknowledgement

        Raises:
            FileRelayError: ``INVALID_SOURCE``, ``STAGING_EMPTY`` or
                ``PERMISSION_DENIED`` as reported by the device
        """
        names = [source.value if isinstance(source, FileRelaySource) else str(source) for source in sources]
        if not names:
            raise FileRelayError(FileRelayErrorKind.INVALID_ARGUMENT, "No sources requested")
        with self._lock:
            self.send_plist({"Sources": names})
            reply = self.receive_plist(timeout)
        error = reply["Error"]
        if error is not None:
            raise FileRelayError.from_name(error.string or "", error.string)
        status = reply["Status"]
        if status is None or status.string != "Acknowledged":
            raise FileRelayError(FileRelayErrorKind.PLIST_ERROR, "Request was not acknowledged")
        logger.debug("file_relay acknowledged %s", ", ".join(names))
        return self.connection
