"""Byte-stream connection to a device port."""

import logging
import socket
import struct
import threading
import time
from typing import Any

from .constants import MAX_PLIST_MESSAGE_BYTES, PLIST_LENGTH_PREFIX, PlistFormat
from .errors import MobileDeviceError, MobileDeviceErrorKind
from .plist import Value, decode_auto, encode
from .security import PlainSessionSecurity, SessionSecurity

logger = logging.getLogger(__name__)


class Connection:
    """A raw duplex stream opened by the transport to one device port.

    ``disconnect()`` is terminal: every later call raises
    ``MobileDeviceError(DISCONNECTED)``.
    """

    def __init__(
        self,
        sock: socket.socket,
        security: SessionSecurity | None = None,
        pair_record: dict[str, Any] | None = None,
        port: int | None = None,
    ):
        """Initialize connection.

        Args:
            sock: Connected socket returned by the transport
            security: Collaborator used by enable/disable_security
            pair_record: Host credentials handed to the security collaborator
            port: Device port the socket is attached to
        """
        self._sock = sock
        self._security = security or PlainSessionSecurity()
        self.pair_record = pair_record
        self.port = port
        self._ssl_enabled = False
        self._connected = True
        self._lock = threading.Lock()
        self._sock.settimeout(None)

    # ------------------------------------------------------------------
    # Raw stream
    # ------------------------------------------------------------------

    def _check(self) -> socket.socket:
        if not self._connected:
            raise MobileDeviceError(MobileDeviceErrorKind.DISCONNECTED, "Connection closed")
        return self._sock

    def send(self, data: bytes) -> int:
        """Send some of ``data``.

        Returns:
            Number of bytes sent
        """
        sock = self._check()
        try:
            return sock.send(data)
        except OSError as exc:
            raise MobileDeviceError(MobileDeviceErrorKind.DISCONNECTED, str(exc)) from exc

    def send_all(self, data: bytes) -> int:
        sock = self._check()
        try:
            sock.sendall(data)
        except OSError as exc:
            raise MobileDeviceError(MobileDeviceErrorKind.DISCONNECTED, str(exc)) from exc
        return len(data)

    def receive(self, length: int, timeout: float | None = None) -> bytes:
        """Receive up to ``length`` bytes.

        Args:
            length: Maximum number of bytes to return
            timeout: Seconds to wait; None blocks until data arrives

        Returns:
            Received bytes. With a timeout this may be empty.

        Raises:
            MobileDeviceError: ``DISCONNECTED`` if the peer closed the stream
        """
        sock = self._check()
        try:
            sock.settimeout(timeout)
            chunk = sock.recv(length)
        except (socket.timeout, BlockingIOError):
            return b""
        except OSError as exc:
            raise MobileDeviceError(MobileDeviceErrorKind.DISCONNECTED, str(exc)) from exc
        finally:
            if self._connected:
                try:
                    sock.settimeout(None)
                except OSError:
                    pass
        if not chunk and length:
            raise MobileDeviceError(MobileDeviceErrorKind.DISCONNECTED, "Unexpected EOF from peer")
        return chunk

    def receive_exact(self, length: int, timeout: float | None = None) -> bytes:
        """Receive exactly ``length`` bytes.

        Raises:
            MobileDeviceError: ``TIMEOUT`` when the deadline passes first,
                ``NOT_ENOUGH_DATA`` when the peer closes mid-message
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        buf = bytearray()
        while len(buf) < length:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise MobileDeviceError(MobileDeviceErrorKind.TIMEOUT, f"Received {len(buf)} of {length} bytes")
            try:
                chunk = self.receive(length - len(buf), remaining)
            except MobileDeviceError as exc:
                if exc.kind == MobileDeviceErrorKind.DISCONNECTED and buf:
                    raise MobileDeviceError(MobileDeviceErrorKind.NOT_ENOUGH_DATA, exc.detail) from exc
                raise
            buf.extend(chunk)
        return bytes(buf)

    # ------------------------------------------------------------------
    # Security
    # ------------------------------------------------------------------

    @property
    def ssl_enabled(self) -> bool:
        return self._ssl_enabled

    def enable_security(self) -> None:
        sock = self._check()
        if self._ssl_enabled:
            return
        self._sock = self._security.enable(sock, self.pair_record)
        self._ssl_enabled = True

    def disable_security(self) -> None:
        sock = self._check()
        if not self._ssl_enabled:
            return
        self._sock = self._security.disable(sock)
        self._ssl_enabled = False

    # ------------------------------------------------------------------
    # Plist messages
    # ------------------------------------------------------------------

    def send_plist(self, value: Value | dict, fmt: PlistFormat = PlistFormat.XML) -> None:
        """Send a value tree with the 4-byte big-endian length prefix."""
        if not isinstance(value, Value):
            value = Value.from_python(value)
        payload = encode(value, fmt)
        with self._lock:
            self.send_all(struct.pack(">I", len(payload)) + payload)

    def receive_plist(self, timeout: float | None = None) -> Value:
        """Receive one length-prefixed value tree.

        Raises:
            MobileDeviceError: On timeout or a broken stream
            FormatError: If the payload is not a property list
        """
        header = self.receive_exact(PLIST_LENGTH_PREFIX, timeout)
        (length,) = struct.unpack(">I", header)
        if length > MAX_PLIST_MESSAGE_BYTES:
            raise MobileDeviceError(MobileDeviceErrorKind.INVALID_ARGUMENT, f"Message too large: {length} bytes")
        payload = self.receive_exact(length, timeout)
        return decode_auto(payload)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def fileno(self) -> int:
        return self._check().fileno()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def disconnect(self) -> None:
        """Close the connection."""
        if not self._connected:
            return
        self._connected = False
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        finally:
            self._sock.close()
        logger.debug("Disconnected from port %s", self.port)

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.disconnect()
