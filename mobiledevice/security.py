"""Session security applied on top of a raw device byte stream."""

import logging
import os
import socket
import ssl
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from .errors import MobileDeviceError, MobileDeviceErrorKind

logger = logging.getLogger(__name__)


class SessionSecurity(ABC):
    """Base interface for turning encryption on and off on a socket."""

    @abstractmethod
    def enable(self, sock: socket.socket, pair_record: dict[str, Any] | None) -> socket.socket:
        """Wrap ``sock`` so further traffic is encrypted.

        Raises:
            MobileDeviceError: ``SSL_ERROR`` if the handshake fails
        """
        pass

    @abstractmethod
    def disable(self, sock: socket.socket) -> socket.socket:
        """Return the raw socket underneath an encrypted one."""
        pass


class PlainSessionSecurity(SessionSecurity):
    """No-op security for transports that are already private."""

    def enable(self, sock: socket.socket, pair_record: dict[str, Any] | None) -> socket.socket:
        return sock

    def disable(self, sock: socket.socket) -> socket.socket:
        return sock


class TLSSessionSecurity(SessionSecurity):
    """TLS using the host certificate and key from the pair record."""

    def __init__(self, minimum_version: ssl.TLSVersion | None = None, maximum_version: ssl.TLSVersion | None = None):
        self.minimum_version = minimum_version
        self.maximum_version = maximum_version

    @contextmanager
    def _cert_file(self, pair_record: dict[str, Any]) -> Iterator[str]:
        cert_pem = pair_record["HostCertificate"]
        key_pem = pair_record["HostPrivateKey"]

        # delete=False so the file can be reopened by load_cert_chain on every platform
        with tempfile.NamedTemporaryFile("w+b", delete=False) as f:
            f.write(cert_pem + b"\n" + key_pem)
            filename = f.name

        try:
            yield filename
        finally:
            os.unlink(filename)

    def _context(self, cert_file: str) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        context.set_ciphers("ALL:!aNULL:!eNULL:@SECLEVEL=0")
        if self.minimum_version is not None:
            context.minimum_version = self.minimum_version
        if self.maximum_version is not None:
            context.maximum_version = self.maximum_version
        context.load_cert_chain(cert_file)
        return context

    def enable(self, sock: socket.socket, pair_record: dict[str, Any] | None) -> socket.socket:
        if isinstance(sock, ssl.SSLSocket):
            return sock
        if not pair_record or "HostCertificate" not in pair_record or "HostPrivateKey" not in pair_record:
            raise MobileDeviceError(MobileDeviceErrorKind.SSL_ERROR, "Pair record has no host certificate")
        try:
            with self._cert_file(pair_record) as cert_file:
                wrapped = self._context(cert_file).wrap_socket(sock)
        except (ssl.SSLError, OSError) as exc:
            raise MobileDeviceError(MobileDeviceErrorKind.SSL_ERROR, str(exc)) from exc
        logger.debug("TLS enabled (%s)", wrapped.version())
        return wrapped

    def disable(self, sock: socket.socket) -> socket.socket:
        if not isinstance(sock, ssl.SSLSocket):
            return sock
        try:
            return sock.unwrap()
        except (ssl.SSLError, OSError) as exc:
            raise MobileDeviceError(MobileDeviceErrorKind.SSL_ERROR, str(exc)) from exc
