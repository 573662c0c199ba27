"""debugserver client speaking the GDB remote serial protocol.

Packets are ``$<payload>#<checksum>`` where the checksum is the sum of
the payload bytes modulo 256 as two hex digits. Unless no-ack mode was
negotiated, each side acknowledges a packet with ``+``.
"""

import logging
from typing import Any

from ..constants import DEBUGSERVER_RECEIVE_SIZE, ServiceIdentifier
from ..device import Device
from ..errors import DebugServerError, DebugServerErrorKind
from .base import ServiceClient

logger = logging.getLogger(__name__)

ACK = b"+"
NACK = b"-"
PACKET_START = b"$"
PACKET_END = b"#"


def checksum(payload: bytes) -> bytes:
    return b"%02x" % (sum(payload) & 0xFF)


def encode_packet(payload: bytes) -> bytes:
    return PACKET_START + payload + PACKET_END + checksum(payload)


class DebugServerCommand:
    """A command name and its arguments; arguments are sent hex encoded."""

    def __init__(self, name: str, arguments: list[str] | None = None):
        self.name = name
        self.arguments = list(arguments or [])
        self._freed = False

    def encode(self) -> bytes:
        if self._freed:
            raise DebugServerError(DebugServerErrorKind.DEALLOCATED_COMMAND, f"{self.name} was freed")
        return self.name.encode() + b"".join(DebugServerClient.encode_string(arg) for arg in self.arguments)

    def free(self) -> None:
        self._freed = True

    def __repr__(self) -> str:
        return f"DebugServerCommand({self.name!r}, {self.arguments!r})"


class DebugServerClient(ServiceClient):
    service_name = ServiceIdentifier.DEBUGSERVER.value
    error_class = DebugServerError
    plist_kind = None

    def _attach(self, device: Device, connection: Any) -> None:
        super()._attach(device, connection)
        self.ack_mode = True

    # ------------------------------------------------------------------
    # Hex strings
    # ------------------------------------------------------------------

    @staticmethod
    def encode_string(text: str) -> bytes:
        """Hex encode ``text`` the way debugserver expects arguments."""
        return text.encode().hex().encode()

    @staticmethod
    def decode_string(encoded: bytes | str) -> str:
        if isinstance(encoded, bytes):
            encoded = encoded.decode()
        try:
            return bytes.fromhex(encoded).decode(errors="replace")
        except ValueError as exc:
            raise DebugServerError(DebugServerErrorKind.INVALID_ARGUMENT, f"Not a hex string: {encoded!r}") from exc

    # ------------------------------------------------------------------
    # Raw stream
    # ------------------------------------------------------------------

    def send(self, data: bytes) -> int:
        connection = self._check()
        with self._translate():
            return connection.send_all(data)

    def receive(self, size: int = DEBUGSERVER_RECEIVE_SIZE, timeout: float | None = None) -> bytes:
        """Up to ``size`` raw bytes; empty when the timeout passes."""
        connection = self._check()
        with self._translate():
            return connection.receive(size, timeout)

    def receive_all(self, timeout: float | None = None) -> bytes:
        """Everything received until a read comes back empty."""
        buffer = bytearray()
        while True:
            chunk = self.receive(DEBUGSERVER_RECEIVE_SIZE, timeout)
            if not chunk:
                break
            buffer.extend(chunk)
        return bytes(buffer)

    def _receive_byte(self) -> bytes:
        connection = self._check()
        with self._translate():
            return connection.receive_exact(1, self.timeout)

    # ------------------------------------------------------------------
    # Packets
    # ------------------------------------------------------------------

    def send_command(self, command: DebugServerCommand) -> bytes:
        """Send a command packet and return the response payload."""
        payload = command.encode()
        with self._lock:
            logger.debug("debugserver > %s", command.name)
            self.send(encode_packet(payload))
            if self.ack_mode:
                ack = self._receive_byte()
                if ack != ACK:
                    raise DebugServerError(DebugServerErrorKind.RESPONSE_ERROR, f"Expected ack, got {ack!r}")
            return self.receive_response()

    def receive_response(self) -> bytes:
        """Read one packet, verify its checksum and acknowledge it.

        Raises:
            DebugServerError: ``RESPONSE_ERROR`` on a checksum mismatch
        """
        with self._lock:
            byte = self._receive_byte()
            while byte != PACKET_START:
                byte = self._receive_byte()
            payload = bytearray()
            byte = self._receive_byte()
            while byte != PACKET_END:
                payload.extend(byte)
                byte = self._receive_byte()
            expected = self._receive_byte() + self._receive_byte()
            if expected.lower() != checksum(payload):
                if self.ack_mode:
                    self.send(NACK)
                raise DebugServerError(DebugServerErrorKind.RESPONSE_ERROR, f"Bad checksum {expected!r}")
            if self.ack_mode:
                self.send(ACK)
        logger.debug("debugserver < %d bytes", len(payload))
        return bytes(payload)

    def _expect_ok(self, command: DebugServerCommand) -> str:
        response = self.send_command(command).decode(errors="replace")
        if response != "OK":
            raise DebugServerError(DebugServerErrorKind.RESPONSE_ERROR, f"{command.name}: {response}")
        return response

    def set_ack_mode(self, enabled: bool) -> None:
        """Switch acknowledgements; disabling negotiates ``QStartNoAckMode``."""
        if not enabled and self.ack_mode:
            self._expect_ok(DebugServerCommand("QStartNoAckMode"))
        self.ack_mode = enabled

    def set_argv(self, argv: list[str]) -> str:
        """Set the inferior's arguments with an ``A`` packet."""
        if not argv:
            raise DebugServerError(DebugServerErrorKind.INVALID_ARGUMENT, "argv is empty")
        fields = []
        for index, arg in enumerate(argv):
            encoded = self.encode_string(arg).decode()
            fields.append(f"{len(encoded)},{index},{encoded}")
        return self._expect_ok(DebugServerCommand("A" + ",".join(fields)))

    def set_environment_hex_encoded(self, env: str) -> str:
        """Add one ``NAME=value`` entry to the inferior's environment."""
        return self._expect_ok(DebugServerCommand("QEnvironmentHexEncoded:", [env]))
