"""Syslog relay client and line assembler."""

import datetime
import logging
import threading
from collections.abc import Callable
from typing import Any

from ..callbacks import Disposable, registry
from ..constants import DEFAULT_POLL_INTERVAL, ServiceIdentifier
from ..device import Device
from ..errors import MobileDeviceException, SyslogRelayError, SyslogRelayErrorKind
from ..models import SyslogMessage
from .base import ServiceClient

logger = logging.getLogger(__name__)

SYSLOG_DATE_FORMAT = "%Y %b %d %H:%M:%S"
CAPTURE_CHUNK_SIZE = 4096


def parse_syslog_line(line: str) -> SyslogMessage:
    """Split ``<Mon dd hh:mm:ss> <device> <process[pid]>: <text>`` into fields.

    Lines that do not follow that layout keep their full text in
    ``message``.
    """
    tokens = line.split(" ")
    if len(tokens) > 2 and tokens[1] == "":
        # single-digit days are space padded
        del tokens[1]
    if len(tokens) <= 5:
        return SyslogMessage(message=line)
    try:
        # syslog omits the year; assume the current one
        stamp = f"{datetime.date.today().year} {' '.join(tokens[:3])}"
        date = datetime.datetime.strptime(stamp, SYSLOG_DATE_FORMAT)
    except ValueError:
        return SyslogMessage(message=line)
    return SyslogMessage(
        message=" ".join(tokens[5:]),
        date=date,
        name=tokens[3],
        process_info=tokens[4],
    )


class SyslogMessageAssembler:
    """Reassembles captured bytes into one message per newline.

    The unterminated tail of the input is held back until its newline
    arrives. NUL separators sent by the relay are dropped.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)

    def feed(self, data: bytes | int) -> list[SyslogMessage]:
        """Add bytes and return every message completed by them."""
        if isinstance(data, int):
            data = bytes((data,))
        self._buffer.extend(data.replace(b"\x00", b""))
        messages = []
        while True:
            end = self._buffer.find(b"\n")
            if end < 0:
                break
            line = bytes(self._buffer[:end]).rstrip(b"\r")
            del self._buffer[: end + 1]
            messages.append(parse_syslog_line(line.decode(self.encoding, errors="replace")))
        return messages


class SyslogRelayClient(ServiceClient):
    """Raw syslog capture.

    The relay streams bytes as soon as the service starts. Capture runs on
    a delivery thread that polls the connection until it is stopped or the
    stream breaks.
    """

    service_name = ServiceIdentifier.SYSLOG_RELAY.value
    error_class = SyslogRelayError
    timeout_kind = "TIMEOUT"
    plist_kind = None

    def _attach(self, device: Device, connection: Any) -> None:
        super()._attach(device, connection)
        self._worker: threading.Thread | None = None
        self._token: int | None = None

    def receive(self, timeout: float | None = None, length: int = CAPTURE_CHUNK_SIZE) -> bytes:
        """Read whatever the relay has sent, up to ``length`` bytes.

        With a timeout the result may be empty.
        """
        connection = self._check()
        with self._translate():
            return connection.receive(length, timeout)

    def start_capture(self, callback: Callable[[int], None]) -> Disposable:
        """Deliver every captured byte to ``callback`` on a delivery thread.

        Raises:
            SyslogRelayError: ``INVALID_ARGUMENT`` if a capture is running
        """
        self._check()
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                raise SyslogRelayError(SyslogRelayErrorKind.INVALID_ARGUMENT, "Capture already running")
            token = registry.register(callback)
            self._token = token
            self._worker = threading.Thread(
                target=self._capture, args=(token,), name="syslog-capture", daemon=True
            )
            self._worker.start()
        logger.debug("Syslog capture started (token %d)", token)
        return registry.disposable(token)

    def _capture(self, token: int) -> None:
        stopped = registry.cancelled(token)
        try:
            while not stopped.is_set():
                chunk = self.receive(DEFAULT_POLL_INTERVAL)
                for byte in chunk:
                    if byte == 0:
                        continue
                    if not registry.invoke(token, byte):
                        return
        except MobileDeviceException as exc:
            logger.debug("Syslog capture ended: %s", exc)
        except Exception:
            logger.exception("Syslog capture callback failed")
        finally:
            registry.release(token)

    def start_capture_messages(self, callback: Callable[[SyslogMessage], None]) -> Disposable:
        """Deliver one parsed ``SyslogMessage`` per captured line."""
        assembler = SyslogMessageAssembler()

        def on_byte(byte: int) -> None:
            for message in assembler.feed(byte):
                callback(message)

        return self.start_capture(on_byte)

    def stop_capture(self) -> None:
        """Stop the running capture and wait for its thread."""
        with self._lock:
            worker, token = self._worker, self._token
            self._worker = self._token = None
        if token is not None:
            registry.release(token)
        if worker is not None and worker is not threading.current_thread():
            worker.join()

    def free(self) -> None:
        self.stop_capture()
        super().free()
