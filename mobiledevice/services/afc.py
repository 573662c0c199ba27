"""AFC file access client.

Every request is one packet: a 40-byte little-endian header (magic, entire
length, header length, packet number, operation) followed by operation
arguments and, for writes, the payload. The device answers with a STATUS
packet (non-zero status is an error) or with a data-bearing packet.
"""

import datetime
import logging
import os
import posixpath
import struct
from collections.abc import Callable
from typing import Any

from ..connection import Connection
from ..constants import (
    AFC_HEADER_SIZE,
    AFC_MAGIC,
    AFC_MAX_READ_SIZE,
    AFC_READ_CHUNK_SIZE,
    AFC_TEXTUAL_MODES,
    AFC_WRITE_CHUNK_SIZE,
    AfcFileMode,
    AfcLinkType,
    AfcLockOp,
    AfcOpcode,
    ServiceIdentifier,
)
from ..device import Device
from ..errors import AfcError, AfcErrorKind
from .base import ServiceClient

logger = logging.getLogger(__name__)

AFC_HEADER = struct.Struct("<8sQQQQ")

ProgressCallback = Callable[[float], None]


def pack_packet(operation: int, packet_num: int, data: bytes = b"", payload: bytes = b"") -> bytes:
    """Serialize one AFC packet.

    Args:
        operation: Opcode
        packet_num: Sequence number of this packet
        data: Operation arguments, counted in the header length
        payload: Bulk data following the arguments

    Returns:
        Packet bytes
    """
    this_length = AFC_HEADER_SIZE + len(data)
    header = AFC_HEADER.pack(AFC_MAGIC, this_length + len(payload), this_length, packet_num, operation)
    return header + data + payload


def _cstr(text: str) -> bytes:
    return text.encode("utf-8") + b"\0"


def _split_strings(data: bytes) -> list[str]:
    return [item.decode("utf-8", errors="replace") for item in data.split(b"\0")[:-1]] if data else []


def _pairs_to_dict(items: list[str]) -> dict[str, str]:
    return dict(zip(items[::2], items[1::2]))


class AfcClient(ServiceClient):
    """Directory, metadata and handle-based file operations."""

    service_name = ServiceIdentifier.AFC.value
    error_class = AfcError
    timeout_kind = "OP_TIMEOUT"
    plist_kind = None

    def __init__(
        self,
        device: Device,
        descriptor: Any,
        write_chunk_size: int = AFC_WRITE_CHUNK_SIZE,
        read_chunk_size: int = AFC_READ_CHUNK_SIZE,
    ):
        super().__init__(device, descriptor)
        self.write_chunk_size = write_chunk_size
        self.read_chunk_size = read_chunk_size

    def _attach(self, device: Device, connection: Connection) -> None:
        super()._attach(device, connection)
        self.write_chunk_size = AFC_WRITE_CHUNK_SIZE
        self.read_chunk_size = AFC_READ_CHUNK_SIZE
        self._packet_num = 0
        self._handles: dict[int, AfcFileMode] = {}

    @classmethod
    def from_house_arrest(cls, house_arrest: Any) -> "AfcClient":
        """Take over the vended channel of a house_arrest client.

        The house_arrest client is detached and must not be used again.
        """
        connection = house_arrest.connection
        house_arrest._connection = None
        return cls.from_connection(house_arrest.device, connection)

    # ------------------------------------------------------------------
    # Packet exchange
    # ------------------------------------------------------------------

    def _dispatch(self, operation: AfcOpcode, data: bytes = b"", payload: bytes = b"") -> tuple[int, bytes]:
        connection = self._check()
        with self._lock, self._translate():
            packet_num = self._packet_num
            self._packet_num += 1
            logger.debug("afc > %s #%d", operation.name, packet_num)
            connection.send_all(pack_packet(operation, packet_num, data, payload))

            header = connection.receive_exact(AFC_HEADER_SIZE, self.timeout)
            magic, entire_length, _this_length, reply_num, reply_op = AFC_HEADER.unpack(header)
            if magic != AFC_MAGIC:
                raise AfcError(AfcErrorKind.OP_HEADER_INVALID, "Bad AFC magic")
            if entire_length < AFC_HEADER_SIZE:
                raise AfcError(AfcErrorKind.OP_HEADER_INVALID, f"Bad AFC length {entire_length}")
            body = connection.receive_exact(entire_length - AFC_HEADER_SIZE, self.timeout)

        if reply_num != packet_num:
            raise AfcError(AfcErrorKind.OP_HEADER_INVALID, f"Reply #{reply_num} to request #{packet_num}")
        if reply_op == AfcOpcode.STATUS:
            status = struct.unpack_from("<Q", body)[0] if len(body) >= 8 else AfcErrorKind.UNKNOWN_ERROR
            if status != 0:
                raise AfcError.from_code(status, f"{operation.name} failed")
        return reply_op, body

    def _request(self, operation: AfcOpcode, data: bytes = b"", payload: bytes = b"") -> bytes:
        return self._dispatch(operation, data, payload)[1]

    def _expect(self, operation: AfcOpcode, reply: AfcOpcode, data: bytes = b"") -> bytes:
        reply_op, body = self._dispatch(operation, data)
        if reply_op != reply:
            raise AfcError(AfcErrorKind.UNKNOWN_PACKET_TYPE, f"Expected {reply.name}, got {reply_op}")
        return body

    def _handle_mode(self, handle: int) -> AfcFileMode:
        self._check()
        mode = self._handles.get(handle)
        if mode is None:
            raise AfcError(AfcErrorKind.INVALID_ARG, f"Unknown or closed file handle {handle}")
        return mode

    # ------------------------------------------------------------------
    # Device and path operations
    # ------------------------------------------------------------------

    def get_device_info(self) -> dict[str, str]:
        """Model, total/free bytes and block size of the device filesystem."""
        return _pairs_to_dict(_split_strings(self._expect(AfcOpcode.GET_DEVINFO, AfcOpcode.DATA)))

    def get_device_info_key(self, key: str) -> str | None:
        return self.get_device_info().get(key)

    def read_directory(self, path: str) -> list[str]:
        """Entry names of a directory, including ``.`` and ``..``."""
        return _split_strings(self._expect(AfcOpcode.READ_DIR, AfcOpcode.DATA, _cstr(path)))

    def listdir(self, path: str) -> list[str]:
        return [name for name in self.read_directory(path) if name not in (".", "..")]

    def get_file_info(self, path: str) -> dict[str, str]:
        """Metadata of a path (``st_size``, ``st_ifmt``, ``st_mtime``, ...)."""
        return _pairs_to_dict(_split_strings(self._expect(AfcOpcode.GET_FILE_INFO, AfcOpcode.DATA, _cstr(path))))

    def exists(self, path: str) -> bool:
        try:
            self.get_file_info(path)
        except AfcError as exc:
            if exc.kind == AfcErrorKind.OBJECT_NOT_FOUND:
                return False
            raise
        return True

    def is_directory(self, path: str) -> bool:
        return self.get_file_info(path).get("st_ifmt") == "S_IFDIR"

    def make_directory(self, path: str) -> None:
        self._request(AfcOpcode.MAKE_DIR, _cstr(path))

    def remove(self, path: str) -> None:
        self._request(AfcOpcode.REMOVE_PATH, _cstr(path))

    def remove_recursive(self, path: str) -> None:
        self._request(AfcOpcode.REMOVE_PATH_AND_CONTENTS, _cstr(path))

    def rename(self, source: str, target: str) -> None:
        self._request(AfcOpcode.RENAME_PATH, _cstr(source) + _cstr(target))

    def make_link(self, link_type: AfcLinkType, target: str, name: str) -> None:
        """Create ``name`` as a hard or symbolic link pointing at ``target``."""
        self._request(AfcOpcode.MAKE_LINK, struct.pack("<Q", link_type) + _cstr(target) + _cstr(name))

    def truncate_path(self, path: str, size: int) -> None:
        self._request(AfcOpcode.TRUNCATE, struct.pack("<Q", size) + _cstr(path))

    def set_modification_time(self, path: str, mtime: int | datetime.datetime) -> None:
        """Set ``st_mtime``; integers are nanoseconds since the Unix epoch."""
        if isinstance(mtime, datetime.datetime):
            if mtime.tzinfo is None:
                mtime = mtime.replace(tzinfo=datetime.timezone.utc)
            mtime = int(mtime.timestamp()) * 1_000_000_000 + mtime.microsecond * 1000
        self._request(AfcOpcode.SET_FILE_TIME, struct.pack("<Q", mtime) + _cstr(path))

    # ------------------------------------------------------------------
    # File handles
    # ------------------------------------------------------------------

    def open(self, path: str, mode: AfcFileMode | str = AfcFileMode.RDONLY) -> int:
        """Open a remote file.

        Args:
            path: Remote path
            mode: Open mode, or its fopen() spelling ("r", "w", "a+", ...)

        Returns:
            Device-side file handle
        """
        if isinstance(mode, str):
            if mode not in AFC_TEXTUAL_MODES:
                raise AfcError(AfcErrorKind.INVALID_ARG, f"Unsupported mode {mode!r}")
            mode = AFC_TEXTUAL_MODES[mode]
        body = self._expect(AfcOpcode.FILE_OPEN, AfcOpcode.FILE_OPEN_RES, struct.pack("<Q", mode) + _cstr(path))
        (handle,) = struct.unpack_from("<Q", body)
        self._handles[handle] = AfcFileMode(mode)
        return handle

    def close(self, handle: int) -> None:
        self._handle_mode(handle)
        try:
            self._request(AfcOpcode.FILE_CLOSE, struct.pack("<Q", handle))
        finally:
            self._handles.pop(handle, None)

    def read(self, handle: int, length: int) -> bytes:
        """Read up to ``length`` bytes; empty at end of file."""
        self._handle_mode(handle)
        length = min(length, AFC_MAX_READ_SIZE)
        return self._expect(AfcOpcode.FILE_READ, AfcOpcode.DATA, struct.pack("<QQ", handle, length))

    def write(self, handle: int, data: bytes) -> int:
        """Write ``data`` in one packet.

        Returns:
            Number of bytes written
        """
        self._handle_mode(handle)
        self._request(AfcOpcode.FILE_WRITE, struct.pack("<Q", handle), bytes(data))
        return len(data)

    def write_chunked(self, handle: int, data: bytes, progress: ProgressCallback | None = None) -> int:
        """Write ``data`` in chunks, reporting the completed fraction after each."""
        total = len(data)
        for offset in range(0, total, self.write_chunk_size):
            self.write(handle, data[offset : offset + self.write_chunk_size])
            if progress is not None:
                progress(min(offset + self.write_chunk_size, total) / total)
        if total == 0 and progress is not None:
            progress(1.0)
        return total

    def seek(self, handle: int, offset: int, whence: int = os.SEEK_SET) -> None:
        self._handle_mode(handle)
        self._request(AfcOpcode.FILE_SEEK, struct.pack("<QQq", handle, whence, offset))

    def tell(self, handle: int) -> int:
        self._handle_mode(handle)
        body = self._expect(AfcOpcode.FILE_TELL, AfcOpcode.FILE_TELL_RES, struct.pack("<Q", handle))
        return struct.unpack_from("<Q", body)[0]

    def truncate(self, handle: int, size: int) -> None:
        self._handle_mode(handle)
        self._request(AfcOpcode.FILE_SET_SIZE, struct.pack("<QQ", handle, size))

    def lock(self, handle: int, operation: AfcLockOp) -> None:
        self._handle_mode(handle)
        self._request(AfcOpcode.FILE_LOCK, struct.pack("<QQ", handle, operation))

    # ------------------------------------------------------------------
    # Whole files and folders
    # ------------------------------------------------------------------

    def read_file(self, path: str) -> bytes:
        handle = self.open(path, AfcFileMode.RDONLY)
        try:
            chunks = []
            while True:
                chunk = self.read(handle, self.read_chunk_size)
                if not chunk:
                    break
                chunks.append(chunk)
        finally:
            self.close(handle)
        return b"".join(chunks)

    def write_file(self, path: str, data: bytes, progress: ProgressCallback | None = None) -> None:
        handle = self.open(path, AfcFileMode.WRONLY)
        try:
            self.write_chunked(handle, data, progress)
        finally:
            self.close(handle)

    def write_from_local(
        self, handle: int, local_path: str | os.PathLike, progress: ProgressCallback | None = None
    ) -> int:
        """Stream a local file into an open handle."""
        total = os.path.getsize(local_path)
        written = 0
        with open(local_path, "rb") as f:
            while True:
                chunk = f.read(self.write_chunk_size)
                if not chunk:
                    break
                written += self.write(handle, chunk)
                if progress is not None:
                    progress(written / total)
        if total == 0 and progress is not None:
            progress(1.0)
        return written

    def copy_folder(
        self, local_dir: str | os.PathLike, remote_dir: str, progress: Callable[[str, float], None] | None = None
    ) -> None:
        """Depth-first copy of a local directory tree.

        Remote directories are created before their contents. ``progress``
        receives the remote path and the fraction written of that file.
        """
        self.make_directory(remote_dir)
        for entry in sorted(os.scandir(local_dir), key=lambda e: e.name):
            remote_path = posixpath.join(remote_dir, entry.name)
            if entry.is_dir(follow_symlinks=False):
                self.copy_folder(entry.path, remote_path, progress)
            elif entry.is_file():
                handle = self.open(remote_path, AfcFileMode.WRONLY)
                try:
                    self.write_from_local(
                        handle,
                        entry.path,
                        None if progress is None else lambda fraction, p=remote_path: progress(p, fraction),
                    )
                finally:
                    self.close(handle)
                logger.debug("Copied %s -> %s", entry.path, remote_path)

    def free(self) -> None:
        self._handles = {}
        super().free()
