"""In-memory filesystem served by the emulated AFC daemon."""

import os
import posixpath
import threading
import time
from dataclasses import dataclass

from ..constants import AfcFileMode, AfcLinkType
from ..errors import AfcError, AfcErrorKind

_READABLE = {AfcFileMode.RDONLY, AfcFileMode.RW, AfcFileMode.WR, AfcFileMode.RDAPPEND}
_CREATING = {AfcFileMode.WRONLY, AfcFileMode.WR, AfcFileMode.APPEND, AfcFileMode.RDAPPEND}
_TRUNCATING = {AfcFileMode.WRONLY, AfcFileMode.WR}
_APPENDING = {AfcFileMode.APPEND, AfcFileMode.RDAPPEND}

BLOCK_SIZE = 4096


def normalize(path: str) -> str:
    path = posixpath.normpath("/" + path.lstrip("/"))
    return "/" if path == "//" else path


@dataclass
class OpenFile:
    """Per-connection state of an open handle."""

    path: str
    mode: AfcFileMode
    position: int = 0


class AfcFileSystem:
    """Directories, regular files and symlinks, safe to share across connections."""

    def __init__(self, total_bytes: int = 64 * 1024**3):
        self.total_bytes = total_bytes
        self._dirs: set[str] = {"/"}
        self._files: dict[str, bytearray] = {}
        self._links: dict[str, str] = {}
        self._mtimes: dict[str, int] = {"/": time.time_ns()}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _touch(self, path: str) -> None:
        self._mtimes[path] = time.time_ns()

    def _exists(self, path: str) -> bool:
        return path in self._dirs or path in self._files or path in self._links

    def _require_parent(self, path: str) -> None:
        parent = posixpath.dirname(path)
        if parent not in self._dirs:
            raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, parent)

    def _file(self, path: str) -> bytearray:
        data = self._files.get(path)
        if data is None:
            if path in self._dirs:
                raise AfcError(AfcErrorKind.OBJECT_IS_DIR, path)
            raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, path)
        return data

    def _children(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        names = set()
        for entry in (*self._dirs, *self._files, *self._links):
            if entry != path and entry.startswith(prefix) and "/" not in entry[len(prefix) :]:
                names.add(entry[len(prefix) :])
        return sorted(names)

    @property
    def used_bytes(self) -> int:
        return sum(len(data) for data in self._files.values())

    # ------------------------------------------------------------------
    # Path operations
    # ------------------------------------------------------------------

    def listdir(self, path: str) -> list[str]:
        path = normalize(path)
        with self._lock:
            if path not in self._dirs:
                if path in self._files:
                    raise AfcError(AfcErrorKind.READ_ERROR, f"{path} is not a directory")
                raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, path)
            return [".", "..", *self._children(path)]

    def stat(self, path: str) -> dict[str, str]:
        path = normalize(path)
        with self._lock:
            if path in self._links:
                info = {"st_ifmt": "S_IFLNK", "st_size": str(len(self._links[path])), "LinkTarget": self._links[path]}
            elif path in self._dirs:
                info = {"st_ifmt": "S_IFDIR", "st_size": str(68 + 34 * len(self._children(path)))}
            elif path in self._files:
                info = {"st_ifmt": "S_IFREG", "st_size": str(len(self._files[path]))}
            else:
                raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, path)
            size = int(info["st_size"])
            mtime = str(self._mtimes.get(path, 0))
            info.update(
                st_blocks=str((size + 511) // 512),
                st_nlink=str(2 + len(self._children(path)) if path in self._dirs else 1),
                st_mtime=mtime,
                st_birthtime=mtime,
            )
            return info

    def mkdir(self, path: str) -> None:
        """Create a directory and any missing parents."""
        path = normalize(path)
        with self._lock:
            parts = path.strip("/").split("/") if path != "/" else []
            current = "/"
            for part in parts:
                current = posixpath.join(current, part)
                if current in self._files or current in self._links:
                    raise AfcError(AfcErrorKind.OBJECT_EXISTS, current)
                if current not in self._dirs:
                    self._dirs.add(current)
                    self._touch(current)

    def remove(self, path: str) -> None:
        path = normalize(path)
        with self._lock:
            if path in self._dirs:
                if path == "/":
                    raise AfcError(AfcErrorKind.PERM_DENIED, path)
                if self._children(path):
                    raise AfcError(AfcErrorKind.DIR_NOT_EMPTY, path)
                self._dirs.discard(path)
            elif path in self._files:
                del self._files[path]
            elif path in self._links:
                del self._links[path]
            else:
                raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, path)
            self._mtimes.pop(path, None)

    def remove_all(self, path: str) -> None:
        path = normalize(path)
        with self._lock:
            if not self._exists(path):
                raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, path)
            if path == "/":
                raise AfcError(AfcErrorKind.PERM_DENIED, path)
            prefix = path + "/"
            for table in (self._files, self._links, self._mtimes):
                for entry in [entry for entry in table if entry == path or entry.startswith(prefix)]:
                    del table[entry]
            self._dirs = {entry for entry in self._dirs if entry != path and not entry.startswith(prefix)}

    def rename(self, source: str, target: str) -> None:
        source, target = normalize(source), normalize(target)
        with self._lock:
            if not self._exists(source):
                raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, source)
            self._require_parent(target)
            if target in self._dirs and self._children(target):
                raise AfcError(AfcErrorKind.DIR_NOT_EMPTY, target)
            moved = {}
            prefix = source + "/"
            for entry in [*self._dirs, *self._files, *self._links]:
                if entry == source or entry.startswith(prefix):
                    moved[entry] = target + entry[len(source) :]
            for old, new in moved.items():
                if old in self._dirs:
                    self._dirs.discard(old)
                    self._dirs.add(new)
                for table in (self._files, self._links, self._mtimes):
                    if old in table:
                        table[new] = table.pop(old)

    def link(self, link_type: int, target: str, name: str) -> None:
        name = normalize(name)
        with self._lock:
            self._require_parent(name)
            if self._exists(name):
                raise AfcError(AfcErrorKind.OBJECT_EXISTS, name)
            if link_type == AfcLinkType.SYMLINK:
                self._links[name] = target
            elif link_type == AfcLinkType.HARDLINK:
                self._files[name] = self._file(normalize(target))
            else:
                raise AfcError(AfcErrorKind.INVALID_ARG, f"Link type {link_type}")
            self._touch(name)

    def truncate(self, path: str, size: int) -> None:
        path = normalize(path)
        with self._lock:
            data = self._file(path)
            if size < len(data):
                del data[size:]
            else:
                data.extend(bytes(size - len(data)))
            self._touch(path)

    def set_mtime(self, path: str, mtime: int) -> None:
        path = normalize(path)
        with self._lock:
            if not self._exists(path):
                raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, path)
            self._mtimes[path] = mtime

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def open(self, path: str, mode: int) -> OpenFile:
        path = normalize(path)
        try:
            mode = AfcFileMode(mode)
        except ValueError:
            raise AfcError(AfcErrorKind.INVALID_ARG, f"Open mode {mode}") from None
        with self._lock:
            if path in self._dirs:
                raise AfcError(AfcErrorKind.OBJECT_IS_DIR, path)
            if path not in self._files:
                if mode not in _CREATING:
                    raise AfcError(AfcErrorKind.OBJECT_NOT_FOUND, path)
                self._require_parent(path)
                self._files[path] = bytearray()
                self._touch(path)
            elif mode in _TRUNCATING:
                self._files[path].clear()
                self._touch(path)
            return OpenFile(path, mode, len(self._files[path]) if mode in _APPENDING else 0)

    def read(self, handle: OpenFile, length: int) -> bytes:
        if handle.mode not in _READABLE:
            raise AfcError(AfcErrorKind.PERM_DENIED, f"{handle.path} is not open for reading")
        with self._lock:
            data = self._file(handle.path)
            chunk = bytes(data[handle.position : handle.position + length])
            handle.position += len(chunk)
            return chunk

    def write(self, handle: OpenFile, chunk: bytes) -> int:
        if handle.mode == AfcFileMode.RDONLY:
            raise AfcError(AfcErrorKind.PERM_DENIED, f"{handle.path} is open read-only")
        with self._lock:
            if self.used_bytes + len(chunk) > self.total_bytes:
                raise AfcError(AfcErrorKind.NO_SPACE_LEFT, handle.path)
            data = self._file(handle.path)
            if handle.mode in _APPENDING:
                handle.position = len(data)
            end = handle.position + len(chunk)
            if handle.position > len(data):
                data.extend(bytes(handle.position - len(data)))
            data[handle.position : end] = chunk
            handle.position = end
            self._touch(handle.path)
            return len(chunk)

    def seek(self, handle: OpenFile, offset: int, whence: int) -> None:
        with self._lock:
            size = len(self._file(handle.path))
        if whence == os.SEEK_SET:
            position = offset
        elif whence == os.SEEK_CUR:
            position = handle.position + offset
        elif whence == os.SEEK_END:
            position = size + offset
        else:
            raise AfcError(AfcErrorKind.INVALID_ARG, f"whence {whence}")
        if position < 0:
            raise AfcError(AfcErrorKind.INVALID_ARG, f"Seek before start of {handle.path}")
        handle.position = position

    def set_size(self, handle: OpenFile, size: int) -> None:
        if handle.mode == AfcFileMode.RDONLY:
            raise AfcError(AfcErrorKind.PERM_DENIED, f"{handle.path} is open read-only")
        self.truncate(handle.path, size)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_file(self, path: str, data: bytes) -> None:
        """Create ``path`` with ``data``, making parent directories as needed."""
        path = normalize(path)
        with self._lock:
            self.mkdir(posixpath.dirname(path))
            self._files[path] = bytearray(data)
            self._touch(path)

    def get_file(self, path: str) -> bytes:
        with self._lock:
            return bytes(self._file(normalize(path)))

    def exists(self, path: str) -> bool:
        with self._lock:
            return self._exists(normalize(path))
