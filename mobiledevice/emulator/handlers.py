"""Emulated device daemons, one thread per connection."""

import logging
import struct
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import Any

from ..connection import Connection
from ..constants import (
    AFC_HEADER_SIZE,
    AFC_MAGIC,
    AfcLinkType,
    AfcOpcode,
    FileRelaySource,
    PlistFormat,
    ServiceIdentifier,
)
from ..errors import AfcError, AfcErrorKind
from ..plist import Value
from ..services.afc import AFC_HEADER, pack_packet
from ..services.debug_server import PACKET_END, PACKET_START, checksum, encode_packet
from .device import BLANK_PNG, EmulatedDevice
from .filesystem import AfcFileSystem, OpenFile, normalize

logger = logging.getLogger(__name__)


class ServiceHandler(threading.Thread, ABC):
    """Serve one connection to an emulated daemon."""

    service_name = "service"

    def __init__(self, connection: Connection, device: EmulatedDevice, transport: Any):
        """Initialize handler.

        Args:
            connection: Device end of the connection
            device: State the daemon reads and mutates
            transport: Loopback transport that accepted the connection
        """
        super().__init__(daemon=True, name=f"emulated-{self.service_name}")
        self.connection = connection
        self.device = device
        self.transport = transport
        self.running = True

    def run(self):
        try:
            self._serve()
        except Exception as exc:
            logger.debug("%s connection closed: %s", self.service_name, exc)
        finally:
            self.connection.disconnect()

    @abstractmethod
    def _serve(self):
        """Serve the connection until the host hangs up."""
        pass

    def stop(self):
        self.running = False
        self.connection.disconnect()

    def _send(self, message: Any, fmt: PlistFormat = PlistFormat.XML) -> None:
        self.connection.send_plist(Value.from_python(message), fmt)

    def _receive(self) -> Any:
        return self.connection.receive_plist().to_python()


# ----------------------------------------------------------------------------
# lockdownd
# ----------------------------------------------------------------------------


class LockdownHandler(ServiceHandler):
    service_name = "lockdownd"

    _IMMUTABLE_KEYS = {"UniqueDeviceID", "SerialNumber", "DevicePublicKey", "ProductType"}

    def __init__(self, connection: Connection, device: EmulatedDevice, transport: Any):
        super().__init__(connection, device, transport)
        self.session_id: str | None = None
        self.host_id: str | None = None

    def _serve(self):
        while self.running:
            request = self._receive()
            name = request.get("Request") if isinstance(request, dict) else None
            handler = getattr(self, f"_on_{name}", None) if name else None
            if handler is None:
                logger.warning("lockdownd ignoring request %r", name)
                reply = {"Error": "InvalidRequest"}
            else:
                with self.device.lock:
                    reply = handler(request)
            self._send({"Request": name or "", **reply})

    def _require_session(self) -> dict | None:
        if self.session_id is None:
            return {"Error": "SessionInactive"}
        return None

    def _on_QueryType(self, request: dict) -> dict:
        return {"Type": self.device.session_type}

    def _on_GetValue(self, request: dict) -> dict:
        domain = self.device.preferences.get(request.get("Domain"))
        key = request.get("Key")
        if key is None:
            return {"Value": dict(domain or {})}
        if domain is None or key not in domain:
            return {"Error": "MissingValue"}
        return {"Key": key, "Value": domain[key]}

    def _on_SetValue(self, request: dict) -> dict:
        refused = self._require_session()
        if refused:
            return refused
        key = request.get("Key")
        if key is None or "Value" not in request:
            return {"Error": "MissingKey" if key is None else "MissingValue"}
        if key in self._IMMUTABLE_KEYS and request.get("Domain") is None:
            return {"Error": "ImmutableValue"}
        self.device.preferences.setdefault(request.get("Domain"), {})[key] = request["Value"]
        return {}

    def _on_RemoveValue(self, request: dict) -> dict:
        refused = self._require_session()
        if refused:
            return refused
        key = request.get("Key")
        if key in self._IMMUTABLE_KEYS and request.get("Domain") is None:
            return {"Error": "RemoveProhibited"}
        domain = self.device.preferences.get(request.get("Domain"), {})
        if key is None:
            domain.clear()
        else:
            domain.pop(key, None)
        return {}

    def _on_ValidatePair(self, request: dict) -> dict:
        host_id = request.get("PairRecord", {}).get("HostID")
        if host_id is None:
            return {"Error": "MissingHostID"}
        if host_id not in self.device.paired_host_ids:
            return {"Error": "InvalidHostID"}
        return {}

    def _on_Pair(self, request: dict) -> dict:
        if self.device.pairing_error:
            return {"Error": self.device.pairing_error}
        host_id = request.get("PairRecord", {}).get("HostID")
        if host_id is None:
            return {"Error": "MissingHostID"}
        self.device.trust(host_id)
        logger.info("Emulated %s paired with host %s", self.device.udid, host_id)
        return {"EscrowBag": self.device.escrow_bag}

    def _on_StartSession(self, request: dict) -> dict:
        host_id = request.get("HostID")
        if host_id not in self.device.paired_host_ids:
            return {"Error": "InvalidHostID"}
        if self.session_id is not None:
            return {"Error": "SessionActive"}
        self.host_id = host_id
        self.session_id = str(uuid.uuid4()).upper()
        return {"SessionID": self.session_id, "EnableSessionSSL": False}

    def _on_StopSession(self, request: dict) -> dict:
        if request.get("SessionID") != self.session_id or self.session_id is None:
            return {"Error": "InvalidSessionID"}
        self.session_id = None
        return {}

    def _on_StartService(self, request: dict) -> dict:
        refused = self._require_session()
        if refused:
            return refused
        service = request.get("Service")
        if service is None:
            return {"Error": "MissingService"}
        handler = SERVICE_HANDLERS.get(service)
        if handler is None:
            return {"Error": "InvalidService"}
        if service in self.device.require_escrow_bag and request.get("EscrowBag") != self.device.escrow_bag:
            return {"Error": "EscrowLocked"}
        port = self.transport.publish(self.device, handler)
        return {"Service": service, "Port": port, "EnableServiceSSL": False}


# ----------------------------------------------------------------------------
# afcd
# ----------------------------------------------------------------------------


def _cstrings(data: bytes) -> list[str]:
    return [item.decode("utf-8") for item in data.split(b"\0")[:-1]]


def _join(items: list[str]) -> bytes:
    return b"".join(item.encode("utf-8") + b"\0" for item in items)


class AfcHandler(ServiceHandler):
    service_name = "afcd"

    def __init__(self, connection: Connection, device: EmulatedDevice, transport: Any):
        super().__init__(connection, device, transport)
        self.filesystem: AfcFileSystem = device.filesystem
        self.root = "/"
        self._handles: dict[int, OpenFile] = {}
        self._next_handle = 1

    def _path(self, path: str) -> str:
        return normalize(self.root + "/" + path)

    def _open_file(self, handle: int) -> OpenFile:
        open_file = self._handles.get(handle)
        if open_file is None:
            raise AfcError(AfcErrorKind.INVALID_ARG, f"Bad handle {handle}")
        return open_file

    def _serve(self):
        while self.running:
            header = self.connection.receive_exact(AFC_HEADER_SIZE)
            magic, entire_length, this_length, packet_num, operation = AFC_HEADER.unpack(header)
            if magic != AFC_MAGIC:
                raise AfcError(AfcErrorKind.OP_HEADER_INVALID, "Bad magic")
            body = self.connection.receive_exact(entire_length - AFC_HEADER_SIZE)
            split = this_length - AFC_HEADER_SIZE
            try:
                reply_op, reply = self._handle(operation, body[:split], body[split:])
            except AfcError as exc:
                reply_op, reply = AfcOpcode.STATUS, struct.pack("<Q", exc.code)
            self.connection.send_all(pack_packet(reply_op, packet_num, reply))

    def _handle(self, operation: int, data: bytes, payload: bytes) -> tuple[AfcOpcode, bytes]:
        fs = self.filesystem
        ok = (AfcOpcode.STATUS, struct.pack("<Q", 0))

        if operation == AfcOpcode.GET_DEVINFO:
            free = fs.total_bytes - fs.used_bytes
            info = {
                "Model": self.device.preferences[None]["ProductType"],
                "FSTotalBytes": str(fs.total_bytes),
                "FSFreeBytes": str(free),
                "FSBlockSize": "4096",
            }
            return AfcOpcode.DATA, _join([item for pair in info.items() for item in pair])
        if operation == AfcOpcode.READ_DIR:
            return AfcOpcode.DATA, _join(fs.listdir(self._path(_cstrings(data)[0])))
        if operation == AfcOpcode.GET_FILE_INFO:
            info = fs.stat(self._path(_cstrings(data)[0]))
            return AfcOpcode.DATA, _join([item for pair in info.items() for item in pair])
        if operation == AfcOpcode.MAKE_DIR:
            fs.mkdir(self._path(_cstrings(data)[0]))
            return ok
        if operation == AfcOpcode.REMOVE_PATH:
            fs.remove(self._path(_cstrings(data)[0]))
            return ok
        if operation == AfcOpcode.REMOVE_PATH_AND_CONTENTS:
            fs.remove_all(self._path(_cstrings(data)[0]))
            return ok
        if operation == AfcOpcode.RENAME_PATH:
            source, target = _cstrings(data)[:2]
            fs.rename(self._path(source), self._path(target))
            return ok
        if operation == AfcOpcode.MAKE_LINK:
            (link_type,) = struct.unpack_from("<Q", data)
            target, name = _cstrings(data[8:])[:2]
            fs.link(link_type, self._path(target) if link_type == AfcLinkType.HARDLINK else target, self._path(name))
            return ok
        if operation == AfcOpcode.TRUNCATE:
            (size,) = struct.unpack_from("<Q", data)
            fs.truncate(self._path(_cstrings(data[8:])[0]), size)
            return ok
        if operation == AfcOpcode.SET_FILE_TIME:
            (mtime,) = struct.unpack_from("<Q", data)
            fs.set_mtime(self._path(_cstrings(data[8:])[0]), mtime)
            return ok

        if operation == AfcOpcode.FILE_OPEN:
            (mode,) = struct.unpack_from("<Q", data)
            open_file = fs.open(self._path(_cstrings(data[8:])[0]), mode)
            handle = self._next_handle
            self._next_handle += 1
            self._handles[handle] = open_file
            return AfcOpcode.FILE_OPEN_RES, struct.pack("<Q", handle)
        if operation == AfcOpcode.FILE_READ:
            handle, length = struct.unpack_from("<QQ", data)
            return AfcOpcode.DATA, fs.read(self._open_file(handle), length)
        if operation == AfcOpcode.FILE_WRITE:
            (handle,) = struct.unpack_from("<Q", data)
            fs.write(self._open_file(handle), payload)
            return ok
        if operation == AfcOpcode.FILE_SEEK:
            handle, whence, offset = struct.unpack_from("<QQq", data)
            fs.seek(self._open_file(handle), offset, whence)
            return ok
        if operation == AfcOpcode.FILE_TELL:
            (handle,) = struct.unpack_from("<Q", data)
            return AfcOpcode.FILE_TELL_RES, struct.pack("<Q", self._open_file(handle).position)
        if operation == AfcOpcode.FILE_SET_SIZE:
            handle, size = struct.unpack_from("<QQ", data)
            fs.set_size(self._open_file(handle), size)
            return ok
        if operation == AfcOpcode.FILE_LOCK:
            (handle,) = struct.unpack_from("<Q", data)
            self._open_file(handle)
            return ok
        if operation == AfcOpcode.FILE_CLOSE:
            (handle,) = struct.unpack_from("<Q", data)
            self._open_file(handle)
            del self._handles[handle]
            return ok

        logger.warning("afcd ignoring operation %#x", operation)
        raise AfcError(AfcErrorKind.UNKNOWN_PACKET_TYPE, f"Operation {operation:#x}")


# ----------------------------------------------------------------------------
# installation_proxy
# ----------------------------------------------------------------------------

_INSTALL_STAGES = [
    ("CreatingStagingDirectory", 5),
    ("ExtractingPackage", 15),
    ("InspectingPackage", 20),
    ("PreflightingApplication", 30),
    ("VerifyingApplication", 40),
    ("CreatingContainer", 50),
    ("InstallingApplication", 60),
    ("PostflightingApplication", 70),
    ("SandboxingApplication", 80),
    ("GeneratingApplicationMap", 90),
]

_CAPABILITIES = {"arm64", "armv7", "gamekit", "metal", "wifi", "still-camera", "opengles-2"}


def _error_status(name: str, description: str, detail: int | None = None) -> dict:
    status = {"Error": name, "ErrorDescription": description}
    if detail is not None:
        status["ErrorDetail"] = detail
    return status


class InstallationProxyHandler(ServiceHandler):
    service_name = "installd"

    def _serve(self):
        while self.running:
            request = self._receive()
            command = request.get("Command")
            options = request.get("ClientOptions") or {}
            handler = getattr(self, f"_on_{command}", None) if command else None
            if handler is None:
                self._send(_error_status("MissingCommand" if command is None else "UnknownCommand", str(command)))
                continue
            for status in handler(request, options):
                self._send(status)

    def _matching(self, options: dict) -> dict[str, dict]:
        """Apps selected by ``ClientOptions``, projected to ``ReturnAttributes``."""
        app_type = options.get("ApplicationType", "Any")
        wanted = options.get("BundleIDs")
        attributes = options.get("ReturnAttributes")
        with self.device.lock:
            apps = dict(self.device.apps)
        selected = {}
        for bundle_id, app in apps.items():
            if app_type != "Any" and app.get("ApplicationType") != app_type:
                continue
            if wanted is not None and bundle_id not in wanted:
                continue
            selected[bundle_id] = {key: app[key] for key in attributes if key in app} if attributes else dict(app)
        return selected

    def _on_Browse(self, request: dict, options: dict) -> Iterator[dict]:
        apps = list(self._matching(options).values())
        size = max(1, self.device.browse_page_size)
        for index in range(0, len(apps), size):
            page = apps[index : index + size]
            yield {
                "Status": "BrowsingApplications",
                "CurrentIndex": index,
                "CurrentAmount": len(page),
                "Total": len(apps),
                "CurrentList": page,
            }
        yield {"Status": "Complete"}

    def _on_Lookup(self, request: dict, options: dict) -> Iterator[dict]:
        yield {"LookupResult": self._matching(options), "Status": "Complete"}

    def _on_LookupArchives(self, request: dict, options: dict) -> Iterator[dict]:
        with self.device.lock:
            yield {"LookupResult": dict(self.device.archives), "Status": "Complete"}

    def _on_CheckCapabilitiesMatch(self, request: dict, options: dict) -> Iterator[dict]:
        capabilities = request.get("Capabilities") or []
        yield {"LookupResult": all(item in _CAPABILITIES for item in capabilities), "Status": "Complete"}

    def _on_Install(self, request: dict, options: dict) -> Iterator[dict]:
        package = request.get("PackagePath")
        if package is None:
            yield _error_status("MissingPackagePath", "No PackagePath in request")
            return
        for stage, percent in _INSTALL_STAGES[:3]:
            yield {"Status": stage, "PercentComplete": percent}
        if self.device.install_error:
            yield _error_status(self.device.install_error, f"Could not install {package}", 42)
            return
        try:
            self.device.app_from_package(package)
        except AfcError:
            yield _error_status("PackageExtractionFailed", f"Could not open {package}")
            return
        for stage, percent in _INSTALL_STAGES[3:]:
            yield {"Status": stage, "PercentComplete": percent}
        yield {"Status": "Complete"}

    _on_Upgrade = _on_Install

    def _app_command(self, request: dict, table: dict, stage: str) -> Iterator[dict]:
        app_id = request.get("ApplicationIdentifier")
        if app_id is None:
            yield _error_status("MissingApplicationIdentifier", "No ApplicationIdentifier in request")
            return
        if app_id not in table:
            yield _error_status("LookupFailed", f"{app_id} not found")
            return
        yield {"Status": stage, "PercentComplete": 50}

    def _on_Uninstall(self, request: dict, options: dict) -> Iterator[dict]:
        app_id = request.get("ApplicationIdentifier")
        for status in self._app_command(request, self.device.apps, "RemovingApplication"):
            yield status
            if "Error" in status:
                return
        with self.device.lock:
            self.device.apps.pop(app_id, None)
        yield {"Status": "Complete"}

    def _on_Archive(self, request: dict, options: dict) -> Iterator[dict]:
        app_id = request.get("ApplicationIdentifier")
        if app_id in self.device.archives:
            yield _error_status("AlreadyArchived", f"{app_id} is already archived")
            return
        for status in self._app_command(request, self.device.apps, "ArchivingApplication"):
            yield status
            if "Error" in status:
                return
        with self.device.lock:
            self.device.archives[app_id] = dict(self.device.apps[app_id])
            if not options.get("SkipUninstall", False):
                self.device.apps.pop(app_id, None)
        yield {"Status": "Complete"}

    def _on_Restore(self, request: dict, options: dict) -> Iterator[dict]:
        app_id = request.get("ApplicationIdentifier")
        for status in self._app_command(request, self.device.archives, "RestoringApplication"):
            yield status
            if "Error" in status:
                return
        with self.device.lock:
            self.device.apps[app_id] = dict(self.device.archives[app_id])
        yield {"Status": "Complete"}

    def _on_RemoveArchive(self, request: dict, options: dict) -> Iterator[dict]:
        app_id = request.get("ApplicationIdentifier")
        for status in self._app_command(request, self.device.archives, "RemovingArchive"):
            yield status
            if "Error" in status:
                return
        with self.device.lock:
            self.device.archives.pop(app_id, None)
        yield {"Status": "Complete"}


# ----------------------------------------------------------------------------
# Small services
# ----------------------------------------------------------------------------


class SyslogRelayHandler(ServiceHandler):
    service_name = "syslog_relay"

    def _serve(self):
        if self.device.syslog:
            self.connection.send_all(self.device.syslog)
        # Hold the stream open until the host hangs up
        while self.running:
            self.connection.receive(1024)


class ScreenshotHandler(ServiceHandler):
    service_name = "screenshotr"

    def _serve(self):
        major, minor = self.device.device_link_version
        self._send(["DLMessageVersionExchange", major, minor], PlistFormat.BINARY)
        reply = self._receive()
        if reply[:2] != ["DLMessageVersionExchange", "DLVersionsOk"]:
            return
        self._send(["DLMessageDeviceReady"], PlistFormat.BINARY)
        while self.running:
            message = self._receive()
            if not message or message[0] == "DLMessageDisconnect":
                return
            if message[0] == "DLMessageProcessMessage" and message[1].get("MessageType") == "ScreenShotRequest":
                reply = {"MessageType": "ScreenShotReply", "ScreenShotData": self.device.screenshot}
                self._send(["DLMessageProcessMessage", reply], PlistFormat.BINARY)


class SpringboardHandler(ServiceHandler):
    service_name = "springboardservices"

    def _serve(self):
        while self.running:
            request = self._receive()
            command = request.get("command")
            reply: dict = {}
            if command == "getIconPNGData":
                bundle_id = request.get("bundleId")
                if bundle_id in self.device.icons:
                    reply["pngData"] = self.device.icons[bundle_id]
                elif bundle_id in self.device.apps:
                    reply["pngData"] = BLANK_PNG
            elif command == "getHomeScreenWallpaperPNGData":
                reply["pngData"] = self.device.wallpaper
            else:
                logger.warning("springboardservices ignoring %r", command)
            self._send(reply, PlistFormat.BINARY)


class HouseArrestHandler(AfcHandler):
    """Answers one vend request, then serves AFC inside the app container."""

    service_name = "house_arrest"

    def _serve(self):
        while self.running:
            request = self._receive()
            command = request.get("Command")
            app_id = request.get("Identifier")
            if command not in ("VendContainer", "VendDocuments"):
                self._send({"Error": "InvalidCommand"})
                continue
            if app_id not in self.device.apps:
                self._send({"Error": "ApplicationLookupFailed"})
                continue
            self.filesystem = self.device.containers
            self.root = f"/{app_id}" if command == "VendContainer" else f"/{app_id}/Documents"
            self.filesystem.mkdir(self.root)
            self._send({"Status": "Complete"})
            break
        super()._serve()


class FileRelayHandler(ServiceHandler):
    service_name = "file_relay"

    _SOURCES = {source.value for source in FileRelaySource}

    def _serve(self):
        request = self._receive()
        sources = request.get("Sources") or []
        if not sources or any(source not in self._SOURCES for source in sources):
            self._send({"Error": "InvalidSource"})
        elif self.device.file_relay_error:
            self._send({"Error": self.device.file_relay_error})
        elif not self.device.file_relay_archive:
            self._send({"Error": "StagingEmpty"})
        else:
            self._send({"Status": "Acknowledged"})
            self.connection.send_all(self.device.file_relay_archive)


class DebugServerHandler(ServiceHandler):
    """Minimal GDB remote stub: acknowledges packets and accepts setup commands."""

    service_name = "debugserver"

    def __init__(self, connection: Connection, device: EmulatedDevice, transport: Any):
        super().__init__(connection, device, transport)
        self.ack_mode = True
        self.argv: list[str] = []
        self.environment: list[str] = []

    def _read_packet(self) -> bytes:
        byte = self.connection.receive_exact(1)
        while byte != PACKET_START:
            byte = self.connection.receive_exact(1)
        payload = bytearray()
        byte = self.connection.receive_exact(1)
        while byte != PACKET_END:
            payload.extend(byte)
            byte = self.connection.receive_exact(1)
        if self.connection.receive_exact(2).lower() != checksum(payload):
            raise ValueError("Bad packet checksum")
        return bytes(payload)

    def _serve(self):
        while self.running:
            payload = self._read_packet()
            if self.ack_mode:
                self.connection.send_all(b"+")
            self.connection.send_all(encode_packet(self._respond(payload.decode())))
            if payload == b"QStartNoAckMode":
                self.ack_mode = False

    def _respond(self, command: str) -> bytes:
        if command == "QStartNoAckMode":
            return b"OK"
        if command.startswith("QEnvironmentHexEncoded:"):
            self.environment.append(bytes.fromhex(command.split(":", 1)[1]).decode())
            return b"OK"
        if command.startswith("A"):
            fields = command[1:].split(",")
            self.argv = [bytes.fromhex(fields[i + 2]).decode() for i in range(0, len(fields), 3)]
            return b"OK"
        if command == "qLaunchSuccess":
            return b"OK" if self.argv else b"E01"
        return b""


SERVICE_HANDLERS: dict[str, type[ServiceHandler]] = {
    ServiceIdentifier.AFC.value: AfcHandler,
    ServiceIdentifier.INSTALLATION_PROXY.value: InstallationProxyHandler,
    ServiceIdentifier.SYSLOG_RELAY.value: SyslogRelayHandler,
    ServiceIdentifier.SCREENSHOT.value: ScreenshotHandler,
    ServiceIdentifier.SPRINGBOARD.value: SpringboardHandler,
    ServiceIdentifier.HOUSE_ARREST.value: HouseArrestHandler,
    ServiceIdentifier.FILE_RELAY.value: FileRelayHandler,
    ServiceIdentifier.DEBUGSERVER.value: DebugServerHandler,
}
