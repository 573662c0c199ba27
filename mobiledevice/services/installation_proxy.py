"""Installation proxy client.

Commands are plist dictionaries (``Command``, ``ClientOptions`` and command
arguments). The device answers with a stream of status dictionaries; the
stream ends with ``Status: Complete`` or with a status carrying ``Error``.
Browse pages and install progress arrive as intermediate statuses.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from ..callbacks import Disposable, registry
from ..constants import ApplicationType, ServiceIdentifier
from ..device import Device
from ..errors import InstallationProxyError, InstallationProxyErrorKind, MobileDeviceException
from ..models import CurrentList, InstalledAppInfo, InstallOptions, StatusError
from ..plist import PlistType, Value
from .base import ServiceClient

logger = logging.getLogger(__name__)

StatusCallback = Callable[[Value, Value], None]
Options = InstallOptions | Value | dict[str, Any] | None

STATUS_COMPLETE = "Complete"


# ----------------------------------------------------------------------------
# Status projections
# ----------------------------------------------------------------------------


def command_get_name(command: Value) -> str | None:
    """Name of the command a status belongs to."""
    name = command["Command"]
    return name.string if name is not None else None


def status_get_name(status: Value) -> str | None:
    name = status["Status"]
    return name.string if name is not None else None


def status_get_percent_complete(status: Value) -> int:
    """Progress of an operation; 0 when the status carries none."""
    percent = status["PercentComplete"]
    if percent is None or percent.uint is None:
        return 0
    return percent.uint


def status_get_error(status: Value) -> StatusError | None:
    """Error fields of a status, or None for a successful one."""
    error = status["Error"]
    if error is None or error.string is None:
        return None
    description = status["ErrorDescription"]
    detail = status["ErrorDetail"]
    return StatusError(
        name=error.string,
        description=description.string if description is not None else None,
        code=detail.uint if detail is not None else None,
    )


def status_get_current_list(status: Value) -> CurrentList | None:
    """Browse page carried by a status, if any."""
    entries = status["CurrentList"]
    if entries is None or entries.type != PlistType.ARRAY:
        return None

    def _number(key: str, default: int) -> int:
        node = status[key]
        return node.uint if node is not None and node.uint is not None else default

    items = [child for _, child in entries.iterate()]
    return CurrentList(
        amount=_number("CurrentAmount", len(items)),
        total=_number("Total", len(items)),
        index=_number("CurrentIndex", 0),
        entries=items,
    )


def error_from_status(error: StatusError) -> InstallationProxyError:
    exc = InstallationProxyError.from_name(error.name, error.description)
    exc.name = error.name
    exc.description = error.description
    if error.code is not None:
        exc.detail = f"{exc.detail or error.name} (detail {error.code})"
    return exc


def _is_terminal(status: Value) -> bool:
    return status_get_name(status) == STATUS_COMPLETE or status["Error"] is not None


class InstallationProxyClient(ServiceClient):
    """Enumerate, look up, install and remove applications."""

    service_name = ServiceIdentifier.INSTALLATION_PROXY.value
    error_class = InstallationProxyError
    timeout_kind = "RECEIVE_TIMEOUT"

    command_get_name = staticmethod(command_get_name)
    status_get_name = staticmethod(status_get_name)
    status_get_error = staticmethod(status_get_error)
    status_get_percent_complete = staticmethod(status_get_percent_complete)
    status_get_current_list = staticmethod(status_get_current_list)

    def _attach(self, device: Device, connection: Any) -> None:
        super()._attach(device, connection)
        self._busy = threading.Lock()

    # ------------------------------------------------------------------
    # Command streaming
    # ------------------------------------------------------------------

    def _send_command(self, name: str, options: Options, **arguments: Any) -> Value:
        command = Value.dictionary({"Command": name, "ClientOptions": InstallOptions.coerce(options)})
        for key, argument in arguments.items():
            command[key] = argument
        self._check()
        if not self._busy.acquire(blocking=False):
            raise InstallationProxyError(
                InstallationProxyErrorKind.OPERATION_IN_PROGRESS, f"{name} issued while another command is running"
            )
        try:
            logger.debug("instproxy > %s", name)
            self.send_plist(command)
        except BaseException:
            self._busy.release()
            raise
        return command

    def _statuses(self, timeout: float | None = None, block: bool = False):
        """Yield statuses of the running command up to the terminal one.

        The client accepts the next command as soon as the terminal status
        has been read, before it is handed to the caller. A stream that ends
        any earlier frees the client.
        """
        released = False
        try:
            while True:
                status = self.receive_plist(timeout, block=block)
                if _is_terminal(status):
                    self._busy.release()
                    released = True
                    yield status
                    return
                yield status
        finally:
            if not released:
                # unread statuses would be taken as replies to the next command
                self.free()
                self._busy.release()

    def _run(
        self,
        name: str,
        options: Options,
        callback: StatusCallback | None = None,
        block: bool = False,
        **arguments: Any,
    ) -> Value:
        """Run a command to completion on the caller's thread.

        Args:
            block: Wait for each status without the client timeout

        Returns:
            The terminal status

        Raises:
            InstallationProxyError: Extracted from an error status
        """
        command = self._send_command(name, options, **arguments)
        last = None
        for status in self._statuses(block=block):
            if callback is not None:
                callback(command, status)
            last = status
        error = status_get_error(last)
        if error is not None:
            raise error_from_status(error)
        return last

    def _stream(self, name: str, options: Options, callback: StatusCallback, **arguments: Any) -> Disposable:
        """Run a command on a delivery thread.

        The callback gets every status in device order, including the
        terminal one, after which it is released exactly once. A callback
        that raises is released and the stream is drained to its end. If the
        connection fails first, the error is stored on the returned token and
        the client is freed.
        """
        command = self._send_command(name, options, **arguments)
        token = registry.register(callback)
        disposable = registry.disposable(token)

        def deliver() -> None:
            try:
                for status in self._statuses(block=True):
                    try:
                        registry.invoke(token, command, status)
                    except Exception:
                        logger.exception("instproxy %s callback failed; dropping its remaining statuses", name)
                        registry.release(token)
            except MobileDeviceException as exc:
                logger.error("instproxy %s stream ended before completion: %s", name, exc)
                disposable.error = exc
            finally:
                registry.release(token)

        threading.Thread(target=deliver, name=f"instproxy-{name}", daemon=True).start()
        return disposable

    def _mutate(self, name: str, options: Options, callback: StatusCallback | None, **arguments: Any) -> Disposable:
        if callback is None:
            self._run(name, options, block=True, **arguments)
            return Disposable()
        return self._stream(name, options, callback, **arguments)

    # ------------------------------------------------------------------
    # Synchronous queries
    # ------------------------------------------------------------------

    def browse(self, options: Options = None) -> Value:
        """Every app record matching ``options``, as an array node."""
        apps = Value.array()
        pages = 0

        def collect(command: Value, status: Value) -> None:
            nonlocal pages
            page = status_get_current_list(status)
            if page is not None:
                pages += 1
                for entry in page.entries:
                    apps.append(entry)

        self._run("Browse", options, collect)
        logger.debug("instproxy browse: %d apps in %d pages", len(apps), pages)
        return apps

    def browse_pages(self, options: Options, callback: StatusCallback) -> Disposable:
        """Paginated browse delivering ``(command, status)`` per page."""
        return self._stream("Browse", options, callback)

    def lookup(self, app_ids: list[str] | None = None, options: Options = None) -> Value:
        """Dictionary of app records keyed by bundle identifier."""
        client_options = InstallOptions.coerce(options)
        if app_ids:
            client_options["BundleIDs"] = list(app_ids)
        status = self._run("Lookup", client_options)
        return status["LookupResult"] or Value.dictionary()

    def lookup_archives(self, options: Options = None) -> Value:
        status = self._run("LookupArchives", options)
        return status["LookupResult"] or Value.dictionary()

    def check_capabilities_match(self, capabilities: list[str], options: Options = None) -> Value:
        status = self._run("CheckCapabilitiesMatch", options, Capabilities=list(capabilities))
        return status["LookupResult"] or Value.none()

    def get_path_for_bundle_id(self, bundle_id: str) -> str:
        """Path of an installed app's executable.

        Raises:
            InstallationProxyError: ``OPERATION_FAILED`` if the app is unknown
        """
        result = self.lookup(
            [bundle_id], {"ReturnAttributes": ["CFBundleIdentifier", "CFBundleExecutable", "Path"]}
        )
        app = InstalledAppInfo.from_value(result[bundle_id])
        if app is None or app.path is None or app.executable is None:
            raise InstallationProxyError(InstallationProxyErrorKind.OPERATION_FAILED, f"{bundle_id} is not installed")
        return f"{app.path}/{app.executable}"

    def get_app_list(self, app_type: ApplicationType = ApplicationType.USER) -> list[InstalledAppInfo]:
        apps = self.browse(InstallOptions(application_type=app_type))
        return [InstalledAppInfo.from_value(app) for _, app in apps.iterate()]

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def install(self, package_path: str, options: Options = None, callback: StatusCallback | None = None) -> Disposable:
        """Install a package uploaded to the device (usually via AFC).

        Without a callback the call blocks until the device reports
        completion. With one, progress is streamed and the returned token
        must be disposed to release the callback.
        """
        return self._mutate("Install", options, callback, PackagePath=package_path)

    def upgrade(self, package_path: str, options: Options = None, callback: StatusCallback | None = None) -> Disposable:
        return self._mutate("Upgrade", options, callback, PackagePath=package_path)

    def uninstall(self, app_id: str, options: Options = None, callback: StatusCallback | None = None) -> Disposable:
        return self._mutate("Uninstall", options, callback, ApplicationIdentifier=app_id)

    # Archive, restore and remove-archive are gone from current device OS
    # releases and fail there with the device's error.

    def archive(self, app_id: str, options: Options = None, callback: StatusCallback | None = None) -> Disposable:
        return self._mutate("Archive", options, callback, ApplicationIdentifier=app_id)

    def restore(self, app_id: str, options: Options = None, callback: StatusCallback | None = None) -> Disposable:
        return self._mutate("Restore", options, callback, ApplicationIdentifier=app_id)

    def remove_archive(
        self, app_id: str, options: Options = None, callback: StatusCallback | None = None
    ) -> Disposable:
        return self._mutate("RemoveArchive", options, callback, ApplicationIdentifier=app_id)
