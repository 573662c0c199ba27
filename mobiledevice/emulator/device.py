"""State of an emulated device."""

import itertools
import secrets
import threading
from typing import Any

from ..constants import LOCKDOWN_SERVICE_TYPE, ConnectionType
from ..models import DeviceInfo
from .filesystem import AfcFileSystem

_device_ids = itertools.count(1)

# Smallest valid PNG (1x1, transparent)
BLANK_PNG = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)

SYSTEM_APPS = {
    "com.apple.Preferences": {
        "CFBundleIdentifier": "com.apple.Preferences",
        "CFBundleDisplayName": "Settings",
        "CFBundleExecutable": "Preferences",
        "CFBundleName": "Preferences",
        "CFBundleVersion": "1",
        "CFBundleShortVersionString": "1.0",
        "ApplicationType": "System",
        "Path": "/Applications/Preferences.app",
    },
    "com.apple.mobilesafari": {
        "CFBundleIdentifier": "com.apple.mobilesafari",
        "CFBundleDisplayName": "Safari",
        "CFBundleExecutable": "MobileSafari",
        "CFBundleName": "Safari",
        "CFBundleVersion": "8620",
        "CFBundleShortVersionString": "18.0",
        "ApplicationType": "System",
        "Path": "/Applications/MobileSafari.app",
    },
}


class EmulatedDevice:
    """Everything the loopback daemons read and mutate.

    Attributes:
        preferences: Lockdown domains; the ``None`` domain holds the
            top-level keys (``DeviceName``, ``ProductVersion``, ...)
        paired_host_ids: Hosts the device trusts
        pairing_error: Error name returned to ``Pair`` instead of pairing
            (``PasswordProtected``, ``UserDeniedPairing``, ...)
        filesystem: Media partition served over AFC
        apps: Installed app records keyed by bundle id
        archives: Archived app records keyed by bundle id
        syslog: Bytes replayed by the syslog relay on every connection
        file_relay_archive: Payload streamed after a file relay request
        file_relay_error: Error name returned to every file relay request
    """

    def __init__(
        self,
        udid: str = "ABC123",
        name: str = "Emulated iPhone",
        product_version: str = "17.5",
        connection_type: ConnectionType = ConnectionType.USBMUXD,
        device_id: int | None = None,
    ):
        self.udid = udid
        self.device_id = device_id if device_id is not None else next(_device_ids)
        self.connection_type = connection_type
        self.preferences: dict[str | None, dict[str, Any]] = {
            None: {
                "DeviceName": name,
                "DeviceClass": "iPhone",
                "ProductType": "iPhone15,2",
                "ProductVersion": product_version,
                "BuildVersion": "21F79",
                "UniqueDeviceID": udid,
                "SerialNumber": udid,
                "WiFiAddress": "a4:c3:f0:00:00:01",
                "DevicePublicKey": secrets.token_bytes(32),
                "ActivationState": "Activated",
            },
            "com.apple.mobile.battery": {"BatteryCurrentCapacity": 87, "BatteryIsCharging": False},
        }
        self.session_type = LOCKDOWN_SERVICE_TYPE
        self.paired_host_ids: set[str] = set()
        self.pairing_error: str | None = None
        self.escrow_bag = secrets.token_bytes(16)
        self.require_escrow_bag: set[str] = set()

        self.filesystem = AfcFileSystem()
        self.containers = AfcFileSystem()
        self.apps: dict[str, dict[str, Any]] = {key: dict(app) for key, app in SYSTEM_APPS.items()}
        self.archives: dict[str, dict[str, Any]] = {}
        self.browse_page_size = 2
        self.install_error: str | None = None

        self.syslog = b""
        self.icons: dict[str, bytes] = {}
        self.wallpaper = BLANK_PNG
        self.screenshot = BLANK_PNG
        self.device_link_version = (300, 0)
        self.file_relay_archive = b""
        self.file_relay_error: str | None = None
        self.lock = threading.RLock()

    @property
    def info(self) -> DeviceInfo:
        return DeviceInfo(
            udid=self.udid,
            connection_type=self.connection_type,
            device_id=self.device_id,
            properties={"SerialNumber": self.udid, "DeviceID": self.device_id},
        )

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def trust(self, host_id: str) -> None:
        with self.lock:
            self.paired_host_ids.add(host_id)

    def add_app(self, bundle_id: str, name: str | None = None, app_type: str = "User", **attributes: Any) -> dict:
        """Register an installed app and create its data container."""
        executable = name or bundle_id.rsplit(".", 1)[-1]
        record = {
            "CFBundleIdentifier": bundle_id,
            "CFBundleDisplayName": name or executable,
            "CFBundleExecutable": executable,
            "CFBundleName": executable,
            "CFBundleVersion": "1",
            "CFBundleShortVersionString": "1.0",
            "ApplicationType": app_type,
            "Path": f"/private/var/containers/Bundle/Application/{bundle_id}/{executable}.app",
            **attributes,
        }
        with self.lock:
            self.apps[bundle_id] = record
            self.containers.mkdir(f"/{bundle_id}/Documents")
            self.containers.mkdir(f"/{bundle_id}/Library")
        return record

    def app_from_package(self, package_path: str) -> dict:
        """App installed from a package uploaded over AFC."""
        data = self.filesystem.get_file(package_path)
        stem = package_path.rsplit("/", 1)[-1].rsplit(".", 1)[0]
        bundle_id = data.decode("utf-8", errors="ignore").strip() if data.startswith(b"com.") else f"com.example.{stem}"
        return self.add_app(bundle_id, stem)
