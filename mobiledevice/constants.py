"""Protocol constants and enums for the device services layer."""

from enum import Enum, IntEnum, IntFlag

# ----------------------------------------------------------------------------
# Transport and session constants
# ----------------------------------------------------------------------------

LOCKDOWN_PORT = 62078
LOCKDOWN_SERVICE_TYPE = "com.apple.mobile.lockdown"
LOCKDOWN_PROTOCOL_VERSION = "2"
DEFAULT_LABEL = "mobiledevice"

USBMUXD_SOCKET_PATH = "/var/run/usbmuxd"
USBMUXD_TCP_ADDRESS = ("127.0.0.1", 27015)
USBMUXD_ENV_VAR = "USBMUXD_SOCKET_ADDRESS"
USBMUX_PROTOCOL_VERSION = 1
USBMUX_MESSAGE_PLIST = 8

DEFAULT_RECEIVE_TIMEOUT = 10.0  # seconds
DEFAULT_POLL_INTERVAL = 0.25  # seconds, delivery threads

# Length prefix of every plist message on lockdown and plist-based services
PLIST_LENGTH_PREFIX = 4
MAX_PLIST_MESSAGE_BYTES = 16 << 20  # 16 MiB

# ----------------------------------------------------------------------------
# AFC framing
# ----------------------------------------------------------------------------

AFC_MAGIC = b"CFA6LPAA"
AFC_HEADER_SIZE = 40
AFC_WRITE_CHUNK_SIZE = 100 << 10  # 100 KiB
AFC_READ_CHUNK_SIZE = 64 << 10  # 64 KiB
AFC_MAX_READ_SIZE = 4 << 20  # 4 MiB


class AfcOpcode(IntEnum):
    """AFC packet operations."""

    STATUS = 0x01
    DATA = 0x02
    READ_DIR = 0x03
    READ_FILE = 0x04
    WRITE_FILE = 0x05
    WRITE_PART = 0x06
    TRUNCATE = 0x07
    REMOVE_PATH = 0x08
    MAKE_DIR = 0x09
    GET_FILE_INFO = 0x0A
    GET_DEVINFO = 0x0B
    WRITE_FILE_ATOM = 0x0C
    FILE_OPEN = 0x0D
    FILE_OPEN_RES = 0x0E
    FILE_READ = 0x0F
    FILE_WRITE = 0x10
    FILE_SEEK = 0x11
    FILE_TELL = 0x12
    FILE_TELL_RES = 0x13
    FILE_CLOSE = 0x14
    FILE_SET_SIZE = 0x15
    GET_CON_INFO = 0x16
    SET_CON_OPTIONS = 0x17
    RENAME_PATH = 0x18
    SET_FS_BS = 0x19
    SET_SOCKET_BS = 0x1A
    FILE_LOCK = 0x1B
    MAKE_LINK = 0x1C
    SET_FILE_TIME = 0x1E
    REMOVE_PATH_AND_CONTENTS = 0x22


class AfcFileMode(IntEnum):
    """Open modes, named after their fopen() equivalents."""

    RDONLY = 0x01  # r
    RW = 0x02  # r+
    WRONLY = 0x03  # w
    WR = 0x04  # w+
    APPEND = 0x05  # a
    RDAPPEND = 0x06  # a+


AFC_TEXTUAL_MODES = {
    "r": AfcFileMode.RDONLY,
    "r+": AfcFileMode.RW,
    "w": AfcFileMode.WRONLY,
    "w+": AfcFileMode.WR,
    "a": AfcFileMode.APPEND,
    "a+": AfcFileMode.RDAPPEND,
}


class AfcLinkType(IntEnum):
    HARDLINK = 1
    SYMLINK = 2


class AfcLockOp(IntEnum):
    SHARED = 1 | 4
    EXCLUSIVE = 2 | 4
    UNLOCK = 8 | 4


# ----------------------------------------------------------------------------
# Devices
# ----------------------------------------------------------------------------


class ConnectionType(IntEnum):
    """How a device is reachable."""

    USBMUXD = 1
    NETWORK = 2


class LookupOptions(IntFlag):
    """Scope used when resolving a udid to a reachable device."""

    USBMUX = 1 << 1
    NETWORK = 1 << 2
    PREFER_NETWORK = 1 << 3


class EventType(IntEnum):
    ADD = 1
    REMOVE = 2
    PAIRED = 3


# ----------------------------------------------------------------------------
# Services
# ----------------------------------------------------------------------------


class ServiceIdentifier(str, Enum):
    """Named on-device daemons reachable through lockdown."""

    AFC = "com.apple.afc"
    DEBUGSERVER = "com.apple.debugserver"
    DIAGNOSTICS_RELAY = "com.apple.diagnostics_relay"
    FILE_RELAY = "com.apple.mobile.file_relay"
    SYSLOG_RELAY = "com.apple.syslog_relay"
    HEARTBEAT = "com.apple.mobile.heartbeat"
    HOUSE_ARREST = "com.apple.mobile.house_arrest"
    INSTALLATION_PROXY = "com.apple.mobile.installation_proxy"
    MISAGENT = "com.apple.misagent"
    MOBILE_IMAGE_MOUNTER = "com.apple.mobile.mobile_image_mounter"
    MOBILE_ACTIVATIOND = "com.apple.mobileactivationd"
    MOBILE_BACKUP = "com.apple.mobilebackup"
    MOBILE_BACKUP2 = "com.apple.mobilebackup2"
    MOBILE_SYNC = "com.apple.mobileSync"
    NOTIFICATION_PROXY = "com.apple.mobile.notification_proxy"
    PREBOARD = "com.apple.preboard_service_v2"
    SPRINGBOARD = "com.apple.springboardservices"
    SCREENSHOT = "com.apple.screenshotr"
    WEB_INSPECTOR = "com.apple.webinspector"


class ApplicationType(str, Enum):
    SYSTEM = "System"
    USER = "User"
    ANY = "Any"
    INTERNAL = "Internal"


class FileRelaySource(str, Enum):
    APPLE_SUPPORT = "AppleSupport"
    NETWORK = "Network"
    VPN = "VPN"
    WIFI = "Wifi"
    USER_DATABASES = "UserDatabases"
    CRASH_REPORTER = "CrashReporter"
    TMP = "tmp"
    SYSTEM_CONFIGURATION = "SystemConfiguration"


# Device-link (screenshotr) protocol version
DEVICE_LINK_VERSION_MAJOR = 300
DEVICE_LINK_VERSION_MINOR = 0

# debugserver receive buffer
DEBUGSERVER_RECEIVE_SIZE = 131072

# ----------------------------------------------------------------------------
# Value tree formats
# ----------------------------------------------------------------------------


class PlistFormat(IntEnum):
    """Wire forms of a value tree."""

    BINARY = 1
    XML = 2
    JSON = 3


BINARY_PLIST_MAGIC = b"bplist00"
PLIST_EPOCH_YEAR = 2001  # dates count from 2001-01-01 00:00:00 UTC
