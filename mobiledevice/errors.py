"""Error taxonomies for the device services layer.

Every component owns a closed, numerically-coded set of error kinds that
mirrors the status codes reported by the device. Two synthetic kinds appear
across the taxonomies: a ``DEALLOCATED_*`` kind raised by local liveness
guards before any round-trip, and ``UNKNOWN`` for unrecognized device codes
(the original code is kept on the exception).
"""

from enum import IntEnum
from typing import Any, ClassVar

# ----------------------------------------------------------------------------
# Error kinds
# ----------------------------------------------------------------------------


class MobileDeviceErrorKind(IntEnum):
    """Transport and connection failures."""

    INVALID_ARGUMENT = -1
    UNKNOWN = -2
    NO_DEVICE = -3
    NOT_ENOUGH_DATA = -4
    SSL_ERROR = -5
    TIMEOUT = -6

    DEALLOCATED_DEVICE = 100
    DISCONNECTED = 101


class LockdownErrorKind(IntEnum):
    INVALID_ARGUMENT = -1
    INVALID_CONFIGURATION = -2
    PLIST_ERROR = -3
    PAIRING_FAILED = -4
    SSL_ERROR = -5
    DICT_ERROR = -6
    RECEIVE_TIMEOUT = -7
    MUX_ERROR = -8
    NO_RUNNING_SESSION = -9
    INVALID_RESPONSE = -10
    MISSING_KEY = -11
    MISSING_VALUE = -12
    GET_PROHIBITED = -13
    SET_PROHIBITED = -14
    REMOVE_PROHIBITED = -15
    IMMUTABLE_VALUE = -16
    PASSWORD_PROTECTED = -17
    USER_DENIED_PAIRING = -18
    PAIRING_DIALOG_RESPONSE_PENDING = -19
    MISSING_HOST_ID = -20
    INVALID_HOST_ID = -21
    SESSION_ACTIVE = -22
    SESSION_INACTIVE = -23
    MISSING_SESSION_ID = -24
    INVALID_SESSION_ID = -25
    MISSING_SERVICE = -26
    INVALID_SERVICE = -27
    SERVICE_LIMIT = -28
    MISSING_PAIR_RECORD = -29
    SAVE_PAIR_RECORD_FAILED = -30
    INVALID_PAIR_RECORD = -31
    INVALID_ACTIVATION_RECORD = -32
    MISSING_ACTIVATION_RECORD = -33
    SERVICE_PROHIBITED = -34
    ESCROW_LOCKED = -35
    PAIRING_PROHIBITED_OVER_THIS_CONNECTION = -36
    FMIP_PROTECTED = -37
    MC_PROTECTED = -38
    MC_CHALLENGE_REQUIRED = -39
    UNKNOWN = -256

    DEALLOCATED = 100
    NOT_START_SERVICE = 101


class AfcErrorKind(IntEnum):
    """Status codes reported in AFC STATUS packets."""

    UNKNOWN_ERROR = 1
    OP_HEADER_INVALID = 2
    NO_RESOURCES = 3
    READ_ERROR = 4
    WRITE_ERROR = 5
    UNKNOWN_PACKET_TYPE = 6
    INVALID_ARG = 7
    OBJECT_NOT_FOUND = 8
    OBJECT_IS_DIR = 9
    PERM_DENIED = 10
    SERVICE_NOT_CONNECTED = 11
    OP_TIMEOUT = 12
    TOO_MUCH_DATA = 13
    END_OF_DATA = 14
    OP_NOT_SUPPORTED = 15
    OBJECT_EXISTS = 16
    OBJECT_BUSY = 17
    NO_SPACE_LEFT = 18
    OP_WOULD_BLOCK = 19
    IO_ERROR = 20
    OP_INTERRUPTED = 21
    OP_IN_PROGRESS = 22
    INTERNAL_ERROR = 23
    MUX_ERROR = 30
    NO_MEM = 31
    NOT_ENOUGH_DATA = 32
    DIR_NOT_EMPTY = 33
    UNKNOWN = -256

    DEALLOCATED_CLIENT = 100


class InstallationProxyErrorKind(IntEnum):
    INVALID_ARGUMENT = -1
    PLIST_ERROR = -2
    CONNECTION_FAILED = -3
    OPERATION_IN_PROGRESS = -4
    OPERATION_FAILED = -5
    RECEIVE_TIMEOUT = -6
    ALREADY_ARCHIVED = -7
    API_INTERNAL_ERROR = -8
    APPLICATION_ALREADY_INSTALLED = -9
    APPLICATION_MOVE_FAILED = -10
    APPLICATION_SINF_CAPTURE_FAILED = -11
    APPLICATION_SANDBOX_FAILED = -12
    APPLICATION_VERIFICATION_FAILED = -13
    ARCHIVE_DESTRUCTION_FAILED = -14
    BUNDLE_VERIFICATION_FAILED = -15
    CARRIER_BUNDLE_COPY_FAILED = -16
    CARRIER_BUNDLE_DIRECTORY_CREATION_FAILED = -17
    CARRIER_BUNDLE_MISSING_SUPPORTED_SIMS = -18
    COMM_CENTER_NOTIFICATION_FAILED = -19
    CONTAINER_CREATION_FAILED = -20
    CONTAINER_P0WN_FAILED = -21
    CONTAINER_REMOVAL_FAILED = -22
    EMBEDDED_PROFILE_INSTALL_FAILED = -23
    EXECUTABLE_TWIDDLE_FAILED = -24
    EXISTENCE_CHECK_FAILED = -25
    INSTALL_MAP_UPDATE_FAILED = -26
    MANIFEST_CAPTURE_FAILED = -27
    MAP_GENERATION_FAILED = -28
    MISSING_BUNDLE_EXECUTABLE = -29
    MISSING_BUNDLE_IDENTIFIER = -30
    MISSING_BUNDLE_PATH = -31
    MISSING_CONTAINER = -32
    NOTIFICATION_FAILED = -33
    PACKAGE_EXTRACTION_FAILED = -34
    PACKAGE_INSPECTION_FAILED = -35
    PACKAGE_MOVE_FAILED = -36
    PATH_CONVERSION_FAILED = -37
    RESTORE_CONTAINER_FAILED = -38
    SEATBELT_PROFILE_REMOVAL_FAILED = -39
    STAGE_CREATION_FAILED = -40
    SYMLINK_FAILED = -41
    UNKNOWN_COMMAND = -42
    ITUNES_ARTWORK_CAPTURE_FAILED = -43
    ITUNES_METADATA_CAPTURE_FAILED = -44
    DEVICE_OS_VERSION_TOO_LOW = -45
    DEVICE_FAMILY_NOT_SUPPORTED = -46
    PACKAGE_PATCH_FAILED = -47
    INCORRECT_ARCHITECTURE = -48
    PLUGIN_COPY_FAILED = -49
    BREADCRUMB_FAILED = -50
    BREADCRUMB_UNLOCK_FAILED = -51
    GEOJSON_CAPTURE_FAILED = -52
    NEWSSTAND_ARTWORK_CAPTURE_FAILED = -53
    MISSING_COMMAND = -54
    NOT_ENTITLED = -55
    MISSING_PACKAGE_PATH = -56
    MISSING_CONTAINER_PATH = -57
    MISSING_APPLICATION_IDENTIFIER = -58
    MISSING_ATTRIBUTE_VALUE = -59
    LOOKUP_FAILED = -60
    DICT_CREATION_FAILED = -61
    INSTALL_PROHIBITED = -62
    UNINSTALL_PROHIBITED = -63
    MISSING_BUNDLE_VERSION = -64
    UNKNOWN = -256

    DEALLOCATED_CLIENT = 100


class FileRelayErrorKind(IntEnum):
    INVALID_ARGUMENT = -1
    PLIST_ERROR = -2
    MUX_ERROR = -3
    INVALID_SOURCE = -4
    STAGING_EMPTY = -5
    PERMISSION_DENIED = -6
    UNKNOWN = -256

    DEALLOCATED_CLIENT = 100


class SyslogRelayErrorKind(IntEnum):
    INVALID_ARGUMENT = -1
    MUX_ERROR = -2
    SSL_ERROR = -3
    NOT_ENOUGH_DATA = -4
    TIMEOUT = -5
    UNKNOWN = -256

    DEALLOCATED_CLIENT = 100


class ScreenshotErrorKind(IntEnum):
    INVALID_ARGUMENT = -1
    PLIST_ERROR = -2
    MUX_ERROR = -3
    SSL_ERROR = -4
    RECEIVE_TIMEOUT = -5
    BAD_VERSION = -6
    UNKNOWN = -256

    DEALLOCATED_SERVICE = 100


class SpringboardErrorKind(IntEnum):
    INVALID_ARGUMENT = -1
    PLIST_ERROR = -2
    CONNECTION_FAILED = -3
    UNKNOWN = -256

    DEALLOCATED_SERVICE = 100


class HouseArrestErrorKind(IntEnum):
    INVALID_ARG = -1
    PLIST_ERROR = -2
    CONN_FAILED = -3
    INVALID_MODE = -4
    UNKNOWN = -256

    DEALLOCATED_CLIENT = 100


class DebugServerErrorKind(IntEnum):
    INVALID_ARGUMENT = -1
    MUX_ERROR = -2
    SSL_ERROR = -3
    RESPONSE_ERROR = -4
    UNKNOWN = -256

    DEALLOCATED_CLIENT = 100
    DEALLOCATED_COMMAND = 101


# ----------------------------------------------------------------------------
# Device-reported error names
# ----------------------------------------------------------------------------

_LOCKDOWN_ERROR_NAMES = {
    "InvalidResponse": LockdownErrorKind.INVALID_RESPONSE,
    "MissingKey": LockdownErrorKind.MISSING_KEY,
    "MissingValue": LockdownErrorKind.MISSING_VALUE,
    "GetProhibited": LockdownErrorKind.GET_PROHIBITED,
    "SetProhibited": LockdownErrorKind.SET_PROHIBITED,
    "RemoveProhibited": LockdownErrorKind.REMOVE_PROHIBITED,
    "ImmutableValue": LockdownErrorKind.IMMUTABLE_VALUE,
    "PasswordProtected": LockdownErrorKind.PASSWORD_PROTECTED,
    "UserDeniedPairing": LockdownErrorKind.USER_DENIED_PAIRING,
    "PairingDialogResponsePending": LockdownErrorKind.PAIRING_DIALOG_RESPONSE_PENDING,
    "MissingHostID": LockdownErrorKind.MISSING_HOST_ID,
    "InvalidHostID": LockdownErrorKind.INVALID_HOST_ID,
    "SessionActive": LockdownErrorKind.SESSION_ACTIVE,
    "SessionInactive": LockdownErrorKind.SESSION_INACTIVE,
    "MissingSessionID": LockdownErrorKind.MISSING_SESSION_ID,
    "InvalidSessionID": LockdownErrorKind.INVALID_SESSION_ID,
    "MissingService": LockdownErrorKind.MISSING_SERVICE,
    "InvalidService": LockdownErrorKind.INVALID_SERVICE,
    "ServiceLimit": LockdownErrorKind.SERVICE_LIMIT,
    "MissingPairRecord": LockdownErrorKind.MISSING_PAIR_RECORD,
    "SavePairRecordFailed": LockdownErrorKind.SAVE_PAIR_RECORD_FAILED,
    "InvalidPairRecord": LockdownErrorKind.INVALID_PAIR_RECORD,
    "InvalidActivationRecord": LockdownErrorKind.INVALID_ACTIVATION_RECORD,
    "MissingActivationRecord": LockdownErrorKind.MISSING_ACTIVATION_RECORD,
    "ServiceProhibited": LockdownErrorKind.SERVICE_PROHIBITED,
    "EscrowLocked": LockdownErrorKind.ESCROW_LOCKED,
    "PairingProhibitedOverThisConnection": LockdownErrorKind.PAIRING_PROHIBITED_OVER_THIS_CONNECTION,
    "FMiPProtected": LockdownErrorKind.FMIP_PROTECTED,
    "MCProtected": LockdownErrorKind.MC_PROTECTED,
    "MCChallengeRequired": LockdownErrorKind.MC_CHALLENGE_REQUIRED,
}

# Names as sent in installation_proxy status dictionaries, in code order from -7
_INSTPROXY_ERROR_NAMES = [
    "AlreadyArchived",
    "APIInternalError",
    "ApplicationAlreadyInstalled",
    "ApplicationMoveFailed",
    "ApplicationSINFCaptureFailed",
    "ApplicationSandboxFailed",
    "ApplicationVerificationFailed",
    "ArchiveDestructionFailed",
    "BundleVerificationFailed",
    "CarrierBundleCopyFailed",
    "CarrierBundleDirectoryCreationFailed",
    "CarrierBundleMissingSupportedSIMs",
    "CommCenterNotificationFailed",
    "ContainerCreationFailed",
    "ContainerP0wnFailed",
    "ContainerRemovalFailed",
    "EmbeddedProfileInstallFailed",
    "ExecutableTwiddleFailed",
    "ExistenceCheckFailed",
    "InstallMapUpdateFailed",
    "ManifestCaptureFailed",
    "MapGenerationFailed",
    "MissingBundleExecutable",
    "MissingBundleIdentifier",
    "MissingBundlePath",
    "MissingContainer",
    "NotificationFailed",
    "PackageExtractionFailed",
    "PackageInspectionFailed",
    "PackageMoveFailed",
    "PathConversionFailed",
    "RestoreContainerFailed",
    "SeatbeltProfileRemovalFailed",
    "StageCreationFailed",
    "SymlinkFailed",
    "UnknownCommand",
    "iTunesArtworkCaptureFailed",
    "iTunesMetadataCaptureFailed",
    "DeviceOSVersionTooLow",
    "DeviceFamilyNotSupported",
    "PackagePatchFailed",
    "IncorrectArchitecture",
    "PluginCopyFailed",
    "BreadcrumbFailed",
    "BreadcrumbUnlockFailed",
    "GeoJSONCaptureFailed",
    "NewsstandArtworkCaptureFailed",
    "MissingCommand",
    "NotEntitled",
    "MissingPackagePath",
    "MissingContainerPath",
    "MissingApplicationIdentifier",
    "MissingAttributeValue",
    "LookupFailed",
    "DictCreationFailed",
    "InstallProhibited",
    "UninstallProhibited",
    "MissingBundleVersion",
]

_FILE_RELAY_ERROR_NAMES = {
    "InvalidSource": FileRelayErrorKind.INVALID_SOURCE,
    "StagingEmpty": FileRelayErrorKind.STAGING_EMPTY,
    "PermissionDenied": FileRelayErrorKind.PERMISSION_DENIED,
}


# ----------------------------------------------------------------------------
# Exceptions
# ----------------------------------------------------------------------------


class MobileDeviceException(Exception):
    """Base class of every error raised by this package.

    Subclasses bind ``kinds`` to their taxonomy enum. ``kind`` is always a
    member of that enum; ``code`` is the raw numeric status, which differs
    from ``kind.value`` only for unrecognized codes.
    """

    kinds: ClassVar[type[IntEnum]]
    # kind raised when the transport under a service breaks mid-operation
    transport_kind: ClassVar[str] = "UNKNOWN"
    names: ClassVar[dict[str, Any]] = {}

    def __init__(self, kind: IntEnum, detail: str | None = None, code: int | None = None):
        self.kind = kind
        self.code = int(kind) if code is None else code
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        text = self.kind.name
        if self.kind.name == "UNKNOWN" and self.code != int(self.kind):
            text = f"{text} ({self.code})"
        return f"{text}: {self.detail}" if self.detail else text

    def __reduce__(self):
        return (self.__class__, (self.kind, self.detail, self.code))

    @classmethod
    def from_code(cls, code: int, detail: str | None = None) -> "MobileDeviceException":
        """Build an error from a numeric status, keeping unknown codes.

        Args:
            code: Status code reported by the device or a collaborator
            detail: Optional human readable context

        Returns:
            Exception of this class
        """
        try:
            kind = cls.kinds(code)
        except ValueError:
            kind = cls.kinds["UNKNOWN"]
        return cls(kind, detail, code)

    @classmethod
    def from_name(cls, name: str, detail: str | None = None) -> "MobileDeviceException":
        """Build an error from a device-reported error string.

        Unknown names map to ``UNKNOWN`` and are kept as the detail.
        """
        kind = cls.names.get(name)
        if kind is None:
            return cls(cls.kinds["UNKNOWN"], detail or name)
        return cls(kind, detail)

    @classmethod
    def from_transport(cls, exc: BaseException) -> "MobileDeviceException":
        """Translate a broken-channel failure into this taxonomy."""
        if isinstance(exc, cls):
            return exc
        return cls(cls.kinds[cls.transport_kind], str(exc) or exc.__class__.__name__)


class FormatError(MobileDeviceException, ValueError):
    """Raised when a value tree cannot be decoded from its wire form."""

    def __init__(self, detail: str | None = None, *args: Any):
        self.kind = None
        self.code = -1
        self.detail = detail
        Exception.__init__(self, detail)

    def __str__(self) -> str:
        return self.detail or "malformed property list"

    def __reduce__(self):
        return (self.__class__, (self.detail,))


class MobileDeviceError(MobileDeviceException):
    kinds = MobileDeviceErrorKind
    transport_kind = "DISCONNECTED"


class LockdownError(MobileDeviceException):
    kinds = LockdownErrorKind
    transport_kind = "MUX_ERROR"
    names = _LOCKDOWN_ERROR_NAMES


class AfcError(MobileDeviceException):
    kinds = AfcErrorKind
    transport_kind = "MUX_ERROR"


class InstallationProxyError(MobileDeviceException):
    kinds = InstallationProxyErrorKind
    transport_kind = "CONNECTION_FAILED"
    names = {name: InstallationProxyErrorKind(-7 - i) for i, name in enumerate(_INSTPROXY_ERROR_NAMES)}

    def __init__(
        self,
        kind: IntEnum,
        detail: str | None = None,
        code: int | None = None,
        name: str | None = None,
        description: str | None = None,
    ):
        self.name = name
        self.description = description
        super().__init__(kind, detail, code)


class FileRelayError(MobileDeviceException):
    kinds = FileRelayErrorKind
    transport_kind = "MUX_ERROR"
    names = _FILE_RELAY_ERROR_NAMES


class SyslogRelayError(MobileDeviceException):
    kinds = SyslogRelayErrorKind
    transport_kind = "MUX_ERROR"


class ScreenshotError(MobileDeviceException):
    kinds = ScreenshotErrorKind
    transport_kind = "MUX_ERROR"


class SpringboardError(MobileDeviceException):
    kinds = SpringboardErrorKind
    transport_kind = "CONNECTION_FAILED"


class HouseArrestError(MobileDeviceException):
    kinds = HouseArrestErrorKind
    transport_kind = "CONN_FAILED"


class DebugServerError(MobileDeviceException):
    kinds = DebugServerErrorKind
    transport_kind = "MUX_ERROR"


def instproxy_error_name(kind: InstallationProxyErrorKind) -> str | None:
    """Device-side name of an installation_proxy error kind, if it has one."""
    index = -7 - int(kind)
    if 0 <= index < len(_INSTPROXY_ERROR_NAMES):
        return _INSTPROXY_ERROR_NAMES[index]
    return None
