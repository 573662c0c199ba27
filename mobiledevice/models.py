"""Records exchanged with callers."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .constants import ApplicationType, ConnectionType, EventType
from .errors import InstallationProxyError, InstallationProxyErrorKind
from .plist import PlistType, Value

# ----------------------------------------------------------------------------
# Plain records
# ----------------------------------------------------------------------------


@dataclass
class DeviceInfo:
    """A device as reported by the transport."""

    udid: str
    connection_type: ConnectionType = ConnectionType.USBMUXD
    device_id: int = 0
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeviceEvent:
    """Add, remove or paired notification from the transport."""

    event_type: EventType
    udid: str
    connection_type: ConnectionType = ConnectionType.USBMUXD
    device_id: int = 0


@dataclass
class StatusError:
    """Error fields carried by an installation_proxy status."""

    name: str
    description: str | None = None
    code: int | None = None


@dataclass
class SyslogMessage:
    """One syslog line split into its fields.

    Lines that do not follow the ``<date> <device> <process>: <message>``
    layout keep their full text in ``message`` and leave the rest empty.
    """

    message: str
    date: datetime | None = None
    name: str | None = None
    process_info: str | None = None


@dataclass
class CurrentList:
    """One page of a paginated browse."""

    amount: int
    total: int
    index: int
    entries: list[Value]


# ----------------------------------------------------------------------------
# Validated payloads
# ----------------------------------------------------------------------------


class InstalledAppInfo(BaseModel):
    """Projection of an installation_proxy app record."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    bundle_identifier: str | None = Field(None, alias="CFBundleIdentifier")
    development_region: str | None = Field(None, alias="CFBundleDevelopmentRegion")
    display_name: str | None = Field(None, alias="CFBundleDisplayName")
    executable: str | None = Field(None, alias="CFBundleExecutable")
    name: str | None = Field(None, alias="CFBundleName")
    application_type: str | None = Field(None, alias="ApplicationType")
    short_version: str | None = Field(None, alias="CFBundleShortVersionString")
    version: str | None = Field(None, alias="CFBundleVersion")
    path: str | None = Field(None, alias="Path")
    signer_identity: str | None = Field(None, alias="SignerIdentity")
    is_demoted_app: bool | None = Field(None, alias="IsDemotedApp")
    is_host_backup_eligible: bool | None = Field(None, alias="IsHostBackupEligible")
    is_upgradeable: bool | None = Field(None, alias="IsUpgradeable")
    is_app_clip: bool | None = Field(None, alias="IsAppClip")

    @classmethod
    def from_value(cls, value: Value | None) -> "InstalledAppInfo | None":
        """Project a dictionary node; anything else yields None.

        Fields whose device value has an unexpected type are left unset.
        """
        if value is None or value.type != PlistType.DICT:
            return None
        record = value.to_python()
        try:
            return cls.model_validate(record)
        except ValidationError as exc:
            mismatched = {error["loc"][0] for error in exc.errors() if error["loc"]}
        return cls.model_validate({key: item for key, item in record.items() if key not in mismatched})


class InstallOptions(BaseModel):
    """``ClientOptions`` dictionary of installation_proxy commands."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    package_type: str | None = Field(None, alias="PackageType", description="Developer, Customer or CarrierBundle")
    skip_uninstall: bool | None = Field(None, alias="SkipUninstall")
    application_sinf: bytes | None = Field(None, alias="ApplicationSINF")
    itunes_metadata: bytes | None = Field(None, alias="iTunesMetadata")
    return_attributes: list[str] | None = Field(None, alias="ReturnAttributes")
    # the device owns this vocabulary; unlisted names pass through
    application_type: ApplicationType | str | None = Field(None, alias="ApplicationType")
    bundle_ids: list[str] | None = Field(None, alias="BundleIDs")

    def to_value(self) -> Value:
        """Dictionary node with only the fields that were set."""
        return Value.dictionary(self.model_dump(by_alias=True, exclude_none=True))

    @classmethod
    def coerce(cls, options: "InstallOptions | Value | dict[str, Any] | None") -> Value:
        """Normalize any accepted options form to a dictionary node.

        Raises:
            InstallationProxyError: ``INVALID_ARGUMENT`` for options of the wrong type
        """
        if options is None:
            return Value.dictionary()
        if isinstance(options, Value):
            return options.copy()
        if isinstance(options, InstallOptions):
            return options.to_value()
        try:
            return cls.model_validate(options).to_value()
        except ValidationError as exc:
            raise InstallationProxyError(InstallationProxyErrorKind.INVALID_ARGUMENT, str(exc)) from exc
