# Copyright 2025 Maida.AI
# SPDX-License-Identifier: Apache-2.0
r"""mobiledevice - Device services protocol stack for iOS devices.

This package talks to iOS devices through usbmuxd (or any other transport)
and provides:
- Value trees with binary, XML and JSON property list codecs
- Lockdown session handshake, pairing and preference access
- AFC file access with handle tracking and chunked transfers
- Installation proxy browse, lookup and streamed install/uninstall
- Syslog relay, screenshot, springboard, house arrest, file relay and
  debugserver clients
- A loopback emulator for offline development and tests
"""

# Import public API from modules
from .callbacks import CallbackRegistry, Disposable, registry
from .connection import Connection
from .constants import (
    AFC_READ_CHUNK_SIZE,
    AFC_WRITE_CHUNK_SIZE,
    DEFAULT_LABEL,
    LOCKDOWN_PORT,
    AfcFileMode,
    AfcLinkType,
    AfcLockOp,
    ApplicationType,
    ConnectionType,
    EventType,
    FileRelaySource,
    LookupOptions,
    PlistFormat,
    ServiceIdentifier,
)
from .device import Device
from .errors import (
    AfcError,
    AfcErrorKind,
    DebugServerError,
    DebugServerErrorKind,
    FileRelayError,
    FileRelayErrorKind,
    FormatError,
    HouseArrestError,
    HouseArrestErrorKind,
    InstallationProxyError,
    InstallationProxyErrorKind,
    LockdownError,
    LockdownErrorKind,
    MobileDeviceError,
    MobileDeviceErrorKind,
    MobileDeviceException,
    ScreenshotError,
    ScreenshotErrorKind,
    SpringboardError,
    SpringboardErrorKind,
    SyslogRelayError,
    SyslogRelayErrorKind,
)
from .lockdown import LockdownClient, LockdownState, ServiceDescriptor
from .models import (
    CurrentList,
    DeviceEvent,
    DeviceInfo,
    InstalledAppInfo,
    InstallOptions,
    StatusError,
    SyslogMessage,
)
from .plist import PlistType, Value, decode, decode_auto, encode, get_codec, is_binary, list_codecs, register_codec
from .security import PlainSessionSecurity, SessionSecurity, TLSSessionSecurity
from .services import (
    AfcClient,
    DebugServerClient,
    DebugServerCommand,
    FileRelayClient,
    HouseArrestClient,
    InstallationProxyClient,
    ScreenshotClient,
    ServiceClient,
    SpringboardClient,
    SyslogMessageAssembler,
    SyslogRelayClient,
)
from .transport import DeviceManager, Transport, UsbmuxTransport, get_default_transport, set_default_transport

__version__ = "0.1.0"

# Public API exports
__all__ = [
    # Devices and transport
    "Device",
    "DeviceManager",
    "Transport",
    "UsbmuxTransport",
    "get_default_transport",
    "set_default_transport",
    "Connection",
    "SessionSecurity",
    "TLSSessionSecurity",
    "PlainSessionSecurity",
    # Lockdown
    "LockdownClient",
    "LockdownState",
    "ServiceDescriptor",
    # Services
    "ServiceClient",
    "AfcClient",
    "InstallationProxyClient",
    "SyslogRelayClient",
    "SyslogMessageAssembler",
    "ScreenshotClient",
    "SpringboardClient",
    "HouseArrestClient",
    "FileRelayClient",
    "DebugServerClient",
    "DebugServerCommand",
    # Value trees
    "Value",
    "PlistType",
    "PlistFormat",
    "encode",
    "decode",
    "decode_auto",
    "is_binary",
    "get_codec",
    "list_codecs",
    "register_codec",
    # Records
    "DeviceInfo",
    "DeviceEvent",
    "StatusError",
    "SyslogMessage",
    "CurrentList",
    "InstalledAppInfo",
    "InstallOptions",
    # Callbacks
    "CallbackRegistry",
    "Disposable",
    "registry",
    # Constants and enums
    "LOCKDOWN_PORT",
    "DEFAULT_LABEL",
    "AFC_READ_CHUNK_SIZE",
    "AFC_WRITE_CHUNK_SIZE",
    "AfcFileMode",
    "AfcLinkType",
    "AfcLockOp",
    "ApplicationType",
    "ConnectionType",
    "EventType",
    "FileRelaySource",
    "LookupOptions",
    "ServiceIdentifier",
    # Errors
    "MobileDeviceException",
    "FormatError",
    "MobileDeviceError",
    "MobileDeviceErrorKind",
    "LockdownError",
    "LockdownErrorKind",
    "AfcError",
    "AfcErrorKind",
    "InstallationProxyError",
    "InstallationProxyErrorKind",
    "FileRelayError",
    "FileRelayErrorKind",
    "SyslogRelayError",
    "SyslogRelayErrorKind",
    "ScreenshotError",
    "ScreenshotErrorKind",
    "SpringboardError",
    "SpringboardErrorKind",
    "HouseArrestError",
    "HouseArrestErrorKind",
    "DebugServerError",
    "DebugServerErrorKind",
]
