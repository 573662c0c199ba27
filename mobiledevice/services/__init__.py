# Copyright 2025 Maida.AI
# SPDX-License-Identifier: Apache-2.0

"""Clients for the services started through lockdown."""

from .afc import AfcClient
from .base import ServiceClient
from .debug_server import DebugServerClient, DebugServerCommand
from .file_relay import FileRelayClient
from .house_arrest import HouseArrestClient
from .installation_proxy import InstallationProxyClient
from .screenshot import ScreenshotClient
from .springboard import SpringboardClient
from .syslog_relay import SyslogMessageAssembler, SyslogRelayClient

__all__ = [
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
]
