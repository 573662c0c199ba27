# Copyright 2025 Maida.AI
# SPDX-License-Identifier: Apache-2.0

"""Loopback device emulator used by the test-suite and for offline development."""

from .device import BLANK_PNG, EmulatedDevice
from .filesystem import AfcFileSystem
from .handlers import SERVICE_HANDLERS, ServiceHandler
from .transport import LoopbackTransport, run_emulated_device

__all__ = [
    "BLANK_PNG",
    "AfcFileSystem",
    "EmulatedDevice",
    "LoopbackTransport",
    "SERVICE_HANDLERS",
    "ServiceHandler",
    "run_emulated_device",
]
