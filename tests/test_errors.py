"""Tests for error taxonomies."""

import pickle

import pytest

from mobiledevice import (
    AfcError,
    AfcErrorKind,
    FileRelayError,
    FileRelayErrorKind,
    InstallationProxyError,
    InstallationProxyErrorKind,
    LockdownError,
    LockdownErrorKind,
    MobileDeviceError,
    MobileDeviceErrorKind,
    MobileDeviceException,
)
from mobiledevice.errors import instproxy_error_name


def test_from_code() -> None:
    """Known codes map to their kind; unknown codes are kept."""
    print("Testing from_code...")

    error = AfcError.from_code(8, "stat /missing")
    assert error.kind == AfcErrorKind.OBJECT_NOT_FOUND
    assert error.code == 8
    assert str(error) == "OBJECT_NOT_FOUND: stat /missing"

    unknown = AfcError.from_code(999)
    assert unknown.kind == AfcErrorKind.UNKNOWN
    assert unknown.code == 999
    assert str(unknown) == "UNKNOWN (999)"
    print("✓ Codes preserved")


def test_from_name() -> None:
    """Device error strings map onto the taxonomy."""
    print("Testing from_name...")

    assert LockdownError.from_name("PasswordProtected").kind == LockdownErrorKind.PASSWORD_PROTECTED
    assert LockdownError.from_name("InvalidHostID", "ValidatePair").detail == "ValidatePair"
    assert FileRelayError.from_name("StagingEmpty").kind == FileRelayErrorKind.STAGING_EMPTY

    unknown = LockdownError.from_name("SomethingNew")
    assert unknown.kind == LockdownErrorKind.UNKNOWN
    assert unknown.detail == "SomethingNew"
    print("✓ Names mapped")


def test_installation_proxy_names() -> None:
    """installation_proxy names follow the device's code order."""
    print("Testing installation_proxy names...")

    assert InstallationProxyError.from_name("AlreadyArchived").kind == InstallationProxyErrorKind.ALREADY_ARCHIVED
    assert InstallationProxyError.from_name("LookupFailed").kind == InstallationProxyErrorKind.LOOKUP_FAILED
    assert (
        InstallationProxyError.from_name("MissingBundleVersion").kind
        == InstallationProxyErrorKind.MISSING_BUNDLE_VERSION
    )
    assert instproxy_error_name(InstallationProxyErrorKind.UNKNOWN_COMMAND) == "UnknownCommand"
    assert instproxy_error_name(InstallationProxyErrorKind.OPERATION_FAILED) is None
    print("✓ Names in code order")


def test_from_transport() -> None:
    """Broken channels become the taxonomy's transport kind."""
    print("Testing from_transport...")

    broken = MobileDeviceError(MobileDeviceErrorKind.DISCONNECTED, "EOF")
    assert AfcError.from_transport(broken).kind == AfcErrorKind.MUX_ERROR
    assert (
        InstallationProxyError.from_transport(broken).kind == InstallationProxyErrorKind.CONNECTION_FAILED
    )
    assert MobileDeviceError.from_transport(OSError("reset")).kind == MobileDeviceErrorKind.DISCONNECTED

    same = AfcError(AfcErrorKind.PERM_DENIED)
    assert AfcError.from_transport(same) is same
    print("✓ Transport failures translated")


def test_hierarchy_and_pickle() -> None:
    """Every error shares one base and survives pickling."""
    print("Testing hierarchy...")

    error = InstallationProxyError(InstallationProxyErrorKind.LOOKUP_FAILED, "com.example.app not found")
    assert isinstance(error, MobileDeviceException)
    with pytest.raises(MobileDeviceException):
        raise error

    restored = pickle.loads(pickle.dumps(AfcError.from_code(999, "odd")))
    assert restored.kind == AfcErrorKind.UNKNOWN
    assert restored.code == 999
    assert restored.detail == "odd"
    print("✓ Errors pickle")


if __name__ == "__main__":
    test_from_code()
    test_from_name()
    test_installation_proxy_names()
    test_from_transport()
    test_hierarchy_and_pickle()
    print("All error tests passed!")
