"""Tests for the small service clients against the emulated device."""

import socket

import pytest

from mobiledevice import (
    AfcClient,
    DebugServerClient,
    DebugServerCommand,
    DebugServerError,
    DebugServerErrorKind,
    Device,
    FileRelayClient,
    FileRelayError,
    FileRelayErrorKind,
    FileRelaySource,
    HouseArrestClient,
    HouseArrestError,
    HouseArrestErrorKind,
    LockdownClient,
    PlainSessionSecurity,
    ScreenshotClient,
    ScreenshotError,
    ScreenshotErrorKind,
    SpringboardError,
    SpringboardErrorKind,
)
from mobiledevice.connection import Connection
from mobiledevice.emulator import BLANK_PNG, EmulatedDevice, ServiceHandler, run_emulated_device
from mobiledevice.services.debug_server import checksum, encode_packet

# ----------------------------------------------------------------------------
# screenshotr
# ----------------------------------------------------------------------------


def test_screenshot() -> None:
    """Screenshots arrive after the device-link exchange."""
    print("Testing screenshot...")

    emulated = EmulatedDevice()
    emulated.screenshot = b"\x89PNG fake screen"
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with ScreenshotClient.start(device) as screenshot:
            assert screenshot.take_screenshot() == b"\x89PNG fake screen"
            assert screenshot.take_screenshot() == b"\x89PNG fake screen"
            screenshot.free()
            with pytest.raises(ScreenshotError) as exc_info:
                screenshot.take_screenshot()
            assert exc_info.value.kind == ScreenshotErrorKind.DEALLOCATED_SERVICE
        print("✓ Screenshot taken")


def test_screenshot_bad_version() -> None:
    """Another device-link major is BAD_VERSION."""
    print("Testing device-link version mismatch...")

    emulated = EmulatedDevice()
    emulated.device_link_version = (100, 0)
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with pytest.raises(ScreenshotError) as exc_info:
            with ScreenshotClient.start(device):
                pass
        assert exc_info.value.kind == ScreenshotErrorKind.BAD_VERSION
        print("✓ BAD_VERSION raised")


# ----------------------------------------------------------------------------
# springboardservices
# ----------------------------------------------------------------------------


def test_springboard() -> None:
    """Icons and wallpaper come back as PNG bytes."""
    print("Testing springboard...")

    emulated = EmulatedDevice()
    emulated.icons["com.example.custom"] = b"\x89PNG custom icon"
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with LockdownClient(device) as lockdown:
            springboard = lockdown.create_springboard_client()
        try:
            assert springboard.get_icon_png_data("com.example.custom") == b"\x89PNG custom icon"
            assert springboard.get_icon_png_data("com.apple.Preferences") == BLANK_PNG
            assert springboard.get_home_screen_wallpaper_png_data() == BLANK_PNG

            with pytest.raises(SpringboardError) as exc_info:
                springboard.get_icon_png_data("com.example.unknown")
            assert exc_info.value.kind == SpringboardErrorKind.UNKNOWN
        finally:
            springboard.free()

        with pytest.raises(SpringboardError) as exc_info:
            springboard.get_home_screen_wallpaper_png_data()
        assert exc_info.value.kind == SpringboardErrorKind.DEALLOCATED_SERVICE
        print("✓ Springboard images returned")


# ----------------------------------------------------------------------------
# house_arrest
# ----------------------------------------------------------------------------


def _emulated_with_container() -> EmulatedDevice:
    emulated = EmulatedDevice()
    emulated.add_app("com.example.notes", "Notes")
    emulated.containers.add_file("/com.example.notes/Documents/note.txt", b"remember the milk")
    return emulated


def test_house_arrest_documents() -> None:
    """A vended Documents folder is reachable over AFC."""
    print("Testing house_arrest documents...")

    emulated = _emulated_with_container()
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with HouseArrestClient.start(device) as house_arrest:
            result = house_arrest.vend_documents("com.example.notes")
            assert result["Status"].string == "Complete"
            assert house_arrest.vended

            with pytest.raises(HouseArrestError) as exc_info:
                house_arrest.send_command("VendContainer", "com.example.notes")
            assert exc_info.value.kind == HouseArrestErrorKind.INVALID_MODE

            afc = AfcClient.from_house_arrest(house_arrest)
            try:
                assert house_arrest.is_freed
                assert afc.listdir("/") == ["note.txt"]
                assert afc.read_file("/note.txt") == b"remember the milk"
                afc.write_file("/new.txt", b"written through house_arrest")
            finally:
                afc.free()

        assert emulated.containers.get_file("/com.example.notes/Documents/new.txt") == b"written through house_arrest"
        print("✓ Documents vended")


def test_house_arrest_container_and_errors() -> None:
    """Failed vends report the device error; the channel stays usable."""
    print("Testing house_arrest container...")

    emulated = _emulated_with_container()
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with HouseArrestClient.start(device) as house_arrest:
            with pytest.raises(HouseArrestError) as exc_info:
                house_arrest.send_request(["not", "a", "dictionary"])
            assert exc_info.value.kind == HouseArrestErrorKind.INVALID_ARG

            with pytest.raises(HouseArrestError) as exc_info:
                house_arrest.vend_container("com.example.missing")
            assert exc_info.value.kind == HouseArrestErrorKind.UNKNOWN
            assert "ApplicationLookupFailed" in exc_info.value.detail
            assert not house_arrest.vended

            house_arrest.vend_container("com.example.notes")
            with AfcClient.from_house_arrest(house_arrest) as afc:
                assert afc.listdir("/") == ["Documents", "Library"]
                assert afc.read_file("/Documents/note.txt") == b"remember the milk"
        print("✓ Container vended after a failure")


# ----------------------------------------------------------------------------
# file_relay
# ----------------------------------------------------------------------------


def test_file_relay() -> None:
    """An acknowledged request streams the archive on the same connection."""
    print("Testing file_relay...")

    archive = b"\x1f\x8b\x08\x00" + bytes(range(256)) * 4
    emulated = EmulatedDevice()
    emulated.file_relay_archive = archive
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with FileRelayClient.start(device) as relay:
            connection = relay.request_sources([FileRelaySource.NETWORK, "CrashReporter"], timeout=5.0)
            assert connection.receive_exact(len(archive), 5.0) == archive
        print("✓ Archive streamed")


@pytest.mark.parametrize(
    ("archive", "error", "sources", "expected"),
    [
        (b"", None, ["AppleSupport"], FileRelayErrorKind.STAGING_EMPTY),
        (b"data", None, ["NotASource"], FileRelayErrorKind.INVALID_SOURCE),
        (b"data", "PermissionDenied", ["AppleSupport"], FileRelayErrorKind.PERMISSION_DENIED),
        (b"data", None, [], FileRelayErrorKind.INVALID_ARGUMENT),
    ],
)
def test_file_relay_errors(archive, error, sources, expected) -> None:
    """Device refusals map onto the file_relay taxonomy."""
    print(f"Testing file_relay error {expected.name}...")

    emulated = EmulatedDevice()
    emulated.file_relay_archive = archive
    emulated.file_relay_error = error
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with FileRelayClient.start(device) as relay:
            with pytest.raises(FileRelayError) as exc_info:
                relay.request_sources(sources)
            assert exc_info.value.kind == expected
    print(f"✓ {expected.name} raised")


# ----------------------------------------------------------------------------
# debugserver
# ----------------------------------------------------------------------------


def test_debug_server_encoding() -> None:
    """Hex arguments and packet framing."""
    print("Testing debugserver encoding...")

    assert DebugServerClient.encode_string("AB") == b"4142"
    assert DebugServerClient.decode_string(b"4142") == "AB"
    assert DebugServerClient.decode_string("48656c6c6f") == "Hello"
    with pytest.raises(DebugServerError) as exc_info:
        DebugServerClient.decode_string("zz")
    assert exc_info.value.kind == DebugServerErrorKind.INVALID_ARGUMENT

    assert checksum(b"OK") == b"9a"
    assert encode_packet(b"OK") == b"$OK#9a"

    command = DebugServerCommand("QEnvironmentHexEncoded:", ["A=1"])
    assert command.encode() == b"QEnvironmentHexEncoded:413d31"
    command.free()
    with pytest.raises(DebugServerError) as exc_info:
        command.encode()
    assert exc_info.value.kind == DebugServerErrorKind.DEALLOCATED_COMMAND
    print("✓ Encoding works")


def test_debug_server_session() -> None:
    """Launch setup commands against the emulated stub."""
    print("Testing debugserver session...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with DebugServerClient.start(device) as gdb:
            assert gdb.send_command(DebugServerCommand("qLaunchSuccess")) == b"E01"
            assert gdb.set_environment_hex_encoded("NSUnbufferedIO=YES") == "OK"
            assert gdb.set_argv(["/private/var/containers/Bundle/Application/App.app/App", "--verbose"]) == "OK"
            assert gdb.send_command(DebugServerCommand("qLaunchSuccess")) == b"OK"

            gdb.set_ack_mode(False)
            assert not gdb.ack_mode
            assert gdb.send_command(DebugServerCommand("qUnsupported")) == b""

            with pytest.raises(DebugServerError) as exc_info:
                gdb.set_argv([])
            assert exc_info.value.kind == DebugServerErrorKind.INVALID_ARGUMENT
        print("✓ debugserver session works")


def test_debug_server_bad_checksum() -> None:
    """A corrupted response is refused with a NACK."""
    print("Testing debugserver checksum verification...")

    host_end, device_end = socket.socketpair()
    try:
        gdb = DebugServerClient.from_connection(None, Connection(host_end))
        gdb.timeout = 5.0
        device_end.sendall(b"$OK#00")
        with pytest.raises(DebugServerError) as exc_info:
            gdb.receive_response()
        assert exc_info.value.kind == DebugServerErrorKind.RESPONSE_ERROR
        assert device_end.recv(1) == b"-"

        device_end.sendall(b"junk$OK#9a")
        assert gdb.receive_response() == b"OK"
        assert device_end.recv(1) == b"+"

        device_end.sendall(b"raw bytes")
        assert gdb.receive(64, timeout=5.0) == b"raw bytes"
        assert gdb.receive(64, timeout=0.05) == b""

        gdb.free()
        with pytest.raises(DebugServerError) as exc_info:
            gdb.send(b"$?#3f")
        assert exc_info.value.kind == DebugServerErrorKind.DEALLOCATED_CLIENT
    finally:
        host_end.close()
        device_end.close()
    print("✓ Bad checksum refused")


def test_handler_requires_serve() -> None:
    """Emulated daemons must implement _serve."""
    print("Testing handler interface...")

    class Incomplete(ServiceHandler):
        service_name = "incomplete"

    host_end, device_end = socket.socketpair()
    try:
        with pytest.raises(TypeError):
            Incomplete(Connection(device_end), EmulatedDevice(), None)
        with pytest.raises(TypeError):
            ServiceHandler(Connection(device_end), EmulatedDevice(), None)
    finally:
        host_end.close()
        device_end.close()
    print("✓ Abstract handler refused")


if __name__ == "__main__":
    test_screenshot()
    test_screenshot_bad_version()
    test_springboard()
    test_house_arrest_documents()
    test_house_arrest_container_and_errors()
    test_file_relay()
    test_debug_server_encoding()
    test_debug_server_session()
    test_debug_server_bad_checksum()
    test_handler_requires_serve()
    print("All service tests passed!")
