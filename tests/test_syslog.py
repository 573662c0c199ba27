"""Tests for syslog parsing, reassembly and capture."""

import threading

import pytest

from mobiledevice import Device, PlainSessionSecurity, SyslogMessageAssembler, SyslogRelayClient, SyslogRelayError
from mobiledevice.emulator import EmulatedDevice, run_emulated_device
from mobiledevice.errors import SyslogRelayErrorKind
from mobiledevice.services.syslog_relay import parse_syslog_line

LINE_ONE = b"Oct 18 09:15:02 iPhone SpringBoard[58] <Notice>: Screen unlocked"
LINE_TWO = b"Oct  3 09:15:03 iPhone kernel[0] <Debug>: wlan0 link up"


def test_parse_line() -> None:
    """Dated lines are split into their fields."""
    print("Testing syslog line parsing...")

    message = parse_syslog_line(LINE_ONE.decode())
    assert message.name == "iPhone"
    assert message.process_info == "SpringBoard[58]"
    assert message.message == "<Notice>: Screen unlocked"
    assert (message.date.month, message.date.day, message.date.hour, message.date.second) == (10, 18, 9, 2)

    padded = parse_syslog_line(LINE_TWO.decode())
    assert padded.date.day == 3
    assert padded.process_info == "kernel[0]"

    short = parse_syslog_line("too short to parse")
    assert short.message == "too short to parse"
    assert short.date is None

    undated = parse_syslog_line("this line has no date but many words")
    assert undated.message == "this line has no date but many words"
    assert undated.name is None
    print("✓ Lines parsed")


def test_assembler_holds_partial_line() -> None:
    """One message per newline; the unterminated tail waits."""
    print("Testing syslog reassembly...")

    assembler = SyslogMessageAssembler()
    stream = LINE_ONE + b"\n\x00" + LINE_TWO + b"\r\n" + b"Oct 18 09:15:04 iPhone"

    messages = []
    for byte in stream:
        messages.extend(assembler.feed(byte))

    assert len(messages) == 2
    assert messages[0].message == "<Notice>: Screen unlocked"
    assert messages[1].message == "<Debug>: wlan0 link up"
    assert assembler.pending == b"Oct 18 09:15:04 iPhone"

    completed = assembler.feed(b" backboardd[61] <Error>: done\n")
    assert len(completed) == 1
    assert completed[0].process_info == "backboardd[61]"
    assert assembler.pending == b""
    print("✓ Partial line held back")


def test_capture_messages() -> None:
    """Captured bytes arrive on a delivery thread as messages."""
    print("Testing syslog capture...")

    emulated = EmulatedDevice()
    emulated.syslog = LINE_ONE + b"\n\x00" + LINE_TWO + b"\n\x00Oct 18 09:15:04 iPhone partial"
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with SyslogRelayClient.start(device) as syslog:
            messages = []
            got_both = threading.Event()

            def on_message(message) -> None:
                messages.append(message)
                if len(messages) == 2:
                    got_both.set()

            token = syslog.start_capture_messages(on_message)
            assert got_both.wait(5.0), "Syslog lines not delivered"

            with pytest.raises(SyslogRelayError) as exc_info:
                syslog.start_capture(lambda byte: None)
            assert exc_info.value.kind == SyslogRelayErrorKind.INVALID_ARGUMENT

            token.dispose()
            syslog.stop_capture()
            assert [m.process_info for m in messages] == ["SpringBoard[58]", "kernel[0]"]
        print("✓ Capture delivered messages")


def test_capture_bytes_and_restart() -> None:
    """Raw capture delivers non-NUL bytes; a stopped capture can restart."""
    print("Testing raw capture...")

    emulated = EmulatedDevice()
    emulated.syslog = b"ab\x00c"
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with SyslogRelayClient.start(device) as syslog:
            received = []
            got_all = threading.Event()

            def on_byte(byte: int) -> None:
                received.append(byte)
                if len(received) == 3:
                    got_all.set()

            syslog.start_capture(on_byte)
            assert got_all.wait(5.0)
            syslog.stop_capture()
            assert bytes(received) == b"abc"

            restarted = syslog.start_capture(lambda byte: None)
            restarted.dispose()
            syslog.stop_capture()
        print("✓ Raw capture works")


def test_freed_client() -> None:
    """Freed clients fail with DEALLOCATED_CLIENT."""
    print("Testing freed syslog client...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with SyslogRelayClient.start(device) as syslog:
            syslog.free()
            with pytest.raises(SyslogRelayError) as exc_info:
                syslog.receive(0.1)
            assert exc_info.value.kind == SyslogRelayErrorKind.DEALLOCATED_CLIENT
            with pytest.raises(SyslogRelayError):
                syslog.start_capture(lambda byte: None)
        print("✓ Freed client guarded")


if __name__ == "__main__":
    test_parse_line()
    test_assembler_holds_partial_line()
    test_capture_messages()
    test_capture_bytes_and_restart()
    test_freed_client()
    print("All syslog tests passed!")
