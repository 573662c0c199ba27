"""Tests for the raw connection and for channels closed under a live service."""

import socket
import threading

import pytest

from mobiledevice import (
    AfcClient,
    AfcError,
    AfcErrorKind,
    Connection,
    InstallationProxyClient,
    InstallationProxyError,
    InstallationProxyErrorKind,
    MobileDeviceError,
    MobileDeviceErrorKind,
    Value,
)


def _hang_up_after_request(device_end: socket.socket) -> threading.Thread:
    """Read whatever the host sends first, then close the device end."""

    def serve() -> None:
        try:
            device_end.recv(4096)
        finally:
            device_end.shutdown(socket.SHUT_RDWR)
            device_end.close()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    return thread


def test_disconnect_is_terminal() -> None:
    """Every call after disconnect() is DISCONNECTED."""
    print("Testing disconnect...")

    host_end, device_end = socket.socketpair()
    try:
        connection = Connection(host_end)
        assert connection.is_connected
        connection.disconnect()
        connection.disconnect()
        assert not connection.is_connected

        with pytest.raises(MobileDeviceError) as exc_info:
            connection.send(b"ping")
        assert exc_info.value.kind == MobileDeviceErrorKind.DISCONNECTED

        with pytest.raises(MobileDeviceError) as exc_info:
            connection.receive(4, timeout=0.1)
        assert exc_info.value.kind == MobileDeviceErrorKind.DISCONNECTED

        with pytest.raises(MobileDeviceError) as exc_info:
            connection.receive_plist(timeout=0.1)
        assert exc_info.value.kind == MobileDeviceErrorKind.DISCONNECTED
    finally:
        device_end.close()
    print("✓ Disconnect is terminal")


def test_peer_close_and_timeouts() -> None:
    """Quiet peers time out; closed peers are DISCONNECTED."""
    print("Testing peer close...")

    host_end, device_end = socket.socketpair()
    try:
        connection = Connection(host_end)
        assert connection.receive(16, timeout=0.05) == b""
        with pytest.raises(MobileDeviceError) as exc_info:
            connection.receive_exact(4, timeout=0.05)
        assert exc_info.value.kind == MobileDeviceErrorKind.TIMEOUT

        peer = Connection(device_end)
        peer.send_plist(Value.dictionary({"Request": "Ping"}))
        assert connection.receive_plist(timeout=5.0)["Request"].string == "Ping"

        device_end.sendall(b"\x00\x00")
        peer.disconnect()
        with pytest.raises(MobileDeviceError) as exc_info:
            connection.receive_plist(timeout=5.0)
        assert exc_info.value.kind == MobileDeviceErrorKind.NOT_ENOUGH_DATA

        with pytest.raises(MobileDeviceError) as exc_info:
            connection.receive(16, timeout=5.0)
        assert exc_info.value.kind == MobileDeviceErrorKind.DISCONNECTED
        connection.disconnect()
    finally:
        host_end.close()
        device_end.close()
    print("✓ Peer close detected")


def test_pending_afc_request_on_closed_channel() -> None:
    """An AFC request whose channel closes fails with MUX_ERROR."""
    print("Testing AFC on a closed channel...")

    host_end, device_end = socket.socketpair()
    try:
        afc = AfcClient.from_connection(None, Connection(host_end))
        afc.timeout = 5.0
        peer = _hang_up_after_request(device_end)
        with pytest.raises(AfcError) as exc_info:
            afc.listdir("/")
        assert exc_info.value.kind == AfcErrorKind.MUX_ERROR
        peer.join(timeout=5.0)
        afc.free()
    finally:
        host_end.close()
    print("✓ AFC failure mapped")


def test_pending_instproxy_command_on_closed_channel() -> None:
    """A command whose channel closes fails with CONNECTION_FAILED and frees the client."""
    print("Testing installation proxy on a closed channel...")

    host_end, device_end = socket.socketpair()
    try:
        instproxy = InstallationProxyClient.from_connection(None, Connection(host_end))
        instproxy.timeout = 5.0
        peer = _hang_up_after_request(device_end)
        with pytest.raises(InstallationProxyError) as exc_info:
            instproxy.lookup()
        assert exc_info.value.kind == InstallationProxyErrorKind.CONNECTION_FAILED
        assert instproxy.is_freed
        peer.join(timeout=5.0)
    finally:
        host_end.close()
    print("✓ Installation proxy failure mapped")


if __name__ == "__main__":
    test_disconnect_is_terminal()
    test_peer_close_and_timeouts()
    test_pending_afc_request_on_closed_channel()
    test_pending_instproxy_command_on_closed_channel()
    print("All connection tests passed!")
