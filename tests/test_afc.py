"""Tests for the AFC client against the emulated device."""

import os

import pytest

from mobiledevice import AfcClient, AfcError, AfcErrorKind, AfcFileMode, AfcLinkType, Device, PlainSessionSecurity
from mobiledevice.emulator import EmulatedDevice, run_emulated_device


def test_write_and_read_file() -> None:
    """Whole files round trip through handles."""
    print("Testing AFC file write/read...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            afc.make_directory("/Downloads/nested")
            afc.write_file("/Downloads/nested/hello.txt", b"Hello, AFC!")

            assert afc.read_file("/Downloads/nested/hello.txt") == b"Hello, AFC!"
            assert afc.listdir("/Downloads/nested") == ["hello.txt"]
            assert afc.read_directory("/Downloads")[:2] == [".", ".."]

            info = afc.get_file_info("/Downloads/nested/hello.txt")
            assert info["st_ifmt"] == "S_IFREG"
            assert info["st_size"] == "11"
            assert afc.is_directory("/Downloads/nested")
            assert afc.exists("/Downloads/nested/hello.txt")
            assert not afc.exists("/Downloads/missing.txt")
        print("✓ File round trip")


def test_seeded_files_and_device_info() -> None:
    """Files placed on the emulated filesystem are visible."""
    print("Testing seeded files...")

    emulated = EmulatedDevice()
    emulated.filesystem.add_file("/DCIM/100APPLE/IMG_0001.JPG", b"\xff\xd8\xff")
    with run_emulated_device(emulated) as transport:
        device = Device(emulated.udid, transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            assert afc.listdir("/DCIM/100APPLE") == ["IMG_0001.JPG"]
            assert afc.read_file("/DCIM/100APPLE/IMG_0001.JPG") == b"\xff\xd8\xff"

            info = afc.get_device_info()
            assert info["Model"] == "iPhone15,2"
            assert int(info["FSFreeBytes"]) < int(info["FSTotalBytes"])
            assert afc.get_device_info_key("FSBlockSize") == "4096"
            assert afc.get_device_info_key("Nope") is None
        print("✓ Seeded files visible")


def test_read_only_handle() -> None:
    """Writing through a read-only handle is PERM_DENIED."""
    print("Testing read-only handles...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            afc.write_file("/notes.txt", b"original")
            handle = afc.open("/notes.txt", "r")
            try:
                with pytest.raises(AfcError) as exc_info:
                    afc.write(handle, b"changed")
                assert exc_info.value.kind == AfcErrorKind.PERM_DENIED
            finally:
                afc.close(handle)
            assert afc.read_file("/notes.txt") == b"original"

            with pytest.raises(AfcError) as exc_info:
                afc.open("/notes.txt", "x")
            assert exc_info.value.kind == AfcErrorKind.INVALID_ARG

            with pytest.raises(AfcError) as exc_info:
                afc.open("/missing.txt", AfcFileMode.RDONLY)
            assert exc_info.value.kind == AfcErrorKind.OBJECT_NOT_FOUND
        print("✓ PERM_DENIED raised")


def test_closed_handle_rejected_locally() -> None:
    """A handle is unusable after close."""
    print("Testing closed handles...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            handle = afc.open("/scratch.bin", "w")
            afc.close(handle)
            for call in (lambda: afc.read(handle, 10), lambda: afc.write(handle, b"x"), lambda: afc.close(handle)):
                with pytest.raises(AfcError) as exc_info:
                    call()
                assert exc_info.value.kind == AfcErrorKind.INVALID_ARG
        print("✓ Closed handle rejected")


def test_seek_tell_truncate() -> None:
    """Handle positions follow seek and reads."""
    print("Testing seek/tell...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            handle = afc.open("/seek.txt", AfcFileMode.WR)
            try:
                assert afc.write(handle, b"hello world") == 11
                assert afc.tell(handle) == 11

                afc.seek(handle, 0)
                assert afc.read(handle, 5) == b"hello"
                assert afc.tell(handle) == 5

                afc.seek(handle, -5, os.SEEK_END)
                assert afc.read(handle, 100) == b"world"
                assert afc.read(handle, 100) == b""

                afc.truncate(handle, 5)
            finally:
                afc.close(handle)
            assert afc.read_file("/seek.txt") == b"hello"

            afc.truncate_path("/seek.txt", 2)
            assert afc.read_file("/seek.txt") == b"he"
        print("✓ Seek/tell work")


def test_remove_and_rename() -> None:
    """Removal, recursive removal and rename."""
    print("Testing remove/rename...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            afc.make_directory("/Tree/branch")
            afc.write_file("/Tree/branch/leaf.txt", b"leaf")

            with pytest.raises(AfcError) as exc_info:
                afc.remove("/Tree")
            assert exc_info.value.kind == AfcErrorKind.DIR_NOT_EMPTY

            afc.rename("/Tree/branch", "/Tree/moved")
            assert afc.listdir("/Tree") == ["moved"]
            assert afc.read_file("/Tree/moved/leaf.txt") == b"leaf"

            afc.remove_recursive("/Tree")
            with pytest.raises(AfcError) as exc_info:
                afc.read_directory("/Tree")
            assert exc_info.value.kind == AfcErrorKind.OBJECT_NOT_FOUND

            with pytest.raises(AfcError) as exc_info:
                afc.read_directory("/never-existed")
            assert exc_info.value.kind == AfcErrorKind.OBJECT_NOT_FOUND
        print("✓ Remove/rename work")


def test_links_and_times() -> None:
    """Symlinks report their target; mtimes are nanoseconds."""
    print("Testing links and times...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            afc.write_file("/target.txt", b"data")
            afc.make_link(AfcLinkType.SYMLINK, "/target.txt", "/shortcut")
            info = afc.get_file_info("/shortcut")
            assert info["st_ifmt"] == "S_IFLNK"
            assert info["LinkTarget"] == "/target.txt"

            afc.make_link(AfcLinkType.HARDLINK, "/target.txt", "/hard.txt")
            assert afc.read_file("/hard.txt") == b"data"

            afc.set_modification_time("/target.txt", 1_700_000_000_000_000_000)
            assert afc.get_file_info("/target.txt")["st_mtime"] == "1700000000000000000"
        print("✓ Links and times work")


def test_chunked_write_progress() -> None:
    """Chunked writes report the completed fraction."""
    print("Testing chunked writes...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device, write_chunk_size=4) as afc:
            progress = []
            afc.write_file("/chunks.bin", b"0123456789", progress.append)
            assert progress == [0.4, 0.8, 1.0]
            assert afc.read_file("/chunks.bin") == b"0123456789"
        print("✓ Progress reported")


def test_copy_folder(tmp_path) -> None:
    """A local tree is copied depth first."""
    print("Testing copy_folder...")

    (tmp_path / "sub").mkdir()
    (tmp_path / "a.txt").write_bytes(b"alpha")
    (tmp_path / "sub" / "b.txt").write_bytes(b"beta")
    (tmp_path / "empty.txt").write_bytes(b"")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            seen = []
            afc.copy_folder(tmp_path, "/Upload", lambda path, fraction: seen.append((path, fraction)))

            assert afc.listdir("/Upload") == ["a.txt", "empty.txt", "sub"]
            assert afc.read_file("/Upload/a.txt") == b"alpha"
            assert afc.read_file("/Upload/sub/b.txt") == b"beta"
            assert afc.read_file("/Upload/empty.txt") == b""
            assert ("/Upload/sub/b.txt", 1.0) in seen
            assert ("/Upload/empty.txt", 1.0) in seen
        print("✓ Folder copied")


def test_freed_client() -> None:
    """Every call after free() is DEALLOCATED_CLIENT."""
    print("Testing freed client...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            afc.free()
            afc.free()
            assert afc.is_freed
            with pytest.raises(AfcError) as exc_info:
                afc.listdir("/")
            assert exc_info.value.kind == AfcErrorKind.DEALLOCATED_CLIENT
        print("✓ Freed client guarded")


def test_device_hangs_up() -> None:
    """Requests on a channel the device closed fail with MUX_ERROR."""
    print("Testing device hang-up...")

    with run_emulated_device() as transport:
        device = Device("ABC123", transport=transport, security=PlainSessionSecurity())
        with AfcClient.start(device) as afc:
            afc.make_directory("/Before")
            assert "Before" in afc.listdir("/")
            transport.close()
            with pytest.raises(AfcError) as exc_info:
                afc.listdir("/")
            assert exc_info.value.kind == AfcErrorKind.MUX_ERROR
        print("✓ Hang-up mapped to MUX_ERROR")


if __name__ == "__main__":
    import pathlib
    import tempfile

    test_write_and_read_file()
    test_seeded_files_and_device_info()
    test_read_only_handle()
    test_closed_handle_rejected_locally()
    test_seek_tell_truncate()
    test_remove_and_rename()
    test_links_and_times()
    test_chunked_write_progress()
    with tempfile.TemporaryDirectory() as tmp:
        test_copy_folder(pathlib.Path(tmp))
    test_freed_client()
    test_device_hangs_up()
    print("All AFC tests passed!")
