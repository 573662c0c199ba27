# Copyright 2025 Maida.AI
# SPDX-License-Identifier: Apache-2.0

"""Value trees and their binary, XML and JSON codecs."""

from ..constants import BINARY_PLIST_MAGIC, PlistFormat
from ..errors import FormatError
from .base import PlistCodec
from .binary_codec import BinaryPlistCodec
from .json_codec import JSONPlistCodec
from .value import PlistType, Value
from .xml_codec import XMLPlistCodec

__all__ = [
    "BinaryPlistCodec",
    "FormatError",
    "JSONPlistCodec",
    "PlistCodec",
    "PlistFormat",
    "PlistType",
    "Value",
    "XMLPlistCodec",
    "decode",
    "decode_auto",
    "encode",
    "get_codec",
    "is_binary",
    "list_codecs",
    "register_codec",
]


# Codec registry
_CODECS: dict[int, type[PlistCodec]] = {}


def register_codec(fmt: int, codec_class: type[PlistCodec]) -> None:
    """Register a codec implementation."""
    _CODECS[fmt] = codec_class


def get_codec(fmt: int) -> PlistCodec:
    """Get a codec instance by format."""
    if fmt not in _CODECS:
        raise ValueError(f"Unsupported plist format: {fmt}")
    return _CODECS[fmt]()


def list_codecs() -> list[int]:
    """List all registered formats."""
    return list(_CODECS.keys())


def encode(value: Value, fmt: int = PlistFormat.XML) -> bytes:
    """Encode a tree in the given wire form."""
    return get_codec(fmt).encode(value)


def decode(data: bytes | str, fmt: int) -> Value:
    """Decode a tree from the given wire form.

    Raises:
        FormatError: If the input is malformed
    """
    return get_codec(fmt).decode(data)


def is_binary(data: bytes) -> bool:
    """Whether ``data`` starts with the binary property list signature."""
    return bytes(data[: len(BINARY_PLIST_MAGIC)]) == BINARY_PLIST_MAGIC


def decode_auto(data: bytes | str) -> Value:
    """Decode binary input when it carries the binary signature, XML otherwise."""
    if not data:
        raise FormatError("Empty property list")
    if isinstance(data, (bytes, bytearray, memoryview)) and is_binary(data):
        return decode(data, PlistFormat.BINARY)
    return decode(data, PlistFormat.XML)


# Register default codecs
register_codec(PlistFormat.BINARY, BinaryPlistCodec)
register_codec(PlistFormat.XML, XMLPlistCodec)
register_codec(PlistFormat.JSON, JSONPlistCodec)
