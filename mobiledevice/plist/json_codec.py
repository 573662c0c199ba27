"""JSON codec for value trees."""

import base64
import datetime
import json
import plistlib
from typing import Any

from ..errors import FormatError
from .base import PlistCodec
from .value import Value


def _to_json(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {key: _to_json(item) for key, item in obj.items()}
    if isinstance(obj, list):
        return [_to_json(item) for item in obj]
    if isinstance(obj, datetime.datetime):
        return obj.isoformat() + "Z"
    if isinstance(obj, bytes):
        return base64.b64encode(obj).decode("ascii")
    if isinstance(obj, plistlib.UID):
        return obj.data
    return obj


class JSONPlistCodec(PlistCodec):
    """JSON-native rendition.

    Dates become ISO 8601 strings, data becomes base64 and uids become
    integers, so none of them decode back to their original node type.
    """

    def encode(self, value: Value) -> bytes:
        """Encode a tree to compact UTF-8 JSON.

        Args:
            value: Root node

        Returns:
            UTF-8 encoded JSON bytes
        """
        try:
            return json.dumps(_to_json(value.to_python()), separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise FormatError(f"Cannot encode JSON: {exc}") from exc

    def decode(self, data: bytes | str) -> Value:
        """Decode JSON text to a tree.

        Args:
            data: UTF-8 encoded JSON bytes or text

        Returns:
            Root node
        """
        try:
            json_str = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
            return Value.from_python(json.loads(json_str))
        except (UnicodeDecodeError, ValueError, TypeError) as exc:
            raise FormatError(f"Invalid JSON: {exc}") from exc
