"""Binary property list codec."""

import plistlib

from ..errors import FormatError
from .base import PlistCodec
from .value import Value


class BinaryPlistCodec(PlistCodec):
    """Compact object-table form (``bplist00``)."""

    def encode(self, value: Value) -> bytes:
        """Encode a tree to binary plist bytes.

        Args:
            value: Root node

        Returns:
            Binary plist document

        Raises:
            FormatError: If the tree holds a node with no binary form
        """
        try:
            return plistlib.dumps(value.to_python(), fmt=plistlib.FMT_BINARY, sort_keys=False)
        except (TypeError, ValueError, OverflowError) as exc:
            raise FormatError(f"Cannot encode binary plist: {exc}") from exc

    def decode(self, data: bytes | str) -> Value:
        if isinstance(data, str):
            raise FormatError("Binary plist input must be bytes")
        try:
            return Value.from_python(plistlib.loads(bytes(data), fmt=plistlib.FMT_BINARY))
        except Exception as exc:
            raise FormatError(f"Invalid binary plist: {exc}") from exc
