"""XML property list codec."""

import plistlib
from typing import Any

from ..errors import FormatError
from .base import PlistCodec
from .value import Value

UID_KEY = "CF$UID"


def _uids_to_dicts(obj: Any) -> Any:
    if isinstance(obj, plistlib.UID):
        return {UID_KEY: obj.data}
    if isinstance(obj, dict):
        return {key: _uids_to_dicts(item) for key, item in obj.items()}
    if isinstance(obj, list):
        return [_uids_to_dicts(item) for item in obj]
    return obj


def _dicts_to_uids(obj: Any) -> Any:
    if isinstance(obj, dict):
        if len(obj) == 1 and isinstance(obj.get(UID_KEY), int) and not isinstance(obj[UID_KEY], bool):
            return plistlib.UID(obj[UID_KEY])
        return {key: _dicts_to_uids(item) for key, item in obj.items()}
    if isinstance(obj, list):
        return [_dicts_to_uids(item) for item in obj]
    return obj


class XMLPlistCodec(PlistCodec):
    """Standard property list DTD. UIDs travel as ``{"CF$UID": n}``."""

    def encode(self, value: Value) -> bytes:
        try:
            return plistlib.dumps(_uids_to_dicts(value.to_python()), fmt=plistlib.FMT_XML, sort_keys=False)
        except (TypeError, ValueError, OverflowError) as exc:
            raise FormatError(f"Cannot encode XML plist: {exc}") from exc

    def decode(self, data: bytes | str) -> Value:
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            return Value.from_python(_dicts_to_uids(plistlib.loads(bytes(data), fmt=plistlib.FMT_XML)))
        except Exception as exc:
            raise FormatError(f"Invalid XML plist: {exc}") from exc
