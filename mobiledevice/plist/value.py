"""Value tree: the typed, hierarchical document exchanged with the device."""

import datetime
import plistlib
import weakref
from collections.abc import Iterable, Iterator, Mapping
from enum import Enum, IntEnum
from typing import Any

from ..constants import PLIST_EPOCH_YEAR

UINT64_MASK = (1 << 64) - 1
PLIST_EPOCH = datetime.datetime(PLIST_EPOCH_YEAR, 1, 1)


class PlistType(IntEnum):
    """Node tags, in libplist order."""

    BOOLEAN = 0
    UINT = 1
    REAL = 2
    STRING = 3
    ARRAY = 4
    DICT = 5
    DATE = 6
    DATA = 7
    KEY = 8
    UID = 9
    NONE = 10


def _normalize_date(seconds: int, microseconds: int) -> tuple[int, int]:
    seconds += microseconds // 1_000_000
    return seconds, microseconds % 1_000_000


class Value:
    """One node of a value tree.

    Containers own their children. A child keeps only a weak reference to
    its container, exposed through ``parent``. Accessors for a variant
    return ``None`` when the node holds a different variant.
    """

    def __init__(self, kind: PlistType, value: Any = None):
        self._type = kind
        self._value = value
        self._parent: weakref.ref | None = None

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_bool(cls, value: bool) -> "Value":
        return cls(PlistType.BOOLEAN, bool(value))

    @classmethod
    def from_uint(cls, value: int) -> "Value":
        """Unsigned 64-bit integer; negative input is kept in two's complement."""
        return cls(PlistType.UINT, int(value) & UINT64_MASK)

    @classmethod
    def from_real(cls, value: float) -> "Value":
        return cls(PlistType.REAL, float(value))

    @classmethod
    def from_string(cls, value: str) -> "Value":
        return cls(PlistType.STRING, str(value))

    @classmethod
    def from_key(cls, value: str) -> "Value":
        return cls(PlistType.KEY, str(value))

    @classmethod
    def from_data(cls, value: bytes) -> "Value":
        return cls(PlistType.DATA, bytes(value))

    @classmethod
    def from_uid(cls, value: int) -> "Value":
        return cls(PlistType.UID, int(value) & UINT64_MASK)

    @classmethod
    def from_date(cls, value: datetime.datetime | tuple[int, int]) -> "Value":
        """Date node from a datetime or ``(seconds, microseconds)`` since 2001-01-01 UTC.

        Aware datetimes are converted to UTC; naive ones are taken as UTC.
        """
        if isinstance(value, datetime.datetime):
            if value.tzinfo is not None:
                value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
            delta = value - PLIST_EPOCH
            parts = (delta.days * 86400 + delta.seconds, delta.microseconds)
        else:
            seconds, microseconds = value
            parts = (int(seconds), int(microseconds))
        return cls(PlistType.DATE, _normalize_date(*parts))

    @classmethod
    def none(cls) -> "Value":
        return cls(PlistType.NONE)

    @classmethod
    def array(cls, items: Iterable[Any] = ()) -> "Value":
        node = cls(PlistType.ARRAY, [])
        for item in items:
            node.append(item)
        return node

    @classmethod
    def dictionary(cls, items: Mapping[str, Any] | None = None) -> "Value":
        node = cls(PlistType.DICT, {})
        for key, item in (items or {}).items():
            node[key] = item
        return node

    @classmethod
    def from_python(cls, obj: Any) -> "Value":
        """Build a tree from native objects, as returned by plistlib.

        Raises:
            TypeError: If an object has no value tree equivalent
        """
        if isinstance(obj, Value):
            return obj.copy() if obj.parent is not None else obj
        if isinstance(obj, Enum):
            obj = obj.value
        if obj is None:
            return cls.none()
        if isinstance(obj, bool):
            return cls.from_bool(obj)
        if isinstance(obj, plistlib.UID):
            return cls.from_uid(obj.data)
        if isinstance(obj, int):
            return cls.from_uint(obj)
        if isinstance(obj, float):
            return cls.from_real(obj)
        if isinstance(obj, str):
            return cls.from_string(obj)
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return cls.from_data(bytes(obj))
        if isinstance(obj, datetime.datetime):
            return cls.from_date(obj)
        if isinstance(obj, Mapping):
            return cls.dictionary(obj)
        if isinstance(obj, (list, tuple)):
            return cls.array(obj)
        raise TypeError(f"Unsupported value type: {obj.__class__.__name__}")

    # ------------------------------------------------------------------
    # Tree structure
    # ------------------------------------------------------------------

    @property
    def parent(self) -> "Value | None":
        """Container holding this node, if it is still alive."""
        return self._parent() if self._parent is not None else None

    @property
    def size(self) -> int | None:
        """Number of children, or None for scalar nodes."""
        if self._type in (PlistType.ARRAY, PlistType.DICT):
            return len(self._value)
        return None

    def _adopt(self, item: Any) -> "Value":
        child = Value.from_python(item)
        if child is self or child.parent is not None:
            child = child.copy()
        child._parent = weakref.ref(self)
        return child

    @staticmethod
    def _orphan(child: "Value | None") -> None:
        if child is not None:
            child._parent = None

    def __getitem__(self, key: str | int) -> "Value | None":
        if self._type == PlistType.DICT and isinstance(key, str):
            return self._value.get(key)
        if self._type == PlistType.ARRAY and isinstance(key, int) and not isinstance(key, bool):
            if -len(self._value) <= key < len(self._value):
                return self._value[key]
        return None

    def get(self, key: str | int, default: Any = None) -> Any:
        node = self[key]
        return default if node is None else node

    def __setitem__(self, key: str | int, item: Any) -> None:
        if self._type == PlistType.DICT:
            if not isinstance(key, str):
                raise TypeError("Dictionary keys must be strings")
            self._orphan(self._value.get(key))
            self._value[key] = self._adopt(item)
        elif self._type == PlistType.ARRAY:
            self._orphan(self._value[key])
            self._value[key] = self._adopt(item)
        else:
            raise TypeError(f"{self._type.name} node is not a container")

    def __delitem__(self, key: str | int) -> None:
        self.remove(key)

    def append(self, item: Any) -> "Value":
        if self._type != PlistType.ARRAY:
            raise TypeError(f"{self._type.name} node is not an array")
        child = self._adopt(item)
        self._value.append(child)
        return child

    def insert(self, index: int, item: Any) -> "Value":
        if self._type != PlistType.ARRAY:
            raise TypeError(f"{self._type.name} node is not an array")
        child = self._adopt(item)
        self._value.insert(index, child)
        return child

    def remove(self, key: str | int) -> None:
        """Remove a child by key or index; missing children are ignored."""
        self.pop(key)

    def pop(self, key: str | int) -> "Value | None":
        child = self[key]
        if child is None:
            return None
        del self._value[key]
        self._orphan(child)
        return child

    def keys(self) -> list[str]:
        if self._type == PlistType.DICT:
            return list(self._value)
        return []

    def iterate(self) -> Iterator[tuple[str | None, "Value"]]:
        """Forward-only iterator of ``(key, child)`` pairs.

        Keys are None for array children. The iterator is exhausted after
        one pass; call ``iterate()`` again to re-scan.
        """
        if self._type == PlistType.DICT:
            return ((key, child) for key, child in list(self._value.items()))
        if self._type == PlistType.ARRAY:
            return ((None, child) for child in list(self._value))
        return iter(())

    def __iter__(self) -> Iterator[Any]:
        if self._type == PlistType.DICT:
            return iter(list(self._value))
        if self._type == PlistType.ARRAY:
            return iter(list(self._value))
        return iter(())

    def __contains__(self, key: object) -> bool:
        if self._type == PlistType.DICT:
            return key in self._value
        if self._type == PlistType.ARRAY:
            return any(child == key for child in self._value)
        return False

    def __len__(self) -> int:
        return self.size or 0

    def __bool__(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def copy(self) -> "Value":
        """Deep copy, detached from any parent."""
        if self._type == PlistType.DICT:
            return Value.dictionary({key: child.copy() for key, child in self._value.items()})
        if self._type == PlistType.ARRAY:
            return Value.array(child.copy() for child in self._value)
        return Value(self._type, self._value)

    def to_python(self) -> Any:
        """Native objects in the shapes plistlib reads and writes."""
        kind = self._type
        if kind == PlistType.DICT:
            return {key: child.to_python() for key, child in self._value.items()}
        if kind == PlistType.ARRAY:
            return [child.to_python() for child in self._value]
        if kind == PlistType.DATE:
            return self.date
        if kind == PlistType.UID:
            return plistlib.UID(self._value)
        return self._value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Value):
            return NotImplemented
        return self._type == other._type and self._value == other._value

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        if self._type in (PlistType.ARRAY, PlistType.DICT):
            return f"Value({self._type.name}, size={len(self._value)})"
        return f"Value({self._type.name}, {self._value!r})"

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    def _get(self, kind: PlistType) -> Any:
        return self._value if self._type == kind else None

    @property
    def string(self) -> str | None:
        return self._get(PlistType.STRING)

    @property
    def uint(self) -> int | None:
        return self._get(PlistType.UINT)

    @property
    def real(self) -> float | None:
        return self._get(PlistType.REAL)

    @property
    def data(self) -> bytes | None:
        return self._get(PlistType.DATA)

    @property
    def uid(self) -> int | None:
        return self._get(PlistType.UID)

    @property
    def key(self) -> str | None:
        return self._get(PlistType.KEY)

    @property
    def date_parts(self) -> tuple[int, int] | None:
        """``(seconds, microseconds)`` since 2001-01-01 UTC."""
        return self._get(PlistType.DATE)

    @property
    def date(self) -> datetime.datetime | None:
        """Naive UTC datetime."""
        parts = self._get(PlistType.DATE)
        if parts is None:
            return None
        return PLIST_EPOCH + datetime.timedelta(seconds=parts[0], microseconds=parts[1])

    @property
    def is_none(self) -> bool:
        return self._type == PlistType.NONE

    @property
    def bool(self) -> "bool | None":
        return self._get(PlistType.BOOLEAN)

    @property
    def type(self) -> PlistType:
        return self._type
