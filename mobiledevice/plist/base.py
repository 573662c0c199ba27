"""Base codec interface for value trees."""

from abc import ABC, abstractmethod

from .value import Value


class PlistCodec(ABC):
    """Base interface for value tree wire forms."""

    @abstractmethod
    def encode(self, value: Value) -> bytes:
        """Encode a tree to bytes."""
        pass

    @abstractmethod
    def decode(self, data: bytes | str) -> Value:
        """Decode bytes to a tree.

        Raises:
            FormatError: If the input is malformed
        """
        pass
