# =======================================================================================
# chipvault/readers/base.py - Reader Contract
# =======================================================================================
from abc import ABC, abstractmethod


class ChipReader(ABC):
    """
    Narrow contract the encoding/verification protocol depends on.

    Implementations raise ChipReadError / ChipWriteError for I/O problems and
    AuthenticationError when a sector refuses the supplied key. Keys are
    6-byte Mifare keys, blocks are 16 bytes.
    """

    name: str = "reader"

    @abstractmethod
    def read_uid(self) -> str:
        """Return the factory serial of the tag in the field (hex)."""

    @abstractmethod
    def read_block(self, block: int, key: bytes) -> bytes:
        """Authenticate the block's sector with `key` and return its 16 bytes."""

    @abstractmethod
    def write_block(self, block: int, data: bytes, key: bytes) -> None:
        """Authenticate the block's sector with `key` and write 16 bytes."""

    @abstractmethod
    def authenticate(self, block: int, key: bytes) -> bool:
        """Try `key` against the sector holding `block`."""

    @abstractmethod
    def wait_for_card(self, timeout: float) -> bool:
        """Block until a tag is present or `timeout` seconds pass."""

    def close(self) -> None:
        """Release the underlying device, if any."""
        return None
