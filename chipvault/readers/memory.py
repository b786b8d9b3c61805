# =======================================================================================
# chipvault/readers/memory.py - Emulated Mifare Classic tag and reader
# =======================================================================================
import threading
from typing import Iterable, List, Optional, Set
from ..protocol.layout import (
    BLOCKS_PER_SECTOR, DEFAULT_KEY, SECTOR_COUNT, build_trailer, is_trailer, sector_of,
    trailer_block,
)
from ..utils.exceptions import AuthenticationError, ChipReadError, ChipWriteError
from ..utils.validators import BLOCK_SIZE, normalize_uid
from .base import ChipReader


class MifareClassicCard:
    """
    In-memory Mifare Classic 1K: 16 sectors of 4 blocks, keys held in trailers.

    `fail_writes` lists blocks whose next write raises ChipWriteError, to
    emulate a tag pulled away from the antenna mid-encoding.
    """

    def __init__(self, uid: str, fail_writes: Optional[Iterable[int]] = None):
        self.uid = normalize_uid(uid)
        uid_bytes = bytes.fromhex(self.uid)
        self.blocks: List[bytearray] = [bytearray(BLOCK_SIZE) for _ in range(SECTOR_COUNT * BLOCKS_PER_SECTOR)]
        self.blocks[0] = bytearray(uid_bytes.ljust(BLOCK_SIZE, b"\x00"))
        for sector in range(SECTOR_COUNT):
            self.blocks[trailer_block(sector)] = bytearray(build_trailer(DEFAULT_KEY))
        self.fail_writes: Set[int] = set(fail_writes or ())

    def _check_block(self, block: int) -> None:
        if not 0 <= block < len(self.blocks):
            raise ChipReadError(f"Block {block} does not exist")

    def key_matches(self, block: int, key: bytes) -> bool:
        self._check_block(block)
        trailer = self.blocks[trailer_block(sector_of(block))]
        return bytes(key) in (bytes(trailer[0:6]), bytes(trailer[10:16]))

    def read(self, block: int, key: bytes) -> bytes:
        if not self.key_matches(block, key):
            raise AuthenticationError(f"Sector {sector_of(block)} refused the key")
        data = bytes(self.blocks[block])
        if is_trailer(block):
            # key A is never readable
            data = bytes(6) + data[6:]
        return data

    def write(self, block: int, data: bytes, key: bytes) -> None:
        if not self.key_matches(block, key):
            raise AuthenticationError(f"Sector {sector_of(block)} refused the key")
        if block == 0:
            raise ChipWriteError("Manufacturer block is read-only")
        if len(data) != BLOCK_SIZE:
            raise ChipWriteError(f"Block data must be {BLOCK_SIZE} bytes")
        if block in self.fail_writes:
            self.fail_writes.discard(block)
            raise ChipWriteError(f"Write to block {block} interrupted")
        self.blocks[block] = bytearray(data)

    def clone(self, copy_blocks: Iterable[int] = (1,)) -> "MifareClassicCard":
        """
        A 'magic' blank with the same UID and copies of the given blocks, as
        an attacker holding only the factory key could produce. Trailers stay
        at the factory key.
        """
        copy = MifareClassicCard(self.uid)
        for block in copy_blocks:
            if not is_trailer(block) and block != 0:
                copy.blocks[block] = bytearray(self.blocks[block])
        return copy


class MemoryReader(ChipReader):
    """Reader over emulated cards, used for development benches and tests."""

    def __init__(self, name: str = "memory", card: Optional[MifareClassicCard] = None):
        self.name = name
        self._card = card
        self._present = threading.Event()
        if card is not None:
            self._present.set()

    # ------------------------------------------------------------------
    # Bench controls
    # ------------------------------------------------------------------
    def present(self, card: MifareClassicCard) -> None:
        self._card = card
        self._present.set()

    def remove(self) -> None:
        self._card = None
        self._present.clear()

    @property
    def card(self) -> Optional[MifareClassicCard]:
        return self._card

    def _require_card(self) -> MifareClassicCard:
        if self._card is None:
            raise ChipReadError("No tag present on reader")
        return self._card

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    def read_uid(self) -> str:
        return self._require_card().uid

    def read_block(self, block: int, key: bytes) -> bytes:
        return self._require_card().read(block, key)

    def write_block(self, block: int, data: bytes, key: bytes) -> None:
        self._require_card().write(block, data, key)

    def authenticate(self, block: int, key: bytes) -> bool:
        return self._require_card().key_matches(block, key)

    def wait_for_card(self, timeout: float) -> bool:
        return self._present.wait(timeout)
