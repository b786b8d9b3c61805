# =======================================================================================
# chipvault/protocol/layout.py - Mifare Classic block layout
# =======================================================================================
"""
Where the chip identity lives on a Mifare Classic 1K tag.

    block 1  (sector 0, factory key) : chip id, readable by anyone
    block 4  (sector 1, derived key) : chip id
    block 8  (sector 2, derived key) : checksum
    block 7 / 11                     : trailers of sectors 1 and 2

A trailer is key A (6) + access bits (3) + general purpose byte (1) + key B (6).
Protected trailers carry the derived key as both key A and key B, so the
factory key no longer opens those sectors.
"""
from typing import Optional
from ..utils.exceptions import InvalidBlockData
from ..utils.validators import BLOCK_SIZE, validate_chip_id

BLOCKS_PER_SECTOR = 4
SECTOR_COUNT = 16

DEFAULT_KEY = bytes([0xFF] * 6)

PUBLIC_ID_BLOCK = 1
PROTECTED_ID_BLOCK = 4
CHECKSUM_BLOCK = 8
PROTECTED_SECTORS = (1, 2)

# Transport configuration bits: key A/B authenticate data blocks, keys writable with key A.
ACCESS_BITS = bytes([0xFF, 0x07, 0x80])
GENERAL_PURPOSE_BYTE = 0x69


def sector_of(block: int) -> int:
    return block // BLOCKS_PER_SECTOR


def trailer_block(sector: int) -> int:
    return sector * BLOCKS_PER_SECTOR + BLOCKS_PER_SECTOR - 1


def is_trailer(block: int) -> bool:
    return block % BLOCKS_PER_SECTOR == BLOCKS_PER_SECTOR - 1


def build_trailer(key_a: bytes, key_b: Optional[bytes] = None) -> bytes:
    if len(key_a) != 6 or (key_b is not None and len(key_b) != 6):
        raise ValueError("Mifare keys are 6 bytes")
    return key_a + ACCESS_BITS + bytes([GENERAL_PURPOSE_BYTE]) + (key_b or key_a)


def encode_chip_id(chip_id: str) -> bytes:
    """ASCII chip id, NUL padded to one block."""
    validate_chip_id(chip_id)
    return chip_id.encode("ascii").ljust(BLOCK_SIZE, b"\x00")


def decode_chip_id(block: bytes) -> str:
    if len(block) != BLOCK_SIZE:
        raise InvalidBlockData(f"Block must be {BLOCK_SIZE} bytes, got {len(block)}")
    raw = bytes(block).rstrip(b"\x00")
    try:
        return raw.decode("ascii")
    except UnicodeDecodeError:
        raise InvalidBlockData("Block does not hold an ASCII chip id")
