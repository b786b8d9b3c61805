# =======================================================================================
# chipvault/utils/validators.py - Validation Helpers
# =======================================================================================
import re
from .exceptions import ConfigurationError, InvalidBlockData, ValidationFailed

BLOCK_SIZE = 16
_UID_SEPARATORS = re.compile(r"[\s:\-]")
_HEX = re.compile(r"^[0-9A-F]*$")

# Mifare UIDs are 4, 7 or 10 bytes
UID_LENGTHS = (4, 7, 10)


def normalize_uid(uid: str) -> str:
    """
    Canonical form of a tag serial: upper-case hex with no separators.

    Readers and phones report the same UID as '04:a1:b2:c3', '04A1B2C3' or
    '04 A1 B2 C3'; all of them map to '04A1B2C3'.
    """
    if uid is None:
        raise ValidationFailed("UID is required")
    cleaned = _UID_SEPARATORS.sub("", uid).upper()
    if not cleaned or not _HEX.match(cleaned) or len(cleaned) % 2:
        raise ValidationFailed(f"UID '{uid}' is not a hex serial")
    if len(cleaned) // 2 not in UID_LENGTHS:
        raise ValidationFailed(f"UID '{uid}' has {len(cleaned) // 2} bytes, expected 4, 7 or 10")
    return cleaned


def uid_to_bytes(uid: str) -> bytes:
    return bytes.fromhex(normalize_uid(uid))


def validate_chip_id(chip_id: str) -> str:
    """A chip id must fit one 16-byte block as ASCII."""
    if not chip_id or not chip_id.strip():
        raise ValidationFailed("Chip id is required")
    try:
        encoded = chip_id.encode("ascii")
    except UnicodeEncodeError:
        raise ValidationFailed(f"Chip id '{chip_id}' must be ASCII")
    if len(encoded) > BLOCK_SIZE:
        raise ValidationFailed(f"Chip id '{chip_id}' is longer than {BLOCK_SIZE} bytes")
    if b"\x00" in encoded:
        raise ValidationFailed("Chip id must not contain NUL bytes")
    return chip_id


# "-YYYY-MM-NNNNN" appended to the prefix by the monthly numbering
CHIP_ID_SUFFIX_LENGTH = 14
CHIP_ID_SEQUENCE_MAX = 99999


def validate_chip_id_prefix(prefix: str) -> str:
    """The prefix plus the monthly suffix must still fit one block."""
    if not prefix or not prefix.isascii() or not prefix.isalnum():
        raise ConfigurationError(f"CHIP_ID_PREFIX '{prefix}' must be ASCII letters or digits")
    if len(prefix) + CHIP_ID_SUFFIX_LENGTH > BLOCK_SIZE:
        raise ConfigurationError(
            f"CHIP_ID_PREFIX '{prefix}' is too long: at most {BLOCK_SIZE - CHIP_ID_SUFFIX_LENGTH} characters"
        )
    return prefix


def parse_block_hex(value: str, label: str) -> bytes:
    """Decode a 16-byte block submitted as 32 hex characters."""
    if not value or not value.strip():
        raise InvalidBlockData(f"{label} is missing")
    cleaned = _UID_SEPARATORS.sub("", value).upper()
    if len(cleaned) != BLOCK_SIZE * 2 or not _HEX.match(cleaned):
        raise InvalidBlockData(f"{label} must be {BLOCK_SIZE * 2} hex characters")
    return bytes.fromhex(cleaned)


def validate_archive_reason(reason: str, min_words: int) -> str:
    if not reason or not reason.strip():
        raise ValidationFailed("An archive reason is required")
    words = len(reason.split())
    if words < min_words:
        raise ValidationFailed(
            f"Archive reason must contain at least {min_words} words (got {words})"
        )
    return reason.strip()
