# =======================================================================================
# chipvault/readers/__init__.py - Readers Package
# =======================================================================================
from .base import ChipReader
from .memory import MemoryReader, MifareClassicCard
from .pool import ReaderPool
from .serial_reader import SerialReader

__all__ = ["ChipReader", "MemoryReader", "MifareClassicCard", "ReaderPool", "SerialReader"]
