# =======================================================================================
# chipvault/readers/pool.py - Exclusive access to attached readers
# =======================================================================================
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List
from ..utils.exceptions import ReaderBusy, ReaderNotFound
from .base import ChipReader

logger = logging.getLogger(__name__)


class ReaderPool:
    """One lock per physical reader: a reader serves one encode/verify at a time."""

    def __init__(self, default_timeout: float = 5.0):
        self.default_timeout = default_timeout
        self._readers: Dict[str, ChipReader] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def register(self, reader: ChipReader) -> None:
        with self._registry_lock:
            if reader.name in self._readers:
                raise ValueError(f"Reader '{reader.name}' is already registered")
            self._readers[reader.name] = reader
            self._locks[reader.name] = threading.Lock()
        logger.info("Registered reader %s (%s)", reader.name, type(reader).__name__)

    def unregister(self, name: str) -> None:
        with self._registry_lock:
            reader = self._readers.pop(name, None)
            self._locks.pop(name, None)
        if reader is not None:
            reader.close()

    def names(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._readers)

    def is_busy(self, name: str) -> bool:
        with self._registry_lock:
            lock = self._locks.get(name)
        if lock is None:
            raise ReaderNotFound(f"Reader '{name}' is not registered")
        return lock.locked()

    @contextmanager
    def acquire(self, name: str, timeout: float = None) -> Iterator[ChipReader]:
        """Hold a reader exclusively. Raises ReaderBusy if the wait expires."""
        with self._registry_lock:
            reader = self._readers.get(name)
            lock = self._locks.get(name)
        if reader is None or lock is None:
            raise ReaderNotFound(f"Reader '{name}' is not registered")

        wait = self.default_timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            raise ReaderBusy(f"Reader '{name}' is in use")
        try:
            yield reader
        finally:
            lock.release()

    def close_all(self) -> None:
        for name in self.names():
            self.unregister(name)
