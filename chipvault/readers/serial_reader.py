# =======================================================================================
# chipvault/readers/serial_reader.py - Reader over an ESP32/PN532 serial bridge
# =======================================================================================
import itertools
import json
import logging
import threading
import time
from typing import Any, Dict, Optional
import serial
from pydantic import BaseModel, ValidationError
from ..utils.exceptions import AuthenticationError, ChipReadError, ChipWriteError
from ..utils.validators import BLOCK_SIZE, normalize_uid
from .base import ChipReader

logger = logging.getLogger(__name__)

# bridge error codes meaning "no tag in the field"
NO_CARD_ERRORS = ("nocard", "timeout")


class NoCardOnBridge(ChipReadError):
    """The bridge answered, but no tag is in the field."""


class BridgeMessage(BaseModel):
    """One JSON line from the bridge firmware."""
    t: str
    id: Optional[int] = None
    ok: bool = False
    data: Optional[str] = None
    err: Optional[str] = None


class SerialReader(ChipReader):
    """
    Talks to a microcontroller bridge with one JSON object per line.

    Requests:  {"t": "uid"|"read"|"write"|"auth"|"wait", "id": n, ...}
    Responses: {"t": "resp", "id": n, "ok": bool, "data": hex, "err": code}

    Error code "auth" maps to AuthenticationError, "nocard" and "timeout"
    to NoCardOnBridge, anything else to ChipReadError / ChipWriteError
    depending on the request. A bridge that does not answer at all is a
    ChipReadError.
    """

    def __init__(self, name: str, port: str, baud: int = 115200, timeout: float = 1.0):
        self.name = name
        self.port = port
        self.baud = baud
        self.timeout = timeout
        self._serial: Optional[serial.Serial] = None
        self._ids = itertools.count(1)
        self._io_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    def _connection(self) -> serial.Serial:
        if self._serial is None or not self._serial.is_open:
            logger.info("Opening %s @ %d for reader %s", self.port, self.baud, self.name)
            try:
                self._serial = serial.Serial(self.port, self.baud, timeout=self.timeout)
            except serial.SerialException as e:
                raise ChipReadError(f"Cannot open {self.port}: {e}")
        return self._serial

    def close(self) -> None:
        if self._serial is not None and self._serial.is_open:
            self._serial.close()
        self._serial = None

    # ------------------------------------------------------------------
    # Request / response
    # ------------------------------------------------------------------
    def _request(self, op: str, deadline: float, **fields: Any) -> BridgeMessage:
        msg_id = next(self._ids)
        frame: Dict[str, Any] = {"t": op, "id": msg_id, **fields}
        with self._io_lock:
            ser = self._connection()
            try:
                ser.write((json.dumps(frame) + "\n").encode())
                while time.monotonic() < deadline:
                    line = ser.readline().decode(errors="ignore").strip()
                    if not line:
                        continue
                    try:
                        message = BridgeMessage.model_validate_json(line)
                    except ValidationError:
                        logger.debug("[%s] Ignoring unparsable line: %s", self.name, line)
                        continue
                    if message.t == "resp" and message.id == msg_id:
                        return message
            except serial.SerialException as e:
                self.close()
                raise ChipReadError(f"Serial I/O error on {self.port}: {e}")
        raise ChipReadError(f"Reader {self.name} did not answer '{op}' in time")

    def _call(self, op: str, write: bool = False, wait: Optional[float] = None, **fields: Any) -> BridgeMessage:
        budget = (wait if wait is not None else 0) + self.timeout * 3
        response = self._request(op, time.monotonic() + budget, **fields)
        if response.ok:
            return response
        if response.err == "auth":
            raise AuthenticationError(f"Sector refused the key (block {fields.get('block')})")
        if response.err in NO_CARD_ERRORS:
            raise NoCardOnBridge(f"No tag present on reader {self.name}")
        if write:
            raise ChipWriteError(f"Bridge write failed: {response.err}")
        raise ChipReadError(f"Bridge error: {response.err}")

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    def read_uid(self) -> str:
        return normalize_uid(self._call("uid").data or "")

    def read_block(self, block: int, key: bytes) -> bytes:
        response = self._call("read", block=block, key=key.hex())
        try:
            data = bytes.fromhex(response.data or "")
        except ValueError:
            raise ChipReadError(f"Bridge returned non-hex data for block {block}")
        if len(data) != BLOCK_SIZE:
            raise ChipReadError(f"Bridge returned {len(data)} bytes for block {block}")
        return data

    def write_block(self, block: int, data: bytes, key: bytes) -> None:
        self._call("write", write=True, block=block, key=key.hex(), data=bytes(data).hex())

    def authenticate(self, block: int, key: bytes) -> bool:
        try:
            self._call("auth", block=block, key=key.hex())
        except AuthenticationError:
            return False
        return True

    def wait_for_card(self, timeout: float) -> bool:
        """False only when the bridge reports no tag within `timeout`; I/O errors propagate."""
        try:
            self._call("wait", wait=timeout, ms=int(timeout * 1000))
        except NoCardOnBridge:
            return False
        return True
