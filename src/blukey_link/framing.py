"""
Outer frame codec for the dongle's notification stream.

Frame format: [Opcode (1B)][Length (2B, little-endian)][Payload (Length bytes)]

BLE notifications are not frame aligned: a frame may be split across
several chunks, and the dongle may emit a plaintext banner before its first
binary frame. FrameDecoder accumulates chunks and yields complete frames,
resynchronizing on implausible lengths instead of failing.
"""

import logging
import struct
from dataclasses import dataclass

logger = logging.getLogger(__name__)

HEADER_SIZE = 3
MAX_FRAME_LEN = 1024

# How far to look for the next plausible frame start after a bad length
RESYNC_WINDOW = 128

# Every protocol opcode that starts a resynchronized frame has its high bit set
MIN_RESYNC_OPCODE = 0x80


@dataclass(frozen=True)
class Frame:
    """A complete (opcode, payload) record."""
    opcode: int
    payload: bytes

    def __repr__(self) -> str:
        return f"Frame(opcode=0x{self.opcode:02X}, len={len(self.payload)})"


def encode_frame(opcode: int, payload: bytes = b"") -> bytes:
    """
    Build an outer frame.

    Args:
        opcode: Frame opcode (0-255)
        payload: Frame payload, at most MAX_FRAME_LEN bytes

    Returns:
        Encoded frame bytes

    Raises:
        ValueError: If the payload is too long to frame
    """
    if len(payload) > MAX_FRAME_LEN:
        raise ValueError(f"Payload too long: {len(payload)} bytes (max {MAX_FRAME_LEN})")
    return struct.pack("<BH", opcode, len(payload)) + bytes(payload)


class FrameDecoder:
    """Turns an append-only byte accumulator into complete frames."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for the rest of a frame."""
        return len(self._buffer)

    def _length_at(self, pos: int) -> int:
        return self._buffer[pos + 1] | (self._buffer[pos + 2] << 8)

    def _plausible_frame_at(self, pos: int) -> bool:
        if pos + HEADER_SIZE > len(self._buffer):
            return False
        length = self._length_at(pos)
        if length > MAX_FRAME_LEN:
            return False
        return pos + HEADER_SIZE + length <= len(self._buffer)

    def _resync(self) -> bool:
        """
        Drop leading bytes up to the next plausible frame start.

        Returns:
            True if a candidate was found, False if the buffer was discarded
        """
        scan_limit = min(len(self._buffer) - 2, RESYNC_WINDOW)
        for pos in range(1, scan_limit):
            if self._buffer[pos] >= MIN_RESYNC_OPCODE and self._plausible_frame_at(pos):
                logger.warning(f"Framer resync: dropped {pos} leading bytes")
                del self._buffer[:pos]
                return True

        logger.warning(f"Framer resync: no frame start found, dropped {len(self._buffer)} bytes")
        self._buffer.clear()
        return False

    def push(self, chunk: bytes) -> list[Frame]:
        """
        Append a chunk and extract every complete frame.

        Args:
            chunk: Raw notification bytes

        Returns:
            Frames completed by this chunk, in arrival order
        """
        self._buffer.extend(chunk)
        frames: list[Frame] = []

        while len(self._buffer) >= HEADER_SIZE:
            opcode = self._buffer[0]
            length = self._length_at(0)

            if length > MAX_FRAME_LEN:
                if not self._resync():
                    break
                continue

            need = HEADER_SIZE + length
            if len(self._buffer) < need:
                break

            frames.append(Frame(opcode=opcode, payload=bytes(self._buffer[HEADER_SIZE:need])))
            del self._buffer[:need]

        return frames

    def reset(self) -> None:
        """Discard all buffered bytes."""
        self._buffer.clear()
