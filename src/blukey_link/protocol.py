"""
BluKeyborg wire protocol definitions.

Outer frames: [Opcode (1B)][Length (2B LE)][Payload]
Inner (secure channel) app frames use the same layout inside a B3 frame.
"""

import re
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .errors import ProtocolFormatError


class Opcode(IntEnum):
    """Outer frame opcodes."""
    ACK = 0x00
    PROVISION_REQUEST = 0xA0
    KEY_RESPONSE = 0xA1
    CHALLENGE = 0xA2
    PROOF = 0xA3
    SERVER_HELLO = 0xB0
    CLIENT_HELLO = 0xB1
    SERVER_FINISH = 0xB2
    SECURE = 0xB3
    RAW_KEY_TAP = 0xE0
    ERROR = 0xFF


class AppOpcode(IntEnum):
    """Inner opcodes carried inside a SECURE (B3) frame."""
    ACK = 0x00
    SET_LAYOUT = 0xC0
    GET_LAYOUT = 0xC1
    LAYOUT_REPLY = 0xC2
    ENABLE_FAST_KEYS = 0xC8
    SEND_TEXT = 0xD0
    TEXT_HASH_ACK = 0xD1


# Wire sizes
CHALLENGE_PAYLOAD_SIZE = 36      # salt16 || iterations_le32 || challenge16
PROOF_PAYLOAD_SIZE = 32
APP_KEY_PLAIN_SIZE = 32
APP_KEY_WRAPPED_SIZE = 48        # cipher32 || mac16
SERVER_HELLO_SIZE = 69           # serverPub65 || sid_be32
CLIENT_HELLO_SIZE = 81           # clientPub65 || mac16
SERVER_FINISH_SIZE = 16
TEXT_HASH_SIZE = 16


class DeviceErrorToken:
    """Status tokens the dongle places in ERROR (0xFF) payloads."""
    LOCKED_SINGLE_NEED_RESET = "LOCKED_SINGLE_NEED_RESET"
    MULTI_APP_DISABLED = "MULTI_APP_DISABLED"
    BAD_PROOF = "BAD_PROOF"
    NO_CHALLENGE = "NO_CHALLENGE"


GENERIC_DEVICE_ERROR = "Device error"

_DEVICE_ERROR_MESSAGES = (
    (DeviceErrorToken.MULTI_APP_DISABLED,
     "Dongle does not allow multi-app provisioning. Reset APPKEY on dongle."),
    (DeviceErrorToken.BAD_PROOF, "Bad password / proof."),
    (DeviceErrorToken.NO_CHALLENGE, "Device refused challenge."),
)


def describe_device_error(payload: bytes) -> str:
    """
    Convert an ERROR frame payload to a user-friendly message.

    Args:
        payload: UTF-8 status text from the dongle

    Returns:
        Description for a known token, the raw text otherwise, or a generic
        message when the payload is empty or not text
    """
    if not payload:
        return GENERIC_DEVICE_ERROR
    raw = payload.decode("utf-8", errors="replace").strip()
    if not raw:
        return GENERIC_DEVICE_ERROR

    if DeviceErrorToken.LOCKED_SINGLE_NEED_RESET in raw.upper():
        return (
            "Dongle is locked (single-app strict mode). "
            "To provision a new app you must factory reset the dongle."
        )
    for token, message in _DEVICE_ERROR_MESSAGES:
        if token in raw:
            return message
    return raw


def encode_app_frame(opcode: int, payload: bytes = b"") -> bytes:
    """Build an inner app frame: [op][len_le16][payload]."""
    return struct.pack("<BH", opcode, len(payload)) + bytes(payload)


def decode_app_frame(data: bytes) -> Optional[tuple[int, bytes]]:
    """
    Parse an inner app frame.

    Returns:
        Tuple of (opcode, payload), or None unless the declared length
        exactly covers the remaining bytes
    """
    if len(data) < 3:
        return None
    opcode, length = struct.unpack_from("<BH", data, 0)
    if len(data) != 3 + length:
        return None
    return opcode, bytes(data[3:])


_LAYOUT_PATTERN = re.compile(r"LAYOUT=([^ \t\r\n;]+)")


def parse_layout_reply(payload: bytes) -> str:
    """
    Extract the layout code from a LAYOUT_REPLY (C2) payload.

    The payload is informational text such as "LAYOUT=US_WINLIN;PROTO=1.2".

    Raises:
        ProtocolFormatError: If no LAYOUT= field is present
    """
    text = payload.decode("utf-8", errors="replace")
    match = _LAYOUT_PATTERN.search(text)
    if match is None:
        if "LAYOUT=" in text:
            raise ProtocolFormatError("LAYOUT missing")
        raise ProtocolFormatError("Bad C2")
    return match.group(1)


@dataclass
class TextHashAck:
    """
    TEXT_HASH_ACK (D1) reply.

    Format: [MD5 (16B)] or [Status (1B)][MD5 (16B)]
    """
    status: int
    digest: bytes

    @classmethod
    def parse(cls, payload: bytes) -> "TextHashAck":
        """Parse a D1 payload; short payloads are a format error."""
        if len(payload) < TEXT_HASH_SIZE:
            raise ProtocolFormatError("No/Bad D1")
        if len(payload) == TEXT_HASH_SIZE:
            return cls(status=0, digest=bytes(payload))
        return cls(status=payload[0], digest=bytes(payload[1:1 + TEXT_HASH_SIZE]))


def build_raw_key_tap(usage: int, mods: int = 0, repeat: int = 1) -> bytes:
    """
    Build the RAW_KEY_TAP (E0) payload.

    Format: [Mods (1B)][Usage (1B)] or [Mods][Usage][Repeat] when repeat > 1
    """
    repeat = max(1, min(255, repeat))
    payload = bytes([mods & 0xFF, usage & 0xFF])
    if repeat > 1:
        payload += bytes([repeat])
    return payload
