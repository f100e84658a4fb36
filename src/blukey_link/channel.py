"""
Secure channel codec (B3 frames).

B3 payload: [Seq (2B BE)][CipherLen (2B BE)][Cipher][MAC (16B)]

    iv     = HMAC(ivKey, "IV1" || sid_be32 || dir || seq_be16)[:16]
    cipher = AES-256-CTR(encKey, iv, innerFrame)
    mac    = HMAC(macKey, "ENCM" || sid_be32 || dir || seq_be16 || cipher)[:16]

dir is 'C' for client -> dongle and 'S' for dongle -> client.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Optional

from .crypto import MAC16_SIZE, aes_ctr, digests_equal, hmac16
from .errors import ProtocolFormatError, SessionError
from .framing import encode_frame
from .protocol import Opcode

logger = logging.getLogger(__name__)

DIR_CLIENT = ord("C")
DIR_SERVER = ord("S")

IV_LABEL = b"IV1"
MAC_LABEL = b"ENCM"

SEQ_MODULUS = 0x10000
# The dongle refuses to reuse sequence numbers; the last one forces a new handshake
SEQ_LIMIT = 0xFFFF

SECURE_HEADER_SIZE = 4


@dataclass
class Session:
    """Established secure channel state. Never persisted."""
    sid: int
    session_key: bytes = field(repr=False)
    enc_key: bytes = field(repr=False)
    mac_key: bytes = field(repr=False)
    iv_key: bytes = field(repr=False)
    outbound_seq: int = 0


def sid_bytes(sid: int) -> bytes:
    """Session id as 4 bytes big-endian."""
    return struct.pack(">I", sid & 0xFFFFFFFF)


def message_iv(iv_key: bytes, sid: int, direction: int, seq: int) -> bytes:
    """Per-message CTR IV."""
    msg = IV_LABEL + sid_bytes(sid) + bytes([direction]) + struct.pack(">H", seq)
    return hmac16(iv_key, msg)


def message_mac(mac_key: bytes, sid: int, direction: int, seq: int, cipher: bytes) -> bytes:
    """Per-message truncated HMAC over the ciphertext."""
    msg = MAC_LABEL + sid_bytes(sid) + bytes([direction]) + struct.pack(">H", seq) + cipher
    return hmac16(mac_key, msg)


def seal_payload(session: Session, direction: int, seq: int, inner_frame: bytes) -> bytes:
    """Encrypt and authenticate an inner frame into a B3 payload."""
    cipher = aes_ctr(session.enc_key, message_iv(session.iv_key, session.sid, direction, seq), inner_frame)
    mac = message_mac(session.mac_key, session.sid, direction, seq, cipher)
    return struct.pack(">HH", seq, len(cipher)) + cipher + mac


def open_payload(session: Session, direction: int, payload: bytes) -> Optional[tuple[int, bytes]]:
    """
    Verify and decrypt a B3 payload.

    No decryption is attempted unless the MAC matches.

    Returns:
        Tuple of (seq, inner_frame), or None if malformed or unauthenticated
    """
    if len(payload) < SECURE_HEADER_SIZE + MAC16_SIZE:
        return None

    seq, cipher_len = struct.unpack_from(">HH", payload, 0)
    if len(payload) != SECURE_HEADER_SIZE + cipher_len + MAC16_SIZE:
        return None

    cipher = bytes(payload[SECURE_HEADER_SIZE:SECURE_HEADER_SIZE + cipher_len])
    mac_in = bytes(payload[SECURE_HEADER_SIZE + cipher_len:])

    expected = message_mac(session.mac_key, session.sid, direction, seq, cipher)
    if not digests_equal(mac_in, expected):
        logger.warning(f"B3 MAC mismatch seq={seq}")
        return None

    iv = message_iv(session.iv_key, session.sid, direction, seq)
    return seq, aes_ctr(session.enc_key, iv, cipher)


class SecureChannel:
    """
    Wraps and unwraps inner app frames under an established Session.

    Outbound sequence numbers advance on every wrap and are never rewound.
    Inbound sequence numbers are bound into the MAC; with strict_inbound_seq
    they must also increase strictly, which rejects replayed dongle frames.
    The comparison is on the raw 16-bit value with no wraparound: once the
    dongle has used 0xFFFF, every later frame is rejected until a new
    handshake installs a fresh channel.
    """

    def __init__(self, session: Session, strict_inbound_seq: bool = False):
        self.session = session
        self.strict_inbound_seq = strict_inbound_seq
        self._last_inbound_seq: Optional[int] = None

    def wrap(self, inner_frame: bytes) -> bytes:
        """
        Encrypt an inner app frame into a complete outer B3 frame.

        Args:
            inner_frame: [AppOp (1B)][Length (2B LE)][Payload]

        Returns:
            Outer frame bytes ready to write

        Raises:
            SessionError: If the outbound sequence space is exhausted
            ProtocolFormatError: If the result would exceed the frame limit
        """
        seq = self.session.outbound_seq % SEQ_MODULUS
        if seq >= SEQ_LIMIT:
            raise SessionError("MTLS seq wrap imminent; re-handshake required")

        try:
            frame = encode_frame(Opcode.SECURE, seal_payload(self.session, DIR_CLIENT, seq, inner_frame))
        except ValueError as e:
            raise ProtocolFormatError(str(e)) from e

        self.session.outbound_seq = (seq + 1) % SEQ_MODULUS
        logger.debug(f"B3 wrap seq={seq} clen={len(inner_frame)}")
        return frame

    def unwrap(self, payload: bytes) -> Optional[bytes]:
        """
        Authenticate and decrypt a B3 payload from the dongle.

        Returns:
            The inner app frame, or None if the frame is malformed, fails
            authentication, or (in strict mode) replays an old sequence
        """
        opened = open_payload(self.session, DIR_SERVER, payload)
        if opened is None:
            return None
        seq, inner = opened

        if self.strict_inbound_seq:
            if self._last_inbound_seq is not None and seq <= self._last_inbound_seq:
                logger.warning(f"B3 replay rejected seq={seq} last={self._last_inbound_seq}")
                return None
            self._last_inbound_seq = seq

        return inner
