"""
APPKEY provisioning computations.

Flow (driven by the session engine):
    client -> A0 (empty)
    dongle -> A2 [Salt (16B)][Iterations (4B LE)][Challenge (16B)]
    client -> A3 [HMAC-SHA256(verifier, "APPKEY" || challenge) (32B)]
    dongle -> A1 [APPKEY (32B)] or [Cipher (32B)][MAC (16B)]

verifier = PBKDF2-HMAC-SHA256(password, salt, iterations, 32)
"""

import logging
import struct
import unicodedata
from dataclasses import dataclass
from typing import Optional

from .crypto import aes_ctr, digests_equal, hmac16, hmac_sha256, pbkdf2_sha256
from .errors import ProtocolFormatError, ProvisioningError
from .protocol import APP_KEY_PLAIN_SIZE, APP_KEY_WRAPPED_SIZE, CHALLENGE_PAYLOAD_SIZE

logger = logging.getLogger(__name__)

SALT_SIZE = 16
CHALLENGE_SIZE = 16
VERIFIER_SIZE = 32

PROOF_LABEL = b"APPKEY"
WRAP_KEY_LABEL = b"AKWRAP"
WRAP_MAC_LABEL = b"AKMAC"
WRAP_IV_LABEL = b"AKIV"


@dataclass(frozen=True)
class ProvisioningChallenge:
    """One-shot challenge issued by the dongle in an A2 frame."""
    salt: bytes
    iterations: int
    challenge: bytes

    @classmethod
    def parse(cls, payload: bytes) -> "ProvisioningChallenge":
        """
        Parse an A2 payload.

        Raises:
            ProtocolFormatError: If the payload is not exactly 36 bytes
        """
        if len(payload) != CHALLENGE_PAYLOAD_SIZE:
            raise ProtocolFormatError(f"Bad CHALLENGE len={len(payload)}")
        (iterations,) = struct.unpack_from("<I", payload, SALT_SIZE)
        return cls(
            salt=bytes(payload[:SALT_SIZE]),
            iterations=iterations,
            challenge=bytes(payload[SALT_SIZE + 4:]),
        )

    def build(self) -> bytes:
        """Encode back to the A2 wire layout."""
        return self.salt + struct.pack("<I", self.iterations) + self.challenge


def raw_password(password: str) -> bytes:
    """Password exactly as typed, UTF-8 encoded."""
    return password.encode("utf-8")


def normalized_password(password: str) -> bytes:
    """Whitespace-trimmed, NFKC-normalized password, UTF-8 encoded."""
    return unicodedata.normalize("NFKC", password.strip()).encode("utf-8")


def compute_verifier(password: bytes, challenge: ProvisioningChallenge) -> bytes:
    """Derive the password verifier for a challenge."""
    verifier = pbkdf2_sha256(password, challenge.salt, challenge.iterations, VERIFIER_SIZE)
    if verifier is None:
        raise ProvisioningError("PBKDF2 failed")
    return verifier


def compute_proof(verifier: bytes, challenge: ProvisioningChallenge) -> bytes:
    """A3 proof: HMAC-SHA256(verifier, "APPKEY" || challenge)."""
    return hmac_sha256(verifier, PROOF_LABEL + challenge.challenge)


def wrap_key(verifier: bytes, challenge: ProvisioningChallenge) -> bytes:
    """Key protecting a wrapped APPKEY: HMAC(verifier, "AKWRAP" || challenge)."""
    return hmac_sha256(verifier, WRAP_KEY_LABEL + challenge.challenge)


def wrap_iv(verifier: bytes, challenge: ProvisioningChallenge) -> bytes:
    """CTR IV for a wrapped APPKEY: HMAC(verifier, "AKIV" || challenge)[:16]."""
    return hmac16(verifier, WRAP_IV_LABEL + challenge.challenge)


def wrap_mac(key: bytes, challenge: ProvisioningChallenge, cipher: bytes) -> bytes:
    """Tag over a wrapped APPKEY: HMAC(wrapKey, "AKMAC" || challenge || cipher)[:16]."""
    return hmac16(key, WRAP_MAC_LABEL + challenge.challenge + cipher)


def unwrap_app_key(verifier: bytes, challenge: ProvisioningChallenge, payload: bytes) -> Optional[bytes]:
    """
    Recover the APPKEY from an A1 payload.

    Args:
        verifier: Verifier used to compute the accepted proof
        challenge: Challenge the proof answered
        payload: A1 payload (32 bytes plain, or 48 bytes wrapped)

    Returns:
        The 32-byte APPKEY, or None if the payload is rejected
    """
    if len(payload) == APP_KEY_PLAIN_SIZE:
        return bytes(payload)

    if len(payload) != APP_KEY_WRAPPED_SIZE:
        logger.warning(f"Unexpected A1 payload size: {len(payload)}")
        return None

    cipher = bytes(payload[:32])
    mac_in = bytes(payload[32:])

    key = wrap_key(verifier, challenge)
    if not digests_equal(mac_in, wrap_mac(key, challenge, cipher)):
        logger.warning("Wrapped APPKEY MAC mismatch")
        return None

    plain = aes_ctr(key, wrap_iv(verifier, challenge), cipher)
    if len(plain) != APP_KEY_PLAIN_SIZE:
        return None
    return plain
