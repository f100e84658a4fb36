"""
Cryptographic primitives for the BluKeyborg secure channel.

Provides HMAC-SHA256, PBKDF2-HMAC-SHA256, HKDF-SHA256, AES-256-CTR,
P-256 ECDH and MD5. All functions are pure and stateless.
"""

from typing import Optional

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import constant_time, hashes, hmac
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

# Constants
KEY_SIZE = 32        # AES-256 / HMAC-SHA256 key size
IV_SIZE = 16         # AES block size
MAC16_SIZE = 16      # Truncated HMAC tag
PUBLIC_KEY_SIZE = 65  # Uncompressed P-256 point: 0x04 || X || Y


def md5(data: bytes) -> bytes:
    """Compute the MD5 digest used by the dongle's text acknowledgement."""
    digest = hashes.Hash(hashes.MD5(), backend=default_backend())
    digest.update(data)
    return digest.finalize()


def hmac_sha256(key: bytes, msg: bytes) -> bytes:
    """Compute HMAC-SHA256 over msg (32 bytes)."""
    h = hmac.HMAC(key, hashes.SHA256(), backend=default_backend())
    h.update(msg)
    return h.finalize()


def hmac16(key: bytes, msg: bytes) -> bytes:
    """HMAC-SHA256 truncated to its first 16 bytes."""
    return hmac_sha256(key, msg)[:MAC16_SIZE]


def digests_equal(a: bytes, b: bytes) -> bool:
    """Constant-time comparison of two tags."""
    return constant_time.bytes_eq(bytes(a), bytes(b))


def pbkdf2_sha256(password: bytes, salt: bytes, iterations: int, key_len: int = KEY_SIZE) -> Optional[bytes]:
    """
    Derive key material from a password using PBKDF2-HMAC-SHA256.

    Args:
        password: Password bytes
        salt: Salt bytes
        iterations: Iteration count (clamped to at least 1)
        key_len: Output length in bytes

    Returns:
        Derived bytes, or None if the underlying primitive rejects the input
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=key_len,
        salt=salt,
        iterations=max(1, iterations),
        backend=default_backend(),
    )
    try:
        return kdf.derive(password)
    except ValueError:
        return None


def hkdf_sha256(salt: bytes, ikm: bytes, info: bytes, out_len: int = KEY_SIZE) -> bytes:
    """
    Standard HKDF-SHA256 extract-then-expand.

    Args:
        salt: HKDF salt
        ikm: Input key material
        info: Context string
        out_len: Output length in bytes

    Returns:
        out_len derived bytes
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=out_len,
        salt=salt,
        info=info,
        backend=default_backend(),
    )
    return hkdf.derive(ikm)


def aes_ctr(key: bytes, iv: bytes, data: bytes) -> bytes:
    """
    AES-256-CTR with a 128-bit big-endian counter.

    The same call encrypts and decrypts.

    Args:
        key: 32-byte key
        iv: 16-byte initial counter block
        data: Input bytes

    Returns:
        Output bytes, same length as data
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes")
    if len(iv) != IV_SIZE:
        raise ValueError(f"IV must be {IV_SIZE} bytes")

    cipher = Cipher(algorithms.AES(key), modes.CTR(iv), backend=default_backend())
    encryptor = cipher.encryptor()
    return encryptor.update(data) + encryptor.finalize()


def public_key_bytes(private_key: ec.EllipticCurvePrivateKey) -> bytes:
    """Encode the public half of a P-256 key as a 65-byte uncompressed point."""
    return private_key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)


def p256_key_agreement() -> tuple[ec.EllipticCurvePrivateKey, bytes]:
    """
    Generate an ephemeral P-256 key pair.

    Returns:
        Tuple of (private_key, uncompressed_public_key_65)
    """
    private_key = ec.generate_private_key(ec.SECP256R1(), backend=default_backend())
    return private_key, public_key_bytes(private_key)


def ecdh_shared_secret(private_key: ec.EllipticCurvePrivateKey, peer_public: bytes) -> Optional[bytes]:
    """
    Compute the raw 32-byte ECDH shared secret.

    Args:
        private_key: Our P-256 private key
        peer_public: Peer's 65-byte uncompressed public point

    Returns:
        Shared secret, or None if the peer point is invalid
    """
    if len(peer_public) != PUBLIC_KEY_SIZE:
        return None
    try:
        peer = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), bytes(peer_public))
        return private_key.exchange(ec.ECDH(), peer)
    except ValueError:
        return None
