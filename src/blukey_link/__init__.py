"""
BluKeyborg dongle link.

This package implements the client side of the BluKeyborg secure channel:
frame delimiting over BLE notifications, APPKEY provisioning, the P-256
key-agreement handshake and the AES-CTR/HMAC secure frame codec.
"""

from .crypto import (
    hmac_sha256,
    hmac16,
    pbkdf2_sha256,
    hkdf_sha256,
    aes_ctr,
    p256_key_agreement,
    ecdh_shared_secret,
    KEY_SIZE,
    IV_SIZE,
    PUBLIC_KEY_SIZE,
)
from .errors import (
    LinkError,
    TransportError,
    ProtocolFormatError,
    LinkTimeoutError,
    DeviceError,
    AuthenticationError,
    ProvisioningError,
    ProvisioningCancelled,
    SessionError,
    is_key_mismatch,
)
from .framing import Frame, FrameDecoder, encode_frame, MAX_FRAME_LEN
from .protocol import Opcode, AppOpcode, describe_device_error
from .channel import Session, SecureChannel
from .handshake import HandshakeState, ServerHello, ClientHandshake, SecureSessionEngine
from .demux import RxDemux, opcode_in
from .sequencer import CommandSequencer
from .storage import KeyStore, MemoryKeyStore, IniKeyStore, slot_id
from .transport import (
    Transport,
    BleakTransport,
    scan_devices,
    SERVICE_UUID,
    TX_CHAR_UUID,
    RX_CHAR_UUID,
)
from .client import DongleClient, ClientConfig, Result

__all__ = [
    # Crypto
    "hmac_sha256",
    "hmac16",
    "pbkdf2_sha256",
    "hkdf_sha256",
    "aes_ctr",
    "p256_key_agreement",
    "ecdh_shared_secret",
    "KEY_SIZE",
    "IV_SIZE",
    "PUBLIC_KEY_SIZE",
    # Errors
    "LinkError",
    "TransportError",
    "ProtocolFormatError",
    "LinkTimeoutError",
    "DeviceError",
    "AuthenticationError",
    "ProvisioningError",
    "ProvisioningCancelled",
    "SessionError",
    "is_key_mismatch",
    # Framing and protocol
    "Frame",
    "FrameDecoder",
    "encode_frame",
    "MAX_FRAME_LEN",
    "Opcode",
    "AppOpcode",
    "describe_device_error",
    # Session
    "Session",
    "SecureChannel",
    "HandshakeState",
    "ServerHello",
    "ClientHandshake",
    "SecureSessionEngine",
    "RxDemux",
    "opcode_in",
    "CommandSequencer",
    # Collaborators
    "KeyStore",
    "MemoryKeyStore",
    "IniKeyStore",
    "slot_id",
    "Transport",
    "BleakTransport",
    "scan_devices",
    "SERVICE_UUID",
    "TX_CHAR_UUID",
    "RX_CHAR_UUID",
    # Client
    "DongleClient",
    "ClientConfig",
    "Result",
]
