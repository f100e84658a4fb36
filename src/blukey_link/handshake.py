"""
Handshake and session state machine.

States:
    IDLE -> AWAITING_CHALLENGE -> AWAITING_PROOF_RESULT -> PROVISIONED_NO_SESSION
         -> AWAITING_SERVER_HELLO -> AWAITING_SERVER_FINISH -> ESTABLISHED
         -> CLOSED | FAILED

Key agreement (every connection, needs the APPKEY):
    dongle -> B0 [ServerPub (65B)][SID (4B BE)]
    client -> B1 [ClientPub (65B)][HMAC16(APPKEY, "KEYX" || T)]
    dongle -> B2 [HMAC16(macKey, "SFIN" || T)]

    T          = sid_be32 || serverPub || clientPub
    sessionKey = HKDF-SHA256(salt=APPKEY, ikm=ECDH, info="MT1" || T)
    encKey, macKey, ivKey = HMAC(sessionKey, "ENC" | "MAC" | "IVK")
"""

import asyncio
import logging
import struct
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import ec

from .channel import SecureChannel, Session, sid_bytes
from .crypto import (
    KEY_SIZE,
    PUBLIC_KEY_SIZE,
    digests_equal,
    ecdh_shared_secret,
    hkdf_sha256,
    hmac16,
    hmac_sha256,
    p256_key_agreement,
    public_key_bytes,
)
from .demux import opcode_in
from .errors import (
    AuthenticationError,
    DeviceError,
    LinkError,
    LinkTimeoutError,
    ProtocolFormatError,
    ProvisioningError,
    SessionError,
    is_key_mismatch,
)
from .link import FrameLink
from .protocol import (
    SERVER_FINISH_SIZE,
    SERVER_HELLO_SIZE,
    Opcode,
    decode_app_frame,
    describe_device_error,
    encode_app_frame,
)
from .provisioning import (
    ProvisioningChallenge,
    compute_proof,
    compute_verifier,
    normalized_password,
    raw_password,
    unwrap_app_key,
)
from .storage import KeyStore

logger = logging.getLogger(__name__)

# Timeouts (seconds)
PROVISION_REPLY_TIMEOUT = 6.0
SERVER_FINISH_TIMEOUT = 6.0

KEYX_LABEL = b"KEYX"
SFIN_LABEL = b"SFIN"
SESSION_INFO_LABEL = b"MT1"


class HandshakeState(Enum):
    """Handshake and session states."""
    IDLE = auto()
    AWAITING_CHALLENGE = auto()
    AWAITING_PROOF_RESULT = auto()
    PROVISIONED_NO_SESSION = auto()
    AWAITING_SERVER_HELLO = auto()
    AWAITING_SERVER_FINISH = auto()
    ESTABLISHED = auto()
    CLOSED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class ServerHello:
    """
    SERVER_HELLO (B0) payload.

    Format: [ServerPub (65B)][SID (4B BE)]
    Total: 69 bytes
    """
    server_public: bytes
    sid: int

    @classmethod
    def parse(cls, payload: bytes) -> "ServerHello":
        if len(payload) != SERVER_HELLO_SIZE:
            raise ProtocolFormatError(f"Bad B0 len={len(payload)}")
        (sid,) = struct.unpack_from(">I", payload, PUBLIC_KEY_SIZE)
        return cls(server_public=bytes(payload[:PUBLIC_KEY_SIZE]), sid=sid)

    def build(self) -> bytes:
        return self.server_public + sid_bytes(self.sid)


def transcript(hello: ServerHello, client_public: bytes) -> bytes:
    """Handshake transcript: sid_be32 || serverPub || clientPub."""
    return sid_bytes(hello.sid) + hello.server_public + client_public


def client_hello_mac(app_key: bytes, hello: ServerHello, client_public: bytes) -> bytes:
    return hmac16(app_key, KEYX_LABEL + transcript(hello, client_public))


def server_finish_mac(mac_key: bytes, hello: ServerHello, client_public: bytes) -> bytes:
    return hmac16(mac_key, SFIN_LABEL + transcript(hello, client_public))


def derive_session(app_key: bytes, shared_secret: bytes, hello: ServerHello, client_public: bytes) -> Session:
    """
    Derive the session keys from the ECDH secret.

    Args:
        app_key: 32-byte APPKEY (HKDF salt)
        shared_secret: Raw ECDH shared secret
        hello: The B0 this session answers
        client_public: Our 65-byte public point

    Returns:
        A fresh Session with outbound_seq = 0
    """
    info = SESSION_INFO_LABEL + transcript(hello, client_public)
    session_key = hkdf_sha256(app_key, shared_secret, info, KEY_SIZE)
    return Session(
        sid=hello.sid,
        session_key=session_key,
        enc_key=hmac_sha256(session_key, b"ENC"),
        mac_key=hmac_sha256(session_key, b"MAC"),
        iv_key=hmac_sha256(session_key, b"IVK"),
    )


class ClientHandshake:
    """Client side of one key agreement, bound to a single B0."""

    def __init__(
        self,
        app_key: bytes,
        hello: ServerHello,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
    ):
        """
        Args:
            app_key: 32-byte APPKEY
            hello: Parsed B0
            private_key: Ephemeral key; generated when not given
        """
        self.app_key = app_key
        self.hello = hello
        if private_key is None:
            self._private_key, self.client_public = p256_key_agreement()
        else:
            self._private_key = private_key
            self.client_public = public_key_bytes(private_key)

    def client_hello(self) -> bytes:
        """B1 payload: clientPub || mac16."""
        return self.client_public + client_hello_mac(self.app_key, self.hello, self.client_public)

    def finish(self, server_finish: bytes) -> Session:
        """
        Verify B2 and derive the session.

        Raises:
            ProtocolFormatError: If B2 has the wrong length
            AuthenticationError: If ECDH fails or the SFIN tag does not match
        """
        if len(server_finish) != SERVER_FINISH_SIZE:
            raise ProtocolFormatError("Bad B2")

        shared = ecdh_shared_secret(self._private_key, self.hello.server_public)
        if shared is None:
            raise AuthenticationError("ECDH failed")

        session = derive_session(self.app_key, shared, self.hello, self.client_public)
        expected = server_finish_mac(session.mac_key, self.hello, self.client_public)
        if not digests_equal(expected, server_finish):
            raise AuthenticationError("SFIN mismatch", requires_reprovision=True)
        return session


class SecureSessionEngine:
    """
    Drives provisioning and key agreement over a FrameLink and owns the
    resulting session.

    Only the running sequencer command (or the inbound delivery path) may
    call into the engine; it holds no locks of its own.
    """

    def __init__(self, link: FrameLink, key_store: KeyStore, strict_inbound_seq: bool = False):
        self.link = link
        self.key_store = key_store
        self.strict_inbound_seq = strict_inbound_seq
        self.state = HandshakeState.IDLE
        self._channel: Optional[SecureChannel] = None

    @property
    def session(self) -> Optional[Session]:
        return self._channel.session if self._channel else None

    @property
    def established(self) -> bool:
        return self._channel is not None and self.state == HandshakeState.ESTABLISHED

    def _set_state(self, state: HandshakeState) -> None:
        if state != self.state:
            logger.debug(f"MTLS: {self.state.name} -> {state.name}")
            self.state = state

    def reset(self) -> None:
        """Destroy the session (disconnect, failure or explicit reset)."""
        self._channel = None
        self._set_state(HandshakeState.CLOSED)

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    async def provision(self, device_id: str, password: str, timeout: float = PROVISION_REPLY_TIMEOUT) -> None:
        """
        Obtain an APPKEY from the dongle and hand it to the key store.

        The raw password is tried first. If its proof is rejected, the
        normalized password is tried once against a freshly issued
        challenge, because challenges are single use. An ERROR answer to
        the challenge request itself is final.

        Raises:
            LinkError: The final attempt's failure
        """
        try:
            challenge = await self._request_challenge(timeout)
            try:
                app_key = await self._prove(raw_password(password), challenge, timeout)
            except (AuthenticationError, DeviceError) as e:
                logger.info(f"PROV: raw proof failed ({e}), retrying with normalized password")
                challenge = await self._request_challenge(timeout)
                app_key = await self._prove(normalized_password(password), challenge, timeout)
        except LinkError:
            self._set_state(HandshakeState.FAILED)
            raise

        if not self.key_store.put(device_id, app_key):
            self._set_state(HandshakeState.FAILED)
            raise ProvisioningError("Failed to store APPKEY")

        logger.info(f"PROV: APPKEY stored for {device_id}")
        self._set_state(HandshakeState.PROVISIONED_NO_SESSION)

    async def _request_challenge(self, timeout: float) -> ProvisioningChallenge:
        self._set_state(HandshakeState.AWAITING_CHALLENGE)
        logger.info("PROV: sending A0 (challenge request)")
        await self.link.send_frame(Opcode.PROVISION_REQUEST, b"", control=True)

        frame = await self.link.next_frame(opcode_in(Opcode.CHALLENGE, Opcode.ERROR), timeout)
        if frame is None:
            raise LinkTimeoutError("No CHALLENGE")
        if frame.opcode == Opcode.ERROR:
            raise DeviceError(describe_device_error(frame.payload), frame.payload.decode("utf-8", "replace"))

        challenge = ProvisioningChallenge.parse(frame.payload)
        logger.debug(f"PROV: challenge iterations={challenge.iterations}")
        return challenge

    async def _prove(self, password: bytes, challenge: ProvisioningChallenge, timeout: float) -> bytes:
        # PBKDF2 is slow on purpose; keep it off the event loop
        verifier = await asyncio.to_thread(compute_verifier, password, challenge)
        proof = compute_proof(verifier, challenge)

        self._set_state(HandshakeState.AWAITING_PROOF_RESULT)
        logger.info(f"PROV: sending A3 (proof), mac16={proof[:2].hex().upper()}..")
        await self.link.send_frame(Opcode.PROOF, proof, control=True)

        frame = await self.link.next_frame(opcode_in(Opcode.KEY_RESPONSE, Opcode.ERROR), timeout)
        if frame is None:
            raise LinkTimeoutError("No A1")
        if frame.opcode == Opcode.ERROR:
            raise DeviceError(describe_device_error(frame.payload), frame.payload.decode("utf-8", "replace"))

        app_key = unwrap_app_key(verifier, challenge, frame.payload)
        if app_key is None:
            raise AuthenticationError("Proof rejected")
        return app_key

    # -------------------------------------------------------------------------
    # Key agreement
    # -------------------------------------------------------------------------

    async def await_server_hello(self, timeout: float) -> ServerHello:
        """
        Wait for the B0 the dongle sends after every connect.

        Raises:
            LinkTimeoutError: If no B0 arrives in time
            ProtocolFormatError: If B0 has the wrong length
        """
        self._set_state(HandshakeState.AWAITING_SERVER_HELLO)
        logger.info(f"CONNECT: waiting for B0 (timeout {timeout}s)")
        frame = await self.link.next_frame(opcode_in(Opcode.SERVER_HELLO), timeout)
        if frame is None:
            self._set_state(HandshakeState.FAILED)
            raise LinkTimeoutError("No B0")
        try:
            return ServerHello.parse(frame.payload)
        except ProtocolFormatError:
            self._set_state(HandshakeState.FAILED)
            raise

    async def handshake(
        self,
        device_id: str,
        hello: ServerHello,
        timeout: float = SERVER_FINISH_TIMEOUT,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
    ) -> Session:
        """
        Run B1/B2 from a received B0 and install the session.

        Raises:
            ProvisioningError: If no APPKEY is stored for the device
            AuthenticationError: On SFIN mismatch or a BADMAC-like device error
            LinkError: On transport failure, timeout or device error
        """
        self._channel = None
        try:
            app_key = self.key_store.get(device_id)
            if app_key is None or len(app_key) != KEY_SIZE:
                raise ProvisioningError("APPKEY missing")

            exchange = ClientHandshake(app_key, hello, private_key)
            logger.info(f"MTLS: got B0 sid={hello.sid}, sending B1")
            self._set_state(HandshakeState.AWAITING_SERVER_FINISH)
            await self.link.send_frame(Opcode.CLIENT_HELLO, exchange.client_hello(), control=True)

            frame = await self.link.next_frame(opcode_in(Opcode.SERVER_FINISH, Opcode.ERROR), timeout)
            if frame is None:
                raise LinkTimeoutError("B2 timeout")
            if frame.opcode == Opcode.ERROR:
                message = describe_device_error(frame.payload)
                if is_key_mismatch(message):
                    raise AuthenticationError(message, requires_reprovision=True)
                raise DeviceError(message, frame.payload.decode("utf-8", "replace"))

            session = exchange.finish(frame.payload)
        except LinkError as e:
            logger.error(f"MTLS: handshake failed: {e}")
            self._set_state(HandshakeState.FAILED)
            raise

        self._channel = SecureChannel(session, strict_inbound_seq=self.strict_inbound_seq)
        self._set_state(HandshakeState.ESTABLISHED)
        logger.info(f"MTLS session established (sid={session.sid})")
        return session

    # -------------------------------------------------------------------------
    # Secure app frames
    # -------------------------------------------------------------------------

    def _require_channel(self) -> SecureChannel:
        if self._channel is None or self.state != HandshakeState.ESTABLISHED:
            raise SessionError("Not secure (MTLS not established)")
        return self._channel

    async def send_app_frame(self, opcode: int, payload: bytes = b"") -> None:
        """
        Wrap an app frame in B3 and write it.

        The sequence number is consumed even if the write then fails.
        """
        channel = self._require_channel()
        try:
            frame = channel.wrap(encode_app_frame(opcode, payload))
        except SessionError:
            self.reset()
            raise
        await self.link.write(frame)

    async def await_app_reply(self, expect: int, timeout: float) -> bytes:
        """
        Wait for a B3 frame whose inner opcode is expect.

        B3 frames that fail authentication or carry another inner opcode
        are discarded and the wait continues within the same budget.

        Returns:
            The inner payload

        Raises:
            LinkTimeoutError: If the budget runs out first
        """
        channel = self._require_channel()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            frame = await self.link.next_frame(opcode_in(Opcode.SECURE), remaining)
            if frame is None:
                break

            inner = channel.unwrap(frame.payload)
            decoded = decode_app_frame(inner) if inner is not None else None
            if decoded is None:
                logger.warning("B3: dropped unreadable frame")
                continue

            opcode, payload = decoded
            if opcode == expect:
                return payload
            logger.debug(f"B3: skipping inner op=0x{opcode:02X} while waiting for 0x{expect:02X}")

        raise LinkTimeoutError(f"No reply 0x{expect:02X}")

    async def send_raw_frame(self, opcode: int, payload: bytes = b"") -> None:
        """Write a plain (non-B3) frame that still requires a live session."""
        self._require_channel()
        await self.link.send_frame(opcode, payload)


__all__ = [
    "ClientHandshake",
    "HandshakeState",
    "SecureSessionEngine",
    "ServerHello",
    "client_hello_mac",
    "derive_session",
    "server_finish_mac",
    "transcript",
]
