"""
BluKeyborg dongle client.

Every public operation is queued on the CommandSequencer, so at most one
protocol exchange is ever in flight. Failures are raised as LinkError
subclasses inside the engine and turned into Result values here.
"""

import argparse
import asyncio
import getpass
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .crypto import md5
from .errors import (
    AuthenticationError,
    DeviceError,
    LinkError,
    ProtocolFormatError,
    ProvisioningCancelled,
    ProvisioningError,
    SessionError,
    is_key_mismatch,
)
from .handshake import PROVISION_REPLY_TIMEOUT, SecureSessionEngine
from .link import FrameLink
from .protocol import (
    AppOpcode,
    Opcode,
    TextHashAck,
    build_raw_key_tap,
    parse_layout_reply,
)
from .sequencer import CommandSequencer
from .storage import DEFAULT_STORE_PATH, IniKeyStore, KeyStore, MemoryKeyStore
from .transport import BleakTransport, Transport, scan_devices

logger = logging.getLogger(__name__)

# Timeouts (seconds)
SERVER_HELLO_TIMEOUT = 6.0
SERVER_HELLO_TIMEOUT_UNPROVISIONED = 8.0
APP_REPLY_TIMEOUT = 4.0
TEXT_REPLY_TIMEOUT = 6.0

# Pause between dropping the link and reconnecting after provisioning
RECONNECT_DELAY = 0.25

UNPROVISIONED = "unprovisioned"

PasswordPrompt = Callable[[str], Awaitable[Optional[str]]]


@dataclass
class ClientConfig:
    """Client configuration."""
    device_id: str                         # Bluetooth address of the dongle
    send_newline: bool = False             # Append "\n" to every send_text
    allow_provisioning: bool = False       # Default for connect()
    strict_inbound_sequence: bool = False  # Reject replayed B3 frames


@dataclass
class Result:
    """Operation result."""
    success: bool
    message: str
    error: Optional[LinkError] = None
    value: Any = None


class DongleClient:
    """
    Client for a BluKeyborg dongle.

    Owns the transport, the frame link, the session engine and the command
    sequencer for one device.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: Optional[Transport] = None,
        key_store: Optional[KeyStore] = None,
        password_prompt: Optional[PasswordPrompt] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Client configuration
            transport: Bluetooth transport; a BleakTransport by default
            key_store: APPKEY store; in-memory by default
            password_prompt: Asked for the dongle password when provisioning
                is allowed; returns None to cancel
        """
        self.config = config
        self.key_store = key_store if key_store is not None else MemoryKeyStore()
        self.password_prompt = password_prompt
        self.link = FrameLink(transport if transport is not None else BleakTransport())
        self.engine = SecureSessionEngine(
            self.link,
            self.key_store,
            strict_inbound_seq=config.strict_inbound_sequence,
        )
        self.sequencer = CommandSequencer()
        self.layout: Optional[str] = None
        self.fast_keys_enabled = False
        self._teardown: Optional[asyncio.Future] = None

    @property
    def device_id(self) -> str:
        return self.config.device_id

    @property
    def is_secure(self) -> bool:
        return self.link.is_connected and self.engine.established

    async def _run(self, name: str, work: Callable[[], Awaitable[Any]], message: str = "OK") -> Result:
        """Queue a command and convert its outcome to a Result."""
        future = self.sequencer.submit(name, work)
        await asyncio.wait({future})

        if future.cancelled():
            logger.info(f"{name}: cancelled")
            return Result(success=False, message="Cancelled")

        error = future.exception()
        if error is None:
            return Result(success=True, message=message, value=future.result())
        if not isinstance(error, LinkError):
            raise error

        logger.error(f"{name} failed: {error}")
        return Result(success=False, message=str(error), error=error)

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def connect(self, allow_provisioning: Optional[bool] = None) -> Result:
        """
        Connect and establish the secure session.

        Args:
            allow_provisioning: Whether the password prompt may be used;
                defaults to the config setting

        Returns:
            Result of the connect
        """
        if allow_provisioning is None:
            allow_provisioning = self.config.allow_provisioning

        async def work() -> None:
            await self._connect(allow_provisioning)

        return await self._run("connect", work, "Secure connected")

    async def provision(self, password: str, timeout: float = PROVISION_REPLY_TIMEOUT) -> Result:
        """
        Provision a fresh APPKEY with the given password and reconnect.

        An unprovisioned dongle, or one rejecting the cached key, is an
        acceptable starting point.
        """
        async def work() -> None:
            try:
                await self._connect(allow_provisioning=False)
            except ProvisioningError as e:
                if str(e) != UNPROVISIONED:
                    raise
            except AuthenticationError as e:
                if not e.requires_reprovision:
                    raise
                self.key_store.clear(self.device_id)

            await self.engine.provision(self.device_id, password, timeout)
            await self._reconnect()

        return await self._run("provision", work, "Provisioned")

    async def ensure_secure(self) -> Result:
        """Connect (without provisioning) unless a session is already up."""
        return await self._run("ensure_secure", self._ensure_secure, "Secure connected")

    def disconnect(self) -> None:
        """
        Drop the link and abandon all queued and running commands.

        Takes effect immediately; callers of cancelled commands get a
        "Cancelled" result.
        """
        self.sequencer.cancel_all()
        self.link.reset()
        self.engine.reset()
        self.fast_keys_enabled = False
        self._teardown = asyncio.ensure_future(self.link.transport.disconnect())
        self._teardown.add_done_callback(self._on_teardown_done)
        logger.info("Disconnected")

    @staticmethod
    def _on_teardown_done(task: "asyncio.Future[None]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Transport teardown failed: {error!r}")

    async def close(self) -> None:
        """Like disconnect(), but waits for the transport to go down."""
        self.sequencer.cancel_all()
        self.engine.reset()
        self.fast_keys_enabled = False
        await self.link.close()

    async def _open(self) -> None:
        if self._teardown is not None and not self._teardown.done():
            await asyncio.wait({self._teardown})
        self.engine.reset()
        self.fast_keys_enabled = False
        await self.link.open(self.device_id)
        logger.info(f"CONNECT: link up to {self.device_id}")

    async def _drop(self) -> None:
        self.engine.reset()
        self.fast_keys_enabled = False
        await self.link.close()

    async def _reconnect(self) -> None:
        await self._drop()
        await asyncio.sleep(RECONNECT_DELAY)
        await self._connect(allow_provisioning=False)

    async def _ensure_secure(self) -> None:
        if self.is_secure:
            return
        await self._connect(allow_provisioning=False)

    async def _prompt_password(self, allow_provisioning: bool, reason: str) -> str:
        if not allow_provisioning or self.password_prompt is None:
            raise ProvisioningError(UNPROVISIONED)
        password = await self.password_prompt(reason)
        if not password:
            raise ProvisioningCancelled()
        return password

    async def _provision_and_reconnect(self, allow_provisioning: bool, reason: str) -> None:
        password = await self._prompt_password(allow_provisioning, reason)
        await self.engine.provision(self.device_id, password, PROVISION_REPLY_TIMEOUT)
        await self._reconnect()

    async def _connect(self, allow_provisioning: bool) -> None:
        has_key = self.key_store.get(self.device_id) is not None
        await self._open()

        hello = await self.engine.await_server_hello(
            SERVER_HELLO_TIMEOUT if has_key else SERVER_HELLO_TIMEOUT_UNPROVISIONED
        )

        if self.key_store.get(self.device_id) is None:
            logger.info("CONNECT: no local APPKEY -> prompt -> A0 provisioning")
            await self._provision_and_reconnect(
                allow_provisioning,
                "This app is not provisioned for this dongle. "
                "Enter dongle password to provision APPKEY.",
            )
            return

        try:
            await self.engine.handshake(self.device_id, hello)
        except LinkError as e:
            if not (allow_provisioning and is_key_mismatch(str(e))):
                raise
            logger.info("CONNECT: key mismatch on handshake -> reprovision")
            self.key_store.clear(self.device_id)
            await self._provision_and_reconnect(
                True,
                "Key mismatch. Enter dongle password to reprovision APPKEY.",
            )
            return

        await self._on_session_ready()

    async def _on_session_ready(self) -> None:
        # A failed layout refresh does not fail the connect
        try:
            await self._get_layout(APP_REPLY_TIMEOUT)
        except LinkError as e:
            logger.warning(f"CONNECT: getLayout failed after secure connect: {e}")

    # -------------------------------------------------------------------------
    # Secure operations
    # -------------------------------------------------------------------------

    async def send_text(self, text: str, verify: bool = True, timeout: float = TEXT_REPLY_TIMEOUT) -> Result:
        """
        Type text on the host the dongle is plugged into.

        Args:
            text: Text to send
            verify: Wait for the dongle's MD5 acknowledgement
            timeout: Reply timeout in seconds

        Returns:
            Result of the send
        """
        async def work() -> None:
            await self._ensure_secure()

            raw = text + "\n" if self.config.send_newline else text
            data = raw.encode("utf-8")
            expected = md5(data)
            logger.info(f"SEND: text len={len(data)} md5={expected.hex().upper()}")

            await self.engine.send_app_frame(AppOpcode.SEND_TEXT, data)
            if not verify:
                return

            ack = TextHashAck.parse(await self.engine.await_app_reply(AppOpcode.TEXT_HASH_ACK, timeout))
            if ack.status != 0:
                raise DeviceError(f"Device status 0x{ack.status:02X}")
            if ack.digest != expected:
                raise ProtocolFormatError("Hash mismatch")

        return await self._run("send_text", work, "Sent")

    async def set_layout(self, code: str, timeout: float = APP_REPLY_TIMEOUT) -> Result:
        """Select the dongle's keyboard layout, e.g. "DE_WINLIN"."""
        async def work() -> None:
            await self._ensure_secure()
            await self.engine.send_app_frame(AppOpcode.SET_LAYOUT, code.encode("utf-8"))
            payload = await self.engine.await_app_reply(AppOpcode.ACK, timeout)
            if payload:
                raise ProtocolFormatError("Bad ACK for layout")
            self._remember_layout(code)

        return await self._run("set_layout", work, f"Layout set to {code}")

    async def get_layout(self, timeout: float = APP_REPLY_TIMEOUT) -> Result:
        """Read the dongle's keyboard layout; the code is in Result.value."""
        async def work() -> str:
            await self._ensure_secure()
            return await self._get_layout(timeout)

        return await self._run("get_layout", work)

    async def _get_layout(self, timeout: float) -> str:
        await self.engine.send_app_frame(AppOpcode.GET_LAYOUT)
        code = parse_layout_reply(await self.engine.await_app_reply(AppOpcode.LAYOUT_REPLY, timeout))
        self._remember_layout(code)
        return code

    def _remember_layout(self, code: str) -> None:
        self.layout = code
        self.key_store.set_layout(self.device_id, code)

    async def enable_fast_keys(self, timeout: float = APP_REPLY_TIMEOUT) -> Result:
        """Switch the dongle to raw key taps for the rest of this session."""
        async def work() -> None:
            if self.fast_keys_enabled and self.is_secure:
                return
            await self._ensure_secure()
            await self.engine.send_app_frame(AppOpcode.ENABLE_FAST_KEYS, b"\x01")
            payload = await self.engine.await_app_reply(AppOpcode.ACK, timeout)
            if payload:
                raise ProtocolFormatError("No ACK for fast keys")
            self.fast_keys_enabled = True

        return await self._run("enable_fast_keys", work, "Fast keys enabled")

    async def raw_key_tap(self, usage: int, mods: int = 0, repeat: int = 1) -> Result:
        """
        Tap a HID key (usage id, modifier bitmask).

        Requires enable_fast_keys() in the current session. No reply is
        awaited.
        """
        async def work() -> None:
            await self._ensure_secure()
            if not self.fast_keys_enabled:
                raise SessionError("Fast keys not enabled")
            await self.engine.send_raw_frame(Opcode.RAW_KEY_TAP, build_raw_key_tap(usage, mods, repeat))

        return await self._run("raw_key_tap", work, "Sent")


# =============================================================================
# Command line
# =============================================================================

async def prompt_password(reason: str) -> Optional[str]:
    """Ask for the dongle password on the terminal; empty input cancels."""
    print(reason)
    password = await asyncio.to_thread(getpass.getpass, "Dongle password: ")
    return password or None


def _report(result: Result) -> int:
    if result.success:
        logger.info(result.message)
        return 0
    logger.error(result.message)
    return 1


async def main(args: argparse.Namespace) -> int:
    """
    Main entry point for the command line.

    Args:
        args: Parsed arguments from __main__

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "scan":
        try:
            devices = await scan_devices(args.timeout)
        except LinkError as e:
            logger.error(str(e))
            return 1
        return 0 if devices else 1

    config = ClientConfig(
        device_id=args.to,
        send_newline=getattr(args, "newline", False),
        allow_provisioning=True,
        strict_inbound_sequence=args.strict_sequence,
    )
    client = DongleClient(config, key_store=IniKeyStore(args.store), password_prompt=prompt_password)

    try:
        if args.command == "provision":
            password = await prompt_password("Enter provisioning password (setup password used on Wi-Fi portal).")
            if not password:
                logger.error("Password empty, aborting")
                return 1
            return _report(await client.provision(password))

        result = await client.connect()
        if not result.success:
            return _report(result)

        if args.command == "send-text":
            return _report(await client.send_text(args.text, verify=not args.no_verify))

        if args.command == "send-key":
            result = await client.enable_fast_keys()
            if not result.success:
                return _report(result)
            return _report(await client.raw_key_tap(args.usage, args.mods, args.repeat))

        if args.command == "get-layout":
            result = await client.get_layout()
            if result.success:
                print(result.value)
            return _report(result)

        if args.command == "set-layout":
            return _report(await client.set_layout(args.layout))

        logger.error(f"Unknown command: {args.command}")
        return 1
    finally:
        await client.close()


__all__ = [
    "APP_REPLY_TIMEOUT",
    "ClientConfig",
    "DEFAULT_STORE_PATH",
    "DongleClient",
    "PasswordPrompt",
    "Result",
    "SERVER_HELLO_TIMEOUT",
    "SERVER_HELLO_TIMEOUT_UNPROVISIONED",
    "TEXT_REPLY_TIMEOUT",
    "main",
    "prompt_password",
]
