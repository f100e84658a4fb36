"""
BLE transport for the BluKeyborg dongle.

The dongle exposes a Nordic UART style service: the client writes frames to
the TX characteristic and receives notification chunks from RX. Chunks are
not frame aligned; they are handed as-is to the link's chunk handler.
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from .errors import TransportError

logger = logging.getLogger(__name__)

# Nordic UART service
SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
TX_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # write
RX_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # notify

# Timeouts (seconds)
SCAN_TIMEOUT = 10.0
CONNECT_TIMEOUT = 15.0

# ATT long writes (with response) are capped at 512 bytes
MAX_ATTRIBUTE_SIZE = 512

ChunkHandler = Callable[[bytes], None]


class Transport(Protocol):
    """What the link needs from a Bluetooth connection."""

    @property
    def is_connected(self) -> bool:
        """Link-up signal."""
        ...

    async def connect(self, device_id: str, on_chunk: ChunkHandler) -> None:
        """Connect and start delivering notification chunks to on_chunk."""
        ...

    async def disconnect(self) -> None:
        """Drop the link. Safe to call when already disconnected."""
        ...

    def max_write_size(self, control: bool) -> int:
        """Largest single write the negotiated MTU allows."""
        ...

    async def write(self, data: bytes, control: bool) -> None:
        """Write one frame; control frames use write-with-response."""
        ...


class BleakTransport:
    """Transport backed by a bleak GATT client."""

    def __init__(self, scan_timeout: float = SCAN_TIMEOUT):
        self.scan_timeout = scan_timeout
        self._client: Optional[BleakClient] = None
        self._tx_char: Optional[BleakGATTCharacteristic] = None
        self._on_chunk: Optional[ChunkHandler] = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    def _notification_handler(
        self,
        characteristic: BleakGATTCharacteristic,
        data: bytearray,
    ) -> None:
        """Handle incoming notifications."""
        logger.debug(f"Notification received ({len(data)} bytes): {bytes(data[:8]).hex()}")
        if self._on_chunk is not None:
            self._on_chunk(bytes(data))

    def _on_disconnected(self, client: BleakClient) -> None:
        # A late callback from a replaced connection must not touch the current one
        if client is not self._client:
            logger.debug(f"Ignoring disconnect of stale link {client.address}")
            return
        logger.info(f"Link down: {client.address}")
        self._on_chunk = None

    async def connect(self, device_id: str, on_chunk: ChunkHandler) -> None:
        """
        Connect to the dongle and subscribe to RX notifications.

        Args:
            device_id: Bluetooth address (or platform UUID on macOS)
            on_chunk: Receives every notification chunk

        Raises:
            TransportError: If the device is not found or the connect fails
        """
        await self.disconnect()

        logger.info(f"Looking for dongle {device_id}...")
        device = await BleakScanner.find_device_by_address(device_id, timeout=self.scan_timeout)
        if device is None:
            raise TransportError(f"Device {device_id} not found")

        client = BleakClient(device, disconnected_callback=self._on_disconnected, timeout=CONNECT_TIMEOUT)
        try:
            await client.connect()
            tx_char = client.services.get_characteristic(TX_CHAR_UUID)
            if tx_char is None:
                raise TransportError("Dongle has no UART TX characteristic")
            self._client = client
            self._tx_char = tx_char
            self._on_chunk = on_chunk
            await client.start_notify(RX_CHAR_UUID, self._notification_handler)
        except TransportError:
            await self._abandon(client)
            raise
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            await self._abandon(client)
            raise TransportError(f"Connect failed: {e}") from e

        logger.info(f"Connected to {device.name or 'dongle'} ({device.address}), MTU {client.mtu_size}")

    async def _abandon(self, client: BleakClient) -> None:
        """Forget a half-set-up connection and drop it."""
        self._on_chunk = None
        self._client = None
        self._tx_char = None
        if client.is_connected:
            try:
                await client.disconnect()
            except BleakError as e:
                logger.warning(f"Disconnect after failed connect failed: {e}")

    async def disconnect(self) -> None:
        """Disconnect from the dongle."""
        client, self._client = self._client, None
        self._on_chunk = None
        self._tx_char = None
        if client is not None and client.is_connected:
            try:
                await client.disconnect()
            except BleakError as e:
                logger.warning(f"Disconnect failed: {e}")
            else:
                logger.info("Disconnected")

    def _without_response(self, control: bool) -> bool:
        if control or self._tx_char is None:
            return False
        return "write-without-response" in self._tx_char.properties

    def max_write_size(self, control: bool) -> int:
        if self._tx_char is None:
            return 0
        if self._without_response(control):
            return self._tx_char.max_write_without_response_size
        return MAX_ATTRIBUTE_SIZE

    async def write(self, data: bytes, control: bool) -> None:
        """
        Write a frame to the TX characteristic.

        Raises:
            TransportError: If not connected or the write fails
        """
        if not self.is_connected or self._tx_char is None:
            raise TransportError("Not connected")
        try:
            await self._client.write_gatt_char(
                self._tx_char,
                data,
                response=not self._without_response(control),
            )
        except (BleakError, OSError) as e:
            raise TransportError(f"Write failed: {e}") from e


async def scan_devices(timeout: float = SCAN_TIMEOUT) -> list[BLEDevice]:
    """Scan for nearby dongles advertising the UART service."""
    logger.info(f"Scanning for dongles ({timeout}s)...")
    try:
        devices = await BleakScanner.discover(timeout=timeout, service_uuids=[SERVICE_UUID])
    except (BleakError, OSError) as e:
        raise TransportError(f"Scan failed: {e}") from e

    for device in devices:
        logger.info(f"  {device.name or 'Unknown'}: {device.address}")

    return devices
