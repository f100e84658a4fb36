"""
Frame link: the inbound delivery path and raw outbound frame writes.

Chunks from the transport go through the FrameDecoder and every complete
frame is handed to the RxDemux. Outbound frames are size-checked against
the negotiated write limit before they reach the transport.
"""

import logging
from typing import Optional

from .demux import FramePredicate, RxDemux
from .errors import TransportError
from .framing import Frame, FrameDecoder, encode_frame
from .transport import Transport

logger = logging.getLogger(__name__)


class FrameLink:
    """Owns the accumulator and the RX demultiplexer for one transport."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.decoder = FrameDecoder()
        self.demux = RxDemux()

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    async def open(self, device_id: str) -> None:
        """Connect the transport with a clean accumulator and backlog."""
        self.reset()
        await self.transport.connect(device_id, self.on_chunk)

    async def close(self) -> None:
        self.reset()
        await self.transport.disconnect()

    def on_chunk(self, chunk: bytes) -> None:
        """Chunk intake: decode and route every completed frame."""
        if not chunk:
            return
        for frame in self.decoder.push(chunk):
            logger.debug(f"RX: op=0x{frame.opcode:02X} len={len(frame.payload)}")
            self.demux.deliver(frame)

    async def write(self, data: bytes, control: bool = False) -> None:
        """
        Write an encoded frame.

        Raises:
            TransportError: If not connected, or the frame exceeds the
                negotiated write size (frames are never truncated)
        """
        if not self.transport.is_connected:
            raise TransportError("Not connected")

        limit = self.transport.max_write_size(control)
        if limit <= 0:
            raise TransportError("Bad MTU/write length")
        if len(data) > limit:
            raise TransportError(
                f"Frame too large for negotiated MTU (need >= {len(data)}, have {limit})."
            )
        await self.transport.write(data, control)

    async def send_frame(self, opcode: int, payload: bytes = b"", control: bool = False) -> None:
        """Encode and write an outer frame."""
        try:
            frame = encode_frame(opcode, payload)
        except ValueError as e:
            raise TransportError(str(e)) from e
        logger.debug(f"TX: op=0x{opcode:02X} len={len(payload)} control={control}")
        await self.write(frame, control)

    async def next_frame(self, predicate: FramePredicate, timeout: float) -> Optional[Frame]:
        """Wait for the next inbound frame matching predicate."""
        return await self.demux.next_frame(predicate, timeout)

    def reset(self) -> None:
        """Clear the accumulator, backlog and waiter."""
        self.decoder.reset()
        self.demux.reset()
