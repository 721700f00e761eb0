import asyncio
import logging
from typing import Optional, Tuple

from sessions import SessionStore

logger = logging.getLogger(__name__)


class RelayProtocol(asyncio.DatagramProtocol):
    """Copies datagrams between the two endpoints bound to a session.

    Payloads are never inspected or modified. Anything that cannot be routed
    is dropped without a reply.
    """

    def __init__(self, store: SessionStore):
        self.store = store
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.forwarded = 0
        self.dropped = 0

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr):
        # IPv6 sources carry flowinfo/scope_id as well
        source = (addr[0], addr[1])
        target = self.store.forward_target(source)
        if target is None:
            self.dropped += 1
            logger.debug(f"Dropped {len(data)} bytes from {source[0]}:{source[1]}")
            return

        self.transport.sendto(data, target)
        self.forwarded += 1

    def error_received(self, exc):
        logger.debug(f"UDP socket error: {exc}")

    def connection_lost(self, exc):
        if exc:
            logger.warning(f"UDP relay socket closed: {exc}")
        self.transport = None


async def start_forwarder(
    store: SessionStore,
    host: str,
    port: int
) -> Tuple[asyncio.DatagramTransport, RelayProtocol]:
    """Bind the relay UDP socket; an OSError here is fatal for the service"""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: RelayProtocol(store),
        local_addr=(host, port)
    )
    bound = transport.get_extra_info("sockname")
    logger.info(f"UDP relay listening on {bound[0]}:{bound[1]}")
    return transport, protocol
