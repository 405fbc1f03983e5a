"""
mDNS Socket

Design Decision: Raw mDNS Socket vs Zeroconf Service Registration
=================================================================

Options Considered:
1. Zeroconf ServiceInfo registration + ServiceBrowser
   - One service type per topic, registrations persist in peer caches
   - Browsers only report changes, so a refresh cannot be forced
2. Our own socket on the mDNS group, speaking plain queries/responses

Decision: Our own socket (2)
- Sessions decide when to query and who answers, including the identity
  checks that stop a session from discovering itself
- Still standard mDNS packets (see ``packet.py``)
- Multicast loopback stays on so processes on the same host find each
  other

Events:
- ``query(packet, rinfo)``: someone asked about a name
- ``response(packet, rinfo)``: someone answered
"""

import asyncio
import contextlib
import logging
import socket
import struct
from typing import Optional, Tuple

from ..events import EventEmitter
from ..peer import Endpoint
from .packet import MDNSPacket, decode, encode

logger = logging.getLogger(__name__)

MDNS_GROUP = '224.0.0.251'
MDNS_PORT = 5353


class _MDNSProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: 'MulticastDNS'):
        self.owner = owner

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        self.owner._on_datagram(data, addr)

    def error_received(self, exc):
        logger.error(f"mDNS socket error: {exc}")


class MulticastDNS(EventEmitter):
    """Multicast DNS socket emitting decoded queries and responses."""

    def __init__(self, port: int = MDNS_PORT, group: str = MDNS_GROUP,
                 loopback: bool = True, interface: str = '0.0.0.0'):
        """
        Initialize the socket (call ``start()`` to bind it).

        Args:
            port: mDNS port
            group: Multicast group address
            loopback: Deliver our own packets to other sockets on this host
            interface: Local interface address to join the group on
        """
        super().__init__()
        self.port = port
        self.group = group
        self.loopback = loopback
        self.interface = interface
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.destroyed = False

    @property
    def local_endpoint(self) -> Endpoint:
        """Where packets arrive: the joined interface and the mDNS port."""
        return Endpoint(self.interface, self.port)

    async def start(self):
        """Bind and join the multicast group."""
        if self.transport or self.destroyed:
            return

        loop = asyncio.get_running_loop()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: _MDNSProtocol(self),
            sock=self._create_socket(),
        )
        logger.info(f"mDNS socket joined {self.group}:{self.port}")

    def _create_socket(self) -> socket.socket:
        """Create a UDP socket joined to the mDNS multicast group."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # Allow multiple processes on same host
        if hasattr(socket, 'SO_REUSEPORT'):
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)

        sock.bind(('', self.port))

        mreq = struct.pack('4s4s', socket.inet_aton(self.group), socket.inet_aton(self.interface))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1 if self.loopback else 0)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        sock.setblocking(False)
        return sock

    def query(self, packet: MDNSPacket):
        """Broadcast questions (and known answers)."""
        self._send(encode(packet, response=False))

    def respond(self, packet: MDNSPacket):
        """Broadcast answers."""
        self._send(encode(packet, response=True))

    def _send(self, datagrams):
        if self.transport is None:
            return
        for data in datagrams:
            self.transport.sendto(data, (self.group, self.port))

    def _on_datagram(self, data: bytes, addr: Tuple[str, int]):
        try:
            decoded = decode(data)
        except Exception as e:
            logger.debug(f"Dropping malformed mDNS packet from {addr[0]}: {e}")
            return
        if decoded is None:
            return

        is_response, packet = decoded
        rinfo = Endpoint(addr[0], addr[1])
        if is_response:
            if packet.answers:
                self.emit('response', packet, rinfo)
        elif packet.questions:
            self.emit('query', packet, rinfo)

    def destroy(self):
        """Leave the group and close the socket."""
        if self.destroyed:
            return
        self.destroyed = True
        if self.transport:
            self.transport.close()
            self.transport = None
        logger.info("mDNS socket closed")
