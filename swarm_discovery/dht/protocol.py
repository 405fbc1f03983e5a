"""
DHT Wire Protocol

Design Decision: Message Format
===============================

Decision: one JSON object per UDP datagram
- Readable in a packet capture
- A topic's peer list is small, so the size overhead does not matter
- New request types only need a new ``MessageType`` and a handler

Envelope: ``{"t": type, "from": sender id, "rid": request id, "eph":
ephemeral flag, "body": {...}}``. Responses echo the request's ``rid``.

Requests and their responses:
- PING -> PONG: the PONG body is the address the PING came from, which is
  how a node learns its NAT-external endpoint
- FIND_NODE -> FIND_NODE_RESPONSE: contacts closest to ``target``
- GET_PEERS / ANNOUNCE_PEER -> peers stored for ``key`` plus closer contacts
- UNANNOUNCE_PEER -> UNANNOUNCE_RESPONSE
- HOLEPUNCH -> HOLEPUNCH_RESPONSE, after which the receiver forwards a
  HOLEPUNCH_RELAY (no response) to the peer named in ``to``
"""

import json
import asyncio
import logging
import os
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .routing import NodeInfo

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


class MessageType(Enum):
    PING = "PING"
    PONG = "PONG"
    FIND_NODE = "FIND_NODE"
    FIND_NODE_RESPONSE = "FIND_NODE_RESPONSE"
    GET_PEERS = "GET_PEERS"
    GET_PEERS_RESPONSE = "GET_PEERS_RESPONSE"
    ANNOUNCE_PEER = "ANNOUNCE_PEER"
    ANNOUNCE_RESPONSE = "ANNOUNCE_RESPONSE"
    UNANNOUNCE_PEER = "UNANNOUNCE_PEER"
    UNANNOUNCE_RESPONSE = "UNANNOUNCE_RESPONSE"
    HOLEPUNCH = "HOLEPUNCH"
    HOLEPUNCH_RESPONSE = "HOLEPUNCH_RESPONSE"
    HOLEPUNCH_RELAY = "HOLEPUNCH_RELAY"


RESPONSE_TYPES = frozenset(t for t in MessageType if t.value.endswith('_RESPONSE')) | {MessageType.PONG}


def _new_request_id() -> bytes:
    return os.urandom(8)


@dataclass
class Message:
    type: MessageType
    sender_id: bytes
    message_id: bytes = field(default_factory=_new_request_id)
    ephemeral: bool = False
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_response(self) -> bool:
        return self.type in RESPONSE_TYPES

    def to_bytes(self) -> bytes:
        return json.dumps({
            't': self.type.value,
            'from': self.sender_id.hex(),
            'rid': self.message_id.hex(),
            'eph': self.ephemeral,
            'body': self.payload,
        }, separators=(',', ':')).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Message':
        """
        Raises:
            ValueError: not a DHT message (bad JSON, unknown type, bad ids)
        """
        try:
            envelope = json.loads(data)
            return cls(
                type=MessageType(envelope['t']),
                sender_id=bytes.fromhex(envelope['from']),
                message_id=bytes.fromhex(envelope['rid']),
                ephemeral=bool(envelope.get('eph')),
                payload=envelope.get('body') or {},
            )
        except (KeyError, TypeError, UnicodeDecodeError) as e:
            raise ValueError(f"Malformed DHT message: {e}") from e

    def reply(self, sender_id: bytes, response_type: MessageType,
              payload: Dict = None) -> 'Message':
        return Message(response_type, sender_id, self.message_id, payload=payload or {})


Handler = Callable[[Message, Address], Awaitable[Optional[Message]]]


class DHTProtocol(asyncio.DatagramProtocol):
    """
    Request/response over a datagram endpoint.

    Incoming responses complete the matching ``send_request`` call;
    incoming requests go to ``on_message`` and whatever it returns is sent
    back to the requester.
    """

    REQUEST_TIMEOUT = 5.0  # seconds

    def __init__(self, node_id: bytes, on_message: Handler):
        self.node_id = node_id
        self.on_message = on_message
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._inflight: Dict[bytes, asyncio.Future] = {}

    def connection_made(self, transport):
        self.transport = transport

    def connection_lost(self, exc):
        self.transport = None
        inflight, self._inflight = self._inflight, {}
        for waiter in inflight.values():
            if not waiter.done():
                waiter.set_exception(ConnectionError("DHT socket closed"))

    def error_received(self, exc):
        logger.debug(f"DHT socket error: {exc}")

    def datagram_received(self, data: bytes, addr: Address):
        try:
            message = Message.from_bytes(data)
        except ValueError as e:
            logger.debug(f"Dropping datagram from {addr[0]}:{addr[1]}: {e}")
            return

        if not message.is_response:
            asyncio.ensure_future(self._serve(message, addr))
            return

        waiter = self._inflight.pop(message.message_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(message)

    async def _serve(self, request: Message, addr: Address):
        try:
            response = await self.on_message(request, addr)
        except Exception as e:
            logger.error(f"Failed to handle {request.type.value} from {addr[0]}:{addr[1]}: {e}")
            return
        if response is not None:
            self.send_message(response, addr)

    def send_message(self, message: Message, addr: Address):
        """Fire and forget; a closed socket drops the message."""
        if self.transport is not None:
            self.transport.sendto(message.to_bytes(), addr)

    async def send_request(self, message: Message, addr: Address,
                           timeout: float = None) -> Optional[Message]:
        """
        Returns:
            The response, or None if none arrived in time

        Raises:
            RuntimeError: the socket is not open
        """
        if self.transport is None:
            raise RuntimeError("DHT socket is not open")

        waiter = asyncio.get_running_loop().create_future()
        self._inflight[message.message_id] = waiter
        self.send_message(message, addr)
        try:
            return await asyncio.wait_for(waiter, timeout or self.REQUEST_TIMEOUT)
        except asyncio.TimeoutError:
            return None
        finally:
            self._inflight.pop(message.message_id, None)


# === Message builders ===

def _request(type_: MessageType, sender_id: bytes, ephemeral: bool, **body) -> Message:
    return Message(type_, sender_id, ephemeral=ephemeral, payload=body)


def _endpoints(addresses: Iterable[Address]) -> List[dict]:
    return [{'host': host, 'port': port} for host, port in addresses]


def create_ping(sender_id: bytes, ephemeral: bool = False) -> Message:
    return _request(MessageType.PING, sender_id, ephemeral)


def create_pong(sender_id: bytes, request: Message, addr: Address) -> Message:
    """PONG telling the requester which address it was seen from."""
    return request.reply(sender_id, MessageType.PONG, {'host': addr[0], 'port': addr[1]})


def create_find_node(sender_id: bytes, target_id: bytes,
                     ephemeral: bool = False) -> Message:
    return _request(MessageType.FIND_NODE, sender_id, ephemeral, target=target_id.hex())


def create_find_node_response(sender_id: bytes, request: Message,
                              nodes: List[NodeInfo]) -> Message:
    return request.reply(sender_id, MessageType.FIND_NODE_RESPONSE,
                         {'nodes': [n.to_wire() for n in nodes]})


def create_announce_peer(sender_id: bytes, key: bytes, port: int,
                         local_address: Optional[Address] = None,
                         ephemeral: bool = False) -> Message:
    """Store the sender as serving ``key`` on ``port``."""
    body = {'key': key.hex(), 'port': port}
    if local_address:
        body['local_address'] = _endpoints([local_address])[0]
    return _request(MessageType.ANNOUNCE_PEER, sender_id, ephemeral, **body)


def create_unannounce_peer(sender_id: bytes, key: bytes, port: int,
                           ephemeral: bool = False) -> Message:
    return _request(MessageType.UNANNOUNCE_PEER, sender_id, ephemeral, key=key.hex(), port=port)


def create_get_peers(sender_id: bytes, key: bytes, ephemeral: bool = False) -> Message:
    return _request(MessageType.GET_PEERS, sender_id, ephemeral, key=key.hex())


def create_peers_response(sender_id: bytes, request: Message,
                          response_type: MessageType,
                          peers: List[Address],
                          local_peers: List[Address],
                          nodes: List[NodeInfo]) -> Message:
    return request.reply(sender_id, response_type, {
        'peers': _endpoints(peers),
        'local_peers': _endpoints(local_peers),
        'nodes': [n.to_wire() for n in nodes],
    })


def create_holepunch(sender_id: bytes, to: Address, ephemeral: bool = False) -> Message:
    return _request(MessageType.HOLEPUNCH, sender_id, ephemeral, to=_endpoints([to])[0])


def create_holepunch_relay(sender_id: bytes, origin: Address) -> Message:
    """Tell a peer to ping ``origin``, opening its NAT towards it."""
    return _request(MessageType.HOLEPUNCH_RELAY, sender_id, False,
                    host=origin[0], port=origin[1])
