"""
Kademlia DHT Node

The wide-area half of discovery. Sessions use it through five operations:
``announce`` / ``lookup`` (both return a ``PeerStream``), ``unannounce``,
``ping`` and ``holepunch``.

Design Decision: Iterative Lookups Reported As A Stream
=======================================================

Options:
1. Return the final peer set once the lookup converges
2. Report every node's answer as soon as it arrives

Decision: Stream (2)
- Callers see peers after the first round trip instead of after the slowest
- The caller can decide the answer has stabilized and stop listening
  early; the walk simply keeps going in the background
- An announce is the same walk followed by ANNOUNCE_PEER to the K closest
  responders, whose replies are streamed too

Design Decision: Ephemeral Nodes
================================

A short-lived process should not become part of other nodes' routing
tables: it will disappear and leave dead entries behind. Ephemeral nodes
flag every request; receivers answer them but do not route to them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, List, Dict, Tuple, Set, Callable

from ..peer import AnnounceConfig, Endpoint
from .utils import generate_node_id, topic_to_dht_key, xor_distance
from .routing import RoutingTable, NodeInfo, K, ALPHA
from .protocol import (
    DHTProtocol, Message, MessageType,
    create_ping, create_pong,
    create_find_node, create_find_node_response,
    create_announce_peer, create_unannounce_peer,
    create_get_peers, create_peers_response,
    create_holepunch, create_holepunch_relay,
)
from .stream import PeerReply, PeerStream

logger = logging.getLogger(__name__)

# Announcements not refreshed within this window are dropped
ANNOUNCEMENT_TTL = 1200.0  # seconds
CLEANUP_INTERVAL = 60.0  # seconds


@dataclass
class Announcement:
    """A peer stored for a topic on this node."""
    host: str
    port: int
    origin: Tuple[str, int]
    local_address: Optional[Tuple[str, int]] = None
    timestamp: float = 0.0


class KademliaNode:
    """
    A Kademlia DHT node.

    Maintains the routing table and the announcements other peers stored
    here, and runs the iterative walks behind announce and lookup.
    """

    def __init__(self, node_id: bytes = None, host: str = '0.0.0.0', port: int = 0,
                 bootstrap_nodes: Optional[List[Endpoint]] = None,
                 ephemeral: bool = True):
        """
        Initialize a Kademlia node.

        Args:
            node_id: Optional specific node ID (generated if not provided)
            host: Address to bind the UDP socket to
            port: UDP port for DHT protocol (0 picks a free one)
            bootstrap_nodes: Nodes used to join the network
            ephemeral: Query the network without joining routing tables
        """
        self.node_id = node_id or generate_node_id()
        self.host = host
        self.port = port
        self.bootstrap_nodes: List[Endpoint] = list(bootstrap_nodes or [])
        self.ephemeral = ephemeral

        self.routing_table = RoutingTable(self.node_id)
        self.protocol: Optional[DHTProtocol] = None
        self.transport: Optional[asyncio.DatagramTransport] = None

        # dht key -> {(origin ip, port): announcement}
        self._announcements: Dict[bytes, Dict[Tuple[str, int], Announcement]] = {}

        self._running = False
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def node_id_hex(self) -> str:
        return self.node_id.hex()

    @property
    def address(self) -> Tuple[str, int]:
        return (self.host, self.port)

    async def start(self):
        """Bind the UDP socket and start serving requests."""
        if self._running:
            return

        loop = asyncio.get_running_loop()
        self.transport, self.protocol = await loop.create_datagram_endpoint(
            lambda: DHTProtocol(self.node_id, self._handle_message),
            local_addr=(self.host, self.port),
        )
        self.port = self.transport.get_extra_info('sockname')[1]

        self._running = True
        self._cleanup_task = asyncio.ensure_future(self._periodic_cleanup())
        mode = 'ephemeral' if self.ephemeral else 'persistent'
        logger.info(f"Kademlia node started: {self.node_id_hex[:16]}... on "
                    f"{self.host}:{self.port} ({mode})")

    async def stop(self):
        """Stop the DHT node."""
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        if self.transport:
            self.transport.close()
            self.transport = None
        logger.info("Kademlia node stopped")

    async def bootstrap(self, bootstrap_nodes: Optional[List[Endpoint]] = None) -> int:
        """
        Join the DHT network via bootstrap nodes.

        Pings every bootstrap node, then looks up our own ID to populate
        the routing table.

        Returns:
            Number of bootstrap nodes that answered
        """
        nodes = bootstrap_nodes if bootstrap_nodes is not None else self.bootstrap_nodes
        if not nodes:
            logger.info("No bootstrap nodes, running as first node")
            return 0

        logger.info(f"Bootstrapping with {len(nodes)} nodes")

        results = await asyncio.gather(
            *[self.ping(node) for node in nodes], return_exceptions=True
        )
        successful = sum(1 for r in results if isinstance(r, Endpoint))
        logger.info(f"Bootstrap pings: {successful}/{len(nodes)} responded")

        if successful == 0:
            logger.warning("No bootstrap nodes responded")
            return 0

        await self.find_node(self.node_id)

        logger.info(f"Bootstrap complete: {len(self.routing_table)} nodes in routing table")
        return successful

    # === Operations used by discovery sessions ===

    async def ping(self, endpoint: Endpoint) -> Optional[Endpoint]:
        """
        Ping a node.

        Returns:
            Our own address as the pinged node observed it, or None if it
            did not answer
        """
        msg = create_ping(self.node_id, self.ephemeral)
        response = await self.protocol.send_request(msg, endpoint.address)

        if response is None or response.type != MessageType.PONG:
            return None

        if not response.ephemeral:
            self.routing_table.insert(NodeInfo(
                node_id=response.sender_id, host=endpoint.host, port=endpoint.port,
            ))
        return Endpoint(response.payload['host'], response.payload['port'])

    async def find_node(self, target_id: bytes) -> List[NodeInfo]:
        """Find the K closest nodes to a target ID."""
        responders = await self._walk(
            target_id,
            lambda: create_find_node(self.node_id, target_id, self.ephemeral),
            MessageType.FIND_NODE_RESPONSE,
            None,
        )
        return responders

    def lookup(self, key: bytes, options: Optional[dict] = None) -> PeerStream:
        """Stream the peers stored for ``key`` along the lookup path."""
        dht_key = topic_to_dht_key(key)

        async def produce(push: Callable[[PeerReply], None]):
            await self._walk(
                dht_key,
                lambda: create_get_peers(self.node_id, dht_key, self.ephemeral),
                MessageType.GET_PEERS_RESPONSE,
                push,
            )

        return PeerStream(produce)

    def announce(self, key: bytes, config: AnnounceConfig) -> PeerStream:
        """Stream a lookup, then store ourselves on the K closest nodes."""
        dht_key = topic_to_dht_key(key)
        port = config.port or self.port
        local_address = config.local_address.address if config.local_address else None

        async def produce(push: Callable[[PeerReply], None]):
            closest = await self._walk(
                dht_key,
                lambda: create_get_peers(self.node_id, dht_key, self.ephemeral),
                MessageType.GET_PEERS_RESPONSE,
                push,
            )

            async def store_on(node: NodeInfo):
                msg = create_announce_peer(
                    self.node_id, dht_key, port, local_address, self.ephemeral
                )
                response = await self.protocol.send_request(msg, node.address)
                if response and response.type == MessageType.ANNOUNCE_RESPONSE:
                    push(self._to_reply(node, response.payload))
                    return True
                return False

            results = await asyncio.gather(*[store_on(n) for n in closest])
            logger.debug(f"Announced {key.hex()[:16]}... to "
                         f"{sum(results)}/{len(closest)} nodes")

        return PeerStream(produce)

    async def unannounce(self, key: bytes, config: AnnounceConfig):
        """Retract an announcement from the nodes closest to ``key``."""
        dht_key = topic_to_dht_key(key)
        port = config.port or self.port
        closest = self.routing_table.closest(dht_key, K)

        async def retract(node: NodeInfo):
            msg = create_unannounce_peer(self.node_id, dht_key, port, self.ephemeral)
            return await self.protocol.send_request(msg, node.address)

        if closest and self.protocol:
            await asyncio.gather(*[retract(n) for n in closest], return_exceptions=True)

    async def holepunch(self, peer) -> bool:
        """
        Ask ``peer.referrer`` to tell ``peer`` to ping us, while we ping
        ``peer`` ourselves. Both NATs then have an outgoing mapping for the
        other side.
        """
        referrer = peer.referrer
        msg = create_holepunch(self.node_id, peer.address, self.ephemeral)
        response = await self.protocol.send_request(msg, referrer.address)
        self.protocol.send_message(create_ping(self.node_id, self.ephemeral), peer.address)
        return bool(response and response.type == MessageType.HOLEPUNCH_RESPONSE
                    and response.payload.get('relayed'))

    # === Request handling ===

    async def _handle_message(self, message: Message,
                              addr: Tuple[str, int]) -> Optional[Message]:
        if not message.ephemeral:
            self.routing_table.insert(NodeInfo(
                node_id=message.sender_id, host=addr[0], port=addr[1],
            ))

        handlers = {
            MessageType.PING: self._handle_ping,
            MessageType.FIND_NODE: self._handle_find_node,
            MessageType.ANNOUNCE_PEER: self._handle_announce_peer,
            MessageType.UNANNOUNCE_PEER: self._handle_unannounce_peer,
            MessageType.GET_PEERS: self._handle_get_peers,
            MessageType.HOLEPUNCH: self._handle_holepunch,
            MessageType.HOLEPUNCH_RELAY: self._handle_holepunch_relay,
        }

        handler = handlers.get(message.type)
        if handler is None:
            return None

        response = await handler(message, addr)
        if response is not None:
            response.ephemeral = self.ephemeral
        return response

    async def _handle_ping(self, message: Message, addr: Tuple[str, int]) -> Message:
        return create_pong(self.node_id, message, addr)

    async def _handle_find_node(self, message: Message, addr: Tuple[str, int]) -> Message:
        target_id = bytes.fromhex(message.payload['target'])
        closest = self.routing_table.closest(target_id)
        return create_find_node_response(self.node_id, message, closest)

    async def _handle_announce_peer(self, message: Message, addr: Tuple[str, int]) -> Message:
        dht_key = bytes.fromhex(message.payload['key'])
        port = message.payload['port']
        local = message.payload.get('local_address')

        stored = self._announcements.setdefault(dht_key, {})
        stored[(addr[0], port)] = Announcement(
            host=addr[0],
            port=port,
            origin=addr,
            local_address=(local['host'], local['port']) if local else None,
            timestamp=time.time(),
        )
        return self._peers_response(message, dht_key, addr, MessageType.ANNOUNCE_RESPONSE)

    async def _handle_unannounce_peer(self, message: Message, addr: Tuple[str, int]) -> Message:
        dht_key = bytes.fromhex(message.payload['key'])
        stored = self._announcements.get(dht_key)
        if stored is not None:
            stored.pop((addr[0], message.payload['port']), None)
            if not stored:
                del self._announcements[dht_key]
        return message.reply(self.node_id, MessageType.UNANNOUNCE_RESPONSE, {'success': True})

    async def _handle_get_peers(self, message: Message, addr: Tuple[str, int]) -> Message:
        dht_key = bytes.fromhex(message.payload['key'])
        return self._peers_response(message, dht_key, addr, MessageType.GET_PEERS_RESPONSE)

    async def _handle_holepunch(self, message: Message, addr: Tuple[str, int]) -> Message:
        to = (message.payload['to']['host'], message.payload['to']['port'])

        # Relay to the DHT socket the peer announced from, if we know it
        target = to
        for stored in self._announcements.values():
            ann = stored.get(to)
            if ann is not None:
                target = ann.origin
                break

        self.protocol.send_message(create_holepunch_relay(self.node_id, addr), target)
        return message.reply(self.node_id, MessageType.HOLEPUNCH_RESPONSE, {'relayed': True})

    async def _handle_holepunch_relay(self, message: Message, addr: Tuple[str, int]) -> None:
        origin = (message.payload['host'], message.payload['port'])
        logger.debug(f"Holepunch requested by {origin[0]}:{origin[1]}")
        self.protocol.send_message(create_ping(self.node_id, self.ephemeral), origin)
        return None

    def _peers_response(self, message: Message, dht_key: bytes,
                        addr: Tuple[str, int], response_type: MessageType) -> Message:
        """Stored peers for a key; local addresses only for the same network."""
        peers = []
        local_peers = []
        for ann in self._announcements.get(dht_key, {}).values():
            peers.append((ann.host, ann.port))
            if ann.local_address and ann.host == addr[0]:
                local_peers.append(ann.local_address)

        closest = self.routing_table.closest(dht_key)
        return create_peers_response(
            self.node_id, message, response_type, peers, local_peers, closest
        )

    # === Iterative walk ===

    async def _walk(self, target_id: bytes, make_request: Callable[[], Message],
                    response_type: MessageType,
                    push: Optional[Callable[[PeerReply], None]]) -> List[NodeInfo]:
        """
        Iterative α-parallel walk towards ``target_id``.

        1. Start with the K closest known nodes
        2. Query α unqueried nodes in parallel
        3. Add nodes learned from replies to the candidates
        4. Stop when no unqueried candidates remain

        Each reply is pushed (when ``push`` is given) as soon as it arrives.

        Returns:
            The K closest nodes that answered
        """
        candidates: Dict[bytes, NodeInfo] = {
            n.node_id: n for n in self.routing_table.closest(target_id, K)
        }
        queried: Set[bytes] = set()
        responders: Dict[bytes, NodeInfo] = {}

        while True:
            to_query = [n for node_id, n in sorted(
                candidates.items(),
                key=lambda item: xor_distance(target_id, item[0]),
            ) if node_id not in queried][:ALPHA]

            if not to_query:
                break

            for node in to_query:
                queried.add(node.node_id)

            responses = await asyncio.gather(*[
                self.protocol.send_request(make_request(), node.address)
                for node in to_query
            ])

            for node, response in zip(to_query, responses):
                if response is None or response.type != response_type:
                    self.routing_table.drop(node.node_id)
                    continue

                responders[node.node_id] = node
                if push is not None:
                    push(self._to_reply(node, response.payload))

                for node_dict in response.payload.get('nodes', []):
                    found = NodeInfo.from_wire(node_dict)
                    if found.node_id != self.node_id and found.node_id not in queried:
                        candidates.setdefault(found.node_id, found)

        closest = sorted(
            responders.values(),
            key=lambda n: xor_distance(target_id, n.node_id),
        )
        return closest[:K]

    @staticmethod
    def _to_reply(node: NodeInfo, payload: dict) -> PeerReply:
        return PeerReply(
            node=node,
            peers=[Endpoint(p['host'], p['port']) for p in payload.get('peers', [])],
            local_peers=[Endpoint(p['host'], p['port'])
                         for p in payload.get('local_peers', [])],
        )

    async def _periodic_cleanup(self):
        """Drop announcements that were not refreshed in time."""
        while self._running:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL)
                now = time.time()
                for dht_key in list(self._announcements.keys()):
                    stored = {
                        addr: ann for addr, ann in self._announcements[dht_key].items()
                        if now - ann.timestamp < ANNOUNCEMENT_TTL
                    }
                    if stored:
                        self._announcements[dht_key] = stored
                    else:
                        del self._announcements[dht_key]
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}")

    def get_stats(self) -> Dict:
        return {
            'node_id': self.node_id_hex,
            'address': f"{self.host}:{self.port}",
            'ephemeral': self.ephemeral,
            'routing_table': self.routing_table.stats(),
            'topics': len(self._announcements),
            'running': self._running,
        }
