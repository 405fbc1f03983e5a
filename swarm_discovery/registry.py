"""
Discovery Registry

The entry point: owns the DHT node and the mDNS socket, creates topic
sessions and routes local-network traffic to them.

    discovery = await create_discovery(DiscoveryConfig(bootstrap=[...]))
    topic = discovery.announce(key, port=10000, lookup=True)
    topic.on('peer', print)
    ...
    await discovery.destroy()

Sessions are indexed by domain name. Several sessions can share a name
(announce and lookup for the same key, or keys with the same 20-byte
prefix), so the index maps each name to a set.

Design Decision: Answering On Behalf Of Sessions
================================================

mDNS queries arrive at the registry, not at sessions. For every question
naming an indexed domain the registry answers with the SRV and identity
records of each announcing session there, except the session whose
identity the query carries, so nobody discovers itself. The same identity
check is applied to responses.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Union

from .config import DiscoveryConfig
from .dht import KademliaNode
from .errors import (
    AllBootstrapNodesFailed, InvalidState, LookupFailed, NoBootstrapNodes,
    NotEnoughReplies, ReferrerRequired,
)
from .events import Countdown, EventEmitter
from .multicast import MulticastDNS
from .multicast.packet import Answer, MDNSPacket
from .peer import AnnounceConfig, Endpoint, PeerRecord, domain_for
from .topic import ANY_ADDRESS, TopicSession

logger = logging.getLogger(__name__)


def jittered_delay(base: float) -> float:
    """A wait drawn uniformly from [base, 2 * base)."""
    return base + random.random() * base


@dataclass
class PingResult:
    """One bootstrap node's answer to ``Discovery.ping``."""
    bootstrap: Endpoint
    rtt: float  # milliseconds
    pong: Endpoint  # our address as the bootstrap node saw it


class Discovery(EventEmitter):
    """
    Peer discovery over the DHT and the local network.

    Events:
        close(): emitted once, after every session has closed and the DHT
        node has stopped
    """

    def __init__(self, config: DiscoveryConfig = None, dht=None, multicast=None):
        """
        Initialize discovery.

        Args:
            config: Discovery configuration (uses defaults if not provided)
            dht: Pre-built DHT node to use instead of a new KademliaNode
            multicast: Pre-built mDNS socket to use instead of a new one
        """
        super().__init__()
        self.config = config or DiscoveryConfig()

        self.destroyed = False
        self.dht = dht or KademliaNode(
            host=self.config.host,
            port=self.config.port,
            bootstrap_nodes=self.config.bootstrap,
            ephemeral=self.config.ephemeral,
        )
        self.multicast = multicast or MulticastDNS(loopback=self.config.multicast_loopback)

        self.multicast.on('query', self._on_query)
        self.multicast.on('response', self._on_response)

        # Our LAN address as reported by peers answering our queries
        self.observed_host: Optional[str] = None

        self._domains: Dict[str, Set[TopicSession]] = {}
        self._started = False
        self._closing: Optional[asyncio.Future] = None

    @property
    def bootstrap_nodes(self) -> List[Endpoint]:
        return self.dht.bootstrap_nodes

    @property
    def ephemeral(self) -> bool:
        return self.dht.ephemeral

    @property
    def topics(self) -> List[TopicSession]:
        return [topic for sessions in self._domains.values() for topic in sessions]

    def domain_for(self, key: bytes) -> str:
        return domain_for(key, self.config.domain)

    async def start(self):
        """
        Start the DHT node and the mDNS socket.

        A failing mDNS socket (e.g. multicast unavailable) is logged and
        discovery continues over the DHT alone.
        """
        if self.destroyed:
            raise InvalidState()
        if self._started:
            return
        self._started = True

        await self.dht.start()
        await self.dht.bootstrap()

        try:
            await self.multicast.start()
        except OSError as e:
            logger.error(f"Failed to start mDNS, local discovery disabled: {e}")

        logger.info(f"Discovery started (domain: {self.config.domain})")

    # === Sessions ===

    def announce(self, key: bytes, port: int = 0, local_port: Optional[int] = None,
                 lookup: bool = False,
                 local_address: Union[Endpoint, str, None] = None) -> TopicSession:
        """
        Start announcing ``key``.

        Args:
            key: Topic key
            port: Port to announce on the DHT (0 = the DHT socket's port)
            local_port: Port to announce on the LAN (defaults to ``port``)
            lookup: Also look up peers for the topic
            local_address: Address announced to peers on our network
        """
        if self.destroyed:
            raise InvalidState()

        if isinstance(local_address, str):
            local_address = Endpoint.parse(local_address)

        return self._topic(
            key,
            announce=AnnounceConfig(port=port, local_address=local_address),
            lookup=bool(lookup),
            local_port=local_port or port or self.dht.port,
        )

    def lookup(self, key: bytes, **options) -> TopicSession:
        """Start looking up peers for ``key``."""
        if self.destroyed:
            raise InvalidState()
        return self._topic(key, lookup=True, lookup_options=options or None)

    async def lookup_one(self, key: bytes, **options) -> PeerRecord:
        """
        Find a single peer for ``key``.

        Raises:
            LookupFailed: the session closed before any peer was found
        """
        topic = self.lookup(key, **options)
        found = asyncio.get_running_loop().create_future()

        def on_close():
            if not found.done():
                found.set_exception(LookupFailed())

        def on_peer(peer: PeerRecord):
            topic.off('close', on_close)
            topic.destroy()
            if not found.done():
                found.set_result(peer)

        topic.on('close', on_close)
        topic.once('peer', on_peer)

        try:
            return await found
        finally:
            topic.destroy()

    def _topic(self, key: bytes, **opts) -> TopicSession:
        topic = TopicSession(self, key, **opts)
        self._domains.setdefault(topic.domain, set()).add(topic)
        logger.debug(f"Session added: {topic!r}")
        return topic

    def _remove(self, topic: TopicSession):
        sessions = self._domains.get(topic.domain)
        if sessions is None:
            return
        sessions.discard(topic)
        if not sessions:
            del self._domains[topic.domain]

    # === Network utilities ===

    async def ping(self) -> List[PingResult]:
        """
        Ping every bootstrap node concurrently.

        Raises:
            NoBootstrapNodes: nothing to ping
            AllBootstrapNodesFailed: no node answered
        """
        nodes = self.bootstrap_nodes
        if not nodes:
            raise NoBootstrapNodes()

        start = time.monotonic()

        async def ping_one(node: Endpoint) -> Optional[PingResult]:
            try:
                pong = await self.dht.ping(node)
            except Exception as e:
                logger.debug(f"Ping to {node} failed: {e}")
                return None
            if pong is None:
                return None
            return PingResult(bootstrap=node, rtt=(time.monotonic() - start) * 1000, pong=pong)

        results = [r for r in await asyncio.gather(*[ping_one(n) for n in nodes]) if r]
        if not results:
            raise AllBootstrapNodesFailed()
        return results

    async def holepunchable(self) -> bool:
        """
        Whether our NAT maps us to the same external endpoint for every
        bootstrap node, which is what holepunching needs.

        Raises:
            NotEnoughReplies: fewer than two bootstrap nodes answered
        """
        results = await self.ping()
        if len(results) < 2:
            raise NotEnoughReplies()

        first = results[0].pong
        return all(
            r.pong.host == first.host and r.pong.port == first.port
            for r in results[1:]
        )

    async def holepunch(self, peer: PeerRecord):
        """
        Holepunch to a DHT-discovered peer through its referrer.

        Raises:
            ReferrerRequired: the peer was not found through the DHT
        """
        if not peer.referrer:
            raise ReferrerRequired()
        return await self.dht.holepunch(peer)

    def flush(self, callback: Optional[Callable[[], object]] = None) -> asyncio.Future:
        """Resolve once every session has flushed its current DHT round."""
        future = asyncio.get_running_loop().create_future()

        def done():
            if not future.done():
                future.set_result(True)
            if callback is not None:
                try:
                    callback()
                except Exception as e:
                    logger.error(f"Flush callback error: {e}")

        countdown = Countdown(done)
        for topic in self.topics:
            countdown.add()
            topic.flush(countdown.done)
        countdown.release()
        return future

    # === Local network traffic ===

    def _multicast_query(self, packet: MDNSPacket):
        if not self.destroyed:
            self.multicast.query(packet)

    @staticmethod
    def _get_id(answers: List[Answer], name: str, start: int = 0) -> Optional[bytes]:
        """The first identity record for ``name`` at or after ``start``."""
        for answer in answers[start:]:
            if answer.type == 'TXT' and answer.name == name and answer.data:
                return answer.data[0]
        return None

    def _on_query(self, packet: MDNSPacket, rinfo: Optional[Endpoint]):
        response = MDNSPacket()
        answered = []

        for question in packet.questions:
            sessions = question.type == 'SRV' and self._domains.get(question.name)
            if not sessions:
                continue

            querier = self._get_id(packet.answers, question.name)
            for topic in sessions:
                if querier is not None and topic.id == querier:
                    continue
                if topic._answer is None:
                    continue
                response.answers.append(topic._answer)
                response.answers.append(topic._id_answer)
                if question.name not in answered:
                    answered.append(question.name)

        if not response.answers:
            return

        if rinfo is not None:
            for name in answered:
                response.answers.append(Answer('A', name, rinfo.host))

        self.multicast.respond(response)

    def _on_response(self, packet: MDNSPacket, rinfo: Endpoint):
        for index, answer in enumerate(packet.answers):
            if answer.type == 'A' and answer.name in self._domains:
                if self.observed_host != answer.data:
                    logger.debug(f"Peers see us as {answer.data}")
                self.observed_host = answer.data
                continue

            sessions = answer.type == 'SRV' and self._domains.get(answer.name)
            if not sessions:
                continue

            host = rinfo.host if answer.data.target == ANY_ADDRESS else answer.data.target
            responder = self._get_id(packet.answers, answer.name, index + 1)

            for topic in list(sessions):
                if responder is not None and responder == topic.id:
                    continue
                topic._on_local_peer(answer.data.port, host, self.multicast.local_endpoint)

    # === Timers ===

    def _notify(self, fn: Callable[[], None], eager: bool) -> asyncio.TimerHandle:
        """Schedule a multicast (eager) or DHT refresh."""
        base = self.config.multicast_interval if eager else self.config.dht_interval
        return asyncio.get_running_loop().call_later(jittered_delay(base), fn)

    # === Shutdown ===

    def destroy(self, force: bool = False) -> asyncio.Future:
        """
        Destroy every session, then the DHT node.

        Without ``force`` this waits for every session to close, which for
        announcing sessions includes retracting the announcement. With
        ``force`` sessions are still destroyed but the DHT is stopped
        without waiting for them.

        Returns:
            A future resolved once ``close`` has been emitted
        """
        if self._closing is not None:
            return self._closing

        self.destroyed = True
        loop = asyncio.get_running_loop()
        self._closing = loop.create_future()

        self.multicast.destroy()

        def done():
            asyncio.ensure_future(self._teardown())

        countdown = Countdown(done)
        for topic in self.topics:
            if not force:
                countdown.add()
                topic.once('close', countdown.done)
            topic.destroy()

        loop.call_soon(countdown.release)
        return self._closing

    async def _teardown(self):
        try:
            await self.dht.stop()
        except Exception as e:
            logger.error(f"Error stopping DHT: {e}")
        logger.info("Discovery closed")
        self.emit('close')
        if not self._closing.done():
            self._closing.set_result(None)


async def create_discovery(config: DiscoveryConfig = None, **kwargs) -> Discovery:
    """Create and start a ``Discovery`` (convenience function)."""
    discovery = Discovery(config, **kwargs)
    await discovery.start()
    return discovery
