"""
Shared helpers for swarm_discovery tests.

    from tests import FakeDHT, FakeLAN, make_discovery, wait_for

``FakeDHT`` stands in for ``KademliaNode``: rounds replay a scripted list
of replies (and, when several fakes share a ``network`` dict, the peers
announced through any of them). ``FakeLAN`` is an in-process multicast
segment that delivers every query and response to every socket on it,
the sender included, on the next loop iteration.
"""

import asyncio
from typing import Callable, Dict, List, Optional, Set

from swarm_discovery.config import DiscoveryConfig
from swarm_discovery.dht.routing import NodeInfo
from swarm_discovery.dht.stream import PeerReply, PeerStream
from swarm_discovery.events import EventEmitter
from swarm_discovery.multicast.packet import MDNSPacket
from swarm_discovery.peer import AnnounceConfig, Endpoint
from swarm_discovery.registry import Discovery

REFERRER = NodeInfo(node_id=b'\x01' * 20, host='10.0.0.1', port=49737)


class FakeDHT:
    """Scriptable DHT node."""

    def __init__(self, port: int = 49737, host: str = '127.0.0.1',
                 bootstrap_nodes: Optional[List[Endpoint]] = None,
                 ephemeral: bool = True,
                 network: Optional[Dict[bytes, Set[Endpoint]]] = None):
        self.port = port
        self.host = host
        self.bootstrap_nodes = list(bootstrap_nodes or [])
        self.ephemeral = ephemeral
        self.network = network if network is not None else {}

        # Round behaviour
        self.script: List[PeerReply] = []
        self.error: Optional[Exception] = None
        self.hold: Optional[asyncio.Event] = None

        # Other operations
        self.pongs: Dict[Endpoint, object] = {}
        self.unannounce_error: Optional[Exception] = None

        # Records
        self.rounds: List[tuple] = []
        self.unannounced: List[bytes] = []
        self.holepunched: list = []
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def bootstrap(self, nodes=None) -> int:
        return 0

    async def stop(self):
        self.stopped = True

    def announce(self, key: bytes, config: AnnounceConfig) -> PeerStream:
        self.rounds.append(('announce', key))
        return self._stream(key, Endpoint(self.host, config.port or self.port))

    def lookup(self, key: bytes, options=None) -> PeerStream:
        self.rounds.append(('lookup', key))
        return self._stream(key, None)

    def _stream(self, key: bytes, announcing: Optional[Endpoint]) -> PeerStream:
        async def produce(push: Callable[[PeerReply], None]):
            for reply in self.script:
                push(reply)
            known = self.network.get(key)
            if known:
                push(PeerReply(node=REFERRER, peers=sorted(known, key=lambda e: e.port)))
            if announcing is not None:
                self.network.setdefault(key, set()).add(announcing)
            if self.hold is not None:
                await self.hold.wait()
            if self.error is not None:
                raise self.error

        return PeerStream(produce)

    async def unannounce(self, key: bytes, config: AnnounceConfig):
        self.unannounced.append(key)
        if self.unannounce_error is not None:
            raise self.unannounce_error
        known = self.network.get(key)
        if known:
            known.discard(Endpoint(self.host, config.port or self.port))

    async def ping(self, endpoint: Endpoint) -> Optional[Endpoint]:
        pong = self.pongs.get(endpoint)
        if isinstance(pong, Exception):
            raise pong
        return pong

    async def holepunch(self, peer) -> bool:
        self.holepunched.append(peer)
        return True


class FakeMulticast(EventEmitter):
    """One socket on a ``FakeLAN``."""

    def __init__(self, lan: 'FakeLAN', host: str):
        super().__init__()
        self.lan = lan
        self.host = host
        self.queries: List[MDNSPacket] = []
        self.responses: List[MDNSPacket] = []
        self.start_error: Optional[Exception] = None
        self.destroyed = False

    @property
    def local_endpoint(self) -> Endpoint:
        return Endpoint(self.host, 5353)

    async def start(self):
        if self.start_error is not None:
            raise self.start_error

    def query(self, packet: MDNSPacket):
        self.queries.append(packet)
        self.lan.broadcast('query', packet, self)

    def respond(self, packet: MDNSPacket):
        self.responses.append(packet)
        self.lan.broadcast('response', packet, self)

    def destroy(self):
        self.destroyed = True
        self.lan.leave(self)


class FakeLAN:
    """In-process multicast segment."""

    def __init__(self):
        self.sockets: List[FakeMulticast] = []

    def socket(self, host: str) -> FakeMulticast:
        sock = FakeMulticast(self, host)
        self.sockets.append(sock)
        return sock

    def leave(self, sock: FakeMulticast):
        if sock in self.sockets:
            self.sockets.remove(sock)

    def broadcast(self, event: str, packet: MDNSPacket, sender: FakeMulticast):
        rinfo = Endpoint(sender.host, 5353)
        loop = asyncio.get_running_loop()
        for sock in list(self.sockets):
            loop.call_soon(sock.emit, event, packet, rinfo)


def make_discovery(lan: Optional[FakeLAN] = None, host: str = '192.168.1.10',
                   dht: Optional[FakeDHT] = None, **config) -> Discovery:
    """A Discovery wired to fakes (not started)."""
    lan = lan or FakeLAN()
    return Discovery(
        DiscoveryConfig(**config),
        dht=dht or FakeDHT(host=host),
        multicast=lan.socket(host),
    )


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0,
                   interval: float = 0.005) -> bool:
    """Poll ``predicate`` until it returns True or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
