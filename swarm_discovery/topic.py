"""
Topic Sessions

One session per announce/lookup request. A session runs two independent
loops and merges what they find into one stream of ``peer`` events:

- DHT loop: one announce or lookup walk per round, a new round every
  5-10 minutes (``update`` fires at the end of each round)
- Multicast loop: an mDNS query for the topic's domain every 30-60 seconds

Design Decision: Early Flush
============================

A DHT walk keeps going until every candidate node has answered, but the
peer set for a topic usually stops changing long before that. Each round
tracks the largest reply seen so far (separately for remote and local
peers) and counts replies that reach it. After ``FLUSH_REPEAT_THRESHOLD``
such replies the round counts as flushed and ``flush()`` waiters are
released, while the walk itself keeps running. Replies of
``MAX_TRUSTED_REPLY_SIZE`` peers or more are ignored as saturated.

Both values are tuned heuristics, not protocol constants.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Set, Tuple

from .events import EventEmitter
from .multicast.packet import Answer, MDNSPacket, Question, SrvData
from .peer import AnnounceConfig, Endpoint, PeerRecord

logger = logging.getLogger(__name__)

# Early flush heuristic (tunable)
FLUSH_REPEAT_THRESHOLD = 6
MAX_TRUSTED_REPLY_SIZE = 16

ANY_ADDRESS = '0.0.0.0'

FlushCallback = Callable[[bool], Any]


class LoopPhase(Enum):
    IDLE = 'idle'
    ACTIVE = 'active'


@dataclass
class DhtRound:
    """State of one in-flight DHT walk."""
    stream: Any = None
    task: Optional[asyncio.Task] = None
    flushed: bool = False
    max_peers: int = 0
    peer_repeats: int = 0
    max_local_peers: int = 0
    local_repeats: int = 0

    def observe(self, peers: int, local_peers: int) -> bool:
        """Record one reply. Returns True once the results look stable."""
        if peers < MAX_TRUSTED_REPLY_SIZE and peers >= self.max_peers:
            self.max_peers = peers
            self.peer_repeats += 1
        if local_peers < MAX_TRUSTED_REPLY_SIZE and local_peers >= self.max_local_peers:
            self.max_local_peers = local_peers
            self.local_repeats += 1
        return (self.peer_repeats >= FLUSH_REPEAT_THRESHOLD
                or self.local_repeats >= FLUSH_REPEAT_THRESHOLD)


class TopicSession(EventEmitter):
    """
    Discovery for one topic key.

    Created by ``Discovery.announce`` / ``Discovery.lookup``; not meant to
    be constructed directly.

    Events:
        peer(PeerRecord), update(error or None), updating(), close()
    """

    def __init__(self, discovery, key: bytes,
                 announce: Optional[AnnounceConfig] = None,
                 lookup: bool = False,
                 local_port: int = 0,
                 lookup_options: Optional[dict] = None):
        super().__init__()

        if announce is None and not lookup:
            raise ValueError("A topic session must announce, look up, or both")

        self.key = key
        self.announce = announce
        self.lookup = lookup or announce is None
        self.lookup_options = lookup_options
        self.destroyed = False
        self.id = b'id=' + os.urandom(32)
        self.domain = discovery.domain_for(key)

        self._discovery = discovery
        self._loop = asyncio.get_running_loop()
        self.closed: asyncio.Future = self._loop.create_future()

        self._dht_phase = LoopPhase.IDLE
        self._dht_round: Optional[DhtRound] = None
        self._dht_timer: Optional[asyncio.TimerHandle] = None
        self._mdns_timer: Optional[asyncio.TimerHandle] = None
        self._flush_waiters: List[Tuple[Optional[FlushCallback], asyncio.Future]] = []
        # LAN peers already reported since the last multicast query
        self._lan_seen: Set[Tuple[str, int]] = set()

        self._answer = Answer('SRV', self.domain, SrvData(ANY_ADDRESS, local_port)) \
            if local_port else None
        self._id_answer = Answer('TXT', self.domain, [self.id])
        self._query = MDNSPacket(
            questions=[Question('SRV', self.domain)],
            answers=[self._id_answer],
        )

        self._start_dht()
        if not self.announce or lookup:
            self._start_mdns()
        if self.announce:
            self._loop.call_soon(self._fire_announce)

    @property
    def dht_phase(self) -> LoopPhase:
        return self._dht_phase

    def update(self):
        """Start a new DHT round and a multicast query right away."""
        if self.destroyed:
            return
        if self._dht_phase is LoopPhase.ACTIVE:
            self._stop_dht()
            self._start_dht()
        elif self._dht_timer is not None:
            self._dht_timer.cancel()
            self._dht_timer = None
            self._start_dht()
        self._start_mdns()

    def flush(self, callback: Optional[FlushCallback] = None) -> asyncio.Future:
        """
        Wait for the current DHT round to produce a stable result.

        ``callback`` (and the returned future) receive True unless the round
        ended with an error. Resolves at once if no round is pending.
        """
        future = self._loop.create_future()
        current = self._dht_round
        if self.destroyed or current is None or current.flushed:
            self._resolve_waiter(callback, future, True)
        else:
            self._flush_waiters.append((callback, future))
        return future

    def destroy(self):
        """
        Stop both loops and leave the registry.

        ``close`` is emitted once the announcement (if any) has been
        retracted from the DHT.
        """
        if self.destroyed:
            return
        self.destroyed = True

        self._stop_dht()
        self._release_flush(True)
        if self._mdns_timer is not None:
            self._mdns_timer.cancel()
            self._mdns_timer = None

        self._discovery._remove(self)

        if not self.announce:
            self._loop.call_soon(self._close)
            return
        asyncio.ensure_future(self._unannounce())

    # === DHT loop ===

    def _start_dht(self):
        self._dht_timer = None
        if self.destroyed:
            return

        current = DhtRound()
        self._dht_round = current
        self._dht_phase = LoopPhase.ACTIVE
        current.task = asyncio.ensure_future(self._run_round(current))
        self.emit('updating')

    def _stop_dht(self):
        if self._dht_timer is not None:
            self._dht_timer.cancel()
            self._dht_timer = None

        current, self._dht_round = self._dht_round, None
        self._dht_phase = LoopPhase.IDLE
        if current is None:
            return
        if current.task is not None:
            current.task.cancel()
        if current.stream is not None:
            current.stream.destroy()

    def _open_stream(self):
        dht = self._discovery.dht
        if self.announce:
            return dht.announce(self.key, self.announce)
        return dht.lookup(self.key, self.lookup_options)

    async def _run_round(self, current: DhtRound):
        error = None
        try:
            current.stream = self._open_stream()
            async for reply in current.stream:
                self._on_dht_reply(current, reply)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
        self._end_round(current, error)

    def _on_dht_reply(self, current: DhtRound, reply):
        if self.destroyed or current is not self._dht_round:
            return
        dht = self._discovery.dht
        to = Endpoint(dht.host, dht.port)

        for peer in reply.local_peers:
            if self.destroyed:
                return
            self.emit('peer', PeerRecord(
                port=peer.port, host=peer.host, local=True, referrer=None, topic=self.key, to=to,
            ))
        for peer in reply.peers:
            if self.destroyed:
                return
            self.emit('peer', PeerRecord(
                port=peer.port, host=peer.host, local=False, referrer=reply.node, topic=self.key, to=to,
            ))

        if current.flushed or current is not self._dht_round:
            return
        if current.observe(len(reply.peers), len(reply.local_peers)):
            current.flushed = True
            self._release_flush(True)

    def _end_round(self, current: DhtRound, error: Optional[Exception]):
        if self.destroyed or current is not self._dht_round:
            return

        current.stream = None
        self._dht_round = None
        self._dht_phase = LoopPhase.IDLE
        if error is not None:
            logger.debug(f"DHT round for {self.domain} failed: {error}")

        self._dht_timer = self._discovery._notify(self._start_dht, eager=False)

        if not current.flushed:
            current.flushed = True
            self._release_flush(error is None)
        self.emit('update', error)

    # === Flush waiters ===

    def _release_flush(self, ok: bool):
        waiters, self._flush_waiters = self._flush_waiters, []
        for callback, future in waiters:
            self._resolve_waiter(callback, future, ok)

    @staticmethod
    def _resolve_waiter(callback: Optional[FlushCallback], future: asyncio.Future, ok: bool):
        if not future.done():
            future.set_result(ok)
        if callback is not None:
            try:
                callback(ok)
            except Exception as e:
                logger.error(f"Flush callback error: {e}")

    # === Multicast loop ===

    def _start_mdns(self):
        if self._mdns_timer is not None:
            self._mdns_timer.cancel()
            self._mdns_timer = None
        self._mdns_tick()

    def _mdns_tick(self):
        self._mdns_timer = None
        if self.destroyed:
            return
        self._lan_seen.clear()
        self._discovery._multicast_query(self._query)
        self._mdns_timer = self._discovery._notify(self._mdns_tick, eager=True)

    def _fire_announce(self):
        """Push our answer to the LAN without waiting to be asked."""
        if self.destroyed:
            return
        self._discovery._on_query(MDNSPacket(questions=[Question('SRV', self.domain)]), None)

    def _on_local_peer(self, port: int, host: str, to: Optional[Endpoint] = None):
        """
        A LAN answer for our domain. A peer answering both our query and its
        own unsolicited announce is reported once per multicast interval.
        """
        if self.destroyed or (host, port) in self._lan_seen:
            return
        self._lan_seen.add((host, port))
        self.emit('peer', PeerRecord(
            port=port, host=host, local=True, referrer=None, topic=self.key, to=to,
        ))

    # === Shutdown ===

    async def _unannounce(self):
        try:
            await self._discovery.dht.unannounce(self.key, self.announce)
        except Exception as e:
            logger.warning(f"Unannounce for {self.domain} failed: {e}")
        self._close()

    def _close(self):
        if not self.closed.done():
            self.closed.set_result(None)
        self.emit('close')

    def __repr__(self):
        mode = 'announce' if self.announce else 'lookup'
        if self.announce and self.lookup:
            mode = 'announce+lookup'
        return f"<TopicSession {self.domain} {mode}{' destroyed' if self.destroyed else ''}>"
