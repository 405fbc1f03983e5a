"""
Routing Table

Design Decision: Synchronous Buckets
====================================

Every node runs on a single event loop and bucket updates never await
anything, so buckets are plain synchronous containers. A full bucket keeps
its existing (older, proven) contacts and parks newcomers in a bounded
replacement list that refills the bucket as dead contacts are dropped.

Only non-ephemeral nodes are ever inserted; see ``kademlia.py``.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterator, List

from ..peer import Endpoint
from .utils import ID_BITS, shared_prefix_bucket, xor_distance

# Kademlia constants
K = 20  # contacts per bucket, and the replication factor for announces
ALPHA = 3  # concurrent requests per walk step


@dataclass(eq=False)
class NodeInfo:
    """
    A DHT contact. Identity is the node id.

    Peers found through the DHT carry the node that reported them as their
    ``referrer``; holepunching goes through it.
    """
    node_id: bytes
    host: str
    port: int
    last_seen: float = field(default_factory=time.monotonic)

    def __eq__(self, other):
        return isinstance(other, NodeInfo) and other.node_id == self.node_id

    def __hash__(self):
        return hash(self.node_id)

    @property
    def address(self):
        return (self.host, self.port)

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.host, self.port)

    def to_wire(self) -> dict:
        return {'id': self.node_id.hex(), 'host': self.host, 'port': self.port}

    @classmethod
    def from_wire(cls, data: dict) -> 'NodeInfo':
        return cls(bytes.fromhex(data['id']), data['host'], int(data['port']))


class KBucket:
    """Contacts sharing one prefix length with our id, least recently seen first."""

    def __init__(self, k: int = K):
        self.k = k
        self._contacts: 'OrderedDict[bytes, NodeInfo]' = OrderedDict()
        self._replacements: 'OrderedDict[bytes, NodeInfo]' = OrderedDict()

    def __len__(self):
        return len(self._contacts)

    def __iter__(self) -> Iterator[NodeInfo]:
        return iter(self._contacts.values())

    def __contains__(self, node_id: bytes) -> bool:
        return node_id in self._contacts

    def insert(self, node: NodeInfo) -> bool:
        """
        Record that ``node`` is alive.

        Returns:
            False if the bucket was full and the node only went into the
            replacement list
        """
        known = self._contacts.pop(node.node_id, None)
        if known is not None or len(self._contacts) < self.k:
            node.last_seen = time.monotonic()
            self._contacts[node.node_id] = node
            return True

        self._replacements.pop(node.node_id, None)
        self._replacements[node.node_id] = node
        if len(self._replacements) > self.k:
            self._replacements.popitem(last=False)
        return False

    def drop(self, node_id: bytes) -> bool:
        """Forget an unresponsive contact; the newest replacement takes its place."""
        self._replacements.pop(node_id, None)
        if self._contacts.pop(node_id, None) is None:
            return False
        if self._replacements:
            _, replacement = self._replacements.popitem()
            self._contacts[replacement.node_id] = replacement
        return True


class RoutingTable:
    """One ``KBucket`` per possible shared-prefix length."""

    def __init__(self, node_id: bytes, k: int = K):
        self.node_id = node_id
        self.buckets = [KBucket(k) for _ in range(ID_BITS)]

    def __len__(self):
        return sum(len(bucket) for bucket in self.buckets)

    def insert(self, node: NodeInfo) -> bool:
        index = shared_prefix_bucket(self.node_id, node.node_id)
        return index >= 0 and self.buckets[index].insert(node)

    def drop(self, node_id: bytes) -> bool:
        index = shared_prefix_bucket(self.node_id, node_id)
        return index >= 0 and self.buckets[index].drop(node_id)

    def contacts(self) -> List[NodeInfo]:
        return [node for bucket in self.buckets for node in bucket]

    def closest(self, target: bytes, count: int = K) -> List[NodeInfo]:
        """The ``count`` known contacts nearest to ``target``."""
        return sorted(self.contacts(), key=lambda n: xor_distance(target, n.node_id))[:count]

    def stats(self) -> Dict:
        return {
            'contacts': len(self),
            'buckets_used': sum(1 for bucket in self.buckets if len(bucket)),
        }
