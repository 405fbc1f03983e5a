"""
DHT Module - Kademlia Implementation

The default wide-area discovery collaborator: announce/lookup peer streams,
unannounce, ping and holepunch over a UDP Kademlia network.
"""

from .utils import generate_node_id, topic_to_dht_key, xor_distance
from .routing import KBucket, RoutingTable, NodeInfo
from .protocol import DHTProtocol, Message, MessageType
from .stream import PeerReply, PeerStream
from .kademlia import KademliaNode

__all__ = [
    'generate_node_id',
    'topic_to_dht_key',
    'xor_distance',
    'KBucket',
    'RoutingTable',
    'NodeInfo',
    'DHTProtocol',
    'Message',
    'MessageType',
    'PeerReply',
    'PeerStream',
    'KademliaNode',
]
