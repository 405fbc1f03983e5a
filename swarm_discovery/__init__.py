"""
Swarm Discovery

Find peers interested in the same 32-byte topic, over a Kademlia DHT and
over multicast DNS on the local network.
"""

from .config import DiscoveryConfig, load_config
from .errors import (
    DiscoveryError, InvalidState, NoBootstrapNodes, AllBootstrapNodesFailed,
    NotEnoughReplies, ReferrerRequired, LookupFailed,
)
from .peer import AnnounceConfig, Endpoint, PeerRecord, domain_for
from .registry import Discovery, PingResult, create_discovery
from .topic import TopicSession

__version__ = '0.1.0'

__all__ = [
    'DiscoveryConfig',
    'load_config',
    'DiscoveryError',
    'InvalidState',
    'NoBootstrapNodes',
    'AllBootstrapNodesFailed',
    'NotEnoughReplies',
    'ReferrerRequired',
    'LookupFailed',
    'AnnounceConfig',
    'Endpoint',
    'PeerRecord',
    'domain_for',
    'Discovery',
    'PingResult',
    'create_discovery',
    'TopicSession',
]
