"""
Peer Records and Domain Naming

Design Decision: Domain Names for Topics
========================================

mDNS names are made of labels of at most 63 characters, so a full 32-byte
topic (64 hex characters) does not fit in one label.

Decision: hex of the first 20 bytes + configured suffix
- 40 hex characters fit in a single label
- Deterministic, so every process derives the same name
- Topics sharing a 20-byte prefix share a name; the registry keeps a set
  of sessions per name so this is harmless
"""

from dataclasses import dataclass
from typing import Any, Optional

DEFAULT_DOMAIN = 'hyperswarm.local'
DOMAIN_PREFIX_BYTES = 20


def domain_for(key: bytes, suffix: str = DEFAULT_DOMAIN) -> str:
    """Map a topic key to the name used by local (multicast) discovery."""
    return key[:DOMAIN_PREFIX_BYTES].hex() + '.' + suffix


@dataclass(frozen=True)
class Endpoint:
    """A host/port pair."""
    host: str
    port: int

    @property
    def address(self):
        return (self.host, self.port)

    @classmethod
    def parse(cls, value: str) -> 'Endpoint':
        """Parse ``host:port``."""
        host, _, port = value.strip().rpartition(':')
        if not host:
            raise ValueError(f"Invalid endpoint (use host:port): {value}")
        return cls(host=host, port=int(port))

    def __str__(self):
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class AnnounceConfig:
    """What a session advertises on the DHT."""
    port: int
    local_address: Optional[Endpoint] = None


@dataclass(frozen=True)
class PeerRecord:
    """
    A discovered peer.

    ``referrer`` is the DHT node that reported the peer and is only set for
    peers found through the DHT. Peers found on the LAN are always
    ``local`` with no referrer.
    """
    port: int
    host: str
    local: bool
    referrer: Optional[Any]
    topic: bytes
    to: Optional[Endpoint] = None

    @property
    def address(self):
        return (self.host, self.port)
