"""
Multicast Module - Local Peer Discovery

mDNS queries and responses on the LAN, used to find peers for a topic
without going through the DHT.
"""

from .packet import Answer, MDNSPacket, Question, SrvData
from .mdns import MulticastDNS

__all__ = [
    'Answer',
    'MDNSPacket',
    'Question',
    'SrvData',
    'MulticastDNS',
]
