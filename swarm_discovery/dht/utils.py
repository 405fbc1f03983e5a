"""
DHT Keys

Node ids and topic keys share one 160-bit space ordered by XOR distance.
Topics are 32 bytes, so they are hashed to 160 bits with SHA-1 first; every
node hashes the same way, which is what makes an announcer and a lookup for
one topic converge on the same nodes.
"""

import os
import hashlib

ID_BITS = 160
ID_BYTES = ID_BITS // 8


def generate_node_id() -> bytes:
    return os.urandom(ID_BYTES)


def topic_to_dht_key(topic: bytes) -> bytes:
    """Position of a topic in the id space."""
    return hashlib.sha1(topic).digest()


def xor_distance(a: bytes, b: bytes) -> int:
    if len(a) != ID_BYTES or len(b) != ID_BYTES:
        raise ValueError(f"Ids must be {ID_BYTES} bytes")
    return int.from_bytes(a, 'big') ^ int.from_bytes(b, 'big')


def shared_prefix_bucket(own_id: bytes, other_id: bytes) -> int:
    """
    Bucket for ``other_id`` in ``own_id``'s table: the length of the common
    bit prefix, so bucket 0 covers the farthest half of the space.

    Returns:
        0-159, or -1 for ``own_id`` itself
    """
    distance = xor_distance(own_id, other_id)
    if not distance:
        return -1
    return ID_BITS - distance.bit_length()
