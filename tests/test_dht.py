"""Kademlia node over real UDP sockets on 127.0.0.1."""

import asyncio
import os

import pytest

from swarm_discovery.dht import KademliaNode, Message, MessageType, topic_to_dht_key
from swarm_discovery.dht.routing import K, KBucket, NodeInfo, RoutingTable
from swarm_discovery.dht.utils import ID_BYTES, generate_node_id, shared_prefix_bucket, xor_distance
from swarm_discovery.peer import AnnounceConfig, Endpoint, PeerRecord


async def start_network(count: int = 2):
    """A persistent bootstrap node plus ``count`` ephemeral clients."""
    bootstrap = KademliaNode(host='127.0.0.1', ephemeral=False)
    await bootstrap.start()

    clients = []
    for _ in range(count):
        node = KademliaNode(
            host='127.0.0.1',
            bootstrap_nodes=[Endpoint('127.0.0.1', bootstrap.port)],
        )
        await node.start()
        await node.bootstrap()
        clients.append(node)
    return bootstrap, clients


async def stop_all(*nodes):
    for node in nodes:
        await node.stop()


async def drain(stream):
    return [reply async for reply in stream]


# ---------------------------------------------------------------------------
# Utilities and routing
# ---------------------------------------------------------------------------

def test_topic_to_dht_key_is_stable():
    key = os.urandom(32)
    assert topic_to_dht_key(key) == topic_to_dht_key(key)
    assert len(topic_to_dht_key(key)) == ID_BYTES


def test_xor_distance_properties():
    a, b = generate_node_id(), generate_node_id()
    assert xor_distance(a, a) == 0
    assert xor_distance(a, b) == xor_distance(b, a)
    assert shared_prefix_bucket(a, a) == -1


def test_message_wire_format():
    msg = Message(type=MessageType.PING, sender_id=generate_node_id(), ephemeral=True)
    parsed = Message.from_bytes(msg.to_bytes())
    assert parsed.type is MessageType.PING
    assert parsed.ephemeral is True
    assert parsed.message_id == msg.message_id
    assert not parsed.is_response
    assert msg.reply(generate_node_id(), MessageType.PONG).is_response


def test_full_bucket_keeps_replacements():
    bucket = KBucket(k=2)
    nodes = [NodeInfo(generate_node_id(), '127.0.0.1', 1000 + i) for i in range(3)]
    assert bucket.insert(nodes[0])
    assert bucket.insert(nodes[1])
    assert not bucket.insert(nodes[2])
    assert nodes[2].node_id not in bucket

    bucket.drop(nodes[0].node_id)
    assert nodes[2].node_id in bucket
    assert len(bucket) == 2


def test_table_ignores_own_id():
    own = generate_node_id()
    table = RoutingTable(own)
    assert not table.insert(NodeInfo(own, '127.0.0.1', 1000))
    assert len(table) == 0


def test_closest_nodes_sorted_by_distance():
    own = generate_node_id()
    table = RoutingTable(own)
    for i in range(30):
        table.insert(NodeInfo(generate_node_id(), '127.0.0.1', 2000 + i))

    target = generate_node_id()
    closest = table.closest(target, K)
    distances = [xor_distance(target, n.node_id) for n in closest]
    assert distances == sorted(distances)
    assert len(closest) <= K


def test_contact_wire_format():
    node = NodeInfo(generate_node_id(), '127.0.0.1', 49737)
    assert NodeInfo.from_wire(node.to_wire()) == node
    assert node.endpoint == Endpoint('127.0.0.1', 49737)


def test_malformed_message_rejected():
    for data in (b'not json', b'{}', b'{"t": "NOPE", "from": "00", "rid": "00"}'):
        with pytest.raises(ValueError):
            Message.from_bytes(data)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ping_returns_observed_address():
    bootstrap, (client,) = await start_network(1)
    try:
        pong = await client.ping(Endpoint('127.0.0.1', bootstrap.port))
        assert pong == Endpoint('127.0.0.1', client.port)
        # Ephemeral clients stay out of routing tables
        assert bootstrap.routing_table.contacts() == []
        assert [n.port for n in client.routing_table.contacts()] == [bootstrap.port]
    finally:
        await stop_all(client, bootstrap)


@pytest.mark.asyncio
async def test_ping_unreachable_node_times_out():
    node = KademliaNode(host='127.0.0.1')
    await node.start()
    try:
        node.protocol.REQUEST_TIMEOUT = 0.2
        assert await node.ping(Endpoint('127.0.0.1', 9)) is None
    finally:
        await node.stop()


@pytest.mark.asyncio
async def test_announce_then_lookup():
    bootstrap, (announcer, finder) = await start_network(2)
    key = os.urandom(32)
    try:
        await drain(announcer.announce(key, AnnounceConfig(port=10000)))

        replies = await drain(finder.lookup(key))
        peers = [peer for reply in replies for peer in reply.peers]
        assert Endpoint('127.0.0.1', 10000) in peers
        assert all(reply.node.port == bootstrap.port for reply in replies)
    finally:
        await stop_all(announcer, finder, bootstrap)


@pytest.mark.asyncio
async def test_announce_reply_includes_self():
    bootstrap, (announcer,) = await start_network(1)
    key = os.urandom(32)
    try:
        replies = await drain(announcer.announce(key, AnnounceConfig(port=0)))
        peers = [peer for reply in replies for peer in reply.peers]
        # Port 0 announces the DHT socket's own port
        assert Endpoint('127.0.0.1', announcer.port) in peers
    finally:
        await stop_all(announcer, bootstrap)


@pytest.mark.asyncio
async def test_local_address_shared_with_same_network():
    bootstrap, (announcer, finder) = await start_network(2)
    key = os.urandom(32)
    try:
        config = AnnounceConfig(port=10000, local_address=Endpoint('192.168.1.10', 20000))
        await drain(announcer.announce(key, config))

        replies = await drain(finder.lookup(key))
        local = [peer for reply in replies for peer in reply.local_peers]
        assert local == [Endpoint('192.168.1.10', 20000)]
    finally:
        await stop_all(announcer, finder, bootstrap)


@pytest.mark.asyncio
async def test_unannounce_removes_peer():
    bootstrap, (announcer, finder) = await start_network(2)
    key = os.urandom(32)
    config = AnnounceConfig(port=10000)
    try:
        await drain(announcer.announce(key, config))
        await announcer.unannounce(key, config)

        replies = await drain(finder.lookup(key))
        assert [peer for reply in replies for peer in reply.peers] == []
    finally:
        await stop_all(announcer, finder, bootstrap)


@pytest.mark.asyncio
async def test_unannounce_only_retracts_own_port():
    bootstrap, (first, second, finder) = await start_network(3)
    key = os.urandom(32)
    try:
        await drain(first.announce(key, AnnounceConfig(port=7777)))
        await drain(second.announce(key, AnnounceConfig(port=8888)))
        await second.unannounce(key, AnnounceConfig(port=8888))

        replies = await drain(finder.lookup(key))
        peers = [peer for reply in replies for peer in reply.peers]
        assert Endpoint('127.0.0.1', 7777) in peers
        assert Endpoint('127.0.0.1', 8888) not in peers
    finally:
        await stop_all(first, second, finder, bootstrap)


@pytest.mark.asyncio
async def test_storage_node_unannounce_keeps_stored_peers():
    bootstrap, (announcer, finder) = await start_network(2)
    key = os.urandom(32)
    try:
        await drain(announcer.announce(key, AnnounceConfig(port=7777)))
        await bootstrap.unannounce(key, AnnounceConfig(port=9999))

        replies = await drain(finder.lookup(key))
        peers = [peer for reply in replies for peer in reply.peers]
        assert Endpoint('127.0.0.1', 7777) in peers
    finally:
        await stop_all(announcer, finder, bootstrap)

@pytest.mark.asyncio
async def test_lookup_without_nodes_ends_immediately():
    node = KademliaNode(host='127.0.0.1')
    await node.start()
    try:
        assert await asyncio.wait_for(drain(node.lookup(os.urandom(32))), 1) == []
    finally:
        await node.stop()


@pytest.mark.asyncio
async def test_destroyed_stream_stops_iteration():
    bootstrap, (client,) = await start_network(1)
    try:
        stream = client.lookup(os.urandom(32))
        stream.destroy()
        assert await asyncio.wait_for(drain(stream), 1) == []
    finally:
        await stop_all(client, bootstrap)


@pytest.mark.asyncio
async def test_holepunch_relayed_through_referrer():
    bootstrap, (announcer, finder) = await start_network(2)
    key = os.urandom(32)
    try:
        await drain(announcer.announce(key, AnnounceConfig(port=0)))
        replies = await drain(finder.lookup(key))
        reply = next(r for r in replies if r.peers)
        found = reply.peers[0]

        peer = PeerRecord(port=found.port, host=found.host, local=False,
                          referrer=reply.node, topic=key)
        assert await finder.holepunch(peer) is True
    finally:
        await stop_all(announcer, finder, bootstrap)


@pytest.mark.asyncio
async def test_stats():
    node = KademliaNode(host='127.0.0.1')
    await node.start()
    try:
        stats = node.get_stats()
        assert stats['running'] is True
        assert stats['ephemeral'] is True
        assert stats['address'] == f"127.0.0.1:{node.port}"
    finally:
        await node.stop()
