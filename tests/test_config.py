import json

import pytest

from swarm_discovery.config import DHT_INTERVAL, MULTICAST_INTERVAL, DiscoveryConfig, load_config
from swarm_discovery.peer import DEFAULT_DOMAIN, Endpoint


@pytest.fixture
def clean_env(monkeypatch):
    for name in ('SWARM_HOST', 'SWARM_PORT', 'SWARM_BOOTSTRAP', 'SWARM_EPHEMERAL',
                 'SWARM_DOMAIN', 'SWARM_DHT_INTERVAL', 'SWARM_MULTICAST_INTERVAL',
                 'SWARM_LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults():
    config = DiscoveryConfig()
    assert config.bootstrap == []
    assert config.ephemeral is True
    assert config.domain == DEFAULT_DOMAIN
    assert config.dht_interval == DHT_INTERVAL == 300.0
    assert config.multicast_interval == MULTICAST_INTERVAL == 30.0


def test_from_env(clean_env):
    clean_env.setenv('SWARM_PORT', '49737')
    clean_env.setenv('SWARM_BOOTSTRAP', '203.0.113.1:49737,bogus,203.0.113.2:49738')
    clean_env.setenv('SWARM_EPHEMERAL', 'false')
    clean_env.setenv('SWARM_DOMAIN', 'example.local')
    clean_env.setenv('SWARM_MULTICAST_INTERVAL', '5')

    config = DiscoveryConfig.from_env()

    assert config.port == 49737
    assert config.bootstrap == [Endpoint('203.0.113.1', 49737), Endpoint('203.0.113.2', 49738)]
    assert config.ephemeral is False
    assert config.domain == 'example.local'
    assert config.multicast_interval == 5.0


def test_file_round_trip(clean_env, tmp_path):
    path = tmp_path / 'config.json'
    config = DiscoveryConfig(
        port=49737,
        bootstrap=[Endpoint('203.0.113.1', 49737)],
        domain='example.local',
        multicast_loopback=False,
    )
    config.save(path)

    assert json.loads(path.read_text())['bootstrap'] == [{'host': '203.0.113.1', 'port': 49737}]
    assert DiscoveryConfig.from_file(path) == config


def test_missing_file_gives_defaults(tmp_path):
    assert DiscoveryConfig.from_file(tmp_path / 'missing.json') == DiscoveryConfig()


def test_env_overrides_file(clean_env, tmp_path):
    path = tmp_path / 'config.json'
    DiscoveryConfig(domain='file.local', bootstrap=[Endpoint('203.0.113.1', 1)]).save(path)
    clean_env.setenv('SWARM_DOMAIN', 'env.local')
    clean_env.setenv('SWARM_BOOTSTRAP', '203.0.113.2:2')

    config = load_config(path)

    assert config.domain == 'env.local'
    # Bootstrap nodes from both sources
    assert config.bootstrap == [Endpoint('203.0.113.1', 1), Endpoint('203.0.113.2', 2)]
