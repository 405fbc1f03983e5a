"""
Configuration Management

Handles loading discovery configuration from environment variables and
config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional
import json

from dotenv import load_dotenv

from .peer import DEFAULT_DOMAIN, Endpoint

# Re-announce cadence (seconds). Each wait is drawn from [base, 2 * base).
DHT_INTERVAL = 300.0
MULTICAST_INTERVAL = 30.0


@dataclass
class DiscoveryConfig:
    """
    Discovery Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (SWARM_*)
    2. Config file (config.json)
    3. Default values
    """
    # DHT socket
    host: str = '0.0.0.0'
    port: int = 0

    # DHT membership
    bootstrap: List[Endpoint] = field(default_factory=list)
    ephemeral: bool = True

    # Local discovery
    domain: str = DEFAULT_DOMAIN
    multicast_loopback: bool = True

    # Refresh intervals (seconds)
    dht_interval: float = DHT_INTERVAL
    multicast_interval: float = MULTICAST_INTERVAL

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'DiscoveryConfig':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        config.host = os.getenv('SWARM_HOST', config.host)
        config.port = int(os.getenv('SWARM_PORT', config.port))

        bootstrap = os.getenv('SWARM_BOOTSTRAP', '')
        if bootstrap:
            config.bootstrap = []
            for node in bootstrap.split(','):
                try:
                    config.bootstrap.append(Endpoint.parse(node))
                except ValueError:
                    pass

        config.ephemeral = os.getenv('SWARM_EPHEMERAL', 'true').lower() == 'true'
        config.domain = os.getenv('SWARM_DOMAIN', config.domain)

        config.dht_interval = float(
            os.getenv('SWARM_DHT_INTERVAL', config.dht_interval)
        )
        config.multicast_interval = float(
            os.getenv('SWARM_MULTICAST_INTERVAL', config.multicast_interval)
        )

        config.log_level = os.getenv('SWARM_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'DiscoveryConfig':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)
        config.bootstrap = [
            Endpoint(node['host'], node['port'])
            for node in data.get('bootstrap', [])
        ]
        config.ephemeral = data.get('ephemeral', config.ephemeral)
        config.domain = data.get('domain', config.domain)
        config.multicast_loopback = data.get(
            'multicast_loopback', config.multicast_loopback
        )
        config.dht_interval = data.get('dht_interval', config.dht_interval)
        config.multicast_interval = data.get(
            'multicast_interval', config.multicast_interval
        )
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'bootstrap': [
                {'host': node.host, 'port': node.port} for node in self.bootstrap
            ],
            'ephemeral': self.ephemeral,
            'domain': self.domain,
            'multicast_loopback': self.multicast_loopback,
            'dht_interval': self.dht_interval,
            'multicast_interval': self.multicast_interval,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> DiscoveryConfig:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    config = DiscoveryConfig()

    if config_path and config_path.exists():
        config = DiscoveryConfig.from_file(config_path)

    env_config = DiscoveryConfig.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = DiscoveryConfig()
    for key in ['host', 'port', 'ephemeral', 'domain',
                'dht_interval', 'multicast_interval', 'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    # Bootstrap nodes are additive
    config.bootstrap.extend(env_config.bootstrap)

    return config
