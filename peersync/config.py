"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import json

from dotenv import load_dotenv


@dataclass
class Config:
    """
    Sync engine configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (PEERSYNC_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    transfer_port: int = 8888
    peer_port: Optional[int] = None  # defaults to transfer_port
    api_port: int = 8080

    # Storage
    data_dir: Path = field(default_factory=lambda: Path('./peersync_data'))
    folder_name: str = 'synced_files'

    # Transfer
    chunk_size: int = 8192  # 8KB
    connect_timeout: float = 5.0
    max_connections: int = 16

    # Retry
    max_attempts: int = 3
    retry_backoff: float = 1.0  # seconds, multiplied by attempt number

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv('PEERSYNC_HOST', config.host)
        config.transfer_port = int(os.getenv('PEERSYNC_PORT', config.transfer_port))
        peer_port = os.getenv('PEERSYNC_PEER_PORT')
        if peer_port:
            config.peer_port = int(peer_port)
        config.api_port = int(os.getenv('PEERSYNC_API_PORT', config.api_port))

        # Storage
        data_dir = os.getenv('PEERSYNC_DATA_DIR')
        if data_dir:
            config.data_dir = Path(data_dir)
        config.folder_name = os.getenv('PEERSYNC_FOLDER_NAME', config.folder_name)

        # Transfer
        config.chunk_size = int(os.getenv('PEERSYNC_CHUNK_SIZE', config.chunk_size))
        config.connect_timeout = float(
            os.getenv('PEERSYNC_CONNECT_TIMEOUT', config.connect_timeout)
        )
        config.max_connections = int(
            os.getenv('PEERSYNC_MAX_CONNECTIONS', config.max_connections)
        )

        # Retry
        config.max_attempts = int(os.getenv('PEERSYNC_MAX_ATTEMPTS', config.max_attempts))
        config.retry_backoff = float(
            os.getenv('PEERSYNC_RETRY_BACKOFF', config.retry_backoff)
        )

        # Logging
        config.log_level = os.getenv('PEERSYNC_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.transfer_port = data.get('transfer_port', config.transfer_port)
        config.peer_port = data.get('peer_port', config.peer_port)
        config.api_port = data.get('api_port', config.api_port)

        # Storage
        if 'data_dir' in data:
            config.data_dir = Path(data['data_dir'])
        config.folder_name = data.get('folder_name', config.folder_name)

        # Transfer
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)
        config.max_connections = data.get('max_connections', config.max_connections)

        # Retry
        config.max_attempts = data.get('max_attempts', config.max_attempts)
        config.retry_backoff = data.get('retry_backoff', config.retry_backoff)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'transfer_port': self.transfer_port,
            'peer_port': self.peer_port,
            'api_port': self.api_port,
            'data_dir': str(self.data_dir),
            'folder_name': self.folder_name,
            'chunk_size': self.chunk_size,
            'connect_timeout': self.connect_timeout,
            'max_connections': self.max_connections,
            'max_attempts': self.max_attempts,
            'retry_backoff': self.retry_backoff,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in config.to_dict():
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config
