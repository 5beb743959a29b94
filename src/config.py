"""
Configuration module for the fleetsync operator.

Loads configuration from environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL configuration of the control-plane store."""

    host: str = "localhost"
    port: int = 5432
    database: str = "fleetsync"
    user: str = "fleetsync"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "fleetsync"),
            user=os.getenv("DB_USER", "fleetsync"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class ControllerConfig:
    """Worker pool, backoff and ensure loop configuration."""

    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 300.0  # seconds per reconcile pass

    # Exponential backoff configuration
    backoff_base_delay: float = 0.5  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Ordered creation waits for the cache
    cache_poll_interval: float = 0.1
    cache_sync_timeout: float = 30.0

    # Requeue delay after an immutable-field delete
    recreate_requeue_delay: float = 5.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "300")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "0.5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            cache_poll_interval=float(os.getenv("CACHE_POLL_INTERVAL", "0.1")),
            cache_sync_timeout=float(os.getenv("CACHE_SYNC_TIMEOUT", "30")),
            recreate_requeue_delay=float(os.getenv("RECREATE_REQUEUE_DELAY", "5")),
        )


@dataclass
class APIConfig:
    """Admin API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class ClusterConfig:
    """Settings shared by every cluster's template data."""

    datacenters: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    seed_datacenter: str = ""
    overwrite_registry: str = ""
    node_port_range: str = "30000-32767"
    node_access_network: str = "10.254.0.0/16"
    etcd_disk_size: str = "5Gi"
    in_cluster_prometheus_rules_file: str = ""
    in_cluster_prometheus_disable_default_rules: bool = False

    @classmethod
    def from_env(cls):
        """
        Load from environment variables.

        DATACENTERS holds a JSON object mapping datacenter names to their
        records.

        Raises:
            ValueError: If DATACENTERS is not a JSON object
        """
        datacenters: Dict[str, Dict[str, Any]] = {}
        raw = os.getenv("DATACENTERS")
        if raw:
            try:
                datacenters = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"DATACENTERS is not valid JSON: {e}")
            if not isinstance(datacenters, dict):
                raise ValueError("DATACENTERS must be a JSON object")

        return cls(
            datacenters=datacenters,
            seed_datacenter=os.getenv("SEED_DATACENTER", ""),
            overwrite_registry=os.getenv("OVERWRITE_REGISTRY", ""),
            node_port_range=os.getenv("NODE_PORT_RANGE", "30000-32767"),
            node_access_network=os.getenv("NODE_ACCESS_NETWORK", "10.254.0.0/16"),
            etcd_disk_size=os.getenv("ETCD_DISK_SIZE", "5Gi"),
            in_cluster_prometheus_rules_file=os.getenv(
                "IN_CLUSTER_PROMETHEUS_RULES_FILE", ""
            ),
            in_cluster_prometheus_disable_default_rules=os.getenv(
                "IN_CLUSTER_PROMETHEUS_DISABLE_DEFAULT_RULES", "false"
            ).lower()
            == "true",
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    cluster: ClusterConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            cluster=ClusterConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            cluster=ClusterConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
