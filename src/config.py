"""
Configuration module for the Postgresql operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from reconciler import DEFAULT_REQUEUE_INTERVAL, FINALIZER

STORE_BACKENDS = ("memory", "postgres", "kubernetes")


@dataclass
class StoreConfig:
    """Which store backend holds records and pods."""

    backend: str = "memory"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("STORE_BACKEND", "memory").lower()
        if backend not in STORE_BACKENDS:
            raise ValueError(
                f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, "
                f"got '{backend}'"
            )
        return cls(backend=backend)


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration for the postgres backend."""

    host: str = "localhost"
    port: int = 5432
    database: str = "pg_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

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
            database=os.getenv("DB_NAME", "pg_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class KubernetesConfig:
    """Kubernetes API configuration for the kubernetes backend."""

    namespace: Optional[str] = None  # None watches all namespaces
    in_cluster: bool = False

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            namespace=os.getenv("KUBE_NAMESPACE") or None,
            in_cluster=os.getenv("KUBE_IN_CLUSTER", "false").lower() == "true",
        )


@dataclass
class ControllerConfig:
    """Reconciliation loop configuration."""

    requeue_interval: float = DEFAULT_REQUEUE_INTERVAL  # seconds
    resync_interval: int = 300  # seconds
    max_concurrent_reconciles: int = 5
    finalizer: str = FINALIZER

    # Exponential backoff configuration
    backoff_base_delay: float = 2  # base delay in seconds
    backoff_max_delay: float = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            requeue_interval=float(
                os.getenv("REQUEUE_INTERVAL", str(DEFAULT_REQUEUE_INTERVAL))
            ),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            finalizer=os.getenv("FINALIZER_NAME", FINALIZER),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "2")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        cors_origins = (
            os.getenv("CORS_ORIGINS", "").split(",")
            if os.getenv("CORS_ORIGINS")
            else ["*"]
        )
        return cls(
            enabled=os.getenv("API_ENABLED", "true").lower() == "true",
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_enabled=os.getenv("CORS_ENABLED", "false").lower() == "true",
            cors_origins=cors_origins,
        )


@dataclass
class Config:
    """Main configuration object."""

    store: StoreConfig
    database: DatabaseConfig
    kubernetes: KubernetesConfig
    controller: ControllerConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        store = StoreConfig.from_env()
        return cls(
            store=store,
            # Database credentials are only required by the postgres backend
            database=(
                DatabaseConfig.from_env()
                if store.backend == "postgres"
                else DatabaseConfig()
            ),
            kubernetes=KubernetesConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            store=StoreConfig(),
            database=DatabaseConfig(),
            kubernetes=KubernetesConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
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
