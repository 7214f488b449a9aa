"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from events import EventBus
from models import NamespacedName, Postgresql, PostgresqlSpec
from store import InMemoryStore


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def key():
    """Identity of the sample record."""
    return NamespacedName("default", "db1")


@pytest.fixture
def sample_postgresql():
    """A freshly submitted Postgresql record."""
    return Postgresql(
        namespace="default",
        name="db1",
        spec=PostgresqlSpec(default_user="pguser", password="s3cret"),
    )


@pytest.fixture
def sample_postgresql_dict():
    """Serialized form of a Postgresql record with status and finalizer."""
    return {
        "apiVersion": "database.db.example.vmware.com/v1",
        "kind": "Postgresql",
        "metadata": {
            "namespace": "default",
            "name": "db1",
            "finalizers": ["database.db.example.vmware.com/finalizer"],
        },
        "spec": {"defaultuser": "pguser", "password": "s3cret"},
        "status": {
            "phase": "up",
            "active": {
                "kind": "Pod",
                "namespace": "default",
                "name": "db1",
                "apiVersion": "v1",
            },
        },
    }


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store():
    """In-memory store without an event bus."""
    return InMemoryStore()
