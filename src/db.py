"""
Database Manager - PostgreSQL-backed resource store.

Stores Postgresql records and their Pods keyed by (namespace, name).
Deletion follows the finalizer protocol: a delete request only sets
``deletion_timestamp`` while finalizers remain, and the row is removed once
the last finalizer is released.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional

from events import EventBus, EventType, ResourceEvent
from migrate import run_migrations
from models import (
    NamespacedName,
    Pod,
    PodPhase,
    PodSpec,
    Postgresql,
    PostgresqlSpec,
    PostgresqlStatus,
)
from store import AlreadyExistsError, NotFoundError

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._event_bus = event_bus

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus that receives change events."""
        self._event_bus = event_bus

    async def _publish(self, event_type: EventType, obj) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                ResourceEvent.from_resource(event_type, obj.to_dict())
            )

    # ==================== Postgresql Methods ====================

    async def get_postgresql(self, key: NamespacedName) -> Optional[Postgresql]:
        """Get a Postgresql record by namespace and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM postgresqls WHERE namespace = $1 AND name = $2",
                key.namespace,
                key.name,
            )
            if not row:
                return None
            return self._parse_postgresql_row(row)

    async def list_postgresqls(
        self, namespace: Optional[str] = None, limit: int = 1000
    ) -> List[Postgresql]:
        """List Postgresql records, optionally within one namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM postgresqls WHERE namespace = $1
                    ORDER BY namespace, name LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM postgresqls ORDER BY namespace, name LIMIT $1",
                    limit,
                )
            return [self._parse_postgresql_row(row) for row in rows]

    async def create_postgresql(self, pg: Postgresql) -> Postgresql:
        """
        Create a new Postgresql record.

        Raises:
            AlreadyExistsError: If a record with the same identity exists.
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO postgresqls (namespace, name, spec, status, finalizers)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                    """,
                    pg.namespace,
                    pg.name,
                    json.dumps(pg.spec.to_dict()),
                    json.dumps(pg.status.to_dict()),
                    json.dumps(pg.finalizers),
                )
            except asyncpg.UniqueViolationError:
                raise AlreadyExistsError(f"Postgresql {pg.identity} already exists")

        created = self._parse_postgresql_row(row)
        logger.info(f"Created Postgresql {pg.identity}")
        await self._publish(EventType.ADDED, created)
        return created

    async def delete_postgresql(self, key: NamespacedName) -> bool:
        """
        Request deletion of a record.

        A record without finalizers is removed immediately; otherwise
        ``deletion_timestamp`` is set and the row stays until the
        finalizers are released.

        Returns:
            True if the record existed, False otherwise.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    DELETE FROM postgresqls
                    WHERE namespace = $1 AND name = $2
                      AND finalizers = '[]'::jsonb
                    RETURNING *
                    """,
                    key.namespace,
                    key.name,
                )
                if row:
                    deleted = self._parse_postgresql_row(row)
                    logger.info(f"Deleted Postgresql {key}")
                    event_type = EventType.DELETED
                else:
                    row = await conn.fetchrow(
                        """
                        UPDATE postgresqls
                        SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                            updated_at = NOW()
                        WHERE namespace = $1 AND name = $2
                        RETURNING *
                        """,
                        key.namespace,
                        key.name,
                    )
                    if not row:
                        return False
                    deleted = self._parse_postgresql_row(row)
                    logger.info(f"Marked Postgresql {key} for deletion")
                    event_type = EventType.MODIFIED

        await self._publish(event_type, deleted)
        return True

    async def update_postgresql_status(self, pg: Postgresql) -> None:
        """
        Write the status of a record.

        Writing an unchanged status is a no-op and emits no event.

        Raises:
            NotFoundError: If the record does not exist.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE postgresqls
                SET status = $3, updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                  AND status IS DISTINCT FROM $3::jsonb
                RETURNING *
                """,
                pg.namespace,
                pg.name,
                json.dumps(pg.status.to_dict()),
            )
            if not row:
                await self._ensure_postgresql_exists(conn, pg.identity)
                return

        await self._publish(EventType.MODIFIED, self._parse_postgresql_row(row))

    async def update_postgresql_metadata(self, pg: Postgresql) -> None:
        """
        Write the finalizers of a record.

        A terminating record whose finalizer list becomes empty is
        permanently deleted.

        Raises:
            NotFoundError: If the record does not exist.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE postgresqls
                    SET finalizers = $3, updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                      AND finalizers IS DISTINCT FROM $3::jsonb
                    RETURNING *
                    """,
                    pg.namespace,
                    pg.name,
                    json.dumps(pg.finalizers),
                )
                if not row:
                    await self._ensure_postgresql_exists(conn, pg.identity)
                    return

                removed = await conn.fetchrow(
                    """
                    DELETE FROM postgresqls
                    WHERE namespace = $1 AND name = $2
                      AND deletion_timestamp IS NOT NULL
                      AND finalizers = '[]'::jsonb
                    RETURNING *
                    """,
                    pg.namespace,
                    pg.name,
                )

        if removed:
            logger.info(f"Finalizers cleared, hard-deleted Postgresql {pg.identity}")
            await self._publish(EventType.DELETED, self._parse_postgresql_row(removed))
        else:
            await self._publish(EventType.MODIFIED, self._parse_postgresql_row(row))

    async def _ensure_postgresql_exists(
        self, conn: asyncpg.Connection, key: NamespacedName
    ) -> None:
        exists = await conn.fetchval(
            "SELECT 1 FROM postgresqls WHERE namespace = $1 AND name = $2",
            key.namespace,
            key.name,
        )
        if not exists:
            raise NotFoundError(f"Postgresql {key} not found")

    # ==================== Pod Methods ====================

    async def get_pod(self, key: NamespacedName) -> Optional[Pod]:
        """Get a Pod by namespace and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM pods WHERE namespace = $1 AND name = $2",
                key.namespace,
                key.name,
            )
            if not row:
                return None
            return self._parse_pod_row(row)

    async def list_pods(
        self, namespace: Optional[str] = None, limit: int = 1000
    ) -> List[Pod]:
        """List Pods, optionally within one namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM pods WHERE namespace = $1
                    ORDER BY namespace, name LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM pods ORDER BY namespace, name LIMIT $1",
                    limit,
                )
            return [self._parse_pod_row(row) for row in rows]

    async def create_pod(self, pod: Pod) -> Pod:
        """
        Create a Pod. New pods start in the Pending phase.

        Raises:
            AlreadyExistsError: If a pod with the same identity exists.
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO pods (namespace, name, spec, labels, phase)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                    """,
                    pod.namespace,
                    pod.name,
                    json.dumps(pod.spec.to_dict(), sort_keys=True),
                    json.dumps(pod.labels),
                    PodPhase.PENDING.value,
                )
            except asyncpg.UniqueViolationError:
                raise AlreadyExistsError(f"Pod {pod.identity} already exists")

        created = self._parse_pod_row(row)
        logger.info(f"Created Pod {pod.identity}")
        await self._publish(EventType.ADDED, created)
        return created

    async def delete_pod(self, key: NamespacedName) -> bool:
        """
        Delete a Pod.

        Returns:
            True if the pod was deleted, False if it did not exist.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "DELETE FROM pods WHERE namespace = $1 AND name = $2 RETURNING *",
                key.namespace,
                key.name,
            )
        if not row:
            return False
        logger.info(f"Deleted Pod {key}")
        await self._publish(EventType.DELETED, self._parse_pod_row(row))
        return True

    async def update_pod_phase(self, key: NamespacedName, phase: str) -> None:
        """
        Record the observed phase of a Pod.

        Raises:
            NotFoundError: If the pod does not exist.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE pods
                SET phase = $3, updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                  AND phase IS DISTINCT FROM $3
                RETURNING *
                """,
                key.namespace,
                key.name,
                phase,
            )
            if not row:
                exists = await conn.fetchval(
                    "SELECT 1 FROM pods WHERE namespace = $1 AND name = $2",
                    key.namespace,
                    key.name,
                )
                if not exists:
                    raise NotFoundError(f"Pod {key} not found")
                return

        await self._publish(EventType.MODIFIED, self._parse_pod_row(row))

    # ==================== Row parsing ====================

    @staticmethod
    def _load_json(value: Any, default: Any) -> Any:
        if value is None:
            return default
        return json.loads(value) if isinstance(value, str) else value

    def _parse_postgresql_row(self, row: asyncpg.Record) -> Postgresql:
        """
        Parse a postgresqls row into a Postgresql record.

        JSONB columns may arrive as strings or already decoded, depending on
        the connection's type codecs.
        """
        result: Dict[str, Any] = dict(row)
        return Postgresql(
            namespace=result["namespace"],
            name=result["name"],
            spec=PostgresqlSpec.from_dict(self._load_json(result.get("spec"), {})),
            status=PostgresqlStatus.from_dict(
                self._load_json(result.get("status"), {})
            ),
            finalizers=self._load_json(result.get("finalizers"), []) or [],
            deletion_timestamp=result.get("deletion_timestamp"),
        )

    def _parse_pod_row(self, row: asyncpg.Record) -> Pod:
        """Parse a pods row into a Pod."""
        result: Dict[str, Any] = dict(row)
        return Pod(
            namespace=result["namespace"],
            name=result["name"],
            spec=PodSpec.from_dict(self._load_json(result.get("spec"), {})),
            phase=result.get("phase"),
            labels=self._load_json(result.get("labels"), {}) or {},
        )
