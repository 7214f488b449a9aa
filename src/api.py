"""
HTTP API - REST interface for Postgresql records.

Provides a FastAPI application for creating, inspecting and deleting
Postgresql records, reading their Pods, reporting pod phases on backends
without a kubelet, triggering reconciliation, and watching change events.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from events import EventBus, ResourceEvent
from models import NamespacedName, Pod, Postgresql, PostgresqlSpec
from store import AlreadyExistsError, NotFoundError, ResourceStore, StoreError
from validation import validate_name, validate_postgresql_spec

logger = logging.getLogger(__name__)


# ==================== Models ====================


class PostgresqlCreate(BaseModel):
    """Request model for creating a Postgresql record."""

    name: str = Field(..., description="Record name", examples=["db1"])
    spec: Dict[str, Any] = Field(
        ...,
        description="Desired state",
        examples=[{"defaultuser": "pguser", "password": "secret"}],
    )

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        is_valid, error = validate_name(v)
        if not is_valid:
            raise ValueError(error)
        return v

    @field_validator("spec")
    @classmethod
    def check_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        is_valid, error = validate_postgresql_spec(v)
        if not is_valid:
            raise ValueError(error)
        return v


class PostgresqlResponse(BaseModel):
    """Response model for a Postgresql record. The password is never returned."""

    namespace: str
    name: str
    default_user: str
    phase: Optional[str] = None
    active_pod: Optional[str] = None
    finalizers: List[str] = []
    deletion_timestamp: Optional[datetime] = None

    @classmethod
    def from_record(cls, pg: Postgresql) -> "PostgresqlResponse":
        return cls(
            namespace=pg.namespace,
            name=pg.name,
            default_user=pg.spec.default_user,
            phase=pg.status.phase.value if pg.status.phase else None,
            active_pod=(
                f"{pg.status.active.namespace}/{pg.status.active.name}"
                if pg.status.active
                else None
            ),
            finalizers=pg.finalizers,
            deletion_timestamp=pg.deletion_timestamp,
        )


class PodResponse(BaseModel):
    """Response model for a Pod."""

    namespace: str
    name: str
    phase: Optional[str] = None
    image: Optional[str] = None
    labels: Dict[str, str] = {}

    @classmethod
    def from_pod(cls, pod: Pod) -> "PodResponse":
        return cls(
            namespace=pod.namespace,
            name=pod.name,
            phase=pod.phase,
            image=pod.spec.containers[0].image if pod.spec.containers else None,
            labels=pod.labels,
        )


class PodStatusUpdate(BaseModel):
    """Request model for reporting the observed phase of a Pod."""

    phase: str = Field(..., description="Observed phase", examples=["Running"])

    @field_validator("phase")
    @classmethod
    def check_phase(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("phase cannot be empty")
        return v


def _check_namespace(namespace: str) -> None:
    is_valid, error = validate_name(namespace, "namespace")
    if not is_valid:
        raise HTTPException(status_code=400, detail=error)


# ==================== Server ====================


class APIServer:
    """REST API over a ResourceStore, served by uvicorn."""

    def __init__(
        self,
        store: ResourceStore,
        event_bus: Optional[EventBus] = None,
        controller=None,
        host: str = "0.0.0.0",
        port: int = 8000,
        log_level: str = "info",
        cors_origins: Optional[List[str]] = None,
    ):
        self.store = store
        self.host = host
        self.port = port
        self.log_level = log_level
        self.server: Optional[uvicorn.Server] = None
        self._event_bus = event_bus
        self._controller = controller

        self.app = FastAPI(
            title="Postgresql Operator API",
            description="Declarative single-instance PostgreSQL workloads",
            version="0.1.0",
        )
        if cors_origins:
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=cors_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        self._setup_routes()

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Postgresql records: /api/v1/namespaces/{namespace}/postgresqls
        - Pods: /api/v1/namespaces/{namespace}/pods
        - Reconciliation: POST .../postgresqls/{name}/reconcile
        - Events: GET /api/v1/events
        """

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "postgresql-operator"}

        # ==================== Postgresql Endpoints ====================

        @self.app.post(
            "/api/v1/namespaces/{namespace}/postgresqls",
            response_model=PostgresqlResponse,
            status_code=201,
        )
        async def create_postgresql(namespace: str, request: PostgresqlCreate):
            """Create a new Postgresql record."""
            _check_namespace(namespace)
            pg = Postgresql(
                namespace=namespace,
                name=request.name,
                spec=PostgresqlSpec.from_dict(request.spec),
            )
            try:
                created = await self.store.create_postgresql(pg)
            except AlreadyExistsError:
                raise HTTPException(
                    status_code=409,
                    detail=f"Postgresql {pg.identity} already exists",
                )
            except StoreError as e:
                logger.error(f"Error creating Postgresql {pg.identity}: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            return PostgresqlResponse.from_record(created)

        @self.app.get(
            "/api/v1/postgresqls", response_model=List[PostgresqlResponse]
        )
        async def list_all_postgresqls():
            """List Postgresql records in all namespaces."""
            try:
                records = await self.store.list_postgresqls()
            except StoreError as e:
                logger.error(f"Error listing Postgresql records: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            return [PostgresqlResponse.from_record(pg) for pg in records]

        @self.app.get(
            "/api/v1/namespaces/{namespace}/postgresqls",
            response_model=List[PostgresqlResponse],
        )
        async def list_postgresqls(namespace: str):
            """List Postgresql records in one namespace."""
            _check_namespace(namespace)
            try:
                records = await self.store.list_postgresqls(namespace)
            except StoreError as e:
                logger.error(f"Error listing Postgresql records: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            return [PostgresqlResponse.from_record(pg) for pg in records]

        @self.app.get(
            "/api/v1/namespaces/{namespace}/postgresqls/{name}",
            response_model=PostgresqlResponse,
        )
        async def get_postgresql(namespace: str, name: str):
            """Get a Postgresql record."""
            try:
                pg = await self.store.get_postgresql(NamespacedName(namespace, name))
            except StoreError as e:
                logger.error(f"Error getting Postgresql {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            if not pg:
                raise HTTPException(status_code=404, detail="Postgresql not found")
            return PostgresqlResponse.from_record(pg)

        @self.app.delete(
            "/api/v1/namespaces/{namespace}/postgresqls/{name}", status_code=202
        )
        async def delete_postgresql(namespace: str, name: str):
            """Request deletion; the Pod is cleaned up before the record goes."""
            key = NamespacedName(namespace, name)
            try:
                found = await self.store.delete_postgresql(key)
            except StoreError as e:
                logger.error(f"Error deleting Postgresql {key}: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            if not found:
                raise HTTPException(status_code=404, detail="Postgresql not found")
            return {"message": "Postgresql marked for deletion", "name": str(key)}

        @self.app.post(
            "/api/v1/namespaces/{namespace}/postgresqls/{name}/reconcile",
            status_code=202,
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Manually trigger reconciliation for a record."""
            if not self._controller:
                raise HTTPException(status_code=503, detail="Controller not running")
            key = NamespacedName(namespace, name)
            self._controller.trigger_reconciliation(key)
            return {"message": "Reconciliation triggered", "name": str(key)}

        # ==================== Pod Endpoints ====================

        @self.app.get(
            "/api/v1/namespaces/{namespace}/pods", response_model=List[PodResponse]
        )
        async def list_pods(namespace: str):
            """List Pods in a namespace."""
            _check_namespace(namespace)
            try:
                pods = await self.store.list_pods(namespace)
            except StoreError as e:
                logger.error(f"Error listing Pods: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            return [PodResponse.from_pod(pod) for pod in pods]

        @self.app.get(
            "/api/v1/namespaces/{namespace}/pods/{name}", response_model=PodResponse
        )
        async def get_pod(namespace: str, name: str):
            """Get a Pod."""
            try:
                pod = await self.store.get_pod(NamespacedName(namespace, name))
            except StoreError as e:
                logger.error(f"Error getting Pod {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            if not pod:
                raise HTTPException(status_code=404, detail="Pod not found")
            return PodResponse.from_pod(pod)

        @self.app.put(
            "/api/v1/namespaces/{namespace}/pods/{name}/status",
            response_model=PodResponse,
        )
        async def update_pod_status(namespace: str, name: str, update: PodStatusUpdate):
            """Report the observed phase of a Pod."""
            key = NamespacedName(namespace, name)
            try:
                await self.store.update_pod_phase(key, update.phase)
                pod = await self.store.get_pod(key)
            except NotFoundError:
                raise HTTPException(status_code=404, detail="Pod not found")
            except StoreError as e:
                logger.error(f"Error updating Pod {key}: {e}")
                raise HTTPException(status_code=400, detail=str(e))
            if not pod:
                raise HTTPException(status_code=404, detail="Pod not found")
            return PodResponse.from_pod(pod)

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_events(
            kind: Optional[str] = None, namespace: Optional[str] = None
        ):
            """SSE stream of record and Pod events.

            Optionally filter by kind and namespace.
            """
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(event: ResourceEvent) -> bool:
                if kind and event.kind != kind:
                    return False
                if namespace and event.namespace != namespace:
                    return False
                return True

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
