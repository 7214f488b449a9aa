"""
Resource Store - capability interface consumed by the reconciler.

The reconciler only depends on the ``ResourceStore`` protocol, so any
backend (in-memory, PostgreSQL, Kubernetes API) can be injected. Lookups
return ``None`` for missing objects; writes raise ``StoreError`` subclasses.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from events import EventBus, EventType, ResourceEvent
from models import NamespacedName, Pod, PodPhase, Postgresql

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A store operation failed."""


class NotFoundError(StoreError):
    """The object addressed by a write does not exist."""


class AlreadyExistsError(StoreError):
    """An object with the same identity already exists."""


class ResourceStore(Protocol):
    """Operations a store backend provides for records and pods."""

    async def get_postgresql(self, key: NamespacedName) -> Optional[Postgresql]: ...

    async def list_postgresqls(
        self, namespace: Optional[str] = None
    ) -> List[Postgresql]: ...

    async def create_postgresql(self, pg: Postgresql) -> Postgresql: ...

    async def delete_postgresql(self, key: NamespacedName) -> bool: ...

    async def update_postgresql_status(self, pg: Postgresql) -> None: ...

    async def update_postgresql_metadata(self, pg: Postgresql) -> None: ...

    async def get_pod(self, key: NamespacedName) -> Optional[Pod]: ...

    async def list_pods(self, namespace: Optional[str] = None) -> List[Pod]: ...

    async def create_pod(self, pod: Pod) -> Pod: ...

    async def delete_pod(self, key: NamespacedName) -> bool: ...

    async def update_pod_phase(self, key: NamespacedName, phase: str) -> None: ...


class InMemoryStore:
    """
    Dict-backed store with the same semantics as the persistent backends.

    Every read returns a deep copy, so callers never share state with the
    store. A terminating record is physically removed as soon as its
    finalizer list becomes empty.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._postgresqls: Dict[NamespacedName, Postgresql] = {}
        self._pods: Dict[NamespacedName, Pod] = {}
        self._event_bus = event_bus

    async def _publish(self, event_type: EventType, obj) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                ResourceEvent.from_resource(event_type, obj.to_dict())
            )

    # ==================== Postgresql Methods ====================

    async def get_postgresql(self, key: NamespacedName) -> Optional[Postgresql]:
        pg = self._postgresqls.get(key)
        return copy.deepcopy(pg) if pg else None

    async def list_postgresqls(self, namespace: Optional[str] = None) -> List[Postgresql]:
        return [
            copy.deepcopy(pg)
            for key, pg in sorted(self._postgresqls.items(), key=lambda i: str(i[0]))
            if namespace is None or key.namespace == namespace
        ]

    async def create_postgresql(self, pg: Postgresql) -> Postgresql:
        if pg.identity in self._postgresqls:
            raise AlreadyExistsError(f"Postgresql {pg.identity} already exists")
        stored = copy.deepcopy(pg)
        stored.deletion_timestamp = None
        self._postgresqls[pg.identity] = stored
        logger.info(f"Created Postgresql {pg.identity}")
        await self._publish(EventType.ADDED, stored)
        return copy.deepcopy(stored)

    async def delete_postgresql(self, key: NamespacedName) -> bool:
        """
        Request deletion of a record.

        Records without finalizers are removed at once; otherwise the
        deletion marker is set and removal waits for the finalizers.
        """
        pg = self._postgresqls.get(key)
        if pg is None:
            return False
        if not pg.finalizers:
            del self._postgresqls[key]
            logger.info(f"Deleted Postgresql {key}")
            await self._publish(EventType.DELETED, pg)
            return True
        if pg.deletion_timestamp is None:
            pg.deletion_timestamp = datetime.now(timezone.utc)
            logger.info(f"Marked Postgresql {key} for deletion")
            await self._publish(EventType.MODIFIED, pg)
        return True

    async def update_postgresql_status(self, pg: Postgresql) -> None:
        stored = self._postgresqls.get(pg.identity)
        if stored is None:
            raise NotFoundError(f"Postgresql {pg.identity} not found")
        # Unchanged writes emit no event, otherwise every status write would
        # wake the controller again
        if stored.status == pg.status:
            return
        stored.status = copy.deepcopy(pg.status)
        await self._publish(EventType.MODIFIED, stored)

    async def update_postgresql_metadata(self, pg: Postgresql) -> None:
        stored = self._postgresqls.get(pg.identity)
        if stored is None:
            raise NotFoundError(f"Postgresql {pg.identity} not found")
        if stored.finalizers == pg.finalizers:
            return
        stored.finalizers = list(pg.finalizers)
        if stored.is_terminating and not stored.finalizers:
            del self._postgresqls[pg.identity]
            logger.info(f"Finalizers cleared, removed Postgresql {pg.identity}")
            await self._publish(EventType.DELETED, stored)
            return
        await self._publish(EventType.MODIFIED, stored)

    # ==================== Pod Methods ====================

    async def get_pod(self, key: NamespacedName) -> Optional[Pod]:
        pod = self._pods.get(key)
        return copy.deepcopy(pod) if pod else None

    async def list_pods(self, namespace: Optional[str] = None) -> List[Pod]:
        return [
            copy.deepcopy(pod)
            for key, pod in sorted(self._pods.items(), key=lambda i: str(i[0]))
            if namespace is None or key.namespace == namespace
        ]

    async def create_pod(self, pod: Pod) -> Pod:
        if pod.identity in self._pods:
            raise AlreadyExistsError(f"Pod {pod.identity} already exists")
        stored = copy.deepcopy(pod)
        stored.phase = PodPhase.PENDING.value
        self._pods[pod.identity] = stored
        logger.info(f"Created Pod {pod.identity}")
        await self._publish(EventType.ADDED, stored)
        return copy.deepcopy(stored)

    async def delete_pod(self, key: NamespacedName) -> bool:
        pod = self._pods.pop(key, None)
        if pod is None:
            return False
        logger.info(f"Deleted Pod {key}")
        await self._publish(EventType.DELETED, pod)
        return True

    async def update_pod_phase(self, key: NamespacedName, phase: str) -> None:
        pod = self._pods.get(key)
        if pod is None:
            raise NotFoundError(f"Pod {key} not found")
        if pod.phase == phase:
            return
        pod.phase = phase
        await self._publish(EventType.MODIFIED, pod)
