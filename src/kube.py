"""
Kubernetes store backend.

Reads and writes the Postgresql custom resource and its Pods through the
Kubernetes API. The official client is synchronous, so every call runs in a
worker thread. Physical deletion is done by the API server once the
finalizer list is empty, and pod phases come from the kubelet.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set

from kubernetes import client, watch
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from events import EventBus, EventType, ResourceEvent
from models import API_GROUP, API_VERSION, KIND, NamespacedName, Pod, Postgresql
from store import AlreadyExistsError, NotFoundError, StoreError

logger = logging.getLogger(__name__)

PLURAL = "postgresqls"
POD_LABEL_SELECTOR = "app"
WATCH_TIMEOUT_SECONDS = 60
WATCH_RETRY_SECONDS = 5


class KubernetesStore:
    """ResourceStore implementation on top of the Kubernetes API."""

    def __init__(
        self,
        namespace: Optional[str] = None,
        core_api: Optional[client.CoreV1Api] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.namespace = namespace
        self.core_api = core_api
        self.custom_api = custom_api
        self._event_bus = event_bus
        self._stop_watch = threading.Event()
        self._watchers: Set[watch.Watch] = set()
        self._watchers_lock = threading.Lock()
        self._api_client = client.ApiClient()

    def connect(self, in_cluster: bool = False) -> None:
        """Load credentials and create the API clients."""
        if in_cluster:
            kube_config.load_incluster_config()
        else:
            try:
                kube_config.load_incluster_config()
            except kube_config.ConfigException:
                kube_config.load_kube_config()
        self.core_api = client.CoreV1Api()
        self.custom_api = client.CustomObjectsApi()
        logger.info(
            f"Connected to Kubernetes API "
            f"(namespace: {self.namespace or 'all namespaces'})"
        )

    async def _call(self, fn: Callable, *args, **kwargs) -> Any:
        """Run a blocking client call and translate API errors."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(e.reason) from e
            if e.status == 409:
                raise AlreadyExistsError(e.reason) from e
            raise StoreError(f"Kubernetes API error {e.status}: {e.reason}") from e

    def _serialize(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self._api_client.sanitize_for_serialization(obj)

    # ==================== Postgresql Methods ====================

    async def get_postgresql(self, key: NamespacedName) -> Optional[Postgresql]:
        try:
            obj = await self._call(
                self.custom_api.get_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                key.namespace,
                PLURAL,
                key.name,
            )
        except NotFoundError:
            return None
        return Postgresql.from_dict(obj)

    async def list_postgresqls(self, namespace: Optional[str] = None) -> List[Postgresql]:
        namespace = namespace or self.namespace
        if namespace:
            result = await self._call(
                self.custom_api.list_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                namespace,
                PLURAL,
            )
        else:
            result = await self._call(
                self.custom_api.list_cluster_custom_object,
                API_GROUP,
                API_VERSION,
                PLURAL,
            )
        return [Postgresql.from_dict(item) for item in result.get("items", [])]

    async def create_postgresql(self, pg: Postgresql) -> Postgresql:
        body = pg.to_dict()
        body.pop("status", None)
        body["metadata"].pop("deletionTimestamp", None)
        obj = await self._call(
            self.custom_api.create_namespaced_custom_object,
            API_GROUP,
            API_VERSION,
            pg.namespace,
            PLURAL,
            body,
        )
        return Postgresql.from_dict(obj)

    async def delete_postgresql(self, key: NamespacedName) -> bool:
        """Issue a delete; the API server applies the finalizer protocol."""
        try:
            await self._call(
                self.custom_api.delete_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                key.namespace,
                PLURAL,
                key.name,
            )
        except NotFoundError:
            return False
        return True

    async def update_postgresql_status(self, pg: Postgresql) -> None:
        status = pg.status.to_dict()
        # Merge patch: explicit null clears a stale child reference
        status.setdefault("active", None)
        await self._call(
            self.custom_api.patch_namespaced_custom_object_status,
            API_GROUP,
            API_VERSION,
            pg.namespace,
            PLURAL,
            pg.name,
            {"status": status},
        )

    async def update_postgresql_metadata(self, pg: Postgresql) -> None:
        await self._call(
            self.custom_api.patch_namespaced_custom_object,
            API_GROUP,
            API_VERSION,
            pg.namespace,
            PLURAL,
            pg.name,
            {"metadata": {"finalizers": list(pg.finalizers)}},
        )

    # ==================== Pod Methods ====================

    async def get_pod(self, key: NamespacedName) -> Optional[Pod]:
        try:
            obj = await self._call(
                self.core_api.read_namespaced_pod, key.name, key.namespace
            )
        except NotFoundError:
            return None
        return Pod.from_dict(self._serialize(obj))

    async def list_pods(self, namespace: Optional[str] = None) -> List[Pod]:
        namespace = namespace or self.namespace
        if namespace:
            result = await self._call(
                self.core_api.list_namespaced_pod,
                namespace,
                label_selector=POD_LABEL_SELECTOR,
            )
        else:
            result = await self._call(
                self.core_api.list_pod_for_all_namespaces,
                label_selector=POD_LABEL_SELECTOR,
            )
        return [Pod.from_dict(self._serialize(item)) for item in result.items]

    async def create_pod(self, pod: Pod) -> Pod:
        body = pod.to_dict()
        body.pop("status", None)
        obj = await self._call(self.core_api.create_namespaced_pod, pod.namespace, body)
        return Pod.from_dict(self._serialize(obj))

    async def delete_pod(self, key: NamespacedName) -> bool:
        try:
            await self._call(self.core_api.delete_namespaced_pod, key.name, key.namespace)
        except NotFoundError:
            return False
        return True

    async def update_pod_phase(self, key: NamespacedName, phase: str) -> None:
        raise StoreError("Pod phases are reported by the kubelet on this backend")

    # ==================== Watch ====================

    async def watch(self) -> None:
        """
        Stream Postgresql and Pod changes into the event bus until
        ``stop_watch`` is called.
        """
        if not self._event_bus:
            raise RuntimeError("An event bus is required to watch")
        self._stop_watch.clear()
        loop = asyncio.get_running_loop()

        if self.namespace:
            cr_list = (
                self.custom_api.list_namespaced_custom_object,
                dict(
                    group=API_GROUP,
                    version=API_VERSION,
                    namespace=self.namespace,
                    plural=PLURAL,
                ),
            )
            pod_list = (
                self.core_api.list_namespaced_pod,
                dict(namespace=self.namespace, label_selector=POD_LABEL_SELECTOR),
            )
        else:
            cr_list = (
                self.custom_api.list_cluster_custom_object,
                dict(group=API_GROUP, version=API_VERSION, plural=PLURAL),
            )
            pod_list = (
                self.core_api.list_pod_for_all_namespaces,
                dict(label_selector=POD_LABEL_SELECTOR),
            )

        await asyncio.gather(
            asyncio.to_thread(self._watch_stream, loop, KIND, *cr_list),
            asyncio.to_thread(self._watch_stream, loop, "Pod", *pod_list),
        )

    def stop_watch(self) -> None:
        self._stop_watch.set()
        with self._watchers_lock:
            active = list(self._watchers)
        for watcher in active:
            watcher.stop()

    def _watch_stream(
        self,
        loop: asyncio.AbstractEventLoop,
        kind: str,
        list_fn: Callable,
        kwargs: Dict[str, Any],
    ) -> None:
        """Blocking watch loop run in a worker thread."""
        while not self._stop_watch.is_set():
            watcher = watch.Watch()
            with self._watchers_lock:
                self._watchers.add(watcher)
            try:
                for event in watcher.stream(
                    list_fn, timeout_seconds=WATCH_TIMEOUT_SECONDS, **kwargs
                ):
                    if self._stop_watch.is_set():
                        watcher.stop()
                        break
                    try:
                        event_type = EventType(event.get("type"))
                    except ValueError:
                        continue  # BOOKMARK / ERROR
                    data = self._serialize(event["object"])
                    data.setdefault("kind", kind)
                    asyncio.run_coroutine_threadsafe(
                        self._event_bus.publish(
                            ResourceEvent.from_resource(event_type, data)
                        ),
                        loop,
                    )
            except ApiException as e:
                logger.warning(
                    f"{kind} watch failed ({e.status}: {e.reason}), "
                    f"retrying in {WATCH_RETRY_SECONDS}s"
                )
                self._stop_watch.wait(WATCH_RETRY_SECONDS)
            except Exception:
                # Dropped connections surface as urllib3 errors
                logger.exception(
                    f"Unexpected error in {kind} watch, "
                    f"retrying in {WATCH_RETRY_SECONDS}s"
                )
                self._stop_watch.wait(WATCH_RETRY_SECONDS)
            finally:
                with self._watchers_lock:
                    self._watchers.discard(watcher)
