"""Unit tests for kube.py - Kubernetes store backend."""

import asyncio

import pytest
from unittest.mock import MagicMock, patch

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from events import EventBus, EventType
from kube import PLURAL, POD_LABEL_SELECTOR, KubernetesStore
from models import API_GROUP, API_VERSION, KIND, PgPhase
from podspec import build_pod
from reconciler import Reconciler
from store import AlreadyExistsError, StoreError

FINALIZER = "database.db.example.vmware.com/finalizer"


def v1_pod(phase="Running"):
    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name="db1", namespace="default", labels={"app": "db1"}
        ),
        spec=client.V1PodSpec(
            containers=[
                client.V1Container(
                    name="db1",
                    image="postgres:14.5",
                    ports=[client.V1ContainerPort(container_port=5432)],
                )
            ]
        ),
        status=client.V1PodStatus(phase=phase),
    )


class TestKubernetesStore:
    """Tests for construction and serialization."""

    def test_serialize_model(self):
        store = KubernetesStore(core_api=MagicMock(), custom_api=MagicMock())
        data = store._serialize(v1_pod())
        assert data["metadata"]["name"] == "db1"
        assert data["spec"]["containers"][0]["ports"] == [{"containerPort": 5432}]
        assert data["status"]["phase"] == "Running"

    def test_serialize_dict_passthrough(self):
        store = KubernetesStore(core_api=MagicMock(), custom_api=MagicMock())
        data = {"metadata": {"name": "db1"}}
        assert store._serialize(data) is data

    def test_connect_falls_back_to_kubeconfig(self):
        store = KubernetesStore()
        with patch("kube.kube_config") as mock_config, patch("kube.client") as mock_client:
            mock_config.ConfigException = Exception
            mock_config.load_incluster_config.side_effect = Exception("not in cluster")

            store.connect()

            mock_config.load_kube_config.assert_called_once()
            assert store.core_api is mock_client.CoreV1Api.return_value
            assert store.custom_api is mock_client.CustomObjectsApi.return_value


@pytest.mark.asyncio
class TestKubernetesPostgresql:
    """Tests for Postgresql custom resource operations."""

    @pytest.fixture
    def custom_api(self):
        return MagicMock()

    @pytest.fixture
    def kube_store(self, custom_api):
        return KubernetesStore(core_api=MagicMock(), custom_api=custom_api)

    async def test_get(self, kube_store, custom_api, sample_postgresql_dict, key):
        custom_api.get_namespaced_custom_object.return_value = sample_postgresql_dict

        pg = await kube_store.get_postgresql(key)

        assert pg.status.phase == PgPhase.UP
        assert pg.finalizers == [FINALIZER]
        custom_api.get_namespaced_custom_object.assert_called_once_with(
            API_GROUP, API_VERSION, "default", PLURAL, "db1"
        )

    async def test_get_with_unknown_phase(
        self, kube_store, custom_api, sample_postgresql_dict, key
    ):
        sample_postgresql_dict["status"]["phase"] = "Running"
        custom_api.get_namespaced_custom_object.return_value = sample_postgresql_dict

        pg = await kube_store.get_postgresql(key)

        assert pg.status.phase is None
        assert pg.status.active.name == "db1"

    async def test_reconcile_overwrites_unknown_phase(
        self, kube_store, custom_api, sample_postgresql_dict, key
    ):
        sample_postgresql_dict["status"]["phase"] = "Running"
        custom_api.get_namespaced_custom_object.return_value = sample_postgresql_dict
        kube_store.core_api.read_namespaced_pod.return_value = v1_pod("Running")

        result = await Reconciler(kube_store).reconcile(key)

        assert result.success is True
        body = custom_api.patch_namespaced_custom_object_status.call_args.args[-1]
        assert body["status"]["phase"] == "up"

    async def test_get_not_found(self, kube_store, custom_api, key):
        custom_api.get_namespaced_custom_object.side_effect = ApiException(
            status=404, reason="Not Found"
        )
        assert await kube_store.get_postgresql(key) is None

    async def test_get_server_error(self, kube_store, custom_api, key):
        custom_api.get_namespaced_custom_object.side_effect = ApiException(
            status=500, reason="Internal Server Error"
        )
        with pytest.raises(StoreError) as exc_info:
            await kube_store.get_postgresql(key)
        assert "500" in str(exc_info.value)

    async def test_list_namespaced(self, kube_store, custom_api, sample_postgresql_dict):
        custom_api.list_namespaced_custom_object.return_value = {
            "items": [sample_postgresql_dict]
        }
        records = await kube_store.list_postgresqls("default")
        assert [pg.name for pg in records] == ["db1"]
        custom_api.list_cluster_custom_object.assert_not_called()

    async def test_list_cluster(self, kube_store, custom_api):
        custom_api.list_cluster_custom_object.return_value = {"items": []}
        assert await kube_store.list_postgresqls() == []
        custom_api.list_cluster_custom_object.assert_called_once_with(
            API_GROUP, API_VERSION, PLURAL
        )

    async def test_list_uses_configured_namespace(self, custom_api):
        kube_store = KubernetesStore(
            namespace="databases", core_api=MagicMock(), custom_api=custom_api
        )
        custom_api.list_namespaced_custom_object.return_value = {"items": []}
        await kube_store.list_postgresqls()
        assert custom_api.list_namespaced_custom_object.call_args[0][2] == "databases"

    async def test_create_omits_status(
        self, kube_store, custom_api, sample_postgresql, sample_postgresql_dict
    ):
        custom_api.create_namespaced_custom_object.return_value = sample_postgresql_dict

        await kube_store.create_postgresql(sample_postgresql)

        body = custom_api.create_namespaced_custom_object.call_args[0][4]
        assert "status" not in body
        assert body["kind"] == KIND
        assert body["spec"]["defaultuser"] == "pguser"

    async def test_create_conflict(self, kube_store, custom_api, sample_postgresql):
        custom_api.create_namespaced_custom_object.side_effect = ApiException(
            status=409, reason="Conflict"
        )
        with pytest.raises(AlreadyExistsError):
            await kube_store.create_postgresql(sample_postgresql)

    async def test_delete(self, kube_store, custom_api, key):
        assert await kube_store.delete_postgresql(key) is True
        custom_api.delete_namespaced_custom_object.side_effect = ApiException(
            status=404, reason="Not Found"
        )
        assert await kube_store.delete_postgresql(key) is False

    async def test_update_status_clears_active(
        self, kube_store, custom_api, sample_postgresql
    ):
        sample_postgresql.status.phase = PgPhase.FAILED

        await kube_store.update_postgresql_status(sample_postgresql)

        body = custom_api.patch_namespaced_custom_object_status.call_args[0][5]
        assert body == {"status": {"phase": "Failed", "active": None}}

    async def test_update_metadata(self, kube_store, custom_api, sample_postgresql):
        sample_postgresql.finalizers = [FINALIZER]

        await kube_store.update_postgresql_metadata(sample_postgresql)

        body = custom_api.patch_namespaced_custom_object.call_args[0][5]
        assert body == {"metadata": {"finalizers": [FINALIZER]}}


@pytest.mark.asyncio
class TestKubernetesPods:
    """Tests for Pod operations."""

    @pytest.fixture
    def core_api(self):
        return MagicMock()

    @pytest.fixture
    def kube_store(self, core_api):
        return KubernetesStore(core_api=core_api, custom_api=MagicMock())

    async def test_get_pod(self, kube_store, core_api, key):
        core_api.read_namespaced_pod.return_value = v1_pod("Pending")

        pod = await kube_store.get_pod(key)

        assert pod.phase == "Pending"
        assert pod.spec.containers[0].image == "postgres:14.5"
        core_api.read_namespaced_pod.assert_called_once_with("db1", "default")

    async def test_get_pod_not_found(self, kube_store, core_api, key):
        core_api.read_namespaced_pod.side_effect = ApiException(status=404)
        assert await kube_store.get_pod(key) is None

    async def test_list_pods_uses_label_selector(self, kube_store, core_api):
        core_api.list_namespaced_pod.return_value = client.V1PodList(items=[v1_pod()])

        pods = await kube_store.list_pods("default")

        assert [p.name for p in pods] == ["db1"]
        assert core_api.list_namespaced_pod.call_args.kwargs == {
            "label_selector": POD_LABEL_SELECTOR
        }

    async def test_create_pod(self, kube_store, core_api, sample_postgresql):
        core_api.create_namespaced_pod.return_value = v1_pod("Pending")

        pod = await kube_store.create_pod(build_pod(sample_postgresql))

        assert pod.phase == "Pending"
        namespace, body = core_api.create_namespaced_pod.call_args[0]
        assert namespace == "default"
        assert "status" not in body
        assert body["metadata"]["labels"] == {"app": "db1"}

    async def test_create_pod_conflict(self, kube_store, core_api, sample_postgresql):
        core_api.create_namespaced_pod.side_effect = ApiException(status=409)
        with pytest.raises(AlreadyExistsError):
            await kube_store.create_pod(build_pod(sample_postgresql))

    async def test_delete_pod_not_found(self, kube_store, core_api, key):
        core_api.delete_namespaced_pod.side_effect = ApiException(status=404)
        assert await kube_store.delete_pod(key) is False

    async def test_update_pod_phase_unsupported(self, kube_store, key):
        with pytest.raises(StoreError):
            await kube_store.update_pod_phase(key, "Running")


@pytest.mark.asyncio
class TestKubernetesWatch:
    """Tests for streaming watch events into the event bus."""

    async def test_watch_requires_event_bus(self):
        kube_store = KubernetesStore(core_api=MagicMock(), custom_api=MagicMock())
        with pytest.raises(RuntimeError):
            await kube_store.watch()

    async def test_watch_stream_publishes(self, sample_postgresql_dict):
        bus = EventBus()
        kube_store = KubernetesStore(
            core_api=MagicMock(), custom_api=MagicMock(), event_bus=bus
        )
        subscriber_id, _ = await bus.subscribe()
        del sample_postgresql_dict["kind"]

        def stream(list_fn, **kwargs):
            yield {"type": "BOOKMARK", "object": {"metadata": {}}}
            yield {"type": "MODIFIED", "object": sample_postgresql_dict}
            yield {"type": "DELETED", "object": v1_pod()}
            kube_store.stop_watch()

        with patch("kube.watch.Watch") as mock_watch:
            mock_watch.return_value.stream.side_effect = stream
            loop = asyncio.get_running_loop()
            await asyncio.to_thread(
                kube_store._watch_stream, loop, KIND, MagicMock(), {}
            )
        await asyncio.sleep(0.05)

        queue = bus._subscribers[subscriber_id].queue
        events = [queue.get_nowait() for _ in range(queue.qsize())]
        assert [e.event_type for e in events] == [EventType.MODIFIED, EventType.DELETED]
        assert events[0].kind == KIND
        assert "password" not in events[0].resource_data["spec"]
        assert events[1].kind == "Pod"

    async def test_watch_stream_retries_after_api_error(self):
        bus = EventBus()
        kube_store = KubernetesStore(
            core_api=MagicMock(), custom_api=MagicMock(), event_bus=bus
        )
        attempts = []

        def stream(list_fn, **kwargs):
            attempts.append(kwargs)
            if len(attempts) > 1:
                kube_store.stop_watch()
                return
            raise ApiException(status=410, reason="Gone")
            yield

        with patch("kube.watch.Watch") as mock_watch, patch("kube.WATCH_RETRY_SECONDS", 0):
            mock_watch.return_value.stream.side_effect = stream
            await asyncio.to_thread(
                kube_store._watch_stream,
                asyncio.get_running_loop(),
                "Pod",
                MagicMock(),
                {"namespace": "default"},
            )

        assert len(attempts) == 2
        assert attempts[0]["namespace"] == "default"

    async def test_watch_stream_retries_after_dropped_connection(self):
        bus = EventBus()
        kube_store = KubernetesStore(
            core_api=MagicMock(), custom_api=MagicMock(), event_bus=bus
        )
        attempts = []

        def stream(list_fn, **kwargs):
            attempts.append(kwargs)
            if len(attempts) > 1:
                kube_store.stop_watch()
                return
            raise ProtocolError("Connection broken: InvalidChunkLength")
            yield

        with patch("kube.watch.Watch") as mock_watch, patch("kube.WATCH_RETRY_SECONDS", 0):
            mock_watch.return_value.stream.side_effect = stream
            await asyncio.to_thread(
                kube_store._watch_stream,
                asyncio.get_running_loop(),
                KIND,
                MagicMock(),
                {},
            )

        assert len(attempts) == 2
        assert kube_store._watchers == set()

    async def test_stop_watch_stops_active_watchers(self):
        kube_store = KubernetesStore(core_api=MagicMock(), custom_api=MagicMock())
        watchers = [MagicMock(), MagicMock()]
        kube_store._watchers.update(watchers)

        kube_store.stop_watch()

        assert kube_store._stop_watch.is_set()
        for watcher in watchers:
            watcher.stop.assert_called_once_with()
