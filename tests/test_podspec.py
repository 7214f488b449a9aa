"""Unit tests for podspec.py - Pod construction."""

from models import Postgresql, PostgresqlSpec
from podspec import (
    DATA_MOUNT_PATH,
    DATA_VOLUME_NAME,
    PGDATA_PATH,
    POSTGRES_IMAGE,
    POSTGRES_PORT,
    build_pod,
    build_pod_spec,
)


class TestBuildPodSpec:
    def test_single_container(self, sample_postgresql):
        spec = build_pod_spec(sample_postgresql)
        assert len(spec.containers) == 1
        container = spec.containers[0]
        assert container.name == "db1"
        assert container.image == POSTGRES_IMAGE == "postgres:14.5"

    def test_port(self, sample_postgresql):
        container = build_pod_spec(sample_postgresql).containers[0]
        assert [p.container_port for p in container.ports] == [POSTGRES_PORT]
        assert POSTGRES_PORT == 5432

    def test_environment(self, sample_postgresql):
        container = build_pod_spec(sample_postgresql).containers[0]
        env = {e.name: e.value for e in container.env}
        assert env == {"POSTGRES_PASSWORD": "s3cret", "PGDATA": PGDATA_PATH}
        assert PGDATA_PATH == "/data/pgdata"

    def test_data_volume(self, sample_postgresql):
        spec = build_pod_spec(sample_postgresql)
        mount = spec.containers[0].volume_mounts[0]
        assert mount.name == DATA_VOLUME_NAME == "postgresql-db-disk"
        assert mount.mount_path == DATA_MOUNT_PATH == "/data"
        assert [v.name for v in spec.volumes] == [DATA_VOLUME_NAME]
        assert spec.to_dict()["volumes"] == [{"name": DATA_VOLUME_NAME, "emptyDir": {}}]

    def test_deterministic(self, sample_postgresql):
        assert build_pod_spec(sample_postgresql) == build_pod_spec(sample_postgresql)
        assert (
            build_pod_spec(sample_postgresql).to_dict()
            == build_pod_spec(sample_postgresql).to_dict()
        )

    def test_password_not_in_repr(self, sample_postgresql):
        assert "s3cret" not in repr(build_pod_spec(sample_postgresql))


class TestBuildPod:
    def test_shares_identity(self, sample_postgresql):
        pod = build_pod(sample_postgresql)
        assert pod.identity == sample_postgresql.identity

    def test_labels(self, sample_postgresql):
        assert build_pod(sample_postgresql).labels == {"app": "db1"}

    def test_phase_unset(self, sample_postgresql):
        assert build_pod(sample_postgresql).phase is None

    def test_other_namespace(self):
        pg = Postgresql(
            namespace="team-a",
            name="orders",
            spec=PostgresqlSpec(default_user="u", password="p"),
        )
        pod = build_pod(pg)
        assert pod.namespace == "team-a"
        assert pod.name == "orders"
        assert pod.spec.containers[0].name == "orders"
