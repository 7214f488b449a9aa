"""
Pod construction for Postgresql records.

Everything here is pure: the same record spec always yields the same Pod,
so creating it can be retried safely.
"""

from models import (
    Container,
    ContainerPort,
    EnvVar,
    Pod,
    PodSpec,
    Postgresql,
    Volume,
    VolumeMount,
)

POSTGRES_IMAGE = "postgres:14.5"
POSTGRES_PORT = 5432
DATA_VOLUME_NAME = "postgresql-db-disk"
DATA_MOUNT_PATH = "/data"
PGDATA_PATH = "/data/pgdata"


def build_pod_spec(pg: Postgresql) -> PodSpec:
    """
    Build the single-container pod spec for a Postgresql record.

    The data directory lives on an empty-dir volume; it does not survive the
    pod.

    Args:
        pg: The Postgresql record.

    Returns:
        The PodSpec to create.
    """
    container = Container(
        name=pg.name,
        image=POSTGRES_IMAGE,
        ports=[ContainerPort(POSTGRES_PORT)],
        env=[
            EnvVar("POSTGRES_PASSWORD", pg.spec.password),
            EnvVar("PGDATA", PGDATA_PATH),
        ],
        volume_mounts=[VolumeMount(DATA_VOLUME_NAME, DATA_MOUNT_PATH)],
    )
    return PodSpec(containers=[container], volumes=[Volume(DATA_VOLUME_NAME)])


def build_pod(pg: Postgresql) -> Pod:
    """Build the Pod object, sharing the record's namespace and name."""
    return Pod(
        namespace=pg.namespace,
        name=pg.name,
        spec=build_pod_spec(pg),
        labels={"app": pg.name},
    )
