"""
Resource models - Postgresql desired-state records and their child Pods.

Records are plain dataclasses that round-trip through dicts, which is the
shape every store backend persists and the HTTP API exchanges.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

API_GROUP = "database.db.example.vmware.com"
API_VERSION = "v1"
KIND = "Postgresql"


class PgPhase(Enum):
    """Phase reported on a Postgresql record."""

    PENDING = "pending"
    UP = "up"
    FAILED = "Failed"


class PodPhase(Enum):
    """Observed lifecycle phases of a Pod."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class NamespacedName:
    """Identity of a record: stable and unique per store."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


@dataclass
class PostgresqlSpec:
    """User-supplied desired state."""

    default_user: str = ""
    password: str = field(default="", repr=False)  # Never log password

    def to_dict(self) -> Dict[str, Any]:
        return {"defaultuser": self.default_user, "password": self.password}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PostgresqlSpec":
        data = data or {}
        return cls(
            default_user=data.get("defaultuser", ""),
            password=data.get("password", ""),
        )


@dataclass
class ObjectReference:
    """Reference to the child resource managed for a record."""

    kind: str
    namespace: str
    name: str
    api_version: str = "v1"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "apiVersion": self.api_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectReference":
        return cls(
            kind=data.get("kind", ""),
            namespace=data.get("namespace", ""),
            name=data.get("name", ""),
            api_version=data.get("apiVersion", "v1"),
        )


@dataclass
class PostgresqlStatus:
    """Controller-owned observed state."""

    phase: Optional[PgPhase] = None
    active: Optional[ObjectReference] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.phase is not None:
            result["phase"] = self.phase.value
        if self.active is not None:
            result["active"] = self.active.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PostgresqlStatus":
        data = data or {}
        active = data.get("active")
        try:
            phase = PgPhase(data["phase"]) if data.get("phase") else None
        except ValueError:
            # Unknown stored value; the next status write replaces it
            phase = None
        return cls(
            phase=phase,
            active=ObjectReference.from_dict(active) if active else None,
        )


@dataclass
class Postgresql:
    """A Postgresql desired-state record."""

    namespace: str
    name: str
    spec: PostgresqlSpec = field(default_factory=PostgresqlSpec)
    status: PostgresqlStatus = field(default_factory=PostgresqlStatus)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None

    @property
    def identity(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    @property
    def is_terminating(self) -> bool:
        """True once deletion has been requested."""
        return self.deletion_timestamp is not None

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "namespace": self.namespace,
            "name": self.name,
            "finalizers": list(self.finalizers),
        }
        if self.deletion_timestamp is not None:
            metadata["deletionTimestamp"] = _format_timestamp(self.deletion_timestamp)
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": KIND,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Postgresql":
        metadata = data.get("metadata", {})
        return cls(
            namespace=metadata.get("namespace", "default"),
            name=metadata["name"],
            spec=PostgresqlSpec.from_dict(data.get("spec")),
            status=PostgresqlStatus.from_dict(data.get("status")),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=_parse_timestamp(metadata.get("deletionTimestamp")),
        )


# ==================== Child resource ====================


@dataclass
class ContainerPort:
    container_port: int

    def to_dict(self) -> Dict[str, Any]:
        return {"containerPort": self.container_port}


@dataclass
class EnvVar:
    name: str
    value: str = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "value": self.value}


@dataclass
class VolumeMount:
    name: str
    mount_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "mountPath": self.mount_path}


@dataclass
class Volume:
    """An ephemeral empty-dir volume."""

    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "emptyDir": {}}


@dataclass
class Container:
    name: str
    image: str
    ports: List[ContainerPort] = field(default_factory=list)
    env: List[EnvVar] = field(default_factory=list)
    volume_mounts: List[VolumeMount] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "image": self.image,
            "ports": [p.to_dict() for p in self.ports],
            "env": [e.to_dict() for e in self.env],
            "volumeMounts": [m.to_dict() for m in self.volume_mounts],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Container":
        return cls(
            name=data["name"],
            image=data.get("image", ""),
            ports=[ContainerPort(p["containerPort"]) for p in data.get("ports") or []],
            env=[EnvVar(e["name"], e.get("value", "")) for e in data.get("env") or []],
            volume_mounts=[
                VolumeMount(m["name"], m["mountPath"])
                for m in data.get("volumeMounts") or []
            ],
        )


@dataclass
class PodSpec:
    containers: List[Container] = field(default_factory=list)
    volumes: List[Volume] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "containers": [c.to_dict() for c in self.containers],
            "volumes": [v.to_dict() for v in self.volumes],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PodSpec":
        data = data or {}
        return cls(
            containers=[Container.from_dict(c) for c in data.get("containers") or []],
            volumes=[Volume(v["name"]) for v in data.get("volumes") or []],
        )


@dataclass
class Pod:
    """The single child Pod owned by a Postgresql record."""

    namespace: str
    name: str
    spec: PodSpec = field(default_factory=PodSpec)
    phase: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def identity(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    def to_dict(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {}
        if self.phase is not None:
            status["phase"] = self.phase
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "namespace": self.namespace,
                "name": self.name,
                "labels": dict(self.labels),
            },
            "spec": self.spec.to_dict(),
            "status": status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pod":
        metadata = data.get("metadata", {})
        return cls(
            namespace=metadata.get("namespace", "default"),
            name=metadata["name"],
            spec=PodSpec.from_dict(data.get("spec")),
            phase=(data.get("status") or {}).get("phase"),
            labels=dict(metadata.get("labels") or {}),
        )
