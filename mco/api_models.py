from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

# Same shape the container runtime accepts for object names (dns-safe).
NAME_PATTERN = r"^[a-z][a-z0-9\-]{0,62}$"

CLUSTER_KIND = "MilvusCluster"
STANDALONE_KIND = "Milvus"


class ResourceFieldRef(BaseModel):
    resource: str
    divisor: str = "1"


class EnvVarSource(BaseModel):
    resource_field_ref: ResourceFieldRef | None = None


class EnvVar(BaseModel):
    name: str
    value: str | None = None
    value_from: EnvVarSource | None = None


class Toleration(BaseModel):
    key: str = ""
    operator: Literal["Equal", "Exists"] = "Equal"
    value: str = ""
    effect: str = ""
    toleration_seconds: int | None = None


class ResourceRequirements(BaseModel):
    limits: dict[str, str] = Field(default_factory=dict)
    requests: dict[str, str] = Field(default_factory=dict)


class ComponentSpec(BaseModel):
    """Overridable settings, either for a single role or common to all roles.

    Unset values (empty string, empty list, None) fall through to the next level.
    """

    image: str = ""
    image_pull_policy: Literal["Always", "IfNotPresent", "Never"] | None = None
    image_pull_secrets: list[str] = Field(default_factory=list)
    env: list[EnvVar] = Field(default_factory=list)
    node_selector: dict[str, str] | None = None
    tolerations: list[Toleration] = Field(default_factory=list)
    resources: ResourceRequirements | None = None
    replicas: int | None = Field(None, ge=0, le=100)
    port: int | None = Field(None, ge=1, le=65535)


class GatewaySpec(ComponentSpec):
    service_type: Literal["ClusterIP", "NodePort", "LoadBalancer"] = "ClusterIP"


class ClusterComponents(ComponentSpec):
    rootcoord: ComponentSpec = Field(default_factory=ComponentSpec)
    datacoord: ComponentSpec = Field(default_factory=ComponentSpec)
    querycoord: ComponentSpec = Field(default_factory=ComponentSpec)
    indexcoord: ComponentSpec = Field(default_factory=ComponentSpec)
    datanode: ComponentSpec = Field(default_factory=ComponentSpec)
    querynode: ComponentSpec = Field(default_factory=ComponentSpec)
    indexnode: ComponentSpec = Field(default_factory=ComponentSpec)
    proxy: GatewaySpec = Field(default_factory=GatewaySpec)


class StandaloneComponents(ComponentSpec):
    standalone: GatewaySpec = Field(default_factory=GatewaySpec)


class EtcdDependency(BaseModel):
    endpoints: list[str] = Field(default_factory=list, description="host:port of each etcd member")


class PulsarDependency(BaseModel):
    endpoint: str = Field("", description="Broker address, e.g. pulsar://pulsar:6650")


class StorageDependency(BaseModel):
    endpoint: str = Field("", description="Object storage host:port")
    bucket: str = "milvus-bucket"


class ClusterDependencies(BaseModel):
    etcd: EtcdDependency = Field(default_factory=EtcdDependency)
    pulsar: PulsarDependency = Field(default_factory=PulsarDependency)
    storage: StorageDependency = Field(default_factory=StorageDependency)


class StandaloneDependencies(BaseModel):
    etcd: EtcdDependency = Field(default_factory=EtcdDependency)
    storage: StorageDependency = Field(default_factory=StorageDependency)


class Config(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict, description="Inline milvus.yaml overrides")


class MilvusClusterSpec(BaseModel):
    com: ClusterComponents = Field(default_factory=ClusterComponents)
    dep: ClusterDependencies = Field(default_factory=ClusterDependencies)
    conf: Config = Field(default_factory=Config)


class MilvusSpec(BaseModel):
    com: StandaloneComponents = Field(default_factory=StandaloneComponents)
    dep: StandaloneDependencies = Field(default_factory=StandaloneDependencies)
    conf: Config = Field(default_factory=Config)


class InstanceState(str, Enum):
    CREATING = "Creating"
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    ABNORMAL = "Abnormal"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(BaseModel):
    type: str = Field(..., description="Dimension name, e.g. EtcdReady")
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = None


class InstanceStatus(BaseModel):
    # None until the reconcile loop initialises it (treated as Creating).
    status: InstanceState | None = None
    conditions: list[Condition] = Field(default_factory=list)


class ObjectMeta(BaseModel):
    name: str = Field(..., pattern=NAME_PATTERN)
    namespace: str = Field("default", pattern=NAME_PATTERN)


class MilvusCluster(BaseModel):
    kind: Literal["MilvusCluster"] = CLUSTER_KIND
    metadata: ObjectMeta
    spec: MilvusClusterSpec = Field(default_factory=MilvusClusterSpec)
    status: InstanceStatus = Field(default_factory=InstanceStatus)


class Milvus(BaseModel):
    kind: Literal["Milvus"] = STANDALONE_KIND
    metadata: ObjectMeta
    spec: MilvusSpec = Field(default_factory=MilvusSpec)
    status: InstanceStatus = Field(default_factory=InstanceStatus)


Instance = Union[MilvusCluster, Milvus]

INSTANCE_MODELS: dict[str, type[BaseModel]] = {
    CLUSTER_KIND: MilvusCluster,
    STANDALONE_KIND: Milvus,
}


def parse_instance(obj: dict[str, Any]) -> Instance:
    """Build the typed tracked instance for a stored object."""
    try:
        model = INSTANCE_MODELS[obj["kind"]]
    except KeyError as e:
        raise ValueError(f"Unknown instance kind: {obj.get('kind')!r}") from e
    return model.model_validate(obj)  # type: ignore[return-value]
