"""Role descriptors and per-role configuration resolution.

Every resolvable attribute is looked up in three places, first match wins:

  1. the role's own override block (e.g. ``spec.com.querynode``)
  2. the common block shared by all roles (``spec.com``)
  3. the built-in default

The role -> override block mapping is an explicit table, validated when the
registry is built, so an undeclared role fails at import rather than at call time.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Union

from .api_models import (
    CLUSTER_KIND,
    STANDALONE_KIND,
    ComponentSpec,
    EnvVar,
    EnvVarSource,
    GatewaySpec,
    MilvusClusterSpec,
    MilvusSpec,
    ResourceFieldRef,
    ResourceRequirements,
    Toleration,
)
from .settings import settings

PRODUCT_NAME = "milvus"

METRIC_PORT_NAME = "metrics"
METRIC_PORT = 9091
METRIC_PATH = "/metrics"
HEALTH_PATH = "/healthz"

CACHE_SIZE_ENV = "CACHE_SIZE"
CACHE_SIZE_DIVISOR = "1Gi"

DEFAULT_PULL_POLICY = "IfNotPresent"
DEFAULT_REPLICAS = 1
DEFAULT_SERVICE_TYPE = "ClusterIP"

RECREATE = "Recreate"
ROLLING_UPDATE = "RollingUpdate"

AnySpec = Union[MilvusClusterSpec, MilvusSpec]


@dataclass(frozen=True)
class Role:
    name: str
    default_port: int
    # The single externally addressable role of a topology.
    gateway: bool = False

    @property
    def is_coordinator(self) -> bool:
        return self.name.endswith("coord")

    @property
    def is_worker_node(self) -> bool:
        return self.name.endswith("node")

    def __str__(self) -> str:
        return self.name


ROOTCOORD = Role("rootcoord", 53100)
DATACOORD = Role("datacoord", 13333)
QUERYCOORD = Role("querycoord", 19531)
INDEXCOORD = Role("indexcoord", 31000)
DATANODE = Role("datanode", 21124)
QUERYNODE = Role("querynode", 21123)
INDEXNODE = Role("indexnode", 21121)
PROXY = Role("proxy", 19530, gateway=True)
STANDALONE = Role(PRODUCT_NAME, 19530, gateway=True)

CLUSTER_ROLES: tuple[Role, ...] = (
    ROOTCOORD,
    DATACOORD,
    QUERYCOORD,
    INDEXCOORD,
    DATANODE,
    QUERYNODE,
    INDEXNODE,
    PROXY,
)
COORDINATORS: tuple[Role, ...] = tuple(r for r in CLUSTER_ROLES if r.is_coordinator)

Accessor = Callable[..., ComponentSpec]


class RoleRegistry:
    """Roles of all topologies plus the accessor for each role's override block."""

    def __init__(self, roles: Iterable[Role], accessors: Mapping[str, Accessor]):
        self.roles = tuple(roles)
        names = {r.name for r in self.roles}
        missing = sorted(names - set(accessors))
        if missing:
            raise ValueError(f"No spec accessor registered for roles: {', '.join(missing)}")
        unknown = sorted(set(accessors) - names)
        if unknown:
            raise ValueError(f"Spec accessors registered for undeclared roles: {', '.join(unknown)}")
        self._accessors = dict(accessors)

    def override(self, role: Role, spec: AnySpec) -> ComponentSpec:
        return self._accessors[role.name](spec.com)

    def get(self, name: str) -> Role:
        for r in self.roles:
            if r.name == name:
                return r
        raise KeyError(name)


REGISTRY = RoleRegistry(
    CLUSTER_ROLES + (STANDALONE,),
    {
        ROOTCOORD.name: lambda com: com.rootcoord,
        DATACOORD.name: lambda com: com.datacoord,
        QUERYCOORD.name: lambda com: com.querycoord,
        INDEXCOORD.name: lambda com: com.indexcoord,
        DATANODE.name: lambda com: com.datanode,
        QUERYNODE.name: lambda com: com.querynode,
        INDEXNODE.name: lambda com: com.indexnode,
        PROXY.name: lambda com: com.proxy,
        STANDALONE.name: lambda com: com.standalone,
    },
)


def roles_for_kind(kind: str) -> tuple[Role, ...]:
    if kind == CLUSTER_KIND:
        return CLUSTER_ROLES
    if kind == STANDALONE_KIND:
        return (STANDALONE,)
    raise ValueError(f"Unknown instance kind: {kind!r}")


def _levels(role: Role, spec: AnySpec) -> tuple[ComponentSpec, ComponentSpec]:
    return REGISTRY.override(role, spec), spec.com


# --- resolution --------------------------------------------------------------


def effective_image(role: Role, spec: AnySpec) -> str:
    own, common = _levels(role, spec)
    return own.image or common.image or settings.default_image


def cache_size_env() -> EnvVar:
    """Memory limit in GiB, resolved by the container runtime."""
    return EnvVar(
        name=CACHE_SIZE_ENV,
        value_from=EnvVarSource(
            resource_field_ref=ResourceFieldRef(resource="limits.memory", divisor=CACHE_SIZE_DIVISOR)
        ),
    )


def merge_env(*groups: Iterable[EnvVar]) -> list[EnvVar]:
    """Merge env lists by name; a later group replaces an earlier entry in place."""
    merged: dict[str, EnvVar] = {}
    for group in groups:
        for var in group:
            merged[var.name] = var
    return list(merged.values())


def effective_env(role: Role, spec: AnySpec) -> list[EnvVar]:
    own, common = _levels(role, spec)
    return merge_env([cache_size_env()], common.env, own.env)


def effective_pull_secrets(role: Role, spec: AnySpec) -> list[str]:
    own, common = _levels(role, spec)
    return list(own.image_pull_secrets or common.image_pull_secrets)


def effective_pull_policy(role: Role, spec: AnySpec) -> str:
    own, common = _levels(role, spec)
    return own.image_pull_policy or common.image_pull_policy or DEFAULT_PULL_POLICY


def effective_tolerations(role: Role, spec: AnySpec) -> list[Toleration]:
    own, common = _levels(role, spec)
    return list(own.tolerations or common.tolerations)


def effective_node_selector(role: Role, spec: AnySpec) -> dict[str, str]:
    # An explicit empty selector on the role clears the common one.
    own, common = _levels(role, spec)
    if own.node_selector is not None:
        return dict(own.node_selector)
    return dict(common.node_selector or {})


def effective_resources(role: Role, spec: AnySpec) -> ResourceRequirements:
    own, common = _levels(role, spec)
    if own.resources is not None:
        return own.resources
    if common.resources is not None:
        return common.resources
    return ResourceRequirements()


def effective_replicas(role: Role, spec: AnySpec) -> int:
    own, common = _levels(role, spec)
    if own.replicas is not None:
        return own.replicas
    if common.replicas is not None:
        return common.replicas
    return DEFAULT_REPLICAS


def effective_port(role: Role, spec: AnySpec) -> int:
    own, common = _levels(role, spec)
    return own.port or common.port or role.default_port


def service_type(role: Role, spec: AnySpec) -> str:
    if not role.gateway:
        return DEFAULT_SERVICE_TYPE
    own = REGISTRY.override(role, spec)
    if isinstance(own, GatewaySpec):
        return own.service_type
    return DEFAULT_SERVICE_TYPE


# --- naming ------------------------------------------------------------------


def instance_name(role: Role, cluster: str) -> str:
    return f"{cluster}-{PRODUCT_NAME}-{role.name}"


def deployment_name(role: Role, cluster: str) -> str:
    return instance_name(role, cluster)


def service_name(role: Role, cluster: str) -> str:
    """Gateway roles are reachable under the bare cluster name."""
    if role.gateway:
        return f"{cluster}-{PRODUCT_NAME}"
    return instance_name(role, cluster)


def container_name(role: Role) -> str:
    return role.name


# --- ports, probes, rollout --------------------------------------------------


@dataclass(frozen=True)
class ContainerPort:
    name: str
    container_port: int
    protocol: str = "TCP"


@dataclass(frozen=True)
class ServicePort:
    name: str
    port: int
    target_port: str
    protocol: str = "TCP"


@dataclass(frozen=True)
class HttpProbe:
    path: str = HEALTH_PATH
    port: int = METRIC_PORT
    scheme: str = "HTTP"
    # Cold starts (index loading, segment recovery) can take minutes.
    initial_delay_seconds: int = 120
    timeout_seconds: int = 3
    period_seconds: int = 30
    failure_threshold: int = 2
    success_threshold: int = 1


@dataclass(frozen=True)
class DeploymentStrategy:
    type: str
    max_unavailable: int | None = None
    max_surge: int | None = None


def container_ports(role: Role, spec: AnySpec) -> list[ContainerPort]:
    return [
        ContainerPort(name=role.name, container_port=effective_port(role, spec)),
        ContainerPort(name=METRIC_PORT_NAME, container_port=METRIC_PORT),
    ]


def service_ports(role: Role, spec: AnySpec) -> list[ServicePort]:
    # Worker nodes are reached through coordinators, never load-balanced directly.
    ports: list[ServicePort] = []
    if not role.is_worker_node:
        ports.append(ServicePort(name=role.name, port=effective_port(role, spec), target_port=role.name))
    ports.append(ServicePort(name=METRIC_PORT_NAME, port=METRIC_PORT, target_port=METRIC_PORT_NAME))
    return ports


def metrics_annotations() -> dict[str, str]:
    """Pod annotations telling a prometheus scraper where every role serves metrics."""
    return {
        "prometheus.io/scrape": "true",
        "prometheus.io/port": str(METRIC_PORT),
        "prometheus.io/path": METRIC_PATH,
    }


def liveness_probe() -> HttpProbe:
    return HttpProbe()


def readiness_probe() -> HttpProbe:
    return HttpProbe()


def deployment_strategy(role: Role) -> DeploymentStrategy:
    """Coordinators never run two live replicas; everyone else rolls one at a time."""
    if role.is_coordinator:
        return DeploymentStrategy(type=RECREATE)
    return DeploymentStrategy(type=ROLLING_UPDATE, max_unavailable=0, max_surge=1)
