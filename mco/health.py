from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

import httpx

from .api_models import (
    CLUSTER_KIND,
    STANDALONE_KIND,
    Condition,
    ConditionStatus,
    Instance,
    MilvusCluster,
)
from .components import COORDINATORS, HEALTH_PATH, METRIC_PORT, Role, service_name
from .settings import settings

ETCD_READY = "EtcdReady"
STORAGE_READY = "StorageReady"
PULSAR_READY = "PulsarReady"

REASON_READY = "Ready"
REASON_NOT_READY = "NotReady"
REASON_NO_ENDPOINT = "NoEndpoint"


class ProbeError(Exception):
    """The probe could not be evaluated (as opposed to reporting unhealthy)."""


def role_dimension(role: Role) -> str:
    if role.is_coordinator:
        return role.name[: -len("coord")].capitalize() + "CoordReady"
    return role.name.capitalize() + "Ready"


def dimensions_for_kind(kind: str) -> tuple[str, ...]:
    if kind == STANDALONE_KIND:
        return (ETCD_READY, STORAGE_READY)
    if kind == CLUSTER_KIND:
        return (ETCD_READY, STORAGE_READY, PULSAR_READY) + tuple(role_dimension(r) for r in COORDINATORS)
    raise ValueError(f"Unknown instance kind: {kind!r}")


@runtime_checkable
class HealthProbe(Protocol):
    def probe(self, dimension: str, instance: Instance) -> Condition:
        """Evaluate one health dimension. Raises ProbeError if it cannot be evaluated."""
        ...


def _http_url(endpoint: str, path: str) -> httpx.URL:
    base = endpoint if "://" in endpoint else f"http://{endpoint}"
    try:
        return httpx.URL(base.rstrip("/") + path)
    except httpx.InvalidURL as e:
        raise ProbeError(f"Malformed endpoint {endpoint!r}: {e}") from e


def check_health(client: httpx.Client, url: httpx.URL | str, expect: Callable[[Any], bool] | None = None) -> tuple[bool, str]:
    """GET a health endpoint.

    ``expect`` validates the JSON payload when given; otherwise HTTP 200 is enough.
    Returns (is_healthy, message). Unreachable targets are unhealthy, not errors.
    """
    try:
        resp = client.get(url)
    except httpx.UnsupportedProtocol as e:
        raise ProbeError(f"Cannot probe {url}: {e}") from e
    except (httpx.ConnectError, httpx.TimeoutException):
        return False, f"No response from {url}"
    except httpx.TransportError as e:
        return False, f"{url}: {type(e).__name__}: {e}"
    if resp.status_code != 200:
        return False, f"{url}: HTTP {resp.status_code}"
    if expect is None:
        return True, "Healthy"
    try:
        data = resp.json()
    except ValueError:
        return False, f"{url}: invalid JSON"
    if expect(data):
        return True, "Healthy"
    return False, f"{url}: unhealthy payload {data!r}"


def _etcd_payload_ok(data: Any) -> bool:
    return isinstance(data, dict) and str(data.get("health", "")).lower() == "true"


def _condition(dimension: str, ok: bool, message: str, reason: str | None = None) -> Condition:
    return Condition(
        type=dimension,
        status=ConditionStatus.TRUE if ok else ConditionStatus.FALSE,
        reason=reason or (REASON_READY if ok else REASON_NOT_READY),
        message=message,
    )


class HttpHealthProbe:
    """Probes dependencies and coordinator health endpoints over HTTP."""

    def __init__(self, timeout_s: float | None = None, transport: httpx.BaseTransport | None = None):
        self.timeout_s = timeout_s if timeout_s is not None else settings.probe_timeout_s
        self.transport = transport
        coordinator_checks = {role_dimension(r): self._role_check(r) for r in COORDINATORS}
        self._checks: dict[str, Callable[[httpx.Client, Instance], Condition]] = {
            ETCD_READY: self._check_etcd,
            STORAGE_READY: self._check_storage,
            PULSAR_READY: self._check_pulsar,
            **coordinator_checks,
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self.transport)

    def probe(self, dimension: str, instance: Instance) -> Condition:
        check = self._checks.get(dimension)
        if check is None:
            raise ProbeError(f"No health check for dimension {dimension!r}")
        with self._client() as client:
            return check(client, instance)

    def _check_etcd(self, client: httpx.Client, instance: Instance) -> Condition:
        endpoints = instance.spec.dep.etcd.endpoints
        if not endpoints:
            return _condition(ETCD_READY, False, "No etcd endpoints configured", REASON_NO_ENDPOINT)
        failures: list[str] = []
        for ep in endpoints:
            ok, msg = check_health(client, _http_url(ep, "/health"), expect=_etcd_payload_ok)
            if ok:
                return _condition(ETCD_READY, True, f"etcd endpoint {ep} is healthy")
            failures.append(msg)
        return _condition(ETCD_READY, False, "; ".join(failures))

    def _check_storage(self, client: httpx.Client, instance: Instance) -> Condition:
        endpoint = instance.spec.dep.storage.endpoint
        if not endpoint:
            return _condition(STORAGE_READY, False, "No storage endpoint configured", REASON_NO_ENDPOINT)
        ok, msg = check_health(client, _http_url(endpoint, "/minio/health/live"))
        return _condition(STORAGE_READY, ok, msg)

    def _check_pulsar(self, client: httpx.Client, instance: Instance) -> Condition:
        if not isinstance(instance, MilvusCluster):
            raise ProbeError(f"{PULSAR_READY} only applies to {CLUSTER_KIND}")
        endpoint = instance.spec.dep.pulsar.endpoint
        if not endpoint:
            return _condition(PULSAR_READY, False, "No pulsar endpoint configured", REASON_NO_ENDPOINT)
        host = _http_url(endpoint, "").host
        if not host:
            raise ProbeError(f"Malformed pulsar endpoint {endpoint!r}")
        admin = f"{host}:{settings.pulsar_admin_port}"
        ok, msg = check_health(client, _http_url(admin, "/admin/v2/brokers/health"))
        return _condition(PULSAR_READY, ok, msg)

    def _role_check(self, role: Role) -> Callable[[httpx.Client, Instance], Condition]:
        dimension = role_dimension(role)

        def check(client: httpx.Client, instance: Instance) -> Condition:
            host = f"{service_name(role, instance.metadata.name)}.{instance.metadata.namespace}:{METRIC_PORT}"
            ok, msg = check_health(client, _http_url(host, HEALTH_PATH))
            return _condition(dimension, ok, msg)

        return check
