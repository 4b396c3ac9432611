from __future__ import annotations

from dataclasses import asdict
from typing import Any

import yaml

from .api_models import Instance, MilvusCluster
from .checksum import conf_checksum
from .components import (
    PRODUCT_NAME,
    STANDALONE,
    Role,
    container_name,
    container_ports,
    deployment_name,
    deployment_strategy,
    effective_env,
    effective_image,
    effective_node_selector,
    effective_pull_policy,
    effective_pull_secrets,
    effective_replicas,
    effective_resources,
    effective_tolerations,
    liveness_probe,
    metrics_annotations,
    readiness_probe,
    roles_for_kind,
    service_name,
    service_ports,
    service_type,
)
from .group import GroupRunner, ThreadGroupRunner
from .status import StatusSyncer
from .store import NotFound, ResourceStore, object_key

CHECKSUM_ANNOTATION = "milvus.io/config-checksum"
CONFIG_FILE = "milvus.yaml"
CONFIG_MOUNT_PATH = "/milvus/configs/milvus.yaml"

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"

DEFAULT_STORAGE_PORT = 9000
DEFAULT_PULSAR_PORT = 6650


def _split_host_port(endpoint: str, default_port: int) -> tuple[str, int]:
    hostport = endpoint.split("://", 1)[-1].rstrip("/")
    host, sep, port = hostport.rpartition(":")
    if not sep or not port.isdigit():
        return hostport, default_port
    return host, int(port)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _labels(instance: Instance, role: Role | None = None) -> dict[str, str]:
    labels = {
        "app.kubernetes.io/name": PRODUCT_NAME,
        "app.kubernetes.io/instance": instance.metadata.name,
        "app.kubernetes.io/managed-by": "mco",
    }
    if role is not None:
        labels["app.kubernetes.io/component"] = role.name
    return labels


def config_map_name(instance: Instance) -> str:
    return instance.metadata.name


def render_config(instance: Instance) -> str:
    """milvus.yaml: dependency addresses first, inline overrides on top."""
    spec = instance.spec
    storage_host, storage_port = _split_host_port(spec.dep.storage.endpoint, DEFAULT_STORAGE_PORT)
    base: dict[str, Any] = {
        "etcd": {"endpoints": list(spec.dep.etcd.endpoints), "rootPath": instance.metadata.name},
        "minio": {"address": storage_host, "port": storage_port, "bucketName": spec.dep.storage.bucket},
    }
    if isinstance(instance, MilvusCluster):
        pulsar_host, pulsar_port = _split_host_port(spec.dep.pulsar.endpoint, DEFAULT_PULSAR_PORT)
        base["pulsar"] = {"address": pulsar_host, "port": pulsar_port}
    return yaml.safe_dump(_deep_merge(base, spec.conf.data), sort_keys=True, default_flow_style=False)


def render_config_map(instance: Instance) -> dict[str, Any]:
    return {
        "kind": "ConfigMap",
        "metadata": {
            "name": config_map_name(instance),
            "namespace": instance.metadata.namespace,
            "labels": _labels(instance),
            "annotations": {CHECKSUM_ANNOTATION: conf_checksum(instance.spec)},
        },
        "data": {CONFIG_FILE: render_config(instance)},
    }


def render_deployment(instance: Instance, role: Role) -> dict[str, Any]:
    spec = instance.spec
    labels = _labels(instance, role)
    run_target = "standalone" if role == STANDALONE else role.name
    container = {
        "name": container_name(role),
        "image": effective_image(role, spec),
        "image_pull_policy": effective_pull_policy(role, spec),
        "args": ["milvus", "run", run_target],
        "env": [e.model_dump(mode="json", exclude_none=True) for e in effective_env(role, spec)],
        "ports": [asdict(p) for p in container_ports(role, spec)],
        "liveness_probe": asdict(liveness_probe()),
        "readiness_probe": asdict(readiness_probe()),
        "resources": effective_resources(role, spec).model_dump(mode="json"),
        "volume_mounts": [
            {"name": "config", "mount_path": CONFIG_MOUNT_PATH, "sub_path": CONFIG_FILE, "read_only": True}
        ],
    }
    return {
        "kind": "Deployment",
        "metadata": {
            "name": deployment_name(role, instance.metadata.name),
            "namespace": instance.metadata.namespace,
            "labels": labels,
        },
        "spec": {
            "replicas": effective_replicas(role, spec),
            "selector": labels,
            "strategy": asdict(deployment_strategy(role)),
            "template": {
                # A changed checksum changes the pod template, which restarts the pods.
                "metadata": {
                    "labels": labels,
                    "annotations": {**metrics_annotations(), CHECKSUM_ANNOTATION: conf_checksum(spec)},
                },
                "spec": {
                    "containers": [container],
                    "image_pull_secrets": [{"name": s} for s in effective_pull_secrets(role, spec)],
                    "tolerations": [t.model_dump(mode="json", exclude_none=True) for t in effective_tolerations(role, spec)],
                    "node_selector": effective_node_selector(role, spec),
                    "volumes": [{"name": "config", "config_map": {"name": config_map_name(instance)}}],
                },
            },
        },
    }


def render_service(instance: Instance, role: Role) -> dict[str, Any]:
    return {
        "kind": "Service",
        "metadata": {
            "name": service_name(role, instance.metadata.name),
            "namespace": instance.metadata.namespace,
            "labels": _labels(instance, role),
        },
        "spec": {
            "type": service_type(role, instance.spec),
            "selector": _labels(instance, role),
            "ports": [asdict(p) for p in service_ports(role, instance.spec)],
        },
    }


def _differs(current: dict[str, Any], desired: dict[str, Any]) -> bool:
    """True if any desired field is missing from, or different in, current."""
    for key, value in desired.items():
        if key == "metadata":
            cur_meta = current.get("metadata") or {}
            if any(cur_meta.get(k) != v for k, v in value.items()):
                return True
        elif current.get(key) != value:
            return True
    return False


class Reconciler:
    """Drives the child resources of one instance kind toward the desired spec."""

    def __init__(self, store: ResourceStore, syncer: StatusSyncer, runner: GroupRunner | None = None):
        self.store = store
        self.syncer = syncer
        self.runner = runner or ThreadGroupRunner()
        self.kind = syncer.kind

    def apply(self, desired: dict[str, Any]) -> str:
        """Create the object if missing, update it if it drifted, otherwise leave it alone."""
        kind, namespace, name = object_key(desired)
        try:
            current = self.store.get(kind, namespace, name)
        except NotFound:
            self.store.create(desired)
            self.store.log_event("INFO", f"Created {kind} {name}", kind=kind, namespace=namespace, name=name)
            return CREATED
        if not _differs(current, desired):
            return UNCHANGED
        merged = {**current, **desired}
        merged["metadata"] = {**(current.get("metadata") or {}), **desired["metadata"]}
        self.store.update(merged)
        self.store.log_event("INFO", f"Updated {kind} {name}", kind=kind, namespace=namespace, name=name)
        return UPDATED

    def reconcile_config_map(self, instance: Instance) -> str:
        return self.apply(render_config_map(instance))

    def _reconcile_deployment(self, instance: Instance, role: Role) -> str:
        return self.apply(render_deployment(instance, role))

    def _reconcile_service(self, instance: Instance, role: Role) -> str:
        return self.apply(render_service(instance, role))

    def reconcile_deployments(self, instance: Instance) -> None:
        self.runner.run_diff_args(self._reconcile_deployment, instance, roles_for_kind(self.kind))

    def reconcile_services(self, instance: Instance) -> None:
        self.runner.run_diff_args(self._reconcile_service, instance, roles_for_kind(self.kind))

    def reconcile(self, instance: Instance) -> None:
        """One full pass: defaults, config, deployments, services, then status."""
        self.syncer.set_default_status(instance)
        self.reconcile_config_map(instance)
        self.reconcile_deployments(instance)
        self.reconcile_services(instance)
        self.syncer.update_status(instance)
