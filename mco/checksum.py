from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

from .api_models import MilvusClusterSpec, MilvusSpec


def checksum(record: Mapping[str, Any]) -> str:
    """Stable hex digest of a JSON-compatible mapping.

    Keys are sorted at every level, so logically equal records hash the same
    regardless of insertion order.
    """
    raw = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("ascii")).hexdigest()


def cluster_conf_checksum(spec: MilvusClusterSpec) -> str:
    """Checksum of everything a distributed cluster's roles read at startup."""
    return checksum(
        {
            "conf": spec.conf.data,
            "etcd-endpoints": list(spec.dep.etcd.endpoints),
            "pulsar-endpoint": spec.dep.pulsar.endpoint,
            "storage-endpoint": spec.dep.storage.endpoint,
        }
    )


def standalone_conf_checksum(spec: MilvusSpec) -> str:
    """Checksum for standalone instances (no message bus)."""
    return checksum(
        {
            "conf": spec.conf.data,
            "etcd-endpoints": list(spec.dep.etcd.endpoints),
            "storage-endpoint": spec.dep.storage.endpoint,
        }
    )


def conf_checksum(spec: MilvusClusterSpec | MilvusSpec) -> str:
    if isinstance(spec, MilvusClusterSpec):
        return cluster_conf_checksum(spec)
    return standalone_conf_checksum(spec)
