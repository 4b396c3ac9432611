import os as _os
import sys

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from mco.api_models import (  # noqa: E402
    CLUSTER_KIND,
    INSTANCE_MODELS,
    Condition,
    ConditionStatus,
    ObjectMeta,
)
from mco.group import SyncGroupRunner  # noqa: E402
from mco.health import ProbeError  # noqa: E402
from mco.store import SqliteStore  # noqa: E402


class CountingStore(SqliteStore):
    """SqliteStore that remembers every write."""

    def __init__(self, path):
        super().__init__(path)
        self.status_writes = []
        self.updates = []
        self.creates = []

    def create(self, obj):
        self.creates.append(obj)
        return super().create(obj)

    def update(self, obj):
        self.updates.append(obj)
        return super().update(obj)

    def update_status(self, kind, namespace, name, status):
        self.status_writes.append((kind, namespace, name, status))
        return super().update_status(kind, namespace, name, status)


class FakeProbe:
    """Scripted health: every dimension is True unless told otherwise."""

    def __init__(self):
        self.statuses = {}
        self.errors = set()
        self.calls = []

    def probe(self, dimension, instance):
        self.calls.append((dimension, instance.metadata.name))
        if dimension in self.errors:
            raise ProbeError(f"cannot evaluate {dimension}")
        status = self.statuses.get(dimension, ConditionStatus.TRUE)
        return Condition(
            type=dimension,
            status=status,
            reason="Ready" if status == ConditionStatus.TRUE else "NotReady",
            message=f"{dimension} scripted",
        )


class RecordingRunner(SyncGroupRunner):
    def __init__(self):
        self.diff_calls = []
        self.result_calls = []

    def run_diff_args(self, fn, shared, args):
        self.diff_calls.append(list(args))
        return super().run_diff_args(fn, shared, args)

    def run_with_result(self, funcs, *args):
        self.result_calls.append(len(funcs))
        return super().run_with_result(funcs, *args)


@pytest.fixture
def store(tmp_path):
    return CountingStore(str(tmp_path / "test.db"))


@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def make_instance(store):
    """Register a tracked instance in the store and return its typed model."""

    def _make(name="demo", kind=CLUSTER_KIND, status=None, conditions=None, spec=None, namespace="default"):
        model = INSTANCE_MODELS[kind]
        inst = model(metadata=ObjectMeta(name=name, namespace=namespace))
        if spec is not None:
            inst.spec = spec
        inst.status.status = status
        inst.status.conditions = list(conditions or [])
        store.create(inst.model_dump(mode="json"))
        return inst

    return _make
