import threading
import time

import pytest

from mco.api_models import (
    CLUSTER_KIND,
    STANDALONE_KIND,
    Condition,
    ConditionStatus,
    InstanceState,
    parse_instance,
)
from mco.group import GroupError
from mco.health import ETCD_READY, STORAGE_READY, dimensions_for_kind
from mco.status import Cancelled, ConditionSet, StatusSyncer, StatusUpdateError, derive_status

TRUE = ConditionStatus.TRUE
FALSE = ConditionStatus.FALSE


def _syncer(store, probe, runner, kind=STANDALONE_KIND, **kw):
    return StatusSyncer(store, probe, runner, kind=kind, **kw)


def _stored(store, name="demo", kind=STANDALONE_KIND):
    return parse_instance(store.get(kind, "default", name))


def test_condition_set_upsert_by_key():
    cs = ConditionSet([Condition(type="B", status=TRUE, last_transition_time="t0")])
    cs.upsert(Condition(type="A", status=FALSE), now="t1")
    cs.upsert(Condition(type="B", status=TRUE, message="still fine"), now="t2")
    assert [c.type for c in cs.to_list()] == ["A", "B"]
    assert cs.get("A").last_transition_time == "t1"
    # Same status: transition time kept, other fields replaced.
    assert cs.get("B").last_transition_time == "t0"
    assert cs.get("B").message == "still fine"
    cs.upsert(Condition(type="B", status=FALSE), now="t3")
    assert cs.get("B").last_transition_time == "t3"
    assert len(cs) == 2


def test_derive_status():
    assert derive_status([]) == InstanceState.UNHEALTHY
    assert derive_status([Condition(type="A", status=TRUE)]) == InstanceState.HEALTHY
    assert derive_status([Condition(type="A", status=TRUE), Condition(type="B")]) == InstanceState.UNHEALTHY


def test_dimensions_per_kind():
    assert dimensions_for_kind(STANDALONE_KIND) == (ETCD_READY, STORAGE_READY)
    cluster = dimensions_for_kind(CLUSTER_KIND)
    assert len(cluster) == 7
    assert "RootCoordReady" in cluster and "IndexCoordReady" in cluster


def test_update_status_skips_unset(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=STANDALONE_KIND)
    assert _syncer(store, fake_probe, runner).update_status(inst) is False
    assert fake_probe.calls == []
    assert store.status_writes == []


def test_set_default_status(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=STANDALONE_KIND)
    s = _syncer(store, fake_probe, runner)
    assert s.set_default_status(inst) is True
    assert _stored(store).status.status == InstanceState.CREATING
    assert s.set_default_status(inst) is False
    assert len(store.status_writes) == 1


def test_update_status_writes_only_on_change(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=STANDALONE_KIND, status=InstanceState.CREATING)
    s = _syncer(store, fake_probe, runner)

    assert s.update_status(inst) is True
    assert runner.result_calls == [2]
    stored = _stored(store)
    assert stored.status.status == InstanceState.HEALTHY
    assert [c.type for c in stored.status.conditions] == [ETCD_READY, STORAGE_READY]

    # Identical evidence: nothing to write, even from a freshly loaded copy.
    assert s.update_status(_stored(store)) is False
    assert len(store.status_writes) == 1


def test_single_dimension_flip_writes_once(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=STANDALONE_KIND, status=InstanceState.CREATING)
    s = _syncer(store, fake_probe, runner)
    s.update_status(inst)
    before = {c.type: c for c in _stored(store).status.conditions}

    time.sleep(1.1)  # timestamps have second resolution
    fake_probe.statuses[STORAGE_READY] = FALSE
    assert s.update_status(_stored(store)) is True
    assert len(store.status_writes) == 2

    after = _stored(store)
    assert after.status.status == InstanceState.UNHEALTHY
    conds = {c.type: c for c in after.status.conditions}
    assert conds[STORAGE_READY].status == FALSE
    assert conds[STORAGE_READY].last_transition_time != before[STORAGE_READY].last_transition_time
    assert conds[ETCD_READY].last_transition_time == before[ETCD_READY].last_transition_time


def test_probe_errors_abort_update(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=STANDALONE_KIND, status=InstanceState.CREATING)
    fake_probe.errors = {ETCD_READY, STORAGE_READY}
    before = store.get(STANDALONE_KIND, "default", "demo")

    with pytest.raises(StatusUpdateError):
        _syncer(store, fake_probe, runner).update_status(inst)

    assert store.get(STANDALONE_KIND, "default", "demo") == before
    assert store.status_writes == []
    assert inst.status.status == InstanceState.CREATING


def test_partial_probe_error_still_aborts(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=STANDALONE_KIND, status=InstanceState.HEALTHY)
    fake_probe.errors = {ETCD_READY}
    fake_probe.statuses[STORAGE_READY] = FALSE
    with pytest.raises(StatusUpdateError):
        _syncer(store, fake_probe, runner).update_status(inst)
    assert _stored(store).status.status == InstanceState.HEALTHY


def test_update_status_observes_stop(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=STANDALONE_KIND, status=InstanceState.CREATING)
    stop = threading.Event()
    stop.set()
    with pytest.raises(Cancelled):
        _syncer(store, fake_probe, runner).update_status(inst, stop=stop)
    assert store.status_writes == []


def _three_instances(make_instance):
    make_instance("unset", kind=STANDALONE_KIND)
    make_instance("healthy", kind=STANDALONE_KIND, status=InstanceState.HEALTHY)
    make_instance("unhealthy", kind=STANDALONE_KIND, status=InstanceState.UNHEALTHY)


def test_sync_unhealthy_partition(store, fake_probe, runner, make_instance):
    _three_instances(make_instance)
    _syncer(store, fake_probe, runner).sync_unhealthy()
    assert len(runner.diff_calls) == 1
    assert sorted(i.metadata.name for i in runner.diff_calls[0]) == ["unhealthy", "unset"]


def test_sync_healthy_partition(store, fake_probe, runner, make_instance):
    _three_instances(make_instance)
    _syncer(store, fake_probe, runner).sync_healthy()
    assert [i.metadata.name for i in runner.diff_calls[0]] == ["healthy"]


def test_passes_run_with_empty_selection(store, fake_probe, runner, make_instance):
    make_instance("healthy", kind=STANDALONE_KIND, status=InstanceState.HEALTHY)
    _syncer(store, fake_probe, runner).sync_unhealthy()
    assert runner.diff_calls == [[]]


def test_list_failure_propagates(store, fake_probe, runner, monkeypatch):
    def broken(kind, namespace=None):
        raise RuntimeError("store unreachable")

    monkeypatch.setattr(store, "list", broken)
    s = _syncer(store, fake_probe, runner)
    with pytest.raises(RuntimeError):
        s.sync_unhealthy()
    with pytest.raises(RuntimeError):
        s.sync_healthy()
    assert runner.diff_calls == []


def test_sync_unhealthy_promotes_and_leaves_still_unhealthy_alone(store, fake_probe, runner, make_instance):
    make_instance("a", kind=STANDALONE_KIND, status=InstanceState.UNHEALTHY)
    make_instance("b", kind=STANDALONE_KIND, status=InstanceState.UNHEALTHY)
    fake_probe.statuses[ETCD_READY] = FALSE
    s = _syncer(store, fake_probe, runner)

    s.sync_unhealthy()
    assert store.status_writes == []

    fake_probe.statuses.clear()
    s.sync_unhealthy()
    assert {w[2] for w in store.status_writes} == {"a", "b"}
    assert _stored(store, "a").status.status == InstanceState.HEALTHY


def test_sync_healthy_demotes(store, fake_probe, runner, make_instance):
    make_instance("a", kind=STANDALONE_KIND, status=InstanceState.CREATING)
    s = _syncer(store, fake_probe, runner)
    s.update_status(_stored(store, "a"))
    writes = len(store.status_writes)

    s.sync_healthy()
    assert len(store.status_writes) == writes

    fake_probe.statuses[ETCD_READY] = FALSE
    s.sync_healthy()
    assert len(store.status_writes) == writes + 1
    assert _stored(store, "a").status.status == InstanceState.UNHEALTHY


def test_sync_pass_collects_per_instance_errors(store, fake_probe, runner, make_instance):
    make_instance("a", kind=STANDALONE_KIND, status=InstanceState.UNHEALTHY)
    make_instance("b", kind=STANDALONE_KIND, status=InstanceState.UNHEALTHY)
    fake_probe.errors = {STORAGE_READY}
    with pytest.raises(GroupError) as exc:
        _syncer(store, fake_probe, runner).sync_unhealthy()
    assert len(exc.value.errors) == 2
    assert all(isinstance(e, StatusUpdateError) for e in exc.value.errors)


def test_cluster_probes_every_dimension(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=CLUSTER_KIND, status=InstanceState.CREATING)
    _syncer(store, fake_probe, runner, kind=CLUSTER_KIND).update_status(inst)
    assert sorted(d for d, _ in fake_probe.calls) == sorted(dimensions_for_kind(CLUSTER_KIND))
    assert inst.status.status == InstanceState.HEALTHY


def test_background_loop_promotes_and_stops(store, fake_probe, runner, make_instance):
    make_instance("a", kind=STANDALONE_KIND, status=InstanceState.UNHEALTHY)
    s = _syncer(store, fake_probe, runner, healthy_interval_s=1, unhealthy_interval_s=1)
    s.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and _stored(store, "a").status.status != InstanceState.HEALTHY:
            time.sleep(0.05)
    finally:
        s.stop(timeout=5)
    assert _stored(store, "a").status.status == InstanceState.HEALTHY
    messages = [e["message"] for e in store.latest_events(50)]
    assert any("started" in m for m in messages)


def test_persisted_status_shape(store, fake_probe, runner, make_instance):
    inst = make_instance(kind=STANDALONE_KIND, status=InstanceState.CREATING)
    _syncer(store, fake_probe, runner).update_status(inst)
    raw = store.get(STANDALONE_KIND, "default", "demo")["status"]
    assert raw["status"] == "Healthy"
    assert [c["type"] for c in raw["conditions"]] == [ETCD_READY, STORAGE_READY]
    assert set(raw["conditions"][0]) == {"type", "status", "reason", "message", "last_transition_time"}
