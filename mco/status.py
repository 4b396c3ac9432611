from __future__ import annotations

import time
from functools import partial
from threading import Event, Thread
from typing import Callable, Iterable, Iterator, Sequence

from .api_models import (
    CLUSTER_KIND,
    Condition,
    ConditionStatus,
    Instance,
    InstanceState,
    InstanceStatus,
    parse_instance,
)
from .group import GroupRunner, ThreadGroupRunner
from .health import HealthProbe, dimensions_for_kind
from .settings import settings
from .store import ResourceStore, utc_now


class StatusUpdateError(Exception):
    """A health dimension could not be evaluated; nothing was written."""


class Cancelled(Exception):
    pass


def _check_stop(stop: Event | None) -> None:
    if stop is not None and stop.is_set():
        raise Cancelled("status sync stopped")


class ConditionSet:
    """Conditions keyed by dimension; last write wins.

    The transition time only moves when a dimension's status changes.
    """

    def __init__(self, conditions: Iterable[Condition] = ()):
        self._by_type: dict[str, Condition] = {c.type: c for c in conditions}

    def upsert(self, cond: Condition, now: str | None = None) -> None:
        prev = self._by_type.get(cond.type)
        if prev is not None and prev.status == cond.status:
            ts = prev.last_transition_time
        else:
            ts = now or utc_now()
        self._by_type[cond.type] = cond.model_copy(update={"last_transition_time": ts})

    def get(self, dimension: str) -> Condition | None:
        return self._by_type.get(dimension)

    def __len__(self) -> int:
        return len(self._by_type)

    def __iter__(self) -> Iterator[Condition]:
        return iter(self.to_list())

    def to_list(self) -> list[Condition]:
        return [self._by_type[k] for k in sorted(self._by_type)]


def derive_status(conditions: Iterable[Condition]) -> InstanceState:
    conds = list(conditions)
    if conds and all(c.status == ConditionStatus.TRUE for c in conds):
        return InstanceState.HEALTHY
    return InstanceState.UNHEALTHY


class StatusSyncer:
    """Keeps the status sub-resource of every tracked instance of one kind current.

    Two periodic passes run in a background thread:
      - unhealthy pass: instances not Healthy (unset included); writes promotions only
      - healthy pass:   Healthy instances; writes demotions only
    ``update_status`` is the on-demand path used right after a reconcile.
    """

    def __init__(
        self,
        store: ResourceStore,
        probe: HealthProbe,
        runner: GroupRunner | None = None,
        kind: str = CLUSTER_KIND,
        dimensions: Sequence[str] | None = None,
        healthy_interval_s: float | None = None,
        unhealthy_interval_s: float | None = None,
    ):
        self.store = store
        self.probe = probe
        self.runner = runner or ThreadGroupRunner()
        self.kind = kind
        self.dimensions = tuple(dimensions) if dimensions is not None else dimensions_for_kind(kind)
        self.healthy_interval_s = max(1.0, float(healthy_interval_s or settings.healthy_sync_interval_s))
        self.unhealthy_interval_s = max(1.0, float(unhealthy_interval_s or settings.unhealthy_sync_interval_s))
        self._stop = Event()
        self._thr: Thread | None = None

    # --- single instance -----------------------------------------------------

    def set_default_status(self, instance: Instance) -> bool:
        """Mark a new instance Creating. Returns True if a write happened."""
        if instance.status.status is not None:
            return False
        self._write(instance, InstanceStatus(status=InstanceState.CREATING, conditions=instance.status.conditions))
        self.store.log_event("INFO", "Instance created", **self._ref(instance))
        return True

    def update_status(self, instance: Instance, stop: Event | None = None) -> bool:
        """Re-probe every dimension and persist the result if anything changed.

        Returns True if the status was written. Raises StatusUpdateError (and
        writes nothing) if any dimension could not be evaluated.
        """
        return self._refresh(instance, stop, accept=None)

    def _refresh(
        self,
        instance: Instance,
        stop: Event | None,
        accept: Callable[[InstanceState], bool] | None,
    ) -> bool:
        if instance.status.status is None:
            # Defaults are set by the reconcile loop; nothing to compare against yet.
            return False
        _check_stop(stop)

        funcs = [partial(self.probe.probe, d) for d in self.dimensions]
        results = self.runner.run_with_result(funcs, instance)
        errors = [r.err for r in results if r.err is not None]
        if errors:
            detail = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
            raise StatusUpdateError(f"update status of {self._name(instance)}: {detail}")

        fresh = [r.data for r in results]
        merged = ConditionSet(instance.status.conditions)
        for cond in fresh:
            merged.upsert(cond)
        new = InstanceStatus(status=derive_status(fresh), conditions=merged.to_list())

        if new == instance.status:
            return False
        if accept is not None and not accept(new.status):
            return False

        _check_stop(stop)
        previous = instance.status.status
        self._write(instance, new)
        self._log_transition(instance, previous, new)
        return True

    def _write(self, instance: Instance, status: InstanceStatus) -> None:
        meta = instance.metadata
        self.store.update_status(self.kind, meta.namespace, meta.name, status.model_dump(mode="json"))
        instance.status = status

    def _log_transition(self, instance: Instance, previous: InstanceState | None, new: InstanceStatus) -> None:
        if previous == new.status:
            return
        if new.status == InstanceState.HEALTHY:
            self.store.log_event("INFO", f"Instance recovered ({previous.value if previous else 'unset'} -> Healthy)", **self._ref(instance))
            return
        failing = [c.type for c in new.conditions if c.status != ConditionStatus.TRUE]
        self.store.log_event(
            "WARN",
            f"Instance became {new.status.value}: {', '.join(failing) or 'no conditions'}",
            **self._ref(instance),
        )

    def _ref(self, instance: Instance) -> dict[str, str]:
        return {"kind": self.kind, "namespace": instance.metadata.namespace, "name": instance.metadata.name}

    @staticmethod
    def _name(instance: Instance) -> str:
        return f"{instance.metadata.namespace}/{instance.metadata.name}"

    # --- periodic passes -----------------------------------------------------

    def _list(self) -> list[Instance]:
        return [parse_instance(obj) for obj in self.store.list(self.kind)]

    def sync_unhealthy(self) -> None:
        selected = [i for i in self._list() if i.status.status != InstanceState.HEALTHY]
        self.runner.run_diff_args(self._promote, self._stop, selected)

    def sync_healthy(self) -> None:
        selected = [i for i in self._list() if i.status.status == InstanceState.HEALTHY]
        self.runner.run_diff_args(self._demote, self._stop, selected)

    def _promote(self, stop: Event, instance: Instance) -> None:
        self._refresh(instance, stop, accept=lambda s: s == InstanceState.HEALTHY)

    def _demote(self, stop: Event, instance: Instance) -> None:
        self._refresh(instance, stop, accept=lambda s: s != InstanceState.HEALTHY)

    # --- background loop -----------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True, name=f"mco-status-{self.kind}")
        self._thr.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thr is not None:
            self._thr.join(timeout)

    def _loop(self) -> None:
        self.store.log_event("INFO", f"Status syncer started for {self.kind}", kind=self.kind)
        next_unhealthy = next_healthy = time.monotonic()
        while not self._stop.is_set():
            now = time.monotonic()
            if now >= next_unhealthy:
                self._run_pass("unhealthy", self.sync_unhealthy)
                next_unhealthy = now + self.unhealthy_interval_s
            if now >= next_healthy:
                self._run_pass("healthy", self.sync_healthy)
                next_healthy = now + self.healthy_interval_s
            self._stop.wait(max(0.0, min(next_unhealthy, next_healthy) - time.monotonic()))
        self.store.log_event("INFO", f"Status syncer stopped for {self.kind}", kind=self.kind)

    def _run_pass(self, name: str, fn: Callable[[], None]) -> None:
        try:
            fn()
        except Exception as e:
            if self._stop.is_set():
                return
            self.store.log_event("ERROR", f"Status sync ({name} pass) failed: {type(e).__name__}: {e}", kind=self.kind)
