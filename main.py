from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Path, Query, Request
from fastapi.responses import JSONResponse

from mco.api_models import (
    CLUSTER_KIND,
    INSTANCE_MODELS,
    NAME_PATTERN,
    STANDALONE_KIND,
    Instance,
    MilvusClusterSpec,
    MilvusSpec,
    ObjectMeta,
    parse_instance,
)
from mco.group import GroupError, GroupRunner, ThreadGroupRunner
from mco.health import HealthProbe, HttpHealthProbe
from mco.reconciler import Reconciler
from mco.settings import settings
from mco.status import StatusSyncer, StatusUpdateError
from mco.store import NotFound, ResourceStore, SqliteStore

COLLECTIONS = {"clusters": CLUSTER_KIND, "standalones": STANDALONE_KIND}


class AsciiJSONResponse(JSONResponse):
    """Escapes non-ASCII text, so any string a spec accepted can be sent back."""

    def render(self, content: Any) -> bytes:
        return json.dumps(content, allow_nan=False, separators=(",", ":")).encode("ascii")


class Operator:
    """Wires one status syncer and one reconciler per instance kind."""

    def __init__(self, store: ResourceStore, probe: HealthProbe, runner: GroupRunner):
        self.store = store
        self.syncers = {kind: StatusSyncer(store, probe, runner, kind=kind) for kind in INSTANCE_MODELS}
        self.reconcilers = {kind: Reconciler(store, s, runner) for kind, s in self.syncers.items()}

    def start(self) -> None:
        for s in self.syncers.values():
            s.start()

    def stop(self) -> None:
        for s in self.syncers.values():
            s.stop(timeout=5)


def _kind(collection: str) -> str:
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown collection '{collection}'.") from None


def create_app(operator: Operator | None = None, start_sync: bool | None = None) -> FastAPI:
    if start_sync is None:
        start_sync = settings.enable_status_sync

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        op = operator or Operator(SqliteStore(), HttpHealthProbe(), ThreadGroupRunner())
        app.state.operator = op
        op.store.log_event("INFO", "Operator API started")
        if start_sync:
            op.start()
        try:
            yield
        finally:
            if start_sync:
                await asyncio.to_thread(op.stop)

    app = FastAPI(title="Milvus Cluster Operator", lifespan=lifespan, default_response_class=AsciiJSONResponse)

    def _op(request: Request) -> Operator:
        return request.app.state.operator

    def _get(op: Operator, kind: str, namespace: str, name: str) -> Instance:
        try:
            return parse_instance(op.store.get(kind, namespace, name))
        except NotFound:
            raise HTTPException(status_code=404, detail=f"{kind} {namespace}/{name} not found") from None

    def _apply(op: Operator, kind: str, namespace: str, name: str, spec: MilvusClusterSpec | MilvusSpec) -> dict[str, Any]:
        model = INSTANCE_MODELS[kind]
        instance: Instance = model(metadata=ObjectMeta(name=name, namespace=namespace), spec=spec)  # type: ignore[assignment]
        try:
            current = parse_instance(op.store.get(kind, namespace, name))
            instance.status = current.status
            op.store.update(instance.model_dump(mode="json"))
            op.store.log_event("INFO", "Spec updated", kind=kind, namespace=namespace, name=name)
        except NotFound:
            op.store.create(instance.model_dump(mode="json", exclude={"status"}))
            op.store.log_event("INFO", "Instance registered", kind=kind, namespace=namespace, name=name)

        reconcile_error = None
        if settings.reconcile_on_apply:
            try:
                op.reconcilers[kind].reconcile(instance)
            except (GroupError, StatusUpdateError) as e:
                reconcile_error = str(e)
                op.store.log_event("ERROR", f"Reconcile failed: {e}", kind=kind, namespace=namespace, name=name)
        return {"instance": instance.model_dump(mode="json"), "reconcile_error": reconcile_error}

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/events")
    def events(request: Request, limit: int = Query(100, ge=1, le=1000)) -> list[dict[str, Any]]:
        return _op(request).store.latest_events(limit)

    @app.get("/{collection}")
    def list_instances(request: Request, collection: str, namespace: str | None = None) -> list[dict[str, Any]]:
        op = _op(request)
        kind = _kind(collection)
        return [parse_instance(o).model_dump(mode="json") for o in op.store.list(kind, namespace)]

    @app.get("/{collection}/{namespace}/{name}")
    def get_instance(request: Request, collection: str, namespace: str, name: str) -> dict[str, Any]:
        return _get(_op(request), _kind(collection), namespace, name).model_dump(mode="json")

    @app.put("/clusters/{namespace}/{name}")
    def apply_cluster(
        request: Request,
        spec: MilvusClusterSpec,
        namespace: str = Path(..., pattern=NAME_PATTERN),
        name: str = Path(..., pattern=NAME_PATTERN),
    ) -> dict[str, Any]:
        return _apply(_op(request), CLUSTER_KIND, namespace, name, spec)

    @app.put("/standalones/{namespace}/{name}")
    def apply_standalone(
        request: Request,
        spec: MilvusSpec,
        namespace: str = Path(..., pattern=NAME_PATTERN),
        name: str = Path(..., pattern=NAME_PATTERN),
    ) -> dict[str, Any]:
        return _apply(_op(request), STANDALONE_KIND, namespace, name, spec)

    @app.post("/{collection}/{namespace}/{name}/sync")
    def sync_status(request: Request, collection: str, namespace: str, name: str) -> dict[str, Any]:
        op = _op(request)
        kind = _kind(collection)
        instance = _get(op, kind, namespace, name)
        try:
            written = op.syncers[kind].update_status(instance)
        except StatusUpdateError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return {"written": written, "status": instance.status.model_dump(mode="json")}

    return app


app = create_app()
