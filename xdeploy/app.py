from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI, HTTPException, Query, status

from . import db
from .api_models import ApplyRequest
from .controller import Controller
from .docker_ops import DockerDriver
from .driver import WorkloadDriver
from .errors import ConflictError, NotFoundError
from .models import ResourceKey, validate_key
from .settings import settings
from .store import XDeploymentStore


def _key(namespace: str, name: str) -> ResourceKey:
    key = ResourceKey(namespace, name)
    try:
        validate_key(key)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return key


def create_app(
    store: XDeploymentStore | None = None,
    driver: WorkloadDriver | None = None,
    start_controller: bool | None = None,
) -> FastAPI:
    """HTTP front door of the desired-state store.

    With ``start_controller`` (default: XDEPLOY_RUN_CONTROLLER) the
    reconciliation loop runs in the same process for the app's lifetime.
    """
    store = store or XDeploymentStore()
    run_controller = settings.run_controller if start_controller is None else start_controller

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db.init_db()
        controller: Controller | None = None
        if run_controller:
            controller = Controller(store, driver or DockerDriver())
            controller.start()
        app.state.controller = controller
        try:
            yield
        finally:
            if controller is not None:
                controller.stop()

    app = FastAPI(title="XDeployment Controller", lifespan=lifespan)
    app.state.store = store
    app.state.controller = None

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        controller: Controller | None = app.state.controller
        return {
            "status": "healthy",
            "controller": bool(controller and controller.running),
            "queue_depth": len(controller.queue) if controller else 0,
        }

    @app.get("/xdeployments")
    def list_xdeployments() -> list[dict[str, Any]]:
        return [xd.to_dict() for xd in store.list()]

    @app.get("/xdeployments/{namespace}/{name}")
    def get_xdeployment(namespace: str, name: str) -> dict[str, Any]:
        xd = store.get(_key(namespace, name))
        if xd is None:
            raise HTTPException(status_code=404, detail=f"{namespace}/{name} not found")
        return xd.to_dict()

    @app.put("/xdeployments/{namespace}/{name}")
    def apply_xdeployment(namespace: str, name: str, req: ApplyRequest) -> dict[str, Any]:
        try:
            xd = store.apply(_key(namespace, name), req.spec.to_spec())
        except ConflictError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return xd.to_dict()

    @app.delete("/xdeployments/{namespace}/{name}", status_code=status.HTTP_202_ACCEPTED)
    def delete_xdeployment(namespace: str, name: str) -> dict[str, Any]:
        try:
            xd = store.request_delete(_key(namespace, name))
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return xd.to_dict()

    @app.get("/events")
    def events(limit: int = Query(50, ge=1, le=1000), resource: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit=limit, resource=resource)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
