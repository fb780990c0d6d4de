from __future__ import annotations

import secrets
import time
from typing import Any, Callable

import docker
import requests
from docker.errors import DockerException, ImageNotFound, NotFound

from .driver import ChildTemplate, ChildWorkloadUnit, Readiness
from .errors import TransientDriverError
from .health import probe_http
from .models import ResourceKey
from .settings import settings

LABEL_NAMESPACE = "xdeploy.namespace"
LABEL_NAME = "xdeploy.name"
LABEL_REVISION = "xdeploy.revision"
LABEL_IMAGE = "xdeploy.image"
LABEL_CREATED = "xdeploy.created"
LABEL_PORT = "xdeploy.port"

TERMINATED_STATES = {"exited", "dead"}


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


class DockerDriver:
    """Workload driver backed by local docker containers.

    Containers are labeled with their owner so they can be re-discovered after
    controller restarts; docker restart policy is off so replacement is the
    controller's job.
    """

    def __init__(
        self,
        client_factory: Callable[[], Any] | None = None,
        network: str | None = None,
        probe: Callable[[str, float], tuple[bool, str, float | None]] = probe_http,
    ):
        self._client_factory = client_factory or (lambda: docker.from_env(timeout=settings.driver_timeout_s))
        self._client: Any = None
        self.network = network or settings.docker_network
        self._probe = probe
        self._network_ready = False

    def _c(self) -> Any:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except DockerException as e:
                raise TransientDriverError(f"Docker is not available: {e}") from e
        return self._client

    def _call(self, what: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except ImageNotFound as e:
            raise TransientDriverError(f"{what}: {e}", reason="ImagePullFailing") from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise TransientDriverError(f"{what}: {type(e).__name__}: {e}") from e

    def _ensure_network(self) -> None:
        if self._network_ready:
            return
        c = self._c()

        def ensure() -> None:
            try:
                c.networks.get(self.network)
            except NotFound:
                c.networks.create(self.network, driver="bridge")

        self._call("ensure network", ensure)
        self._network_ready = True

    def _to_unit(self, container: Any) -> ChildWorkloadUnit | None:
        labels = container.labels or {}
        if not labels.get(LABEL_NAMESPACE) or not labels.get(LABEL_NAME):
            return None
        return ChildWorkloadUnit(
            unit_id=container.id,
            owner=ResourceKey(labels[LABEL_NAMESPACE], labels[LABEL_NAME]),
            image=labels.get(LABEL_IMAGE, ""),
            revision=labels.get(LABEL_REVISION, ""),
            created_at=float(labels.get(LABEL_CREATED, "0")),
            terminated=container.status in TERMINATED_STATES,
        )

    def list_children(self, owner: ResourceKey) -> list[ChildWorkloadUnit]:
        c = self._c()
        filters = {"label": [f"{LABEL_NAMESPACE}={owner.namespace}", f"{LABEL_NAME}={owner.name}"]}
        containers = self._call("list containers", lambda: c.containers.list(all=True, filters=filters))
        units = (self._to_unit(x) for x in containers)
        return [u for u in units if u is not None]

    def list_owners(self) -> set[ResourceKey]:
        c = self._c()
        containers = self._call(
            "list containers", lambda: c.containers.list(all=True, filters={"label": [LABEL_NAMESPACE]})
        )
        units = (self._to_unit(x) for x in containers)
        return {u.owner for u in units if u is not None}

    def create_child(self, owner: ResourceKey, template: ChildTemplate) -> str:
        """Create and start a container attached to the controller network."""
        self._ensure_network()
        c = self._c()
        name = f"xd-{owner.namespace}-{owner.name}-{secrets.token_hex(3)}"
        labels: dict[str, str] = {
            LABEL_NAMESPACE: owner.namespace,
            LABEL_NAME: owner.name,
            LABEL_REVISION: template.revision,
            LABEL_IMAGE: template.image,
            LABEL_CREATED: repr(time.time()),
        }
        if template.port is not None:
            labels[LABEL_PORT] = str(template.port)

        container = self._call(
            f"run {template.image}",
            lambda: c.containers.run(
                template.image,
                detach=True,
                name=name,
                hostname=template.hostname,
                environment=dict(template.env),
                network=self.network,
                labels=labels,
                restart_policy={"Name": "no"},
            ),
        )
        return container.id

    def delete_child(self, unit_id: str) -> None:
        c = self._c()

        def remove() -> None:
            try:
                c.containers.get(unit_id).remove(force=True)
            except NotFound:
                return

        self._call(f"remove {unit_id[:12]}", remove)

    def get_readiness(self, unit_id: str) -> Readiness:
        c = self._c()
        try:
            container = self._call(f"inspect {unit_id[:12]}", lambda: c.containers.get(unit_id))
        except TransientDriverError as e:
            if isinstance(e.__cause__, NotFound):
                return Readiness.UNKNOWN
            raise
        if container.status != "running":
            return Readiness.NOT_READY

        health = (container.attrs.get("State") or {}).get("Health")
        if health:
            return Readiness.READY if health.get("Status") == "healthy" else Readiness.NOT_READY

        port = (container.labels or {}).get(LABEL_PORT)
        if port and settings.probe_http:
            url = container_http_base(container.name, int(port))
            ok, _msg, _latency = self._probe(url, float(settings.driver_timeout_s))
            return Readiness.READY if ok else Readiness.NOT_READY
        return Readiness.READY
