from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .models import ResourceKey, XDeploymentSpec


class Readiness(str, Enum):
    READY = "ready"
    NOT_READY = "notReady"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ChildTemplate:
    """Everything a child unit is configured with."""

    image: str
    port: int | None = None
    hostname: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_spec(cls, spec: XDeploymentSpec) -> "ChildTemplate":
        return cls(image=spec.image, port=spec.port, hostname=spec.hostname, env=dict(spec.env))

    @property
    def revision(self) -> str:
        """Short stable hash; children with another revision are outdated."""
        payload = json.dumps(
            {"image": self.image, "port": self.port, "hostname": self.hostname, "env": self.env},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()[:10]


@dataclass(frozen=True)
class ChildWorkloadUnit:
    unit_id: str
    owner: ResourceKey
    image: str
    revision: str
    created_at: float
    terminated: bool = False


class WorkloadDriver(Protocol):
    """Creates, deletes and inspects the compute units backing replicas.

    Implementations raise TransientDriverError when the backend cannot be
    reached or a call exceeds its timeout.
    """

    def list_children(self, owner: ResourceKey) -> list[ChildWorkloadUnit]: ...

    def create_child(self, owner: ResourceKey, template: ChildTemplate) -> str: ...

    def delete_child(self, unit_id: str) -> None: ...

    def get_readiness(self, unit_id: str) -> Readiness: ...

    def list_owners(self) -> set[ResourceKey]: ...
