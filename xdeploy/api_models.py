from __future__ import annotations

from pydantic import BaseModel, Field

from .models import XDeploymentSpec


class SpecModel(BaseModel):
    """Wire form of XDeploymentSpec.

    Only types are checked here. Range problems (empty image, negative
    replicas, bad port) are accepted and reported by the controller as an
    InvalidSpec status condition.
    """

    image: str = Field(..., description="Container image (name:tag)")
    replicas: int | None = Field(None, description="Desired replica count, default 1")
    port: int | None = Field(None, description="Port the workload listens on")
    hostname: str | None = Field(None, description="Hostname given to each child")
    env: dict[str, str] = Field(default_factory=dict, description="Environment variables")

    def to_spec(self) -> XDeploymentSpec:
        return XDeploymentSpec(
            image=self.image,
            replicas=self.replicas,
            port=self.port,
            hostname=self.hostname or None,
            env=dict(self.env),
        )


class ApplyRequest(BaseModel):
    spec: SpecModel
