from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from .errors import ValidationError

NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$")
HOSTNAME_LABEL_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9\-]{0,61}[A-Za-z0-9])?$")

INT32_MAX = 2**31 - 1
DEFAULT_REPLICAS = 1

COND_READY = "Ready"
COND_DEGRADED = "Degraded"
COND_INVALID_SPEC = "InvalidSpec"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True, order=True)
class ResourceKey:
    namespace: str
    name: str

    @classmethod
    def parse(cls, raw: str) -> "ResourceKey":
        namespace, sep, name = raw.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Invalid resource key {raw!r}; expected 'namespace/name'.")
        return cls(namespace=namespace, name=name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def validate_key(key: ResourceKey) -> None:
    for label, value in (("namespace", key.namespace), ("name", key.name)):
        if not NAME_RE.match(value):
            raise ValueError(
                f"Invalid {label} {value!r}. Use lowercase letters/numbers and hyphen (max 63 chars)."
            )


@dataclass(frozen=True)
class XDeploymentSpec:
    image: str
    replicas: int | None = None
    port: int | None = None
    hostname: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def effective_replicas(self) -> int:
        return DEFAULT_REPLICAS if self.replicas is None else int(self.replicas)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"image": self.image}
        if self.replicas is not None:
            out["replicas"] = self.replicas
        if self.port is not None:
            out["port"] = self.port
        if self.hostname:
            out["hostname"] = self.hostname
        if self.env:
            out["env"] = dict(self.env)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "XDeploymentSpec":
        return cls(
            image=data.get("image", ""),
            replicas=data.get("replicas"),
            port=data.get("port"),
            hostname=data.get("hostname") or None,
            env=dict(data.get("env") or {}),
        )


def _valid_hostname(hostname: str) -> bool:
    if len(hostname) > 253:
        return False
    return all(HOSTNAME_LABEL_RE.match(label) for label in hostname.rstrip(".").split("."))


def validate_spec(spec: XDeploymentSpec) -> None:
    """Raise ValidationError listing every problem with ``spec``.

    Policy (the original schema leaves it open):
      - replicas may be 0 (scale to zero); unset means 1
      - port is not required to be unique per hostname
    """
    problems: list[str] = []
    if not spec.image or not spec.image.strip():
        problems.append("image must be a non-empty string")
    if spec.replicas is not None and not 0 <= spec.replicas <= INT32_MAX:
        problems.append(f"replicas must be between 0 and {INT32_MAX}, got {spec.replicas}")
    if spec.port is not None and not 1 <= spec.port <= 65535:
        problems.append(f"port must be between 1 and 65535, got {spec.port}")
    if spec.hostname and not _valid_hostname(spec.hostname):
        problems.append(f"hostname {spec.hostname!r} is not a valid RFC 1123 hostname")
    for key in spec.env:
        if not key or "=" in key:
            problems.append(f"env key {key!r} must be non-empty and must not contain '='")
    if problems:
        raise ValidationError(problems)


@dataclass(frozen=True)
class Condition:
    type: str
    status: str  # "True" | "False"
    reason: str
    message: str = ""
    last_transition_time: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "last_transition_time": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=data["status"],
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("last_transition_time") or utc_now(),
        )


@dataclass(frozen=True)
class XDeploymentStatus:
    replicas: int = 0
    updated_replicas: int = 0
    observed_generation: int = 0
    conditions: tuple[Condition, ...] = ()

    def condition(self, cond_type: str) -> Condition | None:
        for c in self.conditions:
            if c.type == cond_type:
                return c
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "replicas": self.replicas,
            "updated_replicas": self.updated_replicas,
            "observed_generation": self.observed_generation,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "XDeploymentStatus":
        data = data or {}
        return cls(
            replicas=int(data.get("replicas", 0)),
            updated_replicas=int(data.get("updated_replicas", 0)),
            observed_generation=int(data.get("observed_generation", 0)),
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions", [])),
        )


def set_condition(
    existing: tuple[Condition, ...], cond_type: str, status: bool, reason: str, message: str = ""
) -> tuple[Condition, ...]:
    """Return ``existing`` with ``cond_type`` set.

    The transition time is carried over unless the True/False status flips, so
    recomputing an unchanged condition yields an equal value.
    """
    status_str = "True" if status else "False"
    out: list[Condition] = []
    found = False
    for c in existing:
        if c.type != cond_type:
            out.append(c)
            continue
        found = True
        if c.status == status_str:
            out.append(replace(c, reason=reason, message=message))
        else:
            out.append(Condition(type=cond_type, status=status_str, reason=reason, message=message))
    if not found:
        out.append(Condition(type=cond_type, status=status_str, reason=reason, message=message))
    return tuple(out)


@dataclass(frozen=True)
class XDeployment:
    key: ResourceKey
    spec: XDeploymentSpec
    status: XDeploymentStatus = field(default_factory=XDeploymentStatus)
    generation: int = 1
    resource_version: int = 1
    deleting: bool = False
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": {
                "namespace": self.key.namespace,
                "name": self.key.name,
                "generation": self.generation,
                "resource_version": self.resource_version,
                "deleting": self.deleting,
                "created_at": self.created_at,
            },
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }
