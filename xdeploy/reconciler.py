from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Callable

from . import db
from .driver import ChildTemplate, WorkloadDriver
from .errors import TransientDriverError, ValidationError
from .models import (
    COND_DEGRADED,
    COND_INVALID_SPEC,
    COND_READY,
    ResourceKey,
    XDeployment,
    XDeploymentStatus,
    set_condition,
    validate_spec,
)
from .rollouts import PHASE_CONVERGED, RolloutPlan, plan_rollout
from .settings import settings
from .status import StatusSynchronizer
from .store import XDeploymentStore


@dataclass(frozen=True)
class Result:
    requeue_after: float | None = None


class Reconciler:
    """Drives the children of one XDeployment toward its spec.

    ``reconcile`` is idempotent: running it again on unchanged state issues no
    create/delete calls and no status write. Errors propagate to the caller
    (the controller's worker loop) which turns them into requeue decisions.
    """

    def __init__(
        self,
        store: XDeploymentStore,
        driver: WorkloadDriver,
        status_sync: StatusSynchronizer | None = None,
        clock: Callable[[], float] = time.time,
        readiness_poll_s: float | None = None,
        ready_timeout_s: float | None = None,
        invalid_spec_retry_s: float | None = None,
    ):
        self.store = store
        self.driver = driver
        self.status_sync = status_sync or StatusSynchronizer(store)
        self.clock = clock
        self.readiness_poll_s = settings.readiness_poll_s if readiness_poll_s is None else readiness_poll_s
        self.ready_timeout_s = settings.rollout_ready_timeout_s if ready_timeout_s is None else ready_timeout_s
        self.invalid_spec_retry_s = (
            settings.invalid_spec_retry_s if invalid_spec_retry_s is None else invalid_spec_retry_s
        )

    def reconcile(self, key: ResourceKey) -> Result:
        xd = self.store.get(key)
        if xd is None or xd.deleting:
            return self._finalize(key, xd)

        try:
            validate_spec(xd.spec)
        except ValidationError as e:
            return self._reject(xd, e)

        template = ChildTemplate.from_spec(xd.spec)
        try:
            children = self.driver.list_children(key)
            readiness = {c.unit_id: self.driver.get_readiness(c.unit_id) for c in children if not c.terminated}
            plan = plan_rollout(
                target=xd.spec.effective_replicas,
                revision=template.revision,
                children=children,
                readiness=readiness,
                now=self.clock(),
                ready_timeout_s=self.ready_timeout_s,
            )
            self._execute(key, template, plan)
        except TransientDriverError as e:
            db.log_event("WARN", f"Driver error ({e.reason}): {e}", resource=str(key))
            self._report_degraded(xd, e)
            raise

        self.status_sync.publish(key, self._status(xd, plan), xd.resource_version)
        if plan.converged:
            return Result()
        return Result(requeue_after=self.readiness_poll_s)

    def _execute(self, key: ResourceKey, template: ChildTemplate, plan: RolloutPlan) -> None:
        for child in plan.delete:
            self.driver.delete_child(child.unit_id)
            if child.terminated:
                why = "terminated"
            elif child.revision != template.revision:
                why = "outdated"
            else:
                why = "excess"
            db.log_event("INFO", f"Deleted {why} child {child.unit_id[:12]} ({child.image})", resource=str(key))
        for _ in range(plan.create):
            unit_id = self.driver.create_child(key, template)
            db.log_event("INFO", f"Created child {unit_id[:12]} from image {template.image}", resource=str(key))

    def _status(self, xd: XDeployment, plan: RolloutPlan) -> XDeploymentStatus:
        conds = xd.status.conditions
        reason = PHASE_CONVERGED if plan.converged else plan.phase
        conds = set_condition(
            conds, COND_READY, plan.converged, reason, f"{plan.ready_after}/{plan.target} replicas ready"
        )
        if plan.stalled:
            conds = set_condition(
                conds,
                COND_DEGRADED,
                True,
                "RolloutStalled",
                f"replacement children not ready after {self.ready_timeout_s:g}s",
            )
        else:
            conds = set_condition(conds, COND_DEGRADED, False, "AsExpected")
        conds = set_condition(conds, COND_INVALID_SPEC, False, "Valid")
        return XDeploymentStatus(
            replicas=plan.ready_after,
            updated_replicas=plan.updated_after,
            observed_generation=xd.generation,
            conditions=conds,
        )

    def _reject(self, xd: XDeployment, error: ValidationError) -> Result:
        conds = set_condition(xd.status.conditions, COND_READY, False, "InvalidSpec", str(error))
        conds = set_condition(conds, COND_INVALID_SPEC, True, "InvalidSpec", str(error))
        status = replace(xd.status, observed_generation=xd.generation, conditions=conds)
        if self.status_sync.publish(xd.key, status, xd.resource_version):
            db.log_event("WARN", f"Invalid spec: {error}", resource=str(xd.key))
        return Result(requeue_after=self.invalid_spec_retry_s)

    def _report_degraded(self, xd: XDeployment, error: TransientDriverError) -> None:
        conds = set_condition(xd.status.conditions, COND_DEGRADED, True, error.reason, str(error))
        self.status_sync.publish(xd.key, replace(xd.status, conditions=conds), xd.resource_version)

    def _finalize(self, key: ResourceKey, xd: XDeployment | None) -> Result:
        """Delete every owned child; purge the object once none are left."""
        children = sorted(self.driver.list_children(key), key=lambda c: (c.created_at, c.unit_id))
        if children:
            for child in children:
                self.driver.delete_child(child.unit_id)
            db.log_event("INFO", f"Finalizing: deleted {len(children)} child(ren)", resource=str(key))
            # Confirm on the next pass that the driver really lists none.
            return Result(requeue_after=self.readiness_poll_s)
        if xd is not None and self.store.purge(key):
            db.log_event("INFO", "Finalized and removed", resource=str(key))
        return Result()
