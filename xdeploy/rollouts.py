from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from .driver import ChildWorkloadUnit, Readiness

PHASE_CONVERGED = "Converged"
PHASE_SCALING_UP = "ScalingUp"
PHASE_SCALING_DOWN = "ScalingDown"
PHASE_ROLLING = "RollingUpdate"
PHASE_AWAITING_READY = "AwaitingReadiness"


@dataclass
class RolloutPlan:
    """What one reconciliation pass should do.

    ``delete`` is executed before ``create``. ``ready_after`` and
    ``updated_after`` describe the children that remain once the plan ran
    (new children count as not ready).
    """

    target: int
    create: int = 0
    delete: list[ChildWorkloadUnit] = field(default_factory=list)
    phase: str = PHASE_CONVERGED
    stalled: bool = False
    ready_after: int = 0
    updated_after: int = 0

    @property
    def converged(self) -> bool:
        return self.phase == PHASE_CONVERGED and not self.create and not self.delete

    @property
    def has_actions(self) -> bool:
        return bool(self.create or self.delete)


def _oldest_first(units: list[ChildWorkloadUnit]) -> list[ChildWorkloadUnit]:
    return sorted(units, key=lambda u: (u.created_at, u.unit_id))


def plan_rollout(
    target: int,
    revision: str,
    children: list[ChildWorkloadUnit],
    readiness: Mapping[str, Readiness],
    now: float,
    ready_timeout_s: float,
) -> RolloutPlan:
    """Compute the next step toward ``target`` children on ``revision``.

    Scaling deletes the oldest children first. A template change is rolled out
    with one surge child: an outdated child is removed only once its
    replacement is ready or has been warming up longer than
    ``ready_timeout_s``, and never when that would leave more than one replica
    unavailable.
    """
    plan = RolloutPlan(target=target)

    # Self-healing: dead children are garbage and count as missing.
    plan.delete.extend(_oldest_first([c for c in children if c.terminated]))
    live = _oldest_first([c for c in children if not c.terminated])

    def is_ready(c: ChildWorkloadUnit) -> bool:
        return readiness.get(c.unit_id) is Readiness.READY

    current = [c for c in live if c.revision == revision]
    outdated = [c for c in live if c.revision != revision]

    if target <= 0:
        plan.delete.extend(live)
        plan.phase = PHASE_SCALING_DOWN if live else PHASE_CONVERGED
        return plan

    if not outdated:
        if len(current) < target:
            plan.create = target - len(current)
            plan.phase = PHASE_SCALING_UP
        elif len(current) > target:
            plan.delete.extend(current[: len(current) - target])
            current = current[len(current) - target :]
            plan.phase = PHASE_SCALING_DOWN
        elif not all(is_ready(c) for c in current):
            plan.phase = PHASE_AWAITING_READY
        plan.ready_after = sum(1 for c in current if is_ready(c))
        plan.updated_after = len(current) + plan.create
        return plan

    plan.phase = PHASE_ROLLING

    # Spec went back to a template some children already run: trim those first.
    if len(current) > target:
        plan.delete.extend(current[: len(current) - target])
        current = current[len(current) - target :]

    warming = [c for c in current if not is_ready(c) and now - c.created_at < ready_timeout_s]
    expired = [c for c in current if not is_ready(c) and now - c.created_at >= ready_timeout_s]
    min_available = target - 1 if target > 1 else 0

    ready_count = sum(1 for c in current + outdated if is_ready(c))
    total = len(current) + len(outdated)
    surplus = total - target

    # Unready outdated children cost no availability; go for them first.
    candidates = [c for c in outdated if not is_ready(c)] + [c for c in outdated if is_ready(c)]
    remaining_outdated = list(outdated)
    blocked = False
    for old in candidates:
        if surplus <= 0:
            break
        if is_ready(old):
            if warming or ready_count - 1 < min_available:
                blocked = True
                break
            ready_count -= 1
        plan.delete.append(old)
        remaining_outdated.remove(old)
        surplus -= 1
        total -= 1

    creatable = min(target - len(current), target + 1 - total)
    if warming:
        # One replacement in flight at a time; only refill missing replicas.
        creatable = min(creatable, target - total)
    plan.create = max(0, creatable)

    if blocked and expired and not warming and plan.create == 0:
        plan.stalled = True

    plan.ready_after = ready_count
    plan.updated_after = len(current) + plan.create
    return plan
