from __future__ import annotations

from .errors import NotFoundError
from .models import ResourceKey, XDeploymentStatus
from .store import XDeploymentStore


class StatusSynchronizer:
    """Writes computed status back to the store.

    The write is compare-and-set against the resource version the reconciler
    based its computation on. A ConflictError from the store means the spec
    (or status) moved underneath us; the caller re-runs reconciliation
    instead of overwriting.
    """

    def __init__(self, store: XDeploymentStore):
        self.store = store

    def publish(self, key: ResourceKey, status: XDeploymentStatus, expected_version: int) -> bool:
        """Return True if a write happened, False if the stored status already matched."""
        current = self.store.get(key)
        if current is None:
            raise NotFoundError(f"{key} not found")
        if current.status == status:
            return False
        self.store.update_status(key, status, expected_version)
        return True
