from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from process_engine.contracts import ProcessInstance
from process_engine.errors import ConcurrentModificationError

logger = logging.getLogger(__name__)


@dataclass
class InMemoryInstanceStore:
    """
    Reference persistence collaborator with optimistic versioning.

    ``compare_and_swap`` only writes when the stored version still equals the
    version the caller read, so two advances computed from the same snapshot
    cannot both commit.
    """

    _instances: dict[str, ProcessInstance] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def put(self, instance: ProcessInstance) -> None:
        with self._lock:
            self._instances[instance.id] = instance

    def get(self, instance_id: str) -> ProcessInstance:
        with self._lock:
            try:
                return self._instances[instance_id]
            except KeyError:
                raise KeyError(f"Unknown process instance {instance_id}") from None

    def find(self, instance_id: str) -> Optional[ProcessInstance]:
        with self._lock:
            return self._instances.get(instance_id)

    def all(self) -> list[ProcessInstance]:
        with self._lock:
            return list(self._instances.values())

    def compare_and_swap(self, updated: ProcessInstance, *, expected_version: int) -> ProcessInstance:
        with self._lock:
            current = self._instances.get(updated.id)
            actual = current.version if current is not None else -1
            if actual != expected_version:
                logger.debug("stale write for %s: expected v%d, found v%d", updated.id, expected_version, actual)
                raise ConcurrentModificationError(updated.id, expected_version, actual)
            self._instances[updated.id] = updated
            return updated
