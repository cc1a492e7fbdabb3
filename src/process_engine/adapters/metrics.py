from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from process_engine.contracts import InstanceMetrics, Proposal


class MetricsProvider(Protocol):
    """Supplies live counters for one instance as of call time."""

    def get_metrics(self, instance_id: str) -> InstanceMetrics:
        ...


class ProposalStore(Protocol):
    """Supplies the current proposal collection for one instance."""

    def get_proposals(self, instance_id: str) -> Sequence[Proposal]:
        ...


@dataclass
class StaticMetricsProvider:
    metrics: dict[str, InstanceMetrics] = field(default_factory=dict)
    default: InstanceMetrics | None = None

    def get_metrics(self, instance_id: str) -> InstanceMetrics:
        found = self.metrics.get(instance_id, self.default)
        if found is None:
            raise KeyError(f"No metrics recorded for instance {instance_id}")
        return found


@dataclass
class InMemoryProposalStore:
    proposals: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def add(self, instance_id: str, proposal: Mapping[str, Any]) -> None:
        self.proposals.setdefault(instance_id, []).append(dict(proposal))

    def get_proposals(self, instance_id: str) -> Sequence[Proposal]:
        return list(self.proposals.get(instance_id, []))
