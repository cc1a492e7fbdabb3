from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, TypedDict

import pytest
from typing_extensions import Unpack

from process_engine._compat import UTC
from process_engine.config import EngineSettings
from process_engine.contracts import (
    DecisionSchemaDefinition,
    InstanceData,
    InstanceMetrics,
    ProcessInstance,
    ProcessStatus,
    StateEntry,
)
from process_engine.documents import parse_schema

FIXED_NOW = datetime(2026, 2, 11, 12, 0, tzinfo=UTC)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(_env_file=None)


@pytest.fixture
def make_schema() -> Callable[..., DecisionSchemaDefinition]:
    def _make_schema(
        *,
        schema_id: str = "test-process",
        phases: list[dict[str, Any]] | None = None,
        transitions: list[dict[str, Any]] | None = None,
    ) -> DecisionSchemaDefinition:
        doc: dict[str, Any] = {
            "id": schema_id,
            "version": "1.0.0",
            "name": "Test process",
            "phases": phases
            or [
                {"id": "submission", "name": "Submission", "rules": {"proposals": {"submit": True}}},
                {"id": "voting", "name": "Voting", "rules": {"voting": {"submit": True}}},
                {"id": "results", "name": "Results"},
            ],
        }
        if transitions is not None:
            doc["transitions"] = transitions
        return parse_schema(doc)

    return _make_schema


@pytest.fixture
def make_instance() -> Callable[..., ProcessInstance]:
    def _make_instance(
        *,
        instance_id: str = "inst:test",
        process_id: str = "test-process",
        status: ProcessStatus = ProcessStatus.ACTIVE,
        current_state_id: str = "submission",
        entered_at: str | None = "2026-02-11T00:00:00+00:00",
        field_values: dict[str, Any] | None = None,
        version: int = 0,
    ) -> ProcessInstance:
        state_data = {current_state_id: StateEntry(entered_at=entered_at)} if entered_at else {}
        return ProcessInstance(
            id=instance_id,
            process_id=process_id,
            status=status,
            version=version,
            instance_data=InstanceData(
                current_state_id=current_state_id,
                field_values=field_values or {},
                state_data=state_data,
            ),
        )

    return _make_instance


@pytest.fixture
def make_metrics() -> Callable[..., InstanceMetrics]:
    class _MetricsKwargs(TypedDict, total=False):
        proposal_count: int
        participation_count: int
        approval_rate: float | None
        field_values: dict[str, Any]
        now: datetime

    def _make_metrics(**kwargs: Unpack[_MetricsKwargs]) -> InstanceMetrics:
        kwargs.setdefault("now", FIXED_NOW)
        return InstanceMetrics(**kwargs)

    return _make_metrics


@pytest.fixture
def make_proposals() -> Callable[..., list[dict[str, Any]]]:
    def _make_proposals(likes: list[int | None]) -> list[dict[str, Any]]:
        proposals: list[dict[str, Any]] = []
        for index, count in enumerate(likes, start=1):
            vote_data = {} if count is None else {"likesCount": count}
            proposals.append({"id": f"p{index}", "title": f"Proposal {index}", "voteData": vote_data})
        return proposals

    return _make_proposals
