from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

from process_engine._compat import parse_iso
from process_engine.config import configure_logging, get_settings
from process_engine.contracts import DecisionSchemaDefinition, InstanceMetrics, ProcessInstance
from process_engine.documents import parse_instance, parse_schema
from process_engine.errors import ConfigurationError, ProcessEngineError
from process_engine.lifecycle import advance_phase, create_instance, launch
from process_engine.templates import get_template


@dataclass(frozen=True)
class StepExecution:
    step_index: int
    from_state_id: str
    to_state_id: str
    outcome: str
    failed_rules: list[dict[str, str]] = field(default_factory=list)
    selected_proposal_ids: Optional[list[str]] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ScenarioExecution:
    scenario_id: str
    source: str
    steps: list[StepExecution]
    final_state_id: str
    final_version: int
    results: Optional[dict[str, Any]] = None


def load_scenario_packs(packs_dir: Path) -> list[dict[str, Any]]:
    packs: list[dict[str, Any]] = []
    for path in sorted(packs_dir.glob("*.json")):
        payload = json.loads(path.read_text(encoding="utf-8"))
        payload["_source"] = str(path)
        packs.append(payload)
    return packs


def _schema_for(pack: dict[str, Any]) -> DecisionSchemaDefinition:
    if "schema" in pack:
        return parse_schema(pack["schema"])
    return get_template(str(pack.get("template", "simple")))


def _launched_at(pack: dict[str, Any]) -> str:
    """``launched_at`` or, failing that, the first step's ``now``."""
    if pack.get("launched_at"):
        return str(pack["launched_at"])
    steps = pack.get("steps") or []
    first_now = (steps[0].get("metrics") or {}).get("now") if steps else None
    if not first_now:
        raise ConfigurationError(
            f"Scenario {pack.get('scenario_id', '?')} needs launched_at or a first step with metrics.now"
        )
    return str(first_now)


def _instance_for(pack: dict[str, Any], schema: DecisionSchemaDefinition) -> ProcessInstance:
    if "instance" in pack:
        return parse_instance(pack["instance"])
    instance = create_instance(
        schema,
        instance_id=str(pack.get("instance_id", f"{pack.get('scenario_id', 'scenario')}:instance")),
        field_values=pack.get("field_values") or {},
    )
    return launch(instance, now=parse_iso(_launched_at(pack)))


def run_scenario(pack: dict[str, Any]) -> ScenarioExecution:
    settings = get_settings()
    schema = _schema_for(pack)
    instance = _instance_for(pack, schema)
    proposals = list(pack.get("proposals", []))
    steps: list[StepExecution] = []

    for step_index, step in enumerate(pack.get("steps", []), start=1):
        to_state_id = str(step["to"])
        from_state_id = instance.current_state_id
        try:
            metrics = InstanceMetrics.model_validate(step.get("metrics") or {})
            outcome = advance_phase(
                instance,
                schema,
                to_state_id,
                metrics,
                proposals=proposals,
                transition_data=step.get("transition_data"),
                settings=settings,
            )
        except (ProcessEngineError, ValueError) as exc:
            steps.append(StepExecution(step_index, from_state_id, to_state_id, "error", error=str(exc)))
            continue

        selected = None
        if outcome.advanced:
            entry = outcome.instance.instance_data.state_data.get(to_state_id)
            selected = entry.selected_proposal_ids if entry is not None else None
        steps.append(
            StepExecution(
                step_index=step_index,
                from_state_id=from_state_id,
                to_state_id=to_state_id,
                outcome="advanced" if outcome.advanced else "blocked",
                failed_rules=[rule.to_wire() for rule in outcome.failed_rules],
                selected_proposal_ids=selected,
            )
        )
        instance = outcome.instance

    results = instance.instance_data.results
    return ScenarioExecution(
        scenario_id=str(pack.get("scenario_id", Path(pack.get("_source", "scenario")).stem)),
        source=str(pack.get("_source", "")),
        steps=steps,
        final_state_id=instance.current_state_id,
        final_version=instance.version,
        results=results.to_wire() if results is not None else None,
    )


def summarize(executions: list[ScenarioExecution]) -> dict[str, int]:
    counts = {"scenarios": len(executions), "steps": 0, "advanced": 0, "blocked": 0, "errors": 0}
    for execution in executions:
        for step in execution.steps:
            counts["steps"] += 1
            if step.outcome == "advanced":
                counts["advanced"] += 1
            elif step.outcome == "blocked":
                counts["blocked"] += 1
            else:
                counts["errors"] += 1
    return counts


def run_packs(packs_dir: Path) -> dict[str, Any]:
    executions = [run_scenario(pack) for pack in load_scenario_packs(packs_dir)]
    return {
        "scenarios": [
            {
                "scenario_id": execution.scenario_id,
                "source": execution.source,
                "final_state_id": execution.final_state_id,
                "final_version": execution.final_version,
                "results": execution.results,
                "steps": [
                    {
                        "step_index": step.step_index,
                        "from": step.from_state_id,
                        "to": step.to_state_id,
                        "outcome": step.outcome,
                        "failed_rules": step.failed_rules,
                        "selected_proposal_ids": step.selected_proposal_ids,
                        "error": step.error,
                    }
                    for step in execution.steps
                ],
            }
            for execution in executions
        ],
        "summary": summarize(executions),
    }


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run decision-process scenario packs and print a JSON report.")
    parser.add_argument("--packs", required=True, help="Directory containing *.json scenario packs.")
    parser.add_argument("--output", help="Optional path to also write the JSON report to.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging()
    report = run_packs(Path(args.packs))
    text = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text + "\n", encoding="utf-8")
    sys.stdout.write(text + "\n")
    return 1 if report["summary"]["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
