from __future__ import annotations

import importlib.metadata
import importlib.util
from pathlib import Path

import decisionflow
from process_engine.lifecycle import advance_phase
from process_engine.pipeline import run_pipeline

ROOT = Path(__file__).resolve().parents[1]
MODULE_PATH = ROOT / "src" / "decisionflow" / "__init__.py"


def test_decisionflow_version_falls_back_when_distribution_is_absent(monkeypatch) -> None:
    spec = importlib.util.spec_from_file_location("decisionflow_init_under_test", MODULE_PATH)
    assert spec and spec.loader

    module = importlib.util.module_from_spec(spec)

    def _raise_not_found(_: str) -> str:
        raise importlib.metadata.PackageNotFoundError

    monkeypatch.setattr(importlib.metadata, "version", _raise_not_found)

    spec.loader.exec_module(module)

    assert module.__version__ == "0+unknown"


def test_public_api_reexports_engine_operations() -> None:
    assert decisionflow.advance_phase is advance_phase
    assert decisionflow.run_pipeline is run_pipeline
    assert all(hasattr(decisionflow, name) for name in decisionflow.__all__)
