"""Result containers and their on-disk artifacts."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import joblib
import pandas as pd


@dataclass
class DatasetResult:
    """Outputs, evaluation payloads and timings of one dataset's grid."""

    dataset: str
    arguments: dict[str, list[str]]
    alternatives: dict[str, list[Any]]
    end_outputs: dict[str, Any] = field(default_factory=dict)
    evaluation: dict[str, dict[str, Any]] = field(default_factory=dict)
    elapsed_stepwise: dict[str, dict[str, float]] = field(default_factory=dict)
    elapsed_total: dict[str, float] = field(default_factory=dict)

    @property
    def steps(self) -> list[str]:
        return list(self.arguments)

    @property
    def combination_names(self) -> list[str]:
        return list(self.elapsed_total)

    def without_end_outputs(self) -> "DatasetResult":
        return replace(self, end_outputs={})


@dataclass
class AggregatedResult:
    """Cross-dataset evaluation tables and elapsed-time tables."""

    evaluation: dict[str, Any]
    elapsed: dict[str, Any]
    datasets: list[str]
    inconsistencies: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total_elapsed(self) -> pd.DataFrame:
        return self.elapsed["total"]

    @property
    def stepwise_elapsed(self) -> dict[str, pd.DataFrame]:
        return self.elapsed["stepwise"]


def artifact_path(output_prefix: str, name: str) -> Path:
    """Join a plain string prefix (``"out/run1_"``, ``"out/"`` or ``""``) and a file name."""
    return Path(f"{output_prefix}{name}")


def ensure_prefix_dir(output_prefix: str) -> None:
    parent = artifact_path(output_prefix, "_").parent
    parent.mkdir(parents=True, exist_ok=True)


def save_dataset_result(
    result: DatasetResult,
    output_prefix: str = "",
    save_end_results: bool = True,
) -> Path:
    """Persist end outputs (optional) and the evaluation result; return the latter's path."""
    ensure_prefix_dir(output_prefix)
    if save_end_results:
        joblib.dump(result.end_outputs, artifact_path(output_prefix, f"res.{result.dataset}.endOutputs.joblib"))
    path = artifact_path(output_prefix, f"res.{result.dataset}.evaluation.joblib")
    joblib.dump(result.without_end_outputs(), path)
    return path


def load_dataset_result(path: str | Path) -> DatasetResult:
    payload = joblib.load(Path(path))
    if not isinstance(payload, DatasetResult):
        raise ValueError(f"Invalid dataset result payload in {path}.")
    return payload


def load_end_outputs(path: str | Path) -> dict[str, Any]:
    payload = joblib.load(Path(path))
    if not isinstance(payload, dict):
        raise ValueError(f"Invalid end outputs payload in {path}; expected dict.")
    return payload


def save_aggregated_result(result: AggregatedResult, output_prefix: str = "") -> Path:
    ensure_prefix_dir(output_prefix)
    path = artifact_path(output_prefix, "aggregated.joblib")
    joblib.dump(result, path)
    return path


def load_aggregated_result(path: str | Path) -> AggregatedResult:
    """Load an ``aggregated.joblib`` file, or the one under a run's output prefix."""
    path = Path(path)
    if path.is_dir():
        path = path / "aggregated.joblib"
    payload = joblib.load(path)
    if not isinstance(payload, AggregatedResult):
        raise ValueError(f"Invalid aggregated result payload in {path}.")
    return payload


__all__ = [
    "DatasetResult",
    "AggregatedResult",
    "artifact_path",
    "ensure_prefix_dir",
    "save_dataset_result",
    "load_dataset_result",
    "load_end_outputs",
    "save_aggregated_result",
    "load_aggregated_result",
]
