"""Run a pipeline over every parameter combination on several datasets."""

from __future__ import annotations

import json
import logging
import platform
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import joblib
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .aggregate import aggregate_pipeline_results
from .combinations import (
    Constraint,
    build_comb_matrix,
    check_comb_matrix,
    check_pipeline_arguments,
    format_value,
)
from .definition import PipelineDefinition
from .errors import ConfigurationError, PipelineRunError, StepExecutionError
from .registry import FunctionRegistry
from .results import (
    AggregatedResult,
    artifact_path,
    ensure_prefix_dir,
    save_aggregated_result,
    save_dataset_result,
)
from .scheduler import run_combinations

_LOGGER = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True)
class _DatasetJob:
    name: str
    dataset: Any
    definition: PipelineDefinition
    alternatives: dict[str, list[Any]]
    comb: pd.DataFrame
    registry: FunctionRegistry | None
    output_prefix: str
    save_end_results: bool
    debug: bool


@dataclass(frozen=True)
class _DatasetOutcome:
    name: str
    path: Path | None = None
    error: BaseException | None = None


def normalize_datasets(datasets: Mapping[str, Any] | Sequence[Any]) -> dict[str, Any]:
    """Name unnamed datasets and check that names are usable in file names."""
    if isinstance(datasets, Mapping):
        named = {str(name): value for name, value in datasets.items()}
    elif isinstance(datasets, (str, Path)):
        named = {"dataset1": datasets}
    else:
        named = {f"dataset{idx}": value for idx, value in enumerate(datasets, start=1)}
    if not named:
        raise ConfigurationError("At least one dataset is required.")
    for name in named:
        if not name:
            raise ConfigurationError("Dataset names should not be empty.")
        if _WHITESPACE.search(name):
            raise ConfigurationError(f"Dataset names should not have spaces: {name!r}")
        if "." in name:
            _LOGGER.warning(
                "It is recommended not to use dots ('.') in dataset names to facilitate "
                "browsing aggregated results: %s",
                name,
            )
    return named


def _execute_dataset(job: _DatasetJob) -> Path:
    try:
        dataset = job.definition.initiation(job.dataset)
    except Exception as exc:
        error = StepExecutionError(job.name, {}, "initiation", exc)
        _LOGGER.error("%s", error)
        raise error from exc
    result = run_combinations(
        job.name,
        dataset,
        job.definition,
        job.alternatives,
        job.comb,
        registry=job.registry,
        debug=job.debug,
        dump_prefix=job.output_prefix if job.debug else None,
    )
    del dataset
    return save_dataset_result(result, job.output_prefix, job.save_end_results)


def _execute_dataset_isolated(job: _DatasetJob) -> _DatasetOutcome:
    # workers report failures instead of raising so that every failing dataset is collected
    try:
        return _DatasetOutcome(name=job.name, path=_execute_dataset(job))
    except StepExecutionError as exc:
        return _DatasetOutcome(name=job.name, error=exc)
    except Exception as exc:
        _LOGGER.error("Dataset %s failed outside of its steps: %s", job.name, exc)
        return _DatasetOutcome(name=job.name, error=StepExecutionError(job.name, {}, "worker", exc))


def _callable_name(function: Any) -> str:
    module = getattr(function, "__module__", None) or "?"
    qualname = getattr(function, "__qualname__", None) or repr(function)
    return f"{module}.{qualname}"


def _library_versions() -> dict[str, str]:
    return {
        "python": platform.python_version(),
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "joblib": joblib.__version__,
    }


def build_run_manifest(
    definition: PipelineDefinition,
    alternatives: Mapping[str, Sequence[Any]],
    comb: pd.DataFrame,
    registry: FunctionRegistry | None,
    call: Mapping[str, Any],
) -> dict[str, Any]:
    """Describe a run: pipeline, resolved alternatives, call parameters and environment."""
    resolved_functions: dict[str, dict[str, str]] = {}
    for param, values in alternatives.items():
        for value in values:
            target = registry.resolve(value) if registry is not None else value
            if callable(target):
                resolved_functions.setdefault(param, {})[format_value(value)] = _callable_name(target)
    return {
        "created_at": datetime.now(timezone.utc).isoformat(),
        "pipeline": {
            "steps": definition.steps,
            "arguments": definition.arguments,
            "functions": {step: _callable_name(definition.step_function(step)) for step in definition.steps},
            "evaluation": {
                step: _callable_name(definition.evaluation_function(step))
                for step in definition.steps
                if definition.evaluation_function(step) is not None
            },
            "descriptions": {
                step: definition.description(step)
                for step in definition.steps
                if definition.description(step)
            },
            "summary": definition.summary(),
        },
        "alternatives": {param: [format_value(value) for value in values] for param, values in alternatives.items()},
        "resolved_functions": resolved_functions,
        "n_combinations": int(len(comb)),
        "call": dict(call),
        "session": _library_versions(),
    }


def run_pipeline(
    datasets: Mapping[str, Any] | Sequence[Any],
    alternatives: Mapping[str, Any] | None,
    pipeline: PipelineDefinition | Mapping[str, Any],
    comb: pd.DataFrame | np.ndarray | Sequence[Sequence[int]] | None = None,
    output_prefix: str = "",
    n_jobs: int | None = None,
    save_end_results: bool = True,
    debug: bool = False,
    *,
    registry: FunctionRegistry | Mapping[str, Any] | None = None,
    constraints: Iterable[Constraint] | None = None,
    backend: str = "loky",
    logger: logging.Logger | None = None,
) -> AggregatedResult:
    """Run ``pipeline`` with every combination of ``alternatives`` on each dataset.

    Datasets run in parallel (up to ``n_jobs`` workers, default one per
    dataset) unless ``debug`` is set, ``n_jobs <= 1`` or there is a single
    dataset. Per-dataset results, the run manifest and the aggregated result
    are written under ``output_prefix``. Any failing dataset makes the call
    raise; under parallel execution every failure is collected into a
    ``PipelineRunError`` whose ``partial`` holds the aggregate of the
    datasets that succeeded.
    """
    logger = logger or _LOGGER
    definition = pipeline if isinstance(pipeline, PipelineDefinition) else PipelineDefinition(pipeline)
    if registry is not None and not isinstance(registry, FunctionRegistry):
        registry = FunctionRegistry(registry)
    resolved = check_pipeline_arguments(alternatives, definition)
    named = normalize_datasets(datasets)
    if comb is None:
        matrix = build_comb_matrix(resolved, constraints=constraints)
    else:
        matrix = check_comb_matrix(comb, resolved)
    if n_jobs is None:
        n_jobs = len(named)

    if output_prefix:
        ensure_prefix_dir(output_prefix)

    jobs = [
        _DatasetJob(
            name=name,
            dataset=value,
            definition=definition,
            alternatives=resolved,
            comb=matrix,
            registry=registry,
            output_prefix=output_prefix,
            save_end_results=save_end_results,
            debug=debug,
        )
        for name, value in named.items()
    ]

    result_files: dict[str, Path] = {}
    failures: dict[str, BaseException] = {}
    if not debug and n_jobs > 1 and len(jobs) > 1:
        n_workers = min(n_jobs, len(jobs))
        logger.info(
            "Running %s pipeline settings on %s datasets using %s workers",
            len(matrix),
            len(jobs),
            n_workers,
        )
        outcomes = Parallel(n_jobs=n_workers, backend=backend)(
            delayed(_execute_dataset_isolated)(job) for job in jobs
        )
        for outcome in outcomes:
            if outcome.error is not None:
                failures[outcome.name] = outcome.error
            else:
                result_files[outcome.name] = outcome.path
    else:
        n_jobs = 1
        if debug:
            logger.info("Running in debug mode (single thread)")
        logger.info("Running %s pipeline settings on %s datasets", len(matrix), len(jobs))
        for job in jobs:
            result_files[job.name] = _execute_dataset(job)

    logger.info("Finished running on all datasets, now aggregating results...")
    manifest = build_run_manifest(
        definition,
        resolved,
        matrix,
        registry,
        call={
            "datasets": list(named),
            "output_prefix": output_prefix,
            "n_jobs": n_jobs,
            "save_end_results": save_end_results,
            "debug": debug,
            "backend": backend,
            "custom_comb": comb is not None,
        },
    )
    manifest_path = artifact_path(output_prefix, "runPipelineInfo.json")
    manifest_path.write_text(json.dumps(manifest, indent=2, default=str), encoding="utf-8")

    if failures:
        partial = aggregate_pipeline_results(result_files, definition) if result_files else None
        for name in failures:
            logger.error("Dataset %s failed", name)
        raise PipelineRunError(failures, partial=partial)

    aggregated = aggregate_pipeline_results(result_files, definition)
    aggregated.metadata["manifest"] = str(manifest_path)
    save_aggregated_result(aggregated, output_prefix)
    return aggregated


__all__ = ["run_pipeline", "normalize_datasets", "build_run_manifest"]
