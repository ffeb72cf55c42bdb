"""Merge per-dataset results into cross-dataset tables."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import pandas as pd

from .combinations import format_value, parse_combination_name
from .definition import PipelineDefinition
from .results import AggregatedResult, DatasetResult, load_dataset_result

_LOGGER = logging.getLogger(__name__)


def _label_lookup(result: DatasetResult) -> dict[str, dict[str, Any]]:
    lookup: dict[str, dict[str, Any]] = {}
    for param, values in result.alternatives.items():
        lookup[param] = {format_value(value): value for value in values}
    return lookup


def _decode(name: str, lookup: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    return {
        param: lookup.get(param, {}).get(text, text)
        for param, text in parse_combination_name(name).items()
    }


def payload_frame(payload: Any) -> pd.DataFrame:
    """Turn one evaluation payload into table rows."""
    if isinstance(payload, pd.DataFrame):
        return payload.reset_index(drop=isinstance(payload.index, pd.RangeIndex))
    if isinstance(payload, pd.Series):
        return payload.to_frame().T.reset_index(drop=True)
    if isinstance(payload, Mapping):
        return pd.DataFrame([dict(payload)])
    return pd.DataFrame({"value": [payload]})


def _tagged(frame: pd.DataFrame, meta: dict[str, Any]) -> pd.DataFrame:
    clashes = {col: f"{col}_payload" for col in frame.columns if col in meta}
    if clashes:
        frame = frame.rename(columns=clashes)
    tags = pd.DataFrame([meta] * len(frame), index=frame.index, columns=list(meta))
    return pd.concat([tags, frame], axis=1)


def _elapsed_frame(
    timings: Mapping[str, Mapping[str, float]],
    lookups: Mapping[str, Mapping[str, Mapping[str, Any]]],
) -> pd.DataFrame:
    rows: list[dict[str, Any]] = []
    for dataset, per_name in timings.items():
        for name, seconds in per_name.items():
            rows.append({"dataset": dataset, **_decode(name, lookups[dataset]), "elapsed": float(seconds)})
    if not rows:
        return pd.DataFrame(columns=["dataset", "elapsed"])
    frame = pd.DataFrame(rows)
    ordered = ["dataset", *[col for col in frame.columns if col not in {"dataset", "elapsed"}], "elapsed"]
    return frame[ordered]


def default_step_aggregation(
    payloads: Mapping[str, Mapping[str, Any]],
    lookups: Mapping[str, Mapping[str, Mapping[str, Any]]] | None = None,
) -> pd.DataFrame:
    """Row-concatenate payloads, tagging each row with its dataset and parameters."""
    frames: list[pd.DataFrame] = []
    for dataset, per_name in payloads.items():
        lookup = (lookups or {}).get(dataset, {})
        for name, payload in per_name.items():
            meta = {"dataset": dataset, **_decode(name, lookup)}
            frames.append(_tagged(payload_frame(payload), meta))
    if not frames:
        return pd.DataFrame(columns=["dataset"])
    return pd.concat(frames, ignore_index=True, sort=False)


def _inconsistencies(label: str, names: Mapping[str, set[str]]) -> list[str]:
    union: set[str] = set().union(*names.values()) if names else set()
    messages: list[str] = []
    for dataset, present in names.items():
        missing = union - present
        if missing:
            messages.append(
                f"{label}: dataset `{dataset}` lacks {len(missing)} combination(s) present in other "
                f"datasets, e.g. {sorted(missing)[:3]}"
            )
    return messages


def aggregate_pipeline_results(
    results: Mapping[str, DatasetResult | str | Path],
    definition: PipelineDefinition | None = None,
) -> AggregatedResult:
    """Combine the evaluation payloads and timings of several datasets.

    ``results`` maps dataset names to results or to their persisted files.
    Steps with an aggregation function in ``definition`` get the raw payloads
    ``{dataset: {combination name: payload}}``; other steps are merged into
    one long table. Datasets whose combination names differ are reported in
    ``inconsistencies`` and merged on the union.
    Parameter columns hold plain candidate values as given and other
    candidates, such as functions, by their label.
    """
    loaded: dict[str, DatasetResult] = {}
    for dataset, item in results.items():
        loaded[dataset] = item if isinstance(item, DatasetResult) else load_dataset_result(item)
    if not loaded:
        raise ValueError("No dataset results to aggregate.")

    first = next(iter(loaded.values()))
    steps = definition.steps if definition is not None else first.steps
    lookups = {dataset: _label_lookup(result) for dataset, result in loaded.items()}

    inconsistencies = _inconsistencies(
        "total", {dataset: set(result.elapsed_total) for dataset, result in loaded.items()}
    )
    for step in steps:
        inconsistencies.extend(
            _inconsistencies(
                f"evaluation[{step}]",
                {dataset: set(result.evaluation.get(step, {})) for dataset, result in loaded.items()},
            )
        )
    for message in inconsistencies:
        _LOGGER.warning("Inconsistent results across datasets | %s", message)

    evaluation: dict[str, Any] = {}
    for step in steps:
        payloads = {dataset: result.evaluation.get(step, {}) for dataset, result in loaded.items()}
        if not any(payloads.values()):
            continue
        custom = definition.aggregation_function(step) if definition is not None else None
        if custom is not None:
            evaluation[step] = custom(payloads)
        else:
            evaluation[step] = default_step_aggregation(payloads, lookups)

    elapsed = {
        "stepwise": {
            step: _elapsed_frame(
                {dataset: result.elapsed_stepwise.get(step, {}) for dataset, result in loaded.items()},
                lookups,
            )
            for step in steps
        },
        "total": _elapsed_frame(
            {dataset: result.elapsed_total for dataset, result in loaded.items()}, lookups
        ),
    }
    metadata: dict[str, Any] = {"steps": list(steps), "arguments": dict(first.arguments)}
    if definition is not None:
        metadata["pipeline"] = definition.summary()
    return AggregatedResult(
        evaluation=evaluation,
        elapsed=elapsed,
        datasets=list(loaded),
        inconsistencies=inconsistencies,
        metadata=metadata,
    )


__all__ = ["aggregate_pipeline_results", "default_step_aggregation", "payload_frame"]
