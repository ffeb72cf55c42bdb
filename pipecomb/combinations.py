"""Parameter grids, combination names and pre-flight validation."""

from __future__ import annotations

from itertools import product
from typing import Any, Callable, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from .definition import PipelineDefinition, as_candidates
from .errors import ConfigurationError

RESERVED_CHARACTERS = (";", "=")
PAIR_SEPARATOR = ";"
VALUE_SEPARATOR = "="

Constraint = Callable[[dict[str, Any]], bool]


def format_value(value: Any) -> str:
    """Text used for a candidate value inside combination names."""
    if callable(value):
        return getattr(value, "__name__", repr(value))
    return str(value)


def combination_name(names: Sequence[str], values: Sequence[Any]) -> str:
    """Encode parameter assignments as ``a=1;b=x``."""
    return PAIR_SEPARATOR.join(
        f"{name}{VALUE_SEPARATOR}{format_value(value)}" for name, value in zip(names, values)
    )


def parse_combination_name(name: str) -> dict[str, str]:
    """Decode a combination name back into parameter -> value text."""
    if not name:
        return {}
    parsed: dict[str, str] = {}
    for pair in name.split(PAIR_SEPARATOR):
        key, sep, value = pair.partition(VALUE_SEPARATOR)
        if not sep:
            raise ValueError(f"Malformed combination name: {name!r}")
        parsed[key] = value
    return parsed


def _has_reserved(text: str) -> bool:
    return any(char in text for char in RESERVED_CHARACTERS)


def check_pipeline_arguments(
    alternatives: Mapping[str, Any] | None,
    definition: PipelineDefinition,
) -> dict[str, list[Any]]:
    """Resolve the candidate values of every pipeline parameter.

    Defaults of the definition are overridden by ``alternatives``; the result
    is ordered by step, then by parameter declaration order.
    """
    alternatives = dict(alternatives or {})
    bad_names = sorted(name for name in alternatives if _has_reserved(str(name)))
    if bad_names:
        raise ConfigurationError(
            f"Some of the pipeline arguments contain unaccepted characters (';' or '='): {bad_names}"
        )
    declared = definition.parameters
    unknown = sorted(set(alternatives) - set(declared))
    if unknown:
        raise ConfigurationError(f"`alternatives` contains parameters unknown to the pipeline: {unknown}")

    merged = definition.default_arguments
    for name, values in alternatives.items():
        merged[name] = as_candidates(values)

    missing = [param for param in declared if param not in merged]
    if missing:
        raise ConfigurationError(
            "`alternatives` should have entries for the following parameters defined in the "
            f"pipeline: {', '.join(missing)}"
        )

    resolved: dict[str, list[Any]] = {}
    for param in declared:
        values = merged[param]
        if not values:
            raise ConfigurationError(f"Parameter `{param}` should contain at least one option.")
        labels = [format_value(value) for value in values]
        bad_values = [label for label in labels if _has_reserved(label)]
        if bad_values:
            raise ConfigurationError(
                f"Alternative values of `{param}` contain unaccepted characters (';' or '='): {bad_values}"
            )
        if len(set(labels)) != len(labels):
            raise ConfigurationError(f"Alternative values of `{param}` are not distinguishable: {labels}")
        resolved[param] = list(values)
    return resolved


def _decode_row(row: Sequence[int], alternatives: Mapping[str, Sequence[Any]]) -> dict[str, Any]:
    return {name: alternatives[name][int(idx) - 1] for name, idx in zip(alternatives, row)}


def build_comb_matrix(
    alternatives: Mapping[str, Sequence[Any]],
    return_indexes: bool = True,
    constraints: Iterable[Constraint] | None = None,
) -> pd.DataFrame:
    """Enumerate every combination, varying the last parameters fastest.

    Rows are 1-based indices into each parameter's candidates (or the values
    themselves when ``return_indexes`` is false). ``constraints`` are
    predicates over the decoded parameter dict; failing rows are dropped.
    """
    columns = list(alternatives)
    ranges = [range(1, len(alternatives[name]) + 1) for name in columns]
    rules = list(constraints or [])
    rows = [
        row
        for row in product(*ranges)
        if all(rule(_decode_row(row, alternatives)) for rule in rules)
    ]
    if not rows:
        raise ConfigurationError("No parameter combination satisfies the given constraints.")
    matrix = pd.DataFrame(
        np.asarray(rows, dtype=np.int64).reshape(len(rows), len(columns)), columns=columns
    )
    if return_indexes:
        return matrix
    return decode_comb_matrix(matrix, alternatives)


def check_comb_matrix(
    comb: pd.DataFrame | np.ndarray | Sequence[Sequence[int]],
    alternatives: Mapping[str, Sequence[Any]],
    drop_duplicates: bool = True,
) -> pd.DataFrame:
    """Validate a caller-supplied index matrix against the alternatives."""
    columns = list(alternatives)
    if isinstance(comb, pd.DataFrame):
        frame = comb.copy()
        names = [str(col) for col in frame.columns]
        unknown = sorted(set(names) - set(columns))
        if unknown:
            raise ConfigurationError(f"Combination matrix has unknown columns: {unknown}")
        missing = [col for col in columns if col not in names]
        if missing:
            raise ConfigurationError(f"Combination matrix is missing columns: {missing}")
        frame.columns = names
        frame = frame[columns]
    else:
        array = np.asarray(comb)
        if array.ndim != 2 or array.shape[1] != len(columns):
            raise ConfigurationError(
                f"Combination matrix should have one column per parameter ({len(columns)})."
            )
        frame = pd.DataFrame(array, columns=columns)

    if len(frame.index) == 0:
        raise ConfigurationError("Combination matrix has no rows.")

    values = frame.to_numpy()
    try:
        as_float = values.astype(float)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("Combination matrix must contain integer indices.") from exc
    if np.isnan(as_float).any() or not np.equal(np.mod(as_float, 1), 0).all():
        raise ConfigurationError("Combination matrix must contain integer indices.")
    for pos, name in enumerate(columns):
        column = as_float[:, pos]
        upper = len(alternatives[name])
        if (column < 1).any() or (column > upper).any():
            raise ConfigurationError(f"Indices of column `{name}` must be within [1, {upper}].")

    checked = pd.DataFrame(as_float.astype(np.int64), columns=columns)
    if drop_duplicates and columns:
        checked = checked.drop_duplicates()
    return checked.reset_index(drop=True)


def decode_comb_matrix(comb: pd.DataFrame, alternatives: Mapping[str, Sequence[Any]]) -> pd.DataFrame:
    decoded = {
        name: [alternatives[name][int(idx) - 1] for idx in comb[name]] for name in alternatives
    }
    return pd.DataFrame(decoded, index=comb.index, columns=list(alternatives))


def comb_matrix_names(comb: pd.DataFrame, alternatives: Mapping[str, Sequence[Any]]) -> list[str]:
    """Full combination name of every row."""
    names = list(alternatives)
    return [
        combination_name(names, [alternatives[name][int(idx) - 1] for name, idx in zip(names, row)])
        for row in comb[names].itertuples(index=False, name=None)
    ]


__all__ = [
    "RESERVED_CHARACTERS",
    "format_value",
    "combination_name",
    "parse_combination_name",
    "check_pipeline_arguments",
    "build_comb_matrix",
    "check_comb_matrix",
    "decode_comb_matrix",
    "comb_matrix_names",
]
