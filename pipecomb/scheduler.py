"""Per-dataset traversal of the combination grid with prefix reuse."""

from __future__ import annotations

import logging
import pickle
import time
from typing import Any, Mapping, Sequence

import joblib
import numpy as np
import pandas as pd

from .combinations import combination_name, format_value
from .definition import PipelineDefinition, Plain, WithSideValue
from .errors import StepExecutionError
from .registry import FunctionRegistry
from .results import DatasetResult, artifact_path, ensure_prefix_dir

_LOGGER = logging.getLogger(__name__)

_INITIAL = object()

_PLAIN_TYPES = (str, int, float, bool, type(None))


class _GridLayout:
    """Column/step bookkeeping precomputed once per run."""

    def __init__(self, definition: PipelineDefinition, columns: Sequence[str]) -> None:
        self.steps = definition.steps
        self.columns = list(columns)
        arguments = definition.arguments
        position = {name: idx for idx, name in enumerate(self.columns)}
        missing = [param for param in definition.parameters if param not in position]
        if missing:
            raise ValueError(f"Combination matrix lacks pipeline parameters: {missing}")

        self.owner_step: list[int] = [0] * len(self.columns)
        self.step_columns: list[list[int]] = []
        self.prefix_width: list[int] = []
        width = 0
        for step_idx, step in enumerate(self.steps):
            cols = [position[param] for param in arguments[step]]
            for col in cols:
                self.owner_step[col] = step_idx
            self.step_columns.append(cols)
            width += len(cols)
            self.prefix_width.append(width)
        # column order must follow step order for prefixes to be meaningful
        expected = [position[param] for step in self.steps for param in arguments[step]]
        if expected != list(range(len(self.columns))):
            raise ValueError("Combination matrix columns must follow the pipeline's parameter order.")

    def restart_step(self, row: tuple[int, ...], previous: tuple[int, ...] | None) -> int | None:
        """Index of the earliest step to re-run; ``None`` when nothing changed."""
        if previous is None:
            return 0
        for col, (new, old) in enumerate(zip(row, previous)):
            if new != old:
                return self.owner_step[col]
        return None


def _stored_value(value: Any) -> Any:
    # results are pickled; callables and other objects are kept by label only
    return value if isinstance(value, _PLAIN_TYPES) else format_value(value)


def _invoke(function, x: Any, kwargs: dict[str, Any]) -> tuple[Any, Any, bool]:
    result = function(x, **kwargs)
    if isinstance(result, WithSideValue):
        return result.output, result.side_value, True
    if isinstance(result, Plain):
        return result.output, None, False
    return result, None, False


def run_combinations(
    dataset_name: str,
    dataset: Any,
    definition: PipelineDefinition,
    alternatives: Mapping[str, Sequence[Any]],
    comb: pd.DataFrame,
    *,
    registry: FunctionRegistry | None = None,
    debug: bool = False,
    dump_prefix: str | None = None,
    logger: logging.Logger | None = None,
) -> DatasetResult:
    """Run every row of ``comb`` on one initiated dataset.

    Rows are processed strictly in order. For each row only the steps from
    the first one whose parameters changed are executed; earlier steps reuse
    the output cached by a previous row. Evaluation payloads and elapsed
    times are recorded under the combination name of the parameters up to
    each step, and a row's total time is the sum of those per-step records.
    """
    logger = logger or _LOGGER
    log_row = logger.info if debug else logger.debug
    layout = _GridLayout(definition, list(comb.columns))
    steps = layout.steps
    columns = layout.columns
    functions = [definition.step_function(step) for step in steps]
    evaluations = [definition.evaluation_function(step) for step in steps]

    result = DatasetResult(
        dataset=dataset_name,
        arguments=definition.arguments,
        alternatives={name: [_stored_value(value) for value in alternatives[name]] for name in columns},
        evaluation={step: {} for step in steps},
        elapsed_stepwise={step: {} for step in steps},
    )
    cache: dict[Any, Any] = {_INITIAL: dataset}

    def _input_for(step_idx: int) -> Any:
        key = _INITIAL if step_idx == 0 else steps[step_idx - 1]
        return cache[key]

    rows = [tuple(int(v) for v in row) for row in comb[columns].to_numpy(dtype=np.int64)]
    logger.info("Dataset %s: running %s combinations over %s steps", dataset_name, len(rows), len(steps))

    previous: tuple[int, ...] | None = None
    for n, row in enumerate(rows, start=1):
        values = [alternatives[name][idx - 1] for name, idx in zip(columns, row)]
        prefix_names = [
            combination_name(columns[: layout.prefix_width[i]], values[: layout.prefix_width[i]])
            for i in range(len(steps))
        ]
        full_name = combination_name(columns, values)
        log_row("Dataset %s | iteration %s | %s", dataset_name, n, full_name)

        restart = layout.restart_step(row, previous)
        if restart is None:
            x = cache[steps[-1]]
        else:
            x = _input_for(restart)
            for step_idx in range(restart, len(steps)):
                step = steps[step_idx]
                kwargs = {columns[col]: values[col] for col in layout.step_columns[step_idx]}
                log_row("Dataset %s | step %s", dataset_name, step)
                ename = prefix_names[step_idx]
                step_input = x
                started = time.perf_counter()
                try:
                    if registry is not None:
                        kwargs = {key: registry.resolve(value) for key, value in kwargs.items()}
                    x, side_value, has_side = _invoke(functions[step_idx], step_input, kwargs)
                    elapsed = time.perf_counter() - started
                    evaluate = evaluations[step_idx]
                    if not has_side and evaluate is not None and ename not in result.evaluation[step]:
                        side_value, has_side = evaluate(x), True
                except Exception as exc:
                    parameters = dict(zip(columns, values))
                    dump_path = None
                    if debug and dump_prefix is not None:
                        dump_path = _dump_failure(
                            dump_prefix, n, step, step_input, kwargs, parameters, definition
                        )
                    error = StepExecutionError(
                        dataset_name, parameters, step, exc, row=n, dump_path=dump_path
                    )
                    logger.error("%s", error)
                    raise error from exc

                result.elapsed_stepwise[step].setdefault(ename, elapsed)
                if has_side:
                    result.evaluation[step].setdefault(ename, side_value)
                cache[step] = x

        result.elapsed_total[full_name] = float(
            sum(result.elapsed_stepwise[step][prefix_names[i]] for i, step in enumerate(steps))
        )
        result.end_outputs[full_name] = x
        previous = row

    result.evaluation = {step: payloads for step, payloads in result.evaluation.items() if payloads}
    logger.info("Dataset %s: completed all %s combinations", dataset_name, len(rows))
    return result


def _dump_failure(
    dump_prefix: str,
    row: int,
    step: str,
    x: Any,
    kwargs: dict[str, Any],
    parameters: dict[str, Any],
    definition: PipelineDefinition,
) -> str:
    ensure_prefix_dir(dump_prefix)
    path = artifact_path(dump_prefix, "runPipeline_error_dump.joblib")
    payload = {
        "row": row,
        "step": step,
        "input": x,
        "arguments": {key: str(value) for key, value in kwargs.items()},
        "parameters": {key: str(value) for key, value in parameters.items()},
        "pipeline": definition.summary(),
    }
    try:
        joblib.dump(payload, path)
    except (pickle.PicklingError, TypeError, AttributeError) as exc:
        _LOGGER.warning("Step input of %s is not picklable (%s); dumping without it", step, exc)
        payload["input"] = repr(x)
        joblib.dump(payload, path)
    return str(path)


__all__ = ["run_combinations"]
