"""Pipeline definitions: an ordered chain of named step functions."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import joblib
import numpy as np

from .errors import ConfigurationError

_LOADABLE_SUFFIXES = {".joblib", ".pkl", ".pickle"}


@dataclass(frozen=True)
class Plain:
    """Step result without an evaluation payload."""

    output: Any


@dataclass(frozen=True)
class WithSideValue:
    """Step result carrying its own evaluation payload."""

    output: Any
    side_value: Any


def default_initiation(dataset: Any) -> Any:
    """Load a dataset persisted with joblib, or pass the object through."""
    if isinstance(dataset, (str, Path)):
        path = Path(dataset)
        if path.suffix.lower() in _LOADABLE_SUFFIXES and path.is_file():
            return joblib.load(path)
    return dataset


def as_candidates(values: Any) -> list[Any]:
    """Normalize a default or alternative entry into a list of candidates."""
    if isinstance(values, (str, bytes)) or callable(values):
        return [values]
    if isinstance(values, np.ndarray):
        return values.tolist()
    if isinstance(values, (set, frozenset)):
        raise ConfigurationError(
            f"Candidates must be given in a fixed order (list or tuple), got a {type(values).__name__}."
        )
    if isinstance(values, Iterable) and not isinstance(values, Mapping):
        return list(values)
    return [values]


def step_parameters(function: Callable[..., Any], step: str = "") -> list[str]:
    """Return the keyword parameters of a step, excluding its input argument."""
    try:
        signature = inspect.signature(function)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Cannot inspect the signature of step `{step}`.") from exc
    params = list(signature.parameters.values())
    positional = (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    if not params or params[0].kind not in positional:
        raise ConfigurationError(
            f"Step `{step}` must accept the previous output as its first positional argument."
        )
    variadic = (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
    return [param.name for param in params[1:] if param.kind not in variadic]


class PipelineDefinition:
    """Ordered chain of steps with defaults, evaluation and aggregation hooks.

    ``functions`` maps step names to callables ``(x, **params)``; the mapping
    order is the execution order. Every mutator validates the updated
    definition before it is committed, so an instance is always consistent.
    """

    def __init__(
        self,
        functions: Mapping[str, Callable[..., Any]],
        *,
        descriptions: Mapping[str, str] | None = None,
        evaluation: Mapping[str, Callable[[Any], Any]] | None = None,
        aggregation: Mapping[str, Callable[[dict[str, dict[str, Any]]], Any]] | None = None,
        initiation: Callable[[Any], Any] | None = None,
        default_arguments: Mapping[str, Any] | None = None,
        misc: Mapping[str, Any] | None = None,
    ) -> None:
        self._functions: dict[str, Callable[..., Any]] = {}
        self._descriptions: dict[str, str] = {}
        self._evaluation: dict[str, Callable[[Any], Any]] = {}
        self._aggregation: dict[str, Callable[..., Any]] = {}
        self._defaults: dict[str, list[Any]] = {}
        self._arguments: dict[str, list[str]] = {}
        self._initiation: Callable[[Any], Any] = default_initiation
        self.misc: dict[str, Any] = dict(misc or {})
        self._commit(
            functions=dict(functions),
            descriptions=dict(descriptions or {}),
            evaluation=dict(evaluation or {}),
            aggregation=dict(aggregation or {}),
            defaults={key: as_candidates(value) for key, value in (default_arguments or {}).items()},
            initiation=initiation or default_initiation,
        )

    # ------------------------------------------------------------------ access
    @property
    def steps(self) -> list[str]:
        return list(self._functions)

    @property
    def arguments(self) -> dict[str, list[str]]:
        return {step: list(params) for step, params in self._arguments.items()}

    @property
    def parameters(self) -> list[str]:
        return [param for params in self._arguments.values() for param in params]

    @property
    def default_arguments(self) -> dict[str, list[Any]]:
        return {key: list(values) for key, values in self._defaults.items()}

    @property
    def initiation(self) -> Callable[[Any], Any]:
        return self._initiation

    def step_function(self, step: str) -> Callable[..., Any]:
        self._require_step(step)
        return self._functions[step]

    def evaluation_function(self, step: str) -> Callable[[Any], Any] | None:
        self._require_step(step)
        return self._evaluation.get(step)

    def aggregation_function(self, step: str) -> Callable[..., Any] | None:
        self._require_step(step)
        return self._aggregation.get(step)

    def description(self, step: str) -> str | None:
        self._require_step(step)
        return self._descriptions.get(step)

    def owner_of(self, parameter: str) -> str:
        for step, params in self._arguments.items():
            if parameter in params:
                return step
        raise KeyError(f"Parameter `{parameter}` is not used by any step.")

    def __len__(self) -> int:
        return len(self._functions)

    def __contains__(self, step: object) -> bool:
        return step in self._functions

    # ---------------------------------------------------------------- mutation
    def set_step_function(
        self,
        step: str,
        function: Callable[..., Any],
        description: str | None = None,
    ) -> None:
        """Replace the function of an existing step."""
        self._require_step(step)
        functions = dict(self._functions)
        functions[step] = function
        descriptions = dict(self._descriptions)
        if description is not None:
            descriptions[step] = description
        # defaults of parameters the new function no longer declares are dropped
        defaults = dict(self._defaults)
        new_params = set(step_parameters(function, step))
        for param in self._arguments[step]:
            if param not in new_params:
                defaults.pop(param, None)
        self._commit(functions=functions, descriptions=descriptions, defaults=defaults)

    def set_default_arguments(self, arguments: Mapping[str, Any], replace: bool = False) -> None:
        """Merge (or replace) default candidate values for step parameters."""
        defaults = {} if replace else dict(self._defaults)
        for key, value in arguments.items():
            defaults[key] = as_candidates(value)
        self._commit(defaults=defaults)

    def set_evaluation_function(self, step: str, function: Callable[[Any], Any] | None) -> None:
        evaluation = dict(self._evaluation)
        if function is None:
            evaluation.pop(step, None)
        else:
            evaluation[step] = function
        self._commit(evaluation=evaluation)

    def set_aggregation_function(self, step: str, function: Callable[..., Any] | None) -> None:
        aggregation = dict(self._aggregation)
        if function is None:
            aggregation.pop(step, None)
        else:
            aggregation[step] = function
        self._commit(aggregation=aggregation)

    def add_step(
        self,
        name: str,
        function: Callable[..., Any],
        after: str | None = None,
        *,
        description: str | None = None,
        evaluation: Callable[[Any], Any] | None = None,
        aggregation: Callable[..., Any] | None = None,
        default_arguments: Mapping[str, Any] | None = None,
    ) -> None:
        """Insert a step after ``after``, or at the start of the chain when omitted."""
        if name in self._functions:
            raise ConfigurationError(f"Step `{name}` already exists in the pipeline.")
        if after is not None:
            self._require_step(after)
        items = list(self._functions.items())
        position = 0 if after is None else self.steps.index(after) + 1
        items.insert(position, (name, function))

        descriptions = dict(self._descriptions)
        evaluations = dict(self._evaluation)
        aggregations = dict(self._aggregation)
        defaults = dict(self._defaults)
        if description is not None:
            descriptions[name] = description
        if evaluation is not None:
            evaluations[name] = evaluation
        if aggregation is not None:
            aggregations[name] = aggregation
        for key, value in (default_arguments or {}).items():
            defaults[key] = as_candidates(value)
        self._commit(
            functions=dict(items),
            descriptions=descriptions,
            evaluation=evaluations,
            aggregation=aggregations,
            defaults=defaults,
        )

    def drop_step(self, step: str) -> None:
        self._require_step(step)
        functions = {key: fn for key, fn in self._functions.items() if key != step}
        defaults = {
            key: value for key, value in self._defaults.items() if key not in self._arguments[step]
        }
        self._commit(
            functions=functions,
            descriptions={k: v for k, v in self._descriptions.items() if k != step},
            evaluation={k: v for k, v in self._evaluation.items() if k != step},
            aggregation={k: v for k, v in self._aggregation.items() if k != step},
            defaults=defaults,
        )

    # -------------------------------------------------------------- validation
    def _commit(
        self,
        *,
        functions: dict[str, Callable[..., Any]] | None = None,
        descriptions: dict[str, str] | None = None,
        evaluation: dict[str, Callable[[Any], Any]] | None = None,
        aggregation: dict[str, Callable[..., Any]] | None = None,
        defaults: dict[str, list[Any]] | None = None,
        initiation: Callable[[Any], Any] | None = None,
    ) -> None:
        functions = self._functions if functions is None else functions
        descriptions = self._descriptions if descriptions is None else descriptions
        evaluation = self._evaluation if evaluation is None else evaluation
        aggregation = self._aggregation if aggregation is None else aggregation
        defaults = self._defaults if defaults is None else defaults
        initiation = self._initiation if initiation is None else initiation

        arguments = _validate_definition(
            functions, descriptions, evaluation, aggregation, defaults, initiation
        )
        self._functions = functions
        self._descriptions = descriptions
        self._evaluation = evaluation
        self._aggregation = aggregation
        self._defaults = defaults
        self._initiation = initiation
        self._arguments = arguments

    def _require_step(self, step: str) -> None:
        if step not in self._functions:
            raise KeyError(f"Unknown step `{step}`; available steps: {self.steps}")

    # ----------------------------------------------------------------- display
    def summary(self) -> str:
        lines = ["A PipelineDefinition object with the following steps:"]
        for step, params in self._arguments.items():
            signature = ", ".join(["x", *params])
            line = f"  - {step}({signature})"
            if step in self._evaluation:
                line += " *"
            lines.append(line)
            if step in self._descriptions:
                lines.append(f"      {self._descriptions[step]}")
        if self._evaluation:
            lines.append("Steps marked with * have evaluation functions.")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()


def _validate_definition(
    functions: dict[str, Callable[..., Any]],
    descriptions: dict[str, str],
    evaluation: dict[str, Callable[[Any], Any]],
    aggregation: dict[str, Callable[..., Any]],
    defaults: dict[str, list[Any]],
    initiation: Callable[[Any], Any],
) -> dict[str, list[str]]:
    if not functions:
        raise ConfigurationError("A pipeline needs at least one step.")
    for step, function in functions.items():
        if not isinstance(step, str) or not step.strip():
            raise ConfigurationError("Step names must be non-empty strings.")
        if not callable(function):
            raise ConfigurationError(f"Step `{step}` is not callable.")
    if not callable(initiation):
        raise ConfigurationError("The initiation function must be callable.")

    for label, mapping in (("description", descriptions), ("evaluation", evaluation), ("aggregation", aggregation)):
        unknown = sorted(set(mapping) - set(functions))
        if unknown:
            raise ConfigurationError(f"{label} entries refer to unknown steps: {unknown}")
    for label, mapping in (("evaluation", evaluation), ("aggregation", aggregation)):
        for step, function in mapping.items():
            if not callable(function):
                raise ConfigurationError(f"The {label} function of step `{step}` is not callable.")

    arguments: dict[str, list[str]] = {}
    owners: dict[str, str] = {}
    for step, function in functions.items():
        params = step_parameters(function, step)
        for param in params:
            if param in owners:
                raise ConfigurationError(
                    f"Parameter `{param}` is declared by both `{owners[param]}` and `{step}`; "
                    "parameter names must be unique across steps."
                )
            owners[param] = step
        arguments[step] = params

    unknown_defaults = sorted(set(defaults) - set(owners))
    if unknown_defaults:
        raise ConfigurationError(f"Default arguments for undeclared parameters: {unknown_defaults}")
    empty = sorted(key for key, values in defaults.items() if len(values) == 0)
    if empty:
        raise ConfigurationError(f"Default arguments without any candidate value: {empty}")
    return arguments


__all__ = [
    "Plain",
    "WithSideValue",
    "PipelineDefinition",
    "default_initiation",
    "as_candidates",
    "step_parameters",
]
