"""Toy two-step pipeline used in examples and tests."""

from __future__ import annotations

from typing import Callable

import numpy as np

from .definition import PipelineDefinition
from .registry import FunctionRegistry


def _apply_method1(x, meth1: Callable):
    return meth1(np.asarray(x, dtype=float))


def _apply_method2(x, meth2: Callable):
    return meth2(np.asarray(x, dtype=float))


def _summarize(x) -> dict[str, float]:
    values = np.asarray(x, dtype=float)
    return {"mean": float(values.mean()), "max": float(values.max())}


def mock_registry() -> FunctionRegistry:
    """Named implementations available to the mock pipeline's methods."""
    return FunctionRegistry(
        {
            "log": np.log,
            "sqrt": np.sqrt,
            "exp": np.exp,
            "cumsum": np.cumsum,
            "sort": np.sort,
        }
    )


def mock_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        {"step1": _apply_method1, "step2": _apply_method2},
        descriptions={
            "step1": "Applies meth1 to x.",
            "step2": "Applies meth2 to the output of step1.",
        },
        evaluation={"step2": _summarize},
        default_arguments={"meth1": ["log", "sqrt"], "meth2": "cumsum"},
    )


__all__ = ["mock_pipeline", "mock_registry"]
