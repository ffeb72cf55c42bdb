"""Run a linear pipeline over every combination of parameter alternatives."""

from .aggregate import aggregate_pipeline_results
from .combinations import (
    build_comb_matrix,
    check_comb_matrix,
    check_pipeline_arguments,
    combination_name,
    decode_comb_matrix,
    parse_combination_name,
)
from .definition import PipelineDefinition, Plain, WithSideValue
from .errors import ConfigurationError, PipelineRunError, StepExecutionError
from .mock import mock_pipeline, mock_registry
from .registry import FunctionRegistry
from .results import (
    AggregatedResult,
    DatasetResult,
    load_aggregated_result,
    load_dataset_result,
    load_end_outputs,
)
from .runner import run_pipeline
from .scheduler import run_combinations

__all__ = [
    "aggregate_pipeline_results",
    "build_comb_matrix",
    "check_comb_matrix",
    "check_pipeline_arguments",
    "combination_name",
    "decode_comb_matrix",
    "parse_combination_name",
    "PipelineDefinition",
    "Plain",
    "WithSideValue",
    "ConfigurationError",
    "PipelineRunError",
    "StepExecutionError",
    "mock_pipeline",
    "mock_registry",
    "FunctionRegistry",
    "AggregatedResult",
    "DatasetResult",
    "load_aggregated_result",
    "load_dataset_result",
    "load_end_outputs",
    "run_pipeline",
    "run_combinations",
]
