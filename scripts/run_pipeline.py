"""Run a pipeline over all parameter combinations on one or more datasets."""

from __future__ import annotations

import argparse
import importlib
import logging
from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from typing import Any

from pipecomb.config_loader import DEFAULT_RUN_CONFIG, deep_merge, load_config
from pipecomb.definition import PipelineDefinition
from pipecomb.registry import FunctionRegistry
from pipecomb.runner import run_pipeline


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a pipeline over all parameter combinations.")
    parser.add_argument(
        "--pipeline",
        required=True,
        help="PipelineDefinition (or zero-argument factory) as module:attribute",
    )
    parser.add_argument("--registry", default=None, help="FunctionRegistry (or factory) as module:attribute")
    parser.add_argument(
        "--dataset",
        action="append",
        default=[],
        metavar="NAME=PATH",
        help="Dataset to run (joblib file); repeat for several datasets",
    )
    parser.add_argument("--config", type=Path, default=None, help="Run config (YAML/JSON) with alternatives")
    parser.add_argument("--output-prefix", default=None, help="Prefix for output files (e.g. outputs/run1_)")
    parser.add_argument("--n-jobs", type=int, default=None, help="Number of parallel workers")
    parser.add_argument("--no-end-results", action="store_true", help="Do not save last-step outputs")
    parser.add_argument("--debug", action="store_true", help="Single-threaded run with verbose logging")
    parser.add_argument("--log-level", default="INFO", help="Logging level (INFO, DEBUG, WARNING)")
    return parser.parse_args(argv)


def setup_logging(level: str) -> logging.Logger:
    logger = logging.getLogger("pipecomb")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler = logging.StreamHandler()
    formatter = logging.Formatter("%(levelname)-8s %(asctime)s | %(message)s")
    handler.setFormatter(formatter)
    logger.handlers = []
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def load_object(reference: str) -> Any:
    """Import ``module:attribute``; call it when it is a factory."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected module:attribute, got {reference!r}")
    module = importlib.import_module(module_name)
    target = module
    for part in attribute.split("."):
        target = getattr(target, part)
    if isinstance(target, (PipelineDefinition, FunctionRegistry)):
        return target
    if callable(target):
        return target()
    return target


def parse_datasets(entries: list[str]) -> dict[str, str]:
    datasets: dict[str, str] = {}
    for entry in entries:
        name, sep, path = entry.partition("=")
        if not sep or not name.strip() or not path.strip():
            raise ValueError(f"Datasets must be given as NAME=PATH, got {entry!r}")
        name = name.strip()
        if name in datasets:
            raise ValueError(f"Duplicated dataset name: {name}")
        datasets[name] = path.strip()
    return datasets


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logger = setup_logging("DEBUG" if args.debug else args.log_level)

    config = load_config(args.config) if args.config else deep_merge(DEFAULT_RUN_CONFIG, {})
    pipeline = load_object(args.pipeline)
    if not isinstance(pipeline, PipelineDefinition):
        raise TypeError(f"{args.pipeline} did not provide a PipelineDefinition.")
    registry = load_object(args.registry) if args.registry else None
    datasets = parse_datasets(args.dataset)
    if not datasets:
        raise ValueError("No datasets provided.")

    output_prefix = args.output_prefix if args.output_prefix is not None else config["output_prefix"]
    result = run_pipeline(
        datasets,
        config["alternatives"],
        pipeline,
        comb=config["comb"],
        output_prefix=output_prefix,
        n_jobs=args.n_jobs if args.n_jobs is not None else config["n_jobs"],
        save_end_results=config["save_end_results"] and not args.no_end_results,
        debug=args.debug or config["debug"],
        registry=registry,
        backend=config["backend"],
        logger=logger,
    )
    total = result.total_elapsed
    logger.info(
        "Done: %s datasets, %s combinations, total elapsed %.3fs",
        len(result.datasets),
        len(total),
        float(total["elapsed"].sum()) if not total.empty else 0.0,
    )
    for message in result.inconsistencies:
        logger.warning(message)


if __name__ == "__main__":
    main()
