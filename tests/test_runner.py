import json
import logging
from pathlib import Path

import joblib
import numpy as np
import pandas as pd
import pytest

from pipecomb.definition import PipelineDefinition
from pipecomb.errors import ConfigurationError, PipelineRunError, StepExecutionError
from pipecomb.mock import mock_pipeline, mock_registry
from pipecomb.results import load_aggregated_result, load_dataset_result, load_end_outputs
from pipecomb.runner import normalize_datasets, run_pipeline


def _scale(x, p):
    if x < 0:
        raise ValueError("negative input")
    return x * p


def _shift(x, q):
    return x + q


def _arith_pipeline() -> PipelineDefinition:
    return PipelineDefinition({"A": _scale, "B": _shift}, evaluation={"B": lambda out: {"out": out}})


def test_run_pipeline_end_to_end_writes_artifacts(tmp_path: Path) -> None:
    prefix = f"{tmp_path}/run/"

    result = run_pipeline(
        {"ds1": 5},
        {"p": [1, 2], "q": [10, 20, 30]},
        _arith_pipeline(),
        output_prefix=prefix,
        n_jobs=1,
    )

    out_dir = tmp_path / "run"
    for name in ["res.ds1.endOutputs.joblib", "res.ds1.evaluation.joblib", "runPipelineInfo.json", "aggregated.joblib"]:
        assert (out_dir / name).exists()

    end_outputs = load_end_outputs(out_dir / "res.ds1.endOutputs.joblib")
    assert end_outputs["p=2;q=30"] == 40
    assert len(end_outputs) == 6

    stored = load_dataset_result(out_dir / "res.ds1.evaluation.joblib")
    assert stored.end_outputs == {}
    assert set(stored.elapsed_total) == set(end_outputs)

    evaluation = result.evaluation["B"].sort_values(["p", "q"]).reset_index(drop=True)
    assert list(evaluation.columns) == ["dataset", "p", "q", "out"]
    assert evaluation["out"].tolist() == [15, 25, 35, 20, 30, 40]

    total = result.total_elapsed
    assert len(total) == 6
    assert list(total.columns) == ["dataset", "p", "q", "elapsed"]
    assert set(result.stepwise_elapsed["A"]["p"]) == {1, 2}

    reloaded = load_aggregated_result(out_dir)
    assert reloaded.datasets == ["ds1"]


def test_end_results_can_be_skipped(tmp_path: Path) -> None:
    prefix = f"{tmp_path}/"
    run_pipeline({"ds1": 1}, {"p": [1], "q": [1]}, _arith_pipeline(), output_prefix=prefix, save_end_results=False)

    assert not (tmp_path / "res.ds1.endOutputs.joblib").exists()
    assert (tmp_path / "res.ds1.evaluation.joblib").exists()


def test_manifest_records_pipeline_and_resolved_functions(tmp_path: Path) -> None:
    prefix = f"{tmp_path}/mock_"
    run_pipeline(
        {"ds1": [1.0, 2.0, 3.0]},
        None,
        mock_pipeline(),
        output_prefix=prefix,
        registry=mock_registry(),
    )

    manifest = json.loads((tmp_path / "mock_runPipelineInfo.json").read_text(encoding="utf-8"))
    assert manifest["pipeline"]["steps"] == ["step1", "step2"]
    assert manifest["alternatives"] == {"meth1": ["log", "sqrt"], "meth2": ["cumsum"]}
    assert set(manifest["resolved_functions"]["meth1"]) == {"log", "sqrt"}
    assert manifest["n_combinations"] == 2
    assert manifest["call"]["datasets"] == ["ds1"]


def test_mock_pipeline_in_parallel(tmp_path: Path) -> None:
    datasets = {"ds1": [1.0, 2.0, 3.0], "ds2": [5.0, 10.0, 15.0]}

    result = run_pipeline(
        datasets,
        None,
        mock_pipeline(),
        output_prefix=f"{tmp_path}/",
        n_jobs=2,
        registry=mock_registry(),
        backend="threading",
    )

    table = result.evaluation["step2"]
    assert len(table) == 4
    assert {"dataset", "meth1", "meth2", "mean", "max"}.issubset(table.columns)
    row = table[(table["dataset"] == "ds1") & (table["meth1"] == "log")].iloc[0]
    assert row["max"] == pytest.approx(np.log(6.0))
    assert sorted(result.datasets) == ["ds1", "ds2"]
    assert result.inconsistencies == []


def test_datasets_can_be_loaded_from_joblib_files(tmp_path: Path) -> None:
    path = tmp_path / "input.joblib"
    joblib.dump(4, path)

    result = run_pipeline([path], {"p": [2], "q": [1]}, _arith_pipeline(), output_prefix=f"{tmp_path}/out/")

    assert result.datasets == ["dataset1"]
    assert result.evaluation["B"]["out"].tolist() == [9]


def test_parallel_failure_is_isolated_and_reported(tmp_path: Path) -> None:
    with pytest.raises(PipelineRunError) as excinfo:
        run_pipeline(
            {"good": 1, "bad": -1},
            {"p": [1, 2], "q": [10]},
            _arith_pipeline(),
            output_prefix=f"{tmp_path}/",
            n_jobs=2,
            backend="threading",
        )

    error = excinfo.value
    assert set(error.failures) == {"bad"}
    assert isinstance(error.failures["bad"], StepExecutionError)
    assert error.failures["bad"].step == "A"
    assert "bad" in str(error)
    assert error.partial is not None
    assert error.partial.datasets == ["good"]
    assert len(error.partial.total_elapsed) == 2
    assert (tmp_path / "res.good.evaluation.joblib").exists()
    assert not (tmp_path / "aggregated.joblib").exists()


def test_sequential_failure_stops_the_run(tmp_path: Path) -> None:
    with pytest.raises(StepExecutionError, match="negative input") as excinfo:
        run_pipeline(
            {"bad": -1, "good": 1},
            {"p": [1], "q": [10]},
            _arith_pipeline(),
            output_prefix=f"{tmp_path}/",
            n_jobs=1,
        )

    assert excinfo.value.dataset == "bad"
    assert not (tmp_path / "res.good.evaluation.joblib").exists()


def test_custom_combination_matrix_restricts_the_grid(tmp_path: Path) -> None:
    comb = pd.DataFrame({"p": [2, 1], "q": [3, 1]})

    result = run_pipeline(
        {"ds1": 5},
        {"p": [1, 2], "q": [10, 20, 30]},
        _arith_pipeline(),
        comb=comb,
        output_prefix=f"{tmp_path}/",
    )

    assert sorted(result.evaluation["B"]["out"].tolist()) == [15, 40]


def test_configuration_errors_happen_before_any_output(tmp_path: Path) -> None:
    out_dir = tmp_path / "never"
    with pytest.raises(ConfigurationError, match="unknown to the pipeline"):
        run_pipeline({"ds1": 1}, {"p": [1], "q": [1], "z": [1]}, _arith_pipeline(), output_prefix=f"{out_dir}/")
    with pytest.raises(ConfigurationError, match="spaces"):
        run_pipeline({"data set": 1}, {"p": [1], "q": [1]}, _arith_pipeline(), output_prefix=f"{out_dir}/")
    with pytest.raises(ConfigurationError, match="within"):
        run_pipeline(
            {"ds1": 1},
            {"p": [1], "q": [1]},
            _arith_pipeline(),
            comb=[[1, 2]],
            output_prefix=f"{out_dir}/",
        )

    assert not out_dir.exists()


def test_dataset_names_are_generated_and_checked(caplog: pytest.LogCaptureFixture) -> None:
    assert list(normalize_datasets([1, 2])) == ["dataset1", "dataset2"]
    with pytest.raises(ConfigurationError, match="empty"):
        normalize_datasets({"": 1})
    with pytest.raises(ConfigurationError, match="At least one"):
        normalize_datasets({})

    with caplog.at_level(logging.WARNING, logger="pipecomb.runner"):
        normalize_datasets({"ds.1": 1})
    assert "dots" in caplog.text


def test_local_function_alternatives_are_stored_by_label(tmp_path: Path) -> None:
    def double(v):
        return 2 * v

    def negate(v):
        return -v

    definition = PipelineDefinition(
        {"apply": lambda x, method: method(x)},
        evaluation={"apply": lambda out: {"out": out}},
    )

    result = run_pipeline({"ds1": 4}, {"method": [double, negate]}, definition, output_prefix=f"{tmp_path}/", n_jobs=1)

    table = result.evaluation["apply"].sort_values("method").reset_index(drop=True)
    assert table["method"].tolist() == ["double", "negate"]
    assert table["out"].tolist() == [8, -4]
    stored = load_dataset_result(tmp_path / "res.ds1.evaluation.joblib")
    assert stored.alternatives == {"method": ["double", "negate"]}
    assert load_end_outputs(tmp_path / "res.ds1.endOutputs.joblib") == {"method=double": 8, "method=negate": -4}
    assert load_aggregated_result(tmp_path).datasets == ["ds1"]


def _load_or_fail(dataset):
    if dataset == "broken":
        raise OSError("cannot load")
    return dataset


def test_initiation_failures_are_collected_per_dataset(tmp_path: Path) -> None:
    definition = PipelineDefinition({"A": _scale}, initiation=_load_or_fail)

    with pytest.raises(PipelineRunError) as excinfo:
        run_pipeline(
            {"good": 1, "bad": "broken", "worse": "broken"},
            {"p": [3]},
            definition,
            output_prefix=f"{tmp_path}/",
            n_jobs=3,
            backend="threading",
        )

    error = excinfo.value
    assert set(error.failures) == {"bad", "worse"}
    assert error.failures["bad"].step == "initiation"
    assert isinstance(error.failures["bad"].cause, OSError)
    assert error.partial is not None
    assert error.partial.datasets == ["good"]


def test_sequential_initiation_failure_names_the_dataset(tmp_path: Path) -> None:
    definition = PipelineDefinition({"A": _scale}, initiation=_load_or_fail)

    with pytest.raises(StepExecutionError, match="cannot load") as excinfo:
        run_pipeline({"bad": "broken"}, {"p": [3]}, definition, output_prefix=f"{tmp_path}/")

    assert excinfo.value.dataset == "bad"
    assert excinfo.value.step == "initiation"


def test_failure_isolation_with_process_workers(tmp_path: Path) -> None:
    with pytest.raises(PipelineRunError) as excinfo:
        run_pipeline(
            {"good": 2, "bad": -2},
            {"p": [1, 2], "q": [10]},
            _arith_pipeline(),
            output_prefix=f"{tmp_path}/",
            n_jobs=2,
        )

    error = excinfo.value
    assert set(error.failures) == {"bad"}
    assert error.failures["bad"].step == "A"
    assert error.failures["bad"].parameters == {"p": 1, "q": 10}
    assert error.partial.datasets == ["good"]
    assert sorted(error.partial.evaluation["B"]["out"].tolist()) == [12, 14]
