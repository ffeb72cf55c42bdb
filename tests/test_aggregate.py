import logging
from pathlib import Path

import pandas as pd
import pytest

from pipecomb.aggregate import aggregate_pipeline_results, payload_frame
from pipecomb.definition import PipelineDefinition
from pipecomb.results import DatasetResult, save_dataset_result


def _result(dataset: str, names: list[str], payload_factory) -> DatasetResult:
    return DatasetResult(
        dataset=dataset,
        arguments={"cluster": ["k"]},
        alternatives={"k": [2, 3, 4]},
        evaluation={"cluster": {name: payload_factory(name) for name in names}},
        elapsed_stepwise={"cluster": {name: 0.5 for name in names}},
        elapsed_total={name: 0.5 for name in names},
    )


def _definition(**kwargs) -> PipelineDefinition:
    return PipelineDefinition({"cluster": lambda x, k: x}, **kwargs)


def test_payload_frame_shapes() -> None:
    assert payload_frame(0.7).to_dict("records") == [{"value": 0.7}]
    assert payload_frame({"ari": 0.9, "n": 3}).to_dict("records") == [{"ari": 0.9, "n": 3}]
    assert payload_frame(pd.Series({"ari": 0.9})).to_dict("records") == [{"ari": 0.9}]
    frame = payload_frame(pd.DataFrame({"size": [10, 20]}, index=["c1", "c2"]))
    assert frame.columns.tolist() == ["index", "size"]
    assert len(frame) == 2


def test_default_merge_tags_rows_with_dataset_and_parameters() -> None:
    results = {
        "ds1": _result("ds1", ["k=2", "k=3"], lambda name: {"ari": 0.5}),
        "ds2": _result("ds2", ["k=2", "k=3"], lambda name: {"ari": 0.8}),
    }

    aggregated = aggregate_pipeline_results(results, _definition())

    table = aggregated.evaluation["cluster"]
    assert table.columns.tolist() == ["dataset", "k", "ari"]
    assert table["k"].tolist() == [2, 3, 2, 3]
    assert table.groupby("dataset")["ari"].first().to_dict() == {"ds1": 0.5, "ds2": 0.8}
    assert aggregated.inconsistencies == []
    assert aggregated.total_elapsed["elapsed"].sum() == pytest.approx(2.0)


def test_dataframe_payloads_keep_all_rows() -> None:
    results = {
        "ds1": _result(
            "ds1",
            ["k=2"],
            lambda name: pd.DataFrame({"cluster": ["a", "b"], "precision": [0.9, 0.4]}),
        )
    }

    table = aggregate_pipeline_results(results).evaluation["cluster"]

    assert len(table) == 2
    assert table["dataset"].tolist() == ["ds1", "ds1"]
    assert table["k"].tolist() == [2, 2]
    assert table["precision"].tolist() == [0.9, 0.4]


def test_payload_columns_clashing_with_parameters_are_renamed() -> None:
    results = {"ds1": _result("ds1", ["k=3"], lambda name: {"k": 5})}

    table = aggregate_pipeline_results(results).evaluation["cluster"]

    assert table.iloc[0]["k"] == 3
    assert table.iloc[0]["k_payload"] == 5


def test_custom_aggregation_receives_raw_payloads() -> None:
    seen = {}

    def best_k(payloads):
        seen.update(payloads)
        return {dataset: max(per_name, key=lambda name: per_name[name]) for dataset, per_name in payloads.items()}

    results = {"ds1": _result("ds1", ["k=2", "k=4"], lambda name: 1.0 if name == "k=4" else 0.1)}

    aggregated = aggregate_pipeline_results(results, _definition(aggregation={"cluster": best_k}))

    assert aggregated.evaluation["cluster"] == {"ds1": "k=4"}
    assert seen == {"ds1": {"k=2": 0.1, "k=4": 1.0}}


def test_mismatched_combinations_are_reported_not_dropped(caplog: pytest.LogCaptureFixture) -> None:
    results = {
        "ds1": _result("ds1", ["k=2", "k=3"], lambda name: 1.0),
        "ds2": _result("ds2", ["k=2"], lambda name: 2.0),
    }

    with caplog.at_level(logging.WARNING, logger="pipecomb.aggregate"):
        aggregated = aggregate_pipeline_results(results)

    assert any("ds2" in message for message in aggregated.inconsistencies)
    assert "Inconsistent results" in caplog.text
    assert len(aggregated.evaluation["cluster"]) == 3
    assert len(aggregated.total_elapsed) == 3


def test_results_are_reloaded_from_files(tmp_path: Path) -> None:
    result = _result("ds1", ["k=2"], lambda name: 0.3)
    path = save_dataset_result(result, f"{tmp_path}/", save_end_results=False)

    aggregated = aggregate_pipeline_results({"ds1": path}, _definition())

    assert aggregated.evaluation["cluster"]["value"].tolist() == [0.3]
    assert aggregated.metadata["steps"] == ["cluster"]


def test_steps_without_payloads_are_omitted() -> None:
    result = DatasetResult(
        dataset="ds1",
        arguments={"cluster": ["k"]},
        alternatives={"k": [2]},
        elapsed_stepwise={"cluster": {"k=2": 0.1}},
        elapsed_total={"k=2": 0.1},
    )

    aggregated = aggregate_pipeline_results({"ds1": result})

    assert aggregated.evaluation == {}
    assert len(aggregated.stepwise_elapsed["cluster"]) == 1
