"""資料前處理與完整流程。"""

import copy
import json

import numpy as np
import pandas as pd
import pytest
import yaml

from tumornet import pipeline
from tumornet.pipeline import (
    CONFIG,
    FEATURE_COLUMNS,
    audit_missing_values,
    build_datasets,
    deep_update_dict,
    load_config_override,
    load_dataset,
    split_dataset,
)


def make_config(tmp_path, dataset_path):
    config = copy.deepcopy(CONFIG)
    out = tmp_path / "out"
    config["paths"] = {
        "dataset": dataset_path,
        "artifacts_dir": out / "artifacts",
        "figures_dir": out / "figures",
        "results_dir": out / "results",
        "best_model": out / "artifacts" / "best_model.pkl",
        "accuracy_table": out / "results" / "accuracy_table.csv",
        "training_summary": out / "results" / "training_summary.csv",
        "summary": out / "results" / "summary.json",
    }
    config["repetitions"] = 2
    config["hyperparameters"]["step_ceiling"] = 300
    return config


class TestPreprocessing:

    def test_feature_columns(self):
        assert len(FEATURE_COLUMNS) == 30
        assert FEATURE_COLUMNS[0] == "radius_mean"
        assert FEATURE_COLUMNS[-1] == "fractal_dimension_worst"

    def test_load_dataset_assigns_names(self, wdbc_csv):
        df = load_dataset(wdbc_csv, CONFIG["columns"])
        assert list(df.columns[:2]) == ["id", "diagnosis"]
        assert df.shape == (80, 32)

    def test_load_dataset_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_dataset(tmp_path / "nope.csv", CONFIG["columns"])

    def test_load_dataset_wrong_width(self, tmp_path):
        path = tmp_path / "bad.csv"
        pd.DataFrame(np.zeros((3, 5))).to_csv(path, header=False, index=False)
        with pytest.raises(RuntimeError):
            load_dataset(path, CONFIG["columns"])

    def test_audit_missing_values(self):
        df = pd.DataFrame({"a": [1.0, None], "b": [1.0, 2.0]})
        missing = audit_missing_values(df)
        assert missing.to_dict() == {"a": 1}

    def test_split_is_a_partition(self, wdbc_csv):
        df = load_dataset(wdbc_csv, CONFIG["columns"])
        splits = split_dataset(df, 0.7, seed=1)
        assert len(splits["train"]) == 56
        assert len(splits["val"]) == 24
        ids = set(splits["train"]["id"]) | set(splits["val"]["id"])
        assert ids == set(df["id"])

    def test_split_rejects_bad_fraction(self, wdbc_csv):
        df = load_dataset(wdbc_csv, CONFIG["columns"])
        with pytest.raises(ValueError):
            split_dataset(df, 1.0, seed=1)

    def test_build_datasets_standardizes_with_train_statistics(self, wdbc_csv):
        df = load_dataset(wdbc_csv, CONFIG["columns"])
        datasets, metadata = build_datasets(df, CONFIG)
        train_features = datasets["train"].features
        np.testing.assert_allclose(train_features.mean(axis=0), 0.0, atol=1e-10)
        np.testing.assert_allclose(train_features.std(axis=0), 1.0, atol=1e-10)
        assert datasets["val"].classes == ("B", "M")
        assert len(metadata["mean"]) == 30


class TestConfig:

    def test_deep_update_dict(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        assert deep_update_dict(base, {"a": {"b": 5}}) == {"a": {"b": 5, "c": 2}, "d": 3}

    def test_yaml_override_leaves_defaults_untouched(self, tmp_path):
        path = tmp_path / "override.yaml"
        path.write_text(yaml.safe_dump({"repetitions": 9, "topology": {"hidden": [4]}}), encoding="utf-8")
        config = load_config_override(str(path))
        assert config["repetitions"] == 9
        assert config["topology"]["hidden"] == [4]
        assert config["hyperparameters"]["strategy"] == "rprop+"
        assert CONFIG["repetitions"] == 5

    def test_json_override(self, tmp_path):
        path = tmp_path / "override.json"
        path.write_text(json.dumps({"paths": {"dataset": "elsewhere.csv"}}), encoding="utf-8")
        config = load_config_override(str(path))
        assert config["paths"]["dataset"].name == "elsewhere.csv"

    def test_missing_override(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_override(str(tmp_path / "missing.yaml"))


class TestRunPipeline:

    def test_end_to_end(self, tmp_path, wdbc_csv):
        config = make_config(tmp_path, wdbc_csv)
        summary = pipeline.run_pipeline(config, make_figures=True)

        paths = config["paths"]
        for key in ("best_model", "accuracy_table", "training_summary", "summary"):
            assert paths[key].exists()
        assert (paths["figures_dir"] / "confusion_matrix.png").exists()

        assert summary["best_repetition"] in (1, 2)
        assert 0.0 <= summary["validation_accuracy"] <= 1.0
        assert len(summary["repetitions"]) == 2
        table = pd.read_csv(paths["accuracy_table"], index_col="repetition")
        assert table["accuracy"].max() == pytest.approx(summary["validation_accuracy"])

    def test_main_with_cli_overrides(self, tmp_path, wdbc_csv, monkeypatch):
        captured = {}

        def fake_run(config, make_figures=True):
            captured["config"] = config
            captured["make_figures"] = make_figures

        monkeypatch.setattr(pipeline, "run_pipeline", fake_run)
        pipeline.main(["--dataset", str(wdbc_csv), "--repetitions", "3", "--seed", "7", "--no-figures"])
        assert captured["config"]["paths"]["dataset"] == wdbc_csv
        assert captured["config"]["repetitions"] == 3
        assert captured["config"]["seed"] == 7
        assert captured["make_figures"] is False
