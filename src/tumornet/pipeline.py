"""
tumornet.pipeline

乳癌腫瘤（WDBC）良性/惡性分類的完整流程：
1. 讀取 CSV、補上欄位名稱、檢查缺值
2. 隨機切分 train/validation，以訓練集統計量做 z-score 標準化
3. 多次重複訓練（repetitions），每次獨立初始化
4. 在驗證集上評估每個 repetition，選出準確率最高者
5. 輸出準確率表、訓練摘要、混淆矩陣與誤差曲線，並保存最佳模型
"""

from __future__ import annotations

import argparse  # 命令列參數（--config、--dataset 等）
import copy  # deepcopy 預設 CONFIG，避免覆寫時改到原本的字典
import json  # 讀寫 summary 與 JSON 設定檔
import math
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
import yaml  # YAML 設定檔覆寫
from matplotlib import pyplot as plt  # 混淆矩陣、誤差曲線與準確率長條圖
from tqdm.auto import tqdm  # 進度條與 [INFO]/[WARN] 訊息輸出

from .dataset import Dataset
from .evaluation import accuracy_table, evaluate, predict, select_best_repetition
from .network import Topology
from .serialization import save_model
from .trainer import Repetition, TrainingConfig, TrainingResult, train

# 批次執行或遠端環境中不開視窗，只輸出檔案
plt.switch_backend("Agg")

MEASUREMENTS = [
    "radius", "texture", "perimeter", "area", "smoothness",
    "compactness", "concavity", "concave_points", "symmetry", "fractal_dimension",
]
# 30 個特徵：每種量測的 mean / se / worst
FEATURE_COLUMNS = [f"{m}_{stat}" for stat in ("mean", "se", "worst") for m in MEASUREMENTS]


CONFIG: Dict[str, Any] = {
    # 固定亂數種子：控制資料切分與每個 repetition 的初始權重
    "seed": 20240501,
    "paths": {
        "dataset": Path("data/wdbc.data"),
        "artifacts_dir": Path("artifacts"),
        "figures_dir": Path("figures"),
        "results_dir": Path("results"),
        "best_model": Path("artifacts/best_model.pkl"),
        "accuracy_table": Path("results/accuracy_table.csv"),
        "training_summary": Path("results/training_summary.csv"),
        "summary": Path("results/summary.json"),
    },
    "columns": {
        "id": "id",
        "label": "diagnosis",
        "features": FEATURE_COLUMNS,
        "classes": ["B", "M"],   # 索引 0 = benign、1 = malignant
    },
    "split": {
        "train_fraction": 0.7,
        "standardize": True,
    },
    "topology": {
        "hidden": [2, 2],
    },
    # 傳給 TrainingConfig.from_mapping 的訓練選項
    "hyperparameters": {
        "strategy": "rprop+",
        "activation": "logistic",
        "error_function": "sse",
        "linear_output": False,
        "threshold": 0.01,
        "step_ceiling": 100000,
        "learning_rate_bounds": [1e-10, 0.1],
    },
    "repetitions": 5,
    "n_jobs": 1,
}


# ---------------------------------------------------------------------------
# 設定檔

def deep_update_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """遞迴合併巢狀字典，確保 CONFIG 可被外部設定覆寫。"""
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = deep_update_dict(base[key], value)
        else:
            base[key] = value
    return base


def load_config_override(path: str, base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """讀取 YAML 或 JSON 檔並覆寫預設 CONFIG（不修改原本的 CONFIG）。"""
    override_path = Path(path)
    if not override_path.exists():
        raise FileNotFoundError(f"找不到設定檔：{override_path}")
    with override_path.open("r", encoding="utf-8") as fh:
        if override_path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(fh) or {}
        else:
            data = json.load(fh)
    config = copy.deepcopy(CONFIG if base is None else base)
    config = deep_update_dict(config, data)
    # 從檔案讀入的路徑是字串，統一轉回 Path
    config["paths"] = {key: Path(value) for key, value in config["paths"].items()}
    return config


def ensure_directories(paths: Iterable[Path]) -> None:
    """建立必要的輸出資料夾。"""
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# 資料讀取與前處理

def load_dataset(path: Path, columns: Dict[str, Any]) -> pd.DataFrame:
    """讀取無表頭的 WDBC CSV 並補上欄位名稱（id, diagnosis, 30 個特徵）。"""
    if not Path(path).exists():
        raise FileNotFoundError(f"找不到資料檔：{path}")
    df = pd.read_csv(path, header=None)
    names = [columns["id"], columns["label"], *columns["features"]]
    if df.shape[1] != len(names):
        raise RuntimeError(f"資料欄位數 {df.shape[1]} 與預期的 {len(names)} 不一致")
    df.columns = names
    return df


def audit_missing_values(df: pd.DataFrame) -> pd.Series:
    """回傳每一欄的缺值數（只列出有缺值的欄位）。"""
    missing = df.isna().sum()
    return missing[missing > 0]


def split_dataset(df: pd.DataFrame, train_fraction: float, seed: int) -> Dict[str, pd.DataFrame]:
    """均勻隨機切分為 train / validation。"""
    if not 0.0 < train_fraction < 1.0:
        raise ValueError(f"train_fraction 必須介於 0 與 1 之間，目前為 {train_fraction}")
    rng = np.random.default_rng(seed)
    indices = rng.permutation(df.shape[0])
    n_train = int(math.floor(df.shape[0] * train_fraction))
    train_df = df.iloc[indices[:n_train]].reset_index(drop=True)
    val_df = df.iloc[indices[n_train:]].reset_index(drop=True)
    if train_df.empty or val_df.empty:
        raise RuntimeError("切分後的 train 或 validation 為空，請調整 train_fraction。")
    return {"train": train_df, "val": val_df}


def standardize_features(
    splits: Dict[str, pd.DataFrame], feature_cols: List[str]
) -> Tuple[Dict[str, np.ndarray], Dict[str, Any]]:
    """以訓練集的 mean/std 對所有切分做 z-score（只用 train，避免洩漏）。"""
    train_features = splits["train"][feature_cols].to_numpy(dtype=float)
    mean = train_features.mean(axis=0)
    std = train_features.std(axis=0, ddof=0)
    std[std == 0.0] = 1.0  # 常數欄避免除以 0

    features = {
        name: (df[feature_cols].to_numpy(dtype=float) - mean) / std
        for name, df in splits.items()
    }
    metadata = {"feature_names": feature_cols, "mean": mean.tolist(), "std": std.tolist()}
    return features, metadata


def build_datasets(df: pd.DataFrame, config: Dict[str, Any]) -> Tuple[Dict[str, Dataset], Dict[str, Any]]:
    """DataFrame → 標準化後的 train/val Dataset。"""
    columns = config["columns"]
    splits = split_dataset(df, config["split"]["train_fraction"], seed=config["seed"])
    feature_cols = list(columns["features"])
    if config["split"].get("standardize", True):
        features, metadata = standardize_features(splits, feature_cols)
    else:
        features = {name: part[feature_cols].to_numpy(dtype=float) for name, part in splits.items()}
        metadata = {"feature_names": feature_cols}

    datasets = {
        name: Dataset.from_labels(features[name], part[columns["label"]].tolist(), classes=columns["classes"])
        for name, part in splits.items()
    }
    return datasets, metadata


# ---------------------------------------------------------------------------
# 視覺化

def plot_confusion_matrix(table_counts: np.ndarray, classes: List[str], path: Path) -> None:
    """2x2 混淆矩陣圖：列 = 實際類別、欄 = 預測類別。"""
    fig, ax = plt.subplots(figsize=(4, 4))
    im = ax.imshow(table_counts, cmap="Blues")
    for i in range(2):
        for j in range(2):
            ax.text(j, i, str(table_counts[i, j]), ha="center", va="center", color="black", fontsize=12)
    ax.set_xticks([0, 1], labels=[f"Pred {c}" for c in classes])
    ax.set_yticks([0, 1], labels=[f"True {c}" for c in classes])
    ax.set_title("Confusion Matrix")
    fig.colorbar(im, ax=ax)
    fig.tight_layout()
    plt.savefig(path)
    plt.close(fig)


def plot_error_history(result: TrainingResult, path: Path) -> None:
    """各 repetition 的訓練誤差曲線（依 record_every 取樣）。"""
    fig, ax = plt.subplots(figsize=(8, 5))
    for rep in result:
        steps = [step for step, _ in rep.history]
        errors = [error for _, error in rep.history]
        ax.plot(steps, errors, label=f"rep {rep.index} ({rep.status.value})")
    ax.set_xlabel("Step")
    ax.set_ylabel("Error")
    ax.set_yscale("log")
    ax.grid(True, linestyle="--", alpha=0.4)
    ax.legend(loc="upper right")
    plt.title("Training Error per Repetition")
    fig.tight_layout()
    plt.savefig(path)
    plt.close(fig)


def plot_accuracy_bars(table: pd.DataFrame, best_index: int, path: Path) -> None:
    """各 repetition 在驗證集上的準確率，最佳者以紅色標示。"""
    colors = ["#d62728" if idx == best_index else "#1f77b4" for idx in table.index]
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.bar([str(idx) for idx in table.index], table["accuracy"].fillna(0.0), color=colors)
    ax.set_xlabel("Repetition")
    ax.set_ylabel("Validation accuracy")
    ax.set_ylim(0.0, 1.0)
    ax.grid(True, axis="y", linestyle="--", alpha=0.4)
    fig.tight_layout()
    plt.savefig(path)
    plt.close(fig)


# ---------------------------------------------------------------------------
# 主流程

def report_repetitions(result: TrainingResult) -> None:
    """把未收斂或發散的 repetition 寫到終端機。"""
    for rep in result:
        if rep.failed:
            tqdm.write(f"[WARN] repetition {rep.index} 數值發散，已排除於模型選擇之外。")
        elif not rep.converged:
            tqdm.write(
                f"[WARN] repetition {rep.index} 未收斂（{rep.status.value}，"
                f"{rep.steps} steps，max|grad|={rep.reached_threshold:.3e}）"
            )


def run_pipeline(config: Dict[str, Any], make_figures: bool = True) -> Dict[str, Any]:
    """固定執行完整流程：前處理 → 訓練 → 評估/選模 → 報告。

    回傳寫入 summary JSON 的內容。
    """
    paths = config["paths"]
    ensure_directories([paths["artifacts_dir"], paths["figures_dir"], paths["results_dir"]])

    stages = ["preprocess", "train", "evaluate", "report"]
    stage_bar = tqdm(total=len(stages), desc="流程總進度", unit="stage", leave=False)

    # ======================== Stage 1: 前處理 ========================
    tqdm.write("[INFO] Stage 1/4 - 讀取資料並切分 train/validation…")
    df = load_dataset(paths["dataset"], config["columns"])
    missing = audit_missing_values(df)
    if not missing.empty:
        raise RuntimeError(f"資料含缺值：{missing.to_dict()}")
    datasets, metadata = build_datasets(df, config)
    tqdm.write(
        f"[INFO] train={datasets['train'].n_samples}、val={datasets['val'].n_samples}，"
        f"特徵數={datasets['train'].n_features}"
    )
    stage_bar.update(1)

    # ======================== Stage 2: 訓練 ========================
    topology = Topology(
        input_size=datasets["train"].n_features,
        hidden=tuple(config["topology"]["hidden"]),
    )
    train_config = TrainingConfig.from_mapping(config["hyperparameters"])
    tqdm.write(
        f"[INFO] Stage 2/4 - 訓練 {config['repetitions']} 個 repetition "
        f"(layers={topology.layer_sizes}, strategy={train_config.strategy})…"
    )
    result = train(
        datasets["train"],
        topology,
        train_config,
        repetitions=config["repetitions"],
        seed=config["seed"],
        n_jobs=config.get("n_jobs", 1),
        progress=True,
    )
    report_repetitions(result)
    stage_bar.update(1)

    # ======================== Stage 3: 評估與選模 ========================
    tqdm.write("[INFO] Stage 3/4 - 在驗證集上評估每個 repetition…")
    table = accuracy_table(result, datasets["val"])
    best: Repetition = select_best_repetition(result, datasets["val"])
    confusion, accuracy = evaluate(predict(best, topology, datasets["val"]), datasets["val"])
    if confusion.degenerate:
        tqdm.write(f"[WARN] 最佳 repetition {best.index} 對所有樣本都預測同一類（退化模型）。")
    tqdm.write(f"[INFO] 最佳 repetition = {best.index}，驗證準確率 = {accuracy:.4f}")
    stage_bar.update(1)

    # ======================== Stage 4: 報告 ========================
    tqdm.write("[INFO] Stage 4/4 - 輸出報告與最佳模型…")
    table.to_csv(paths["accuracy_table"])
    result.summary().to_csv(paths["training_summary"])
    save_model(paths["best_model"], best, topology)
    if make_figures:
        plot_confusion_matrix(confusion.counts, list(confusion.classes), paths["figures_dir"] / "confusion_matrix.png")
        plot_error_history(result, paths["figures_dir"] / "error_history.png")
        plot_accuracy_bars(table, best.index, paths["figures_dir"] / "accuracy_per_repetition.png")

    summary = {
        "best_repetition": best.index,
        "validation_accuracy": accuracy,
        "degenerate": confusion.degenerate,
        "confusion_matrix": confusion.counts.tolist(),
        "classes": list(confusion.classes),
        "layer_sizes": list(topology.layer_sizes),
        "training": train_config.to_dict(),
        "repetitions": [
            {
                "index": rep.index,
                "status": rep.status.value,
                "steps": rep.steps,
                "error": rep.error,
                "accuracy": None if math.isnan(table.loc[rep.index, "accuracy"])
                else float(table.loc[rep.index, "accuracy"]),
            }
            for rep in result
        ],
        "scaler": metadata,
    }
    with paths["summary"].open("w", encoding="utf-8") as fp:
        json.dump(summary, fp, ensure_ascii=False, indent=2)
    stage_bar.update(1)
    stage_bar.close()
    return summary


# ---------------------------------------------------------------------------
# CLI 入口

def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WDBC 腫瘤分類：多次重複訓練前饋神經網路")
    parser.add_argument("--config", type=str, help="外部 YAML/JSON 設定檔")
    parser.add_argument("--dataset", type=str, help="WDBC CSV 路徑（覆寫設定檔）")
    parser.add_argument("--repetitions", type=int, help="重複訓練次數")
    parser.add_argument("--seed", type=int, help="亂數種子")
    parser.add_argument("--n-jobs", type=int, help="平行訓練的執行緒數")
    parser.add_argument("--no-figures", action="store_true", help="不輸出圖檔")
    return parser.parse_args(argv)


def main(argv: Optional[Iterable[str]] = None) -> None:
    """程式進入點。"""
    args = parse_args(argv)
    config = load_config_override(args.config) if args.config else copy.deepcopy(CONFIG)
    if args.dataset:
        config["paths"]["dataset"] = Path(args.dataset)
    if args.repetitions is not None:
        config["repetitions"] = args.repetitions
    if args.seed is not None:
        config["seed"] = args.seed
    if args.n_jobs is not None:
        config["n_jobs"] = args.n_jobs
    run_pipeline(config, make_figures=not args.no_figures)


if __name__ == "__main__":
    main()
