"""
推論、混淆矩陣與最佳 repetition 選擇

- 預測類別 = 兩個輸出分數中較大者的索引；平手時取第一類（benign），同 np.argmax。
- 準確率 = 對角線總和 / 樣本數，無論混淆矩陣是否退化都用同一條規則。
- 所有樣本都被預測成同一類時，ConfusionTable.degenerate 為 True。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Hashable, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .dataset import Dataset
from .errors import DimensionMismatch, NoUsableRepetition
from .network import Topology, WeightSet, as_feature_matrix, forward_pass
from .trainer import Repetition, TrainingResult


@dataclass(frozen=True, eq=False)
class PredictionOutput:
    """每個樣本一組 (score_benign, score_malignant)，順序與輸入資料一致。"""

    scores: np.ndarray
    classes: Tuple[Hashable, Hashable] = (0, 1)

    def __post_init__(self) -> None:
        scores = np.array(self.scores, dtype=np.float64, copy=True)
        if scores.ndim != 2 or scores.shape[1] != 2:
            raise DimensionMismatch(f"預測分數形狀 {scores.shape} 應為 (N, 2)")
        scores.setflags(write=False)
        object.__setattr__(self, "scores", scores)
        object.__setattr__(self, "classes", tuple(self.classes))

    @property
    def predicted(self) -> np.ndarray:
        """預測類別索引（0/1）。"""
        return np.argmax(self.scores, axis=1)

    @property
    def predicted_markers(self) -> list:
        return [self.classes[idx] for idx in self.predicted]

    def __len__(self) -> int:
        return int(self.scores.shape[0])


def predict(
    weights: Union[WeightSet, Repetition],
    topology: Topology,
    dataset: Any,
) -> PredictionOutput:
    """對資料集的每個樣本做前向傳播（無任何訓練副作用）。

    weights 可以是 WeightSet 或 Repetition（取其訓練後權重）；
    dataset 可以是 Dataset 或原始特徵矩陣。
    """
    if isinstance(weights, Repetition):
        weights = weights.weights
    weights.require(topology)
    X = as_feature_matrix(dataset, topology)
    scores = forward_pass(weights.layers(), X, weights.activation, weights.linear_output)[-1]
    classes = dataset.classes if isinstance(dataset, Dataset) else (0, 1)
    return PredictionOutput(scores=scores, classes=classes)


@dataclass(frozen=True, eq=False)
class ConfusionTable:
    """2x2 計數表：列 = 實際類別、欄 = 預測類別。"""

    counts: np.ndarray
    classes: Tuple[Hashable, Hashable] = (0, 1)

    def __post_init__(self) -> None:
        counts = np.array(self.counts, dtype=np.int64, copy=True)
        if counts.shape != (2, 2):
            raise DimensionMismatch(f"混淆矩陣需為 2x2，目前為 {counts.shape}")
        counts.setflags(write=False)
        object.__setattr__(self, "counts", counts)
        object.__setattr__(self, "classes", tuple(self.classes))

    @classmethod
    def from_classes(
        cls,
        actual: Sequence[int],
        predicted: Sequence[int],
        classes: Tuple[Hashable, Hashable] = (0, 1),
    ) -> "ConfusionTable":
        actual = np.asarray(actual).reshape(-1)
        predicted = np.asarray(predicted).reshape(-1)
        if actual.shape != predicted.shape:
            raise DimensionMismatch(f"實際標籤 {actual.shape} 與預測 {predicted.shape} 長度不一致")
        # np.add.at 會把 -1 當成最後一格，先確認所有索引都是 0 或 1
        for name, values in (("actual", actual), ("predicted", predicted)):
            if not np.isin(values, (0, 1)).all():
                raise ValueError(f"{name} 只能包含類別索引 0 或 1，收到 {sorted(set(values.tolist()))}")
        counts = np.zeros((2, 2), dtype=np.int64)
        np.add.at(counts, (actual.astype(np.int64), predicted.astype(np.int64)), 1)
        return cls(counts=counts, classes=classes)

    @property
    def total(self) -> int:
        return int(self.counts.sum())

    @property
    def correct(self) -> int:
        return int(np.trace(self.counts))

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0

    @property
    def degenerate(self) -> bool:
        """模型對所有樣本都預測同一類（某個預測欄位完全為空）。"""
        return bool((self.counts.sum(axis=0) == 0).any())

    def count(self, actual: Hashable, predicted: Hashable) -> int:
        """以類別標記（或 0/1 索引）讀取單一格。"""
        return int(self.counts[self._index(actual), self._index(predicted)])

    def _index(self, marker: Hashable) -> int:
        if marker in self.classes:
            return self.classes.index(marker)
        return int(marker)

    def to_frame(self, observed_only: bool = True) -> pd.DataFrame:
        """轉成 DataFrame；observed_only 時只保留實際出現過的列/欄（可能是 2x1 或 1x2）。"""
        frame = pd.DataFrame(
            self.counts,
            index=pd.Index(self.classes, name="actual"),
            columns=pd.Index(self.classes, name="predicted"),
        )
        if observed_only:
            frame = frame.loc[self.counts.sum(axis=1) > 0, self.counts.sum(axis=0) > 0]
        return frame


def _label_indices(labels: Any, classes: Tuple[Hashable, Hashable]) -> np.ndarray:
    """類別標記（如 "B"/"M"）或 0/1 索引 → 0/1 索引陣列；其他值拋出 ValueError。"""
    lookup = {marker: idx for idx, marker in enumerate(classes)}
    indices = []
    for value in np.asarray(labels).reshape(-1).tolist():
        if value in lookup:
            indices.append(lookup[value])
        elif value in (0, 1):
            indices.append(int(value))
        else:
            raise ValueError(f"未知的類別標記：{value!r}（可用：{list(classes)}）")
    return np.asarray(indices, dtype=np.int64)


def evaluate(prediction: Union[PredictionOutput, np.ndarray], labels: Any) -> Tuple[ConfusionTable, float]:
    """建立混淆矩陣並計算準確率。

    labels 可以是 Dataset、類別標記序列（對應 prediction.classes）或 0/1 索引陣列。
    """
    if not isinstance(prediction, PredictionOutput):
        prediction = PredictionOutput(np.asarray(prediction))
    if isinstance(labels, Dataset):
        classes, actual = labels.classes, labels.labels
    else:
        classes, actual = prediction.classes, _label_indices(labels, prediction.classes)
    if actual.shape[0] != len(prediction):
        raise DimensionMismatch(f"標籤數量 {actual.shape[0]} 與預測數量 {len(prediction)} 不一致")
    table = ConfusionTable.from_classes(actual, prediction.predicted, classes)
    return table, table.accuracy


def score_repetition(repetition: Repetition, topology: Topology, dataset: Dataset) -> ConfusionTable:
    table, _ = evaluate(predict(repetition, topology, dataset), dataset)
    return table


def select_best_repetition(result: TrainingResult, dataset: Dataset) -> Repetition:
    """在 dataset 上評估每個可用的 repetition，回傳準確率最高者。

    - 發散（DIVERGED）的 repetition 不參與比較
    - 準確率嚴格較高才取代目前最佳；平手保留較早的 repetition
    """
    best, best_accuracy = None, -1.0
    for rep in result.usable:
        accuracy = score_repetition(rep, result.topology, dataset).accuracy
        if accuracy > best_accuracy:
            best, best_accuracy = rep, accuracy
    if best is None:
        raise NoUsableRepetition("所有 repetition 都發散，無法選出最佳模型。")
    return best


def accuracy_table(result: TrainingResult, dataset: Dataset) -> pd.DataFrame:
    """每個 repetition 一列的準確率彙整表（發散者 accuracy 為 NaN）。"""
    rows = []
    for rep in result:
        row = {
            "repetition": rep.index,
            "status": rep.status.value,
            "steps": rep.steps,
            "error": rep.error,
            "accuracy": np.nan,
            "degenerate": False,
        }
        if not rep.failed:
            table = score_repetition(rep, result.topology, dataset)
            row["accuracy"] = table.accuracy
            row["degenerate"] = table.degenerate
        rows.append(row)
    return pd.DataFrame(rows).set_index("repetition")
