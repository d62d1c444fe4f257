"""不可變的資料集容器：特徵矩陣 + 二元類別標籤。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Hashable, Iterable, Optional, Sequence, Tuple

import numpy as np

from .errors import DimensionMismatch


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class Dataset:
    """二元分類資料集。

    - features: 形狀 (N, F) 的 float64 矩陣，每列為一個樣本。
    - labels:   形狀 (N,) 的類別索引，0 代表第一類（benign）、1 代表第二類（malignant）。
    - classes:  兩個類別的原始標記，例如 ("B", "M")；索引順序即輸出節點順序。

    建構後兩個陣列都設為唯讀，外部無法就地修改。
    """

    features: np.ndarray
    labels: np.ndarray
    classes: Tuple[Hashable, Hashable] = (0, 1)

    def __post_init__(self) -> None:
        features = np.asarray(self.features, dtype=np.float64)
        if features.ndim == 1:
            features = features.reshape(1, -1)
        if features.ndim != 2 or features.shape[0] == 0 or features.shape[1] == 0:
            raise DimensionMismatch(f"特徵矩陣需為非空的 (N, F)，目前形狀為 {features.shape}")

        labels = np.asarray(self.labels).reshape(-1)
        if labels.shape[0] != features.shape[0]:
            raise DimensionMismatch(
                f"標籤數量 {labels.shape[0]} 與樣本數 {features.shape[0]} 不一致"
            )
        if not np.all(np.isin(labels, (0, 1))):
            raise ValueError("labels 只能是類別索引 0 或 1；原始標記請改用 Dataset.from_labels。")

        classes = tuple(self.classes)
        if len(classes) != 2 or classes[0] == classes[1]:
            raise ValueError(f"classes 必須是兩個不同的類別標記，目前為 {classes!r}")

        # frozen dataclass 只能透過 object.__setattr__ 寫入正規化後的欄位
        object.__setattr__(self, "features", _readonly(features))
        object.__setattr__(self, "labels", _readonly(labels.astype(np.int64)))
        object.__setattr__(self, "classes", classes)

    @classmethod
    def from_labels(
        cls,
        features: Any,
        markers: Iterable[Hashable],
        classes: Optional[Sequence[Hashable]] = None,
    ) -> "Dataset":
        """以任意兩值標記（如 "B"/"M"）建立資料集。

        未指定 classes 時依排序後的唯一值決定類別順序；
        若資料中只出現一種標記，必須明確提供 classes。
        """
        markers = np.asarray(list(markers), dtype=object)
        if classes is None:
            observed = sorted(set(markers.tolist()))
            if len(observed) != 2:
                raise ValueError(
                    f"資料中出現 {len(observed)} 種標記 {observed!r}，請以 classes 明確指定兩個類別。"
                )
            classes = observed
        classes = tuple(classes)
        lookup = {marker: idx for idx, marker in enumerate(classes)}
        unknown = {m for m in markers.tolist() if m not in lookup}
        if unknown:
            raise ValueError(f"出現未宣告的類別標記：{sorted(map(str, unknown))}")
        labels = np.array([lookup[m] for m in markers.tolist()], dtype=np.int64)
        return cls(features=features, labels=labels, classes=classes)

    @property
    def n_samples(self) -> int:
        return int(self.features.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.features.shape[1])

    @property
    def targets(self) -> np.ndarray:
        """One-hot 目標矩陣 (N, 2)，欄位順序與 classes 相同。"""
        return np.eye(2, dtype=np.float64)[self.labels]

    @property
    def markers(self) -> list:
        return [self.classes[idx] for idx in self.labels]

    def subset(self, indices: Iterable[int]) -> "Dataset":
        idx = np.asarray(list(indices), dtype=np.int64)
        return Dataset(self.features[idx], self.labels[idx], self.classes)

    def __len__(self) -> int:
        return self.n_samples
