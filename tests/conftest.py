"""Pytest fixtures：合成資料集與小型網路。"""

import numpy as np
import pandas as pd
import pytest

from tumornet import Dataset, Topology
from tumornet.pipeline import FEATURE_COLUMNS


@pytest.fixture
def separable_dataset():
    """30 個特徵、線性可分（有 margin）的二元資料集。"""
    rng = np.random.default_rng(7)
    direction = rng.normal(size=30)
    direction /= np.linalg.norm(direction)
    X = rng.normal(size=(400, 30))
    margin = X @ direction
    keep = np.abs(margin) > 0.5
    X, margin = X[keep][:60], margin[keep][:60]
    labels = (margin > 0).astype(int)
    return Dataset(X, labels, classes=("B", "M"))


@pytest.fixture
def blob_dataset():
    """兩團高斯分佈的小資料集（4 個特徵）。"""
    rng = np.random.default_rng(11)
    benign = rng.normal(loc=-1.0, scale=0.8, size=(30, 4))
    malignant = rng.normal(loc=1.0, scale=0.8, size=(30, 4))
    X = np.vstack([benign, malignant])
    markers = ["B"] * 30 + ["M"] * 30
    return Dataset.from_labels(X, markers, classes=("B", "M"))


@pytest.fixture
def small_topology():
    return Topology(input_size=3, hidden=(2,))


@pytest.fixture
def wdbc_csv(tmp_path):
    """與 WDBC 相同欄位格式（無表頭）的合成 CSV。"""
    rng = np.random.default_rng(3)
    n = 80
    diagnosis = np.where(rng.random(n) < 0.4, "M", "B")
    shift = np.where(diagnosis == "M", 1.5, 0.0)[:, None]
    features = rng.normal(size=(n, len(FEATURE_COLUMNS))) + shift
    df = pd.DataFrame(features)
    df.insert(0, "diagnosis", diagnosis)
    df.insert(0, "id", np.arange(100000, 100000 + n))
    path = tmp_path / "wdbc.data"
    df.to_csv(path, header=False, index=False)
    return path
