"""Dataset 容器。"""

import numpy as np
import pytest

from tumornet import Dataset, DimensionMismatch


class TestDataset:

    def test_from_labels_encodes_markers(self):
        ds = Dataset.from_labels(np.zeros((4, 2)), ["M", "B", "B", "M"])
        assert ds.classes == ("B", "M")
        assert ds.labels.tolist() == [1, 0, 0, 1]
        assert ds.markers == ["M", "B", "B", "M"]

    def test_targets_are_one_hot(self):
        ds = Dataset(np.zeros((3, 2)), [0, 1, 1])
        np.testing.assert_array_equal(ds.targets, [[1, 0], [0, 1], [0, 1]])

    def test_length_mismatch(self):
        with pytest.raises(DimensionMismatch):
            Dataset(np.zeros((3, 2)), [0, 1])

    def test_arrays_are_read_only(self):
        ds = Dataset(np.zeros((2, 2)), [0, 1])
        with pytest.raises(ValueError):
            ds.features[0, 0] = 1.0
        with pytest.raises(ValueError):
            ds.labels[0] = 1

    def test_does_not_alias_caller_array(self):
        X = np.zeros((2, 2))
        ds = Dataset(X, [0, 1])
        X[0, 0] = 5.0
        assert ds.features[0, 0] == 0.0

    def test_single_class_requires_explicit_classes(self):
        with pytest.raises(ValueError):
            Dataset.from_labels(np.zeros((2, 2)), ["B", "B"])
        ds = Dataset.from_labels(np.zeros((2, 2)), ["B", "B"], classes=("B", "M"))
        assert ds.labels.tolist() == [0, 0]

    def test_unknown_marker(self):
        with pytest.raises(ValueError):
            Dataset.from_labels(np.zeros((2, 2)), ["B", "X"], classes=("B", "M"))

    def test_labels_must_be_indices(self):
        with pytest.raises(ValueError):
            Dataset(np.zeros((2, 2)), [0, 2])

    def test_subset(self):
        ds = Dataset(np.arange(8.0).reshape(4, 2), [0, 1, 0, 1], classes=("B", "M"))
        sub = ds.subset([1, 3])
        assert sub.n_samples == 2
        assert sub.labels.tolist() == [1, 1]
        assert sub.classes == ("B", "M")
