"""權重更新規則。"""

import numpy as np
import pytest

from tumornet import InvalidConfiguration
from tumornet.strategies import Backprop, RpropMinus, RpropPlus, build_strategy

ALL = np.array([True, True])


class TestBackprop:

    def test_step(self):
        w = np.array([1.0, 2.0])
        Backprop(2, learning_rate=0.1).step(w, np.array([0.5, -1.0]), ALL)
        np.testing.assert_allclose(w, [0.95, 2.1])

    def test_masked_weight_untouched(self):
        w = np.array([1.0, 2.0])
        Backprop(2, learning_rate=0.1).step(w, np.array([0.5, -1.0]), np.array([True, False]))
        assert w[1] == 2.0


class TestRpropMinus:

    def test_grow_and_shrink(self):
        strategy = RpropMinus(2, bounds=(1e-6, 1.0), initial_step=0.1)
        w = np.zeros(2)
        strategy.step(w, np.array([1.0, 1.0]), ALL)
        np.testing.assert_allclose(w, [-0.1, -0.1])
        strategy.step(w, np.array([3.0, -2.0]), ALL)
        np.testing.assert_allclose(strategy.step_sizes, [0.12, 0.05])
        # 符號翻轉時不回溯，直接以縮小後的步長往新方向移動
        np.testing.assert_allclose(w, [-0.22, -0.05])

    def test_step_ignores_gradient_magnitude(self):
        small, large = np.zeros(1), np.zeros(1)
        RpropMinus(1, bounds=(1e-6, 1.0)).step(small, np.array([1e-9]), np.array([True]))
        RpropMinus(1, bounds=(1e-6, 1.0)).step(large, np.array([1e9]), np.array([True]))
        assert small[0] == large[0]

    def test_step_sizes_are_clamped(self):
        strategy = RpropMinus(1, bounds=(0.04, 0.11), initial_step=0.1)
        w = np.zeros(1)
        mask = np.array([True])
        strategy.step(w, np.array([1.0]), mask)
        strategy.step(w, np.array([1.0]), mask)
        assert strategy.step_sizes[0] == pytest.approx(0.11)
        strategy.step(w, np.array([-1.0]), mask)
        assert strategy.step_sizes[0] == pytest.approx(0.055)
        strategy.step(w, np.array([1.0]), mask)
        assert strategy.step_sizes[0] == pytest.approx(0.04)

    def test_initial_step_clamped_to_bounds(self):
        assert RpropMinus(1, bounds=(1e-6, 0.05), initial_step=0.1).step_sizes[0] == 0.05


class TestRpropPlus:

    def test_sign_flip_restores_previous_value(self):
        strategy = RpropPlus(2, bounds=(1e-6, 1.0), initial_step=0.1)
        w = np.array([0.3, 0.7])
        strategy.step(w, np.array([1.0, 1.0]), ALL)
        strategy.step(w, np.array([1.0, -1.0]), ALL)
        assert strategy.backtracked == 1
        # 翻轉的權重逐位元還原成上一次更新前的值
        assert w[1] == 0.7
        assert w[0] == pytest.approx(0.3 - 0.1 - 0.12)
        assert strategy.step_sizes[1] == pytest.approx(0.05)
        assert strategy.previous_sign[1] == 0.0

    def test_next_step_after_backtrack_uses_smaller_step(self):
        strategy = RpropPlus(1, bounds=(1e-6, 1.0), initial_step=0.1)
        mask = np.array([True])
        w = np.zeros(1)
        strategy.step(w, np.array([1.0]), mask)
        strategy.step(w, np.array([-1.0]), mask)
        assert w[0] == 0.0
        strategy.step(w, np.array([-1.0]), mask)
        # 記錄的符號已歸零：步長維持 0.05，不放大也不再縮小
        assert w[0] == pytest.approx(0.05)
        assert strategy.backtracked == 0

    def test_masked_weight_bit_identical(self):
        strategy = RpropPlus(2, bounds=(1e-6, 1.0))
        w = np.array([0.123456789, -0.0])
        mask = np.array([True, False])
        for g in ([1.0, 1.0], [-1.0, -1.0], [1.0, 1.0]):
            strategy.step(w, np.array(g), mask)
        assert w[1] == -0.0 and np.signbit(w[1])


class TestBuildStrategy:

    def test_backprop_requires_learning_rate(self):
        with pytest.raises(InvalidConfiguration):
            build_strategy("backprop", 3)

    def test_rprop_requires_bounds(self):
        with pytest.raises(InvalidConfiguration):
            build_strategy("rprop+", 3, bounds=None)

    def test_unknown(self):
        with pytest.raises(InvalidConfiguration):
            build_strategy("quickprop", 3, bounds=(1e-10, 0.1))

    @pytest.mark.parametrize("name, cls", [("rprop-", RpropMinus), ("rprop+", RpropPlus)])
    def test_builds_rprop(self, name, cls):
        strategy = build_strategy(name, 3, bounds=(1e-10, 0.1))
        assert type(strategy) is cls
        assert strategy.name == name
