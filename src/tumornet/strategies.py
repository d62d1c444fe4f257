"""
權重更新規則：traditional backprop、rprop-、rprop+

每個策略持有自己的狀態（rprop 的逐權重步長、上一步梯度符號），
一個 repetition 建立一個實例；step() 就地更新扁平權重向量。
mask 為 False 的位置（排除或固定的權重）永遠不會被移動。
"""

from __future__ import annotations

from typing import Tuple

import numpy as np  # 逐權重的步長與符號以向量運算更新

from .errors import InvalidConfiguration

STRATEGIES = ("backprop", "rprop-", "rprop+")


class UpdateStrategy:
    """所有更新規則的共同介面。"""

    name = "base"

    def __init__(self, size: int) -> None:
        self.size = size
        # 最近一次 step 中被回溯（backtrack）的權重數，只有 rprop+ 會大於 0
        self.backtracked = 0

    def step(self, weights: np.ndarray, gradients: np.ndarray, mask: np.ndarray) -> None:
        raise NotImplementedError


class Backprop(UpdateStrategy):
    """W -= lr * dW，固定學習率。"""

    name = "backprop"

    def __init__(self, size: int, learning_rate: float) -> None:
        super().__init__(size)
        self.learning_rate = learning_rate

    def step(self, weights: np.ndarray, gradients: np.ndarray, mask: np.ndarray) -> None:
        weights[mask] -= self.learning_rate * gradients[mask]


class RpropMinus(UpdateStrategy):
    """Resilient backprop，不回溯。

    只看梯度符號：
    - 符號與上一步相同 → 步長 * plus（不超過上限）
    - 符號翻轉         → 步長 * minus（不低於下限）
    - 權重移動 -sign(g) * 步長，與梯度大小無關
    """

    name = "rprop-"

    def __init__(
        self,
        size: int,
        bounds: Tuple[float, float],
        factors: Tuple[float, float] = (0.5, 1.2),
        initial_step: float = 0.1,
    ) -> None:
        super().__init__(size)
        self.min_step, self.max_step = bounds
        self.minus, self.plus = factors
        self.step_sizes = np.full(size, float(np.clip(initial_step, self.min_step, self.max_step)))
        self.previous_sign = np.zeros(size)

    def _adapt(self, sign: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        product = self.previous_sign * sign
        grow = product > 0
        flip = product < 0
        self.step_sizes[grow] = np.minimum(self.step_sizes[grow] * self.plus, self.max_step)
        return grow, flip

    def step(self, weights: np.ndarray, gradients: np.ndarray, mask: np.ndarray) -> None:
        sign = np.where(mask, np.sign(gradients), 0.0)
        _, flip = self._adapt(sign)
        # 符號翻轉只縮小步長，權重照樣移動（不回溯）
        self.step_sizes[flip] = np.maximum(self.step_sizes[flip] * self.minus, self.min_step)
        weights[mask] -= sign[mask] * self.step_sizes[mask]
        self.previous_sign = sign


class RpropPlus(RpropMinus):
    """Resilient backprop，含權重回溯（預設策略）。

    符號翻轉時：
    1. 該權重還原成上一次更新之前的值（撤銷上一步）
    2. 步長 * minus
    3. 記錄的梯度符號歸零，下一步直接以縮小後的步長移動，不再做放大/縮小判斷
    其餘權重照 rprop- 的方式移動。
    """

    name = "rprop+"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._before_last_update = None

    def step(self, weights: np.ndarray, gradients: np.ndarray, mask: np.ndarray) -> None:
        sign = np.where(mask, np.sign(gradients), 0.0)  # 不可訓練的位置符號為 0
        _, flip = self._adapt(sign)  # 同號者步長已放大；flip 標出符號翻轉的權重
        snapshot = weights.copy()  # 本次更新前的權重，下一步回溯時使用

        if self._before_last_update is not None and flip.any():
            # 翻轉代表上一步越過了極小值：撤銷上一步並縮小步長
            weights[flip] = self._before_last_update[flip]
            self.step_sizes[flip] = np.maximum(self.step_sizes[flip] * self.minus, self.min_step)

        keep = mask & ~flip  # 回溯的權重這一步不再移動
        weights[keep] -= sign[keep] * self.step_sizes[keep]

        # 符號歸零，下一步不做放大/縮小判斷
        sign[flip] = 0.0
        self.previous_sign = sign
        self._before_last_update = snapshot
        self.backtracked = int(flip.sum())


def build_strategy(
    name: str,
    size: int,
    learning_rate: float = None,
    bounds: Tuple[float, float] = None,
    factors: Tuple[float, float] = (0.5, 1.2),
    initial_step: float = 0.1,
) -> UpdateStrategy:
    """依名稱建立更新規則；必要參數缺漏時拋出 InvalidConfiguration。"""
    if name == "backprop":
        if learning_rate is None or not learning_rate > 0:
            raise InvalidConfiguration("backprop 需要設定正的 learning_rate。")
        return Backprop(size, learning_rate)
    if name in ("rprop-", "rprop+"):
        if bounds is None:
            raise InvalidConfiguration(f"{name} 需要設定 learning_rate_bounds (min, max)。")
        cls = RpropPlus if name == "rprop+" else RpropMinus
        return cls(size, bounds=bounds, factors=factors, initial_step=initial_step)
    raise InvalidConfiguration(f"不支援的更新規則：{name!r}（可用：{', '.join(STRATEGIES)}）")
