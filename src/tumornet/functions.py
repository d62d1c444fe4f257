"""
激活函數與誤差函數

兩者都是「封閉的列舉」：每個成員同時帶有函數本身與解析導數，
在設定階段就由字串解析成列舉成員，訓練迴圈中不再做字串比對。
"""

from __future__ import annotations

from enum import Enum
from typing import Union

import numpy as np

from .errors import InvalidConfiguration

# CE 取 log 前把輸出夾在 [eps, 1-eps]，與二元交叉熵的常見作法一致
CE_EPS = 1e-10


def logistic(x: np.ndarray) -> np.ndarray:
    """Sigmoid(x) = 1 / (1 + e^{-x})。

    以 exp(-log(1 + e^{-x})) 計算，x 極大或極小時都不會溢位。
    """
    return np.exp(-np.logaddexp(0.0, -x))


class Activation(str, Enum):
    """隱藏層（以及非線性輸出層）共用的激活函數。"""

    LOGISTIC = "logistic"
    TANH = "tanh"

    @classmethod
    def parse(cls, value: Union[str, "Activation"]) -> "Activation":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        aliases = {"logistic": cls.LOGISTIC, "sigmoid": cls.LOGISTIC, "tanh": cls.TANH}
        if key not in aliases:
            raise InvalidConfiguration(f"不支援的激活函數：{value!r}（可用：logistic, tanh）")
        return aliases[key]

    def __call__(self, z: np.ndarray) -> np.ndarray:
        if self is Activation.LOGISTIC:
            return logistic(z)
        return np.tanh(z)

    def derivative(self, activated: np.ndarray) -> np.ndarray:
        """以「激活後」的值表示的導數，可直接重用 forward 的快取。

        - logistic: f'(z) = f(z)(1 - f(z))
        - tanh:     f'(z) = 1 - f(z)^2
        """
        if self is Activation.LOGISTIC:
            return activated * (1.0 - activated)
        return 1.0 - activated * activated


class ErrorFunction(str, Enum):
    """訓練誤差（對所有樣本與輸出節點加總）。"""

    SSE = "sse"
    CE = "ce"

    @classmethod
    def parse(cls, value: Union[str, "ErrorFunction"]) -> "ErrorFunction":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", "").replace("-", "")
        aliases = {
            "sse": cls.SSE,
            "ce": cls.CE,
            "crossentropy": cls.CE,
            "negativeloglikelihood": cls.CE,
        }
        if key not in aliases:
            raise InvalidConfiguration(f"不支援的誤差函數：{value!r}（可用：sse, ce）")
        return aliases[key]

    def __call__(self, output: np.ndarray, target: np.ndarray) -> float:
        if self is ErrorFunction.SSE:
            # E = 1/2 * sum((o - y)^2)
            return float(0.5 * np.sum((output - target) ** 2))
        # E = -sum(y log o + (1-y) log(1-o))
        clipped = np.clip(output, CE_EPS, 1.0 - CE_EPS)
        return float(-np.sum(target * np.log(clipped) + (1.0 - target) * np.log(1.0 - clipped)))

    def derivative(self, output: np.ndarray, target: np.ndarray) -> np.ndarray:
        """dE/do，對每個樣本、每個輸出節點逐元素計算。"""
        if self is ErrorFunction.SSE:
            return output - target
        clipped = np.clip(output, CE_EPS, 1.0 - CE_EPS)
        return (clipped - target) / (clipped * (1.0 - clipped))
