"""
錯誤類別與訓練終止狀態

- 會「往外丟」的錯誤（維度不符、設定錯誤）在呼叫當下立即拋出。
- 不會中斷其他 repetition 的狀況（未收斂、數值發散、被取消）
  以 `TerminationReason` 記錄在 Repetition 上，而不是例外。
"""

from __future__ import annotations

from enum import Enum


class TumorNetError(Exception):
    """本套件所有錯誤的共同基底類別。"""


class DimensionMismatch(TumorNetError, ValueError):
    """特徵向量或標籤長度與 Topology 宣告的維度不一致。"""


class InvalidConfiguration(TumorNetError, ValueError):
    """訓練設定不合法；在任何計算開始前就拒絕。"""


class NoUsableRepetition(TumorNetError, RuntimeError):
    """所有 repetition 都發散，沒有可供挑選的模型。"""


class TerminationReason(str, Enum):
    """單一 repetition 結束的原因。"""

    THRESHOLD_REACHED = "threshold_reached"  # 最大梯度絕對值 <= threshold（收斂）
    STEP_CEILING = "step_ceiling"            # 達到 step 上限仍未收斂
    DIVERGED = "diverged"                    # 權重或誤差變成 inf/nan
    CANCELLED = "cancelled"                  # 外部要求提早停止

    @property
    def converged(self) -> bool:
        return self is TerminationReason.THRESHOLD_REACHED

    @property
    def failed(self) -> bool:
        return self is TerminationReason.DIVERGED
