"""
網路結構、前向傳播與反向傳播（梯度引擎）

資料形狀慣例
------------
- 特徵矩陣 X：(N, F)，每列一個樣本；單一特徵向量 (F,) 視為 N=1。
- 第 l 個轉換（layer transition）的權重矩陣 W_l：(n_in, n_out)，偏置 b_l：(n_out,)。
- 扁平參數向量：逐層串接「W_l（row-major）→ b_l」，strategies 與 trainer 都以此向量運作。

權重鍵 (layer, input_neuron, output_neuron) 採 1-based：
input_neuron = 1 代表偏置（常數輸入 1），2..n_in+1 代表上一層的各神經元。
"""

from __future__ import annotations

from dataclasses import dataclass  # Topology / WeightSet 皆為不可變的資料結構
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np  # 所有前向/反向運算都以矩陣運算完成

from .errors import DimensionMismatch, InvalidConfiguration
from .functions import Activation, ErrorFunction

Layer = Tuple[np.ndarray, np.ndarray]
WeightKey = Tuple[int, int, int]


@dataclass(frozen=True)
class Topology:
    """網路拓樸：輸入寬度、隱藏層寬度序列、輸出寬度（固定 2，每類一個節點）。"""

    input_size: int
    hidden: Tuple[int, ...] = ()
    output_size: int = 2

    def __post_init__(self) -> None:
        hidden = self.hidden
        if isinstance(hidden, (int, np.integer)):
            hidden = (hidden,)
        hidden = tuple(hidden)
        for name, value in [("input_size", self.input_size), ("output_size", self.output_size)]:
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
                raise InvalidConfiguration(f"{name} 必須為正整數，目前為 {value!r}")
        for width in hidden:
            if isinstance(width, bool) or not isinstance(width, (int, np.integer)) or width <= 0:
                raise InvalidConfiguration(f"隱藏層寬度必須為正整數，目前為 {hidden!r}")
        if self.output_size != 2:
            raise InvalidConfiguration("只支援兩個互斥類別，output_size 必須為 2。")
        object.__setattr__(self, "input_size", int(self.input_size))
        object.__setattr__(self, "hidden", tuple(int(w) for w in hidden))

    @property
    def layer_sizes(self) -> Tuple[int, ...]:
        return (self.input_size, *self.hidden, self.output_size)

    @property
    def transitions(self) -> List[Tuple[int, int]]:
        sizes = self.layer_sizes
        return [(sizes[i], sizes[i + 1]) for i in range(len(sizes) - 1)]

    @property
    def n_transitions(self) -> int:
        return len(self.layer_sizes) - 1

    @property
    def n_parameters(self) -> int:
        return sum((n_in + 1) * n_out for n_in, n_out in self.transitions)

    def _offsets(self) -> List[int]:
        offsets, running = [], 0
        for n_in, n_out in self.transitions:
            offsets.append(running)
            running += (n_in + 1) * n_out
        return offsets

    def weight_index(self, layer: int, input_neuron: int, output_neuron: int) -> int:
        """把 1-based 的 (layer, input_neuron, output_neuron) 轉成扁平向量索引。"""
        if not 1 <= layer <= self.n_transitions:
            raise InvalidConfiguration(f"layer={layer} 超出範圍 1..{self.n_transitions}")
        n_in, n_out = self.transitions[layer - 1]
        if not 1 <= input_neuron <= n_in + 1:
            raise InvalidConfiguration(
                f"第 {layer} 層的 input_neuron={input_neuron} 超出範圍 1..{n_in + 1}"
            )
        if not 1 <= output_neuron <= n_out:
            raise InvalidConfiguration(
                f"第 {layer} 層的 output_neuron={output_neuron} 超出範圍 1..{n_out}"
            )
        offset = self._offsets()[layer - 1]
        if input_neuron == 1:
            # 偏置存放在該層矩陣之後
            return offset + n_in * n_out + (output_neuron - 1)
        return offset + (input_neuron - 2) * n_out + (output_neuron - 1)

    def split(self, vector: np.ndarray) -> List[Layer]:
        """把扁平向量切成各層 (W, b) 的 view（不複製）。"""
        if vector.shape != (self.n_parameters,):
            raise DimensionMismatch(
                f"參數向量長度 {vector.shape} 與拓樸需要的 {self.n_parameters} 不符"
            )
        layers: List[Layer] = []
        start = 0
        for n_in, n_out in self.transitions:
            stop = start + n_in * n_out
            W = vector[start:stop].reshape(n_in, n_out)
            b = vector[stop : stop + n_out]
            layers.append((W, b))
            start = stop + n_out
        return layers


@dataclass(frozen=True, eq=False)
class WeightSet:
    """一組完整的網路參數，連同訓練時使用的評估規則（激活函數、是否線性輸出）。

    所有陣列在建構時複製並設為唯讀：WeightSet 一旦交給呼叫端就不會再變動。
    """

    matrices: Tuple[np.ndarray, ...]
    biases: Tuple[np.ndarray, ...]
    activation: Activation = Activation.LOGISTIC
    linear_output: bool = False

    def __post_init__(self) -> None:
        if len(self.matrices) != len(self.biases):
            raise DimensionMismatch("權重矩陣與偏置向量的層數不一致")
        matrices, biases = [], []
        for W, b in zip(self.matrices, self.biases):
            W = np.array(W, dtype=np.float64, copy=True)
            b = np.array(b, dtype=np.float64, copy=True).reshape(-1)
            if W.ndim != 2 or W.shape[1] != b.shape[0]:
                raise DimensionMismatch(f"權重 {W.shape} 與偏置 {b.shape} 形狀不相容")
            W.setflags(write=False)
            b.setflags(write=False)
            matrices.append(W)
            biases.append(b)
        for prev, nxt in zip(matrices, matrices[1:]):
            if prev.shape[1] != nxt.shape[0]:
                raise DimensionMismatch(f"相鄰層形狀 {prev.shape} → {nxt.shape} 無法串接")
        object.__setattr__(self, "matrices", tuple(matrices))
        object.__setattr__(self, "biases", tuple(biases))
        object.__setattr__(self, "activation", Activation.parse(self.activation))
        object.__setattr__(self, "linear_output", bool(self.linear_output))

    @classmethod
    def from_vector(
        cls,
        topology: Topology,
        vector: np.ndarray,
        activation: Union[str, Activation] = Activation.LOGISTIC,
        linear_output: bool = False,
    ) -> "WeightSet":
        layers = topology.split(np.asarray(vector, dtype=np.float64))
        return cls(
            matrices=tuple(W for W, _ in layers),
            biases=tuple(b for _, b in layers),
            activation=activation,
            linear_output=linear_output,
        )

    def to_vector(self) -> np.ndarray:
        parts = []
        for W, b in self.layers():
            parts.append(W.ravel())
            parts.append(b)
        return np.concatenate(parts)

    def layers(self) -> List[Layer]:
        return list(zip(self.matrices, self.biases))

    @property
    def layer_sizes(self) -> Tuple[int, ...]:
        return (self.matrices[0].shape[0], *(W.shape[1] for W in self.matrices))

    def matches(self, topology: Topology) -> bool:
        return self.layer_sizes == topology.layer_sizes

    def require(self, topology: Topology) -> None:
        if not self.matches(topology):
            raise DimensionMismatch(
                f"權重的層寬 {self.layer_sizes} 與拓樸 {topology.layer_sizes} 不一致"
            )

    def __getitem__(self, key: WeightKey) -> float:
        """以 1-based (layer, input_neuron, output_neuron) 讀取單一權重。"""
        layer, input_neuron, output_neuron = key
        if not 1 <= layer <= len(self.matrices):
            raise IndexError(f"layer={layer} 超出範圍")
        if input_neuron == 1:
            return float(self.biases[layer - 1][output_neuron - 1])
        return float(self.matrices[layer - 1][input_neuron - 2, output_neuron - 1])

    def equals(self, other: "WeightSet") -> bool:
        """逐位元比較（含評估規則）。"""
        return (
            self.activation is other.activation
            and self.linear_output == other.linear_output
            and len(self.matrices) == len(other.matrices)
            and all(np.array_equal(a, b) for a, b in zip(self.matrices, other.matrices))
            and all(np.array_equal(a, b) for a, b in zip(self.biases, other.biases))
        )


# ---------------------------------------------------------------------------
# 前向傳播

def as_feature_matrix(features: Any, topology: Topology) -> np.ndarray:
    """把輸入整理成 (N, F)，並檢查 F 是否等於拓樸的輸入寬度。"""
    matrix = np.asarray(getattr(features, "features", features), dtype=np.float64)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    if matrix.ndim != 2 or matrix.shape[1] != topology.input_size:
        raise DimensionMismatch(
            f"特徵長度 {matrix.shape[-1] if matrix.ndim else 0} 與輸入層寬度 {topology.input_size} 不符"
        )
    return matrix


def forward_pass(
    layers: Sequence[Layer],
    features: np.ndarray,
    activation: Activation,
    linear_output: bool,
) -> List[np.ndarray]:
    """逐層計算激活值，回傳 [A^0 = X, A^1, ..., A^L]。"""
    activations = [features]
    a = features
    last = len(layers) - 1
    for idx, (W, b) in enumerate(layers):
        # 仿射變換 Z^l = A^{l-1} W^l + b^l（偏置等同於常數輸入 1 乘上偏置列）
        z = a @ W + b
        if idx == last and linear_output:
            a = z
        else:
            a = activation(z)
        activations.append(a)
    return activations


def layer_outputs(weights: WeightSet, topology: Topology, features: Any) -> List[np.ndarray]:
    """回傳每一層的輸出（含輸入層本身）。"""
    weights.require(topology)
    X = as_feature_matrix(features, topology)
    return forward_pass(weights.layers(), X, weights.activation, weights.linear_output)


def forward(weights: WeightSet, topology: Topology, features: Any) -> np.ndarray:
    """前向傳播，回傳輸出層的值。

    輸入為單一特徵向量時回傳 (2,)，輸入為矩陣時回傳 (N, 2)。
    沒有任何隨機性：同樣的輸入與權重永遠得到同樣的輸出。
    """
    single = np.ndim(getattr(features, "features", features)) == 1
    output = layer_outputs(weights, topology, features)[-1]
    return output[0] if single else output


# ---------------------------------------------------------------------------
# 反向傳播

def backward_pass(
    layers: Sequence[Layer],
    activations: Sequence[np.ndarray],
    targets: np.ndarray,
    activation: Activation,
    linear_output: bool,
    error_function: ErrorFunction,
) -> List[Layer]:
    """由輸出往輸入方向累積誤差訊號，回傳每層 (dE/dW, dE/db)。

    - 輸出層 delta = dE/do * f'(Z_L)；線性輸出時 f' = 1。
      logistic 輸出 + CE 時兩者相乘化簡為 o - y，直接使用以免在飽和區相除。
    - 隱藏層 delta_{l-1} = (delta_l @ W_l^T) * f'(Z_{l-1})
    - dW_l = A_{l-1}^T @ delta_l；db_l = sum(delta_l)（對所有樣本加總）
    """
    output = activations[-1]  # (N, 2)，輸出層的值
    if linear_output:
        # 線性輸出：f(z) = z，f' = 1
        delta = error_function.derivative(output, targets)
    elif error_function is ErrorFunction.CE and activation is Activation.LOGISTIC:
        # CE 與 logistic 的導數相乘後化簡為 o - y
        delta = output - targets
    else:
        # 一般情況：dE/do * f'(Z_L)，f' 由輸出值本身計算
        delta = error_function.derivative(output, targets) * activation.derivative(output)

    grads: List[Optional[Layer]] = [None] * len(layers)
    for idx in reversed(range(len(layers))):  # 由最後一層往輸入層
        W, _ = layers[idx]
        # activations[idx] 是本層的輸入 A_{l-1}；對樣本維度加總得到整批梯度
        grads[idx] = (activations[idx].T @ delta, delta.sum(axis=0))
        if idx > 0:
            # 誤差訊號透過 W^T 傳回上一層，再乘上該層激活函數的導數
            delta = (delta @ W.T) * activation.derivative(activations[idx])
    return grads  # type: ignore[return-value]


def _as_target_matrix(targets: Any, n_samples: int) -> np.ndarray:
    matrix = np.asarray(targets, dtype=np.float64)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    if matrix.shape != (n_samples, 2):
        raise DimensionMismatch(f"目標矩陣形狀 {matrix.shape} 應為 ({n_samples}, 2)")
    return matrix


def check_output_layer(
    activation: Union[str, Activation],
    error_function: Union[str, ErrorFunction],
    linear_output: bool,
) -> None:
    """CE 只適用於 logistic 輸出層（輸出落在 (0, 1)）；其他組合拋出 InvalidConfiguration。"""
    if ErrorFunction.parse(error_function) is not ErrorFunction.CE:
        return
    if linear_output:
        raise InvalidConfiguration("error_function='ce' 不能搭配 linear_output=True。")
    if Activation.parse(activation) is not Activation.LOGISTIC:
        raise InvalidConfiguration("error_function='ce' 需要 logistic 輸出層。")


class BatchObjective:
    """固定一批 (features, targets)，把扁平參數向量映射成 (誤差, 梯度向量)。

    trainer 的每一步都呼叫一次；梯度為整批樣本的總和（full-batch）。
    """

    def __init__(
        self,
        topology: Topology,
        features: np.ndarray,
        targets: np.ndarray,
        activation: Activation,
        error_function: ErrorFunction,
        linear_output: bool,
    ) -> None:
        # 在任何計算之前先擋掉 CE + 非 logistic 輸出（clip 後的誤差與導數會不一致）
        check_output_layer(activation, error_function, linear_output)
        self.topology = topology
        self.features = as_feature_matrix(features, topology)
        self.targets = _as_target_matrix(targets, self.features.shape[0])
        self.activation = Activation.parse(activation)
        self.error_function = ErrorFunction.parse(error_function)
        self.linear_output = bool(linear_output)

    def error(self, vector: np.ndarray) -> float:
        layers = self.topology.split(vector)
        output = forward_pass(layers, self.features, self.activation, self.linear_output)[-1]
        return self.error_function(output, self.targets)

    def __call__(self, vector: np.ndarray) -> Tuple[float, np.ndarray]:
        layers = self.topology.split(vector)
        activations = forward_pass(layers, self.features, self.activation, self.linear_output)
        error = self.error_function(activations[-1], self.targets)
        grads = backward_pass(
            layers, activations, self.targets, self.activation, self.linear_output, self.error_function
        )
        flat = np.concatenate([part for gW, gb in grads for part in (gW.ravel(), gb)])
        return error, flat


def compute_gradients(
    weights: WeightSet,
    topology: Topology,
    features: Any,
    targets: Any,
    error_function: Union[str, ErrorFunction] = ErrorFunction.SSE,
) -> Tuple[WeightSet, float]:
    """計算誤差對每個權重與偏置的偏導數。

    參數
    ----
    weights        : 目前的網路參數（含激活函數設定）
    features       : 單一特徵向量 (F,) 或矩陣 (N, F)，也可直接傳入 Dataset
    targets        : 對應的 one-hot 目標 (2,) 或 (N, 2)；傳入 Dataset 時用其 targets
    error_function : "sse" 或 "ce"

    回傳
    ----
    (gradient, error)：gradient 與 weights 同形狀的 WeightSet，error 為誤差值。
    """
    weights.require(topology)
    if targets is None and hasattr(features, "targets"):
        targets = features.targets
    objective = BatchObjective(
        topology,
        features,
        targets,
        weights.activation,
        ErrorFunction.parse(error_function),
        weights.linear_output,
    )
    error, flat = objective(weights.to_vector())
    gradient = WeightSet.from_vector(topology, flat, weights.activation, weights.linear_output)
    return gradient, error


# ---------------------------------------------------------------------------
# 梯度檢查（有限差分）

def numerical_gradient(objective: BatchObjective, vector: np.ndarray, epsilon: float = 1e-6) -> np.ndarray:
    """以中央差分近似梯度：(f(θ+ε) - f(θ-ε)) / (2ε)。"""
    theta = np.array(vector, dtype=np.float64, copy=True)
    grad = np.zeros_like(theta)
    for i in range(theta.shape[0]):
        original = theta[i]
        theta[i] = original + epsilon
        plus = objective.error(theta)
        theta[i] = original - epsilon
        minus = objective.error(theta)
        theta[i] = original  # 還原
        grad[i] = (plus - minus) / (2.0 * epsilon)
    return grad


def gradient_check(
    weights: WeightSet,
    topology: Topology,
    features: Any,
    targets: Any,
    error_function: Union[str, ErrorFunction] = ErrorFunction.SSE,
    epsilon: float = 1e-6,
    indices: Optional[Iterable[int]] = None,
) -> float:
    """比較解析梯度與數值梯度，回傳最大相對誤差。

    - 相對誤差 = |g_ana - g_num| / max(|g_ana|, |g_num|)
    - 兩者皆為 0 的項目略過（相對誤差無意義）
    - indices 可只檢查部分參數；預設檢查全部
    """
    weights.require(topology)
    if targets is None and hasattr(features, "targets"):
        targets = features.targets
    objective = BatchObjective(
        topology,
        features,
        targets,
        weights.activation,
        ErrorFunction.parse(error_function),
        weights.linear_output,
    )
    vector = weights.to_vector()
    _, analytic = objective(vector)
    numerical = numerical_gradient(objective, vector, epsilon)

    positions = range(vector.shape[0]) if indices is None else indices
    max_error = 0.0
    for i in positions:
        a, n = analytic[i], numerical[i]
        if a == 0 and n == 0:
            continue
        max_error = max(max_error, abs(a - n) / max(abs(a), abs(n)))
    return float(max_error)
