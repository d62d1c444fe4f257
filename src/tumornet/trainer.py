"""
多次重複訓練（repetitions）

每個 repetition：
1. 由獨立的亂數子序列抽出初始權重（start weights）
2. full-batch：整個訓練集的梯度加總後更新一次權重
3. 最大梯度絕對值 <= threshold 即收斂；否則跑到 step_ceiling 為止
4. 結束後才把權重包成唯讀 WeightSet 交出去

repetition 之間沒有共享的可變狀態，n_jobs > 1 時以執行緒池平行執行。
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from tqdm.auto import tqdm

from .dataset import Dataset
from .errors import DimensionMismatch, InvalidConfiguration, TerminationReason
from .functions import Activation, ErrorFunction
from .network import BatchObjective, Topology, WeightKey, WeightSet, check_output_layer
from .strategies import STRATEGIES, build_strategy

SeedLike = Union[None, int, np.random.SeedSequence, np.random.Generator]

# camelCase（外部介面）→ snake_case 欄位名
_OPTION_ALIASES = {
    "errorFunction": "error_function",
    "err_fct": "error_function",
    "linearOutput": "linear_output",
    "stepCeiling": "step_ceiling",
    "stepmax": "step_ceiling",
    "learningRate": "learning_rate",
    "learningRateBounds": "learning_rate_bounds",
    "learningRateFactors": "learning_rate_factors",
    "initialStep": "initial_step",
    "excludedWeights": "excluded_weights",
    "fixedWeights": "fixed_weights",
    "computeLikelihoodCriteria": "compute_likelihood_criteria",
    "initDistribution": "init_distribution",
    "initScale": "init_scale",
    "recordEvery": "record_every",
    "algorithm": "strategy",
}


def _as_key(key: Any) -> WeightKey:
    if isinstance(key, str):
        key = [part for part in key.replace("(", "").replace(")", "").split(",") if part.strip()]
    parts = tuple(int(k) for k in key)
    if len(parts) != 3:
        raise InvalidConfiguration(f"權重鍵必須是 (layer, input_neuron, output_neuron)，目前為 {key!r}")
    return parts  # type: ignore[return-value]


@dataclass(frozen=True)
class TrainingConfig:
    """訓練演算法設定；預設值對應 rprop+ / logistic / SSE。"""

    strategy: str = "rprop+"
    activation: Activation = Activation.LOGISTIC
    error_function: ErrorFunction = ErrorFunction.SSE
    linear_output: bool = False
    threshold: float = 0.01
    step_ceiling: int = 100_000
    learning_rate: Optional[float] = None
    learning_rate_bounds: Optional[Tuple[float, float]] = (1e-10, 0.1)
    learning_rate_factors: Tuple[float, float] = (0.5, 1.2)
    initial_step: float = 0.1
    excluded_weights: FrozenSet[WeightKey] = frozenset()
    fixed_weights: Mapping[WeightKey, float] = field(default_factory=dict)
    compute_likelihood_criteria: bool = False
    init_distribution: str = "normal"
    init_scale: float = 1.0
    record_every: int = 1000

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategy", str(self.strategy).strip().lower())
        object.__setattr__(self, "activation", Activation.parse(self.activation))
        object.__setattr__(self, "error_function", ErrorFunction.parse(self.error_function))
        object.__setattr__(self, "excluded_weights", frozenset(_as_key(k) for k in self.excluded_weights))
        fixed = self.fixed_weights
        if not isinstance(fixed, Mapping):
            # 也接受 [[layer, input, output, value], ...]（to_dict 的輸出格式）
            fixed = {tuple(row[:3]): row[3] for row in fixed}
        object.__setattr__(self, "fixed_weights", {_as_key(k): float(v) for k, v in fixed.items()})
        if self.learning_rate_bounds is not None:
            object.__setattr__(self, "learning_rate_bounds", tuple(float(v) for v in self.learning_rate_bounds))
        object.__setattr__(self, "learning_rate_factors", tuple(float(v) for v in self.learning_rate_factors))

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "TrainingConfig":
        """接受 camelCase 或 snake_case 的選項字典。"""
        known = set(cls.__dataclass_fields__)
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise InvalidConfiguration(f"未知的訓練選項：{key!r}")
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["activation"] = self.activation.value
        data["error_function"] = self.error_function.value
        data["excluded_weights"] = sorted(list(k) for k in self.excluded_weights)
        data["fixed_weights"] = [[*k, v] for k, v in sorted(self.fixed_weights.items())]
        return data

    def validate(self, topology: Topology) -> None:
        """在任何計算開始前檢查設定；不合法時拋出 InvalidConfiguration。"""
        if self.strategy not in STRATEGIES:
            raise InvalidConfiguration(f"不支援的更新規則：{self.strategy!r}（可用：{', '.join(STRATEGIES)}）")
        if not (isinstance(self.threshold, (int, float)) and self.threshold > 0):
            raise InvalidConfiguration(f"threshold 必須 > 0，目前為 {self.threshold!r}")
        if isinstance(self.step_ceiling, bool) or not isinstance(self.step_ceiling, (int, np.integer)) \
                or self.step_ceiling <= 0:
            raise InvalidConfiguration(f"step_ceiling 必須為正整數，目前為 {self.step_ceiling!r}")
        if self.strategy == "backprop":
            if self.learning_rate is None or not self.learning_rate > 0:
                raise InvalidConfiguration("backprop 需要設定正的 learning_rate。")
        else:
            if self.learning_rate_bounds is None:
                raise InvalidConfiguration(f"{self.strategy} 需要設定 learning_rate_bounds (min, max)。")
            if len(self.learning_rate_bounds) != 2:
                raise InvalidConfiguration("learning_rate_bounds 必須是 (min, max)。")
            low, high = self.learning_rate_bounds
            if not (0 < low <= high and math.isfinite(high)):
                raise InvalidConfiguration(f"learning_rate_bounds 需滿足 0 < min <= max，目前為 {self.learning_rate_bounds}")
            minus, plus = self.learning_rate_factors
            if not (0 < minus < 1 < plus):
                raise InvalidConfiguration(f"learning_rate_factors 需滿足 0 < minus < 1 < plus，目前為 {self.learning_rate_factors}")
        # CE 需要 (0, 1) 範圍的輸出
        check_output_layer(self.activation, self.error_function, self.linear_output)
        if self.compute_likelihood_criteria and self.error_function is not ErrorFunction.CE:
            raise InvalidConfiguration("AIC/BIC 只在 error_function='ce'（負對數概似）時有意義。")
        if self.init_distribution not in ("normal", "uniform"):
            raise InvalidConfiguration(f"init_distribution 只能是 normal 或 uniform，目前為 {self.init_distribution!r}")
        if not self.init_scale > 0:
            raise InvalidConfiguration("init_scale 必須 > 0。")
        if int(self.record_every) <= 0:
            raise InvalidConfiguration("record_every 必須為正整數。")

        overlap = self.excluded_weights & set(self.fixed_weights)
        if overlap:
            raise InvalidConfiguration(f"權重不能同時被排除與固定：{sorted(overlap)}")
        for key in self.excluded_weights:
            topology.weight_index(*key)
        for key, value in self.fixed_weights.items():
            topology.weight_index(*key)
            if not math.isfinite(value):
                raise InvalidConfiguration(f"固定權重 {key} 的值必須是有限數值")

    def constraints(self, topology: Topology) -> Tuple[np.ndarray, np.ndarray]:
        """回傳 (mask, constant)：mask 為 True 的位置可訓練；其餘位置取 constant 的值。"""
        mask = np.ones(topology.n_parameters, dtype=bool)
        constant = np.zeros(topology.n_parameters, dtype=np.float64)
        for key in self.excluded_weights:
            mask[topology.weight_index(*key)] = False
        for key, value in self.fixed_weights.items():
            idx = topology.weight_index(*key)
            mask[idx] = False
            constant[idx] = value
        return mask, constant


@dataclass(frozen=True, eq=False)
class Repetition:
    """一次完整的訓練結果；訓練結束後不再變動。"""

    index: int
    start_weights: WeightSet
    weights: WeightSet
    steps: int
    error: float
    reached_threshold: float
    status: TerminationReason
    aic: Optional[float] = None
    bic: Optional[float] = None
    history: Tuple[Tuple[int, float], ...] = ()

    @property
    def converged(self) -> bool:
        return self.status.converged

    @property
    def failed(self) -> bool:
        return self.status.failed


@dataclass(frozen=True, eq=False)
class TrainingResult:
    """一次 train() 產生的所有 repetition，以 1-based 索引存取。"""

    repetitions: Tuple[Repetition, ...]
    topology: Topology
    config: TrainingConfig
    n_samples: int

    def __len__(self) -> int:
        return len(self.repetitions)

    def __iter__(self) -> Iterator[Repetition]:
        return iter(self.repetitions)

    def __getitem__(self, index: int) -> Repetition:
        if not 1 <= index <= len(self.repetitions):
            raise IndexError(f"repetition 索引 {index} 超出範圍 1..{len(self.repetitions)}")
        return self.repetitions[index - 1]

    @property
    def usable(self) -> List[Repetition]:
        return [rep for rep in self.repetitions if not rep.failed]

    @property
    def converged(self) -> List[Repetition]:
        return [rep for rep in self.repetitions if rep.converged]

    def summary(self) -> pd.DataFrame:
        """每個 repetition 一列：error / reached_threshold / steps / status / aic / bic。"""
        rows = [
            {
                "repetition": rep.index,
                "error": rep.error,
                "reached_threshold": rep.reached_threshold,
                "steps": rep.steps,
                "status": rep.status.value,
                "aic": rep.aic,
                "bic": rep.bic,
            }
            for rep in self.repetitions
        ]
        return pd.DataFrame(rows).set_index("repetition")


# ---------------------------------------------------------------------------

def spawn_seeds(seed: SeedLike, count: int) -> List[np.random.SeedSequence]:
    """把呼叫端提供的亂數來源展開成 count 個互相獨立的子序列。

    傳入 SeedSequence 時不會改動它（不呼叫 spawn），同一個 SeedSequence 重複使用
    會得到相同的子序列；Generator 則本來就是會前進的串流。
    """
    if isinstance(seed, np.random.Generator):
        entropy = seed.integers(0, 2**63 - 1, size=count)
        return [np.random.SeedSequence(int(e)) for e in entropy]
    sequence = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    # 與 sequence.spawn 相同的推導方式：第 k 個子序列的 spawn_key 為 (*parent_key, k)
    return [
        np.random.SeedSequence(
            sequence.entropy,
            spawn_key=(*sequence.spawn_key, sequence.n_children_spawned + k),
            pool_size=sequence.pool_size,
        )
        for k in range(count)
    ]


def _initial_vector(rng: np.random.Generator, size: int, config: TrainingConfig) -> np.ndarray:
    if config.init_distribution == "uniform":
        return rng.uniform(-config.init_scale, config.init_scale, size=size)
    return rng.normal(0.0, config.init_scale, size=size)


def _all_finite(error: float, *arrays: np.ndarray) -> bool:
    return math.isfinite(error) and all(bool(np.isfinite(a).all()) for a in arrays)


def _run_repetition(
    index: int,
    seed: np.random.SeedSequence,
    topology: Topology,
    config: TrainingConfig,
    objective: BatchObjective,
    mask: np.ndarray,
    constant: np.ndarray,
    stop_event: Any = None,
    progress: bool = False,
) -> Repetition:
    rng = np.random.default_rng(seed)  # 每個 repetition 自己的 Generator，不與其他 repetition 共用
    vector = _initial_vector(rng, topology.n_parameters, config)
    vector[~mask] = constant[~mask]  # 排除的權重歸零、固定的權重填入常數
    start_weights = WeightSet.from_vector(topology, vector, config.activation, config.linear_output)

    strategy = build_strategy(
        config.strategy,
        topology.n_parameters,
        learning_rate=config.learning_rate,
        bounds=config.learning_rate_bounds,
        factors=config.learning_rate_factors,
        initial_step=config.initial_step,
    )
    record_every = int(config.record_every)

    error, grad = objective(vector)
    grad[~mask] = 0.0  # 不可訓練的權重不參與收斂判斷
    history = [(0, error)]  # (step, error)，第 0 步為初始權重的誤差
    steps = 0
    status: Optional[TerminationReason] = None
    if not _all_finite(error, grad):
        status = TerminationReason.DIVERGED
    # 收斂指標：可訓練權重的最大梯度絕對值
    reached = float(np.max(np.abs(grad))) if status is None and grad.size else 0.0

    bar = tqdm(
        total=config.step_ceiling,
        desc=f"repetition {index}",
        unit="step",
        leave=False,
        disable=not progress,
    )
    # ======================== 主訓練迴圈 ========================
    while status is None:
        # 終止條件依序檢查：收斂 → step 上限 → 外部取消
        if reached <= config.threshold:
            status = TerminationReason.THRESHOLD_REACHED
            break
        if steps >= config.step_ceiling:
            status = TerminationReason.STEP_CEILING
            break
        if stop_event is not None and stop_event.is_set():
            status = TerminationReason.CANCELLED
            break

        strategy.step(vector, grad, mask)  # 就地更新扁平權重向量
        steps += 1

        # 以更新後的權重重新計算整批誤差與梯度
        error, grad = objective(vector)
        grad[~mask] = 0.0
        if not _all_finite(error, vector, grad):
            # 出現 NaN/Inf：只結束這個 repetition，其他 repetition 不受影響
            status = TerminationReason.DIVERGED
            break
        reached = float(np.max(np.abs(grad)))

        if steps % record_every == 0:  # 依 record_every 取樣誤差曲線並更新進度條
            history.append((steps, error))
            bar.update(record_every)
            bar.set_postfix(error=f"{error:.4f}", max_grad=f"{reached:.2e}")
    bar.close()

    if history[-1][0] != steps:
        history.append((steps, error))

    aic = bic = None
    if config.compute_likelihood_criteria:
        # 自由參數個數：排除與固定的權重不計
        k = int(mask.sum())
        aic = 2.0 * error + 2.0 * k
        bic = 2.0 * error + math.log(objective.features.shape[0]) * k

    return Repetition(
        index=index,
        start_weights=start_weights,
        weights=WeightSet.from_vector(topology, vector, config.activation, config.linear_output),
        steps=steps,
        error=float(error),
        reached_threshold=reached,
        status=status,
        aic=aic,
        bic=bic,
        history=tuple(history),
    )


def train(
    dataset: Dataset,
    topology: Topology,
    config: Union[TrainingConfig, Mapping[str, Any], None] = None,
    repetitions: int = 1,
    seed: SeedLike = None,
    n_jobs: int = 1,
    stop_event: Any = None,
    progress: bool = False,
) -> TrainingResult:
    """訓練 `repetitions` 個獨立初始化的網路。

    參數
    ----
    dataset     : 訓練資料（特徵數需等於 topology.input_size）
    topology    : 網路拓樸
    config      : TrainingConfig 或選項字典（camelCase / snake_case 皆可）
    repetitions : 重複次數，每次使用獨立的初始權重
    seed        : int / SeedSequence / Generator；相同 seed 得到完全相同的結果
    n_jobs      : > 1 時以執行緒池平行訓練各 repetition，結果與 n_jobs 無關
    stop_event  : 具 is_set() 的物件（如 threading.Event）；設定後各 repetition 在下一步結束
    progress    : 是否顯示每個 repetition 的 tqdm 進度條

    回傳
    ----
    TrainingResult，result[1] .. result[repetitions]
    """
    if config is None:
        config = TrainingConfig()
    elif not isinstance(config, TrainingConfig):
        config = TrainingConfig.from_mapping(config)

    if dataset.n_features != topology.input_size:
        raise DimensionMismatch(
            f"資料集有 {dataset.n_features} 個特徵，但輸入層寬度為 {topology.input_size}"
        )
    if isinstance(repetitions, bool) or not isinstance(repetitions, (int, np.integer)) or repetitions < 1:
        raise InvalidConfiguration(f"repetitions 必須為正整數，目前為 {repetitions!r}")
    if not isinstance(n_jobs, (int, np.integer)) or n_jobs < 1:
        raise InvalidConfiguration(f"n_jobs 必須為正整數，目前為 {n_jobs!r}")
    config.validate(topology)

    mask, constant = config.constraints(topology)
    objective = BatchObjective(
        topology,
        dataset.features,
        dataset.targets,
        config.activation,
        config.error_function,
        config.linear_output,
    )
    seeds = spawn_seeds(seed, int(repetitions))
    runner = partial(
        _run_repetition,
        topology=topology,
        config=config,
        objective=objective,
        mask=mask,
        constant=constant,
        stop_event=stop_event,
        progress=progress,
    )
    indices = range(1, int(repetitions) + 1)

    if n_jobs == 1:
        results = [runner(i, s) for i, s in zip(indices, seeds)]
    else:
        with ThreadPoolExecutor(max_workers=int(n_jobs)) as pool:
            results = list(pool.map(runner, indices, seeds))

    return TrainingResult(
        repetitions=tuple(results),
        topology=topology,
        config=config,
        n_samples=dataset.n_samples,
    )
