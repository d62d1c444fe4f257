"""模型參數的存取：dict（可轉 JSON）與 pickle 檔，兩者都能逐位元還原。"""

from __future__ import annotations

import pickle  # 最佳模型以 pickle 存檔，方便之後重新載入評估
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import numpy as np

from .errors import DimensionMismatch
from .network import Topology, WeightSet
from .trainer import Repetition


def weight_set_to_dict(weights: WeightSet, topology: Topology) -> Dict[str, Any]:
    """取出參數快照；float 以 Python float 保存，repr 可逐位元還原。"""
    weights.require(topology)
    return {
        "topology": {
            "input_size": topology.input_size,
            "hidden": list(topology.hidden),
            "output_size": topology.output_size,
        },
        "activation": weights.activation.value,
        "linear_output": weights.linear_output,
        "weights": [W.tolist() for W in weights.matrices],
        "biases": [b.tolist() for b in weights.biases],
    }


def weight_set_from_dict(data: Dict[str, Any]) -> Tuple[WeightSet, Topology]:
    """由 weight_set_to_dict 的輸出重建 (WeightSet, Topology)。"""
    topo = data["topology"]
    topology = Topology(
        input_size=topo["input_size"],
        hidden=tuple(topo["hidden"]),
        output_size=topo.get("output_size", 2),
    )
    weights = WeightSet(
        matrices=tuple(np.asarray(W, dtype=np.float64).reshape(n_in, n_out)
                       for W, (n_in, n_out) in zip(data["weights"], topology.transitions)),
        biases=tuple(np.asarray(b, dtype=np.float64) for b in data["biases"]),
        activation=data.get("activation", "logistic"),
        linear_output=data.get("linear_output", False),
    )
    if len(weights.matrices) != topology.n_transitions:
        raise DimensionMismatch("存檔中的層數與拓樸不一致")
    weights.require(topology)
    return weights, topology


def save_model(path: Union[str, Path], weights: Union[WeightSet, Repetition], topology: Topology) -> Path:
    """以 pickle 保存參數快照（numpy 陣列原樣寫入）。"""
    if isinstance(weights, Repetition):
        weights = weights.weights
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    state = weight_set_to_dict(weights, topology)
    state["weights"] = [np.array(W) for W in weights.matrices]
    state["biases"] = [np.array(b) for b in weights.biases]
    with path.open("wb") as fp:
        pickle.dump(state, fp)
    return path


def load_model(path: Union[str, Path]) -> Tuple[WeightSet, Topology]:
    with Path(path).open("rb") as fp:
        state = pickle.load(fp)
    return weight_set_from_dict(state)
