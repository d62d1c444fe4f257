"""
tumornet：以純 NumPy 實作、可多次重複訓練的前饋神經網路

主要入口
--------
- train(dataset, topology, config, repetitions, seed) -> TrainingResult
- predict(weights, topology, dataset) -> PredictionOutput
- evaluate(prediction, labels) -> (ConfusionTable, accuracy)
- select_best_repetition(result, dataset) -> Repetition
"""

from .dataset import Dataset
from .errors import (
    DimensionMismatch,
    InvalidConfiguration,
    NoUsableRepetition,
    TerminationReason,
    TumorNetError,
)
from .evaluation import (
    ConfusionTable,
    PredictionOutput,
    accuracy_table,
    evaluate,
    predict,
    select_best_repetition,
)
from .functions import Activation, ErrorFunction
from .network import Topology, WeightSet, compute_gradients, forward, gradient_check
from .serialization import load_model, save_model, weight_set_from_dict, weight_set_to_dict
from .trainer import Repetition, TrainingConfig, TrainingResult, train

__all__ = [
    "Activation",
    "ConfusionTable",
    "Dataset",
    "DimensionMismatch",
    "ErrorFunction",
    "InvalidConfiguration",
    "NoUsableRepetition",
    "PredictionOutput",
    "Repetition",
    "TerminationReason",
    "Topology",
    "TrainingConfig",
    "TrainingResult",
    "TumorNetError",
    "WeightSet",
    "accuracy_table",
    "compute_gradients",
    "evaluate",
    "forward",
    "gradient_check",
    "load_model",
    "predict",
    "save_model",
    "select_best_repetition",
    "train",
    "weight_set_from_dict",
    "weight_set_to_dict",
]

__version__ = "0.1.0"
