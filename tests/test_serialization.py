"""模型參數存取。"""

import json

import numpy as np

from tumornet import (
    Topology,
    WeightSet,
    load_model,
    predict,
    save_model,
    train,
    weight_set_from_dict,
    weight_set_to_dict,
)


class TestRoundTrip:

    def test_dict_survives_json(self, blob_dataset):
        topology = Topology(4, (3, 2))
        rep = train(blob_dataset, topology, {"stepCeiling": 50, "activation": "tanh"}, seed=1)[1]
        data = json.loads(json.dumps(weight_set_to_dict(rep.weights, topology)))
        weights, restored_topology = weight_set_from_dict(data)
        assert restored_topology == topology
        assert weights.equals(rep.weights)
        np.testing.assert_array_equal(
            predict(weights, restored_topology, blob_dataset).scores,
            predict(rep, topology, blob_dataset).scores,
        )

    def test_pickle_file(self, tmp_path, blob_dataset):
        topology = Topology(4)
        rep = train(blob_dataset, topology, {"stepCeiling": 20, "linearOutput": True}, seed=2)[1]
        path = save_model(tmp_path / "models" / "best.pkl", rep, topology)
        weights, restored_topology = load_model(path)
        assert restored_topology == topology
        assert weights.equals(rep.weights)
        assert weights.linear_output is True

    def test_topology_without_hidden_layers(self):
        topology = Topology(2)
        ws = WeightSet.from_vector(topology, np.arange(6, dtype=float))
        weights, _ = weight_set_from_dict(weight_set_to_dict(ws, topology))
        assert weights.equals(ws)
