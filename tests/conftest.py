import pytest
import torch

from tensor_backend import TensorBackend


@pytest.fixture(autouse=True)
def seeded():
    torch.manual_seed(0)


@pytest.fixture
def backend():
    return TensorBackend('cpu')


@pytest.fixture
def toy_level_configs():
    """ Two 4-dim levels: L0 reads raw sensors and L1 top-down, L1 reads L0 bottom-up. """
    def make(learning_rate=0.0, weight_decay=0.0, l0_external=None, l1_external=None):
        l0 = {"name": "L0", "dim": 4, "raw_sensory_input_dim": 4,
              "bu_source_level_names": [], "td_source_level_names": ["L1"],
              "nmm_params": {"learning_rate": learning_rate, "weight_decay": weight_decay}}
        l1 = {"name": "L1", "dim": 4,
              "bu_source_level_names": ["L0"], "td_source_level_names": [],
              "nmm_params": {"learning_rate": learning_rate, "weight_decay": weight_decay}}
        if l0_external: l0["external_input_config"] = l0_external
        if l1_external: l1["external_input_config"] = l1_external
        return [l0, l1]
    return make
