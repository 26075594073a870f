import pytest
import torch
from torch.testing import assert_close

from neural_memory_lib import MemoryUnit


def test_identity_unit_returns_a_copy(backend):
    unit = MemoryUnit(4, 0, backend=backend)
    x = torch.randn(1, 4)
    y = unit(x)
    assert_close(y, x)
    assert y.data_ptr() != x.data_ptr()
    assert unit.get_weights() == [] and backend.num_tensors == 0


def test_depth_one_maps_to_target_dim(backend):
    unit = MemoryUnit(4, 1, 6, backend=backend)
    assert unit(torch.randn(1, 4)).shape == (1, 6)
    assert [tuple(w.shape) for w in unit.get_weights()] == [(6, 4), (6,)]


def test_deep_unit_widens_and_projects_back(backend):
    unit = MemoryUnit(4, 2, 1.5, backend=backend)
    assert [tuple(w.shape) for w in unit.get_weights()] == [(6, 4), (6,), (4, 6), (4,)]
    assert unit(torch.randn(1, 4)).shape == (1, 4)
    assert len(unit.get_kernels()) == 2
    assert all(torch.count_nonzero(b) == 0 for b in unit.get_weights()[1::2])
    assert backend.num_tensors == 4


def test_unknown_activation_raises():
    with pytest.raises(ValueError):
        MemoryUnit(4, 2, 2.0, activation="nope")


def test_set_weights_copies_values_in(backend):
    unit = MemoryUnit(3, 1, 3, backend=backend)
    new_weights = [torch.ones(3, 3), torch.zeros(3)]
    unit.set_weights(new_weights)
    new_weights[0].fill_(7.0)
    assert_close(unit(torch.ones(1, 3)), torch.full((1, 3), 3.0))


def test_set_weights_rejects_mismatched_schema(backend):
    unit = MemoryUnit(3, 1, 3, backend=backend)
    with pytest.raises(ValueError, match="Expected 2"):
        unit.set_weights([torch.ones(3, 3)])
    with pytest.raises(ValueError, match="shape mismatch"):
        unit.set_weights([torch.ones(3, 2), torch.zeros(3)])


def test_get_weights_are_detached_copies(backend):
    unit = MemoryUnit(3, 1, 3, backend=backend)
    w = unit.get_weights()[0]
    assert not w.requires_grad
    w.fill_(5.0)
    assert not torch.equal(unit.get_trainable_variables()[0].detach(), w)


def test_dispose_releases_parameters(backend):
    unit = MemoryUnit(4, 2, 2.0, backend=backend)
    unit.dispose()
    unit.dispose()
    assert backend.num_tensors == 0
    assert unit.get_trainable_variables() == []
    with pytest.raises(RuntimeError):
        unit(torch.randn(1, 4))
