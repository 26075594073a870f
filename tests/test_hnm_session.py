import numpy as np
import pytest
import torch

from hnm_session import HnmSession

HALF = torch.full((1, 1, 4), 0.5)


@pytest.fixture
def session(toy_level_configs):
    s = HnmSession({"HIERARCHY_LEVEL_CONFIGS": toy_level_configs(), "RESONANT_LEVEL_NAME": "L1"})
    yield s
    s.dispose()


def test_session_starts_neutral(session):
    assert session.leaf_level_name == "L0"
    assert session.state_vector_size == 4
    np.testing.assert_allclose(session.state_vector, np.full(4, 0.5))
    assert session.system.levels[0].learning_rate == 0.0


def test_tick_moves_resonant_state_to_clipped_prediction(session):
    tick = session.tick({"L0": HALF}, exploration_influence=0.0, player_influence=1.0)
    expected = session.last_outputs["L1"].clamp(0.0, 1.0).reshape(-1).numpy()
    np.testing.assert_allclose(tick.state_vector, expected, rtol=1e-6)
    assert tick.tick_index == 1
    assert set(tick.anomalies) == {"L0", "L1"}
    assert tick.leaf_anomaly == tick.anomalies["L0"] >= 0
    assert np.all((tick.state_vector >= 0.0) & (tick.state_vector <= 1.0))


def test_zero_player_influence_keeps_the_resonant_state(session):
    tick = session.tick({"L0": HALF}, player_influence=0.0)
    np.testing.assert_allclose(tick.state_vector, np.full(4, 0.5))


def test_exploration_noise_is_reproducible(toy_level_configs):
    vectors = []
    for _ in range(2):
        torch.manual_seed(3)
        s = HnmSession({"HIERARCHY_LEVEL_CONFIGS": toy_level_configs(), "RESONANT_LEVEL_NAME": "L1"})
        gen = torch.Generator().manual_seed(7)
        for _ in range(3): tick = s.tick({"L0": HALF}, exploration_influence=1.0, generator=gen)
        vectors.append(tick.state_vector); s.dispose()
    np.testing.assert_allclose(vectors[0], vectors[1])


def test_tracked_tensor_count_is_constant_across_ticks(session):
    session.tick({"L0": HALF})
    first = session.tracked_tensor_count()
    for _ in range(30): session.tick({"L0": torch.rand(1, 1, 4)}, exploration_influence=0.5)
    assert session.tracked_tensor_count() == first


def test_train_on_replay(session):
    session.tick({"L0": HALF})
    count_before = session.tracked_tensor_count()
    net_before = [t.clone() for t in session.states[1].layer_weights['net']]
    artifacts = [np.random.RandomState(i).rand(4) for i in range(5)]

    anomalies = session.train_on_replay(artifacts, 0.01, 0.0, steps=10, generator=torch.Generator().manual_seed(1))

    assert len(anomalies) == 10 and all(a >= 0 for a in anomalies)
    assert [s.seq_index for s in session.states] == [11, 11]
    assert any(not torch.equal(a, b) for a, b in zip(session.states[1].layer_weights['net'], net_before))
    assert all(not t.requires_grad for ts in session.states[1].layer_weights.values() for t in ts)
    assert all(level.learning_rate == 0.0 for level in session.system.levels)
    assert session.tracked_tensor_count() == count_before


def test_train_on_replay_needs_two_vectors(session):
    with pytest.raises(ValueError):
        session.train_on_replay([np.zeros(4)], 0.01, 0.0)
    with pytest.raises(ValueError):
        session.train_on_replay([np.zeros(2), np.zeros(2)], 0.01, 0.0)


def test_load_resonant_state(session, capsys):
    assert not session.load_resonant_state([0.1, 0.2])
    assert "Ignoring saved resonant state" in capsys.readouterr().out
    assert session.load_resonant_state([0.1, 0.2, 0.3, 0.4])
    np.testing.assert_allclose(session.state_vector, [0.1, 0.2, 0.3, 0.4], rtol=1e-6)


def test_memory_usage_info(session):
    info = session.memory_usage_info()
    assert info['resonant_state_bytes'] == 16
    assert info['hnm_weights_bytes'] > 0
    assert info['total_useful_bytes'] == info['hnm_weights_bytes'] + 16
    assert info['backend_bytes'] >= info['total_useful_bytes']


def test_reset_restarts_the_sequence(session):
    for _ in range(3): session.tick({"L0": HALF})
    count = session.tracked_tensor_count()
    session.reset()
    assert session.tick_count == 0 and session.last_outputs == {}
    assert [s.seq_index for s in session.states] == [0, 0]
    np.testing.assert_allclose(session.state_vector, np.full(4, 0.5))
    assert session.tracked_tensor_count() < count


def test_default_configuration_session():
    s = HnmSession()
    tick = s.tick({"L0_IntentProcessing": torch.full((1, 1, 64), 0.5)},
                  {"ArtifactSignalSource": torch.zeros(1, 1, 64)})
    assert tick.state_vector.shape == (64,)
    assert np.all(np.isfinite(tick.state_vector))
    s.dispose()


def test_unknown_resonant_level_raises(toy_level_configs):
    with pytest.raises(ValueError, match="RESONANT_LEVEL_NAME"):
        HnmSession({"HIERARCHY_LEVEL_CONFIGS": toy_level_configs(), "RESONANT_LEVEL_NAME": "L7"})


def test_dispose_releases_everything(toy_level_configs):
    s = HnmSession({"HIERARCHY_LEVEL_CONFIGS": toy_level_configs(), "RESONANT_LEVEL_NAME": "L1"})
    s.tick({"L0": HALF})
    s.dispose(); s.dispose()
    assert s.tracked_tensor_count() == 0
    with pytest.raises(RuntimeError):
        s.tick({"L0": HALF})


def test_artifact_signal_uses_the_configured_cap(session):
    signal = session.artifact_signal([[1.0] * 64, [1.0] * 64], [1.0, 1.0])
    assert signal.shape == (1, 1, 64)
    torch.testing.assert_close(signal, torch.full((1, 1, 64), 0.25))
