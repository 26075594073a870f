import json

import pytest

from hnm_config import (DEFAULT_CONFIG, HierarchyLevelConfig, NMMParams, get_default_config, get_level_dim_by_name,
                        load_config, parse_level_config, parse_level_configs, parse_nmm_params, update_config)


def test_default_hierarchy_parses():
    levels = parse_level_configs(DEFAULT_CONFIG["HIERARCHY_LEVEL_CONFIGS"])
    assert [lvl.name for lvl in levels] == ["L0_IntentProcessing", "L1_ContextualResonance"]
    l0, l1 = levels
    assert l0.raw_sensory_input_dim == 64 and l0.dim == 96
    assert l1.raw_sensory_input_dim is None
    assert l0.nmm_params.external_signal_role == "add_to_bu"
    assert l1.nmm_params.external_signal_role == "add_to_target"
    assert l1.external_input_config.source_signal_name == "ActiveGenreRuleSignal"


def test_nmm_params_defaults_and_alias():
    params = parse_nmm_params({"momentum_beta": 0.8, "learning_rate": 1, "activation": "GELU"})
    assert params.beta1 == 0.8
    assert params.learning_rate == 1.0 and isinstance(params.learning_rate, float)
    assert params.activation == "gelu"
    assert params.mem_model_depth == NMMParams().mem_model_depth == 2


@pytest.mark.parametrize("raw", [
    {"mem_model_depth": -1},
    {"mem_model_depth": 2, "mem_model_expansion": 0},
    {"external_signal_role": "add_everywhere"},
    {"activation": "swishy"},
    {"learning_rate": -0.1},
])
def test_invalid_nmm_params_raise(raw):
    with pytest.raises(ValueError, match="Lvl 'X'"):
        parse_nmm_params(raw, "X")


def test_sensory_level_requires_raw_dim():
    with pytest.raises(ValueError, match="raw_sensory_input_dim"):
        parse_level_config({"name": "L0", "dim": 4})


def test_raw_dim_is_dropped_for_non_leaf_levels():
    cfg = parse_level_config({"name": "L1", "dim": 4, "raw_sensory_input_dim": 9, "bu_source_level_names": ["L0"]})
    assert cfg.raw_sensory_input_dim is None
    assert cfg.bu_source_level_names == ("L0",)


@pytest.mark.parametrize("cfg", [
    {"name": "", "dim": 4, "raw_sensory_input_dim": 4},
    {"name": "L.0", "dim": 4, "raw_sensory_input_dim": 4},
    {"name": "L0", "dim": 0, "raw_sensory_input_dim": 4},
    {"name": "L0", "dim": 4, "raw_sensory_input_dim": 4, "external_input_config": {"source_signal_name": "s", "dim": 0}},
    {"name": "L0", "dim": 4, "raw_sensory_input_dim": 4, "td_source_level_names": ["A", "A"]},
])
def test_invalid_level_configs_raise(cfg):
    with pytest.raises(ValueError):
        parse_level_config(cfg)


def test_role_follows_external_input_presence():
    promoted = parse_level_config({"name": "L0", "dim": 4, "raw_sensory_input_dim": 4,
                                   "external_input_config": {"source_signal_name": "s", "dim": 2}})
    assert promoted.nmm_params.external_signal_role == "add_to_bu"

    dropped = parse_level_config({"name": "L0", "dim": 4, "raw_sensory_input_dim": 4,
                                  "nmm_params": {"external_signal_role": "add_to_td"}})
    assert dropped.nmm_params.external_signal_role == "none"
    assert dropped.external_input_config is None


def test_external_input_list_uses_first_entry(capsys):
    cfg = parse_level_config({"name": "L0", "dim": 4, "raw_sensory_input_dim": 4,
                              "external_input_config": [{"source_signal_name": "a", "dim": 2}, {"source_signal_name": "b", "dim": 3}]})
    assert cfg.external_input_config.source_signal_name == "a"
    assert "using the first" in capsys.readouterr().out


def test_level_config_objects_are_accepted():
    cfg = HierarchyLevelConfig(name="L0", dim=4, raw_sensory_input_dim=4)
    assert parse_level_configs([cfg])[0] == cfg


def test_duplicate_and_empty_hierarchies_raise():
    with pytest.raises(ValueError, match="Duplicate"):
        parse_level_configs([{"name": "A", "dim": 2, "raw_sensory_input_dim": 2}] * 2)
    with pytest.raises(ValueError):
        parse_level_configs([])


def test_get_level_dim_by_name():
    assert get_level_dim_by_name("L1_ContextualResonance", DEFAULT_CONFIG["HIERARCHY_LEVEL_CONFIGS"]) == 64
    assert get_level_dim_by_name("nope", DEFAULT_CONFIG["HIERARCHY_LEVEL_CONFIGS"]) is None


def test_update_config_coerces_and_clamps(capsys):
    base = get_default_config()
    updated = update_config(base, {"EXPLORATION_INFLUENCE": "2.5", "HNM_VERBOSE": "true",
                                   "REPLAY_TRAINING_STEPS": "30", "HNM_LEARNING_RATE": -1, "BOGUS": 1})
    assert updated["EXPLORATION_INFLUENCE"] == 1.0
    assert updated["HNM_VERBOSE"] is True
    assert updated["REPLAY_TRAINING_STEPS"] == 30
    assert updated["HNM_LEARNING_RATE"] == 0.0
    assert "BOGUS" not in updated
    assert "Unknown config key 'BOGUS'" in capsys.readouterr().out
    assert base == DEFAULT_CONFIG


def test_update_config_rejects_invalid_hierarchy():
    with pytest.raises(ValueError):
        update_config(get_default_config(), {"HIERARCHY_LEVEL_CONFIGS": [{"name": "L0", "dim": 4}]})


def test_load_config_merges_json_onto_defaults(tmp_path):
    path = tmp_path / "hnm.json"
    path.write_text(json.dumps({"PLAYER_INFLUENCE": 0.25, "RESONANT_LEVEL_NAME": "L0_IntentProcessing"}))
    config = load_config(str(path))
    assert config["PLAYER_INFLUENCE"] == 0.25
    assert config["RESONANT_LEVEL_NAME"] == "L0_IntentProcessing"
    assert config["STATE_VECTOR_SIZE"] == 64


@pytest.mark.parametrize("params", [
    NMMParams(external_signal_role="add_to_bogus"),
    NMMParams(mem_model_depth=-3),
    NMMParams(activation="swishy"),
])
def test_typed_nmm_params_are_validated(params):
    cfg = HierarchyLevelConfig(name="L0", dim=4, raw_sensory_input_dim=4, nmm_params=params)
    with pytest.raises(ValueError, match="Lvl 'L0'"):
        parse_level_configs([cfg])
