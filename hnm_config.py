# Filename: hnm_config.py
# coding: utf-8
# Version: 1.0.0
# Description: Hierarchy level configuration types, validation and the default HNM configuration.

import copy
import json
from collections import namedtuple
from typing import Any, Dict, List, Optional, Sequence, Union

EXTERNAL_SIGNAL_ROLES = ('none', 'add_to_bu', 'add_to_td', 'add_to_target')
ACTIVATIONS = ('elu', 'gelu', 'relu', 'tanh', 'sigmoid', 'linear')

NMMParams = namedtuple('NMMParams', [
    'mem_model_depth', 'mem_model_expansion', 'learning_rate', 'weight_decay',
    'beta1', 'beta2', 'max_grad_norm', 'external_signal_role', 'activation', 'verbose',
], defaults=(2, 2.0, 0.0, 0.0, 0.9, 0.999, 1.0, 'none', 'elu', False))

ExternalInputConfig = namedtuple('ExternalInputConfig', ['source_signal_name', 'dim'])

HierarchyLevelConfig = namedtuple('HierarchyLevelConfig', [
    'name', 'dim', 'raw_sensory_input_dim', 'bu_source_level_names',
    'td_source_level_names', 'external_input_config', 'nmm_params',
], defaults=(None, (), (), None, NMMParams()))

# ================================================================
# --- DEFAULT CONFIGURATION ---
# ================================================================
STATE_VECTOR_SIZE = 64

DEFAULT_CONFIG: Dict[str, Any] = {
    "STATE_VECTOR_SIZE": STATE_VECTOR_SIZE,
    "HNM_VERBOSE": False,
    "TARGET_DEVICE": "cpu",
    "RESONANT_LEVEL_NAME": "L1_ContextualResonance",

    # Live learning is off by default; replay training switches it on temporarily.
    "HNM_LEARNING_RATE": 0.0002,
    "HNM_WEIGHT_DECAY": 0.0001,
    "ENABLE_HNM_TRAINING": False,
    "REPLAY_TRAINING_STEPS": 25,

    # Host loop
    "EXPLORATION_INFLUENCE": 0.0,
    "PLAYER_INFLUENCE": 1.0,
    "REASONABLE_ARTIFACT_CAP": 8,

    "HIERARCHY_LEVEL_CONFIGS": [
        {
            "name": "L0_IntentProcessing", "dim": 96, "raw_sensory_input_dim": STATE_VECTOR_SIZE,
            "bu_source_level_names": [],
            "td_source_level_names": ["L1_ContextualResonance"],
            "external_input_config": {"source_signal_name": "ArtifactSignalSource", "dim": STATE_VECTOR_SIZE},
            "nmm_params": {
                "mem_model_depth": 2, "mem_model_expansion": 1.5,
                "external_signal_role": "add_to_bu", "verbose": False
            }
        },
        {
            "name": "L1_ContextualResonance", "dim": STATE_VECTOR_SIZE,
            "bu_source_level_names": ["L0_IntentProcessing"],
            "td_source_level_names": [],
            "external_input_config": {"source_signal_name": "ActiveGenreRuleSignal", "dim": STATE_VECTOR_SIZE},
            "nmm_params": {
                "mem_model_depth": 2, "mem_model_expansion": 2.0,
                "external_signal_role": "add_to_target", "verbose": False
            }
        }
    ],
}


def get_default_config() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG)


def _is_positive_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool) and v > 0


def parse_nmm_params(raw: Optional[Dict[str, Any]], level_name: str = "Unknown") -> NMMParams:
    """ Builds NMMParams from a config dict; the legacy `momentum_beta` key is accepted as `beta1`. """
    raw = raw._asdict() if isinstance(raw, NMMParams) else dict(raw or {})
    if 'momentum_beta' in raw: raw.setdefault('beta1', raw.pop('momentum_beta'))
    raw.pop('external_signal_dim', None)  # derived from external_input_config
    unknown = [k for k in raw if k not in NMMParams._fields]
    if unknown: print(f"Warning ({level_name}): Ignoring unknown nmm_params {unknown}")
    params = NMMParams(**{k: v for k, v in raw.items() if k in NMMParams._fields})

    depth = params.mem_model_depth
    if not isinstance(depth, int) or isinstance(depth, bool) or depth < 0:
        raise ValueError(f"Lvl '{level_name}': Invalid 'mem_model_depth' {depth!r}")
    expansion = params.mem_model_expansion
    if depth >= 2 and (not isinstance(expansion, (int, float)) or isinstance(expansion, bool) or expansion <= 0):
        raise ValueError(f"Lvl '{level_name}': Invalid 'mem_model_expansion' {params.mem_model_expansion!r}")
    if params.external_signal_role not in EXTERNAL_SIGNAL_ROLES:
        raise ValueError(f"Lvl '{level_name}': Invalid 'external_signal_role' {params.external_signal_role!r}, expected one of {EXTERNAL_SIGNAL_ROLES}")
    if str(params.activation).lower() not in ACTIVATIONS:
        raise ValueError(f"Lvl '{level_name}': Unknown activation {params.activation!r}")
    for key in ('learning_rate', 'weight_decay'):
        if getattr(params, key) < 0: raise ValueError(f"Lvl '{level_name}': '{key}' must be >= 0")
    return params._replace(
        mem_model_expansion=float(expansion) if isinstance(expansion, (int, float)) else expansion,
        learning_rate=float(params.learning_rate), weight_decay=float(params.weight_decay),
        max_grad_norm=float(params.max_grad_norm or 0.0), activation=str(params.activation).lower())


def parse_external_input_config(raw: Any, level_name: str = "Unknown") -> Optional[ExternalInputConfig]:
    if raw is None or raw == {} or raw == []: return None
    if isinstance(raw, ExternalInputConfig): item = raw._asdict()
    elif isinstance(raw, list):
        # Older configs keep a list of signals; a level projects exactly one.
        if len(raw) > 1: print(f"Warning ({level_name}): {len(raw)} external inputs configured, using the first.")
        item = raw[0]
    else: item = raw
    if not isinstance(item, dict): raise ValueError(f"Lvl '{level_name}': Invalid 'external_input_config' {raw!r}")
    src_name = item.get('source_signal_name'); ext_dim = item.get('dim')
    if not isinstance(src_name, str) or not src_name:
        raise ValueError(f"Lvl '{level_name}': external_input_config lacks a 'source_signal_name'")
    if not _is_positive_int(ext_dim):
        raise ValueError(f"Lvl '{level_name}': external signal '{src_name}' has invalid 'dim' {ext_dim!r}")
    return ExternalInputConfig(src_name, ext_dim)


def parse_level_config(cfg: Union[Dict[str, Any], HierarchyLevelConfig], index: int = 0) -> HierarchyLevelConfig:
    """ Validates one level in isolation (names of sources are checked by the hierarchy). """
    if isinstance(cfg, HierarchyLevelConfig): cfg = cfg._asdict()
    if not isinstance(cfg, dict): raise ValueError(f"Lvl {index}: config must be a dict, got {type(cfg).__name__}")
    lvl_name = cfg.get('name'); lvl_dim = cfg.get('dim')
    if not isinstance(lvl_name, str) or not lvl_name: raise ValueError(f"Lvl {index}: Invalid 'name'")
    if '.' in lvl_name: raise ValueError(f"Lvl '{lvl_name}': level names may not contain '.'")
    if not _is_positive_int(lvl_dim): raise ValueError(f"Lvl '{lvl_name}': Invalid 'dim'")

    bu_srcs = tuple(cfg.get('bu_source_level_names') or ()); td_srcs = tuple(cfg.get('td_source_level_names') or ())
    raw_sensory_dim = cfg.get('raw_sensory_input_dim')
    if not bu_srcs:
        if not _is_positive_int(raw_sensory_dim):
            raise ValueError(f"Lvl '{lvl_name}' is a sensory level (no bu_source_level_names) but lacks a valid 'raw_sensory_input_dim' in its config.")
    else:
        raw_sensory_dim = None
    if len(set(bu_srcs)) != len(bu_srcs) or len(set(td_srcs)) != len(td_srcs):
        raise ValueError(f"Lvl '{lvl_name}': Duplicate source level names")

    ext_cfg = parse_external_input_config(cfg.get('external_input_config'), lvl_name)
    params = parse_nmm_params(cfg.get('nmm_params'), lvl_name)
    if ext_cfg is not None and params.external_signal_role == 'none':
        params = params._replace(external_signal_role='add_to_bu')
    elif ext_cfg is None and params.external_signal_role != 'none':
        params = params._replace(external_signal_role='none')

    return HierarchyLevelConfig(
        name=lvl_name, dim=lvl_dim, raw_sensory_input_dim=raw_sensory_dim,
        bu_source_level_names=bu_srcs, td_source_level_names=td_srcs,
        external_input_config=ext_cfg, nmm_params=params)


def parse_level_configs(level_configs: Sequence[Union[Dict[str, Any], HierarchyLevelConfig]]) -> List[HierarchyLevelConfig]:
    if not level_configs: raise ValueError("At least one hierarchy level is required.")
    parsed = [parse_level_config(cfg, i) for i, cfg in enumerate(level_configs)]
    seen = set()
    for cfg in parsed:
        if cfg.name in seen: raise ValueError(f"Duplicate level name: '{cfg.name}'")
        seen.add(cfg.name)
    return parsed


def get_level_dim_by_name(level_name: str, config_levels: Sequence[Union[Dict, HierarchyLevelConfig]]) -> Optional[int]:
    for lvl_cfg in config_levels:
        name = lvl_cfg.name if isinstance(lvl_cfg, HierarchyLevelConfig) else lvl_cfg.get("name")
        if name == level_name:
            return lvl_cfg.dim if isinstance(lvl_cfg, HierarchyLevelConfig) else lvl_cfg.get("dim")
    return None


def update_config(base_config: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """ Returns a copy of `base_config` with `updates` applied, coerced to the default types. """
    new_config = copy.deepcopy(base_config)
    for key, value in (updates or {}).items():
        if key == 'HIERARCHY_LEVEL_CONFIGS':
            parse_level_configs(value)  # fail fast before accepting the hierarchy
            new_config[key] = copy.deepcopy(value); continue
        if key not in DEFAULT_CONFIG:
            print(f"Warning: Unknown config key '{key}'. Skipping."); continue
        if value is None: continue
        default_type = type(DEFAULT_CONFIG[key])
        try:
            if default_type is bool: converted_value = str(value).lower() in ['true', '1', 'yes', 'on']
            elif default_type is int: converted_value = int(round(float(value)))
            elif default_type is float: converted_value = float(value)
            else: converted_value = default_type(value)
        except (ValueError, TypeError) as e:
            print(f"Warning: Invalid type/value for '{key}': '{value}'. Skipping. Err: {e}"); continue
        if "INFLUENCE" in key and isinstance(converted_value, float): converted_value = max(0.0, min(1.0, converted_value))
        if key in ("HNM_LEARNING_RATE", "HNM_WEIGHT_DECAY"): converted_value = max(0.0, converted_value)
        new_config[key] = converted_value
    return new_config


def load_config(path: str) -> Dict[str, Any]:
    """ Loads a JSON file of overrides on top of DEFAULT_CONFIG. """
    with open(path, 'r', encoding='utf-8') as f:
        overrides = json.load(f)
    if not isinstance(overrides, dict): raise ValueError(f"Config file '{path}' must contain a JSON object.")
    return update_config(get_default_config(), overrides)
