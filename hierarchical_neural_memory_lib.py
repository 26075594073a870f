# Filename: hierarchical_neural_memory_lib.py
# coding: utf-8
# Version: 6.0.0
# Description: Manages a hierarchy of NMM modules, handling BU/TD flow, external inputs and the per-tick step.

import torch
from torch import Tensor, is_tensor
from torch.nn import Module, ModuleList
from collections import namedtuple
import time
from typing import Optional, Dict, Union, List, Any, Sequence

from tensor_backend import TensorBackend, TensorScope
from hnm_config import HierarchyLevelConfig, parse_level_configs
from neural_memory_lib import NeuralMemoryModule, NeuralMemState, dispose_mem_states, exists

print("Hierarchical Neural Memory Library (Version 6.0.0) Loading...")

HierarchyStepResult = namedtuple('HierarchyStepResult', [
    'newly_retrieved_values',   # level name -> [1, 1, dim] prediction
    'next_bot_states',          # List[NeuralMemState], configuration order
    'anomalies', 'weight_changes', 'bu_norms', 'td_norms', 'ext_norms',  # level name -> 0-dim tensor
])


def resolve_level_order(level_configs: Sequence[HierarchyLevelConfig]) -> List[int]:
    """
    Stable topological order over bottom-up edges. Declaration order is kept wherever it is
    already valid; top-down edges are ignored since they read the previous tick.
    """
    index = {cfg.name: i for i, cfg in enumerate(level_configs)}
    remaining = list(range(len(level_configs))); placed = set(); order = []
    while remaining:
        ready = next((i for i in remaining if all(index[src] in placed for src in level_configs[i].bu_source_level_names)), None)
        if ready is None:
            names = [level_configs[i].name for i in remaining]
            raise ValueError(f"Cycle in bottom-up sources among levels {names}")
        order.append(ready); placed.add(ready); remaining.remove(ready)
    return order


def dispose_step_result(result: Optional[HierarchyStepResult], backend: TensorBackend) -> None:
    """ Releases retrieved values and diagnostics of a step result (next states are disposed separately). """
    if result is None: return
    for tensors in (result.newly_retrieved_values, result.anomalies, result.weight_changes,
                    result.bu_norms, result.td_norms, result.ext_norms):
        backend.release_all((tensors or {}).values())


class HierarchicalMemorySystem(Module):
    def __init__(self, level_configs: Sequence[Union[Dict[str, Any], HierarchyLevelConfig]], target_device: Union[str, torch.device] = 'cpu',
                 verbose: bool = False, backend: Optional[TensorBackend] = None):
        super().__init__()
        self.backend = backend if exists(backend) else TensorBackend(target_device)
        self.target_device = self.backend.device; self.verbose = verbose
        self.levels = ModuleList(); self.is_disposed = False
        start_t = time.time()

        self.level_configs: List[HierarchyLevelConfig] = parse_level_configs(level_configs)
        self.num_levels = len(self.level_configs)
        self.level_name_to_index: Dict[str, int] = {cfg.name: i for i, cfg in enumerate(self.level_configs)}
        self.dims: Dict[str, int] = {cfg.name: cfg.dim for cfg in self.level_configs}
        if verbose: print(f"--- Initializing Hierarchical System ({self.num_levels} Levels) ---")

        for cfg in self.level_configs:
            for kind, srcs in (("BU", cfg.bu_source_level_names), ("TD", cfg.td_source_level_names)):
                for src in srcs:
                    if src not in self.level_name_to_index: raise ValueError(f"Lvl '{cfg.name}': Unknown {kind} src '{src}'")
        self.level_order = resolve_level_order(self.level_configs)

        for cfg in self.level_configs:
            if not cfg.bu_source_level_names:
                bu_dims_map = {cfg.name: cfg.raw_sensory_input_dim}  # Sensory input is keyed by the level's own name
            else:
                bu_dims_map = {src: self.dims[src] for src in cfg.bu_source_level_names}
            td_dims_map = {src: self.dims[src] for src in cfg.td_source_level_names}
            ext_dim = cfg.external_input_config.dim if exists(cfg.external_input_config) else None
            try:
                self.levels.append(NeuralMemoryModule(
                    dim=cfg.dim, bu_input_dims=bu_dims_map, td_input_dims=td_dims_map, level_name=cfg.name,
                    nmm_params=cfg.nmm_params, external_signal_dim=ext_dim, backend=self.backend, verbose=verbose))
            except Exception as e: print(f"FATAL ERROR init NMM '{cfg.name}': {e}"); raise
            if verbose and exists(cfg.external_input_config):
                print(f"  Level '{cfg.name}' expects external signal '{cfg.external_input_config.source_signal_name}' (dim={ext_dim}, role={self.levels[-1].external_signal_role})")
        if verbose: print(f"--- Hierarchical System Initialized in {time.time()-start_t:.3f}s (order: {[self.level_configs[i].name for i in self.level_order]}) ---")

    @property
    def level_names(self) -> List[str]:
        return [cfg.name for cfg in self.level_configs]

    def _check_not_disposed(self):
        if self.is_disposed: raise RuntimeError("HNS is disposed.")

    def get_initial_states(self) -> List[NeuralMemState]:
        self._check_not_disposed()
        return [level.get_initial_state() for level in self.levels]

    def set_learning_parameters(self, learning_rate: float, weight_decay: float) -> None:
        if self.is_disposed: return
        if self.verbose: print(f"HNS: Updating learning parameters. LR={learning_rate}, WD={weight_decay}")
        for level in self.levels: level.update_learning_params(learning_rate, weight_decay)

    def _checked_signal(self, t: Any, dim: int, label: str, verbose: bool, arena: TensorScope, warn_missing: bool = True) -> Tensor:
        if is_tensor(t) and tuple(t.shape) == (1, 1, dim): return t
        if verbose and (t is not None or warn_missing):
            got = tuple(t.shape) if is_tensor(t) else (None if t is None else type(t).__name__)
            print(f"Warning: {label} is invalid or missing. Using zeros. Expected shape [1, 1, {dim}], got {got}")
        return arena.zeros((1, 1, dim))

    @staticmethod
    def _previous_output(previous_outputs: Dict[str, Any], level_name: str) -> Optional[Tensor]:
        prev = previous_outputs.get(level_name)
        if isinstance(prev, dict): prev = prev.get('retrieved')  # {'retrieved': tensor} as kept by older hosts
        return prev

    def step(self,
             current_bot_level_states: List[NeuralMemState],
             current_bot_last_step_outputs: Optional[Dict[str, Any]],
             sensory_inputs: Optional[Dict[str, Tensor]],              # Keyed by level name (sensory levels)
             external_inputs: Optional[Dict[str, Tensor]] = None,      # Keyed by source_signal_name
             detach_next_states_memory: bool = True,
             training_targets: Optional[Dict[str, Tensor]] = None      # Keyed by level name, overrides the self-referential target
            ) -> HierarchyStepResult:
        """
        Advances every level by one tick. Bottom-up inputs come from this tick's outputs of the
        source levels, top-down inputs from `current_bot_last_step_outputs` (previous tick).
        Missing or malformed signals are replaced by zeros and never raise.
        """
        self._check_not_disposed()
        if len(current_bot_level_states) != self.num_levels:
            raise ValueError(f"Expected {self.num_levels} level states, got {len(current_bot_level_states)}")
        last_outputs = current_bot_last_step_outputs or {}; sensory_inputs = sensory_inputs or {}
        external_inputs = external_inputs or {}; training_targets = training_targets or {}
        unknown_targets = [n for n in training_targets if n not in self.level_name_to_index]
        if unknown_targets and self.verbose: print(f"Warning: Ignoring training targets for unknown levels {unknown_targets}")

        next_states: List[Optional[NeuralMemState]] = [None] * self.num_levels
        retrieved: Dict[str, Tensor] = {}; anomalies: Dict[str, Tensor] = {}; weight_changes: Dict[str, Tensor] = {}
        bu_norms: Dict[str, Tensor] = {}; td_norms: Dict[str, Tensor] = {}; ext_norms: Dict[str, Tensor] = {}

        try:
            self._step_levels(current_bot_level_states, last_outputs, sensory_inputs, external_inputs, detach_next_states_memory,
                              training_targets, next_states, retrieved, anomalies, weight_changes, bu_norms, td_norms, ext_norms)
        except Exception:
            # Release what earlier levels already kept.
            dispose_mem_states([s for s in next_states if s is not None], self.backend)
            dispose_step_result(HierarchyStepResult(retrieved, next_states, anomalies, weight_changes, bu_norms, td_norms, ext_norms), self.backend)
            raise

        in_config_order = lambda d: {n: d[n] for n in self.level_names}
        return HierarchyStepResult(in_config_order(retrieved), next_states, in_config_order(anomalies), in_config_order(weight_changes),
                                   in_config_order(bu_norms), in_config_order(td_norms), in_config_order(ext_norms))

    def _step_levels(self, current_bot_level_states, last_outputs, sensory_inputs, external_inputs, detach_next_states_memory,
                     training_targets, next_states, retrieved, anomalies, weight_changes, bu_norms, td_norms, ext_norms) -> None:
        """ Fills the per-level outputs in wiring order; the caller owns the collections. """
        with self.backend.scope("hns_step") as arena:
            for i in self.level_order:
                lvl_mgr: NeuralMemoryModule = self.levels[i]
                cfg = self.level_configs[i]; lvl_n = cfg.name; verbose = lvl_mgr.verbose
                lvl_bu_in: Dict[str, Tensor] = {}; lvl_td_in: Dict[str, Tensor] = {}

                if not cfg.bu_source_level_names:
                    lvl_bu_in[lvl_n] = self._checked_signal(sensory_inputs.get(lvl_n), cfg.raw_sensory_input_dim, f"Sensory input for '{lvl_n}'", verbose, arena)
                else:
                    for src_n in cfg.bu_source_level_names: lvl_bu_in[src_n] = retrieved[src_n]

                for src_n in cfg.td_source_level_names:
                    # No previous output on the first tick is the normal case, so only malformed ones warn.
                    lvl_td_in[src_n] = self._checked_signal(self._previous_output(last_outputs, src_n), self.dims[src_n], f"TD input '{src_n}' for '{lvl_n}'", verbose, arena, warn_missing=False)

                lvl_ext_in = None
                if exists(cfg.external_input_config):
                    ext_cfg = cfg.external_input_config
                    lvl_ext_in = self._checked_signal(external_inputs.get(ext_cfg.source_signal_name), ext_cfg.dim, f"External signal '{ext_cfg.source_signal_name}' for '{lvl_n}'", verbose, arena)

                out = lvl_mgr.forward_step(lvl_bu_in, lvl_td_in, current_bot_level_states[i], lvl_ext_in,
                                           detach_next_state=detach_next_states_memory, target_override=training_targets.get(lvl_n))
                next_states[i] = out.next_state; retrieved[lvl_n] = out.retrieved_val
                anomalies[lvl_n] = out.anomaly_score; weight_changes[lvl_n] = out.weight_change
                bu_norms[lvl_n] = out.bu_norm; td_norms[lvl_n] = out.td_norm; ext_norms[lvl_n] = out.ext_norm

    def dispose(self) -> None:
        if self.is_disposed: return
        for level in self.levels: level.dispose()
        self.levels = ModuleList(); self.is_disposed = True
        if self.verbose: print("HNS Disposed.")

print("Hierarchical Neural Memory Library (Version 6.0.0) Loaded Successfully.")
