# Filename: hnm_session.py
# coding: utf-8
# Version: 1.0.0
# Description: Host-loop driver for the HNM. Owns the per-tick states, outputs and the resonant
#              state vector, disposes superseded tensors, and runs supervised replay training.

import math
import numpy as np
import torch
from torch import Tensor
from collections import namedtuple
from typing import Any, Dict, List, Optional, Sequence

from tensor_backend import TensorBackend
from hnm_config import get_default_config, update_config
from neural_memory_lib import mem_state_detach, mem_state_num_bytes, dispose_mem_states
from hierarchical_neural_memory_lib import HierarchicalMemorySystem, HierarchyStepResult, dispose_step_result
from external_signals import project_artifacts_to_external_signal, tensor_lerp, to_signal_tensor

SessionTick = namedtuple('SessionTick', [
    'state_vector',     # np.ndarray, resonant state after this tick
    'anomalies',        # level name -> float
    'weight_changes',   # level name -> float
    'leaf_anomaly',     # float, anomaly of the first sensory level
    'tick_index',       # int, number of ticks run by this session
])


class HnmSession:
    def __init__(self, config: Optional[Dict[str, Any]] = None, backend: Optional[TensorBackend] = None):
        self.config = update_config(get_default_config(), config) if config else get_default_config()
        self.verbose = bool(self.config["HNM_VERBOSE"])
        self.backend = backend if backend is not None else TensorBackend(self.config["TARGET_DEVICE"])
        self.system = HierarchicalMemorySystem(self.config["HIERARCHY_LEVEL_CONFIGS"], verbose=self.verbose, backend=self.backend)
        self.is_disposed = False

        self.resonant_level_name = self.config["RESONANT_LEVEL_NAME"]
        if self.resonant_level_name not in self.system.level_name_to_index:
            self.system.dispose()
            raise ValueError(f"RESONANT_LEVEL_NAME '{self.resonant_level_name}' is not a level of the hierarchy {self.system.level_names}")
        self.leaf_level_name = self.system.level_configs[self.system.level_order[0]].name
        self.state_vector_size = self.system.dims[self.resonant_level_name]

        if self.config["ENABLE_HNM_TRAINING"]:
            self.learning_rate = self.config["HNM_LEARNING_RATE"]; self.weight_decay = self.config["HNM_WEIGHT_DECAY"]
        else:
            self.learning_rate = 0.0; self.weight_decay = 0.0
        self.system.set_learning_parameters(self.learning_rate, self.weight_decay)

        self.states = []; self.last_outputs: Dict[str, Tensor] = {}
        self.last_result: Optional[HierarchyStepResult] = None
        self.resonant_state: Optional[Tensor] = None
        self._init_loop_state()
        if self.verbose: print(f"HNM Session ready. Resonant level '{self.resonant_level_name}' (dim={self.state_vector_size}), leaf '{self.leaf_level_name}', LR={self.learning_rate}")

    def _init_loop_state(self):
        self.states = self.system.get_initial_states()
        self.last_outputs = {}; self.last_result = None
        self.resonant_state = self.backend.keep(torch.full((1, 1, self.state_vector_size), 0.5, device=self.backend.device, dtype=self.backend.dtype))
        self.last_leaf_anomaly = 0.5
        self.tick_count = 0

    def _release_loop_state(self):
        dispose_mem_states(self.states, self.backend); self.states = []
        dispose_step_result(self.last_result, self.backend)
        self.last_result = None; self.last_outputs = {}
        self.backend.release(self.resonant_state); self.resonant_state = None

    def _check_not_disposed(self):
        if self.is_disposed: raise RuntimeError("HNM Session is disposed.")

    @property
    def state_vector(self) -> np.ndarray:
        self._check_not_disposed()
        return self.resonant_state.detach().reshape(-1).cpu().numpy().copy()

    def tick(self, sensory_inputs: Dict[str, Tensor], external_inputs: Optional[Dict[str, Tensor]] = None,
             exploration_influence: Optional[float] = None, player_influence: Optional[float] = None,
             generator: Optional[torch.Generator] = None) -> SessionTick:
        """
        Runs one hierarchy step and moves the resonant state towards the resonant level's
        prediction. Exploration noise is scaled by the leaf anomaly of the previous tick.
        """
        self._check_not_disposed()
        exploration = self.config["EXPLORATION_INFLUENCE"] if exploration_influence is None else exploration_influence
        player = self.config["PLAYER_INFLUENCE"] if player_influence is None else player_influence
        exploration = min(1.0, max(0.0, float(exploration))); player = min(1.0, max(0.0, float(player)))

        result = self.system.step(self.states, self.last_outputs, sensory_inputs, external_inputs, detach_next_states_memory=True)

        with torch.no_grad():
            policy_output = result.newly_retrieved_values[self.resonant_level_name]
            noise = torch.rand(policy_output.shape, generator=generator, dtype=self.backend.dtype).to(self.backend.device) * 2.0 - 1.0
            noisy_state = (policy_output + noise * (exploration * self.last_leaf_anomaly)).clamp(0.0, 1.0)
            new_resonant = self.backend.keep(tensor_lerp(self.resonant_state, noisy_state, player))

        self._release_loop_state()
        self.states = result.next_bot_states; self.last_result = result
        self.last_outputs = dict(result.newly_retrieved_values); self.resonant_state = new_resonant
        self.tick_count += 1

        anomalies = {n: float(v.item()) for n, v in result.anomalies.items()}
        leaf_anomaly = anomalies[self.leaf_level_name]
        if math.isfinite(leaf_anomaly): self.last_leaf_anomaly = leaf_anomaly
        elif self.verbose: print(f"Warning: Non-finite anomaly on '{self.leaf_level_name}', keeping {self.last_leaf_anomaly:.4f}")

        return SessionTick(state_vector=self.state_vector, anomalies=anomalies,
                           weight_changes={n: float(v.item()) for n, v in result.weight_changes.items()},
                           leaf_anomaly=leaf_anomaly, tick_index=self.tick_count)

    def artifact_signal(self, state_arrays: Sequence[Sequence[float]], similarities: Sequence[float], dim: Optional[int] = None) -> Tensor:
        """ External signal blended from the active artifacts, faded in up to REASONABLE_ARTIFACT_CAP. """
        dim = self.config["STATE_VECTOR_SIZE"] if dim is None else dim
        return project_artifacts_to_external_signal(state_arrays, similarities, dim, self.config["REASONABLE_ARTIFACT_CAP"], self.backend)

    def train_on_replay(self, artifact_vectors: Sequence[Sequence[float]], learning_rate: float, weight_decay: float,
                        steps: Optional[int] = None, input_level_name: Optional[str] = None, target_level_name: Optional[str] = None,
                        generator: Optional[torch.Generator] = None) -> List[float]:
        """
        Supervised replay: each step feeds a randomly drawn stored vector to the input level and
        trains the target level towards another randomly drawn vector. Learning is enabled only for
        the duration of the replay. Returns the target level's anomaly per step.
        """
        self._check_not_disposed()
        if artifact_vectors is None or len(artifact_vectors) < 2:
            raise ValueError(f"Replay training needs at least 2 artifact vectors, got {0 if artifact_vectors is None else len(artifact_vectors)}")
        steps = self.config["REPLAY_TRAINING_STEPS"] if steps is None else int(steps)
        input_level_name = input_level_name or self.leaf_level_name
        target_level_name = target_level_name or self.resonant_level_name
        if target_level_name not in self.system.level_name_to_index: raise ValueError(f"Unknown target level '{target_level_name}'")
        if input_level_name not in self.system.level_name_to_index: raise ValueError(f"Unknown input level '{input_level_name}'")
        input_dim = self.system.level_configs[self.system.level_name_to_index[input_level_name]].raw_sensory_input_dim
        if input_dim is None: raise ValueError(f"Input level '{input_level_name}' is not a sensory level")
        target_dim = self.system.dims[target_level_name]

        vectors = [np.asarray(v, dtype=np.float32).reshape(-1) for v in artifact_vectors]
        too_short = [i for i, v in enumerate(vectors) if v.shape[0] < max(input_dim, target_dim)]
        if too_short: raise ValueError(f"Artifact vectors {too_short} are shorter than {max(input_dim, target_dim)}")

        prev_lr, prev_wd = self.learning_rate, self.weight_decay
        self.system.set_learning_parameters(learning_rate, weight_decay)
        training_states = [mem_state_detach(s, self.backend) for s in self.states]
        step_anomalies: List[float] = []
        try:
            for step_i in range(steps):
                if self.verbose: print(f"Training HNM... Supervision Step {step_i + 1} / {steps}")
                pick = torch.randint(len(vectors), (2,), generator=generator).tolist()
                input_vec = to_signal_tensor(vectors[pick[0]][:input_dim], input_dim, self.backend)
                target_vec = to_signal_tensor(vectors[pick[1]][:target_dim], target_dim, self.backend)

                result = self.system.step(training_states, self.last_outputs, {input_level_name: input_vec}, {},
                                          detach_next_states_memory=False, training_targets={target_level_name: target_vec})
                dispose_mem_states(training_states, self.backend)
                training_states = [mem_state_detach(s, self.backend) for s in result.next_bot_states]
                dispose_mem_states(result.next_bot_states, self.backend)
                step_anomalies.append(float(result.anomalies[target_level_name].item()))
                dispose_step_result(result, self.backend)
        except Exception:
            dispose_mem_states(training_states, self.backend)
            raise
        finally:
            self.system.set_learning_parameters(prev_lr, prev_wd)

        dispose_mem_states(self.states, self.backend)
        self.states = training_states
        return step_anomalies

    def load_resonant_state(self, values: Sequence[float]) -> bool:
        self._check_not_disposed()
        values = np.asarray(values, dtype=np.float32).reshape(-1)
        if values.shape[0] != self.state_vector_size:
            print(f"Warning: Ignoring saved resonant state of length {values.shape[0]}, expected {self.state_vector_size}")
            return False
        self.backend.release(self.resonant_state)
        self.resonant_state = self.backend.keep(to_signal_tensor(values, self.state_vector_size, self.backend))
        return True

    def memory_usage_info(self) -> Dict[str, int]:
        self._check_not_disposed()
        weights_bytes = sum(mem_state_num_bytes(s) for s in self.states)
        resonant_bytes = self.resonant_state.numel() * self.resonant_state.element_size()
        return {
            'hnm_weights_bytes': weights_bytes,
            'resonant_state_bytes': resonant_bytes,
            'total_useful_bytes': weights_bytes + resonant_bytes,
            'backend_bytes': self.backend.num_bytes,
        }

    def tracked_tensor_count(self) -> int:
        return self.backend.num_tensors

    def reset(self) -> None:
        """ Restarts the sequence from the live weights with a neutral resonant state. """
        self._check_not_disposed()
        self._release_loop_state()
        self._init_loop_state()
        if self.verbose: print("HNM Session reset.")

    def dispose(self) -> None:
        if self.is_disposed: return
        self._release_loop_state()
        self.system.dispose(); self.is_disposed = True
        if self.verbose: print("HNM Session disposed.")
