# Filename: neural_memory_lib.py
# coding: utf-8
# Version: 6.0.0
# Description: Memory unit, memory state lifecycle and the per-level Neural Memory Module (NMM).

import torch
from torch import nn, Tensor, is_tensor
import torch.nn.functional as F
from torch.nn import Module
from collections import namedtuple
import copy
import math
from typing import Optional, Dict, List, Tuple, Any

from tensor_backend import TensorBackend, TensorScope
from hnm_config import NMMParams

print("Neural Memory Library Loading...")

def exists(v): return v is not None

ACTIVATION_LAYERS = {'elu': nn.ELU, 'gelu': nn.GELU, 'relu': nn.ReLU, 'tanh': nn.Tanh, 'sigmoid': nn.Sigmoid, 'linear': nn.Identity}
ADAM_EPSILON = 1e-7


# --- MemoryUnit ---
class MemoryUnit(Module):
    """
    Stack of affine layers used both as the associative memory model and as the
    projection heads of a level.

    depth 0 is an identity (forward returns a clone of the input, no weights).
    depth 1 maps input_dim -> expansion_or_target_dim.
    depth >= 2 widens every hidden layer to floor(input_dim * expansion) and projects
    back to input_dim; the activation sits between all but the last layer.
    """
    def __init__(self, input_dim: int, depth: int, expansion_or_target_dim: float = 2.0, activation: str = 'elu',
                 name_prefix: str = '', backend: Optional[TensorBackend] = None):
        super().__init__()
        self.input_dim = input_dim; self.depth = depth; self.name_prefix = name_prefix
        self.backend = backend if exists(backend) else TensorBackend()
        self.is_disposed = False
        self.is_identity = depth < 1
        if self.is_identity:
            self.output_dim = input_dim; self.net = nn.Identity(); return

        act_layer = ACTIVATION_LAYERS.get(str(activation).lower())
        if act_layer is None: raise ValueError(f"MemoryUnit ({name_prefix}): Unknown activation '{activation}'")
        layers = []; current_dim = input_dim
        for i in range(depth):
            is_last = i == (depth - 1)
            if depth == 1: out_dim = int(expansion_or_target_dim)
            else: out_dim = input_dim if is_last else int(math.floor(input_dim * expansion_or_target_dim))
            if out_dim < 1: raise ValueError(f"MemoryUnit ({name_prefix}): Layer {i} would have width {out_dim}")
            layers.append(nn.Linear(current_dim, out_dim))
            if not is_last: layers.append(act_layer())
            current_dim = out_dim
        self.output_dim = current_dim
        self.net = nn.Sequential(*layers); self._initialize_weights()
        self.net.to(device=self.backend.device, dtype=self.backend.dtype)
        for p in self.net.parameters(): self.backend.keep(p)

    def _initialize_weights(self):
        for m in self.net.modules():
            if isinstance(m, nn.Linear):
                nn.init.xavier_uniform_(m.weight)
                if m.bias is not None: nn.init.zeros_(m.bias)

    def _check_not_disposed(self):
        if self.is_disposed: raise RuntimeError(f"{self.name_prefix} MemoryUnit is disposed.")

    def forward(self, x: Tensor) -> Tensor:
        self._check_not_disposed()
        if self.is_identity: return x.clone()
        return self.net(x)

    def get_weights(self, detach: bool = True) -> List[Tensor]:
        """ Copies of the parameters in layer order (weight, bias per affine layer). """
        if self.is_disposed or self.is_identity: return []
        if detach: return [p.detach().clone() for p in self.net.parameters()]
        return [p.clone() for p in self.net.parameters()]

    @torch.no_grad()
    def set_weights(self, weights: List[Tensor]) -> None:
        self._check_not_disposed()
        params = self.get_trainable_variables()
        weights = list(weights or [])
        if len(weights) != len(params):
            raise ValueError(f"MemoryUnit ({self.name_prefix}): Expected {len(params)} weight tensors, got {len(weights)}")
        for i, (p, w) in enumerate(zip(params, weights)):
            if not is_tensor(w) or tuple(w.shape) != tuple(p.shape):
                got = tuple(w.shape) if is_tensor(w) else type(w).__name__
                raise ValueError(f"MemoryUnit ({self.name_prefix}): Weight {i} shape mismatch, expected {tuple(p.shape)}, got {got}")
            p.copy_(w.detach().to(device=p.device, dtype=p.dtype))

    def get_trainable_variables(self) -> List[nn.Parameter]:
        if self.is_disposed or self.is_identity: return []
        return list(self.net.parameters())

    def get_kernels(self) -> List[nn.Parameter]:
        if self.is_disposed or self.is_identity: return []
        return [m.weight for m in self.net.modules() if isinstance(m, nn.Linear)]

    def set_trainable(self, trainable: bool) -> None:
        for p in self.get_trainable_variables(): p.requires_grad_(trainable)

    def dispose(self) -> None:
        if self.is_disposed: return
        self.backend.release_all(self.get_trainable_variables())
        self.net = nn.Identity(); self.is_disposed = True


# --- Neural Memory State ---
# One level's persistent state; a new instance is produced every tick.
NeuralMemState = namedtuple('NeuralMemState', [
    'seq_index',        # Number of ticks this level has processed
    'layer_weights',    # Dict: component name -> list of weight tensors in layer order
    'optim_state',      # Dict: {'lr': float, 'wd': float}
])

NMMStepOutput = namedtuple('NMMStepOutput', [
    'retrieved_val', 'next_state', 'anomaly_score', 'weight_change', 'bu_norm', 'td_norm', 'ext_norm',
])

def create_mem_state(seq_index: int = 0, layer_weights: Optional[Dict[str, List[Tensor]]] = None,
                     optim_state: Optional[Dict[str, Any]] = None) -> NeuralMemState:
    return NeuralMemState(seq_index=seq_index, layer_weights=layer_weights if exists(layer_weights) else {},
                          optim_state=optim_state if exists(optim_state) else {})

def mem_state_detach(state: Optional[NeuralMemState], backend: Optional[TensorBackend] = None) -> Optional[NeuralMemState]:
    """ Deep copy of a state whose tensors share no storage or autograd history with anything live. """
    if not isinstance(state, NeuralMemState): return state
    detached_weights = {}
    for key, tensors in (state.layer_weights or {}).items():
        detached_weights[key] = [t.detach().clone() for t in tensors if is_tensor(t)]
        if exists(backend):
            for t in detached_weights[key]: backend.keep(t)
    return NeuralMemState(seq_index=state.seq_index, layer_weights=detached_weights,
                          optim_state=copy.deepcopy(dict(state.optim_state or {})))

def dispose_mem_state(state: Optional[NeuralMemState], backend: TensorBackend) -> None:
    """ Releases a state's tensors; the state is left with empty layer_weights. """
    if not isinstance(state, NeuralMemState) or state.layer_weights is None: return
    for tensors in state.layer_weights.values(): backend.release_all(tensors)
    state.layer_weights.clear()

def dispose_mem_states(states: Optional[List[NeuralMemState]], backend: TensorBackend) -> None:
    for state in states or []: dispose_mem_state(state, backend)

def mem_state_num_bytes(state: Optional[NeuralMemState]) -> int:
    if not isinstance(state, NeuralMemState): return 0
    return sum(t.numel() * t.element_size() for ts in state.layer_weights.values() for t in ts if is_tensor(t))


# --- Neural Memory Module (one per hierarchy level) ---
class NeuralMemoryModule(Module):
    """
    Combined inference + online training unit of one hierarchy level.

    Each forward_step loads the caller's state into the live units, projects and sums the
    bottom-up, top-down and external signals, predicts with the memory model, and (when
    learning_rate > 0) takes one Adam step towards a self-supervised target.
    """
    def __init__(self, dim: int, bu_input_dims: Dict[str, int], td_input_dims: Dict[str, int], level_name: str = "Unknown",
                 nmm_params: Optional[NMMParams] = None, external_signal_dim: Optional[int] = None,
                 backend: Optional[TensorBackend] = None, verbose: bool = False):
        super().__init__()
        params = nmm_params if exists(nmm_params) else NMMParams()
        self.dim = dim; self.level_name = level_name; self.params = params
        self.backend = backend if exists(backend) else TensorBackend()
        self.verbose = bool(verbose or params.verbose)
        self.is_disposed = False
        if not isinstance(dim, int) or dim <= 0: raise ValueError(f"Lvl '{level_name}': Invalid 'dim' {dim!r}")
        for kind, dims in (("BU", bu_input_dims), ("TD", td_input_dims)):
            for name, s_dim in dims.items():
                if not isinstance(s_dim, int) or s_dim <= 0: raise ValueError(f"Lvl '{level_name}': Invalid {kind} input dim {s_dim!r} for '{name}'")

        self.bu_input_dims = dict(bu_input_dims); self.td_input_dims = dict(td_input_dims)
        self.external_signal_dim = external_signal_dim if external_signal_dim and external_signal_dim > 0 else None
        role = params.external_signal_role if self.external_signal_dim else 'none'
        if self.external_signal_dim and role == 'none': role = 'add_to_bu'
        self.external_signal_role = role
        self.beta1 = params.beta1; self.beta2 = params.beta2
        self.max_grad_norm = params.max_grad_norm if params.max_grad_norm and params.max_grad_norm > 0 else None

        mem_target = dim if params.mem_model_depth == 1 else params.mem_model_expansion
        self.memory_model = MemoryUnit(dim, params.mem_model_depth, mem_target, params.activation, f"{level_name}_mem_mlp", self.backend)
        self.to_value_target = MemoryUnit(dim, 1, dim, name_prefix=f"{level_name}_val_proj", backend=self.backend)
        self.bu_projections = nn.ModuleDict({n: MemoryUnit(s_dim, 1, dim, name_prefix=f"{level_name}_bu_proj_{n}", backend=self.backend) for n, s_dim in self.bu_input_dims.items()})
        self.td_projections = nn.ModuleDict({n: MemoryUnit(s_dim, 1, dim, name_prefix=f"{level_name}_td_proj_{n}", backend=self.backend) for n, s_dim in self.td_input_dims.items()})
        self.external_signal_projection = None
        if self.external_signal_dim:
            self.external_signal_projection = MemoryUnit(self.external_signal_dim, 1, dim, name_prefix=f"{level_name}_ext_proj", backend=self.backend)

        # Only the memory model and the external projection adapt; the other heads stay fixed.
        self.to_value_target.set_trainable(False)
        for proj in list(self.bu_projections.values()) + list(self.td_projections.values()): proj.set_trainable(False)

        self.optimizer: Optional[torch.optim.Optimizer] = None
        self.learning_rate = 0.0; self.weight_decay = 0.0
        self.update_learning_params(params.learning_rate, params.weight_decay)
        if self.verbose: print(f"  NMM ({self.level_name}): Dim={dim}, BU={self.bu_input_dims}, TD={self.td_input_dims}, ExtDim={self.external_signal_dim or 'N/A'}, Role={self.external_signal_role}, LR={self.learning_rate:.2e}")

    # --- Learning parameters ---
    @property
    def training_enabled(self) -> bool:
        return self.learning_rate > 0 and exists(self.optimizer)

    def _trainable_parameters(self) -> List[nn.Parameter]:
        ps = list(self.memory_model.get_trainable_variables())
        if exists(self.external_signal_projection): ps.extend(self.external_signal_projection.get_trainable_variables())
        return ps

    def _trainable_kernels(self) -> List[nn.Parameter]:
        ks = list(self.memory_model.get_kernels())
        if exists(self.external_signal_projection): ks.extend(self.external_signal_projection.get_kernels())
        return ks

    def update_learning_params(self, learning_rate: float, weight_decay: float) -> None:
        """ Recreates (lr > 0) or drops (lr == 0) the optimizer; weights are untouched. """
        if learning_rate < 0 or weight_decay < 0: raise ValueError(f"Lvl '{self.level_name}': learning_rate and weight_decay must be >= 0")
        self.learning_rate = float(learning_rate); self.weight_decay = float(weight_decay)
        self.optimizer = None
        trainable_ps = self._trainable_parameters()
        if self.learning_rate > 0 and trainable_ps:
            self.optimizer = torch.optim.Adam(trainable_ps, lr=self.learning_rate, betas=(self.beta1, self.beta2), eps=ADAM_EPSILON)
            if self.verbose: print(f"  NMM ({self.level_name}): Optimizer re-created with LR={self.learning_rate:.2e}, WD={self.weight_decay:.2e}")
        elif self.verbose:
            reason = "LR is 0" if self.learning_rate == 0 else "no trainable parameters"
            print(f"  NMM ({self.level_name}): Optimizer disabled ({reason}).")

    # --- State handling ---
    def _check_not_disposed(self):
        if self.is_disposed: raise RuntimeError(f"{self.level_name} NMM is disposed.")

    def _components(self) -> Dict[str, MemoryUnit]:
        comps = {'net': self.memory_model, 'value_proj': self.to_value_target}
        for n, proj in self.bu_projections.items(): comps[f"bu_proj_{n}"] = proj
        for n, proj in self.td_projections.items(): comps[f"td_proj_{n}"] = proj
        if exists(self.external_signal_projection): comps['external_proj'] = self.external_signal_projection
        return comps

    def _get_layer_weights(self, detach: bool = True) -> Dict[str, List[Tensor]]:
        with torch.set_grad_enabled(not detach):
            return {name: unit.get_weights(detach=detach) for name, unit in self._components().items()}

    def _apply_layer_weights(self, layer_weights: Dict[str, List[Tensor]]) -> None:
        if not isinstance(layer_weights, dict): raise ValueError(f"Lvl '{self.level_name}': State has no layer_weights")
        comps = self._components()
        for name, unit in comps.items():
            if name not in layer_weights and unit.get_trainable_variables():
                raise ValueError(f"Lvl '{self.level_name}': State is missing weights for '{name}' (disposed or from another configuration)")
            unit.set_weights(layer_weights.get(name, []))
        unexpected = [k for k in layer_weights if k not in comps]
        if unexpected and self.verbose: print(f"Warning ({self.level_name}): Ignoring unexpected state components {unexpected}")

    def get_initial_state(self) -> NeuralMemState:
        self._check_not_disposed()
        weights = self._get_layer_weights(detach=True)
        for tensors in weights.values():
            for t in tensors: self.backend.keep(t)
        return create_mem_state(0, weights, {'lr': self.learning_rate, 'wd': self.weight_decay})

    # --- Per-tick computation ---
    def _validated_input(self, t: Optional[Tensor], expected_dim: int, label: str, arena: TensorScope) -> Tensor:
        """ [1, expected_dim] view of a [1, 1, expected_dim] input, zeros when missing or malformed. """
        if is_tensor(t) and t.ndim == 3 and tuple(t.shape) == (1, 1, expected_dim):
            return t.detach().to(device=self.backend.device, dtype=self.backend.dtype).reshape(1, expected_dim)
        if self.verbose:
            if t is None: print(f"Warning ({self.level_name}): {label} missing. Using zeros. Expected [1, 1, {expected_dim}]")
            else: print(f"Warning ({self.level_name}): {label} invalid. Using zeros. Expected [1, 1, {expected_dim}], got {tuple(t.shape) if is_tensor(t) else type(t).__name__}")
        return arena.zeros((1, expected_dim))

    def _combine_projected(self, inputs: Optional[Dict[str, Tensor]], input_dims: Dict[str, int], projections: nn.ModuleDict, kind: str, arena: TensorScope) -> Tensor:
        inputs = inputs or {}
        projected = [projections[n](self._validated_input(inputs.get(n), s_dim, f"{kind} input '{n}'", arena)) for n, s_dim in input_dims.items()]
        unexpected = [n for n in inputs if n not in input_dims]
        if unexpected and self.verbose: print(f"Warning ({self.level_name}): Ignoring undeclared {kind} inputs {unexpected}")
        if not projected: return arena.zeros((1, self.dim))
        return torch.stack(projected).sum(dim=0)

    def _resolve_target(self, target: Tensor, target_override: Optional[Tensor]) -> Tensor:
        if target_override is None: return target
        if is_tensor(target_override) and tuple(target_override.shape) == (1, 1, self.dim):
            return target_override.detach().to(device=self.backend.device, dtype=self.backend.dtype).reshape(1, self.dim)
        if self.verbose: print(f"Warning ({self.level_name}): Training target ignored, expected [1, 1, {self.dim}], got {tuple(target_override.shape) if is_tensor(target_override) else type(target_override).__name__}")
        return target

    def _train_step(self, prediction: Tensor, target: Tensor, seq_index: int) -> Tuple[Tensor, bool]:
        """ One Adam step on MSE + (wd/2)*sum ||kernel||^2. Returns (loss, stepped). """
        loss = F.mse_loss(prediction, target)
        if self.weight_decay > 0:
            l2_loss = sum((k.pow(2).sum() for k in self._trainable_kernels()), self.backend.scalar(0.0))
            loss = loss + l2_loss * (self.weight_decay / 2.0)
        self.optimizer.zero_grad(set_to_none=True)
        if not loss.requires_grad: return loss.detach(), False
        loss.backward()
        grads_ps = [p for p in self._trainable_parameters() if p.grad is not None]
        finite = bool(torch.isfinite(loss).item()) and all(bool(torch.isfinite(p.grad).all().item()) for p in grads_ps)
        if not finite:
            print(f"Warning ({self.level_name}): Non-finite loss or gradients at seq {seq_index} (loss={loss.item()}). Skipping optimizer step.")
            self.optimizer.zero_grad(set_to_none=True)
            return loss.detach(), False
        if self.max_grad_norm and grads_ps: torch.nn.utils.clip_grad_norm_(grads_ps, self.max_grad_norm)
        self.optimizer.step()
        self.optimizer.zero_grad(set_to_none=True)
        return loss.detach(), True

    def forward_step(self, bu_inputs: Dict[str, Tensor], td_signals: Dict[str, Tensor], current_state: NeuralMemState,
                     external_signal: Optional[Tensor] = None, detach_next_state: bool = True,
                     target_override: Optional[Tensor] = None) -> NMMStepOutput:
        """
        Processes one tick for this level.

        Args:
            bu_inputs: source name -> [1, 1, src_dim] tensor (raw sensory input for leaf levels).
            td_signals: source name -> [1, 1, src_dim] tensor from the previous tick.
            current_state: the level's state from the previous tick (loaded, not modified).
            external_signal: [1, 1, external_signal_dim] tensor or None.
            detach_next_state: if False, next-state weights are clones that keep autograd history.
            target_override: [1, 1, dim] supervised target replacing the self-referential one.

        Returns:
            NMMStepOutput with the prediction made *before* this tick's update ([1, 1, dim]),
            the next state, and 0-dim diagnostics (loss, weight change, input norms).
        """
        self._check_not_disposed()
        training = self.training_enabled
        role = self.external_signal_role
        with self.backend.scope(f"{self.level_name}_forward_step") as arena:
            self._apply_layer_weights(current_state.layer_weights)
            with torch.no_grad():
                old_weights = [arena.track(p.detach().clone()) for p in self._trainable_parameters()] if training else []

            with torch.set_grad_enabled(training):
                comb_bu = self._combine_projected(bu_inputs, self.bu_input_dims, self.bu_projections, "BU", arena)
                comb_td = self._combine_projected(td_signals, self.td_input_dims, self.td_projections, "TD", arena)
                proj_ext = None
                if exists(self.external_signal_projection):
                    ext_in = self._validated_input(external_signal, self.external_signal_dim, "External signal", arena)
                    proj_ext = self.external_signal_projection(ext_in)

                target_base = comb_bu; mem_input = comb_bu + comb_td
                if exists(proj_ext) and role == 'add_to_bu':
                    target_base = target_base + proj_ext; mem_input = mem_input + proj_ext
                elif exists(proj_ext) and role == 'add_to_td':
                    mem_input = mem_input + proj_ext

                with torch.no_grad():
                    target = self.to_value_target(target_base)
                    if exists(proj_ext) and role == 'add_to_target': target = target + proj_ext
                    target = arena.track(self._resolve_target(target, target_override).detach())
                    bu_norm = arena.keep(torch.linalg.norm(comb_bu.detach()))
                    td_norm = arena.keep(torch.linalg.norm(comb_td.detach()))
                    ext_norm = arena.keep(torch.linalg.norm(proj_ext.detach()) if exists(proj_ext) else self.backend.scalar(0.0))

                prediction = self.memory_model(mem_input)
            retrieved_val = arena.keep(prediction.detach().clone().reshape(1, 1, self.dim))

            stepped = False
            if training:
                loss, stepped = self._train_step(prediction, target, current_state.seq_index)
            else:
                with torch.no_grad(): loss = F.mse_loss(prediction, target)
            anomaly_score = arena.keep(loss.detach().clone())

            with torch.no_grad():
                if stepped:
                    diff_sq_sum = self.backend.scalar(0.0)
                    for old_w, p in zip(old_weights, self._trainable_parameters()):
                        diff_sq_sum = diff_sq_sum + (p.detach() - old_w).pow(2).sum()
                    weight_change = arena.keep(torch.sqrt(diff_sq_sum))
                else:
                    weight_change = arena.keep(self.backend.scalar(0.0))

            next_weights = self._get_layer_weights(detach=detach_next_state)
            for tensors in next_weights.values():
                for t in tensors: arena.keep(t)
            next_state = create_mem_state(current_state.seq_index + 1, next_weights, {'lr': self.learning_rate, 'wd': self.weight_decay})

        return NMMStepOutput(retrieved_val, next_state, anomaly_score, weight_change, bu_norm, td_norm, ext_norm)

    def dispose(self) -> None:
        if self.is_disposed: return
        for unit in self._components().values(): unit.dispose()
        self.optimizer = None; self.is_disposed = True
        if self.verbose: print(f"NMM {self.level_name} disposed.")

print("Neural Memory Library Loaded Successfully.")
