"""Q-network construction and the torch-backed numeric engine."""

from __future__ import annotations

import json
from typing import Any, Protocol, Sequence

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from .config import DQNConfig

BUNDLE_FORMAT = "ignition-dqn/1"


class NumericEngine(Protocol):
    """Owns the online and target Q-networks; everything crossing it is numpy."""

    def predict_online(self, states: np.ndarray) -> np.ndarray: ...

    def predict_target(self, states: np.ndarray) -> np.ndarray: ...

    def fit(self, states: np.ndarray, targets: np.ndarray) -> float: ...

    def get_parameters(self) -> list[np.ndarray]: ...

    def set_parameters(self, params: Sequence[np.ndarray]) -> None: ...

    def sync_target(self) -> None: ...

    def describe(self) -> dict[str, Any]: ...

    def dispose(self) -> None: ...


def resolve_device(device_name: str) -> torch.device:
    name = device_name.lower()
    if name == "cpu":
        return torch.device("cpu")
    if name == "cuda":
        if not torch.cuda.is_available():
            raise ValueError("Requested --device cuda, but CUDA is not available")
        return torch.device("cuda")
    if name == "mps":
        if not (torch.backends.mps.is_available() and torch.backends.mps.is_built()):
            raise ValueError("Requested --device mps, but MPS is not available")
        return torch.device("mps")
    raise ValueError("--device must be one of: cpu, cuda, mps")


def build_q_network(input_size: int, action_size: int, hidden_layers: Sequence[int] = (24, 24)) -> nn.Sequential:
    """MLP: input -> [Linear -> ReLU] per hidden width -> Linear(action_size), linear Q-values."""
    layers: list[nn.Module] = []
    width_in = int(input_size)
    for width in hidden_layers:
        layers.append(nn.Linear(width_in, int(width)))
        layers.append(nn.ReLU())
        width_in = int(width)
    layers.append(nn.Linear(width_in, int(action_size)))
    return nn.Sequential(*layers)


class TorchNumericEngine:
    """Online + target MLPs trained with Adam on an MSE loss, one optimizer step per fit."""

    def __init__(
        self,
        input_size: int,
        action_size: int,
        hidden_layers: Sequence[int] = (24, 24),
        learning_rate: float = 0.001,
        device: str | torch.device = "cpu",
        seed: int | None = None,
    ):
        if seed is not None:
            torch.manual_seed(seed)
        self.input_size = int(input_size)
        self.action_size = int(action_size)
        self.hidden_layers = tuple(int(h) for h in hidden_layers)
        self.learning_rate = float(learning_rate)
        self.device = device if isinstance(device, torch.device) else resolve_device(device)

        self.online = build_q_network(self.input_size, self.action_size, self.hidden_layers).to(self.device)
        self.target = build_q_network(self.input_size, self.action_size, self.hidden_layers).to(self.device)
        self.target.load_state_dict(self.online.state_dict())
        self.target.eval()
        self.optimizer = torch.optim.Adam(self.online.parameters(), lr=self.learning_rate)
        self._disposed = False

    @classmethod
    def from_config(cls, config: DQNConfig, device: str | torch.device = "cpu") -> "TorchNumericEngine":
        return cls(
            input_size=config.input_size,
            action_size=config.action_size,
            hidden_layers=config.hidden_layers,
            learning_rate=config.learning_rate,
            device=device,
            seed=config.seed,
        )

    def _check_alive(self) -> None:
        if self._disposed:
            raise RuntimeError("TorchNumericEngine has been disposed")

    def _as_batch(self, states: np.ndarray) -> torch.Tensor:
        arr = np.asarray(states, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.ndim != 2 or arr.shape[1] != self.input_size:
            raise ValueError(f"states must have shape (B, {self.input_size}), got {arr.shape}")
        return torch.from_numpy(arr).to(self.device)

    def _predict(self, net: nn.Module, states: np.ndarray) -> np.ndarray:
        self._check_alive()
        x = self._as_batch(states)
        with torch.no_grad():
            out = net(x)
        values = out.cpu().numpy().astype(np.float64)
        del x, out
        return values

    def predict_online(self, states: np.ndarray) -> np.ndarray:
        self._check_alive()
        self.online.eval()
        return self._predict(self.online, states)

    def predict_target(self, states: np.ndarray) -> np.ndarray:
        return self._predict(self.target, states)

    def fit(self, states: np.ndarray, targets: np.ndarray) -> float:
        self._check_alive()
        x = self._as_batch(states)
        y_arr = np.asarray(targets, dtype=np.float32)
        if y_arr.shape != (x.shape[0], self.action_size):
            raise ValueError(f"targets must have shape ({x.shape[0]}, {self.action_size}), got {y_arr.shape}")
        y = torch.from_numpy(y_arr).to(self.device)

        self.online.train()
        pred = self.online(x)
        loss = F.mse_loss(pred, y)
        self.optimizer.zero_grad()
        loss.backward()
        self.optimizer.step()
        loss_value = float(loss.detach().item())
        del x, y, pred, loss
        return loss_value

    def get_parameters(self) -> list[np.ndarray]:
        self._check_alive()
        return [v.detach().cpu().numpy().copy() for v in self.online.state_dict().values()]

    def set_parameters(self, params: Sequence[np.ndarray]) -> None:
        self._check_alive()
        state = self.online.state_dict()
        if len(params) != len(state):
            raise ValueError(f"Expected {len(state)} parameter arrays, got {len(params)}")
        new_state = {}
        for (key, current), value in zip(state.items(), params):
            arr = np.asarray(value, dtype=np.float32)
            if tuple(arr.shape) != tuple(current.shape):
                raise ValueError(f"Parameter {key} must have shape {tuple(current.shape)}, got {arr.shape}")
            new_state[key] = torch.from_numpy(arr.copy()).to(self.device)
        self.online.load_state_dict(new_state)

    def sync_target(self) -> None:
        self._check_alive()
        self.target.load_state_dict(self.online.state_dict())

    def describe(self) -> dict[str, Any]:
        return {
            "input_size": self.input_size,
            "action_size": self.action_size,
            "hidden_layers": list(self.hidden_layers),
            "activation": "relu",
            "loss": "mse",
            "optimizer": "adam",
            "learning_rate": self.learning_rate,
        }

    def dispose(self) -> None:
        if self._disposed:
            return
        self.optimizer.state.clear()
        del self.online, self.target
        self._disposed = True


def encode_parameters(architecture: dict[str, Any], params: Sequence[np.ndarray]) -> tuple[bytes, bytes]:
    """Serialize parameters into (model.json descriptor, weights.bin raw float32 blob)."""
    manifest = []
    chunks = []
    offset = 0
    for i, p in enumerate(params):
        arr = np.ascontiguousarray(np.asarray(p, dtype="<f4"))
        manifest.append({"name": f"param_{i}", "shape": list(arr.shape), "dtype": "float32", "offset": offset})
        chunks.append(arr.tobytes())
        offset += arr.nbytes
    descriptor = {
        "format": BUNDLE_FORMAT,
        "architecture": dict(architecture),
        "weights_manifest": manifest,
        "weights_bytes": offset,
    }
    return json.dumps(descriptor, indent=2).encode("utf-8"), b"".join(chunks)


def decode_parameters(model_json: bytes, weights: bytes) -> tuple[dict[str, Any], list[np.ndarray]]:
    """Inverse of encode_parameters. Raises ValueError on a malformed bundle."""
    try:
        descriptor = json.loads(model_json.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Invalid model descriptor: {exc}") from exc
    if not isinstance(descriptor, dict) or descriptor.get("format") != BUNDLE_FORMAT:
        raise ValueError("Model descriptor has an unsupported format")
    if int(descriptor.get("weights_bytes", -1)) != len(weights):
        raise ValueError(f"Weights blob has {len(weights)} bytes, descriptor expects {descriptor.get('weights_bytes')}")

    params: list[np.ndarray] = []
    for entry in descriptor["weights_manifest"]:
        shape = tuple(int(s) for s in entry["shape"])
        count = int(np.prod(shape)) if shape else 1
        arr = np.frombuffer(weights, dtype="<f4", count=count, offset=int(entry["offset"]))
        params.append(arr.reshape(shape).astype(np.float32))
    return descriptor.get("architecture", {}), params
