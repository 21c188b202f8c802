"""Hyperparameters and configuration surface for the DQN learner and driver."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

TOKEN_ENV_VAR = "IGNITION_HUB_TOKEN"

# Keys of the camelCase configuration surface -> DQNConfig field names.
_CAMEL_KEYS = {
    "inputSize": "input_size",
    "actionSize": "action_size",
    "hiddenLayers": "hidden_layers",
    "epsilonDecay": "epsilon_decay",
    "minEpsilon": "min_epsilon",
    "learningRate": "learning_rate",
    "lr": "learning_rate",
    "batchSize": "batch_size",
    "memorySize": "memory_size",
    "targetSyncPeriod": "target_sync_period",
    "targetUpdateFrequency": "target_sync_period",
    "stepIntervalMs": "step_interval_ms",
    "checkpointEvery": "checkpoint_every",
    "repositoryId": "repository_id",
    "repoId": "repository_id",
}


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


@dataclass
class DQNConfig:
    input_size: int
    action_size: int
    hidden_layers: tuple[int, ...] = field(default=(24, 24))
    gamma: float = 0.99
    epsilon: float = 1.0
    epsilon_decay: float = 0.995
    min_epsilon: float = 0.01
    learning_rate: float = 0.001
    batch_size: int = 32
    memory_size: int = 10_000
    target_sync_period: int = 1000
    step_interval_ms: int = 100
    checkpoint_every: int = 0
    repository_id: str | None = None
    token: str | None = None
    seed: int | None = None

    def __post_init__(self):
        self.hidden_layers = tuple(int(h) for h in self.hidden_layers)
        self.validate()

    def validate(self) -> None:
        if self.input_size <= 0:
            raise ConfigError(f"input_size must be > 0, got {self.input_size}")
        if self.action_size <= 0:
            raise ConfigError(f"action_size must be > 0, got {self.action_size}")
        if not self.hidden_layers or any(h <= 0 for h in self.hidden_layers):
            raise ConfigError(f"hidden_layers must be non-empty positive widths, got {list(self.hidden_layers)}")
        if not 0.0 <= self.gamma <= 1.0:
            raise ConfigError(f"gamma must be in [0, 1], got {self.gamma}")
        if not 0.0 <= self.min_epsilon <= 1.0:
            raise ConfigError(f"min_epsilon must be in [0, 1], got {self.min_epsilon}")
        if not 0.0 <= self.epsilon <= 1.0:
            raise ConfigError(f"epsilon must be in [0, 1], got {self.epsilon}")
        if not 0.0 < self.epsilon_decay <= 1.0:
            raise ConfigError(f"epsilon_decay must be in (0, 1], got {self.epsilon_decay}")
        if self.learning_rate <= 0.0:
            raise ConfigError(f"learning_rate must be > 0, got {self.learning_rate}")
        if self.batch_size <= 0:
            raise ConfigError(f"batch_size must be > 0, got {self.batch_size}")
        if self.memory_size <= 0:
            raise ConfigError(f"memory_size must be > 0, got {self.memory_size}")
        if self.target_sync_period <= 0:
            raise ConfigError(f"target_sync_period must be > 0, got {self.target_sync_period}")
        if self.step_interval_ms <= 0:
            raise ConfigError(f"step_interval_ms must be > 0, got {self.step_interval_ms}")
        if self.checkpoint_every < 0:
            raise ConfigError(f"checkpoint_every must be >= 0, got {self.checkpoint_every}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DQNConfig":
        """Build a config from snake_case or camelCase keys; unknown keys are rejected."""
        kwargs = normalize_keys(data)
        if "token" not in kwargs and os.environ.get(TOKEN_ENV_VAR):
            kwargs["token"] = os.environ[TOKEN_ENV_VAR]
        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["hidden_layers"] = list(self.hidden_layers)
        out.pop("token")
        return out


def load_config(path: str | Path) -> dict:
    """Load YAML config. Returns dict with optional 'agent' and 'training' keys."""
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Map camelCase keys of the configuration surface to DQNConfig field names.

    Raises ConfigError for keys that are not config options.
    """
    known = {f.name for f in fields(DQNConfig)}
    out: dict[str, Any] = {}
    for key, value in data.items():
        name = _CAMEL_KEYS.get(key, key)
        if name not in known:
            raise ConfigError(f"Unknown config option: {key}")
        out[name] = value
    return out
