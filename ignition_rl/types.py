"""Shared dataclasses for the DQN pipeline."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def _frozen_vector(values) -> np.ndarray:
    arr = np.array(values, dtype=np.float64, copy=True).reshape(-1)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class Transition:
    state: np.ndarray  # shape (input_size,)
    action: int
    reward: float
    next_state: np.ndarray  # shape (input_size,)
    done: bool

    @classmethod
    def create(cls, state, action: int, reward: float, next_state, done: bool) -> "Transition":
        """Build a transition that owns read-only copies of both state vectors."""
        return cls(
            state=_frozen_vector(state),
            action=int(action),
            reward=float(reward),
            next_state=_frozen_vector(next_state),
            done=bool(done),
        )


@dataclass
class StepRecord:
    step: int
    action: int
    reward: float
    done: bool
    loss: float | None
