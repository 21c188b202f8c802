"""Target-chasing environment: an agent on a bounded line/plane moves toward a random target."""

from __future__ import annotations

import math

import numpy as np

REACH_REWARD = 100.0
OUT_OF_BOUNDS_REWARD = -100.0
PROGRESS_BONUS = 0.2
RETREAT_PENALTY = -0.1
MAX_TARGET_DRAWS = 10_000


class TargetChasingEnv:
    """
    Actions for ``dims`` axes: ``k < 2 * dims`` moves axis ``k // 2`` by
    ``-step_size`` (even ``k``) or ``+step_size`` (odd ``k``); ``2 * dims`` stays.

    Observation (length ``3 * dims + 1``): unit direction to the target,
    distance normalised by the box diagonal, then per-axis normalised
    distances to the lower and upper bounds.
    """

    def __init__(
        self,
        dims: int = 1,
        bound: float = 1.0,
        step_size: float = 0.1,
        reach_radius: float = 0.1,
        max_episode_steps: int = 200,
        seed: int | None = None,
    ):
        if dims <= 0:
            raise ValueError(f"dims must be > 0, got {dims}")
        if bound <= 0 or step_size <= 0 or reach_radius <= 0:
            raise ValueError("bound, step_size and reach_radius must be > 0")
        if max_episode_steps <= 0:
            raise ValueError(f"max_episode_steps must be > 0, got {max_episode_steps}")
        if 2.0 * reach_radius >= 0.9 * bound:
            raise ValueError(
                f"reach_radius={reach_radius} leaves no room for targets inside bound={bound}; "
                "need 2 * reach_radius < 0.9 * bound"
            )
        self.dims = int(dims)
        self.bound = float(bound)
        self.step_size = float(step_size)
        self.reach_radius = float(reach_radius)
        self.max_episode_steps = int(max_episode_steps)
        self.rng = np.random.default_rng(seed)
        self.max_distance = 2.0 * self.bound * math.sqrt(self.dims)

        self.episodes = 0
        self.reset()

    @property
    def action_size(self) -> int:
        return 2 * self.dims + 1

    @property
    def observation_size(self) -> int:
        return 3 * self.dims + 1

    def distance(self) -> float:
        return float(np.linalg.norm(self.target - self.position))

    @property
    def reached(self) -> bool:
        return self.distance() < self.reach_radius

    @property
    def out_of_bounds(self) -> bool:
        return bool(np.any(np.abs(self.position) > self.bound))

    def _sample_target(self) -> np.ndarray:
        limit = 0.9 * self.bound
        for _ in range(MAX_TARGET_DRAWS):
            target = self.rng.uniform(-limit, limit, size=self.dims)
            if np.linalg.norm(target - self.position) >= 2.0 * self.reach_radius:
                return target
        raise RuntimeError(f"No target found at least {2.0 * self.reach_radius} from the start in {MAX_TARGET_DRAWS} draws")

    def reset(self) -> None:
        self.position = np.zeros(self.dims, dtype=np.float64)
        self.target = self._sample_target()
        self.steps = 0
        self.last_distance = self.distance()
        self._reward = 0.0
        self.episodes += 1

    def observe(self) -> np.ndarray:
        offset = self.target - self.position
        dist = float(np.linalg.norm(offset))
        direction = offset / dist if dist > 0 else np.zeros(self.dims)
        span = 2.0 * self.bound
        to_lower = (self.position + self.bound) / span
        to_upper = (self.bound - self.position) / span
        return np.concatenate([direction, [dist / self.max_distance], to_lower, to_upper]).astype(np.float64)

    def act(self, action: int) -> None:
        action = int(action)
        if not 0 <= action < self.action_size:
            raise ValueError(f"action must be in range 0..{self.action_size - 1}, got {action}")
        if action < 2 * self.dims:
            axis, sign = divmod(action, 2)
            self.position[axis] += self.step_size if sign else -self.step_size
        self.steps += 1

        dist = self.distance()
        if self.out_of_bounds:
            self._reward = OUT_OF_BOUNDS_REWARD
        elif dist < self.reach_radius:
            self._reward = REACH_REWARD
        else:
            proximity = 1.0 - dist / self.max_distance
            progress = PROGRESS_BONUS if dist < self.last_distance else RETREAT_PENALTY
            self._reward = proximity + progress
        self.last_distance = dist

    def reward(self) -> float:
        return self._reward

    def is_done(self) -> bool:
        return self.reached or self.out_of_bounds or self.steps >= self.max_episode_steps
