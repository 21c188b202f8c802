"""Epsilon-greedy DQN learner over an injected numeric engine."""

from __future__ import annotations

import logging
import random

import numpy as np

from .checkpoint import CheckpointError, CheckpointStore
from .client import HubError
from .config import DQNConfig
from .network import NumericEngine
from .replay import ReplayMemory
from .types import Transition

_log = logging.getLogger(__name__)


class DQNLearner:
    """Action selection, replay and TD(0) updates for one agent.

    The learner never builds its numeric engine; it receives one and is the
    only component that mutates its parameters (``fit``, ``sync_target``,
    ``set_parameters``).
    """

    def __init__(self, config: DQNConfig, engine: NumericEngine, rng: random.Random | None = None):
        config.validate()
        self.config = config
        self.engine = engine
        self._rng = rng or random.Random(config.seed)
        self.memory = ReplayMemory(config.memory_size, rng=self._rng)
        self.epsilon = float(config.epsilon)
        self.train_step_counter = 0
        self.best_reward_seen = float("-inf")
        _log.info(
            "learner_init input_size=%d action_size=%d memory_size=%d batch_size=%d",
            config.input_size, config.action_size, config.memory_size, config.batch_size,
        )

    def select_action(self, state) -> int:
        if self._rng.random() < self.epsilon:
            return self._rng.randrange(self.config.action_size)
        q_values = self.engine.predict_online(np.asarray(state, dtype=np.float64).reshape(1, -1))
        action = int(np.argmax(q_values[0]))
        del q_values
        return action

    def remember(self, transition: Transition) -> None:
        self.memory.add(transition)

    def learn(self) -> float | None:
        """One TD update on a sampled batch; returns the loss, or None if no fit happened."""
        if self.memory.size() < self.config.batch_size:
            return None
        batch = self.memory.sample(self.config.batch_size)
        try:
            states = np.stack([t.state for t in batch])
            next_states = np.stack([t.next_state for t in batch])
            actions = np.array([t.action for t in batch], dtype=np.int64)
            rewards = np.array([t.reward for t in batch], dtype=np.float64)
            dones = np.array([t.done for t in batch], dtype=bool)

            targets = np.array(self.engine.predict_online(states), dtype=np.float64)
            next_q = self.engine.predict_target(next_states)
            bootstrap = rewards + self.config.gamma * np.max(next_q, axis=1)
            targets[np.arange(len(batch)), actions] = np.where(dones, rewards, bootstrap)
            del next_q, bootstrap

            loss = self.engine.fit(states, targets)
            del states, next_states, targets
        except Exception as exc:
            _log.error(
                "learn_failed train_step=%d batch_size=%d error=%s",
                self.train_step_counter, len(batch), exc, exc_info=True,
            )
            return None

        self.epsilon = max(self.config.min_epsilon, self.epsilon * self.config.epsilon_decay)
        self.train_step_counter += 1
        if self.train_step_counter % self.config.target_sync_period == 0:
            self.sync_target_network()
        _log.debug(
            "learn train_step=%d loss=%.6f epsilon=%.4f", self.train_step_counter, loss, self.epsilon
        )
        return float(loss)

    def sync_target_network(self) -> None:
        self.engine.sync_target()
        _log.info("target_synced train_step=%d", self.train_step_counter)

    def reset(self) -> None:
        """Restore initial epsilon, clear memory and zero the train-step counter.

        ``best_reward_seen`` is kept across resets.
        """
        self.epsilon = float(self.config.epsilon)
        self.memory.clear()
        self.train_step_counter = 0

    def maybe_save_best_checkpoint(
        self,
        store: CheckpointStore,
        repository_id: str,
        token: str | None,
        reward: float,
        label=None,
    ) -> bool:
        if not reward > self.best_reward_seen:
            return False
        self.best_reward_seen = float(reward)
        name = "best" if label is None else f"best-{label}"
        try:
            store.save(repository_id, token, name, self.engine)
        except (HubError, CheckpointError) as exc:
            _log.warning("best_checkpoint_failed name=%s reward=%.4f error=%s", name, reward, exc)
            return False
        _log.info("best_checkpoint_saved name=%s reward=%.4f", name, reward)
        return True

    def save_checkpoint(self, store: CheckpointStore, repository_id: str, token: str | None, name: str) -> list[str]:
        return store.save(repository_id, token, name, self.engine)

    def load_checkpoint(self, store: CheckpointStore, repository_id: str, name: str) -> None:
        params = store.load(repository_id, name)
        self.engine.set_parameters(params)
        self.engine.sync_target()
        _log.info("checkpoint_restored repo=%s name=%s", repository_id, name)

    def dispose(self) -> None:
        self.memory.clear()
        self.engine.dispose()
