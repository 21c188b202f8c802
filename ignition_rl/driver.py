"""Environment-driving step loop with an in-flight guard and a background ticker."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Protocol

import numpy as np

from .checkpoint import CheckpointError, CheckpointStore
from .client import HubError
from .config import DQNConfig
from .learner import DQNLearner
from .types import StepRecord, Transition

_log = logging.getLogger(__name__)


class Environment(Protocol):
    """``observe`` reflects the latest ``act``; ``reward``/``is_done`` are read post-action."""

    def observe(self) -> np.ndarray: ...

    def act(self, action: int) -> None: ...

    def reward(self) -> float: ...

    def is_done(self) -> bool: ...

    def reset(self) -> None: ...


class CallbackEnvironment:
    """Adapts plain callables to the Environment protocol."""

    def __init__(
        self,
        get_observation: Callable[[], np.ndarray],
        apply_action: Callable[[int], None],
        compute_reward: Callable[[], float],
        is_done: Callable[[], bool],
        on_reset: Callable[[], None] | None = None,
    ):
        self._get_observation = get_observation
        self._apply_action = apply_action
        self._compute_reward = compute_reward
        self._is_done = is_done
        self._on_reset = on_reset

    def observe(self) -> np.ndarray:
        return np.asarray(self._get_observation(), dtype=np.float64)

    def act(self, action) -> None:
        self._apply_action(normalize_action(action))

    def reward(self) -> float:
        return float(self._compute_reward())

    def is_done(self) -> bool:
        return bool(self._is_done())

    def reset(self) -> None:
        if self._on_reset is not None:
            self._on_reset()


def normalize_action(action) -> int:
    """Resolve a scalar id or a vector of action scores to a single action index."""
    arr = np.asarray(action)
    if arr.ndim == 0:
        return int(arr)
    if arr.size == 0:
        raise ValueError("Cannot resolve an action from an empty score vector")
    return int(np.argmax(arr.reshape(-1)))


@dataclass
class CheckpointPolicy:
    store: CheckpointStore
    repository_id: str
    token: str | None = None
    every: int = 0

    @classmethod
    def from_config(cls, store: CheckpointStore, config: DQNConfig) -> "CheckpointPolicy | None":
        """Policy from ``repository_id``, ``token`` and ``checkpoint_every``; None without a repository."""
        if not config.repository_id:
            return None
        return cls(store=store, repository_id=config.repository_id, token=config.token, every=config.checkpoint_every)


class EpisodeDriver:
    def __init__(
        self,
        env: Environment,
        learner: DQNLearner,
        checkpoint: CheckpointPolicy | None = None,
        on_step: Callable[[StepRecord], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        store: CheckpointStore | None = None,
    ):
        if checkpoint is None and store is not None:
            checkpoint = CheckpointPolicy.from_config(store, learner.config)
        self.env = env
        self.learner = learner
        self.checkpoint = checkpoint
        self.on_step = on_step
        self.on_error = on_error
        self.step_count = 0
        self.skipped_ticks = 0
        self.current_state = self._observe()

        self._in_flight = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    def _observe(self) -> np.ndarray:
        return np.array(self.env.observe(), dtype=np.float64, copy=True).reshape(-1)

    def _try_begin(self) -> bool:
        if self._in_flight.acquire(blocking=False):
            return True
        self.skipped_ticks += 1
        _log.debug("step_dropped reason=in_flight step=%d skipped=%d", self.step_count, self.skipped_ticks)
        return False

    def step(self) -> StepRecord | None:
        """Advance one environment step; returns None if another step is still in flight."""
        if not self._try_begin():
            return None
        try:
            return self._step_locked()
        finally:
            self._in_flight.release()

    def tick(self) -> bool:
        """Scheduler entry point: like step(), but errors go to the log and ``on_error``."""
        if not self._try_begin():
            return False
        self._tick_locked()
        return True

    def _tick_locked(self) -> None:
        try:
            self._step_locked()
        except Exception as exc:
            _log.error("tick_failed step=%d error=%s", self.step_count, exc, exc_info=True)
            self._report(exc)
        finally:
            self._in_flight.release()

    def _report(self, exc: BaseException) -> None:
        if self.on_error is not None:
            self.on_error(exc)

    def _step_locked(self) -> StepRecord:
        self.step_count += 1
        step = self.step_count
        state = self.current_state

        action = int(self.learner.select_action(state))
        self.env.act(action)
        next_state = self._observe()
        reward = float(self.env.reward())
        done = bool(self.env.is_done())

        self.learner.remember(Transition.create(state, action, reward, next_state, done))
        loss = self.learner.learn()
        if self.checkpoint is not None:
            self._checkpoint(step, reward)

        if done:
            self.env.reset()
            self.current_state = self._observe()
        else:
            self.current_state = next_state

        record = StepRecord(step=step, action=action, reward=reward, done=done, loss=loss)
        if self.on_step is not None:
            self.on_step(record)
        return record

    def _checkpoint(self, step: int, reward: float) -> None:
        policy = self.checkpoint
        self.learner.maybe_save_best_checkpoint(policy.store, policy.repository_id, policy.token, reward, label=step)
        if policy.every > 0 and step % policy.every == 0:
            try:
                self.learner.save_checkpoint(policy.store, policy.repository_id, policy.token, f"step-{step}")
            except (HubError, CheckpointError) as exc:
                _log.warning("periodic_checkpoint_failed step=%d error=%s", step, exc)
                self._report(exc)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self, interval_ms: int | None = None) -> None:
        """Tick every ``interval_ms`` on a daemon thread; no-op if already running."""
        if self.is_running:
            return
        interval = self.learner.config.step_interval_ms if interval_ms is None else interval_ms
        if interval <= 0:
            raise ValueError(f"interval_ms must be > 0, got {interval}")
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_ticker,
            args=(interval / 1000.0, self._stop_event),
            name="episode-driver",
            daemon=True,
        )
        self._thread.start()
        _log.info("driver_started interval_ms=%s", interval)

    def _run_ticker(self, period: float, stop_event: threading.Event) -> None:
        # Steps run on one worker so the timer keeps firing while a step is in flight.
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="episode-step") as pool:
            while not stop_event.wait(period):
                if self._try_begin():
                    pool.submit(self._tick_locked)

    def stop(self) -> None:
        """Stop the ticker; an in-flight step runs to completion."""
        if self._stop_event is None:
            return
        self._stop_event.set()
        _log.info("driver_stopped step=%d skipped=%d", self.step_count, self.skipped_ticks)

    def join(self, timeout: float | None = None) -> None:
        """Wait for a stopped ticker (and its last step) to finish."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def reset(self) -> None:
        """Reset the environment and the lifetime step count; learner state is untouched.

        Raises RuntimeError while a step is in flight.
        """
        if not self._in_flight.acquire(blocking=False):
            raise RuntimeError("Cannot reset the driver while a step is in flight")
        try:
            self.env.reset()
            self.current_state = self._observe()
            self.step_count = 0
        finally:
            self._in_flight.release()
        _log.info("driver_reset")
