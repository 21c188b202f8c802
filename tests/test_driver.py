import threading
import time
import unittest

import numpy as np

from ignition_rl.client import HubError
from ignition_rl.config import DQNConfig
from ignition_rl.driver import CallbackEnvironment, CheckpointPolicy, EpisodeDriver, normalize_action
from ignition_rl.learner import DQNLearner
from ignition_rl.network import TorchNumericEngine


class CountingEnv:
    """Reports done on every ``done_every``-th action; each reset yields a fresh observation."""

    def __init__(self, done_every: int = 10):
        self.done_every = done_every
        self.actions = 0
        self.resets = 0
        self.value = 0.0
        self.post_reset_observations: list[np.ndarray] = []

    def observe(self):
        return np.array([self.value, float(self.resets)])

    def act(self, action):
        self.actions += 1
        self.value += 1.0

    def reward(self):
        return 1.0 if self.actions % self.done_every == 0 else 0.0

    def is_done(self):
        return self.actions % self.done_every == 0

    def reset(self):
        self.resets += 1
        self.value = -10.0 * self.resets
        self.post_reset_observations.append(self.observe())


class ScriptedLearner:
    def __init__(self, config: DQNConfig):
        self.config = config
        self.remembered = []
        self.learn_calls = 0
        self.best_calls = []
        self.saved_names = []
        self.fail_learn = False
        self.entered = threading.Event()
        self.release = threading.Event()
        self.release.set()

    def select_action(self, state):
        return 1

    def remember(self, transition):
        self.remembered.append(transition)

    def learn(self):
        self.learn_calls += 1
        self.entered.set()
        self.release.wait(5.0)
        if self.fail_learn:
            raise RuntimeError("engine exploded")
        return None

    def maybe_save_best_checkpoint(self, store, repository_id, token, reward, label=None):
        self.best_calls.append((reward, label))
        return False

    def save_checkpoint(self, store, repository_id, token, name):
        if store == "down":
            raise HubError("hub unavailable", status=503)
        self.saved_names.append(name)
        return []


def small_config(**overrides) -> DQNConfig:
    base = {"input_size": 2, "action_size": 3, "batch_size": 4, "memory_size": 50, "seed": 0, "step_interval_ms": 5}
    base.update(overrides)
    return DQNConfig(**base)


class TestEpisodeDriver(unittest.TestCase):
    def test_hundred_steps_reset_ten_times(self):
        env = CountingEnv(done_every=10)
        learner = ScriptedLearner(small_config())
        seen_after_reset = []

        def on_step(record):
            if record.done:
                seen_after_reset.append(driver.current_state.copy())

        driver = EpisodeDriver(env, learner, on_step=on_step)
        for _ in range(100):
            driver.step()

        self.assertEqual(env.resets, 10)
        self.assertEqual(driver.step_count, 100)
        self.assertEqual(len(learner.remembered), 100)
        self.assertEqual(learner.learn_calls, 100)
        for seen, expected in zip(seen_after_reset, env.post_reset_observations):
            np.testing.assert_array_equal(seen, expected)

    def test_transitions_follow_temporal_order(self):
        env = CountingEnv(done_every=3)
        learner = ScriptedLearner(small_config())
        driver = EpisodeDriver(env, learner)
        records = [driver.step() for _ in range(4)]

        self.assertEqual([r.step for r in records], [1, 2, 3, 4])
        self.assertEqual([r.done for r in records], [False, False, True, False])
        first, second, third, fourth = learner.remembered
        np.testing.assert_array_equal(first.next_state, second.state)
        np.testing.assert_array_equal(third.next_state, [3.0, 0.0])
        np.testing.assert_array_equal(fourth.state, [-10.0, 1.0])

    def test_overlapping_step_is_dropped(self):
        env = CountingEnv()
        learner = ScriptedLearner(small_config())
        learner.release.clear()
        driver = EpisodeDriver(env, learner)

        worker = threading.Thread(target=driver.step)
        worker.start()
        self.assertTrue(learner.entered.wait(2.0))
        self.assertIsNone(driver.step())
        self.assertFalse(driver.tick())
        self.assertEqual(driver.skipped_ticks, 2)

        learner.release.set()
        worker.join(2.0)
        self.assertEqual(driver.step_count, 1)
        self.assertEqual(env.actions, 1)
        self.assertEqual(len(learner.remembered), 1)

    def test_tick_routes_errors_to_callback(self):
        env = CountingEnv()
        learner = ScriptedLearner(small_config())
        learner.fail_learn = True
        errors = []
        driver = EpisodeDriver(env, learner, on_error=errors.append)
        with self.assertLogs("ignition_rl.driver", level="ERROR"):
            self.assertTrue(driver.tick())
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], RuntimeError)

        learner.fail_learn = False
        self.assertTrue(driver.tick())
        self.assertEqual(driver.step_count, 2)

    def test_step_propagates_errors(self):
        learner = ScriptedLearner(small_config())
        learner.fail_learn = True
        driver = EpisodeDriver(CountingEnv(), learner)
        with self.assertRaises(RuntimeError):
            driver.step()

    def test_checkpoint_policy_best_and_periodic(self):
        learner = ScriptedLearner(small_config())
        policy = CheckpointPolicy(store="hub", repository_id="me/dqn", token=None, every=4)
        driver = EpisodeDriver(CountingEnv(done_every=5), learner, checkpoint=policy)
        for _ in range(8):
            driver.step()
        self.assertEqual([label for _, label in learner.best_calls], list(range(1, 9)))
        self.assertEqual(learner.best_calls[4], (1.0, 5))
        self.assertEqual(learner.saved_names, ["step-4", "step-8"])

    def test_checkpoint_policy_from_learner_config(self):
        learner = ScriptedLearner(small_config(repository_id="me/dqn", token="tok", checkpoint_every=2))
        driver = EpisodeDriver(CountingEnv(), learner, store="hub")
        self.assertEqual(driver.checkpoint.repository_id, "me/dqn")
        self.assertEqual(driver.checkpoint.token, "tok")
        for _ in range(4):
            driver.step()
        self.assertEqual([label for _, label in learner.best_calls], [1, 2, 3, 4])
        self.assertEqual(learner.saved_names, ["step-2", "step-4"])

        self.assertIsNone(CheckpointPolicy.from_config("hub", small_config()))
        unconfigured = EpisodeDriver(CountingEnv(), ScriptedLearner(small_config()), store="hub")
        self.assertIsNone(unconfigured.checkpoint)

    def test_periodic_checkpoint_failure_does_not_abort_step(self):
        learner = ScriptedLearner(small_config())
        errors = []
        policy = CheckpointPolicy(store="down", repository_id="me/dqn", every=1)
        driver = EpisodeDriver(CountingEnv(), learner, checkpoint=policy, on_error=errors.append)
        record = driver.step()
        self.assertIsNotNone(record)
        self.assertEqual(len(errors), 1)

    def test_reset_zeroes_step_count_only(self):
        env = CountingEnv()
        learner = ScriptedLearner(small_config())
        driver = EpisodeDriver(env, learner)
        for _ in range(3):
            driver.step()
        driver.reset()
        self.assertEqual(driver.step_count, 0)
        self.assertEqual(env.resets, 1)
        np.testing.assert_array_equal(driver.current_state, env.observe())
        self.assertEqual(len(learner.remembered), 3)

    def test_reset_is_refused_while_step_in_flight(self):
        env = CountingEnv()
        learner = ScriptedLearner(small_config())
        learner.release.clear()
        driver = EpisodeDriver(env, learner)

        worker = threading.Thread(target=driver.step)
        worker.start()
        self.assertTrue(learner.entered.wait(2.0))
        with self.assertRaises(RuntimeError):
            driver.reset()
        self.assertEqual(env.resets, 0)

        learner.release.set()
        worker.join(2.0)
        self.assertEqual(driver.step_count, 1)
        driver.reset()
        self.assertEqual(driver.step_count, 0)
        self.assertEqual(env.resets, 1)

    def test_start_and_stop_ticker(self):
        env = CountingEnv()
        learner = ScriptedLearner(small_config())
        driver = EpisodeDriver(env, learner)
        driver.stop()

        driver.start(5)
        driver.start(5)
        deadline = time.time() + 3.0
        while driver.step_count < 5 and time.time() < deadline:
            time.sleep(0.01)
        driver.stop()
        driver.join(2.0)
        self.assertFalse(driver.is_running)
        self.assertGreaterEqual(driver.step_count, 5)
        count = driver.step_count
        time.sleep(0.05)
        self.assertEqual(driver.step_count, count)

    def test_slow_steps_drop_timer_ticks(self):
        env = CountingEnv()
        learner = ScriptedLearner(small_config())
        learner.release.clear()
        driver = EpisodeDriver(env, learner)
        driver.start(5)
        self.assertTrue(learner.entered.wait(2.0))
        time.sleep(0.1)
        driver.stop()
        learner.release.set()
        driver.join(2.0)
        self.assertEqual(driver.step_count, 1)
        self.assertGreater(driver.skipped_ticks, 0)

    def test_callback_environment_and_action_normalization(self):
        state = {"x": 0.0, "resets": 0}
        applied = []

        def apply_action(a):
            applied.append(a)
            state["x"] += a

        env = CallbackEnvironment(
            get_observation=lambda: [state["x"], 1.0],
            apply_action=apply_action,
            compute_reward=lambda: -abs(state["x"]),
            is_done=lambda: state["x"] >= 4,
            on_reset=lambda: state.update(x=0.0, resets=state["resets"] + 1),
        )
        env.act(np.array([0.1, 0.9, 0.3]))
        env.act(np.int64(2))
        self.assertEqual(applied, [1, 2])
        self.assertTrue(all(type(a) is int for a in applied))
        self.assertEqual(env.reward(), -3.0)
        self.assertEqual(normalize_action(2.0), 2)
        with self.assertRaises(ValueError):
            normalize_action([])

        learner = ScriptedLearner(small_config())
        driver = EpisodeDriver(env, learner)
        record = driver.step()
        self.assertTrue(record.done)
        self.assertEqual(state["resets"], 1)
        np.testing.assert_array_equal(driver.current_state, [0.0, 1.0])

    def test_learns_with_real_engine(self):
        config = small_config(batch_size=4)
        learner = DQNLearner(config, TorchNumericEngine.from_config(config))
        driver = EpisodeDriver(CountingEnv(done_every=5), learner)
        losses = [driver.step().loss for _ in range(10)]
        self.assertEqual(losses[:3], [None, None, None])
        self.assertTrue(all(isinstance(v, float) for v in losses[3:]))
        self.assertEqual(learner.train_step_counter, 7)
        learner.dispose()


if __name__ == "__main__":
    unittest.main()
