import json
import threading
import time
import unittest

import numpy as np

from ignition_rl.checkpoint import CheckpointError, CheckpointStore
from ignition_rl.client import HubClient, HubError
from ignition_rl.config import DQNConfig
from ignition_rl.learner import DQNLearner
from ignition_rl.network import TorchNumericEngine
from ignition_sim.hub_store import BlobStore
from ignition_sim.server import HubHTTPServer


def make_learner(seed: int) -> DQNLearner:
    config = DQNConfig(input_size=4, action_size=3, hidden_layers=(8, 8), seed=seed)
    return DQNLearner(config, TorchNumericEngine.from_config(config))


class FlakyClient:
    """Fails the first ``failures`` calls of each operation with a transient error."""

    def __init__(self, failures: int, create_status: int | None = None):
        self.failures = failures
        self.create_status = create_status
        self.upload_attempts = 0
        self.download_attempts = 0
        self.files: dict[str, bytes] = {}

    def create_repo(self, repo_id, token=None):
        if self.create_status is not None:
            raise HubError("create failed", status=self.create_status)
        return {"name": repo_id}

    def upload_files(self, repo_id, files, token=None):
        self.upload_attempts += 1
        if self.upload_attempts <= self.failures:
            raise HubError("503 unavailable", status=503)
        self.files.update(files)
        return {"paths": list(files)}

    def download(self, repo_id, path):
        self.download_attempts += 1
        if self.download_attempts <= self.failures:
            raise HubError("connection reset")
        if path not in self.files:
            raise HubError("not found", status=404)
        return self.files[path]


class TestCheckpointRoundTrip(unittest.TestCase):
    def setUp(self):
        self.blobs = BlobStore()
        self.server = HubHTTPServer(store=self.blobs, host="127.0.0.1", port=0, token="tok")
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        time.sleep(0.05)
        self.store = CheckpointStore(HubClient(self.server.base_url), max_retries=2, initial_delay=0.0)

    def tearDown(self):
        self.server.shutdown()
        self.thread.join(timeout=1.0)

    def test_save_then_load_into_fresh_learner(self):
        trained = make_learner(seed=1)
        fresh = make_learner(seed=2)
        sample_state = np.array([[0.25, -0.5, 1.0, 0.0]])
        self.assertFalse(np.allclose(trained.engine.predict_online(sample_state), fresh.engine.predict_online(sample_state)))

        trained.save_checkpoint(self.store, "me/dqn", "tok", "t1")
        fresh.load_checkpoint(self.store, "me/dqn", "t1")

        np.testing.assert_allclose(fresh.engine.predict_online(sample_state), trained.engine.predict_online(sample_state))
        np.testing.assert_allclose(fresh.engine.predict_target(sample_state), trained.engine.predict_online(sample_state))
        trained.dispose()
        fresh.dispose()

    def test_existing_repo_is_tolerated_and_last_write_wins(self):
        learner = make_learner(seed=3)
        with self.assertLogs("ignition_rl.checkpoint", level="INFO") as logs:
            self.store.save("me/dqn", "tok", "best", learner.engine)
            learner.engine.set_parameters([p + 1.0 for p in learner.engine.get_parameters()])
            self.store.save("me/dqn", "tok", "best", learner.engine)
        self.assertTrue(any("hub_repo_exists" in line for line in logs.output))

        loaded = self.store.load("me/dqn", "best")
        for expected, got in zip(learner.engine.get_parameters(), loaded):
            np.testing.assert_array_equal(expected, got)
        learner.dispose()

    def test_canonical_name_adds_manifest(self):
        learner = make_learner(seed=4)
        paths = self.store.save("me/dqn", "tok", "model", learner.engine)
        self.assertEqual(paths, ["model/model.json", "model/weights.bin", "README.md"])
        self.assertIn("Deep Q-Network", self.blobs.get("me/dqn", "README.md").decode("utf-8"))

        self.store.save("me/dqn", "tok", "step-10", learner.engine)
        descriptor = json.loads(self.blobs.get("me/dqn", "step-10/model.json"))
        self.assertEqual(descriptor["architecture"]["hidden_layers"], [8, 8])
        learner.dispose()

    def test_load_missing_checkpoint_surfaces_last_error(self):
        with self.assertRaises(HubError) as ctx:
            self.store.load("me/none", "t1")
        self.assertEqual(ctx.exception.status, 404)

    def test_bad_token_fails_save(self):
        store = CheckpointStore(HubClient(self.server.base_url), max_retries=1, initial_delay=0.0)
        learner = make_learner(seed=5)
        with self.assertRaises(HubError) as ctx:
            store.save("me/dqn", "wrong", "t1", learner.engine)
        self.assertEqual(ctx.exception.status, 401)
        learner.dispose()


class TestCheckpointRetries(unittest.TestCase):
    def setUp(self):
        self.learner = make_learner(seed=0)
        self.delays: list[float] = []

    def tearDown(self):
        self.learner.dispose()

    def test_exponential_backoff_then_success(self):
        client = FlakyClient(failures=2)
        store = CheckpointStore(client, max_retries=3, initial_delay=0.5, sleep=self.delays.append)
        store.save("me/dqn", None, "t1", self.learner.engine)
        self.assertEqual(client.upload_attempts, 3)
        self.assertEqual(self.delays, [0.5, 1.0])

        self.delays.clear()
        params = store.load("me/dqn", "t1")
        self.assertEqual(client.download_attempts, 4)
        self.assertEqual(self.delays, [0.5, 1.0])
        self.assertEqual(len(params), len(self.learner.engine.get_parameters()))

    def test_gives_up_after_max_attempts(self):
        client = FlakyClient(failures=10)
        store = CheckpointStore(client, max_retries=3, initial_delay=2.0, sleep=self.delays.append)
        with self.assertRaises(HubError):
            store.load("me/dqn", "t1")
        self.assertEqual(client.download_attempts, 3)
        self.assertEqual(self.delays, [2.0, 4.0])

    def test_create_failure_other_than_conflict_still_uploads(self):
        client = FlakyClient(failures=0, create_status=500)
        store = CheckpointStore(client, sleep=self.delays.append)
        with self.assertLogs("ignition_rl.checkpoint", level="WARNING"):
            store.save("me/dqn", None, "t1", self.learner.engine)
        self.assertIn("t1/weights.bin", client.files)

    def test_invalid_name_rejected_before_io(self):
        client = FlakyClient(failures=0)
        store = CheckpointStore(client, sleep=self.delays.append)
        for name in ("", "../x", "a/b", "-lead"):
            with self.subTest(name=name):
                with self.assertRaises(CheckpointError):
                    store.save("me/dqn", None, name, self.learner.engine)
        self.assertEqual(client.upload_attempts, 0)

    def test_corrupt_bundle_raises_checkpoint_error(self):
        client = FlakyClient(failures=0)
        client.files = {"t1/model.json": b"{}", "t1/weights.bin": b""}
        store = CheckpointStore(client, sleep=self.delays.append)
        with self.assertRaises(CheckpointError):
            store.load("me/dqn", "t1")


if __name__ == "__main__":
    unittest.main()
