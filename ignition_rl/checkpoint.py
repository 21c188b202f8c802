"""Checkpoint persistence of numeric-engine parameters to a remote model hub."""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, TypeVar

import numpy as np

from .client import HubClient, HubError
from .network import NumericEngine, decode_parameters, encode_parameters

_log = logging.getLogger(__name__)

CANONICAL_NAME = "model"
MODEL_FILE = "model.json"
WEIGHTS_FILE = "weights.bin"
MANIFEST_FILE = "README.md"

T = TypeVar("T")


class CheckpointError(RuntimeError):
    """Raised for invalid checkpoint names or undecodable checkpoint bundles."""


class CheckpointStore:
    NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

    def __init__(
        self,
        client: HubClient,
        max_retries: int = 3,
        initial_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.client = client
        self.max_retries = int(max_retries)
        self.initial_delay = float(initial_delay)
        self._sleep = sleep

    def _check_name(self, name: str) -> None:
        if not self.NAME_PATTERN.match(name or ""):
            raise CheckpointError(f"Invalid checkpoint name: {name!r}")

    def _with_retries(self, what: str, fn: Callable[[], T]) -> T:
        last_error: HubError | None = None
        for attempt in range(self.max_retries):
            try:
                return fn()
            except HubError as exc:
                last_error = exc
                if attempt + 1 >= self.max_retries:
                    break
                delay = self.initial_delay * (2**attempt)
                _log.warning(
                    "checkpoint_retry op=%s attempt=%d/%d delay_s=%.2f error=%s",
                    what, attempt + 1, self.max_retries, delay, exc,
                )
                self._sleep(delay)
        _log.error("checkpoint_failed op=%s attempts=%d error=%s", what, self.max_retries, last_error)
        assert last_error is not None
        raise last_error

    def _ensure_repo(self, repository_id: str, token: str | None) -> None:
        try:
            self.client.create_repo(repository_id, token=token)
            _log.info("hub_repo_created repo=%s", repository_id)
        except HubError as exc:
            if exc.status == 409:
                _log.info("hub_repo_exists repo=%s", repository_id)
            else:
                _log.warning("hub_repo_create_failed repo=%s error=%s", repository_id, exc)

    def save(self, repository_id: str, token: str | None, name: str, engine: NumericEngine) -> list[str]:
        """Upload ``<name>/model.json`` and ``<name>/weights.bin``; returns the uploaded paths."""
        self._check_name(name)
        model_json, weights = encode_parameters(engine.describe(), engine.get_parameters())
        files = {
            f"{name}/{MODEL_FILE}": model_json,
            f"{name}/{WEIGHTS_FILE}": weights,
        }
        if name == CANONICAL_NAME:
            files[MANIFEST_FILE] = manifest_text(repository_id, name, engine.describe()).encode("utf-8")

        self._ensure_repo(repository_id, token)
        self._with_retries(f"save:{name}", lambda: self.client.upload_files(repository_id, files, token=token))
        _log.info("checkpoint_saved repo=%s name=%s bytes=%d", repository_id, name, len(weights))
        return list(files)

    def load_bundle(self, repository_id: str, name: str) -> tuple[dict[str, Any], list[np.ndarray]]:
        """Fetch and decode a checkpoint; returns (architecture, parameters)."""
        self._check_name(name)

        def fetch() -> tuple[bytes, bytes]:
            model_json = self.client.download(repository_id, f"{name}/{MODEL_FILE}")
            weights = self.client.download(repository_id, f"{name}/{WEIGHTS_FILE}")
            return model_json, weights

        model_json, weights = self._with_retries(f"load:{name}", fetch)
        try:
            architecture, params = decode_parameters(model_json, weights)
        except (ValueError, KeyError, TypeError) as exc:
            raise CheckpointError(f"Checkpoint {repository_id}/{name} is not a valid bundle: {exc}") from exc
        _log.info("checkpoint_loaded repo=%s name=%s arrays=%d", repository_id, name, len(params))
        return architecture, params

    def load(self, repository_id: str, name: str) -> list[np.ndarray]:
        return self.load_bundle(repository_id, name)[1]


def manifest_text(repository_id: str, name: str, architecture: dict[str, Any]) -> str:
    hidden = ", ".join(str(h) for h in architecture.get("hidden_layers", []))
    return f"""# DQN checkpoint

## Model Information
- Type: Deep Q-Network (DQN)
- Input size: {architecture.get("input_size")}
- Actions: {architecture.get("action_size")}
- Hidden layers: [{hidden}]

## Files
- `{name}/{MODEL_FILE}`: parameter structure descriptor
- `{name}/{WEIGHTS_FILE}`: raw little-endian float32 weights

## Usage
```python
from ignition_rl.checkpoint import CheckpointStore
from ignition_rl.client import HubClient

store = CheckpointStore(HubClient("http://127.0.0.1:8000"))
architecture, params = store.load_bundle("{repository_id}", "{name}")
```
"""
