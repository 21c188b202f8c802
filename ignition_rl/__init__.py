"""Online DQN training engine: learner, replay memory, episode driver and hub checkpoints."""

from .checkpoint import CheckpointStore
from .client import HubClient
from .config import DQNConfig
from .driver import EpisodeDriver
from .learner import DQNLearner
from .replay import ReplayMemory

__all__ = [
    "CheckpointStore",
    "DQNConfig",
    "DQNLearner",
    "EpisodeDriver",
    "HubClient",
    "ReplayMemory",
]
