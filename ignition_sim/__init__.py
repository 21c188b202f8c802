"""Local collaborators for the DQN engine: a target-chasing environment and a model hub."""

from .hub_store import BlobStore
from .server import HubHTTPServer
from .target_env import TargetChasingEnv

__all__ = ["BlobStore", "HubHTTPServer", "TargetChasingEnv"]
