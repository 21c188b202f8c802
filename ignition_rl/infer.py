"""Greedy rollouts of a hub checkpoint on the target-chasing environment."""

from __future__ import annotations

import argparse

from tqdm import tqdm

from ignition_sim.target_env import TargetChasingEnv

from .checkpoint import CANONICAL_NAME, CheckpointStore
from .client import HubClient
from .config import DQNConfig
from .learner import DQNLearner
from .network import TorchNumericEngine


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Run a trained DQN checkpoint greedily")
    p.add_argument("--hub-url", default="http://127.0.0.1:8000")
    p.add_argument("--repo-id", required=True)
    p.add_argument("--name", default=CANONICAL_NAME, help="Checkpoint name (model, best, step-<n>, ...)")
    p.add_argument("--dims", type=int, default=1)
    p.add_argument("--episodes", type=int, default=10)
    p.add_argument("--max-episode-steps", type=int, default=200)
    p.add_argument("--device", type=str, default="cpu", choices=["cpu", "cuda", "mps"])
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--verbose", action="store_true", help="Print every step")
    return p


def load_learner(store: CheckpointStore, repo_id: str, name: str, device: str = "cpu", seed: int | None = None) -> DQNLearner:
    """Rebuild a greedy (epsilon 0) learner from a stored checkpoint bundle."""
    architecture, params = store.load_bundle(repo_id, name)
    config = DQNConfig(
        input_size=int(architecture["input_size"]),
        action_size=int(architecture["action_size"]),
        hidden_layers=tuple(architecture["hidden_layers"]),
        epsilon=0.0,
        min_epsilon=0.0,
        seed=seed,
    )
    engine = TorchNumericEngine.from_config(config, device=device)
    engine.set_parameters(params)
    engine.sync_target()
    return DQNLearner(config, engine)


def run_inference(args: argparse.Namespace) -> dict:
    store = CheckpointStore(HubClient(args.hub_url))
    print(f"inference_init hub={args.hub_url} repo_id={args.repo_id} name={args.name}", flush=True)
    learner = load_learner(store, args.repo_id, args.name, device=args.device, seed=args.seed)

    env = TargetChasingEnv(dims=args.dims, max_episode_steps=args.max_episode_steps, seed=args.seed)
    if (env.observation_size, env.action_size) != (learner.config.input_size, learner.config.action_size):
        learner.dispose()
        raise RuntimeError(
            f"Checkpoint expects input_size={learner.config.input_size} action_size={learner.config.action_size}, "
            f"environment with dims={args.dims} has {env.observation_size}/{env.action_size}"
        )

    reached_total = 0
    returns: list[float] = []
    try:
        for episode in tqdm(range(1, args.episodes + 1), desc="Inference episodes", unit="ep"):
            env.reset()
            total = 0.0
            while not env.is_done():
                action = learner.select_action(env.observe())
                env.act(action)
                total += env.reward()
                if args.verbose:
                    print(
                        f"episode={episode} step={env.steps} action={action} "
                        f"distance={env.distance():.3f} reward={env.reward():.3f}",
                        flush=True,
                    )
            reached_total += int(env.reached)
            returns.append(total)
            print(f"episode={episode} steps={env.steps} reached={env.reached} return={total:.2f}", flush=True)
    finally:
        learner.dispose()

    mean_return = sum(returns) / len(returns) if returns else 0.0
    print(
        f"inference_done episodes={len(returns)} reached={reached_total} mean_return={mean_return:.2f}",
        flush=True,
    )
    return {"episodes": len(returns), "reached": reached_total, "mean_return": mean_return}


def main() -> None:
    args = build_parser().parse_args()
    run_inference(args)


if __name__ == "__main__":
    main()
