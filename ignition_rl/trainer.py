"""DQN training on the target-chasing environment, with TensorBoard metrics and hub checkpoints."""

from __future__ import annotations

import argparse
import json
import os
import time
from collections import deque
from datetime import datetime
from pathlib import Path

from torch.utils.tensorboard import SummaryWriter
from tqdm import tqdm

from ignition_sim.target_env import REACH_REWARD, TargetChasingEnv

from .checkpoint import CANONICAL_NAME, CheckpointError, CheckpointStore
from .client import HubClient, HubError
from .config import TOKEN_ENV_VAR, ConfigError, DQNConfig, load_config, normalize_keys
from .driver import EpisodeDriver
from .learner import DQNLearner
from .network import TorchNumericEngine
from .types import StepRecord


class DQNTrainer:
    def __init__(self, args: argparse.Namespace):
        self.args = args
        if args.steps < 1:
            raise ValueError("--steps must be >= 1")
        if args.interval_ms < 0:
            raise ValueError("--interval-ms must be >= 0")
        if args.resume and not (args.hub_url and args.repo_id):
            raise ValueError("--resume requires --hub-url and --repo-id")

        self.env = TargetChasingEnv(
            dims=args.dims,
            max_episode_steps=args.max_episode_steps,
            seed=args.seed,
        )
        self.config = DQNConfig.from_dict(self._agent_options())
        self.engine = TorchNumericEngine.from_config(self.config, device=args.device)
        self.learner = DQNLearner(self.config, self.engine)

        self.store: CheckpointStore | None = None
        if args.hub_url and self.config.repository_id:
            self.store = CheckpointStore(
                HubClient(args.hub_url),
                max_retries=args.max_retries,
                initial_delay=args.retry_delay,
            )

        self.run_timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.exp_name = getattr(args, "exp_name", None)
        if self.exp_name:
            self.tb_logdir = str(Path(args.tensorboard_logdir) / self.exp_name / f"run_{self.run_timestamp}")
        else:
            self.tb_logdir = str(Path(args.tensorboard_logdir) / f"run_{self.run_timestamp}")
        self.tb_writer = SummaryWriter(log_dir=self.tb_logdir)
        if self.exp_name:
            self.tb_writer.add_text("meta/exp_name", self.exp_name, 0)
        self.tb_writer.add_text("meta/config", json.dumps(self.config.to_dict(), sort_keys=True), 0)
        self._step_bar: tqdm | None = None

        self._recent_returns = deque(maxlen=args.stats_window)
        self._recent_lengths = deque(maxlen=args.stats_window)
        self._recent_reached = deque(maxlen=args.stats_window)
        self._episodes_done = 0
        self._episode_return = 0.0
        self._episode_length = 0
        self._log_loss_sum = 0.0
        self._log_loss_count = 0
        self._errors = 0

        self._log(
            "trainer_init "
            f"steps={args.steps} dims={args.dims} input_size={self.config.input_size} "
            f"action_size={self.config.action_size} hidden_layers={list(self.config.hidden_layers)} "
            f"gamma={args.gamma} lr={args.lr} batch_size={args.batch_size} memory_size={args.memory_size} "
            f"target_sync_period={args.target_sync_period} interval_ms={args.interval_ms} "
            f"device={self.engine.device.type} tensorboard_logdir={self.tb_logdir} "
            f"hub={args.hub_url or 'none'} repo_id={self.config.repository_id or 'none'} exp_name={self.exp_name or 'run_default'}"
        )

        if args.resume:
            self.learner.load_checkpoint(self.store, self.config.repository_id, args.resume)
            self._log(f"checkpoint_status resumed from repo={self.config.repository_id} name={args.resume}")
        else:
            self._log("checkpoint_status no checkpoint requested, initialized random network")

        self.driver = EpisodeDriver(
            self.env,
            self.learner,
            store=self.store,
            on_step=self._on_step,
            on_error=self._on_error,
        )

    def _agent_options(self) -> dict:
        args = self.args
        options = {
            "input_size": self.env.observation_size,
            "action_size": self.env.action_size,
            "hidden_layers": args.hidden_layers,
            "gamma": args.gamma,
            "epsilon": args.epsilon,
            "epsilon_decay": args.epsilon_decay,
            "min_epsilon": args.min_epsilon,
            "learning_rate": args.lr,
            "batch_size": args.batch_size,
            "memory_size": args.memory_size,
            "target_sync_period": args.target_sync_period,
            "step_interval_ms": args.interval_ms or 100,
            "checkpoint_every": args.checkpoint_every,
            "repository_id": args.repo_id,
            "seed": args.seed,
        }
        if args.token:
            options["token"] = args.token
        return options

    def _log(self, message: str) -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        text = f"[{ts}] {message}"
        if self._step_bar is not None:
            self._step_bar.write(text)
        else:
            print(text, flush=True)

    def _on_error(self, exc: BaseException) -> None:
        self._errors += 1
        self._log(f"step_error step={self.driver.step_count} error={exc}")

    def _on_step(self, record: StepRecord) -> None:
        step = record.step
        self._episode_return += record.reward
        self._episode_length += 1
        self.tb_writer.add_scalar("train/reward", record.reward, step)
        self.tb_writer.add_scalar("train/epsilon", self.learner.epsilon, step)
        if record.loss is not None:
            self.tb_writer.add_scalar("train/loss", record.loss, step)
            self._log_loss_sum += record.loss
            self._log_loss_count += 1

        if record.done:
            reached = record.reward >= REACH_REWARD
            self._episodes_done += 1
            self._recent_returns.append(self._episode_return)
            self._recent_lengths.append(self._episode_length)
            self._recent_reached.append(1 if reached else 0)
            self.tb_writer.add_scalar("episode/return", self._episode_return, self._episodes_done)
            self.tb_writer.add_scalar("episode/length", self._episode_length, self._episodes_done)
            self.tb_writer.add_scalar("episode/reached", int(reached), self._episodes_done)
            self._episode_return = 0.0
            self._episode_length = 0

        self._maybe_log_interval_stats(step)
        if self._step_bar is not None:
            self._step_bar.update(1)
            if record.done:
                self._step_bar.set_postfix(
                    {"eps": f"{self.learner.epsilon:.3f}", "episodes": self._episodes_done}
                )

    def _maybe_log_interval_stats(self, step: int) -> None:
        if self.args.log_interval <= 0 or step % self.args.log_interval != 0:
            return
        recent_n = len(self._recent_returns)
        avg_return_recent = (sum(self._recent_returns) / recent_n) if recent_n else 0.0
        avg_length_recent = (sum(self._recent_lengths) / recent_n) if recent_n else 0.0
        reach_rate_recent = (sum(self._recent_reached) / recent_n) if recent_n else 0.0
        avg_loss_interval = self._log_loss_sum / self._log_loss_count if self._log_loss_count else 0.0
        self._log(
            "step_stats "
            f"step={step} episodes={self._episodes_done} epsilon={self.learner.epsilon:.4f} "
            f"train_steps={self.learner.train_step_counter} loss_interval={avg_loss_interval:.4f} "
            f"avg_return_recent={avg_return_recent:.2f} avg_length_recent={avg_length_recent:.1f} "
            f"reach_rate_recent={reach_rate_recent:.3f} best_reward={self.learner.best_reward_seen:.2f} "
            f"skipped_ticks={self.driver.skipped_ticks}"
        )
        self._log_loss_sum = 0.0
        self._log_loss_count = 0

    def _run_manual(self) -> None:
        while self.driver.step_count < self.args.steps:
            self.driver.tick()

    def _run_realtime(self) -> None:
        self.driver.start(self.args.interval_ms)
        try:
            while self.driver.step_count < self.args.steps:
                time.sleep(min(0.05, self.args.interval_ms / 1000.0))
        finally:
            self.driver.stop()
            self.driver.join()

    def _save_final(self) -> bool:
        if self.store is None:
            return False
        try:
            self.learner.save_checkpoint(self.store, self.config.repository_id, self.config.token, CANONICAL_NAME)
        except (HubError, CheckpointError) as exc:
            self._log(f"checkpoint_failed name={CANONICAL_NAME} error={exc}")
            return False
        self._log(f"checkpoint_saved repo={self.config.repository_id} name={CANONICAL_NAME}")
        return True

    def run(self) -> dict:
        try:
            self._step_bar = tqdm(
                total=self.args.steps,
                desc="DQN steps",
                unit="step",
                mininterval=1.0,
                maxinterval=5.0,
            )
            if self.args.interval_ms > 0:
                self._run_realtime()
            else:
                self._run_manual()
            saved = self._save_final()
        finally:
            if self._step_bar is not None:
                self._step_bar.close()
                self._step_bar = None
            self.tb_writer.flush()
            self.tb_writer.close()

        recent_n = len(self._recent_returns)
        summary = {
            "steps": self.driver.step_count,
            "episodes": self._episodes_done,
            "train_steps": self.learner.train_step_counter,
            "epsilon": self.learner.epsilon,
            "best_reward": self.learner.best_reward_seen,
            "avg_return_recent": (sum(self._recent_returns) / recent_n) if recent_n else 0.0,
            "errors": self._errors,
            "skipped_ticks": self.driver.skipped_ticks,
            "saved": saved,
        }
        self._log(
            "training_done "
            + " ".join(f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}" for k, v in summary.items())
        )
        return summary


def build_parser(defaults: dict | None = None) -> argparse.ArgumentParser:
    d = defaults or {}
    train = d.get("training", {})
    agent = normalize_keys(d.get("agent", {}))
    p = argparse.ArgumentParser(description="Train a DQN agent on the target-chasing environment")
    p.add_argument("--config", type=str, default=None, help="Path to YAML config (training + agent params)")
    p.add_argument("--steps", type=int, default=train.get("steps"), help="Total environment steps (required if no --config)")
    p.add_argument("--dims", type=int, default=train.get("dims", 1), help="Environment dimensions (1 = line, 2 = plane)")
    p.add_argument("--max-episode-steps", type=int, default=train.get("max_episode_steps", 200))
    p.add_argument(
        "--interval-ms",
        type=int,
        default=train.get("interval_ms", 0),
        help="Tick period for real-time stepping; 0 steps as fast as possible",
    )
    p.add_argument("--hidden-layers", type=int, nargs="+", default=list(agent.get("hidden_layers", [24, 24])))
    p.add_argument("--gamma", type=float, default=agent.get("gamma", 0.99))
    p.add_argument("--epsilon", type=float, default=agent.get("epsilon", 1.0))
    p.add_argument("--epsilon-decay", type=float, default=agent.get("epsilon_decay", 0.995))
    p.add_argument("--min-epsilon", type=float, default=agent.get("min_epsilon", 0.01))
    p.add_argument("--lr", type=float, default=agent.get("learning_rate", 0.001))
    p.add_argument("--batch-size", type=int, default=agent.get("batch_size", 32))
    p.add_argument("--memory-size", type=int, default=agent.get("memory_size", 10_000))
    p.add_argument("--target-sync-period", type=int, default=agent.get("target_sync_period", 1000))
    p.add_argument("--device", type=str, default=train.get("device", "cpu"), choices=["cpu", "cuda", "mps"])
    p.add_argument("--seed", type=int, default=train.get("seed", agent.get("seed")))
    p.add_argument("--hub-url", type=str, default=train.get("hub_url"), help="Model hub base URL; no checkpoints if omitted")
    p.add_argument("--repo-id", type=str, default=agent.get("repository_id"))
    p.add_argument("--token", type=str, default=agent.get("token") or os.environ.get(TOKEN_ENV_VAR), help=f"Hub token (default: ${TOKEN_ENV_VAR})")
    p.add_argument("--checkpoint-every", type=int, default=agent.get("checkpoint_every", 0))
    p.add_argument("--max-retries", type=int, default=train.get("max_retries", 3))
    p.add_argument("--retry-delay", type=float, default=train.get("retry_delay", 2.0))
    p.add_argument("--resume", type=str, default=None, help="Checkpoint name to load before training")
    p.add_argument("--tensorboard-logdir", default=train.get("tensorboard_logdir", "runs/ignition_dqn"))
    p.add_argument("--exp-name", type=str, default=train.get("exp_name"), help="Optional experiment name for TensorBoard log grouping")
    p.add_argument("--log-interval", type=int, default=train.get("log_interval", 500))
    p.add_argument("--stats-window", type=int, default=train.get("stats_window", 50))
    return p


def main() -> None:
    # Pre-parse to get --config
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", type=str, default=None)
    pre_args, _ = pre.parse_known_args()

    defaults = {}
    if pre_args.config:
        defaults = load_config(pre_args.config)

    try:
        parser = build_parser(defaults)
    except ConfigError as exc:
        pre.error(f"invalid agent section in {pre_args.config}: {exc}")
    args = parser.parse_args()
    if args.steps is None:
        parser.error("--steps required (or set in --config)")

    trainer = DQNTrainer(args)
    trainer.run()


if __name__ == "__main__":
    main()
