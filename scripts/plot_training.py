import argparse
import glob
import math
import os

import matplotlib
import numpy as np

matplotlib.use("Agg")
import matplotlib.pyplot as plt
from tensorboard.backend.event_processing.event_accumulator import EventAccumulator

TITLES = {
    "train/reward": "Step Reward",
    "train/loss": "TD Loss",
    "train/epsilon": "Epsilon",
    "episode/return": "Episode Return",
    "episode/length": "Episode Length",
    "episode/reached": "Target Reached",
}

SIZE_GUIDANCE = {
    'compressedHistograms': 0, 'images': 0, 'audio': 0, 'scalars': 0, 'histograms': 0,
}


def get_sorted_run_dirs(base_dir):
    if not os.path.exists(base_dir):
        print(f"Error: Directory '{base_dir}' not found.")
        return []
    return sorted(
        os.path.dirname(path)
        for path in glob.glob(os.path.join(base_dir, "**", "events.out.tfevents.*"), recursive=True)
        if os.path.basename(os.path.dirname(path)).startswith("run_")
    )


def extract_data(run_dir):
    ea = EventAccumulator(run_dir, size_guidance=SIZE_GUIDANCE)
    ea.Reload()
    data = {}
    for tag in ea.Tags().get('scalars', []):
        events = ea.Scalars(tag)
        data[tag] = ([e.step for e in events], [e.value for e in events])
    return data


def smooth(values, window):
    """Trailing moving average; the first points average over what is available."""
    if window <= 1 or len(values) < window:
        return values
    csum = np.cumsum(np.asarray(values, dtype=float))
    sums = csum.copy()
    sums[window:] = csum[window:] - csum[:-window]
    return sums / np.minimum(np.arange(1, len(csum) + 1), window)


def concat_and_plot(run_dirs, output_dir, window):
    # Resumed runs restart their step counters, so each tag is offset by the previous run's last step.
    combined = {}
    offsets = {}
    for run_dir in dict.fromkeys(run_dirs):
        print(f"  Reading {os.path.relpath(run_dir)}...")
        for tag, (steps, values) in extract_data(run_dir).items():
            if not steps:
                continue
            entry = combined.setdefault(tag, {"steps": [], "values": []})
            offset = offsets.get(tag, 0)
            entry["steps"].extend(s + offset for s in steps)
            entry["values"].extend(values)
            offsets[tag] = offset + max(steps)

    if not combined:
        print("No scalar tags found.")
        return []

    tags = sorted(combined)
    os.makedirs(output_dir, exist_ok=True)
    chunk_size = 4
    saved = []
    for i in range(math.ceil(len(tags) / chunk_size)):
        tags_subset = tags[i * chunk_size:(i + 1) * chunk_size]
        fig, axes = plt.subplots(2, 2, figsize=(15, 10))
        fig.suptitle(f"DQN Training Metrics - Part {i + 1}", fontsize=16)
        axes = axes.flatten()

        for j, tag in enumerate(tags_subset):
            ax = axes[j]
            steps, values = combined[tag]["steps"], combined[tag]["values"]
            ax.plot(steps, values, alpha=0.3)
            ax.plot(steps, smooth(values, window))
            ax.set_title(TITLES.get(tag, tag))
            ax.set_xlabel("Episode" if tag.startswith("episode/") else "Global Steps")
            ax.grid(True)

        for j in range(len(tags_subset), 4):
            fig.delaxes(axes[j])

        plt.tight_layout(rect=[0, 0.03, 1, 0.95])
        path = os.path.join(output_dir, f"training_plot_part_{i + 1}.png")
        plt.savefig(path)
        plt.close(fig)
        saved.append(path)
        print(f"Saved {path}")
    return saved


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Plot TensorBoard scalars written by ignition-train")
    parser.add_argument("--logdir", default="runs/ignition_dqn")
    parser.add_argument("--output-dir", default="media")
    parser.add_argument("--smooth", type=int, default=20, help="Moving-average window")
    args = parser.parse_args()

    runs = get_sorted_run_dirs(args.logdir)
    if runs:
        print(f"Processing {len(runs)} runs from {args.logdir}...")
        concat_and_plot(runs, args.output_dir, args.smooth)
