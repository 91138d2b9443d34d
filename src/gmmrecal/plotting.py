from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence

import matplotlib.pyplot as plt

from .models import Tranche

logger = logging.getLogger(__name__)


def plot_lod_hist(
    *,
    lods: Sequence[float],
    truth_lods: Sequence[float],
    out_png: str | Path,
    title: str = "VQSLOD distribution",
    cutoffs: Sequence[float] = (),
    bins: int = 60,
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    plt.hist(list(lods), bins=bins, alpha=0.6, label="All calls")
    if len(truth_lods) > 0:
        plt.hist(list(truth_lods), bins=bins, alpha=0.6, label="Truth sites")
    for c in cutoffs:
        plt.axvline(c, color="black", linestyle=":", linewidth=0.8)
    plt.xlabel("VQSLOD")
    plt.ylabel("Variant count")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_tranche_counts(
    *,
    tranches: Sequence[Tranche],
    out_png: str | Path,
    title: str = "Calls retained per tranche",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    ordered = sorted(tranches, key=lambda t: t.target_sensitivity)
    labels = [f"{t.target_sensitivity:.2f}" for t in ordered]
    known = [t.num_known for t in ordered]
    novel = [t.num_novel for t in ordered]

    plt.figure()
    plt.bar(labels, known, label="Known")
    plt.bar(labels, novel, bottom=known, label="Novel")
    plt.xlabel("Target truth sensitivity (%)")
    plt.ylabel("Calls at or above cutoff")
    plt.title(title)
    plt.xticks(rotation=15, ha="right")
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_em_traces(
    *,
    traces: Dict[str, List[float]],
    out_png: str | Path,
    title: str = "EM objective per iteration",
) -> None:
    """One line per model; the positive and negative fits have very different scales,
    so each trace is plotted relative to its first value."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    for name, trace in traces.items():
        if not trace:
            continue
        plt.plot(range(1, len(trace) + 1), [v - trace[0] for v in trace], marker="o", markersize=3, label=name)
    plt.xlabel("Iteration")
    plt.ylabel("Penalised log-likelihood gain")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
