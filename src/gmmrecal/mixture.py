from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.special import logsumexp

from .gaussian import GaussianCluster
from .utils import chunked

logger = logging.getLogger(__name__)

_LN10 = math.log(10.0)
_MIN_EFFECTIVE_COUNT = 1e-10


@dataclass
class SufficientStatistics:
    """Responsibility-weighted moments gathered by an E-step.

    Statistics from independently processed shards combine with ``+`` before the
    M-step, which makes the E-step a parallel reduction.
    """

    counts: np.ndarray  # (K,)
    sum_x: np.ndarray  # (K, d)
    sum_xx: np.ndarray  # (K, d, d)
    log_likelihood: float = 0.0
    n: int = 0

    @classmethod
    def zeros(cls, n_clusters: int, n_dims: int) -> "SufficientStatistics":
        return cls(
            counts=np.zeros(n_clusters),
            sum_x=np.zeros((n_clusters, n_dims)),
            sum_xx=np.zeros((n_clusters, n_dims, n_dims)),
        )

    def __add__(self, other: "SufficientStatistics") -> "SufficientStatistics":
        return SufficientStatistics(
            counts=self.counts + other.counts,
            sum_x=self.sum_x + other.sum_x,
            sum_xx=self.sum_xx + other.sum_xx,
            log_likelihood=self.log_likelihood + other.log_likelihood,
            n=self.n + other.n,
        )


class MixtureModel:
    """Weighted ensemble of :class:`GaussianCluster` objects.

    Parameters
    ----------
    clusters:
        Components in a fixed order; pruning removes entries but never reorders.
    prior_scale:
        Diagonal matrix ``Lambda0`` of the covariance prior. ``None`` means no prior.
    prior_counts:
        Pseudo-count ``n0`` of the covariance prior. The M-step covariance is
        ``(S_k + n0 * Lambda0) / (N_k + n0)``.
    """

    def __init__(
        self,
        clusters: Sequence[GaussianCluster],
        *,
        prior_scale: Optional[np.ndarray] = None,
        prior_counts: float = 0.0,
    ) -> None:
        if len(clusters) == 0:
            raise ValueError("A mixture model needs at least one cluster")
        self.clusters: List[GaussianCluster] = list(clusters)
        d = self.clusters[0].n_dims
        self.prior_scale = np.zeros((d, d)) if prior_scale is None else np.asarray(prior_scale, dtype=float)
        self.prior_counts = float(prior_counts)
        self.log_likelihood_trace: List[float] = []
        self.converged = False
        self.iterations = 0
        self.normalize_weights()

    @property
    def n_clusters(self) -> int:
        return len(self.clusters)

    @property
    def n_dims(self) -> int:
        return self.clusters[0].n_dims

    @property
    def weights(self) -> np.ndarray:
        return np.array([c.weight for c in self.clusters])

    def normalize_weights(self) -> None:
        total = float(sum(c.weight for c in self.clusters))
        if total <= 0.0 or not math.isfinite(total):
            for c in self.clusters:
                c.weight = 1.0 / self.n_clusters
            return
        for c in self.clusters:
            c.weight = c.weight / total

    # -----------------
    # Densities
    # -----------------

    def component_log_densities(self, X: np.ndarray) -> np.ndarray:
        """``log w_k + log N(x | mu_k, Sigma_k)`` for every row and cluster, shape ``(n, K)``."""
        X = np.atleast_2d(X)
        out = np.empty((X.shape[0], self.n_clusters))
        with np.errstate(divide="ignore"):
            for k, c in enumerate(self.clusters):
                out[:, k] = math.log(c.weight) if c.weight > 0 else -np.inf
                out[:, k] += c.log_density(X)
        return out

    def log_likelihood(self, X: np.ndarray) -> np.ndarray:
        """Natural-log mixture density of each row."""
        return logsumexp(self.component_log_densities(X), axis=1)

    def evaluate(self, X: np.ndarray) -> np.ndarray:
        """Log10 mixture density of each row (the scale VQSLOD is reported on)."""
        return self.log_likelihood(X) / _LN10

    def marginal_log10(self, X: np.ndarray) -> np.ndarray:
        """Log10 one-dimensional marginal mixture density per annotation, shape ``(n, d)``."""
        X = np.atleast_2d(X)
        stacked = np.empty((self.n_clusters, X.shape[0], self.n_dims))
        with np.errstate(divide="ignore"):
            for k, c in enumerate(self.clusters):
                log_w = math.log(c.weight) if c.weight > 0 else -np.inf
                stacked[k] = log_w + c.marginal_log_density(X)
        return logsumexp(stacked, axis=0) / _LN10

    # -----------------
    # EM
    # -----------------

    def expectation(self, X: np.ndarray) -> SufficientStatistics:
        X = np.atleast_2d(X)
        comp = self.component_log_densities(X)
        ll = logsumexp(comp, axis=1)
        resp = np.exp(comp - ll[:, None])

        stats = SufficientStatistics.zeros(self.n_clusters, self.n_dims)
        stats.counts = resp.sum(axis=0)
        stats.sum_x = resp.T @ X
        for k in range(self.n_clusters):
            weighted = X * resp[:, k : k + 1]
            stats.sum_xx[k] = weighted.T @ X
        stats.log_likelihood = float(np.sum(ll))
        stats.n = int(X.shape[0])
        return stats

    def expectation_chunked(self, X: np.ndarray, chunk_size: int = 50_000) -> SufficientStatistics:
        X = np.atleast_2d(X)
        total = SufficientStatistics.zeros(self.n_clusters, self.n_dims)
        for idx in chunked(range(X.shape[0]), chunk_size):
            total = total + self.expectation(X[idx])
        return total

    def maximize(self, stats: SufficientStatistics) -> None:
        """M-step: weighted ML means and weights, MAP covariances under the diagonal prior."""
        total = float(np.sum(stats.counts))
        n0 = self.prior_counts
        for k, c in enumerate(self.clusters):
            nk = float(stats.counts[k])
            if nk <= _MIN_EFFECTIVE_COUNT:
                c.weight = 0.0
                continue
            mean = stats.sum_x[k] / nk
            scatter = stats.sum_xx[k] - nk * np.outer(mean, mean)
            c.mean = mean
            c.set_covariance((scatter + n0 * self.prior_scale) / (nk + n0))
            c.weight = nk / total
        self.normalize_weights()

    def log_prior(self) -> float:
        """Log density (up to a constant) of the covariance prior over all live clusters."""
        n0 = self.prior_counts
        if n0 <= 0.0:
            return 0.0
        out = 0.0
        for c in self.clusters:
            if c.weight <= 0.0:
                continue
            out -= 0.5 * n0 * c.log_determinant
            out -= 0.5 * n0 * c.inverse_trace_product(self.prior_scale)
        return out

    def objective(self, stats: SufficientStatistics) -> float:
        """Penalised log-likelihood; EM never decreases it."""
        return stats.log_likelihood + self.log_prior()

    def prune(
        self,
        *,
        min_weight: float,
        min_count: float = 0.0,
        counts: Optional[np.ndarray] = None,
    ) -> int:
        """Drop light, under-populated or collapsed clusters; return how many were removed.

        The heaviest cluster always survives so the model stays usable.
        """
        keep: List[GaussianCluster] = []
        for k, c in enumerate(self.clusters):
            too_light = c.weight < min_weight
            too_few = counts is not None and float(counts[k]) < min_count
            if too_light or too_few or c.degenerate:
                continue
            keep.append(c)
        if not keep:
            keep = [max(self.clusters, key=lambda c: c.weight)]
        removed = self.n_clusters - len(keep)
        if removed:
            logger.debug("Pruned %d of %d clusters", removed, self.n_clusters)
        self.clusters = keep
        self.normalize_weights()
        return removed

    def to_dict(self) -> Dict[str, object]:
        return {
            "n_clusters": self.n_clusters,
            "n_dims": self.n_dims,
            "converged": self.converged,
            "iterations": self.iterations,
            "final_log_likelihood": self.log_likelihood_trace[-1] if self.log_likelihood_trace else None,
            "clusters": [c.to_dict() for c in self.clusters],
        }
