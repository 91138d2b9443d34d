from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

import numpy as np

from .errors import ConfigurationError, DataConsistencyError
from .gaussian import GaussianCluster
from .mixture import MixtureModel, SufficientStatistics
from .models import AnnotationRecord

logger = logging.getLogger(__name__)

_MIN_VARIANCE = 1e-8


class ModelTrainer:
    """Fit a Gaussian mixture to the annotation vectors of one label role.

    The trainer owns no data; each :meth:`train` call builds a fresh model.
    All randomness comes from the generator passed in, so a run is reproducible
    for a fixed seed.

    Parameters
    ----------
    rng:
        Caller-owned ``numpy.random.Generator``.
    max_iterations:
        Hard cap on EM iterations. Hitting it is logged, not fatal.
    convergence_tolerance:
        Stop once ``|objective - previous| <= tol * (1 + |previous|)``.
    prior_counts:
        Pseudo-count of the diagonal covariance prior.
    """

    def __init__(
        self,
        *,
        rng: np.random.Generator,
        max_iterations: int = 150,
        kmeans_iterations: int = 10,
        convergence_tolerance: float = 1e-4,
        prior_counts: float = 20.0,
        min_weight: float = 1e-3,
        min_cluster_count: float = 2.0,
        refinement_iterations: int = 5,
        chunk_size: int = 50_000,
    ) -> None:
        self.rng = rng
        self.max_iterations = int(max_iterations)
        self.kmeans_iterations = int(kmeans_iterations)
        self.convergence_tolerance = float(convergence_tolerance)
        self.prior_counts = float(prior_counts)
        self.min_weight = float(min_weight)
        self.min_cluster_count = float(min_cluster_count)
        self.refinement_iterations = int(refinement_iterations)
        self.chunk_size = int(chunk_size)

    # -----------------
    # Public API
    # -----------------

    def train(
        self,
        records: Sequence[AnnotationRecord],
        n_clusters: int,
        *,
        role: str = "positive",
    ) -> MixtureModel:
        usable = [r for r in records if not r.all_missing]
        dropped = len(records) - len(usable)
        if dropped:
            logger.warning(
                "Excluding %d %s training records with every annotation missing.", dropped, role
            )
        if not usable:
            raise ConfigurationError(
                f"No usable {role} training records; cannot fit a {n_clusters}-cluster model. "
                "Check the training resources and annotations."
            )
        d = len(usable[0].annotations)
        for r in usable:
            if len(r.annotations) != d:
                raise DataConsistencyError(
                    f"Record has {len(r.annotations)} annotations but {d} were expected.",
                    locus=r.locus,
                )
        X = np.vstack([r.annotations for r in usable]).astype(float)
        return self.fit(X, n_clusters, role=role)

    def fit(self, X: np.ndarray, n_clusters: int, *, role: str = "positive") -> MixtureModel:
        X = np.atleast_2d(np.asarray(X, dtype=float))
        n, d = X.shape
        if n == 0:
            raise ConfigurationError(f"No {role} training data.")
        if n_clusters < 1:
            raise ConfigurationError("n_clusters must be >= 1")

        means = self.initial_means(X, n_clusters)
        k = means.shape[0]
        if k < n_clusters:
            logger.warning(
                "Reducing %s model from %d to %d clusters (only %d records, %d distinct).",
                role,
                n_clusters,
                k,
                n,
                k,
            )

        global_cov = np.atleast_2d(np.cov(X, rowvar=False)) if n > 1 else np.eye(d)
        global_var = np.maximum(np.diag(global_cov), _MIN_VARIANCE)
        shrink = 1.0 / (k ** (2.0 / d))
        prior_scale = np.diag(global_var) * shrink
        init_cov = (global_cov + np.diag(global_var) * _MIN_VARIANCE) * shrink

        clusters = [GaussianCluster(means[i], init_cov, 1.0 / k) for i in range(k)]
        model = MixtureModel(clusters, prior_scale=prior_scale, prior_counts=self.prior_counts)

        logger.info("Training %s model: %d records, %d annotations, %d clusters", role, n, d, k)
        stats = self._run_em(model, X, self.max_iterations, record_trace=True)

        if not model.converged:
            logger.warning(
                "%s model did not converge within %d iterations; using the last iterate.",
                role.capitalize(),
                self.max_iterations,
            )

        removed = model.prune(
            min_weight=self.min_weight,
            min_count=self.min_cluster_count,
            counts=stats.counts,
        )
        if removed and self.refinement_iterations > 0:
            self._run_em(model, X, self.refinement_iterations, record_trace=False)
            model.prune(min_weight=self.min_weight)

        logger.info(
            "%s model: %d clusters, %d iterations, converged=%s, objective=%.4f",
            role.capitalize(),
            model.n_clusters,
            model.iterations,
            model.converged,
            model.log_likelihood_trace[-1] if model.log_likelihood_trace else float("nan"),
        )
        return model

    # -----------------
    # Initialisation
    # -----------------

    def initial_means(self, X: np.ndarray, n_clusters: int) -> np.ndarray:
        """Farthest-first seeding in standardised space, then a few Lloyd passes.

        With fewer distinct points than clusters, the sorted distinct points are the
        means (no randomness involved).
        """
        distinct = np.unique(X, axis=0)
        if distinct.shape[0] <= n_clusters:
            return distinct

        scale = np.std(X, axis=0)
        scale[scale < _MIN_VARIANCE] = 1.0
        Z = X / scale

        chosen: List[int] = [int(self.rng.integers(Z.shape[0]))]
        dist = np.sum((Z - Z[chosen[0]]) ** 2, axis=1)
        while len(chosen) < n_clusters:
            nxt = int(np.argmax(dist))
            if dist[nxt] <= 0.0:
                break
            chosen.append(nxt)
            dist = np.minimum(dist, np.sum((Z - Z[nxt]) ** 2, axis=1))

        centers = Z[chosen].copy()
        assignment: Optional[np.ndarray] = None
        for _ in range(self.kmeans_iterations):
            d2 = ((Z[:, None, :] - centers[None, :, :]) ** 2).sum(axis=2)
            new_assignment = np.argmin(d2, axis=1)
            if assignment is not None and np.array_equal(new_assignment, assignment):
                break
            assignment = new_assignment
            for j in range(centers.shape[0]):
                members = Z[assignment == j]
                if members.shape[0] > 0:
                    centers[j] = members.mean(axis=0)
        return centers * scale

    # -----------------
    # EM loop
    # -----------------

    def _run_em(
        self,
        model: MixtureModel,
        X: np.ndarray,
        max_iterations: int,
        *,
        record_trace: bool,
    ) -> SufficientStatistics:
        previous = -math.inf
        stats = model.expectation_chunked(X, self.chunk_size)
        for it in range(max_iterations):
            objective = model.objective(stats)
            if record_trace:
                model.log_likelihood_trace.append(objective)
                model.iterations = it + 1
            if it > 0 and abs(objective - previous) <= self.convergence_tolerance * (1.0 + abs(previous)):
                if record_trace:
                    model.converged = True
                break
            previous = objective
            model.maximize(stats)
            stats = model.expectation_chunked(X, self.chunk_size)
        return stats
